"""
Flow state machine tests.

    pending → current → completed, one current step per order,
    order Released → In Progress → Finished, top-admin reset.
"""

from datetime import datetime

import pytest
from sqlalchemy import update

from shopfloor.core.exceptions import (
    AlreadyInProgress,
    InvalidState,
    NotAssigned,
    NotFoundError,
    PermissionDenied,
)
from shopfloor.models import db
from shopfloor.models.order import FlowStep, Order
from shopfloor.models.work_session import WorkSession
from shopfloor.services import flow_service, routing_service
from shopfloor.services.authorization import RULE_ASSIGNED, RULE_SUPERVISOR_ON_BEHALF


def _step(order, n):
    return FlowStep.query.filter_by(order_id=order.id, step_order=n).one()


def _start(order, n, caller):
    step = _step(order, n)
    return flow_service.start_step(order.order_no, step.station_id, n, caller)


def _complete(order, n, caller):
    step = _step(order, n)
    return flow_service.complete_step(order.order_no, step.station_id, n, caller)


class TestStartStep:
    def test_assigned_technician_starts(self, make_order, people):
        order = make_order()
        result = _start(order, 1, people.tech)

        assert result["flow_step"]["status"] == "current"
        assert result["acting_as"] == people.tech
        assert result["authorized_via"] == RULE_ASSIGNED
        assert result["work_session"]["technician_id"] == people.tech

        db.session.refresh(order)
        assert order.status == "In Progress"
        assert order.started_at is not None
        assert order.flow_version == 2

    def test_unassigned_caller_rejected(self, make_order, people):
        order = make_order()
        with pytest.raises(NotAssigned):
            _start(order, 1, people.other_tech)
        assert _step(order, 1).status == "pending"

    def test_second_start_of_same_step_is_invalid_state(self, make_order, people):
        order = make_order()
        _start(order, 1, people.tech)
        with pytest.raises(InvalidState) as exc:
            _start(order, 1, people.tech)
        assert not isinstance(exc.value, AlreadyInProgress)

    def test_other_step_current_is_already_in_progress(self, make_order, people):
        order = make_order(route=[("assembly", people.tech), ("paint", people.painter)])
        _start(order, 1, people.tech)
        with pytest.raises(AlreadyInProgress):
            _start(order, 2, people.painter)
        assert FlowStep.query.filter_by(order_id=order.id, status="current").count() == 1

    def test_stale_flow_version_loses(self, make_order, people, monkeypatch):
        order = make_order()
        real_get_order = flow_service.get_order

        def racing_get_order(order_no):
            fetched = real_get_order(order_no)
            # Another request bumps the version after this one read it.
            db.session.execute(
                update(Order).where(Order.id == fetched.id)
                .values(flow_version=Order.flow_version + 1)
                .execution_options(synchronize_session=False)
            )
            return fetched

        monkeypatch.setattr(flow_service, "get_order", racing_get_order)
        with pytest.raises(AlreadyInProgress):
            _start(order, 1, people.tech)
        assert _step(order, 1).status == "pending"

    def test_supervisor_on_behalf_records_both(self, make_order, people):
        order = make_order()
        result = _start(order, 1, people.supervisor)
        assert result["acting_as"] == people.tech
        assert result["authorized_via"] == RULE_SUPERVISOR_ON_BEHALF

        ws = WorkSession.query.one()
        assert ws.technician_id == people.tech
        assert ws.started_by == people.supervisor
        assert ws.authorized_via == RULE_SUPERVISOR_ON_BEHALF

    def test_started_at_only_set_by_first_step(self, make_order, people):
        order = make_order(route=[("assembly", people.tech), ("paint", people.painter)])
        db.session.execute(
            update(FlowStep).where(FlowStep.order_id == order.id, FlowStep.step_order == 1)
            .values(status="completed")
        )
        db.session.commit()
        _start(order, 2, people.painter)
        db.session.refresh(order)
        assert order.status == "In Progress"
        assert order.started_at is None

    def test_unknown_step(self, make_order, people, stations):
        order = make_order()
        with pytest.raises(NotFoundError):
            flow_service.start_step(order.order_no, stations["cnc"].id, 1, people.admin)

    def test_start_never_advances_next_step(self, make_order, people):
        order = make_order(route=[("assembly", people.tech), ("paint", people.painter)])
        _start(order, 1, people.tech)
        _complete(order, 1, people.tech)
        assert _step(order, 2).status == "pending"


class TestCompleteStep:
    def test_complete_closes_session(self, make_order, people):
        order = make_order()
        _start(order, 1, people.tech)
        result = _complete(order, 1, people.tech)

        assert result["flow_step"]["status"] == "completed"
        assert result["flow_step"]["completed_at"] is not None
        assert result["work_session"]["completed_at"] is not None
        assert result["work_session"]["duration_minutes"] >= 0
        assert result["order_finished"] is False

    def test_complete_requires_current(self, make_order, people):
        order = make_order()
        with pytest.raises(InvalidState):
            _complete(order, 1, people.tech)

    def test_last_step_finishes_order(self, make_order, people):
        order = make_order(route=[("assembly", people.tech), ("paint", people.painter)])
        _start(order, 1, people.tech)
        _complete(order, 1, people.tech)
        _start(order, 2, people.painter)
        result = _complete(order, 2, people.painter)

        assert result["order_finished"] is True
        db.session.refresh(order)
        assert order.status == "Finished"
        assert order.finished_at is not None

    def test_rework_step_blocks_finish(self, make_order, people):
        order = make_order(route=[("assembly", people.tech), ("paint", people.painter)])
        db.session.execute(
            update(FlowStep).where(FlowStep.order_id == order.id, FlowStep.step_order == 1)
            .values(status="rework")
        )
        db.session.commit()
        _start(order, 2, people.painter)
        assert _complete(order, 2, people.painter)["order_finished"] is False
        db.session.refresh(order)
        assert order.status == "In Progress"

    def test_session_closed_when_completed_by_admin(self, make_order, people):
        order = make_order()
        _start(order, 1, people.tech)
        result = _complete(order, 1, people.admin)
        assert result["work_session"]["technician_id"] == people.tech


class TestResetOrder:
    def test_top_admin_resets_everything(self, make_order, people):
        order = make_order(route=[("assembly", people.tech), ("paint", people.painter)])
        _start(order, 1, people.tech)
        _complete(order, 1, people.tech)
        _start(order, 2, people.painter)

        result = flow_service.reset_order(order.order_no, people.top_admin)

        assert result["sessions_closed"] == 1
        assert {s["status"] for s in result["flow_steps"]} == {"pending"}
        assert all(s["started_at"] is None and s["completed_at"] is None for s in result["flow_steps"])
        assert WorkSession.query.filter(WorkSession.completed_at.is_(None)).count() == 0
        reset_at = datetime.fromisoformat(result["reset_at"]).replace(tzinfo=None)
        closed = WorkSession.query.filter_by(order_id=order.id, step_order=2).one()
        assert closed.completed_at.replace(tzinfo=None) == reset_at

        db.session.refresh(order)
        assert order.status == "Released"
        assert order.started_at is None and order.finished_at is None

    def test_plain_admin_cannot_reset(self, make_order, people):
        order = make_order()
        with pytest.raises(PermissionDenied):
            flow_service.reset_order(order.order_no, people.admin)

    def test_order_restartable_after_reset(self, make_order, people):
        order = make_order()
        _start(order, 1, people.tech)
        flow_service.reset_order(order.order_no, people.top_admin)
        assert _start(order, 1, people.tech)["flow_step"]["status"] == "current"
        assert WorkSession.query.count() == 2


class TestRouting:
    def test_steps_numbered_in_order(self, make_order, people, stations):
        order = make_order(route=[("assembly", people.tech), ("cnc", None), ("qc", None)])
        steps = routing_service.list_flow(order.order_no)
        assert [s.step_order for s in steps] == [1, 2, 3]
        assert [s.station_id for s in steps] == [
            stations["assembly"].id, stations["cnc"].id, stations["qc"].id,
        ]

    def test_resave_preserves_completed_steps(self, make_order, people, stations):
        order = make_order(route=[("assembly", people.tech), ("paint", people.painter)])
        _start(order, 1, people.tech)
        _complete(order, 1, people.tech)

        steps = routing_service.save_routing(order.order_no, [
            {"station_id": stations["assembly"].id, "technician_id": people.tech},
            {"station_id": stations["cnc"].id, "technician_id": people.other_tech},
            {"station_id": stations["packing"].id},
        ])
        assert [s.status for s in steps] == ["completed", "pending", "pending"]
        assert steps[0].completed_at is not None

    def test_resave_blocked_while_step_current(self, make_order, people, stations):
        order = make_order()
        _start(order, 1, people.tech)
        with pytest.raises(InvalidState):
            routing_service.save_routing(order.order_no, [stations["cnc"].id])

    def test_unknown_station(self, make_order):
        order = make_order()
        with pytest.raises(NotFoundError):
            routing_service.save_routing(order.order_no, [9999])

    def test_assign_is_idempotent(self, make_order, people, stations):
        order = make_order()
        a = routing_service.assign_technician(order.order_no, stations["assembly"].id, 1, people.other_tech)
        b = routing_service.assign_technician(order.order_no, stations["assembly"].id, 1, people.other_tech)
        assert a.id == b.id
        assert _start(order, 1, people.other_tech)["authorized_via"] == RULE_ASSIGNED

    def test_duplicate_order_no(self, make_order):
        from shopfloor.core.exceptions import ValidationError
        make_order()
        with pytest.raises(ValidationError):
            routing_service.create_order({"order_no": "T-1", "quantity": 1})

    def test_delete_keeps_remediation_children(self, make_order):
        parent = make_order()
        child = routing_service.create_order({"order_no": "T-1-RW000001", "quantity": 2})
        child.parent_order_id = parent.id
        db.session.commit()

        routing_service.delete_order("T-1")
        db.session.refresh(child)
        assert child.parent_order_id is None
        assert FlowStep.query.filter_by(order_id=parent.id).count() == 0
