"""
Remediation (rework) lifecycle tests.

Covers the inspection split, approval into a ``<parent>-RW<suffix>`` child
order, rejection, merge-back into the parent and the root-order walk.
"""

import re

import pytest

from shopfloor.core.exceptions import InvalidState, NotFoundError, PermissionDenied, ValidationError
from shopfloor.models import db
from shopfloor.models.batch import OrderBatch
from shopfloor.models.order import FlowStep, Order
from shopfloor.models.remediation import RemediationOrder
from shopfloor.models.work_session import WorkSession
from shopfloor.services import events, flow_service, remediation_service, routing_service
from shopfloor.services.authorization import RULE_ASSIGNED
from shopfloor.services.routing_service import get_order

CHILD_NO = re.compile(r"^T-1-RW\d{6}$")


@pytest.fixture()
def t1(make_order, people):
    """T-1: Assembly → QC → Packing, quantity 10."""
    return make_order(route=[
        ("assembly", people.tech),
        ("qc", None, "QC-T1"),
        ("packing", people.other_tech),
    ])


def _run(order, step_order, caller, action="both"):
    step = FlowStep.query.filter_by(order_id=order.id, step_order=step_order).one()
    if action in ("start", "both"):
        flow_service.start_step(order.order_no, step.station_id, step_order, caller)
    if action in ("complete", "both"):
        flow_service.complete_step(order.order_no, step.station_id, step_order, caller)


def _inspect(order, stations, people, pass_qty=8, fail_qty=2, **kw):
    kw.setdefault("failed_task_ref", "QC-T1")
    kw.setdefault("roadmap", [{"station_id": stations["rework"].id,
                               "assigned_technician_id": people.tech}])
    return remediation_service.create_remediation(
        order.order_no, inspection_ref="INS-001", pass_qty=pass_qty, fail_qty=fail_qty,
        requester_id=people.inspector, **kw,
    )


def _steps(order):
    return {s.step_order: s.status for s in FlowStep.query.filter_by(order_id=order.id)}


class TestCreate:
    def test_inspection_splits_and_flags_failed_step(self, t1, stations, people):
        _run(t1, 1, people.tech)
        assert _steps(t1)[2] == "pending"
        _run(t1, 2, people.inspector, action="start")

        result = _inspect(t1, stations, people)

        pass_b = db.session.get(OrderBatch, result["pass_batch_id"])
        fail_b = db.session.get(OrderBatch, result["fail_batch_id"])
        assert (pass_b.quantity, fail_b.quantity) == (8, 2)
        assert fail_b.status == "rework"

        ro = remediation_service.get_remediation(result["remediation_order_id"])
        assert (ro.approval_status, ro.status, ro.severity) == ("pending", "pending", "major")
        assert ro.quantity == 2
        assert [r.station_id for r in ro.roadmap] == [stations["rework"].id]

        db.session.refresh(t1)
        assert t1.pass_quantity == 8
        assert _steps(t1) == {1: "completed", 2: "rework", 3: "pending"}
        assert WorkSession.query.filter(WorkSession.completed_at.is_(None)).count() == 0

    def test_completed_inspection_step_is_flagged(self, t1, stations, people):
        _run(t1, 1, people.tech)
        _run(t1, 2, people.inspector)
        _inspect(t1, stations, people)
        assert _steps(t1) == {1: "completed", 2: "rework", 3: "pending"}

        _run(t1, 3, people.other_tech)
        db.session.refresh(t1)
        assert _steps(t1)[2] == "rework"
        assert t1.status == "In Progress"
        assert t1.finished_at is None

    def test_all_pass_creates_no_remediation(self, t1, stations, people):
        result = _inspect(t1, stations, people, pass_qty=10, fail_qty=0, failed_task_ref=None)
        assert result["fail_batch_id"] is None
        assert result["remediation_order_id"] is None
        assert RemediationOrder.query.count() == 0

    def test_fail_requires_failure_reference(self, t1, stations, people):
        with pytest.raises(ValidationError):
            _inspect(t1, stations, people, failed_task_ref=None)
        assert OrderBatch.query.count() == 0

    def test_fail_requires_roadmap(self, t1, stations, people):
        with pytest.raises(ValidationError):
            _inspect(t1, stations, people, roadmap=[])

    def test_quantity_cannot_exceed_order(self, t1, stations, people):
        with pytest.raises(ValidationError):
            _inspect(t1, stations, people, pass_qty=9, fail_qty=2)

    def test_invalid_severity(self, t1, stations, people):
        with pytest.raises(ValidationError):
            _inspect(t1, stations, people, severity="cosmetic")

    def test_failed_station_fallback(self, t1, stations, people):
        _inspect(t1, stations, people, failed_task_ref=None, failed_station_id=stations["packing"].id)
        assert _steps(t1)[3] == "rework"

    def test_unknown_roadmap_station(self, t1, stations, people):
        with pytest.raises(NotFoundError):
            _inspect(t1, stations, people, roadmap=[{"station_id": 777}])

    def test_roadmap_entry_must_be_station(self, t1, stations, people):
        with pytest.raises(ValidationError):
            _inspect(t1, stations, people, roadmap=["3"])
        with pytest.raises(ValidationError):
            _inspect(t1, stations, people, roadmap=[{"station_id": "three"}])
        assert OrderBatch.query.count() == 0

    def test_list_pending_newest_first(self, t1, stations, people):
        first = _inspect(t1, stations, people, pass_qty=0, fail_qty=1)
        second = _inspect(t1, stations, people, pass_qty=0, fail_qty=1)
        pending = remediation_service.list_pending()
        assert [r.id for r in pending] == [
            second["remediation_order_id"], first["remediation_order_id"],
        ]


class TestApprove:
    def test_creates_child_with_pending_steps(self, t1, stations, people):
        ro_id = _inspect(t1, stations, people, roadmap=[
            {"station_id": stations["rework"].id, "assigned_technician_id": people.tech},
            {"station_id": stations["paint"].id, "assigned_technician_id": people.painter},
        ])["remediation_order_id"]

        result = remediation_service.approve_remediation(ro_id, people.admin)

        assert CHILD_NO.match(result["child_order_no"])
        assert result["flow_steps_created"] == 2
        assert result["root_order_no"] == "T-1"

        child = get_order(result["child_order_no"])
        assert child.parent_order_id == t1.id
        assert child.quantity == 2
        assert child.priority == "High"
        assert child.status == "In Progress"
        assert [(s.step_order, s.status) for s in child.flow_steps] == [(1, "pending"), (2, "pending")]
        assert all(s.is_remediation_order and s.remediation_order_id == ro_id for s in child.flow_steps)

        ro = remediation_service.get_remediation(ro_id)
        assert (ro.approval_status, ro.status) == ("approved", "in_progress")
        assert ro.child_order_id == child.id
        batch = db.session.get(OrderBatch, ro.batch_id)
        assert batch.child_order_id == child.id
        assert batch.current_station_id == stations["rework"].id

    def test_requires_admin(self, t1, stations, people):
        ro_id = _inspect(t1, stations, people)["remediation_order_id"]
        with pytest.raises(PermissionDenied):
            remediation_service.approve_remediation(ro_id, people.supervisor)

    def test_cannot_approve_twice(self, t1, stations, people):
        ro_id = _inspect(t1, stations, people)["remediation_order_id"]
        remediation_service.approve_remediation(ro_id, people.admin)
        with pytest.raises(InvalidState):
            remediation_service.approve_remediation(ro_id, people.admin)
        assert Order.query.filter(Order.parent_order_id == t1.id).count() == 1

    def test_failed_child_creation_rolls_back_approval(self, t1, stations, people, monkeypatch):
        ro_id = _inspect(t1, stations, people)["remediation_order_id"]

        def boom(parent_no, digits=None):
            raise InvalidState("numbering exhausted")

        monkeypatch.setattr(remediation_service, "generate_child_order_no", boom)
        with pytest.raises(InvalidState):
            remediation_service.approve_remediation(ro_id, people.admin)

        ro = remediation_service.get_remediation(ro_id)
        assert ro.approval_status == "pending"
        assert ro.child_order_id is None

    def test_roadmap_technician_counts_as_assigned(self, t1, stations, people):
        ro_id = _inspect(t1, stations, people)["remediation_order_id"]
        child_no = remediation_service.approve_remediation(ro_id, people.admin)["child_order_no"]
        child = get_order(child_no)

        result = flow_service.start_step(child_no, stations["rework"].id, 1, people.tech)
        assert result["authorized_via"] == RULE_ASSIGNED

        ro = remediation_service.get_remediation(ro_id)
        assert ro.roadmap[0].status == "in_progress"
        assert remediation_service.get_progress(ro_id)["completed_steps"] == 0
        flow_service.complete_step(child_no, stations["rework"].id, 1, people.tech)
        db.session.refresh(child)
        assert child.status == "Finished"
        assert remediation_service.get_progress(ro_id)["percentage"] == 100.0


class TestReject:
    def test_reject_releases_batch_and_step(self, t1, stations, people):
        ro_id = _inspect(t1, stations, people)["remediation_order_id"]
        result = remediation_service.reject_remediation(ro_id, people.admin, "Acceptable finish")

        assert result["status"] == "cancelled"
        ro = remediation_service.get_remediation(ro_id)
        assert ro.rejection_reason == "Acceptable finish"
        assert db.session.get(OrderBatch, ro.batch_id).status == "in_progress"
        assert _steps(t1)[2] == "pending"

    def test_reason_required(self, t1, stations, people):
        ro_id = _inspect(t1, stations, people)["remediation_order_id"]
        with pytest.raises(ValidationError):
            remediation_service.reject_remediation(ro_id, people.admin, "  ")

    def test_reject_after_routing_resave(self, t1, make_order, stations, people):
        ro_id = _inspect(t1, stations, people)["remediation_order_id"]
        make_order(order_no="T-2", route=[("assembly", people.tech)])
        routing_service.save_routing("T-1", [
            {"station_id": stations["assembly"].id, "technician_id": people.tech},
            {"station_id": stations["qc"].id, "inspection_task_ref": "QC-T1"},
            {"station_id": stations["packing"].id, "technician_id": people.other_tech},
        ], assigned_by=people.admin)

        remediation_service.reject_remediation(ro_id, people.admin, "Within tolerance")
        assert _steps(t1)[2] == "pending"

    def test_approved_cannot_be_rejected(self, t1, stations, people):
        ro_id = _inspect(t1, stations, people)["remediation_order_id"]
        remediation_service.approve_remediation(ro_id, people.admin)
        with pytest.raises(InvalidState):
            remediation_service.reject_remediation(ro_id, people.admin, "too late")


class TestMergeApprove:
    def _approved_child(self, t1, stations, people):
        _run(t1, 1, people.tech)
        _run(t1, 2, people.inspector, action="start")
        ro_id = _inspect(t1, stations, people)["remediation_order_id"]
        child_no = remediation_service.approve_remediation(ro_id, people.admin)["child_order_no"]
        return ro_id, child_no

    def test_full_scenario(self, t1, stations, people):
        ro_id, child_no = self._approved_child(t1, stations, people)
        assert CHILD_NO.match(child_no)

        with pytest.raises(InvalidState):
            remediation_service.merge_approve_remediation(ro_id, people.admin)

        _run(get_order(child_no), 1, people.tech)
        result = remediation_service.merge_approve_remediation(ro_id, people.admin)

        assert result["merged_quantity"] == 2
        assert result["new_accepted_quantity"] == 10
        assert result["parent_finished"] is False
        db.session.refresh(t1)
        assert t1.pass_quantity == 10
        assert t1.status == "In Progress"
        assert _steps(t1) == {1: "completed", 2: "completed", 3: "pending"}

        ro = remediation_service.get_remediation(ro_id)
        assert ro.status == "merged"
        assert db.session.get(OrderBatch, ro.batch_id).status == "completed"

    def test_parent_finishes_when_pack_done(self, t1, stations, people):
        ro_id, child_no = self._approved_child(t1, stations, people)
        _run(t1, 3, people.other_tech)
        db.session.refresh(t1)
        assert t1.status == "In Progress"

        finished = []
        events.register_listener(events.ORDER_FINISHED)(lambda et, p: finished.append(p["order_no"]))

        _run(get_order(child_no), 1, people.tech)
        result = remediation_service.merge_approve_remediation(ro_id, people.admin)

        assert result["parent_finished"] is True
        db.session.refresh(t1)
        assert t1.status == "Finished"
        assert t1.finished_at is not None
        assert finished[-1] == "T-1"

    def test_child_pass_quantity_wins(self, t1, stations, people):
        ro_id, child_no = self._approved_child(t1, stations, people)
        child = get_order(child_no)
        _run(child, 1, people.tech)
        child.pass_quantity = 1
        db.session.commit()

        result = remediation_service.merge_approve_remediation(ro_id, people.admin)
        assert result["merged_quantity"] == 1
        assert result["new_accepted_quantity"] == 9

    def test_child_finish_time_kept_on_merge(self, t1, stations, people):
        ro_id, child_no = self._approved_child(t1, stations, people)
        child = get_order(child_no)
        _run(child, 1, people.tech)
        db.session.refresh(child)
        assert child.status == "Finished"
        finished_at = child.finished_at

        remediation_service.merge_approve_remediation(ro_id, people.admin)
        db.session.refresh(child)
        assert child.finished_at == finished_at

    def test_routing_resave_keeps_rework_step_linked(self, t1, make_order, stations, people):
        ro_id, child_no = self._approved_child(t1, stations, people)
        make_order(order_no="T-2", route=[("assembly", people.tech)])
        routing_service.save_routing("T-1", [
            {"station_id": stations["assembly"].id, "technician_id": people.tech},
            {"station_id": stations["qc"].id, "inspection_task_ref": "QC-T1"},
            {"station_id": stations["packing"].id, "technician_id": people.other_tech},
        ], assigned_by=people.admin)

        rework_step = FlowStep.query.filter_by(order_id=t1.id, step_order=2).one()
        assert rework_step.status == "rework"
        assert remediation_service.get_remediation(ro_id).failed_step_id == rework_step.id

        _run(get_order(child_no), 1, people.tech)
        _run(t1, 3, people.other_tech)
        result = remediation_service.merge_approve_remediation(ro_id, people.admin)

        assert result["parent_finished"] is True
        assert _steps(t1) == {1: "completed", 2: "completed", 3: "completed"}

    def test_cannot_merge_twice(self, t1, stations, people):
        ro_id, child_no = self._approved_child(t1, stations, people)
        _run(get_order(child_no), 1, people.tech)
        remediation_service.merge_approve_remediation(ro_id, people.admin)
        with pytest.raises(InvalidState):
            remediation_service.merge_approve_remediation(ro_id, people.admin)
        db.session.refresh(t1)
        assert t1.pass_quantity == 10

    def test_pending_remediation_cannot_merge(self, t1, stations, people):
        ro_id = _inspect(t1, stations, people)["remediation_order_id"]
        with pytest.raises(InvalidState):
            remediation_service.merge_approve_remediation(ro_id, people.admin)


class TestRootOrder:
    def test_nested_remediation_reports_root(self, t1, stations, people):
        ro_id = _inspect(t1, stations, people)["remediation_order_id"]
        child_no = remediation_service.approve_remediation(ro_id, people.admin)["child_order_no"]

        nested = remediation_service.create_remediation(
            child_no, inspection_ref="INS-002", pass_qty=1, fail_qty=1,
            requester_id=people.inspector, failed_station_id=stations["rework"].id,
            roadmap=[stations["paint"].id],
        )
        result = remediation_service.approve_remediation(nested["remediation_order_id"], people.admin)

        assert result["root_order_no"] == "T-1"
        assert result["child_order_no"].startswith(f"{child_no}-RW")

    def test_walk_is_bounded(self, app, t1):
        chain = [t1]
        for n in range(4):
            o = Order(order_no=f"T-1-L{n}", quantity=1, parent_order_id=chain[-1].id)
            db.session.add(o)
            db.session.flush()
            chain.append(o)
        db.session.commit()

        assert remediation_service.resolve_root_order(chain[-1]).order_no == "T-1"
        assert remediation_service.resolve_root_order(chain[-1], max_depth=2).order_no == "T-1-L1"

    def test_child_numbers_never_collide(self, t1, monkeypatch):
        monkeypatch.setattr(remediation_service.time, "time", lambda: 1_700_000_123.5)
        first = remediation_service.generate_child_order_no("T-1")
        db.session.add(Order(order_no=first, quantity=1))
        db.session.commit()
        second = remediation_service.generate_child_order_no("T-1")
        assert first == "T-1-RW123500"
        assert second == "T-1-RW123501"
