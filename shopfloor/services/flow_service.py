"""
Flow Store - Service Layer (the step state machine).

Business logic for:
    - start:     pending → current, after authorization; opens a WorkSession
    - complete:  current → completed; closes the WorkSession; finishes the
                 order when every step is completed
    - reset:     top-admin only; every step back to pending, all open
                 sessions closed at the reset instant

Every transition is a conditional UPDATE whose WHERE clause restates the
expected status; zero rows affected means another request won and the call
fails. ``Order.flow_version`` is bumped with the same pattern before a start,
so two concurrent starts on one order cannot both succeed. The next step is
never started automatically.
"""

import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from shopfloor.core.exceptions import AlreadyInProgress, InvalidState, NotFoundError
from shopfloor.models import db
from shopfloor.models.batch import OrderBatch
from shopfloor.models.order import (
    ORDER_STATUS_FINISHED,
    ORDER_STATUS_IN_PROGRESS,
    ORDER_STATUS_RELEASED,
    FlowStep,
    Order,
)
from shopfloor.models.remediation import RemediationRoadmapStep
from shopfloor.services import events, work_session_service
from shopfloor.services.authorization import authorize_step, require_top_admin
from shopfloor.services.routing_service import get_order
from shopfloor.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def find_step(order: Order, station_id: int, step_order: int) -> FlowStep:
    step = FlowStep.query.filter_by(
        order_id=order.id, station_id=station_id, step_order=step_order,
    ).first()
    if not step:
        raise NotFoundError(
            resource="FlowStep", resource_id=f"{order.order_no}/{station_id}/{step_order}",
        )
    return step


def _log_extra(order, step):
    return {"order_no": order.order_no, "station_id": step.station_id, "step_order": step.step_order}


# ── start ────────────────────────────────────────────────────────────────────


def start_step(order_no: str, station_id: int, step_order: int, caller_id, *, repository=None) -> dict:
    """Move a pending step to current.

    Raises:
        NotAssigned: the resolver denied the caller.
        AlreadyInProgress: another step of the order is current, or a
            concurrent start bumped ``flow_version`` first.
        InvalidState: the step is not pending.
    """
    order = get_order(order_no)
    step = find_step(order, station_id, step_order)
    decision = authorize_step(caller_id, step, repository)

    busy = FlowStep.query.filter(
        FlowStep.order_id == order.id,
        FlowStep.status == "current",
        FlowStep.id != step.id,
    ).first()
    if busy:
        raise AlreadyInProgress(
            f"Step {busy.step_order} of {order_no} is already in progress",
            details={"current_step_order": busy.step_order},
        )
    if step.status != "pending":
        raise InvalidState(
            f"Step {step_order} is '{step.status}', expected 'pending'",
            details={"status": step.status},
        )

    now = utcnow()
    try:
        bumped = db.session.execute(
            update(Order)
            .where(Order.id == order.id, Order.flow_version == order.flow_version)
            .values(flow_version=Order.flow_version + 1)
        ).rowcount
        if bumped == 0:
            raise AlreadyInProgress(f"Flow of {order_no} changed concurrently")

        stray = db.session.execute(
            update(FlowStep)
            .where(FlowStep.order_id == order.id, FlowStep.status == "current", FlowStep.id != step.id)
            .values(status="pending")
        ).rowcount
        if stray:
            logger.warning("Cleared %d stray current step(s)", stray, extra=_log_extra(order, step))

        moved = db.session.execute(
            update(FlowStep)
            .where(FlowStep.id == step.id, FlowStep.status == "pending")
            .values(status="current", started_at=now)
        ).rowcount
        if moved == 0:
            raise InvalidState(f"Step {step_order} is no longer pending")

        db.session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == ORDER_STATUS_RELEASED)
            .values(status=ORDER_STATUS_IN_PROGRESS)
        )
        if step_order == 1:
            db.session.execute(
                update(Order)
                .where(Order.id == order.id, Order.started_at.is_(None))
                .values(started_at=now)
            )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise AlreadyInProgress(f"Another step of {order_no} became current")
    except (InvalidState, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info("Step started by=%s as=%s via=%s", caller_id, decision.acting_as, decision.rule,
                extra=_log_extra(order, step))

    session = None
    try:
        session = work_session_service.open_session(
            order.id, station_id, step_order, decision.acting_as,
            started_by=caller_id, authorized_via=decision.rule, started_at=now,
        )
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("WorkSession could not be opened", exc_info=True, extra=_log_extra(order, step))

    if step.is_remediation_order:
        _track_remediation_start(order, step)

    db.session.refresh(step)
    events.emit(
        events.STEP_STARTED, order_no=order_no, station_id=station_id, step_order=step_order,
        caller_id=caller_id, acting_as=decision.acting_as, rule=decision.rule,
    )
    return {
        "flow_step": step.to_dict(),
        "work_session": session.to_dict() if session else None,
        "acting_as": decision.acting_as,
        "authorized_via": decision.rule,
    }


def _track_remediation_start(order: Order, step: FlowStep) -> None:
    """Move the fail batch to the started station and mark the roadmap entry."""
    try:
        db.session.execute(
            update(OrderBatch)
            .where(OrderBatch.child_order_id == order.id)
            .values(current_station_id=step.station_id)
        )
        if step.remediation_order_id:
            db.session.execute(
                update(RemediationRoadmapStep)
                .where(
                    RemediationRoadmapStep.remediation_order_id == step.remediation_order_id,
                    RemediationRoadmapStep.step_order == step.step_order,
                )
                .values(status="in_progress")
            )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("Remediation tracking update failed", exc_info=True, extra=_log_extra(order, step))


# ── complete ─────────────────────────────────────────────────────────────────


def complete_step(order_no: str, station_id: int, step_order: int, caller_id, *, repository=None) -> dict:
    """Move a current step to completed; finish the order after its last step."""
    order = get_order(order_no)
    step = find_step(order, station_id, step_order)
    decision = authorize_step(caller_id, step, repository)

    if step.status != "current":
        raise InvalidState(
            f"Step {step_order} is '{step.status}', expected 'current'",
            details={"status": step.status},
        )

    now = utcnow()
    try:
        moved = db.session.execute(
            update(FlowStep)
            .where(FlowStep.id == step.id, FlowStep.status == "current")
            .values(status="completed", completed_at=now)
        ).rowcount
        if moved == 0:
            raise InvalidState(f"Step {step_order} is no longer current")

        remaining = db.session.execute(
            select(func.count(FlowStep.id))
            .where(FlowStep.order_id == order.id, FlowStep.status != "completed")
        ).scalar_one()
        finished = False
        if remaining == 0:
            finished = db.session.execute(
                update(Order)
                .where(Order.id == order.id, Order.finished_at.is_(None))
                .values(status=ORDER_STATUS_FINISHED, finished_at=now)
            ).rowcount > 0
        db.session.commit()
    except (InvalidState, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info("Step completed by=%s as=%s", caller_id, decision.acting_as,
                extra=_log_extra(order, step))

    session = None
    try:
        session = work_session_service.close_session(
            order.id, station_id, step_order, decision.acting_as, completed_at=now,
        )
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("WorkSession could not be closed", exc_info=True, extra=_log_extra(order, step))

    if step.is_remediation_order and step.remediation_order_id:
        try:
            db.session.execute(
                update(RemediationRoadmapStep)
                .where(
                    RemediationRoadmapStep.remediation_order_id == step.remediation_order_id,
                    RemediationRoadmapStep.step_order == step.step_order,
                )
                .values(status="completed")
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.warning("Roadmap status update failed", exc_info=True, extra=_log_extra(order, step))

    db.session.refresh(step)
    events.emit(
        events.STEP_COMPLETED, order_no=order_no, station_id=station_id, step_order=step_order,
        caller_id=caller_id, acting_as=decision.acting_as,
    )
    if finished:
        logger.info("Order finished", extra={"order_no": order_no})
        events.emit(events.ORDER_FINISHED, order_no=order_no)
    return {
        "flow_step": step.to_dict(),
        "work_session": session.to_dict() if session else None,
        "order_finished": finished,
    }


# ── reset ────────────────────────────────────────────────────────────────────


def reset_order(order_no: str, caller_id, *, repository=None) -> dict:
    """Return every step to pending and the order to Released."""
    require_top_admin(caller_id, "reset an order flow", repository)
    order = get_order(order_no)

    now = utcnow()
    try:
        db.session.execute(
            update(FlowStep)
            .where(FlowStep.order_id == order.id)
            .values(status="pending", started_at=None, completed_at=None)
        )
        closed = work_session_service.close_open_sessions(order.id, now)
        db.session.execute(
            update(Order)
            .where(Order.id == order.id)
            .values(
                status=ORDER_STATUS_RELEASED,
                started_at=None,
                finished_at=None,
                flow_version=Order.flow_version + 1,
            )
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise

    logger.info("Order flow reset by=%s sessions_closed=%d", caller_id, closed,
                   extra={"order_no": order_no})
    events.emit(events.ORDER_RESET, order_no=order_no, caller_id=caller_id, reset_at=now.isoformat())
    steps = FlowStep.query.filter_by(order_id=order.id).order_by(FlowStep.step_order).all()
    return {
        "flow_steps": [s.to_dict() for s in steps],
        "sessions_closed": closed,
        "reset_at": now.isoformat(),
    }
