"""
Remediation (Rework) Manager - Service Layer.

Business logic for:
    - create:         split the inspected quantity into pass/fail batches and
                      raise a pending RemediationOrder with its roadmap
    - approve:        synthesize the child order ``<order>-RW<suffix>`` and one
                      pending FlowStep per roadmap entry, in one transaction
    - reject:         cancel the remediation and release the fail batch
    - merge_approve:  fold the child's accepted units into the parent order
    - progress:       child-step completion for a remediation
    - root lookup:    walk ``parent_order_id`` upward, bounded by
                      ``REMEDIATION_CHAIN_MAX_DEPTH``

Lifecycle:
    approval_status:  pending → approved | rejected
    status:           pending → in_progress → merged  |  pending → cancelled
"""

import logging
import time

from flask import current_app
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from shopfloor.core.exceptions import InvalidState, NotFoundError, ValidationError
from shopfloor.models import db
from shopfloor.models.batch import OrderBatch
from shopfloor.models.order import (
    ORDER_STATUS_FINISHED,
    ORDER_STATUS_IN_PROGRESS,
    FlowStep,
    Order,
)
from shopfloor.models.remediation import (
    REMEDIATION_SEVERITIES,
    RemediationOrder,
    RemediationRoadmapStep,
)
from shopfloor.models.station import Station
from shopfloor.models.work_session import WorkSession
from shopfloor.services import events
from shopfloor.services.authorization import require_admin
from shopfloor.services.batch_service import split_on_inspection
from shopfloor.services.routing_service import get_order
from shopfloor.utils.helpers import require_quantity, utcnow

logger = logging.getLogger(__name__)

OPEN_REMEDIATION_STATUSES = ("pending", "in_progress")


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_remediation(remediation_id: int) -> RemediationOrder:
    ro = db.session.get(RemediationOrder, remediation_id)
    if not ro:
        raise NotFoundError(resource="RemediationOrder", resource_id=remediation_id)
    return ro


def list_pending() -> list[RemediationOrder]:
    """Remediation orders awaiting approval, newest first."""
    return (
        RemediationOrder.query
        .filter_by(approval_status="pending")
        .order_by(RemediationOrder.created_at.desc(), RemediationOrder.id.desc())
        .all()
    )


def list_for_order(order_no: str) -> list[RemediationOrder]:
    order = get_order(order_no)
    return RemediationOrder.query.filter_by(order_id=order.id).order_by(RemediationOrder.id).all()


def resolve_root_order(order: Order, max_depth: int | None = None) -> Order:
    """Top of the remediation chain above ``order`` (itself when it has no parent)."""
    if max_depth is None:
        max_depth = current_app.config["REMEDIATION_CHAIN_MAX_DEPTH"]
    current = order
    hops = 0
    while current.parent_order_id and hops < max_depth:
        parent = db.session.get(Order, current.parent_order_id)
        if parent is None:
            break
        current = parent
        hops += 1
    return current


def generate_child_order_no(parent_order_no: str, digits: int | None = None) -> str:
    """``<parent>-RW<suffix>`` from the millisecond clock, bumped until unused."""
    if digits is None:
        digits = current_app.config["REMEDIATION_SUFFIX_DIGITS"]
    modulus = 10 ** digits
    suffix = int(time.time() * 1000) % modulus
    for _ in range(modulus):
        candidate = f"{parent_order_no}-RW{suffix:0{digits}d}"
        exists = db.session.execute(
            select(Order.id).where(Order.order_no == candidate)
        ).first()
        if not exists:
            return candidate
        suffix = (suffix + 1) % modulus
    raise InvalidState(f"No free remediation number left for {parent_order_no}")


def get_progress(remediation_id: int) -> dict:
    ro = get_remediation(remediation_id)
    if ro.child_order_id:
        total, completed = db.session.execute(
            select(
                func.count(FlowStep.id),
                func.coalesce(func.sum(case((FlowStep.status == "completed", 1), else_=0)), 0),
            ).where(FlowStep.order_id == ro.child_order_id)
        ).one()
    else:
        total, completed = len(ro.roadmap), 0
    return {
        "remediation_order_id": ro.id,
        "status": ro.status,
        "total_steps": total,
        "completed_steps": int(completed),
        "percentage": round(int(completed) * 100.0 / total, 1) if total else 0.0,
    }


# ── create ───────────────────────────────────────────────────────────────────


def _validate_roadmap(roadmap) -> list[dict]:
    if not roadmap:
        raise ValidationError("Roadmap is required for remediation orders",
                              details={"hint": "provide at least one station"})
    entries = []
    for index, raw in enumerate(roadmap, start=1):
        if isinstance(raw, int):
            entry = {"station_id": raw}
        elif isinstance(raw, dict):
            entry = dict(raw)
        else:
            raise ValidationError(f"Roadmap entry {index} must be a station id or an object",
                                  details={"entry": raw})
        try:
            entry["station_id"] = int(entry["station_id"])
        except (KeyError, TypeError, ValueError):
            raise ValidationError(f"Roadmap entry {index} needs an integer station_id",
                                  details={"entry": raw})
        entries.append(entry)
    ids = {e["station_id"] for e in entries}
    stations = {s.id: s for s in Station.query.filter(Station.id.in_(ids)).all()}
    missing = sorted(ids - set(stations))
    if missing:
        raise NotFoundError(resource="Station", resource_id=missing[0])
    for e in entries:
        e["station"] = stations[e["station_id"]]
    return entries


def create_remediation(
    order_no: str,
    *,
    inspection_ref: str,
    pass_qty,
    fail_qty,
    requester_id,
    severity: str | None = None,
    failed_task_ref: str | None = None,
    failed_station_id: int | None = None,
    roadmap=None,
    reason: str | None = None,
    notes: str | None = None,
) -> dict:
    """Record an inspection outcome and, for failed units, a pending remediation.

    Returns:
        ``{"pass_batch_id", "fail_batch_id", "remediation_order_id"}``; ids are
        None for parts that were not created.
    """
    order = get_order(order_no)
    if not inspection_ref:
        raise ValidationError("inspection_ref is required")
    if requester_id is None:
        raise ValidationError("requester_id is required")
    pass_qty = require_quantity(pass_qty, "pass_qty")
    fail_qty = require_quantity(fail_qty, "fail_qty")
    if pass_qty + fail_qty == 0:
        raise ValidationError("pass_qty or fail_qty must be greater than zero")
    if pass_qty + fail_qty > order.quantity:
        raise ValidationError(
            "Inspected quantity exceeds the order quantity",
            details={"pass_qty": pass_qty, "fail_qty": fail_qty, "quantity": order.quantity},
        )

    entries = []
    if fail_qty > 0:
        if not failed_task_ref and failed_station_id is None:
            raise ValidationError(
                "failed_task_ref or failed_station_id is required when fail_qty > 0",
                details={"fail_qty": fail_qty},
            )
        severity = severity or current_app.config["DEFAULT_REMEDIATION_SEVERITY"]
        if severity not in REMEDIATION_SEVERITIES:
            raise ValidationError(f"Invalid severity: {severity}",
                                  details={"allowed": sorted(REMEDIATION_SEVERITIES)})
        if failed_station_id is not None and not db.session.get(Station, failed_station_id):
            raise NotFoundError(resource="Station", resource_id=failed_station_id)
        entries = _validate_roadmap(roadmap)

    ro = None
    try:
        pass_batch, fail_batch = split_on_inspection(order, pass_qty, fail_qty, inspection_ref)
        if pass_qty:
            db.session.execute(
                update(Order).where(Order.id == order.id)
                .values(pass_quantity=func.coalesce(Order.pass_quantity, 0) + pass_qty)
            )
        if fail_qty:
            ro = RemediationOrder(
                order_id=order.id,
                batch_id=fail_batch.id,
                quantity=fail_qty,
                severity=severity,
                failed_station_id=failed_station_id,
                failed_task_ref=failed_task_ref,
                inspection_ref=inspection_ref,
                reason=reason or current_app.config["DEFAULT_REMEDIATION_REASON"],
                notes=notes,
                created_by=requester_id,
                approval_status="pending",
                status="pending",
            )
            for index, e in enumerate(entries, start=1):
                ro.roadmap.append(RemediationRoadmapStep(
                    step_order=index,
                    station_id=e["station"].id,
                    station_name=e.get("station_name") or e["station"].name,
                    assigned_technician_id=e.get("assigned_technician_id"),
                    estimated_hours=e.get("estimated_hours"),
                    notes=e.get("notes"),
                ))
            db.session.add(ro)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise

    logger.info("Inspection recorded pass=%d fail=%d remediation=%s", pass_qty, fail_qty,
                ro.id if ro else None, extra={"order_no": order_no})

    if ro is not None:
        _mark_failed_step(order, ro)
        events.emit(events.REMEDIATION_CREATED, order_no=order_no, remediation_order_id=ro.id,
                    quantity=fail_qty, severity=severity)

    return {
        "pass_batch_id": pass_batch.id if pass_batch else None,
        "fail_batch_id": fail_batch.id if fail_batch else None,
        "remediation_order_id": ro.id if ro else None,
    }


def _mark_failed_step(order: Order, ro: RemediationOrder) -> None:
    """Flag the failed step ``rework`` and clear other current steps."""
    try:
        step = None
        if ro.failed_task_ref:
            step = FlowStep.query.filter_by(
                order_id=order.id, inspection_task_ref=ro.failed_task_ref,
            ).first()
        if step is None and ro.failed_station_id is not None:
            step = (
                FlowStep.query
                .filter(
                    FlowStep.order_id == order.id,
                    FlowStep.station_id == ro.failed_station_id,
                    FlowStep.status.in_(("current", "pending")),
                )
                .order_by((FlowStep.status != "current"), FlowStep.step_order)
                .first()
            )

        now = utcnow()
        if step is not None:
            was_current = step.status == "current"
            db.session.execute(
                update(FlowStep).where(FlowStep.id == step.id).values(status="rework")
            )
            ro.failed_step_id = step.id
            if was_current:
                for ws in WorkSession.query.filter(
                    WorkSession.order_id == order.id,
                    WorkSession.station_id == step.station_id,
                    WorkSession.step_order == step.step_order,
                    WorkSession.completed_at.is_(None),
                ).all():
                    ws.close(now)
        else:
            logger.warning("Failed step not found task_ref=%s station=%s",
                           ro.failed_task_ref, ro.failed_station_id, extra={"order_no": order.order_no})

        db.session.execute(
            update(FlowStep)
            .where(FlowStep.order_id == order.id, FlowStep.status == "current")
            .values(status="pending")
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("Failed step could not be marked for rework", exc_info=True,
                       extra={"order_no": order.order_no})


# ── approve ──────────────────────────────────────────────────────────────────


def approve_remediation(remediation_id: int, approver_id) -> dict:
    """Approve and materialize the child order with all-pending steps."""
    require_admin(approver_id, "approve a remediation order")
    ro = get_remediation(remediation_id)
    if ro.approval_status != "pending" or ro.status != "pending":
        raise InvalidState(
            f"Remediation order is '{ro.approval_status}/{ro.status}', expected 'pending'",
        )
    roadmap = list(ro.roadmap)
    if not roadmap:
        raise InvalidState("No roadmap found for remediation order", details={"id": ro.id})

    parent = ro.order
    root = resolve_root_order(parent)
    now = utcnow()
    try:
        flipped = db.session.execute(
            update(RemediationOrder)
            .where(RemediationOrder.id == ro.id, RemediationOrder.approval_status == "pending")
            .values(
                approval_status="approved",
                status="in_progress",
                approved_by=approver_id,
                approved_at=now,
                root_order_id=root.id,
            )
        ).rowcount
        if flipped == 0:
            raise InvalidState("Remediation order was decided concurrently")

        child = Order(
            order_no=generate_child_order_no(parent.order_no),
            quantity=ro.quantity,
            description=f"Rework: {parent.description or ''}".strip(),
            customer_name=parent.customer_name,
            due_date=parent.due_date,
            priority=current_app.config["REMEDIATION_CHILD_PRIORITY"],
            status=ORDER_STATUS_IN_PROGRESS,
            parent_order_id=parent.id,
        )
        db.session.add(child)
        db.session.flush()

        for entry in roadmap:
            db.session.add(FlowStep(
                order_id=child.id,
                station_id=entry.station_id,
                step_order=entry.step_order,
                status="pending",
                batch_id=ro.batch_id,
                remediation_order_id=ro.id,
                is_remediation_path=True,
                is_remediation_order=True,
            ))
        db.session.execute(
            update(RemediationOrder).where(RemediationOrder.id == ro.id)
            .values(child_order_id=child.id)
        )
        db.session.commit()
    except (InvalidState, SQLAlchemyError):
        db.session.rollback()
        raise

    child_no = child.order_no
    logger.info("Remediation approved id=%s child=%s steps=%d root=%s", ro.id, child_no,
                len(roadmap), root.order_no, extra={"order_no": parent.order_no})

    if ro.batch_id:
        try:
            db.session.execute(
                update(OrderBatch).where(OrderBatch.id == ro.batch_id)
                .values(child_order_id=child.id, status="rework",
                        current_station_id=roadmap[0].station_id)
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.warning("Fail batch could not be linked to %s", child_no, exc_info=True,
                           extra={"order_no": parent.order_no})

    events.emit(events.REMEDIATION_APPROVED, order_no=parent.order_no, remediation_order_id=ro.id,
                child_order_no=child_no, approver_id=approver_id)
    return {
        "remediation_order_id": ro.id,
        "child_order_no": child_no,
        "flow_steps_created": len(roadmap),
        "root_order_no": root.order_no,
    }


# ── reject ───────────────────────────────────────────────────────────────────


def reject_remediation(remediation_id: int, approver_id, reason: str) -> dict:
    require_admin(approver_id, "reject a remediation order")
    if not reason or not str(reason).strip():
        raise ValidationError("A rejection reason is required")
    ro = get_remediation(remediation_id)
    if ro.approval_status != "pending":
        raise InvalidState(f"Remediation order is '{ro.approval_status}', expected 'pending'")

    try:
        rejected = db.session.execute(
            update(RemediationOrder)
            .where(RemediationOrder.id == ro.id, RemediationOrder.approval_status == "pending")
            .values(
                approval_status="rejected",
                status="cancelled",
                approved_by=approver_id,
                approved_at=utcnow(),
                rejection_reason=str(reason).strip(),
            )
        ).rowcount
        if rejected == 0:
            raise InvalidState("Remediation order was decided concurrently")
        db.session.commit()
    except (InvalidState, SQLAlchemyError):
        db.session.rollback()
        raise

    order_no = ro.order.order_no
    logger.info("Remediation rejected id=%s", ro.id, extra={"order_no": order_no})

    try:
        if ro.batch_id:
            db.session.execute(
                update(OrderBatch).where(OrderBatch.id == ro.batch_id).values(status="in_progress")
            )
        if ro.failed_step_id:
            db.session.execute(
                update(FlowStep)
                .where(FlowStep.id == ro.failed_step_id, FlowStep.status == "rework")
                .values(status="pending")
            )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("Batch/step restore after rejection failed", exc_info=True,
                       extra={"order_no": order_no})

    events.emit(events.REMEDIATION_REJECTED, order_no=order_no, remediation_order_id=ro.id,
                approver_id=approver_id, reason=reason)
    return {"remediation_order_id": ro.id, "approval_status": "rejected", "status": "cancelled"}


# ── merge ────────────────────────────────────────────────────────────────────


def merge_approve_remediation(remediation_id: int, approver_id) -> dict:
    """Add the child's accepted units to the parent and close the remediation."""
    require_admin(approver_id, "merge a remediation order")
    ro = get_remediation(remediation_id)
    if ro.status != "in_progress" or ro.approval_status != "approved":
        raise InvalidState(f"Remediation order is '{ro.status}', expected 'in_progress'")
    child = ro.child_order
    if child is None:
        raise InvalidState("Remediation order has no child order to merge")

    total, completed = db.session.execute(
        select(
            func.count(FlowStep.id),
            func.coalesce(func.sum(case((FlowStep.status == "completed", 1), else_=0)), 0),
        ).where(FlowStep.order_id == child.id)
    ).one()
    if total == 0 or int(completed) < total:
        raise InvalidState(
            f"Child order {child.order_no} still has unfinished steps",
            details={"completed_steps": int(completed), "total_steps": total},
        )

    merge_qty = child.pass_quantity if child.pass_quantity is not None else child.quantity
    parent = ro.order
    now = utcnow()
    try:
        merged = db.session.execute(
            update(RemediationOrder)
            .where(RemediationOrder.id == ro.id, RemediationOrder.status == "in_progress")
            .values(status="merged", merged_at=now, merged_quantity=merge_qty)
        ).rowcount
        if merged == 0:
            raise InvalidState("Remediation order was merged concurrently")

        db.session.execute(
            update(Order).where(Order.id == parent.id)
            .values(pass_quantity=func.coalesce(Order.pass_quantity, 0) + merge_qty)
        )
        db.session.execute(
            update(Order).where(Order.id == child.id)
            .values(status=ORDER_STATUS_FINISHED,
                    finished_at=func.coalesce(Order.finished_at, now))
        )

        if ro.failed_step_id:
            others = db.session.execute(
                select(func.count(RemediationOrder.id)).where(
                    RemediationOrder.failed_step_id == ro.failed_step_id,
                    RemediationOrder.id != ro.id,
                    RemediationOrder.status.in_(OPEN_REMEDIATION_STATUSES),
                )
            ).scalar_one()
            if others == 0:
                db.session.execute(
                    update(FlowStep)
                    .where(FlowStep.id == ro.failed_step_id, FlowStep.status == "rework")
                    .values(status="completed", completed_at=now)
                )

        remaining = db.session.execute(
            select(func.count(FlowStep.id))
            .where(FlowStep.order_id == parent.id, FlowStep.status != "completed")
        ).scalar_one()
        parent_finished = False
        if remaining == 0:
            parent_finished = db.session.execute(
                update(Order)
                .where(Order.id == parent.id, Order.finished_at.is_(None))
                .values(status=ORDER_STATUS_FINISHED, finished_at=now)
            ).rowcount > 0
        db.session.commit()
    except (InvalidState, SQLAlchemyError):
        db.session.rollback()
        raise

    db.session.refresh(parent)
    logger.info("Remediation merged id=%s qty=%d pass_quantity=%s", ro.id, merge_qty,
                parent.pass_quantity, extra={"order_no": parent.order_no})

    if ro.batch_id:
        try:
            db.session.execute(
                update(OrderBatch).where(OrderBatch.id == ro.batch_id).values(status="completed")
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.warning("Fail batch could not be completed", exc_info=True,
                           extra={"order_no": parent.order_no})

    events.emit(events.REMEDIATION_MERGED, order_no=parent.order_no, remediation_order_id=ro.id,
                merged_quantity=merge_qty)
    if parent_finished:
        events.emit(events.ORDER_FINISHED, order_no=parent.order_no)
    return {
        "parent_order_no": parent.order_no,
        "merged_quantity": merge_qty,
        "new_accepted_quantity": parent.pass_quantity,
        "parent_finished": parent_finished,
    }
