"""
Order Routing - Service Layer.

Business logic for:
    - Orders:       create / get / delete
    - Routing:      (re)establish an order's FlowSteps 1..N from a station list,
                    preserving status and completed_at of unchanged steps
    - Assignments:  technicians per (order, station, step); QC steps never get one
"""

import logging

from sqlalchemy import update

from shopfloor.core.exceptions import InvalidState, NotFoundError, ValidationError
from shopfloor.models import db
from shopfloor.models.order import (
    ORDER_PRIORITIES,
    ORDER_STATUS_RELEASED,
    Assignment,
    FlowStep,
    Order,
)
from shopfloor.models.remediation import RemediationOrder
from shopfloor.models.station import Station
from shopfloor.utils.helpers import parse_date, require_quantity

logger = logging.getLogger(__name__)


# ── Orders ───────────────────────────────────────────────────────────────────


def get_order(order_no: str) -> Order:
    order = Order.query.filter_by(order_no=order_no).first()
    if not order:
        raise NotFoundError(resource="Order", resource_id=order_no)
    return order


def create_order(data: dict) -> Order:
    """Create a Released order.

    Args:
        data: ``order_no`` (required, unique), ``quantity`` and optional
              ``priority``, ``description``, ``customer_name``, ``due_date``.
    """
    order_no = (data.get("order_no") or "").strip()
    if not order_no:
        raise ValidationError("order_no is required")
    if Order.query.filter_by(order_no=order_no).first():
        raise ValidationError(f"Order {order_no} already exists", details={"order_no": order_no})

    priority = data.get("priority") or "Medium"
    if priority not in ORDER_PRIORITIES:
        raise ValidationError(f"Invalid priority: {priority}",
                              details={"allowed": sorted(ORDER_PRIORITIES)})

    order = Order(
        order_no=order_no,
        quantity=require_quantity(data.get("quantity"), "quantity"),
        priority=priority,
        status=ORDER_STATUS_RELEASED,
        description=data.get("description", ""),
        customer_name=data.get("customer_name"),
        due_date=parse_date(data.get("due_date")),
    )
    db.session.add(order)
    db.session.commit()
    logger.info("Order created id=%s", order.id, extra={"order_no": order_no})
    return order


def delete_order(order_no: str) -> None:
    """Delete an order and everything it owns; remediation children stay."""
    order = get_order(order_no)
    order_id = order.id
    db.session.delete(order)
    db.session.commit()
    logger.info("Order deleted id=%s", order_id, extra={"order_no": order_no})


def list_flow(order_no: str) -> list[FlowStep]:
    order = get_order(order_no)
    return FlowStep.query.filter_by(order_id=order.id).order_by(FlowStep.step_order).all()


# ── Routing ──────────────────────────────────────────────────────────────────


def _normalise_entry(entry) -> dict:
    if isinstance(entry, int):
        return {"station_id": entry}
    if not isinstance(entry, dict) or entry.get("station_id") is None:
        raise ValidationError("Each routing entry needs a station_id", details={"entry": entry})
    normalised = dict(entry)
    try:
        normalised["station_id"] = int(entry["station_id"])
        if entry.get("technician_id") is not None:
            normalised["technician_id"] = int(entry["technician_id"])
    except (TypeError, ValueError):
        raise ValidationError("station_id and technician_id must be integers", details={"entry": entry})
    return normalised


def _remap_failed_steps(order_id: int, old_keys: dict, new_ids: dict) -> None:
    """Point remediation orders at the rebuilt FlowStep with the same station and step order."""
    if not old_keys:
        return
    for ro in RemediationOrder.query.filter(
        RemediationOrder.order_id == order_id,
        RemediationOrder.failed_step_id.in_(list(old_keys)),
    ).all():
        ro.failed_step_id = new_ids.get(old_keys[ro.failed_step_id])
        if ro.failed_step_id is None:
            logger.warning("Rework step dropped from routing remediation_id=%s", ro.id)


def save_routing(order_no: str, stations: list, assigned_by: int | None = None) -> list[FlowStep]:
    """Rebuild the order's FlowSteps and primary assignments.

    Args:
        order_no: Target order.
        stations: Ordered entries, each a station id or a dict with
                  ``station_id`` and optional ``technician_id`` /
                  ``inspection_task_ref``.
        assigned_by: Caller recorded on the rebuilt assignments.

    Returns:
        The new FlowSteps in step order.
    """
    order = get_order(order_no)
    entries = [_normalise_entry(e) for e in (stations or [])]
    if not entries:
        raise ValidationError("Routing needs at least one station")

    station_ids = {int(e["station_id"]) for e in entries}
    known = {s.id: s for s in Station.query.filter(Station.id.in_(station_ids)).all()}
    missing = sorted(station_ids - set(known))
    if missing:
        raise NotFoundError(resource="Station", resource_id=missing[0])

    if any(s.status == "current" for s in order.flow_steps):
        raise InvalidState("Routing cannot be changed while a step is in progress",
                           details={"order_no": order_no})

    preserved = {
        (s.station_id, s.step_order): (s.status, s.completed_at)
        for s in order.flow_steps
    }
    old_keys = {s.id: (s.station_id, s.step_order) for s in order.flow_steps}

    order.flow_steps.clear()
    Assignment.query.filter_by(order_id=order.id).delete()
    db.session.flush()

    steps = []
    for index, entry in enumerate(entries, start=1):
        station = known[int(entry["station_id"])]
        status, completed_at = preserved.get((station.id, index), ("pending", None))
        step = FlowStep(
            station_id=station.id,
            step_order=index,
            status=status,
            completed_at=completed_at,
            inspection_task_ref=entry.get("inspection_task_ref"),
        )
        order.flow_steps.append(step)
        steps.append(step)

        technician_id = entry.get("technician_id")
        if technician_id is not None and not station.is_qc:
            db.session.add(Assignment(
                order_id=order.id,
                station_id=station.id,
                step_order=index,
                technician_id=int(technician_id),
                assignment_type="primary",
                status="assigned",
                assigned_by=assigned_by,
            ))

    db.session.flush()
    _remap_failed_steps(order.id, old_keys, {(s.station_id, s.step_order): s.id for s in steps})

    db.session.execute(
        update(Order).where(Order.id == order.id)
        .values(flow_version=Order.flow_version + 1)
    )
    db.session.commit()
    logger.info("Routing saved steps=%d preserved=%d", len(steps),
                sum(1 for s in steps if s.status != "pending"),
                extra={"order_no": order_no})
    return steps


def assign_technician(
    order_no: str,
    station_id: int,
    step_order: int,
    technician_id: int,
    assigned_by: int | None = None,
    assignment_type: str = "primary",
) -> Assignment:
    """Assign a technician to an existing step (idempotent)."""
    order = get_order(order_no)
    step = FlowStep.query.filter_by(
        order_id=order.id, station_id=station_id, step_order=step_order,
    ).first()
    if not step:
        raise NotFoundError(resource="FlowStep", resource_id=f"{order_no}/{station_id}/{step_order}")

    existing = Assignment.query.filter_by(
        order_id=order.id, station_id=station_id, step_order=step_order,
        technician_id=technician_id,
    ).first()
    if existing:
        return existing

    assignment = Assignment(
        order_id=order.id,
        station_id=station_id,
        step_order=step_order,
        technician_id=technician_id,
        assignment_type=assignment_type,
        status="assigned",
        assigned_by=assigned_by,
    )
    db.session.add(assignment)
    db.session.commit()
    logger.info("Assignment created id=%s technician=%s", assignment.id, technician_id,
                extra={"order_no": order_no, "station_id": station_id, "step_order": step_order})
    return assignment
