"""
Batch Manager - Service Layer.

Business logic for:
    - Inspection split:  one "pass" and/or one "fail" batch per inspection
    - Batch CRUD:        list / get / status update
    - Merge workflow:    request (pending) → admin approve | reject

Approving a merge creates one combined batch at the target station,
repoints every FlowStep that referenced a source batch and completes the
sources, all in one commit guarded by a conditional ``pending → approved``
write on the request.
"""

import logging

from sqlalchemy import update

from shopfloor.core.exceptions import InvalidState, NotFoundError, ValidationError
from shopfloor.models import db
from shopfloor.models.batch import (
    BATCH_STATUSES,
    FAIL_BATCH_NAME,
    MERGEABLE_BATCH_STATUSES,
    MERGED_BATCH_NAME,
    PASS_BATCH_NAME,
    BatchMergeRequest,
    OrderBatch,
)
from shopfloor.models.order import FlowStep, Order
from shopfloor.services import events
from shopfloor.services.authorization import require_admin
from shopfloor.services.routing_service import get_order
from shopfloor.services.station_catalog import get_station
from shopfloor.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ── Inspection split ─────────────────────────────────────────────────────────


def split_on_inspection(
    order: Order, pass_qty: int, fail_qty: int, inspection_ref: str | None,
    *, station_id: int | None = None,
) -> tuple[OrderBatch | None, OrderBatch | None]:
    """Add the pass/fail batches to the session without committing.

    A batch is only created for a non-zero quantity. The fail batch starts in
    ``rework``; the caller owns the transaction.
    """
    pass_batch = fail_batch = None
    if pass_qty > 0:
        pass_batch = OrderBatch(
            order_id=order.id, name=PASS_BATCH_NAME, quantity=pass_qty,
            status="in_progress", current_station_id=station_id, inspection_ref=inspection_ref,
        )
        db.session.add(pass_batch)
    if fail_qty > 0:
        fail_batch = OrderBatch(
            order_id=order.id, name=FAIL_BATCH_NAME, quantity=fail_qty,
            status="rework", current_station_id=station_id, inspection_ref=inspection_ref,
        )
        db.session.add(fail_batch)
    db.session.flush()
    return pass_batch, fail_batch


# ── CRUD ─────────────────────────────────────────────────────────────────────


def list_batches(order_no: str) -> list[OrderBatch]:
    order = get_order(order_no)
    return OrderBatch.query.filter_by(order_id=order.id).order_by(OrderBatch.id).all()


def get_batch(batch_id: int) -> OrderBatch:
    batch = db.session.get(OrderBatch, batch_id)
    if not batch:
        raise NotFoundError(resource="OrderBatch", resource_id=batch_id)
    return batch


def update_batch_status(batch_id: int, status: str, current_station_id: int | None = None) -> OrderBatch:
    if status not in BATCH_STATUSES:
        raise ValidationError(f"Invalid batch status: {status}",
                              details={"allowed": sorted(BATCH_STATUSES)})
    batch = get_batch(batch_id)
    if current_station_id is not None:
        get_station(current_station_id)
        batch.current_station_id = current_station_id
    batch.status = status
    db.session.commit()
    logger.info("OrderBatch updated id=%s status=%s", batch.id, status)
    return batch


# ── Merge workflow ───────────────────────────────────────────────────────────


def _load_sources(order_id: int, batch_ids) -> list[OrderBatch]:
    batches = OrderBatch.query.filter(OrderBatch.id.in_(batch_ids)).all()
    found = {b.id for b in batches}
    missing = [bid for bid in batch_ids if bid not in found]
    if missing:
        raise NotFoundError(resource="OrderBatch", resource_id=missing[0])
    foreign = [b.id for b in batches if b.order_id != order_id]
    if foreign:
        raise ValidationError("All batches must belong to the same order",
                              details={"batch_ids": foreign})
    return batches


def request_merge(
    order_no: str, source_batch_ids: list, target_station_id: int,
    requester_id, notes: str | None = None,
) -> BatchMergeRequest:
    """Record a pending merge request; no batch changes until approval."""
    order = get_order(order_no)
    try:
        ids = list(dict.fromkeys(int(b) for b in (source_batch_ids or [])))
    except (TypeError, ValueError):
        raise ValidationError("source_batch_ids must be a list of integers",
                              details={"source_batch_ids": source_batch_ids})
    if len(ids) < 2:
        raise ValidationError("At least two batches are required to merge")
    get_station(target_station_id)

    batches = _load_sources(order.id, ids)
    blocked = [b.id for b in batches if b.status not in MERGEABLE_BATCH_STATUSES]
    if blocked:
        raise InvalidState("Only completed or in-progress batches can be merged",
                           details={"batch_ids": blocked})

    mr = BatchMergeRequest(
        order_id=order.id,
        source_batch_ids=ids,
        target_station_id=target_station_id,
        requested_by=requester_id,
        notes=notes,
        status="pending",
    )
    db.session.add(mr)
    db.session.commit()
    logger.info("BatchMergeRequest created id=%s sources=%s", mr.id, ids,
                extra={"order_no": order_no})
    events.emit(events.BATCH_MERGE_REQUESTED, order_no=order_no, merge_request_id=mr.id,
                source_batch_ids=ids)
    return mr


def get_merge_request(merge_request_id: int) -> BatchMergeRequest:
    mr = db.session.get(BatchMergeRequest, merge_request_id)
    if not mr:
        raise NotFoundError(resource="BatchMergeRequest", resource_id=merge_request_id)
    return mr


def _decide(mr: BatchMergeRequest, new_status: str, approver_id, notes) -> None:
    """Conditional pending → decided write; does not commit."""
    values = {"status": new_status, "approved_by": approver_id, "decided_at": utcnow()}
    if notes:
        values["notes"] = notes
    decided = db.session.execute(
        update(BatchMergeRequest)
        .where(BatchMergeRequest.id == mr.id, BatchMergeRequest.status == "pending")
        .values(**values)
    ).rowcount
    if decided == 0:
        raise InvalidState(f"Merge request {mr.id} was already decided")


def approve_merge(merge_request_id: int, approver_id, notes: str | None = None) -> dict:
    require_admin(approver_id, "approve a batch merge")
    mr = get_merge_request(merge_request_id)
    if mr.status != "pending":
        raise InvalidState(f"Merge request is '{mr.status}', expected 'pending'")

    ids = list(mr.source_batch_ids or [])
    try:
        batches = _load_sources(mr.order_id, ids)
        blocked = [b.id for b in batches if b.status not in MERGEABLE_BATCH_STATUSES]
        if blocked:
            raise InvalidState("Source batches changed since the request and can no longer be merged",
                               details={"batch_ids": blocked})
        _decide(mr, "approved", approver_id, notes)

        total = sum(b.quantity for b in batches)
        merged = OrderBatch(
            order_id=mr.order_id,
            name=MERGED_BATCH_NAME,
            quantity=total,
            current_station_id=mr.target_station_id,
            status="in_progress",
        )
        db.session.add(merged)
        db.session.flush()

        repointed = db.session.execute(
            update(FlowStep).where(FlowStep.batch_id.in_(ids)).values(batch_id=merged.id)
        ).rowcount
        closed = db.session.execute(
            update(OrderBatch)
            .where(OrderBatch.id.in_(ids), OrderBatch.status.in_(tuple(MERGEABLE_BATCH_STATUSES)))
            .values(status="completed")
        ).rowcount
        if closed != len(ids):
            raise InvalidState("Source batches changed during the merge",
                               details={"batch_ids": ids})
        db.session.execute(
            update(BatchMergeRequest).where(BatchMergeRequest.id == mr.id)
            .values(merged_batch_id=merged.id)
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    order_no = mr.order.order_no
    logger.info("Batch merge approved id=%s merged_batch=%s qty=%d steps_repointed=%d",
                mr.id, merged.id, total, repointed, extra={"order_no": order_no})
    events.emit(events.BATCH_MERGE_APPROVED, order_no=order_no, merge_request_id=mr.id,
                merged_batch_id=merged.id, total_quantity=total)
    return {
        "merge_request_id": mr.id,
        "merged_batch_id": merged.id,
        "total_quantity": total,
        "source_batch_ids": ids,
    }


def reject_merge(merge_request_id: int, approver_id, reason: str | None = None) -> BatchMergeRequest:
    require_admin(approver_id, "reject a batch merge")
    mr = get_merge_request(merge_request_id)
    if mr.status != "pending":
        raise InvalidState(f"Merge request is '{mr.status}', expected 'pending'")

    ids = list(mr.source_batch_ids or [])
    try:
        _decide(mr, "rejected", approver_id, reason)
        db.session.execute(
            update(OrderBatch)
            .where(OrderBatch.id.in_(ids), OrderBatch.order_id == mr.order_id)
            .values(status="in_progress")
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(mr)
    logger.info("Batch merge rejected id=%s", mr.id, extra={"order_no": mr.order.order_no})
    events.emit(events.BATCH_MERGE_REJECTED, order_no=mr.order.order_no, merge_request_id=mr.id)
    return mr
