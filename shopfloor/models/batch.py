"""
Batch models - quantity splits of an order.

Models:
    - OrderBatch:         a subset of an order's units (inspection pass/fail or merge result)
    - BatchMergeRequest:  proposal to combine sibling batches, decided by an admin

Lifecycle states:
    OrderBatch:         in_progress ⇄ rework → completed
    BatchMergeRequest:  pending → approved | rejected
"""

from datetime import datetime, timezone

from shopfloor.models import db
from shopfloor.utils.helpers import isoformat


# ── Constants ────────────────────────────────────────────────────────────────

BATCH_STATUSES = {"in_progress", "rework", "completed"}

MERGEABLE_BATCH_STATUSES = {"in_progress", "completed"}

MERGE_REQUEST_STATUSES = {"pending", "approved", "rejected"}

PASS_BATCH_NAME = "Batch A (pass)"
FAIL_BATCH_NAME = "Batch B (fail)"
MERGED_BATCH_NAME = "Merged Batch"


BATCH_TRANSITIONS = {
    "in_progress": ["rework", "completed"],
    "rework":      ["in_progress", "completed"],
    "completed":   ["in_progress"],
}


def validate_batch_transition(old_status, new_status):
    """Return True if OrderBatch status transition is valid."""
    return new_status in BATCH_TRANSITIONS.get(old_status, [])


# ═════════════════════════════════════════════════════════════════════════════
# 1. OrderBatch
# ═════════════════════════════════════════════════════════════════════════════


class OrderBatch(db.Model):
    __tablename__ = "order_batches"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(100), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="in_progress",
        comment="in_progress | rework | completed",
    )
    current_station_id = db.Column(
        db.Integer, db.ForeignKey("stations.id", ondelete="SET NULL"), nullable=True,
    )
    inspection_ref = db.Column(db.String(100), nullable=True, comment="Inspection session that created it")
    child_order_id = db.Column(
        db.Integer, db.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True,
        comment="Remediation child order working this batch",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('in_progress','rework','completed')", name="ck_order_batch_status",
        ),
        db.CheckConstraint("quantity >= 0", name="ck_order_batch_quantity"),
    )

    current_station = db.relationship("Station")
    child_order = db.relationship("Order", foreign_keys=[child_order_id])

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "name": self.name,
            "quantity": self.quantity,
            "status": self.status,
            "current_station_id": self.current_station_id,
            "inspection_ref": self.inspection_ref,
            "child_order_id": self.child_order_id,
            "child_order_no": self.child_order.order_no if self.child_order else None,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<OrderBatch {self.id}: {self.name} x{self.quantity} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. BatchMergeRequest
# ═════════════════════════════════════════════════════════════════════════════


class BatchMergeRequest(db.Model):
    __tablename__ = "batch_merge_requests"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    source_batch_ids = db.Column(db.JSON, nullable=False, default=list)
    target_station_id = db.Column(
        db.Integer, db.ForeignKey("stations.id", ondelete="SET NULL"), nullable=True,
    )
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | approved | rejected",
    )
    requested_by = db.Column(db.Integer, nullable=True)
    approved_by = db.Column(db.Integer, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    merged_batch_id = db.Column(
        db.Integer, db.ForeignKey("order_batches.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending','approved','rejected')", name="ck_batch_merge_request_status",
        ),
    )

    merged_batch = db.relationship("OrderBatch", foreign_keys=[merged_batch_id])

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "source_batch_ids": list(self.source_batch_ids or []),
            "target_station_id": self.target_station_id,
            "status": self.status,
            "requested_by": self.requested_by,
            "approved_by": self.approved_by,
            "decided_at": isoformat(self.decided_at),
            "notes": self.notes,
            "merged_batch_id": self.merged_batch_id,
            "created_at": isoformat(self.created_at),
        }
