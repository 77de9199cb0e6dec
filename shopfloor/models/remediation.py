"""
Remediation (rework) models.

Models:
    - RemediationOrder:        managed workflow for fixing a failed batch
    - RemediationRoadmapStep:  ordered custom station list the child order walks

Architecture:
    Order ──1:N──▶ RemediationOrder ──1:N──▶ RemediationRoadmapStep
    RemediationOrder ──N:1──▶ OrderBatch  (the fail batch)
    RemediationOrder ──0:1──▶ Order       (child_order_id, synthesized on approval)
    RemediationOrder ──0:1──▶ Order       (root_order_id, top of the chain)

Lifecycle states:
    approval_status:  pending → approved | rejected
    status:           pending → in_progress → merged  |  pending → cancelled
"""

from datetime import datetime, timezone

from shopfloor.models import db
from shopfloor.utils.helpers import isoformat


# ── Constants ────────────────────────────────────────────────────────────────

REMEDIATION_SEVERITIES = {"minor", "major", "critical"}

APPROVAL_STATUSES = {"pending", "approved", "rejected"}

REMEDIATION_STATUSES = {"pending", "in_progress", "merged", "cancelled"}

ROADMAP_STEP_STATUSES = {"pending", "in_progress", "completed"}

REMEDIATION_TRANSITIONS = {
    "pending":     ["in_progress", "cancelled"],
    "in_progress": ["merged"],
    "merged":      [],
    "cancelled":   [],
}


def validate_remediation_transition(old_status, new_status):
    """Return True if RemediationOrder status transition is valid."""
    return new_status in REMEDIATION_TRANSITIONS.get(old_status, [])


# ═════════════════════════════════════════════════════════════════════════════
# 1. RemediationOrder
# ═════════════════════════════════════════════════════════════════════════════


class RemediationOrder(db.Model):
    """
    Rework order raised when inspection fails part of an order.
    Approval synthesizes a child Order numbered ``<order>-RW<suffix>``;
    merge-approval folds the child's accepted units back into the parent.
    """

    __tablename__ = "remediation_orders"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    batch_id = db.Column(
        db.Integer, db.ForeignKey("order_batches.id", ondelete="SET NULL"),
        nullable=True, index=True, comment="The fail batch",
    )
    quantity = db.Column(db.Integer, nullable=False)
    severity = db.Column(db.String(20), nullable=False, default="major")

    # Failure location
    failed_station_id = db.Column(
        db.Integer, db.ForeignKey("stations.id", ondelete="SET NULL"), nullable=True,
    )
    failed_task_ref = db.Column(db.String(100), nullable=True)
    failed_step_id = db.Column(
        db.Integer, nullable=True,
        comment="Parent FlowStep marked rework; restored on reject or merge",
    )
    inspection_ref = db.Column(db.String(100), nullable=False)

    reason = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Approval
    approval_status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | approved | rejected",
    )
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | in_progress | merged | cancelled",
    )
    created_by = db.Column(db.Integer, nullable=True)
    approved_by = db.Column(db.Integer, nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    # Merge
    merged_at = db.Column(db.DateTime(timezone=True), nullable=True)
    merged_quantity = db.Column(db.Integer, nullable=True)

    # Chain
    root_order_id = db.Column(
        db.Integer, db.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True,
    )
    child_order_id = db.Column(
        db.Integer, db.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True,
    )

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.CheckConstraint(
            "severity IN ('minor','major','critical')", name="ck_remediation_severity",
        ),
        db.CheckConstraint(
            "approval_status IN ('pending','approved','rejected')",
            name="ck_remediation_approval_status",
        ),
        db.CheckConstraint(
            "status IN ('pending','in_progress','merged','cancelled')",
            name="ck_remediation_status",
        ),
        db.CheckConstraint("quantity > 0", name="ck_remediation_quantity"),
    )

    # ── Relationships ────────────────────────────────────────────────────
    roadmap = db.relationship(
        "RemediationRoadmapStep", backref="remediation_order", lazy="select",
        cascade="all, delete-orphan", order_by="RemediationRoadmapStep.step_order",
    )
    batch = db.relationship("OrderBatch", foreign_keys=[batch_id])
    child_order = db.relationship("Order", foreign_keys=[child_order_id])
    root_order = db.relationship("Order", foreign_keys=[root_order_id])
    failed_station = db.relationship("Station", foreign_keys=[failed_station_id])

    def to_dict(self, include_roadmap=True):
        result = {
            "id": self.id,
            "order_id": self.order_id,
            "order_no": self.order.order_no if self.order else None,
            "batch_id": self.batch_id,
            "quantity": self.quantity,
            "severity": self.severity,
            "failed_station_id": self.failed_station_id,
            "failed_task_ref": self.failed_task_ref,
            "failed_step_id": self.failed_step_id,
            "inspection_ref": self.inspection_ref,
            "reason": self.reason,
            "notes": self.notes,
            "approval_status": self.approval_status,
            "status": self.status,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "approved_at": isoformat(self.approved_at),
            "rejection_reason": self.rejection_reason,
            "merged_at": isoformat(self.merged_at),
            "merged_quantity": self.merged_quantity,
            "root_order_id": self.root_order_id,
            "child_order_id": self.child_order_id,
            "child_order_no": self.child_order.order_no if self.child_order else None,
            "created_at": isoformat(self.created_at),
        }
        if include_roadmap:
            result["roadmap"] = [r.to_dict() for r in self.roadmap]
        return result

    def __repr__(self):
        return f"<RemediationOrder {self.id}: x{self.quantity} [{self.approval_status}/{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. RemediationRoadmapStep
# ═════════════════════════════════════════════════════════════════════════════


class RemediationRoadmapStep(db.Model):
    __tablename__ = "remediation_roadmap_steps"

    id = db.Column(db.Integer, primary_key=True)
    remediation_order_id = db.Column(
        db.Integer, db.ForeignKey("remediation_orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_order = db.Column(db.Integer, nullable=False)
    station_id = db.Column(db.Integer, db.ForeignKey("stations.id"), nullable=False)
    station_name = db.Column(db.String(150), nullable=True)
    assigned_technician_id = db.Column(db.Integer, nullable=True, comment="External user id")
    estimated_hours = db.Column(db.Float, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending")

    __table_args__ = (
        db.UniqueConstraint("remediation_order_id", "step_order", name="uq_roadmap_step_order"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "remediation_order_id": self.remediation_order_id,
            "step_order": self.step_order,
            "station_id": self.station_id,
            "station_name": self.station_name,
            "assigned_technician_id": self.assigned_technician_id,
            "estimated_hours": self.estimated_hours,
            "notes": self.notes,
            "status": self.status,
        }
