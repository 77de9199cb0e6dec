"""
Order routing models.

Models:
    - Order:       a production quantity tracked through stations end-to-end
    - FlowStep:    one ordered station within an order's routing
    - Assignment:  technician scheduled on an (order, station, step) triple

Architecture:
    Order ──1:N──▶ FlowStep ──N:1──▶ Station
    Order ──1:N──▶ Assignment
    Order ──0:1──▶ Order  (parent_order_id, set on remediation children)

Lifecycle states:
    Order:     Released → In Progress → Finished
    FlowStep:  pending → current → completed  |  current → rework
               (administrative reset returns every step to pending)

At most one FlowStep per order may be ``current``. The partial unique index
``uq_flow_steps_one_current`` makes the database refuse a second one; the
services additionally bump ``Order.flow_version`` with a conditional write
before each start.
"""

from datetime import datetime, timezone

from shopfloor.models import db
from shopfloor.utils.helpers import isoformat


# ── Constants ────────────────────────────────────────────────────────────────

ORDER_STATUS_RELEASED = "Released"
ORDER_STATUS_IN_PROGRESS = "In Progress"
ORDER_STATUS_FINISHED = "Finished"

ORDER_STATUSES = {ORDER_STATUS_RELEASED, ORDER_STATUS_IN_PROGRESS, ORDER_STATUS_FINISHED}

ORDER_PRIORITIES = {"Low", "Medium", "High"}

FLOW_STEP_STATUSES = {"pending", "current", "completed", "rework", "rejected"}

ASSIGNMENT_TYPES = {"primary", "support", "supervisor"}

ASSIGNMENT_STATUSES = {"assigned", "in_progress", "completed", "cancelled"}


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

ORDER_TRANSITIONS = {
    ORDER_STATUS_RELEASED:    [ORDER_STATUS_IN_PROGRESS, ORDER_STATUS_FINISHED],
    ORDER_STATUS_IN_PROGRESS: [ORDER_STATUS_FINISHED, ORDER_STATUS_RELEASED],
    ORDER_STATUS_FINISHED:    [ORDER_STATUS_RELEASED],
}

STEP_TRANSITIONS = {
    "pending":   ["current"],
    "current":   ["completed", "rework", "pending"],
    "completed": [],
    "rework":    ["pending", "completed"],
    "rejected":  ["pending"],
}


def validate_order_transition(old_status, new_status):
    """Return True if Order status transition is valid."""
    return new_status in ORDER_TRANSITIONS.get(old_status, [])


def validate_step_transition(old_status, new_status):
    """Return True if FlowStep status transition is valid outside a reset."""
    return new_status in STEP_TRANSITIONS.get(old_status, [])


# ═════════════════════════════════════════════════════════════════════════════
# 1. Order
# ═════════════════════════════════════════════════════════════════════════════


class Order(db.Model):
    """
    A production order. Remediation children are ordinary orders numbered
    ``<parent>-RW<suffix>`` whose ``parent_order_id`` points at the order
    that failed inspection.
    """

    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_no = db.Column(db.String(80), unique=True, nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    pass_quantity = db.Column(
        db.Integer, nullable=True,
        comment="Accepted units; raised by inspection pass and remediation merge",
    )
    priority = db.Column(db.String(10), nullable=False, default="Medium")
    status = db.Column(
        db.String(20), nullable=False, default=ORDER_STATUS_RELEASED,
        comment="Released | In Progress | Finished",
    )
    description = db.Column(db.Text, default="")
    customer_name = db.Column(db.String(200), nullable=True)
    due_date = db.Column(db.Date, nullable=True)

    parent_order_id = db.Column(
        db.Integer, db.ForeignKey("orders.id", ondelete="SET NULL"),
        nullable=True, index=True,
        comment="Set on remediation children; walked upward to find the root order",
    )
    flow_version = db.Column(
        db.Integer, nullable=False, default=0,
        comment="Optimistic lock bumped on every step start and reset",
    )

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('Released','In Progress','Finished')",
            name="ck_order_status",
        ),
        db.CheckConstraint("priority IN ('Low','Medium','High')", name="ck_order_priority"),
        db.CheckConstraint("quantity >= 0", name="ck_order_quantity"),
    )

    # ── Relationships ────────────────────────────────────────────────────
    flow_steps = db.relationship(
        "FlowStep", back_populates="order", lazy="select",
        cascade="all, delete-orphan", order_by="FlowStep.step_order",
    )
    assignments = db.relationship(
        "Assignment", backref="order", lazy="dynamic", cascade="all, delete-orphan",
    )
    work_sessions = db.relationship(
        "WorkSession", backref="order", lazy="dynamic", cascade="all, delete-orphan",
    )
    batches = db.relationship(
        "OrderBatch", backref="order", lazy="dynamic",
        cascade="all, delete-orphan", foreign_keys="OrderBatch.order_id",
        order_by="OrderBatch.id",
    )
    remediation_orders = db.relationship(
        "RemediationOrder", backref="order", lazy="dynamic",
        cascade="all, delete-orphan", foreign_keys="RemediationOrder.order_id",
    )
    merge_requests = db.relationship(
        "BatchMergeRequest", backref="order", lazy="dynamic", cascade="all, delete-orphan",
    )
    parent = db.relationship(
        "Order", remote_side=[id], backref=db.backref("remediation_children", lazy="select"),
    )

    @property
    def is_remediation_child(self):
        return self.parent_order_id is not None

    def to_dict(self, include_flow=False):
        result = {
            "id": self.id,
            "order_no": self.order_no,
            "quantity": self.quantity,
            "pass_quantity": self.pass_quantity,
            "priority": self.priority,
            "status": self.status,
            "description": self.description,
            "customer_name": self.customer_name,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "parent_order_id": self.parent_order_id,
            "parent_order_no": self.parent.order_no if self.parent else None,
            "flow_version": self.flow_version,
            "started_at": isoformat(self.started_at),
            "finished_at": isoformat(self.finished_at),
            "created_at": isoformat(self.created_at),
        }
        if include_flow:
            result["flow_steps"] = [s.to_dict() for s in self.flow_steps]
        return result

    def __repr__(self):
        return f"<Order {self.id}: {self.order_no} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. FlowStep
# ═════════════════════════════════════════════════════════════════════════════


class FlowStep(db.Model):
    """
    One station in an order's routing, addressed by (order, station, step_order).
    Steps of a remediation child carry ``is_remediation_order``; the parent's
    failed step stays referenced from its RemediationOrder.
    """

    __tablename__ = "flow_steps"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    station_id = db.Column(db.Integer, db.ForeignKey("stations.id"), nullable=False, index=True)
    step_order = db.Column(db.Integer, nullable=False, comment="1..N, unique per order")
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | current | completed | rework | rejected",
    )
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    batch_id = db.Column(
        db.Integer, db.ForeignKey("order_batches.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    remediation_order_id = db.Column(
        db.Integer, db.ForeignKey("remediation_orders.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    is_remediation_path = db.Column(db.Boolean, nullable=False, default=False)
    is_remediation_order = db.Column(db.Boolean, nullable=False, default=False)
    inspection_task_ref = db.Column(
        db.String(100), nullable=True,
        comment="Inspection task that covers this step; used to locate failures",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.UniqueConstraint("order_id", "step_order", name="uq_flow_steps_order_step"),
        db.CheckConstraint(
            "status IN ('pending','current','completed','rework','rejected')",
            name="ck_flow_step_status",
        ),
        db.Index(
            "uq_flow_steps_one_current", "order_id", unique=True,
            sqlite_where=db.text("status = 'current'"),
            postgresql_where=db.text("status = 'current'"),
        ),
    )

    # ── Relationships ────────────────────────────────────────────────────
    order = db.relationship("Order", back_populates="flow_steps")
    station = db.relationship("Station")
    batch = db.relationship("OrderBatch", foreign_keys=[batch_id])
    remediation_order = db.relationship("RemediationOrder", foreign_keys=[remediation_order_id])

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "station_id": self.station_id,
            "station_name": self.station.name if self.station else None,
            "station_category": self.station.category if self.station else None,
            "step_order": self.step_order,
            "status": self.status,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "batch_id": self.batch_id,
            "remediation_order_id": self.remediation_order_id,
            "is_remediation_path": self.is_remediation_path,
            "is_remediation_order": self.is_remediation_order,
            "inspection_task_ref": self.inspection_task_ref,
        }

    def __repr__(self):
        return f"<FlowStep {self.id}: order={self.order_id} #{self.step_order} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. Assignment
# ═════════════════════════════════════════════════════════════════════════════


class Assignment(db.Model):
    """Technician scheduled on one step; the resolver's source of truth."""

    __tablename__ = "assignments"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    station_id = db.Column(db.Integer, db.ForeignKey("stations.id"), nullable=False)
    step_order = db.Column(db.Integer, nullable=False)
    technician_id = db.Column(db.Integer, nullable=False, index=True, comment="External user id")
    assignment_type = db.Column(db.String(20), nullable=False, default="primary")
    status = db.Column(db.String(20), nullable=False, default="assigned")
    assigned_by = db.Column(db.Integer, nullable=True)
    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint(
            "order_id", "station_id", "step_order", "technician_id",
            name="uq_assignment_step_technician",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "station_id": self.station_id,
            "step_order": self.step_order,
            "technician_id": self.technician_id,
            "assignment_type": self.assignment_type,
            "status": self.status,
            "assigned_by": self.assigned_by,
            "assigned_at": isoformat(self.assigned_at),
        }
