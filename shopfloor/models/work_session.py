"""
WorkSession - a timed record of one technician's work on one FlowStep.

Exactly one open session (``completed_at IS NULL``) may exist per
(order, station, step_order, technician); the partial unique index
``uq_work_sessions_open`` enforces it.
"""

from datetime import datetime, timezone

from shopfloor.models import db
from shopfloor.utils.helpers import as_utc, isoformat


def compute_duration_minutes(started_at, completed_at):
    """Elapsed minutes between two instants, rounded to 2 decimals, never negative."""
    if started_at is None or completed_at is None:
        return None
    seconds = (as_utc(completed_at) - as_utc(started_at)).total_seconds()
    return max(round(seconds / 60.0, 2), 0.0)


class WorkSession(db.Model):
    __tablename__ = "work_sessions"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(
        db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    station_id = db.Column(db.Integer, db.ForeignKey("stations.id"), nullable=False)
    step_order = db.Column(db.Integer, nullable=False)
    technician_id = db.Column(
        db.Integer, nullable=False, index=True,
        comment="Technician credited with the work (the assignee when covered by a supervisor)",
    )
    started_by = db.Column(db.Integer, nullable=True, comment="Caller who issued the start")
    authorized_via = db.Column(
        db.String(30), nullable=True,
        comment="admin | production_supervisor | assigned | supervisor_on_behalf | station_category",
    )
    started_at = db.Column(db.DateTime(timezone=True), nullable=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    duration_minutes = db.Column(db.Float, nullable=True)

    __table_args__ = (
        db.Index(
            "uq_work_sessions_open",
            "order_id", "station_id", "step_order", "technician_id",
            unique=True,
            sqlite_where=db.text("completed_at IS NULL"),
            postgresql_where=db.text("completed_at IS NULL"),
        ),
    )

    station = db.relationship("Station")

    @property
    def is_open(self):
        return self.completed_at is None

    def close(self, completed_at=None):
        """Stamp completion and derive the duration."""
        self.completed_at = completed_at or datetime.now(timezone.utc)
        self.duration_minutes = compute_duration_minutes(self.started_at, self.completed_at)

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "station_id": self.station_id,
            "step_order": self.step_order,
            "technician_id": self.technician_id,
            "started_by": self.started_by,
            "authorized_via": self.authorized_via,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "duration_minutes": self.duration_minutes,
        }

    def __repr__(self):
        return f"<WorkSession {self.id}: tech={self.technician_id} step={self.step_order}>"
