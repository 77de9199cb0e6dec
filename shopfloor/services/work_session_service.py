"""
Work Session Tracker - Service Layer.

One open session per (order, station, step, technician). The flow service
opens one on start, closes it on complete and force-closes all of an
order's open sessions on reset. Opening and closing after a committed
transition are secondary writes: callers log failures and carry on.
"""

import logging

from sqlalchemy import func, select

from shopfloor.models import db
from shopfloor.models.work_session import WorkSession
from shopfloor.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def _open_sessions_q(order_id, station_id, step_order):
    return WorkSession.query.filter(
        WorkSession.order_id == order_id,
        WorkSession.station_id == station_id,
        WorkSession.step_order == step_order,
        WorkSession.completed_at.is_(None),
    )


def open_session(
    order_id: int,
    station_id: int,
    step_order: int,
    technician_id: int,
    *,
    started_by: int | None = None,
    authorized_via: str | None = None,
    started_at=None,
) -> WorkSession:
    """Open a session for the technician, closing a stale open one first."""
    started_at = started_at or utcnow()
    stale = _open_sessions_q(order_id, station_id, step_order).filter(
        WorkSession.technician_id == technician_id,
    ).first()
    if stale:
        logger.warning(
            "Closing stale open WorkSession id=%s before reopening", stale.id,
            extra={"station_id": station_id, "step_order": step_order},
        )
        stale.close(started_at)
        db.session.flush()

    ws = WorkSession(
        order_id=order_id,
        station_id=station_id,
        step_order=step_order,
        technician_id=technician_id,
        started_by=started_by,
        authorized_via=authorized_via,
        started_at=started_at,
    )
    db.session.add(ws)
    db.session.commit()
    logger.info("WorkSession opened id=%s technician=%s", ws.id, technician_id,
                extra={"station_id": station_id, "step_order": step_order})
    return ws


def close_session(
    order_id: int,
    station_id: int,
    step_order: int,
    technician_id: int,
    completed_at=None,
) -> WorkSession | None:
    """Close the technician's open session on a step.

    Falls back to the step's only open session when the technician has none
    (e.g. it was opened under another caller). Returns None when nothing was
    closed.
    """
    completed_at = completed_at or utcnow()
    q = _open_sessions_q(order_id, station_id, step_order)
    ws = q.filter(WorkSession.technician_id == technician_id).first()
    if ws is None:
        candidates = q.all()
        if len(candidates) == 1:
            ws = candidates[0]
        else:
            logger.warning(
                "No WorkSession to close for technician=%s (%d open on step)",
                technician_id, len(candidates),
                extra={"station_id": station_id, "step_order": step_order},
            )
            return None

    ws.close(completed_at)
    db.session.commit()
    logger.info("WorkSession closed id=%s duration=%.2f min", ws.id, ws.duration_minutes,
                extra={"station_id": station_id, "step_order": step_order})
    return ws


def close_open_sessions(order_id: int, completed_at) -> int:
    """Close every open session of an order at ``completed_at``. Does not commit."""
    sessions = WorkSession.query.filter(
        WorkSession.order_id == order_id, WorkSession.completed_at.is_(None),
    ).all()
    for ws in sessions:
        ws.close(completed_at)
    return len(sessions)


def list_sessions(order_id: int, technician_id: int | None = None) -> list[WorkSession]:
    q = WorkSession.query.filter_by(order_id=order_id)
    if technician_id is not None:
        q = q.filter_by(technician_id=technician_id)
    return q.order_by(WorkSession.started_at, WorkSession.id).all()


def technician_summary(technician_id: int) -> dict:
    """Closed-session count and total minutes for one technician."""
    closed_count, total_minutes = db.session.execute(
        select(func.count(WorkSession.id), func.coalesce(func.sum(WorkSession.duration_minutes), 0.0))
        .where(WorkSession.technician_id == technician_id, WorkSession.completed_at.is_not(None))
    ).one()
    open_count = db.session.execute(
        select(func.count(WorkSession.id))
        .where(WorkSession.technician_id == technician_id, WorkSession.completed_at.is_(None))
    ).scalar_one()
    return {
        "technician_id": technician_id,
        "closed_sessions": closed_count,
        "open_sessions": open_count,
        "total_minutes": round(float(total_minutes or 0.0), 2),
    }
