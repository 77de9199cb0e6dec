"""
Health probes.

    GET /api/v1/health/ready   200 while the process serves requests
    GET /api/v1/health/live    database round-trip plus engine settings; 503 when degraded
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from shopfloor.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"})


def _database_check() -> dict:
    started = time.perf_counter()
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Database probe failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}


@health_bp.route("/live", methods=["GET"])
def live():
    database = _database_check()
    healthy = database["status"] == "ok"
    cfg = current_app.config
    body = {
        "status": "healthy" if healthy else "degraded",
        "checks": {
            "database": database,
            "engine": {
                "debug": current_app.debug,
                "testing": current_app.testing,
                "remediation_chain_max_depth": cfg["REMEDIATION_CHAIN_MAX_DEPTH"],
                "remediation_child_priority": cfg["REMEDIATION_CHILD_PRIORITY"],
            },
        },
    }
    return jsonify(body), 200 if healthy else 503
