"""JSON error bodies for the HTTP surface.

Every error leaves the app as ``{"error": <text>, "code": <machine code>,
"details": {...}}``. Services raise ``ShopfloorError`` subclasses and the
handlers installed by ``register_error_handlers`` translate them; routing
and framework errors use the ``E`` codes below.
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from shopfloor.core.exceptions import ShopfloorError
from shopfloor.models import db

logger = logging.getLogger(__name__)


class E:
    """Codes for errors that do not originate in a service."""

    BAD_REQUEST = "validation_error"
    NOT_FOUND = "not_found"
    METHOD_NOT_ALLOWED = "method_not_allowed"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal_error"


STATUS_FOR_CODE = {
    E.BAD_REQUEST: 400,
    E.NOT_FOUND: 404,
    E.METHOD_NOT_ALLOWED: 405,
    E.RATE_LIMITED: 429,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(response, status)``; status defaults from the code, else 400."""
    body = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or STATUS_FOR_CODE.get(code, 400)


def register_error_handlers(app):
    """Install app-wide handlers so every blueprint answers errors alike."""

    @app.errorhandler(ShopfloorError)
    def _engine_error(error: ShopfloorError):
        db.session.rollback()
        logger.info("%s on %s: %s", error.code, request.path, error.message)
        return api_error(error.code, error.message, status=error.http_status, details=error.details)

    @app.errorhandler(404)
    def _not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return api_error(E.METHOD_NOT_ALLOWED, f"{request.method} not allowed on {request.path}")

    @app.errorhandler(429)
    def _rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"limit": e.description})

    @app.errorhandler(Exception)
    def _unexpected(error: Exception):
        if isinstance(error, HTTPException):
            code = E.INTERNAL if error.code >= 500 else E.BAD_REQUEST
            return api_error(code, error.description or error.name, status=error.code)
        db.session.rollback()
        logger.exception("Unhandled error endpoint=%s", request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
