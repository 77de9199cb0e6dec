"""
Per-request id and timing.

Each response carries ``X-Request-ID`` (echoed from the caller when sent)
and ``X-Request-Duration-Ms``. Slow requests log at WARNING, 5xx at ERROR,
everything else at DEBUG. Health probes are not logged.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

SLOW_REQUEST_MS = 1000
UNLOGGED_PATHS = frozenset({"/api/v1/health/ready", "/api/v1/health/live"})


def _log_level(status_code: int, elapsed_ms: float) -> int:
    if elapsed_ms > SLOW_REQUEST_MS:
        return logging.WARNING
    if status_code >= 500:
        return logging.ERROR
    return logging.DEBUG


def init_request_timing(app: Flask):
    @app.before_request
    def _stamp_request():
        g.started = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _finish_request(response):
        started = g.get("started")
        if started is None:
            return response

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.get("request_id", "")
        response.headers["X-Request-Duration-Ms"] = f"{elapsed_ms:.1f}"

        if request.path not in UNLOGGED_PATHS:
            logger.log(
                _log_level(response.status_code, elapsed_ms),
                "%s %s -> %d", request.method, request.path, response.status_code,
                extra={
                    "request_id": g.get("request_id"),
                    "method": request.method,
                    "path": request.path,
                    "status": response.status_code,
                    "duration_ms": elapsed_ms,
                    "remote_addr": request.remote_addr,
                    "order_no": (request.view_args or {}).get("order_no"),
                },
            )
        return response
