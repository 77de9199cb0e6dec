"""
Logging setup for the engine.

Services log through ``logging.getLogger(__name__)`` and pass their scope
in ``extra`` (order_no, station_id, step_order, event_type). Request
middleware adds method, path, status and timing. Both formatters below
surface those keys:

    LogLineFormatter   one-line, coloured, for a terminal
    JSONLineFormatter  one JSON object per line, for log shipping

``LOG_FORMAT`` (``json`` | ``readable``) and ``LOG_LEVEL`` override the
per-environment defaults.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

CONTEXT_KEYS = (
    "order_no",
    "station_id",
    "step_order",
    "event_type",
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)

QUIET_LOGGERS = ("werkzeug", "urllib3", "sqlalchemy.engine")


def record_context(record: logging.LogRecord) -> dict:
    """The engine ``extra`` keys present on a record."""
    return {
        key: getattr(record, key)
        for key in CONTEXT_KEYS
        if getattr(record, key, None) is not None
    }


class JSONLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(record_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class LogLineFormatter(logging.Formatter):
    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def scope(ctx: dict) -> str:
        """``[T-1 #2]`` for order/step, ``[GET /path 200]`` for requests."""
        if "order_no" in ctx:
            step = f" #{ctx['step_order']}" if "step_order" in ctx else ""
            return f"[{ctx['order_no']}{step}] "
        if "method" in ctx:
            return f"[{ctx['method']} {ctx.get('path', '')} {ctx.get('status', '')}] "
        return ""

    def format(self, record: logging.LogRecord) -> str:
        ctx = record_context(record)
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        color = self.LEVEL_COLORS.get(record.levelno, "")
        line = (
            f"{stamp} {color}{record.levelname:<8}{self.RESET} "
            f"{record.name}: {self.scope(ctx)}{record.getMessage()}"
        )
        if "duration_ms" in ctx:
            line += f" ({ctx['duration_ms']:.0f}ms)"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger for this app."""
    testing = app.config.get("TESTING", False)
    production = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = os.getenv("LOG_FORMAT", "json" if production else "readable").lower()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONLineFormatter() if fmt == "json" else LogLineFormatter())

    root = logging.getLogger()
    # create_app runs once per test module; replace rather than stack
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging ready level=%s format=%s", level_name, fmt)
