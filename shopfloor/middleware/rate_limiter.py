"""
Per-blueprint Flask-Limiter limits, keyed by remote address.

    state-changing blueprints   60/minute
    station catalog             200/minute
    health                      exempt

Skipped entirely when TESTING is set.
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"

BLUEPRINT_LIMITS = {
    "production": WRITE_LIMIT,
    "remediation": WRITE_LIMIT,
    "batch": WRITE_LIMIT,
    "order": WRITE_LIMIT,
    "station": READ_LIMIT,
}
EXEMPT_BLUEPRINTS = ("health",)


def init_rate_limits(app, limiter):
    if app.config.get("TESTING"):
        logger.debug("Rate limits off under TESTING")
        return

    for name, limit in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(name)
        if bp is not None:
            limiter.limit(limit)(bp)
    for name in EXEMPT_BLUEPRINTS:
        bp = app.blueprints.get(name)
        if bp is not None:
            limiter.exempt(bp)

    logger.info("Rate limits applied write=%s read=%s", WRITE_LIMIT, READ_LIMIT)
