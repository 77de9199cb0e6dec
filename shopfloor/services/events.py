"""
Transition event hook.

Every state transition emits an event so surrounding collaborators
(notifications, dashboards) can react. Listeners are plain callables
registered by event type; ``"*"`` receives everything.

Usage:
    @register_listener("step_completed")
    def notify_next_station(event_type, payload):
        ...

Listener failures are logged and swallowed: an event is emitted after the
primary transition has committed and must not turn it into a failure.
"""

from __future__ import annotations

import logging
from typing import Callable

logger = logging.getLogger(__name__)

STEP_STARTED = "step_started"
STEP_COMPLETED = "step_completed"
ORDER_FINISHED = "order_finished"
ORDER_RESET = "order_reset"
REMEDIATION_CREATED = "remediation_created"
REMEDIATION_APPROVED = "remediation_approved"
REMEDIATION_REJECTED = "remediation_rejected"
REMEDIATION_MERGED = "remediation_merged"
BATCH_MERGE_REQUESTED = "batch_merge_requested"
BATCH_MERGE_APPROVED = "batch_merge_approved"
BATCH_MERGE_REJECTED = "batch_merge_rejected"

EVENT_TYPES = {
    STEP_STARTED, STEP_COMPLETED, ORDER_FINISHED, ORDER_RESET,
    REMEDIATION_CREATED, REMEDIATION_APPROVED, REMEDIATION_REJECTED, REMEDIATION_MERGED,
    BATCH_MERGE_REQUESTED, BATCH_MERGE_APPROVED, BATCH_MERGE_REJECTED,
}


# ═══════════════════════════════════════════════════════════════════════════
#  Listener Registry
# ═══════════════════════════════════════════════════════════════════════════

_listeners: dict[str, list[Callable]] = {}


def register_listener(event_type: str):
    """Decorator to register a listener for one event type (or ``"*"``)."""
    if event_type != "*" and event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type}")

    def decorator(fn: Callable) -> Callable:
        _listeners.setdefault(event_type, []).append(fn)
        return fn
    return decorator


def unregister_listener(event_type: str, fn: Callable) -> None:
    handlers = _listeners.get(event_type, [])
    if fn in handlers:
        handlers.remove(fn)


def clear_listeners() -> None:
    _listeners.clear()


def get_registered_listeners() -> dict[str, list[Callable]]:
    """Return a copy of the registry."""
    return {k: list(v) for k, v in _listeners.items()}


def emit(event_type: str, **payload) -> int:
    """Deliver an event to its listeners. Returns how many ran without error."""
    delivered = 0
    for fn in _listeners.get(event_type, []) + _listeners.get("*", []):
        try:
            fn(event_type, payload)
            delivered += 1
        except Exception:
            logger.warning(
                "Event listener %s failed for %s",
                getattr(fn, "__name__", repr(fn)), event_type,
                exc_info=True, extra={"event_type": event_type},
            )
    logger.debug("Event %s delivered to %d listener(s)", event_type, delivered,
                 extra={"event_type": event_type})
    return delivered
