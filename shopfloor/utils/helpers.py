"""Shared utility functions for services and blueprints."""
import logging
from datetime import date, datetime, timezone

from shopfloor.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input.
    """
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        logger.debug("Unparseable date value: %r", value)
        return None


def require_quantity(value, field: str) -> int:
    """Coerce a quantity to a non-negative int or raise ValidationError."""
    try:
        qty = int(value if value is not None else 0)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: value})
    if qty < 0:
        raise ValidationError(f"{field} must be >= 0", details={field: qty})
    return qty


def caller_from(data: dict, *keys: str) -> int:
    """Pull the acting user id out of a request body (``caller_id`` / ``user_id``)."""
    for key in keys or ("caller_id", "user_id"):
        value = data.get(key)
        if value is not None and value != "":
            try:
                return int(value)
            except (TypeError, ValueError):
                raise ValidationError(f"{key} must be an integer", details={key: value})
    raise ValidationError("caller_id is required")
