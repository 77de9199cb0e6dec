"""
Station Catalog - Service Layer.

Business logic for:
    - Code generation:   ST001, ST002 ... from the highest existing code
    - Category:          derived once from the station names at creation
    - CRUD:              list / get / create (deduplicated by name)
    - Seeding:           the factory's default station list
"""

import logging
import re

from sqlalchemy import select

from shopfloor.core.exceptions import NotFoundError, ValidationError
from shopfloor.models import db
from shopfloor.models.station import STATION_CATEGORIES, Station, derive_station_category

logger = logging.getLogger(__name__)

_CODE_RE = re.compile(r"ST(\d+)")

DEFAULT_STATIONS = [
    {"name": "ประกอบโครง", "name_en": "Frame Assembly", "department": "Production"},
    {"name": "ใสไม้ให้ได้ขนาด", "name_en": "Sizing", "department": "Production"},
    {"name": "อัดบาน", "name_en": "Door Pressing", "department": "Production"},
    {"name": "CNC", "name_en": "CNC", "department": "Production"},
    {"name": "สี", "name_en": "Paint", "department": "Painting"},
    {"name": "QC", "name_en": "Quality Control", "department": "Quality"},
    {"name": "Packing", "name_en": "Packing", "department": "Packing"},
    {"name": "Rework", "name_en": "Rework", "department": "Production"},
]


def generate_station_code() -> str:
    """Next ST### code after the highest numeric code in use."""
    codes = db.session.execute(select(Station.code)).scalars().all()
    highest = 0
    for code in codes:
        m = _CODE_RE.fullmatch(code or "")
        if m:
            highest = max(highest, int(m.group(1)))
    return f"ST{highest + 1:03d}"


def list_stations(active_only: bool = False) -> list[Station]:
    q = Station.query
    if active_only:
        q = q.filter_by(is_active=True)
    return q.order_by(Station.sort_order, Station.id).all()


def get_station(station_id: int) -> Station:
    station = db.session.get(Station, station_id)
    if not station:
        raise NotFoundError(resource="Station", resource_id=station_id)
    return station


def create_station(data: dict) -> tuple[Station, bool]:
    """Create a station, or return the one already carrying that name.

    Returns:
        (station, existed) where ``existed`` is True when no row was written.
    """
    name = (data.get("name") or data.get("name_th") or "").strip()
    if not name:
        raise ValidationError("Station name is required")

    existing = Station.query.filter_by(name=name).first()
    if existing:
        logger.info("Station already exists id=%s name=%s", existing.id, name)
        return existing, True

    name_en = (data.get("name_en") or "").strip() or None
    category = (data.get("category") or "").strip().lower() or derive_station_category(name, name_en)
    if category not in STATION_CATEGORIES:
        raise ValidationError(f"Invalid station category: {category}",
                              details={"allowed": sorted(STATION_CATEGORIES)})

    code = generate_station_code()
    station = Station(
        code=code,
        name=name,
        name_en=name_en,
        department=(data.get("department") or "").strip() or None,
        category=category,
        estimated_hours=data.get("estimated_hours") or 0,
        is_active=True,
        sort_order=int(code[2:]),
    )
    db.session.add(station)
    db.session.commit()
    logger.info("Station created id=%s code=%s category=%s", station.id, code, category,
                extra={"station_id": station.id})
    return station, False


def seed_default_stations() -> list[Station]:
    """Ensure the default stations exist; returns them in catalog order."""
    return [create_station(entry)[0] for entry in DEFAULT_STATIONS]
