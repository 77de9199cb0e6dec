"""
Shared pytest fixtures for the Shopfloor engine test suite.

Provides:
    - app: Flask application (session-scoped) with a static role repository
    - session: Per-test DB create/drop (autouse)
    - client: Flask test client (function-scoped)
    - people: well-known caller ids and their roles
    - stations: the default station catalog keyed by category
    - make_order: factory for an order routed through given stations
"""

from types import SimpleNamespace

import pytest

from shopfloor import create_app
from shopfloor.models import db as _db
from shopfloor.services import events, routing_service
from shopfloor.services.role_repository import StaticRoleRepository
from shopfloor.services.station_catalog import seed_default_stations

PEOPLE = SimpleNamespace(
    top_admin=1,
    admin=2,
    production_manager=3,
    supervisor=4,
    tech=10,
    other_tech=11,
    painter=20,
    inspector=30,
    nobody=99,
)

ROLES = {
    PEOPLE.top_admin: ["SuperAdmin"],
    PEOPLE.admin: ["Admin"],
    PEOPLE.production_manager: ["ProductionManager"],
    PEOPLE.supervisor: ["Supervisor"],
    PEOPLE.tech: ["Production"],
    PEOPLE.other_tech: ["Production"],
    PEOPLE.painter: ["Painting"],
    PEOPLE.inspector: ["QC"],
}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing", role_repository=StaticRoleRepository(ROLES))


@pytest.fixture(autouse=True)
def session(app):
    """Per-test: fresh tables and an empty listener registry."""
    with app.app_context():
        _db.create_all()
        events.clear_listeners()
        yield
        events.clear_listeners()
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def people():
    return PEOPLE


@pytest.fixture()
def stations():
    """Seed the default catalog; returns ``{category: Station}``."""
    return {s.category: s for s in seed_default_stations()}


@pytest.fixture()
def make_order(stations):
    """Create an order routed through ``route``.

    ``route`` is a list of ``(category, technician_id)`` pairs; a
    ``task_ref`` third element sets the step's inspection task reference.
    """

    def _make(order_no="T-1", quantity=10, route=(("assembly", PEOPLE.tech), ("qc", None))):
        order = routing_service.create_order(
            {"order_no": order_no, "quantity": quantity, "customer_name": "Siam Doors"},
        )
        entries = []
        for item in route:
            category, technician_id = item[0], item[1]
            entry = {"station_id": stations[category].id, "technician_id": technician_id}
            if len(item) > 2:
                entry["inspection_task_ref"] = item[2]
            entries.append(entry)
        routing_service.save_routing(order_no, entries, assigned_by=PEOPLE.admin)
        return order

    return _make
