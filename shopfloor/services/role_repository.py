"""
Role repository - the identity/role lookup the engine consumes.

The Authorization Resolver never reads role tables itself; it receives the
caller's ``RoleGrant`` set from a ``RoleRepository``. The app installs a
``SqlRoleRepository`` in ``app.extensions["role_repository"]``; tests and
embedding callers can swap in a ``StaticRoleRepository``.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import select

from shopfloor.models import db
from shopfloor.models.auth import Role, User, UserRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoleGrant:
    """One role held by a caller, with the capabilities it confers."""

    name: str
    is_admin: bool = False
    is_top_admin: bool = False
    is_production_supervisor: bool = False
    manages: frozenset = field(default_factory=frozenset)
    station_categories: frozenset = field(default_factory=frozenset)

    @property
    def key(self) -> str:
        return self.name.lower()

    @classmethod
    def from_role(cls, role: Role) -> "RoleGrant":
        return cls(
            name=role.name,
            is_admin=bool(role.is_admin or role.is_top_admin),
            is_top_admin=bool(role.is_top_admin),
            is_production_supervisor=bool(role.is_production_supervisor),
            manages=frozenset(m.lower() for m in (role.manages or [])),
            station_categories=frozenset(c.lower() for c in (role.station_categories or [])),
        )


# ── Default role catalog ─────────────────────────────────────────────────────

DEFAULT_ROLES = [
    {"name": "SuperAdmin", "display_name": "Super Administrator",
     "is_admin": True, "is_top_admin": True},
    {"name": "Admin", "display_name": "Administrator", "is_admin": True},
    {"name": "ProductionManager", "display_name": "Production Manager",
     "is_production_supervisor": True},
    {"name": "Supervisor", "display_name": "Line Supervisor",
     "manages": ["Production", "Painting", "Packing", "CNC"]},
    {"name": "Production", "display_name": "Production Technician"},
    {"name": "Painting", "display_name": "Painter", "station_categories": ["paint"]},
    {"name": "Packing", "display_name": "Packer", "station_categories": ["packing"]},
    {"name": "CNC", "display_name": "CNC Operator", "station_categories": ["cnc"]},
    {"name": "QC", "display_name": "Quality Inspector", "station_categories": ["qc"]},
]

DEFAULT_ROLE_GRANTS = {
    entry["name"].lower(): RoleGrant(
        name=entry["name"],
        is_admin=entry.get("is_admin", False),
        is_top_admin=entry.get("is_top_admin", False),
        is_production_supervisor=entry.get("is_production_supervisor", False),
        manages=frozenset(m.lower() for m in entry.get("manages", [])),
        station_categories=frozenset(entry.get("station_categories", [])),
    )
    for entry in DEFAULT_ROLES
}


def grant_for_name(name: str) -> RoleGrant:
    """Catalog grant for a role name; unknown names get no capabilities."""
    return DEFAULT_ROLE_GRANTS.get(name.lower(), RoleGrant(name=name))


# ═══════════════════════════════════════════════════════════════════════════
#  Repositories
# ═══════════════════════════════════════════════════════════════════════════


class RoleRepository(abc.ABC):
    @abc.abstractmethod
    def roles_for(self, user_id) -> frozenset[RoleGrant]:
        """Return the caller's role grants (empty for unknown callers)."""

    def role_names_for(self, user_id) -> set[str]:
        return {g.key for g in self.roles_for(user_id)}


class SqlRoleRepository(RoleRepository):
    """Reads ``users`` / ``roles`` / ``user_roles``."""

    def roles_for(self, user_id) -> frozenset[RoleGrant]:
        if user_id is None:
            return frozenset()
        stmt = (
            select(Role)
            .join(UserRole, UserRole.role_id == Role.id)
            .join(User, User.id == UserRole.user_id)
            .where(User.id == user_id, User.is_active.is_(True))
        )
        roles = db.session.execute(stmt).scalars().all()
        return frozenset(RoleGrant.from_role(r) for r in roles)


class StaticRoleRepository(RoleRepository):
    """Dict-backed repository: ``{user_id: [role name or RoleGrant, ...]}``."""

    def __init__(self, mapping: dict | None = None) -> None:
        self._mapping: dict = {}
        for user_id, roles in (mapping or {}).items():
            self.set_roles(user_id, roles)

    def set_roles(self, user_id, roles) -> None:
        self._mapping[user_id] = frozenset(
            r if isinstance(r, RoleGrant) else grant_for_name(r) for r in roles
        )

    def roles_for(self, user_id) -> frozenset[RoleGrant]:
        return self._mapping.get(user_id, frozenset())


def get_role_repository() -> RoleRepository:
    """The repository installed on the current app."""
    repo = current_app.extensions.get("role_repository")
    if repo is None:
        repo = SqlRoleRepository()
        current_app.extensions["role_repository"] = repo
    return repo


# ── Seeding ──────────────────────────────────────────────────────────────────


def seed_default_roles() -> list[Role]:
    """Insert the default role catalog; existing roles are left untouched."""
    existing = {r.name.lower() for r in Role.query.all()}
    created = []
    for entry in DEFAULT_ROLES:
        if entry["name"].lower() in existing:
            continue
        role = Role(
            name=entry["name"],
            display_name=entry.get("display_name"),
            is_admin=entry.get("is_admin", False),
            is_top_admin=entry.get("is_top_admin", False),
            is_production_supervisor=entry.get("is_production_supervisor", False),
            manages=list(entry.get("manages", [])),
            station_categories=list(entry.get("station_categories", [])),
        )
        db.session.add(role)
        created.append(role)
    db.session.commit()
    logger.info("Seeded %d role(s)", len(created))
    return created


def create_user(name: str, role_names=(), email: str | None = None) -> User:
    """Create a user holding the named catalog roles (seeding the catalog if needed)."""
    wanted = {n.lower() for n in role_names}
    roles = [r for r in Role.query.all() if r.name.lower() in wanted]
    if len(roles) < len(wanted):
        seed_default_roles()
        roles = [r for r in Role.query.all() if r.name.lower() in wanted]
    user = User(name=name, email=email)
    for role in roles:
        user.user_roles.append(UserRole(role=role))
    db.session.add(user)
    db.session.commit()
    logger.info("User created id=%s roles=%s", user.id, sorted(r.name for r in roles))
    return user
