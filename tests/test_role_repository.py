"""Role repository tests: table-backed lookup and the static stand-in."""

from shopfloor.models import db
from shopfloor.models.auth import Role
from shopfloor.services.role_repository import (
    RoleGrant,
    SqlRoleRepository,
    StaticRoleRepository,
    create_user,
    seed_default_roles,
)


class TestSqlRoleRepository:
    def test_grants_from_tables(self):
        user = create_user("Somchai", ["Supervisor", "Painting"])
        grants = {g.key: g for g in SqlRoleRepository().roles_for(user.id)}

        assert set(grants) == {"supervisor", "painting"}
        assert "production" in grants["supervisor"].manages
        assert grants["painting"].station_categories == frozenset({"paint"})

    def test_top_admin_implies_admin(self):
        user = create_user("Root", ["SuperAdmin"])
        (grant,) = SqlRoleRepository().roles_for(user.id)
        assert grant.is_admin and grant.is_top_admin

    def test_inactive_user_has_no_roles(self):
        user = create_user("Former", ["Admin"])
        user.is_active = False
        db.session.commit()
        assert SqlRoleRepository().roles_for(user.id) == frozenset()

    def test_unknown_or_missing_caller(self):
        repo = SqlRoleRepository()
        assert repo.roles_for(404) == frozenset()
        assert repo.roles_for(None) == frozenset()

    def test_seed_is_idempotent(self):
        seed_default_roles()
        assert seed_default_roles() == []
        assert Role.query.filter_by(name="Admin").count() == 1


class TestStaticRoleRepository:
    def test_names_and_grants(self):
        custom = RoleGrant(name="Sander", station_categories=frozenset({"sizing"}))
        repo = StaticRoleRepository({7: ["Admin", custom]})
        assert repo.role_names_for(7) == {"admin", "sander"}
        assert repo.roles_for(8) == frozenset()

    def test_set_roles_replaces(self):
        repo = StaticRoleRepository({7: ["Admin"]})
        repo.set_roles(7, ["Production"])
        assert repo.role_names_for(7) == {"production"}
