"""
Auth Models - users, roles and user_roles.

Only what the authorization resolver reads lives here: who a caller is and
which roles they hold. Login, sessions and user administration are handled
by the surrounding application.

Role capabilities:
    is_admin                  may act on any step as themself
    is_top_admin              may additionally reset an order's flow
    is_production_supervisor  may act on any station as themself
    manages                   role names whose assigned steps this role may
                              cover on the assignee's behalf
    station_categories        station categories this role may operate
                              without an assignment
"""

from datetime import datetime, timezone

from shopfloor.models import db


# ═══════════════════════════════════════════════════════════════
# 1. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(200), unique=True, nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    user_roles = db.relationship(
        "UserRole", back_populates="user", cascade="all, delete-orphan",
    )

    @property
    def role_names(self):
        return [ur.role.name for ur in self.user_roles]

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "is_active": self.is_active,
            "roles": self.role_names,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.name}>"


# ═══════════════════════════════════════════════════════════════
# 2. ROLES
# ═══════════════════════════════════════════════════════════════
class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    display_name = db.Column(db.String(200))
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    is_top_admin = db.Column(db.Boolean, default=False, nullable=False)
    is_production_supervisor = db.Column(db.Boolean, default=False, nullable=False)
    manages = db.Column(db.JSON, default=list, comment="Role names this role may cover")
    station_categories = db.Column(
        db.JSON, default=list, comment="Station categories operable without assignment",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    user_roles = db.relationship("UserRole", back_populates="role", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "is_admin": self.is_admin,
            "is_top_admin": self.is_top_admin,
            "is_production_supervisor": self.is_production_supervisor,
            "manages": list(self.manages or []),
            "station_categories": list(self.station_categories or []),
        }


# ═══════════════════════════════════════════════════════════════
# 3. USER ↔ ROLE
# ═══════════════════════════════════════════════════════════════
class UserRole(db.Model):
    __tablename__ = "user_roles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("user_id", "role_id", name="uq_user_role"),
    )

    user = db.relationship("User", back_populates="user_roles")
    role = db.relationship("Role", back_populates="user_roles")
