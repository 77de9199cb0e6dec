"""initial_routing_schema

Creates the routing & remediation engine tables:
  - users / roles / user_roles           - identity lookup for authorization
  - stations                             - station catalog with derived category
  - orders / flow_steps / assignments    - per-order routing state machine
  - work_sessions                        - technician timing per step
  - order_batches / batch_merge_requests - inspection splits and merges
  - remediation_orders / remediation_roadmap_steps - rework lifecycle

Tables are created conditionally so the revision can run against a
database that already received them through db.create_all().

Revision ID: 7c1e2a9d4b10
Revises:
Create Date: 2026-10-19 09:12:44.120931
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '7c1e2a9d4b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Identity ──────────────────────────────────────────────────────────
    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )

    if "roles" not in existing:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("display_name", sa.String(length=200), nullable=True),
            sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_top_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_production_supervisor", sa.Boolean(), nullable=False,
                      server_default=sa.false()),
            sa.Column("manages", sa.JSON(), nullable=True,
                      comment="Role names this role may cover"),
            sa.Column("station_categories", sa.JSON(), nullable=True,
                      comment="Station categories operable without assignment"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )

    if "user_roles" not in existing:
        op.create_table(
            "user_roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "role_id", name="uq_user_role"),
        )
        op.create_index("ix_user_roles_user_id", "user_roles", ["user_id"])
        op.create_index("ix_user_roles_role_id", "user_roles", ["role_id"])

    # ── Station catalog ───────────────────────────────────────────────────
    if "stations" not in existing:
        op.create_table(
            "stations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=20), nullable=False, comment="ST001, ST002, ..."),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("name_en", sa.String(length=150), nullable=True),
            sa.Column("department", sa.String(length=100), nullable=True),
            sa.Column("category", sa.String(length=20), nullable=False, server_default="other"),
            sa.Column("estimated_hours", sa.Float(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("sort_order", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint(
                "category IN ('assembly','sizing','pressing','cnc',"
                "'paint','packing','qc','rework','other')",
                name="ck_station_category",
            ),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
            sa.UniqueConstraint("name"),
        )

    # ── Orders ────────────────────────────────────────────────────────────
    if "orders" not in existing:
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_no", sa.String(length=80), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("pass_quantity", sa.Integer(), nullable=True),
            sa.Column("priority", sa.String(length=10), nullable=False, server_default="Medium"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="Released",
                      comment="Released | In Progress | Finished"),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("customer_name", sa.String(length=200), nullable=True),
            sa.Column("due_date", sa.Date(), nullable=True),
            sa.Column("parent_order_id", sa.Integer(), nullable=True),
            sa.Column("flow_version", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("status IN ('Released','In Progress','Finished')",
                               name="ck_order_status"),
            sa.CheckConstraint("priority IN ('Low','Medium','High')", name="ck_order_priority"),
            sa.CheckConstraint("quantity >= 0", name="ck_order_quantity"),
            sa.ForeignKeyConstraint(["parent_order_id"], ["orders.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_orders_order_no", "orders", ["order_no"], unique=True)
        op.create_index("ix_orders_parent_order_id", "orders", ["parent_order_id"])

    # ── Batches ───────────────────────────────────────────────────────────
    if "order_batches" not in existing:
        op.create_table(
            "order_batches",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="in_progress"),
            sa.Column("current_station_id", sa.Integer(), nullable=True),
            sa.Column("inspection_ref", sa.String(length=100), nullable=True),
            sa.Column("child_order_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("status IN ('in_progress','rework','completed')",
                               name="ck_order_batch_status"),
            sa.CheckConstraint("quantity >= 0", name="ck_order_batch_quantity"),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["current_station_id"], ["stations.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["child_order_id"], ["orders.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_order_batches_order_id", "order_batches", ["order_id"])

    if "batch_merge_requests" not in existing:
        op.create_table(
            "batch_merge_requests",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("source_batch_ids", sa.JSON(), nullable=False),
            sa.Column("target_station_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("requested_by", sa.Integer(), nullable=True),
            sa.Column("approved_by", sa.Integer(), nullable=True),
            sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("merged_batch_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("status IN ('pending','approved','rejected')",
                               name="ck_batch_merge_request_status"),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["target_station_id"], ["stations.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["merged_batch_id"], ["order_batches.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_batch_merge_requests_order_id", "batch_merge_requests", ["order_id"])

    # ── Remediation ───────────────────────────────────────────────────────
    if "remediation_orders" not in existing:
        op.create_table(
            "remediation_orders",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("batch_id", sa.Integer(), nullable=True, comment="The fail batch"),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("severity", sa.String(length=20), nullable=False, server_default="major"),
            sa.Column("failed_station_id", sa.Integer(), nullable=True),
            sa.Column("failed_task_ref", sa.String(length=100), nullable=True),
            sa.Column("failed_step_id", sa.Integer(), nullable=True),
            sa.Column("inspection_ref", sa.String(length=100), nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("approval_status", sa.String(length=20), nullable=False,
                      server_default="pending"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("approved_by", sa.Integer(), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("merged_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("merged_quantity", sa.Integer(), nullable=True),
            sa.Column("root_order_id", sa.Integer(), nullable=True),
            sa.Column("child_order_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("severity IN ('minor','major','critical')",
                               name="ck_remediation_severity"),
            sa.CheckConstraint("approval_status IN ('pending','approved','rejected')",
                               name="ck_remediation_approval_status"),
            sa.CheckConstraint("status IN ('pending','in_progress','merged','cancelled')",
                               name="ck_remediation_status"),
            sa.CheckConstraint("quantity > 0", name="ck_remediation_quantity"),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["batch_id"], ["order_batches.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["failed_station_id"], ["stations.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["root_order_id"], ["orders.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["child_order_id"], ["orders.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_remediation_orders_order_id", "remediation_orders", ["order_id"])
        op.create_index("ix_remediation_orders_batch_id", "remediation_orders", ["batch_id"])
        op.create_index("ix_remediation_orders_child_order_id", "remediation_orders",
                        ["child_order_id"])

    if "remediation_roadmap_steps" not in existing:
        op.create_table(
            "remediation_roadmap_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("remediation_order_id", sa.Integer(), nullable=False),
            sa.Column("step_order", sa.Integer(), nullable=False),
            sa.Column("station_id", sa.Integer(), nullable=False),
            sa.Column("station_name", sa.String(length=150), nullable=True),
            sa.Column("assigned_technician_id", sa.Integer(), nullable=True),
            sa.Column("estimated_hours", sa.Float(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.ForeignKeyConstraint(["remediation_order_id"], ["remediation_orders.id"],
                                    ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["station_id"], ["stations.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("remediation_order_id", "step_order", name="uq_roadmap_step_order"),
        )
        op.create_index("ix_remediation_roadmap_steps_remediation_order_id",
                        "remediation_roadmap_steps", ["remediation_order_id"])

    # ── Flow ──────────────────────────────────────────────────────────────
    if "flow_steps" not in existing:
        op.create_table(
            "flow_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("station_id", sa.Integer(), nullable=False),
            sa.Column("step_order", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("batch_id", sa.Integer(), nullable=True),
            sa.Column("remediation_order_id", sa.Integer(), nullable=True),
            sa.Column("is_remediation_path", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_remediation_order", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("inspection_task_ref", sa.String(length=100), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint(
                "status IN ('pending','current','completed','rework','rejected')",
                name="ck_flow_step_status",
            ),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["station_id"], ["stations.id"]),
            sa.ForeignKeyConstraint(["batch_id"], ["order_batches.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["remediation_order_id"], ["remediation_orders.id"],
                                    ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("order_id", "step_order", name="uq_flow_steps_order_step"),
        )
        op.create_index("ix_flow_steps_order_id", "flow_steps", ["order_id"])
        op.create_index("ix_flow_steps_station_id", "flow_steps", ["station_id"])
        op.create_index("ix_flow_steps_batch_id", "flow_steps", ["batch_id"])
        op.create_index("ix_flow_steps_remediation_order_id", "flow_steps", ["remediation_order_id"])
        op.create_index(
            "uq_flow_steps_one_current", "flow_steps", ["order_id"], unique=True,
            sqlite_where=sa.text("status = 'current'"),
            postgresql_where=sa.text("status = 'current'"),
        )

    if "assignments" not in existing:
        op.create_table(
            "assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("station_id", sa.Integer(), nullable=False),
            sa.Column("step_order", sa.Integer(), nullable=False),
            sa.Column("technician_id", sa.Integer(), nullable=False),
            sa.Column("assignment_type", sa.String(length=20), nullable=False,
                      server_default="primary"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="assigned"),
            sa.Column("assigned_by", sa.Integer(), nullable=True),
            sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["station_id"], ["stations.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("order_id", "station_id", "step_order", "technician_id",
                                name="uq_assignment_step_technician"),
        )
        op.create_index("ix_assignments_order_id", "assignments", ["order_id"])
        op.create_index("ix_assignments_technician_id", "assignments", ["technician_id"])

    if "work_sessions" not in existing:
        op.create_table(
            "work_sessions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("station_id", sa.Integer(), nullable=False),
            sa.Column("step_order", sa.Integer(), nullable=False),
            sa.Column("technician_id", sa.Integer(), nullable=False),
            sa.Column("started_by", sa.Integer(), nullable=True),
            sa.Column("authorized_via", sa.String(length=30), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("duration_minutes", sa.Float(), nullable=True),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["station_id"], ["stations.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_work_sessions_order_id", "work_sessions", ["order_id"])
        op.create_index("ix_work_sessions_technician_id", "work_sessions", ["technician_id"])
        op.create_index(
            "uq_work_sessions_open", "work_sessions",
            ["order_id", "station_id", "step_order", "technician_id"], unique=True,
            sqlite_where=sa.text("completed_at IS NULL"),
            postgresql_where=sa.text("completed_at IS NULL"),
        )


def downgrade():
    for table in (
        "work_sessions", "assignments", "flow_steps",
        "remediation_roadmap_steps", "remediation_orders",
        "batch_merge_requests", "order_batches", "orders",
        "stations", "user_roles", "roles", "users",
    ):
        op.drop_table(table)
