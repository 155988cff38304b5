"""plan_item_hierarchy

Create organization/project scope tables and the plan item hierarchy:
plan_item_types, plan_items (materialized path), plan_item_history.
Seeds the five global plan item types.

Revision ID: 7c1e4a9b2d30
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from datetime import datetime, timezone

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7c1e4a9b2d30"
down_revision = None
branch_labels = None
depends_on = None


_DEFAULT_TYPES = [
    ("Workstream", "workstream", 1, "Layers", "#3b82f6", "High-level work category or stream"),
    ("Milestone", "milestone", 2, "Flag", "#10b981", "Key project milestone or checkpoint"),
    ("Activity", "activity", 3, "Activity", "#8b5cf6", "A specific activity within a milestone"),
    ("Task", "task", 4, "CheckSquare", "#f59e0b", "A task to be completed"),
    ("Subtask", "subtask", 5, "Check", "#6b7280", "A subtask within a task"),
]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "organizations" not in existing_tables:
        op.create_table(
            "organizations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("client", sa.String(length=200), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="active"),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("target_end_date", sa.Date(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("organization_id", "name", name="uq_projects_org_name"),
        )
        op.create_index("ix_projects_organization_id", "projects", ["organization_id"])
        op.create_index("ix_projects_is_active", "projects", ["is_active"])

    if "plan_item_types" not in existing_tables:
        op.create_table(
            "plan_item_types",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=True),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("level", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("icon", sa.String(length=50), nullable=True),
            sa.Column("color", sa.String(length=20), nullable=True),
            sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug", "organization_id", name="uq_plan_item_types_slug_org"),
        )
        op.create_index("ix_plan_item_types_organization_id", "plan_item_types", ["organization_id"])
        op.create_index("ix_plan_item_types_level", "plan_item_types", ["level"])
        op.create_index("ix_plan_item_types_is_active", "plan_item_types", ["is_active"])

        now = datetime.now(timezone.utc)
        types_table = sa.table(
            "plan_item_types",
            sa.column("name", sa.String),
            sa.column("slug", sa.String),
            sa.column("level", sa.Integer),
            sa.column("icon", sa.String),
            sa.column("color", sa.String),
            sa.column("description", sa.Text),
            sa.column("is_system", sa.Boolean),
            sa.column("is_active", sa.Boolean),
            sa.column("created_at", sa.DateTime(timezone=True)),
            sa.column("updated_at", sa.DateTime(timezone=True)),
        )
        op.bulk_insert(types_table, [
            {
                "name": name, "slug": slug, "level": level, "icon": icon, "color": color,
                "description": description, "is_system": True, "is_active": True,
                "created_at": now, "updated_at": now,
            }
            for name, slug, level, icon, color, description in _DEFAULT_TYPES
        ])

    if "plan_items" not in existing_tables:
        op.create_table(
            "plan_items",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("project_id", sa.String(length=36), nullable=False),
            sa.Column("parent_id", sa.String(length=36), nullable=True),
            sa.Column("item_type_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=500), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("owner", sa.String(length=255), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="not_started"),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("target_end_date", sa.Date(), nullable=True),
            sa.Column("actual_start_date", sa.Date(), nullable=True),
            sa.Column("actual_end_date", sa.Date(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("references", sa.JSON(), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("path", sa.Text(), nullable=False, server_default=""),
            sa.Column("depth", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["parent_id"], ["plan_items.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["item_type_id"], ["plan_item_types.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_plan_items_project_id", "plan_items", ["project_id"])
        op.create_index("ix_plan_items_parent_id", "plan_items", ["parent_id"])
        op.create_index("ix_plan_items_item_type_id", "plan_items", ["item_type_id"])
        op.create_index("ix_plan_items_status", "plan_items", ["status"])
        op.create_index("ix_plan_items_is_active", "plan_items", ["is_active"])
        op.create_index("idx_plan_items_project_parent", "plan_items", ["project_id", "parent_id"])
        op.create_index("idx_plan_items_path", "plan_items", ["path"])

    if "plan_item_history" not in existing_tables:
        op.create_table(
            "plan_item_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("plan_item_id", sa.String(length=36), nullable=False),
            sa.Column("field", sa.String(length=50), nullable=False),
            sa.Column("old_value", sa.Text(), nullable=True),
            sa.Column("new_value", sa.Text(), nullable=True),
            sa.Column("changed_by_user_id", sa.Integer(), nullable=True),
            sa.Column("changed_by_email", sa.String(length=255), nullable=True),
            sa.Column("change_reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["plan_item_id"], ["plan_items.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_plan_item_history_plan_item_id", "plan_item_history", ["plan_item_id"])
        op.create_index("ix_plan_item_history_created_at", "plan_item_history", ["created_at"])
        op.create_index(
            "idx_plan_item_history_item_created", "plan_item_history", ["plan_item_id", "created_at"],
        )


def downgrade():
    op.drop_table("plan_item_history")
    op.drop_table("plan_items")
    op.drop_table("plan_item_types")
    op.drop_table("projects")
    op.drop_table("organizations")
