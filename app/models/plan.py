"""
Plan Item Hierarchy Engine
Plan domain models.

Models:
    - PlanItemType: catalog entry carrying a hierarchy level (1-5)
    - PlanItem: self-referential work-breakdown node with materialized path
    - PlanItemHistory: append-only field-level change log

Tree encoding:
    path  = parent.path + "/" + parent.id   ("" for roots)
    depth = parent.depth + 1                (0 for roots)
"""

import uuid
from datetime import datetime, timezone

from app.models import db


__all__ = [
    "PLAN_ITEM_STATUSES",
    "TRACKABLE_FIELDS",
    "DEFAULT_PLAN_ITEM_TYPES",
    "PATH_SEPARATOR",
    "PlanItemType",
    "PlanItem",
    "PlanItemHistory",
]


# ── Constants ────────────────────────────────────────────────────────────────

PLAN_ITEM_STATUSES = (
    "not_started",
    "in_progress",
    "completed",
    "on_hold",
    "blocked",
    "cancelled",
)

# Fields whose changes are written to plan_item_history.
TRACKABLE_FIELDS = (
    "name",
    "description",
    "owner",
    "status",
    "start_date",
    "target_end_date",
    "actual_start_date",
    "actual_end_date",
    "notes",
)

PATH_SEPARATOR = "/"

DEFAULT_PLAN_ITEM_TYPES = [
    {"name": "Workstream", "slug": "workstream", "level": 1, "icon": "Layers", "color": "#3b82f6",
     "description": "High-level work category or stream"},
    {"name": "Milestone", "slug": "milestone", "level": 2, "icon": "Flag", "color": "#10b981",
     "description": "Key project milestone or checkpoint"},
    {"name": "Activity", "slug": "activity", "level": 3, "icon": "Activity", "color": "#8b5cf6",
     "description": "A specific activity within a milestone"},
    {"name": "Task", "slug": "task", "level": 4, "icon": "CheckSquare", "color": "#f59e0b",
     "description": "A task to be completed"},
    {"name": "Subtask", "slug": "subtask", "level": 5, "icon": "Check", "color": "#6b7280",
     "description": "A subtask within a task"},
]


# ── Helpers ──────────────────────────────────────────────────────────────────

def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# 1. PlanItemType — global (organization_id NULL) or organization-specific
# ═════════════════════════════════════════════════════════════════════════════

class PlanItemType(db.Model):
    __tablename__ = "plan_item_types"
    __table_args__ = (
        db.UniqueConstraint("slug", "organization_id", name="uq_plan_item_types_slug_org"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="NULL for global system types",
    )
    name = db.Column(db.String(100), nullable=False)
    slug = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    level = db.Column(
        db.Integer, nullable=False, default=1, index=True,
        comment="1=Workstream, 2=Milestone, 3=Activity, 4=Task, 5=Subtask",
    )
    icon = db.Column(db.String(50), nullable=True)
    color = db.Column(db.String(20), nullable=True)
    is_system = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    def to_summary(self):
        """Compact representation embedded in every plan item payload."""
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "level": self.level,
            "icon": self.icon,
            "color": self.color,
        }

    def to_dict(self):
        d = self.to_summary()
        d.update({
            "organization_id": self.organization_id,
            "description": self.description,
            "is_system": self.is_system,
            "is_active": self.is_active,
        })
        return d

    def __repr__(self):
        return f"<PlanItemType {self.id}: {self.slug} L{self.level}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. PlanItem — self-referential tree stored as flat rows
# ═════════════════════════════════════════════════════════════════════════════

class PlanItem(db.Model):
    """
    Work-breakdown node (workstream → milestone → activity → task → subtask).

    Rows never hold object references to each other for tree logic; cycle
    checks and subtree queries run over ``path``. Soft-deleted rows keep
    their last path/depth.
    """

    __tablename__ = "plan_items"
    __table_args__ = (
        db.Index("idx_plan_items_project_parent", "project_id", "parent_id"),
        db.Index("idx_plan_items_path", "path"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    project_id = db.Column(
        db.String(36),
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    parent_id = db.Column(
        db.String(36),
        db.ForeignKey("plan_items.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="NULL for roots",
    )
    item_type_id = db.Column(
        db.Integer,
        db.ForeignKey("plan_item_types.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(500), nullable=False)
    description = db.Column(db.Text, nullable=True)
    owner = db.Column(db.String(255), nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default="not_started", index=True,
        comment="not_started | in_progress | completed | on_hold | blocked | cancelled",
    )
    start_date = db.Column(db.Date, nullable=True)
    target_end_date = db.Column(db.Date, nullable=True)
    actual_start_date = db.Column(db.Date, nullable=True)
    actual_end_date = db.Column(db.Date, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    references = db.Column(db.JSON, nullable=False, default=list)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    path = db.Column(db.Text, nullable=False, default="")
    depth = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    item_type = db.relationship("PlanItemType", lazy="joined")
    project = db.relationship("Project")

    @property
    def subtree_prefix(self):
        """Path value carried by this item's direct children."""
        return f"{self.path}{PATH_SEPARATOR}{self.id}"

    def to_dict(self, include_children=None):
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "parent_id": self.parent_id,
            "item_type_id": self.item_type_id,
            "item_type": self.item_type.to_summary() if self.item_type else None,
            "name": self.name,
            "description": self.description,
            "owner": self.owner,
            "status": self.status,
            "start_date": _iso(self.start_date),
            "target_end_date": _iso(self.target_end_date),
            "actual_start_date": _iso(self.actual_start_date),
            "actual_end_date": _iso(self.actual_end_date),
            "notes": self.notes,
            "references": list(self.references or []),
            "sort_order": self.sort_order,
            "path": self.path,
            "depth": self.depth,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_children is not None:
            d["children"] = [c.to_dict() for c in include_children]
        return d

    def __repr__(self):
        return f"<PlanItem {self.id}: {self.name!r} depth={self.depth}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. PlanItemHistory — append-only change log
# ═════════════════════════════════════════════════════════════════════════════

class PlanItemHistory(db.Model):
    """One row per changed field per update. Never mutated after insert."""

    __tablename__ = "plan_item_history"
    __table_args__ = (
        db.Index("idx_plan_item_history_item_created", "plan_item_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    plan_item_id = db.Column(
        db.String(36),
        db.ForeignKey("plan_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    field = db.Column(db.String(50), nullable=False)
    old_value = db.Column(db.Text, nullable=True)
    new_value = db.Column(db.Text, nullable=True)
    changed_by_user_id = db.Column(db.Integer, nullable=True)
    changed_by_email = db.Column(db.String(255), nullable=True)
    change_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, index=True,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "plan_item_id": self.plan_item_id,
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "changed_by_user_id": self.changed_by_user_id,
            "changed_by_email": self.changed_by_email,
            "change_reason": self.change_reason,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<PlanItemHistory {self.id}: {self.plan_item_id}.{self.field}>"
