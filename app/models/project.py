"""
Plan Item Hierarchy Engine
Scope models — the organization/project boundary every plan tree lives in.

Models:
    - Organization: tenant that owns projects and custom item types
    - Project: execution unit that owns one plan tree
"""

import uuid
from datetime import datetime, timezone

from app.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


class Organization(db.Model):
    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    projects = db.relationship("Project", back_populates="organization", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Organization {self.id}: {self.slug}>"


class Project(db.Model):
    """Project that owns a single plan tree. Scoped to one organization."""

    __tablename__ = "projects"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "name", name="uq_projects_org_name"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    client = db.Column(db.String(200), nullable=True)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(
        db.String(30), nullable=False, default="active",
        comment="active | on_hold | completed | archived",
    )
    start_date = db.Column(db.Date, nullable=True)
    target_end_date = db.Column(db.Date, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    organization = db.relationship("Organization", back_populates="projects")

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "client": self.client,
            "description": self.description,
            "status": self.status,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "target_end_date": self.target_end_date.isoformat() if self.target_end_date else None,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.name}>"
