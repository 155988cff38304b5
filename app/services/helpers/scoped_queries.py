"""
Organization/project-scoped query helpers.

Every plan-engine lookup by id goes through these helpers instead of
``db.session.get(Model, pk)``. A bare ``.get()`` ignores both the
organization boundary and the soft-delete flag.

Usage:
    # Project must belong to the caller's organization and be active
    project = get_scoped(Project, project_id, organization_id=org_id)

    # Parent must be an active item of the same project
    parent = get_scoped(PlanItem, parent_id, project_id=project.id,
                        resource="Parent plan item")

    # Item addressed directly by id: NotFound vs Forbidden are distinct
    item = get_owned_plan_item(item_id, organization_id=org_id)

Scope field resolution:
    Each keyword argument maps directly to a column name on the model.
    A scope kwarg naming a column the model lacks raises ValueError so the
    bug surfaces in tests rather than as an unscoped lookup.
"""

import logging

from sqlalchemy import or_, select

from app.core.exceptions import ForbiddenError, NotFoundError
from app.models import db
from app.models.plan import PlanItem, PlanItemType
from app.models.project import Project

logger = logging.getLogger(__name__)

_SCOPE_KWARGS = ("project_id", "organization_id")


def get_scoped(
    model,
    pk,
    *,
    project_id: str | None = None,
    organization_id: int | None = None,
    active_only: bool = True,
    resource: str | None = None,
):
    """Fetch a single entity by PK with mandatory scope filter.

    Args:
        model: SQLAlchemy model class with an ``id`` PK column.
        pk: Primary key value to look up.
        project_id: Scope by project_id column.
        organization_id: Scope by organization_id column.
        active_only: Also require ``is_active`` to be true.
        resource: Name used in the NotFoundError message (defaults to the
                  model name).

    Returns:
        The model instance if found within the given scope.

    Raises:
        ValueError: No scope given, or a scope column missing on the model.
        NotFoundError: Missing, inactive, or outside the scope. The cases
                       are intentionally indistinguishable.
    """
    provided_scopes = {
        "project_id": project_id,
        "organization_id": organization_id,
    }
    provided_scopes = {k: v for k, v in provided_scopes.items() if v is not None}

    if not provided_scopes:
        raise ValueError(
            f"{model.__name__} id={pk} requires at least one scope filter "
            f"({', '.join(_SCOPE_KWARGS)}). Unscoped lookups are forbidden."
        )

    missing_fields = [field for field in provided_scopes if not hasattr(model, field)]
    if missing_fields:
        raise ValueError(
            f"{model.__name__} has no scope column(s) {sorted(missing_fields)}; "
            "refusing to perform an unscoped lookup."
        )

    stmt = select(model).where(model.id == pk)
    for field, value in provided_scopes.items():
        stmt = stmt.where(getattr(model, field) == value)
    if active_only:
        stmt = stmt.where(model.is_active.is_(True))

    result = db.session.execute(stmt).scalar_one_or_none()

    if result is None:
        logger.debug(
            "get_scoped: %s id=%s not found in scope %s",
            model.__name__,
            pk,
            provided_scopes,
        )
        raise NotFoundError(resource=resource or model.__name__, resource_id=pk)

    return result


def get_owned_plan_item(item_id, *, organization_id: int, include_inactive: bool = False) -> PlanItem:
    """Load a plan item by id and verify the caller's organization owns it.

    Items are addressed by id alone (no project in the URL), so the owning
    organization is checked after the lookup: a missing or inactive item is
    NotFound, an item of another organization is Forbidden.
    """
    stmt = (
        select(PlanItem, Project.organization_id)
        .join(Project, Project.id == PlanItem.project_id)
        .where(PlanItem.id == item_id)
    )
    if not include_inactive:
        stmt = stmt.where(PlanItem.is_active.is_(True))

    row = db.session.execute(stmt).first()
    if row is None:
        raise NotFoundError(resource="PlanItem", resource_id=item_id)

    item, owner_org_id = row
    if owner_org_id != organization_id:
        logger.warning(
            "Cross-organization access denied: plan_item=%s owner_org=%s caller_org=%s",
            item_id,
            owner_org_id,
            organization_id,
        )
        raise ForbiddenError()
    return item


def get_scoped_item_type(type_id, *, organization_id: int) -> PlanItemType:
    """Resolve an active item type that is global or owned by the organization."""
    stmt = select(PlanItemType).where(
        PlanItemType.id == type_id,
        PlanItemType.is_active.is_(True),
        or_(
            PlanItemType.organization_id.is_(None),
            PlanItemType.organization_id == organization_id,
        ),
    )
    item_type = db.session.execute(stmt).scalar_one_or_none()
    if item_type is None:
        raise NotFoundError(resource="PlanItemType", resource_id=type_id)
    return item_type
