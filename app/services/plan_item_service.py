"""Plan item lifecycle service.

Transaction policy: every mutation runs inside a SAVEPOINT
(``db.session.begin_nested()``) and is flushed, never committed. The caller
(route handler or CLI) owns ``db.session.commit()``. Validation always runs
before the savepoint opens, so a rejected operation leaves nothing to roll
back.

Operations:
- create / update (incl. move) / soft-delete with subtree cascade
- get with direct children, history, project tree
- bulk status update with per-item isolation
- item-type catalog listing and level → type resolution
"""

import logging
from dataclasses import replace

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import InternalError, ValidationError
from app.models import db
from app.models.plan import (
    DEFAULT_PLAN_ITEM_TYPES,
    PLAN_ITEM_STATUSES,
    TRACKABLE_FIELDS,
    PlanItem,
    PlanItemHistory,
    PlanItemType,
)
from app.models.project import Project
from app.services.helpers.scoped_queries import (
    get_owned_plan_item,
    get_scoped,
    get_scoped_item_type,
)
from app.services.plan_history import (
    ChangeActor,
    PlanItemChanges,
    diff_changes,
    record_history,
)
from app.services.plan_tree import (
    build_tree,
    calculate_path_and_depth,
    next_sort_order,
    path_contains,
    subtree_filter,
)

logger = logging.getLogger(__name__)

BULK_UPDATE_FIELDS = ("status", "notes", "references")


# ── Validation helpers ───────────────────────────────────────────────────────


def _require_name(name) -> str:
    name = str(name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    return name


def _require_status(status) -> str:
    if status not in PLAN_ITEM_STATUSES:
        raise ValidationError(
            f"Invalid status {status!r}",
            details={"status": f"must be one of {', '.join(PLAN_ITEM_STATUSES)}"},
        )
    return status


def _validate_references(project_id: str, references, *, item_id: str | None = None) -> list[str]:
    """Deduplicate references and require each to be an active item of the project."""
    if references is None:
        return []
    if not isinstance(references, (list, tuple)):
        raise ValidationError("references must be a list of plan item ids")

    unique = list(dict.fromkeys(str(ref) for ref in references))
    if item_id is not None and item_id in unique:
        raise ValidationError("A plan item can not reference itself", details={"references": [item_id]})
    if not unique:
        return []

    found = set(db.session.scalars(
        select(PlanItem.id).where(
            PlanItem.id.in_(unique),
            PlanItem.project_id == project_id,
            PlanItem.is_active.is_(True),
        )
    ))
    missing = [ref for ref in unique if ref not in found]
    if missing:
        raise ValidationError(
            "Referenced plan items not found in project",
            details={"references": missing},
        )
    return unique


def _rewrite_descendants(project_id: str, old_prefix: str, new_prefix: str, depth_delta: int) -> int:
    """Re-root the active subtree under ``old_prefix`` after a move."""
    descendants = PlanItem.query.filter(
        PlanItem.project_id == project_id,
        PlanItem.is_active.is_(True),
        subtree_filter(old_prefix),
    ).all()
    for node in descendants:
        node.path = new_prefix + node.path[len(old_prefix):]
        node.depth = node.depth + depth_delta
    return len(descendants)


# ── Create ───────────────────────────────────────────────────────────────────


def create_plan_item(project_id: str, organization_id: int, data: dict) -> PlanItem:
    """Create a plan item under an optional parent.

    ``data`` carries already-coerced values: ``item_type_id`` and ``name``
    are required; ``parent_id``, the free-text fields, dates, ``status``,
    ``references`` and ``sort_order`` are optional. Without ``sort_order``
    the item is appended after its active siblings.

    Raises:
        NotFoundError: project, parent or item type not in scope.
        ValidationError: empty name, unknown status, bad references.
    """
    project = get_scoped(Project, project_id, organization_id=organization_id)
    parent_id = data.get("parent_id") or None
    item_type = get_scoped_item_type(data.get("item_type_id"), organization_id=organization_id)
    name = _require_name(data.get("name"))
    status = _require_status(data.get("status") or "not_started")
    path, depth = calculate_path_and_depth(parent_id, project_id=project.id)
    references = _validate_references(project.id, data.get("references"))

    sort_order = data.get("sort_order")
    if sort_order is None:
        sort_order = next_sort_order(project.id, parent_id)

    item = PlanItem(
        project_id=project.id,
        parent_id=parent_id,
        item_type=item_type,
        name=name,
        description=data.get("description"),
        owner=data.get("owner"),
        status=status,
        start_date=data.get("start_date"),
        target_end_date=data.get("target_end_date"),
        actual_start_date=data.get("actual_start_date"),
        actual_end_date=data.get("actual_end_date"),
        notes=data.get("notes"),
        references=references,
        sort_order=sort_order,
        path=path,
        depth=depth,
    )
    try:
        with db.session.begin_nested():
            db.session.add(item)
    except SQLAlchemyError as exc:
        logger.exception("Failed to create plan item %r in project %s", name, project.id)
        raise InternalError("Failed to create plan item") from exc

    logger.info(
        "Created plan item %s (%s, level %s) in project %s at depth %d",
        item.id, name, item_type.level, project.id, depth,
    )
    return item


def find_or_create_plan_item(
    project_id: str,
    organization_id: int,
    *,
    parent_id: str | None,
    name: str,
    item_type_id: int,
) -> tuple[PlanItem, bool]:
    """Reuse the active sibling with this exact name, or create it.

    A reused item is returned untouched (no history, no field changes).

    Returns:
        (item, created)
    """
    query = PlanItem.query.filter(
        PlanItem.project_id == project_id,
        PlanItem.name == name,
        PlanItem.is_active.is_(True),
    )
    if parent_id is None:
        query = query.filter(PlanItem.parent_id.is_(None))
    else:
        query = query.filter(PlanItem.parent_id == parent_id)

    existing = query.order_by(PlanItem.created_at).first()
    if existing is not None:
        return existing, False

    item = create_plan_item(project_id, organization_id, {
        "parent_id": parent_id,
        "name": name,
        "item_type_id": item_type_id,
    })
    return item, True


# ── Update / move ────────────────────────────────────────────────────────────


def update_plan_item(
    item_id: str,
    organization_id: int,
    changes: PlanItemChanges,
    actor: ChangeActor | None = None,
) -> PlanItem:
    """Apply a partial update, recording one history row per changed trackable field.

    A changed ``parent_id`` moves the item: the new parent must be an active
    item of the same project and must not lie inside the item's own subtree.
    The item's path/depth are recomputed and its active descendants are
    re-rooted so every path stays consistent with its parent.

    Raises:
        NotFoundError: item, new parent or item type not in scope.
        ForbiddenError: item belongs to another organization.
        ValidationError: cyclic move, empty name, unknown status, bad references.
        InternalError: the store failed while applying the update.
    """
    item = get_owned_plan_item(item_id, organization_id=organization_id)

    if changes.is_set("name"):
        changes = replace(changes, name=_require_name(changes.name))
    if changes.is_set("status"):
        _require_status(changes.status)

    entries = diff_changes(item, changes)
    updates = {name: getattr(changes, name) for name in TRACKABLE_FIELDS if changes.is_set(name)}

    if changes.is_set("references"):
        updates["references"] = _validate_references(
            item.project_id, changes.references, item_id=item.id,
        )
    if changes.is_set("item_type_id"):
        item_type = get_scoped_item_type(changes.item_type_id, organization_id=organization_id)
        updates["item_type_id"] = item_type.id
    if changes.is_set("sort_order"):
        updates["sort_order"] = changes.sort_order

    move = None
    new_parent_id = (changes.parent_id or None) if changes.is_set("parent_id") else item.parent_id
    if new_parent_id != item.parent_id:
        new_path, new_depth = calculate_path_and_depth(new_parent_id, project_id=item.project_id)
        if path_contains(new_path, item.id):
            logger.warning(
                "Rejected cyclic move of plan item %s under %s", item.id, new_parent_id,
            )
            raise ValidationError(
                "Cannot move item to its own descendant",
                details={"parent_id": new_parent_id},
            )
        entries.append({
            "field": "parent_id",
            "old_value": item.parent_id,
            "new_value": new_parent_id,
        })
        if not changes.is_set("sort_order"):
            updates["sort_order"] = next_sort_order(item.project_id, new_parent_id)
        move = (new_parent_id, new_path, new_depth)

    old_prefix = item.subtree_prefix
    old_depth = item.depth
    try:
        with db.session.begin_nested():
            for name, value in updates.items():
                setattr(item, name, value)
            if move is not None:
                item.parent_id, item.path, item.depth = move
                moved = _rewrite_descendants(
                    item.project_id, old_prefix, item.subtree_prefix, item.depth - old_depth,
                )
                logger.info(
                    "Moved plan item %s under %s (%d descendants re-rooted)",
                    item.id, move[0], moved,
                )
            record_history(item.id, entries, actor)
    except SQLAlchemyError as exc:
        logger.exception("Failed to update plan item %s", item.id)
        raise InternalError("Failed to update plan item") from exc

    return item


# ── Delete (soft, cascading) ─────────────────────────────────────────────────


def delete_plan_item(item_id: str, organization_id: int) -> int:
    """Soft-delete an item and its whole subtree in one statement.

    Descendants keep their path/depth; only ``is_active`` changes.

    Returns:
        Number of rows deactivated (item included).
    """
    item = get_owned_plan_item(item_id, organization_id=organization_id)
    try:
        with db.session.begin_nested():
            count = PlanItem.query.filter(
                PlanItem.project_id == item.project_id,
                or_(PlanItem.id == item.id, subtree_filter(item.subtree_prefix)),
            ).update({PlanItem.is_active: False}, synchronize_session="fetch")
    except SQLAlchemyError as exc:
        logger.exception("Failed to delete plan item %s", item.id)
        raise InternalError("Failed to delete plan item") from exc

    logger.info("Soft-deleted plan item %s and %d descendants", item.id, count - 1)
    return count


# ── Reads ────────────────────────────────────────────────────────────────────


def get_plan_item(item_id: str, organization_id: int) -> dict:
    """Item payload with its direct active children ordered by sort order."""
    item = get_owned_plan_item(item_id, organization_id=organization_id)
    children = (
        PlanItem.query
        .filter(PlanItem.parent_id == item.id, PlanItem.is_active.is_(True))
        .order_by(PlanItem.sort_order, PlanItem.created_at)
        .all()
    )
    return item.to_dict(include_children=children)


def get_plan_item_history(item_id: str, organization_id: int) -> list[PlanItemHistory]:
    """History entries newest first. Soft-deleted items keep their history readable."""
    item = get_owned_plan_item(item_id, organization_id=organization_id, include_inactive=True)
    return (
        PlanItemHistory.query
        .filter(PlanItemHistory.plan_item_id == item.id)
        .order_by(PlanItemHistory.created_at.desc(), PlanItemHistory.id.desc())
        .all()
    )


def list_plan_tree(
    project_id: str,
    organization_id: int,
    *,
    status: str | None = None,
    item_type_id: int | None = None,
) -> dict:
    """Active items of a project as a nested forest.

    Returns:
        {"items": [root nodes with "children"], "total": <flat item count>}
    """
    project = get_scoped(Project, project_id, organization_id=organization_id)

    query = PlanItem.query.filter(
        PlanItem.project_id == project.id,
        PlanItem.is_active.is_(True),
    )
    if status:
        query = query.filter(PlanItem.status == _require_status(status))
    if item_type_id is not None:
        query = query.filter(PlanItem.item_type_id == item_type_id)

    items = query.order_by(PlanItem.depth, PlanItem.sort_order, PlanItem.created_at).all()
    return {"items": build_tree([i.to_dict() for i in items]), "total": len(items)}


# ── Bulk status update ───────────────────────────────────────────────────────


def bulk_update_plan_items(
    organization_id: int,
    updates: list[dict],
    actor: ChangeActor | None = None,
) -> list[dict]:
    """Apply status/notes/references updates one by one, isolating failures.

    Each entry runs in its own savepoint. A failing entry (including one
    without an ``id``) is reported as ``{"id", "success": False, "error"}``
    and processing continues; the result list preserves input order.
    """
    actor = actor or ChangeActor()
    results = []
    for entry in updates:
        item_id = entry.get("id") if isinstance(entry, dict) else None
        if not item_id:
            results.append({"id": item_id, "success": False, "error": "id is required"})
            continue
        changes = PlanItemChanges.from_dict(
            {k: entry[k] for k in BULK_UPDATE_FIELDS if k in entry}
        )
        entry_actor = replace(actor, reason=entry.get("change_reason") or actor.reason)
        try:
            with db.session.begin_nested():
                update_plan_item(item_id, organization_id, changes, actor=entry_actor)
            results.append({"id": item_id, "success": True})
        except Exception as exc:
            logger.warning("Bulk update failed for plan item %s: %s", item_id, exc)
            results.append({"id": item_id, "success": False, "error": str(exc)})

    failed = sum(1 for r in results if not r["success"])
    logger.info("Bulk update processed %d items (%d failed)", len(results), failed)
    return results


# ── Item-type catalog ────────────────────────────────────────────────────────


def list_item_types(organization_id: int) -> list[PlanItemType]:
    """Active global and organization-specific item types, by level."""
    return (
        PlanItemType.query
        .filter(
            PlanItemType.is_active.is_(True),
            or_(
                PlanItemType.organization_id.is_(None),
                PlanItemType.organization_id == organization_id,
            ),
        )
        .order_by(PlanItemType.level, PlanItemType.id)
        .all()
    )


def resolve_level_type_map(organization_id: int) -> dict[int, int]:
    """Map hierarchy level → item type id for the CSV importer.

    An organization-specific type wins over a global type of the same level;
    among equals the oldest (lowest id) wins.
    """
    level_map: dict[int, int] = {}
    candidates = sorted(
        list_item_types(organization_id),
        key=lambda t: (t.level, t.organization_id is None, t.id),
    )
    for item_type in candidates:
        level_map.setdefault(item_type.level, item_type.id)
    return level_map


def seed_default_item_types() -> int:
    """Create the five global system types if missing. Returns count created."""
    created = 0
    for defaults in DEFAULT_PLAN_ITEM_TYPES:
        exists = PlanItemType.query.filter(
            PlanItemType.slug == defaults["slug"],
            PlanItemType.organization_id.is_(None),
        ).first()
        if exists:
            continue
        db.session.add(PlanItemType(is_system=True, **defaults))
        created += 1
    db.session.flush()
    return created
