"""Materialized-path helpers and tree assembly for plan items.

Path Calculator:
    child_path / calculate_path_and_depth derive a child's ``path`` and
    ``depth`` from its parent. Roots carry ``("", 0)``.

Tree Assembler:
    build_tree turns a flat list of serialized items into a nested forest
    in one grouping pass plus one walk from the roots.

Paths are compared segment by segment, never by substring, so an id that
is a textual prefix of another id can not produce false matches.
"""

from collections import defaultdict

from sqlalchemy import func, or_

from app.models import db
from app.models.plan import PATH_SEPARATOR, PlanItem
from app.services.helpers.scoped_queries import get_scoped


# ── Path Calculator ──────────────────────────────────────────────────────────


def child_path(parent_path: str | None, parent_id: str) -> str:
    """Path carried by a direct child of the given parent."""
    return f"{parent_path or ''}{PATH_SEPARATOR}{parent_id}"


def path_segments(path: str | None) -> list[str]:
    """Split a stored path into its ancestor ids, root first."""
    if not path:
        return []
    return [segment for segment in path.split(PATH_SEPARATOR) if segment]


def path_contains(path: str | None, item_id: str) -> bool:
    """True if ``item_id`` is one of the ancestors encoded in ``path``."""
    return str(item_id) in path_segments(path)


def calculate_path_and_depth(parent_id: str | None, *, project_id: str) -> tuple[str, int]:
    """Return ``(path, depth)`` for a new child of ``parent_id``.

    Raises:
        NotFoundError: parent missing, inactive, or in another project.
    """
    if parent_id is None:
        return "", 0

    parent = get_scoped(
        PlanItem, parent_id, project_id=project_id, resource="Parent plan item",
    )
    return child_path(parent.path, parent.id), parent.depth + 1


def subtree_filter(prefix: str):
    """SQL criterion matching every row whose path lies under ``prefix``.

    ``prefix`` is the path value of a node's direct children
    (``node.path + "/" + node.id``). Deeper rows continue with another
    separator, so matching requires either equality or ``prefix + "/"``.
    """
    return or_(
        PlanItem.path == prefix,
        PlanItem.path.startswith(prefix + PATH_SEPARATOR, autoescape=True),
    )


def next_sort_order(project_id: str, parent_id: str | None) -> int:
    """Next free sibling sort order: max among active siblings + 1 (0 if none)."""
    query = db.session.query(func.max(PlanItem.sort_order)).filter(
        PlanItem.project_id == project_id,
        PlanItem.is_active.is_(True),
    )
    if parent_id is None:
        query = query.filter(PlanItem.parent_id.is_(None))
    else:
        query = query.filter(PlanItem.parent_id == parent_id)
    current = query.scalar()
    return 0 if current is None else current + 1


# ── Tree Assembler ───────────────────────────────────────────────────────────


def build_tree(nodes: list[dict]) -> list[dict]:
    """Nest serialized plan items under their parents.

    Each returned node is a copy of the input dict with a ``children`` list.
    Siblings are ordered by ``sort_order``; equal keys keep input order.
    Nodes whose parent is not part of ``nodes`` (for example filtered out
    by status) become roots.
    """
    known_ids = {node["id"] for node in nodes}
    children_by_parent: dict[str | None, list[dict]] = defaultdict(list)
    for node in nodes:
        parent_id = node.get("parent_id")
        children_by_parent[parent_id if parent_id in known_ids else None].append(node)

    def _assemble(parent_id):
        siblings = sorted(
            children_by_parent.get(parent_id, ()),
            key=lambda n: n.get("sort_order") or 0,
        )
        return [{**node, "children": _assemble(node["id"])} for node in siblings]

    return _assemble(None)
