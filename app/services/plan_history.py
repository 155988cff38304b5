"""History Recorder — field-level diffs for plan item updates.

Partial updates travel as a PlanItemChanges instance: every field starts
as UNSET, and only fields the caller actually supplied are applied and
diffed. ``None`` is a real value ("clear this field"), distinct from UNSET.

Transaction policy: record_history() only adds rows to the session; the
caller owns the savepoint/commit so the item update and its history land
together.
"""

from dataclasses import dataclass, fields
from datetime import date

from app.models import db
from app.models.plan import TRACKABLE_FIELDS, PlanItemHistory


class _Unset:
    __slots__ = ()

    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET = _Unset()


@dataclass
class PlanItemChanges:
    """Explicit partial update for a plan item."""

    name: object = UNSET
    description: object = UNSET
    owner: object = UNSET
    status: object = UNSET
    start_date: object = UNSET
    target_end_date: object = UNSET
    actual_start_date: object = UNSET
    actual_end_date: object = UNSET
    notes: object = UNSET
    references: object = UNSET
    sort_order: object = UNSET
    item_type_id: object = UNSET
    parent_id: object = UNSET

    @classmethod
    def from_dict(cls, data: dict) -> "PlanItemChanges":
        """Build from a dict of already-coerced values; unknown keys are ignored."""
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})

    def is_set(self, name: str) -> bool:
        return getattr(self, name) is not UNSET

    def provided(self) -> dict:
        """Fields the caller supplied, in declaration order."""
        return {f.name: getattr(self, f.name) for f in fields(self) if self.is_set(f.name)}


@dataclass
class ChangeActor:
    """Who made a change, recorded on every history row."""

    user_id: int | None = None
    email: str | None = None
    reason: str | None = None


def as_history_value(value) -> str | None:
    """String form used both for comparison and for storage."""
    if value is None:
        return None
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def diff_changes(item, changes: PlanItemChanges) -> list[dict]:
    """Compare supplied trackable fields against the current row.

    Returns one ``{"field", "old_value", "new_value"}`` entry per field whose
    string form differs. Non-trackable fields (references, sort order,
    type, parent) are never reported here; parent moves are appended by the
    lifecycle service.
    """
    entries = []
    for name in TRACKABLE_FIELDS:
        if not changes.is_set(name):
            continue
        old = as_history_value(getattr(item, name))
        new = as_history_value(getattr(changes, name))
        if old != new:
            entries.append({"field": name, "old_value": old, "new_value": new})
    return entries


def record_history(item_id: str, entries: list[dict], actor: ChangeActor | None = None) -> list[PlanItemHistory]:
    """Add one PlanItemHistory row per diff entry to the session."""
    actor = actor or ChangeActor()
    rows = [
        PlanItemHistory(
            plan_item_id=item_id,
            field=entry["field"],
            old_value=entry["old_value"],
            new_value=entry["new_value"],
            changed_by_user_id=actor.user_id,
            changed_by_email=actor.email,
            change_reason=actor.reason,
        )
        for entry in entries
    ]
    db.session.add_all(rows)
    return rows
