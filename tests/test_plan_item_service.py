"""
Tests for app/services/plan_item_service.py — lifecycle of plan items.

Covers create (path/depth, sort order, scope checks), update (history,
references, type changes), move (cycle rejection, subtree re-rooting),
soft-delete cascade, reads and the item-type catalog.
"""

from datetime import date

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Query

from app.core.exceptions import ForbiddenError, InternalError, NotFoundError, ValidationError
from app.models import db as _db
from app.models.plan import PlanItem, PlanItemHistory, PlanItemType
from app.services.plan_history import ChangeActor, PlanItemChanges
from app.services.plan_item_service import (
    create_plan_item,
    delete_plan_item,
    find_or_create_plan_item,
    get_plan_item,
    get_plan_item_history,
    list_item_types,
    list_plan_tree,
    resolve_level_type_map,
    seed_default_item_types,
    update_plan_item,
)
from app.services.plan_tree import path_segments


def _assert_tree_consistent(project_id):
    """Every active item's path/depth must agree with its parent's."""
    items = {i.id: i for i in PlanItem.query.filter_by(project_id=project_id, is_active=True)}
    for item in items.values():
        if item.parent_id is None:
            assert (item.path, item.depth) == ("", 0), item
            continue
        parent = items[item.parent_id]
        assert item.path == f"{parent.path}/{parent.id}", item
        assert item.depth == parent.depth + 1, item
        assert item.id not in path_segments(item.path), item


# ── Create ───────────────────────────────────────────────────────────────────


class TestCreatePlanItem:
    def test_root_and_child_paths(self, make_item, project):
        """Workstream A → Milestone A1: path is "/" + A.id, depth 1."""
        ws_a = make_item("Workstream A")
        a1 = make_item("Milestone A1", level=2, parent=ws_a)

        assert (ws_a.path, ws_a.depth) == ("", 0)
        assert a1.path == f"/{ws_a.id}"
        assert a1.depth == 1
        assert a1.parent_id == ws_a.id
        _assert_tree_consistent(project.id)

    def test_defaults(self, make_item):
        item = make_item("Root")

        assert item.status == "not_started"
        assert item.references == []
        assert item.is_active is True
        assert item.sort_order == 0

    def test_sort_order_appends_after_siblings(self, make_item):
        root = make_item("Root")
        first = make_item("First", level=2, parent=root)
        second = make_item("Second", level=2, parent=root)

        assert (first.sort_order, second.sort_order) == (0, 1)

    def test_explicit_sort_order_kept(self, make_item):
        assert make_item("Root", sort_order=7).sort_order == 7

    def test_payload_includes_type_summary(self, make_item):
        payload = make_item("Root").to_dict()

        assert payload["item_type"]["slug"] == "workstream"
        assert payload["item_type"]["level"] == 1

    def test_no_history_on_create(self, make_item):
        make_item("Root")

        assert PlanItemHistory.query.count() == 0

    def test_project_of_other_organization_not_found(self, other_project, organization, item_types):
        with pytest.raises(NotFoundError):
            create_plan_item(other_project.id, organization.id, {
                "name": "X", "item_type_id": item_types[1].id,
            })

    def test_inactive_project_not_found(self, project, organization, item_types):
        project.is_active = False

        with pytest.raises(NotFoundError):
            create_plan_item(project.id, organization.id, {
                "name": "X", "item_type_id": item_types[1].id,
            })

    def test_missing_parent_not_found(self, project, organization, item_types):
        with pytest.raises(NotFoundError, match="Parent plan item"):
            create_plan_item(project.id, organization.id, {
                "name": "X", "item_type_id": item_types[2].id, "parent_id": "nope",
            })

    def test_unknown_item_type_not_found(self, project, organization):
        with pytest.raises(NotFoundError, match="PlanItemType"):
            create_plan_item(project.id, organization.id, {"name": "X", "item_type_id": 9999})

    def test_type_of_other_organization_not_found(self, project, organization, other_organization):
        foreign = PlanItemType(
            organization_id=other_organization.id, name="Epic", slug="epic", level=1,
        )
        _db.session.add(foreign)
        _db.session.flush()

        with pytest.raises(NotFoundError):
            create_plan_item(project.id, organization.id, {"name": "X", "item_type_id": foreign.id})

    def test_blank_name_rejected(self, project, organization, item_types):
        with pytest.raises(ValidationError, match="name"):
            create_plan_item(project.id, organization.id, {
                "name": "   ", "item_type_id": item_types[1].id,
            })
        assert PlanItem.query.count() == 0

    def test_invalid_status_rejected(self, project, organization, item_types):
        with pytest.raises(ValidationError):
            create_plan_item(project.id, organization.id, {
                "name": "X", "item_type_id": item_types[1].id, "status": "someday",
            })

    def test_references_deduplicated(self, make_item):
        a = make_item("A")
        b = make_item("B", references=[a.id, a.id])

        assert b.references == [a.id]

    def test_dangling_reference_rejected(self, make_item):
        with pytest.raises(ValidationError) as exc:
            make_item("B", references=["ghost"])
        assert exc.value.details == {"references": ["ghost"]}

    def test_reference_to_other_project_rejected(self, make_item, other_project, other_organization, item_types):
        foreign = create_plan_item(other_project.id, other_organization.id, {
            "name": "Foreign", "item_type_id": item_types[1].id,
        })

        with pytest.raises(ValidationError):
            make_item("Mine", references=[foreign.id])


class TestFindOrCreate:
    def test_reuses_active_sibling_with_same_name(self, project, organization, item_types):
        first, created = find_or_create_plan_item(
            project.id, organization.id, parent_id=None, name="Dev", item_type_id=item_types[1].id,
        )
        again, created_again = find_or_create_plan_item(
            project.id, organization.id, parent_id=None, name="Dev", item_type_id=item_types[1].id,
        )

        assert created is True
        assert created_again is False
        assert again.id == first.id

    def test_same_name_under_other_parent_is_new(self, make_item, project, organization, item_types):
        a = make_item("A")
        b = make_item("B")
        make_item("Sprint", level=2, parent=a)

        item, created = find_or_create_plan_item(
            project.id, organization.id, parent_id=b.id, name="Sprint", item_type_id=item_types[2].id,
        )

        assert created is True
        assert item.parent_id == b.id

    def test_name_match_is_exact(self, make_item, project, organization, item_types):
        make_item("Dev")

        _, created = find_or_create_plan_item(
            project.id, organization.id, parent_id=None, name="dev", item_type_id=item_types[1].id,
        )

        assert created is True


# ── Update ───────────────────────────────────────────────────────────────────


class TestUpdatePlanItem:
    def test_history_row_per_changed_field(self, make_item, organization):
        item = make_item("Build", owner="Ana")
        actor = ChangeActor(user_id=3, email="pm@acme.test", reason="weekly sync")

        update_plan_item(item.id, organization.id, PlanItemChanges(
            status="in_progress", owner="Ana", start_date=date(2024, 1, 15),
        ), actor=actor)

        rows = PlanItemHistory.query.filter_by(plan_item_id=item.id).all()
        by_field = {r.field: r for r in rows}
        assert set(by_field) == {"status", "start_date"}
        assert by_field["status"].old_value == "not_started"
        assert by_field["status"].new_value == "in_progress"
        assert by_field["start_date"].old_value is None
        assert by_field["start_date"].new_value == "2024-01-15"
        assert by_field["status"].changed_by_email == "pm@acme.test"
        assert by_field["status"].change_reason == "weekly sync"
        assert item.status == "in_progress"

    def test_noop_update_writes_no_history(self, make_item, organization):
        item = make_item("Build", status="blocked")

        update_plan_item(item.id, organization.id, PlanItemChanges(status="blocked", name="Build"))

        assert PlanItemHistory.query.count() == 0

    def test_clearing_field(self, make_item, organization):
        item = make_item("Build", notes="old")

        update_plan_item(item.id, organization.id, PlanItemChanges(notes=None))

        assert item.notes is None
        row = PlanItemHistory.query.one()
        assert (row.field, row.old_value, row.new_value) == ("notes", "old", None)

    def test_references_and_sort_order_not_tracked(self, make_item, organization):
        other = make_item("Other")
        item = make_item("Build")

        update_plan_item(item.id, organization.id, PlanItemChanges(references=[other.id], sort_order=5))

        assert item.references == [other.id]
        assert item.sort_order == 5
        assert PlanItemHistory.query.count() == 0

    def test_self_reference_rejected(self, make_item, organization):
        item = make_item("Build")

        with pytest.raises(ValidationError, match="itself"):
            update_plan_item(item.id, organization.id, PlanItemChanges(references=[item.id]))

    def test_item_type_change(self, make_item, organization, item_types):
        item = make_item("Build")

        update_plan_item(item.id, organization.id, PlanItemChanges(item_type_id=item_types[3].id))

        assert item.item_type_id == item_types[3].id

    def test_unknown_item_type_not_found(self, make_item, organization):
        item = make_item("Build")

        with pytest.raises(NotFoundError):
            update_plan_item(item.id, organization.id, PlanItemChanges(item_type_id=4242))

    def test_missing_item_not_found(self, organization):
        with pytest.raises(NotFoundError):
            update_plan_item("missing", organization.id, PlanItemChanges(status="blocked"))

    def test_other_organization_forbidden(self, make_item, other_organization):
        item = make_item("Build")

        with pytest.raises(ForbiddenError):
            update_plan_item(item.id, other_organization.id, PlanItemChanges(status="blocked"))
        assert item.status == "not_started"

    def test_invalid_status_rejected_without_changes(self, make_item, organization):
        item = make_item("Build")

        with pytest.raises(ValidationError):
            update_plan_item(item.id, organization.id, PlanItemChanges(status="nope", owner="Bo"))
        assert item.owner is None
        assert PlanItemHistory.query.count() == 0


# ── Move ─────────────────────────────────────────────────────────────────────


class TestMovePlanItem:
    def test_move_under_other_root(self, make_item, organization, project):
        """A1 moves from Workstream A to Workstream B."""
        ws_a = make_item("Workstream A")
        ws_b = make_item("Workstream B")
        a1 = make_item("Milestone A1", level=2, parent=ws_a)

        update_plan_item(a1.id, organization.id, PlanItemChanges(parent_id=ws_b.id))

        assert a1.parent_id == ws_b.id
        assert a1.path == f"/{ws_b.id}"
        assert a1.depth == 1
        row = PlanItemHistory.query.filter_by(plan_item_id=a1.id, field="parent_id").one()
        assert (row.old_value, row.new_value) == (ws_a.id, ws_b.id)
        _assert_tree_consistent(project.id)

    def test_move_under_own_child_rejected(self, make_item, organization):
        """Workstream A can not move under its own milestone A1."""
        ws_a = make_item("Workstream A")
        a1 = make_item("Milestone A1", level=2, parent=ws_a)

        with pytest.raises(ValidationError, match="descendant"):
            update_plan_item(ws_a.id, organization.id, PlanItemChanges(parent_id=a1.id))

        assert ws_a.parent_id is None
        assert (ws_a.path, ws_a.depth) == ("", 0)
        assert PlanItemHistory.query.count() == 0

    def test_move_under_deep_descendant_rejected(self, make_item, organization):
        root = make_item("Root")
        child = make_item("Child", level=2, parent=root)
        leaf = make_item("Leaf", level=3, parent=child)

        with pytest.raises(ValidationError):
            update_plan_item(root.id, organization.id, PlanItemChanges(parent_id=leaf.id))

    def test_move_under_itself_rejected(self, make_item, organization):
        root = make_item("Root")

        with pytest.raises(ValidationError):
            update_plan_item(root.id, organization.id, PlanItemChanges(parent_id=root.id))

    def test_move_rewrites_descendants(self, make_item, organization, project):
        ws_a = make_item("A")
        ws_b = make_item("B")
        mid = make_item("Mid", level=2, parent=ws_a)
        leaf = make_item("Leaf", level=3, parent=mid)
        deeper = make_item("Deeper", level=4, parent=leaf)
        target = make_item("Target", level=2, parent=ws_b)

        update_plan_item(mid.id, organization.id, PlanItemChanges(parent_id=target.id))

        assert mid.depth == 2
        assert leaf.path == f"/{ws_b.id}/{target.id}/{mid.id}"
        assert leaf.depth == 3
        assert deeper.depth == 4
        _assert_tree_consistent(project.id)

    def test_move_to_root(self, make_item, organization, project):
        ws_a = make_item("A")
        mid = make_item("Mid", level=2, parent=ws_a)
        leaf = make_item("Leaf", level=3, parent=mid)

        update_plan_item(mid.id, organization.id, PlanItemChanges(parent_id=None))

        assert (mid.path, mid.depth, mid.parent_id) == ("", 0, None)
        assert leaf.path == f"/{mid.id}"
        row = PlanItemHistory.query.filter_by(field="parent_id").one()
        assert (row.old_value, row.new_value) == (ws_a.id, None)
        _assert_tree_consistent(project.id)

    def test_move_appends_after_new_siblings(self, make_item, organization):
        ws_a = make_item("A")
        ws_b = make_item("B")
        make_item("B1", level=2, parent=ws_b)
        make_item("B2", level=2, parent=ws_b)
        a1 = make_item("A1", level=2, parent=ws_a)

        update_plan_item(a1.id, organization.id, PlanItemChanges(parent_id=ws_b.id))

        assert a1.sort_order == 2

    def test_move_to_missing_parent_not_found(self, make_item, organization):
        item = make_item("A")

        with pytest.raises(NotFoundError):
            update_plan_item(item.id, organization.id, PlanItemChanges(parent_id="ghost"))

    def test_same_parent_is_not_a_move(self, make_item, organization):
        root = make_item("Root")
        child = make_item("Child", level=2, parent=root)

        update_plan_item(child.id, organization.id, PlanItemChanges(parent_id=root.id))

        assert PlanItemHistory.query.count() == 0

    def test_prefix_ids_do_not_confuse_cycle_check(self, project, organization, item_types):
        """Ids that are textual prefixes of each other are still distinct segments."""
        base = {"project_id": project.id, "item_type_id": item_types[1].id}
        short = PlanItem(id="abc", name="Short", **base)
        long_ = PlanItem(id="abcd", name="Long", path="", **base)
        _db.session.add_all([short, long_])
        child = PlanItem(
            id="abcd-child", name="Child", parent_id="abcd", path="/abcd", depth=1, **base,
        )
        _db.session.add(child)
        _db.session.flush()

        update_plan_item("abc", organization.id, PlanItemChanges(parent_id="abcd-child"))

        assert short.path == "/abcd/abcd-child"
        assert short.depth == 2


# ── Delete ───────────────────────────────────────────────────────────────────


class TestDeletePlanItem:
    def test_cascade_deactivates_subtree(self, make_item, organization):
        dev = make_item("Development")
        sprint = make_item("Sprint 1", level=2, parent=dev)
        task = make_item("Task", level=3, parent=sprint)
        sibling = make_item("Testing")

        count = delete_plan_item(dev.id, organization.id)

        assert count == 3
        assert dev.is_active is False
        assert sprint.is_active is False
        assert task.is_active is False
        assert sibling.is_active is True

    def test_paths_kept_after_delete(self, make_item, organization):
        dev = make_item("Development")
        sprint = make_item("Sprint 1", level=2, parent=dev)

        delete_plan_item(dev.id, organization.id)

        assert sprint.path == f"/{dev.id}"
        assert sprint.depth == 1

    def test_prefix_sibling_not_deleted(self, project, organization, item_types):
        base = {"project_id": project.id, "item_type_id": item_types[1].id}
        _db.session.add_all([
            PlanItem(id="abc", name="A", **base),
            PlanItem(id="abcd", name="B", **base),
            PlanItem(id="abcd-1", name="B child", parent_id="abcd", path="/abcd", depth=1, **base),
        ])
        _db.session.flush()

        delete_plan_item("abc", organization.id)

        assert _db.session.get(PlanItem, "abcd").is_active is True
        assert _db.session.get(PlanItem, "abcd-1").is_active is True

    def test_round_trip_get_after_delete(self, make_item, organization):
        root = make_item("Root")
        child = make_item("Child", level=2, parent=root)

        delete_plan_item(root.id, organization.id)

        with pytest.raises(NotFoundError):
            get_plan_item(root.id, organization.id)
        with pytest.raises(NotFoundError):
            get_plan_item(child.id, organization.id)

    def test_deleted_item_not_mutable(self, make_item, organization):
        root = make_item("Root")
        delete_plan_item(root.id, organization.id)

        with pytest.raises(NotFoundError):
            update_plan_item(root.id, organization.id, PlanItemChanges(status="blocked"))
        with pytest.raises(NotFoundError):
            delete_plan_item(root.id, organization.id)

    def test_other_organization_forbidden(self, make_item, other_organization):
        root = make_item("Root")

        with pytest.raises(ForbiddenError):
            delete_plan_item(root.id, other_organization.id)
        assert root.is_active is True


# ── Store failures ───────────────────────────────────────────────────────────


def _store_failure(*_args, **_kwargs):
    raise OperationalError("UPDATE plan_items", {}, Exception("database is locked"))


class TestStoreFailureRollsBack:
    def test_failed_move_leaves_no_partial_state(self, make_item, organization, monkeypatch):
        ws_a = make_item("A")
        ws_b = make_item("B")
        c = make_item("C", level=2, parent=ws_a)
        leaf = make_item("Leaf", level=3, parent=c)
        monkeypatch.setattr("app.services.plan_item_service.record_history", _store_failure)

        with pytest.raises(InternalError):
            update_plan_item(c.id, organization.id, PlanItemChanges(name="C renamed", parent_id=ws_b.id))

        _db.session.expire_all()
        c = _db.session.get(PlanItem, c.id)
        leaf = _db.session.get(PlanItem, leaf.id)
        assert (c.name, c.parent_id, c.path, c.depth) == ("C", ws_a.id, f"/{ws_a.id}", 1)
        assert leaf.path == f"/{ws_a.id}/{c.id}"
        assert leaf.depth == 2
        assert PlanItemHistory.query.count() == 0

    def test_failed_cascade_keeps_subtree_active(self, make_item, organization, monkeypatch):
        dev = make_item("Development")
        sprint = make_item("Sprint 1", level=2, parent=dev)
        real_update = Query.update

        def _update_then_fail(self, *args, **kwargs):
            real_update(self, *args, **kwargs)
            _store_failure()

        monkeypatch.setattr(Query, "update", _update_then_fail)

        with pytest.raises(InternalError):
            delete_plan_item(dev.id, organization.id)

        monkeypatch.undo()
        _db.session.expire_all()
        assert _db.session.get(PlanItem, dev.id).is_active is True
        assert _db.session.get(PlanItem, sprint.id).is_active is True
        assert get_plan_item(dev.id, organization.id)["children"][0]["id"] == sprint.id


# ── Reads ────────────────────────────────────────────────────────────────────


class TestReads:
    def test_get_includes_active_children_in_order(self, make_item, organization):
        root = make_item("Root")
        make_item("Second", level=2, parent=root, sort_order=2)
        make_item("First", level=2, parent=root, sort_order=1)
        gone = make_item("Gone", level=2, parent=root, sort_order=0)
        delete_plan_item(gone.id, organization.id)

        payload = get_plan_item(root.id, organization.id)

        assert [c["name"] for c in payload["children"]] == ["First", "Second"]

    def test_get_other_organization_forbidden(self, make_item, other_organization):
        with pytest.raises(ForbiddenError):
            get_plan_item(make_item("Root").id, other_organization.id)

    def test_history_newest_first_and_survives_delete(self, make_item, organization):
        item = make_item("Root")
        update_plan_item(item.id, organization.id, PlanItemChanges(status="in_progress"))
        update_plan_item(item.id, organization.id, PlanItemChanges(status="completed"))
        delete_plan_item(item.id, organization.id)

        history = get_plan_item_history(item.id, organization.id)

        assert [h.new_value for h in history] == ["completed", "in_progress"]

    def test_history_other_organization_forbidden(self, make_item, other_organization):
        with pytest.raises(ForbiddenError):
            get_plan_item_history(make_item("Root").id, other_organization.id)

    def test_tree_nested_and_counted(self, make_item, organization, project):
        a = make_item("A")
        make_item("B")
        a1 = make_item("A1", level=2, parent=a)
        make_item("A1a", level=3, parent=a1)

        result = list_plan_tree(project.id, organization.id)

        assert result["total"] == 4
        assert [n["name"] for n in result["items"]] == ["A", "B"]
        assert result["items"][0]["children"][0]["children"][0]["name"] == "A1a"

    def test_tree_status_filter_promotes_orphans(self, make_item, organization, project):
        a = make_item("A")
        make_item("A1", level=2, parent=a, status="blocked")

        result = list_plan_tree(project.id, organization.id, status="blocked")

        assert result["total"] == 1
        assert [n["name"] for n in result["items"]] == ["A1"]

    def test_tree_type_filter(self, make_item, organization, project, item_types):
        a = make_item("A")
        make_item("A1", level=2, parent=a)

        result = list_plan_tree(project.id, organization.id, item_type_id=item_types[1].id)

        assert [n["name"] for n in result["items"]] == ["A"]

    def test_tree_excludes_deleted(self, make_item, organization, project):
        a = make_item("A")
        make_item("B")
        delete_plan_item(a.id, organization.id)

        assert list_plan_tree(project.id, organization.id)["total"] == 1

    def test_tree_of_other_organization_project_not_found(self, other_project, organization):
        with pytest.raises(NotFoundError):
            list_plan_tree(other_project.id, organization.id)


# ── Item-type catalog ────────────────────────────────────────────────────────


class TestItemTypeCatalog:
    def test_seed_is_idempotent(self):
        assert seed_default_item_types() == 0
        assert PlanItemType.query.count() == 5

    def test_lists_global_and_own_types_by_level(self, organization, other_organization):
        _db.session.add_all([
            PlanItemType(organization_id=organization.id, name="Epic", slug="epic", level=2),
            PlanItemType(organization_id=other_organization.id, name="Saga", slug="saga", level=1),
        ])
        _db.session.flush()

        types = list_item_types(organization.id)

        assert [t.level for t in types] == sorted(t.level for t in types)
        assert "epic" in {t.slug for t in types}
        assert "saga" not in {t.slug for t in types}

    def test_level_map_prefers_organization_type(self, organization, item_types):
        epic = PlanItemType(organization_id=organization.id, name="Epic", slug="epic", level=2)
        _db.session.add(epic)
        _db.session.flush()

        level_map = resolve_level_type_map(organization.id)

        assert level_map[1] == item_types[1].id
        assert level_map[2] == epic.id
        assert set(level_map) == {1, 2, 3, 4, 5}

    def test_inactive_types_excluded(self, organization, item_types):
        item_types[5].is_active = False
        _db.session.flush()

        assert 5 not in resolve_level_type_map(organization.id)
