"""
CSV plan importer.

Reconciles a flat CSV (one row per leaf, hierarchy spread over fixed level
columns) into the project's plan tree:

    workstream, milestone, activity, task, subtask  → tree path, level 1..5
    status, owner, start_date, target_end_date, notes → applied to deepest node

Nodes are matched by (project, parent, exact name, active) so re-importing
the same file creates nothing new.

Transaction policy: each row runs in its own SAVEPOINT; a failing row is
rolled back and reported, the import continues. Nothing is committed here;
the caller commits once after the import returns.
"""

import csv
import io
import logging
import re

from app.core.exceptions import ValidationError
from app.models import db
from app.models.project import Project
from app.services.helpers.scoped_queries import get_scoped
from app.services.plan_history import ChangeActor, PlanItemChanges, diff_changes
from app.services.plan_item_service import find_or_create_plan_item, update_plan_item
from app.services.plan_normalizers import normalize_status, parse_import_date

logger = logging.getLogger(__name__)

# Level order is the column order.
HIERARCHY_COLUMNS = ("workstream", "milestone", "activity", "task", "subtask")
METADATA_COLUMNS = ("status", "owner", "start_date", "target_end_date", "notes")
LEVEL_NAMES = {level: column for level, column in enumerate(HIERARCHY_COLUMNS, start=1)}

_HEADER_SEPARATORS = re.compile(r"[\s\-]+")


# ═══════════════════════════════════════════════════════════════
# CSV Template
# ═══════════════════════════════════════════════════════════════

CSV_TEMPLATE_HEADER = list(HIERARCHY_COLUMNS + METADATA_COLUMNS)
CSV_TEMPLATE_EXAMPLE = [
    ["Development", "Sprint 1", "Backend Setup", "Configure database", "",
     "in_progress", "John Smith", "2024-01-15", "2024-01-20", "Initial setup"],
    ["Development", "Sprint 1", "Backend Setup", "Create API endpoints", "",
     "not_started", "Jane Doe", "2024-01-18", "2024-01-25", ""],
    ["Testing", "UAT", "", "", "",
     "not_started", "", "2024-02-01", "2024-02-15", "User acceptance testing"],
]


def generate_csv_template() -> str:
    """Generate a CSV template string for plan import."""
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_TEMPLATE_HEADER)
    writer.writerows(CSV_TEMPLATE_EXAMPLE)
    return output.getvalue()


# ═══════════════════════════════════════════════════════════════
# CSV Parsing
# ═══════════════════════════════════════════════════════════════

def normalize_header(name: str | None) -> str:
    """``" Target End-Date "`` → ``"target_end_date"``."""
    return _HEADER_SEPARATORS.sub("_", (name or "").strip().lower())


def _decode_csv(file_content) -> str:
    """Uploaded bytes or text → text without a leading BOM."""
    if isinstance(file_content, bytes):
        try:
            return file_content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ValidationError(
                f"CSV must be UTF-8 encoded (invalid byte at position {exc.start})",
                details={"encoding": "utf-8", "position": exc.start},
            ) from exc
    if not isinstance(file_content, str):
        raise ValidationError("CSV content must be text")
    if file_content.startswith("\ufeff"):
        return file_content[1:]
    return file_content


def _read_rows(reader: csv.DictReader, max_rows: int | None):
    """Yield (row_num, {normalized header: trimmed cell}) for non-blank rows."""
    count = 0
    for i, row in enumerate(reader, start=2):  # Start at 2 (header is row 1)
        normalized_row = {}
        for k, v in row.items():
            if k is None:  # overflow cells beyond the header
                continue
            normalized_row[normalize_header(k)] = (v or "").strip()
        if not any(normalized_row.values()):
            continue

        count += 1
        if max_rows is not None and count > max_rows:
            raise ValidationError(
                f"CSV exceeds the maximum of {max_rows} data rows",
                details={"max_rows": max_rows},
            )
        yield i, normalized_row


def parse_plan_csv(file_content: str | bytes, *, max_rows: int | None = None) -> tuple[list[str], list[dict]]:
    """
    Parse CSV content into normalized rows.

    Returns (hierarchy_columns_present, rows) where each row is
    {"row_num": n, "hierarchy": [(level, name), ...], "metadata": {col: raw}}.
    Hierarchy entries are non-empty trimmed cells in level order.

    Rows whose cells are all blank (trailing ``,,`` lines from spreadsheet
    exports) are skipped and do not count towards ``max_rows``.

    Raises:
        ValidationError: content is not UTF-8 text, the CSV is malformed
                         (e.g. a cell over the csv field size limit), no
                         hierarchy column in the header, or more data rows
                         than ``max_rows``.
    """
    file_content = _decode_csv(file_content)
    reader = csv.DictReader(io.StringIO(file_content))
    try:
        fieldnames = reader.fieldnames or []
        normalized = [normalize_header(f) for f in fieldnames]
        present = [col for col in HIERARCHY_COLUMNS if col in normalized]
        if not present:
            raise ValidationError(
                "CSV must contain at least one hierarchy column "
                f"({', '.join(HIERARCHY_COLUMNS)}). "
                f"Found columns: {', '.join(fieldnames) or 'none'}",
                details={"columns": normalized},
            )
        raw_rows = list(_read_rows(reader, max_rows))
    except csv.Error as exc:
        raise ValidationError(
            f"Malformed CSV near line {reader.line_num}: {exc}",
            details={"line": reader.line_num},
        ) from exc

    rows = []
    for i, normalized_row in raw_rows:
        rows.append({
            "row_num": i,
            "hierarchy": [
                (level, normalized_row[col])
                for level, col in enumerate(HIERARCHY_COLUMNS, start=1)
                if normalized_row.get(col)
            ],
            "metadata": {col: normalized_row.get(col, "") for col in METADATA_COLUMNS},
        })

    return present, rows


def normalize_metadata(raw: dict) -> tuple[dict, list[str]]:
    """Turn raw metadata cells into typed values.

    Unmappable status/date cells are dropped and reported as warnings;
    empty cells are simply absent.
    """
    values = {}
    warnings = []

    if raw.get("status"):
        status = normalize_status(raw["status"])
        if status is None:
            warnings.append(f"Unknown status {raw['status']!r} ignored")
        else:
            values["status"] = status

    if raw.get("owner"):
        values["owner"] = raw["owner"]

    for col in ("start_date", "target_end_date"):
        if raw.get(col):
            parsed = parse_import_date(raw[col])
            if parsed is None:
                warnings.append(f"Unparsable {col} {raw[col]!r} ignored")
            else:
                values[col] = parsed

    if raw.get("notes"):
        values["notes"] = raw["notes"]

    return values, warnings


# ═══════════════════════════════════════════════════════════════
# Import
# ═══════════════════════════════════════════════════════════════

def _import_row(project_id, organization_id, row, level_type_map, actor) -> tuple[int, bool]:
    """Materialize one row's hierarchy and apply its metadata.

    Returns (items_created, metadata_changed_something).
    """
    if not row["hierarchy"]:
        raise ValidationError("Row has no hierarchy values")

    created = 0
    parent_id = None
    deepest = None
    for level, name in row["hierarchy"]:
        item_type_id = level_type_map.get(level)
        if item_type_id is None:
            raise ValidationError(
                f"No plan item type configured for level {level} ({LEVEL_NAMES[level]})"
            )
        deepest, was_created = find_or_create_plan_item(
            project_id,
            organization_id,
            parent_id=parent_id,
            name=name,
            item_type_id=item_type_id,
        )
        created += int(was_created)
        parent_id = deepest.id

    values, warnings = normalize_metadata(row["metadata"])
    for warning in warnings:
        logger.warning("Plan import row %d: %s", row["row_num"], warning)

    changed = False
    if values:
        changes = PlanItemChanges.from_dict(values)
        changed = bool(diff_changes(deepest, changes))
        update_plan_item(deepest.id, organization_id, changes, actor=actor)
    return created, changed


def import_plan_csv(
    project_id: str,
    organization_id: int,
    file_content: str | bytes,
    level_type_map: dict[int, int],
    *,
    actor: ChangeActor | None = None,
    max_rows: int | None = None,
) -> dict:
    """Import a plan CSV into a project.

    Args:
        level_type_map: hierarchy level (1..5) → item type id. Rows touching a
                        level missing from the map fail individually.

    Returns:
        {"total_rows", "items_created", "items_updated", "errors": [{"row", "error"}]}

    Raises:
        NotFoundError: project not in the organization's scope.
        ValidationError: header without any hierarchy column (nothing imported).
    """
    project = get_scoped(Project, project_id, organization_id=organization_id)
    _, rows = parse_plan_csv(file_content, max_rows=max_rows)

    items_created = 0
    items_updated = 0
    errors = []
    for row in rows:
        try:
            with db.session.begin_nested():
                created, changed = _import_row(
                    project.id, organization_id, row, level_type_map, actor,
                )
            items_created += created
            items_updated += int(changed)
        except Exception as exc:
            logger.warning("Plan import row %d failed: %s", row["row_num"], exc)
            errors.append({"row": row["row_num"], "error": str(exc)})

    logger.info(
        "Plan import into project %s: %d rows, %d created, %d updated, %d errors",
        project.id, len(rows), items_created, items_updated, len(errors),
    )
    return {
        "total_rows": len(rows),
        "items_created": items_created,
        "items_updated": items_updated,
        "errors": errors,
    }


def preview_plan_csv(file_content: str | bytes, *, max_rows: int | None = None) -> dict:
    """Parse a plan CSV without touching the database.

    Returns the recognized hierarchy columns and, per row, the hierarchy
    path, the normalized metadata and warnings for values that an import
    would skip.
    """
    present, rows = parse_plan_csv(file_content, max_rows=max_rows)
    preview_rows = []
    for row in rows:
        values, warnings = normalize_metadata(row["metadata"])
        if not row["hierarchy"]:
            warnings.insert(0, "Row has no hierarchy values and would fail")
        preview_rows.append({
            "row": row["row_num"],
            "hierarchy": [
                {"level": level, "column": LEVEL_NAMES[level], "name": name}
                for level, name in row["hierarchy"]
            ],
            "metadata": {
                k: v.isoformat() if hasattr(v, "isoformat") else v
                for k, v in values.items()
            },
            "warnings": warnings,
        })
    return {
        "columns": present,
        "total_rows": len(rows),
        "rows": preview_rows,
    }
