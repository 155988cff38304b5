"""
Plan Item Hierarchy blueprint — plan tree CRUD, move, history, bulk status
update and CSV import.

Every route runs with ``g.organization_id`` resolved by the organization
context middleware. Payloads are coerced here (dates, ints, status enum);
services receive typed values and raise app.core.exceptions errors, mapped
to HTTP by the handlers below. Mutating routes commit once via
db_commit_or_error().

Endpoints summary:
    TREE     /api/v1/projects/<project_id>/plan                  GET, POST
    ITEM     /api/v1/plan-items/<item_id>                        GET, PUT, DELETE
             /api/v1/plan-items/<item_id>/history                GET
    BULK     /api/v1/plan-items/bulk-update                      POST
    IMPORT   /api/v1/projects/<project_id>/plan/import           POST   (CSV)
             /api/v1/projects/<project_id>/plan/import/preview   POST   (dry run)
             /api/v1/plan-items/import/template                  GET
    TYPES    /api/v1/plan-item-types                             GET
"""

import logging

from flask import Blueprint, Response, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException

from app import limiter
from app.core.exceptions import ForbiddenError, InternalError, NotFoundError, ValidationError
from app.middleware.rate_limiter import PLAN_IMPORT_LIMIT, organization_rate_limit_key
from app.models.plan import PLAN_ITEM_STATUSES
from app.models.project import Project
from app.services.helpers.scoped_queries import get_scoped
from app.services.plan_history import ChangeActor, PlanItemChanges
from app.services.plan_import_service import (
    generate_csv_template,
    import_plan_csv,
    preview_plan_csv,
)
from app.services.plan_item_service import (
    bulk_update_plan_items,
    create_plan_item,
    delete_plan_item,
    get_plan_item,
    get_plan_item_history,
    list_item_types,
    list_plan_tree,
    resolve_level_type_map,
    update_plan_item,
)
from app.utils.errors import E, api_error
from app.utils.helpers import db_commit_or_error, parse_date

logger = logging.getLogger(__name__)

plan_item_bp = Blueprint("plan_items", __name__, url_prefix="/api/v1")

_TEXT_FIELDS = ("name", "description", "owner", "notes")
_DATE_FIELDS = ("start_date", "target_end_date", "actual_start_date", "actual_end_date")
_INT_FIELDS = ("item_type_id", "sort_order")


# ═════════════════════════════════════════════════════════════════════════
# Error handlers
# ═════════════════════════════════════════════════════════════════════════


@plan_item_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@plan_item_bp.errorhandler(ForbiddenError)
def _handle_forbidden(error: ForbiddenError):
    return api_error(E.FORBIDDEN, str(error))


@plan_item_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)


@plan_item_bp.errorhandler(InternalError)
def _handle_internal(error: InternalError):
    return api_error(E.DATABASE, str(error))


@plan_item_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in plan_item_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _actor(data=None) -> ChangeActor:
    reason = data.get("change_reason") if isinstance(data, dict) else None
    return ChangeActor(
        user_id=getattr(g, "actor_user_id", None),
        email=getattr(g, "actor_email", None),
        reason=(str(reason).strip() or None) if reason else None,
    )


def _coerce_payload(data: dict):
    """Coerce a JSON plan item payload into typed values.

    Only keys present in ``data`` appear in the result, so the same helper
    serves create and partial update.

    Returns:
        (values, None) on success, (None, error_response) on malformed input.
    """
    values = {}

    for field in _TEXT_FIELDS:
        if field in data:
            raw = data[field]
            if raw is not None and not isinstance(raw, str):
                return None, api_error(E.VALIDATION_INVALID, f"{field} must be a string")
            values[field] = raw.strip() if field == "name" and raw else raw

    if "status" in data:
        if data["status"] not in PLAN_ITEM_STATUSES:
            return None, api_error(
                E.VALIDATION_INVALID,
                f"status must be one of: {', '.join(PLAN_ITEM_STATUSES)}",
            )
        values["status"] = data["status"]

    for field in _DATE_FIELDS:
        if field in data:
            raw = data[field]
            parsed = parse_date(raw)
            if raw and parsed is None:
                return None, api_error(
                    E.VALIDATION_INVALID, f"{field} must be a date (YYYY-MM-DD)",
                )
            values[field] = parsed

    for field in _INT_FIELDS:
        if field in data:
            raw = data[field]
            if raw is None and field == "sort_order":
                continue
            try:
                values[field] = int(raw)
            except (TypeError, ValueError):
                return None, api_error(E.VALIDATION_INVALID, f"{field} must be an integer")

    if "parent_id" in data:
        raw = data["parent_id"]
        values["parent_id"] = str(raw) if raw else None

    if "references" in data:
        raw = data["references"]
        if raw is None:
            raw = []
        if not isinstance(raw, list) or not all(isinstance(r, str) for r in raw):
            return None, api_error(
                E.VALIDATION_INVALID, "references must be a list of plan item ids",
            )
        values["references"] = raw

    return values, None


def _extract_file_content():
    """CSV content from a multipart ``file``, JSON ``csv_content`` or raw body.

    Uploads and raw bodies are returned as bytes; the importer decodes them.

    Returns:
        (content, None) or (None, error_response).
    """
    if request.files:
        file = request.files.get("file")
        if file:
            return file.read(), None

    data = request.get_json(silent=True)
    if isinstance(data, dict) and "csv_content" in data:
        content = data["csv_content"]
        if content is not None and not isinstance(content, str):
            return None, api_error(E.VALIDATION_INVALID, "csv_content must be a string")
        return content, None

    if request.data:
        return request.data, None

    return None, None


# ═════════════════════════════════════════════════════════════════════════
# Plan tree
# ═════════════════════════════════════════════════════════════════════════


@plan_item_bp.route("/projects/<project_id>/plan", methods=["GET"])
def list_plan(project_id):
    """Nested plan tree. Filters: ?status=, ?item_type_id="""
    status = request.args.get("status") or None
    if status and status not in PLAN_ITEM_STATUSES:
        return api_error(
            E.VALIDATION_INVALID, f"status must be one of: {', '.join(PLAN_ITEM_STATUSES)}",
        )
    item_type_id = request.args.get("item_type_id", type=int)
    result = list_plan_tree(
        project_id, g.organization_id, status=status, item_type_id=item_type_id,
    )
    return jsonify(result), 200


@plan_item_bp.route("/projects/<project_id>/plan", methods=["POST"])
def create_plan(project_id):
    data = request.get_json(silent=True) or {}
    if not str(data.get("name") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    if data.get("item_type_id") in (None, ""):
        return api_error(E.VALIDATION_REQUIRED, "item_type_id is required")

    values, err = _coerce_payload(data)
    if err:
        return err

    item = create_plan_item(project_id, g.organization_id, values)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(item.to_dict()), 201


# ═════════════════════════════════════════════════════════════════════════
# Single item
# ═════════════════════════════════════════════════════════════════════════


@plan_item_bp.route("/plan-items/<item_id>", methods=["GET"])
def get_item(item_id):
    return jsonify(get_plan_item(item_id, g.organization_id)), 200


@plan_item_bp.route("/plan-items/<item_id>", methods=["PUT"])
def update_item(item_id):
    data = request.get_json(silent=True) or {}
    if "name" in data and not str(data.get("name") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "name can not be empty")
    if "item_type_id" in data and data["item_type_id"] in (None, ""):
        return api_error(E.VALIDATION_REQUIRED, "item_type_id can not be empty")

    values, err = _coerce_payload(data)
    if err:
        return err

    item = update_plan_item(
        item_id, g.organization_id, PlanItemChanges.from_dict(values), actor=_actor(data),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(item.to_dict()), 200


@plan_item_bp.route("/plan-items/<item_id>", methods=["DELETE"])
def delete_item(item_id):
    count = delete_plan_item(item_id, g.organization_id)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"message": "Plan item deleted", "deactivated": count}), 200


@plan_item_bp.route("/plan-items/<item_id>/history", methods=["GET"])
def item_history(item_id):
    entries = get_plan_item_history(item_id, g.organization_id)
    return jsonify({"items": [e.to_dict() for e in entries], "total": len(entries)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Bulk status update
# ═════════════════════════════════════════════════════════════════════════


@plan_item_bp.route("/plan-items/bulk-update", methods=["POST"])
def bulk_update():
    """Body: {"updates": [{"id", "status"?, "notes"?, "references"?, "change_reason"?}]}"""
    data = request.get_json(silent=True)
    updates = data.get("updates") if isinstance(data, dict) else None
    if not isinstance(updates, list) or not updates:
        return api_error(E.VALIDATION_REQUIRED, "updates must be a non-empty list")

    results = bulk_update_plan_items(g.organization_id, updates, actor=_actor(data))
    err = db_commit_or_error()
    if err:
        return err

    succeeded = sum(1 for r in results if r["success"])
    return jsonify({
        "results": results,
        "success_count": succeeded,
        "failure_count": len(results) - succeeded,
    }), 200


# ═════════════════════════════════════════════════════════════════════════
# CSV import
# ═════════════════════════════════════════════════════════════════════════


@plan_item_bp.route("/plan-items/import/template", methods=["GET"])
def download_template():
    """Download a CSV template for plan import."""
    return Response(
        generate_csv_template(),
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=plan_import_template.csv"},
    )


@plan_item_bp.route("/projects/<project_id>/plan/import", methods=["POST"])
@limiter.limit(PLAN_IMPORT_LIMIT, key_func=organization_rate_limit_key)
def import_plan(project_id):
    """Upload a CSV (multipart ``file``, JSON ``csv_content`` or raw body)."""
    content, err = _extract_file_content()
    if err:
        return err
    if not content:
        return api_error(E.VALIDATION_REQUIRED, "No CSV content provided")

    result = import_plan_csv(
        project_id,
        g.organization_id,
        content,
        resolve_level_type_map(g.organization_id),
        actor=_actor(request.get_json(silent=True)),
        max_rows=current_app.config.get("PLAN_IMPORT_MAX_ROWS"),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(result), 200


@plan_item_bp.route("/projects/<project_id>/plan/import/preview", methods=["POST"])
def preview_import(project_id):
    """Parse a CSV and report what an import would do. Nothing is written."""
    get_scoped(Project, project_id, organization_id=g.organization_id)
    content, err = _extract_file_content()
    if err:
        return err
    if not content:
        return api_error(E.VALIDATION_REQUIRED, "No CSV content provided")

    result = preview_plan_csv(content, max_rows=current_app.config.get("PLAN_IMPORT_MAX_ROWS"))
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Item types
# ═════════════════════════════════════════════════════════════════════════


@plan_item_bp.route("/plan-item-types", methods=["GET"])
def list_types():
    types = list_item_types(g.organization_id)
    return jsonify({"items": [t.to_dict() for t in types], "total": len(types)}), 200
