"""JSON error bodies for malformed plan API requests.

Service exceptions (NotFoundError, ValidationError, ...) are mapped by the
blueprint error handlers; ``api_error`` covers what the blueprint rejects
before a service is called, plus commit failures.

    from app.utils.errors import api_error, E

    return api_error(E.VALIDATION_REQUIRED, "name is required")
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Machine-readable error codes (``ERR_`` prefix)."""

    # 400: payload shape / types
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    # 422: well-formed request the plan engine refuses (cycle, bad reference, bad CSV)
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"

    NOT_FOUND = "ERR_NOT_FOUND"
    FORBIDDEN = "ERR_FORBIDDEN"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 422,
    E.NOT_FOUND: 404,
    E.FORBIDDEN: 403,
    E.CONFLICT_DUPLICATE: 409,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(jsonify({"error", "code", "details"?}), status)``.

    ``status`` defaults to the code's mapping above, else 400.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _DEFAULT_STATUS.get(code, 400)
