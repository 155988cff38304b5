"""
Organization Context Middleware — resolves the calling organization for plan API requests.

Headers:
  X-Organization-Id  (required on plan routes) — integer organization id
  X-User-Id          (optional) — recorded as the history actor
  X-User-Email       (optional) — recorded as the history actor

Outcome per request:
  1. g.organization / g.organization_id set for downstream handlers
  2. g.actor_user_id / g.actor_email set when supplied
  3. Missing or malformed header on a plan route → 400
  4. Unknown or deactivated organization → 403

Chain order:
  request_id (timing.py)  →  org_context.py  →  route handler
"""

import logging

from flask import g, jsonify, request

from app.models import db
from app.models.project import Organization

logger = logging.getLogger(__name__)

# Paths that require an organization context.
ORG_REQUIRED_PREFIXES = (
    "/api/v1/projects/",
    "/api/v1/plan-items",
    "/api/v1/plan-item-types",
)

# The CSV template is static and shared by every organization.
ORG_SKIP_PATHS = (
    "/api/v1/plan-items/import/template",
)


def _header_int(name):
    raw = (request.headers.get(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def init_org_context(app):
    """Register organization context middleware as a before_request hook."""

    @app.before_request
    def _org_context():
        g.organization = None
        g.organization_id = None
        g.actor_user_id = _header_int("X-User-Id")
        g.actor_email = (request.headers.get("X-User-Email") or "").strip() or None

        if request.method == "OPTIONS":
            return None
        if request.path in ORG_SKIP_PATHS:
            return None
        if not request.path.startswith(ORG_REQUIRED_PREFIXES):
            return None

        org_id = _header_int("X-Organization-Id")
        if org_id is None:
            return jsonify({
                "error": "X-Organization-Id header is required",
                "code": "ERR_VALIDATION_REQUIRED",
            }), 400

        organization = db.session.get(Organization, org_id)
        if organization is None:
            logger.warning("Organization %d not found for %s", org_id, request.path)
            return jsonify({"error": "Organization not found", "code": "ERR_FORBIDDEN"}), 403
        if not organization.is_active:
            logger.warning("Organization %d is deactivated", org_id)
            return jsonify({
                "error": "Organization account is deactivated",
                "code": "ERR_FORBIDDEN",
            }), 403

        g.organization = organization
        g.organization_id = organization.id
        return None

    logger.info("Organization context middleware installed")
