"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category, keyed by
organization when the request carries one.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

PLAN_API_LIMIT = "120/minute"
PLAN_IMPORT_LIMIT = "10/minute"


def organization_rate_limit_key():
    """Dynamic rate limit key: organization id if supplied, else remote IP.

    Runs before the organization context hook, so the raw header is the
    fallback when g.organization_id is not resolved yet.
    """
    organization_id = getattr(g, "organization_id", None) or flask_request.headers.get("X-Organization-Id")
    if organization_id:
        return f"org:{organization_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per organization, falling back to remote IP):
        - Plan API:        120/minute
        - CSV import:      10/minute (route decorator; also counts toward the plan API limit)
        - Health check:    exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("plan_items")
    if bp:
        limiter.limit(PLAN_API_LIMIT, key_func=organization_rate_limit_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — plan API: %s, CSV import: %s",
        PLAN_API_LIMIT, PLAN_IMPORT_LIMIT,
    )
