"""
Structured logging configuration.

- Development: human-readable colored format
- Production: JSON format (log aggregator compatible)
- Log level: ``LOG_LEVEL`` config/env value

Every record emitted inside a request carries the request id and the
organization resolved by the org-context middleware, so service-level
messages (row failures, rejected moves) can be traced back to the caller.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Record attributes copied into JSON output when present.
CONTEXT_FIELDS = (
    "request_id",
    "organization_id",
    "user_id",
    "project_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)


class RequestContextFilter(logging.Filter):
    """Attach request id / organization / user from ``flask.g``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            for attr, key in (
                ("request_id", "request_id"),
                ("organization_id", "organization_id"),
                ("actor_user_id", "user_id"),
            ):
                if getattr(record, key, None) is None:
                    setattr(record, key, getattr(g, attr, None))
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": record.lineno,
        }
        for key in CONTEXT_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line format for local development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.now().strftime("%H:%M:%S")

        scope = []
        org = getattr(record, "organization_id", None)
        if org is not None:
            scope.append(f"org={org}")
        request_id = getattr(record, "request_id", None)
        if request_id:
            scope.append(f"req={request_id}")
        scope_str = f" [{' '.join(scope)}]" if scope else ""

        duration = getattr(record, "duration_ms", None)
        dur_str = f" ({duration:.0f}ms)" if duration is not None else ""

        base = (
            f"{color}{ts} {record.levelname:<8}{self.RESET} "
            f"{record.name}{scope_str}: {record.getMessage()}{dur_str}"
        )
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def configure_logging(app):
    """Install a single stderr handler on the root logger.

    Level comes from ``app.config["LOG_LEVEL"]``, else DEBUG (dev/test)
    or INFO (prod).
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = app.config.get("LOG_LEVEL") or ("INFO" if is_prod else "DEBUG")
    level = getattr(logging, str(level_name).upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    # Re-created apps (tests) must not stack handlers
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("werkzeug", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "JSON" if is_prod else "readable")
