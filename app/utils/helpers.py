"""Shared blueprint helpers.

parse_date:          request payload dates (returns None on bad input)
db_commit_or_error:  one commit per mutating request, errors mapped to HTTP
"""
import logging
from datetime import date, datetime

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from app.models import db
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


# ── Database commit helper ───────────────────────────────────────────────────

def db_commit_or_error():
    """Commit the current SQLAlchemy session, returning an error response on failure.

    Returns:
        None on success.
        (response, status_code) tuple on failure — ready for ``return``.

    Usage::

        err = db_commit_or_error()
        if err:
            return err

    IntegrityError → 409 (duplicate / constraint violation)
    OperationalError → 500 (connection / lock issues)
    Other SQLAlchemyError → 500
    """
    try:
        db.session.commit()
        return None
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        return api_error(E.CONFLICT_DUPLICATE, "Duplicate or constraint violation")
    except OperationalError:
        db.session.rollback()
        logger.exception("Database operational error on commit")
        return api_error(E.DATABASE, "Database error")
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Unexpected database error on commit")
        return api_error(E.DATABASE, "Database error")
