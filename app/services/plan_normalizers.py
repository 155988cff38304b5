"""Free-text normalizers for plan import sources.

Both functions return ``None`` when the value can not be mapped; callers
skip that field instead of failing the row.
"""

import re
from datetime import date, datetime

from dateutil import parser as date_parser

from app.models.plan import PLAN_ITEM_STATUSES

STATUS_ALIASES = {
    "done": "completed",
    "complete": "completed",
    "finished": "completed",
    "closed": "completed",
    "started": "in_progress",
    "active": "in_progress",
    "wip": "in_progress",
    "ongoing": "in_progress",
    "in_work": "in_progress",
    "pending": "not_started",
    "todo": "not_started",
    "to_do": "not_started",
    "new": "not_started",
    "open": "not_started",
    "hold": "on_hold",
    "paused": "on_hold",
    "cancel": "cancelled",
    "canceled": "cancelled",
}

# Tried in order before falling back to dateutil.
DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y")

_SEPARATORS = re.compile(r"[\s\-]+")


def normalize_status(value) -> str | None:
    """Map a free-text status to a canonical plan item status.

    >>> normalize_status("In Progress")
    'in_progress'
    >>> normalize_status("Done")
    'completed'
    """
    if value is None:
        return None
    key = _SEPARATORS.sub("_", str(value).strip().lower())
    if not key:
        return None
    if key in PLAN_ITEM_STATUSES:
        return key
    return STATUS_ALIASES.get(key)


def parse_import_date(value) -> date | None:
    """Parse an import cell into a date.

    Fixed patterns first (ISO, US slash, US dash), then a generic
    dateutil parse. Returns None for empty or unparsable input.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return date_parser.parse(text).date()
    except (ValueError, OverflowError):
        return None
