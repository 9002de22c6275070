"""Input normalisation shared by the circulation operations."""

import re
from datetime import date, datetime, time, timezone

from .errors import ValidationError

_SCAN_CODE_RE = re.compile(r"[^0-9A-Za-z-]")


def require_text(value, message):
    """Return ``value`` as a stripped string, or raise ValidationError if blank."""
    if value is None:
        raise ValidationError(message)
    text = str(value).strip()
    if not text:
        raise ValidationError(message)
    return text


def optional_text(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def coerce_id(value, message):
    if isinstance(value, bool):
        raise ValidationError(message)
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(message) from None


def parse_due_date(value):
    """
    Parse a due date into a naive UTC datetime.

    Accepts ``datetime``/``date`` values and ISO 8601 strings
    ("2025-06-01", "2025-06-01T17:00:00Z", ...). A bare date means
    midnight UTC of that day.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        text = require_text(value, "Provide a due date.")
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError("Due date is invalid.") from None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def sanitize_scan_code(value):
    """Strip everything but letters, digits and dashes from a scanned code."""
    if value is None:
        return ""
    return _SCAN_CODE_RE.sub("", str(value).strip())


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")
