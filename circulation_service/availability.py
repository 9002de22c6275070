from collections.abc import Mapping

from .models import COPY_AVAILABLE

# Loose spellings seen in imports and scanner feeds -> canonical status.
_STATUS_ALIASES = {
    "on_loan": "loaned",
    "checked_out": "loaned",
}


def normalize_copy_status(value):
    """Map a raw status onto its canonical lower-case form (None if not a string)."""
    if not isinstance(value, str):
        return None
    key = value.strip().lower()
    return _STATUS_ALIASES.get(key, key)


def _field(record, name):
    if isinstance(record, Mapping):
        return record[name]
    return getattr(record, name)


def _has_open_loan(loans):
    return any(_field(loan, "returned_at") is None for loan in loans)


def is_available(copy):
    try:
        if normalize_copy_status(_field(copy, "status")) != COPY_AVAILABLE:
            return False
        return not _has_open_loan(_field(copy, "loans") or [])
    except (AttributeError, KeyError, TypeError):
        return False


def find_first_available(copies):
    """Return the first lendable copy in input order, or None."""
    for copy in copies or []:
        if is_available(copy):
            return copy
    return None


def count_available(copies):
    return sum(1 for copy in copies or [] if is_available(copy))
