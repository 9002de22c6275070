from dataclasses import asdict, dataclass

from .availability import is_available
from .models import utcnow


@dataclass(frozen=True)
class DashboardSummary:
    total_books: int
    available_books: int
    active_loans: int
    overdue_loans: int

    def to_dict(self):
        return asdict(self)


def summarize(storage, now=None):
    """
    Headline counts for the staff dashboard.

    ``available_books`` counts titles, not copies: a title is available when
    at least one of its copies passes the availability check.
    """
    now = now or utcnow()
    available_book_ids = {
        copy.book_id for copy in storage.list_copies() if is_available(copy)
    }
    return DashboardSummary(
        total_books=storage.count_books(),
        available_books=len(available_book_ids),
        active_loans=storage.count_active_loans(),
        overdue_loans=storage.count_overdue_loans(now),
    )


def recent_loans(storage, limit=6):
    return storage.list_recent_loans(max(1, int(limit)))


def active_loans(storage, search=None):
    search = (search or "").strip()
    return storage.list_active_loans(search or None)
