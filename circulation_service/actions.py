import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .catalog import Catalog
from .errors import CirculationError, StorageError
from .holds import HoldManager
from .loans import LoanManager

logger = logging.getLogger(__name__)

UNEXPECTED_MESSAGE = "An unexpected error occurred."


@dataclass
class ActionResult:
    status: str
    message: str
    # Name of the internal error class, kept for status-code mapping only.
    kind: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self):
        return self.status == "success"

    def to_dict(self):
        data = {"status": self.status, "message": self.message}
        if self.payload:
            data.update(self.payload)
        return data


def success(message, **payload):
    return ActionResult(status="success", message=message, payload=payload)


def failure(message, kind=None):
    return ActionResult(status="error", message=message, kind=kind)


def patron_for(data, actor):
    """The patron a hold request is about: the caller, or whoever staff name."""
    if actor is None:
        return None
    if actor.is_staff and data.get("patron_id"):
        return data.get("patron_id")
    return actor.id


def run_action(name, operation):
    """Call ``operation()`` and turn its outcome into an ActionResult."""
    try:
        return operation()
    except StorageError as e:
        logger.exception("%s failed on storage: %s", name, e)
        return failure(e.message, kind=type(e).__name__)
    except CirculationError as e:
        logger.info("%s rejected: %s", name, e.message)
        return failure(e.message, kind=type(e).__name__)
    except Exception:
        logger.exception("Unexpected error in %s", name)
        return failure(UNEXPECTED_MESSAGE)


class CirculationActions:
    """Glue between raw request data and the managers, one instance per request."""

    def __init__(self, storage, audit):
        self.storage = storage
        self.audit = audit
        self.loans = LoanManager(storage, audit)
        self.holds = HoldManager(storage, audit)
        self.catalog = Catalog(storage, audit)

    def checkout_book(self, data, actor=None):
        def op():
            loan = self.loans.checkout(
                book_id=data.get("book_id"),
                copy_id=data.get("copy_id"),
                borrower_identifier=data.get("borrower_identifier"),
                borrower_name=data.get("borrower_name"),
                borrower_type=data.get("borrower_type"),
                due_date=data.get("due_date"),
                actor=actor,
            )
            return success(
                f"Checked out to {loan.borrower_name}.",
                loan_id=loan.id,
                copy_id=loan.copy_id,
                due_at=loan.due_at.isoformat(),
            )

        return run_action("checkout", op)

    def checkin_book(self, data, actor=None):
        def op():
            loan = self.loans.checkin(
                loan_id=data.get("loan_id"),
                identifier=data.get("identifier") or data.get("barcode"),
                actor=actor,
            )
            title = loan.book.title if loan.book is not None else None
            return success(
                f"{title or 'Book'} returned successfully.",
                loan_id=loan.id,
                copy_id=loan.copy_id,
            )

        return run_action("checkin", op)

    def mark_overdue(self, actor=None):
        def op():
            changed = self.loans.mark_overdue(actor=actor)
            return success(f"{changed} loan(s) marked overdue.", updated=changed)

        return run_action("mark_overdue", op)

    def place_hold(self, data, actor=None):
        def op():
            hold = self.holds.place_hold(
                patron_id=patron_for(data, actor),
                book_id=data.get("book_id"),
                actor=actor,
            )
            return success(
                "Hold placed successfully.",
                hold_id=hold.id,
                position=self._queue_position_quietly(hold),
            )

        return run_action("place_hold", op)

    def _queue_position_quietly(self, hold):
        # The hold is already stored; a failed lookup must not report failure.
        hold_id = hold.id
        try:
            return self.holds.queue_position(hold)
        except StorageError as e:
            logger.warning("Could not compute queue position of hold %s: %s", hold_id, e)
            return None

    def cancel_hold(self, hold_id, data, actor=None):
        def op():
            hold = self.holds.cancel_hold(
                hold_id=hold_id,
                patron_id=patron_for(data, actor),
                actor=actor,
            )
            return success("Hold canceled successfully.", hold_id=hold.id)

        return run_action("cancel_hold", op)

    def create_book(self, data, actor=None):
        def op():
            book = self.catalog.create_book(
                title=data.get("title"),
                author=data.get("author"),
                isbn=data.get("isbn"),
                classification=data.get("classification"),
                location=data.get("location"),
                publisher=data.get("publisher"),
                year=data.get("year"),
                tags=data.get("tags"),
                cover_image_url=data.get("cover_image_url"),
                barcodes=data.get("barcodes"),
                total_copies=data.get("total_copies"),
                actor=actor,
            )
            return success("Book has been added to the catalogue.", book_id=book.id)

        return run_action("create_book", op)

    def delete_book(self, book_id, actor=None):
        def op():
            self.loans.delete_book(book_id, actor=actor)
            return success("Book removed from the catalogue.", book_id=int(book_id))

        return run_action("delete_book", op)

