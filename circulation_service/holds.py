import logging

from .errors import (
    ConstraintViolation,
    DuplicateHoldError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
)
from .models import (
    ACTIVE_HOLD_STATUSES,
    HOLD_CANCELED,
    HOLD_EXPIRED,
    HOLD_FULFILLED,
    HOLD_QUEUED,
    HOLD_READY,
    Hold,
    utcnow,
)
from .validation import coerce_id, require_text

logger = logging.getLogger(__name__)

HOLD_TRANSITIONS = {
    HOLD_QUEUED: {HOLD_READY, HOLD_CANCELED},
    HOLD_READY: {HOLD_FULFILLED, HOLD_EXPIRED, HOLD_CANCELED},
    HOLD_FULFILLED: set(),
    HOLD_EXPIRED: set(),
    HOLD_CANCELED: set(),
}


def normalize_hold_status(value):
    if not isinstance(value, str):
        return ""
    return value.strip().upper()


def can_transition(current, target):
    return normalize_hold_status(target) in HOLD_TRANSITIONS.get(
        normalize_hold_status(current), set()
    )


class HoldManager:
    def __init__(self, storage, audit):
        self.storage = storage
        self.audit = audit

    def place_hold(self, patron_id, book_id, actor=None, now=None):
        patron_id = require_text(patron_id, "You must be logged in to place a hold.")
        book_id = coerce_id(
            require_text(book_id, "Select a book to place on hold."),
            "Select a book to place on hold.",
        )

        if self.storage.get_book(book_id) is None:
            raise NotFoundError("Book not found.")

        if self.storage.find_active_hold(patron_id, book_id) is not None:
            raise DuplicateHoldError()

        hold = Hold(
            patron_id=patron_id,
            book_id=book_id,
            status=HOLD_QUEUED,
            placed_at=now or utcnow(),
        )
        try:
            self.storage.add(hold)
        except ConstraintViolation as e:
            logger.info("Duplicate hold for patron %s on book %s rejected by storage: %s", patron_id, book_id, e)
            raise DuplicateHoldError() from e

        logger.info("Patron %s placed hold %s on book %s", patron_id, hold.id, book_id)
        self.audit.record(
            "PLACE_HOLD",
            "hold",
            hold.id,
            actor,
            context={"book_id": book_id, "patron_id": patron_id},
        )
        return hold

    def cancel_hold(self, hold_id, patron_id, actor=None):
        hold_id = coerce_id(require_text(hold_id, "Hold ID is required."), "Hold ID is invalid.")
        patron_id = require_text(patron_id, "You must be logged in to cancel a hold.")

        hold = self.storage.get_hold(hold_id)
        if hold is None:
            raise NotFoundError("Hold not found.")
        if hold.patron_id != patron_id:
            raise ForbiddenError("You do not have permission to cancel this hold.")
        if not can_transition(hold.status, HOLD_CANCELED):
            raise InvalidStateError("This hold cannot be canceled.")

        self.storage.update(hold, status=HOLD_CANCELED)

        logger.info("Patron %s canceled hold %s", patron_id, hold_id)
        self.audit.record(
            "CANCEL_HOLD",
            "hold",
            hold_id,
            actor,
            context={"book_id": hold.book_id},
        )
        return hold

    def list_holds(self, patron_id, include_history=False):
        patron_id = require_text(patron_id, "Patron ID is required.")
        return self.storage.list_holds_for_patron(patron_id, include_history=include_history)

    def queue_for_book(self, book_id):
        """Active holds on a title, first come first served."""
        book_id = coerce_id(book_id, "Book reference is invalid.")
        return self.storage.list_active_holds_for_book(book_id)

    def queue_position(self, hold):
        """1-based place of ``hold`` in its title's queue, None once it left the queue."""
        if normalize_hold_status(hold.status) not in ACTIVE_HOLD_STATUSES:
            return None
        for position, queued in enumerate(self.queue_for_book(hold.book_id), start=1):
            if queued.id == hold.id:
                return position
        return None
