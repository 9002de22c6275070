import logging

from .availability import find_first_available, is_available
from .errors import (
    AlreadyReturnedError,
    ConflictError,
    ConstraintViolation,
    InvalidStateError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .models import (
    COPY_AVAILABLE,
    COPY_LOANED,
    LOAN_BORROWED,
    LOAN_OVERDUE,
    LOAN_RETURNED,
    Loan,
    utcnow,
)
from .validation import coerce_id, optional_text, parse_due_date, require_text

logger = logging.getLogger(__name__)

BORROWER_TYPES = ("student", "staff")
OPEN_LOAN_STATUSES = (LOAN_BORROWED, LOAN_OVERDUE)


def normalize_loan_status(value):
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


class LoanManager:
    def __init__(self, storage, audit):
        self.storage = storage
        self.audit = audit

    # ----------------- checkout -----------------

    def checkout(
        self,
        book_id,
        borrower_identifier,
        borrower_name,
        due_date,
        copy_id=None,
        borrower_type="student",
        actor=None,
        now=None,
    ):
        book_id = coerce_id(
            require_text(book_id, "Select a book to check out."),
            "Select a book to check out.",
        )
        borrower_identifier = require_text(borrower_identifier, "Borrower ID is required.")
        borrower_name = require_text(borrower_name, "Borrower name is required.")
        borrower_type = (optional_text(borrower_type) or "student").lower()
        if borrower_type not in BORROWER_TYPES:
            raise ValidationError("Choose borrower type.")
        due_at = parse_due_date(due_date)
        now = now or utcnow()

        book = self.storage.get_book(book_id)
        if book is None:
            raise NotFoundError("Unable to load book information.")

        copy = self._select_copy(book, copy_id)
        copy_id = copy.id

        loan = Loan(
            copy_id=copy_id,
            book_id=book.id,
            borrower_identifier=borrower_identifier,
            borrower_name=borrower_name,
            borrower_type=borrower_type,
            status=LOAN_BORROWED,
            borrowed_at=now,
            due_at=due_at,
        )
        try:
            self.storage.add(loan)
        except ConstraintViolation as e:
            # Another request opened a loan on this copy after our check.
            logger.warning("Loan insert rejected for copy %s: %s", copy_id, e)
            raise ConflictError("That copy was just checked out. Please try another copy.") from e

        loan_id = loan.id
        try:
            self.storage.set_copy_status(copy, COPY_LOANED)
        except StorageError:
            logger.exception(
                "Copy %s could not be marked loaned; removing loan %s", copy_id, loan_id
            )
            self._undo_checkout(loan, loan_id, copy_id)
            raise

        logger.info(
            "Checked out copy %s of book %s to %s (loan %s)",
            copy_id,
            book_id,
            borrower_identifier,
            loan_id,
        )
        self._touch_book(book, now)
        self.audit.record(
            "CHECKOUT",
            "loan",
            loan_id,
            actor,
            context={
                "book_id": book_id,
                "copy_id": copy_id,
                "borrower_identifier": borrower_identifier,
                "due_at": due_at.isoformat(),
            },
        )
        return loan

    def _select_copy(self, book, copy_id):
        if copy_id is None or str(copy_id).strip() == "":
            copy = find_first_available(self.storage.list_copies(book.id))
            if copy is None:
                raise NotFoundError("No available copies for this title.")
            return copy

        copy = self.storage.get_copy(coerce_id(copy_id, "Copy reference is invalid."))
        if copy is None:
            raise NotFoundError("That copy could not be found.")
        if copy.book_id != book.id:
            raise ConflictError("That copy does not belong to the selected title.")
        if not is_available(copy):
            raise ConflictError("That copy is not available for checkout.")
        return copy

    def _undo_checkout(self, loan, loan_id, copy_id):
        try:
            self.storage.delete(loan)
        except StorageError:
            logger.error(
                "Rollback failed: loan %s is still open on copy %s, fix manually",
                loan_id,
                copy_id,
            )

    # ----------------- check-in -----------------

    def checkin(self, loan_id=None, identifier=None, actor=None, now=None):
        identifier = optional_text(identifier)
        has_loan_id = loan_id is not None and str(loan_id).strip() != ""
        if not has_loan_id and not identifier:
            raise ValidationError("Provide a loan reference or scan a book.")
        now = now or utcnow()

        if has_loan_id:
            loan = self.storage.get_loan(coerce_id(loan_id, "Loan reference is invalid."))
            if loan is None:
                raise NotFoundError("Loan not found.")
        else:
            loan = self._resolve_by_identifier(identifier)

        if loan.returned_at is not None:
            raise AlreadyReturnedError()
        if normalize_loan_status(loan.status) not in OPEN_LOAN_STATUSES:
            raise InvalidStateError("This loan is not currently active.")

        prior_status = loan.status
        loan_id, copy_id = loan.id, loan.copy_id
        self.storage.update(loan, status=LOAN_RETURNED, returned_at=now)

        try:
            copy = self.storage.get_copy(copy_id)
            if copy is None:
                raise StorageError(f"copy {copy_id} of loan {loan_id} is missing")
            self.storage.set_copy_status(copy, COPY_AVAILABLE)
        except StorageError:
            logger.exception(
                "Copy %s could not be marked available; reopening loan %s", copy_id, loan_id
            )
            self._undo_checkin(loan, prior_status, loan_id, copy_id)
            raise

        logger.info("Checked in copy %s (loan %s)", copy_id, loan_id)
        self.audit.record(
            "CHECKIN",
            "loan",
            loan_id,
            actor,
            context={"book_id": loan.book_id, "copy_id": copy_id},
        )
        book = self._load_book_quietly(loan.book_id)
        if book is not None:
            self._touch_book(book, now)
        return loan

    def _resolve_by_identifier(self, identifier):
        copy = self.storage.find_copy_by_barcode(identifier)
        if copy is not None:
            loan = self.storage.find_active_loan_for_copy(copy.id)
            if loan is not None:
                return loan

        loan = self.storage.find_latest_active_loan_for_borrower(identifier)
        if loan is None:
            raise NotFoundError("Unable to find an active loan for that identifier.")
        return loan

    def _undo_checkin(self, loan, prior_status, loan_id, copy_id):
        try:
            self.storage.update(loan, status=prior_status, returned_at=None)
        except StorageError:
            logger.error(
                "Rollback failed: loan %s is marked returned but copy %s is not available, fix manually",
                loan_id,
                copy_id,
            )

    # ----------------- overdue -----------------

    def mark_overdue(self, now=None, actor=None):
        """Flip open ``borrowed`` loans past their due date to ``overdue``."""
        now = now or utcnow()
        changed = 0
        for loan in self.storage.list_overdue_candidates(now):
            if normalize_loan_status(loan.status) != LOAN_BORROWED:
                continue
            self.storage.update(loan, status=LOAN_OVERDUE)
            changed += 1

        if changed:
            logger.info("Marked %s loan(s) overdue", changed)
            self.audit.record("MARK_OVERDUE", "loan", None, actor, context={"count": changed})
        return changed

    # ----------------- deletion -----------------

    def delete_book(self, book_id, actor=None):
        """
        Remove a title together with its copies, holds and loan history.

        Copies go before the book; a title with a copy still on loan is refused.
        """
        book_id = coerce_id(require_text(book_id, "Select a book to delete."), "Book reference is invalid.")
        book = self.storage.get_book(book_id)
        if book is None:
            raise NotFoundError("Book not found.")

        copies = self.storage.list_copies(book_id)
        if any(loan.returned_at is None for copy in copies for loan in copy.loans):
            raise ConflictError("Check in every copy of this title before deleting it.")

        title = book.title
        for loan in self.storage.list_loans_for_book(book_id):
            self.storage.delete(loan)
        for hold in self.storage.list_holds_for_book(book_id):
            self.storage.delete(hold)
        for copy in self.storage.list_copies(book_id):
            self.storage.delete(copy)
        self.storage.delete(book)

        logger.info("Deleted book %s (%s) and %s copies", book_id, title, len(copies))
        self.audit.record(
            "DELETE_BOOK",
            "book",
            book_id,
            actor,
            context={"title": title, "copies": len(copies)},
        )

    # ----------------- helpers -----------------

    def _touch_book(self, book, when):
        book_id = book.id
        try:
            self.storage.update(book, last_transaction_at=when)
        except StorageError as e:
            logger.warning("Could not update last transaction time of book %s: %s", book_id, e)

    def _load_book_quietly(self, book_id):
        try:
            return self.storage.get_book(book_id)
        except StorageError as e:
            logger.warning("Could not load book %s after check-in: %s", book_id, e)
            return None
