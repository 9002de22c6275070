import logging

from .availability import find_first_available, is_available
from .errors import ConflictError, ConstraintViolation, NotFoundError, StorageError, ValidationError
from .models import COPY_AVAILABLE, Book, Copy
from .validation import coerce_id, optional_text, require_text, sanitize_scan_code

logger = logging.getLogger(__name__)


def _parse_tags(tags):
    if not tags:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    return [t.strip() for t in tags if isinstance(t, str) and t.strip()]


def _parse_total_copies(total_copies, barcodes):
    if total_copies is None or str(total_copies).strip() == "":
        return max(1, len(barcodes))
    try:
        total = int(str(total_copies).strip())
    except ValueError:
        raise ValidationError("Total copies must be a positive number.") from None
    if total < 1:
        raise ValidationError("Total copies must be a positive number.")
    if total < len(barcodes):
        raise ValidationError("More barcodes were supplied than copies.")
    return total


def _parse_year(year):
    if year is None or str(year).strip() == "":
        return None
    try:
        return int(str(year).strip())
    except ValueError:
        raise ValidationError("Publication year must be a number.") from None


class Catalog:
    def __init__(self, storage, audit):
        self.storage = storage
        self.audit = audit

    def create_book(
        self,
        title,
        author=None,
        isbn=None,
        classification=None,
        location=None,
        publisher=None,
        year=None,
        tags=None,
        cover_image_url=None,
        barcodes=None,
        total_copies=None,
        actor=None,
    ):
        """
        Add a title and its copies to the catalogue.

        Copies without a supplied barcode get one generated from the book id.
        If the copies can not be stored the new book row is removed again.
        """
        title = require_text(title, "Book title is required.")
        isbn = optional_text(isbn)
        barcodes = [b for b in (optional_text(b) for b in (barcodes or [])) if b]
        if len(set(barcodes)) != len(barcodes):
            raise ValidationError("Each copy needs a distinct barcode.")
        total = _parse_total_copies(total_copies, barcodes)

        if isbn and self.storage.find_book_by_isbn(isbn) is not None:
            raise ConflictError("A book with this ISBN already exists.")
        for barcode in barcodes:
            if self.storage.find_copy_by_barcode(barcode) is not None:
                raise ConflictError(f"A copy with barcode {barcode} already exists.")

        book = Book(
            title=title,
            author=optional_text(author),
            isbn=isbn,
            classification=optional_text(classification),
            location=optional_text(location),
            publisher=optional_text(publisher),
            year=_parse_year(year),
            tags=_parse_tags(tags),
            cover_image_url=optional_text(cover_image_url),
        )
        try:
            self.storage.add(book)
        except ConstraintViolation as e:
            raise ConflictError("A book with this ISBN already exists.") from e

        book_id = book.id
        generated = [f"B{book_id:05d}-{n:03d}" for n in range(len(barcodes) + 1, total + 1)]
        copies = [
            Copy(book_id=book_id, barcode=barcode, status=COPY_AVAILABLE)
            for barcode in barcodes + generated
        ]
        try:
            self.storage.add_all(copies)
        except StorageError as e:
            logger.exception("Copies for book %s could not be stored; removing the book", book_id)
            try:
                self.storage.delete(book)
            except StorageError:
                logger.error("Rollback failed: book %s has no copies, fix manually", book_id)
            if isinstance(e, ConstraintViolation):
                raise ConflictError("One of the barcodes is already in use.") from e
            raise

        logger.info("Created book %s (%s) with %s copies", book_id, title, total)
        self.audit.record(
            "CREATE_BOOK",
            "book",
            book_id,
            actor,
            context={"title": title, "copies": total},
        )
        return book

    def get_book(self, book_id):
        book = self.storage.get_book(coerce_id(book_id, "Book reference is invalid."))
        if book is None:
            raise NotFoundError("Book not found.")
        return book

    def lookup_available(self, code):
        """
        Resolve a scanned barcode or ISBN to ``(book, copy)`` with a lendable copy.
        """
        sanitized = sanitize_scan_code(code)
        if not sanitized:
            raise ValidationError("Invalid code provided.")

        copy = self.storage.find_copy_by_barcode(sanitized)
        if copy is not None:
            if not is_available(copy):
                raise NotFoundError("No available book matches that code.")
            return copy.book, copy

        book = self.storage.find_book_by_isbn(sanitized)
        if book is None:
            raise NotFoundError("No available book matches that code.")
        copy = find_first_available(self.storage.list_copies(book.id))
        if copy is None:
            raise NotFoundError("No available book matches that code.")
        return book, copy
