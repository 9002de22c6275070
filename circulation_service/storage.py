import logging
from contextlib import contextmanager

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import selectinload

from .errors import ConstraintViolation, StorageError
from .models import (
    ACTIVE_HOLD_STATUSES,
    AuditLog,
    Book,
    Copy,
    Hold,
    Loan,
)

logger = logging.getLogger(__name__)


def escape_like(value):
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class Storage:
    """Store access for one request. Every write commits on its own."""

    def __init__(self, session):
        self.session = session

    @contextmanager
    def _guard(self):
        try:
            yield
        except IntegrityError as exc:
            self.session.rollback()
            raise ConstraintViolation(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError(str(exc)) from exc

    def _scalar(self, stmt):
        with self._guard():
            return self.session.execute(stmt).scalar_one_or_none()

    def _scalars(self, stmt):
        with self._guard():
            return list(self.session.execute(stmt).scalars().all())

    def _count(self, stmt):
        with self._guard():
            return self.session.execute(stmt).scalar_one()

    # ----------------- generic writes -----------------

    def add(self, obj):
        with self._guard():
            self.session.add(obj)
            self.session.commit()
        return obj

    def add_all(self, objs):
        with self._guard():
            self.session.add_all(objs)
            self.session.commit()
        return objs

    def update(self, obj, **fields):
        with self._guard():
            for name, value in fields.items():
                setattr(obj, name, value)
            self.session.commit()
        return obj

    def delete(self, obj):
        with self._guard():
            self.session.delete(obj)
            self.session.commit()

    # ----------------- books -----------------

    def get_book(self, book_id):
        stmt = (
            select(Book)
            .where(Book.id == book_id)
            .options(selectinload(Book.copies).selectinload(Copy.loans))
        )
        return self._scalar(stmt)

    def find_book_by_isbn(self, isbn):
        return self._scalar(select(Book).where(Book.isbn == isbn))

    def count_books(self):
        return self._count(select(func.count(Book.id)))

    # ----------------- copies -----------------

    def get_copy(self, copy_id):
        stmt = select(Copy).where(Copy.id == copy_id).options(selectinload(Copy.loans))
        return self._scalar(stmt)

    def find_copy_by_barcode(self, barcode):
        stmt = select(Copy).where(Copy.barcode == barcode).options(selectinload(Copy.loans))
        return self._scalar(stmt)

    def list_copies(self, book_id=None):
        stmt = select(Copy).options(selectinload(Copy.loans)).order_by(Copy.id)
        if book_id is not None:
            stmt = stmt.where(Copy.book_id == book_id)
        return self._scalars(stmt)

    def set_copy_status(self, copy, status):
        return self.update(copy, status=status)

    # ----------------- loans -----------------

    def get_loan(self, loan_id):
        return self._scalar(select(Loan).where(Loan.id == loan_id))

    def find_active_loan_for_copy(self, copy_id):
        stmt = (
            select(Loan)
            .where(Loan.copy_id == copy_id, Loan.returned_at.is_(None))
            .order_by(Loan.borrowed_at.desc())
            .limit(1)
        )
        return self._scalar(stmt)

    def find_latest_active_loan_for_borrower(self, borrower_identifier):
        stmt = (
            select(Loan)
            .where(
                Loan.borrower_identifier == borrower_identifier,
                Loan.returned_at.is_(None),
            )
            .order_by(Loan.borrowed_at.desc(), Loan.id.desc())
            .limit(1)
        )
        return self._scalar(stmt)

    def list_loans_for_book(self, book_id):
        return self._scalars(select(Loan).where(Loan.book_id == book_id).order_by(Loan.id))

    def list_active_loans(self, search=None):
        stmt = (
            select(Loan)
            .where(Loan.returned_at.is_(None))
            .options(selectinload(Loan.book), selectinload(Loan.copy))
            .order_by(Loan.borrowed_at.desc(), Loan.id.desc())
        )
        if search:
            like = f"%{escape_like(search)}%"
            stmt = stmt.where(
                or_(
                    Loan.borrower_name.ilike(like, escape="\\"),
                    Loan.borrower_identifier.ilike(like, escape="\\"),
                )
            )
        return self._scalars(stmt)

    def list_overdue_candidates(self, now):
        stmt = select(Loan).where(
            Loan.returned_at.is_(None),
            Loan.due_at < now,
        )
        return self._scalars(stmt)

    def list_recent_loans(self, limit):
        stmt = (
            select(Loan)
            .options(selectinload(Loan.book), selectinload(Loan.copy))
            .order_by(Loan.borrowed_at.desc(), Loan.id.desc())
            .limit(limit)
        )
        return self._scalars(stmt)

    def count_active_loans(self):
        return self._count(select(func.count(Loan.id)).where(Loan.returned_at.is_(None)))

    def count_overdue_loans(self, now):
        stmt = select(func.count(Loan.id)).where(
            Loan.returned_at.is_(None),
            Loan.due_at < now,
        )
        return self._count(stmt)

    # ----------------- holds -----------------

    def get_hold(self, hold_id):
        return self._scalar(select(Hold).where(Hold.id == hold_id))

    def find_active_hold(self, patron_id, book_id):
        stmt = (
            select(Hold)
            .where(
                Hold.patron_id == patron_id,
                Hold.book_id == book_id,
                Hold.status.in_(ACTIVE_HOLD_STATUSES),
            )
            .limit(1)
        )
        return self._scalar(stmt)

    def list_holds_for_patron(self, patron_id, include_history=False):
        stmt = (
            select(Hold)
            .where(Hold.patron_id == patron_id)
            .options(selectinload(Hold.book))
            .order_by(Hold.placed_at.desc(), Hold.id.desc())
        )
        if not include_history:
            stmt = stmt.where(Hold.status.in_(ACTIVE_HOLD_STATUSES))
        return self._scalars(stmt)

    def list_active_holds_for_book(self, book_id):
        stmt = (
            select(Hold)
            .where(Hold.book_id == book_id, Hold.status.in_(ACTIVE_HOLD_STATUSES))
            .order_by(Hold.placed_at, Hold.id)
        )
        return self._scalars(stmt)

    def list_holds_for_book(self, book_id):
        return self._scalars(select(Hold).where(Hold.book_id == book_id))

    # ----------------- audit -----------------

    def list_audit_entries(self, event_type=None, limit=100):
        stmt = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        if event_type:
            stmt = stmt.where(AuditLog.event_type == event_type)
        return self._scalars(stmt.limit(limit))
