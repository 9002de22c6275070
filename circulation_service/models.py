from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    String,
    DateTime,
    ForeignKey,
    Index,
    JSON,
    text,
)

Base = declarative_base()

COPY_AVAILABLE = "available"
COPY_LOANED = "loaned"

LOAN_BORROWED = "borrowed"
LOAN_OVERDUE = "overdue"
LOAN_RETURNED = "returned"

HOLD_QUEUED = "QUEUED"
HOLD_READY = "READY"
HOLD_FULFILLED = "FULFILLED"
HOLD_EXPIRED = "EXPIRED"
HOLD_CANCELED = "CANCELED"

ACTIVE_HOLD_STATUSES = (HOLD_QUEUED, HOLD_READY)


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Book(Base):
    __tablename__ = "book"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    author = Column(String(255))
    isbn = Column(String(20), unique=True)
    classification = Column(String(100))
    location = Column(String(255))
    publisher = Column(String(255))
    year = Column(Integer)
    tags = Column(JSON, nullable=False, default=list)
    cover_image_url = Column(String(500))
    last_transaction_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    copies = relationship("Copy", back_populates="book", order_by="Copy.id")


class Copy(Base):
    __tablename__ = "copy"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False, index=True)
    barcode = Column(String(64), unique=True, nullable=False)
    # available, loaned, lost, damaged, processing, hold_shelf, maintenance
    status = Column(String(32), nullable=False, default=COPY_AVAILABLE)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    book = relationship("Book", back_populates="copies")
    loans = relationship("Loan", back_populates="copy", order_by="Loan.id")


class Loan(Base):
    __tablename__ = "loan"
    __table_args__ = (
        # At most one active loan per copy; the storage-level guard against
        # two concurrent checkouts of the same copy.
        Index(
            "uq_loan_active_copy",
            "copy_id",
            unique=True,
            sqlite_where=text("returned_at IS NULL"),
            postgresql_where=text("returned_at IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    copy_id = Column(Integer, ForeignKey("copy.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False, index=True)
    borrower_identifier = Column(String(100), nullable=False, index=True)
    borrower_name = Column(String(255), nullable=False)
    borrower_type = Column(String(20), nullable=False, default="student")
    status = Column(String(20), nullable=False, default=LOAN_BORROWED)
    borrowed_at = Column(DateTime, nullable=False, default=utcnow)
    due_at = Column(DateTime, nullable=False)
    returned_at = Column(DateTime)

    copy = relationship("Copy", back_populates="loans")
    book = relationship("Book")


class Hold(Base):
    __tablename__ = "hold"
    __table_args__ = (
        Index(
            "uq_hold_active_patron_book",
            "patron_id",
            "book_id",
            unique=True,
            sqlite_where=text("status IN ('QUEUED', 'READY')"),
            postgresql_where=text("status IN ('QUEUED', 'READY')"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    patron_id = Column(String(100), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=HOLD_QUEUED)
    placed_at = Column(DateTime, nullable=False, default=utcnow)
    ready_at = Column(DateTime)
    expires_at = Column(DateTime)

    book = relationship("Book")


class AuditLog(Base):
    """
    Append-only trail of circulation events. Written best-effort.
    """
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False)
    entity = Column(String(50), nullable=False)
    entity_id = Column(String(100))
    actor_id = Column(String(100))
    actor_role = Column(String(50))
    source = Column(String(50))
    success = Column(Boolean, nullable=False, default=True)
    context = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=utcnow)
