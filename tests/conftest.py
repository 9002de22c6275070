import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from circulation_service.app import create_app
from circulation_service.audit import Actor
from circulation_service.catalog import Catalog
from circulation_service.config import Config
from circulation_service.holds import HoldManager
from circulation_service.loans import LoanManager
from circulation_service.models import Base, Book, Copy
from circulation_service.storage import Storage


class RecordingAudit:
    """Audit sink double that keeps events in memory."""

    def __init__(self):
        self.events = []

    def record(self, event_type, entity, entity_id, actor, context=None, success=True):
        self.events.append(
            {
                "event_type": event_type,
                "entity": entity,
                "entity_id": entity_id,
                "actor": actor,
                "context": context,
                "success": success,
            }
        )

    @property
    def event_types(self):
        return [e["event_type"] for e in self.events]


@pytest.fixture
def session(tmp_path):
    # Each test gets its own database file
    engine = create_engine(f"sqlite:///{tmp_path / 'circulation.db'}", future=True)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = SessionLocal()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def storage(session):
    return Storage(session)


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def loans(storage, audit):
    return LoanManager(storage, audit)


@pytest.fixture
def holds(storage, audit):
    return HoldManager(storage, audit)


@pytest.fixture
def catalog(storage, audit):
    return Catalog(storage, audit)


@pytest.fixture
def staff():
    return Actor(id="staff-1", role="librarian")


@pytest.fixture
def make_book(storage):
    def _make(title="Clean Code", barcodes=("CC-001",), statuses=None, isbn=None):
        book = storage.add(Book(title=title, isbn=isbn))
        statuses = statuses or ["available"] * len(barcodes)
        storage.add_all(
            [
                Copy(book_id=book.id, barcode=barcode, status=status)
                for barcode, status in zip(barcodes, statuses)
            ]
        )
        return book

    return _make


@pytest.fixture
def app(tmp_path):
    class ApiTestConfig(Config):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'api.db'}"
        SERVICE_API_KEY = "test-key"
        TESTING = True

    return create_app(ApiTestConfig)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def staff_headers():
    return {"X-API-Key": "test-key", "X-Actor-Id": "staff-1", "X-Actor-Role": "librarian"}
