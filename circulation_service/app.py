import os
import logging
from contextlib import contextmanager
from functools import wraps

from flask import Blueprint, Flask, abort, current_app, jsonify, request
from flask_cors import CORS
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .actions import CirculationActions, patron_for
from .audit import Actor, AuditSink
from .availability import count_available, is_available
from .config import Config
from .dashboard import active_loans, recent_loans, summarize
from .errors import CirculationError, StorageError
from .models import Base
from .storage import Storage
from .validation import parse_bool

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")

HTTP_STATUS_BY_KIND = {
    "ValidationError": 400,
    "ForbiddenError": 403,
    "NotFoundError": 404,
    "ConflictError": 409,
    "DuplicateHoldError": 409,
    "AlreadyReturnedError": 409,
    "InvalidStateError": 409,
    "StorageError": 503,
    "ConstraintViolation": 503,
}


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)
    logging.basicConfig(level=app.config.get("LOG_LEVEL", "INFO"))
    CORS(app)

    # SQLAlchemy setup
    engine = create_engine(
        app.config["SQLALCHEMY_DATABASE_URI"],
        echo=app.config.get("SQLALCHEMY_ECHO", False),
        future=True,
    )
    app.extensions["circulation_sessions"] = sessionmaker(
        bind=engine, autoflush=False, autocommit=False
    )

    # Create tables (and the partial unique indexes guarding loans and holds)
    Base.metadata.create_all(engine)

    app.register_blueprint(api)

    @app.errorhandler(401)
    @app.errorhandler(404)
    @app.errorhandler(405)
    def http_error(e):
        return jsonify({"status": "error", "message": e.description}), e.code

    return app


# ----------------- helpers: API key, sessions, actor -----------------

def require_api_key(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("SERVICE_API_KEY")
        sent = request.headers.get("X-API-Key")
        if not expected or sent != expected:
            logger.warning("Invalid API key on %s", request.path)
            abort(401, description="Invalid or missing service API key")
        return func(*args, **kwargs)

    return wrapper


@contextmanager
def open_storage():
    session = current_app.extensions["circulation_sessions"]()
    try:
        yield Storage(session)
    finally:
        session.close()


@contextmanager
def open_actions():
    with open_storage() as storage:
        audit = AuditSink(storage, source=current_app.config.get("AUDIT_SOURCE", "api"))
        yield CirculationActions(storage, audit)


def current_actor():
    """The caller is resolved upstream; we only read what the gateway forwards."""
    return Actor(
        id=request.headers.get("X-Actor-Id") or None,
        role=request.headers.get("X-Actor-Role") or "patron",
    )


def respond(result, created=False):
    if result.ok:
        return jsonify(result.to_dict()), 201 if created else 200
    return jsonify(result.to_dict()), HTTP_STATUS_BY_KIND.get(result.kind, 500)


def _iso(value):
    return value.isoformat() if value else None


def book_to_dict(book):
    copies = list(book.copies)
    return {
        "id": book.id,
        "title": book.title,
        "author": book.author,
        "isbn": book.isbn,
        "classification": book.classification,
        "location": book.location,
        "publisher": book.publisher,
        "year": book.year,
        "tags": book.tags or [],
        "cover_image_url": book.cover_image_url,
        "last_transaction_at": _iso(book.last_transaction_at),
        "total_copies": len(copies),
        "available_copies": count_available(copies),
        "copies": [copy_to_dict(c) for c in copies],
    }


def copy_to_dict(copy):
    return {
        "id": copy.id,
        "book_id": copy.book_id,
        "barcode": copy.barcode,
        "status": copy.status,
        "available": is_available(copy),
    }


def loan_to_dict(loan):
    return {
        "id": loan.id,
        "book_id": loan.book_id,
        "copy_id": loan.copy_id,
        "title": loan.book.title if loan.book else None,
        "barcode": loan.copy.barcode if loan.copy else None,
        "borrower_identifier": loan.borrower_identifier,
        "borrower_name": loan.borrower_name,
        "borrower_type": loan.borrower_type,
        "status": loan.status,
        "borrowed_at": _iso(loan.borrowed_at),
        "due_at": _iso(loan.due_at),
        "returned_at": _iso(loan.returned_at),
    }


def hold_to_dict(hold, position=None):
    data = {
        "id": hold.id,
        "patron_id": hold.patron_id,
        "book_id": hold.book_id,
        "status": hold.status,
        "placed_at": _iso(hold.placed_at),
        "ready_at": _iso(hold.ready_at),
        "expires_at": _iso(hold.expires_at),
    }
    if hold.book is not None:
        data["book"] = {
            "title": hold.book.title,
            "author": hold.book.author,
            "isbn": hold.book.isbn,
        }
    if position is not None:
        data["position"] = position
    return data


def audit_to_dict(entry):
    return {
        "id": entry.id,
        "event_type": entry.event_type,
        "entity": entry.entity,
        "entity_id": entry.entity_id,
        "actor_id": entry.actor_id,
        "actor_role": entry.actor_role,
        "source": entry.source,
        "success": entry.success,
        "context": entry.context,
        "created_at": _iso(entry.created_at),
    }


@api.errorhandler(CirculationError)
def circulation_error(e):
    # Reads raise straight from the managers; mutations never get here.
    if isinstance(e, StorageError):
        logger.exception("Storage failure on %s: %s", request.path, e)
    status = HTTP_STATUS_BY_KIND.get(type(e).__name__, 500)
    return jsonify({"status": "error", "message": e.message}), status


# ----------------- health -----------------

@api.get("/health")
def health():
    return jsonify({"status": "ok", "service": "circulation_service"})


# ----------------- dashboard -----------------

@api.get("/dashboard/summary")
def dashboard_summary():
    with open_storage() as storage:
        return jsonify(summarize(storage).to_dict())


@api.get("/loans/recent")
def list_recent_loans():
    limit = request.args.get("limit", type=int) or current_app.config.get("RECENT_LOANS_LIMIT", 6)
    with open_storage() as storage:
        return jsonify([loan_to_dict(loan) for loan in recent_loans(storage, limit)])


@api.get("/loans/active")
def list_active_loans():
    with open_storage() as storage:
        loans = active_loans(storage, request.args.get("q"))
        return jsonify([loan_to_dict(loan) for loan in loans])


# ----------------- loan endpoints -----------------

@api.post("/loans/checkout")
@require_api_key
def checkout():
    data = request.get_json(force=True, silent=True) or {}
    with open_actions() as actions:
        return respond(actions.checkout_book(data, actor=current_actor()), created=True)


@api.post("/loans/checkin")
@require_api_key
def checkin():
    data = request.get_json(force=True, silent=True) or {}
    with open_actions() as actions:
        return respond(actions.checkin_book(data, actor=current_actor()))


@api.post("/loans/overdue")
@require_api_key
def mark_overdue():
    with open_actions() as actions:
        return respond(actions.mark_overdue(actor=current_actor()))


# ----------------- book endpoints -----------------

@api.post("/books")
@require_api_key
def create_book():
    data = request.get_json(force=True, silent=True) or {}
    with open_actions() as actions:
        return respond(actions.create_book(data, actor=current_actor()), created=True)


@api.get("/books/lookup")
def lookup_book():
    """
    Scanner lookup: barcode or ISBN -> title plus a copy that can go out now.
    """
    with open_actions() as actions:
        book, copy = actions.catalog.lookup_available(request.args.get("code"))
        return jsonify({"book": book_to_dict(book), "copy": copy_to_dict(copy)})


@api.get("/books/<int:book_id>")
def get_book(book_id):
    with open_actions() as actions:
        return jsonify(book_to_dict(actions.catalog.get_book(book_id)))


@api.delete("/books/<int:book_id>")
@require_api_key
def delete_book(book_id):
    with open_actions() as actions:
        return respond(actions.delete_book(book_id, actor=current_actor()))


@api.get("/books/<int:book_id>/holds")
def book_hold_queue(book_id):
    with open_actions() as actions:
        queue = actions.holds.queue_for_book(book_id)
        return jsonify(
            [hold_to_dict(h, position=i) for i, h in enumerate(queue, start=1)]
        )


# ----------------- hold endpoints -----------------

@api.get("/holds")
def list_holds():
    patron_id = patron_for(request.args, current_actor())
    include_history = parse_bool(request.args.get("history"))
    with open_actions() as actions:
        holds = actions.holds.list_holds(patron_id, include_history=include_history)
        return jsonify({"holds": [hold_to_dict(h) for h in holds]})


@api.post("/holds")
def place_hold():
    data = request.get_json(force=True, silent=True) or {}
    with open_actions() as actions:
        return respond(actions.place_hold(data, actor=current_actor()), created=True)


@api.post("/holds/<int:hold_id>/cancel")
def cancel_hold(hold_id):
    data = request.get_json(force=True, silent=True) or {}
    with open_actions() as actions:
        return respond(actions.cancel_hold(hold_id, data, actor=current_actor()))


# ----------------- audit -----------------

@api.get("/audit")
@require_api_key
def list_audit():
    """
    Librarian endpoint – newest audit entries, optionally one event type.
    """
    limit = request.args.get("limit", default=100, type=int)
    with open_storage() as storage:
        entries = storage.list_audit_entries(
            event_type=request.args.get("event_type"),
            limit=min(max(1, limit), 500),
        )
        return jsonify([audit_to_dict(e) for e in entries])


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5001"))
    create_app().run(host="0.0.0.0", port=port, debug=True)
