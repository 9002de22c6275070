from datetime import datetime

import pytest

from circulation_service.errors import (
    ConstraintViolation,
    DuplicateHoldError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from circulation_service.holds import can_transition
from circulation_service.models import Hold


def active_holds(storage, patron_id, book_id):
    return [h for h in storage.list_holds_for_patron(patron_id) if h.book_id == book_id]


def test_place_hold_queues_it(holds, audit, make_book, staff):
    book = make_book()
    now = datetime(2025, 5, 1, 8, 0)

    hold = holds.place_hold("P1", book.id, actor=staff, now=now)

    assert hold.status == "QUEUED"
    assert hold.placed_at == now
    assert hold.ready_at is None
    assert audit.event_types == ["PLACE_HOLD"]


def test_second_hold_for_same_pair_is_duplicate(storage, holds, make_book):
    book = make_book()
    holds.place_hold("P1", book.id)

    with pytest.raises(DuplicateHoldError):
        holds.place_hold("P1", str(book.id))

    assert len(active_holds(storage, "P1", book.id)) == 1


def test_ready_hold_also_blocks_a_new_one(storage, holds, make_book):
    book = make_book()
    hold = holds.place_hold("P1", book.id)
    storage.update(hold, status="READY")

    with pytest.raises(DuplicateHoldError):
        holds.place_hold("P1", book.id)


def test_storage_constraint_is_the_final_guard(storage, holds, make_book, monkeypatch):
    book = make_book()
    holds.place_hold("P1", book.id)

    # Simulate a concurrent request whose lookup ran before the first insert.
    monkeypatch.setattr(storage, "find_active_hold", lambda patron_id, book_id: None)

    with pytest.raises(DuplicateHoldError):
        holds.place_hold("P1", book.id)

    assert len(active_holds(storage, "P1", book.id)) == 1


def test_other_patrons_and_titles_are_independent(holds, make_book):
    first = make_book("Clean Code", barcodes=["CC-001"])
    second = make_book("Refactoring", barcodes=["RF-001"])

    holds.place_hold("P1", first.id)
    holds.place_hold("P2", first.id)
    holds.place_hold("P1", second.id)

    assert [h.book_id for h in holds.queue_for_book(first.id)] == [first.id, first.id]
    assert len(holds.list_holds("P1")) == 2


def test_hold_can_be_placed_again_after_cancel(holds, make_book):
    book = make_book()
    first = holds.place_hold("P1", book.id)
    holds.cancel_hold(first.id, "P1")

    second = holds.place_hold("P1", book.id)

    assert second.id != first.id
    assert second.status == "QUEUED"


def test_place_hold_validation(holds, make_book):
    book = make_book()
    with pytest.raises(ValidationError):
        holds.place_hold("", book.id)
    with pytest.raises(ValidationError):
        holds.place_hold("P1", None)
    with pytest.raises(NotFoundError):
        holds.place_hold("P1", 999)


def test_cancel_queued_hold(storage, holds, audit, make_book):
    book = make_book()
    hold = holds.place_hold("P1", book.id)

    canceled = holds.cancel_hold(hold.id, "P1")

    assert canceled.status == "CANCELED"
    assert storage.get_hold(hold.id).status == "CANCELED"
    assert audit.event_types == ["PLACE_HOLD", "CANCEL_HOLD"]


def test_cancel_ready_hold(storage, holds, make_book):
    hold = holds.place_hold("P1", make_book().id)
    storage.update(hold, status="READY", ready_at=datetime(2025, 5, 2))

    assert holds.cancel_hold(hold.id, "P1").status == "CANCELED"


@pytest.mark.parametrize("terminal", ["FULFILLED", "EXPIRED", "CANCELED"])
def test_cancel_terminal_hold_is_rejected(storage, holds, make_book, terminal):
    hold = holds.place_hold("P1", make_book().id)
    storage.update(hold, status=terminal)

    with pytest.raises(InvalidStateError):
        holds.cancel_hold(hold.id, "P1")

    assert storage.get_hold(hold.id).status == terminal


def test_cancel_someone_elses_hold(storage, holds, make_book):
    hold = holds.place_hold("P1", make_book().id)

    with pytest.raises(ForbiddenError):
        holds.cancel_hold(hold.id, "P2")

    assert storage.get_hold(hold.id).status == "QUEUED"


def test_cancel_missing_hold(holds):
    with pytest.raises(NotFoundError):
        holds.cancel_hold(404, "P1")


def test_list_holds_newest_first_and_history(storage, holds, make_book):
    a = make_book("A", barcodes=["A-1"])
    b = make_book("B", barcodes=["B-1"])
    c = make_book("C", barcodes=["C-1"])
    old = holds.place_hold("P1", a.id, now=datetime(2025, 1, 1))
    new = holds.place_hold("P1", b.id, now=datetime(2025, 3, 1))
    done = holds.place_hold("P1", c.id, now=datetime(2025, 2, 1))
    storage.update(done, status="FULFILLED")

    assert [h.id for h in holds.list_holds("P1")] == [new.id, old.id]
    assert [h.id for h in holds.list_holds("P1", include_history=True)] == [new.id, done.id, old.id]


def test_queue_for_book_is_first_come_first_served(storage, holds, make_book):
    book = make_book()
    late = holds.place_hold("P3", book.id, now=datetime(2025, 1, 3))
    early = holds.place_hold("P1", book.id, now=datetime(2025, 1, 1))
    middle = holds.place_hold("P2", book.id, now=datetime(2025, 1, 2))
    holds.cancel_hold(middle.id, "P2")

    queue = holds.queue_for_book(book.id)

    assert [h.id for h in queue] == [early.id, late.id]
    assert holds.queue_position(late) == 2
    assert holds.queue_position(storage.get_hold(middle.id)) is None


@pytest.mark.parametrize(
    "current, target, allowed",
    [
        ("QUEUED", "READY", True),
        ("QUEUED", "CANCELED", True),
        ("READY", "FULFILLED", True),
        ("READY", "EXPIRED", True),
        ("queued", "canceled", True),
        ("QUEUED", "FULFILLED", False),
        ("FULFILLED", "CANCELED", False),
        ("EXPIRED", "READY", False),
        ("CANCELED", "QUEUED", False),
        (None, "CANCELED", False),
    ],
)
def test_hold_state_machine(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_storage_rejects_two_active_holds(storage, make_book):
    book = make_book()
    storage.add(Hold(patron_id="P1", book_id=book.id, status="QUEUED"))
    storage.add(Hold(patron_id="P1", book_id=book.id, status="CANCELED"))
    with pytest.raises(ConstraintViolation):
        storage.add(Hold(patron_id="P1", book_id=book.id, status="READY"))
