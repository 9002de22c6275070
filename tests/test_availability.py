import itertools
from datetime import datetime
from types import SimpleNamespace

import pytest

from circulation_service.availability import (
    count_available,
    find_first_available,
    is_available,
    normalize_copy_status,
)

RETURNED = SimpleNamespace(returned_at=datetime(2025, 1, 2))
OPEN = SimpleNamespace(returned_at=None)


def make_copy(status="available", loans=(), barcode="X"):
    return SimpleNamespace(status=status, loans=None if loans is None else list(loans), barcode=barcode)


def test_available_copy_without_loans():
    assert is_available(make_copy()) is True


@pytest.mark.parametrize("status", ["available", " Available ", "AVAILABLE\n"])
def test_status_is_trimmed_and_lowercased(status):
    assert is_available(make_copy(status=status)) is True


@pytest.mark.parametrize("status", ["loaned", "lost", "damaged", "hold_shelf", ""])
def test_other_statuses_are_not_available(status):
    assert is_available(make_copy(status=status)) is False


def test_open_loan_overrides_available_flag():
    # The flag says available but a loan never got closed.
    assert is_available(make_copy(loans=[RETURNED, OPEN])) is False


def test_returned_loans_do_not_block():
    assert is_available(make_copy(loans=[RETURNED, RETURNED])) is True


@pytest.mark.parametrize(
    "copy",
    [
        None,
        42,
        SimpleNamespace(status="available"),
        SimpleNamespace(loans=[]),
        make_copy(status=None),
        make_copy(status=7),
        SimpleNamespace(status="available", loans=5),
        make_copy(loans=[object()]),
        {"status": "available"},
    ],
)
def test_malformed_input_is_not_available(copy):
    assert is_available(copy) is False


def test_mapping_rows_are_understood():
    row = {"status": "available", "loans": [{"returned_at": None}]}
    assert is_available(row) is False
    row["loans"][0]["returned_at"] = "2025-01-01T00:00:00"
    assert is_available(row) is True


def test_none_loans_counts_as_no_loans():
    assert is_available(make_copy(loans=None)) is True


def test_find_first_available_keeps_input_order():
    copies = [
        make_copy(status="loaned", barcode="A"),
        make_copy(loans=[OPEN], barcode="B"),
        make_copy(barcode="C"),
        make_copy(barcode="D"),
    ]
    assert find_first_available(copies).barcode == "C"
    assert find_first_available(list(reversed(copies))).barcode == "D"


def test_find_first_available_returns_none_when_nothing_lendable():
    assert find_first_available([make_copy(status="lost")]) is None
    assert find_first_available([]) is None
    assert find_first_available(None) is None


def test_count_available():
    copies = [make_copy(), make_copy(status="loaned"), make_copy(loans=[RETURNED])]
    assert count_available(copies) == 2


def test_available_implies_flag_and_all_loans_returned():
    statuses = ["available", "loaned", " AVAILABLE", "lost"]
    loan_sets = [[], [RETURNED], [OPEN], [RETURNED, OPEN]]
    for status, loans in itertools.product(statuses, loan_sets):
        copy = make_copy(status=status, loans=loans)
        if is_available(copy):
            assert copy.status.strip().lower() == "available"
            assert all(loan.returned_at is not None for loan in copy.loans)


@pytest.mark.parametrize(
    "raw, expected",
    [("ON_LOAN", "loaned"), ("Checked_Out", "loaned"), (" Lost ", "lost"), (None, None)],
)
def test_normalize_copy_status(raw, expected):
    assert normalize_copy_status(raw) == expected
