import pytest

from errors import InsufficientCopies, ValidationError
from extensions import db
from inventory import InventoryLedger
from models import Book, BookStatus, BorrowRequest, RequestStatus


@pytest.fixture
def ledger():
    return InventoryLedger()


def _pending(student, book, qty, number):
    req = BorrowRequest(
        tracking_number=number,
        student_id=student.user_id,
        book_id=book.id,
        quantity=qty,
        status=RequestStatus.PENDING,
    )
    db.session.add(req)
    db.session.commit()
    return req


def test_commit_decrements_and_marks_not_available(ctx, ledger, make_book):
    book = make_book(total=2)

    assert ledger.commit(book, 1) == 1
    assert book.status == BookStatus.AVAILABLE
    assert ledger.commit(book, 1) == 0
    assert book.status == BookStatus.NOT_AVAILABLE


def test_commit_keeps_condition_status(ctx, ledger, make_book):
    book = make_book(total=1, status=BookStatus.DAMAGED)

    ledger.commit(book, 1)

    assert book.available_copies == 0
    assert book.status == BookStatus.DAMAGED


def test_commit_refuses_more_than_available(ctx, ledger, make_book):
    book = make_book(total=3, available=1)

    with pytest.raises(InsufficientCopies):
        ledger.commit(book, 2)
    db.session.rollback()

    assert db.session.get(Book, book.id).available_copies == 1


def test_commit_needs_a_positive_quantity(ctx, ledger, make_book):
    book = make_book()
    with pytest.raises(ValidationError):
        ledger.commit(book, 0)


def test_release_is_capped_at_total(ctx, ledger, make_book):
    book = make_book(total=3, available=0, status=BookStatus.NOT_AVAILABLE)

    assert ledger.release(book, 2) == 2
    assert book.status == BookStatus.AVAILABLE
    assert ledger.release(book, 5) == 3


def test_release_zero_is_a_no_op(ctx, ledger, make_book):
    book = make_book(total=2, available=1)
    assert ledger.release(book, 0) == 1


def test_pending_reserved_sums_pending_only(ctx, ledger, people, make_book):
    book = make_book(total=5)
    _pending(people["alice"], book, 2, "BR-T-1")
    _pending(people["bob"], book, 1, "BR-T-2")
    approved = _pending(people["alice"], make_book(), 1, "BR-T-3")
    approved.status = RequestStatus.APPROVED
    db.session.commit()

    assert ledger.pending_reserved(book.id) == 3
    assert ledger.pending_by_book() == {book.id: 3}


def test_reserve_reports_remaining(ctx, ledger, people, make_book):
    book = make_book(total=3)
    _pending(people["alice"], book, 2, "BR-T-1")

    assert ledger.reserve(book, 1) == 1
    with pytest.raises(InsufficientCopies, match="up to 1 copy"):
        ledger.reserve(book, 2)


def test_reserve_with_nothing_left(ctx, ledger, make_book):
    book = make_book(total=1, available=0)
    with pytest.raises(InsufficientCopies, match="No copies available"):
        ledger.reserve(book, 1)
