from datetime import datetime, timedelta
from types import SimpleNamespace

from models import FineReason, FineStatus, RequestStatus
from projector import (book_notifications, display_status, effective_status, quantity_breakdown,
                       remaining_available)

NOW = datetime(2025, 3, 10, 12, 0)


def req(status, quantity=1, due_date=None, fines=(), **kw):
    defaults = dict(id=1, tracking_number="BR-1", book=SimpleNamespace(title="Dune"),
                    approved_date=None, updated_at=NOW - timedelta(hours=1))
    defaults.update(kw)
    return SimpleNamespace(status=status, quantity=quantity, due_date=due_date,
                           fines=list(fines), **defaults)


def fine(reason, status=FineStatus.UNPAID, qty=1, fid=1, created_at=NOW, paid_date=None):
    return SimpleNamespace(id=fid, reason=reason, status=status, affected_quantity=None,
                           description=f"{reason.value} books (Quantity: {qty})",
                           fine_amount="5.00", created_at=created_at, paid_date=paid_date)


def test_paid_fines_take_priority():
    fines = [fine(FineReason.DAMAGED, FineStatus.PAID, 2), fine(FineReason.LOST, qty=1)]
    assert display_status(req(RequestStatus.RECEIVED, 3), fines) == "Settled(2)"


def test_open_fine_shows_its_reason():
    r = req(RequestStatus.RECEIVED, 3)
    assert display_status(r, [fine(FineReason.LOST)]) == "Lost"
    assert display_status(r, [fine(FineReason.LOST), fine(FineReason.DAMAGED)]) == "Damaged"


def test_waived_fine_still_counts_as_open():
    assert display_status(req(RequestStatus.RETURNED), [fine(FineReason.LOST, FineStatus.WAIVED)]) == "Lost"


def test_received_count():
    assert display_status(req(RequestStatus.RECEIVED, 2), []) == "Received(2)"


def test_raw_status_uses_spaces():
    assert display_status(req(RequestStatus.UNDER_REVIEW), []) == "Under Review"
    assert display_status(req(RequestStatus.PENDING), []) == "Pending"


def test_overdue_is_derived():
    late = req(RequestStatus.BORROWED, due_date=NOW - timedelta(days=1))
    on_time = req(RequestStatus.APPROVED, due_date=NOW + timedelta(days=1))
    returned = req(RequestStatus.UNDER_REVIEW, due_date=NOW - timedelta(days=1))

    assert effective_status(late, NOW) == RequestStatus.OVERDUE
    assert display_status(late, [], NOW) == "Overdue"
    assert effective_status(on_time, NOW) == RequestStatus.APPROVED
    assert effective_status(returned, NOW) == RequestStatus.UNDER_REVIEW
    assert effective_status(late) == RequestStatus.BORROWED


def test_remaining_available_never_negative():
    book = SimpleNamespace(available_copies=2)
    pending = [req(RequestStatus.PENDING, 2), req(RequestStatus.PENDING, 1),
               req(RequestStatus.APPROVED, 5)]

    assert remaining_available(book, pending) == 0
    assert remaining_available(book, pending[1:]) == 1


def test_quantity_breakdown():
    fines = [fine(FineReason.DAMAGED, FineStatus.PAID, 1), fine(FineReason.LOST, qty=2)]

    counts = quantity_breakdown(req(RequestStatus.RECEIVED, 5), fines)

    assert counts == {"borrowed": 5, "damaged": 1, "lost": 2, "settled": 1, "received": 2}


def test_notifications_newest_first():
    approved = req(RequestStatus.APPROVED, id=1, due_date=NOW + timedelta(days=3),
                   approved_date=NOW - timedelta(days=2))
    overdue = req(RequestStatus.BORROWED, id=2, due_date=NOW - timedelta(days=1))
    fined = req(RequestStatus.RETURNED, id=3, updated_at=NOW - timedelta(days=5),
                fines=[fine(FineReason.LOST, fid=9, created_at=NOW - timedelta(days=4))])

    notes = book_notifications([approved, overdue, fined], NOW)

    assert [n["id"] for n in notes] == [
        "book-2-overdue", "book-1-approved", "book-3-fine-9", "book-3-verified"]
    assert notes[0]["status"] == "Overdue"
    assert "Due on" in notes[1]["message"]
    assert "1 copy/copies" in notes[2]["message"]


def test_settled_fine_notification():
    paid = fine(FineReason.DAMAGED, FineStatus.PAID, fid=4, paid_date=NOW)
    notes = book_notifications([req(RequestStatus.RECEIVED, 2, fines=[paid])], NOW)

    assert {n["id"] for n in notes} == {"book-1-verified", "book-1-fine-4-paid"}
    assert any("Settled(1)" in n["message"] for n in notes)
