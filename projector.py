from fines import fine_quantity
from models import FineReason, FineStatus, RequestStatus

OVERDUE_CANDIDATES = (RequestStatus.APPROVED, RequestStatus.BORROWED)


def _value(v):
    return getattr(v, "value", v)


def remaining_available(book, pending_requests):
    pending = sum(r.quantity or 1 for r in pending_requests
                  if r.status == RequestStatus.PENDING)
    return max(0, (book.available_copies or 0) - pending)


def is_overdue(request, now):
    return (request.status in OVERDUE_CANDIDATES
            and request.due_date is not None
            and now > request.due_date)


def effective_status(request, now=None):
    if now is not None and is_overdue(request, now):
        return RequestStatus.OVERDUE
    return request.status


def quantity_breakdown(request, fines):
    total = request.quantity or 1
    damaged = sum(fine_quantity(f) for f in fines if f.reason == FineReason.DAMAGED)
    lost = sum(fine_quantity(f) for f in fines if f.reason == FineReason.LOST)
    settled = sum(fine_quantity(f) for f in fines if f.status == FineStatus.PAID)
    return {
        "borrowed": total,
        "damaged": damaged,
        "lost": lost,
        "settled": settled,
        "received": max(0, total - damaged - lost),
    }


def display_status(request, fines, now=None):
    """Single label for a request, by strict priority.

    Paid fines win, then any other fine (the most recently recorded one when
    several are open), then the received count, then the raw status.
    """
    paid = [f for f in fines if f.status == FineStatus.PAID]
    if paid:
        return f"Settled({sum(fine_quantity(f) for f in paid)})"
    open_fines = [f for f in fines if f.status != FineStatus.PAID]
    if open_fines:
        return _value(open_fines[-1].reason)
    if request.status == RequestStatus.RECEIVED:
        received = max(0, (request.quantity or 1) - sum(fine_quantity(f) for f in fines))
        return f"Received({received})"
    return _value(effective_status(request, now)).replace("_", " ")


def book_notifications(requests, now):
    """Notifications a student would see for their borrow requests."""
    notes = []
    for req in requests:
        title = req.book.title if getattr(req, "book", None) else "your book"
        ref = req.tracking_number
        if req.status in OVERDUE_CANDIDATES:
            if is_overdue(req, now):
                notes.append(_note(req, "overdue", "Book Overdue",
                                   f'"{title}" ({ref}) was due on {req.due_date:%Y-%m-%d}. Please return it.',
                                   RequestStatus.OVERDUE, req.due_date))
            else:
                due = f" Due on {req.due_date:%Y-%m-%d}." if req.due_date else ""
                notes.append(_note(req, "approved", "Book Request Approved",
                                   f'Your request for "{title}" ({ref}) was approved.{due}',
                                   req.status, req.approved_date))
        elif req.status == RequestStatus.REJECTED:
            notes.append(_note(req, "rejected", "Book Request Rejected",
                               f'Your request for "{title}" ({ref}) was rejected.',
                               req.status, req.updated_at))
        elif req.status in (RequestStatus.RECEIVED, RequestStatus.RETURNED):
            notes.append(_note(req, "verified", "Book Return Verified",
                               f'Your return of "{title}" ({ref}) was verified: {display_status(req, req.fines)}.',
                               req.status, req.updated_at))
        for fine in req.fines:
            if fine.status == FineStatus.PAID:
                notes.append(_note(req, f"fine-{fine.id}-paid", "Fine Settled",
                                   f'Your {_value(fine.reason).lower()} fine for "{title}" has been settled.',
                                   fine.status, fine.paid_date))
            else:
                notes.append(_note(req, f"fine-{fine.id}", "Fine Issued",
                                   f'A {_value(fine.reason).lower()} fine of {fine.fine_amount} was issued for '
                                   f'"{title}" ({fine_quantity(fine)} copy/copies).',
                                   fine.status, fine.created_at))
    notes.sort(key=lambda n: n["created_at"] or "", reverse=True)
    return notes


def _note(req, kind, title, message, status, when):
    return {
        "id": f"book-{req.id}-{kind}",
        "type": "book",
        "title": title,
        "message": message,
        "status": _value(status),
        "created_at": when.isoformat() if when else None,
        "related_id": req.id,
    }
