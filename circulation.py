import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import select

from errors import Conflict, InvalidState, NotFound, Unauthorized, ValidationError
from extensions import db
from models import (
    ACTIVE_REQUEST_STATUSES,
    Book,
    BookStatus,
    BorrowRequest,
    FineReason,
    RequestStatus,
    User,
    UserRole,
    UserStatus,
)
from projector import display_status, effective_status, is_overdue, quantity_breakdown, remaining_available

logger = logging.getLogger(__name__)

RETURNABLE_STATUSES = (RequestStatus.APPROVED, RequestStatus.BORROWED)
STAFF_ROLES = (UserRole.STAFF, UserRole.ADMIN, UserRole.SUPER_ADMIN)


def _positive_int(value, name):
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"{name} must be a whole number.") from None
    if number < 1:
        raise ValidationError(f"{name} must be at least 1.")
    return number


def _non_negative_int(value, name):
    try:
        number = int(value or 0)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"{name} must be a whole number.") from None
    if number < 0:
        raise ValidationError(f"{name} cannot be negative.")
    return number


def parse_datetime(value, name):
    if value is None or isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an ISO date.") from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _amount(value):
    try:
        amount = Decimal(str(value or 0))
    except InvalidOperation:
        raise ValidationError("Fine amount must be a number.") from None
    if not amount.is_finite():
        raise ValidationError("Fine amount must be a number.")
    if amount < 0:
        raise ValidationError("Fine amount cannot be negative.")
    return amount


class CirculationService:
    def __init__(self, inventory, fines, clock, tracking, loan_days=14,
                 fine_due_days=30, tracking_attempts=5):
        self.inventory = inventory
        self.fines = fines
        self.clock = clock
        self.tracking = tracking
        self.loan_days = loan_days
        self.fine_due_days = fine_due_days
        self.tracking_attempts = tracking_attempts

    # ---- lookups
    def _get_request(self, request_id):
        req = db.session.get(BorrowRequest, request_id, with_for_update=True)
        if req is None:
            raise NotFound("Request not found.")
        return req

    def _get_owned_request(self, request_id, student_id):
        req = self._get_request(request_id)
        if req.student_id != student_id:
            raise Unauthorized("You don't have permission to modify this request.")
        return req

    def _check_handler(self, req, session):
        if not session.is_admin and req.staff_id != session.user_id:
            raise Unauthorized("This request is not assigned to you.")

    def _new_tracking_number(self, now):
        for _ in range(self.tracking_attempts):
            candidate = self.tracking.tracking_number(now)
            taken = db.session.scalar(
                select(BorrowRequest.id).where(BorrowRequest.tracking_number == candidate)
            )
            if taken is None:
                return candidate
            logger.warning("tracking number collision on %s, retrying", candidate)
        raise Conflict("A request with this tracking number already exists. Please try again.")

    # ---- student actions
    def create(self, student_id, book_id, quantity):
        quantity = _positive_int(quantity, "Quantity")
        book = db.session.get(Book, _positive_int(book_id, "Book id"))
        if book is None:
            raise NotFound("Book not found.")
        if book.status not in (BookStatus.AVAILABLE, BookStatus.NOT_AVAILABLE):
            raise InvalidState("This book is not available for borrowing.")
        existing = db.session.scalar(
            select(BorrowRequest.id).where(
                BorrowRequest.student_id == student_id,
                BorrowRequest.book_id == book.id,
                BorrowRequest.status.in_(ACTIVE_REQUEST_STATUSES),
            )
        )
        if existing is not None:
            raise Conflict("You already have an active request for this book.")
        self.inventory.reserve(book, quantity)

        now = self.clock.now()
        req = BorrowRequest(
            tracking_number=self._new_tracking_number(now),
            student_id=student_id,
            book_id=book.id,
            quantity=quantity,
            status=RequestStatus.PENDING,
            request_date=now,
        )
        db.session.add(req)
        db.session.flush()
        logger.info("request %s (%s) created: student %s, book %s, qty %s",
                    req.id, req.tracking_number, student_id, book.id, quantity)
        return req

    def cancel(self, request_id, student_id):
        req = self._get_owned_request(request_id, student_id)
        if req.status != RequestStatus.PENDING:
            raise InvalidState(
                f"Cannot cancel request with status: {req.status.value}. "
                "Only pending requests can be canceled."
            )
        db.session.delete(req)
        logger.info("request %s (%s) canceled", req.id, req.tracking_number)
        return req

    def return_request(self, request_id, student_id):
        req = self._get_owned_request(request_id, student_id)
        if req.status not in RETURNABLE_STATUSES:
            raise InvalidState(
                f"Cannot return book with status: {req.status.value}. "
                "Only approved or borrowed books can be returned."
            )
        req.status = RequestStatus.UNDER_REVIEW
        req.return_date = self.clock.now()
        logger.info("request %s (%s) returned, awaiting verification", req.id, req.tracking_number)
        return req

    # ---- staff / admin actions
    def approve(self, request_id, staff_id, due_date=None):
        req = self._get_request(request_id)
        if req.status != RequestStatus.PENDING:
            raise InvalidState(
                f"Cannot approve request with status: {req.status.value}. "
                "Only pending requests can be approved."
            )
        if staff_id is None:
            raise ValidationError("A staff member must be assigned.")
        staff = db.session.get(User, _positive_int(staff_id, "Staff id"))
        if staff is None or staff.role not in STAFF_ROLES:
            raise NotFound("Staff member not found.")
        if staff.status != UserStatus.ACTIVE:
            raise ValidationError("Selected staff member is not active.")
        now = self.clock.now()
        due_date = parse_datetime(due_date, "Due date") or now + timedelta(days=self.loan_days)
        if due_date <= now:
            raise ValidationError("Due date must be in the future.")

        self.inventory.commit(req.book, req.quantity)
        req.status = RequestStatus.APPROVED
        req.staff_id = staff.id
        req.approved_date = now
        req.due_date = due_date
        logger.info("request %s (%s) approved, assigned to staff %s, due %s",
                    req.id, req.tracking_number, staff.id, due_date.date())
        return req

    def reject(self, request_id, session):
        req = self._get_request(request_id)
        if req.status != RequestStatus.PENDING:
            raise InvalidState(
                f"Cannot reject request with status: {req.status.value}. "
                "Only pending requests can be rejected."
            )
        req.status = RequestStatus.REJECTED
        if req.staff_id is None:
            req.staff_id = session.user_id
        logger.info("request %s (%s) rejected by %s", req.id, req.tracking_number, session.user_id)
        return req

    def mark_borrowed(self, request_id, session):
        req = self._get_request(request_id)
        self._check_handler(req, session)
        if req.status != RequestStatus.APPROVED:
            raise InvalidState(
                f"Cannot hand over a request with status: {req.status.value}. "
                "Only approved requests can be marked as borrowed."
            )
        req.status = RequestStatus.BORROWED
        req.borrow_date = self.clock.now()
        logger.info("request %s (%s) picked up", req.id, req.tracking_number)
        return req

    def receive(self, request_id, session, damaged=0, lost=0, received=0,
                description=None, fine_amount=0, fine_due_date=None):
        """Verify a returned request and settle its copies.

        Received copies go back on the shelf; damaged and lost copies each get
        one fine, with ``fine_amount`` split between them by quantity.
        """
        req = self._get_request(request_id)
        self._check_handler(req, session)
        if req.status != RequestStatus.UNDER_REVIEW:
            raise InvalidState("Request not found or not available for verification.")
        damaged = _non_negative_int(damaged, "Damaged quantity")
        lost = _non_negative_int(lost, "Lost quantity")
        received = _non_negative_int(received, "Received quantity")
        if damaged + lost + received != req.quantity:
            raise ValidationError(
                f"Quantities don't match. Total: {req.quantity}, Damaged: {damaged}, "
                f"Lost: {lost}, Received: {received}"
            )
        now = self.clock.now()
        amount = _amount(fine_amount)
        fined = damaged + lost
        if fined:
            due = parse_datetime(fine_due_date, "Fine due date") or now + timedelta(days=self.fine_due_days)
            damaged_share = (amount * damaged / fined).quantize(Decimal("0.01"))
            if damaged:
                self.fines.record_outcome(req, FineReason.DAMAGED, damaged, description,
                                          damaged_share, due, session.user_id)
            if lost:
                self.fines.record_outcome(req, FineReason.LOST, lost, description,
                                          amount - damaged_share, due, session.user_id)

        book = req.book
        if received:
            self.inventory.release(book, received)
        elif lost and not damaged:
            book.status = BookStatus.LOST
        elif damaged and not lost:
            book.status = BookStatus.DAMAGED

        req.status = RequestStatus.RECEIVED if received else RequestStatus.RETURNED
        logger.info("request %s (%s) verified: received %s, damaged %s, lost %s",
                    req.id, req.tracking_number, received, damaged, lost)
        return req

    # ---- reads
    def books_for_student(self, student_id):
        pending = self.inventory.pending_by_book()
        active = {
            r.book_id: r.status
            for r in db.session.scalars(
                select(BorrowRequest).where(
                    BorrowRequest.student_id == student_id,
                    BorrowRequest.status.in_(ACTIVE_REQUEST_STATUSES),
                )
            )
        }
        books = db.session.scalars(select(Book).order_by(Book.title)).all()
        listing = []
        for book in books:
            remaining = max(0, book.available_copies - pending.get(book.id, 0))
            if remaining <= 0 and book.status != BookStatus.AVAILABLE:
                continue
            item = book.to_dict()
            item["remaining_available_copies"] = remaining
            item["has_active_request"] = book.id in active
            item["student_request_status"] = active[book.id].value if book.id in active else None
            listing.append(item)
        return listing

    def remaining_for_book(self, book):
        pending = db.session.scalars(
            select(BorrowRequest).where(
                BorrowRequest.book_id == book.id,
                BorrowRequest.status == RequestStatus.PENDING,
            )
        ).all()
        return remaining_available(book, pending)

    def student_requests(self, student_id):
        return self._requests(BorrowRequest.student_id == student_id)

    def assigned_requests(self, staff_id):
        return self._requests(BorrowRequest.staff_id == staff_id)

    def all_requests(self):
        return self._requests()

    def book_borrowers(self, book_id):
        if db.session.get(Book, book_id) is None:
            raise NotFound("Book not found.")
        return self._requests(
            BorrowRequest.book_id == book_id,
            BorrowRequest.status.in_(RETURNABLE_STATUSES + (RequestStatus.UNDER_REVIEW,)),
        )

    def requests_with_fines(self):
        return self._requests(BorrowRequest.fines.any())

    def overdue_requests(self):
        now = self.clock.now()
        return [r for r in self._requests(BorrowRequest.status.in_(RETURNABLE_STATUSES))
                if is_overdue(r, now)]

    def active_staff(self):
        return db.session.scalars(
            select(User)
            .where(User.role.in_(STAFF_ROLES), User.status == UserStatus.ACTIVE)
            .order_by(User.full_name)
        ).all()

    def _requests(self, *criteria):
        stmt = select(BorrowRequest).order_by(BorrowRequest.created_at.desc(), BorrowRequest.id.desc())
        if criteria:
            stmt = stmt.where(*criteria)
        return db.session.scalars(stmt).all()

    def request_to_dict(self, req):
        now = self.clock.now()
        fines = list(req.fines)
        return {
            "id": req.id,
            "tracking_number": req.tracking_number,
            "student_id": req.student_id,
            "staff_id": req.staff_id,
            "staff_receiver": req.staff.full_name if req.staff else None,
            "book_id": req.book_id,
            "book_title": req.book.title if req.book else None,
            "quantity": req.quantity,
            "status": req.status.value,
            "effective_status": effective_status(req, now).value,
            "display_status": display_status(req, fines, now),
            "quantities": quantity_breakdown(req, fines),
            "has_fine": bool(fines),
            "request_date": _iso(req.request_date),
            "approved_date": _iso(req.approved_date),
            "borrow_date": _iso(req.borrow_date),
            "due_date": _iso(req.due_date),
            "return_date": _iso(req.return_date),
        }


def _iso(value):
    return value.isoformat() if value else None
