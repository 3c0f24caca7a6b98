import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from catalog import CatalogService
from circulation import CirculationService
from clock import SystemClock
from errors import Conflict, InfrastructureError, LibraryError, result
from extensions import atomic
from fines import FineLedger, fine_to_dict
from inventory import InventoryLedger
from projector import book_notifications, quantity_breakdown
from tracking import TrackingNumberGenerator

logger = logging.getLogger(__name__)


class LibraryServices:
    def __init__(self, clock=None, tracking=None, loan_days=14, fine_due_days=30,
                 tracking_attempts=5):
        self.clock = clock or SystemClock()
        self.inventory = InventoryLedger()
        self.fines = FineLedger(self.clock)
        self.catalog = CatalogService()
        self.circulation = CirculationService(
            self.inventory,
            self.fines,
            self.clock,
            tracking or TrackingNumberGenerator(),
            loan_days=loan_days,
            fine_due_days=fine_due_days,
            tracking_attempts=tracking_attempts,
        )

    @classmethod
    def from_config(cls, config, clock=None, tracking=None):
        return cls(
            clock=clock,
            tracking=tracking,
            loan_days=config.get("DEFAULT_LOAN_DAYS", 14),
            fine_due_days=config.get("FINE_DUE_DAYS", 30),
            tracking_attempts=config.get("TRACKING_NUMBER_ATTEMPTS", 5),
        )

    def _run(self, action, session, permission, fn):
        try:
            if session is not None:
                session.require(permission)
            with atomic():
                message, data = fn()
        except LibraryError as e:
            logger.info("%s rejected (%s): %s", action, e.code, e.message)
            return result(False, e.message, error=e.code)
        except IntegrityError:
            logger.warning("%s hit a uniqueness conflict", action, exc_info=True)
            return result(False, "A record with the same identifier already exists. Please try again.",
                          error=Conflict.code)
        except SQLAlchemyError:
            logger.exception("%s failed", action)
            return result(False, f"Failed to {action}. Please try again.",
                          error=InfrastructureError.code)
        return result(True, message, data)

    # ---- catalog
    def list_books_with_remaining_availability(self, session):
        return self._run("list books", session, "request_books", lambda: (
            "OK", self.circulation.books_for_student(session.user_id)))

    def search_books(self, q=None):
        return self._run("search books", None, None, lambda: (
            "OK", [b.to_dict() for b in self.catalog.search(q)]))

    def get_book(self, book_id):
        return self._run("get book", None, None, lambda: (
            "OK", self.catalog.get(book_id).to_dict()))

    def create_book(self, session, data):
        return self._run("create book", session, "manage_books", lambda: (
            "Book created successfully.", self.catalog.create(data).to_dict()))

    def update_book(self, session, book_id, data):
        return self._run("update book", session, "manage_books", lambda: (
            "Book updated successfully.", self.catalog.update(book_id, data).to_dict()))

    def delete_book(self, session, book_id):
        def op():
            self.catalog.delete(book_id)
            return "Book deleted successfully.", {"id": book_id}
        return self._run("delete book", session, "manage_books", op)

    # ---- student actions
    def create_request(self, session, book_id, quantity=1):
        def op():
            req = self.circulation.create(session.user_id, book_id, quantity)
            return (f"Book request for {req.quantity} copy/copies submitted successfully!",
                    {"id": req.id, "tracking_number": req.tracking_number,
                     "remaining_available_copies": self.circulation.remaining_for_book(req.book)})
        return self._run("create book request", session, "request_books", op)

    def cancel_request(self, session, request_id):
        def op():
            req = self.circulation.cancel(request_id, session.user_id)
            return "Request canceled successfully.", {"id": req.id, "tracking_number": req.tracking_number}
        return self._run("cancel request", session, "request_books", op)

    def return_request(self, session, request_id):
        def op():
            req = self.circulation.return_request(request_id, session.user_id)
            return ("Book returned successfully. Waiting for staff verification.",
                    self.circulation.request_to_dict(req))
        return self._run("return book", session, "request_books", op)

    def my_requests(self, session):
        return self._run("list requests", session, "request_books", lambda: (
            "OK", [self.circulation.request_to_dict(r)
                   for r in self.circulation.student_requests(session.user_id)]))

    def my_fines(self, session):
        return self._run("list fines", session, "request_books", lambda: (
            "OK", [fine_to_dict(f) for f in self.fines.student_fines(session.user_id)]))

    def notifications(self, session):
        return self._run("list notifications", session, "request_books", lambda: (
            "OK", book_notifications(self.circulation.student_requests(session.user_id),
                                     self.clock.now())))

    # ---- staff / admin actions
    def approve_request(self, session, request_id, staff_id, due_date=None):
        def op():
            req = self.circulation.approve(request_id, staff_id, due_date)
            return "Book request approved successfully.", self.circulation.request_to_dict(req)
        return self._run("approve request", session, "approve_requests", op)

    def reject_request(self, session, request_id):
        def op():
            req = self.circulation.reject(request_id, session)
            return "Book request rejected.", self.circulation.request_to_dict(req)
        return self._run("reject request", session, "reject_requests", op)

    def mark_borrowed(self, session, request_id):
        def op():
            req = self.circulation.mark_borrowed(request_id, session)
            return "Book handed over to the student.", self.circulation.request_to_dict(req)
        return self._run("mark request as borrowed", session, "verify_returns", op)

    def record_fine_outcome(self, session, request_id, damaged=0, lost=0, received=0,
                            description=None, fine_amount=0, fine_due_date=None):
        def op():
            req = self.circulation.receive(request_id, session, damaged, lost, received,
                                           description, fine_amount, fine_due_date)
            counts = quantity_breakdown(req, req.fines)
            return _verification_message(counts), self.circulation.request_to_dict(req)
        return self._run("verify book return", session, "verify_returns", op)

    def settle_fine(self, session, fine_id, status="Paid"):
        def op():
            fine, changed = self.fines.settle(fine_id, status, session)
            if not changed:
                return f"Fine is already {fine.status.value.replace('_', ' ').lower()}.", fine_to_dict(fine)
            return f"Fine marked as {fine.status.value.replace('_', ' ').lower()} successfully.", fine_to_dict(fine)
        return self._run("settle fine", session, "settle_fines", op)

    def list_requests(self, session):
        def op():
            if session.is_admin:
                reqs = self.circulation.all_requests()
            else:
                reqs = self.circulation.assigned_requests(session.user_id)
            return "OK", [self.circulation.request_to_dict(r) for r in reqs]
        return self._run("list requests", session, "view_requests", op)

    def books_with_fines(self, session):
        def op():
            rows = []
            for req in self.circulation.requests_with_fines():
                if not session.is_admin and req.staff_id != session.user_id:
                    continue
                item = self.circulation.request_to_dict(req)
                item["fines"] = [fine_to_dict(f) for f in req.fines]
                rows.append(item)
            return "OK", rows
        return self._run("list books with fines", session, "view_requests", op)

    def book_borrowers(self, session, book_id):
        return self._run("list book borrowers", session, "view_requests", lambda: (
            "OK", [self.circulation.request_to_dict(r)
                   for r in self.circulation.book_borrowers(book_id)]))

    def overdue_requests(self, session):
        return self._run("list overdue requests", session, "view_requests", lambda: (
            "OK", [self.circulation.request_to_dict(r)
                   for r in self.circulation.overdue_requests()]))

    def list_staff(self, session):
        return self._run("list staff", session, "view_staff", lambda: (
            "OK", [{"id": u.id, "full_name": u.full_name, "email": u.email}
                   for u in self.circulation.active_staff()]))


def _verification_message(counts):
    received, damaged, lost = counts["received"], counts["damaged"], counts["lost"]
    plural = "s" if received != 1 else ""
    if received and (damaged or lost):
        message = f"{received} book{plural} received successfully. "
        if damaged:
            message += f"{damaged} damaged. "
        if lost:
            message += f"{lost} lost. "
        return message + "Fine has been issued."
    if received:
        return f"{received} book{plural} verified and marked as received successfully."
    return "Book verified. Fine has been issued."
