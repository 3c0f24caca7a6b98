import logging

from sqlalchemy import case, func, select, update

from errors import InsufficientCopies, ValidationError
from extensions import db
from models import Book, BookStatus, BorrowRequest, RequestStatus

logger = logging.getLogger(__name__)

# statuses a copy-count change must never overwrite
CONDITION_STATUSES = (BookStatus.LOST, BookStatus.DAMAGED)


class InventoryLedger:

    def pending_reserved(self, book_id):
        stmt = select(func.coalesce(func.sum(BorrowRequest.quantity), 0)).where(
            BorrowRequest.book_id == book_id,
            BorrowRequest.status == RequestStatus.PENDING,
        )
        return db.session.scalar(stmt)

    def pending_by_book(self):
        """Pending quantity per book id, read in a single statement."""
        rows = db.session.execute(
            select(BorrowRequest.book_id, func.sum(BorrowRequest.quantity))
            .where(BorrowRequest.status == RequestStatus.PENDING)
            .group_by(BorrowRequest.book_id)
        ).all()
        return {book_id: int(total or 0) for book_id, total in rows}

    def reserve(self, book, requested_qty):
        """Admission check for a new request. Nothing is written."""
        if requested_qty < 1:
            raise ValidationError("Quantity must be at least 1.")
        remaining = book.available_copies - self.pending_reserved(book.id)
        if remaining <= 0:
            raise InsufficientCopies("No copies available for this book.")
        if requested_qty > remaining:
            raise InsufficientCopies(
                f"You can only request up to {remaining} copy/copies. Only {remaining} available."
            )
        return remaining

    def commit(self, book, qty):
        """Take ``qty`` copies off the shelf for an approved request.

        The decrement is a conditional UPDATE so two approvals racing for the
        last copies cannot both succeed.
        """
        if qty < 1:
            raise ValidationError("Quantity must be at least 1.")
        res = db.session.execute(
            update(Book)
            .where(Book.id == book.id, Book.available_copies >= qty)
            .values(available_copies=Book.available_copies - qty)
            .execution_options(synchronize_session=False)
        )
        db.session.refresh(book)
        if res.rowcount == 0:
            logger.warning("commit refused for book %s: wanted %s, have %s",
                           book.id, qty, book.available_copies)
            raise InsufficientCopies(
                f"Not enough copies available. Only {book.available_copies} copy/copies "
                f"available, but {qty} requested."
            )
        if book.available_copies <= 0 and book.status not in CONDITION_STATUSES:
            book.status = BookStatus.NOT_AVAILABLE
        logger.info("book %s committed %s, %s left", book.id, qty, book.available_copies)
        return book.available_copies

    def release(self, book, qty):
        """Put ``qty`` copies back, never past ``total_copies``."""
        if qty < 1:
            return book.available_copies
        restored = Book.available_copies + qty
        db.session.execute(
            update(Book)
            .where(Book.id == book.id)
            .values(available_copies=case(
                (restored > Book.total_copies, Book.total_copies),
                else_=restored,
            ))
            .execution_options(synchronize_session=False)
        )
        db.session.refresh(book)
        if book.available_copies > 0 and book.status == BookStatus.NOT_AVAILABLE:
            book.status = BookStatus.AVAILABLE
        logger.info("book %s released %s, %s available", book.id, qty, book.available_copies)
        return book.available_copies
