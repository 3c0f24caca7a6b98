import logging

from sqlalchemy import or_, select

from errors import Conflict, InvalidState, NotFound, ValidationError
from extensions import db
from models import ACTIVE_REQUEST_STATUSES, Book, BookStatus, BorrowRequest

logger = logging.getLogger(__name__)


def _text(data, key, required=False):
    value = (data.get(key) or "").strip()
    if required and not value:
        raise ValidationError(f"{key.replace('_', ' ').capitalize()} is required.")
    return value or None


def _copies(value, name):
    try:
        copies = int(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"{name} must be a whole number.") from None
    if copies < 0:
        raise ValidationError(f"{name} cannot be negative.")
    return copies


def _status(value):
    try:
        return BookStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown book status: {value}.") from None


def _sync_status(book):
    if book.available_copies <= 0 and book.status == BookStatus.AVAILABLE:
        book.status = BookStatus.NOT_AVAILABLE
    elif book.available_copies > 0 and book.status == BookStatus.NOT_AVAILABLE:
        book.status = BookStatus.AVAILABLE


class CatalogService:

    def _isbn_taken(self, isbn, exclude_id=None):
        stmt = select(Book.id).where(Book.isbn == isbn)
        if exclude_id is not None:
            stmt = stmt.where(Book.id != exclude_id)
        return db.session.scalar(stmt) is not None

    def get(self, book_id, lock=False):
        book = db.session.get(Book, book_id, with_for_update=lock or None)
        if book is None:
            raise NotFound("Book not found.")
        return book

    def search(self, q=None):
        stmt = select(Book).order_by(Book.title)
        if q:
            stmt = stmt.where(or_(
                Book.title.ilike(f"%{q}%"),
                Book.author.ilike(f"%{q}%"),
                Book.isbn.ilike(f"%{q}%"),
            ))
        return db.session.scalars(stmt).all()

    def create(self, data):
        isbn = _text(data, "isbn", required=True)
        title = _text(data, "title", required=True)
        author = _text(data, "author", required=True)
        total = _copies(data.get("total_copies", 1), "Total copies")
        available = _copies(data.get("available_copies", total), "Available copies")
        if available > total:
            raise ValidationError("Available copies cannot exceed total copies.")
        if self._isbn_taken(isbn):
            raise Conflict("A book with this ISBN already exists.")

        book = Book(
            isbn=isbn,
            title=title,
            author=author,
            publisher=_text(data, "publisher"),
            category=_text(data, "category"),
            total_copies=total,
            available_copies=available,
            status=_status(data["status"]) if data.get("status") else BookStatus.AVAILABLE,
        )
        _sync_status(book)
        db.session.add(book)
        db.session.flush()
        logger.info("book %s (%s) added with %s copies", book.id, isbn, total)
        return book

    def update(self, book_id, data):
        book = self.get(book_id, lock=True)
        if "available_copies" in data:
            raise ValidationError(
                "Available copies follow approvals and returns. Change total copies to restock."
            )
        if "isbn" in data:
            isbn = _text(data, "isbn", required=True)
            if isbn != book.isbn and self._isbn_taken(isbn, exclude_id=book.id):
                raise Conflict("A book with this ISBN already exists.")
            book.isbn = isbn
        for key in ("title", "author"):
            if key in data:
                setattr(book, key, _text(data, key, required=True))
        for key in ("publisher", "category"):
            if key in data:
                setattr(book, key, _text(data, key))

        if "total_copies" in data:
            new_total = _copies(data["total_copies"], "Total copies")
            on_loan = book.total_copies - book.available_copies
            if new_total < on_loan:
                raise ValidationError(
                    f"Total copies cannot be less than the {on_loan} copy/copies currently on loan."
                )
            book.available_copies += new_total - book.total_copies
            book.total_copies = new_total
        if data.get("status"):
            book.status = _status(data["status"])
        _sync_status(book)
        logger.info("book %s updated", book.id)
        return book

    def delete(self, book_id):
        book = self.get(book_id)
        active = db.session.scalar(
            select(BorrowRequest.id).where(
                BorrowRequest.book_id == book.id,
                BorrowRequest.status.in_(ACTIVE_REQUEST_STATUSES),
            )
        )
        if active is not None:
            raise InvalidState(
                "Cannot delete book with active borrow requests. Please handle all pending, "
                "approved, or borrowed requests first."
            )
        if book.requests:
            raise InvalidState("Cannot delete a book with borrowing history.")
        db.session.delete(book)
        logger.info("book %s (%s) deleted", book.id, book.isbn)
        return book
