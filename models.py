import enum

from flask_login import UserMixin

from clock import utcnow
from extensions import db


class UserRole(str, enum.Enum):
    STUDENT = "Student"
    STAFF = "Staff"
    ADMIN = "Admin"
    SUPER_ADMIN = "Super_Admin"


class UserStatus(str, enum.Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    SUSPENDED = "Suspended"


class BookStatus(str, enum.Enum):
    AVAILABLE = "Available"
    NOT_AVAILABLE = "Not_Available"
    LOST = "Lost"
    DAMAGED = "Damaged"


class RequestStatus(str, enum.Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    BORROWED = "Borrowed"
    UNDER_REVIEW = "Under_Review"
    RECEIVED = "Received"
    RETURNED = "Returned"
    OVERDUE = "Overdue"
    REJECTED = "Rejected"


ACTIVE_REQUEST_STATUSES = (RequestStatus.PENDING, RequestStatus.APPROVED, RequestStatus.BORROWED)


class FineReason(str, enum.Enum):
    DAMAGED = "Damaged"
    LOST = "Lost"


class FineStatus(str, enum.Enum):
    UNPAID = "Unpaid"
    PAID = "Paid"
    WAIVED = "Waived"
    PARTIALLY_PAID = "Partially_Paid"


def _enum_column(enum_cls, **kwargs):
    # store the human values ("Not_Available"), not the member names
    return db.Column(
        db.Enum(enum_cls, native_enum=False, validate_strings=True,
                values_callable=lambda e: [m.value for m in e]),
        **kwargs,
    )


class User(UserMixin, db.Model):
    __tablename__ = "users"
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(120))
    email = db.Column(db.String(120), unique=True, nullable=False)
    role = _enum_column(UserRole, nullable=False, default=UserRole.STUDENT)
    status = _enum_column(UserStatus, nullable=False, default=UserStatus.ACTIVE)
    created_at = db.Column(db.DateTime, default=utcnow)

    @property
    def is_active(self):
        return self.status == UserStatus.ACTIVE


class Book(db.Model):
    __tablename__ = "books"
    __table_args__ = (
        db.CheckConstraint("available_copies >= 0", name="ck_books_available_non_negative"),
        db.CheckConstraint("available_copies <= total_copies", name="ck_books_available_le_total"),
    )
    id = db.Column(db.Integer, primary_key=True)
    isbn = db.Column(db.String(20), unique=True, nullable=False)
    title = db.Column(db.String(200), nullable=False)
    author = db.Column(db.String(150), nullable=False)
    publisher = db.Column(db.String(150))
    category = db.Column(db.String(80))
    total_copies = db.Column(db.Integer, nullable=False, default=1)
    available_copies = db.Column(db.Integer, nullable=False, default=1)
    status = _enum_column(BookStatus, nullable=False, default=BookStatus.AVAILABLE)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    requests = db.relationship("BorrowRequest", back_populates="book")

    def to_dict(self):
        return {
            "id": self.id,
            "isbn": self.isbn,
            "title": self.title,
            "author": self.author,
            "publisher": self.publisher,
            "category": self.category,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "status": self.status.value,
        }


class BorrowRequest(db.Model):
    __tablename__ = "borrow_requests"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_borrow_requests_quantity_positive"),
    )
    id = db.Column(db.Integer, primary_key=True)
    tracking_number = db.Column(db.String(32), unique=True, nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    status = _enum_column(RequestStatus, nullable=False, default=RequestStatus.PENDING, index=True)
    request_date = db.Column(db.DateTime, default=utcnow)
    approved_date = db.Column(db.DateTime)
    borrow_date = db.Column(db.DateTime)
    due_date = db.Column(db.DateTime)
    return_date = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    student = db.relationship("User", foreign_keys=[student_id])
    staff = db.relationship("User", foreign_keys=[staff_id])
    book = db.relationship("Book", back_populates="requests")
    fines = db.relationship("Fine", back_populates="request", order_by="Fine.id")

class Fine(db.Model):
    __tablename__ = "fines"
    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.Integer, db.ForeignKey("borrow_requests.id"), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False)
    created_by_staff_id = db.Column(db.Integer, db.ForeignKey("users.id"))
    reason = _enum_column(FineReason, nullable=False)
    status = _enum_column(FineStatus, nullable=False, default=FineStatus.UNPAID)
    description = db.Column(db.Text)
    # NULL on rows written before the column existed; see fines.fine_quantity
    affected_quantity = db.Column(db.Integer)
    fine_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    due_date = db.Column(db.DateTime)
    paid_date = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    request = db.relationship("BorrowRequest", back_populates="fines")
    student = db.relationship("User", foreign_keys=[student_id])
    book = db.relationship("Book")
