from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from auth import session_for
from config import TestingConfig
from extensions import db
from models import Book, BookStatus, User, UserRole, UserStatus
from services import LibraryServices

NOW = datetime(2025, 3, 10, 9, 30, 0)


class FixedClock:
    def __init__(self, now):
        self.current = now

    def now(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


class SequenceTracking:
    """Hands out the given tracking numbers in order."""

    def __init__(self, *numbers):
        self.numbers = list(numbers)

    def tracking_number(self, when):
        return self.numbers.pop(0)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def services(clock):
    return LibraryServices(clock=clock)


@pytest.fixture
def app(services):
    app = create_app(TestingConfig, services=services)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def make_user():
    def _make(username, role=UserRole.STUDENT, status=UserStatus.ACTIVE, password="secret"):
        user = User(
            username=username,
            email=f"{username}@uni.example.edu",
            full_name=username.title(),
            password_hash=generate_password_hash(password),
            role=role,
            status=status,
        )
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def make_book():
    counter = {"n": 0}

    def _make(total=2, available=None, status=BookStatus.AVAILABLE, title=None):
        counter["n"] += 1
        book = Book(
            isbn=f"978000000{counter['n']:04d}",
            title=title or f"Book {counter['n']}",
            author="A. Author",
            total_copies=total,
            available_copies=total if available is None else available,
            status=status,
        )
        db.session.add(book)
        db.session.commit()
        return book
    return _make


@pytest.fixture
def people(ctx, make_user):
    """Two students, two staff members and an admin, as Sessions."""
    users = {
        "alice": make_user("alice"),
        "bob": make_user("bob"),
        "sam": make_user("sam", role=UserRole.STAFF),
        "tina": make_user("tina", role=UserRole.STAFF),
        "ada": make_user("ada", role=UserRole.ADMIN),
    }
    return {name: session_for(user) for name, user in users.items()}


@pytest.fixture
def due(clock):
    return clock.now() + timedelta(days=14)
