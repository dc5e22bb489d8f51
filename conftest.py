from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from circulation.fines import FlatDailyRate
from circulation.library import Library
from circulation.models import BookCategory, UserRole
from console.main import app
from rowstore.gateway import RowStoreGateway
from rowstore.models import Base
from rowstore.storage import init_db, make_session_factory

DAY0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
DAILY_RATE = "0.50"


@pytest.fixture(scope="function")
def library():
    return Library(fine_policy=FlatDailyRate(DAILY_RATE))


@pytest.fixture(scope="function")
def admin(library):
    return library.directory.add_user(
        {"email": "admin@library.com", "name": "Admin User", "role": UserRole.ADMIN}
    )


@pytest.fixture(scope="function")
def test_user(library, admin):
    return library.directory.add_user(
        {"email": "sarah.johnson@library.com", "name": "Sarah Johnson", "role": UserRole.LIBRARIAN}
    )


@pytest.fixture(scope="function")
def test_book(library):
    return library.catalog.add_book(
        {
            "title": "Quantum Physics Explained",
            "author": "Michael Brown",
            "category": BookCategory.PHYSICS,
            "total_copies": 1,
            "isbn": "9783456789012",
        }
    )


@pytest.fixture(scope="function")
def shelf(library):
    """A small catalog covering several categories."""
    return [
        library.catalog.add_book(
            {"title": "Advanced Calculus", "author": "Robert Smith", "category": BookCategory.MATHS, "total_copies": 8, "available_copies": 5}
        ),
        library.catalog.add_book(
            {"title": "Organic Chemistry Fundamentals", "author": "Emily Chen", "category": BookCategory.CHEMISTRY, "total_copies": 10}
        ),
        library.catalog.add_book(
            {"title": "Pride and Prejudice", "author": "Jane Austen", "category": BookCategory.NOVELS, "total_copies": 15, "isbn": "9780141439518"}
        ),
    ]


@pytest.fixture(scope="function")
def borrowed(library, test_user, test_book):
    return library.engine.borrow(test_user.id, test_book.id, DAY0, DAY0 + timedelta(days=14))


@pytest.fixture(scope="function")
def gateway(tmp_path):
    session_factory = make_session_factory(f"sqlite:///{tmp_path / 'rowstore.db'}")
    init_db(session_factory)
    yield RowStoreGateway(session_factory)
    Base.metadata.drop_all(bind=session_factory.kw["bind"])


@pytest.fixture(scope="function")
def client(gateway):
    app.state.testing = True
    app.state.gateway = gateway
    with TestClient(app) as c:
        yield c
    app.state.testing = False
    app.state.gateway = None


def sign_in(client, email, password):
    response = client.post("/auth/sign-in", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture(scope="function")
def admin_headers(client):
    return sign_in(client, "admin@library.com", "admin123")


@pytest.fixture(scope="function")
def librarian_headers(client):
    return sign_in(client, "librarian@library.com", "librarian123")
