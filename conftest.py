import re

import pytest
from fastapi.testclient import TestClient

from lending.api import create_app
from lending.auth import AuthService, create_access_token
from lending.borrowing import BorrowingService
from lending.catalog import CatalogService
from lending.config import settings
from lending.database import Database
from lending.models import MembershipType


@pytest.fixture
def test_settings(tmp_path, request):
    # A unique database file per test, cheap bcrypt and no rate limits
    safe_name = re.sub(r"[^\w.-]", "_", request.node.name)
    db_file = tmp_path / f"test_{safe_name}.db"
    return settings.override(
        database_url=f"sqlite:///{db_file}",
        jwt_secret_key="test-secret-key-that-is-long-enough-for-hs256",
        bcrypt_rounds=4,
        register_rate_limit=0,
        login_rate_limit=0,
        frontend_url="http://localhost:3000",
        log_level="WARNING",
    )


@pytest.fixture
def db(test_settings):
    database = Database(test_settings.database_path, pool_size=2)
    database.connect()
    database.create_tables()
    yield database
    database.close()


@pytest.fixture
def auth_service(db, test_settings):
    return AuthService(db, test_settings)


@pytest.fixture
def catalog(db, test_settings):
    return CatalogService(db, test_settings)


@pytest.fixture
def borrowing(db, test_settings):
    return BorrowingService(db, test_settings)


@pytest.fixture
def books(catalog):
    """A small catalog; returns books keyed by a short name."""
    fiction = catalog.add_category("Fiction", "Novels")
    science = catalog.add_category("Science")
    orwell = catalog.add_author("George Orwell", "English novelist and essayist", 1903)
    lee = catalog.add_author("Harper Lee")
    hawking = catalog.add_author("Stephen Hawking")
    return {
        "1984": catalog.add_book(
            "1984", "978-0451524935", author_id=orwell.id, category_id=fiction.id,
            published_year=1949, description="A dystopian novel.",
        ),
        "animal_farm": catalog.add_book(
            "Animal Farm", "978-0451526342", author_id=orwell.id, category_id=fiction.id, copies=2,
        ),
        "mockingbird": catalog.add_book(
            "To Kill a Mockingbird", "978-0060935467", author_id=lee.id, category_id=fiction.id,
            description="Often compared to Orwell for its moral clarity.",
        ),
        "brief_history": catalog.add_book(
            "A Brief History of Time", "978-0553380163", author_id=hawking.id, category_id=science.id,
        ),
    }


@pytest.fixture
def make_user(auth_service, test_settings):
    """Create a user directly and return ``(user, token)``."""
    counter = {"n": 0}

    def _make(membership=MembershipType.STANDARD, email=None, password="secret123"):
        counter["n"] += 1
        user = auth_service.create_user(
            email=email or f"user{counter['n']}@example.com",
            first_name="Test",
            last_name=f"User{counter['n']}",
            password=password,
            membership_type=membership,
        )
        return user, create_access_token(user, test_settings)

    return _make


@pytest.fixture
def client(test_settings, db):
    app = create_app(test_settings, db)
    with TestClient(app) as test_client:
        yield test_client
