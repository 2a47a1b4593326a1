import os

import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from library_api import crud
from library_api.auth import create_access_token, hash_password
from library_api.google_books import GoogleBooksClient, get_catalog
from library_api.main import app
from library_api.models import Base, CardStatus, UserRole
from library_api.storage import build_engine, get_db

load_dotenv()

SQLALCHEMY_DATABASE_URL = os.getenv("TEST_DB_URL", "sqlite:///./test.db")

engine = build_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeCatalog:
    """Stands in for GoogleBooksClient; volumes are keyed by ISBN."""

    def __init__(self):
        self.volumes = {}
        self.catalog = []
        self.searches = []

    def add(self, volume):
        info = volume.get("volumeInfo", {})
        for identifier in info.get("industryIdentifiers", []):
            self.volumes[identifier["identifier"]] = volume
        self.catalog.append(volume)
        return volume

    def search(self, query, max_results=10):
        self.searches.append((query, max_results))
        return self.catalog[:max_results]

    def search_by_isbn13(self, isbn13):
        return self.volumes.get(isbn13)

    def search_by_isbn10(self, isbn10):
        return self.volumes.get(isbn10)

    to_book_data = staticmethod(GoogleBooksClient.to_book_data)


def make_volume(isbn13="9780061120084", isbn10="0061120081", **info):
    volume_info = {
        "title": "To Kill a Mockingbird",
        "authors": ["Harper Lee"],
        "publisher": "Harper Perennial",
        "publishedDate": "2006-05",
        "description": "A novel about injustice in the American South.",
        "industryIdentifiers": [
            {"type": "ISBN_10", "identifier": isbn10},
            {"type": "ISBN_13", "identifier": isbn13},
        ],
        "pageCount": 336,
        "categories": ["Fiction"],
        "language": "en",
        "imageLinks": {"thumbnail": "http://books.google.com/books/content?id=PGR2AwAAQBAJ"},
        "infoLink": "http://books.google.com/books?id=PGR2AwAAQBAJ",
    }
    volume_info.update(info)
    return {"id": "PGR2AwAAQBAJ", "volumeInfo": volume_info}


@pytest.fixture(scope="session", autouse=True)
def create_test_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def volume_factory():
    return make_volume


@pytest.fixture(scope="function")
def catalog():
    return FakeCatalog()


@pytest.fixture(scope="function")
def client(db_session, catalog):
    app.state.testing = True

    def override_get_db():
        try:
            db = TestingSessionLocal()
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_catalog] = lambda: catalog
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.testing = False


@pytest.fixture(scope="function")
def free_card(db_session):
    return crud.create_card(db_session, {"serial_number": "BB000000001", "status": CardStatus.FREE})


def _make_user(db_session, email, role):
    return crud.create_user(
        db_session,
        {
            "email": email,
            "first_name": "Test",
            "last_name": "User",
            "password": hash_password("testpassword"),
            "role": role,
        },
    )


@pytest.fixture(scope="function")
def test_user(db_session):
    return _make_user(db_session, "reader@example.com", UserRole.USER)


@pytest.fixture(scope="function")
def other_user(db_session):
    return _make_user(db_session, "other@example.com", UserRole.USER)


@pytest.fixture(scope="function")
def admin_user(db_session):
    return _make_user(db_session, "admin@example.com", UserRole.ADMIN)


@pytest.fixture(scope="function")
def user_headers(test_user):
    return {"Authorization": f"Bearer {create_access_token(test_user)}"}


@pytest.fixture(scope="function")
def other_headers(other_user):
    return {"Authorization": f"Bearer {create_access_token(other_user)}"}


@pytest.fixture(scope="function")
def admin_headers(admin_user):
    return {"Authorization": f"Bearer {create_access_token(admin_user)}"}


@pytest.fixture(scope="function")
def test_author(db_session):
    return crud.create_author(db_session, {"first_name": "Harper", "last_name": "Lee"})


@pytest.fixture(scope="function")
def test_book(db_session, test_author):
    return crud.create_book(
        db_session,
        {
            "title": "To Kill a Mockingbird",
            "isbn10": "0061120081",
            "isbn13": "9780061120084",
            "genre": "Fiction",
            "description": "A novel about injustice in the American South.",
        },
        authors=[test_author],
    )
