import mongomock
import pytest
from fastapi.testclient import TestClient
from passlib.context import CryptContext

import accounts
import database
import notifier
import security
from errors import DependencyFailure
from main import app, limiter
from schemas import User


class Outbox:
    """Stands in for notifier.send_email and keeps what would have been sent."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def __call__(self, to, subject, text, html=None):
        if self.fail:
            raise DependencyFailure("Email service unavailable")
        self.sent.append(notifier.Email(to, subject, text, html))
        return True

    def to(self, address):
        return [m for m in self.sent if m.to == address]


@pytest.fixture(autouse=True)
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["civicconnect_test"]
    mock_db["user"].create_index("email", unique=True)
    mock_db["report"].create_index("report_id", unique=True)
    monkeypatch.setattr(database, "db", mock_db)
    return mock_db


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    monkeypatch.setattr(security, "pwd_context", CryptContext(schemes=["bcrypt"], bcrypt__rounds=4))


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    box = Outbox()
    monkeypatch.setattr(notifier, "send_email", box)
    return box


@pytest.fixture(autouse=True)
def no_rate_limits():
    limiter.enabled = False
    yield
    limiter.enabled = True
    limiter.reset()


@pytest.fixture
def make_user():
    counter = {"n": 0}

    def _make(name=None, email=None, password="secret123", role="citizen", **extra):
        counter["n"] += 1
        doc = User(
            name=name or f"User {counter['n']}",
            email=email or f"user{counter['n']}@example.com",
            password_hash=security.hash_password(password),
            role=role,
            is_email_verified=True,
            **extra,
        ).model_dump()
        return accounts.get_user(database.create_document("user", doc))

    return _make


@pytest.fixture
def citizen(make_user):
    return make_user(name="Jane Citizen", email="jane@example.com")


@pytest.fixture
def other_citizen(make_user):
    return make_user(name="Sam Neighbour", email="sam@example.com")


@pytest.fixture
def admin(make_user):
    return make_user(name="City Admin", email="admin@city.gov", role="admin")


@pytest.fixture
def auth():
    def _headers(user):
        return {"Authorization": f"Bearer {security.create_access_token(user)}"}

    return _headers


@pytest.fixture
def client():
    return TestClient(app)


NYC = {"coordinates": [-74.0059, 40.7128], "address": "City Hall Park, New York"}


@pytest.fixture
def location():
    return dict(NYC)
