"""Shared test fixtures and configuration for backend tests."""
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from heartlock.chat import dependencies
from heartlock.chat.store import MessageStore
from heartlock.chat.users import UserDirectory
from heartlock.main import app

SEEDED_USERS = (
    ("u1", "alice", "https://img.example/alice.png"),
    ("u2", "bob", None),
    ("u3", "carol", None),
)


class FakeClock:
    """Controllable replacement for the store's UTC clock."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def chat_services(clock):
    """Give every test fresh in-memory stores and empty presence/rooms.

    The store and directory singletons are created here first, so the app's
    lazy wiring picks up these instances instead of opening the on-disk
    database.
    """
    dependencies.reset_services()
    MessageStore.get_instance(":memory:", clock=clock)
    directory = UserDirectory.get_instance(":memory:")
    for user_id, username, picture in SEEDED_USERS:
        directory.upsert(user_id, username, picture)
    yield
    dependencies.reset_services()


@pytest.fixture
def store() -> MessageStore:
    return MessageStore.get_instance()


@pytest.fixture
def users() -> UserDirectory:
    return UserDirectory.get_instance()


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app."""
    return TestClient(app)


@pytest.fixture
def token_for():
    """Return a function that mints a valid bearer token for a user id."""
    def _token(user_id: str) -> str:
        return dependencies.get_authenticator().issue_token(user_id)
    return _token


@pytest.fixture
def auth_headers(token_for):
    """Return a function building REST auth headers for a user id."""
    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {token_for(user_id)}"}
    return _headers
