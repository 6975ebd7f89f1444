"""
Pytest configuration and shared fixtures.

Environment variables are set here before any app import so settings pick up
the test database and signing key; an .env.test loaded by the caller wins.
"""

import os
import time

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_messenger.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("TOKEN_SECRET", "test-token-secret")

# Clear settings cache before any app imports to ensure test env vars are used
from messenger.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from messenger.main import app
from messenger.registry import ConnectionRegistry
from messenger.storage import Base, SessionLocal, create_user, engine
from messenger.tokens import issue_token


def auth_headers(user_id: int) -> dict:
    """Bearer header for user_id."""
    return {"Authorization": f"Bearer {issue_token(user_id)}"}


def wait_until(predicate, timeout: float = 2.0) -> bool:
    """Poll predicate; server-side cleanup after a socket closes is asynchronous."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database and empty registry for each test."""
    Base.metadata.create_all(bind=engine)
    app.state.registry = ConnectionRegistry()

    with TestClient(app) as test_client:
        yield test_client

    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(client):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def users(db):
    """Three registered users; carol has no phone number."""
    alice = create_user(db, "alice", phone_number="+33600000001")
    bob = create_user(db, "bob", phone_number="+33600000002")
    carol = create_user(db, "carol")
    return {"alice": alice.id, "bob": bob.id, "carol": carol.id}


@pytest.fixture
def registry(client):
    return app.state.registry


@pytest.fixture
def headers_for():
    return auth_headers


@pytest.fixture
def eventually():
    return wait_until
