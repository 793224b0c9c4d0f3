"""
Pytest configuration and fixtures for testing.
Provides test database, test client, registered users and a fake media store.
"""
import os

# Must be set before the application modules read their settings
os.environ["DATABASE_URL"] = "sqlite:///./test_messaging.db"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["LOG_JSON"] = "false"
os.environ["JWT_SECRET_KEY"] = "test-secret"

import pytest
from typing import Dict, Generator
from sqlalchemy.orm import Session
from fastapi.testclient import TestClient
from db.database import Base, SessionLocal, engine
from db import models  # noqa: F401
from db.models import User
from db.repository import Repository
from core.config import settings
from core.security import create_access_token, hash_password
from main import app
from api.dependencies import get_db
from services.minio_client import get_content_store


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh database for each test.
    Automatically creates and destroys tables.
    """
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def test_client(test_db: Session) -> TestClient:
    """
    Create a test client with test database dependency override.

    WebSocket handlers open their own sessions on the same engine, so they
    see everything written through the override.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    # Entering the client shares one event loop across its WebSocket sessions,
    # so a publish from one connection's handler can reach another's socket.
    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


def register(client: TestClient, username: str, password: str = "password123", display_name: str = None) -> dict:
    """Register through the API and drop the cookie so later calls authenticate explicitly."""
    body = {"username": username, "password": password}
    if display_name:
        body["displayName"] = display_name
    response = client.post("/auth/register", json=body)
    assert response.status_code == 200, response.text
    client.cookies.clear()
    return response.json()


def auth_headers(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
def alice(test_client: TestClient) -> dict:
    return register(test_client, "alice", display_name="Alice")


@pytest.fixture(scope="function")
def bob(test_client: TestClient, alice: dict) -> dict:
    return register(test_client, "bob", display_name="Bob")


@pytest.fixture(scope="function")
def outsider(test_db: Session, alice: dict, bob: dict) -> dict:
    """
    A third user created behind the registration cap.
    Returns the same shape as a register response.
    """
    user = Repository(test_db).create_user(
        username="mallory",
        password_hash=hash_password("password123"),
        display_name="Mallory"
    )
    token = create_access_token(user.id, user.username)["token"]
    return {"token": token, "user": {"id": user.id, "username": user.username, "displayName": user.display_name}}


@pytest.fixture(scope="function")
def seed_users(test_db: Session) -> list[User]:
    """Create two users directly through the repository."""
    repository = Repository(test_db)
    return [
        repository.create_user(username=name, password_hash=hash_password("password123"), display_name=name.title())
        for name in ("alice", "bob")
    ]


class FakeContentStore:
    """In-memory stand-in for the MinIO client."""

    def __init__(self):
        self.objects: Dict[str, tuple] = {}

    def put_object(self, object_name, data, length, content_type="application/octet-stream"):
        self.objects[object_name] = (data.read(), content_type)
        return True

    def get_object(self, object_name):
        stored = self.objects.get(object_name)
        return stored[0] if stored else None

    def remove_object(self, object_name):
        return self.objects.pop(object_name, None) is not None

    def ping(self):
        return True


@pytest.fixture
def content_store(test_client: TestClient) -> FakeContentStore:
    """Replace the MinIO dependency with an in-memory store."""
    store = FakeContentStore()
    app.dependency_overrides[get_content_store] = lambda: store
    return store


@pytest.fixture
def trust_payload_identity(monkeypatch):
    monkeypatch.setattr(settings, "ws_trust_payload_identity", True)
