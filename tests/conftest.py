"""
Pytest configuration and shared fixtures.

Test environment variables are seeded here (unless already exported) so the
settings object picks them up before any app module is imported.
"""

import os
import tempfile

os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite:///{os.path.join(tempfile.gettempdir(), f'consent_api_test_{os.getpid()}.db')}",
)
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

# Clear settings cache before any app imports to ensure test env vars are used
from consent_api.config import get_settings  # noqa: E402
get_settings.cache_clear()

from consent_api import models  # noqa: E402,F401
from consent_api.main import app  # noqa: E402
from consent_api.storage import SessionLocal, Base, engine  # noqa: E402


TEST_API_KEY = os.environ["API_KEY"]


@pytest.fixture(scope="function")
def client():
    """Authenticated test client with a fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app, headers={"X-API-Key": TEST_API_KEY}) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db():
    """Database session on a fresh schema, for calling the services directly."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def create_contact(client):
    """Helper to register a contact via the API and return its id."""
    def _create(phone_number: str) -> str:
        response = client.post("/api/contacts", json={"phone_number": phone_number})
        assert response.status_code in (200, 201)
        return response.json()["id"]
    return _create
