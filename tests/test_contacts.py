"""
Tests for contact registration and lookup.

Tests cover:
- Creation and idempotent re-registration
- Reconciliation of a lost creation race
- Concurrent registration of the same number
- Lookup in both not-found modes
- Validation errors (400) and the API key check (401)
- Store failures (500, connection returned to the pool)
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from consent_api import contacts
from consent_api.config import settings
from consent_api.errors import ErrorKind
from consent_api.models import Contact, Preference
from consent_api.storage import SessionLocal, engine


class TestCreateContact:
    """Test POST /api/contacts."""

    def test_create_contact(self, client):
        """A new number is created with 201 and existed=false."""
        response = client.post("/api/contacts", json={"phone_number": "+15550001"})

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["existed"] is False
        assert len(data["id"]) == settings.ID_LENGTH
        assert data["id"].isalnum()

    def test_repeat_registration_returns_same_id(self, client):
        """A repeated number returns 200, existed=true and the same id."""
        first = client.post("/api/contacts", json={"phone_number": "+15550001"})
        second = client.post("/api/contacts", json={"phone_number": "+15550001"})

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json() == {"success": True, "id": first.json()["id"], "existed": True}

    def test_phone_number_is_trimmed(self, client):
        """Surrounding whitespace does not create a second contact."""
        first = client.post("/api/contacts", json={"phone_number": "+15550001"})
        second = client.post("/api/contacts", json={"phone_number": "  +15550001  "})

        assert second.json()["id"] == first.json()["id"]
        assert second.json()["existed"] is True

    def test_eager_preference_created_awaiting(self, client):
        """The paired preference row starts in AWAITING with no intro sent."""
        contact_id = client.post("/api/contacts", json={"phone_number": "+15550001"}).json()["id"]

        response = client.get(f"/api/preferences/{contact_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["contact_id"] == contact_id
        assert data["has_opted_in"] is False
        assert data["awaiting_optin"] is True
        assert data["intro_sent_today"] is False
        assert data["opted_in_at"] is None
        assert data["opted_out_at"] is None

    def test_lazy_preference_not_created(self, client, monkeypatch):
        """With eager creation off, no preference row exists yet."""
        monkeypatch.setattr(settings, "EAGER_PREFERENCE", False)
        contact_id = client.post("/api/contacts", json={"phone_number": "+15550001"}).json()["id"]

        response = client.get(f"/api/preferences/{contact_id}")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"


class TestCreateContactValidation:
    """Test malformed contact bodies (400)."""

    @pytest.mark.parametrize("body", [
        {},
        {"phone_number": ""},
        {"phone_number": "1234"},
        {"phone_number": "   12   "},
        {"phone_number": "1" * 21},
        {"phone_number": 15550001},
    ])
    def test_invalid_phone_number(self, client, body):
        response = client.post("/api/contacts", json=body)

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"
        assert isinstance(response.json()["detail"], list)

    def test_invalid_body_writes_nothing(self, client, db):
        client.post("/api/contacts", json={"phone_number": "123"})

        assert db.scalar(select(func.count()).select_from(Contact)) == 0


class TestApiKey:
    """Test the shared-secret check."""

    def test_missing_api_key(self, client):
        response = client.post(
            "/api/contacts",
            json={"phone_number": "+15550001"},
            headers={"X-API-Key": ""},
        )

        assert response.status_code == 401
        assert response.json() == {"error": "unauthorized", "detail": "invalid api key"}

    def test_wrong_api_key(self, client):
        response = client.get("/api/contacts/+15550001", headers={"X-API-Key": "nope"})

        assert response.status_code == 401


class TestGetContact:
    """Test GET /api/contacts/{phone_number}."""

    def test_get_existing_contact(self, client, create_contact):
        contact_id = create_contact("+15550001")

        response = client.get("/api/contacts/+15550001")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == contact_id
        assert data["phone_number"] == "+15550001"
        assert data["created_at"]

    def test_unknown_contact_empty_mode(self, client):
        """Default mode answers an empty payload."""
        response = client.get("/api/contacts/+15559999")

        assert response.status_code == 200
        assert response.json() == {"data": None}

    def test_unknown_contact_error_mode(self, client, monkeypatch):
        monkeypatch.setattr(settings, "CONTACT_NOT_FOUND_MODE", "error")

        response = client.get("/api/contacts/+15559999")

        assert response.status_code == 404
        assert response.json() == {"error": "not_found", "detail": "Contact not found"}


class TestRegisterService:
    """Test contacts.register directly."""

    def test_register_twice(self, db):
        first = contacts.register(db, "+15550001")
        second = contacts.register(db, "+15550001")

        assert first.ok and second.ok
        assert first.value.existed is False
        assert second.value.existed is True
        assert second.value.contact_id == first.value.contact_id
        assert db.scalar(select(func.count()).select_from(Contact)) == 1
        assert db.scalar(select(func.count()).select_from(Preference)) == 1

    def test_lost_race_is_reconciled(self, db, monkeypatch):
        """An insert that hits the unique constraint returns the winning row."""
        winner = contacts.register(db, "+15550001").value

        real_find = contacts.find_contact_id
        calls = []

        def stale_then_real(session, phone_number):
            calls.append(phone_number)
            if len(calls) == 1:
                return None
            return real_find(session, phone_number)

        monkeypatch.setattr(contacts, "find_contact_id", stale_then_real)

        result = contacts.register(db, "+15550001")

        assert result.ok
        assert result.value.existed is True
        assert result.value.contact_id == winner.contact_id
        assert len(calls) == 2
        assert db.scalar(select(func.count()).select_from(Contact)) == 1
        assert db.scalar(select(func.count()).select_from(Preference)) == 1

    def test_lost_race_without_eager_preference(self, db, monkeypatch):
        winner = contacts.register(db, "+15550001", eager_preference=False).value
        real_find = contacts.find_contact_id
        calls = []

        def stale_then_real(session, phone_number):
            calls.append(phone_number)
            return None if len(calls) == 1 else real_find(session, phone_number)

        monkeypatch.setattr(contacts, "find_contact_id", stale_then_real)

        result = contacts.register(db, "+15550001", eager_preference=False)

        assert result.value.contact_id == winner.contact_id
        assert result.value.existed is True

    def test_concurrent_registration(self, db):
        """Simultaneous registrations of one number yield a single contact."""
        def register_once(_):
            session = SessionLocal()
            try:
                return contacts.register(session, "+15550002")
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(register_once, range(8)))

        assert all(result.ok for result in results)
        ids = {result.value.contact_id for result in results}
        assert len(ids) == 1
        assert sum(not result.value.existed for result in results) == 1
        assert db.scalar(select(func.count()).select_from(Contact)) == 1
        assert db.scalar(select(func.count()).select_from(Preference)) == 1

    def test_lookup_not_found(self, db):
        result = contacts.lookup(db, "+15550001")

        assert not result.ok
        assert result.error is ErrorKind.NOT_FOUND


class TestStoreFailure:
    """A failing store answers a generic 500 and hands the connection back."""

    def test_register_store_error(self, client, monkeypatch):
        real_find = contacts.find_contact_id

        def failing_find(session, phone_number):
            real_find(session, phone_number)
            raise OperationalError("SELECT id FROM contacts", {}, Exception("disk I/O error at /var/db/contacts.db"))

        monkeypatch.setattr(contacts, "find_contact_id", failing_find)

        response = client.post("/api/contacts", json={"phone_number": "+15550001"})

        assert response.status_code == 500
        assert response.json() == {"error": "store_unavailable", "detail": "Failed to create contact"}
        assert "disk I/O" not in response.text
        assert engine.pool.checkedout() == 0

    def test_repeated_store_errors_do_not_leak_connections(self, client, monkeypatch):
        def failing_find(session, phone_number):
            session.execute(select(Contact.id))
            raise OperationalError("SELECT id FROM contacts", {}, Exception("database is locked"))

        monkeypatch.setattr(contacts, "find_contact_id", failing_find)

        for n in range(20):
            response = client.post("/api/contacts", json={"phone_number": f"+155500{n:02d}"})
            assert response.status_code == 500

        assert engine.pool.checkedout() == 0
