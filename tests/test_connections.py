from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import app
from app.services.connection_store import clear_connection_store_cache, create_connection_store
from app.services.twilio_api_client import TwilioApiError

client = TestClient(app)


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    monkeypatch = pytest.MonkeyPatch()
    monkeypatch.setenv("DATA_STORE", "memory")
    monkeypatch.setenv("PUBLIC_API_BASE_URL", "https://api.example.com/api")
    get_settings.cache_clear()
    clear_connection_store_cache()
    yield
    monkeypatch.undo()
    get_settings.cache_clear()
    clear_connection_store_cache()


class _FakeTwilioClient:
    def __init__(self, **kwargs) -> None:
        self.ensured: list[tuple[str, str | None]] = []
        self.closed: list[str] = []

    def ensure_room(self, room_name: str, status_callback_url: str | None = None) -> str:
        self.ensured.append((room_name, status_callback_url))
        return "RM100"

    def close_room(self, room_name: str) -> str | None:
        self.closed.append(room_name)
        return "RM100"


@pytest.fixture
def fake_twilio(monkeypatch: pytest.MonkeyPatch) -> _FakeTwilioClient:
    fake = _FakeTwilioClient()
    monkeypatch.setattr("app.services.connection_room_service.TwilioApiClient", lambda **kwargs: fake)
    return fake


def _seed_connection(**overrides) -> str:
    now = datetime(2025, 4, 2, 15, 0, tzinfo=UTC)
    document = {
        "_id": "conn-1",
        "team_id": "team-1",
        "proposer_id": "u1",
        "confirmer_id": "u2",
        "status": "scheduled",
        "room_name": "connect-conn-1",
        "room_url": "http://localhost:3000/connect/conn-1",
        "created_at": now,
        "updated_at": now,
    }
    document.update(overrides)
    return create_connection_store(get_settings()).save_connection(document)


def test_room_requires_caller_identity(fake_twilio: _FakeTwilioClient) -> None:
    _seed_connection()

    response = client.post("/api/connections/conn-1/room")

    assert response.status_code == 401
    assert fake_twilio.ensured == []


def test_room_rejects_unknown_connection(fake_twilio: _FakeTwilioClient) -> None:
    response = client.post("/api/connections/missing/room", headers={"X-User-Id": "u1"})

    assert response.status_code == 404


def test_room_rejects_non_participant(fake_twilio: _FakeTwilioClient) -> None:
    _seed_connection()

    response = client.post("/api/connections/conn-1/room", headers={"X-User-Id": "intruder"})

    assert response.status_code == 403
    assert fake_twilio.ensured == []


def test_room_rejects_cancelled_connection(fake_twilio: _FakeTwilioClient) -> None:
    _seed_connection(status="cancelled")

    response = client.post("/api/connections/conn-1/room", headers={"X-User-Id": "u1"})

    assert response.status_code == 409


def test_room_is_created_with_status_callback_and_started_once(fake_twilio: _FakeTwilioClient) -> None:
    _seed_connection()

    first = client.post("/api/connections/conn-1/room", headers={"X-User-Id": "u1"})
    started_at = create_connection_store(get_settings()).get_connection("conn-1")["started_at"]
    second = client.post("/api/v1/connections/conn-1/room", headers={"X-User-Id": "u2"})

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json() == {
        "connection_id": "conn-1",
        "room_name": "connect-conn-1",
        "room_sid": "RM100",
        "room_url": "http://localhost:3000/connect/conn-1",
    }
    assert fake_twilio.ensured == [
        ("connect-conn-1", "https://api.example.com/api/webhooks/video"),
        ("connect-conn-1", "https://api.example.com/api/webhooks/video"),
    ]
    stored = create_connection_store(get_settings()).get_connection("conn-1")
    assert stored["room_sid"] == "RM100"
    assert stored["started_at"] == started_at
    assert stored["status"] == "scheduled"


def test_room_provider_failure_returns_503(monkeypatch: pytest.MonkeyPatch) -> None:
    _seed_connection()

    class _BrokenTwilioClient(_FakeTwilioClient):
        def ensure_room(self, room_name: str, status_callback_url: str | None = None) -> str:
            raise TwilioApiError("Twilio API HTTP 500: boom", status=500)

    monkeypatch.setattr("app.services.connection_room_service.TwilioApiClient", _BrokenTwilioClient)

    response = client.post("/api/connections/conn-1/room", headers={"X-User-Id": "u1"})

    assert response.status_code == 503


def test_complete_closes_room_without_changing_status(fake_twilio: _FakeTwilioClient) -> None:
    _seed_connection()

    response = client.post("/api/connections/conn-1/complete", headers={"X-User-Id": "u2"})

    assert response.status_code == 200
    assert fake_twilio.closed == ["connect-conn-1"]
    stored = create_connection_store(get_settings()).get_connection("conn-1")
    assert stored["status"] == "scheduled"
    assert stored.get("transcript_status", "none") == "none"
