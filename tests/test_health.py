import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.main import app

client = TestClient(app)


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    monkeypatch = pytest.MonkeyPatch()
    monkeypatch.setenv("DATA_STORE", "memory")
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "secret")
    monkeypatch.setenv("TWILIO_INTELLIGENCE_SERVICE_SID", "")
    monkeypatch.setenv("GEMINI_API_KEY", "")
    get_settings.cache_clear()
    yield
    monkeypatch.undo()
    get_settings.cache_clear()


def test_health_endpoint_returns_expected_shape() -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert "service" in data
    assert "timestamp" in data
    assert data["data_store"] == "memory"


def test_health_reports_configured_integrations_without_secrets() -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    integrations = response.json()["integrations"]
    assert integrations["video"] is True
    assert integrations["managed_transcription"] is False
    assert integrations["ai_analysis"] is False
    assert "secret" not in response.text


def test_lifespan_starts_and_stops_schedule_runner(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[str] = []
    monkeypatch.setattr("app.main.start_schedule_runner", lambda settings: events.append("start"))
    monkeypatch.setattr("app.main.stop_schedule_runner", lambda: events.append("stop"))

    with TestClient(app) as lifespan_client:
        assert lifespan_client.get("/api/health").status_code == 200
        assert events == ["start"]

    assert events == ["start", "stop"]
