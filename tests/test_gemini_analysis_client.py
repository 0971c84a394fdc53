import io
import json
from http.client import RemoteDisconnected
from urllib import error

import pytest

from app.services.gemini_analysis_client import (
    GeminiAnalysisClient,
    GeminiAnalysisError,
    GeminiConfigurationError,
)

ANALYSIS_PAYLOAD = {
    "summary": "They swapped travel stories and planned a hike.",
    "sentimentScore": 82,
    "interactionBalance": 47,
    "topics": ["Travel", "Hiking"],
    "keyTakeaways": ["Plan a team hike"],
    "vibeScore": "Thriving",
    "questions": [{"question": "Best trip?", "sentiment": 90, "topics": ["Travel"]}],
}


class _FakeResponse:
    def __init__(self, payload: dict[str, object]) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> bool:
        return False

    def read(self) -> bytes:
        return self._body


def _candidate(text: str) -> dict[str, object]:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _client() -> GeminiAnalysisClient:
    return GeminiAnalysisClient(api_key="fake-api-key", model="gemini-test", timeout_seconds=0.1)


def test_analyze_retries_timeout_then_parses_fenced_json(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}
    captured: dict[str, object] = {}

    def fake_urlopen(req, *args: object, **kwargs: object) -> _FakeResponse:
        calls["count"] += 1
        if calls["count"] < 3:
            raise TimeoutError("request timed out")
        captured["body"] = json.loads(req.data.decode("utf-8"))
        return _FakeResponse(_candidate(f"```json\n{json.dumps(ANALYSIS_PAYLOAD)}\n```"))

    monkeypatch.setattr("app.services.gemini_analysis_client.sleep", lambda _: None)
    monkeypatch.setattr("app.services.gemini_analysis_client.request.urlopen", fake_urlopen)

    analysis = _client().analyze("We talked about trips.", ["Best trip?"])

    assert calls["count"] == 3
    assert analysis.sentiment_score == 82
    assert analysis.interaction_balance == 47
    assert analysis.key_takeaways == ["Plan a team hike"]
    assert analysis.questions[0].question == "Best trip?"
    prompt = captured["body"]["contents"][0]["parts"][0]["text"]
    assert '["Best trip?"]' in prompt
    assert captured["body"]["generationConfig"]["responseMimeType"] == "application/json"


def test_analyze_accepts_fractional_scores(monkeypatch: pytest.MonkeyPatch) -> None:
    payload = {
        **ANALYSIS_PAYLOAD,
        "sentimentScore": 72.5,
        "interactionBalance": 49.5,
        "questions": [{"question": "Best trip?", "sentiment": 88.25, "topics": ["Travel"]}],
    }
    monkeypatch.setattr(
        "app.services.gemini_analysis_client.request.urlopen",
        lambda *args, **kwargs: _FakeResponse(_candidate(json.dumps(payload))),
    )

    analysis = _client().analyze("We talked about trips.")

    assert analysis.sentiment_score == 72.5
    assert analysis.interaction_balance == 49.5
    assert analysis.questions[0].sentiment == 88.25


def test_analyze_truncates_long_transcripts(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, str] = {}

    def fake_urlopen(req, *args: object, **kwargs: object) -> _FakeResponse:
        captured["prompt"] = json.loads(req.data.decode("utf-8"))["contents"][0]["parts"][0]["text"]
        return _FakeResponse(_candidate(json.dumps(ANALYSIS_PAYLOAD)))

    monkeypatch.setattr("app.services.gemini_analysis_client.request.urlopen", fake_urlopen)

    _client().analyze("a" * 60_000)

    assert "a" * 50_000 in captured["prompt"]
    assert "a" * 50_001 not in captured["prompt"]


def test_analyze_fails_after_retries_on_remote_disconnect(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def fake_urlopen(*args: object, **kwargs: object) -> _FakeResponse:
        calls["count"] += 1
        raise RemoteDisconnected("closed")

    monkeypatch.setattr("app.services.gemini_analysis_client.sleep", lambda _: None)
    monkeypatch.setattr("app.services.gemini_analysis_client.request.urlopen", fake_urlopen)

    with pytest.raises(GeminiAnalysisError, match="connection was closed"):
        _client().analyze("hello")
    assert calls["count"] == 3


def test_analyze_does_not_retry_client_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def fake_urlopen(req, *args: object, **kwargs: object) -> _FakeResponse:
        calls["count"] += 1
        raise error.HTTPError(req.full_url, 400, "Bad Request", {}, io.BytesIO(b"bad key"))

    monkeypatch.setattr("app.services.gemini_analysis_client.sleep", lambda _: None)
    monkeypatch.setattr("app.services.gemini_analysis_client.request.urlopen", fake_urlopen)

    with pytest.raises(GeminiAnalysisError, match="HTTP 400"):
        _client().analyze("hello")
    assert calls["count"] == 1


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"candidates": []}, "missing candidates"),
        ({"candidates": [{"content": {"parts": [{"text": "   "}]}}]}, "did not include text"),
        (_candidate("The call went well."), "not valid JSON"),
        (_candidate(json.dumps({**ANALYSIS_PAYLOAD, "sentimentScore": 140})), "analysis schema"),
        (_candidate(json.dumps({"summary": "missing scores"})), "analysis schema"),
    ],
)
def test_analyze_rejects_unusable_model_output(
    monkeypatch: pytest.MonkeyPatch,
    payload: dict[str, object],
    message: str,
) -> None:
    monkeypatch.setattr(
        "app.services.gemini_analysis_client.request.urlopen",
        lambda *args, **kwargs: _FakeResponse(payload),
    )

    with pytest.raises(GeminiAnalysisError, match=message):
        _client().analyze("hello")


def test_analyze_requires_transcript_and_api_key() -> None:
    with pytest.raises(GeminiAnalysisError, match="No transcript"):
        _client().analyze("   ")
    with pytest.raises(GeminiConfigurationError):
        GeminiAnalysisClient(api_key="", model="gemini-test").analyze("hello")
