import base64
import hashlib
import hmac
import io
import json
from urllib import error, parse

import pytest

from app.services.twilio_api_client import (
    TwilioApiClient,
    TwilioApiError,
    TwilioConfigurationError,
    UnsupportedMediaSourceError,
    validate_twilio_signature,
)


class _FakeResponse:
    def __init__(self, payload: dict[str, object]) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> bool:
        return False

    def read(self) -> bytes:
        return self._body


def _http_error(req, status: int, payload: dict[str, object]) -> error.HTTPError:
    return error.HTTPError(req.full_url, status, "error", {}, io.BytesIO(json.dumps(payload).encode("utf-8")))


def _client(**kwargs) -> TwilioApiClient:
    return TwilioApiClient(account_sid="AC123", auth_token="secret", intelligence_service_sid="GA123", **kwargs)


def test_ensure_room_returns_existing_room(monkeypatch: pytest.MonkeyPatch) -> None:
    requests: list[tuple[str, str]] = []

    def fake_urlopen(req, *args: object, **kwargs: object) -> _FakeResponse:
        requests.append((req.get_method(), req.full_url))
        return _FakeResponse({"sid": "RM_EXISTING"})

    monkeypatch.setattr("app.services.twilio_api_client.request.urlopen", fake_urlopen)

    assert _client().ensure_room("connect-abc") == "RM_EXISTING"
    assert requests == [("GET", "https://video.twilio.com/v1/Rooms/connect-abc")]


def test_ensure_room_creates_missing_room(monkeypatch: pytest.MonkeyPatch) -> None:
    created: dict[str, object] = {}

    def fake_urlopen(req, *args: object, **kwargs: object) -> _FakeResponse:
        if req.get_method() == "GET":
            raise _http_error(req, 404, {"code": 20404, "message": "The requested resource was not found"})
        created["form"] = dict(parse.parse_qsl(req.data.decode("utf-8")))
        created["auth"] = req.get_header("Authorization")
        return _FakeResponse({"sid": "RM_NEW"})

    monkeypatch.setattr("app.services.twilio_api_client.request.urlopen", fake_urlopen)

    room_sid = _client().ensure_room(
        "connect-abc",
        status_callback_url="https://api.example.com/api/webhooks/video",
    )

    assert room_sid == "RM_NEW"
    assert created["form"] == {
        "UniqueName": "connect-abc",
        "Type": "group",
        "RecordParticipantsOnConnect": "true",
        "UnusedRoomTimeout": "5",
        "EmptyRoomTimeout": "1",
        "StatusCallback": "https://api.example.com/api/webhooks/video",
        "StatusCallbackMethod": "POST",
    }
    assert created["auth"] == f"Basic {base64.b64encode(b'AC123:secret').decode('ascii')}"


def test_close_room_treats_missing_room_as_closed(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, *args: object, **kwargs: object) -> _FakeResponse:
        raise _http_error(req, 404, {"code": 20404, "message": "not found"})

    monkeypatch.setattr("app.services.twilio_api_client.request.urlopen", fake_urlopen)

    assert _client().close_room("connect-abc") is None


def test_create_composition_requests_all_audio(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, str] = {}

    def fake_urlopen(req, *args: object, **kwargs: object) -> _FakeResponse:
        captured.update(parse.parse_qsl(req.data.decode("utf-8")))
        return _FakeResponse({"sid": "CJ123"})

    monkeypatch.setattr("app.services.twilio_api_client.request.urlopen", fake_urlopen)

    assert _client().create_composition("RM123", "https://api.example.com/api/webhooks/video") == "CJ123"
    assert captured["AudioSources"] == "*"
    assert captured["Format"] == "mp4"
    assert captured["RoomSid"] == "RM123"


def test_create_transcript_raises_typed_error_for_rejected_source(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, *args: object, **kwargs: object) -> _FakeResponse:
        raise _http_error(req, 400, {"code": 20001, "message": "CJ123 is not a valid SID"})

    monkeypatch.setattr("app.services.twilio_api_client.request.urlopen", fake_urlopen)

    with pytest.raises(UnsupportedMediaSourceError):
        _client().create_transcript(source_sid="CJ123")


def test_create_transcript_keeps_server_errors_generic(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, *args: object, **kwargs: object) -> _FakeResponse:
        raise _http_error(req, 503, {"code": 20503, "message": "Service unavailable"})

    monkeypatch.setattr("app.services.twilio_api_client.request.urlopen", fake_urlopen)

    with pytest.raises(TwilioApiError) as exc_info:
        _client().create_transcript(source_sid="CJ123")
    assert not isinstance(exc_info.value, UnsupportedMediaSourceError)
    assert exc_info.value.status == 503


def test_list_transcript_sentences_follows_pages(monkeypatch: pytest.MonkeyPatch) -> None:
    pages = {
        "https://intelligence.twilio.com/v2/Transcripts/GT1/Sentences?PageSize=1000": {
            "sentences": [{"transcript": "Hi"}],
            "meta": {"next_page_url": "https://intelligence.twilio.com/v2/Transcripts/GT1/Sentences?Page=1"},
        },
        "https://intelligence.twilio.com/v2/Transcripts/GT1/Sentences?Page=1": {
            "sentences": [{"transcript": "there"}],
            "meta": {"next_page_url": None},
        },
    }

    monkeypatch.setattr(
        "app.services.twilio_api_client.request.urlopen",
        lambda req, *args, **kwargs: _FakeResponse(pages[req.full_url]),
    )

    sentences = _client().list_transcript_sentences("GT1")

    assert [sentence["transcript"] for sentence in sentences] == ["Hi", "there"]


def test_requests_without_credentials_fail_fast() -> None:
    with pytest.raises(TwilioConfigurationError):
        TwilioApiClient(account_sid="", auth_token="").create_composition("RM1", "https://example.com")
    with pytest.raises(TwilioConfigurationError):
        TwilioApiClient(account_sid="AC1", auth_token="secret").create_transcript(source_sid="CJ1")


def test_validate_twilio_signature_for_form_payload() -> None:
    url = "https://api.example.com/api/webhooks/video"
    params = [("RoomName", "connect-abc"), ("StatusCallbackEvent", "room-ended")]
    signed = url + "RoomNameconnect-abcStatusCallbackEventroom-ended"
    signature = base64.b64encode(hmac.new(b"secret", signed.encode("utf-8"), hashlib.sha1).digest()).decode()

    assert validate_twilio_signature(auth_token="secret", url=url, params=params, signature=signature)
    assert not validate_twilio_signature(auth_token="other", url=url, params=params, signature=signature)
    assert not validate_twilio_signature(auth_token="secret", url=url, params=params, signature=None)


def test_validate_twilio_signature_for_json_payload() -> None:
    body = b'{"transcript_sid":"GT1"}'
    url = f"https://api.example.com/api/webhooks/transcription?bodySHA256={hashlib.sha256(body).hexdigest()}"
    signature = base64.b64encode(hmac.new(b"secret", url.encode("utf-8"), hashlib.sha1).digest()).decode()

    assert validate_twilio_signature(auth_token="secret", url=url, params=[], signature=signature, raw_body=body)
    assert not validate_twilio_signature(
        auth_token="secret",
        url=url,
        params=[],
        signature=signature,
        raw_body=b'{"transcript_sid":"GT2"}',
    )
