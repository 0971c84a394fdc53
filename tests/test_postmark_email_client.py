import io
import json
from urllib import error

import pytest

from app.services.postmark_email_client import (
    PostmarkConfigurationError,
    PostmarkEmailClient,
    PostmarkEmailError,
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


def _client() -> PostmarkEmailClient:
    return PostmarkEmailClient(server_token="pm-token", from_address="admin@example.com")


def test_connection_request_carries_both_links(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_urlopen(req, *args: object, **kwargs: object) -> _FakeResponse:
        captured["url"] = req.full_url
        captured["token"] = req.get_header("X-postmark-server-token")
        captured["payload"] = json.loads(req.data.decode("utf-8"))
        return _FakeResponse({"ErrorCode": 0, "MessageID": "msg-1"})

    monkeypatch.setattr("app.services.postmark_email_client.request.urlopen", fake_urlopen)

    message_id = _client().send_connection_request(
        to="ana@example.com",
        user_name="Ana",
        partner_name="Bo <Ops>",
        connection_url="http://localhost:3000/schedule/conn-1",
        room_url="http://localhost:3000/connect/conn-1",
    )

    assert message_id == "msg-1"
    assert captured["url"] == "https://api.postmarkapp.com/email"
    assert captured["token"] == "pm-token"
    payload = captured["payload"]
    assert payload["To"] == "ana@example.com"
    assert payload["MessageStream"] == "outbound"
    assert payload["Subject"] == "Action Required: Plan your connection with Bo <Ops>"
    assert "http://localhost:3000/schedule/conn-1" in payload["HtmlBody"]
    assert "http://localhost:3000/connect/conn-1" in payload["HtmlBody"]
    assert "Bo &lt;Ops&gt;" in payload["HtmlBody"]


def test_rejected_message_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "app.services.postmark_email_client.request.urlopen",
        lambda *args, **kwargs: _FakeResponse({"ErrorCode": 300, "Message": "Invalid email request"}),
    )

    with pytest.raises(PostmarkEmailError, match="rejected"):
        _client().send_email(to="x@example.com", subject="s", html_body="<p>h</p>", text_body="t")


def test_http_error_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, *args: object, **kwargs: object) -> _FakeResponse:
        raise error.HTTPError(req.full_url, 422, "Unprocessable", {}, io.BytesIO(b'{"ErrorCode":406}'))

    monkeypatch.setattr("app.services.postmark_email_client.request.urlopen", fake_urlopen)

    with pytest.raises(PostmarkEmailError, match="HTTP 422"):
        _client().send_email(to="x@example.com", subject="s", html_body="<p>h</p>", text_body="t")


def test_missing_token_fails_fast() -> None:
    with pytest.raises(PostmarkConfigurationError):
        PostmarkEmailClient(server_token="", from_address="admin@example.com").send_email(
            to="x@example.com",
            subject="s",
            html_body="h",
            text_body="t",
        )
