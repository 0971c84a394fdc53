import json
import logging
from html import escape
from typing import Any
from urllib import error, request

logger = logging.getLogger(__name__)


class PostmarkEmailError(Exception):
    pass


class PostmarkConfigurationError(PostmarkEmailError):
    pass


class PostmarkEmailClient:
    def __init__(
        self,
        server_token: str,
        from_address: str,
        timeout_seconds: float = 10.0,
        api_url: str = "https://api.postmarkapp.com",
    ) -> None:
        self.server_token = server_token
        self.from_address = from_address
        self.timeout_seconds = timeout_seconds
        self.api_url = api_url.rstrip("/")

    def send_connection_request(
        self,
        *,
        to: str,
        user_name: str,
        partner_name: str,
        connection_url: str,
        room_url: str,
    ) -> str:
        html_body = (
            f"<h1>Hi {escape(user_name)},</h1>"
            f"<p>It's time to connect with <strong>{escape(partner_name)}</strong>!</p>"
            "<p>Please propose some times that work for you.</p>"
            f'<a href="{escape(connection_url, quote=True)}">Plan Connection</a><br/>'
            "<p>Or if you prefer to meet now, you can jump straight into the video room:</p>"
            f'<a href="{escape(room_url, quote=True)}">Join Video Room</a>'
        )
        text_body = (
            f"Hi {user_name}. It's time to connect with {partner_name}! "
            f"Please propose some times that work for you: {connection_url}. "
            f"Or join the video room directly: {room_url}"
        )
        return self.send_email(
            to=to,
            subject=f"Action Required: Plan your connection with {partner_name}",
            html_body=html_body,
            text_body=text_body,
        )

    def send_email(self, *, to: str, subject: str, html_body: str, text_body: str) -> str:
        if not self.server_token or not self.from_address:
            raise PostmarkConfigurationError("Postmark server token or from address is not configured.")

        payload = {
            "From": self.from_address,
            "To": to,
            "Subject": subject,
            "HtmlBody": html_body,
            "TextBody": text_body,
            "MessageStream": "outbound",
        }
        req = request.Request(
            f"{self.api_url}/email",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "X-Postmark-Server-Token": self.server_token,
            },
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise PostmarkEmailError(
                f"Postmark API HTTP {exc.code}: {body or 'empty response body'}",
            ) from exc
        except error.URLError as exc:
            raise PostmarkEmailError(f"Postmark API connection error: {exc.reason}") from exc

        try:
            parsed_body: Any = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise PostmarkEmailError("Postmark API returned invalid JSON.") from exc
        if not isinstance(parsed_body, dict) or parsed_body.get("ErrorCode", 0) != 0:
            raise PostmarkEmailError(f"Postmark rejected the message: {parsed_body}")

        logger.info("Email sent to=%s message_id=%s", to, parsed_body.get("MessageID"))
        return str(parsed_body.get("MessageID", ""))
