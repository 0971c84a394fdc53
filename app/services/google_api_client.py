import json
import logging
from collections.abc import Mapping
from threading import Lock
from typing import Any, BinaryIO
from urllib import error, request

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


class GoogleCloudError(Exception):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class GoogleCloudConfigurationError(GoogleCloudError):
    pass


class GoogleAccessTokenProvider:
    """Application-default credentials, refreshed lazily and shared across clients."""

    def __init__(self, scopes: tuple[str, ...] = (CLOUD_PLATFORM_SCOPE,)) -> None:
        self.scopes = scopes
        self._credentials: Any = None
        self._lock = Lock()

    def get_token(self) -> str:
        import google.auth
        from google.auth.exceptions import DefaultCredentialsError, RefreshError, TransportError
        from google.auth.transport.requests import Request as GoogleAuthRequest

        with self._lock:
            try:
                if self._credentials is None:
                    self._credentials, _ = google.auth.default(scopes=list(self.scopes))
                if not self._credentials.valid:
                    self._credentials.refresh(GoogleAuthRequest())
            except DefaultCredentialsError as exc:
                raise GoogleCloudConfigurationError(
                    "Google application-default credentials are not configured.",
                ) from exc
            except RefreshError as exc:
                raise GoogleCloudError(f"Unable to refresh Google credentials: {exc}") from exc
            except TransportError as exc:
                raise GoogleCloudError(f"Google credential endpoint unreachable: {exc}") from exc
            return str(self._credentials.token)


def verify_service_identity_token(
    token: str,
    *,
    audience: str,
    service_account_email: str,
) -> dict[str, Any] | None:
    """Return the OIDC claims when ``token`` was minted for our own service account."""
    from google.auth.transport.requests import Request as GoogleAuthRequest
    from google.oauth2 import id_token

    try:
        claims = id_token.verify_oauth2_token(token, GoogleAuthRequest(), audience=audience)
    except ValueError as exc:
        logger.warning("Rejected service identity token reason=%s", exc)
        return None

    if claims.get("email") != service_account_email or not claims.get("email_verified", False):
        logger.warning("Rejected service identity token email=%s", claims.get("email"))
        return None
    return dict(claims)


class GoogleApiClient:
    def __init__(
        self,
        token_provider: GoogleAccessTokenProvider,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.token_provider = token_provider
        self.timeout_seconds = timeout_seconds

    def _request_json(
        self,
        method: str,
        url: str,
        payload: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        headers = {"Accept": "application/json"}
        if data is not None:
            headers["Content-Type"] = "application/json"
        response_body = self._send(method, url, data=data, headers=headers)
        if not response_body:
            return {}
        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise GoogleCloudError("Google API returned invalid JSON.") from exc
        if not isinstance(parsed_body, dict):
            raise GoogleCloudError("Google API response is not a JSON object.")
        return parsed_body

    def _send(
        self,
        method: str,
        url: str,
        *,
        data: bytes | BinaryIO | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> bytes:
        request_headers = {"Authorization": f"Bearer {self.token_provider.get_token()}"}
        request_headers.update(headers or {})
        req = request.Request(url, data=data, headers=request_headers, method=method)
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                return response.read()
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise GoogleCloudError(
                f"Google API HTTP {exc.code}: {body or 'empty response body'}",
                status=exc.code,
            ) from exc
        except error.URLError as exc:
            raise GoogleCloudError(f"Google API connection error: {exc.reason}") from exc
