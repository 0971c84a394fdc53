import base64
import hashlib
import hmac
import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any
from urllib import error, parse, request

logger = logging.getLogger(__name__)

TWILIO_NOT_FOUND_CODE = 20404


class TwilioApiError(Exception):
    def __init__(self, message: str, *, status: int | None = None, code: int | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


class TwilioConfigurationError(TwilioApiError):
    pass


class UnsupportedMediaSourceError(TwilioApiError):
    """The speech-intelligence service refused the media SID as a transcription source."""


class _NoRedirectHandler(request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None


class TwilioApiClient:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        intelligence_service_sid: str = "",
        timeout_seconds: float = 15.0,
        video_api_url: str = "https://video.twilio.com/v1",
        intelligence_api_url: str = "https://intelligence.twilio.com/v2",
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.intelligence_service_sid = intelligence_service_sid
        self.timeout_seconds = timeout_seconds
        self.video_api_url = video_api_url.rstrip("/")
        self.intelligence_api_url = intelligence_api_url.rstrip("/")

    @property
    def supports_managed_transcription(self) -> bool:
        return bool(self.intelligence_service_sid)

    def ensure_room(self, room_name: str, status_callback_url: str | None = None) -> str:
        quoted_name = parse.quote(room_name, safe="")
        try:
            existing_room = self._request("GET", f"{self.video_api_url}/Rooms/{quoted_name}")
            logger.info("Twilio room already exists room_name=%s", room_name)
            return str(existing_room["sid"])
        except TwilioApiError as exc:
            if not _is_not_found(exc):
                raise

        form: dict[str, str] = {
            "UniqueName": room_name,
            "Type": "group",
            "RecordParticipantsOnConnect": "true",
            "UnusedRoomTimeout": "5",
            "EmptyRoomTimeout": "1",
        }
        if status_callback_url:
            form["StatusCallback"] = status_callback_url
            form["StatusCallbackMethod"] = "POST"
        room = self._request("POST", f"{self.video_api_url}/Rooms", form=form)
        logger.info("Twilio room created room_name=%s room_sid=%s", room_name, room.get("sid"))
        return str(room["sid"])

    def close_room(self, room_name: str) -> str | None:
        quoted_name = parse.quote(room_name, safe="")
        try:
            room = self._request(
                "POST",
                f"{self.video_api_url}/Rooms/{quoted_name}",
                form={"Status": "completed"},
            )
        except TwilioApiError as exc:
            if _is_not_found(exc):
                logger.warning("Twilio room not found or already closed room_name=%s", room_name)
                return None
            raise
        return str(room["sid"])

    def create_composition(self, room_sid: str, callback_url: str) -> str:
        composition = self._request(
            "POST",
            f"{self.video_api_url}/Compositions",
            form={
                "RoomSid": room_sid,
                "AudioSources": "*",
                "Format": "mp4",
                "StatusCallback": callback_url,
                "StatusCallbackMethod": "POST",
            },
        )
        logger.info(
            "Twilio composition requested room_sid=%s composition_sid=%s",
            room_sid,
            composition.get("sid"),
        )
        return str(composition["sid"])

    def fetch_signed_media_url(self, media_sid: str, room_sid: str | None = None) -> str:
        if media_sid.startswith("CJ"):
            media_url = f"{self.video_api_url}/Compositions/{media_sid}/Media"
        elif media_sid.startswith("RT") and room_sid:
            media_url = f"{self.video_api_url}/Rooms/{room_sid}/Recordings/{media_sid}/Media"
        else:
            raise TwilioApiError(f"No media endpoint is known for SID {media_sid}.")

        req = request.Request(media_url, headers=self._headers(), method="GET")
        opener = request.build_opener(_NoRedirectHandler)
        try:
            with opener.open(req, timeout=self.timeout_seconds) as response:
                body = response.read()
        except error.HTTPError as exc:
            if exc.code in {301, 302, 307} and exc.headers.get("Location"):
                return str(exc.headers["Location"])
            raise self._to_api_error(exc) from exc
        except error.URLError as exc:
            raise TwilioApiError(f"Twilio API connection error: {exc.reason}") from exc

        parsed_body = _loads_object(body)
        redirect_to = parsed_body.get("redirect_to") if parsed_body else None
        if not isinstance(redirect_to, str) or not redirect_to:
            raise TwilioApiError(f"Twilio media response for {media_sid} did not include a redirect.")
        return redirect_to

    def create_transcript(
        self,
        *,
        source_sid: str | None = None,
        media_url: str | None = None,
    ) -> str:
        if not self.intelligence_service_sid:
            raise TwilioConfigurationError("TWILIO_INTELLIGENCE_SERVICE_SID is not configured.")

        media_properties: dict[str, str] = {}
        if source_sid:
            media_properties["source_sid"] = source_sid
        if media_url:
            media_properties["media_url"] = media_url
        if not media_properties:
            raise ValueError("create_transcript requires source_sid or media_url.")

        try:
            transcript = self._request(
                "POST",
                f"{self.intelligence_api_url}/Transcripts",
                form={
                    "ServiceSid": self.intelligence_service_sid,
                    "Channel": json.dumps({"media_properties": media_properties}),
                },
            )
        except TwilioApiError as exc:
            if source_sid and _is_unsupported_source(exc):
                raise UnsupportedMediaSourceError(
                    str(exc),
                    status=exc.status,
                    code=exc.code,
                ) from exc
            raise
        return str(transcript["sid"])

    def list_transcript_sentences(self, transcript_sid: str, page_size: int = 1000) -> list[dict[str, Any]]:
        query = parse.urlencode({"PageSize": page_size})
        next_url: str | None = (
            f"{self.intelligence_api_url}/Transcripts/{parse.quote(transcript_sid, safe='')}/Sentences?{query}"
        )
        sentences: list[dict[str, Any]] = []
        while next_url:
            page = self._request("GET", next_url)
            raw_sentences = page.get("sentences")
            if isinstance(raw_sentences, list):
                sentences.extend(item for item in raw_sentences if isinstance(item, dict))
            meta = page.get("meta")
            next_url = meta.get("next_page_url") if isinstance(meta, Mapping) else None
        return sentences

    def _request(
        self,
        method: str,
        url: str,
        *,
        form: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        if not self.account_sid or not self.auth_token:
            raise TwilioConfigurationError("Twilio credentials are not configured.")

        data = parse.urlencode(dict(form)).encode("utf-8") if form is not None else None
        headers = self._headers()
        if data is not None:
            headers["Content-Type"] = "application/x-www-form-urlencoded"
        req = request.Request(url, data=data, headers=headers, method=method)

        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                response_body = response.read()
        except error.HTTPError as exc:
            raise self._to_api_error(exc) from exc
        except error.URLError as exc:
            raise TwilioApiError(f"Twilio API connection error: {exc.reason}") from exc

        parsed_body = _loads_object(response_body)
        if parsed_body is None:
            raise TwilioApiError("Twilio API returned invalid JSON.")
        return parsed_body

    def _headers(self) -> dict[str, str]:
        credentials = f"{self.account_sid}:{self.auth_token}".encode("utf-8")
        return {
            "Authorization": f"Basic {base64.b64encode(credentials).decode('ascii')}",
            "Accept": "application/json",
        }

    def _to_api_error(self, exc: error.HTTPError) -> TwilioApiError:
        body = exc.read().decode("utf-8", errors="ignore")
        parsed_body = _loads_object(body.encode("utf-8")) or {}
        raw_code = parsed_body.get("code")
        code = raw_code if isinstance(raw_code, int) else None
        message = parsed_body.get("message") or body or "empty response body"
        return TwilioApiError(f"Twilio API HTTP {exc.code}: {message}", status=exc.code, code=code)


def validate_twilio_signature(
    *,
    auth_token: str,
    url: str,
    params: Sequence[tuple[str, str]],
    signature: str | None,
    raw_body: bytes | None = None,
) -> bool:
    """Check an ``X-Twilio-Signature`` header.

    Form callbacks sign the URL followed by every POST parameter sorted by name.
    JSON callbacks sign the URL alone and carry the body digest in the
    ``bodySHA256`` query parameter.
    """
    if not signature or not auth_token:
        return False

    query = dict(parse.parse_qsl(parse.urlsplit(url).query))
    body_digest = query.get("bodySHA256")
    if body_digest is not None:
        if raw_body is None:
            return False
        computed_body_digest = hashlib.sha256(raw_body).hexdigest()
        if not hmac.compare_digest(computed_body_digest, body_digest):
            return False
        signed_payload = url
    else:
        signed_payload = url + "".join(f"{key}{value}" for key, value in sorted(params))

    computed_signature = base64.b64encode(
        hmac.new(
            key=auth_token.encode("utf-8"),
            msg=signed_payload.encode("utf-8"),
            digestmod=hashlib.sha1,
        ).digest(),
    ).decode("ascii")
    return hmac.compare_digest(computed_signature, signature.strip())


def _is_not_found(exc: TwilioApiError) -> bool:
    return exc.code == TWILIO_NOT_FOUND_CODE or exc.status == 404


def _is_unsupported_source(exc: TwilioApiError) -> bool:
    return (
        exc.code == TWILIO_NOT_FOUND_CODE
        or exc.status == 400
        or "not a valid SID" in str(exc)
    )


def _loads_object(raw: bytes) -> dict[str, Any] | None:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
