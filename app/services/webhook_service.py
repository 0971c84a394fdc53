import logging
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, status

from app.core.config import Settings
from app.schemas.connection import (
    Connection,
    ConnectionStatus,
    TranscriptStatus,
    connection_statuses_leading_to,
    transcript_statuses_leading_to,
)
from app.schemas.transcript import ManagedTranscriptionJob, OperationTranscriptionJob
from app.schemas.webhook import WebhookResponse
from app.services.connection_store import ConnectionStore, create_connection_store
from app.services.google_api_client import GoogleCloudError
from app.services.operation_poller import OperationPoller
from app.services.transcript_completion_service import TranscriptCompletionService
from app.services.transcription_adapter import TranscriptionAdapter, TranscriptionFailedError
from app.services.twilio_api_client import TwilioApiClient, TwilioApiError, validate_twilio_signature

logger = logging.getLogger(__name__)

ROOM_NAME_PREFIX = "connect-"
MANAGED_TRANSCRIPT_READY_EVENT = "voice_intelligence_transcript_available"


def connection_id_from_room_name(room_name: str | None) -> str | None:
    if not room_name or not room_name.startswith(ROOM_NAME_PREFIX):
        return None
    return room_name[len(ROOM_NAME_PREFIX):] or None


def _transcript_sources(target: TranscriptStatus) -> list[str | None]:
    sources: list[str | None] = list(transcript_statuses_leading_to(target))
    if TranscriptStatus.none.value in sources:
        # Documents written before the field existed carry no status at all.
        sources.append(None)
    return sources


class WebhookService:
    def __init__(
        self,
        settings: Settings,
        store: ConnectionStore | None = None,
        twilio_client: TwilioApiClient | None = None,
        adapter: TranscriptionAdapter | None = None,
        poller: OperationPoller | None = None,
        completion_service: TranscriptCompletionService | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or create_connection_store(settings)
        self.twilio_client = twilio_client or TwilioApiClient(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            intelligence_service_sid=settings.twilio_intelligence_service_sid,
            timeout_seconds=settings.twilio_api_timeout_seconds,
            video_api_url=settings.twilio_video_api_url,
            intelligence_api_url=settings.twilio_intelligence_api_url,
        )
        self.adapter = adapter or TranscriptionAdapter(settings, twilio_client=self.twilio_client)
        self.completion_service = completion_service or TranscriptCompletionService(
            settings,
            store=self.store,
        )
        self.poller = poller or OperationPoller(
            settings,
            store=self.store,
            adapter=self.adapter,
            completion_service=self.completion_service,
        )

    def verify_signature(
        self,
        *,
        url: str,
        params: Sequence[tuple[str, str]],
        signature: str | None,
        raw_body: bytes | None = None,
    ) -> None:
        if not self.settings.signature_validation_enabled:
            return
        if not self.settings.twilio_auth_token:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Webhook signature validation is enabled but TWILIO_AUTH_TOKEN is not configured.",
            )
        if not validate_twilio_signature(
            auth_token=self.settings.twilio_auth_token,
            url=url,
            params=params,
            signature=signature,
            raw_body=raw_body,
        ):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid webhook signature.",
            )

    def handle_video_event(self, params: Mapping[str, Any]) -> WebhookResponse:
        event_type = str(params.get("StatusCallbackEvent") or "")
        if event_type == "room-ended":
            return self._handle_room_ended(params)
        if event_type == "composition-available":
            return self._handle_composition_available(params)
        if event_type == "composition-failed":
            return self._handle_composition_failed(params)
        if event_type == "recording-completed":
            return WebhookResponse(event_type=event_type, outcome="ignored")

        logger.info("Ignoring video event event=%s", event_type or "missing")
        return WebhookResponse(event_type=event_type or None, outcome="ignored")

    def handle_transcription_callback(self, payload: Mapping[str, Any]) -> WebhookResponse:
        transcript_sid = payload.get("TranscriptSid") or payload.get("transcript_sid")
        event_type = str(payload.get("event_type") or payload.get("Status") or "")
        if not transcript_sid:
            logger.warning("Transcription callback without transcript sid event=%s", event_type)
            return WebhookResponse(event_type=event_type or None, outcome="ignored")

        document = self.store.find_connection_by_transcript_sid(str(transcript_sid))
        if not document:
            logger.warning("Connection not found for transcript transcript_sid=%s", transcript_sid)
            return WebhookResponse(event_type=event_type, outcome="connection_not_found")
        connection_id = str(document["_id"])

        normalized_status = str(payload.get("Status") or "").lower()
        is_ready = normalized_status == "completed" or event_type == MANAGED_TRANSCRIPT_READY_EVENT
        if normalized_status in {"failed", "error", "canceled"}:
            self._record_transcript_failure(connection_id, f"Managed transcription reported {normalized_status}.")
            return WebhookResponse(event_type=event_type, connection_id=connection_id, outcome="failed")
        if not is_ready:
            return WebhookResponse(event_type=event_type, connection_id=connection_id, outcome="ignored")

        try:
            transcript = self.adapter.fetch_result(ManagedTranscriptionJob(transcript_sid=str(transcript_sid)))
        except (TwilioApiError, TranscriptionFailedError) as exc:
            logger.exception("Fetching managed transcript failed connection_id=%s", connection_id)
            self.store.update_connection(
                connection_id,
                {"transcript_error": str(exc), "updated_at": datetime.now(UTC)},
            )
            return WebhookResponse(
                event_type=event_type,
                connection_id=connection_id,
                outcome="transcript_fetch_failed",
                detail=str(exc),
            )
        if transcript is None:
            return WebhookResponse(event_type=event_type, connection_id=connection_id, outcome="pending")

        result = self.completion_service.complete(connection_id, transcript)
        return WebhookResponse(
            event_type=event_type,
            connection_id=connection_id,
            outcome="completed" if result.transcript_persisted else "duplicate",
            detail=f"analysis_status={result.analysis_status}",
        )

    def _handle_room_ended(self, params: Mapping[str, Any]) -> WebhookResponse:
        event_type = "room-ended"
        room_name = params.get("RoomName")
        connection_id = connection_id_from_room_name(room_name)
        document = self.store.get_connection(connection_id) if connection_id else None
        if not document:
            logger.warning("Connection not found for ended room room_name=%s", room_name)
            return WebhookResponse(event_type=event_type, outcome="connection_not_found")

        room_sid = params.get("RoomSid") or document.get("room_sid")
        now = datetime.now(UTC)
        completed = self.store.update_connection(
            connection_id,
            {
                "status": ConnectionStatus.completed.value,
                "ended_at": now,
                "duration_seconds": _parse_int(params.get("RoomDuration")),
                "room_sid": room_sid,
                "updated_at": now,
            },
            expected={"status": connection_statuses_leading_to(ConnectionStatus.completed)},
        )
        if not completed:
            logger.info("Room-ended already applied connection_id=%s", connection_id)
            return WebhookResponse(event_type=event_type, connection_id=connection_id, outcome="duplicate")

        if not room_sid:
            logger.warning("Room-ended event without room sid connection_id=%s", connection_id)
            return WebhookResponse(
                event_type=event_type,
                connection_id=connection_id,
                outcome="completed",
                detail="No room sid; composition not requested.",
            )

        try:
            composition_sid = self.twilio_client.create_composition(
                str(room_sid),
                self.settings.video_webhook_url,
            )
        except TwilioApiError as exc:
            logger.exception("Composition request failed connection_id=%s room_sid=%s", connection_id, room_sid)
            self.store.update_connection(
                connection_id,
                {"transcript_error": str(exc), "updated_at": datetime.now(UTC)},
            )
            return WebhookResponse(
                event_type=event_type,
                connection_id=connection_id,
                outcome="composition_request_failed",
                detail=str(exc),
            )

        self.store.update_connection(
            connection_id,
            {
                "composition_sid": composition_sid,
                "transcript_status": TranscriptStatus.composing.value,
                "updated_at": datetime.now(UTC),
            },
            expected={"transcript_status": _transcript_sources(TranscriptStatus.composing)},
        )
        logger.info(
            "Webhook processed event=%s connection_id=%s composition_sid=%s",
            event_type,
            connection_id,
            composition_sid,
        )
        return WebhookResponse(event_type=event_type, connection_id=connection_id, outcome="composition_requested")

    def _handle_composition_available(self, params: Mapping[str, Any]) -> WebhookResponse:
        event_type = "composition-available"
        room_sid = params.get("RoomSid")
        composition_sid = params.get("CompositionSid")
        document = self.store.find_connection_by_room_sid(str(room_sid)) if room_sid else None
        if not document or not composition_sid:
            logger.warning(
                "Connection not found for composition room_sid=%s composition_sid=%s",
                room_sid,
                composition_sid,
            )
            return WebhookResponse(event_type=event_type, outcome="connection_not_found")

        connection = Connection.from_document(document)
        claimed = self.store.update_connection(
            connection.id,
            {
                "composition_sid": composition_sid,
                "transcript_status": TranscriptStatus.processing.value,
                "updated_at": datetime.now(UTC),
            },
            expected={
                "status": [ConnectionStatus.completed.value],
                "transcript_status": [TranscriptStatus.none.value, TranscriptStatus.composing.value, None],
            },
        )
        if not claimed:
            logger.info(
                "Composition event does not apply connection_id=%s status=%s transcript_status=%s",
                connection.id,
                connection.status,
                connection.transcript_status,
            )
            return WebhookResponse(event_type=event_type, connection_id=connection.id, outcome="duplicate")

        try:
            job = self.adapter.start_transcription(str(composition_sid), room_sid=str(room_sid))
        except (TwilioApiError, GoogleCloudError) as exc:
            logger.exception("Starting transcription failed connection_id=%s", connection.id)
            self._record_transcript_failure(connection.id, str(exc))
            return WebhookResponse(
                event_type=event_type,
                connection_id=connection.id,
                outcome="transcription_start_failed",
                detail=str(exc),
            )
        except Exception:
            logger.exception("Unexpected error starting transcription connection_id=%s", connection.id)
            # Put the claim back so a redelivered event can start transcription again.
            self.store.update_connection(
                connection.id,
                {"transcript_status": connection.transcript_status.value, "updated_at": datetime.now(UTC)},
                expected={
                    "transcript_status": [TranscriptStatus.processing.value],
                    "transcript_sid": [connection.transcript_sid],
                },
            )
            raise

        updates: dict[str, Any] = {"updated_at": datetime.now(UTC), "transcript_check_attempts": 0}
        if isinstance(job, OperationTranscriptionJob):
            updates["transcript_sid"] = job.operation_name
            updates["transcript_output_uri"] = job.output_uri
        else:
            updates["transcript_sid"] = job.transcript_sid
        self.store.update_connection(connection.id, updates)

        if isinstance(job, OperationTranscriptionJob):
            try:
                self.poller.enqueue_check(connection.id, job.operation_name)
            except GoogleCloudError as exc:
                logger.exception("Enqueueing transcription check failed connection_id=%s", connection.id)
                self._record_transcript_failure(connection.id, str(exc))
                return WebhookResponse(
                    event_type=event_type,
                    connection_id=connection.id,
                    outcome="transcription_check_enqueue_failed",
                    detail=str(exc),
                )

        logger.info(
            "Webhook processed event=%s connection_id=%s job=%s",
            event_type,
            connection.id,
            type(job).__name__,
        )
        return WebhookResponse(event_type=event_type, connection_id=connection.id, outcome="transcription_started")

    def _handle_composition_failed(self, params: Mapping[str, Any]) -> WebhookResponse:
        event_type = "composition-failed"
        room_sid = params.get("RoomSid")
        document = self.store.find_connection_by_room_sid(str(room_sid)) if room_sid else None
        if not document:
            logger.warning("Connection not found for failed composition room_sid=%s", room_sid)
            return WebhookResponse(event_type=event_type, outcome="connection_not_found")

        connection_id = str(document["_id"])
        failed = self.store.update_connection(
            connection_id,
            {
                "transcript_status": TranscriptStatus.failed.value,
                "transcript_error": f"Composition failed composition_sid={params.get('CompositionSid')}",
                "updated_at": datetime.now(UTC),
            },
            expected={
                "status": [ConnectionStatus.completed.value],
                "transcript_status": _transcript_sources(TranscriptStatus.failed),
            },
        )
        logger.info("Webhook processed event=%s connection_id=%s applied=%s", event_type, connection_id, failed)
        return WebhookResponse(
            event_type=event_type,
            connection_id=connection_id,
            outcome="failed" if failed else "duplicate",
        )

    def _record_transcript_failure(self, connection_id: str, reason: str) -> bool:
        return self.store.update_connection(
            connection_id,
            {
                "transcript_status": TranscriptStatus.failed.value,
                "transcript_error": reason,
                "updated_at": datetime.now(UTC),
            },
            expected={"transcript_status": _transcript_sources(TranscriptStatus.failed)},
        )


def _parse_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
