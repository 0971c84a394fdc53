import logging
from datetime import UTC, datetime

from app.core.config import Settings
from app.schemas.connection import (
    TRANSCRIPT_STATUS_TRANSITIONS,
    Connection,
    TranscriptStatus,
    transcript_statuses_leading_to,
)
from app.schemas.transcript import OperationTranscriptionJob
from app.schemas.webhook import TranscriptionCheckRequest, TranscriptionCheckResponse
from app.services.cloud_tasks_client import CloudTasksClient
from app.services.connection_store import ConnectionStore, create_connection_store
from app.services.google_api_client import GoogleAccessTokenProvider
from app.services.transcript_completion_service import TranscriptCompletionService
from app.services.transcription_adapter import TranscriptionAdapter, TranscriptionFailedError

logger = logging.getLogger(__name__)


class OperationPoller:
    """Drives a batch transcription operation to completion one queued check at a time."""

    def __init__(
        self,
        settings: Settings,
        store: ConnectionStore | None = None,
        adapter: TranscriptionAdapter | None = None,
        tasks_client: CloudTasksClient | None = None,
        completion_service: TranscriptCompletionService | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or create_connection_store(settings)
        self.adapter = adapter or TranscriptionAdapter(settings)
        self.tasks_client = tasks_client or CloudTasksClient(
            GoogleAccessTokenProvider(),
            project=settings.google_cloud_project,
            location=settings.google_cloud_location,
            queue=settings.cloud_tasks_queue,
            service_account_email=settings.cloud_tasks_service_account_email,
            timeout_seconds=settings.google_api_timeout_seconds,
        )
        self.completion_service = completion_service or TranscriptCompletionService(
            settings,
            store=self.store,
        )

    def enqueue_check(
        self,
        connection_id: str,
        operation_name: str,
        *,
        delay_seconds: int | None = None,
        attempt: int = 1,
    ) -> str:
        delay = self.settings.transcription_check_delay_seconds if delay_seconds is None else delay_seconds
        return self.tasks_client.create_http_task(
            url=self.settings.transcription_check_url,
            payload={
                "connectionId": connection_id,
                "operationName": operation_name,
                "attempt": attempt,
            },
            delay_seconds=delay,
            audience=self.settings.cloud_tasks_audience or None,
        )

    def handle_check(self, check: TranscriptionCheckRequest) -> TranscriptionCheckResponse:
        document = self.store.get_connection(check.connection_id)
        if not document:
            logger.warning("Transcription check for unknown connection connection_id=%s", check.connection_id)
            return self._response(check, "connection_not_found")

        connection = Connection.from_document(document)
        if not TRANSCRIPT_STATUS_TRANSITIONS[connection.transcript_status]:
            logger.info(
                "Transcription check skipped, status already terminal connection_id=%s status=%s",
                connection.id,
                connection.transcript_status,
            )
            return self._response(check, "already_settled")
        if connection.transcript_sid != check.operation_name:
            logger.info(
                "Transcription check skipped, operation superseded connection_id=%s operation=%s",
                connection.id,
                check.operation_name,
            )
            return self._response(check, "stale_operation")

        job = OperationTranscriptionJob(
            operation_name=check.operation_name,
            output_uri=connection.transcript_output_uri or "",
        )
        try:
            transcript = self.adapter.fetch_result(job)
        except TranscriptionFailedError as exc:
            self._settle(connection.id, TranscriptStatus.failed, str(exc))
            logger.warning(
                "Transcription operation failed connection_id=%s operation=%s reason=%s",
                connection.id,
                check.operation_name,
                exc,
            )
            return self._response(check, "failed")

        if transcript is None:
            if check.attempt >= self.settings.transcription_check_max_attempts:
                self._settle(
                    connection.id,
                    TranscriptStatus.abandoned,
                    f"Operation still running after {check.attempt} checks.",
                )
                logger.warning(
                    "Transcription polling abandoned connection_id=%s operation=%s attempts=%s",
                    connection.id,
                    check.operation_name,
                    check.attempt,
                )
                return self._response(check, "abandoned")

            if not self._claim_attempt(connection.id, check):
                logger.info(
                    "Transcription check already handled connection_id=%s operation=%s attempt=%s",
                    connection.id,
                    check.operation_name,
                    check.attempt,
                )
                return self._response(check, "duplicate")
            try:
                self.enqueue_check(connection.id, check.operation_name, attempt=check.attempt + 1)
            except Exception:
                # Release the claim so the queue's retry of this delivery can enqueue again.
                self.store.update_connection(
                    connection.id,
                    {"transcript_check_attempts": check.attempt - 1},
                    expected={"transcript_check_attempts": [check.attempt]},
                )
                raise
            logger.info(
                "Transcription still running connection_id=%s operation=%s attempt=%s",
                connection.id,
                check.operation_name,
                check.attempt,
            )
            return self._response(check, "pending")

        result = self.completion_service.complete(connection.id, transcript)
        if not result.transcript_persisted:
            return self._response(check, "already_settled")
        logger.info(
            "Transcription completed connection_id=%s operation=%s analysis_status=%s",
            connection.id,
            check.operation_name,
            result.analysis_status,
        )
        return self._response(check, "completed")

    def _claim_attempt(self, connection_id: str, check: TranscriptionCheckRequest) -> bool:
        previous_attempts: list[int | None] = [check.attempt - 1]
        if check.attempt == 1:
            previous_attempts.append(None)
        return self.store.update_connection(
            connection_id,
            {"transcript_check_attempts": check.attempt, "updated_at": datetime.now(UTC)},
            expected={
                "transcript_status": [TranscriptStatus.processing.value],
                "transcript_check_attempts": previous_attempts,
            },
        )

    def _settle(self, connection_id: str, status: TranscriptStatus, reason: str) -> bool:
        return self.store.update_connection(
            connection_id,
            {
                "transcript_status": status.value,
                "transcript_error": reason,
                "updated_at": datetime.now(UTC),
            },
            expected={"transcript_status": transcript_statuses_leading_to(status)},
        )

    @staticmethod
    def _response(check: TranscriptionCheckRequest, outcome: str) -> TranscriptionCheckResponse:
        return TranscriptionCheckResponse(
            connection_id=check.connection_id,
            operation_name=check.operation_name,
            outcome=outcome,
            attempt=check.attempt,
        )
