import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from app.core.config import Settings
from app.schemas.analysis import ConnectionAnalysis
from app.schemas.connection import (
    Connection,
    SummaryStatus,
    TranscriptStatus,
    transcript_statuses_leading_to,
)
from app.schemas.transcript import Transcript
from app.services.analytics_service import AnalyticsAggregator
from app.services.connection_store import ConnectionStore, create_connection_store
from app.services.gemini_analysis_client import GeminiAnalysisClient, GeminiAnalysisError

logger = logging.getLogger(__name__)


class PrivacyTier(StrEnum):
    standard = "tier_1_standard"
    controlled = "tier_2_controlled"
    private = "tier_3_private"


@dataclass(frozen=True)
class CompletionResult:
    transcript_persisted: bool
    analysis_status: str
    analytics_status: str = "skipped"


def privacy_tier_for(user: Mapping[str, Any] | None) -> PrivacyTier:
    raw_tier = (user or {}).get("privacy_tier")
    try:
        return PrivacyTier(raw_tier)
    except ValueError:
        return PrivacyTier.standard


class TranscriptCompletionService:
    def __init__(
        self,
        settings: Settings,
        store: ConnectionStore | None = None,
        analysis_client: GeminiAnalysisClient | None = None,
        aggregator: AnalyticsAggregator | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or create_connection_store(settings)
        self.analysis_client = analysis_client or GeminiAnalysisClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            timeout_seconds=settings.gemini_api_timeout_seconds,
        )
        self.aggregator = aggregator or AnalyticsAggregator(settings, connection_store=self.store)

    def complete(
        self,
        connection_id: str,
        transcript: Transcript,
        *,
        now: datetime | None = None,
    ) -> CompletionResult:
        now = now or datetime.now(UTC)
        document = self.store.get_connection(connection_id)
        if not document:
            logger.warning("Connection not found for transcript connection_id=%s", connection_id)
            return CompletionResult(transcript_persisted=False, analysis_status="skipped")
        connection = Connection.from_document(document)

        tiers = {
            privacy_tier_for(user)
            for user in self.store.get_users(list(connection.participant_ids)).values()
        }
        store_transcript = PrivacyTier.private not in tiers
        summary_status = (
            SummaryStatus.pending_approval
            if PrivacyTier.controlled in tiers
            else SummaryStatus.approved
        )

        transcript = transcript.model_copy(update={"completed_at": transcript.completed_at or now})
        persisted = self.store.update_connection(
            connection_id,
            {
                "transcript_status": TranscriptStatus.completed.value,
                "transcript": transcript.to_document() if store_transcript else None,
                "transcript_redacted": not store_transcript,
                "transcript_error": None,
                "updated_at": now,
            },
            expected={"transcript_status": transcript_statuses_leading_to(TranscriptStatus.completed)},
        )
        if not persisted:
            logger.info(
                "Transcript already settled, skipping persistence connection_id=%s",
                connection_id,
            )
            return CompletionResult(transcript_persisted=False, analysis_status="skipped")

        logger.info(
            "Transcript persisted connection_id=%s provider=%s sentences=%s stored_text=%s",
            connection_id,
            transcript.provider,
            len(transcript.sentences),
            store_transcript,
        )

        questions = list(dict.fromkeys(
            [*connection.questions, *(event.question for event in connection.question_events)],
        ))
        try:
            analysis = self.analysis_client.analyze(transcript.text, questions)
        except GeminiAnalysisError as exc:
            logger.exception("AI analysis failed connection_id=%s", connection_id)
            self.store.update_connection(
                connection_id,
                {"analysis_error": str(exc), "updated_at": datetime.now(UTC)},
            )
            return CompletionResult(transcript_persisted=True, analysis_status="failed")

        stored = self.store.update_connection(
            connection_id,
            {
                "analysis": analysis.model_dump(mode="json"),
                "analysis_error": None,
                "summary_status": summary_status.value,
                "updated_at": datetime.now(UTC),
            },
            expected={"analysis": [None]},
        )
        if not stored:
            logger.info("Analysis already stored connection_id=%s", connection_id)
            return CompletionResult(transcript_persisted=True, analysis_status="skipped")

        return CompletionResult(
            transcript_persisted=True,
            analysis_status="completed",
            analytics_status=self._aggregate(connection, analysis, now),
        )

    def _aggregate(self, connection: Connection, analysis: ConnectionAnalysis, now: datetime) -> str:
        try:
            self.aggregator.apply_completed_connection(connection, analysis, now=now)
        except Exception:
            logger.exception("Analytics aggregation failed connection_id=%s", connection.id)
            self.store.update_connection(
                connection.id,
                {"analytics_error": "aggregation failed", "updated_at": datetime.now(UTC)},
            )
            return "failed"
        return "completed"
