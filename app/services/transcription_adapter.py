import logging
import re
from collections.abc import Mapping, Sequence
from typing import Any

from app.core.config import Settings
from app.schemas.transcript import (
    ManagedTranscriptionJob,
    OperationTranscriptionJob,
    Transcript,
    TranscriptionJob,
    TranscriptProvider,
    TranscriptSentence,
    TranscriptWord,
)
from app.services.cloud_storage_client import CloudStorageClient
from app.services.google_api_client import GoogleAccessTokenProvider
from app.services.twilio_api_client import TwilioApiClient, UnsupportedMediaSourceError
from app.services.video_intelligence_client import VideoIntelligenceClient

logger = logging.getLogger(__name__)

DURATION_PATTERN = re.compile(r"^\s*(-?\d+(?:\.\d+)?)s\s*$")
TRANSCRIPTION_BLOB_PREFIX = "transcriptions"


class TranscriptionFailedError(Exception):
    """The transcription job finished with a terminal error."""


class TranscriptionAdapter:
    def __init__(
        self,
        settings: Settings,
        twilio_client: TwilioApiClient | None = None,
        storage_client: CloudStorageClient | None = None,
        video_client: VideoIntelligenceClient | None = None,
    ) -> None:
        self.settings = settings
        token_provider: GoogleAccessTokenProvider | None = None
        if storage_client is None or video_client is None:
            token_provider = GoogleAccessTokenProvider()
        self.twilio_client = twilio_client or TwilioApiClient(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            intelligence_service_sid=settings.twilio_intelligence_service_sid,
            timeout_seconds=settings.twilio_api_timeout_seconds,
            video_api_url=settings.twilio_video_api_url,
            intelligence_api_url=settings.twilio_intelligence_api_url,
        )
        self.storage_client = storage_client or CloudStorageClient(
            token_provider,
            bucket=settings.storage_bucket,
            timeout_seconds=settings.google_api_timeout_seconds,
        )
        self.video_client = video_client or VideoIntelligenceClient(
            token_provider,
            language_code=settings.video_intelligence_language_code,
            timeout_seconds=settings.google_api_timeout_seconds,
        )

    def start_transcription(self, media_sid: str, room_sid: str | None = None) -> TranscriptionJob:
        if not self.twilio_client.supports_managed_transcription:
            logger.info("Managed transcription not configured, using batch provider media_sid=%s", media_sid)
            return self._start_operation(media_sid, room_sid)

        try:
            transcript_sid = self.twilio_client.create_transcript(source_sid=media_sid)
        except UnsupportedMediaSourceError as exc:
            logger.info(
                "Managed transcription rejected media source media_sid=%s reason=%s",
                media_sid,
                exc,
            )
            if media_sid.startswith("CJ"):
                return self._start_operation(media_sid, room_sid)
            if media_sid.startswith("RT") and room_sid:
                media_url = self.twilio_client.fetch_signed_media_url(media_sid, room_sid=room_sid)
                transcript_sid = self.twilio_client.create_transcript(media_url=media_url)
                logger.info(
                    "Managed transcription started from media URL media_sid=%s transcript_sid=%s",
                    media_sid,
                    transcript_sid,
                )
                return ManagedTranscriptionJob(transcript_sid=transcript_sid)
            raise

        logger.info(
            "Managed transcription started media_sid=%s transcript_sid=%s",
            media_sid,
            transcript_sid,
        )
        return ManagedTranscriptionJob(transcript_sid=transcript_sid)

    def fetch_result(self, job: TranscriptionJob) -> Transcript | None:
        """Return the finished transcript, or ``None`` while the job is still running."""
        if isinstance(job, ManagedTranscriptionJob):
            sentences = self.twilio_client.list_transcript_sentences(job.transcript_sid)
            return normalize_intelligence_sentences(sentences)

        operation = self.video_client.get_operation(job.operation_name)
        if not operation.get("done"):
            return None

        operation_error = operation.get("error")
        if operation_error:
            message = (
                operation_error.get("message")
                if isinstance(operation_error, Mapping)
                else str(operation_error)
            )
            raise TranscriptionFailedError(message or "Video Intelligence operation failed.")

        response = operation.get("response")
        if isinstance(response, Mapping) and _has_speech_transcriptions(response):
            return normalize_video_intelligence_result(response)
        return normalize_video_intelligence_result(self.storage_client.download_json(job.output_uri))

    def _start_operation(self, media_sid: str, room_sid: str | None) -> OperationTranscriptionJob:
        media_url = self.twilio_client.fetch_signed_media_url(media_sid, room_sid=room_sid)
        input_uri = self.storage_client.upload_from_url(
            media_url,
            f"{TRANSCRIPTION_BLOB_PREFIX}/{media_sid}.mp4",
        )
        output_uri = self.storage_client.gcs_uri(f"{TRANSCRIPTION_BLOB_PREFIX}/{media_sid}.json")
        operation_name = self.video_client.annotate_speech(input_uri, output_uri)
        return OperationTranscriptionJob(operation_name=operation_name, output_uri=output_uri)


def normalize_intelligence_sentences(sentences: Sequence[Mapping[str, Any]]) -> Transcript:
    normalized = [
        TranscriptSentence(
            transcript=str(_field(sentence, "transcript") or "").strip(),
            confidence=_as_float(_field(sentence, "confidence")),
            start_time=parse_duration(_field(sentence, "start_time")),
            end_time=parse_duration(_field(sentence, "end_time")),
            words=_normalize_words(_field(sentence, "words")),
        )
        for sentence in sentences
    ]
    return Transcript(
        text=" ".join(sentence.transcript for sentence in normalized if sentence.transcript),
        sentences=normalized,
        provider=TranscriptProvider.twilio_intelligence,
    )


def normalize_video_intelligence_result(payload: Mapping[str, Any]) -> Transcript:
    """Normalize a speech-transcription result from either its JSON file or its API form.

    The file written to ``outputUri`` uses snake_case keys and ``{seconds, nanos}``
    durations; the operation response uses camelCase keys and ``"1.5s"`` strings.
    """
    annotation_results = _field(payload, "annotation_results") or []
    speech_transcriptions: list[Any] = []
    for annotation in annotation_results:
        if isinstance(annotation, Mapping):
            speech_transcriptions.extend(_field(annotation, "speech_transcriptions") or [])

    sentences: list[TranscriptSentence] = []
    for speech_transcription in speech_transcriptions:
        alternatives = _field(speech_transcription, "alternatives") or []
        if not alternatives or not isinstance(alternatives[0], Mapping):
            continue
        alternative = alternatives[0]
        text = str(_field(alternative, "transcript") or "").strip()
        if not text:
            continue
        words = _normalize_words(_field(alternative, "words"))
        sentences.append(
            TranscriptSentence(
                transcript=text,
                confidence=_as_float(_field(alternative, "confidence")),
                start_time=words[0].start_time if words else None,
                end_time=words[-1].end_time if words else None,
                words=words,
            )
        )

    return Transcript(
        text=" ".join(sentence.transcript for sentence in sentences),
        sentences=sentences,
        provider=TranscriptProvider.google_video_intelligence,
    )


def parse_duration(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = DURATION_PATTERN.match(value)
        if match:
            return float(match.group(1))
        try:
            return float(value)
        except ValueError:
            return None
    if isinstance(value, Mapping):
        seconds = _as_float(value.get("seconds")) or 0.0
        nanos = _as_float(value.get("nanos")) or 0.0
        return seconds + nanos / 1_000_000_000
    return None


def _normalize_words(raw_words: Any) -> list[TranscriptWord]:
    if not isinstance(raw_words, list):
        return []
    words: list[TranscriptWord] = []
    for raw_word in raw_words:
        if not isinstance(raw_word, Mapping):
            continue
        word = _field(raw_word, "word")
        if not isinstance(word, str) or not word:
            continue
        words.append(
            TranscriptWord(
                word=word,
                start_time=parse_duration(_field(raw_word, "start_time")),
                end_time=parse_duration(_field(raw_word, "end_time")),
                confidence=_as_float(_field(raw_word, "confidence")),
            )
        )
    return words


def _has_speech_transcriptions(response: Mapping[str, Any]) -> bool:
    for annotation in _field(response, "annotation_results") or []:
        if isinstance(annotation, Mapping) and _field(annotation, "speech_transcriptions"):
            return True
    return False


def _field(data: Any, snake_name: str) -> Any:
    if not isinstance(data, Mapping):
        return None
    if snake_name in data:
        return data[snake_name]
    head, *rest = snake_name.split("_")
    return data.get(head + "".join(part.title() for part in rest))


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
