import json

import pytest

from app.core.config import get_settings
from app.schemas.transcript import ManagedTranscriptionJob, OperationTranscriptionJob, TranscriptProvider
from app.services.transcription_adapter import (
    TranscriptionAdapter,
    TranscriptionFailedError,
    normalize_intelligence_sentences,
    normalize_video_intelligence_result,
    parse_duration,
)
from app.services.twilio_api_client import TwilioApiError, UnsupportedMediaSourceError

SNAKE_CASE_RESULT = {
    "annotation_results": [
        {
            "input_uri": "/bucket/transcriptions/CJ123.mp4",
            "speech_transcriptions": [
                {
                    "alternatives": [
                        {
                            "transcript": "hello there",
                            "confidence": 0.91,
                            "words": [
                                {
                                    "start_time": {"seconds": 1, "nanos": 500000000},
                                    "end_time": {"seconds": 2},
                                    "word": "hello",
                                    "confidence": 0.95,
                                },
                                {
                                    "start_time": {"seconds": 2},
                                    "end_time": {"seconds": 2, "nanos": 800000000},
                                    "word": "there",
                                },
                            ],
                        },
                    ],
                },
                {"alternatives": [{"transcript": "how was the trip", "confidence": 0.87}]},
                {"alternatives": []},
            ],
        },
    ],
}

CAMEL_CASE_RESULT = {
    "annotationResults": [
        {
            "inputUri": "/bucket/transcriptions/CJ123.mp4",
            "speechTranscriptions": [
                {
                    "alternatives": [
                        {
                            "transcript": "hello there",
                            "confidence": 0.91,
                            "words": [
                                {"startTime": "1.500s", "endTime": "2s", "word": "hello", "confidence": 0.95},
                                {"startTime": "2s", "endTime": "2.800s", "word": "there"},
                            ],
                        },
                    ],
                },
                {"alternatives": [{"transcript": "how was the trip", "confidence": 0.87}]},
                {"alternatives": []},
            ],
        },
    ],
}


class _FakeTwilioClient:
    def __init__(self, *, managed: bool = True, reject: TwilioApiError | None = None) -> None:
        self.supports_managed_transcription = managed
        self.reject = reject
        self.create_calls: list[dict[str, str | None]] = []
        self.signed_url_calls: list[tuple[str, str | None]] = []

    def create_transcript(self, *, source_sid: str | None = None, media_url: str | None = None) -> str:
        self.create_calls.append({"source_sid": source_sid, "media_url": media_url})
        if source_sid and self.reject:
            raise self.reject
        return "GT123"

    def fetch_signed_media_url(self, media_sid: str, room_sid: str | None = None) -> str:
        self.signed_url_calls.append((media_sid, room_sid))
        return f"https://media.example.com/{media_sid}?signature=abc"

    def list_transcript_sentences(self, transcript_sid: str) -> list[dict[str, object]]:
        return [
            {"transcript": "Hi!", "confidence": 0.9, "start_time": 0.2, "end_time": 0.8},
            {"transcript": "Hello, how are you?", "confidence": 0.8, "start_time": 1.0, "end_time": 2.4},
        ]


class _FakeStorageClient:
    def __init__(self, stored_json: dict | None = None) -> None:
        self.uploads: list[tuple[str, str]] = []
        self.stored_json = stored_json or {}

    def upload_from_url(self, source_url: str, object_name: str) -> str:
        self.uploads.append((source_url, object_name))
        return f"gs://bucket/{object_name}"

    def gcs_uri(self, object_name: str) -> str:
        return f"gs://bucket/{object_name}"

    def download_json(self, gcs_uri: str) -> dict:
        return self.stored_json


class _FakeVideoClient:
    def __init__(self, operation: dict | None = None) -> None:
        self.annotations: list[tuple[str, str]] = []
        self.operation = operation or {"done": False}

    def annotate_speech(self, input_uri: str, output_uri: str) -> str:
        self.annotations.append((input_uri, output_uri))
        return "projects/p/locations/us-east1/operations/42"

    def get_operation(self, operation_name: str) -> dict:
        return self.operation


def _adapter(twilio: _FakeTwilioClient, storage=None, video=None) -> TranscriptionAdapter:
    return TranscriptionAdapter(
        get_settings(),
        twilio_client=twilio,
        storage_client=storage or _FakeStorageClient(),
        video_client=video or _FakeVideoClient(),
    )


def test_snake_and_camel_case_results_normalise_identically() -> None:
    from_file = normalize_video_intelligence_result(SNAKE_CASE_RESULT)
    from_api = normalize_video_intelligence_result(CAMEL_CASE_RESULT)

    assert json.dumps(from_file.to_document(), sort_keys=True) == json.dumps(from_api.to_document(), sort_keys=True)
    assert from_file.text == "hello there how was the trip"
    assert from_file.provider == TranscriptProvider.google_video_intelligence
    first = from_file.sentences[0]
    assert first.start_time == 1.5
    assert first.end_time == 2.8
    assert [word.word for word in first.words] == ["hello", "there"]
    assert from_file.sentences[1].words == []


def test_parse_duration_accepts_provider_forms() -> None:
    assert parse_duration("1.5s") == 1.5
    assert parse_duration({"seconds": "3", "nanos": 250000000}) == 3.25
    assert parse_duration(4) == 4.0
    assert parse_duration(None) is None


def test_normalize_intelligence_sentences_joins_text() -> None:
    transcript = normalize_intelligence_sentences(_FakeTwilioClient().list_transcript_sentences("GT1"))

    assert transcript.text == "Hi! Hello, how are you?"
    assert transcript.sentences[1].start_time == 1.0
    assert transcript.provider == TranscriptProvider.twilio_intelligence


def test_start_transcription_uses_managed_provider_with_source_sid() -> None:
    twilio = _FakeTwilioClient()

    job = _adapter(twilio).start_transcription("CJ123", room_sid="RM1")

    assert job == ManagedTranscriptionJob(transcript_sid="GT123")
    assert twilio.create_calls == [{"source_sid": "CJ123", "media_url": None}]


def test_rejected_composition_falls_back_to_batch_provider() -> None:
    twilio = _FakeTwilioClient(reject=UnsupportedMediaSourceError("not a valid SID", status=400))
    storage = _FakeStorageClient()
    video = _FakeVideoClient()

    job = _adapter(twilio, storage, video).start_transcription("CJ123", room_sid="RM1")

    assert job == OperationTranscriptionJob(
        operation_name="projects/p/locations/us-east1/operations/42",
        output_uri="gs://bucket/transcriptions/CJ123.json",
    )
    assert storage.uploads == [("https://media.example.com/CJ123?signature=abc", "transcriptions/CJ123.mp4")]
    assert video.annotations == [
        ("gs://bucket/transcriptions/CJ123.mp4", "gs://bucket/transcriptions/CJ123.json"),
    ]


def test_rejected_recording_track_retries_managed_provider_with_media_url() -> None:
    twilio = _FakeTwilioClient(reject=UnsupportedMediaSourceError("unsupported", code=20404))
    storage = _FakeStorageClient()

    job = _adapter(twilio, storage).start_transcription("RT555", room_sid="RM1")

    assert job == ManagedTranscriptionJob(transcript_sid="GT123")
    assert twilio.signed_url_calls == [("RT555", "RM1")]
    assert twilio.create_calls[-1] == {
        "source_sid": None,
        "media_url": "https://media.example.com/RT555?signature=abc",
    }
    assert storage.uploads == []


def test_unconfigured_managed_provider_goes_straight_to_batch() -> None:
    twilio = _FakeTwilioClient(managed=False)

    job = _adapter(twilio).start_transcription("CJ123")

    assert isinstance(job, OperationTranscriptionJob)
    assert twilio.create_calls == []


def test_other_rejections_propagate() -> None:
    twilio = _FakeTwilioClient(reject=UnsupportedMediaSourceError("unsupported", status=400))

    with pytest.raises(UnsupportedMediaSourceError):
        _adapter(twilio).start_transcription("RT555")


def test_fetch_result_reports_running_failed_and_done_operations() -> None:
    job = OperationTranscriptionJob(
        operation_name="projects/p/locations/us-east1/operations/42",
        output_uri="gs://bucket/transcriptions/CJ123.json",
    )
    running = _adapter(_FakeTwilioClient(), video=_FakeVideoClient({"done": False}))
    failed = _adapter(
        _FakeTwilioClient(),
        video=_FakeVideoClient({"done": True, "error": {"code": 3, "message": "Invalid input"}}),
    )
    done = _adapter(
        _FakeTwilioClient(),
        storage=_FakeStorageClient(SNAKE_CASE_RESULT),
        video=_FakeVideoClient({"done": True, "response": {"annotationResults": [{"inputUri": "x"}]}}),
    )

    assert running.fetch_result(job) is None
    with pytest.raises(TranscriptionFailedError, match="Invalid input"):
        failed.fetch_result(job)
    assert done.fetch_result(job).text == "hello there how was the trip"
