from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class TranscriptProvider(StrEnum):
    twilio_intelligence = "twilio_intelligence"
    google_video_intelligence = "google_video_intelligence"


class TranscriptWord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    word: str
    start_time: float | None = Field(default=None, alias="startTime")
    end_time: float | None = Field(default=None, alias="endTime")
    confidence: float | None = None


class TranscriptSentence(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transcript: str
    confidence: float | None = None
    start_time: float | None = Field(default=None, alias="startTime")
    end_time: float | None = Field(default=None, alias="endTime")
    words: list[TranscriptWord] = Field(default_factory=list)


class Transcript(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str
    sentences: list[TranscriptSentence] = Field(default_factory=list)
    provider: TranscriptProvider | None = None
    completed_at: datetime | None = Field(default=None, alias="completedAt")

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ManagedTranscriptionJob(BaseModel):
    """Job handled by the speech-intelligence provider; completion arrives by webhook."""

    transcript_sid: str


class OperationTranscriptionJob(BaseModel):
    """Batch long-running operation; completion is discovered by polling."""

    operation_name: str
    output_uri: str


TranscriptionJob = ManagedTranscriptionJob | OperationTranscriptionJob
