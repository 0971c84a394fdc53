from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from app.schemas.analysis import ConnectionAnalysis
from app.schemas.transcript import Transcript


class ConnectionStatus(StrEnum):
    scheduling = "scheduling"
    proposed = "proposed"
    scheduled = "scheduled"
    completed = "completed"
    cancelled = "cancelled"


class TranscriptStatus(StrEnum):
    none = "none"
    composing = "composing"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    abandoned = "abandoned"


class ScheduleFrequency(StrEnum):
    weekly = "weekly"
    bi_weekly = "bi-weekly"
    monthly = "monthly"


class SummaryStatus(StrEnum):
    approved = "approved"
    pending_approval = "pending_approval"


CONNECTION_STATUS_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    ConnectionStatus.scheduling: frozenset(
        {
            ConnectionStatus.proposed,
            ConnectionStatus.scheduled,
            ConnectionStatus.completed,
            ConnectionStatus.cancelled,
        },
    ),
    ConnectionStatus.proposed: frozenset(
        {ConnectionStatus.scheduled, ConnectionStatus.completed, ConnectionStatus.cancelled},
    ),
    ConnectionStatus.scheduled: frozenset({ConnectionStatus.completed, ConnectionStatus.cancelled}),
    ConnectionStatus.completed: frozenset(),
    ConnectionStatus.cancelled: frozenset(),
}

TRANSCRIPT_STATUS_TRANSITIONS: dict[TranscriptStatus, frozenset[TranscriptStatus]] = {
    TranscriptStatus.none: frozenset(
        {TranscriptStatus.composing, TranscriptStatus.processing, TranscriptStatus.failed},
    ),
    TranscriptStatus.composing: frozenset({TranscriptStatus.processing, TranscriptStatus.failed}),
    TranscriptStatus.processing: frozenset(
        {TranscriptStatus.completed, TranscriptStatus.failed, TranscriptStatus.abandoned},
    ),
    TranscriptStatus.completed: frozenset(),
    TranscriptStatus.failed: frozenset(),
    TranscriptStatus.abandoned: frozenset(),
}


class IllegalTransitionError(Exception):
    pass


def connection_statuses_leading_to(target: ConnectionStatus) -> list[str]:
    return sorted(
        source.value
        for source, targets in CONNECTION_STATUS_TRANSITIONS.items()
        if target in targets
    )


def transcript_statuses_leading_to(target: TranscriptStatus) -> list[str]:
    return sorted(
        source.value
        for source, targets in TRANSCRIPT_STATUS_TRANSITIONS.items()
        if target in targets
    )


def ensure_connection_transition(current: ConnectionStatus, target: ConnectionStatus) -> None:
    if target not in CONNECTION_STATUS_TRANSITIONS[current]:
        raise IllegalTransitionError(f"Connection cannot move from {current} to {target}.")


def ensure_transcript_transition(current: TranscriptStatus, target: TranscriptStatus) -> None:
    if target not in TRANSCRIPT_STATUS_TRANSITIONS[current]:
        raise IllegalTransitionError(f"Transcript cannot move from {current} to {target}.")


def to_utc_datetime(value: Any) -> datetime | None:
    """Convert the timestamp shapes seen at the storage/provider boundary into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(float(value), tz=UTC)
    if isinstance(value, str):
        normalized = value.strip()
        if normalized.endswith("Z"):
            normalized = f"{normalized[:-1]}+00:00"
        return to_utc_datetime(datetime.fromisoformat(normalized))
    seconds = getattr(value, "seconds", None)
    if isinstance(seconds, int):
        nanos = getattr(value, "nanos", 0) or 0
        return datetime.fromtimestamp(seconds + nanos / 1_000_000_000, tz=UTC)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


class QuestionEvent(BaseModel):
    question: str
    asked_at: datetime | None = None

    @field_validator("asked_at", mode="before")
    @classmethod
    def normalize_asked_at(cls, value: Any) -> datetime | None:
        return to_utc_datetime(value)


class Connection(BaseModel):
    id: str
    schedule_id: str | None = None
    team_id: str
    theme_id: str | None = None
    status: ConnectionStatus = ConnectionStatus.scheduling
    proposer_id: str
    confirmer_id: str
    proposed_times: list[datetime] = Field(default_factory=list)
    confirmed_time: datetime | None = None
    room_sid: str | None = None
    room_name: str | None = None
    room_url: str | None = None
    duration_seconds: int | None = None
    composition_sid: str | None = None
    transcript_sid: str | None = None
    transcript_status: TranscriptStatus = TranscriptStatus.none
    transcript_output_uri: str | None = None
    transcript_check_attempts: int = 0
    transcript_error: str | None = None
    transcript: Transcript | None = None
    analysis: ConnectionAnalysis | None = None
    analysis_error: str | None = None
    summary_status: SummaryStatus | None = None
    questions: list[str] = Field(default_factory=list)
    question_events: list[QuestionEvent] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @field_validator(
        "confirmed_time",
        "created_at",
        "updated_at",
        "started_at",
        "ended_at",
        mode="before",
    )
    @classmethod
    def normalize_timestamp(cls, value: Any) -> datetime | None:
        return to_utc_datetime(value)

    @field_validator("proposed_times", mode="before")
    @classmethod
    def normalize_proposed_times(cls, value: Any) -> list[datetime]:
        if not value:
            return []
        return [to_utc_datetime(item) for item in value if item is not None]

    @field_validator("transcript_status", mode="before")
    @classmethod
    def default_transcript_status(cls, value: Any) -> Any:
        if value is None or value == "":
            return TranscriptStatus.none
        return value

    @model_validator(mode="after")
    def check_distinct_participants(self) -> "Connection":
        if self.proposer_id == self.confirmer_id:
            raise ValueError("proposer_id and confirmer_id must differ.")
        return self

    @property
    def participant_ids(self) -> tuple[str, str]:
        return (self.proposer_id, self.confirmer_id)

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "Connection":
        payload = dict(document)
        payload["id"] = str(payload.pop("_id", payload.get("id", "")))
        return cls.model_validate(payload)


class Schedule(BaseModel):
    id: str
    team_id: str
    account_id: str | None = None
    theme_id: str | None = None
    name: str | None = None
    frequency: ScheduleFrequency = ScheduleFrequency.weekly
    status: str = "active"
    next_run_at: datetime

    @field_validator("next_run_at", mode="before")
    @classmethod
    def normalize_next_run_at(cls, value: Any) -> datetime | None:
        return to_utc_datetime(value)

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "Schedule":
        payload = dict(document)
        payload["id"] = str(payload.pop("_id", payload.get("id", "")))
        return cls.model_validate(payload)


class RoomResponse(BaseModel):
    connection_id: str
    room_name: str
    room_sid: str | None = None
    room_url: str | None = None
