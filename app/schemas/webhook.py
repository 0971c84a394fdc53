from pydantic import BaseModel, ConfigDict, Field


class WebhookResponse(BaseModel):
    status: str = "accepted"
    event_type: str | None = None
    connection_id: str | None = None
    outcome: str
    detail: str | None = None


class TranscriptionCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    connection_id: str = Field(alias="connectionId", min_length=1)
    operation_name: str = Field(alias="operationName", min_length=1)
    attempt: int = Field(default=1, ge=1)


class TranscriptionCheckResponse(BaseModel):
    connection_id: str
    operation_name: str
    outcome: str
    attempt: int


class ScheduleRunResponse(BaseModel):
    schedules_processed: int = 0
    connections_created: int = 0
    schedules_failed: int = 0
