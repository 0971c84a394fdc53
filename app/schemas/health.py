from datetime import datetime

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    version: str
    environment: str
    data_store: str
    timestamp: datetime
    integrations: dict[str, bool] = Field(default_factory=dict)
