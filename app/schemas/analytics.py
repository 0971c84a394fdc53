from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class AnalyticsEntityType(StrEnum):
    team = "team"
    account = "account"


class AnalyticsSnapshot(BaseModel):
    id: str
    entity_type: AnalyticsEntityType
    entity_id: str
    period: str
    total_connections: int = 0
    completed_connections: int = 0
    sentiment_sum: float = 0
    sentiment_count: int = 0
    topics: dict[str, int] = Field(default_factory=dict)
    updated_at: datetime | None = None

    @property
    def average_sentiment(self) -> float | None:
        if not self.sentiment_count:
            return None
        return self.sentiment_sum / self.sentiment_count


class Relationship(BaseModel):
    id: str
    team_id: str
    users: tuple[str, str]
    connection_count: int = 0
    last_connected_at: datetime | None = None
    tags: list[str] = Field(default_factory=list)


class MemberStats(BaseModel):
    total_connections: int = 0
    sentiment_sum: float = 0
    sentiment_count: int = 0
    average_sentiment: float = 0
    last_connected_at: datetime | None = None
