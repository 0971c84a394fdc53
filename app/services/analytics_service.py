import logging
import re
from datetime import UTC, datetime

from app.core.config import Settings
from app.schemas.analysis import ConnectionAnalysis
from app.schemas.analytics import AnalyticsEntityType
from app.schemas.connection import Connection
from app.services.analytics_store import (
    AnalyticsStore,
    MemberStatsIncrement,
    RelationshipIncrement,
    SnapshotIncrement,
    create_analytics_store,
)
from app.services.connection_store import ConnectionStore, create_connection_store

logger = logging.getLogger(__name__)

WHITESPACE_PATTERN = re.compile(r"\s+")


def relationship_key(user_a: str, user_b: str) -> str:
    first, second = sorted((user_a, user_b))
    return f"{first}_{second}"


def incremental_average(old_average: float, old_count: int, value: float) -> float:
    """Fold one value into a running mean: ``(old_average * old_count + value) / (old_count + 1)``."""
    return (old_average * old_count + value) / (old_count + 1)


def analytics_period(moment: datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC)
    return f"{moment.year:04d}-{moment.month:02d}"


def snapshot_id(entity_type: AnalyticsEntityType, entity_id: str, period: str) -> str:
    return f"{entity_type.value}_{entity_id}_{period}"


def topic_key(topic: str) -> str:
    return WHITESPACE_PATTERN.sub("_", topic.strip().lower())


class AnalyticsAggregator:
    def __init__(
        self,
        settings: Settings,
        analytics_store: AnalyticsStore | None = None,
        connection_store: ConnectionStore | None = None,
    ) -> None:
        self.settings = settings
        self.analytics_store = analytics_store or create_analytics_store(settings)
        self.connection_store = connection_store or create_connection_store(settings)

    def apply_completed_connection(
        self,
        connection: Connection,
        analysis: ConnectionAnalysis,
        *,
        now: datetime | None = None,
    ) -> None:
        updated_at = now or datetime.now(UTC)
        connected_at = connection.ended_at or connection.created_at or updated_at
        period = analytics_period(connection.created_at or connected_at)
        topic_keys = tuple(dict.fromkeys(key for key in map(topic_key, analysis.topics) if key))
        sentiment = float(analysis.sentiment_score)

        entities: list[tuple[AnalyticsEntityType, str]] = [(AnalyticsEntityType.team, connection.team_id)]
        team = self.connection_store.get_team(connection.team_id)
        account_id = team.get("account_id") if team else None
        if account_id:
            entities.append((AnalyticsEntityType.account, str(account_id)))
        else:
            logger.warning(
                "Team has no account, skipping account snapshot team_id=%s connection_id=%s",
                connection.team_id,
                connection.id,
            )

        snapshots = [
            SnapshotIncrement(
                snapshot_id=snapshot_id(entity_type, entity_id, period),
                entity_type=entity_type.value,
                entity_id=entity_id,
                period=period,
                sentiment=sentiment,
                topic_keys=topic_keys,
            )
            for entity_type, entity_id in entities
        ]
        users = tuple(sorted(connection.participant_ids))
        relationship = RelationshipIncrement(
            relationship_id=relationship_key(*users),
            team_id=connection.team_id,
            users=(users[0], users[1]),
            connected_at=connected_at,
            tags=tuple(dict.fromkeys(topic.strip() for topic in analysis.topics if topic.strip())),
        )
        members = [
            MemberStatsIncrement(
                team_id=connection.team_id,
                user_id=user_id,
                sentiment=sentiment,
                connected_at=connected_at,
            )
            for user_id in users
        ]

        self.analytics_store.apply_increments(
            snapshots=snapshots,
            relationship=relationship,
            members=members,
            updated_at=updated_at,
        )
        logger.info(
            "Analytics updated connection_id=%s period=%s relationship_id=%s snapshots=%s",
            connection.id,
            period,
            relationship.relationship_id,
            len(snapshots),
        )
