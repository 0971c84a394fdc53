from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from threading import RLock
from typing import Any

from app.core.config import Settings
from app.schemas.analytics import AnalyticsSnapshot, MemberStats, Relationship


@dataclass(frozen=True)
class SnapshotIncrement:
    snapshot_id: str
    entity_type: str
    entity_id: str
    period: str
    sentiment: float
    topic_keys: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class RelationshipIncrement:
    relationship_id: str
    team_id: str
    users: tuple[str, str]
    connected_at: datetime
    tags: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MemberStatsIncrement:
    team_id: str
    user_id: str
    sentiment: float
    connected_at: datetime


class AnalyticsStore(ABC):
    @abstractmethod
    def apply_increments(
        self,
        *,
        snapshots: Sequence[SnapshotIncrement],
        relationship: RelationshipIncrement,
        members: Sequence[MemberStatsIncrement],
        updated_at: datetime,
    ) -> None:
        """Apply every increment in one all-or-nothing write."""
        raise NotImplementedError

    @abstractmethod
    def get_snapshot(self, snapshot_id: str) -> AnalyticsSnapshot | None:
        raise NotImplementedError

    @abstractmethod
    def get_relationship(self, relationship_id: str) -> Relationship | None:
        raise NotImplementedError

    @abstractmethod
    def get_member_stats(self, team_id: str, user_id: str) -> MemberStats | None:
        raise NotImplementedError


class InMemoryAnalyticsStore(AnalyticsStore):
    def __init__(self) -> None:
        self._lock = RLock()
        self._snapshots: dict[str, dict[str, Any]] = {}
        self._relationships: dict[str, dict[str, Any]] = {}
        self._member_stats: dict[tuple[str, str], dict[str, Any]] = {}

    def apply_increments(
        self,
        *,
        snapshots: Sequence[SnapshotIncrement],
        relationship: RelationshipIncrement,
        members: Sequence[MemberStatsIncrement],
        updated_at: datetime,
    ) -> None:
        with self._lock:
            # Build the new state on copies so a failure leaves nothing half-applied.
            next_snapshots = {key: _copy_snapshot(value) for key, value in self._snapshots.items()}
            next_relationships = {key: dict(value) for key, value in self._relationships.items()}
            next_member_stats = {key: dict(value) for key, value in self._member_stats.items()}

            for increment in snapshots:
                snapshot = next_snapshots.setdefault(
                    increment.snapshot_id,
                    {
                        "_id": increment.snapshot_id,
                        "entity_type": increment.entity_type,
                        "entity_id": increment.entity_id,
                        "period": increment.period,
                        "total_connections": 0,
                        "completed_connections": 0,
                        "sentiment_sum": 0,
                        "sentiment_count": 0,
                        "topics": {},
                    },
                )
                snapshot["total_connections"] += 1
                snapshot["completed_connections"] += 1
                snapshot["sentiment_sum"] += increment.sentiment
                snapshot["sentiment_count"] += 1
                for topic_key in increment.topic_keys:
                    snapshot["topics"][topic_key] = snapshot["topics"].get(topic_key, 0) + 1
                snapshot["updated_at"] = updated_at

            record = next_relationships.setdefault(
                relationship.relationship_id,
                {
                    "_id": relationship.relationship_id,
                    "team_id": relationship.team_id,
                    "users": list(relationship.users),
                    "connection_count": 0,
                    "last_connected_at": None,
                    "tags": [],
                },
            )
            record["connection_count"] += 1
            if record["last_connected_at"] is None or relationship.connected_at > record["last_connected_at"]:
                record["last_connected_at"] = relationship.connected_at
            record["tags"] = list(record["tags"]) + [
                tag for tag in relationship.tags if tag not in record["tags"]
            ]
            record["updated_at"] = updated_at

            for member in members:
                stats = next_member_stats.setdefault(
                    (member.team_id, member.user_id),
                    {
                        "total_connections": 0,
                        "sentiment_sum": 0,
                        "sentiment_count": 0,
                        "average_sentiment": 0,
                        "last_connected_at": None,
                    },
                )
                stats["total_connections"] += 1
                stats["sentiment_sum"] += member.sentiment
                stats["sentiment_count"] += 1
                stats["average_sentiment"] = stats["sentiment_sum"] / stats["sentiment_count"]
                if stats["last_connected_at"] is None or member.connected_at > stats["last_connected_at"]:
                    stats["last_connected_at"] = member.connected_at

            self._snapshots = next_snapshots
            self._relationships = next_relationships
            self._member_stats = next_member_stats

    def get_snapshot(self, snapshot_id: str) -> AnalyticsSnapshot | None:
        with self._lock:
            record = self._snapshots.get(snapshot_id)
            return _snapshot_model(record) if record else None

    def get_relationship(self, relationship_id: str) -> Relationship | None:
        with self._lock:
            record = self._relationships.get(relationship_id)
            return _relationship_model(record) if record else None

    def get_member_stats(self, team_id: str, user_id: str) -> MemberStats | None:
        with self._lock:
            record = self._member_stats.get((team_id, user_id))
            return MemberStats.model_validate(record) if record else None


class MongoAnalyticsStore(AnalyticsStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        analytics_collection_name: str,
        relationships_collection_name: str,
        team_members_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        database = self._client[db_name]
        self._analytics = database[analytics_collection_name]
        self._relationships = database[relationships_collection_name]
        self._team_members = database[team_members_collection_name]

        self._analytics.create_index([("entity_type", 1), ("entity_id", 1), ("period", 1)])
        self._relationships.create_index("team_id")

    def apply_increments(
        self,
        *,
        snapshots: Sequence[SnapshotIncrement],
        relationship: RelationshipIncrement,
        members: Sequence[MemberStatsIncrement],
        updated_at: datetime,
    ) -> None:
        with self._client.start_session() as session:
            with session.start_transaction():
                for increment in snapshots:
                    counters: dict[str, Any] = {
                        "total_connections": 1,
                        "completed_connections": 1,
                        "sentiment_sum": increment.sentiment,
                        "sentiment_count": 1,
                    }
                    for topic_key in increment.topic_keys:
                        counters[f"topics.{topic_key}"] = counters.get(f"topics.{topic_key}", 0) + 1
                    self._analytics.update_one(
                        {"_id": increment.snapshot_id},
                        {
                            "$setOnInsert": {
                                "entity_type": increment.entity_type,
                                "entity_id": increment.entity_id,
                                "period": increment.period,
                            },
                            "$inc": counters,
                            "$set": {"updated_at": updated_at},
                        },
                        upsert=True,
                        session=session,
                    )

                relationship_update: dict[str, Any] = {
                    "$setOnInsert": {
                        "team_id": relationship.team_id,
                        "users": list(relationship.users),
                    },
                    "$inc": {"connection_count": 1},
                    "$max": {"last_connected_at": relationship.connected_at},
                    "$set": {"updated_at": updated_at},
                }
                if relationship.tags:
                    relationship_update["$addToSet"] = {"tags": {"$each": list(relationship.tags)}}
                self._relationships.update_one(
                    {"_id": relationship.relationship_id},
                    relationship_update,
                    upsert=True,
                    session=session,
                )

                for member in members:
                    self._team_members.update_one(
                        {"team_id": member.team_id, "user_id": member.user_id},
                        _member_stats_pipeline(member),
                        upsert=True,
                        session=session,
                    )

    def get_snapshot(self, snapshot_id: str) -> AnalyticsSnapshot | None:
        record = self._analytics.find_one({"_id": snapshot_id})
        return _snapshot_model(record) if record else None

    def get_relationship(self, relationship_id: str) -> Relationship | None:
        record = self._relationships.find_one({"_id": relationship_id})
        return _relationship_model(record) if record else None

    def get_member_stats(self, team_id: str, user_id: str) -> MemberStats | None:
        record = self._team_members.find_one({"team_id": team_id, "user_id": user_id}, {"stats": 1})
        if not record or not record.get("stats"):
            return None
        return MemberStats.model_validate(record["stats"])


def _member_stats_pipeline(member: MemberStatsIncrement) -> list[dict[str, Any]]:
    # Single-document pipeline update: the server reads and writes the counters atomically.
    return [
        {
            "$set": {
                "stats.total_connections": {
                    "$add": [{"$ifNull": ["$stats.total_connections", 0]}, 1],
                },
                "stats.sentiment_sum": {
                    "$add": [{"$ifNull": ["$stats.sentiment_sum", 0]}, member.sentiment],
                },
                "stats.sentiment_count": {
                    "$add": [{"$ifNull": ["$stats.sentiment_count", 0]}, 1],
                },
                "stats.last_connected_at": {
                    "$max": ["$stats.last_connected_at", member.connected_at],
                },
            },
        },
        {
            "$set": {
                "stats.average_sentiment": {
                    "$divide": ["$stats.sentiment_sum", "$stats.sentiment_count"],
                },
            },
        },
    ]


def _copy_snapshot(record: dict[str, Any]) -> dict[str, Any]:
    payload = dict(record)
    payload["topics"] = dict(record.get("topics", {}))
    return payload


def _snapshot_model(record: dict[str, Any]) -> AnalyticsSnapshot:
    return AnalyticsSnapshot.model_validate({**record, "id": record["_id"]})


def _relationship_model(record: dict[str, Any]) -> Relationship:
    return Relationship.model_validate({**record, "id": record["_id"]})


def create_analytics_store(settings: Settings) -> AnalyticsStore:
    return _create_analytics_store_cached(
        data_store=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_analytics_collection=settings.mongodb_analytics_collection,
        mongodb_relationships_collection=settings.mongodb_relationships_collection,
        mongodb_team_members_collection=settings.mongodb_team_members_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_analytics_store_cached(
    *,
    data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_analytics_collection: str,
    mongodb_relationships_collection: str,
    mongodb_team_members_collection: str,
    mongodb_connect_timeout_ms: int,
) -> AnalyticsStore:
    if data_store == "memory":
        return InMemoryAnalyticsStore()

    if data_store == "mongodb":
        return MongoAnalyticsStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            analytics_collection_name=mongodb_analytics_collection,
            relationships_collection_name=mongodb_relationships_collection,
            team_members_collection_name=mongodb_team_members_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    raise ValueError(f"Unsupported data store: {data_store!r}")


def clear_analytics_store_cache() -> None:
    _create_analytics_store_cached.cache_clear()
