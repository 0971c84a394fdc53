from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from functools import lru_cache
from threading import RLock
from typing import Any
from uuid import uuid4

from app.core.config import Settings


class ConnectionStore(ABC):
    @abstractmethod
    def new_connection_id(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def get_connection(self, connection_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def find_connection_by_room_sid(self, room_sid: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def find_connection_by_transcript_sid(self, transcript_sid: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def update_connection(
        self,
        connection_id: str,
        updates: Mapping[str, Any],
        *,
        expected: Mapping[str, Sequence[Any]] | None = None,
    ) -> bool:
        """Apply ``updates`` only when every ``expected`` field holds one of the listed values."""
        raise NotImplementedError

    @abstractmethod
    def save_connection(self, document: Mapping[str, Any]) -> str:
        raise NotImplementedError

    @abstractmethod
    def list_due_schedules(self, now: datetime) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def get_schedule(self, schedule_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def save_schedule(self, document: Mapping[str, Any]) -> str:
        raise NotImplementedError

    @abstractmethod
    def create_connections_and_advance_schedule(
        self,
        *,
        connections: Sequence[Mapping[str, Any]],
        schedule_id: str,
        expected_next_run_at: datetime,
        next_run_at: datetime,
    ) -> bool:
        """Insert ``connections`` and move the schedule forward in one atomic batch.

        Returns ``False`` without writing anything when the schedule's ``next_run_at``
        no longer matches ``expected_next_run_at``.
        """
        raise NotImplementedError

    @abstractmethod
    def list_team_member_ids(self, team_id: str) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    def add_team_member(self, *, team_id: str, user_id: str, role: str = "member") -> None:
        raise NotImplementedError

    @abstractmethod
    def get_users(self, user_ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def save_user(self, document: Mapping[str, Any]) -> str:
        raise NotImplementedError

    @abstractmethod
    def get_team(self, team_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def save_team(self, document: Mapping[str, Any]) -> str:
        raise NotImplementedError

    @abstractmethod
    def get_theme(self, theme_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abstractmethod
    def save_theme(self, document: Mapping[str, Any]) -> str:
        raise NotImplementedError


class InMemoryConnectionStore(ConnectionStore):
    def __init__(self) -> None:
        self._lock = RLock()
        self._connections: dict[str, dict[str, Any]] = {}
        self._schedules: dict[str, dict[str, Any]] = {}
        self._team_members: dict[tuple[str, str], dict[str, Any]] = {}
        self._users: dict[str, dict[str, Any]] = {}
        self._teams: dict[str, dict[str, Any]] = {}
        self._themes: dict[str, dict[str, Any]] = {}

    def new_connection_id(self) -> str:
        return uuid4().hex

    def get_connection(self, connection_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._connections.get(connection_id)
            return dict(record) if record else None

    def find_connection_by_room_sid(self, room_sid: str) -> dict[str, Any] | None:
        return self._find_connection("room_sid", room_sid)

    def find_connection_by_transcript_sid(self, transcript_sid: str) -> dict[str, Any] | None:
        return self._find_connection("transcript_sid", transcript_sid)

    def update_connection(
        self,
        connection_id: str,
        updates: Mapping[str, Any],
        *,
        expected: Mapping[str, Sequence[Any]] | None = None,
    ) -> bool:
        with self._lock:
            record = self._connections.get(connection_id)
            if not record:
                return False
            for field_name, allowed_values in (expected or {}).items():
                if record.get(field_name) not in list(allowed_values):
                    return False
            record.update(dict(updates))
            return True

    def save_connection(self, document: Mapping[str, Any]) -> str:
        with self._lock:
            payload = dict(document)
            connection_id = str(payload.get("_id") or self.new_connection_id())
            payload["_id"] = connection_id
            self._connections[connection_id] = payload
            return connection_id

    def list_due_schedules(self, now: datetime) -> list[dict[str, Any]]:
        with self._lock:
            due = [
                dict(schedule)
                for schedule in self._schedules.values()
                if schedule.get("status") == "active"
                and _as_utc(schedule.get("next_run_at")) is not None
                and _as_utc(schedule.get("next_run_at")) <= now
            ]
        due.sort(key=lambda schedule: _as_utc(schedule.get("next_run_at")))
        return due

    def get_schedule(self, schedule_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._schedules.get(schedule_id)
            return dict(record) if record else None

    def save_schedule(self, document: Mapping[str, Any]) -> str:
        return self._save(self._schedules, document)

    def create_connections_and_advance_schedule(
        self,
        *,
        connections: Sequence[Mapping[str, Any]],
        schedule_id: str,
        expected_next_run_at: datetime,
        next_run_at: datetime,
    ) -> bool:
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            if not schedule or _as_utc(schedule.get("next_run_at")) != _as_utc(expected_next_run_at):
                return False
            for connection in connections:
                connection_id = str(connection["_id"])
                if connection_id in self._connections:
                    raise ValueError(f"Connection {connection_id} already exists.")
            for connection in connections:
                self._connections[str(connection["_id"])] = dict(connection)
            schedule["next_run_at"] = next_run_at
            schedule["updated_at"] = datetime.now(UTC)
            return True

    def list_team_member_ids(self, team_id: str) -> list[str]:
        with self._lock:
            return [
                member["user_id"]
                for (member_team_id, _), member in self._team_members.items()
                if member_team_id == team_id
            ]

    def add_team_member(self, *, team_id: str, user_id: str, role: str = "member") -> None:
        with self._lock:
            self._team_members[(team_id, user_id)] = {
                "team_id": team_id,
                "user_id": user_id,
                "role": role,
                "joined_at": datetime.now(UTC),
            }

    def get_users(self, user_ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {
                user_id: dict(self._users[user_id])
                for user_id in user_ids
                if user_id in self._users
            }

    def save_user(self, document: Mapping[str, Any]) -> str:
        return self._save(self._users, document)

    def get_team(self, team_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._teams.get(team_id)
            return dict(record) if record else None

    def save_team(self, document: Mapping[str, Any]) -> str:
        return self._save(self._teams, document)

    def get_theme(self, theme_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._themes.get(theme_id)
            return dict(record) if record else None

    def save_theme(self, document: Mapping[str, Any]) -> str:
        return self._save(self._themes, document)

    def _find_connection(self, field_name: str, value: str) -> dict[str, Any] | None:
        with self._lock:
            for record in self._connections.values():
                if record.get(field_name) == value:
                    return dict(record)
        return None

    def _save(self, collection: dict[str, dict[str, Any]], document: Mapping[str, Any]) -> str:
        with self._lock:
            payload = dict(document)
            record_id = str(payload.get("_id") or uuid4().hex)
            payload["_id"] = record_id
            collection[record_id] = payload
            return record_id


class MongoConnectionStore(ConnectionStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        connections_collection_name: str,
        schedules_collection_name: str,
        team_members_collection_name: str,
        users_collection_name: str,
        teams_collection_name: str,
        themes_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import ASCENDING, MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        database = self._client[db_name]
        self._connections = database[connections_collection_name]
        self._schedules = database[schedules_collection_name]
        self._team_members = database[team_members_collection_name]
        self._users = database[users_collection_name]
        self._teams = database[teams_collection_name]
        self._themes = database[themes_collection_name]

        self._connections.create_index("room_sid", sparse=True)
        self._connections.create_index("transcript_sid", sparse=True)
        self._connections.create_index([("team_id", ASCENDING), ("created_at", ASCENDING)])
        self._schedules.create_index([("status", ASCENDING), ("next_run_at", ASCENDING)])
        self._team_members.create_index([("team_id", ASCENDING), ("user_id", ASCENDING)], unique=True)

    def new_connection_id(self) -> str:
        from bson import ObjectId

        return str(ObjectId())

    def get_connection(self, connection_id: str) -> dict[str, Any] | None:
        return self._connections.find_one({"_id": connection_id})

    def find_connection_by_room_sid(self, room_sid: str) -> dict[str, Any] | None:
        return self._connections.find_one({"room_sid": room_sid})

    def find_connection_by_transcript_sid(self, transcript_sid: str) -> dict[str, Any] | None:
        return self._connections.find_one({"transcript_sid": transcript_sid})

    def update_connection(
        self,
        connection_id: str,
        updates: Mapping[str, Any],
        *,
        expected: Mapping[str, Sequence[Any]] | None = None,
    ) -> bool:
        query: dict[str, Any] = {"_id": connection_id}
        for field_name, allowed_values in (expected or {}).items():
            query[field_name] = {"$in": list(allowed_values)}
        result = self._connections.update_one(query, {"$set": dict(updates)})
        return result.matched_count == 1

    def save_connection(self, document: Mapping[str, Any]) -> str:
        payload = dict(document)
        payload["_id"] = str(payload.get("_id") or self.new_connection_id())
        self._connections.replace_one({"_id": payload["_id"]}, payload, upsert=True)
        return payload["_id"]

    def list_due_schedules(self, now: datetime) -> list[dict[str, Any]]:
        cursor = self._schedules.find(
            {"status": "active", "next_run_at": {"$lte": now}},
        ).sort("next_run_at", 1)
        return [_serialize_record(record) for record in cursor]

    def get_schedule(self, schedule_id: str) -> dict[str, Any] | None:
        return _serialize_record(self._schedules.find_one({"_id": schedule_id}))

    def save_schedule(self, document: Mapping[str, Any]) -> str:
        return self._save(self._schedules, document)

    def create_connections_and_advance_schedule(
        self,
        *,
        connections: Sequence[Mapping[str, Any]],
        schedule_id: str,
        expected_next_run_at: datetime,
        next_run_at: datetime,
    ) -> bool:
        with self._client.start_session() as session:
            with session.start_transaction():
                result = self._schedules.update_one(
                    {"_id": schedule_id, "next_run_at": expected_next_run_at},
                    {"$set": {"next_run_at": next_run_at, "updated_at": datetime.now(UTC)}},
                    session=session,
                )
                if result.matched_count != 1:
                    session.abort_transaction()
                    return False
                if connections:
                    self._connections.insert_many(
                        [dict(connection) for connection in connections],
                        session=session,
                    )
        return True

    def list_team_member_ids(self, team_id: str) -> list[str]:
        cursor = self._team_members.find({"team_id": team_id}, {"user_id": 1})
        return [str(record["user_id"]) for record in cursor if record.get("user_id")]

    def add_team_member(self, *, team_id: str, user_id: str, role: str = "member") -> None:
        self._team_members.update_one(
            {"team_id": team_id, "user_id": user_id},
            {
                "$set": {"role": role},
                "$setOnInsert": {"joined_at": datetime.now(UTC)},
            },
            upsert=True,
        )

    def get_users(self, user_ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        if not user_ids:
            return {}
        cursor = self._users.find({"_id": {"$in": list(user_ids)}})
        return {str(record["_id"]): _serialize_record(record) for record in cursor}

    def save_user(self, document: Mapping[str, Any]) -> str:
        return self._save(self._users, document)

    def get_team(self, team_id: str) -> dict[str, Any] | None:
        return _serialize_record(self._teams.find_one({"_id": team_id}))

    def save_team(self, document: Mapping[str, Any]) -> str:
        return self._save(self._teams, document)

    def get_theme(self, theme_id: str) -> dict[str, Any] | None:
        return _serialize_record(self._themes.find_one({"_id": theme_id}))

    def save_theme(self, document: Mapping[str, Any]) -> str:
        return self._save(self._themes, document)

    def _save(self, collection: Any, document: Mapping[str, Any]) -> str:
        from bson import ObjectId

        payload = dict(document)
        payload["_id"] = str(payload.get("_id") or ObjectId())
        collection.replace_one({"_id": payload["_id"]}, payload, upsert=True)
        return payload["_id"]


def _serialize_record(record: Any) -> dict[str, Any] | None:
    if not record:
        return None
    payload = dict(record)
    payload["_id"] = str(record.get("_id", ""))
    return payload


def _as_utc(value: Any) -> datetime | None:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def create_connection_store(settings: Settings) -> ConnectionStore:
    return _create_connection_store_cached(
        data_store=settings.data_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_connections_collection=settings.mongodb_connections_collection,
        mongodb_schedules_collection=settings.mongodb_schedules_collection,
        mongodb_team_members_collection=settings.mongodb_team_members_collection,
        mongodb_users_collection=settings.mongodb_users_collection,
        mongodb_teams_collection=settings.mongodb_teams_collection,
        mongodb_themes_collection=settings.mongodb_themes_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_connection_store_cached(
    *,
    data_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_connections_collection: str,
    mongodb_schedules_collection: str,
    mongodb_team_members_collection: str,
    mongodb_users_collection: str,
    mongodb_teams_collection: str,
    mongodb_themes_collection: str,
    mongodb_connect_timeout_ms: int,
) -> ConnectionStore:
    if data_store == "memory":
        return InMemoryConnectionStore()

    if data_store == "mongodb":
        return MongoConnectionStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            connections_collection_name=mongodb_connections_collection,
            schedules_collection_name=mongodb_schedules_collection,
            team_members_collection_name=mongodb_team_members_collection,
            users_collection_name=mongodb_users_collection,
            teams_collection_name=mongodb_teams_collection,
            themes_collection_name=mongodb_themes_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    raise ValueError(f"Unsupported data store: {data_store!r}")


def clear_connection_store_cache() -> None:
    _create_connection_store_cached.cache_clear()
