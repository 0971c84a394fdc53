import calendar
import logging
import random
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from app.core.config import Settings
from app.schemas.connection import (
    ConnectionStatus,
    Schedule,
    ScheduleFrequency,
    TranscriptStatus,
)
from app.schemas.webhook import ScheduleRunResponse
from app.services.connection_store import ConnectionStore, create_connection_store
from app.services.postmark_email_client import PostmarkEmailClient, PostmarkEmailError

logger = logging.getLogger(__name__)

DEFAULT_MEMBER_NAME = "Team Member"


@dataclass(frozen=True)
class Pair:
    proposer_id: str
    confirmer_id: str


@dataclass(frozen=True)
class ScheduleRunResult:
    schedule_id: str
    connection_ids: tuple[str, ...]
    committed: bool


def shuffle_members(member_ids: Sequence[str], rng: random.Random | None = None) -> list[str]:
    """Return a Fisher-Yates permutation of ``member_ids``."""
    rng = rng or random.Random()
    shuffled = list(member_ids)
    for index in range(len(shuffled) - 1, 0, -1):
        swap_index = rng.randint(0, index)
        shuffled[index], shuffled[swap_index] = shuffled[swap_index], shuffled[index]
    return shuffled


def build_pairs(member_ids: Sequence[str], rng: random.Random | None = None) -> list[Pair]:
    """Pair members off; with an odd roster the last member is left out of this run."""
    remaining = shuffle_members(list(dict.fromkeys(member_ids)), rng)
    pairs: list[Pair] = []
    while len(remaining) >= 2:
        proposer_id = remaining.pop()
        confirmer_id = remaining.pop()
        pairs.append(Pair(proposer_id=proposer_id, confirmer_id=confirmer_id))
    return pairs


def next_run_at(current: datetime, frequency: ScheduleFrequency | str) -> datetime:
    frequency = ScheduleFrequency(frequency)
    if frequency == ScheduleFrequency.weekly:
        return current + timedelta(days=7)
    if frequency == ScheduleFrequency.bi_weekly:
        return current + timedelta(days=14)

    year = current.year + (1 if current.month == 12 else 0)
    month = 1 if current.month == 12 else current.month + 1
    day = min(current.day, calendar.monthrange(year, month)[1])
    return current.replace(year=year, month=month, day=day)


class PairingService:
    def __init__(
        self,
        settings: Settings,
        store: ConnectionStore | None = None,
        email_client: PostmarkEmailClient | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or create_connection_store(settings)
        self.email_client = email_client or PostmarkEmailClient(
            server_token=settings.postmark_server_token,
            from_address=settings.postmark_from_address,
            timeout_seconds=settings.postmark_api_timeout_seconds,
            api_url=settings.postmark_api_url,
        )
        self.rng = rng or random.Random()

    def run_due_schedules(self, now: datetime | None = None) -> ScheduleRunResponse:
        now = now or datetime.now(UTC)
        due_schedules = self.store.list_due_schedules(now)
        if not due_schedules:
            logger.info("No schedules due now=%s", now.isoformat())
            return ScheduleRunResponse()

        response = ScheduleRunResponse()
        for document in due_schedules:
            try:
                schedule = Schedule.from_document(document)
                result = self.run_schedule(schedule, now=now)
            except Exception:
                logger.exception("Schedule run failed schedule_id=%s", document.get("_id"))
                response.schedules_failed += 1
                continue
            if result.committed:
                response.schedules_processed += 1
                response.connections_created += len(result.connection_ids)
        logger.info(
            "Schedule check finished processed=%s connections_created=%s failed=%s",
            response.schedules_processed,
            response.connections_created,
            response.schedules_failed,
        )
        return response

    def run_schedule(self, schedule: Schedule, *, now: datetime | None = None) -> ScheduleRunResult:
        now = now or datetime.now(UTC)
        member_ids = self.store.list_team_member_ids(schedule.team_id)
        if len(member_ids) < 2:
            logger.info(
                "Skipping schedule with fewer than two members schedule_id=%s members=%s",
                schedule.id,
                len(member_ids),
            )
            return ScheduleRunResult(schedule_id=schedule.id, connection_ids=(), committed=False)

        pairs = build_pairs(member_ids, self.rng)
        theme_questions = self._load_theme_questions(schedule.theme_id)
        connections = [self._build_connection(schedule, pair, theme_questions, now) for pair in pairs]

        committed = self.store.create_connections_and_advance_schedule(
            connections=connections,
            schedule_id=schedule.id,
            expected_next_run_at=schedule.next_run_at,
            next_run_at=next_run_at(now, schedule.frequency),
        )
        if not committed:
            logger.info("Schedule already advanced by another run schedule_id=%s", schedule.id)
            return ScheduleRunResult(schedule_id=schedule.id, connection_ids=(), committed=False)

        logger.info(
            "Schedule run committed schedule_id=%s team_id=%s pairs=%s unpaired=%s",
            schedule.id,
            schedule.team_id,
            len(pairs),
            len(set(member_ids)) - 2 * len(pairs),
        )
        self._notify_proposers(connections)
        return ScheduleRunResult(
            schedule_id=schedule.id,
            connection_ids=tuple(str(connection["_id"]) for connection in connections),
            committed=True,
        )

    def _build_connection(
        self,
        schedule: Schedule,
        pair: Pair,
        theme_questions: list[str],
        now: datetime,
    ) -> dict[str, Any]:
        connection_id = self.store.new_connection_id()
        questions = self.rng.sample(
            theme_questions,
            k=min(self.settings.questions_per_connection, len(theme_questions)),
        )
        return {
            "_id": connection_id,
            "schedule_id": schedule.id,
            "team_id": schedule.team_id,
            "theme_id": schedule.theme_id,
            "status": ConnectionStatus.scheduling.value,
            "proposer_id": pair.proposer_id,
            "confirmer_id": pair.confirmer_id,
            "proposed_times": [],
            "confirmed_time": None,
            "room_sid": None,
            "room_name": f"connect-{connection_id}",
            "room_url": f"{self.settings.public_app_url}/connect/{connection_id}",
            "transcript_status": TranscriptStatus.none.value,
            "transcript_check_attempts": 0,
            "analysis": None,
            "questions": questions,
            "question_events": [],
            "created_at": now,
            "updated_at": now,
        }

    def _load_theme_questions(self, theme_id: str | None) -> list[str]:
        if not theme_id:
            return []
        theme = self.store.get_theme(theme_id)
        if not theme:
            logger.warning("Schedule theme not found theme_id=%s", theme_id)
            return []
        return [question for question in theme.get("questions", []) if isinstance(question, str) and question]

    def _notify_proposers(self, connections: Sequence[dict[str, Any]]) -> None:
        user_ids = {connection["proposer_id"] for connection in connections}
        user_ids.update(connection["confirmer_id"] for connection in connections)
        users = self.store.get_users(sorted(user_ids))

        for connection in connections:
            proposer = users.get(connection["proposer_id"])
            confirmer = users.get(connection["confirmer_id"])
            if not proposer or not proposer.get("email"):
                logger.warning(
                    "Proposer has no email, skipping notification connection_id=%s user_id=%s",
                    connection["_id"],
                    connection["proposer_id"],
                )
                continue
            try:
                self.email_client.send_connection_request(
                    to=proposer["email"],
                    user_name=proposer.get("display_name") or DEFAULT_MEMBER_NAME,
                    partner_name=(confirmer or {}).get("display_name") or DEFAULT_MEMBER_NAME,
                    connection_url=f"{self.settings.public_app_url}/schedule/{connection['_id']}",
                    room_url=connection["room_url"],
                )
            except PostmarkEmailError:
                logger.exception(
                    "Connection request email failed connection_id=%s user_id=%s",
                    connection["_id"],
                    connection["proposer_id"],
                )
