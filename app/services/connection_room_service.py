import logging
from datetime import UTC, datetime

from fastapi import HTTPException, status

from app.core.config import Settings
from app.schemas.connection import Connection, ConnectionStatus, RoomResponse
from app.services.connection_store import ConnectionStore, create_connection_store
from app.services.twilio_api_client import TwilioApiClient, TwilioApiError, TwilioConfigurationError

logger = logging.getLogger(__name__)


class ConnectionRoomService:
    def __init__(
        self,
        settings: Settings,
        store: ConnectionStore | None = None,
        twilio_client: TwilioApiClient | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or create_connection_store(settings)
        self.twilio_client = twilio_client or TwilioApiClient(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            intelligence_service_sid=settings.twilio_intelligence_service_sid,
            timeout_seconds=settings.twilio_api_timeout_seconds,
            video_api_url=settings.twilio_video_api_url,
            intelligence_api_url=settings.twilio_intelligence_api_url,
        )

    def ensure_room(self, connection_id: str, user_id: str) -> RoomResponse:
        connection = self._load_for_participant(connection_id, user_id)
        if connection.status == ConnectionStatus.cancelled:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Connection was cancelled.",
            )

        room_name = self._room_name(connection)
        try:
            room_sid = self.twilio_client.ensure_room(
                room_name,
                status_callback_url=self.settings.video_webhook_url,
            )
        except TwilioApiError as exc:
            raise _provider_unavailable(exc) from exc

        now = datetime.now(UTC)
        updates = {"room_sid": room_sid, "room_name": room_name, "updated_at": now}
        if connection.started_at is None:
            updates["started_at"] = now
        self.store.update_connection(connection.id, updates)
        logger.info(
            "Room ready connection_id=%s room_name=%s room_sid=%s user_id=%s",
            connection.id,
            room_name,
            room_sid,
            user_id,
        )
        return RoomResponse(
            connection_id=connection.id,
            room_name=room_name,
            room_sid=room_sid,
            room_url=connection.room_url,
        )

    def complete(self, connection_id: str, user_id: str) -> RoomResponse:
        connection = self._load_for_participant(connection_id, user_id)
        room_name = self._room_name(connection)
        try:
            room_sid = self.twilio_client.close_room(room_name)
        except TwilioApiError as exc:
            raise _provider_unavailable(exc) from exc

        logger.info(
            "Room close requested connection_id=%s room_name=%s closed=%s user_id=%s",
            connection.id,
            room_name,
            room_sid is not None,
            user_id,
        )
        return RoomResponse(
            connection_id=connection.id,
            room_name=room_name,
            room_sid=room_sid or connection.room_sid,
            room_url=connection.room_url,
        )

    def _load_for_participant(self, connection_id: str, user_id: str) -> Connection:
        document = self.store.get_connection(connection_id)
        if not document:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Connection not found.",
            )
        connection = Connection.from_document(document)
        if user_id not in connection.participant_ids:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only connection participants can manage its room.",
            )
        return connection

    @staticmethod
    def _room_name(connection: Connection) -> str:
        return connection.room_name or f"connect-{connection.id}"


def _provider_unavailable(exc: TwilioApiError) -> HTTPException:
    if isinstance(exc, TwilioConfigurationError):
        detail = str(exc)
    else:
        detail = f"Video provider request failed: {exc}"
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)
