from fastapi import APIRouter, Header, HTTPException, status

from app.core.config import get_settings
from app.schemas.connection import RoomResponse
from app.services.connection_room_service import ConnectionRoomService

router = APIRouter(prefix="/connections", tags=["connections"])


@router.post("/{connection_id}/room", response_model=RoomResponse)
def ensure_connection_room(
    connection_id: str,
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
) -> RoomResponse:
    service = ConnectionRoomService(get_settings())
    return service.ensure_room(connection_id, _require_user_id(x_user_id))


@router.post("/{connection_id}/complete", response_model=RoomResponse)
def complete_connection(
    connection_id: str,
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
) -> RoomResponse:
    service = ConnectionRoomService(get_settings())
    return service.complete(connection_id, _require_user_id(x_user_id))


def _require_user_id(raw_user_id: str | None) -> str:
    user_id = (raw_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity.",
        )
    return user_id
