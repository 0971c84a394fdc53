import logging

from fastapi import APIRouter, HTTPException, status
from pymongo.errors import PyMongoError

from app.core.config import get_settings
from app.schemas.webhook import ScheduleRunResponse
from app.services.pairing_service import PairingService

router = APIRouter(prefix="/schedules", tags=["schedules"])
logger = logging.getLogger(__name__)


@router.post("/run", response_model=ScheduleRunResponse)
def run_due_schedules() -> ScheduleRunResponse:
    service = PairingService(get_settings())
    try:
        return service.run_due_schedules()
    except PyMongoError as exc:
        logger.exception("Schedule check could not reach the store")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Schedule store is unavailable.",
        ) from exc
