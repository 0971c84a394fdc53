import logging

from fastapi import APIRouter, HTTPException, Request, status
from pymongo.errors import PyMongoError

from app.core.config import Settings, get_settings
from app.schemas.webhook import TranscriptionCheckRequest, TranscriptionCheckResponse
from app.services.google_api_client import GoogleCloudError, verify_service_identity_token
from app.services.operation_poller import OperationPoller
from app.services.twilio_api_client import TwilioApiError

router = APIRouter(prefix="/tasks", tags=["tasks"])
logger = logging.getLogger(__name__)


@router.post("/transcription-check", response_model=TranscriptionCheckResponse)
def run_transcription_check(
    check: TranscriptionCheckRequest,
    request: Request,
) -> TranscriptionCheckResponse:
    settings = get_settings()
    _require_service_identity(settings, request)
    poller = OperationPoller(settings)
    try:
        response = poller.handle_check(check)
    except (GoogleCloudError, TwilioApiError, PyMongoError) as exc:
        # Non-2xx hands the retry back to the queue.
        logger.warning(
            "Transcription check failed transiently connection_id=%s operation=%s reason=%s",
            check.connection_id,
            check.operation_name,
            exc,
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Transcription check could not complete; retry later.",
        ) from exc

    logger.info(
        "Transcription check processed connection_id=%s attempt=%s outcome=%s",
        response.connection_id,
        response.attempt,
        response.outcome,
    )
    return response


def _require_service_identity(settings: Settings, request: Request) -> None:
    if not settings.signature_validation_enabled:
        return
    if not settings.cloud_tasks_service_account_email:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CLOUD_TASKS_SERVICE_ACCOUNT_EMAIL is not configured.",
        )

    authorization = request.headers.get("authorization") or ""
    auth_scheme, _, token = authorization.partition(" ")
    if auth_scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing service identity token.",
        )

    claims = verify_service_identity_token(
        token.strip(),
        audience=settings.cloud_tasks_audience or settings.transcription_check_url,
        service_account_email=settings.cloud_tasks_service_account_email,
    )
    if claims is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid service identity token.",
        )
