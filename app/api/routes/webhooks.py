import json
import logging
from typing import Any
from urllib.parse import parse_qsl

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from app.core.config import Settings, get_settings
from app.schemas.webhook import WebhookResponse
from app.services.webhook_service import WebhookService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/video", response_model=WebhookResponse)
async def receive_video_webhook(request: Request) -> WebhookResponse:
    settings = get_settings()
    params, payload, raw_body = await _load_callback(request)
    logger.info(
        "Webhook received provider=video event=%s room_name=%s",
        payload.get("StatusCallbackEvent"),
        payload.get("RoomName"),
    )
    response = await run_in_threadpool(
        _verify_and_handle,
        settings,
        "handle_video_event",
        url=_signed_url(settings.video_webhook_url, request),
        signature=request.headers.get("x-twilio-signature"),
        params=params,
        payload=payload,
        raw_body=raw_body,
    )
    _log_processed(response)
    return response


@router.post("/transcription", response_model=WebhookResponse)
async def receive_transcription_webhook(request: Request) -> WebhookResponse:
    settings = get_settings()
    params, payload, raw_body = await _load_callback(request)
    logger.info(
        "Webhook received provider=transcription transcript_sid=%s",
        payload.get("TranscriptSid") or payload.get("transcript_sid"),
    )
    response = await run_in_threadpool(
        _verify_and_handle,
        settings,
        "handle_transcription_callback",
        url=_signed_url(settings.transcription_webhook_url, request),
        signature=request.headers.get("x-twilio-signature"),
        params=params,
        payload=payload,
        raw_body=raw_body,
    )
    _log_processed(response)
    return response


def _verify_and_handle(
    settings: Settings,
    handler_name: str,
    *,
    url: str,
    signature: str | None,
    params: list[tuple[str, str]],
    payload: dict[str, Any],
    raw_body: bytes,
) -> WebhookResponse:
    # Runs on the worker thread pool: provider, store and AI calls all block.
    service = WebhookService(settings)
    service.verify_signature(url=url, params=params, signature=signature, raw_body=raw_body)
    return getattr(service, handler_name)(payload)


def _log_processed(response: WebhookResponse) -> None:
    logger.info(
        "Webhook processed event=%s connection_id=%s outcome=%s",
        response.event_type,
        response.connection_id,
        response.outcome,
    )


def _signed_url(base_url: str, request: Request) -> str:
    query = request.url.query
    return f"{base_url}?{query}" if query else base_url


async def _load_callback(request: Request) -> tuple[list[tuple[str, str]], dict[str, Any], bytes]:
    raw_body = await request.body()
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            parsed_payload = json.loads(raw_body or b"{}")
        except json.JSONDecodeError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Request body must be valid JSON.",
            ) from exc
        if not isinstance(parsed_payload, dict):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Request body must be a JSON object.",
            )
        return [], parsed_payload, raw_body

    params = parse_qsl(raw_body.decode("utf-8", errors="replace"), keep_blank_values=True)
    return params, dict(params), raw_body
