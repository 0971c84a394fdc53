from datetime import UTC, datetime

from app.core.config import Settings
from app.schemas.health import HealthResponse


class HealthService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def get_status(self) -> HealthResponse:
        settings = self.settings
        return HealthResponse(
            status="ok",
            service=settings.app_name,
            version=settings.app_version,
            environment=settings.app_env,
            data_store=settings.data_store,
            timestamp=datetime.now(UTC),
            integrations={
                "video": bool(settings.twilio_account_sid and settings.twilio_auth_token),
                "managed_transcription": bool(settings.twilio_intelligence_service_sid),
                "batch_transcription": bool(settings.google_cloud_project and settings.storage_bucket),
                "task_queue": bool(settings.cloud_tasks_service_account_email),
                "ai_analysis": bool(settings.gemini_api_key),
                "email": bool(settings.postmark_server_token),
            },
        )
