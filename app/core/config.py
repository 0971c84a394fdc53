from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Komandra Connect Pipeline"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    public_app_url: str = "http://localhost:3000"
    public_api_base_url: str = "http://localhost:8000/api"

    data_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "komandra"
    mongodb_connections_collection: str = "connections"
    mongodb_schedules_collection: str = "schedules"
    mongodb_team_members_collection: str = "team_members"
    mongodb_teams_collection: str = "teams"
    mongodb_users_collection: str = "users"
    mongodb_themes_collection: str = "themes"
    mongodb_analytics_collection: str = "analytics"
    mongodb_relationships_collection: str = "relationships"
    mongodb_connect_timeout_ms: int = 2000

    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_intelligence_service_sid: str = ""
    twilio_video_api_url: str = "https://video.twilio.com/v1"
    twilio_intelligence_api_url: str = "https://intelligence.twilio.com/v2"
    twilio_api_timeout_seconds: float = 15.0
    webhook_signature_validation: bool | None = None

    google_cloud_project: str = ""
    google_cloud_location: str = "us-central1"
    cloud_tasks_queue: str = "default"
    cloud_tasks_service_account_email: str = ""
    cloud_tasks_audience: str = ""
    storage_bucket: str = ""
    video_intelligence_language_code: str = "en-US"
    google_api_timeout_seconds: float = 30.0

    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-pro"
    gemini_api_timeout_seconds: float = 60.0

    postmark_server_token: str = ""
    postmark_from_address: str = "admin@example.com"
    postmark_api_url: str = "https://api.postmarkapp.com"
    postmark_api_timeout_seconds: float = 10.0

    transcription_check_delay_seconds: int = 60
    transcription_check_max_attempts: int = 240
    questions_per_connection: int = 3
    schedule_runner_enabled: bool = False
    schedule_check_interval_minutes: int = 30

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def signature_validation_enabled(self) -> bool:
        if self.webhook_signature_validation is None:
            return self.is_production
        return self.webhook_signature_validation

    @property
    def video_webhook_url(self) -> str:
        return f"{self.public_api_base_url.rstrip('/')}/webhooks/video"

    @property
    def transcription_webhook_url(self) -> str:
        return f"{self.public_api_base_url.rstrip('/')}/webhooks/transcription"

    @property
    def transcription_check_url(self) -> str:
        return f"{self.public_api_base_url.rstrip('/')}/tasks/transcription-check"

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("data_store", "app_env", mode="before")
    @classmethod
    def normalize_lowercase_name(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("public_app_url", "public_api_base_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @field_validator("twilio_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_twilio_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 15.0
        return parsed_value

    @field_validator("google_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_google_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 30.0
        return parsed_value

    @field_validator("gemini_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_gemini_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 60.0
        return parsed_value

    @field_validator("postmark_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_postmark_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 10.0
        return parsed_value

    @field_validator("transcription_check_delay_seconds", mode="before")
    @classmethod
    def normalize_check_delay(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 60
        return parsed_value

    @field_validator("transcription_check_max_attempts", mode="before")
    @classmethod
    def normalize_check_max_attempts(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 240
        return parsed_value

    @field_validator("schedule_check_interval_minutes", mode="before")
    @classmethod
    def normalize_schedule_interval(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 30
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
