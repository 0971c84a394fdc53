import base64
import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib import parse

from app.services.google_api_client import (
    GoogleAccessTokenProvider,
    GoogleApiClient,
    GoogleCloudConfigurationError,
)

logger = logging.getLogger(__name__)


class CloudTasksClient(GoogleApiClient):
    def __init__(
        self,
        token_provider: GoogleAccessTokenProvider,
        *,
        project: str,
        location: str,
        queue: str,
        service_account_email: str,
        timeout_seconds: float = 30.0,
        api_base_url: str = "https://cloudtasks.googleapis.com/v2",
    ) -> None:
        super().__init__(token_provider, timeout_seconds=timeout_seconds)
        self.project = project
        self.location = location
        self.queue = queue
        self.service_account_email = service_account_email
        self.api_base_url = api_base_url.rstrip("/")

    def queue_path(self) -> str:
        if not self.project:
            raise GoogleCloudConfigurationError("GOOGLE_CLOUD_PROJECT is not configured.")
        return (
            f"projects/{parse.quote(self.project, safe='')}"
            f"/locations/{parse.quote(self.location, safe='')}"
            f"/queues/{parse.quote(self.queue, safe='')}"
        )

    def create_http_task(
        self,
        *,
        url: str,
        payload: Mapping[str, Any],
        delay_seconds: int,
        audience: str | None = None,
    ) -> str:
        if not self.service_account_email:
            raise GoogleCloudConfigurationError("CLOUD_TASKS_SERVICE_ACCOUNT_EMAIL is not configured.")

        schedule_time = datetime.now(UTC) + timedelta(seconds=delay_seconds)
        body = base64.b64encode(json.dumps(dict(payload)).encode("utf-8")).decode("ascii")
        task = {
            "httpRequest": {
                "httpMethod": "POST",
                "url": url,
                "headers": {"Content-Type": "application/json"},
                "body": body,
                "oidcToken": {
                    "serviceAccountEmail": self.service_account_email,
                    "audience": audience or url,
                },
            },
            "scheduleTime": schedule_time.isoformat().replace("+00:00", "Z"),
        }
        response = self._request_json(
            "POST",
            f"{self.api_base_url}/{self.queue_path()}/tasks",
            {"task": task},
        )
        task_name = str(response.get("name", ""))
        logger.info("Cloud Task enqueued task=%s delay_seconds=%s", task_name, delay_seconds)
        return task_name
