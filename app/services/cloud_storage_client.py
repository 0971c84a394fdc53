import json
import logging
import re
import shutil
import tempfile
from typing import Any
from urllib import error, parse, request

from app.services.google_api_client import (
    GoogleAccessTokenProvider,
    GoogleApiClient,
    GoogleCloudConfigurationError,
    GoogleCloudError,
)

logger = logging.getLogger(__name__)

GCS_URI_PATTERN = re.compile(r"^gs://([^/]+)/(.+)$")


def parse_gcs_uri(uri: str) -> tuple[str, str]:
    match = GCS_URI_PATTERN.match(uri)
    if not match:
        raise GoogleCloudError(f"Invalid Cloud Storage URI: {uri}")
    return match.group(1), match.group(2)


class CloudStorageClient(GoogleApiClient):
    def __init__(
        self,
        token_provider: GoogleAccessTokenProvider,
        bucket: str,
        timeout_seconds: float = 30.0,
        api_base_url: str = "https://storage.googleapis.com",
    ) -> None:
        super().__init__(token_provider, timeout_seconds=timeout_seconds)
        self.bucket = bucket
        self.api_base_url = api_base_url.rstrip("/")

    def gcs_uri(self, object_name: str) -> str:
        return f"gs://{self._require_bucket()}/{object_name}"

    def upload_from_url(self, source_url: str, object_name: str) -> str:
        bucket = self._require_bucket()
        logger.info("Copying media into Cloud Storage bucket=%s object=%s", bucket, object_name)
        with tempfile.TemporaryFile() as buffer:
            content_type = self._download_to(source_url, buffer)
            size = buffer.tell()
            buffer.seek(0)
            query = parse.urlencode({"uploadType": "media", "name": object_name})
            self._send(
                "POST",
                f"{self.api_base_url}/upload/storage/v1/b/{parse.quote(bucket, safe='')}/o?{query}",
                data=buffer,
                headers={"Content-Type": content_type, "Content-Length": str(size)},
            )
        uri = f"gs://{bucket}/{object_name}"
        logger.info("Upload to Cloud Storage completed uri=%s bytes=%s", uri, size)
        return uri

    def download_bytes(self, gcs_uri: str) -> bytes:
        bucket, object_name = parse_gcs_uri(gcs_uri)
        return self._send(
            "GET",
            f"{self.api_base_url}/storage/v1/b/{parse.quote(bucket, safe='')}"
            f"/o/{parse.quote(object_name, safe='')}?alt=media",
        )

    def download_json(self, gcs_uri: str) -> Any:
        content = self.download_bytes(gcs_uri)
        try:
            return json.loads(content.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise GoogleCloudError(f"Object {gcs_uri} is not valid JSON.") from exc

    def _download_to(self, source_url: str, buffer: Any) -> str:
        req = request.Request(source_url, method="GET")
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                shutil.copyfileobj(response, buffer)
                return response.headers.get("Content-Type") or "video/mp4"
        except error.HTTPError as exc:
            raise GoogleCloudError(
                f"Media source returned HTTP {exc.code}.",
                status=exc.code,
            ) from exc
        except error.URLError as exc:
            raise GoogleCloudError(f"Media source connection error: {exc.reason}") from exc

    def _require_bucket(self) -> str:
        if not self.bucket:
            raise GoogleCloudConfigurationError("STORAGE_BUCKET is not configured.")
        return self.bucket
