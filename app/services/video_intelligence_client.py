import logging
from typing import Any

from app.services.google_api_client import GoogleAccessTokenProvider, GoogleApiClient, GoogleCloudError

logger = logging.getLogger(__name__)


class VideoIntelligenceClient(GoogleApiClient):
    def __init__(
        self,
        token_provider: GoogleAccessTokenProvider,
        language_code: str = "en-US",
        timeout_seconds: float = 30.0,
        api_base_url: str = "https://videointelligence.googleapis.com/v1",
    ) -> None:
        super().__init__(token_provider, timeout_seconds=timeout_seconds)
        self.language_code = language_code
        self.api_base_url = api_base_url.rstrip("/")

    def annotate_speech(self, input_uri: str, output_uri: str) -> str:
        response = self._request_json(
            "POST",
            f"{self.api_base_url}/videos:annotate",
            {
                "inputUri": input_uri,
                "outputUri": output_uri,
                "features": ["SPEECH_TRANSCRIPTION"],
                "videoContext": {
                    "speechTranscriptionConfig": {
                        "languageCode": self.language_code,
                        "enableSpeakerDiarization": True,
                        "maxAlternatives": 1,
                    },
                },
            },
        )
        operation_name = response.get("name")
        if not isinstance(operation_name, str) or not operation_name:
            raise GoogleCloudError("Video Intelligence response did not include an operation name.")
        logger.info("Video Intelligence operation started operation=%s", operation_name)
        return operation_name

    def get_operation(self, operation_name: str) -> dict[str, Any]:
        return self._request_json("GET", f"{self.api_base_url}/{operation_name.lstrip('/')}")
