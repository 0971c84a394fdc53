import json
import logging
import re
from collections.abc import Mapping, Sequence
from http.client import RemoteDisconnected
from time import sleep
from typing import Any
from urllib import error, parse, request

from pydantic import ValidationError

from app.schemas.analysis import ConnectionAnalysis

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_CHARS = 50_000
CODE_FENCE_PATTERN = re.compile(r"^\s*```[a-zA-Z]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


class GeminiAnalysisError(Exception):
    pass


class GeminiConfigurationError(GeminiAnalysisError):
    pass


class GeminiAnalysisClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: float = 60.0,
        api_base_url: str = "https://generativelanguage.googleapis.com/v1beta",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url.rstrip("/")

    def analyze(self, transcript_text: str, questions: Sequence[str] = ()) -> ConnectionAnalysis:
        if not transcript_text.strip():
            raise GeminiAnalysisError("No transcript text provided for analysis.")
        if not self.api_key:
            raise GeminiConfigurationError("GEMINI_API_KEY is not configured.")

        prompt = self._build_prompt(transcript_text=transcript_text, questions=questions)
        response_payload = self._generate(prompt)
        output_text = self._extract_text_response(response_payload)
        parsed_output = self._parse_json_output(output_text)
        try:
            return ConnectionAnalysis.model_validate(parsed_output)
        except ValidationError as exc:
            raise GeminiAnalysisError(f"Gemini output does not match the analysis schema: {exc}") from exc

    def _generate(self, prompt: str) -> dict[str, Any]:
        query = parse.urlencode({"key": self.api_key})
        endpoint = f"{self.api_base_url}/models/{self.model}:generateContent?{query}"
        payload = {
            "system_instruction": {
                "parts": [
                    {
                        "text": (
                            "You are an expert relationship intelligence analyst. "
                            "Respond with valid JSON only."
                        ),
                    },
                ],
            },
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": 0.5,
                "topP": 0.95,
                "maxOutputTokens": 8192,
                "responseMimeType": "application/json",
            },
        }
        req = request.Request(
            endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        max_attempts = 3
        response_body: bytes | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                with request.urlopen(req, timeout=self.timeout_seconds) as response:
                    response_body = response.read()
                break
            except TimeoutError as exc:
                if attempt >= max_attempts:
                    raise GeminiAnalysisError("Gemini API request timed out.") from exc
            except RemoteDisconnected as exc:
                if attempt >= max_attempts:
                    raise GeminiAnalysisError(
                        "Gemini API connection was closed before sending a response.",
                    ) from exc
            except error.HTTPError as exc:
                body = exc.read().decode("utf-8", errors="ignore")
                is_retryable_status = exc.code in {429, 500, 502, 503, 504}
                if not is_retryable_status or attempt >= max_attempts:
                    raise GeminiAnalysisError(
                        f"Gemini API HTTP {exc.code}: {body or 'empty response body'}",
                    ) from exc
            except error.URLError as exc:
                if attempt >= max_attempts:
                    raise GeminiAnalysisError(
                        f"Gemini API connection error: {exc.reason}",
                    ) from exc

            logger.warning("Gemini request failed, retrying attempt=%s", attempt)
            sleep(0.5 * attempt)

        if response_body is None:
            raise GeminiAnalysisError("Gemini API request failed after multiple attempts.")

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise GeminiAnalysisError("Gemini API returned invalid JSON.") from exc

        if not isinstance(parsed_body, dict):
            raise GeminiAnalysisError("Gemini API response is not a JSON object.")
        return parsed_body

    def _extract_text_response(self, payload: Mapping[str, Any]) -> str:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            raise GeminiAnalysisError("Gemini API response missing candidates.")

        first_candidate = candidates[0]
        if not isinstance(first_candidate, Mapping):
            raise GeminiAnalysisError("Gemini API response candidate is invalid.")

        content = first_candidate.get("content")
        if not isinstance(content, Mapping):
            raise GeminiAnalysisError("Gemini API response missing content.")

        parts = content.get("parts")
        if not isinstance(parts, list) or not parts:
            raise GeminiAnalysisError("Gemini API response missing content parts.")

        chunks = [
            part["text"].strip()
            for part in parts
            if isinstance(part, Mapping) and isinstance(part.get("text"), str) and part["text"].strip()
        ]
        if not chunks:
            raise GeminiAnalysisError("Gemini API response did not include text output.")
        return "\n".join(chunks)

    def _parse_json_output(self, raw_text: str) -> dict[str, Any]:
        fenced = CODE_FENCE_PATTERN.match(raw_text)
        cleaned = fenced.group(1) if fenced else raw_text
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError as exc:
            raise GeminiAnalysisError("Gemini output is not valid JSON.") from exc
        if not isinstance(parsed, dict):
            raise GeminiAnalysisError("Gemini output is not a JSON object.")
        return parsed

    def _build_prompt(self, *, transcript_text: str, questions: Sequence[str]) -> str:
        serialized_questions = json.dumps(list(questions), ensure_ascii=False)
        truncated_text = transcript_text.strip()[:MAX_TRANSCRIPT_CHARS]
        return (
            "Analyze the following transcript from a video connection between two colleagues.\n"
            "Context:\n"
            "- The goal is to build trust and connection in remote teams.\n"
            f"- Questions asked during the session: {serialized_questions}\n\n"
            "Output valid JSON with this exact schema:\n"
            "{\n"
            '  "summary": "2-3 sentences summarizing the conversation flow.",\n'
            '  "sentimentScore": 0-100 (number, 0 is negative, 100 is positive),\n'
            '  "interactionBalance": 0-100 (number, 50 means perfect balance between speakers),\n'
            '  "topics": ["topic1", "topic2"],\n'
            '  "keyTakeaways": ["point 1", "point 2"],\n'
            '  "vibeScore": "Thriving" | "Neutral" | "Concern",\n'
            '  "questions": [\n'
            '    {"question": "The question asked", "sentiment": 0-100, "topics": ["topic"]}\n'
            "  ]\n"
            "}\n\n"
            f"Transcript:\n{truncated_text}"
        )
