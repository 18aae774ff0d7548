"""Gemini client wrapper used by the AI-backed job handlers."""

import logging
from typing import Any

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from ballotflow.config import Settings
from ballotflow.schemas.payloads import TokenUsage
from ballotflow.services.errors import ConfigurationError, GenerationError
from ballotflow.services.types import Generation

logger = logging.getLogger(__name__)


def _parse_seconds(value: object) -> float | None:
    if value is None:
        return None
    text = str(value).strip().removesuffix("s")
    try:
        seconds = float(text)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def retry_after_hint(exc: genai_errors.APIError) -> float | None:
    """Seconds the provider asked us to wait, from Retry-After or a RetryInfo detail."""
    headers = getattr(getattr(exc, "response", None), "headers", None)
    if headers is not None:
        seconds = _parse_seconds(headers.get("retry-after"))
        if seconds is not None:
            return seconds
    details = exc.details if isinstance(exc.details, dict) else {}
    error = details.get("error", details)
    for item in error.get("details", []) if isinstance(error, dict) else []:
        if isinstance(item, dict) and "retryDelay" in item:
            return _parse_seconds(item["retryDelay"])
    return None


def _response_text(response: genai_types.GenerateContentResponse) -> str:
    if response.text:
        return response.text
    # Some responses (thinking, tool use) leave .text empty but carry text parts.
    for candidate in response.candidates or []:
        parts = candidate.content.parts if candidate.content else None
        texts = [part.text for part in parts or [] if part.text]
        if texts:
            return "".join(texts)
    return ""


class GeminiGenerator:
    """Calls the Gemini API with the pipeline's runtime options."""

    def __init__(self, settings: Settings, client: genai.Client | None = None) -> None:
        self._settings = settings
        self._client = client

    def _get_client(self) -> genai.Client:
        if self._client is None:
            if not self._settings.gemini_api_key:
                raise ConfigurationError("GEMINI_API_KEY environment variable is not set")
            self._client = genai.Client(api_key=self._settings.gemini_api_key)
        return self._client

    def _config(
        self, response_schema: dict[str, Any] | None, use_search: bool
    ) -> genai_types.GenerateContentConfig:
        options: dict[str, Any] = {
            "temperature": 0,
            "max_output_tokens": self._settings.max_output_tokens,
        }
        if self._settings.use_thinking:
            options["thinking_config"] = genai_types.ThinkingConfig(
                thinking_budget=self._settings.thinking_budget
            )
        if use_search:
            options["tools"] = [genai_types.Tool(google_search=genai_types.GoogleSearch())]
        if response_schema is not None:
            options["response_mime_type"] = "application/json"
            options["response_schema"] = response_schema
        return genai_types.GenerateContentConfig(**options)

    def generate(
        self,
        model: str,
        parts: list[str],
        *,
        response_schema: dict[str, Any] | None = None,
        use_search: bool = False,
    ) -> Generation:
        """Send *parts* as one user turn to *model* and return its text and usage.

        Provider failures are raised as GenerationError carrying the HTTP status
        and any retry-after hint.
        """
        client = self._get_client()
        logger.info("sending %d chars to Gemini model %s", sum(len(p) for p in parts), model)
        try:
            response = client.models.generate_content(
                model=model,
                contents=parts,
                config=self._config(response_schema, use_search),
            )
        except genai_errors.APIError as exc:
            raise GenerationError(
                f"{model}: {exc.message or exc}", status=exc.code, retry_after=retry_after_hint(exc)
            ) from exc
        except httpx.HTTPError as exc:
            raise GenerationError(f"{model}: transport error: {exc}") from exc

        text = _response_text(response)
        if not text.strip():
            raise GenerationError(f"{model} returned empty output")
        usage = response.usage_metadata
        logger.info("Gemini response received from %s (%d chars)", model, len(text))
        return Generation(
            text=text,
            usage=TokenUsage(
                request_tokens=usage.prompt_token_count if usage else None,
                response_tokens=usage.candidates_token_count if usage else None,
                total_tokens=usage.total_token_count if usage else None,
            ),
        )
