"""Client for the external text-completion service.

The pipeline only needs ``complete(system_prompt, user_content) -> str``.
Every upstream failure surfaces as ``CompletionError``; callers decide
whether to degrade or to mark work as failed.
"""

from __future__ import annotations

import logging
from typing import Protocol

import openai

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o"
DEFAULT_TIMEOUT = 60.0

_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "429", "too many requests")


class CompletionError(Exception):
    """The completion service could not produce a response."""

    def __init__(self, message: str, *, rate_limited: bool | None = None):
        super().__init__(message)
        if rate_limited is None:
            rate_limited = is_rate_limit_error(message)
        self.rate_limited = rate_limited


def is_rate_limit_error(error) -> bool:
    if error is None:
        return False
    if isinstance(error, CompletionError):
        return error.rate_limited
    lowered = str(error).lower()
    return any(marker in lowered for marker in _RATE_LIMIT_MARKERS)


class CompletionService(Protocol):
    def complete(self, system_prompt: str, user_content: str) -> str: ...


class OpenAICompletionService:
    """Chat-completions client asking for JSON object responses."""

    def __init__(
        self,
        api_key: str | None,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 0,
    ):
        self._api_key = (api_key or "").strip()
        self._model = model or DEFAULT_MODEL
        self._timeout = timeout
        self._max_retries = max_retries
        self._client = None

    @property
    def model(self) -> str:
        return self._model

    def _get_client(self) -> openai.OpenAI:
        if not self._api_key:
            raise CompletionError("OPENAI_API_KEY is not configured")
        if self._client is None:
            self._client = openai.OpenAI(
                api_key=self._api_key,
                timeout=self._timeout,
                max_retries=self._max_retries,
            )
        return self._client

    def complete(self, system_prompt: str, user_content: str) -> str:
        client = self._get_client()
        try:
            response = client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_content},
                ],
                response_format={"type": "json_object"},
            )
        except openai.RateLimitError as exc:
            raise CompletionError(
                f"OpenAI rate limit exceeded (429): {exc}", rate_limited=True
            ) from exc
        except openai.APITimeoutError as exc:
            raise CompletionError(
                f"OpenAI request timed out after {self._timeout:g}s"
            ) from exc
        except openai.APIConnectionError as exc:
            raise CompletionError(f"Failed to connect to OpenAI API: {exc}") from exc
        except openai.APIStatusError as exc:
            raise CompletionError(
                f"OpenAI API error: {exc.status_code} - {exc.message}",
                rate_limited=exc.status_code == 429,
            ) from exc

        if not response.choices:
            raise CompletionError("OpenAI returned no choices")
        return response.choices[0].message.content or ""


def build_completion_service(config) -> OpenAICompletionService:
    if not config.get("OPENAI_API_KEY"):
        logger.warning("OPENAI_API_KEY is missing; AI processing will fail softly")
    return OpenAICompletionService(
        api_key=config.get("OPENAI_API_KEY"),
        model=config.get("OPENAI_MODEL", DEFAULT_MODEL),
        timeout=float(config.get("AI_REQUEST_TIMEOUT", DEFAULT_TIMEOUT)),
        max_retries=int(config.get("AI_REQUEST_MAX_RETRIES", 0)),
    )
