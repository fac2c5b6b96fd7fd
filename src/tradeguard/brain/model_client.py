"""Language-model transport.

``OpenRouterModelClient`` talks to any OpenAI-compatible endpoint (OpenRouter
by default) through ``openai.AsyncOpenAI`` and maps transport failures onto
the ``Model*Error`` family so callers can classify them.
"""

from abc import ABC, abstractmethod
from typing import Any

import openai

from tradeguard.config import TradeGuardSettings, settings as default_settings
from tradeguard.core.errors import (
    ConfigurationError,
    ModelAuthError,
    ModelRateLimitError,
    ModelServerError,
    ModelTimeoutError,
)
from tradeguard.logging import get_logger

logger = get_logger(__name__)

Messages = list[dict[str, str]]

_OR_HEADERS = {
    "HTTP-Referer": "https://tradeguard.local",
    "X-Title": "TradeGuard Signal Engine",
}
_MAX_TOKENS = 1500
_TEMPERATURE = 0.2


class ModelClient(ABC):
    """Sends a chat prompt to a model and returns its raw text."""

    @abstractmethod
    async def send(self, messages: Messages, *, model: str, request_type: str = "detail") -> str:
        """Return the raw completion text.

        Raises:
            ConfigurationError: No API key configured.
            ModelAuthError, ModelRateLimitError, ModelServerError,
            ModelTimeoutError
        """
        pass


class OpenRouterModelClient(ModelClient):
    """OpenAI-compatible chat client pointed at OpenRouter."""

    def __init__(self, config: TradeGuardSettings | None = None) -> None:
        self._config = config or default_settings
        self._client: openai.AsyncOpenAI | None = None
        if self._config.has_model_credentials:
            self._client = openai.AsyncOpenAI(
                base_url=self._config.model_base_url,
                api_key=self._config.openrouter_api_key.strip(),
                timeout=max(self._config.screening_timeout_seconds, self._config.detail_timeout_seconds),
                max_retries=0,
            )
            logger.info("Model client initialized (base_url=%s)", self._config.model_base_url)
        else:
            logger.debug("Model client: no API key configured")

    async def send(self, messages: Messages, *, model: str, request_type: str = "detail") -> str:
        if self._client is None:
            raise ConfigurationError("OpenRouter API key is not configured")

        try:
            response = await self._client.chat.completions.create(
                model=model,
                max_tokens=_MAX_TOKENS,
                temperature=_TEMPERATURE,
                messages=messages,  # type: ignore[arg-type]
                extra_headers=_OR_HEADERS,
            )
        except openai.AuthenticationError as exc:
            raise ModelAuthError(f"Model authentication failed: {exc}", model=model, status_code=401) from exc
        except openai.RateLimitError as exc:
            raise ModelRateLimitError(f"Model rate limit hit: {exc}", model=model, status_code=429) from exc
        except openai.APITimeoutError as exc:
            raise ModelTimeoutError(self._config.detail_timeout_seconds, request_type) from exc
        except openai.APIStatusError as exc:
            if exc.status_code == 401:
                raise ModelAuthError(str(exc), model=model, status_code=401) from exc
            raise ModelServerError(
                f"Model request failed with HTTP {exc.status_code}", model=model, status_code=exc.status_code
            ) from exc
        except openai.APIError as exc:
            raise ModelServerError(f"Model request failed: {exc}", model=model) from exc

        return self._extract_text(response, model)

    @staticmethod
    def _extract_text(response: Any, model: str) -> str:
        try:
            raw = response.choices[0].message.content
        except (AttributeError, IndexError) as exc:
            raise ModelServerError(f"Unexpected response shape: {exc}", model=model) from exc
        if not raw:
            raise ModelServerError("Empty response from model", model=model)
        return raw

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
