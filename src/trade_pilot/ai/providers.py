"""HTTP model provider clients."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any

import httpx
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_before_delay,
    wait_exponential,
)

from trade_pilot.ai.prompts import SYSTEM_PROMPT
from trade_pilot.config import Provider, Settings
from trade_pilot.errors import ProviderError, ProviderTimeout
from trade_pilot.interfaces import ModelProvider
from trade_pilot.utils.logging import get_logger

_GROQ_URL = "https://api.groq.com/openai/v1/chat/completions"
_OPENAI_URL = "https://api.openai.com/v1/chat/completions"
_GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class ProviderTransientError(ProviderError):
    """Connection failure or retryable HTTP status; retried with backoff."""


class _HTTPProvider(ABC):
    """Shared request/error mapping for HTTP providers.

    One ``complete`` call, retries and backoff included, stays within
    ``timeout`` seconds. Timeouts surface immediately as ``ProviderTimeout``;
    only transient transport failures are retried, and only while the next
    attempt can still start inside that budget.
    """

    name: Provider

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        timeout: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._transport = transport
        self._logger = get_logger(f"trade_pilot.ai.providers.{self.name.value}")

    @property
    def model(self) -> str:
        return self._model

    def complete(self, prompt: str) -> str:
        if not self._api_key:
            raise ProviderError(f"missing_{self.name.value}_api_key", provider=self.name.value)
        started = time.perf_counter()
        deadline = time.monotonic() + self._timeout
        retrying = Retrying(
            retry=retry_if_exception_type(ProviderTransientError),
            wait=wait_exponential(multiplier=1, min=1, max=8),
            stop=stop_after_attempt(3) | stop_before_delay(self._timeout),
            reraise=True,
        )
        try:
            payload = retrying(self._post, prompt, deadline)
        except ProviderError as exc:
            self._logger.warning(
                "provider_request_failed",
                model=self._model,
                error=str(exc),
                latency_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            raise
        return self._extract_text(payload)

    def _post(self, prompt: str, deadline: float) -> dict[str, Any]:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ProviderTimeout(f"timeout_after_{self._timeout}s", provider=self.name.value)
        url, headers, params, body = self._build_request(prompt)
        try:
            with httpx.Client(timeout=remaining, transport=self._transport) as client:
                response = client.post(url, headers=headers, params=params, json=body)
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"timeout_after_{self._timeout}s", provider=self.name.value) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status in _RETRYABLE_STATUS:
                raise ProviderTransientError(f"http_{status}", provider=self.name.value) from exc
            raise ProviderError(f"http_{status}", provider=self.name.value) from exc
        except httpx.TransportError as exc:
            raise ProviderTransientError(str(exc), provider=self.name.value) from exc

        try:
            decoded = response.json()
        except ValueError as exc:
            raise ProviderError("response_not_json", provider=self.name.value) from exc
        if not isinstance(decoded, dict):
            raise ProviderError("response_not_object", provider=self.name.value)
        return decoded

    @abstractmethod
    def _build_request(
        self, prompt: str
    ) -> tuple[str, dict[str, str], dict[str, str], dict[str, Any]]:
        """URL, headers, query params and JSON body for one request."""

    @abstractmethod
    def _extract_text(self, payload: dict[str, Any]) -> str:
        """Model text from a decoded response; empty when absent."""


class ChatCompletionsProvider(_HTTPProvider):
    """OpenAI-compatible chat completions endpoint (OpenAI, Groq)."""

    def __init__(self, name: Provider, *, url: str, **kwargs: Any) -> None:
        self.name = name
        self._url = url
        super().__init__(**kwargs)

    def _build_request(
        self, prompt: str
    ) -> tuple[str, dict[str, str], dict[str, str], dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        body = {
            "model": self._model,
            "temperature": 0.3,
            "max_tokens": 1024,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        return self._url, headers, {}, body

    def _extract_text(self, payload: dict[str, Any]) -> str:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return ""
        first = choices[0]
        if not isinstance(first, dict):
            return ""
        message = first.get("message")
        if not isinstance(message, dict):
            return ""
        content = message.get("content")
        return content if isinstance(content, str) else ""


class GeminiProvider(_HTTPProvider):
    """Google Gemini ``generateContent`` endpoint."""

    name = Provider.GEMINI

    def _build_request(
        self, prompt: str
    ) -> tuple[str, dict[str, str], dict[str, str], dict[str, Any]]:
        body = {
            "systemInstruction": {"parts": [{"text": SYSTEM_PROMPT}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.3, "maxOutputTokens": 1024},
        }
        return (
            _GEMINI_URL.format(model=self._model),
            {"Content-Type": "application/json"},
            {"key": self._api_key},
            body,
        )

    def _extract_text(self, payload: dict[str, Any]) -> str:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return ""
        content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            return ""
        return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


def build_providers(
    settings: Settings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> dict[Provider, ModelProvider]:
    """Instantiate a client for every provider that has an API key."""
    providers: dict[Provider, ModelProvider] = {}
    for provider in settings.configured_providers():
        common: dict[str, Any] = {
            "api_key": settings.api_key_for(provider),
            "timeout": settings.provider_timeout,
            "transport": transport,
        }
        if provider == Provider.GEMINI:
            providers[provider] = GeminiProvider(model=settings.gemini_model, **common)
        elif provider == Provider.GROQ:
            providers[provider] = ChatCompletionsProvider(
                provider, url=_GROQ_URL, model=settings.groq_model, **common
            )
        else:
            providers[provider] = ChatCompletionsProvider(
                provider, url=_OPENAI_URL, model=settings.openai_model, **common
            )
    return providers
