from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx

from .errors import (
    PipelineError,
    ProviderError,
    ProviderQuotaError,
    ProviderRateLimitedError,
    ProviderTimeoutError,
)
from .retry import retry_transient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCandidate:
    name: str
    base_url: str
    api_key: str
    model: str


async def stream_bytes(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            if chunk:
                yield bytes(chunk)
    except httpx.TimeoutException as exc:
        raise ProviderTimeoutError(f"Provider stream timed out: {exc}") from exc
    except httpx.TransportError as exc:
        raise ProviderError(f"Provider stream interrupted: {exc}") from exc


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        if isinstance(err, str) and err.strip():
            return err.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def _error_for_status(response: httpx.Response) -> ProviderError:
    detail = _provider_error_message(response)
    if response.status_code == 429:
        return ProviderRateLimitedError(f"Provider rate limit: {detail}")
    if response.status_code == 402:
        return ProviderQuotaError(f"Provider quota exhausted: {detail}")
    return ProviderError(f"Provider HTTP {response.status_code}: {detail}")


def _coerce_completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message", {})
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    parts.append(text_value)
        return "\n".join(parts)
    return ""


class ChatCompletionsProvider:
    """Client for OpenAI-compatible ``/chat/completions`` endpoints."""

    def __init__(
        self,
        *,
        candidates: list[ProviderCandidate],
        timeout_seconds: float = 25.0,
        max_retries: int = 1,
        retry_base_delay: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.candidates = [candidate for candidate in candidates if candidate.api_key]
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.candidates)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_seconds, connect=8.0),
            transport=self._transport,
        )

    @staticmethod
    def _headers(candidate: ProviderCandidate) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {candidate.api_key}",
            "Content-Type": "application/json",
        }

    def _primary(self) -> ProviderCandidate:
        if not self.candidates:
            raise ProviderError("No AI provider is configured.")
        return self.candidates[0]

    async def _retrying(self, operation: Any) -> Any:
        return await retry_transient(
            operation,
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            retry_on=(ProviderError, ProviderTimeoutError),
        )

    @asynccontextmanager
    async def stream(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[httpx.Response]:
        candidate = self._primary()
        payload: dict[str, Any] = {"model": candidate.model, "messages": messages, "stream": True}
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        client = self._client()
        try:

            async def open_stream() -> httpx.Response:
                request = client.build_request(
                    "POST",
                    f"{candidate.base_url}/chat/completions",
                    headers=self._headers(candidate),
                    json=payload,
                )
                try:
                    response = await client.send(request, stream=True)
                except httpx.TimeoutException as exc:
                    raise ProviderTimeoutError(f"Provider request timed out: {exc}") from exc
                except httpx.TransportError as exc:
                    raise ProviderError(f"Provider network error: {exc}") from exc
                if response.status_code >= 400:
                    await response.aread()
                    await response.aclose()
                    raise _error_for_status(response)
                return response

            response = await self._retrying(open_stream)
            logger.info("streaming from %s model=%s", candidate.name, candidate.model)
            try:
                yield response
            finally:
                await response.aclose()
        finally:
            await client.aclose()

    async def complete(self, messages: list[dict[str, Any]], *, temperature: float = 0.7) -> tuple[str, str]:
        if not self.candidates:
            raise ProviderError("No AI provider is configured.")
        last_error: PipelineError | None = None
        for candidate in self.candidates:

            async def call(candidate: ProviderCandidate = candidate) -> str:
                payload = {"model": candidate.model, "temperature": temperature, "messages": messages}
                try:
                    async with self._client() as client:
                        response = await client.post(
                            f"{candidate.base_url}/chat/completions",
                            headers=self._headers(candidate),
                            json=payload,
                        )
                except httpx.TimeoutException as exc:
                    raise ProviderTimeoutError(f"Provider request timed out: {exc}") from exc
                except httpx.TransportError as exc:
                    raise ProviderError(f"Provider network error: {exc}") from exc
                if response.status_code >= 400:
                    raise _error_for_status(response)
                return _coerce_completion_text(response.json()).strip()

            try:
                text = await self._retrying(call)
            except ProviderQuotaError:
                raise
            except (ProviderError, ProviderTimeoutError) as exc:
                logger.warning("provider %s (%s) failed: %s", candidate.name, candidate.model, exc)
                last_error = exc
                continue
            if text:
                logger.info("completion served by %s model=%s", candidate.name, candidate.model)
                return text, candidate.name
            last_error = ProviderError(f"{candidate.name} returned an empty completion.")
        raise last_error or ProviderError("No AI provider produced a reply.")
