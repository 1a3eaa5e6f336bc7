from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Optional, Protocol

import httpx

from persona_chat.core.errors import (
    ChatError,
    ConfigurationError,
    StreamTransportError,
    UpstreamError,
    UpstreamTimeout,
)


@dataclass
class UpstreamRuntimeConfig:
    """Runtime configuration needed for one upstream call."""

    model_name: str
    max_tokens: int
    api_url: str | None = None
    api_key: str | None = None
    api_version: str | None = None


class UpstreamAdapter(Protocol):
    """Adapter interface for the hosted model API."""

    async def complete(
        self, cfg: UpstreamRuntimeConfig, system_prompt: str, messages: list[dict]
    ) -> dict[str, Any]:
        """Return the complete response payload."""

    def stream(
        self, cfg: UpstreamRuntimeConfig, system_prompt: str, messages: list[dict]
    ) -> AsyncGenerator[bytes, None]:
        """Yield the raw event-stream bytes as they arrive."""


def build_status_error(response: httpx.Response) -> ChatError:
    """Build a normalized upstream error from an HTTP response."""

    status = response.status_code
    message = _extract_response_message(response)
    formatted = f"Upstream returned {status}: {message}"
    if status == 408:
        return UpstreamTimeout("PROVIDER_TIMEOUT", formatted, retryable=True, status_code=status)
    if status == 429:
        return UpstreamError("PROVIDER_RATE_LIMIT", formatted, retryable=True, status_code=status)
    if status >= 500:
        return UpstreamError("PROVIDER_UPSTREAM", formatted, retryable=True, status_code=status)
    return UpstreamError("PROVIDER_BAD_STATUS", formatted, status_code=status)


def require_api_key(api_key: Optional[str], provider_name: str) -> str:
    """Return an API key or raise a normalized configuration error."""

    if api_key:
        return api_key
    raise ConfigurationError("API_KEY_REQUIRED", f"API key is required for {provider_name}.")


def _extract_response_message(response: httpx.Response) -> str:
    """Extract a concise error message from upstream JSON/text payloads."""

    try:
        payload: Any = response.json()
    except ValueError:
        return (response.text or "Unknown error from upstream.").strip()

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            detail = error.get("message") or error.get("type")
            if isinstance(detail, str) and detail.strip():
                return detail.strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return (response.text or "Unknown error from upstream.").strip()


class HTTPProviderAdapter:
    """Shared HTTP behavior for upstream adapters."""

    def __init__(
        self,
        timeout_sec: float = 30,
        stream_idle_timeout_sec: float = 120,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._timeout = timeout_sec
        self._stream_idle_timeout = stream_idle_timeout_sec
        self._client = http_client

    async def _request_json(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        response = await self._request(method, url, headers=headers, json=json)
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(
                "PROVIDER_PARSE_ERROR", "Invalid JSON from upstream.", status_code=response.status_code
            ) from exc
        if not isinstance(payload, dict):
            raise UpstreamError("PROVIDER_PARSE_ERROR", "Upstream returned invalid JSON payload.")
        return payload

    async def _request(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            async with self._http_client(self._timeout) as client:
                response = await client.request(
                    method, url, headers=headers, json=json, timeout=self._timeout
                )
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout(
                "PROVIDER_TIMEOUT", "Upstream request timed out.", retryable=True
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamError(
                "PROVIDER_CONNECTION_ERROR",
                "Upstream connection failed.",
                retryable=True,
            ) from exc
        if response.status_code >= 400:
            raise build_status_error(response)
        return response

    async def _stream_bytes(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> AsyncGenerator[bytes, None]:
        """Yield response body chunks; the idle bound applies to every read."""

        timeout = httpx.Timeout(self._stream_idle_timeout)
        try:
            async with self._http_client(timeout) as client:
                async with client.stream(
                    method, url, headers=headers, json=json, timeout=timeout
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise build_status_error(response)
                    async for chunk in response.aiter_bytes():
                        if chunk:
                            yield chunk
        except httpx.TimeoutException as exc:
            raise StreamTransportError(
                "PROVIDER_TIMEOUT",
                f"Upstream stream was idle for more than {self._stream_idle_timeout:g} seconds.",
                retryable=True,
            ) from exc
        except httpx.RequestError as exc:
            raise StreamTransportError(
                "PROVIDER_CONNECTION_ERROR",
                "Upstream stream connection failed.",
                retryable=True,
            ) from exc

    @asynccontextmanager
    async def _http_client(self, timeout: float | httpx.Timeout) -> AsyncIterator[httpx.AsyncClient]:
        if self._client:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=timeout) as client:
            yield client
