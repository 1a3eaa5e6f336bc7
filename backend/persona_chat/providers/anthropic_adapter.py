from __future__ import annotations

from typing import Any, AsyncGenerator, Optional

import httpx

from persona_chat.core.errors import ConfigurationError, UpstreamError
from persona_chat.providers.base import HTTPProviderAdapter, UpstreamRuntimeConfig, require_api_key

DEFAULT_API_VERSION = "2023-06-01"


class AnthropicAdapter(HTTPProviderAdapter):
    """Adapter for the Anthropic Messages API."""

    def __init__(
        self,
        timeout_sec: float = 30,
        stream_idle_timeout_sec: float = 120,
        web_search_max_uses: int = 0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(
            timeout_sec=timeout_sec,
            stream_idle_timeout_sec=stream_idle_timeout_sec,
            http_client=http_client,
        )
        self._web_search_max_uses = max(0, web_search_max_uses)

    async def complete(
        self, cfg: UpstreamRuntimeConfig, system_prompt: str, messages: list[dict]
    ) -> dict[str, Any]:
        url = self._require_url(cfg.api_url)
        headers = self._headers(cfg)
        payload = self._build_payload(cfg, system_prompt, messages)
        data = await self._request_json("POST", url, headers=headers, json=payload)
        if not isinstance(data.get("content"), list):
            raise UpstreamError("PROVIDER_PARSE_ERROR", "Upstream returned no content blocks.")
        return data

    def stream(
        self, cfg: UpstreamRuntimeConfig, system_prompt: str, messages: list[dict]
    ) -> AsyncGenerator[bytes, None]:
        url = self._require_url(cfg.api_url)
        headers = self._headers(cfg)
        headers["Accept"] = "text/event-stream"
        payload = self._build_payload(cfg, system_prompt, messages)
        payload["stream"] = True
        if self._web_search_max_uses:
            payload["tools"] = [
                {
                    "type": "web_search_20250305",
                    "name": "web_search",
                    "max_uses": self._web_search_max_uses,
                }
            ]
        return self._stream_bytes("POST", url, headers=headers, json=payload)

    @staticmethod
    def _build_payload(
        cfg: UpstreamRuntimeConfig, system_prompt: str, messages: list[dict]
    ) -> dict[str, Any]:
        return {
            "model": cfg.model_name,
            "max_tokens": cfg.max_tokens,
            "system": system_prompt,
            "messages": messages,
        }

    @staticmethod
    def _headers(cfg: UpstreamRuntimeConfig) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": require_api_key(cfg.api_key, "the upstream model API"),
            "anthropic-version": cfg.api_version or DEFAULT_API_VERSION,
        }

    @staticmethod
    def _require_url(api_url: Optional[str]) -> str:
        if not api_url:
            raise ConfigurationError("PROVIDER_URL_MISSING", "Upstream API URL is required.")
        return api_url
