from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Optional

from fastapi import Request

from persona_chat.core.config import Settings, get_settings
from persona_chat.core.errors import ValidationError
from persona_chat.core.security import sanitize_text
from persona_chat.persona.filter import PersonaFilter
from persona_chat.providers.base import UpstreamAdapter, UpstreamRuntimeConfig, require_api_key
from persona_chat.services.conversation_store import ChatMessage, ConversationStore, TextBlock
from persona_chat.services.prompt_builder import PersonaPromptBuilder
from persona_chat.services.stream_relay import StreamDone, StreamEvent, StreamRelay

logger = logging.getLogger(__name__)

MAX_MESSAGE_LEN = 100_000
MAX_SESSION_ID_LEN = 200


@dataclass(frozen=True)
class ChatResult:
    """Result of a blocking chat exchange."""

    session_id: str
    data: Any
    filtered: bool


class ChatService:
    """Run chat exchanges against the upstream model for one session at a time."""

    def __init__(
        self,
        store: ConversationStore,
        adapter: UpstreamAdapter,
        persona_filter: PersonaFilter,
        prompt_builder: PersonaPromptBuilder,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._persona_filter = persona_filter
        self._prompt_builder = prompt_builder
        self._settings = settings or get_settings()

    @property
    def store(self) -> ConversationStore:
        return self._store

    def set_adapter(self, adapter: UpstreamAdapter) -> None:
        """Override the upstream adapter (useful for tests)."""

        self._adapter = adapter

    def resolve_session_id(self, session_id: Optional[str]) -> str:
        """Return a usable session id, falling back to the default session."""

        return sanitize_text(session_id or "", MAX_SESSION_ID_LEN) or self._settings.default_session_id

    async def submit_message(
        self,
        session_id: Optional[str],
        text: Optional[str],
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        raw_output_allowed: bool = False,
    ) -> ChatResult:
        """Send one message and return the persona-filtered upstream payload."""

        message = self._validate_text(text)
        cfg = self._runtime_config(
            model or self._settings.default_model,
            max_tokens or self._settings.default_max_tokens,
        )
        session_id = self.resolve_session_id(session_id)
        messages = await self._record_user_turn(session_id, message, cfg)

        raw = await self._adapter.complete(cfg, self._prompt_builder.system_prompt(), messages)
        result = await self._persona_filter.filter_payload(raw, raw_output_allowed=raw_output_allowed)
        reply = _payload_text(result.filtered)
        if reply:
            await self._store.append(session_id, "assistant", [TextBlock(text=reply)])
        return ChatResult(session_id=session_id, data=result.filtered, filtered=not result.skipped)

    async def open_stream(
        self,
        session_id: Optional[str],
        text: Optional[str],
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        raw_output_allowed: bool = False,
    ) -> AsyncIterator[StreamEvent]:
        """Start a streaming exchange.

        Validation and configuration errors are raised here; everything after
        the request is issued arrives as stream events.
        """

        message = self._validate_text(text)
        cfg = self._runtime_config(
            model or self._settings.stream_default_model,
            max_tokens or self._settings.stream_default_max_tokens,
        )
        session_id = self.resolve_session_id(session_id)
        messages = await self._record_user_turn(session_id, message, cfg)
        chunks = self._adapter.stream(cfg, self._prompt_builder.system_prompt(), messages)
        return self._relay_and_record(session_id, chunks, raw_output_allowed)

    async def clear_session(self, session_id: Optional[str]) -> str:
        """Drop the stored history for a session."""

        session_id = self.resolve_session_id(session_id)
        await self._store.clear(session_id)
        logger.info("Cleared conversation history for session: %s", session_id)
        return session_id

    async def history(self, session_id: Optional[str]) -> tuple[ChatMessage, ...]:
        return await self._store.get(self.resolve_session_id(session_id))

    async def _relay_and_record(
        self,
        session_id: str,
        chunks: AsyncGenerator[bytes, None],
        raw_output_allowed: bool,
    ) -> AsyncIterator[StreamEvent]:
        relay = StreamRelay()
        # Closing this generator early closes the relay and the upstream response.
        async with aclosing(chunks), aclosing(relay.relay(chunks)) as events:
            async for event in events:
                if isinstance(event, StreamDone):
                    await self._record_streamed_turn(session_id, relay.full_text, raw_output_allowed)
                yield event

    async def _record_streamed_turn(self, session_id: str, text: str, raw_output_allowed: bool) -> None:
        if not text:
            return
        if not raw_output_allowed:
            text = self._persona_filter.rewrite(text)
        await self._store.append(session_id, "assistant", text)

    async def _record_user_turn(
        self, session_id: str, message: str, cfg: UpstreamRuntimeConfig
    ) -> list[dict]:
        await self._store.append(session_id, "user", message)
        history = await self._store.get(session_id)
        messages = self._prompt_builder.build_messages(history)
        logger.info(
            "Sending upstream request session=%s model=%s history=%d",
            session_id,
            cfg.model_name,
            len(messages),
        )
        return messages

    def _runtime_config(self, model: str, max_tokens: int) -> UpstreamRuntimeConfig:
        return UpstreamRuntimeConfig(
            model_name=model,
            max_tokens=max_tokens,
            api_url=self._settings.upstream_api_url,
            api_key=require_api_key(self._settings.upstream_api_key, "the upstream model API"),
            api_version=self._settings.upstream_api_version,
        )

    @staticmethod
    def _validate_text(text: Optional[str]) -> str:
        message = sanitize_text(text or "", MAX_MESSAGE_LEN)
        if not message:
            raise ValidationError("MESSAGE_REQUIRED", "Message is required")
        return message


def _payload_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    blocks = payload.get("content")
    if not isinstance(blocks, list):
        return ""
    texts = [
        block["text"]
        for block in blocks
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
    ]
    return "".join(texts)


def get_chat_service(request: Request) -> ChatService:
    """Dependency to access the chat service from app state."""

    return request.app.state.chat_service
