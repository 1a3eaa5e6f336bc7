from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass
from typing import Any, Literal, Mapping, Optional, Protocol, Sequence, Union

MessageRole = Literal["user", "assistant"]
MESSAGE_ROLES = ("user", "assistant")
DEFAULT_HISTORY_LIMIT = 20


@dataclass(frozen=True)
class TextBlock:
    """A single text content block."""

    text: str
    kind: str = "text"

    def to_payload(self) -> dict[str, str]:
        return {"type": self.kind, "text": self.text}


@dataclass(frozen=True)
class ChatMessage:
    """One stored conversation turn."""

    role: str
    content: tuple[TextBlock, ...]

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.content if block.kind == "text")

    def to_payload(self) -> dict[str, Any]:
        return {"role": self.role, "content": [block.to_payload() for block in self.content]}


MessageContent = Union[str, Sequence[Union[TextBlock, Mapping[str, Any]]]]


class SessionStore(Protocol):
    """Keyed storage backing conversation histories."""

    async def get(self, key: str) -> Optional[tuple[ChatMessage, ...]]:
        """Return the stored history or None."""

    async def put(self, key: str, value: tuple[ChatMessage, ...]) -> None:
        """Replace the stored history."""

    async def delete(self, key: str) -> None:
        """Remove the stored history; missing keys are ignored."""


class InMemorySessionStore:
    """Process-local session store."""

    def __init__(self) -> None:
        self._items: dict[str, tuple[ChatMessage, ...]] = {}

    async def get(self, key: str) -> Optional[tuple[ChatMessage, ...]]:
        return self._items.get(key)

    async def put(self, key: str, value: tuple[ChatMessage, ...]) -> None:
        self._items[key] = value

    async def delete(self, key: str) -> None:
        self._items.pop(key, None)


class ConversationStore:
    """Bounded per-session message history.

    Appends to one session are serialized; different sessions never wait on
    each other.
    """

    def __init__(self, store: Optional[SessionStore] = None, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if limit < 1:
            raise ValueError("History limit must be at least 1.")
        self._store = store or InMemorySessionStore()
        self._limit = limit
        # Entries vanish once no caller holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._locks_lock = asyncio.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    async def append(self, session_id: str, role: str, content: MessageContent) -> ChatMessage:
        """Append a turn and drop the oldest entries beyond the limit."""

        message = ChatMessage(role=_normalize_role(role), content=_to_blocks(content))
        lock = await self._session_lock(session_id)
        async with lock:
            history = await self._store.get(session_id) or ()
            history = (*history, message)[-self._limit :]
            await self._store.put(session_id, history)
        return message

    async def get(self, session_id: str) -> tuple[ChatMessage, ...]:
        """Return the session history, oldest first."""

        return await self._store.get(session_id) or ()

    async def clear(self, session_id: str) -> None:
        """Drop the whole session history."""

        lock = await self._session_lock(session_id)
        async with lock:
            await self._store.delete(session_id)

    async def _session_lock(self, session_id: str) -> asyncio.Lock:
        async with self._locks_lock:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[session_id] = lock
            return lock


def _normalize_role(role: str) -> str:
    normalized = (role or "").strip().lower()
    if normalized not in MESSAGE_ROLES:
        raise ValueError(f"Unsupported message role: {role}")
    return normalized


def _to_blocks(content: MessageContent) -> tuple[TextBlock, ...]:
    if isinstance(content, str):
        return (TextBlock(text=content),)
    blocks: list[TextBlock] = []
    for item in content:
        if isinstance(item, TextBlock):
            blocks.append(item)
        elif isinstance(item, Mapping):
            text = item.get("text")
            blocks.append(
                TextBlock(text=text if isinstance(text, str) else str(text or ""), kind=str(item.get("type") or "text"))
            )
        else:
            blocks.append(TextBlock(text=str(item)))
    return tuple(blocks)
