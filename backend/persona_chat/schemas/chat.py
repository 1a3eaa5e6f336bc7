from __future__ import annotations

from typing import Any, List, Optional

from pydantic import Field

from persona_chat.schemas.common import APIModel


class ChatRequest(APIModel):
    """Payload for sending one user message."""

    message: Optional[str] = Field(default=None)
    model: Optional[str] = Field(default=None, min_length=1, max_length=200)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=200_000)
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class ChatMeta(APIModel):
    """Metadata returned alongside a chat response."""

    brand: str
    filtered: bool
    session_id: str = Field(alias="sessionId")


class ChatResponse(APIModel):
    """Response for a blocking chat exchange."""

    success: bool = True
    data: Any
    meta: ChatMeta


class ClearHistoryRequest(APIModel):
    """Payload for clearing one session's history."""

    session_id: Optional[str] = Field(default=None, alias="sessionId")


class ClearHistoryResponse(APIModel):
    """Acknowledgement returned after clearing history."""

    success: bool = True
    message: str
    session_id: str = Field(alias="sessionId")


class MessageOut(APIModel):
    """Stored conversation turn."""

    role: str
    content: List[dict]


class HistoryResponse(APIModel):
    """Stored history for one session."""

    session_id: str = Field(alias="sessionId")
    messages: List[MessageOut]
