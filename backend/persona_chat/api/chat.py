from __future__ import annotations

from contextlib import aclosing
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from persona_chat.core.config import get_settings
from persona_chat.core.security import raw_output_allowed
from persona_chat.schemas.chat import (
    ChatMeta,
    ChatRequest,
    ChatResponse,
    ClearHistoryRequest,
    ClearHistoryResponse,
    HistoryResponse,
    MessageOut,
)
from persona_chat.services.chat_service import ChatService, get_chat_service
from persona_chat.services.stream_relay import StreamEvent, encode_event

router = APIRouter(prefix="/api", tags=["chat"])

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post("/chat", response_model=ChatResponse)
async def send_message(
    payload: ChatRequest,
    request: Request,
    chat_service: ChatService = Depends(get_chat_service),
) -> ChatResponse:
    """Send a message and return the persona-filtered response."""

    result = await chat_service.submit_message(
        payload.session_id,
        payload.message,
        model=payload.model,
        max_tokens=payload.max_tokens,
        raw_output_allowed=_raw_output_allowed(request),
    )
    return ChatResponse(
        data=result.data,
        meta=ChatMeta(
            brand=get_settings().persona_brand_name,
            filtered=result.filtered,
            session_id=result.session_id,
        ),
    )


@router.post("/chat/stream")
async def stream_message(
    payload: ChatRequest,
    request: Request,
    chat_service: ChatService = Depends(get_chat_service),
) -> StreamingResponse:
    """Send a message and relay the response as an event stream."""

    events = await chat_service.open_stream(
        payload.session_id,
        payload.message,
        model=payload.model,
        max_tokens=payload.max_tokens,
        raw_output_allowed=_raw_output_allowed(request),
    )
    return StreamingResponse(
        _encode_events(events), media_type="text/event-stream", headers=STREAM_HEADERS
    )


@router.post("/clear-history", response_model=ClearHistoryResponse)
async def clear_history(
    payload: Optional[ClearHistoryRequest] = None,
    chat_service: ChatService = Depends(get_chat_service),
) -> ClearHistoryResponse:
    """Clear the stored conversation for a session."""

    session_id = await chat_service.clear_session(payload.session_id if payload else None)
    return ClearHistoryResponse(
        message=f"Conversation history cleared for session: {session_id}",
        session_id=session_id,
    )


@router.get("/chat/history/{session_id}", response_model=HistoryResponse)
async def get_history(
    session_id: str,
    chat_service: ChatService = Depends(get_chat_service),
) -> HistoryResponse:
    """Return the stored conversation for a session."""

    resolved = chat_service.resolve_session_id(session_id)
    history = await chat_service.history(resolved)
    return HistoryResponse(
        session_id=resolved,
        messages=[MessageOut(**message.to_payload()) for message in history],
    )


async def _encode_events(events: AsyncIterator[StreamEvent]) -> AsyncIterator[bytes]:
    async with aclosing(events) as stream:
        async for event in stream:
            yield encode_event(event)


def _raw_output_allowed(request: Request) -> bool:
    return raw_output_allowed(request.headers, get_settings().admin_token)
