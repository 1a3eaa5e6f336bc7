from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from persona_chat.api import chat as chat_api
from persona_chat.core.config import get_settings
from persona_chat.core.errors import ChatError, ConfigurationError, UpstreamError, UpstreamTimeout, ValidationError
from persona_chat.core.logging import setup_logging
from persona_chat.persona.audit import FileAuditSink
from persona_chat.persona.filter import PersonaFilter
from persona_chat.persona.rewrite import RewriteEngine
from persona_chat.providers.anthropic_adapter import AnthropicAdapter
from persona_chat.schemas.common import ErrorResponse
from persona_chat.services.chat_service import ChatService
from persona_chat.services.conversation_store import ConversationStore, InMemorySessionStore
from persona_chat.services.prompt_builder import PersonaPromptBuilder

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = get_settings()
    setup_logging(settings.log_level)

    http_client = httpx.AsyncClient(timeout=settings.request_timeout_sec)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await http_client.aclose()

    forbidden_terms = settings.parsed_forbidden_terms()
    engine = RewriteEngine(
        forbidden_terms=forbidden_terms,
        brand_name=settings.persona_brand_name,
    )

    app = FastAPI(lifespan=lifespan)
    app.state.http_client = http_client
    app.state.conversation_store = ConversationStore(
        InMemorySessionStore(), limit=settings.history_limit
    )
    app.state.persona_filter = PersonaFilter(
        engine,
        audit_sink=FileAuditSink(settings.audit_dir),
        audit_enabled=settings.audit_enabled,
    )
    app.state.chat_service = ChatService(
        app.state.conversation_store,
        AnthropicAdapter(
            timeout_sec=settings.request_timeout_sec,
            stream_idle_timeout_sec=settings.stream_idle_timeout_sec,
            web_search_max_uses=settings.stream_web_search_max_uses,
            http_client=http_client,
        ),
        app.state.persona_filter,
        PersonaPromptBuilder(
            brand_name=settings.persona_brand_name,
            forbidden_terms=forbidden_terms,
        ),
        settings,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatError, _chat_error_handler)

    app.include_router(chat_api.router)

    return app


async def _chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    status = _http_status(exc)
    if status >= 500:
        logger.error("Chat request failed: %s", exc.message)
    else:
        logger.warning("Chat request rejected: %s", exc.message)
    body = ErrorResponse(code=exc.code, message=exc.message, status=exc.status_code)
    return JSONResponse(status_code=status, content=body.model_dump())


def _http_status(exc: ChatError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, ConfigurationError):
        return 500
    if isinstance(exc, UpstreamTimeout):
        return 408
    if isinstance(exc, UpstreamError) and exc.status_code and exc.status_code >= 400:
        return exc.status_code
    return 502


app = create_app()
