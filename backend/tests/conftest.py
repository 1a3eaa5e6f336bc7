import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx
import pytest

from persona_chat.core.config import get_settings
from persona_chat.main import create_app
from persona_chat.providers.base import UpstreamRuntimeConfig


@pytest.fixture
def stub_adapter():
    return StubAdapter()


@pytest.fixture
def app(monkeypatch, tmp_path, stub_adapter):
    monkeypatch.setenv("UPSTREAM_API_KEY", "sk-ant-test-key")
    monkeypatch.setenv("ADMIN_TOKEN", "admin-secret")
    monkeypatch.setenv("AUDIT_DIR", str(tmp_path / "audit"))
    get_settings.cache_clear()
    app = create_app()
    app.state.chat_service.set_adapter(stub_adapter)
    yield app
    get_settings.cache_clear()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def anyio_backend():
    return "asyncio"


def sse_frame(payload) -> bytes:
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {body}\n".encode("utf-8")


def text_delta(text: str) -> bytes:
    return sse_frame(
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}}
    )


class StubAdapter:
    """Adapter stub used to avoid external API calls in tests."""

    def __init__(self) -> None:
        self.reply = "Hi there!"
        self.stream_chunks: list[bytes] = [text_delta("Hi "), text_delta("there!"), b"data: [DONE]\n"]
        self.calls: list[dict] = []
        self.stream_closed = False

    async def complete(
        self, cfg: UpstreamRuntimeConfig, system_prompt: str, messages: list[dict]
    ) -> dict:
        self.calls.append({"cfg": cfg, "system": system_prompt, "messages": messages})
        return {
            "id": "msg_stub",
            "type": "message",
            "role": "assistant",
            "model": cfg.model_name,
            "content": [{"type": "text", "text": self.reply}],
            "usage": {"input_tokens": 3, "output_tokens": 4},
        }

    def stream(self, cfg: UpstreamRuntimeConfig, system_prompt: str, messages: list[dict]):
        self.calls.append({"cfg": cfg, "system": system_prompt, "messages": messages})
        return self._chunks()

    async def _chunks(self):
        try:
            for chunk in self.stream_chunks:
                yield chunk
        finally:
            self.stream_closed = True
