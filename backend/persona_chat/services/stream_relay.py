from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Optional, Union

from persona_chat.core.errors import ChatError, StreamDecodeError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class StreamDelta:
    """Incremental assistant text."""

    text: str


@dataclass(frozen=True)
class StreamDone:
    """Terminal event for a completed stream."""


@dataclass(frozen=True)
class StreamFailed:
    """Terminal event for a failed stream."""

    message: str


StreamEvent = Union[StreamDelta, StreamDone, StreamFailed]


class RelayState(str, enum.Enum):
    STREAMING = "streaming"
    COMPLETING = "completing"
    CLOSED = "closed"
    FAILED = "failed"


def encode_event(event: StreamEvent) -> bytes:
    """Serialize an event using the client-facing event-stream framing."""

    if isinstance(event, StreamDelta):
        body = json.dumps({"delta": event.text}, ensure_ascii=False)
    elif isinstance(event, StreamFailed):
        body = json.dumps({"error": event.message}, ensure_ascii=False)
    else:
        body = DONE_SENTINEL
    return f"data: {body}\n\n".encode("utf-8")


class StreamRelay:
    """Decode an upstream ``data: <json>`` line stream into stream events.

    Records may be split across chunks at any byte. Exactly one terminal event
    is produced and nothing follows it.
    """

    def __init__(self) -> None:
        self._buffer = b""
        self._parts: list[str] = []
        self._state = RelayState.STREAMING

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def finished(self) -> bool:
        return self._state in (RelayState.CLOSED, RelayState.FAILED)

    @property
    def full_text(self) -> str:
        return "".join(self._parts)

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        """Consume one network chunk and return the events it completes."""

        if self.finished:
            return []
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        events: list[StreamEvent] = []
        for raw_line in lines:
            events.extend(self._process_line(raw_line))
            if self.finished:
                self._buffer = b""
                break
        return events

    def finish(self) -> list[StreamEvent]:
        """Handle end of input: flush any trailing record, then close."""

        if self.finished:
            return []
        events: list[StreamEvent] = []
        leftover, self._buffer = self._buffer, b""
        if leftover.strip():
            logger.debug("Processing %d trailing stream bytes", len(leftover))
            events.extend(self._process_line(leftover))
        if not self.finished:
            events.append(self._complete())
        return events

    def fail(self, message: str) -> StreamFailed:
        """Terminate the stream with an error."""

        self._state = RelayState.FAILED
        self._buffer = b""
        return StreamFailed(message)

    async def relay(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
        """Relay events from upstream chunks, stopping at the terminal event."""

        iterator = chunks.__aiter__()
        while not self.finished:
            try:
                chunk = await iterator.__anext__()
            except StopAsyncIteration:
                for event in self.finish():
                    yield event
                return
            except ChatError as exc:
                logger.warning("Upstream stream failed: %s", exc.message)
                yield self.fail(exc.message)
                return
            for event in self.feed(chunk):
                yield event

    def _process_line(self, raw_line: bytes) -> list[StreamEvent]:
        line = raw_line.rstrip(b"\r").decode("utf-8", errors="replace").strip()
        if not line.startswith(DATA_PREFIX):
            return []
        body = line[len(DATA_PREFIX) :].strip()
        if not body:
            return []
        if body == DONE_SENTINEL:
            return [self._complete()]
        try:
            frame = _decode_frame(body)
        except StreamDecodeError as exc:
            logger.warning("Skipping malformed stream frame: %s", exc.message)
            return []
        error_message = _frame_error(frame)
        if error_message is not None:
            logger.warning("Upstream reported a stream error: %s", error_message)
            return [self.fail(error_message)]
        fragment = _frame_text(frame)
        if not fragment:
            return []
        self._parts.append(fragment)
        return [StreamDelta(fragment)]

    def _complete(self) -> StreamDone:
        self._state = RelayState.COMPLETING
        full_text = self.full_text
        try:
            json.loads(full_text)
        except ValueError:
            logger.debug("Accumulated stream text is not a JSON document")
        else:
            logger.debug("Accumulated stream text parsed as JSON")
        logger.info("Stream completed, full response length: %d", len(full_text))
        self._state = RelayState.CLOSED
        return StreamDone()


def _decode_frame(body: str) -> Any:
    try:
        return json.loads(body)
    except ValueError as exc:
        raise StreamDecodeError(None, f"{exc} in {body[:80]!r}") from exc


def _frame_text(frame: Any) -> Optional[str]:
    if not isinstance(frame, dict):
        return None
    delta = frame.get("delta")
    if not isinstance(delta, dict):
        return None
    text = delta.get("text")
    return text if isinstance(text, str) else None


def _frame_error(frame: Any) -> Optional[str]:
    if not isinstance(frame, dict) or frame.get("type") != "error":
        return None
    error = frame.get("error")
    if isinstance(error, dict):
        message = error.get("message") or error.get("type")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return "Upstream stream error."
