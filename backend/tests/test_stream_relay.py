from __future__ import annotations

import pytest

from conftest import sse_frame, text_delta
from persona_chat.core.errors import StreamTransportError
from persona_chat.services.stream_relay import (
    RelayState,
    StreamDelta,
    StreamDone,
    StreamFailed,
    StreamRelay,
    encode_event,
)

UPSTREAM = b"".join(
    [
        b"event: message_start\n",
        sse_frame({"type": "message_start", "message": {"id": "msg_1"}}),
        b"\n",
        b"event: content_block_delta\n",
        text_delta("Héllo"),
        b"\n",
        b": ping\n",
        text_delta(" wörld 🌍"),
        b"\n",
        text_delta("!"),
        b"data: [DONE]\n",
    ]
)
EXPECTED = ["Héllo", " wörld 🌍", "!"]


def run_chunks(chunks: list[bytes]) -> list:
    relay = StreamRelay()
    events = []
    for chunk in chunks:
        events.extend(relay.feed(chunk))
    events.extend(relay.finish())
    return events


def deltas(events: list) -> list[str]:
    return [event.text for event in events if isinstance(event, StreamDelta)]


def assert_single_terminal_last(events: list) -> None:
    terminals = [event for event in events if isinstance(event, (StreamDone, StreamFailed))]
    assert len(terminals) == 1
    assert events[-1] is terminals[0]


async def iterate(chunks):
    for chunk in chunks:
        yield chunk


async def collect(relay: StreamRelay, chunks) -> list:
    return [event async for event in relay.relay(chunks)]


def test_deltas_are_identical_for_every_split_point():
    for split in range(len(UPSTREAM) + 1):
        events = run_chunks([UPSTREAM[:split], UPSTREAM[split:]])
        assert deltas(events) == EXPECTED, split
        assert_single_terminal_last(events)
        assert isinstance(events[-1], StreamDone)


def test_byte_by_byte_chunks_match_single_chunk():
    single = run_chunks([UPSTREAM])
    byte_wise = run_chunks([UPSTREAM[index : index + 1] for index in range(len(UPSTREAM))])

    assert single == byte_wise
    assert deltas(single) == EXPECTED


def test_malformed_frame_is_skipped():
    events = run_chunks(
        [text_delta("one"), b'data: {"delta": {"text": "broken"\n', text_delta("two"), b"data: [DONE]\n"]
    )

    assert deltas(events) == ["one", "two"]
    assert not any(isinstance(event, StreamFailed) for event in events)
    assert isinstance(events[-1], StreamDone)


def test_frames_without_text_emit_nothing():
    events = run_chunks(
        [
            sse_frame({"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": "{"}}),
            sse_frame({"type": "content_block_delta", "delta": {"text": ""}}),
            sse_frame([1, 2, 3]),
            b"data:\n",
        ]
    )

    assert events == [StreamDone()]


def test_nothing_is_emitted_after_done():
    relay = StreamRelay()

    events = relay.feed(b"data: [DONE]\n" + text_delta("late"))

    assert events == [StreamDone()]
    assert relay.state is RelayState.CLOSED
    assert relay.feed(text_delta("later")) == []
    assert relay.finish() == []
    assert relay.full_text == ""


def test_trailing_record_without_terminator_is_flushed():
    events = run_chunks([text_delta("a"), b'data: {"delta": {"text": "b"}}'])

    assert deltas(events) == ["a", "b"]
    assert isinstance(events[-1], StreamDone)


def test_crlf_line_endings_are_tolerated():
    events = run_chunks([b'data: {"delta": {"text": "x"}}\r\n', b"data: [DONE]\r\n"])

    assert deltas(events) == ["x"]
    assert isinstance(events[-1], StreamDone)


def test_prefix_without_space_is_accepted():
    events = run_chunks([b'data:{"delta": {"text": "x"}}\n'])

    assert deltas(events) == ["x"]


def test_upstream_error_frame_fails_stream():
    relay = StreamRelay()

    events = relay.feed(
        text_delta("partial")
        + sse_frame({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        + text_delta("ignored")
    )

    assert events == [StreamDelta("partial"), StreamFailed("Overloaded")]
    assert relay.state is RelayState.FAILED
    assert relay.finish() == []


def test_full_text_accumulates_deltas():
    relay = StreamRelay()
    relay.feed(text_delta("Hi ") + text_delta("there!"))

    assert relay.full_text == "Hi there!"
    assert relay.state is RelayState.STREAMING


@pytest.mark.anyio
async def test_relay_transport_error_is_terminal():
    async def broken():
        yield text_delta("one")
        raise StreamTransportError(None, "Upstream stream connection failed.")

    relay = StreamRelay()
    events = await collect(relay, broken())

    assert events == [StreamDelta("one"), StreamFailed("Upstream stream connection failed.")]
    assert relay.state is RelayState.FAILED


@pytest.mark.anyio
async def test_relay_stops_reading_after_done():
    consumed = []

    async def upstream():
        for chunk in [text_delta("a"), b"data: [DONE]\n", text_delta("b")]:
            consumed.append(chunk)
            yield chunk

    relay = StreamRelay()
    events = await collect(relay, upstream())

    assert events == [StreamDelta("a"), StreamDone()]
    assert len(consumed) == 2


@pytest.mark.anyio
async def test_relay_closes_on_end_of_input():
    relay = StreamRelay()
    events = await collect(relay, iterate([text_delta("x")]))

    assert events == [StreamDelta("x"), StreamDone()]
    assert relay.state is RelayState.CLOSED


def test_encode_event_framing():
    assert encode_event(StreamDelta('say "hi"')) == b'data: {"delta": "say \\"hi\\""}\n\n'
    assert encode_event(StreamDelta("ü")) == 'data: {"delta": "ü"}\n\n'.encode("utf-8")
    assert encode_event(StreamDone()) == b"data: [DONE]\n\n"
    assert encode_event(StreamFailed("boom")) == b'data: {"error": "boom"}\n\n'
