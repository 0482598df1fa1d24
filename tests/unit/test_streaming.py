"""Unit tests for stream parsing and reassembly."""

import json

import pytest

from convo_core.errors import StreamError
from convo_core.llm.streaming import (
    ContentDelta,
    StreamAssembler,
    StreamDone,
    StreamFailure,
    StreamMetadata,
    ToolCallDelta,
    parse_stream_line,
)


async def chunks_of(data: bytes, size: int):
    for start in range(0, len(data), size):
        yield data[start:start + size]


class TestParseStreamLine:
    """Tests for parse_stream_line."""

    def test_content_delta(self, wire):
        """Test a content frame becomes a content event."""
        line = "data: " + json.dumps(wire.content("Hel"))

        events = parse_stream_line(line)

        assert events[0] == ContentDelta(text="Hel")

    def test_done_sentinel(self):
        """Test the terminal sentinel."""
        assert parse_stream_line("data: [DONE]") == [StreamDone()]

    def test_ignores_non_data_lines(self):
        """Test comments, blank lines and other fields yield nothing."""
        assert parse_stream_line("") == []
        assert parse_stream_line(": keep-alive") == []
        assert parse_stream_line("event: message") == []

    def test_malformed_json_raises(self):
        """Test malformed payloads raise ValueError."""
        with pytest.raises(ValueError):
            parse_stream_line("data: {not json")

    @pytest.mark.parametrize("payload", [
        {"choices": "x"},
        {"choices": ["x"]},
        {"choices": [{"delta": "text"}]},
        {"choices": [{"delta": {"content": 42}}]},
        {"choices": [{"delta": {"tool_calls": ["x"]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": "one", "function": {}}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": "f"}]}}]},
        {"choices": [], "usage": 7},
    ])
    def test_wrong_shape_raises(self, payload):
        """Test valid JSON with an unexpected shape raises ValueError."""
        with pytest.raises(ValueError):
            parse_stream_line("data: " + json.dumps(payload))

    def test_null_index_falls_back_to_position(self):
        payload = {"choices": [{"delta": {"tool_calls": [
            {"index": None, "function": {"name": "search", "arguments": "{}"}},
        ]}}]}

        events = parse_stream_line("data: " + json.dumps(payload))

        assert events == [ToolCallDelta(index=0, name="search", arguments_fragment="{}")]

    def test_tool_call_delta(self, wire):
        """Test tool call fragments keep their index."""
        line = "data: " + json.dumps(wire.tool(1, arguments='{"q', name="search", call_id="call_9"))

        events = parse_stream_line(line)

        assert events == [ToolCallDelta(index=1, id="call_9", name="search", arguments_fragment='{"q')]

    def test_arguments_fragment_key(self):
        """Test the argumentsFragment key is accepted."""
        payload = {"choices": [{"delta": {"tool_calls": [
            {"index": 0, "function": {"argumentsFragment": '{"a":1}'}},
        ]}}]}

        events = parse_stream_line("data: " + json.dumps(payload))

        assert events[0].arguments_fragment == '{"a":1}'

    def test_error_frame(self):
        """Test an error payload becomes a failure event."""
        events = parse_stream_line('data: {"error": {"message": "overloaded", "code": "server_error"}}')

        assert events == [StreamFailure(message="overloaded", code="server_error")]

    def test_finish_reason_and_usage(self):
        """Test finish reason and usage are reported as metadata."""
        payload = {
            "id": "resp-1",
            "choices": [{"delta": {}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 5, "completion_tokens": 7, "total_tokens": 12},
        }

        events = parse_stream_line("data: " + json.dumps(payload))

        assert isinstance(events[-1], StreamMetadata)
        assert events[-1].finish_reason == "stop"
        assert events[-1].usage.total_tokens == 12


class TestStreamAssembler:
    """Tests for StreamAssembler."""

    @pytest.mark.asyncio
    async def test_forwards_content_in_order(self, wire):
        """Test content deltas reach the callback in arrival order."""
        received = []
        data = wire.sse(wire.content("Hello"), wire.content(", "), wire.content("world"))
        assembler = StreamAssembler(on_content=received.append)

        result = await assembler.consume(chunks_of(data, 7))

        assert received == ["Hello", ", ", "world"]
        assert result.content == "Hello, world"
        assert result.tool_calls == []

    @pytest.mark.asyncio
    async def test_async_callback(self, wire):
        """Test coroutine callbacks are awaited."""
        received = []

        async def on_content(text):
            received.append(text)

        assembler = StreamAssembler(on_content=on_content)
        await assembler.consume(chunks_of(wire.sse(wire.content("a"), wire.content("b")), 1000))

        assert received == ["a", "b"]

    @pytest.mark.asyncio
    async def test_five_fragments_reconstruct_exactly(self, wire):
        """Test arguments split across five fragments rebuild byte-equal."""
        reference = json.dumps({"query": "quantum error correction", "limit": 10, "filters": {"year": [2023, 2024]}})
        cut = [0, 7, 19, 33, 50, len(reference)]
        fragments = [reference[a:b] for a, b in zip(cut, cut[1:])]
        assert len(fragments) == 5

        frames = [wire.tool(0, arguments=fragments[0], name="search", call_id="call_1")]
        frames += [wire.tool(0, arguments=fragment) for fragment in fragments[1:]]
        data = wire.sse(*frames)

        for size in (1, 3, 64, len(data)):
            result = await StreamAssembler().consume(chunks_of(data, size))
            call = result.tool_calls[0]
            assert call.arguments_json == reference
            assert call.name == "search"
            assert call.id == "call_1"
            assert call.arguments["filters"] == {"year": [2023, 2024]}

    @pytest.mark.asyncio
    async def test_tool_calls_ordered_by_index(self, wire):
        """Test interleaved calls are frozen in index order."""
        data = wire.sse(
            wire.tool(1, arguments='{"b":', name="second", call_id="c2"),
            wire.tool(0, arguments='{"a":', name="first", call_id="c1"),
            wire.tool(1, arguments="2}"),
            wire.tool(0, arguments="1}"),
        )

        result = await StreamAssembler().consume(chunks_of(data, 10))

        assert [c.name for c in result.tool_calls] == ["first", "second"]
        assert result.tool_calls[0].arguments == {"a": 1}
        assert result.tool_calls[1].arguments == {"b": 2}

    @pytest.mark.asyncio
    async def test_incomplete_arguments_are_flagged(self, wire):
        """Test a call whose arguments never complete is not marked complete."""
        data = wire.sse(wire.tool(0, arguments='{"query": "x', name="search", call_id="c1"))

        result = await StreamAssembler().consume(chunks_of(data, 50))

        assert result.tool_calls[0].is_complete is False
        with pytest.raises(ValueError):
            result.tool_calls[0].arguments

    @pytest.mark.asyncio
    async def test_skips_malformed_lines(self, wire):
        """Test a malformed line is skipped and the stream continues."""
        data = (
            b"data: {broken\n\n"
            + wire.sse(wire.content("fine"))
        )
        assembler = StreamAssembler()

        result = await assembler.consume(chunks_of(data, 5))

        assert result.content == "fine"
        assert assembler.skipped_lines == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("frame", [
        {"choices": "x"},
        {"choices": [{"delta": "text"}]},
        {"choices": [{"delta": {"tool_calls": [{"index": [], "function": {}}]}}]},
        {"choices": [], "usage": 3},
    ])
    async def test_skips_wrongly_shaped_frames(self, wire, frame):
        """Test a frame with the wrong shape is skipped like invalid JSON."""
        received = []
        data = wire.sse(wire.content("so far "), frame, {"choices": [{"delta": {"content": "ok"}}]})
        assembler = StreamAssembler(on_content=received.append)

        result = await assembler.consume(chunks_of(data, 7))

        assert result.content == "so far ok"
        assert "".join(received) == "so far ok"
        assert assembler.skipped_lines == 1

    @pytest.mark.asyncio
    async def test_stops_at_done(self, wire):
        """Test frames after the sentinel are ignored."""
        data = wire.sse(wire.content("kept")) + wire.sse(wire.content("dropped"), done=False)

        result = await StreamAssembler().consume(chunks_of(data, 1000))

        assert result.content == "kept"

    @pytest.mark.asyncio
    async def test_end_of_body_without_sentinel(self, wire):
        """Test a stream ending without [DONE] still terminates."""
        data = wire.sse(wire.content("partial"), done=False).rstrip(b"\n")

        result = await StreamAssembler().consume(chunks_of(data, 4))

        assert result.content == "partial"

    @pytest.mark.asyncio
    async def test_multibyte_split_across_reads(self, wire):
        """Test UTF-8 sequences split between reads decode intact."""
        data = wire.sse({"choices": [{"delta": {"content": "héllo → wörld"}}]})
        received = []

        result = await StreamAssembler(on_content=received.append).consume(chunks_of(data, 1))

        assert result.content == "héllo → wörld"
        assert "".join(received) == "héllo → wörld"

    @pytest.mark.asyncio
    async def test_error_before_delivery_is_retryable(self, wire):
        """Test an error frame read with undelivered content stays retryable."""
        data = wire.sse(wire.content("partial"), {"error": {"message": "overloaded"}})
        received = []

        with pytest.raises(StreamError) as exc_info:
            await StreamAssembler(on_content=received.append).consume(chunks_of(data, 1000))

        assert received == []
        assert exc_info.value.retryable is True
        assert "overloaded" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_error_after_delivery_not_retryable(self, wire):
        """Test failures after content delivery are marked non-retryable."""
        first = wire.sse(wire.content("partial"), done=False)
        second = wire.sse({"error": {"message": "overloaded"}}, done=False)

        async def two_reads():
            yield first
            yield second

        with pytest.raises(StreamError) as exc_info:
            await StreamAssembler(on_content=lambda text: None).consume(two_reads())

        assert exc_info.value.retryable is False

    def test_feed_returns_events(self, wire):
        """Test feed buffers partial lines until they complete."""
        assembler = StreamAssembler()
        line = ("data: " + json.dumps(wire.content("hi")) + "\n").encode()

        assert assembler.feed(line[:10]) == []
        events = assembler.feed(line[10:])

        assert events[0] == ContentDelta(text="hi")
        assert assembler.content == "hi"

    @pytest.mark.asyncio
    async def test_captures_usage(self):
        """Test usage frames are captured on the result."""
        data = (
            b'data: {"choices":[{"delta":{"content":"x"}}]}\n\n'
            b'data: {"choices":[],"usage":{"prompt_tokens":3,"completion_tokens":2,"total_tokens":5}}\n\n'
            b"data: [DONE]\n\n"
        )

        result = await StreamAssembler().consume(chunks_of(data, 16))

        assert result.usage.total_tokens == 5
