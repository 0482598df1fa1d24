"""
Streaming Utilities

This module turns a chunked ``data:`` event stream from the completion
endpoint into typed events and reassembles them into one assistant reply.
Content is forwarded to the caller as it arrives; tool-call argument
fragments are concatenated per index and only frozen into complete calls
once the stream terminates.
"""

import codecs
import inspect
import json
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Literal,
    Optional,
    Union,
)

import structlog

from convo_core.errors import StreamError
from convo_core.llm.base import CompletionResult, ToolCallRequest, Usage


logger = structlog.get_logger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


# =============================================================================
# Events
# =============================================================================


@dataclass
class ContentDelta:
    """A fragment of assistant text."""

    text: str
    kind: Literal["content"] = "content"


@dataclass
class ToolCallDelta:
    """A fragment of one tool call, keyed by its position."""

    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments_fragment: Optional[str] = None
    kind: Literal["tool_call"] = "tool_call"


@dataclass
class StreamMetadata:
    """Finish reason, usage or response id reported mid-stream."""

    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    response_id: Optional[str] = None
    kind: Literal["metadata"] = "metadata"


@dataclass
class StreamDone:
    """The terminal sentinel."""

    kind: Literal["done"] = "done"


@dataclass
class StreamFailure:
    """An error frame sent by the endpoint."""

    message: str
    code: Optional[str] = None
    kind: Literal["error"] = "error"


StreamEvent = Union[ContentDelta, ToolCallDelta, StreamMetadata, StreamDone, StreamFailure]

ContentCallback = Callable[[str], Any]


def parse_stream_line(line: str) -> List[StreamEvent]:
    """
    Parse one line of the event stream.

    Lines without the ``data:`` tag and keep-alive comments yield nothing.

    Raises:
        ValueError: If the payload is not valid JSON or has the wrong shape
    """
    line = line.strip()
    if not line.startswith(DATA_PREFIX):
        return []

    payload = line[len(DATA_PREFIX):].strip()
    if not payload:
        return []
    if payload == DONE_SENTINEL:
        return [StreamDone()]

    data = json.loads(payload)
    if not isinstance(data, dict):
        raise ValueError("Stream payload must be a JSON object")

    error = data.get("error")
    if error:
        if isinstance(error, dict):
            return [StreamFailure(
                message=str(error.get("message") or "Stream error"),
                code=error.get("code"),
            )]
        return [StreamFailure(message=str(error))]

    events: List[StreamEvent] = []
    finish_reason = None

    for choice in _object_list(data.get("choices"), "choices"):
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise ValueError("delta must be an object")

        content = delta.get("content")
        if content is not None and not isinstance(content, str):
            raise ValueError("content must be a string")
        if content:
            events.append(ContentDelta(text=content))

        for position, tc in enumerate(_object_list(delta.get("tool_calls"), "tool_calls")):
            events.append(_tool_call_delta(tc, position))

        finish_reason = choice.get("finish_reason") or finish_reason

    usage = data.get("usage")
    if usage is not None and not isinstance(usage, dict):
        raise ValueError("usage must be an object")
    usage = Usage.from_wire(usage)
    if finish_reason or usage or data.get("id"):
        events.append(StreamMetadata(
            finish_reason=finish_reason,
            usage=usage,
            response_id=data.get("id"),
        ))

    return events


def _object_list(value: Any, name: str) -> List[Dict[str, Any]]:
    """Return ``value`` as a list of objects, or raise ValueError."""
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
        raise ValueError(f"{name} must be a list of objects")
    return value


def _tool_call_delta(tc: Dict[str, Any], position: int) -> ToolCallDelta:
    function = tc.get("function") or {}
    if not isinstance(function, dict):
        raise ValueError("tool call function must be an object")

    index = tc.get("index")
    if index is None:
        index = position
    # bool is an int subclass
    if isinstance(index, bool) or not isinstance(index, int):
        raise ValueError("tool call index must be an integer")

    fragment = function.get("arguments")
    if fragment is None:
        fragment = function.get("argumentsFragment")
    if fragment is not None and not isinstance(fragment, str):
        raise ValueError("tool call arguments must be a string")

    name = function.get("name")
    call_id = tc.get("id")
    return ToolCallDelta(
        index=index,
        id=call_id if isinstance(call_id, str) else None,
        name=name if isinstance(name, str) else None,
        arguments_fragment=fragment,
    )


# =============================================================================
# Assembly
# =============================================================================


@dataclass
class ToolCallBuilder:
    """Accumulates the fragments of one tool call."""

    index: int
    id: str = ""
    name: str = ""
    fragments: List[str] = field(default_factory=list)

    def apply(self, delta: ToolCallDelta) -> None:
        if delta.id:
            self.id = delta.id
        if delta.name:
            self.name = delta.name
        if delta.arguments_fragment:
            self.fragments.append(delta.arguments_fragment)

    @property
    def arguments(self) -> str:
        return "".join(self.fragments)

    def freeze(self) -> ToolCallRequest:
        return ToolCallRequest(
            id=self.id or f"call_{self.index}",
            name=self.name,
            arguments_json=self.arguments or "{}",
        )


class StreamAssembler:
    """
    Reassembles a streamed assistant reply.

    Usage:
        assembler = StreamAssembler(on_content=print)
        async with client.stream("POST", url, json=body) as response:
            result = await assembler.consume(response.aiter_bytes())
    """

    def __init__(self, on_content: Optional[ContentCallback] = None):
        self.on_content = on_content
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._content: List[str] = []
        self._builders: Dict[int, ToolCallBuilder] = {}
        self.finish_reason: Optional[str] = None
        self.usage: Optional[Usage] = None
        self.response_id: Optional[str] = None
        self.done = False
        self.skipped_lines = 0
        self.content_delivered = False

    @property
    def content(self) -> str:
        return "".join(self._content)

    def feed(self, chunk: Union[bytes, str]) -> List[StreamEvent]:
        """Add raw stream data; return the events it completed, in order."""
        if self.done:
            return []

        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk

        *lines, self._buffer = self._buffer.split("\n")
        return self._process_lines(lines)

    def _process_lines(self, lines: List[str]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for line in lines:
            if self.done:
                break
            try:
                parsed = parse_stream_line(line)
            except ValueError as e:
                self.skipped_lines += 1
                logger.warning("stream_line_skipped", error=str(e), line=line[:200])
                continue

            for event in parsed:
                self.apply(event)
                events.append(event)
                if self.done:
                    break
        return events

    def apply(self, event: StreamEvent) -> None:
        if isinstance(event, ContentDelta):
            self._content.append(event.text)
        elif isinstance(event, ToolCallDelta):
            builder = self._builders.get(event.index)
            if builder is None:
                builder = ToolCallBuilder(index=event.index)
                self._builders[event.index] = builder
            builder.apply(event)
        elif isinstance(event, StreamMetadata):
            self.finish_reason = event.finish_reason or self.finish_reason
            self.usage = event.usage or self.usage
            self.response_id = event.response_id or self.response_id
        elif isinstance(event, StreamDone):
            self.done = True
        elif isinstance(event, StreamFailure):
            raise StreamError(
                f"Stream error: {event.message}",
                retryable=not self.content_delivered,
            )

    def finish(self) -> CompletionResult:
        """Flush buffered data and freeze the reply."""
        if not self.done:
            tail = self._buffer + self._decoder.decode(b"", final=True)
            self._buffer = ""
            if tail.strip():
                self._process_lines(tail.split("\n"))
            self.done = True

        tool_calls = [
            self._builders[index].freeze() for index in sorted(self._builders)
        ]
        return CompletionResult(
            content=self.content,
            tool_calls=tool_calls,
            finish_reason=self.finish_reason,
            usage=self.usage,
            response_id=self.response_id,
        )

    async def consume(self, chunks: AsyncIterator[Union[bytes, str]]) -> CompletionResult:
        """Read the whole stream, forwarding content as it arrives."""
        async for chunk in chunks:
            for event in self.feed(chunk):
                if isinstance(event, ContentDelta):
                    await self._deliver(event.text)
            if self.done:
                break

        pending = self.content
        result = self.finish()
        if self.on_content is not None and len(result.content) > len(pending):
            await self._deliver(result.content[len(pending):])
        return result

    async def _deliver(self, text: str) -> None:
        self.content_delivered = True
        if self.on_content is None:
            return
        outcome = self.on_content(text)
        if inspect.isawaitable(outcome):
            await outcome


__all__ = [
    "ContentDelta",
    "ToolCallDelta",
    "StreamMetadata",
    "StreamDone",
    "StreamFailure",
    "StreamEvent",
    "parse_stream_line",
    "ToolCallBuilder",
    "StreamAssembler",
]
