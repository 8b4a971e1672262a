"""Incremental parser for chat-completions server-sent events."""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from llama_copilot.types import StreamEvent, TextEvent, ThinkingEvent, ToolCallEvent, ToolCallPart

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
_FLUSH_REASONS = ("tool_calls", "stop")


@dataclass
class ToolCallAccumulator:
    """Tool call being assembled from ``delta.tool_calls`` fragments."""

    id: str | None = None
    type: str | None = None
    name: str | None = None
    arguments: str | None = None

    def update(self, delta: dict[str, Any]) -> None:
        if delta.get("id") is not None:
            self.id = delta["id"]
        if delta.get("type") is not None:
            self.type = delta["type"]
        function = delta.get("function") or {}
        if function.get("name") is not None:
            self.name = function["name"]
        if function.get("arguments") is not None:
            self.arguments = (self.arguments or "") + function["arguments"]

    def to_part(self) -> ToolCallPart | None:
        """Return the finished call, or ``None`` if it is incomplete or its arguments are not JSON."""
        if not (self.id and self.name and self.arguments):
            logger.warning("Dropping incomplete tool call: %s", self)
            return None
        try:
            arguments = json.loads(self.arguments)
        except json.JSONDecodeError:
            logger.warning("Failed to parse accumulated tool call arguments: %s", self)
            return None
        return ToolCallPart(call_id=self.id, name=self.name, input=arguments)


@dataclass
class SSEParser:
    """Push bytes in with :meth:`feed`, get typed events out.

    Tool calls are held back until the choice reports ``finish_reason`` of
    ``tool_calls`` or ``stop``. After ``stop`` the parser is :attr:`finished`
    and ignores further input.
    """

    finished: bool = False
    _buffer: str = ""
    _decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )
    # dicts keep insertion order, which is the flush order
    _tool_calls: dict[int, ToolCallAccumulator] = field(default_factory=dict)

    def feed(self, data: bytes) -> list[StreamEvent]:
        if self.finished:
            return []
        self._buffer += self._decoder.decode(data)
        *lines, self._buffer = self._buffer.split("\n")

        events: list[StreamEvent] = []
        for line in lines:
            events.extend(self._parse_line(line))
            if self.finished:
                self._buffer = ""
                break
        return events

    def _parse_line(self, line: str) -> list[StreamEvent]:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return []
        payload = line[len(DATA_PREFIX) :].strip()
        if not payload or payload == DONE_SENTINEL:
            return []
        try:
            chunk = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Failed to parse SSE chunk: %s", payload)
            return []
        if not isinstance(chunk, dict):
            logger.warning("Ignoring non-object SSE chunk: %s", payload)
            return []
        return self._handle_chunk(chunk)

    def _handle_chunk(self, chunk: dict[str, Any]) -> list[StreamEvent]:
        choices = chunk.get("choices") or []
        if not choices:
            return []
        choice = choices[0]
        delta = choice.get("delta") or {}

        events: list[StreamEvent] = []
        content = delta.get("content")
        if isinstance(content, str) and content:
            events.append(TextEvent(text=content))
        reasoning = delta.get("reasoning_content")
        if isinstance(reasoning, str) and reasoning:
            events.append(ThinkingEvent(text=reasoning))
        for call_delta in delta.get("tool_calls") or []:
            index = call_delta.get("index", 0)
            self._tool_calls.setdefault(index, ToolCallAccumulator()).update(call_delta)

        finish_reason = choice.get("finish_reason")
        if finish_reason in _FLUSH_REASONS:
            for accumulator in self._tool_calls.values():
                part = accumulator.to_part()
                if part is not None:
                    events.append(ToolCallEvent(tool_call=part))
            self._tool_calls.clear()
            if finish_reason == "stop":
                self.finished = True
        return events


async def iter_stream_events(chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
    """Lazily turn a byte stream into stream events; ends at ``stop`` or when the bytes run out."""
    parser = SSEParser()
    async for data in chunks:
        for event in parser.feed(data):
            yield event
        if parser.finished:
            return
