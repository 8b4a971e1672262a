"""Conversion between host chat messages and OpenAI chat-completions payloads."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from typing import Any

from llama_copilot.errors import MessageFormatError
from llama_copilot.types import (
    ChatMessage,
    ParsedWireMessage,
    TextPart,
    ToolCallPart,
    ToolDefinition,
    ToolResultPart,
    WireMessage,
)

logger = logging.getLogger(__name__)

ThinkingLookup = Callable[[ChatMessage], str | None]


def to_wire_tools(tools: Sequence[ToolDefinition] | None) -> list[dict[str, Any]] | None:
    """Map tool definitions to the function-calling schema; ``None`` when there are none."""
    if not tools:
        return None
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": {
                    "type": tool.input_schema.get("type") or "object",
                    "properties": tool.input_schema.get("properties") or {},
                    "required": tool.input_schema.get("required") or [],
                },
            },
        }
        for tool in tools
    ]


def to_wire_messages(
    messages: Sequence[ChatMessage],
    thinking_lookup: ThinkingLookup | None = None,
    is_new_turn: bool = False,
) -> list[dict[str, Any]]:
    """Convert host messages to OpenAI chat messages.

    Reasoning content is attached to assistant tool-call messages only when a
    lookup is given and the conversation is continuing a tool round trip.
    """
    wire: list[dict[str, Any]] = []
    for message in messages:
        if not isinstance(message, ChatMessage):
            raise MessageFormatError(f"Invalid message format: {type(message).__name__}")

        texts: list[str] = []
        tool_calls: list[ToolCallPart] = []
        tool_results: list[ToolResultPart] = []
        for part in message.content:
            if isinstance(part, TextPart):
                texts.append(part.value)
            elif isinstance(part, ToolCallPart):
                tool_calls.append(part)
            elif isinstance(part, ToolResultPart):
                tool_results.append(part)
            else:
                raise MessageFormatError(f"Invalid content part: {type(part).__name__}")
        text = "".join(texts)

        if message.role == "assistant" and tool_calls:
            entry: dict[str, Any] = {
                "role": "assistant",
                "content": text or None,
                "tool_calls": [_serialize_tool_call(call) for call in tool_calls],
            }
            if thinking_lookup is not None and not is_new_turn:
                reasoning = thinking_lookup(message)
                if reasoning:
                    entry["reasoning_content"] = reasoning
            wire.append(entry)
        elif message.role == "user" and tool_results:
            for result in tool_results:
                wire.append(
                    {
                        "role": "tool",
                        "content": "".join(p.value for p in result.content),
                        "tool_call_id": result.call_id,
                    }
                )
            if text:
                wire.append({"role": "user", "content": text})
        else:
            role = message.role if message.role in ("user", "assistant") else "system"
            wire.append({"role": role, "content": text or None})
    return wire


def from_wire_message(message: WireMessage | dict[str, Any]) -> ParsedWireMessage:
    """Convert an OpenAI message back; tool calls with unparseable arguments are dropped."""
    if isinstance(message, dict):
        message = WireMessage.model_validate(message)

    tool_calls: list[ToolCallPart] = []
    for call in message.tool_calls or []:
        function = call.get("function") or {}
        arguments = function.get("arguments") or ""
        try:
            parsed = json.loads(arguments)
        except json.JSONDecodeError:
            logger.warning("Failed to parse tool call arguments: %s", arguments)
            continue
        tool_calls.append(ToolCallPart(call_id=call.get("id") or "", name=function.get("name") or "", input=parsed))

    return ParsedWireMessage(
        text=message.content or "",
        tool_calls=tool_calls,
        reasoning_content=message.reasoning_content,
    )


def _serialize_tool_call(call: ToolCallPart) -> dict[str, Any]:
    return {
        "id": call.call_id,
        "type": "function",
        "function": {"name": call.name, "arguments": json.dumps(call.input)},
    }
