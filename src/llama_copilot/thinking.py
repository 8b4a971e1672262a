"""Reasoning-content bookkeeping across a tool-call round trip."""

from __future__ import annotations

from collections.abc import Sequence

from llama_copilot.types import ChatMessage

TOOL_CALL_KEY_PREFIX = "toolCall_"


def tool_call_key(call_id: str) -> str:
    return f"{TOOL_CALL_KEY_PREFIX}{call_id}"


def is_continuation(messages: Sequence[ChatMessage]) -> bool:
    """True if the conversation ends with tool results for a pending tool call."""
    if not messages:
        return False
    last = messages[-1]
    return last.role == "user" and bool(last.tool_results())


def is_new_turn(messages: Sequence[ChatMessage]) -> bool:
    """Every conversation state that is not a continuation, including empty history."""
    return not is_continuation(messages)


class ThinkingTokenStore:
    """Reasoning text keyed by the tool call it preceded.

    One store is shared by every conversation of a provider; it is cleared
    whenever a new user turn starts.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._tokens)

    def __contains__(self, key: object) -> bool:
        return key in self._tokens

    def set(self, key: str, value: str) -> None:
        self._tokens[key] = value

    def get(self, key: str) -> str | None:
        return self._tokens.get(key)

    def clear(self) -> None:
        self._tokens.clear()

    def get_for_message(self, message: ChatMessage) -> str | None:
        """Reasoning stored for the first tool call in ``message`` that has any."""
        for call in message.tool_calls():
            value = self._tokens.get(tool_call_key(call.call_id))
            if value:
                return value
        return None

    def should_include(self, messages: Sequence[ChatMessage]) -> bool:
        """Whether the next request should carry reasoning content back to the server."""
        if not messages or is_new_turn(messages):
            return False
        for message in reversed(messages):
            if message.role == "assistant" and message.tool_calls():
                return self.get_for_message(message) is not None
        return False
