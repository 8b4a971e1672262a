"""Chat provider driving one conversation turn against llama-server."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass

from llama_copilot.cancellation import CancellationToken
from llama_copilot.client import LlamaServerClient
from llama_copilot.config import EndpointsConfig, ResolvedModel, Settings, resolve_model
from llama_copilot.errors import SETTINGS_LOCATION, ChatResponseError
from llama_copilot.model_info import ModelInformation, provide_model_information
from llama_copilot.rules import (
    RULES_TOOL_NAME,
    RuleCatalog,
    assistant_text_for_rules,
    build_rules_tool,
    resolve_and_format_rules,
)
from llama_copilot.thinking import ThinkingTokenStore, is_new_turn, tool_call_key
from llama_copilot.types import (
    ChatMessage,
    ResponsePart,
    TextEvent,
    StreamEvent,
    TextPart,
    ThinkingEvent,
    ToolCallEvent,
    ToolCallPart,
    ToolDefinition,
)

Progress = Callable[[ResponsePart], None]

tool_logger = logging.getLogger("llama_copilot.debug.toolCalls")


@dataclass
class _RuleCall:
    tool_call: ToolCallPart
    result: str
    rule_names: list[str]


class LlamaChatProvider:
    """Chat and token-count provider for every configured endpoint.

    The thinking-token store is shared by all conversations handled by this
    provider; pass your own to share it wider or keep sessions apart.
    """

    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        settings: Settings,
        *,
        client: LlamaServerClient | None = None,
        rules: RuleCatalog | None = None,
        thinking_store: ThinkingTokenStore | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or LlamaServerClient(timeout_s=settings.request_timeout_seconds)
        self._rules = rules
        self.thinking_store = thinking_store or ThinkingTokenStore()

    @property
    def endpoints(self) -> EndpointsConfig:
        return self._settings.endpoints

    async def aclose(self) -> None:
        await self._client.aclose()

    async def provide_model_information(self) -> list[ModelInformation]:
        return await provide_model_information(
            self._client, self.endpoints, self._settings.request_timeout_seconds
        )

    async def provide_chat_response(
        self,
        model_id: str,
        messages: Sequence[ChatMessage],
        progress: Progress,
        *,
        tools: Sequence[ToolDefinition] | None = None,
        max_output_tokens: int | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        """Stream one turn, reporting text and tool calls through ``progress``.

        Any failure is reported as text and raised as a single ChatResponseError.
        """
        token = token or CancellationToken()
        try:
            await self._respond(model_id, list(messages), progress, tools or [], max_output_tokens, token)
        except Exception as exc:
            self._logger.exception("Failed to provide chat response")
            message = str(exc) or "Unknown error occurred"
            if SETTINGS_LOCATION not in message:
                message = f"{message} Check {SETTINGS_LOCATION} if the problem continues."
            progress(TextPart(value=message))
            raise ChatResponseError(message) from None

    async def provide_token_count(self, model_id: str, text: str | ChatMessage) -> int:
        """Best-effort token count; 0 on any failure."""
        try:
            target = resolve_model(self.endpoints, model_id)
            content = text if isinstance(text, str) else text.text()
            return await self._client.tokenize(target, content)
        except Exception as exc:
            self._logger.error("Failed to count tokens: %s", exc)
            return 0

    async def _respond(
        self,
        model_id: str,
        messages: list[ChatMessage],
        progress: Progress,
        tools: Sequence[ToolDefinition],
        max_output_tokens: int | None,
        token: CancellationToken,
    ) -> None:
        target = resolve_model(self.endpoints, model_id)

        new_turn = is_new_turn(messages)
        include_thinking = self.thinking_store.should_include(messages)
        if new_turn:
            self.thinking_store.clear()

        rules_tool = self._rules_tool(messages, model_id)
        request_tools = [*tools, rules_tool] if rules_tool is not None else list(tools)

        thinking = ""
        rule_calls: list[_RuleCall] = []

        def handle(event: StreamEvent) -> None:
            nonlocal thinking
            if isinstance(event, TextEvent):
                progress(TextPart(value=event.text))
            elif isinstance(event, ToolCallEvent):
                call = event.tool_call
                tool_logger.debug("Tool call %s (%s): %s", call.name, call.call_id, call.input)
                if call.name == RULES_TOOL_NAME and rules_tool is not None and self._rules is not None:
                    rule_calls.append(_resolve_rule_call(self._rules, call))
                else:
                    progress(call)
                if thinking:
                    self.thinking_store.set(tool_call_key(call.call_id), thinking)
                    thinking = ""
            elif isinstance(event, ThinkingEvent):
                thinking += event.text

        stream = self._client.stream_chat_completion(
            target,
            messages,
            tools=request_tools,
            max_tokens=max_output_tokens,
            thinking_lookup=self.thinking_store.get_for_message if include_thinking else None,
            is_new_turn=new_turn,
        )
        if not await _consume(stream, handle, token):
            return

        if rule_calls:
            await self._follow_up_with_rules(target, messages, rule_calls, progress, tools, max_output_tokens, token)

        if thinking:
            # unclaimed reasoning; kept so it is not silently lost
            self.thinking_store.set(f"response_{int(time.time() * 1000)}", thinking)

    def _rules_tool(self, messages: Sequence[ChatMessage], model_id: str) -> ToolDefinition | None:
        if self._rules is None or not self._settings.enable_project_rules:
            return None
        return build_rules_tool(self._rules.available_rules(messages, model_id))

    async def _follow_up_with_rules(
        self,
        target: ResolvedModel,
        messages: list[ChatMessage],
        rule_calls: list[_RuleCall],
        progress: Progress,
        tools: Sequence[ToolDefinition],
        max_output_tokens: int | None,
        token: CancellationToken,
    ) -> None:
        """Replay fetched rules as an assistant/user exchange and stream one more answer."""
        assistant_text = assistant_text_for_rules([name for rc in rule_calls for name in rc.rule_names])
        user_text = "\n\n".join(rc.result for rc in rule_calls)
        progress(TextPart(value=assistant_text))
        progress(TextPart(value=user_text))

        def handle(event: StreamEvent) -> None:
            if isinstance(event, TextEvent):
                progress(TextPart(value=event.text))
            elif isinstance(event, ToolCallEvent):
                progress(event.tool_call)
            # thinking events of the follow-up are dropped

        history = [*messages, ChatMessage.assistant(assistant_text), ChatMessage.user(user_text)]
        stream = self._client.stream_chat_completion(
            target,
            history,
            tools=[tool for tool in tools if tool.name != RULES_TOOL_NAME],
            max_tokens=max_output_tokens,
            thinking_lookup=None,
            is_new_turn=False,
        )
        await _consume(stream, handle, token)


async def _consume(
    stream: AsyncIterator[StreamEvent],
    handle: Callable[[StreamEvent], None],
    token: CancellationToken,
) -> bool:
    """Feed ``stream`` to ``handle`` in a task the token can cancel.

    Cancelling aborts a pending read, which closes the HTTP response at once.
    Returns ``False`` if the token was cancelled.
    """

    async def run() -> None:
        async with aclosing(stream) as events:
            async for event in events:
                if token.is_cancellation_requested:
                    return
                handle(event)

    task = asyncio.ensure_future(run())
    token.on_cancellation_requested(task.cancel)
    try:
        await task
    except asyncio.CancelledError:
        task.cancel()
        if not token.is_cancellation_requested:
            raise
    return not token.is_cancellation_requested


def _resolve_rule_call(catalog: RuleCatalog, call: ToolCallPart) -> _RuleCall:
    """Resolve a rule-tool call locally; failures become an error text instead of aborting the turn."""
    try:
        requested = call.input.get("rule", "") if isinstance(call.input, dict) else ""
        formatted, rule_names = resolve_and_format_rules(catalog, str(requested))
    except Exception as exc:
        tool_logger.warning("Failed to resolve project rules for %s: %s", call.call_id, exc)
        return _RuleCall(call, f"Error: {exc}", [])
    tool_logger.debug("Resolved %d project rules for %s: %s", len(rule_names), call.call_id, rule_names)
    return _RuleCall(call, formatted, rule_names)
