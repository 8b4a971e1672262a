"""Async HTTP client for llama-server's OpenAI-compatible and native endpoints."""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Sequence
from typing import Any, NoReturn

import httpx

from llama_copilot.config import DEFAULT_REQUEST_TIMEOUT_SECONDS, ResolvedModel
from llama_copilot.convert import ThinkingLookup, to_wire_messages, to_wire_tools
from llama_copilot.errors import (
    SETTINGS_LOCATION,
    LlamaCopilotError,
    ServerError,
    TransportError,
    format_server_error_message,
    normalize_transport_error,
    parse_server_error,
)
from llama_copilot.streaming import iter_stream_events
from llama_copilot.types import ChatMessage, ModelsResponse, StreamEvent, ToolDefinition

_MODELS_PATH = "/models"
_CHAT_PATH = "/v1/chat/completions"
_TOKENIZE_PATH = "/tokenize"
_INFILL_PATH = "/infill"

_PROXY_ERROR_MARKER = "Internal Server Error - proxy error"
_MODELS_PROBE_TIMEOUT_S = 10.0
_MIN_SUGGESTED_TIMEOUT_S = 3600
INFILL_N_PREDICT = 128
_LOG_TRUNCATE = 100
_ATTACHMENT_RE = re.compile(r"<attachment\s+([^>]*)>[\s\S]*?</attachment>")

debug_logger = logging.getLogger("llama_copilot.debug.completion")


class LlamaServerClient:
    """Talks to one or more llama-server endpoints.

    HTTP clients are pooled per timeout value so requests sharing a timeout
    reuse connections.
    """

    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout_s = timeout_s
        self._transport = transport
        self._clients: dict[float, httpx.AsyncClient] = {}

    @property
    def timeout_s(self) -> float:
        return self._timeout_s

    async def aclose(self) -> None:
        """Close every pooled HTTP client."""
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()

    def _client(self, timeout_s: float | None = None) -> httpx.AsyncClient:
        timeout = timeout_s if timeout_s is not None else self._timeout_s
        client = self._clients.get(timeout)
        if client is None:
            client = httpx.AsyncClient(timeout=timeout, transport=self._transport)
            self._clients[timeout] = client
        return client

    @staticmethod
    def _headers(target: ResolvedModel, json_body: bool = True) -> dict[str, str]:
        headers: dict[str, str] = {}
        if json_body:
            headers["Content-Type"] = "application/json"
        if target.api_token:
            headers["Authorization"] = f"Bearer {target.api_token}"
        # endpoint/model headers win over the defaults
        headers.update(target.headers)
        return headers

    async def fetch_models(
        self,
        url: str,
        *,
        api_token: str | None = None,
        headers: dict[str, str] | None = None,
        timeout_s: float | None = None,
    ) -> ModelsResponse:
        """List models reported by ``GET {url}/models``."""
        request_url = f"{url.rstrip('/')}{_MODELS_PATH}"
        request_headers: dict[str, str] = {}
        if api_token:
            request_headers["Authorization"] = f"Bearer {api_token}"
        request_headers.update(headers or {})

        logging.getLogger("llama_copilot.debug.modelListFetch").debug("GET %s", request_url)
        try:
            response = await self._client(timeout_s).get(request_url, headers=request_headers)
            if response.status_code >= 400:
                self._logger.error("Failed to fetch models: %s", response.reason_phrase)
                raise self._server_error(response.status_code, response.text or response.reason_phrase)
            return ModelsResponse.model_validate(response.json())
        except LlamaCopilotError:
            raise
        except Exception as exc:
            self._handle_api_error(exc, request_url)

    def stream_chat_completion(
        self,
        target: ResolvedModel,
        messages: Sequence[ChatMessage],
        *,
        tools: Sequence[ToolDefinition] | None = None,
        max_tokens: int | None = None,
        thinking_lookup: ThinkingLookup | None = None,
        is_new_turn: bool = False,
        timeout_s: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Return an async iterator of text, thinking and tool-call events.

        Message conversion happens eagerly so format errors surface before any
        network traffic.
        """
        payload = self._build_chat_payload(target, messages, tools, max_tokens, thinking_lookup, is_new_turn)
        request_url = f"{target.url}{_CHAT_PATH}"
        headers = self._headers(target)
        timeout = timeout_s if timeout_s is not None else self._timeout_s

        async def _gen() -> AsyncIterator[StreamEvent]:
            debug_logger.debug("POST %s (stream) %s", request_url, _sanitize_for_log(payload))
            try:
                async with self._client(timeout).stream(
                    "POST",
                    request_url,
                    headers=headers,
                    json=payload,
                ) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        self._logger.error("Failed to stream chat completion: %s", response.reason_phrase)
                        if response.status_code >= 500 and _PROXY_ERROR_MARKER in body:
                            raise ServerError(
                                await self._proxy_timeout_message(target, timeout),
                                status_code=response.status_code,
                            )
                        raise self._server_error(response.status_code, body)

                    debug_logger.debug("Stream opened: %s %s", response.status_code, response.reason_phrase)
                    async for event in iter_stream_events(response.aiter_bytes()):
                        yield event
            except LlamaCopilotError:
                raise
            except Exception as exc:
                self._handle_api_error(exc, request_url)

        return _gen()

    async def tokenize(
        self,
        target: ResolvedModel,
        content: str,
        *,
        timeout_s: float | None = None,
    ) -> int:
        """Count tokens via ``POST /tokenize``."""
        request_url = f"{target.url}{_TOKENIZE_PATH}"
        payload: dict[str, Any] = {
            "content": content,
            "model": target.base_model_id,
            "add_special": False,
            "parse_special": True,
            "with_pieces": False,
            **target.request_body,
        }
        tokenize_logger = logging.getLogger("llama_copilot.debug.tokenization")
        tokenize_logger.debug("POST %s (%d chars)", request_url, len(content))
        try:
            response = await self._client(timeout_s).post(request_url, headers=self._headers(target), json=payload)
            if response.status_code >= 400:
                self._logger.error("Failed to tokenize: %s", response.reason_phrase)
                raise self._server_error(response.status_code, response.text or response.reason_phrase)
            tokens = response.json().get("tokens")
        except LlamaCopilotError:
            raise
        except Exception as exc:
            self._handle_api_error(exc, request_url)

        count = len(tokens) if isinstance(tokens, list) else 0
        tokenize_logger.debug("Token count: %d", count)
        return count

    async def request_infill(
        self,
        target: ResolvedModel,
        *,
        input_prefix: str,
        input_suffix: str,
        input_extra: list[dict[str, str]] | None = None,
        timeout_s: float | None = None,
    ) -> str:
        """Non-streaming fill-in-the-middle request; returns the generated text."""
        request_url = f"{target.url}{_INFILL_PATH}"
        payload: dict[str, Any] = {
            "input_prefix": input_prefix,
            "input_suffix": input_suffix,
            "stream": False,
            "n_predict": INFILL_N_PREDICT,
            "model": target.base_model_id,
        }
        if input_extra:
            payload["input_extra"] = input_extra
        payload.update(target.request_body)

        try:
            response = await self._client(timeout_s).post(request_url, headers=self._headers(target), json=payload)
            if response.status_code >= 400:
                self._logger.error("Failed to infill: %s", response.reason_phrase)
                raise self._server_error(response.status_code, response.text or response.reason_phrase)
            data = response.json()
        except LlamaCopilotError:
            raise
        except Exception as exc:
            self._handle_api_error(exc, request_url)

        content = data.get("content") if isinstance(data, dict) else None
        return content if isinstance(content, str) else ""

    def _build_chat_payload(
        self,
        target: ResolvedModel,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolDefinition] | None,
        max_tokens: int | None,
        thinking_lookup: ThinkingLookup | None,
        is_new_turn: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": target.base_model_id,
            "messages": to_wire_messages(messages, thinking_lookup, is_new_turn),
            "stream": True,
            "reasoning_format": "deepseek",
            "parse_tool_calls": True,
            "parallel_tool_calls": True,
            "cache_prompt": True,
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        wire_tools = to_wire_tools(tools)
        if wire_tools:
            payload["tools"] = wire_tools
            payload["tool_choice"] = "auto"

        # endpoint/model request body overrides the defaults
        payload.update(target.request_body)
        return payload

    async def _proxy_timeout_message(self, target: ResolvedModel, timeout_s: float) -> str:
        """Build a timeout hint from the server's own ``--timeout`` flag when it can be read."""
        prefix = "Llama-server reported an internal timeout."
        current, suggested = await self._probe_server_timeout(target)
        if suggested is None:
            fallback = max(_MIN_SUGGESTED_TIMEOUT_S, int(timeout_s) * 2)
            return (
                f"{prefix} Increase the extension Request timeout ({SETTINGS_LOCATION}) to at least "
                f"{fallback} seconds. If the server still times out, add `--timeout {fallback}` (or higher) "
                "to your llama-server command."
            )
        hint = (
            f"Increase the extension Request timeout ({SETTINGS_LOCATION}) to at least {suggested} seconds."
        )
        if current is None:
            return (
                f"{prefix} {hint} If the server still times out, add `--timeout {suggested}` "
                "to your llama-server command."
            )
        return (
            f"{prefix} {hint} If the server still times out, increase llama-server's --timeout "
            f"(currently {current}) to at least {suggested} (e.g. `--timeout {suggested}`)."
        )

    async def _probe_server_timeout(self, target: ResolvedModel) -> tuple[int | None, int | None]:
        """Return ``(current, suggested)`` seconds; ``(None, None)`` when the probe fails."""
        try:
            models = await self.fetch_models(
                target.url,
                api_token=target.api_token,
                headers=target.headers,
                timeout_s=_MODELS_PROBE_TIMEOUT_S,
            )
        except LlamaCopilotError as exc:
            self._logger.debug("Timeout probe failed: %s", exc)
            return None, None

        model = next((m for m in models.data if "/" in m.id), None)
        if model is None or not model.status.args:
            return None, None
        args = model.status.args
        try:
            current = int(args[args.index("--timeout") + 1])
        except (ValueError, IndexError):
            return None, _MIN_SUGGESTED_TIMEOUT_S
        if current < 0:
            return None, _MIN_SUGGESTED_TIMEOUT_S
        return current, max(_MIN_SUGGESTED_TIMEOUT_S, current * 2)

    @staticmethod
    def _server_error(status_code: int, body: str) -> ServerError:
        parsed = parse_server_error(body)
        return ServerError(
            format_server_error_message(parsed, status_code, body),
            status_code=status_code,
            details=parsed,
        )

    def _handle_api_error(self, exc: Exception, url: str) -> NoReturn:
        """Re-raise ``exc``, as a classified TransportError when it is a network failure."""
        self._logger.error("Request to %s failed: %r", url, exc)
        normalized = normalize_transport_error(exc, url)
        if normalized is None:
            raise exc
        raise TransportError(normalized, url=url) from exc


def _sanitize_for_log(payload: Any) -> Any:
    """Shorten reasoning content and attachment bodies for debug logs."""
    if isinstance(payload, str):
        return _ATTACHMENT_RE.sub(r"<attachment \1>[attachment body truncated]</attachment>", payload)
    if isinstance(payload, list):
        return [_sanitize_for_log(item) for item in payload]
    if isinstance(payload, dict):
        sanitized: dict[str, Any] = {}
        for key, value in payload.items():
            if key == "reasoning_content" and isinstance(value, str) and len(value) > _LOG_TRUNCATE:
                sanitized[key] = value[:_LOG_TRUNCATE] + "..."
            else:
                sanitized[key] = _sanitize_for_log(value)
        return sanitized
    return payload
