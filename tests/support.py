"""Shared helpers for building SSE payloads and fake llama-server endpoints."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx

from llama_copilot.client import LlamaServerClient
from llama_copilot.config import EndpointConfig, Settings

BASE_URL = "http://llama.test"


def chunk(
    content: str | None = None,
    reasoning: str | None = None,
    tool_calls: list[dict[str, Any]] | None = None,
    finish_reason: str | None = None,
) -> dict[str, Any]:
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    return {
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def sse(*chunks: dict[str, Any] | str) -> bytes:
    lines = []
    for item in chunks:
        payload = item if isinstance(item, str) else json.dumps(item, ensure_ascii=False)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode("utf-8")


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


async def aiter_chunks(pieces: list[bytes]) -> AsyncIterator[bytes]:
    for piece in pieces:
        yield piece


async def collect(stream: AsyncIterator[Any]) -> list[Any]:
    return [item async for item in stream]


class FakeServer:
    """Routes requests to per-path handlers and records what was sent."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], list[Callable[[httpx.Request], httpx.Response]]] = {}

    def add(self, method: str, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes.setdefault((method, path), []).append(handler)

    def stream(self, body: bytes, pieces: int = 7) -> None:
        """Queue one streaming chat response, delivered in small byte pieces."""
        self.add(
            "POST",
            "/v1/chat/completions",
            lambda request: httpx.Response(200, content=aiter_chunks(split_every(body, pieces))),
        )

    def json_bodies(self, path: str) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handlers = self.routes.get((request.method, request.url.path))
        if not handlers:
            return httpx.Response(404, text="no route")
        # the last handler of a route stays in place for repeated calls
        handle = handlers.pop(0) if len(handlers) > 1 else handlers[0]
        return handle(request)

    def client(self, timeout_s: float = 30.0) -> LlamaServerClient:
        return LlamaServerClient(timeout_s=timeout_s, transport=httpx.MockTransport(self.handler))


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "endpoints": {
            "local": EndpointConfig(
                url=BASE_URL,
                api_token="secret",
                headers={"X-Endpoint": "e"},
                request_body={"temperature": 0.2},
            )
        },
        "inline_completion_model": "coder@local",
        "inline_completion_debounce_ms": 20,
    }
    values.update(overrides)
    return Settings(**values)
