"""Fill-in-the-middle context building and the debounced inline-completion provider."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, Field

from llama_copilot.cancellation import CancellationToken
from llama_copilot.client import LlamaServerClient
from llama_copilot.config import EndpointsConfig, Settings, resolve_model
from llama_copilot.errors import ConfigurationError

logger = logging.getLogger("llama_copilot.debug.inlineCompletion")

MIN_SUFFIX_BYTES = 4096

TriggerKind = Literal["automatic", "invoke"]


class ExtraFile(BaseModel):
    filename: str
    text: str


class InfillContext(BaseModel):
    prefix: str
    suffix: str
    extra: list[ExtraFile] = Field(default_factory=list)


class InlineCompletionItem(BaseModel):
    """Text to insert at ``offset``."""

    text: str
    offset: int


def byte_length(text: str) -> int:
    return len(text.encode("utf-8"))


def truncate_end(text: str, max_bytes: int) -> str:
    """Keep the head of ``text`` within ``max_bytes`` UTF-8 bytes."""
    if max_bytes <= 0:
        return ""
    data = text.encode("utf-8")
    if len(data) <= max_bytes:
        return text
    cut = max_bytes
    # back off continuation bytes so no character is split
    while cut > 0 and data[cut] & 0xC0 == 0x80:
        cut -= 1
    return data[:cut].decode("utf-8")


def truncate_start(text: str, max_bytes: int) -> str:
    """Keep the tail of ``text`` within ``max_bytes`` UTF-8 bytes."""
    if max_bytes <= 0:
        return ""
    data = text.encode("utf-8")
    if len(data) <= max_bytes:
        return text
    start = len(data) - max_bytes
    while start < len(data) and data[start] & 0xC0 == 0x80:
        start += 1
    return data[start:].decode("utf-8")


def build_infill_context(
    full_text: str,
    cursor_offset: int,
    max_bytes: int,
    other_files: Sequence[ExtraFile] | None = None,
) -> InfillContext:
    """Split at the cursor and fit prefix, suffix and extra files into ``max_bytes``.

    The suffix is cut first but never below MIN_SUFFIX_BYTES; the prefix then
    loses its head. Leftover budget goes to ``other_files`` in order; the first
    file that does not fit is truncated and ends the list.
    """
    prefix = full_text[:cursor_offset]
    suffix = full_text[cursor_offset:]
    prefix_bytes = byte_length(prefix)
    suffix_bytes = byte_length(suffix)

    if prefix_bytes + suffix_bytes > max_bytes:
        suffix = truncate_end(suffix, max(MIN_SUFFIX_BYTES, max_bytes - prefix_bytes))
        suffix_bytes = byte_length(suffix)
        if prefix_bytes + suffix_bytes > max_bytes:
            prefix = truncate_start(prefix, max_bytes - suffix_bytes)
            prefix_bytes = byte_length(prefix)

    budget = max_bytes - prefix_bytes - suffix_bytes
    extra: list[ExtraFile] = []
    for item in other_files or ():
        if budget <= 0:
            break
        size = byte_length(item.text)
        if size <= budget:
            extra.append(item)
            budget -= size
            continue
        truncated = truncate_end(item.text, budget)
        if truncated:
            extra.append(ExtraFile(filename=item.filename, text=truncated))
        break

    return InfillContext(prefix=prefix, suffix=suffix, extra=extra)


class InlineCompletionProvider:
    """Serves inline completions from ``POST /infill``.

    Automatic triggers are debounced and superseded by newer automatic
    triggers; explicit invocations go out immediately.
    """

    def __init__(
        self,
        settings: Settings,
        client: LlamaServerClient | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or LlamaServerClient(timeout_s=settings.request_timeout_seconds)
        self._pending: asyncio.Event | None = None

    @property
    def endpoints(self) -> EndpointsConfig:
        return self._settings.endpoints

    async def provide_inline_completion(
        self,
        text: str,
        offset: int,
        trigger: TriggerKind,
        token: CancellationToken,
        other_files: Sequence[ExtraFile] | None = None,
    ) -> InlineCompletionItem | None:
        if trigger not in ("automatic", "invoke"):
            return None
        if not self._settings.inline_completion_model:
            return None

        if trigger == "automatic" and not await self._debounce(token):
            return None
        return await self._complete(text, offset, trigger, token, other_files)

    async def _debounce(self, token: CancellationToken) -> bool:
        """Wait out the debounce delay; ``False`` if cancelled or superseded meanwhile."""
        if self._pending is not None:
            self._pending.set()
        stop = self._pending = asyncio.Event()
        token.on_cancellation_requested(stop.set)
        try:
            await asyncio.wait_for(stop.wait(), self._settings.inline_completion_debounce_ms / 1000)
        except asyncio.TimeoutError:
            return True
        finally:
            if self._pending is stop:
                self._pending = None
        return False

    async def _complete(
        self,
        text: str,
        offset: int,
        trigger: TriggerKind,
        token: CancellationToken,
        other_files: Sequence[ExtraFile] | None,
    ) -> InlineCompletionItem | None:
        if token.is_cancellation_requested:
            return None
        model_id = self._settings.inline_completion_model or ""
        try:
            target = resolve_model(self.endpoints, model_id)
        except ConfigurationError as exc:
            logger.debug("Inline completion unavailable for %s: %s", model_id, exc)
            return None

        context = build_infill_context(
            text,
            offset,
            self._settings.inline_completion_max_input_bytes,
            other_files if self._settings.inline_completion_context else None,
        )
        logger.debug(
            "Inline completion request (%s): prefix=%d bytes suffix=%d bytes extra=%d",
            trigger,
            byte_length(context.prefix),
            byte_length(context.suffix),
            len(context.extra),
        )

        timeout_s = self._settings.inline_completion_timeout_ms / 1000
        request = asyncio.ensure_future(
            asyncio.wait_for(
                self._client.request_infill(
                    target,
                    input_prefix=context.prefix,
                    input_suffix=context.suffix,
                    input_extra=[item.model_dump() for item in context.extra] or None,
                    timeout_s=timeout_s,
                ),
                timeout_s,
            )
        )
        token.on_cancellation_requested(request.cancel)
        try:
            content = await request
        except asyncio.CancelledError:
            if not token.is_cancellation_requested:
                raise
            logger.debug("Inline completion cancelled")
            return None
        except asyncio.TimeoutError:
            logger.debug("Inline completion timed out after %.1fs", timeout_s)
            return None
        except Exception as exc:
            logger.debug("Inline completion error: %s", exc)
            return None

        if token.is_cancellation_requested or not content:
            return None
        logger.debug("Inline completion success: %d chars", len(content))
        return InlineCompletionItem(text=content, offset=offset)
