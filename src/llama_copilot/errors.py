"""Package specific exception hierarchy and error classification."""

from __future__ import annotations

import errno
import json
import re
import socket
from typing import Any

import httpx
from pydantic import BaseModel

SETTINGS_LOCATION = "Settings → Llama Copilot"

_TIMEOUT_CODES = frozenset(
    {
        "ETIMEDOUT",
        "UND_ERR_BODY_TIMEOUT",
        "UND_ERR_HEADERS_TIMEOUT",
        "UND_ERR_CONNECT_TIMEOUT",
    }
)


class LlamaCopilotError(Exception):
    """Base exception for llama_copilot package."""


class ConfigurationError(LlamaCopilotError):
    """Raised for malformed model ids, unknown endpoints or invalid settings."""


class MessageFormatError(LlamaCopilotError):
    """Raised when a chat message or content part has an unrecognized shape."""


class TransportError(LlamaCopilotError):
    """Connection level failure, already translated into a remediation message."""

    def __init__(self, message: str, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class ServerError(LlamaCopilotError):
    """Represents a non-2xx response from llama-server."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: ServerErrorDetails | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class ChatResponseError(LlamaCopilotError):
    """The one error surfaced to the host after a failed chat response."""


class ServerErrorDetails(BaseModel):
    """Structured ``{"error": {...}}`` body returned by llama-server."""

    message: str
    type: str | None = None
    code: int | None = None
    n_prompt_tokens: int | None = None
    n_ctx: int | None = None


def get_error_code(error: BaseException | None) -> str | None:
    """Return a system error code from an exception or anything in its cause chain."""
    seen: set[int] = set()
    current = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        code = getattr(current, "code", None)
        if isinstance(code, str):
            return code
        if isinstance(current, httpx.TimeoutException):
            return "ETIMEDOUT"
        if isinstance(current, socket.gaierror):
            return "ENOTFOUND"
        err_no = getattr(current, "errno", None)
        if isinstance(err_no, int) and err_no in errno.errorcode:
            return errno.errorcode[err_no]
        current = current.__cause__ or current.__context__
    return None


def normalize_transport_error(error: BaseException, request_url: str | None = None) -> str | None:
    """Translate a network failure into a user-facing message.

    Returns ``None`` when ``error`` is not a transport failure; the caller should
    re-raise the original exception in that case.
    """
    is_transport = (
        isinstance(error, (httpx.TransportError, OSError))
        or error.__cause__ is not None
        or "fetch failed" in str(error)
    )
    if not is_transport:
        return None

    code = get_error_code(error)
    url_suffix = f" Request URL: {request_url}." if request_url else ""
    raw_message = (str(error) or type(error).__name__).strip()

    if code in _TIMEOUT_CODES or re.search("timeout|timed out", raw_message, re.IGNORECASE):
        return (
            f"The request timed out. Increase the extension Request timeout ({SETTINGS_LOCATION}). "
            "If the server itself stops the request, raise llama-server's --timeout as well."
        )
    if code == "ECONNREFUSED":
        return f"Cannot connect to the server. Is llama-server running?{url_suffix}"
    if code == "ENOTFOUND":
        return f"Host could not be found. Check the server URL and network.{url_suffix}"
    if code == "ECONNRESET":
        return f"Connection was reset. The server may have closed the connection.{url_suffix}"
    if isinstance(error, httpx.ConnectError) or re.search(r"fetch\s+failed", raw_message, re.IGNORECASE):
        return f"Connection to the server failed. Check the URL and that llama-server is running.{url_suffix}"
    return f"Network error: {raw_message or 'Unknown error'}.{url_suffix}"


def parse_server_error(body_text: str | None) -> ServerErrorDetails | None:
    """Parse a llama-server error body; ``None`` if it is not a JSON error object."""
    if not body_text or not body_text.strip():
        return None
    try:
        data = json.loads(body_text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not isinstance(data.get("error"), dict):
        return None

    err: dict[str, Any] = data["error"]
    message = err.get("message")
    fields: dict[str, Any] = {"message": message if isinstance(message, str) and message else "Unknown error"}
    if isinstance(err.get("type"), str):
        fields["type"] = err["type"]
    for key in ("code", "n_prompt_tokens", "n_ctx"):
        value = err.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            fields[key] = value
    return ServerErrorDetails(**fields)


def format_server_error_message(
    parsed: ServerErrorDetails | None,
    status: int,
    fallback_text: str,
) -> str:
    """Format a server error as an actionable message.

    Proxy timeouts are handled by the caller before this is reached.
    """
    msg = (parsed.message.strip() if parsed else "") or fallback_text or "Unknown error"
    error_type = parsed.type if parsed else None

    if error_type == "authentication_error":
        return f"Invalid API key. Check the endpoint's apiToken in {SETTINGS_LOCATION}."
    if error_type == "not_found_error":
        return f"Not found: {msg}. Check the model id and server URL."
    if error_type == "invalid_request_error":
        if re.search("model is not loaded", msg, re.IGNORECASE):
            return f"Model is not loaded: {msg}. Load the model via the server or check the model name."
        return f"Invalid request: {msg}."
    if error_type == "exceed_context_size_error":
        if parsed and parsed.n_prompt_tokens is not None and parsed.n_ctx is not None:
            return (
                f"Prompt exceeds context size ({parsed.n_prompt_tokens} tokens, context size {parsed.n_ctx}). "
                "Shorten the conversation or use a model with a larger context "
                "(e.g. increase ctx-size for this model)."
            )
        return f"{msg}. Shorten the conversation or use a model with a larger context."
    if error_type == "server_error":
        return f"Server error: {msg}. Check server logs."
    if error_type == "unavailable_error":
        return "Server is still loading. Wait and try again, or check that the model is loading correctly."
    if error_type == "not_supported_error":
        return (
            f"This feature is not supported: {msg}. "
            "Start the server with the required flag or use a different model."
        )
    if error_type == "permission_error":
        return f"Permission denied: {msg}."

    if msg and msg != fallback_text:
        return f"{'Server' if status >= 500 else 'Request'} error: {msg}."
    if status >= 500:
        return f"Server error ({status}). {fallback_text or 'Check server logs.'}"
    return f"Request failed ({status}). {fallback_text or 'Check the request.'}"
