import errno
import socket
import unittest

import httpx

from llama_copilot.errors import (
    SETTINGS_LOCATION,
    format_server_error_message,
    get_error_code,
    normalize_transport_error,
    parse_server_error,
)


def _chained(outer: Exception, cause: BaseException) -> Exception:
    try:
        raise outer from cause
    except Exception as exc:
        return exc


URL = "http://llama.test/v1/chat/completions"


class ErrorCodeTests(unittest.TestCase):
    def test_code_found_in_cause_chain(self) -> None:
        error = _chained(httpx.ConnectError("connect failed"), ConnectionRefusedError(errno.ECONNREFUSED, "refused"))
        self.assertEqual(get_error_code(error), "ECONNREFUSED")

    def test_string_code_attribute(self) -> None:
        error = RuntimeError("x")
        error.code = "UND_ERR_HEADERS_TIMEOUT"  # type: ignore[attr-defined]
        self.assertEqual(get_error_code(error), "UND_ERR_HEADERS_TIMEOUT")

    def test_httpx_timeout_and_dns(self) -> None:
        self.assertEqual(get_error_code(httpx.ReadTimeout("slow")), "ETIMEDOUT")
        self.assertEqual(get_error_code(socket.gaierror(socket.EAI_NONAME, "unknown")), "ENOTFOUND")

    def test_no_code(self) -> None:
        self.assertIsNone(get_error_code(ValueError("plain")))
        self.assertIsNone(get_error_code(None))


class NormalizeTransportErrorTests(unittest.TestCase):
    def test_connection_refused(self) -> None:
        error = _chained(httpx.ConnectError("connect failed"), ConnectionRefusedError(errno.ECONNREFUSED, "refused"))
        message = normalize_transport_error(error, URL)
        self.assertEqual(message, f"Cannot connect to the server. Is llama-server running? Request URL: {URL}.")

    def test_host_not_found(self) -> None:
        error = _chained(httpx.ConnectError("connect failed"), socket.gaierror(socket.EAI_NONAME, "unknown"))
        self.assertTrue(normalize_transport_error(error).startswith("Host could not be found."))

    def test_connection_reset(self) -> None:
        error = _chained(httpx.ReadError("read failed"), ConnectionResetError(errno.ECONNRESET, "reset"))
        self.assertTrue(normalize_transport_error(error, URL).startswith("Connection was reset."))

    def test_timeout_mentions_both_settings(self) -> None:
        message = normalize_transport_error(httpx.ReadTimeout("slow"), URL)
        self.assertIn(SETTINGS_LOCATION, message)
        self.assertIn("--timeout", message)

    def test_timeout_detected_from_message(self) -> None:
        message = normalize_transport_error(OSError("operation timed out"))
        self.assertIn("timed out", message)

    def test_generic_connect_error(self) -> None:
        message = normalize_transport_error(httpx.ConnectError("boom"), URL)
        self.assertTrue(message.startswith("Connection to the server failed."))
        self.assertTrue(message.endswith(f"Request URL: {URL}."))

    def test_other_network_error(self) -> None:
        self.assertEqual(normalize_transport_error(httpx.RemoteProtocolError("bad frame")), "Network error: bad frame.")

    def test_non_transport_errors_are_left_alone(self) -> None:
        self.assertIsNone(normalize_transport_error(ValueError("bug")))
        self.assertIsNone(normalize_transport_error(KeyError("missing")))


class ServerErrorTests(unittest.TestCase):
    def test_parse_structured_body(self) -> None:
        parsed = parse_server_error(
            '{"error": {"code": 400, "message": "too long", "type": "exceed_context_size_error",'
            ' "n_prompt_tokens": 50000, "n_ctx": 32768}}'
        )
        self.assertEqual(parsed.type, "exceed_context_size_error")
        self.assertEqual((parsed.code, parsed.n_prompt_tokens, parsed.n_ctx), (400, 50000, 32768))

    def test_parse_rejects_non_error_bodies(self) -> None:
        for body in (None, "", "   ", "not json", "[]", '{"message": "x"}', '{"error": "x"}'):
            with self.subTest(body=body):
                self.assertIsNone(parse_server_error(body))

    def test_parse_defaults_message(self) -> None:
        self.assertEqual(parse_server_error('{"error": {"type": "server_error"}}').message, "Unknown error")

    def test_context_size_message(self) -> None:
        parsed = parse_server_error(
            '{"error": {"message": "x", "type": "exceed_context_size_error", "n_prompt_tokens": 50000, "n_ctx": 32768}}'
        )
        message = format_server_error_message(parsed, 400, "")
        self.assertIn("50000", message)
        self.assertIn("32768", message)
        self.assertIn("Shorten the conversation", message)
        self.assertIn("ctx-size", message)

    def test_typed_messages(self) -> None:
        cases = {
            "authentication_error": "Invalid API key.",
            "not_found_error": "Not found: boom.",
            "invalid_request_error": "Invalid request: boom.",
            "server_error": "Server error: boom.",
            "unavailable_error": "Server is still loading.",
            "not_supported_error": "This feature is not supported: boom.",
            "permission_error": "Permission denied: boom.",
        }
        for error_type, prefix in cases.items():
            with self.subTest(error_type):
                parsed = parse_server_error(f'{{"error": {{"message": "boom", "type": "{error_type}"}}}}')
                self.assertTrue(format_server_error_message(parsed, 400, "").startswith(prefix))

    def test_model_not_loaded(self) -> None:
        parsed = parse_server_error('{"error": {"message": "model is not loaded", "type": "invalid_request_error"}}')
        self.assertTrue(format_server_error_message(parsed, 400, "").startswith("Model is not loaded"))

    def test_unstructured_bodies_fall_back_on_status(self) -> None:
        self.assertEqual(format_server_error_message(None, 502, "Bad Gateway"), "Server error (502). Bad Gateway")
        self.assertEqual(format_server_error_message(None, 404, "Not Found"), "Request failed (404). Not Found")

    def test_unknown_type_uses_message(self) -> None:
        parsed = parse_server_error('{"error": {"message": "odd", "type": "mystery"}}')
        self.assertEqual(format_server_error_message(parsed, 500, "raw"), "Server error: odd.")


if __name__ == "__main__":
    unittest.main()
