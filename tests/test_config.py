import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from llama_copilot.config import (
    TIMEOUT_ENV_VAR,
    EndpointConfig,
    ModelConfig,
    Settings,
    parse_model_id,
    resolve_model,
)
from llama_copilot.errors import ConfigurationError


class ParseModelIdTests(unittest.TestCase):
    def test_splits_on_last_at(self) -> None:
        cases = {
            "qwen@local": ("qwen", "local"),
            "org@model@remote": ("org@model", "remote"),
            "plain": ("plain", None),
            "@local": ("@local", None),
            "model@": ("model@", None),
        }
        for model_id, expected in cases.items():
            with self.subTest(model_id):
                self.assertEqual(parse_model_id(model_id), expected)


class ResolveModelTests(unittest.TestCase):
    def setUp(self) -> None:
        self.endpoints = {
            "local": EndpointConfig(
                url="http://localhost:8080/",
                api_token="tok",
                headers={"X-A": "endpoint", "X-B": "endpoint"},
                request_body={"temperature": 0.7, "top_k": 20},
                models={"coder": ModelConfig(headers={"X-B": "model"}, request_body={"temperature": 0.1})},
            )
        }

    def test_model_overrides_win(self) -> None:
        target = resolve_model(self.endpoints, "coder@local")
        self.assertEqual(target.base_model_id, "coder")
        self.assertEqual(target.endpoint_id, "local")
        self.assertEqual(target.url, "http://localhost:8080")
        self.assertEqual(target.headers, {"X-A": "endpoint", "X-B": "model"})
        self.assertEqual(target.request_body, {"temperature": 0.1, "top_k": 20})

    def test_unconfigured_model_uses_endpoint_values(self) -> None:
        target = resolve_model(self.endpoints, "other@local")
        self.assertIsNone(target.model_config)
        self.assertEqual(target.request_body, {"temperature": 0.7, "top_k": 20})

    def test_missing_endpoint_identifier(self) -> None:
        with self.assertRaises(ConfigurationError) as ctx:
            resolve_model(self.endpoints, "foo")
        self.assertIn("model-name@local", str(ctx.exception))

    def test_unknown_endpoint_lists_available(self) -> None:
        with self.assertRaises(ConfigurationError) as ctx:
            resolve_model(self.endpoints, "coder@remote")
        self.assertIn('"remote"', str(ctx.exception))
        self.assertIn("local", str(ctx.exception))


class SettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = Settings()
        self.assertEqual(settings.request_timeout_seconds, 1200)
        self.assertTrue(settings.enable_project_rules)
        self.assertEqual(settings.inline_completion_max_input_bytes, 16384)
        self.assertEqual(settings.inline_completion_debounce_ms, 300)
        self.assertIsNone(settings.inline_completion_model)

    def test_camel_case_mapping(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=False):
            os.environ.pop(TIMEOUT_ENV_VAR, None)
            settings = Settings.from_mapping(
                {
                    "endpoints": {
                        "local": {
                            "url": "http://localhost:8080",
                            "apiToken": "tok",
                            "requestBody": {"top_p": 0.9},
                            "models": {"qwen": {"contextSize": 32768, "capabilities": {"imageInput": True}}},
                        }
                    },
                    "requestTimeoutSeconds": 60,
                    "inlineCompletionModel": "qwen@local",
                }
            )
        endpoint = settings.endpoints["local"]
        self.assertEqual(endpoint.api_token, "tok")
        self.assertEqual(endpoint.models["qwen"].context_size, 32768)
        self.assertTrue(endpoint.models["qwen"].capabilities.image_input)
        self.assertTrue(endpoint.models["qwen"].capabilities.tool_calling)
        self.assertEqual(settings.request_timeout_seconds, 60)
        self.assertEqual(settings.inline_completion_model, "qwen@local")

    def test_environment_overrides_timeout(self) -> None:
        with mock.patch.dict(os.environ, {TIMEOUT_ENV_VAR: "90"}):
            settings = Settings.from_mapping({"requestTimeoutSeconds": 60})
        self.assertEqual(settings.request_timeout_seconds, 90)

    def test_invalid_environment_value_ignored(self) -> None:
        with mock.patch.dict(os.environ, {TIMEOUT_ENV_VAR: "soon"}):
            settings = Settings.from_mapping({"requestTimeoutSeconds": 60})
        self.assertEqual(settings.request_timeout_seconds, 60)

    def test_invalid_mapping(self) -> None:
        with self.assertRaises(ConfigurationError):
            Settings.from_mapping({"endpoints": {"local": {"apiToken": "no url"}}})

    def test_from_yaml_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "settings.yaml"
            path.write_text(
                "endpoints:\n"
                "  local:\n"
                "    url: http://localhost:8080\n"
                "    headers:\n"
                "      X-Team: tools\n"
                "enableProjectRules: false\n",
                encoding="utf-8",
            )
            with mock.patch.dict(os.environ, {}, clear=False):
                os.environ.pop(TIMEOUT_ENV_VAR, None)
                settings = Settings.from_file(path)
        self.assertEqual(settings.endpoints["local"].headers, {"X-Team": "tools"})
        self.assertFalse(settings.enable_project_rules)

    def test_unreadable_file(self) -> None:
        with self.assertRaises(ConfigurationError):
            Settings.from_file("/nonexistent/settings.yaml")

    def test_non_mapping_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "settings.yaml"
            path.write_text("- just\n- a list\n", encoding="utf-8")
            with self.assertRaises(ConfigurationError):
                Settings.from_file(path)


if __name__ == "__main__":
    unittest.main()
