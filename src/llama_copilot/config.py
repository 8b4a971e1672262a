"""Endpoint configuration, settings loading and model-id routing."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from llama_copilot.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 1200
TIMEOUT_ENV_VAR = "LLAMA_COPILOT_REQUEST_TIMEOUT_SECONDS"


class _Config(BaseModel):
    # Accept the editor's camelCase keys as well as snake_case.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ModelCapabilities(_Config):
    tool_calling: bool = True
    image_input: bool = False


class ModelConfig(_Config):
    """Per-model overrides; every field wins over the endpoint's value."""

    headers: dict[str, str] = Field(default_factory=dict)
    request_body: dict[str, Any] = Field(default_factory=dict)
    context_size: int | None = None
    max_output_tokens: int | None = None
    capabilities: ModelCapabilities | None = None


class EndpointConfig(_Config):
    url: str
    api_token: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    request_body: dict[str, Any] = Field(default_factory=dict)
    models: dict[str, ModelConfig] = Field(default_factory=dict)


EndpointsConfig = dict[str, EndpointConfig]


class Settings(_Config):
    """Everything the providers read from the host's configuration."""

    endpoints: dict[str, EndpointConfig] = Field(default_factory=dict)
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    enable_project_rules: bool = True
    rules_directory: str = ".cursor/rules"
    inline_completion_model: str | None = None
    inline_completion_timeout_ms: int = 5000
    inline_completion_debounce_ms: int = 300
    inline_completion_max_input_bytes: int = 16384
    inline_completion_context: bool = True

    @classmethod
    def from_file(cls, path: str | Path) -> Settings:
        """Load settings from a YAML or JSON file, applying environment overrides."""
        try:
            with open(path, encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Cannot read settings from {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Settings file {path} must contain a mapping")
        return cls.from_mapping(raw)

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> Settings:
        try:
            settings = cls.model_validate(raw)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid settings: {exc}") from exc
        timeout = get_request_timeout_override()
        if timeout is not None:
            settings = settings.model_copy(update={"request_timeout_seconds": timeout})
        return settings


def get_request_timeout_override() -> float | None:
    """
    Read the request timeout from the environment.

    Set LLAMA_COPILOT_REQUEST_TIMEOUT_SECONDS to override the configured value.
    """
    value = os.environ.get(TIMEOUT_ENV_VAR)
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", TIMEOUT_ENV_VAR, value)
        return None
    return seconds if seconds > 0 else None


def parse_model_id(model_id: str) -> tuple[str, str | None]:
    """Split ``model@endpoint`` on the last ``@``.

    The endpoint is ``None`` when there is no ``@`` or it is the first or last character.
    """
    at = model_id.rfind("@")
    if at <= 0 or at == len(model_id) - 1:
        return model_id, None
    return model_id[:at], model_id[at + 1 :]


def get_endpoint_config(endpoints: EndpointsConfig, endpoint_id: str) -> EndpointConfig:
    try:
        return endpoints[endpoint_id]
    except KeyError as exc:
        available = ", ".join(endpoints) or "none"
        raise ConfigurationError(
            f'Endpoint "{endpoint_id}" not found in configuration. Available endpoints: {available}'
        ) from exc


@dataclass(frozen=True)
class ResolvedModel:
    """Everything needed to address one model on one endpoint."""

    base_model_id: str
    endpoint_id: str
    url: str
    api_token: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    request_body: dict[str, Any] = field(default_factory=dict)
    model_config: ModelConfig | None = None


def resolve_model(endpoints: EndpointsConfig, model_id: str) -> ResolvedModel:
    """Route a host model id to its endpoint, merging endpoint then model overrides."""
    base_model_id, endpoint_id = parse_model_id(model_id)
    if endpoint_id is None:
        raise ConfigurationError(
            f'Model ID "{model_id}" must include an endpoint identifier (e.g., "model-name@local")'
        )
    endpoint = get_endpoint_config(endpoints, endpoint_id)
    model_config = endpoint.models.get(base_model_id)

    headers = dict(endpoint.headers)
    request_body = dict(endpoint.request_body)
    if model_config is not None:
        headers.update(model_config.headers)
        request_body.update(model_config.request_body)

    return ResolvedModel(
        base_model_id=base_model_id,
        endpoint_id=endpoint_id,
        url=endpoint.url.rstrip("/"),
        api_token=endpoint.api_token,
        headers=headers,
        request_body=request_body,
        model_config=model_config,
    )
