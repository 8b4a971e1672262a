"""Model listing for the host's model picker."""

from __future__ import annotations

import logging

from pydantic import BaseModel

from llama_copilot.client import LlamaServerClient
from llama_copilot.config import EndpointsConfig, ModelCapabilities, ModelConfig
from llama_copilot.types import ServerModel

logger = logging.getLogger("llama_copilot.debug.modelListFetch")

DEFAULT_CONTEXT_SIZE = 128000
MAX_OUTPUT_TOKENS_MIN = 8192
MAX_OUTPUT_TOKENS_MAX = 128000
MAX_OUTPUT_TOKENS_FRACTION = 0.25
MODEL_FAMILY = "llama-server"


class ModelInformation(BaseModel):
    """What the host needs to show and route a model."""

    id: str
    name: str
    tooltip: str
    family: str = MODEL_FAMILY
    version: str = "1.0.0"
    max_input_tokens: int
    max_output_tokens: int
    capabilities: ModelCapabilities


def has_embeddings(model: ServerModel) -> bool:
    return "--embeddings" in (model.status.args or [])


def is_chat_capable(model: ServerModel) -> bool:
    return not has_embeddings(model)


def extract_context_size(model: ServerModel) -> int | None:
    """The ``--ctx-size`` launch argument; ``None`` if absent, invalid or zero."""
    args = model.status.args or []
    try:
        value = int(args[args.index("--ctx-size") + 1])
    except (ValueError, IndexError):
        return None
    return value or None


def calculate_max_output_tokens(context_size: int) -> int:
    """A quarter of the context, clamped to [8192, 128000]."""
    max_output = int(context_size * MAX_OUTPUT_TOKENS_FRACTION)
    return max(MAX_OUTPUT_TOKENS_MIN, min(MAX_OUTPUT_TOKENS_MAX, max_output))


def merged_capabilities(model_config: ModelConfig | None) -> ModelCapabilities:
    if model_config is None or model_config.capabilities is None:
        return ModelCapabilities()
    return model_config.capabilities


def _build_info(
    endpoint_id: str,
    model_id: str,
    model_config: ModelConfig | None,
    tooltip: str,
    server_context_size: int | None = None,
) -> ModelInformation:
    context_size = (
        (model_config.context_size if model_config else None) or server_context_size or DEFAULT_CONTEXT_SIZE
    )
    max_output = (model_config.max_output_tokens if model_config else None) or calculate_max_output_tokens(
        context_size
    )
    full_id = f"{model_id}@{endpoint_id}"
    return ModelInformation(
        id=full_id,
        name=full_id,
        tooltip=tooltip,
        max_input_tokens=context_size,
        max_output_tokens=max_output,
        capabilities=merged_capabilities(model_config),
    )


async def provide_model_information(
    client: LlamaServerClient,
    endpoints: EndpointsConfig,
    timeout_s: float | None = None,
) -> list[ModelInformation]:
    """List chat models of every endpoint plus configured models the server did not report."""
    models: list[ModelInformation] = []
    for endpoint_id, endpoint in endpoints.items():
        found: set[str] = set()
        try:
            response = await client.fetch_models(
                endpoint.url,
                api_token=endpoint.api_token,
                headers=endpoint.headers,
                timeout_s=timeout_s,
            )
        except Exception as exc:
            logger.warning('Failed to fetch models from endpoint "%s": %s', endpoint_id, exc)
        else:
            for server_model in response.data:
                if "/" in server_model.id or not is_chat_capable(server_model):
                    continue
                found.add(server_model.id)
                models.append(
                    _build_info(
                        endpoint_id,
                        server_model.id,
                        endpoint.models.get(server_model.id),
                        f'Model from llama-server endpoint "{endpoint_id}" ({server_model.status.value})',
                        extract_context_size(server_model),
                    )
                )

        for model_id, model_config in endpoint.models.items():
            if "/" in model_id or model_id in found:
                continue
            models.append(
                _build_info(
                    endpoint_id,
                    model_id,
                    model_config,
                    f'Model from llama-server endpoint "{endpoint_id}" (configured)',
                )
            )
    return models
