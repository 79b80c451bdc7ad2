"""Provider adapters and factory."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..config import ProofmeshConfig, ProviderConfig, load_config
from .agent import AgentProvider
from .anthropic import AnthropicProvider
from .base import BaseProvider, HTTPProvider
from .gemini import GeminiProvider
from .inmemory import ScriptedProvider
from .openai import OpenAICompatibleProvider

logger = logging.getLogger(__name__)

OPENAI_STYLE_DEFAULTS: dict[str, str] = {
    "openai-compatible": "https://api.openai.com/v1",
    "mistral": "https://api.mistral.ai/v1",
    "groq": "https://api.groq.com/openai/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "huggingface": "https://router.huggingface.co/v1",
}

# Providers enabled from well-known environment keys when no providers are configured.
ENV_PROVIDERS: list[ProviderConfig] = [
    ProviderConfig(name="gemini", api_style="gemini", api_key_env="GEMINI_API_KEY"),
    ProviderConfig(
        name="mistral",
        api_style="mistral",
        api_key_env="MISTRAL_API_KEY",
        models=["mistral-large-latest", "mistral-small-latest", "codestral-latest"],
        default_model="mistral-small-latest",
    ),
    ProviderConfig(
        name="groq",
        api_style="groq",
        api_key_env="GROQ_API_KEY",
        models=["llama-3.3-70b-versatile", "llama-3.1-8b-instant", "mixtral-8x7b-32768"],
    ),
    ProviderConfig(
        name="openrouter",
        api_style="openrouter",
        api_key_env="OPENROUTER_API_KEY",
        models=[
            "deepseek/deepseek-chat",
            "qwen/qwen-2.5-72b-instruct",
            "meta-llama/llama-3.3-70b-instruct",
        ],
    ),
    ProviderConfig(name="anthropic", api_style="anthropic", api_key_env="ANTHROPIC_API_KEY"),
    ProviderConfig(
        name="huggingface",
        api_style="huggingface",
        api_key_env="HUGGINGFACE_API_KEY",
        models=["meta-llama/Llama-3.3-70B-Instruct", "Qwen/Qwen2.5-72B-Instruct"],
    ),
]


def build_provider(
    conf: ProviderConfig, client: Optional[httpx.AsyncClient] = None
) -> BaseProvider:
    """Instantiate the adapter matching ``conf.api_style``."""

    style = conf.api_style
    key = conf.resolved_key()
    common = dict(
        api_key=key,
        models=conf.models or None,
        default_model=conf.default_model,
        timeout_s=conf.timeout_s,
        json_mode=conf.json_mode,
        client=client,
    )
    if style == "anthropic":
        return AnthropicProvider(conf.name, base_url=conf.base_url or "https://api.anthropic.com/v1", **common)
    if style == "gemini":
        return GeminiProvider(
            conf.name,
            base_url=conf.base_url or "https://generativelanguage.googleapis.com/v1beta",
            **common,
        )
    if style == "pydantic-ai":
        return AgentProvider(conf.name, conf.models, conf.default_model, conf.json_mode)
    if style in OPENAI_STYLE_DEFAULTS:
        return OpenAICompatibleProvider(
            conf.name, conf.base_url or OPENAI_STYLE_DEFAULTS[style], **common
        )
    raise ValueError(f"Unsupported provider api_style: {style}")


def build_providers(config: Optional[ProofmeshConfig] = None) -> list[BaseProvider]:
    """Build the configured fallback chain, in configuration order.

    Providers needing a key are skipped when none is available. When the
    configuration lists no providers, the well-known environment keys are
    consulted instead.
    """

    config = config or load_config()
    confs = config.providers or ENV_PROVIDERS
    providers: list[BaseProvider] = []
    for conf in confs:
        if conf.api_style != "pydantic-ai" and not conf.resolved_key() and conf.base_url is None:
            if config.providers:
                logger.warning(f"Skipping provider {conf.name}: no API key configured")
            continue
        providers.append(build_provider(conf))
    return providers


__all__ = [
    "AgentProvider",
    "AnthropicProvider",
    "BaseProvider",
    "GeminiProvider",
    "HTTPProvider",
    "OpenAICompatibleProvider",
    "ScriptedProvider",
    "build_provider",
    "build_providers",
]
