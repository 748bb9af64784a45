"""
LLM Provider Configuration - Model catalog and provider endpoints.

Maps the public model ids the client may select to a provider family and
the upstream model name, and defines the endpoint used for each provider.
Anthropic is served by its own SDK, every other family by an
OpenAI-compatible endpoint.
"""

import os
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class ProviderKind(str, Enum):
    """Closed set of provider families. Each has a cache strategy handler."""

    ANTHROPIC = "anthropic"  # explicit cache breakpoints (max 4)
    OPENAI = "openai"  # automatic caching, optional retention window
    XAI = "xai"  # conversation-id header caching
    GOOGLE = "google"  # implicit caching
    DEEPSEEK = "deepseek"  # automatic disk caching
    OTHER = "other"


@dataclass(frozen=True)
class ModelSpec:
    """One selectable model."""

    model_id: str
    provider: ProviderKind
    upstream_model: str
    label: str = ""


@dataclass(frozen=True)
class ProviderEndpoint:
    base_url: Optional[str]  # None = SDK default
    api_key_env: str


MODEL_CATALOG: Dict[str, ModelSpec] = {
    spec.model_id: spec
    for spec in (
        ModelSpec("gpt-4.1", ProviderKind.OPENAI, "gpt-4.1", "GPT-4.1"),
        ModelSpec("gpt-5", ProviderKind.OPENAI, "gpt-5.1", "GPT-5.1"),
        ModelSpec("gpt-5.2", ProviderKind.OPENAI, "gpt-5.2", "GPT-5.2"),
        ModelSpec("gemini", ProviderKind.GOOGLE, "gemini-2.5-flash", "Gemini 2.5 Flash"),
        ModelSpec("claude-4.5", ProviderKind.ANTHROPIC, "claude-sonnet-4-5", "Claude Sonnet 4.5"),
        ModelSpec("grok-4.1-reasoning", ProviderKind.XAI, "grok-4-1-fast-reasoning", "Grok 4.1 Fast"),
        ModelSpec("grok-beta", ProviderKind.XAI, "grok-4-1-fast-reasoning", "Grok (beta alias)"),
        ModelSpec("deepseek-chat", ProviderKind.DEEPSEEK, "deepseek-chat", "DeepSeek Chat"),
    )
}

PROVIDER_ENDPOINTS: Dict[ProviderKind, ProviderEndpoint] = {
    ProviderKind.OPENAI: ProviderEndpoint(os.environ.get("OPENAI_BASE_URL"), "OPENAI_API_KEY"),
    ProviderKind.ANTHROPIC: ProviderEndpoint(os.environ.get("ANTHROPIC_BASE_URL"), "ANTHROPIC_API_KEY"),
    ProviderKind.GOOGLE: ProviderEndpoint(
        os.environ.get("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta/openai/"),
        "GEMINI_API_KEY",
    ),
    ProviderKind.XAI: ProviderEndpoint(os.environ.get("XAI_BASE_URL", "https://api.x.ai/v1"), "XAI_API_KEY"),
    ProviderKind.DEEPSEEK: ProviderEndpoint(
        os.environ.get("DEEPSEEK_BASE_URL", "https://api.deepseek.com"), "DEEPSEEK_API_KEY"
    ),
    ProviderKind.OTHER: ProviderEndpoint(os.environ.get("OTHER_LLM_BASE_URL"), "OTHER_LLM_API_KEY"),
}

# Substring -> provider, checked in order
_PROVIDER_MARKERS = (
    ("claude", ProviderKind.ANTHROPIC),
    ("gpt", ProviderKind.OPENAI),
    ("o1", ProviderKind.OPENAI),
    ("o3", ProviderKind.OPENAI),
    ("o4", ProviderKind.OPENAI),
    ("gemini", ProviderKind.GOOGLE),
    ("deepseek", ProviderKind.DEEPSEEK),
    ("grok", ProviderKind.XAI),
)


def detect_provider(model: str) -> ProviderKind:
    """Provider family for a model name (public id or upstream name)."""
    name = (model or "").lower()
    for marker, provider in _PROVIDER_MARKERS:
        if marker in name:
            return provider
    return ProviderKind.OTHER


def resolve_model(model_id: Optional[str], default: Optional[str] = None) -> ModelSpec:
    """Catalog entry for model_id, falling back to the configured default."""
    if model_id and model_id in MODEL_CATALOG:
        return MODEL_CATALOG[model_id]

    if default is None:
        from config import runtime_config
        default = runtime_config.default_model

    if model_id:
        logger.warning(f"Unknown model '{model_id}', using default '{default}'")
    if default in MODEL_CATALOG:
        return MODEL_CATALOG[default]
    # Default not in the catalog: treat it as an upstream name
    return ModelSpec(default, detect_provider(default), default, default)


def get_endpoint(provider: ProviderKind) -> ProviderEndpoint:
    return PROVIDER_ENDPOINTS[provider]
