"""
Prompt Cache Strategy - Provider-specific prompt caching.

select_cache_strategy() maps (provider, model, messages) to the outbound
message list plus any extra request options. It is pure and idempotent:
existing annotations are cleared before new ones are placed, so running it
on its own output yields the same output.

Provider families:
- ANTHROPIC: up to 4 explicit breakpoints (system prompt + evenly spaced,
  never on the last 2 messages)
- OPENAI: no annotation; 24h retention for gpt-5 variants
- XAI: no annotation; conversation id goes in a client header
- GOOGLE, DEEPSEEK, OTHER: implicit caching, pass through
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from routers.chat_orchestration.turn import ModelMessage
from services.llm_config import ProviderKind

logger = logging.getLogger(__name__)

MAX_BREAKPOINTS = 4
EXCLUDE_LAST_N = 2
EPHEMERAL = {"type": "ephemeral"}
RETENTION_MODEL_MARKER = "gpt-5"
RETENTION_WINDOW = "24h"


@dataclass
class CachePlan:
    messages: List[ModelMessage]
    extra_options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CacheMetrics:
    cached_tokens: int = 0
    cache_write_tokens: int = 0
    cache_miss_tokens: int = 0
    prompt_tokens: int = 0


def _strip(messages: List[ModelMessage]) -> List[ModelMessage]:
    return [replace(m, cache_control=None) if m.cache_control else m for m in messages]


def breakpoint_positions(messages: List[ModelMessage]) -> List[int]:
    """Indexes that get a cache breakpoint, in placement order."""
    positions: List[int] = []
    if not messages:
        return positions

    if messages[0].role == "system":
        positions.append(0)

    cacheable_length = len(messages) - EXCLUDE_LAST_N
    if cacheable_length > 1:
        remaining = MAX_BREAKPOINTS - len(positions)
        interval = cacheable_length // (remaining + 1)
        for i in range(1, remaining + 1):
            position = min(interval * i, cacheable_length - 1)
            if 0 < position < len(messages) and position not in positions:
                positions.append(position)
    return positions


def _anthropic(model: str, messages: List[ModelMessage]) -> CachePlan:
    cached = list(messages)
    for position in breakpoint_positions(cached):
        cached[position] = replace(cached[position], cache_control=dict(EPHEMERAL))
    return CachePlan(cached)


def _openai(model: str, messages: List[ModelMessage]) -> CachePlan:
    extra = {}
    if RETENTION_MODEL_MARKER in (model or "").lower():
        extra["prompt_cache_retention"] = RETENTION_WINDOW
    return CachePlan(list(messages), extra)


def _passthrough(model: str, messages: List[ModelMessage]) -> CachePlan:
    return CachePlan(list(messages))


_HANDLERS: Dict[ProviderKind, Callable[[str, List[ModelMessage]], CachePlan]] = {
    ProviderKind.ANTHROPIC: _anthropic,
    ProviderKind.OPENAI: _openai,
    ProviderKind.XAI: _passthrough,  # conversation id is set on the client
    ProviderKind.GOOGLE: _passthrough,
    ProviderKind.DEEPSEEK: _passthrough,
    ProviderKind.OTHER: _passthrough,
}

_missing = set(ProviderKind) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"cache strategy missing for: {sorted(p.value for p in _missing)}")


def select_cache_strategy(provider: ProviderKind, model: str, messages: List[ModelMessage]) -> CachePlan:
    """Transform messages for provider's caching mechanism. Input is not mutated."""
    plan = _HANDLERS[provider](model, _strip(messages))
    annotated = sum(1 for m in plan.messages if m.cache_control)
    if annotated or plan.extra_options:
        logger.debug(f"Cache strategy {provider.value}: {annotated} breakpoints, options={plan.extra_options}")
    return plan


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _get(data: Any, *path: str) -> Any:
    for key in path:
        if data is None:
            return None
        data = data.get(key) if isinstance(data, dict) else getattr(data, key, None)
    return data


def extract_cache_metrics(provider: ProviderKind, usage: Any) -> Optional[CacheMetrics]:
    """Normalise a provider usage payload (dict or SDK object)."""
    if not usage:
        return None

    metrics = CacheMetrics(prompt_tokens=_int(_get(usage, "prompt_tokens")))
    if provider == ProviderKind.ANTHROPIC:
        metrics.cached_tokens = _int(
            _get(usage, "cache_read_input_tokens") or _get(usage, "prompt_tokens_details", "cached_tokens")
        )
        metrics.cache_write_tokens = _int(_get(usage, "cache_creation_input_tokens"))
    elif provider == ProviderKind.DEEPSEEK:
        metrics.cached_tokens = _int(
            _get(usage, "prompt_cache_hit_tokens") or _get(usage, "prompt_tokens_details", "cached_tokens")
        )
        metrics.cache_miss_tokens = _int(_get(usage, "prompt_cache_miss_tokens"))
    elif provider == ProviderKind.GOOGLE:
        metrics.cached_tokens = _int(
            _get(usage, "cached_content_token_count") or _get(usage, "prompt_tokens_details", "cached_tokens")
        )
    else:
        metrics.cached_tokens = _int(_get(usage, "prompt_tokens_details", "cached_tokens"))
    return metrics
