"""
Runtime Configuration for Parley.

Provides a singleton RuntimeConfig class that allows dynamic adjustment of
turn and model parameters at runtime, without requiring service restart.

Usage:
    from config import runtime_config
    budget = runtime_config.step_budget
    runtime_config.update(step_budget=10, llm_temperature=0.5)
"""

import os
import re
import logging
from dataclasses import dataclass, field
from dataclasses import fields as dataclass_fields
from typing import Any, Dict, Optional
from threading import Lock
from urllib.parse import quote_plus

logger = logging.getLogger(__name__)

# Fields never exposed in to_dict() output
_SECRET_FIELDS = {"serpapi_key", "database_url"}

_MODEL_NAME_RE = re.compile(r"^[a-zA-Z0-9._:/-]+$")


def _first_env(*keys: str, default: str) -> str:
    """Return the first non-empty environment value from keys, else default."""
    for key in keys:
        value = os.environ.get(key, "").strip()
        if value:
            return value
    return default


def _env_flag(key: str, default: str = "true") -> bool:
    return os.environ.get(key, default).strip().lower() in ("1", "true", "yes", "on")


def _build_database_url_default() -> str:
    """
    Build a PostgreSQL URL from env vars when DATABASE_URL is not explicitly set.

    Password is URL-encoded to avoid auth breakage with special characters.
    """
    explicit = os.environ.get("DATABASE_URL", "").strip()
    if explicit:
        return explicit

    user = os.environ.get("POSTGRES_USER", "parley").strip() or "parley"
    password = os.environ.get("POSTGRES_PASSWORD", "parley-local-dev")
    host = os.environ.get("POSTGRES_HOST", "localhost").strip() or "localhost"
    port = os.environ.get("POSTGRES_PORT", "5432").strip() or "5432"
    db = os.environ.get("POSTGRES_DB", "parley").strip() or "parley"

    safe_password = quote_plus(password)
    return f"postgresql://{user}:{safe_password}@{host}:{port}/{db}"


@dataclass
class RuntimeConfig:
    """
    Singleton configuration for runtime-adjustable parameters.

    All values have defaults from environment variables, but can be
    changed at runtime via the update() method.
    """

    # Model selection and sampling
    default_model: str = field(default_factory=lambda: os.environ.get("PARLEY_DEFAULT_MODEL", "gpt-4.1"))
    llm_temperature: float = field(default_factory=lambda: float(os.environ.get("PARLEY_LLM_TEMPERATURE", "0.3")))
    llm_timeout: float = field(default_factory=lambda: float(os.environ.get("PARLEY_LLM_TIMEOUT", "180")))
    llm_max_tokens: int = field(default_factory=lambda: int(os.environ.get("PARLEY_LLM_MAX_TOKENS", "4096")))

    # Turn loop
    step_budget: int = field(default_factory=lambda: int(os.environ.get("PARLEY_STEP_BUDGET", "15")))
    tool_concurrency: int = field(
        default_factory=lambda: int(os.environ.get("PARLEY_TOOL_CONCURRENCY", "0"))
    )  # max parallel tool calls per step, 0 = unbounded
    tool_timeout: float = field(default_factory=lambda: float(os.environ.get("PARLEY_TOOL_TIMEOUT", "60")))
    max_message_length: int = field(
        default_factory=lambda: int(os.environ.get("PARLEY_MAX_MESSAGE_LENGTH", "8000"))
    )
    disconnect_poll_interval: float = field(
        default_factory=lambda: float(os.environ.get("PARLEY_DISCONNECT_POLL_S", "0.5"))
    )

    # Web search (SerpAPI)
    serpapi_key: str = field(default_factory=lambda: _first_env("SERPAPI_API_KEY", "SERPAPI_KEY", default=""))
    serpapi_url: str = field(default_factory=lambda: os.environ.get("SERPAPI_URL", "https://serpapi.com/search.json"))
    web_search_results: int = field(default_factory=lambda: int(os.environ.get("WEB_SEARCH_RESULTS", "5")))
    web_search_timeout: float = field(default_factory=lambda: float(os.environ.get("WEB_SEARCH_TIMEOUT", "15")))

    # Web scraper
    scraper_max_length: int = field(default_factory=lambda: int(os.environ.get("SCRAPER_MAX_LENGTH", "5000")))
    scraper_timeout: float = field(default_factory=lambda: float(os.environ.get("SCRAPER_TIMEOUT", "15")))
    scraper_user_agent: str = field(
        default_factory=lambda: os.environ.get(
            "SCRAPER_USER_AGENT", "Mozilla/5.0 (compatible; ParleyBot/1.0; +https://example.invalid/bot)"
        )
    )

    # Long-term memory
    memory_enabled: bool = field(default_factory=lambda: _env_flag("PARLEY_MEMORY_ENABLED"))
    memory_search_limit: int = field(default_factory=lambda: int(os.environ.get("PARLEY_MEMORY_LIMIT", "5")))
    memory_max_entries: int = field(default_factory=lambda: int(os.environ.get("PARLEY_MEMORY_MAX_ENTRIES", "500")))

    # Redis (memory store backend)
    redis_url: str = field(default_factory=lambda: os.environ.get("REDIS_URL", "redis://localhost:6379/0"))
    redis_enabled: bool = field(default_factory=lambda: _env_flag("REDIS_ENABLED"))

    # PostgreSQL (chat store backend)
    database_url: str = field(default_factory=_build_database_url_default)
    database_enabled: bool = field(default_factory=lambda: _env_flag("DATABASE_ENABLED"))
    database_pool_size: int = field(default_factory=lambda: int(os.environ.get("DATABASE_POOL_SIZE", "10")))

    # CORS
    cors_origins: str = field(default_factory=lambda: os.environ.get("CORS_ORIGINS", "http://localhost:3000"))

    # Internal state
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)
    _update_count: int = field(default=0, repr=False)

    # Validation ranges for numeric config values
    _VALIDATION_RANGES: Dict[str, tuple] = field(default_factory=lambda: {
        "llm_temperature": (0.0, 2.0),
        "llm_timeout": (5.0, 900.0),
        "llm_max_tokens": (256, 64000),
        "step_budget": (1, 50),
        "tool_concurrency": (0, 64),
        "tool_timeout": (1.0, 600.0),
        "max_message_length": (1, 200000),
        "disconnect_poll_interval": (0.05, 10.0),
        "web_search_results": (1, 20),
        "web_search_timeout": (1.0, 60.0),
        "scraper_max_length": (100, 100000),
        "scraper_timeout": (1.0, 60.0),
        "memory_search_limit": (1, 50),
        "memory_max_entries": (10, 100000),
        "database_pool_size": (1, 100),
    }, repr=False, compare=False)

    def _rejection(self, key: str, value: Any) -> Optional[str]:
        """Why value is not acceptable for key, or None if it is."""
        if key == "default_model":
            if not isinstance(value, str) or len(value) > 100 or not _MODEL_NAME_RE.match(value):
                return "invalid model name"
        elif key == "serpapi_url":
            if not isinstance(value, str) or not value.strip().startswith(("http://", "https://")):
                return "invalid URL"
        elif key in self._VALIDATION_RANGES:
            lo, hi = self._VALIDATION_RANGES[key]
            if not isinstance(value, (int, float)) or isinstance(value, bool) or not (lo <= value <= hi):
                return f"must be {lo}-{hi}"
        return None

    def update(self, **kwargs) -> Dict[str, Any]:
        """
        Update configuration values at runtime.

        Args:
            **kwargs: Key-value pairs to update (e.g., step_budget=10)

        Returns:
            Dict with 'updated' (changed keys) and 'ignored' (unknown or rejected keys)
        """
        updated = []
        ignored = []

        with self._lock:
            for key, value in kwargs.items():
                if key.startswith("_") or not hasattr(self, key):
                    ignored.append(key)
                    logger.warning(f"Config ignored unknown key: {key}")
                    continue

                reason = self._rejection(key, value)
                if reason:
                    ignored.append(key)
                    logger.warning(f"Config rejected {key}={value!r} ({reason})")
                    continue

                if isinstance(value, str):
                    value = value.strip()
                old_value = getattr(self, key)
                setattr(self, key, value)
                updated.append(key)
                logger.info(f"Config updated: {key} = {value} (was {old_value})")

            self._update_count += 1

        return {"updated": updated, "ignored": ignored}

    def to_dict(self) -> Dict[str, Any]:
        """Export current config as dict (excludes internal fields, masks secrets)."""
        result = {}
        for field_info in dataclass_fields(self):
            if field_info.name.startswith("_"):
                continue
            value = getattr(self, field_info.name)
            if field_info.name in _SECRET_FIELDS and value:
                value = "***"
            result[field_info.name] = value
        return result

    def reset_to_defaults(self) -> Dict[str, Any]:
        """Reset all values to environment defaults."""
        defaults = RuntimeConfig()
        changes = {}

        with self._lock:
            for key in self.to_dict().keys():
                old_value = getattr(self, key)
                new_value = getattr(defaults, key)
                if old_value != new_value:
                    setattr(self, key, new_value)
                    changes[key] = {"old": old_value, "new": new_value}
                    logger.info(f"Config reset: {key}")

            self._update_count += 1

        return {"reset": True, "changes": list(changes), "update_count": self._update_count}


# Singleton instance
runtime_config = RuntimeConfig()
