"""
Parley Services - Shared infrastructure services.

- redis_client: Redis connection manager with health checks and fallback
- memory_store: Long-term per-user conversation memory on Redis
- database: PostgreSQL connection manager with fallback
- chat_store: Chat / message persistence (PostgreSQL or in-memory)
- llm_config / llm_client: Model catalog and provider clients
- cache_strategy: Provider-specific prompt-cache annotation
"""

from .redis_client import RedisManager, get_redis

__all__ = ["RedisManager", "get_redis"]
