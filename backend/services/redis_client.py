"""
Redis connection manager for the memory store.

Only the two list operations the memory store needs are exposed. When Redis
is disabled or drops out, the same operations run against process-local
lists (lost on restart) so memory keeps working in a degraded form.

Usage:
    from services.redis_client import get_redis

    redis = await get_redis()
    await redis.lpush_capped("parley:memory:u1", payload, max_len=500)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

REDIS_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


@dataclass
class RedisManager:
    """
    Async Redis client with an in-memory fallback.

    Lists are newest first (LPUSH + LTRIM), in Redis and in the fallback.
    """

    url: str = "redis://localhost:6379/0"
    enabled: bool = True

    _client: Any = field(default=None, repr=False)
    _fallback_mode: bool = field(default=False, repr=False)
    _local_lists: Dict[str, List[str]] = field(default_factory=dict, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def available(self) -> bool:
        return self._client is not None and not self._fallback_mode

    @property
    def fallback_mode(self) -> bool:
        return self._fallback_mode

    async def connect(self) -> bool:
        """
        Connect and ping.

        Returns:
            True if connected, False if fallback mode was entered
        """
        if not self.enabled:
            logger.info("Redis disabled by config, memory kept in process")
            self._fallback_mode = True
            return False

        async with self._lock:
            if self.available:
                return True

            client = redis_async.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_timeout=5.0,
            )
            try:
                await client.ping()
            except REDIS_ERRORS as e:
                logger.warning(f"Redis connection failed: {e}, memory kept in process")
                self._fallback_mode = True
                return False

            self._client = client
            self._fallback_mode = False
            logger.info(f"Redis connected: {self.url}")
            return True

    async def disconnect(self) -> None:
        async with self._lock:
            client, self._client = self._client, None
            if client is None:
                return
            try:
                await client.aclose()
            except REDIS_ERRORS as e:
                logger.warning(f"Error closing Redis: {e}")

    async def health_check(self) -> Dict[str, Any]:
        if self._fallback_mode:
            return {"status": "fallback", "mode": "in-memory", "lists": len(self._local_lists)}
        if self._client is None:
            return {"status": "disconnected", "mode": "none"}

        loop = asyncio.get_running_loop()
        start = loop.time()
        try:
            await self._client.ping()
        except REDIS_ERRORS as e:
            self._enter_fallback(f"health check failed: {e}")
            return {"status": "error", "mode": "fallback", "error": str(e)}
        return {"status": "connected", "mode": "redis", "latency_ms": round((loop.time() - start) * 1000, 2)}

    async def try_reconnect(self) -> bool:
        if not self._fallback_mode:
            return True
        logger.info("Attempting Redis reconnection...")
        self._fallback_mode = False
        return await self.connect()

    # === Lists ===

    async def lpush_capped(self, key: str, value: str, max_len: int) -> None:
        """Prepend value and keep only the newest max_len entries."""
        if not self._fallback_mode:
            try:
                pipe = self._client.pipeline()
                pipe.lpush(key, value)
                pipe.ltrim(key, 0, max_len - 1)
                await pipe.execute()
                return
            except REDIS_ERRORS as e:
                self._enter_fallback(f"LPUSH {key} failed: {e}")

        items = self._local_lists.setdefault(key, [])
        items.insert(0, value)
        del items[max_len:]

    async def lrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        """Entries of a list, newest first (end is inclusive, -1 for all)."""
        if not self._fallback_mode:
            try:
                return await self._client.lrange(key, start, end)
            except REDIS_ERRORS as e:
                self._enter_fallback(f"LRANGE {key} failed: {e}")

        stop = None if end == -1 else end + 1
        return list(self._local_lists.get(key, [])[start:stop])

    def _enter_fallback(self, reason: str) -> None:
        if not self._fallback_mode:
            logger.warning(f"Redis {reason}, switching to in-memory fallback")
            self._fallback_mode = True


_redis_manager: Optional[RedisManager] = None
_init_lock: Optional[asyncio.Lock] = None


async def get_redis() -> RedisManager:
    """Redis manager singleton, connected on first use."""
    global _redis_manager, _init_lock

    if _redis_manager is None:
        if _init_lock is None:
            _init_lock = asyncio.Lock()
        async with _init_lock:
            if _redis_manager is None:
                from config import runtime_config

                manager = RedisManager(url=runtime_config.redis_url, enabled=runtime_config.redis_enabled)
                await manager.connect()
                _redis_manager = manager

    return _redis_manager


async def close_redis() -> None:
    """Close the Redis connection (called on shutdown)."""
    global _redis_manager
    if _redis_manager:
        await _redis_manager.disconnect()
        _redis_manager = None
