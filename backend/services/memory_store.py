"""
Parley Memory Store - Long-term conversation memory per user

Every persisted user/assistant message is also written here, best effort,
so later turns can answer "when did I ask about X?" via the memory search
tool. Entries live in a capped Redis list per user (newest first); the
RedisManager falls back to process memory when Redis is unavailable.

Usage:
    from services.memory_store import get_memory_store, remember_in_background

    remember_in_background(store, user_id, text, chat_id=chat_id, message_type="user")
    hits = await store.search_memories(user_id, "pricing", limit=5)
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from config import runtime_config
from errors import ValidationError

logger = logging.getLogger(__name__)

KEY_PREFIX = "parley:memory:"

_WORD_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = {
    "a", "an", "and", "are", "as", "at", "be", "did", "do", "for", "from", "how", "i",
    "in", "is", "it", "me", "my", "of", "on", "or", "the", "to", "was", "we", "what",
    "when", "where", "which", "who", "why", "with", "you", "about", "ask", "asked",
}

# Background write tasks, held so they are not garbage collected mid-flight
_pending_writes: Set[asyncio.Task] = set()


@dataclass
class MemoryRecord:
    content: str
    timestamp: str  # ISO 8601, UTC
    chat_id: str
    user_id: str
    message_type: str  # user | assistant
    human_readable_time: str = ""
    relevance_score: float = 0.0

    @property
    def when(self) -> datetime:
        return parse_timestamp(self.timestamp)


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def human_readable(ts: datetime) -> str:
    """e.g. 'January 15, 2025 at 2:30 PM'"""
    hour = ts.strftime("%I").lstrip("0") or "12"
    return f"{ts.strftime('%B')} {ts.day}, {ts.year} at {hour}:{ts.strftime('%M %p')}"


def relative_time(ts: datetime, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    seconds = (now - ts).total_seconds()
    minutes = int(seconds // 60)
    hours = int(seconds // 3600)
    days = int(seconds // 86400)

    def plural(n: int, unit: str) -> str:
        return f"{n} {unit}{'s' if n > 1 else ''} ago"

    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return plural(minutes, "minute")
    if hours < 24:
        return plural(hours, "hour")
    if days < 7:
        return plural(days, "day")
    if days < 30:
        return plural(days // 7, "week")
    if days < 365:
        return plural(days // 30, "month")
    return plural(days // 365, "year")


def _tokens(text: str) -> List[str]:
    return [t for t in _WORD_RE.findall((text or "").lower()) if t not in _STOPWORDS]


def score(query: str, content: str) -> float:
    """Share of query terms present in content (0..1)."""
    terms = set(_tokens(query))
    if not terms:
        return 0.0
    words = set(_tokens(content))
    return len(terms & words) / len(terms)


class MemoryStore:
    """User-scoped memory list on top of RedisManager."""

    def __init__(self, redis=None, max_entries: Optional[int] = None):
        self._redis = redis
        self.max_entries = max_entries or runtime_config.memory_max_entries

    async def _client(self):
        if self._redis is None:
            from services.redis_client import get_redis
            self._redis = await get_redis()
        return self._redis

    async def add_memory(
        self,
        user_id: str,
        content: str,
        chat_id: str,
        message_type: str,
        timestamp: Optional[datetime] = None,
    ) -> MemoryRecord:
        if not user_id:
            raise ValidationError("Memory writes need a user id", parameter="user_id")

        ts = timestamp or datetime.now(timezone.utc)
        record = MemoryRecord(
            content=content,
            timestamp=ts.isoformat(),
            chat_id=chat_id,
            user_id=user_id,
            message_type="assistant" if message_type == "system" else message_type,
            human_readable_time=human_readable(ts),
        )
        payload = asdict(record)
        payload.pop("relevance_score")
        redis = await self._client()
        await redis.lpush_capped(KEY_PREFIX + user_id, json.dumps(payload), self.max_entries)
        logger.debug(f"Memory added for user {user_id} ({message_type}, {len(content)} chars)")
        return record

    async def _load(self, user_id: str) -> List[MemoryRecord]:
        redis = await self._client()
        records = []
        for raw in await redis.lrange(KEY_PREFIX + user_id):
            try:
                records.append(MemoryRecord(**json.loads(raw)))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping unreadable memory entry for {user_id}: {e}")
        return records

    async def search_memories(
        self,
        user_id: str,
        query: str,
        limit: int = 5,
        date_range: Optional[Dict[str, Any]] = None,
    ) -> List[MemoryRecord]:
        """Best matches for query, optionally within {start, end} (ISO strings)."""
        start = end = None
        if date_range:
            try:
                start = parse_timestamp(date_range["start"]) if date_range.get("start") else None
                end = parse_timestamp(date_range["end"]) if date_range.get("end") else None
            except (ValueError, AttributeError) as e:
                raise ValidationError(
                    "Invalid date range",
                    details=str(e),
                    parameter="date_range",
                    expected="ISO 8601 start/end",
                )

        hits = []
        for record in await self._load(user_id):
            when = record.when
            if start and when < start:
                continue
            if end and when > end:
                continue
            record.relevance_score = score(query, record.content)
            if record.relevance_score > 0:
                hits.append(record)

        # Highest score first, newest first on ties
        hits.sort(key=lambda r: (r.relevance_score, r.timestamp), reverse=True)
        return hits[:limit]


def remember_in_background(
    store: "MemoryStore", user_id: str, content: str, chat_id: str, message_type: str
) -> Optional[asyncio.Task]:
    """Queue a memory write that never affects the turn."""
    if not runtime_config.memory_enabled or not content or not content.strip():
        return None

    async def _write() -> None:
        try:
            await store.add_memory(user_id, content, chat_id=chat_id, message_type=message_type)
        except Exception as e:
            logger.warning(f"Memory write failed for chat {chat_id}: {e}")

    task = asyncio.create_task(_write())
    _pending_writes.add(task)
    task.add_done_callback(_pending_writes.discard)
    return task


# Singleton instance
_memory_store: Optional[MemoryStore] = None


def get_memory_store() -> MemoryStore:
    global _memory_store
    if _memory_store is None:
        _memory_store = MemoryStore()
    return _memory_store
