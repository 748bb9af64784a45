"""
Long-term memory store tests (Redis fallback mode, no server needed).
"""

import asyncio
from datetime import datetime, timedelta, timezone

from config import runtime_config
from errors import ValidationError
from services.memory_store import (
    MemoryStore,
    human_readable,
    relative_time,
    remember_in_background,
    score,
)
from services.redis_client import RedisManager

NOW = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)


def _store(max_entries: int = 50) -> MemoryStore:
    redis = RedisManager(enabled=False)
    asyncio.run(redis.connect())
    return MemoryStore(redis=redis, max_entries=max_entries)


class TestTimeFormatting:
    """Test human_readable and relative_time."""

    def test_human_readable(self):
        assert human_readable(datetime(2025, 1, 15, 14, 30, tzinfo=timezone.utc)) == "January 15, 2025 at 2:30 PM"
        assert human_readable(datetime(2025, 1, 15, 0, 5, tzinfo=timezone.utc)) == "January 15, 2025 at 12:05 AM"

    def test_relative_time(self):
        assert relative_time(NOW - timedelta(seconds=20), now=NOW) == "Just now"
        assert relative_time(NOW - timedelta(minutes=1), now=NOW) == "1 minute ago"
        assert relative_time(NOW - timedelta(hours=5), now=NOW) == "5 hours ago"
        assert relative_time(NOW - timedelta(days=10), now=NOW) == "1 week ago"
        assert relative_time(NOW - timedelta(days=65), now=NOW) == "2 months ago"
        assert relative_time(NOW - timedelta(days=800), now=NOW) == "2 years ago"


class TestScore:
    """Test keyword relevance scoring."""

    def test_stopwords_ignored(self):
        assert score("what did I ask about docker", "Docker compose networking") == 1.0

    def test_partial_match(self):
        assert score("docker networking volumes", "docker volumes") == 2 / 3

    def test_empty_query(self):
        assert score("the of and", "anything") == 0.0


class TestMemoryStore:
    """Test MemoryStore add/search."""

    def test_add_requires_user(self):
        store = _store()
        try:
            asyncio.run(store.add_memory("", "text", "chat-1", "user"))
        except ValidationError as e:
            assert e.context["parameter"] == "user_id"
        else:
            raise AssertionError("expected ValidationError")

    def test_search_orders_by_score(self):
        store = _store()
        asyncio.run(store.add_memory("u1", "postgres indexes", "c1", "user", timestamp=NOW - timedelta(days=3)))
        asyncio.run(store.add_memory("u1", "postgres indexes and vacuum tuning", "c2", "assistant",
                                     timestamp=NOW - timedelta(days=1)))
        asyncio.run(store.add_memory("u1", "holiday plans", "c3", "user", timestamp=NOW))

        hits = asyncio.run(store.search_memories("u1", "postgres vacuum"))

        assert [h.chat_id for h in hits] == ["c2", "c1"]
        assert hits[0].relevance_score == 1.0
        assert hits[1].relevance_score == 0.5

    def test_search_date_range(self):
        store = _store()
        asyncio.run(store.add_memory("u1", "redis eviction", "c1", "user", timestamp=NOW - timedelta(days=10)))
        asyncio.run(store.add_memory("u1", "redis persistence", "c2", "user", timestamp=NOW - timedelta(days=1)))

        date_range = {"start": (NOW - timedelta(days=2)).isoformat(), "end": NOW.isoformat()}
        hits = asyncio.run(store.search_memories("u1", "redis", date_range=date_range))

        assert [h.chat_id for h in hits] == ["c2"]

    def test_invalid_date_range(self):
        store = _store()
        try:
            asyncio.run(store.search_memories("u1", "redis", date_range={"start": "last tuesday"}))
        except ValidationError as e:
            assert e.context["parameter"] == "date_range"
        else:
            raise AssertionError("expected ValidationError")

    def test_capped(self):
        store = _store(max_entries=3)
        for i in range(5):
            asyncio.run(store.add_memory("u1", f"note {i} kafka", f"c{i}", "user"))

        hits = asyncio.run(store.search_memories("u1", "kafka", limit=10))
        assert sorted(h.chat_id for h in hits) == ["c2", "c3", "c4"]

    def test_system_role_stored_as_assistant(self):
        store = _store()
        record = asyncio.run(store.add_memory("u1", "x", "c1", "system"))
        assert record.message_type == "assistant"


class TestRememberInBackground:
    """Test fire-and-forget memory writes."""

    def test_disabled(self):
        runtime_config.memory_enabled = False
        assert remember_in_background(_store(), "u1", "text", "c1", "user") is None

    def test_blank_content_skipped(self):
        runtime_config.memory_enabled = True
        assert remember_in_background(_store(), "u1", "   ", "c1", "user") is None

    def test_writes(self):
        runtime_config.memory_enabled = True
        store = _store()

        async def scenario():
            task = remember_in_background(store, "u1", "grafana dashboards", "c1", "user")
            await task
            return await store.search_memories("u1", "grafana")

        assert len(asyncio.run(scenario())) == 1

    def test_failure_is_logged_not_raised(self, caplog):
        runtime_config.memory_enabled = True

        class Broken:
            async def add_memory(self, *args, **kwargs):
                raise ConnectionError("redis gone")

        async def scenario():
            await remember_in_background(Broken(), "u1", "text", "c1", "user")

        asyncio.run(scenario())
        assert "Memory write failed" in caplog.text
