"""
Parley Chat Store - Durable record of chats and their messages

The turn service writes through the ChatStore protocol:
- save_user_message / save_assistant_message
- delete_messages_after (edit / regenerate truncation)
- update_chat_title_if_default (title from the first user message)

Two backends:
- PostgresChatStore: asyncpg via DatabaseManager
- InMemoryChatStore: process memory (DB disabled or unreachable, tests)

Message timestamps are strictly increasing within a chat, so "after a
message" is always well defined. Backend failures surface as PersistenceError.
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from errors import PersistenceError
from routers.chat_orchestration.turn import Content, ModelMessage, Source

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"
TITLE_MAX_WORDS = 5
TITLE_MAX_CHARS = 40


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class StoredMessage:
    id: str
    chat_id: str
    user_id: str
    role: str
    content: Content
    sources: List[Dict[str, Any]] = field(default_factory=list)
    edited: bool = False
    edited_at: Optional[datetime] = None
    timestamp: datetime = field(default_factory=_now)

    @property
    def text(self) -> str:
        return ModelMessage(role=self.role, content=self.content).text

    def to_model_message(self) -> ModelMessage:
        return ModelMessage(role=self.role, content=self.content)

    def to_dict(self) -> Dict[str, Any]:
        """API shape (camelCase, ISO timestamps)."""
        return {
            "id": self.id,
            "chatId": self.chat_id,
            "role": self.role,
            "content": self.content,
            "sources": self.sources,
            "edited": self.edited,
            "editedAt": self.edited_at.isoformat() if self.edited_at else None,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ChatRecord:
    chat_id: str
    user_id: str
    title: str = DEFAULT_TITLE
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


def derive_title(seed_text: str) -> str:
    """Chat title from the first user message.

    First 5 words; longer than 40 chars is cut to 37 plus "...", otherwise
    "..." marks dropped words. Anything shorter than 3 chars stays "New Chat".
    """
    words = (seed_text or "").split()
    title = " ".join(words[:TITLE_MAX_WORDS])
    if len(title) > TITLE_MAX_CHARS:
        title = title[:TITLE_MAX_CHARS - 3] + "..."
    elif len(words) > TITLE_MAX_WORDS:
        title = title + "..."
    if len(title) < 3:
        title = DEFAULT_TITLE
    return title


def clean_sources(sources: Optional[Iterable[Any]]) -> List[Dict[str, Any]]:
    """Normalise sources for storage, keeping only those with a title or url."""
    cleaned = []
    for source in sources or []:
        data = source.to_dict() if isinstance(source, Source) else dict(source)
        entry = {key: (data.get(key) or "").strip() for key in ("title", "url", "snippet", "source")}
        if entry["title"] or entry["url"]:
            cleaned.append(entry)
    return cleaned


class ChatStore(Protocol):
    """Persistence sink for turns."""

    async def save_user_message(
        self, chat_id: str, user_id: str, content: Content, message_id: Optional[str] = None
    ) -> StoredMessage:
        ...

    async def save_assistant_message(
        self, chat_id: str, user_id: str, content: Content, sources: Optional[Iterable[Any]] = None
    ) -> StoredMessage:
        ...

    async def delete_messages_after(self, chat_id: str, user_id: str, message_id: str) -> int:
        ...

    async def update_chat_title_if_default(self, chat_id: str, user_id: str, seed_text: str) -> Optional[str]:
        ...

    async def get_messages(
        self, chat_id: str, user_id: str, limit: Optional[int] = 50, before: Optional[datetime] = None
    ) -> List[StoredMessage]:
        ...

    async def get_message(self, chat_id: str, user_id: str, message_id: str) -> Optional[StoredMessage]:
        ...

    async def get_chat(self, chat_id: str, user_id: str) -> Optional[ChatRecord]:
        ...


class InMemoryChatStore:
    """Chat store held in process memory.

    Every operation completes without awaiting, so each one is atomic with
    respect to other tasks on the loop.
    """

    def __init__(self):
        self._chats: Dict[Tuple[str, str], ChatRecord] = {}
        self._messages: Dict[Tuple[str, str], List[StoredMessage]] = {}

    def _touch_chat(self, chat_id: str, user_id: str, create: bool = True) -> Optional[ChatRecord]:
        key = (chat_id, user_id)
        chat = self._chats.get(key)
        if chat is None and create:
            chat = self._chats[key] = ChatRecord(chat_id=chat_id, user_id=user_id)
        if chat is not None:
            chat.updated_at = _now()
        return chat

    def _next_timestamp(self, key: Tuple[str, str]) -> datetime:
        ts = _now()
        messages = self._messages.get(key)
        if messages and ts <= messages[-1].timestamp:
            ts = messages[-1].timestamp + timedelta(microseconds=1)
        return ts

    def _append(self, chat_id: str, user_id: str, role: str, content: Content, sources=None) -> StoredMessage:
        key = (chat_id, user_id)
        message = StoredMessage(
            id=_new_id(),
            chat_id=chat_id,
            user_id=user_id,
            role=role,
            content=content,
            sources=sources or [],
            timestamp=self._next_timestamp(key),
        )
        self._messages.setdefault(key, []).append(message)
        return message

    async def save_user_message(
        self, chat_id: str, user_id: str, content: Content, message_id: Optional[str] = None
    ) -> StoredMessage:
        self._touch_chat(chat_id, user_id)

        if message_id:
            messages = self._messages.get((chat_id, user_id), [])
            target = next((m for m in messages if m.id == message_id and m.role == "user"), None)
            if target is None:
                logger.warning(f"Chat {chat_id}: user message {message_id} not found, updating latest user message")
                target = next((m for m in reversed(messages) if m.role == "user"), None)
            if target is not None:
                target.content = content
                target.edited = True
                target.edited_at = _now()
                return target

        return self._append(chat_id, user_id, "user", content)

    async def save_assistant_message(
        self, chat_id: str, user_id: str, content: Content, sources: Optional[Iterable[Any]] = None
    ) -> StoredMessage:
        self._touch_chat(chat_id, user_id, create=False)
        return self._append(chat_id, user_id, "assistant", content, clean_sources(sources))

    async def delete_messages_after(self, chat_id: str, user_id: str, message_id: str) -> int:
        key = (chat_id, user_id)
        messages = self._messages.get(key, [])
        target = next((m for m in messages if m.id == message_id), None)
        if target is None:
            logger.warning(f"Chat {chat_id}: delete-after target {message_id} not found")
            return 0

        kept = [m for m in messages if m.timestamp <= target.timestamp]
        deleted = len(messages) - len(kept)
        self._messages[key] = kept
        return deleted

    async def update_chat_title_if_default(self, chat_id: str, user_id: str, seed_text: str) -> Optional[str]:
        chat = self._chats.get((chat_id, user_id))
        if chat is None or chat.title != DEFAULT_TITLE:
            return None
        chat.title = derive_title(seed_text)
        return chat.title

    async def get_messages(
        self, chat_id: str, user_id: str, limit: Optional[int] = 50, before: Optional[datetime] = None
    ) -> List[StoredMessage]:
        messages = self._messages.get((chat_id, user_id), [])
        if before is not None:
            messages = [m for m in messages if m.timestamp < before]
        if limit:
            messages = messages[-limit:]
        return list(messages)

    async def get_message(self, chat_id: str, user_id: str, message_id: str) -> Optional[StoredMessage]:
        return next((m for m in self._messages.get((chat_id, user_id), []) if m.id == message_id), None)

    async def get_chat(self, chat_id: str, user_id: str) -> Optional[ChatRecord]:
        return self._chats.get((chat_id, user_id))


def _decode_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_message(row: Dict[str, Any]) -> StoredMessage:
    return StoredMessage(
        id=row["id"],
        chat_id=row["chat_id"],
        user_id=row["user_id"],
        role=row["role"],
        content=_decode_json(row["content"]),
        sources=_decode_json(row.get("sources")) or [],
        edited=bool(row.get("edited")),
        edited_at=row.get("edited_at"),
        timestamp=row["created_at"],
    )


@asynccontextmanager
async def _persisting(operation: str, chat_id: str, read: bool = False):
    try:
        yield
    except PersistenceError:
        raise
    except Exception as e:
        raise PersistenceError(
            f"Chat store {operation} failed", details=str(e), operation=operation, chat_id=chat_id, read=read
        ) from e


class PostgresChatStore:
    """Chat store on PostgreSQL (parley_chats / parley_messages)."""

    def __init__(self, db):
        self.db = db

    async def _next_timestamp(self, chat_id: str, user_id: str) -> datetime:
        last = await self.db.fetchval(
            "SELECT max(created_at) FROM parley_messages WHERE chat_id = $1 AND user_id = $2", chat_id, user_id
        )
        ts = _now()
        if last is not None and ts <= last:
            ts = last + timedelta(microseconds=1)
        return ts

    async def _insert(self, chat_id: str, user_id: str, role: str, content: Content, sources=None) -> StoredMessage:
        ts = await self._next_timestamp(chat_id, user_id)
        row = await self.db.fetchrow(
            """
            INSERT INTO parley_messages (id, chat_id, user_id, role, content, sources, created_at)
            VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7)
            RETURNING *
            """,
            _new_id(), chat_id, user_id, role, json.dumps(content), json.dumps(sources or []), ts,
        )
        return _row_to_message(row)

    async def save_user_message(
        self, chat_id: str, user_id: str, content: Content, message_id: Optional[str] = None
    ) -> StoredMessage:
        async with _persisting("save_user_message", chat_id):
            await self.db.execute(
                """
                INSERT INTO parley_chats (id, user_id) VALUES ($1, $2)
                ON CONFLICT (id, user_id) DO UPDATE SET updated_at = now()
                """,
                chat_id, user_id,
            )

            if message_id:
                row = await self.db.fetchrow(
                    """
                    UPDATE parley_messages SET content = $1::jsonb, edited = TRUE, edited_at = now()
                    WHERE id = $2 AND chat_id = $3 AND user_id = $4 AND role = 'user'
                    RETURNING *
                    """,
                    json.dumps(content), message_id, chat_id, user_id,
                )
                if row is None:
                    logger.warning(f"Chat {chat_id}: user message {message_id} not found, updating latest user message")
                    row = await self.db.fetchrow(
                        """
                        UPDATE parley_messages SET content = $1::jsonb, edited = TRUE, edited_at = now()
                        WHERE id = (
                            SELECT id FROM parley_messages
                            WHERE chat_id = $2 AND user_id = $3 AND role = 'user'
                            ORDER BY created_at DESC LIMIT 1
                        )
                        RETURNING *
                        """,
                        json.dumps(content), chat_id, user_id,
                    )
                if row is not None:
                    return _row_to_message(row)

            return await self._insert(chat_id, user_id, "user", content)

    async def save_assistant_message(
        self, chat_id: str, user_id: str, content: Content, sources: Optional[Iterable[Any]] = None
    ) -> StoredMessage:
        async with _persisting("save_assistant_message", chat_id):
            await self.db.execute(
                "UPDATE parley_chats SET updated_at = now() WHERE id = $1 AND user_id = $2", chat_id, user_id
            )
            return await self._insert(chat_id, user_id, "assistant", content, clean_sources(sources))

    async def delete_messages_after(self, chat_id: str, user_id: str, message_id: str) -> int:
        async with _persisting("delete_messages_after", chat_id):
            target_ts = await self.db.fetchval(
                "SELECT created_at FROM parley_messages WHERE id = $1 AND chat_id = $2 AND user_id = $3",
                message_id, chat_id, user_id,
            )
            if target_ts is None:
                logger.warning(f"Chat {chat_id}: delete-after target {message_id} not found")
                return 0

            status = await self.db.execute(
                "DELETE FROM parley_messages WHERE chat_id = $1 AND user_id = $2 AND created_at > $3",
                chat_id, user_id, target_ts,
            )
            # asyncpg status string: "DELETE <n>"
            return int(status.split()[-1]) if status else 0

    async def update_chat_title_if_default(self, chat_id: str, user_id: str, seed_text: str) -> Optional[str]:
        title = derive_title(seed_text)
        async with _persisting("update_chat_title", chat_id):
            return await self.db.fetchval(
                """
                UPDATE parley_chats SET title = $1
                WHERE id = $2 AND user_id = $3 AND title = $4
                RETURNING title
                """,
                title, chat_id, user_id, DEFAULT_TITLE,
            )

    async def get_messages(
        self, chat_id: str, user_id: str, limit: Optional[int] = 50, before: Optional[datetime] = None
    ) -> List[StoredMessage]:
        async with _persisting("get_messages", chat_id, read=True):
            rows = await self.db.fetch(
                """
                SELECT * FROM parley_messages
                WHERE chat_id = $1 AND user_id = $2 AND ($3::timestamptz IS NULL OR created_at < $3)
                ORDER BY created_at DESC
                LIMIT $4
                """,
                chat_id, user_id, before, limit or None,
            )
        return [_row_to_message(row) for row in reversed(rows)]

    async def get_message(self, chat_id: str, user_id: str, message_id: str) -> Optional[StoredMessage]:
        async with _persisting("get_message", chat_id, read=True):
            row = await self.db.fetchrow(
                "SELECT * FROM parley_messages WHERE id = $1 AND chat_id = $2 AND user_id = $3",
                message_id, chat_id, user_id,
            )
        return _row_to_message(row) if row else None

    async def get_chat(self, chat_id: str, user_id: str) -> Optional[ChatRecord]:
        async with _persisting("get_chat", chat_id, read=True):
            row = await self.db.fetchrow(
                "SELECT * FROM parley_chats WHERE id = $1 AND user_id = $2", chat_id, user_id
            )
        if row is None:
            return None
        return ChatRecord(
            chat_id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


# Singleton instance
_chat_store: Optional[ChatStore] = None


async def get_chat_store() -> ChatStore:
    """PostgreSQL store when the database is reachable, in-memory otherwise."""
    global _chat_store
    if _chat_store is None:
        from services.database import get_database

        db = await get_database()
        if db.available:
            _chat_store = PostgresChatStore(db)
            logger.info("Chat store: PostgreSQL")
        else:
            _chat_store = InMemoryChatStore()
            logger.info("Chat store: in-memory (PostgreSQL unavailable)")
    return _chat_store
