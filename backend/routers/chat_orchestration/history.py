"""
Parley Conversation History Controller - Edit / regenerate

State machine per chat:

    STABLE -> EDITING -> TRUNCATING -> REPLAYING -> STABLE

- edit(): a user message gets new content. Everything after it is deleted,
  the message is updated in place (edited=True) and the turn is replayed
  from the stored prefix. The reply is always a new assistant message.
- regenerate(): same as an edit of the last user message with unchanged
  content, without the edited marker.

Truncation always happens before the replay is sent. If the replay fails,
the chat stays truncated and the user can retry.
"""

import asyncio
import logging
from enum import Enum
from typing import Dict, List, Optional

from config import runtime_config
from errors import InvalidEditTargetError, NotFoundError, ValidationError
from services.chat_store import StoredMessage

from .service import ChatTurnService, TurnOutcome
from .tool_dispatch import Emit
from .turn import Content, ModelMessage, Turn

logger = logging.getLogger(__name__)


class HistoryState(str, Enum):
    STABLE = "stable"
    EDITING = "editing"
    TRUNCATING = "truncating"
    REPLAYING = "replaying"


def _has_non_text_parts(content: Content) -> bool:
    return ModelMessage(role="user", content=content).has_non_text_parts


class ConversationHistoryController:
    """Truncate-and-replay on top of ChatTurnService."""

    def __init__(self, service: ChatTurnService):
        self.service = service
        self.store = service.store
        self._states: Dict[str, HistoryState] = {}

    def state(self, chat_id: str) -> HistoryState:
        return self._states.get(chat_id, HistoryState.STABLE)

    def _enter(self, chat_id: str, state: HistoryState) -> None:
        logger.debug(f"Chat {chat_id}: {self.state(chat_id).value} -> {state.value}")
        self._states[chat_id] = state

    async def _stored_history(self, chat_id: str, user_id: str) -> List[ModelMessage]:
        messages = await self.store.get_messages(chat_id, user_id, limit=None)
        return [m.to_model_message() for m in messages if m.role in ("user", "assistant")]

    def _make_turn(
        self,
        chat_id: str,
        user_id: str,
        history: List[ModelMessage],
        model: Optional[str],
        cancel: Optional[asyncio.Event],
        edit_target_id: Optional[str] = None,
    ) -> Turn:
        return Turn(
            chat_id=chat_id,
            user_id=user_id,
            messages=history,
            model=model or runtime_config.default_model,
            step_budget=runtime_config.step_budget,
            cancel=cancel or asyncio.Event(),
            edit_target_id=edit_target_id,
            replay=True,
        )

    async def _check_edit_target(
        self, chat_id: str, user_id: str, message_id: str, content: Content
    ) -> StoredMessage:
        target = await self.store.get_message(chat_id, user_id, message_id)
        if target is None:
            raise NotFoundError("Message not found", resource_type="message", resource_id=message_id)
        if target.role != "user":
            raise InvalidEditTargetError(
                "Only user messages can be edited", chat_id=chat_id, message_id=message_id
            )

        if _has_non_text_parts(target.content) or _has_non_text_parts(content):
            messages = await self.store.get_messages(chat_id, user_id, limit=None)
            latest_user = next((m for m in reversed(messages) if m.role == "user"), None)
            if latest_user is None or latest_user.id != target.id:
                raise InvalidEditTargetError(
                    "Messages with attachments can only be edited when they are the latest message",
                    chat_id=chat_id,
                    message_id=message_id,
                )
        return target

    async def edit(
        self,
        chat_id: str,
        user_id: str,
        message_id: str,
        content: Content,
        model: Optional[str] = None,
        emit: Optional[Emit] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> TurnOutcome:
        """Replace a user message's content and replay the turn from it.

        Raises:
            ConversationBusyError: a turn on this chat is in flight
            NotFoundError: no such message in this chat
            InvalidEditTargetError: assistant message, or a mid-history
                message with attachments
            PersistenceError: truncation or the in-place update failed
        """
        if not ModelMessage(role="user", content=content).text.strip() and not _has_non_text_parts(content):
            raise ValidationError("Edited message is empty", parameter="content")

        async with self.service.guard.hold(chat_id):
            try:
                self._enter(chat_id, HistoryState.EDITING)
                target = await self._check_edit_target(chat_id, user_id, message_id, content)

                self._enter(chat_id, HistoryState.TRUNCATING)
                deleted = await self.store.delete_messages_after(chat_id, user_id, target.id)
                await self.store.save_user_message(chat_id, user_id, content, message_id=target.id)
                logger.info(f"Chat {chat_id}: edit of {target.id} removed {deleted} later messages")

                self._enter(chat_id, HistoryState.REPLAYING)
                history = await self._stored_history(chat_id, user_id)
                turn = self._make_turn(chat_id, user_id, history, model, cancel, edit_target_id=target.id)
                return await self.service.run(turn, emit)
            finally:
                self._states.pop(chat_id, None)

    async def regenerate(
        self,
        chat_id: str,
        user_id: str,
        model: Optional[str] = None,
        emit: Optional[Emit] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> TurnOutcome:
        """Drop everything after the last user message and answer it again.

        Raises:
            ConversationBusyError: a turn on this chat is in flight
            NotFoundError: the chat has no user message
        """
        async with self.service.guard.hold(chat_id):
            try:
                self._enter(chat_id, HistoryState.EDITING)
                messages = await self.store.get_messages(chat_id, user_id, limit=None)
                last_user = next((m for m in reversed(messages) if m.role == "user"), None)
                if last_user is None:
                    raise NotFoundError(
                        "No user message to regenerate from", resource_type="chat", resource_id=chat_id
                    )

                self._enter(chat_id, HistoryState.TRUNCATING)
                deleted = await self.store.delete_messages_after(chat_id, user_id, last_user.id)
                logger.info(f"Chat {chat_id}: regenerate after {last_user.id} removed {deleted} messages")

                self._enter(chat_id, HistoryState.REPLAYING)
                history = await self._stored_history(chat_id, user_id)
                turn = self._make_turn(chat_id, user_id, history, model, cancel)
                outcome = await self.service.run(turn, emit)
                outcome.user_message_id = last_user.id
                return outcome
            finally:
                self._states.pop(chat_id, None)
