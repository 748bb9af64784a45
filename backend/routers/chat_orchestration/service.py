"""
Parley Turn Service - Everything around one orchestrated turn

submit() takes a Turn from the HTTP layer and:
1. Holds the per-chat in-flight guard
2. Validates and persists the user message (edits are handed to the
   history controller, which truncates and replays)
3. Builds the per-turn tool registry and system prompt
4. Applies the provider's cache strategy
5. Runs the TurnOrchestrator
6. Persists the reply according to the finish reason

Persistence policy:
    stop        -> text + sources saved, title set, memory queued
    stop, ""    -> short fallback saved
    step-limit  -> step-limit fallback saved (no sources)
    aborted     -> nothing saved
    error       -> nothing saved, generic message returned to the caller
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from config import runtime_config
from errors import (
    ConversationBusyError,
    ErrorCode,
    PersistenceError,
    ProviderError,
    ValidationError,
    log_error,
)
from logging_config import log_message_in, log_message_out
from services.cache_strategy import select_cache_strategy
from services.chat_store import ChatStore, StoredMessage
from services.llm_config import detect_provider
from services.memory_store import MemoryStore, get_memory_store, remember_in_background
from tools.memory_search import TOOL_NAME as MEMORY_SEARCH_TOOL
from tools.registry import ToolContext, build_tool_registry

from ..chat_prompts import (
    EMPTY_RESPONSE_FALLBACK,
    GENERIC_PROVIDER_ERROR_MESSAGE,
    STEP_LIMIT_FALLBACK_MESSAGE,
    build_system_prompt,
)
from .orchestrator import ModelProvider, TurnOrchestrator
from .tool_dispatch import Emit
from .turn import FinishReason, ModelMessage, Source, Turn, TurnResult

logger = logging.getLogger(__name__)

# (model_id, chat_id) -> provider client for the turn
ProviderFactory = Callable[[str, str], ModelProvider]


def _default_provider_factory(model_id: str, chat_id: str) -> ModelProvider:
    from services.llm_client import get_llm_client
    return get_llm_client(model_id, chat_id=chat_id)


class ChatTurnGuard:
    """In-process set of chats with a turn in flight.

    Not distributed: with several workers, callers must still serialize per
    chat (the UI disables input while a reply streams).
    """

    def __init__(self):
        self._in_flight: Set[str] = set()

    def busy(self, chat_id: str) -> bool:
        return chat_id in self._in_flight

    @asynccontextmanager
    async def hold(self, chat_id: str):
        if chat_id in self._in_flight:
            raise ConversationBusyError(
                "A reply is still being generated for this chat",
                details="Wait for the current reply to finish, then try again",
                chat_id=chat_id,
            )
        self._in_flight.add(chat_id)
        try:
            yield
        finally:
            self._in_flight.discard(chat_id)


@dataclass
class TurnOutcome:
    """Result of a submitted turn, as reported to the HTTP layer."""

    finish_reason: FinishReason
    text: str = ""
    sources: List[Source] = field(default_factory=list)
    message_id: Optional[str] = None  # persisted assistant message
    user_message_id: Optional[str] = None
    persisted: bool = False
    error_message: Optional[str] = None
    steps: int = 0
    tools_used: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "finishReason": self.finish_reason.value,
            "text": self.text,
            "sources": [s.to_dict() for s in self.sources],
            "messageId": self.message_id,
            "userMessageId": self.user_message_id,
            "persisted": self.persisted,
            "error": self.error_message,
            "steps": self.steps,
            "toolsUsed": self.tools_used,
        }


class ChatTurnService:
    """Runs turns against a chat store, memory store and provider factory."""

    def __init__(
        self,
        store: ChatStore,
        memory: Optional[MemoryStore] = None,
        integrations: Optional[Any] = None,
        provider_factory: Optional[ProviderFactory] = None,
        guard: Optional[ChatTurnGuard] = None,
    ):
        self.store = store
        self.memory = memory or get_memory_store()
        self.integrations = integrations
        self.provider_factory = provider_factory or _default_provider_factory
        self.guard = guard or ChatTurnGuard()

    async def submit(self, turn: Turn, emit: Optional[Emit] = None) -> TurnOutcome:
        """Run a turn under the per-chat guard.

        A turn with edit_target_id is an edit of that user message: it goes
        through the history controller, which truncates everything after the
        target and replays from the stored prefix.

        Raises:
            ConversationBusyError: another turn on this chat is in flight
            ValidationError: no user message, or it is too long
            NotFoundError, InvalidEditTargetError: bad edit target
        """
        if turn.edit_target_id and not turn.replay:
            return await self._submit_edit(turn, emit)
        async with self.guard.hold(turn.chat_id):
            return await self.run(turn, emit)

    async def _submit_edit(self, turn: Turn, emit: Optional[Emit]) -> TurnOutcome:
        from .history import ConversationHistoryController

        user_message = self._validate(turn)
        controller = ConversationHistoryController(self)
        return await controller.edit(
            turn.chat_id,
            turn.user_id,
            turn.edit_target_id,
            user_message.content,
            model=turn.model,
            emit=emit,
            cancel=turn.cancel,
        )

    async def run(self, turn: Turn, emit: Optional[Emit] = None) -> TurnOutcome:
        """Run a turn. The caller must already hold the guard for turn.chat_id."""
        user_message = self._validate(turn)
        log_message_in(
            logger,
            user_message.text,
            chat=turn.chat_id,
            model=turn.model,
            edit=bool(turn.edit_target_id),
            replay=turn.replay,
        )

        user_message_id = await self._persist_user(turn, user_message)
        if not turn.replay or turn.edit_target_id:
            remember_in_background(self.memory, turn.user_id, user_message.text, turn.chat_id, "user")

        exclude = (MEMORY_SEARCH_TOOL,) if turn.replay else ()
        registry = await build_tool_registry(
            ToolContext(user_id=turn.user_id, chat_id=turn.chat_id), self.integrations, exclude=exclude
        )

        provider = self.provider_factory(turn.model, turn.chat_id)
        upstream_model = getattr(provider, "model", turn.model) or turn.model
        provider_kind = getattr(provider, "provider", None) or detect_provider(upstream_model)

        history = [ModelMessage(role="system", content=build_system_prompt(upstream_model, registry.names))]
        history.extend(m for m in turn.messages if m.role != "system")
        plan = select_cache_strategy(provider_kind, upstream_model, history)

        orchestrator = TurnOrchestrator(
            provider,
            chat_id=turn.chat_id,
            emit=emit,
            extra_options=plan.extra_options,
            tool_concurrency=runtime_config.tool_concurrency,
            tool_timeout=runtime_config.tool_timeout,
        )
        try:
            result = await orchestrator.run_turn(plan.messages, registry, turn.step_budget, turn.cancel)
        except ProviderError:
            # Already logged with turn context by the orchestrator
            log_message_out(logger, FinishReason.ERROR.value)
            return TurnOutcome(
                finish_reason=FinishReason.ERROR,
                user_message_id=user_message_id,
                error_message=GENERIC_PROVIDER_ERROR_MESSAGE,
            )

        outcome = await self._finalize(turn, user_message, result)
        outcome.user_message_id = user_message_id
        log_message_out(logger, outcome.finish_reason.value, outcome.tools_used, citations=len(outcome.sources))
        return outcome

    def _validate(self, turn: Turn) -> ModelMessage:
        user_message = turn.latest_user_message
        if user_message is None:
            raise ValidationError("A user message is required", parameter="messages", expected="at least one user message")
        if not user_message.text.strip() and not user_message.has_non_text_parts:
            raise ValidationError("Message is empty", parameter="content")
        limit = runtime_config.max_message_length
        if len(user_message.text) > limit:
            raise ValidationError(
                f"Message too long (max {limit} characters)",
                code=ErrorCode.VALIDATION_OUT_OF_RANGE,
                parameter="content",
                expected=f"<= {limit} characters",
                received=str(len(user_message.text)),
            )
        return user_message

    async def _persist_user(self, turn: Turn, user_message: ModelMessage) -> Optional[str]:
        if turn.replay:
            return turn.edit_target_id
        try:
            saved = await self.store.save_user_message(
                turn.chat_id, turn.user_id, user_message.content
            )
        except PersistenceError as e:
            log_error(logger, e, context=f"chat={turn.chat_id} user message", include_traceback=False)
            return None
        return saved.id

    async def _persist_assistant(self, turn: Turn, text: str, sources: List[Source]) -> Optional[StoredMessage]:
        try:
            return await self.store.save_assistant_message(turn.chat_id, turn.user_id, text, sources)
        except PersistenceError as e:
            log_error(logger, e, context=f"chat={turn.chat_id} assistant message", include_traceback=False)
            return None

    async def _finalize(self, turn: Turn, user_message: ModelMessage, result: TurnResult) -> TurnOutcome:
        outcome = TurnOutcome(
            finish_reason=result.finish_reason,
            text=result.text,
            sources=result.sources,
            steps=result.steps,
            tools_used=result.tools_used,
        )

        # A cancel that lands after the loop ended still suppresses persistence
        if result.finish_reason == FinishReason.ABORTED or turn.cancelled:
            outcome.finish_reason = FinishReason.ABORTED
            outcome.text = ""
            return outcome

        if result.finish_reason == FinishReason.STEP_LIMIT:
            logger.warning(f"Chat {turn.chat_id}: step limit reached, saving fallback message")
            outcome.text = STEP_LIMIT_FALLBACK_MESSAGE
            outcome.sources = []
        elif not result.text.strip():
            logger.warning(f"Chat {turn.chat_id}: model stopped with empty text, saving fallback message")
            outcome.text = EMPTY_RESPONSE_FALLBACK

        saved = await self._persist_assistant(turn, outcome.text, outcome.sources)
        if saved is None:
            return outcome
        outcome.message_id = saved.id
        outcome.persisted = True

        if result.finish_reason == FinishReason.STOP and result.text.strip():
            remember_in_background(self.memory, turn.user_id, result.text, turn.chat_id, "assistant")
            try:
                title = await self.store.update_chat_title_if_default(turn.chat_id, turn.user_id, user_message.text)
            except PersistenceError as e:
                log_error(logger, e, context=f"chat={turn.chat_id} title", include_traceback=False)
            else:
                if title:
                    logger.info(f"Chat {turn.chat_id}: title set to '{title}'")
        return outcome
