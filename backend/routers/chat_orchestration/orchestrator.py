"""
Parley Turn Orchestrator - Model inference / tool execution loop

Drives one turn:
1. Stream a step from the model (text deltas and/or tool calls)
2. Execute the step's tool calls concurrently, feed results back
3. Repeat until the model answers without tools, the step budget is
   spent, or the cancel event fires

Also manages:
- Source aggregation across all tool results of the turn
- Progress frames (text deltas, tool start/end, step markers)
- Provider failures (not retried, raised with turn context)
"""

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Protocol, Tuple

from errors import ParleyError, ProviderError, log_error
from logging_config import log_llm, log_step
from tools.registry import ToolRegistry

from .citations import SourceAggregator
from .tool_dispatch import Emit, ToolDispatcher, _no_emit
from .turn import (
    DEFAULT_STEP_BUDGET,
    FinishReason,
    ModelMessage,
    StepEvent,
    ToolCall,
    ToolInvocation,
    TurnResult,
)

logger = logging.getLogger(__name__)


class ModelProvider(Protocol):
    """One provider client, bound to a model for the duration of a turn."""

    model: str

    def stream_step(
        self,
        messages: List[ModelMessage],
        tools: Optional[List[Dict[str, Any]]] = None,
        extra_options: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[StepEvent]:
        ...


async def _next_event(iterator) -> Optional[StepEvent]:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


async def _race(awaitable: Awaitable, cancel: Optional[asyncio.Event]) -> Tuple[bool, Any]:
    """Await awaitable unless cancel fires first.

    Returns:
        (True, result) when it finished, (False, None) when cancelled.
        The abandoned task is cancelled and its outcome discarded.
    """
    task = asyncio.ensure_future(awaitable)
    if cancel is None:
        return True, await task

    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if not waiter.done():
            waiter.cancel()

    if cancel.is_set():
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return False, None
    return True, task.result()


class TurnOrchestrator:
    """Runs the step loop for one turn.

    A new instance (and a new SourceAggregator) is used per turn; nothing is
    shared across turns.
    """

    def __init__(
        self,
        provider: ModelProvider,
        chat_id: str = "",
        emit: Optional[Emit] = None,
        extra_options: Optional[Dict[str, Any]] = None,
        tool_concurrency: int = 0,
        tool_timeout: Optional[float] = None,
    ):
        """
        Args:
            provider: Model client for this turn
            chat_id: Used for logging and error context
            emit: Async callback receiving progress frames
            extra_options: Provider request options from the cache strategy
            tool_concurrency: Max parallel tool calls per step, 0 = unbounded
            tool_timeout: Per tool-call timeout in seconds
        """
        self.provider = provider
        self.chat_id = chat_id
        self.emit = emit or _no_emit
        self.extra_options = extra_options or {}
        self.tool_concurrency = tool_concurrency
        self.tool_timeout = tool_timeout

    async def run_turn(
        self,
        history: List[ModelMessage],
        tools: ToolRegistry,
        step_budget: int = DEFAULT_STEP_BUDGET,
        cancel: Optional[asyncio.Event] = None,
    ) -> TurnResult:
        """Run the loop to completion.

        Returns:
            TurnResult with finish_reason STOP, STEP_LIMIT or ABORTED. On
            STEP_LIMIT and ABORTED the text is empty.

        Raises:
            ProviderError: the model backend failed; carries chat id, step
                and tools attempted
        """
        if step_budget < 1:
            raise ValueError(f"step_budget must be >= 1, got {step_budget}")

        messages = list(history)
        aggregator = SourceAggregator()
        dispatcher = ToolDispatcher(
            tools, aggregator, emit=self.emit, concurrency=self.tool_concurrency, timeout=self.tool_timeout
        )
        schema = tools.get_tools_schema() or None
        invocations: List[ToolInvocation] = []
        step = 0

        def _result(text: str, reason: FinishReason) -> TurnResult:
            return TurnResult(
                text=text,
                sources=aggregator.get_all(),
                finish_reason=reason,
                steps=step,
                invocations=invocations,
            )

        while step < step_budget:
            if cancel is not None and cancel.is_set():
                return self._aborted(_result, step)

            step += 1
            await self.emit({"type": "step", "step": step})

            completed, outcome = await self._run_model_step(messages, schema, cancel, step, invocations)

            if not completed:
                return self._aborted(_result, step)

            text, calls = outcome
            log_step(logger, self.chat_id, step, step_budget, [c.name for c in calls])

            if not calls:
                return _result(text, FinishReason.STOP)

            messages.append(ModelMessage(role="assistant", content=text, tool_calls=calls))

            completed, outcome = await _race(dispatcher.execute_step(calls), cancel)
            if not completed:
                return self._aborted(_result, step)

            tool_messages, step_invocations = outcome
            invocations.extend(step_invocations)
            messages.extend(tool_messages)

        logger.warning(f"Chat {self.chat_id}: step budget of {step_budget} exhausted without a final answer")
        return _result("", FinishReason.STEP_LIMIT)

    async def _run_model_step(
        self,
        messages: List[ModelMessage],
        schema: Optional[List[Dict[str, Any]]],
        cancel: Optional[asyncio.Event],
        step: int,
        invocations: List[ToolInvocation],
    ) -> Tuple[bool, Optional[Tuple[str, List[ToolCall]]]]:
        """Consume one single-pass step stream.

        Returns:
            (False, None) if cancelled mid-stream, else (True, (text, tool_calls))

        Raises:
            ProviderError: the provider stream failed. Errors raised by emit
                propagate unchanged.
        """
        text_parts: List[str] = []
        calls: List[ToolCall] = []
        model = getattr(self.provider, "model", "")

        log_llm(logger, "start", model=model)
        started = time.perf_counter()

        try:
            stream = self.provider.stream_step(messages, schema, self.extra_options)
            iterator = stream.__aiter__()
        except Exception as e:
            raise self._provider_failure(e, step, invocations)

        try:
            while True:
                try:
                    completed, event = await _race(_next_event(iterator), cancel)
                except Exception as e:
                    raise self._provider_failure(e, step, invocations)
                if not completed:
                    return False, None
                if event is None:
                    break
                if event.text:
                    text_parts.append(event.text)
                    await self.emit({"type": "text", "delta": event.text})
                if event.tool_calls:
                    calls.extend(event.tool_calls)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        log_llm(logger, "end", model=model, duration=time.perf_counter() - started)
        return True, ("".join(text_parts), calls)

    def _aborted(self, make_result, step: int) -> TurnResult:
        logger.info(f"Chat {self.chat_id}: turn aborted at step {step}")
        return make_result("", FinishReason.ABORTED)

    def _provider_failure(self, error: Exception, step: int, invocations: List[ToolInvocation]) -> ProviderError:
        tools_attempted = [inv.tool_name for inv in invocations]
        if isinstance(error, ProviderError):
            failure = error
        elif isinstance(error, ParleyError):
            failure = ProviderError(error.message, details=error.details, model=getattr(self.provider, "model", None))
        else:
            failure = ProviderError(
                "Model provider request failed",
                details=str(error) or type(error).__name__,
                model=getattr(self.provider, "model", None),
            )
        failure.with_turn_context(self.chat_id, step, tools_attempted)
        log_error(
            logger,
            failure,
            context=f"chat={self.chat_id} step={step} tools={tools_attempted or '-'}",
            include_traceback=not isinstance(error, ParleyError),
        )
        return failure
