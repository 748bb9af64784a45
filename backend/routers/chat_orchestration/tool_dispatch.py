"""
Parley Tool Dispatcher - Concurrent execution of one step's tool calls

Handles:
- Resolving each requested tool in the turn's ToolRegistry
- Running all calls of a step concurrently (optionally bounded)
- Turning every failure into a {success: false, error} result for the model
- Feeding results to the turn's SourceAggregator
- Emitting tool_start / tool_end progress frames
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from errors import ToolTimeoutError, error_response
from logging_config import log_tool
from tools.registry import ToolRegistry

from .citations import SourceAggregator
from .turn import ModelMessage, ToolCall, ToolInvocation

logger = logging.getLogger(__name__)

Emit = Callable[[Dict[str, Any]], Awaitable[None]]


async def _no_emit(frame: Dict[str, Any]) -> None:
    return None


def _log_context(args: Dict[str, Any]) -> Dict[str, Any]:
    """Short, log-safe preview of tool arguments."""
    ctx = {}
    for key in ("query", "url", "selector"):
        if args.get(key):
            value = str(args[key])
            ctx[key] = f"'{value[:60]}...'" if len(value) > 60 else f"'{value}'"
    return ctx


class ToolDispatcher:
    """Executes tool calls for one turn.

    Calls within a step are independent: one failing never cancels its
    siblings. Nothing here raises for tool-level problems.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        aggregator: SourceAggregator,
        emit: Optional[Emit] = None,
        concurrency: int = 0,
        timeout: Optional[float] = None,
    ):
        """
        Args:
            registry: Tools available to this turn
            aggregator: Turn-scoped source accumulator
            emit: Async callback for progress frames
            concurrency: Max parallel calls per step, 0 = unbounded
            timeout: Per-call timeout in seconds, None = no limit
        """
        self.registry = registry
        self.aggregator = aggregator
        self.emit = emit or _no_emit
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(concurrency) if concurrency and concurrency > 0 else None

    async def _run_one(self, call: ToolCall, invocation: ToolInvocation) -> Dict[str, Any]:
        log_tool(logger, call.name, "start", **_log_context(call.arguments))
        await self.emit({"type": "tool_start", "id": call.id, "name": call.name})
        invocation.start()

        try:
            if self.timeout:
                try:
                    result = await asyncio.wait_for(self.registry.execute(call.name, call.arguments), self.timeout)
                except asyncio.TimeoutError:
                    raise ToolTimeoutError(
                        f"Tool {call.name} timed out after {self.timeout:.0f}s", tool_name=call.name
                    )
            else:
                result = await self.registry.execute(call.name, call.arguments)
        except Exception as e:
            logger.warning(f"Tool {call.name} failed: {e}")
            result = error_response(e, tool=call.name)

        if result.get("success") is False:
            error = result.get("error")
            error_text = error.get("message") if isinstance(error, dict) else str(error or "Tool failed")
            invocation.fail(result, error_text)
        else:
            invocation.succeed(result)

        log_tool(
            logger, call.name, "end",
            success=invocation.state.value, ms=f"{invocation.duration_ms:.0f}",
        )
        await self.emit(
            {"type": "tool_end", "id": call.id, "name": call.name, "success": invocation.state.value == "succeeded"}
        )
        return result

    async def _guarded(self, call: ToolCall, invocation: ToolInvocation) -> Dict[str, Any]:
        if self._semaphore is None:
            return await self._run_one(call, invocation)
        async with self._semaphore:
            return await self._run_one(call, invocation)

    async def execute_step(self, tool_calls: List[ToolCall]) -> Tuple[List[ModelMessage], List[ToolInvocation]]:
        """Run every call of one step.

        Returns:
            Tool messages to append (in request order) and the invocations
        """
        invocations = [ToolInvocation(call_id=c.id, tool_name=c.name, input=c.arguments) for c in tool_calls]
        results = await asyncio.gather(
            *(self._guarded(call, inv) for call, inv in zip(tool_calls, invocations))
        )

        messages: List[ModelMessage] = []
        for call, result in zip(tool_calls, results):
            self.aggregator.ingest(result)
            messages.append(
                ModelMessage(
                    role="tool",
                    content=json.dumps(result, default=str),
                    tool_call_id=call.id,
                    name=call.name,
                )
            )
        return messages, invocations
