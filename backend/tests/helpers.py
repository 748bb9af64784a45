"""
Test doubles shared across the chat backend tests.

Providers are scripted: each call to stream_step() replays the next list of
StepEvents, so a test states exactly what the model "says" at every step.
"""

import asyncio
from typing import Any, Dict, List, Optional

from routers.chat_orchestration.turn import ModelMessage, StepEvent, ToolCall
from tools.registry import ToolCategory, ToolContext, ToolDefinition, ToolRegistry


class ScriptedProvider:
    """Model provider that replays one scripted step per stream_step() call.

    Attributes:
        calls: Messages sent at each step (copied)
        options: extra_options seen at each step
    """

    def __init__(self, steps: List[List[StepEvent]], model: str = "gpt-4.1", provider=None,
                 gate: Optional[asyncio.Event] = None):
        self.steps = list(steps)
        self.model = model
        self.provider = provider
        self.gate = gate
        self.calls: List[List[ModelMessage]] = []
        self.tools: List[Optional[List[Dict[str, Any]]]] = []
        self.options: List[Dict[str, Any]] = []

    async def stream_step(self, messages, tools=None, extra_options=None):
        self.calls.append(list(messages))
        self.tools.append(tools)
        self.options.append(dict(extra_options or {}))
        if not self.steps:
            raise AssertionError("provider called more often than scripted")
        events = self.steps.pop(0)
        for event in events:
            if self.gate is not None:
                await self.gate.wait()
            yield event


class FailingProvider:
    """Provider whose stream raises before the first event."""

    def __init__(self, error: Exception, model: str = "gpt-4.1"):
        self.error = error
        self.model = model
        self.provider = None
        self.calls = 0

    async def stream_step(self, messages, tools=None, extra_options=None):
        self.calls += 1
        raise self.error
        yield  # pragma: no cover


def text_step(text: str) -> List[StepEvent]:
    """A step that answers with text only."""
    return [StepEvent(text=text), StepEvent(usage={"prompt_tokens": 10})]


def tool_step(*calls: ToolCall, text: str = "") -> List[StepEvent]:
    """A step that requests tools."""
    events = [StepEvent(text=text)] if text else []
    events.append(StepEvent(tool_calls=list(calls)))
    return events


def make_tool(name: str, result=None, required=None, executor=None, params=None) -> ToolDefinition:
    """ToolDefinition whose executor returns result (or runs executor)."""

    async def _default(**kwargs):
        return result if result is not None else {"success": True, "echo": kwargs}

    return ToolDefinition(
        name=name,
        description=f"{name} test tool",
        parameters=params or {"query": {"type": "string"}},
        required_params=list(required or []),
        executor=executor or _default,
        category=ToolCategory.EXTERNAL,
    )


def make_registry(*tools: ToolDefinition) -> ToolRegistry:
    registry = ToolRegistry(ToolContext(user_id="user-1", chat_id="chat-1"))
    for tool in tools:
        registry.register(tool)
    return registry
