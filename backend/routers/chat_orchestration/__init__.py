"""
Parley Chat Orchestration - Turn loop components

Components:
- Turn / TurnResult / ModelMessage: In-flight turn state
- SourceAggregator: Citation accumulation and dedup across tool results
- ToolDispatcher: Concurrent execution of one step's tool calls
- TurnOrchestrator: Model step / tool step loop under a step budget

The turn service (persistence, memory, titles) and the edit/regenerate
controller live in .service and .history and are imported directly by the
chat router.
"""

from .turn import (
    DEFAULT_STEP_BUDGET,
    FinishReason,
    ModelMessage,
    Source,
    StepEvent,
    ToolCall,
    ToolInvocation,
    ToolState,
    Turn,
    TurnResult,
)
from .citations import SourceAggregator
from .tool_dispatch import ToolDispatcher
from .orchestrator import ModelProvider, TurnOrchestrator

__all__ = [
    "DEFAULT_STEP_BUDGET",
    "FinishReason",
    "ModelMessage",
    "Source",
    "StepEvent",
    "ToolCall",
    "ToolInvocation",
    "ToolState",
    "Turn",
    "TurnResult",
    "SourceAggregator",
    "ToolDispatcher",
    "ModelProvider",
    "TurnOrchestrator",
]
