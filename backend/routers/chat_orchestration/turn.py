"""
Parley Turn Model - In-flight state for one conversation turn

Dataclasses shared by the orchestrator, the tool dispatcher, the source
aggregator and the turn service. Nothing here performs I/O.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# Content is either plain text or a list of parts:
#   {"type": "text", "text": "..."}
#   {"type": "file", "url": "...", "media_type": "image/png"}
Content = Union[str, List[Dict[str, Any]]]

DEFAULT_STEP_BUDGET = 15


class FinishReason(str, Enum):
    """Why a turn stopped."""

    STOP = "stop"
    STEP_LIMIT = "step-limit"
    ABORTED = "aborted"
    ERROR = "error"


class ToolState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ToolCall:
    """A tool call requested by the model in one step."""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        """Chat-completions shape used when replaying the assistant message."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


@dataclass
class ModelMessage:
    """One message in the outbound model conversation.

    Attributes:
        role: system, user, assistant or tool
        content: Text or a list of text/file parts
        tool_calls: Tool calls requested by an assistant message
        tool_call_id: Call this tool message answers
        cache_control: Provider cache breakpoint annotation, if any
    """

    role: str
    content: Content = ""
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    cache_control: Optional[Dict[str, str]] = None

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(p.get("text", "") for p in self.content if p.get("type") == "text")

    @property
    def has_non_text_parts(self) -> bool:
        if isinstance(self.content, str):
            return False
        return any(p.get("type") != "text" for p in self.content)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelMessage":
        """Build from a client payload ({role, content} or {role, parts})."""
        content = data.get("content")
        if content is None:
            content = data.get("parts") or ""
        return cls(role=data.get("role", "user"), content=content)


@dataclass
class StepEvent:
    """One event in a model step's single-pass stream.

    Text deltas arrive as they are generated. Tool calls arrive once, after
    the provider finished streaming the step. Usage, when reported, rides on
    the final event.
    """

    text: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    usage: Optional[Dict[str, Any]] = None


@dataclass
class ToolInvocation:
    """Lifecycle of one tool call. Never retried."""

    call_id: str
    tool_name: str
    input: Dict[str, Any]
    state: ToolState = ToolState.PENDING
    output: Optional[Dict[str, Any]] = None
    error_text: Optional[str] = None
    duration_ms: float = 0.0
    _started: float = field(default=0.0, repr=False)

    def start(self) -> None:
        self.state = ToolState.RUNNING
        self._started = time.perf_counter()

    def succeed(self, output: Dict[str, Any]) -> None:
        self.state = ToolState.SUCCEEDED
        self.output = output
        self.duration_ms = (time.perf_counter() - self._started) * 1000

    def fail(self, output: Dict[str, Any], error_text: str) -> None:
        self.state = ToolState.FAILED
        self.output = output
        self.error_text = error_text
        self.duration_ms = (time.perf_counter() - self._started) * 1000


@dataclass
class Source:
    """A citation shown with the assistant reply."""

    title: str
    url: str = ""
    snippet: str = ""
    source: str = ""  # host or provider label

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "url": self.url, "snippet": self.snippet, "source": self.source}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Source":
        return cls(
            title=data.get("title") or "Untitled",
            url=data.get("url") or "",
            snippet=data.get("snippet") or "",
            source=data.get("source") or "",
        )


@dataclass
class Turn:
    """One user request cycle, from receipt to loop termination."""

    chat_id: str
    user_id: str
    messages: List[ModelMessage]
    model: str
    step_budget: int = DEFAULT_STEP_BUDGET
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    edit_target_id: Optional[str] = None
    replay: bool = False  # edit/regenerate resubmission

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()

    @property
    def latest_user_message(self) -> Optional[ModelMessage]:
        for message in reversed(self.messages):
            if message.role == "user":
                return message
        return None


@dataclass
class TurnResult:
    """What the orchestrator hands back when the loop ends."""

    text: str
    sources: List[Source]
    finish_reason: FinishReason
    steps: int = 0
    invocations: List[ToolInvocation] = field(default_factory=list)

    @property
    def tools_used(self) -> List[str]:
        seen: List[str] = []
        for inv in self.invocations:
            if inv.tool_name not in seen:
                seen.append(inv.tool_name)
        return seen
