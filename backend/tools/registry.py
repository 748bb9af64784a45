"""
Tool Registry - Per-turn tool assembly and dispatch for Parley.

A fresh ToolRegistry is built for every turn from the built-in tools plus
the tools of the caller's connected integrations. Each tool factory receives
an explicit ToolContext, so request-scoped identity never lives in module
or process state.

Usage:
    registry = await build_tool_registry(ToolContext(user_id="u1", chat_id="c1"))
    schema = registry.get_tools_schema()
    result = await registry.execute("web_search", {"query": "python 3.13"})
"""

import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from errors import ToolExecutionError, ToolNotFoundError, ErrorCode

logger = logging.getLogger(__name__)


class ToolCategory(Enum):
    """Tool categories for grouping and logging."""

    EXTERNAL = "external"  # Web search, page fetches
    MEMORY = "memory"  # Caller's past conversations
    INTEGRATION = "integration"  # Connected third-party accounts


@dataclass
class ToolContext:
    """Request-scoped identity handed to every tool factory.

    Attributes:
        user_id: Authenticated caller
        chat_id: Conversation the turn belongs to
        session: Opaque auth/session data from the HTTP layer
    """

    user_id: str
    chat_id: str
    session: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolDefinition:
    """Definition of a tool for the registry."""

    name: str
    description: str
    parameters: Dict[str, Any]
    required_params: List[str]
    executor: Callable[..., Awaitable[Dict[str, Any]]]
    category: ToolCategory
    provides_citations: bool = False


class ToolRegistry:
    """
    Tools available to one turn.

    Built per request and never shared between turns.
    """

    def __init__(self, context: ToolContext):
        self.context = context
        self._tools: Dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        """Register a tool definition."""
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def get_tool(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def without(self, *names: str) -> "ToolRegistry":
        """Copy of this registry minus the named tools."""
        trimmed = ToolRegistry(self.context)
        for tool in self._tools.values():
            if tool.name not in names:
                trimmed.register(tool)
        return trimmed

    def get_tools_schema(self) -> List[Dict[str, Any]]:
        """Generate OpenAI-compatible tools schema for function calling."""
        schema = []
        for tool in self._tools.values():
            schema.append(
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": {
                            "type": "object",
                            "properties": tool.parameters,
                            "required": tool.required_params,
                        },
                    },
                }
            )
        return schema

    async def execute(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        """
        Execute a tool by name with given arguments.

        Raises:
            ToolNotFoundError: name is not registered for this turn
            ToolExecutionError: a required argument is missing
        """
        tool = self.get_tool(name)
        if not tool:
            raise ToolNotFoundError(
                f"Tool not available: {name}",
                details=f"Available tools: {', '.join(self._tools) or 'none'}",
                tool_name=name,
            )

        args = args or {}
        missing = [p for p in tool.required_params if args.get(p) in (None, "")]
        if missing:
            raise ToolExecutionError(
                f"Missing required argument(s) for {name}: {', '.join(missing)}",
                code=ErrorCode.TOOL_INVALID_ARGUMENTS,
                tool_name=name,
            )

        # Filter kwargs to only those the executor accepts
        sig = inspect.signature(tool.executor)
        has_var_kw = any(p.kind == inspect.Parameter.VAR_KEYWORD for p in sig.parameters.values())
        if has_var_kw:
            filtered = dict(args)
        else:
            accepted = set(sig.parameters.keys())
            dropped = [k for k in args if k not in accepted]
            if dropped:
                logger.debug(f"Tool {name}: ignoring unexpected args {dropped}")
            filtered = {k: v for k, v in args.items() if k in accepted}

        result = await tool.executor(**filtered)
        if not isinstance(result, dict):
            result = {"success": True, "data": result}
        return result


async def build_tool_registry(
    context: ToolContext,
    integrations: Optional[Any] = None,
    exclude: Iterable[str] = (),
) -> ToolRegistry:
    """Assemble the tools for one turn.

    Args:
        context: Caller identity threaded into every tool
        integrations: IntegrationDirectory listing the caller's connected accounts
        exclude: Tool names to leave out (e.g. memory search on replays)
    """
    from tools.web_search import web_search_tool
    from tools.web_scraper import web_scraper_tool
    from tools.memory_search import memory_search_tool
    from tools.integrations import integration_tools

    excluded = set(exclude)
    registry = ToolRegistry(context)

    candidates = [web_search_tool(context), web_scraper_tool(context), memory_search_tool(context)]
    if integrations is not None:
        candidates.extend(await integration_tools(context, integrations))

    for tool in candidates:
        if tool is None or tool.name in excluded:
            continue
        registry.register(tool)

    logger.info(f"Tools for chat {context.chat_id}: {', '.join(registry.names) or 'none'}")
    return registry
