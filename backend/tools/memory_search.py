"""
Parley Tools - Chat Memory Search

Lets the model look through the caller's past conversations ("when did I
ask about X?"). Scoped to the user id in the ToolContext.
"""

import logging
from typing import Any, Dict, Optional

from config import runtime_config
from errors import handle_async_tool_errors
from services.memory_store import get_memory_store, relative_time

from .registry import ToolCategory, ToolContext, ToolDefinition

logger = logging.getLogger(__name__)

TOOL_NAME = "chat_memory_search"

DESCRIPTION = """Search through the user's past conversations and chat history. Use this tool when the user asks about:
- Previous questions they asked ("when did I ask about...", "what time did I mention...")
- Past responses you gave ("what did you tell me about...", "did we discuss...")
- Conversations from specific time periods ("yesterday", "last week", "in January")
- Any self-referential queries about the chat history"""


async def search_chat_memory(
    context: ToolContext,
    query: str,
    date_range: Optional[Dict[str, Any]] = None,
    limit: int = 5,
    store=None,
) -> Dict[str, Any]:
    store = store or get_memory_store()
    limit = max(1, min(int(limit or runtime_config.memory_search_limit), 20))
    memories = await store.search_memories(context.user_id, query, limit=limit, date_range=date_range)

    if not memories:
        return {"success": True, "message": f'No relevant conversations found for "{query}".', "memories": []}

    formatted = []
    for i, memory in enumerate(memories, 1):
        formatted.append(
            {
                "index": i,
                "content": memory.content,
                "role": memory.message_type,
                "timestamp": memory.timestamp,
                "human_readable_time": memory.human_readable_time,
                "relative_time": relative_time(memory.when),
                "chat_id": memory.chat_id,
                "relevance_score": round(memory.relevance_score, 3),
            }
        )

    lines = [f"Found {len(formatted)} relevant conversation(s):", ""]
    for item in formatted:
        who = "You asked" if item["role"] == "user" else "Assistant responded"
        lines.append(
            f"{item['index']}. [{item['relative_time']} - {item['human_readable_time']}]\n"
            f"   Role: {who}\n"
            f"   Content: \"{item['content']}\"\n"
            f"   Chat ID: {item['chat_id']}"
        )
        lines.append("")
    lines.append("When answering, include the specific date and time from human_readable_time.")

    return {"success": True, "message": "\n".join(lines), "memories": formatted, "count": len(formatted)}


def memory_search_tool(context: ToolContext) -> Optional[ToolDefinition]:
    """None when long-term memory is switched off."""
    if not runtime_config.memory_enabled:
        return None

    @handle_async_tool_errors(TOOL_NAME, logger)
    async def _execute(query: str, date_range: Optional[Dict[str, Any]] = None, limit: int = 5) -> Dict[str, Any]:
        return await search_chat_memory(context, query, date_range, limit)

    return ToolDefinition(
        name=TOOL_NAME,
        description=DESCRIPTION,
        parameters={
            "query": {
                "type": "string",
                "description": "What to look for (e.g. 'chat app', 'pricing discussion')",
            },
            "date_range": {
                "type": "object",
                "properties": {
                    "start": {"type": "string", "description": "Start, ISO 8601 (e.g. '2025-01-01T00:00:00Z')"},
                    "end": {"type": "string", "description": "End, ISO 8601 (e.g. '2025-01-31T23:59:59Z')"},
                },
                "description": "Optional date range for 'yesterday', 'last week', 'in January' style questions",
            },
            "limit": {
                "type": "integer",
                "minimum": 1,
                "maximum": 20,
                "default": 5,
                "description": "Maximum number of memories to return",
            },
        },
        required_params=["query"],
        executor=_execute,
        category=ToolCategory.MEMORY,
    )
