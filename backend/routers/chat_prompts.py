"""
Parley Chat Prompts - System prompt and user-facing fallback messages

Contains:
- build_system_prompt(): Date-aware system prompt listing the turn's tools
- STEP_LIMIT_FALLBACK_MESSAGE: Persisted when the step budget runs out
- EMPTY_RESPONSE_FALLBACK: Persisted when the model stops with no text
- GENERIC_PROVIDER_ERROR_MESSAGE: Shown when the model backend fails
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

# =============================================================================
# SYSTEM PROMPT - Composable Sections
# =============================================================================

_PERSONALITY = "You are Parley, a helpful AI assistant for the user."

_DATE_SECTION = """CURRENT DATE AND TIME: {human} ({iso})
Use this information to understand relative time references like "yesterday", "last week", "today", etc."""

# Tool name -> one-line description for the prompt (only tools present in the turn are listed)
_TOOL_LINES = {
    "chat_memory_search": "- chat_memory_search: Search through the user's past conversations and chat history",
    "web_search": "- web_search: Search the web for current information",
    "web_scraper": "- web_scraper: Extract content from specific web pages",
}

_INSTRUCTIONS_SECTION = """TOOL PRIORITIZATION & MULTI-STEP REASONING:
1. You can use MULTIPLE tools in sequence to answer complex questions
2. IMPORTANT: After using tools, you MUST provide a comprehensive answer to the user based on the tool results
3. If the user asks about PAST CONVERSATIONS (e.g., "when did I ask", "what time did I mention"), use chat_memory_search FIRST
4. If one tool returns no results, try the next relevant tool (chat_memory_search finds nothing -> try web_search)
5. Use web_search or web_scraper when the question requires current information or the user asks for web information
6. After calling tools, ALWAYS synthesize the results into a helpful answer for the user"""

_TEMPORAL_SECTION = """TEMPORAL QUERY HANDLING:
- When user asks "when did I...", "what time did I...", use chat_memory_search
- For relative times (yesterday, last week), calculate the date range based on CURRENT DATE AND TIME above
- Always include the exact timestamp from the search results in your response"""

_SOURCES_SECTION = """IMPORTANT: Sources from tools will be automatically cited at the end of your response.
Do NOT manually add a "Sources:" section - it will be added automatically."""


def build_system_prompt(
    model: str = "",
    tool_names: Optional[Iterable[str]] = None,
    now: Optional[datetime] = None,
) -> str:
    """Assemble the system prompt for one turn.

    Args:
        model: Upstream model name (GPT models get a web-capability hint)
        tool_names: Tools registered for this turn
        now: Override for the current time (tests)
    """
    now = now or datetime.now(timezone.utc)
    names = list(tool_names or [])

    sections = [
        _PERSONALITY,
        _DATE_SECTION.format(human=now.strftime("%A, %B %d, %Y at %I:%M %p %Z").strip(), iso=now.isoformat()),
    ]

    if names:
        lines = ["You have access to several tools:"]
        lines.extend(_TOOL_LINES[name] for name in names if name in _TOOL_LINES)
        integration_count = sum(1 for name in names if name not in _TOOL_LINES)
        if integration_count:
            lines.append(f"- {integration_count} tools from the user's connected integrations (see tool descriptions)")
        if model.startswith("gpt"):
            lines.append("- You have internet search capabilities and can provide up-to-date information")
        sections.append("\n".join(lines))
        sections.append(_INSTRUCTIONS_SECTION)
        if "chat_memory_search" in names:
            sections.append(_TEMPORAL_SECTION)
        sections.append(_SOURCES_SECTION)

    return "\n\n".join(sections)


# =============================================================================
# FALLBACK MESSAGES
# =============================================================================

STEP_LIMIT_FALLBACK_MESSAGE = """I apologize, but I reached my processing limit while trying to answer your question. I performed multiple searches and analyses, but couldn't put together a complete response within the allowed steps.

**What happened:**
1. I made too many tool calls (searches, data retrieval, etc.) trying to find the best answer
2. I hit the maximum step limit before completing

**Please try:**
1. **Simplify your question** - Ask about one specific aspect at a time
2. **Be more direct** - Specify exactly what information you need
3. **Break it down** - Split complex questions into smaller parts

I'm here to help, I just need a more focused question!"""

EMPTY_RESPONSE_FALLBACK = "I wasn't able to produce a response this time. Please try rephrasing your question."

GENERIC_PROVIDER_ERROR_MESSAGE = (
    "Sorry, the AI model is temporarily unavailable and your message could not be answered. Please try again."
)
