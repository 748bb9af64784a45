"""
Parley Tools - Connected Integrations

Tools for third-party accounts (GitHub, Google Drive, Gmail, Slack, Google
Calendar, Jira, Notion). Only integrations the caller has connected are
offered to the model. Token handling and the actual API calls belong to the
IntegrationDirectory implementation; this module only declares schemas and
wraps results.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol

from errors import ExternalServiceError

from .registry import ToolCategory, ToolContext, ToolDefinition

logger = logging.getLogger(__name__)


class IntegrationDirectory(Protocol):
    """What the tool layer needs from the integrations service."""

    async def list_connected(self, context: ToolContext) -> List[str]:
        """Integration types the caller has connected and enabled."""
        ...

    async def execute(self, context: ToolContext, tool_name: str, args: Dict[str, Any]) -> Any:
        """Run one integration call; raise on failure."""
        ...


class NoIntegrations:
    """Directory used when no integrations backend is configured."""

    async def list_connected(self, context: ToolContext) -> List[str]:
        return []

    async def execute(self, context: ToolContext, tool_name: str, args: Dict[str, Any]) -> Any:
        raise ExternalServiceError(f"No integration backend for {tool_name}", service="integration")


def _spec(description: str, properties: Optional[Dict[str, Any]] = None, required: Optional[List[str]] = None):
    return {"description": description, "properties": properties or {}, "required": required or []}


_STR = {"type": "string"}

# integration type -> tool name -> spec
INTEGRATION_CATALOG: Dict[str, Dict[str, Dict[str, Any]]] = {
    "github": {
        "github_list_repos": _spec("List the user's GitHub repositories with name, description, URL and stars."),
        "github_search_repos": _spec(
            "Search GitHub repositories by name, description or README content.",
            {"query": {**_STR, "description": "Search query (e.g. 'react', 'nextjs app')"}},
            ["query"],
        ),
        "github_list_issues": _spec(
            "List issues for a GitHub repository.",
            {
                "owner": {**_STR, "description": "Repository owner"},
                "repo": {**_STR, "description": "Repository name"},
                "state": {"type": "string", "enum": ["open", "closed", "all"], "description": "Issue state"},
            },
            ["owner", "repo"],
        ),
        "github_create_issue": _spec(
            "Create an issue in a GitHub repository.",
            {
                "owner": {**_STR, "description": "Repository owner"},
                "repo": {**_STR, "description": "Repository name"},
                "title": {**_STR, "description": "Issue title"},
                "body": {**_STR, "description": "Issue body (markdown)"},
            },
            ["owner", "repo", "title"],
        ),
    },
    "google_drive": {
        "drive_search_files": _spec(
            "Search files in Google Drive by name or content.",
            {"query": {**_STR, "description": "Search query"}},
            ["query"],
        ),
        "drive_recent_files": _spec("List recently modified Google Drive files."),
    },
    "gmail": {
        "gmail_search_messages": _spec(
            "Search Gmail messages using Gmail search syntax.",
            {"query": {**_STR, "description": "Gmail query (e.g. 'from:alice is:unread')"}},
            ["query"],
        ),
        "gmail_unread_count": _spec("Count unread messages in the inbox."),
    },
    "slack": {
        "slack_list_channels": _spec("List Slack channels the user can see."),
        "slack_send_message": _spec(
            "Send a message to a Slack channel.",
            {"channel": {**_STR, "description": "Channel id or name"}, "text": {**_STR, "description": "Message"}},
            ["channel", "text"],
        ),
    },
    "google_calendar": {
        "calendar_today_events": _spec("List today's calendar events."),
        "calendar_search_events": _spec(
            "Search calendar events by text.",
            {"query": {**_STR, "description": "Search text"}},
            ["query"],
        ),
    },
    "jira": {
        "jira_search_issues": _spec(
            "Search Jira issues with JQL.",
            {"jql": {**_STR, "description": "JQL query"}},
            ["jql"],
        ),
    },
    "notion": {
        "notion_search": _spec(
            "Search Notion pages and databases.",
            {"query": {**_STR, "description": "Search text"}},
            ["query"],
        ),
    },
}


def _integration_tool(context: ToolContext, directory: IntegrationDirectory, name: str,
                      spec: Dict[str, Any]) -> ToolDefinition:
    async def _execute(**args: Any) -> Dict[str, Any]:
        try:
            data = await directory.execute(context, name, args)
        except Exception as e:
            logger.error(f"[{name}] integration call failed: {e}")
            return {"success": False, "error": str(e) or "Tool execution failed"}
        return {"success": True, "data": data, "message": f"Successfully executed {name}"}

    return ToolDefinition(
        name=name,
        description=spec["description"],
        parameters=spec["properties"],
        required_params=spec["required"],
        executor=_execute,
        category=ToolCategory.INTEGRATION,
    )


async def integration_tools(context: ToolContext, directory: IntegrationDirectory) -> List[ToolDefinition]:
    """Tools for every catalog integration the caller has connected."""
    try:
        connected = await directory.list_connected(context)
    except Exception as e:
        logger.warning(f"Could not list integrations for user {context.user_id}: {e}")
        return []

    tools: List[ToolDefinition] = []
    for integration in connected:
        specs = INTEGRATION_CATALOG.get(integration)
        if not specs:
            logger.debug(f"No tools for integration '{integration}'")
            continue
        for name, spec in specs.items():
            tools.append(_integration_tool(context, directory, name, spec))

    if tools:
        logger.info(f"Loaded {len(tools)} integration tools for user {context.user_id}")
    return tools
