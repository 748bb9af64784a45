"""
Parley Tools - Web Search

Google results via SerpAPI. Results carry a sources_for_citation list so the
turn's source aggregator can cite them.
"""

import logging
from typing import Any, Dict, List

from urllib.parse import urlparse

import httpx

from config import runtime_config
from errors import ExternalServiceError, handle_async_tool_errors

from .registry import ToolCategory, ToolContext, ToolDefinition

logger = logging.getLogger(__name__)

MAX_RESULTS = 10

DESCRIPTION = (
    "Search the web for current information. Returns top search results with titles, "
    "snippets, and links. Do NOT include any sources, citations, or \"Sources:\" sections "
    "in your response text - sources are handled separately by the UI."
)


def _parse_organic_results(data: Dict[str, Any], limit: int) -> List[Dict[str, Any]]:
    results: List[Dict[str, Any]] = []
    for item in (data.get("organic_results") or [])[:limit]:
        link = (item.get("link") or "").strip()
        if not link:
            continue
        results.append(
            {
                "title": (item.get("title") or "").strip() or "Untitled",
                "url": link,
                "snippet": (item.get("snippet") or "").strip(),
                "position": item.get("position"),
                "source": item.get("source") or item.get("displayed_link") or (urlparse(link).hostname or ""),
            }
        )
    return results


async def search_web(query: str, num_results: int = 5, client: httpx.AsyncClient = None) -> Dict[str, Any]:
    """Run one SerpAPI query.

    Raises:
        ExternalServiceError: no API key, HTTP failure or an API-level error
    """
    if not runtime_config.serpapi_key:
        raise ExternalServiceError(
            "Web search is not configured",
            details="Set SERPAPI_API_KEY to enable web search.",
            service="search",
            status_code=503,
        )

    limit = max(1, min(int(num_results or runtime_config.web_search_results), MAX_RESULTS))
    params = {"q": query, "api_key": runtime_config.serpapi_key, "num": str(limit), "engine": "google"}

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=runtime_config.web_search_timeout, follow_redirects=True)
    try:
        response = await client.get(runtime_config.serpapi_url, params=params)
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPStatusError as exc:
        raise ExternalServiceError(
            "Search service error",
            details=f"SerpAPI returned status {exc.response.status_code}",
            service="search",
            status_code=exc.response.status_code,
        )
    except httpx.TimeoutException:
        raise ExternalServiceError(
            "Search service timed out",
            details="The search request took too long. Try again.",
            service="search",
        )
    except httpx.RequestError:
        raise ExternalServiceError(
            "Search service unavailable",
            details="Could not connect to the search service",
            service="search",
        )
    finally:
        if owns_client:
            await client.aclose()

    if data.get("error"):
        raise ExternalServiceError("Search failed", details=str(data["error"]), service="search")

    results = _parse_organic_results(data, limit)
    logger.info(f"Web search '{query[:60]}': {len(results)} results")

    return {
        "success": True,
        "query": query,
        "results": results,
        "result_count": len(results),
        "sources_for_citation": [
            {"title": r["title"], "url": r["url"], "snippet": r["snippet"], "source": r["source"]}
            for r in results
        ],
        "answer_box": data.get("answer_box"),
    }


def web_search_tool(context: ToolContext) -> ToolDefinition:
    @handle_async_tool_errors("web_search", logger)
    async def _execute(query: str, num_results: int = 5) -> Dict[str, Any]:
        return await search_web(query, num_results)

    return ToolDefinition(
        name="web_search",
        description=DESCRIPTION,
        parameters={
            "query": {"type": "string", "description": "The search query"},
            "num_results": {
                "type": "integer",
                "minimum": 1,
                "maximum": MAX_RESULTS,
                "default": 5,
                "description": "Number of results to return (max 10)",
            },
        },
        required_params=["query"],
        executor=_execute,
        category=ToolCategory.EXTERNAL,
        provides_citations=True,
    )
