"""
Parley Tools - Web Scraper

Fetches one page and extracts readable text plus basic metadata. Parsing is
regex based: scripts, styles and tags are stripped, entities unescaped.
Selectors support a tag name, #id or .class (no nesting or combinators).
"""

import logging
import re
from html import unescape
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from config import runtime_config
from errors import ExternalServiceError, ValidationError, handle_async_tool_errors

from .registry import ToolCategory, ToolContext, ToolDefinition

logger = logging.getLogger(__name__)

DESCRIPTION = (
    "Fetch and extract content from a web page. Returns the main text content, metadata, "
    "and optionally specific elements. Do NOT include any sources, citations, or \"Source:\" "
    "sections in your response text - sources are handled separately by the UI."
)

_DROP_BLOCKS_RE = re.compile(r"<(script|style|noscript)\b[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_LINK_RE = re.compile(r'<a[^>]*href=["\'](https?://[^"\']+)["\']', re.IGNORECASE)

# Main-content candidates, tried in order
_MAIN_SELECTORS = ("main", "article", "[role=main]", "#content", ".content", "body")
_MIN_MAIN_CHARS = 100
MAX_LINKS = 20


def _strip_html(value: str) -> str:
    cleaned = _TAG_RE.sub(" ", value or "")
    cleaned = unescape(cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()


def _meta(html_text: str, attr: str, name: str) -> Optional[str]:
    """Content of <meta {attr}="{name}" content="...">, either attribute order."""
    name_re = re.escape(name)
    patterns = (
        rf'<meta[^>]*{attr}=["\']{name_re}["\'][^>]*content=["\']([^"\']*)["\']',
        rf'<meta[^>]*content=["\']([^"\']*)["\'][^>]*{attr}=["\']{name_re}["\']',
    )
    for pattern in patterns:
        match = re.search(pattern, html_text, re.IGNORECASE)
        if match:
            return unescape(match.group(1)).strip() or None
    return None


def _select(html_text: str, selector: str) -> List[str]:
    """Inner HTML of elements matching a simple selector."""
    selector = selector.strip()
    if selector.startswith("#"):
        ident = re.escape(selector[1:])
        pattern = rf'<(\w+)\b[^>]*\bid=["\']{ident}["\'][^>]*>(.*?)</\1>'
    elif selector.startswith("."):
        cls = re.escape(selector[1:])
        pattern = rf'<(\w+)\b[^>]*\bclass=["\'][^"\']*\b{cls}\b[^"\']*["\'][^>]*>(.*?)</\1>'
    elif selector.startswith("[role="):
        role = re.escape(selector[len("[role="):].rstrip("]").strip("\"'"))
        pattern = rf'<(\w+)\b[^>]*\brole=["\']{role}["\'][^>]*>(.*?)</\1>'
    elif re.match(r"^[a-zA-Z][a-zA-Z0-9]*$", selector):
        tag = re.escape(selector)
        pattern = rf"<({tag})\b[^>]*>(.*?)</\1>"
    else:
        raise ValidationError(
            "Unsupported selector",
            details="Use a tag name, #id or .class",
            parameter="selector",
            received=selector,
        )
    return [m.group(2) for m in re.finditer(pattern, html_text, re.IGNORECASE | re.DOTALL)]


def extract_page(html_text: str, url: str, selector: Optional[str] = None,
                 extract_metadata: bool = True, max_length: int = 5000) -> Dict[str, Any]:
    """Turn raw HTML into the scraper's result shape."""
    raw_title_match = _TITLE_RE.search(html_text)
    title = _strip_html(raw_title_match.group(1)) if raw_title_match else ""
    title = title or _meta(html_text, "property", "og:title") or "Untitled"
    description = _meta(html_text, "name", "description") or _meta(html_text, "property", "og:description")

    body = _COMMENT_RE.sub(" ", _DROP_BLOCKS_RE.sub(" ", html_text))

    content = ""
    if selector:
        content = "\n\n".join(_strip_html(block) for block in _select(body, selector))
    else:
        for candidate in _MAIN_SELECTORS:
            blocks = _select(body, candidate)
            if blocks:
                content = _strip_html(blocks[0])
                if len(content) > _MIN_MAIN_CHARS:
                    break
        content = content or _strip_html(body)

    content = re.sub(r"\s+", " ", content).strip()
    if len(content) > max_length:
        content = content[:max_length] + "..."

    host = urlparse(url).hostname or ""
    result: Dict[str, Any] = {
        "success": True,
        "url": url,
        "title": title,
        "content": content,
        "length": len(content),
        "source": host,
    }

    if extract_metadata:
        result["metadata"] = {
            "title": title,
            "description": description,
            "author": _meta(html_text, "name", "author"),
            "keywords": _meta(html_text, "name", "keywords"),
        }

    links = list(dict.fromkeys(_LINK_RE.findall(html_text)))
    if links:
        result["links"] = links[:MAX_LINKS]

    result["source_for_citation"] = {"title": title, "url": url, "snippet": description or "", "source": host}
    return result


async def scrape_page(url: str, selector: Optional[str] = None, extract_metadata: bool = True,
                      max_length: Optional[int] = None, client: httpx.AsyncClient = None) -> Dict[str, Any]:
    """Fetch url and extract it.

    Raises:
        ValidationError: url is not http(s)
        ExternalServiceError: fetch failed or returned a non-2xx status
    """
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(
            "Invalid URL",
            details="Only absolute http(s) URLs can be scraped",
            parameter="url",
            received=url,
        )

    limit = int(max_length or runtime_config.scraper_max_length)

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=runtime_config.scraper_timeout, follow_redirects=True)
    try:
        response = await client.get(url, headers={"User-Agent": runtime_config.scraper_user_agent})
        response.raise_for_status()
        html_text = response.text
    except httpx.HTTPStatusError as exc:
        raise ExternalServiceError(
            f"Failed to fetch URL: {exc.response.status_code}",
            details=url,
            service="scrape",
            status_code=exc.response.status_code,
        )
    except httpx.TimeoutException:
        raise ExternalServiceError("Page fetch timed out", details=url, service="scrape")
    except httpx.RequestError as exc:
        raise ExternalServiceError("Page fetch failed", details=f"{url}: {exc}", service="scrape")
    finally:
        if owns_client:
            await client.aclose()

    result = extract_page(html_text, url, selector, extract_metadata, limit)
    logger.info(f"Scraped {result['length']} chars from {result['source']}")
    return result


def web_scraper_tool(context: ToolContext) -> ToolDefinition:
    @handle_async_tool_errors("web_scraper", logger)
    async def _execute(url: str, selector: Optional[str] = None, extract_metadata: bool = True,
                       max_length: int = 5000) -> Dict[str, Any]:
        return await scrape_page(url, selector, extract_metadata, max_length)

    return ToolDefinition(
        name="web_scraper",
        description=DESCRIPTION,
        parameters={
            "url": {"type": "string", "description": "The URL to scrape"},
            "selector": {
                "type": "string",
                "description": "Optional selector (tag name, #id or .class) to extract specific elements",
            },
            "extract_metadata": {
                "type": "boolean",
                "default": True,
                "description": "Whether to extract page metadata (title, description, etc.)",
            },
            "max_length": {
                "type": "integer",
                "default": 5000,
                "description": "Maximum length of content to return (characters)",
            },
        },
        required_params=["url"],
        executor=_execute,
        category=ToolCategory.EXTERNAL,
        provides_citations=True,
    )
