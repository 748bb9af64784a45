"""
Parley Source Aggregator - Citation accumulation from tool results

Inspects every tool result of a turn for citation-shaped fields and keeps a
de-duplicated, first-seen-ordered list of sources for the assistant reply.

Recognised shapes:
    {"sources_for_citation": [{title, url, snippet, source}, ...], "results": [...]}
    {"source_for_citation": {title, url, snippet}}
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from .turn import Source

logger = logging.getLogger(__name__)

CITATION_LIST_FIELD = "sources_for_citation"
CITATION_OBJECT_FIELD = "source_for_citation"
SNIPPET_MAX_CHARS = 150


def _first(entry: Dict[str, Any], *keys: str, default: str = "") -> str:
    """Return the first non-empty string value among keys."""
    for key in keys:
        value = entry.get(key)
        if value:
            return str(value)
    return default


def host_label(url: str) -> str:
    """Hostname of url, or "" when it cannot be parsed."""
    if not url:
        return ""
    try:
        return urlparse(url).hostname or ""
    except ValueError:
        return ""


def truncate_snippet(text: str, limit: int = SNIPPET_MAX_CHARS) -> str:
    snippet = text[:limit].strip()
    return snippet + "..." if len(text) > limit else snippet


@dataclass
class SourceAggregator:
    """Turn-scoped accumulator of citation sources.

    Create one per turn. A candidate is dropped when an earlier source has the
    same non-empty URL, or when the candidate has no URL and an earlier source
    carries the same title.
    """

    sources: List[Source] = field(default_factory=list)

    def ingest(self, result: Any) -> List[Source]:
        """Merge citation data from one tool result.

        Returns:
            The sources newly added by this call (post de-duplication)
        """
        if not isinstance(result, dict):
            return []

        added: List[Source] = []

        entries = result.get(CITATION_LIST_FIELD)
        if isinstance(entries, list):
            results = result.get("results") if isinstance(result.get("results"), list) else []
            for entry in entries:
                if not isinstance(entry, dict):
                    continue
                candidate = self._from_list_entry(entry, results)
                if self._add(candidate):
                    added.append(candidate)

        single = result.get(CITATION_OBJECT_FIELD)
        if isinstance(single, dict):
            candidate = self._from_single(single)
            if self._add(candidate):
                added.append(candidate)

        if added:
            logger.debug(f"Sources: +{len(added)} (total {len(self.sources)})")
        return added

    def _from_list_entry(self, entry: Dict[str, Any], results: List[Any]) -> Source:
        url = _first(entry, "url", "documentUrl", "document_url", "link")
        title = _first(entry, "title", "documentName", "document_name", "name", default="Untitled")
        snippet = _first(entry, "snippet", "description", "text_snippet")
        if not snippet and results:
            snippet = self._snippet_from_results(entry, title, results)
        label = _first(entry, "source") or host_label(url)
        return Source(title=title, url=url, snippet=snippet, source=label)

    @staticmethod
    def _from_single(entry: Dict[str, Any]) -> Source:
        url = _first(entry, "url", "link")
        title = _first(entry, "title", "name", default="Untitled")
        snippet = _first(entry, "snippet", "description")
        label = _first(entry, "source") or host_label(url)
        return Source(title=title, url=url, snippet=snippet, source=label)

    @staticmethod
    def _snippet_from_results(entry: Dict[str, Any], title: str, results: List[Any]) -> str:
        """Excerpt the matching entry of a parallel results list."""
        doc_id = entry.get("document_id") or entry.get("documentId")
        for r in results:
            if not isinstance(r, dict):
                continue
            if r.get("document_name") == title or (doc_id and r.get("document_id") == doc_id):
                text = _first(r, "text", "content", "snippet")
                return truncate_snippet(text) if text else ""
        return ""

    def _add(self, candidate: Source) -> bool:
        if self.is_duplicate(candidate):
            return False
        self.sources.append(candidate)
        return True

    def is_duplicate(self, candidate: Source) -> bool:
        for existing in self.sources:
            if candidate.url and existing.url == candidate.url:
                return True
            if not candidate.url and existing.title == candidate.title:
                return True
        return False

    def get_all(self) -> List[Source]:
        return list(self.sources)

    def __len__(self) -> int:
        return len(self.sources)


def sources_to_dicts(sources: Optional[List[Source]]) -> List[Dict[str, str]]:
    return [s.to_dict() for s in sources or []]
