"""Memory tools — memory_search over saved conversation notes."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from memory import search_result

if TYPE_CHECKING:
    from memory import MemoryStore

log = logging.getLogger(__name__)

# Set at daemon startup; toggled per turn from the runtime config
_store: MemoryStore | None = None
_enabled = True


def configure(store: MemoryStore | None) -> None:
    global _store
    _store = store


def set_enabled(enabled: bool) -> None:
    global _enabled
    _enabled = enabled


def tool_memory_search(query: str, max_results: int = 3) -> dict:
    """Search long-term memory notes by relevance to query."""
    if not query or not query.strip():
        return {"error": "No search query provided"}
    if _store is None:
        return {"error": "Memory system not available"}
    if not _enabled:
        return {"error": "Memory system is disabled"}
    log.info("memory_search: %s (max_results=%d)", query, max_results)
    return search_result(query, _store.search(query, max_results=int(max_results)))


TOOLS = [
    {
        "name": "memory_search",
        "description": (
            "Search through past conversation memories to find relevant context. "
            "Use this when the user refers to previous discussions, asks about past "
            "topics, or when you need context from earlier conversations. "
            "Returns summaries of relevant past conversations."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Search query - keywords or topics to look for in past conversations",
                },
                "max_results": {
                    "type": "integer",
                    "description": "Maximum number of memories to return (default: 3)",
                    "default": 3,
                },
            },
            "required": ["query"],
        },
        "function": tool_memory_search,
    },
]
