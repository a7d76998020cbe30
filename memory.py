"""Long-term memory — durable notes distilled from past conversations.

Two interchangeable stores sit behind one MemoryStore interface:

- KeywordMemoryStore: one JSON note per saved conversation with
  stopword-filtered keywords and model-extracted topics. Search scores
  query keywords against note keywords/topics with a small recency bonus.
- MarkdownMemoryStore: append-only daily markdown files, searched by
  case-insensitive substring match.

A deployment picks one via [memory] backend.
"""

from __future__ import annotations

import json
import logging
import os
import random
import re
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from context import generate_summary
from session import _atomic_write, utc_timestamp

if TYPE_CHECKING:
    from agentic import ChatResult
    from config import Config
    from session import SessionStore

    ChatFn = Callable[[list[dict]], Awaitable[ChatResult]]

log = logging.getLogger(__name__)

MAX_MEMORIES_IN_CONTEXT = 3
MIN_MESSAGES_FOR_MEMORY = 4
MAX_KEYWORDS = 20
MAX_TOPICS = 5
DEFAULT_TOPIC = "general conversation"

INJECTION_HEADER = "Relevant context from previous conversations:\n\n"

TOPICS_PROMPT = (
    "Extract 3-5 main topics or themes from this conversation summary. "
    "Return only a comma-separated list of short topic phrases, nothing else."
    "\n\nSummary:\n"
)

COMBINE_INSTRUCTION = (
    "Create a concise summary combining this previous summary with the new "
    "conversation. Focus on key information, decisions, and context."
)

STOPWORDS = frozenset("""
the a an is are was were be been being have has had do does did will would could
should may might must shall can need dare ought used to of in for on with at by
from as into through during before after above below between under again further
then once here there when where why how all each every both few more most other
some such no nor not only own same so than too very just also now and but if or
because until while although though since unless about against among around
behind beside besides beyond despite down except inside outside over past per
plus regarding round save toward towards underneath unlike upon versus via within
without i you he she it we they me him her us them my your his its our their mine
yours hers ours theirs this that these those what which who whom whose myself
yourself himself herself itself ourselves themselves something anything
everything nothing someone anyone everyone one two three four five six seven
eight nine ten first second third new old good bad great small big long short
high low young little much many less well still already even back going want
think know see come go get make take give find tell ask use work try call feel
become leave put mean keep let begin seem help show hear play run move live
believe hold bring happen write provide sit stand lose pay meet include continue
set learn change lead understand watch follow stop create speak read allow add
spend grow open walk win offer remember love consider appear buy wait serve die
send expect build stay fall cut reach kill remain suggest raise pass sell require
report decide pull
""".split())

_WORD = re.compile(r"[a-z0-9]+")


@dataclass
class MemoryNote:
    id: str
    session_id: str
    summary: str
    timestamp: str
    keywords: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)
    message_count: int = 0
    # Set on search results only; never persisted
    relevance_score: int = 0

    @property
    def date(self) -> str:
        return self.timestamp.split("T")[0]

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("relevance_score")
        return d

    @classmethod
    def from_dict(cls, data: dict) -> MemoryNote:
        return cls(
            id=data["id"],
            session_id=data.get("session_id", ""),
            summary=data.get("summary", ""),
            timestamp=data.get("timestamp", ""),
            keywords=[k for k in data.get("keywords", []) if k],
            topics=[t for t in data.get("topics", []) if t],
            message_count=int(data.get("message_count", 0)),
        )


class MemoryStore(Protocol):
    """Interface shared by all memory backends."""

    max_in_context: int

    def save(self, session_id: str, summary: str, message_count: int = 0,
             topics: list[str] | None = None) -> MemoryNote: ...

    def search(self, query: str, max_results: int | None = None) -> list[MemoryNote]: ...

    def recent(self, limit: int = 10) -> list[MemoryNote]: ...

    def delete(self, memory_id: str) -> bool: ...

    def clear(self) -> int: ...

    def count(self) -> int: ...


# ─── Helpers ─────────────────────────────────────────────────────


def extract_keywords(text: str, limit: int = MAX_KEYWORDS) -> list[str]:
    """Most frequent non-stopword words in text, most frequent first."""
    words = [w for w in _WORD.findall(text.lower()) if w not in STOPWORDS]
    return [w for w, _ in Counter(words).most_common(limit)]


def generate_memory_id() -> str:
    return f"mem_{int(time.time())}_{os.getpid()}_{random.randint(0, 32767)}"


def _parse_timestamp(ts: str) -> datetime | None:
    try:
        return datetime.strptime(ts, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=UTC)
    except ValueError:
        return None


def recency_bonus(ts: str, now: datetime | None = None) -> int:
    """+2 for notes under a day old, +1 under a week, else 0."""
    when = _parse_timestamp(ts)
    if when is None:
        return 0
    age_days = ((now or datetime.now(UTC)) - when).total_seconds() / 86400
    if age_days < 1:
        return 2
    if age_days < 7:
        return 1
    return 0


def format_for_injection(notes: list[MemoryNote]) -> str:
    """Render notes as the text of a synthetic context message."""
    if not notes:
        return ""
    parts = [INJECTION_HEADER]
    for n in notes:
        parts.append(f"[{n.date}] Topics: {', '.join(n.topics)}\n{n.summary}\n\n")
    return "".join(parts).rstrip() + "\n"


def search_result(query: str, notes: list[MemoryNote]) -> dict:
    """Shape search hits for the memory_search tool."""
    if not notes:
        return {
            "query": query,
            "found": 0,
            "message": "No relevant memories found for this query.",
            "memories": [],
        }
    return {
        "query": query,
        "found": len(notes),
        "memories": [
            {
                "date": n.date,
                "topics": ", ".join(n.topics),
                "summary": n.summary,
                "relevance_score": n.relevance_score,
            }
            for n in notes
        ],
    }


# ─── Keyword store ───────────────────────────────────────────────


class KeywordMemoryStore:
    """One JSON file per note in a flat directory."""

    def __init__(self, directory: Path, max_in_context: int = MAX_MEMORIES_IN_CONTEXT):
        self.dir = directory
        self.max_in_context = max_in_context

    def _path(self, memory_id: str) -> Path:
        return self.dir / f"{memory_id}.json"

    def _load_all(self) -> list[MemoryNote]:
        if not self.dir.is_dir():
            return []
        notes = []
        for path in sorted(self.dir.glob("*.json")):
            try:
                notes.append(MemoryNote.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                log.warning("Skipping unreadable memory %s: %s", path.name, e)
        return notes

    def save(self, session_id: str, summary: str, message_count: int = 0,
             topics: list[str] | None = None) -> MemoryNote:
        if not summary.strip():
            raise ValueError("Cannot save empty summary to memory")
        note = MemoryNote(
            id=generate_memory_id(),
            session_id=session_id,
            summary=summary,
            timestamp=utc_timestamp(),
            keywords=extract_keywords(summary),
            topics=list(topics or [DEFAULT_TOPIC]),
            message_count=message_count,
        )
        self.dir.mkdir(parents=True, exist_ok=True)
        _atomic_write(self._path(note.id), json.dumps(note.to_dict(), indent=2, ensure_ascii=False))
        log.info("Saved memory: %s (%d messages)", note.id, message_count)
        return note

    def score(self, query_keywords: list[str], note: MemoryNote,
              now: datetime | None = None) -> int:
        vocabulary = set(note.keywords)
        for topic in note.topics:
            vocabulary.update(_WORD.findall(topic.lower()))
        hits = sum(1 for k in query_keywords if k in vocabulary)
        if hits == 0:
            return 0
        return hits + recency_bonus(note.timestamp, now)

    def search(self, query: str, max_results: int | None = None) -> list[MemoryNote]:
        limit = max_results if max_results is not None else self.max_in_context
        query_keywords = extract_keywords(query)
        if not query_keywords:
            return []
        now = datetime.now(UTC)
        hits = []
        for note in self._load_all():
            note.relevance_score = self.score(query_keywords, note, now)
            if note.relevance_score > 0:
                hits.append(note)
        hits.sort(key=lambda n: (n.relevance_score, n.timestamp), reverse=True)
        return hits[:max(0, limit)]

    def recent(self, limit: int = 10) -> list[MemoryNote]:
        notes = sorted(self._load_all(), key=lambda n: n.timestamp, reverse=True)
        return notes[:limit]

    def delete(self, memory_id: str) -> bool:
        path = self._path(memory_id)
        if not path.exists():
            return False
        path.unlink()
        log.info("Deleted memory: %s", memory_id)
        return True

    def clear(self) -> int:
        if not self.dir.is_dir():
            return 0
        removed = 0
        for path in self.dir.glob("*.json"):
            path.unlink()
            removed += 1
        log.info("Cleared %d memories", removed)
        return removed

    def count(self) -> int:
        if not self.dir.is_dir():
            return 0
        return sum(1 for _ in self.dir.glob("*.json"))


# ─── Markdown store ──────────────────────────────────────────────

_ENTRY_HEADER = re.compile(
    r"^## (?P<time>\d\d:\d\d:\d\d) UTC · (?P<id>\S+) · session (?P<session>.*)$"
)


class MarkdownMemoryStore:
    """Daily markdown files, one `## ` section per note."""

    def __init__(self, directory: Path, max_in_context: int = MAX_MEMORIES_IN_CONTEXT):
        self.dir = directory
        self.max_in_context = max_in_context

    def _files(self) -> list[Path]:
        if not self.dir.is_dir():
            return []
        return sorted(self.dir.glob("????-??-??.md"))

    def _parse_file(self, path: Path) -> list[MemoryNote]:
        day = path.stem
        notes: list[MemoryNote] = []
        current: MemoryNote | None = None
        body: list[str] = []

        def flush():
            if current is not None:
                current.summary = "\n".join(body).strip()
                notes.append(current)

        for line in path.read_text(encoding="utf-8").splitlines():
            m = _ENTRY_HEADER.match(line)
            if m:
                flush()
                current = MemoryNote(
                    id=m["id"],
                    session_id=m["session"],
                    summary="",
                    timestamp=f"{day}T{m['time']}Z",
                )
                body = []
            elif current is not None and line.startswith("Topics: ") and not body:
                current.topics = [t.strip() for t in line[8:].split(",") if t.strip()]
            elif current is not None:
                body.append(line)
        flush()
        return notes

    def _load_all(self) -> list[MemoryNote]:
        notes = []
        for path in self._files():
            try:
                notes.extend(self._parse_file(path))
            except (OSError, UnicodeDecodeError) as e:
                log.warning("Skipping unreadable memory file %s: %s", path.name, e)
        return notes

    @staticmethod
    def _render(note: MemoryNote) -> str:
        clock = note.timestamp.split("T")[1].rstrip("Z")
        return (
            f"## {clock} UTC · {note.id} · session {note.session_id}\n"
            f"Topics: {', '.join(note.topics)}\n"
            f"{note.summary.strip()}\n\n"
        )

    def save(self, session_id: str, summary: str, message_count: int = 0,
             topics: list[str] | None = None) -> MemoryNote:
        if not summary.strip():
            raise ValueError("Cannot save empty summary to memory")
        note = MemoryNote(
            id=generate_memory_id(),
            session_id=session_id,
            summary=summary.strip(),
            timestamp=utc_timestamp(),
            topics=list(topics or [DEFAULT_TOPIC]),
            message_count=message_count,
        )
        self.dir.mkdir(parents=True, exist_ok=True)
        path = self.dir / f"{note.date}.md"
        with open(path, "a", encoding="utf-8") as f:
            f.write(self._render(note))
            f.flush()
            os.fsync(f.fileno())
        log.info("Saved memory: %s to %s", note.id, path.name)
        return note

    def search(self, query: str, max_results: int | None = None) -> list[MemoryNote]:
        limit = max_results if max_results is not None else self.max_in_context
        needle = query.strip().lower()
        if not needle:
            return []
        terms = extract_keywords(query) or [needle]
        hits = []
        for note in self._load_all():
            haystack = f"{', '.join(note.topics)}\n{note.summary}".lower()
            score = sum(1 for t in terms if t in haystack)
            if needle in haystack:
                score += 1
            if score:
                note.relevance_score = score
                hits.append(note)
        hits.sort(key=lambda n: (n.relevance_score, n.timestamp), reverse=True)
        return hits[:max(0, limit)]

    def recent(self, limit: int = 10) -> list[MemoryNote]:
        notes = sorted(self._load_all(), key=lambda n: n.timestamp, reverse=True)
        return notes[:limit]

    def delete(self, memory_id: str) -> bool:
        for path in self._files():
            notes = self._parse_file(path)
            kept = [n for n in notes if n.id != memory_id]
            if len(kept) == len(notes):
                continue
            if kept:
                _atomic_write(path, "".join(self._render(n) for n in kept))
            else:
                path.unlink()
            log.info("Deleted memory: %s", memory_id)
            return True
        return False

    def clear(self) -> int:
        removed = 0
        for path in self._files():
            removed += len(self._parse_file(path))
            path.unlink()
        log.info("Cleared %d memories", removed)
        return removed

    def count(self) -> int:
        return len(self._load_all())


MEMORY_BACKENDS: dict[str, type] = {
    "keyword": KeywordMemoryStore,
    "markdown": MarkdownMemoryStore,
}


def create_memory_store(config: Config) -> MemoryStore:
    """Instantiate the configured memory backend."""
    cls = MEMORY_BACKENDS.get(config.memory_backend)
    if cls is None:
        from config import ConfigError
        raise ConfigError(
            f"Unknown memory backend: {config.memory_backend!r} "
            f"(known: {', '.join(MEMORY_BACKENDS)})"
        )
    return cls(config.memory_dir, max_in_context=config.memory_max_in_context)


# ─── Saving sessions ─────────────────────────────────────────────


async def extract_topics(chat: ChatFn, summary: str) -> list[str]:
    """Ask the model for 3-5 short topic phrases; falls back to a generic topic."""
    result = await chat([{"role": "user", "content": TOPICS_PROMPT + summary}])
    text = (result.text or "").strip()
    if result.status != 0 or not text or text.startswith("Error:"):
        log.warning("Topic extraction failed, using default topic")
        return [DEFAULT_TOPIC]
    topics = [t.strip() for t in text.split(",") if t.strip()][:MAX_TOPICS]
    return topics or [DEFAULT_TOPIC]


async def save_session_to_memory(
    store: MemoryStore,
    sessions: SessionStore,
    session_id: str,
    chat: ChatFn,
    min_messages: int = MIN_MESSAGES_FOR_MEMORY,
) -> MemoryNote | None:
    """Summarize a session into a memory note.

    Sessions with fewer than min_messages raw messages are skipped. When the
    session already carries a rolling summary, it is merged with the current
    messages into one combined summary. Returns None when nothing was saved.
    """
    state = sessions.read_state(session_id)
    count = len(state.messages)
    if count < min_messages:
        log.info("Not enough messages to save to memory (%d < %d)", count, min_messages)
        return None

    if state.summary:
        summary = await generate_summary(
            chat, state.messages, state.summary, instruction=COMBINE_INSTRUCTION,
        )
        message_count = state.summary_message_count + count
    else:
        summary = await generate_summary(chat, state.messages)
        message_count = count

    if summary is None:
        log.error("Failed to generate summary for memory (session %s)", session_id)
        return None

    topics = await extract_topics(chat, summary)
    return store.save(session_id, summary, message_count, topics)
