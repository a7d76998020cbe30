"""Session store — conversation state and LLM call log, one pair per session.

Dual storage: state file (atomic snapshots of summary + messages) and a
JSONL audit trail of raw LLM calls (append-only). The audit trail keeps
large provider payloads out of the conversational context.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from context import estimate_message_list_tokens, messages_for_llm

log = logging.getLogger(__name__)

ROLES = ("user", "assistant")

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_HASHED_SUFFIX = re.compile(r"-[0-9a-f]{10}$")


def safe_id(session_id: str) -> str:
    """Map an opaque session id to a filesystem-safe name, one name per id.

    Ids that are already safe map to themselves. Anything rewritten gets a
    hash of the raw id appended, so "a/b" and "a_b" never share files.
    """
    cleaned = _UNSAFE_ID_CHARS.sub("_", session_id)
    if (cleaned == session_id and cleaned not in ("", ".", "..")
            and not _HASHED_SUFFIX.search(cleaned)):
        return cleaned
    digest = hashlib.sha256(session_id.encode("utf-8")).hexdigest()[:10]
    return f"{cleaned or '_'}-{digest}"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _atomic_write(path: Path, data: str, mode: int | None = None) -> None:
    """Write to temp file then rename — atomic on POSIX."""
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    if mode is not None:
        os.chmod(tmp, mode)
    tmp.rename(path)


@dataclass
class SessionState:
    messages: list[dict] = field(default_factory=list)
    summary: str | None = None
    summary_message_count: int = 0

    def to_dict(self) -> dict:
        data: dict[str, Any] = {}
        if self.summary:
            data["summary"] = self.summary
        data["summary_message_count"] = self.summary_message_count
        data["messages"] = self.messages
        return data

    @classmethod
    def from_dict(cls, data: dict) -> SessionState:
        return cls(
            messages=list(data.get("messages", [])),
            summary=data.get("summary") or None,
            summary_message_count=int(data.get("summary_message_count", 0)),
        )


class SessionStore:
    """Reads and writes per-session state files under sessions_dir.

    Every mutation is a read-modify-write of one file with atomic replace,
    so a reader never sees a partial write. There is no cross-session lock.
    """

    def __init__(self, sessions_dir: Path):
        self.dir = sessions_dir
        self.dir.mkdir(parents=True, exist_ok=True)

    def state_path(self, session_id: str) -> Path:
        return self.dir / f"{safe_id(session_id)}.json"

    def log_path(self, session_id: str) -> Path:
        return self.dir / f"{safe_id(session_id)}.llm.jsonl"

    def exists(self, session_id: str) -> bool:
        return self.state_path(session_id).exists()

    def ensure(self, session_id: str) -> None:
        """Create empty state for session_id unless it already exists."""
        if not self.exists(session_id):
            self.write_state(session_id, SessionState())
            log.info("Created session %s", session_id)

    def read_state(self, session_id: str) -> SessionState:
        path = self.state_path(session_id)
        if not path.exists():
            return SessionState()
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("state is not a JSON object")
            return SessionState.from_dict(data)
        except (json.JSONDecodeError, ValueError, TypeError) as e:
            # Keep the bad file for inspection; the session restarts empty.
            corrupt = path.with_name(path.name + ".corrupt")
            log.warning("Corrupt state file for %s, moving to %s: %s", session_id, corrupt.name, e)
            path.rename(corrupt)
            return SessionState()

    def write_state(self, session_id: str, state: SessionState) -> None:
        _atomic_write(self.state_path(session_id), json.dumps(state.to_dict(), ensure_ascii=False))

    def append(self, session_id: str, role: str, content: str) -> None:
        """Append one message to the session."""
        if role not in ROLES:
            raise ValueError(f"Invalid message role: {role!r}")
        state = self.read_state(session_id)
        state.messages.append({"role": role, "content": content})
        self.write_state(session_id, state)

    def read_raw(self, session_id: str) -> list[dict]:
        return self.read_state(session_id).messages

    def read_stats(self, session_id: str) -> dict:
        state = self.read_state(session_id)
        return {
            "message_count": len(state.messages),
            "summarized_count": state.summary_message_count,
            "has_summary": bool(state.summary),
            "estimated_tokens": estimate_message_list_tokens(messages_for_llm(state)),
        }

    def clear(self, session_id: str) -> None:
        """Reset to an empty message list, discarding the summary."""
        self.write_state(session_id, SessionState())
        log.info("Cleared session %s", session_id)

    # --- LLM call log ---

    def append_llm_log(self, session_id: str, entry: dict) -> None:
        """Append an LLM call entry to the session's audit trail with fsync."""
        entry.setdefault("timestamp", utc_timestamp())
        with open(self.log_path(session_id), "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
            f.flush()
            os.fsync(f.fileno())

    def read_llm_log(self, session_id: str) -> list[dict]:
        path = self.log_path(session_id)
        if not path.exists():
            return []
        entries = []
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    log.warning("Skipping malformed LLM log line in %s", path.name)
        return entries
