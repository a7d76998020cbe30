"""Context management — token budgeting, rolling summarization, system prompt.

Token counts are a conservative character-based estimate, not a real
tokenizer. When a session's assembled context crosses the budget, older
messages are folded into a rolling summary and only a recent tail is kept
verbatim.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentic import ChatResult
    from session import SessionState, SessionStore

    ChatFn = Callable[[list[dict]], Awaitable[ChatResult]]

log = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 20
MIN_MESSAGES_TO_COMPACT = 4
MIN_MESSAGES_TO_SUMMARIZE = 2
MIN_KEEP_MESSAGES = 2

SUMMARY_INSTRUCTION = (
    "Please provide a concise summary of the following conversation. Focus on key "
    "topics discussed, important information shared, any decisions or conclusions "
    "reached, and relevant context for continuing the conversation. "
    "Keep it under 200 words."
)

SUMMARY_PREAMBLE = (
    "Previous conversation summary:\n{summary}\n\n"
    "(This summarizes our earlier discussion. Continue from here.)"
)
SUMMARY_ACK = "I understand. I have context from our previous conversation. How can I help you?"

DEFAULT_PERSONA = "You are Bashobot, a helpful personal AI assistant. Be concise and helpful."
TOOLS_NOTE = (
    "You have access to tools for executing bash commands and reading/writing files. "
    "Use them when appropriate to help the user."
)


def estimate_tokens(text: str) -> int:
    """Approximate token count: ceiling of characters / CHARS_PER_TOKEN."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_list_tokens(messages: list[dict]) -> int:
    """Sum of content estimates plus a fixed overhead per message."""
    return sum(
        estimate_tokens(m.get("content", "")) + MESSAGE_OVERHEAD_TOKENS
        for m in messages
    )


def messages_for_llm(state: SessionState) -> list[dict]:
    """Messages to send: summary preamble (if any) followed by the raw list."""
    if not state.summary:
        return list(state.messages)
    return [
        {"role": "user", "content": SUMMARY_PREAMBLE.format(summary=state.summary)},
        {"role": "assistant", "content": SUMMARY_ACK},
        *state.messages,
    ]


def plan_keep_count(messages: list[dict], keep_recent_tokens: int) -> int:
    """How many trailing messages fit in the keep-recent budget (at least 2)."""
    total = len(messages)
    keep = MIN_KEEP_MESSAGES
    running = 0
    for i in range(total - 1, -1, -1):
        tokens = estimate_tokens(messages[i].get("content", ""))
        if running + tokens > keep_recent_tokens:
            break
        running += tokens
        keep = max(keep, total - i)
    return min(keep, total)


def format_transcript(messages: list[dict]) -> str:
    return "\n\n".join(f"{m.get('role', '')}: {m.get('content', '')}" for m in messages)


def _is_failed(result: ChatResult) -> bool:
    text = (result.text or "").strip()
    return result.status != 0 or not text or text.startswith("Error:")


async def generate_summary(
    chat: ChatFn,
    messages: list[dict],
    previous_summary: str | None = None,
    instruction: str = SUMMARY_INSTRUCTION,
) -> str | None:
    """Ask the model for a summary of messages. Returns None on failure."""
    parts = [instruction]
    if previous_summary:
        parts.append(f"Previous summary:\n{previous_summary}")
    parts.append(f"Conversation:\n{format_transcript(messages)}")
    parts.append("Now provide the summary:")
    request = [{"role": "user", "content": "\n\n".join(parts)}]

    result = await chat(request)
    if _is_failed(result):
        log.error("Summary generation failed (status %d): %s",
                  result.status, (result.text or "")[:200])
        return None
    return result.text.strip()


@dataclass
class CompactionResult:
    compacted: bool
    reason: str = ""
    summarized_count: int = 0
    kept_count: int = 0
    summary: str = ""


class ContextManager:
    """Decides when to compact a session and performs the compaction."""

    def __init__(
        self,
        sessions: SessionStore,
        max_context_tokens: int = 110000,
        keep_recent_tokens: int = 2000,
    ):
        self.sessions = sessions
        self.max_context_tokens = max_context_tokens
        self.keep_recent_tokens = keep_recent_tokens

    def messages_for_llm(self, session_id: str) -> list[dict]:
        return messages_for_llm(self.sessions.read_state(session_id))

    def stats(self, session_id: str) -> dict:
        stats = self.sessions.read_stats(session_id)
        stats["token_limit"] = self.max_context_tokens
        return stats

    async def maybe_compact(self, session_id: str, chat: ChatFn) -> CompactionResult:
        """Summarize older messages if the session is over the token budget."""
        state = self.sessions.read_state(session_id)
        tokens = estimate_message_list_tokens(messages_for_llm(state))
        if tokens < self.max_context_tokens:
            return CompactionResult(compacted=False, reason="under_threshold")

        messages = state.messages
        total = len(messages)
        log.info("Session %s at ~%d tokens (limit %d), compacting",
                 session_id, tokens, self.max_context_tokens)
        if total < MIN_MESSAGES_TO_COMPACT:
            log.warning("Session %s over budget but only %d messages, not compacting",
                        session_id, total)
            return CompactionResult(compacted=False, reason="too_few_messages")

        keep_count = plan_keep_count(messages, self.keep_recent_tokens)
        summarize_count = total - keep_count
        if summarize_count < MIN_MESSAGES_TO_SUMMARIZE:
            log.warning("Session %s: only %d messages outside the recent tail, not compacting",
                        session_id, summarize_count)
            return CompactionResult(compacted=False, reason="nothing_to_summarize")

        summary = await generate_summary(chat, messages[:summarize_count], state.summary)
        if summary is None:
            return CompactionResult(compacted=False, reason="summary_failed")

        state.summary = summary
        state.summary_message_count += summarize_count
        state.messages = messages[summarize_count:]
        self.sessions.write_state(session_id, state)
        log.info("Compacted session %s: %d messages → summary + %d recent",
                 session_id, summarize_count, keep_count)
        return CompactionResult(
            compacted=True,
            summarized_count=summarize_count,
            kept_count=keep_count,
            summary=summary,
        )

    async def force_compact(self, session_id: str, chat: ChatFn) -> CompactionResult:
        """Summarize the entire message list, leaving only the summary."""
        state = self.sessions.read_state(session_id)
        total = len(state.messages)
        if total < MIN_MESSAGES_TO_SUMMARIZE:
            return CompactionResult(compacted=False, reason="too_few_messages")

        summary = await generate_summary(chat, state.messages, state.summary)
        if summary is None:
            return CompactionResult(compacted=False, reason="summary_failed")

        state.summary = summary
        state.summary_message_count += total
        state.messages = []
        self.sessions.write_state(session_id, state)
        log.info("Force-compacted session %s: %d messages", session_id, total)
        return CompactionResult(compacted=True, summarized_count=total, summary=summary)


class PromptBuilder:
    """Builds system prompt blocks from workspace files.

    Returns list of {"text": str, "tier": "stable"|"dynamic"}. Providers that
    support prompt caching cache the stable block across turns.
    """

    def __init__(self, workspace: Path, files: list[str], persona: str = DEFAULT_PERSONA):
        self.workspace = workspace
        self.files = files
        self.persona = persona

    def build(self, tools_enabled: bool = True, source: str = "") -> list[dict]:
        stable = self._read_files(self.files) or self.persona
        if tools_enabled:
            stable += "\n\n" + TOOLS_NOTE
        blocks = [{"text": stable, "tier": "stable"}]

        now = time.strftime("%a, %d. %b %Y - %H:%M %Z")
        dynamic = [f"Current date/time: {now}"]
        if source == "heartbeat":
            dynamic.append(
                "Session type: automated heartbeat. Replies are logged, not delivered."
            )
        elif source:
            dynamic.append(f"Message source: {source}")
        blocks.append({"text": "\n".join(dynamic), "tier": "dynamic"})
        return blocks

    def _read_files(self, file_names: list[str]) -> str:
        """Read and concatenate workspace files with boundary markers."""
        parts = []
        for name in file_names:
            path = self.workspace / name
            if path.exists():
                try:
                    content = path.read_text(encoding="utf-8")
                    parts.append(f"--- {name} ---\n{content}")
                except (OSError, UnicodeDecodeError) as e:
                    log.warning("Failed to read %s: %s", path, e)
            else:
                log.debug("Context file not found: %s", path)
        return "\n\n".join(parts)
