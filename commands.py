"""Slash commands — intercepted before the LLM.

Any input starting with "/" is handled here and never reaches the model;
unknown commands get an error reply. Settings changed by commands go to
the runtime overlay so the next message picks them up.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from approval import extract_command_name
from memory import MIN_MESSAGES_FOR_MEMORY, save_session_to_memory
from providers import get_spec, known_model_prefixes, provider_for_model

if TYPE_CHECKING:
    from approval import CommandWhitelist
    from config import RuntimeStore
    from context import ChatFn, ContextManager
    from memory import MemoryStore
    from session import SessionStore

log = logging.getLogger(__name__)

HELP_TEXT = """Available commands:
  /model [name]  - Show or switch the current model
  /tools [on|off]- Show or toggle tool usage
  /allow [cmd]   - List or add whitelisted shell commands
  /memory [list|save|search <query>|clear|on|off]
                 - Manage long-term memory
  /context       - Show session context/token usage
  /clear         - Clear conversation history
  /summarize     - Force summarize the conversation (alias: /compact)
  /help          - Show this help message
  /exit          - Exit the CLI session (CLI only)

Any other input is sent to the AI assistant."""

TOOL_LINES = (
    "  - bash: Execute shell commands",
    "  - read_file: Read file contents",
    "  - write_file: Write to files",
    "  - list_files: List directory contents",
    "  - memory_search: Search past conversations",
)

_ON = ("on", "true", "enable", "enabled")
_OFF = ("off", "false", "disable", "disabled")


@dataclass
class CommandResult:
    handled: bool
    output: str = ""


NOT_A_COMMAND = CommandResult(handled=False)


class CommandProcessor:
    def __init__(
        self,
        sessions: SessionStore,
        context: ContextManager,
        runtime: RuntimeStore,
        whitelist: CommandWhitelist,
        memory: MemoryStore | None = None,
        memory_min_messages: int = MIN_MESSAGES_FOR_MEMORY,
        provider_check: Callable[[str, str], object] | None = None,
    ):
        self.sessions = sessions
        self.context = context
        self.runtime = runtime
        self.whitelist = whitelist
        self.memory = memory
        self.memory_min_messages = memory_min_messages
        # Called with (provider, model) before a /model switch; raises if unusable
        self.provider_check = provider_check
        self._handlers: dict[str, Callable[[str, str, ChatFn], Awaitable[str]]] = {
            "help": self._cmd_help,
            "model": self._cmd_model,
            "tools": self._cmd_tools,
            "allow": self._cmd_allow,
            "memory": self._cmd_memory,
            "context": self._cmd_context,
            "clear": self._cmd_clear,
            "summarize": self._cmd_summarize,
            "compact": self._cmd_summarize,
        }

    async def process(self, session_id: str, text: str, chat: ChatFn) -> CommandResult:
        """Handle text if it is a slash command; otherwise pass it through."""
        stripped = text.strip()
        if not stripped.startswith("/"):
            return NOT_A_COMMAND

        head, _, args = stripped.partition(" ")
        cmd = head[1:]
        handler = self._handlers.get(cmd.lower())
        if handler is None:
            return CommandResult(
                handled=True,
                output=f"Unknown command: /{cmd}\nType /help for available commands.",
            )
        log.info("Session %s: command /%s", session_id, cmd.lower())
        return CommandResult(handled=True, output=await handler(session_id, args.strip(), chat))

    # ─── Handlers ────────────────────────────────────────────────

    async def _cmd_help(self, session_id: str, args: str, chat: ChatFn) -> str:
        return HELP_TEXT

    async def _cmd_model(self, session_id: str, args: str, chat: ChatFn) -> str:
        rt = self.runtime.load()
        if not args:
            model = rt.model or get_spec(rt.provider).default_model
            return "\n".join([
                f"Current provider: {rt.provider}",
                f"Current model: {model}",
                "",
                "Usage: /model <modelname>",
                "Examples:",
                "  /model gemini-2.5-pro",
                "  /model claude-sonnet-4-20250514",
                "  /model gpt-4o",
            ])

        model = args.split()[0]
        provider = provider_for_model(model, current=rt.provider)
        if provider is None:
            return (
                f"Unknown model: {model}\n"
                f"Model name should start with: {', '.join(known_model_prefixes())}"
            )
        if self.provider_check is not None:
            try:
                self.provider_check(provider, model)
            except Exception as e:
                log.warning("Cannot switch to %s/%s: %s", provider, model, e)
                return f"Cannot switch to {model}: {e}"
        self.runtime.update(provider=provider, model=model)
        return f"Switched to {provider} model: {model}"

    async def _cmd_tools(self, session_id: str, args: str, chat: ChatFn) -> str:
        action = args.lower()
        if not action:
            enabled = self.runtime.load().tools_enabled
            lines = [f"Tools enabled: {str(enabled).lower()}", ""]
            if enabled:
                lines += ["Available tools:", *TOOL_LINES, ""]
            lines.append("Usage: /tools on|off")
            return "\n".join(lines)
        if action in _ON:
            self.runtime.update(tools_enabled=True)
            return "Tools enabled."
        if action in _OFF:
            self.runtime.update(tools_enabled=False)
            return "Tools disabled."
        return f"Unknown option: {args}\nUsage: /tools on|off"

    async def _cmd_allow(self, session_id: str, args: str, chat: ChatFn) -> str:
        if not args:
            names = self.whitelist.names()
            if not names:
                return "No whitelisted commands.\n\nUsage: /allow <command>"
            listing = "\n".join(f"  - {n}" for n in names)
            return f"Whitelisted commands:\n{listing}\n\nUsage: /allow <command>"
        name = extract_command_name(args)
        if not name:
            return "Usage: /allow <command>"
        if self.whitelist.add(name):
            return f"Command allowed: {name}"
        return f"Command already allowed: {name}"

    async def _cmd_memory(self, session_id: str, args: str, chat: ChatFn) -> str:
        sub, _, rest = args.partition(" ")
        sub = sub.lower() or "list"
        rest = rest.strip()

        if sub in _ON:
            self.runtime.update(memory_enabled=True)
            return "Memory enabled."
        if sub in _OFF:
            self.runtime.update(memory_enabled=False)
            return "Memory disabled."

        if self.memory is None:
            return "Memory system not available."
        if not self.runtime.load().memory_enabled:
            return "Memory system is disabled.\nEnable with: /memory on"

        if sub == "list":
            return self._memory_status()
        if sub == "save":
            note = await self._save_to_memory(session_id, chat)
            if note is None:
                return "Saving session to memory...\nNothing to save (not enough messages or save failed)"
            return f"Saving session to memory...\nSaved as: {note.id}"
        if sub == "search":
            if not rest:
                return "Usage: /memory search <query>"
            hits = self.memory.search(rest, max_results=5)
            if not hits:
                return f"Searching memories for: {rest}\n\nNo relevant memories found."
            body = "\n\n".join(
                f"[{n.date}] Score: {n.relevance_score}\n"
                f"  Topics: {', '.join(n.topics)}\n"
                f"  {n.summary[:150]}..."
                for n in hits
            )
            return f"Searching memories for: {rest}\n\n{body}"
        if sub == "clear":
            return f"Cleared {self.memory.clear()} memories."
        return f"Unknown option: {sub}\nUsage: /memory [list|save|search <query>|clear|on|off]"

    def _memory_status(self) -> str:
        lines = [
            "Memory System Status",
            "====================",
            f"Total memories: {self.memory.count()}",
            f"Max in context: {self.memory.max_in_context}",
        ]
        recent = self.memory.recent(5)
        if recent:
            lines += ["", "Recent memories:", ""]
            for n in recent:
                lines.append(f"[{n.date}] {', '.join(n.topics)}")
                lines.append(f"  {n.summary[:100]}...")
                lines.append("")
        return "\n".join(lines).rstrip()

    async def _save_to_memory(self, session_id: str, chat: ChatFn):
        return await save_session_to_memory(
            self.memory, self.sessions, session_id, chat,
            min_messages=self.memory_min_messages,
        )

    async def _cmd_context(self, session_id: str, args: str, chat: ChatFn) -> str:
        stats = self.context.stats(session_id)
        return "\n".join([
            f"Session: {session_id}",
            f"Messages in context: {stats['message_count']}",
            f"Previously summarized: {stats['summarized_count']} messages",
            f"Has summary: {'yes' if stats['has_summary'] else 'no'}",
            f"Estimated tokens: ~{stats['estimated_tokens']}",
            f"Token limit: {stats['token_limit']}",
        ])

    async def _cmd_clear(self, session_id: str, args: str, chat: ChatFn) -> str:
        if self.memory is not None and self.runtime.load().memory_enabled:
            try:
                note = await self._save_to_memory(session_id, chat)
            except (OSError, ValueError) as e:
                log.error("Session %s: saving to memory before clear failed: %s", session_id, e)
            else:
                if note is not None:
                    log.info("Session %s saved to memory as %s before clear", session_id, note.id)
        self.sessions.clear(session_id)
        return "Conversation cleared. Starting fresh!"

    async def _cmd_summarize(self, session_id: str, args: str, chat: ChatFn) -> str:
        result = await self.context.force_compact(session_id, chat)
        if result.compacted:
            return (
                f"Session summarized. {result.summarized_count} messages condensed."
                f"\n\nSummary:\n{result.summary}"
            )
        if result.reason == "too_few_messages":
            return "Not enough messages to summarize."
        return "Failed to generate summary."
