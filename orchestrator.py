"""Per-message pipeline: command → approval → context → provider → persist.

process_message() is the only entry point the daemon uses. It always
returns reply text; failures inside the LLM path are logged and turned
into a fixed apology so a user never sees a stack trace or silence.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from agentic import ChatResult, chat, run_agentic_loop
from commands import CommandProcessor
from config import ConfigError
from memory import format_for_injection
from providers import CredentialError, create_provider
from tools import memory_tools, shell

if TYPE_CHECKING:
    from approval import ApprovalGate, CommandWhitelist
    from config import Config, RuntimeConfig, RuntimeStore
    from context import ChatFn, ContextManager, PromptBuilder
    from memory import MemoryStore
    from providers import LLMProvider
    from session import SessionStore
    from tools import ToolRegistry

log = logging.getLogger(__name__)

APOLOGY = "Sorry, I encountered an error processing your message."
MEMORY_ACK = "I understand. I have context from our previous conversations that may be relevant."


class Orchestrator:
    def __init__(
        self,
        config: Config,
        sessions: SessionStore,
        context: ContextManager,
        prompt: PromptBuilder,
        tools: ToolRegistry,
        gate: ApprovalGate,
        whitelist: CommandWhitelist,
        runtime: RuntimeStore,
        memory: MemoryStore | None = None,
        provider_factory: Callable[[str, Config, str], LLMProvider] = create_provider,
    ):
        self.config = config
        self.sessions = sessions
        self.context = context
        self.prompt = prompt
        self.tools = tools
        self.gate = gate
        self.runtime = runtime
        self.memory = memory
        self._provider_factory = provider_factory
        self._providers: dict[tuple[str, str], LLMProvider] = {}
        self.commands = CommandProcessor(
            sessions=sessions,
            context=context,
            runtime=runtime,
            whitelist=whitelist,
            memory=memory,
            memory_min_messages=config.memory_min_messages,
            provider_check=self.get_provider,
        )

    def get_provider(self, name: str, model: str = "") -> LLMProvider:
        """Cached provider instance for (name, model). Raises on bad config."""
        key = (name, model)
        provider = self._providers.get(key)
        if provider is None:
            provider = self._provider_factory(name, self.config, model)
            self._providers[key] = provider
            log.info("Provider ready: %s (%s)", name, provider.model)
        return provider

    def _chat_fn(self, rt: RuntimeConfig) -> ChatFn:
        """Tool-free completion bound to the active provider, for summaries."""
        async def _chat(messages: list[dict]) -> ChatResult:
            try:
                provider = self.get_provider(rt.provider, rt.model)
            except (ConfigError, CredentialError) as e:
                log.error("Provider %s unavailable: %s", rt.provider, e)
                return ChatResult(text=f"Error: {e}", status=1, error_text=str(e))
            return await chat(provider, messages, timeout=self.config.llm_timeout)
        return _chat

    def _memory_preamble(self, text: str) -> list[dict]:
        notes = self.memory.search(text) if self.memory is not None else []
        if not notes:
            return []
        log.info("Injecting %d memories into new conversation", len(notes))
        return [
            {"role": "user", "content": format_for_injection(notes)},
            {"role": "assistant", "content": MEMORY_ACK},
        ]

    async def process_message(self, session_id: str, text: str, source: str = "pipe") -> str:
        rt = self.runtime.load()
        chat_fn = self._chat_fn(rt)
        self.sessions.ensure(session_id)

        result = await self.commands.process(session_id, text, chat_fn)
        if result.handled:
            return result.output

        if self.gate.pending_for(session_id) is not None:
            return self.gate.resolve(session_id, text)

        return await self._llm_turn(session_id, text, source, rt, chat_fn)

    async def _llm_turn(self, session_id: str, text: str, source: str,
                        rt: RuntimeConfig, chat_fn: ChatFn) -> str:
        self.sessions.append(session_id, "user", text)
        messages: list[dict] = []
        provider_name, model = rt.provider, rt.model
        started = time.monotonic()
        try:
            await self.context.maybe_compact(session_id, chat_fn)
            messages = self.context.messages_for_llm(session_id)
            if len(messages) <= 2 and rt.memory_enabled:
                messages = self._memory_preamble(text) + messages

            provider = self.get_provider(rt.provider, rt.model)
            model = provider.model
            system = provider.format_system(
                self.prompt.build(tools_enabled=rt.tools_enabled, source=source)
            )
            shell.set_current_session(session_id)
            memory_tools.set_enabled(rt.memory_enabled)
            tools = self.tools.get_schemas() if rt.tools_enabled else None
            result = await run_agentic_loop(
                provider, system, messages, tools,
                self.tools if rt.tools_enabled else None,
                max_iterations=self.config.max_tool_iterations,
                timeout=self.config.llm_timeout,
            )
        except Exception as e:
            log.exception("Session %s: LLM turn failed", session_id)
            result = ChatResult(text="", status=1, error_text=str(e) or type(e).__name__)

        reply = result.text if result.text and result.text.strip() else APOLOGY
        if not result.ok:
            log.warning("Session %s: reply status %d (%s)", session_id,
                        result.status, result.error_text or "no detail")
        self.sessions.append(session_id, "assistant", reply)

        entry = {
            "source": source,
            "provider": provider_name,
            "model": model,
            "status": result.status,
            "elapsed": round(time.monotonic() - started, 3),
            "request_messages": messages,
            "raw_provider_request": result.raw_request,
            "raw_provider_response": result.raw_response,
        }
        if result.error_text:
            entry["error_text"] = result.error_text
        if result.error_raw is not None:
            entry["error_raw"] = result.error_raw
        try:
            self.sessions.append_llm_log(session_id, entry)
        except OSError as e:
            log.error("Session %s: failed to write LLM log: %s", session_id, e)
        return reply
