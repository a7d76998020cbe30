"""Provider-agnostic bounded tool-use loop.

Takes a provider, messages, tools, and loops until the model answers in
plain text, a tool asks for human approval, an error occurs, or the
iteration cap is hit. Each iteration yields exactly one StepOutcome, so
every exit path is explicit.

Vendor and transport failures are caught here and converted into a
ChatResult with a non-zero status; they never propagate to callers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

from providers import LLMProvider, to_jsonable
from tools import ToolRegistry

log = logging.getLogger(__name__)

MAX_TOOL_ITERATIONS = 10

TOO_MANY_TOOL_CALLS = "Sorry, I made too many tool calls. Please try a simpler request."
EMPTY_RESPONSE = "Sorry, I received an empty response."


@dataclass
class ChatResult:
    text: str
    status: int = 0
    raw_request: Any = None
    raw_response: Any = None
    error_text: str = ""
    error_raw: Any = None
    iterations: int = 0

    @property
    def ok(self) -> bool:
        return self.status == 0


# ─── Step outcomes ───────────────────────────────────────────────


@dataclass
class ContinueWithToolResults:
    results_msg: dict


@dataclass
class FinalText:
    text: str


@dataclass
class ApprovalRequired:
    prompt: str
    command: str = ""


@dataclass
class LoopError:
    message: str
    raw: Any = None


StepOutcome = ContinueWithToolResults | FinalText | ApprovalRequired | LoopError


class _Trace:
    """Remembers the last raw request/response pair for the call log."""

    def __init__(self):
        self.request: Any = None
        self.response: Any = None

    def result(self, text: str, status: int, iterations: int, **extra: Any) -> ChatResult:
        return ChatResult(
            text=text,
            status=status,
            raw_request=self.request,
            raw_response=self.response,
            iterations=iterations,
            **extra,
        )


def _error_payload(exc: BaseException) -> Any:
    """Raw error body from vendor SDK exceptions, if they carry one."""
    body = getattr(exc, "body", None)
    if body is not None:
        return to_jsonable(body)
    return {"type": type(exc).__name__, "message": str(exc)}


async def _step(
    provider: LLMProvider,
    system: Any,
    messages: list[dict],
    fmt_tools: list[dict],
    tool_executor: ToolRegistry | None,
    timeout: float,
    trace: _Trace,
) -> StepOutcome:
    fmt_messages = provider.format_messages(messages)
    try:
        await provider.ensure_fresh_credential()
        response = await asyncio.wait_for(
            provider.complete(system, fmt_messages, fmt_tools),
            timeout=timeout,
        )
    except TimeoutError:
        log.error("API call timed out after %.0fs", timeout)
        return LoopError(f"request timed out after {timeout:.0f}s")
    except Exception as e:
        log.error("Provider %s call failed: %s", getattr(provider, "name", "?"), e)
        return LoopError(str(e) or type(e).__name__, raw=_error_payload(e))

    trace.request = response.request
    trace.response = response.raw

    if not response.tool_calls or tool_executor is None:
        if response.stop_reason == "max_tokens":
            log.warning("Response truncated (max_tokens)")
        return FinalText(response.text or "")

    messages.append(response.to_internal_message())

    # Sequential: an approval request must stop the remaining calls.
    results = []
    for tc in response.tool_calls:
        log.info("Tool call: %s(%s)", tc.name, _truncate_args(tc.arguments))
        result = await tool_executor.execute(tc.name, tc.arguments)
        if result.get("approval_required"):
            return ApprovalRequired(
                prompt=result.get("prompt") or result.get("error", ""),
                command=result.get("command", ""),
            )
        results.append({
            "tool_call_id": tc.id,
            "content": json.dumps(result, ensure_ascii=False),
        })
    return ContinueWithToolResults({"role": "tool_results", "results": results})


async def run_agentic_loop(
    provider: LLMProvider,
    system: Any,
    messages: list[dict],
    tools: list[dict] | None,
    tool_executor: ToolRegistry | None,
    max_iterations: int = MAX_TOOL_ITERATIONS,
    timeout: float = 120.0,
) -> ChatResult:
    """Run the bounded tool loop and return the final text with raw payloads.

    Args:
        provider: LLM provider instance.
        system: Formatted system prompt (provider-specific format).
        messages: Conversation messages in internal format. Not mutated.
        tools: Tool schemas in generic format, or None to disable tools.
        tool_executor: ToolRegistry for executing tool calls.
        max_iterations: Max provider calls for one reply.
        timeout: Timeout per API call in seconds.

    Returns:
        ChatResult. status is 0 for a plain-text answer or an approval
        prompt, 1 for errors, empty answers, and the iteration cap.
    """
    max_iterations = max(1, max_iterations)
    fmt_tools = provider.format_tools(tools) if tools else []
    history = list(messages)
    trace = _Trace()

    for iteration in range(1, max_iterations + 1):
        outcome = await _step(provider, system, history, fmt_tools,
                              tool_executor, timeout, trace)

        if isinstance(outcome, ContinueWithToolResults):
            history.append(outcome.results_msg)
            continue

        if isinstance(outcome, FinalText):
            if outcome.text.strip():
                return trace.result(outcome.text, 0, iteration)
            log.warning("Provider returned an empty response (iteration %d)", iteration)
            return trace.result(EMPTY_RESPONSE, 1, iteration, error_text="empty response")

        if isinstance(outcome, ApprovalRequired):
            log.info("Tool loop suspended for approval of %r", outcome.command)
            return trace.result(outcome.prompt, 0, iteration)

        return trace.result(
            f"Error: {outcome.message}", 1, iteration,
            error_text=outcome.message, error_raw=outcome.raw,
        )

    log.warning("Max tool iterations (%d) reached", max_iterations)
    return trace.result(TOO_MANY_TOOL_CALLS, 1, max_iterations,
                        error_text="too many tool calls")


async def chat(
    provider: LLMProvider,
    messages: list[dict],
    system_blocks: list[dict] | None = None,
    timeout: float = 120.0,
) -> ChatResult:
    """Single tool-free completion (used for summaries and topic extraction)."""
    system = provider.format_system(system_blocks) if system_blocks else None
    return await run_agentic_loop(
        provider, system, messages, tools=None, tool_executor=None,
        max_iterations=1, timeout=timeout,
    )


def _truncate_args(args: dict, max_len: int = 200) -> str:
    """Truncate tool arguments for logging."""
    s = str(args)
    return s[:max_len] + "..." if len(s) > max_len else s
