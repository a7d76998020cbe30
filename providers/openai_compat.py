"""OpenAI chat-completions providers: OpenAI itself and Gemini.

Gemini is reached through Google's OpenAI-compatible endpoint, so both
providers share one implementation and differ only by name, base URL and
key. Conditional import — fails with clear message if openai SDK not
installed.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from . import LLMResponse, ToolCall, Usage, to_jsonable

log = logging.getLogger(__name__)

try:
    import openai
except ImportError:
    openai = None  # type: ignore[assignment]

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"

_STOP_REASONS = {
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
}


def parse_arguments(raw: Any) -> dict:
    """Tool arguments arrive as a JSON string; keep unparseable text under "raw"."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"raw": raw}


def parse_completion(response: Any, request: dict) -> LLMResponse:
    """Normalize a chat.completions response object."""
    choice = response.choices[0]
    message = choice.message

    tool_calls = []
    for i, tc in enumerate(message.tool_calls or []):
        tool_calls.append(ToolCall(
            # Gemini's compatibility layer may omit call ids
            id=tc.id or f"call_{i}",
            name=tc.function.name,
            arguments=parse_arguments(tc.function.arguments),
        ))

    u = getattr(response, "usage", None)
    return LLMResponse(
        text=message.content,
        tool_calls=tool_calls,
        stop_reason=_STOP_REASONS.get(choice.finish_reason, "end_turn"),
        usage=Usage(
            input_tokens=getattr(u, "prompt_tokens", 0) or 0,
            output_tokens=getattr(u, "completion_tokens", 0) or 0,
        ),
        raw=to_jsonable(response),
        request=to_jsonable(request),
    )


class OpenAICompatProvider:
    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 4096,
        base_url: str = "",
        name: str = "openai",
    ):
        if openai is None:
            raise RuntimeError(
                f"{name} provider requires: pip install openai"
            )
        kwargs: dict = {"api_key": api_key}
        if base_url:
            kwargs["base_url"] = base_url
        self.client = openai.AsyncOpenAI(**kwargs)
        self.name = name
        self.model = model
        self.max_tokens = max_tokens

    def format_tools(self, tools: list[dict]) -> list[dict]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t["name"],
                    "description": t["description"],
                    "parameters": t["input_schema"],
                },
            }
            for t in tools
        ]

    def format_system(self, blocks: list[dict]) -> str:
        return "\n\n".join(b["text"] for b in blocks)

    def format_messages(self, messages: list[dict]) -> list[dict]:
        """Convert internal messages; one tool_results entry fans out to N tool messages."""
        result: list[dict] = []
        for msg in messages:
            role = msg.get("role", "")
            if role == "user":
                result.append({"role": "user", "content": msg.get("content", "")})
            elif role == "assistant":
                result.append(self._assistant_message(msg))
            elif role == "tool_results":
                result.extend(
                    {
                        "role": "tool",
                        "tool_call_id": r["tool_call_id"],
                        "content": r["content"] if isinstance(r["content"], str)
                                   else json.dumps(r["content"]),
                    }
                    for r in msg.get("results", [])
                )
        return result

    @staticmethod
    def _assistant_message(msg: dict) -> dict:
        text = msg.get("text", msg.get("content", ""))
        calls = msg.get("tool_calls", [])
        entry: dict[str, Any] = {"role": "assistant", "content": text or ""}
        if calls:
            if not text:
                entry.pop("content")
            entry["tool_calls"] = [
                {
                    "id": tc["id"],
                    "type": "function",
                    "function": {
                        "name": tc["name"],
                        "arguments": tc["arguments"] if isinstance(tc["arguments"], str)
                                     else json.dumps(tc["arguments"]),
                    },
                }
                for tc in calls
            ]
        return entry

    async def ensure_fresh_credential(self) -> None:
        """API keys do not expire."""

    async def complete(
        self, system: Any, messages: list[dict], tools: list[dict], **kwargs
    ) -> LLMResponse:
        api_messages = [{"role": "system", "content": system}] if system else []
        api_messages.extend(messages)

        params: dict[str, Any] = {
            "model": self.model,
            "messages": api_messages,
            "max_tokens": kwargs.get("max_tokens", self.max_tokens),
        }
        if tools:
            params["tools"] = tools

        response = await self.client.chat.completions.create(**params)
        result = parse_completion(response, params)
        log.debug("%s: %d in / %d out tokens, stop=%s", self.name,
                  result.usage.input_tokens, result.usage.output_tokens, result.stop_reason)
        return result
