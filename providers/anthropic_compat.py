"""Anthropic Messages API providers.

AnthropicCompatProvider authenticates with a static API key.
AnthropicSubscriptionProvider authenticates with an OAuth bearer token
that is refreshed from auth.json before each call when stale.
Conditional import — fails with clear message if anthropic SDK not installed.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from . import CredentialError, LLMResponse, ToolCall, Usage, to_jsonable
from .oauth import CredentialStore, refresh_credentials

log = logging.getLogger(__name__)

try:
    import anthropic
except ImportError:
    anthropic = None  # type: ignore[assignment]

_STOP_REASONS = {
    "tool_use": "tool_use",
    "max_tokens": "max_tokens",
}


def _require_sdk() -> None:
    if anthropic is None:
        raise RuntimeError("Anthropic provider requires: pip install anthropic")


def _tool_input(raw: Any) -> dict:
    """Tool input is normally a dict; tolerate a JSON string."""
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"raw": raw}


def parse_message(response: Any, request: dict) -> LLMResponse:
    """Normalize a Messages API response: text blocks joined, tool_use blocks collected."""
    texts = []
    tool_calls = []
    for block in response.content:
        if block.type == "text":
            texts.append(block.text)
        elif block.type == "tool_use":
            tool_calls.append(ToolCall(id=block.id, name=block.name,
                                       arguments=_tool_input(block.input)))
    return LLMResponse(
        text="\n".join(texts) if texts else None,
        tool_calls=tool_calls,
        stop_reason=_STOP_REASONS.get(response.stop_reason, "end_turn"),
        usage=Usage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        ),
        raw=to_jsonable(response),
        request=to_jsonable(request),
    )


class AnthropicCompatProvider:
    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 4096,
        base_url: str = "",
    ):
        _require_sdk()
        kwargs: dict[str, Any] = {"api_key": api_key}
        if base_url:
            kwargs["base_url"] = base_url
        self.client = anthropic.AsyncAnthropic(**kwargs)
        self.model = model
        self.max_tokens = max_tokens

    def format_tools(self, tools: list[dict]) -> list[dict]:
        # Generic schemas already use Anthropic's shape
        return [
            {"name": t["name"], "description": t["description"], "input_schema": t["input_schema"]}
            for t in tools
        ]

    def format_system(self, blocks: list[dict]) -> list[dict]:
        """Stable blocks get a prompt-cache breakpoint; the dynamic tail does not."""
        system = []
        for block in blocks:
            entry: dict[str, Any] = {"type": "text", "text": block["text"]}
            if block.get("tier") == "stable":
                entry["cache_control"] = {"type": "ephemeral"}
            system.append(entry)
        return system

    def format_messages(self, messages: list[dict]) -> list[dict]:
        """Convert internal messages; tool results travel in a user turn."""
        result = []
        for msg in messages:
            role = msg.get("role", "")
            if role == "user":
                result.append({"role": "user", "content": msg.get("content", "")})
            elif role == "assistant":
                blocks = self._assistant_blocks(msg)
                if blocks:
                    result.append({"role": "assistant", "content": blocks})
            elif role == "tool_results":
                blocks = [
                    {"type": "tool_result", "tool_use_id": r["tool_call_id"], "content": r["content"]}
                    for r in msg.get("results", [])
                ]
                if blocks:
                    result.append({"role": "user", "content": blocks})
        return result

    @staticmethod
    def _assistant_blocks(msg: dict) -> list[dict]:
        blocks: list[dict] = []
        text = msg.get("text", msg.get("content", ""))
        if text:
            blocks.append({"type": "text", "text": text})
        blocks.extend(
            {"type": "tool_use", "id": tc["id"], "name": tc["name"], "input": tc["arguments"]}
            for tc in msg.get("tool_calls", [])
        )
        return blocks

    async def ensure_fresh_credential(self) -> None:
        """API keys do not expire."""

    async def complete(
        self, system: Any, messages: list[dict], tools: list[dict], **kwargs
    ) -> LLMResponse:
        params: dict[str, Any] = {
            "model": self.model,
            "max_tokens": kwargs.get("max_tokens", self.max_tokens),
            "messages": messages,
        }
        if system:
            params["system"] = system
        if tools:
            params["tools"] = tools

        response = await self.client.messages.create(**params)
        return parse_message(response, params)


class AnthropicSubscriptionProvider(AnthropicCompatProvider):
    """Messages API with an OAuth access token instead of an API key.

    The SDK client is rebuilt whenever the stored access token changes,
    so a refresh by this process or by an external login is picked up
    on the next call.
    """

    name = "claude-sub"

    def __init__(
        self,
        credentials: CredentialStore,
        token_url: str,
        client_id: str,
        model: str,
        max_tokens: int = 4096,
        beta_header: str = "oauth-2025-04-20",
    ):
        _require_sdk()
        self.credentials = credentials
        self.token_url = token_url
        self.client_id = client_id
        self.model = model
        self.max_tokens = max_tokens
        self.beta_header = beta_header
        self.client = None
        self._client_token = ""

    def check_logged_in(self) -> None:
        if self.credentials.get(self.name) is None:
            raise CredentialError(
                f"Not logged in for {self.name}: no credentials in {self.credentials.path}"
            )

    async def ensure_fresh_credential(self) -> None:
        creds = self.credentials.get(self.name)
        if creds is None:
            raise CredentialError(f"Not logged in for {self.name}")
        if creds.is_expired():
            log.info("Access token for %s expired, refreshing", self.name)
            creds = await refresh_credentials(self.token_url, self.client_id, creds)
            self.credentials.set(self.name, creds)
        if creds.access_token != self._client_token:
            headers = {"anthropic-beta": self.beta_header} if self.beta_header else None
            self.client = anthropic.AsyncAnthropic(
                auth_token=creds.access_token, default_headers=headers,
            )
            self._client_token = creds.access_token
