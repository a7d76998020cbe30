"""LLM Provider interface, shared types, and the provider registry.

Defines the contract between the agentic loop and any LLM backend.
Vendor request/response shapes stay inside implementations; the loop
and the orchestrator only see LLMResponse.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from config import Config

log = logging.getLogger(__name__)


class CredentialError(Exception):
    """Raised when a provider credential is missing or cannot be refreshed."""
    pass


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class LLMResponse:
    text: str | None
    tool_calls: list[ToolCall]
    stop_reason: str  # "end_turn" | "tool_use" | "max_tokens"
    usage: Usage
    raw: Any = None
    request: Any = None

    def to_internal_message(self) -> dict:
        """Convert to the loop's internal assistant message format."""
        msg: dict[str, Any] = {"role": "assistant"}
        if self.text:
            msg["text"] = self.text
        if self.tool_calls:
            msg["tool_calls"] = [
                {"id": tc.id, "name": tc.name, "arguments": tc.arguments}
                for tc in self.tool_calls
            ]
        return msg


def to_jsonable(obj: Any) -> Any:
    """Best-effort conversion of SDK objects to plain JSON data for logging."""
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(v) for v in obj]
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    return str(obj)


class LLMProvider(Protocol):
    """Protocol for LLM provider implementations."""

    name: str
    model: str

    def format_tools(self, tools: list[dict]) -> list[dict]:
        """Convert generic tool schemas to provider-specific format."""
        ...

    def format_system(self, blocks: list[dict]) -> Any:
        """Convert system prompt blocks to provider format."""
        ...

    def format_messages(self, messages: list[dict]) -> list[dict]:
        """Convert internal message format to provider's API format."""
        ...

    async def ensure_fresh_credential(self) -> None:
        """Refresh the credential if it is stale. Raises CredentialError."""
        ...

    async def complete(
        self, system: Any, messages: list[dict], tools: list[dict], **kwargs
    ) -> LLMResponse:
        """Send to LLM, return normalized response."""
        ...


# ─── Registry ────────────────────────────────────────────────────


@dataclass
class ProviderSpec:
    name: str
    factory: Callable[[Config, str], LLMProvider]
    default_model: str
    model_prefixes: tuple[str, ...]
    description: str = ""


def _require_key(config: Config, key_name: str, env_hint: str) -> str:
    key = config.api_key(key_name)
    if not key:
        raise CredentialError(f"No API key for {key_name}: set {env_hint}")
    return key


def _make_anthropic(config: Config, model: str) -> LLMProvider:
    from .anthropic_compat import AnthropicCompatProvider
    pcfg = config.provider_config("anthropic")
    return AnthropicCompatProvider(
        api_key=_require_key(config, "anthropic", "ANTHROPIC_API_KEY"),
        model=model,
        max_tokens=pcfg.get("max_tokens", config.max_tokens),
        base_url=pcfg.get("base_url", ""),
    )


def _make_claude_sub(config: Config, model: str) -> LLMProvider:
    from .anthropic_compat import AnthropicSubscriptionProvider
    from .oauth import DEFAULT_ANTHROPIC_TOKEN_URL, CredentialStore
    pcfg = config.provider_config("claude-sub")
    client_id = pcfg.get("client_id", "")
    if not client_id:
        raise CredentialError("[llm.providers.claude-sub] client_id is required")
    provider = AnthropicSubscriptionProvider(
        credentials=CredentialStore(config.credentials_file),
        token_url=pcfg.get("token_url", DEFAULT_ANTHROPIC_TOKEN_URL),
        client_id=client_id,
        model=model,
        max_tokens=pcfg.get("max_tokens", config.max_tokens),
        beta_header=pcfg.get("beta_header", "oauth-2025-04-20"),
    )
    provider.check_logged_in()
    return provider


def _make_openai(config: Config, model: str) -> LLMProvider:
    from .openai_compat import OpenAICompatProvider
    pcfg = config.provider_config("openai")
    return OpenAICompatProvider(
        api_key=_require_key(config, "openai", "OPENAI_API_KEY"),
        model=model,
        max_tokens=pcfg.get("max_tokens", config.max_tokens),
        base_url=pcfg.get("base_url", ""),
        name="openai",
    )


def _make_gemini(config: Config, model: str) -> LLMProvider:
    from .openai_compat import GEMINI_OPENAI_BASE_URL, OpenAICompatProvider
    pcfg = config.provider_config("gemini")
    return OpenAICompatProvider(
        api_key=_require_key(config, "gemini", "GEMINI_API_KEY"),
        model=model,
        max_tokens=pcfg.get("max_tokens", config.max_tokens),
        base_url=pcfg.get("base_url", GEMINI_OPENAI_BASE_URL),
        name="gemini",
    )


PROVIDERS: dict[str, ProviderSpec] = {
    "gemini": ProviderSpec(
        name="gemini",
        factory=_make_gemini,
        default_model="gemini-2.5-flash",
        model_prefixes=("gemini-",),
        description="Google Gemini (API key)",
    ),
    "anthropic": ProviderSpec(
        name="anthropic",
        factory=_make_anthropic,
        default_model="claude-sonnet-4-20250514",
        model_prefixes=("claude-", "anthropic-"),
        description="Anthropic Claude (API key)",
    ),
    "claude-sub": ProviderSpec(
        name="claude-sub",
        factory=_make_claude_sub,
        default_model="claude-sonnet-4-20250514",
        model_prefixes=("claude-", "anthropic-"),
        description="Anthropic Claude (subscription, OAuth)",
    ),
    "openai": ProviderSpec(
        name="openai",
        factory=_make_openai,
        default_model="gpt-4o",
        model_prefixes=("gpt-", "o1-", "o3-", "o4-"),
        description="OpenAI (API key)",
    ),
}


def get_spec(name: str) -> ProviderSpec:
    from config import ConfigError
    spec = PROVIDERS.get(name)
    if spec is None:
        raise ConfigError(
            f"Unknown provider: {name!r} (known: {', '.join(PROVIDERS)})"
        )
    return spec


def create_provider(name: str, config: Config, model: str = "") -> LLMProvider:
    """Factory: create a provider by registry name.

    Raises ConfigError for unknown names and CredentialError when the
    provider cannot authenticate.
    """
    spec = get_spec(name)
    return spec.factory(config, model or spec.default_model)


def provider_for_model(model: str, current: str = "") -> str | None:
    """Pick the provider serving a model name, preferring the current one."""
    current_spec = PROVIDERS.get(current)
    if current_spec and model.startswith(current_spec.model_prefixes):
        return current
    for name, spec in PROVIDERS.items():
        if model.startswith(spec.model_prefixes):
            return name
    return None


def known_model_prefixes() -> list[str]:
    prefixes: list[str] = []
    for spec in PROVIDERS.values():
        for p in spec.model_prefixes:
            if p not in prefixes:
                prefixes.append(p)
    return prefixes
