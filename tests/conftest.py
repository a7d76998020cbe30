"""Shared fixtures for the Bashobot test suite.

All tests use temporary directories and mock providers.
Nothing touches ~/.bashobot/ or a running daemon.
"""

import sys
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))

from providers import LLMResponse, ToolCall, Usage  # noqa: E402


# ─── Mock provider ───────────────────────────────────────────────

class MockProvider:
    """Returns pre-configured LLMResponse objects (or raises exceptions) in sequence.

    Every call to complete() is recorded so tests can inspect what the
    loop sent.
    """

    name = "mock"

    def __init__(self, responses=None, model="mock-model"):
        self._responses = list(responses or [])
        self.model = model
        self.calls: list[dict] = []

    def queue(self, *responses):
        self._responses.extend(responses)

    def format_tools(self, tools):
        return tools

    def format_system(self, blocks):
        return "\n\n".join(b["text"] for b in blocks)

    def format_messages(self, messages):
        return [dict(m) for m in messages]

    async def ensure_fresh_credential(self):
        pass

    async def complete(self, system, messages, tools, **kwargs):
        self.calls.append({"system": system, "messages": messages, "tools": tools})
        if not self._responses:
            return text_response("default reply")
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def text_response(text="Done"):
    return LLMResponse(
        text=text,
        tool_calls=[],
        stop_reason="end_turn",
        usage=Usage(input_tokens=10, output_tokens=5),
        raw={"text": text},
        request={"kind": "mock"},
    )


def tool_response(name, arguments, call_id="tc-1", text=None):
    return LLMResponse(
        text=text,
        tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)],
        stop_reason="tool_use",
        usage=Usage(input_tokens=10, output_tokens=5),
        raw={"tool": name},
        request={"kind": "mock"},
    )


@pytest.fixture
def mock_provider():
    return MockProvider()


# ─── Filesystem fixtures ─────────────────────────────────────────

@pytest.fixture
def tmp_sessions(tmp_path):
    """Temp directory acting as sessions_dir."""
    d = tmp_path / "sessions"
    d.mkdir()
    return d


@pytest.fixture
def session_store(tmp_sessions):
    from session import SessionStore
    return SessionStore(tmp_sessions)


@pytest.fixture
def tmp_workspace(tmp_path):
    """Temp workspace with a persona file."""
    ws = tmp_path / "workspace"
    ws.mkdir()
    (ws / "SOUL.md").write_text("# Soul\nI am TestBot.")
    (ws / "HEARTBEAT.md").write_text("# Heartbeat\nNothing scheduled.")
    return ws


@pytest.fixture
def state_dir(tmp_path, monkeypatch):
    """Isolated state dir with every BASHOBOT_/provider env var cleared."""
    import os
    for key in list(os.environ):
        if key.startswith(("BASHOBOT_", "TELEGRAM_")) or key in (
            "ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GEMINI_API_KEY",
            "MAX_CONTEXT_TOKENS", "KEEP_RECENT_TOKENS",
        ):
            monkeypatch.delenv(key, raising=False)
    d = tmp_path / "state"
    d.mkdir()
    return d


@pytest.fixture
def make_config(state_dir):
    """Build a Config rooted at state_dir from a partial data dict."""
    from config import Config

    def _make(data=None):
        base = {
            "paths": {"state_dir": str(state_dir)},
            "llm": {"provider": "gemini"},
            "api_keys": {"gemini": "test-key"},
            "heartbeat": {"enabled": False},
        }
        for section, values in (data or {}).items():
            if isinstance(values, dict):
                base.setdefault(section, {}).update(values)
            else:
                base[section] = values
        return Config(base, config_dir=state_dir)

    return _make


@pytest.fixture
def tool_registry():
    """ToolRegistry with a sync + async dummy tool registered."""
    from tools import ToolRegistry

    reg = ToolRegistry(truncation_limit=100)

    def sync_tool(text: str = "default") -> str:
        return f"sync:{text}"

    async def async_tool(text: str = "default") -> str:
        return f"async:{text}"

    reg.register("sync_echo", "A sync echo tool", {
        "type": "object",
        "properties": {"text": {"type": "string"}},
    }, sync_tool)
    reg.register("async_echo", "An async echo tool", {
        "type": "object",
        "properties": {"text": {"type": "string"}},
    }, async_tool)
    return reg


@pytest.fixture
def fs_workspace(tmp_path):
    """tmp_path with test files + filesystem sandboxed to it."""
    from tools import filesystem

    (tmp_path / "hello.txt").write_text("line one\nline two\nline three\n")
    (tmp_path / "long.txt").write_text("x" * 3000 + "\n")
    sub = tmp_path / "subdir"
    sub.mkdir()
    (sub / "nested.txt").write_text("nested content\n")

    filesystem.configure([str(tmp_path)], base_dir=tmp_path)
    yield tmp_path
    # Restore default after test
    filesystem.configure([])
