"""Tests for providers/ — registry, message formatting, response parsing, OAuth.

Uses pytest.importorskip for SDK-dependent tests. SDK clients are replaced
with SimpleNamespace fakes, and token refreshes go through
httpx.MockTransport — no network.
"""

import json
import stat
from types import SimpleNamespace

import httpx
import pytest

from config import ConfigError
from providers import (
    CredentialError,
    LLMResponse,
    ToolCall,
    Usage,
    create_provider,
    get_spec,
    known_model_prefixes,
    provider_for_model,
    to_jsonable,
)
from providers.oauth import CredentialStore, OAuthCredentials, refresh_credentials

_CONVERSATION = [
    {"role": "user", "content": "list files"},
    {"role": "assistant", "text": "Sure.",
     "tool_calls": [{"id": "c1", "name": "bash", "arguments": {"command": "ls"}}]},
    {"role": "tool_results", "results": [{"tool_call_id": "c1", "content": '{"output": "a\\n"}'}]},
    {"role": "assistant", "content": "There is one file."},
]


# ─── LLMResponse ─────────────────────────────────────────────────

class TestLLMResponse:
    def test_to_internal_text_only(self):
        resp = LLMResponse(text="Hello", tool_calls=[], stop_reason="end_turn", usage=Usage())
        assert resp.to_internal_message() == {"role": "assistant", "text": "Hello"}

    def test_to_internal_with_tool_calls(self):
        resp = LLMResponse(
            text=None,
            tool_calls=[ToolCall(id="tc-1", name="read_file", arguments={"path": "/tmp"})],
            stop_reason="tool_use",
            usage=Usage(),
        )
        msg = resp.to_internal_message()
        assert "text" not in msg
        assert msg["tool_calls"] == [{"id": "tc-1", "name": "read_file", "arguments": {"path": "/tmp"}}]

    def test_to_jsonable(self):
        class Model:
            def model_dump(self, mode="python"):
                return {"dumped": mode}

        assert to_jsonable({"a": (1, Model())}) == {"a": [1, {"dumped": "json"}]}
        assert to_jsonable(object()).startswith("<object")


# ─── Registry ────────────────────────────────────────────────────

class TestRegistry:
    def test_unknown_provider(self, make_config):
        with pytest.raises(ConfigError, match="Unknown provider"):
            create_provider("nope", make_config())

    def test_missing_key(self, make_config):
        with pytest.raises(CredentialError, match="OPENAI_API_KEY"):
            create_provider("openai", make_config())

    def test_default_model_used(self, make_config):
        pytest.importorskip("openai")
        provider = create_provider("gemini", make_config())
        assert provider.model == get_spec("gemini").default_model
        assert provider.name == "gemini"

    def test_explicit_model(self, make_config):
        pytest.importorskip("anthropic")
        cfg = make_config({"api_keys": {"anthropic": "sk-ant"}})
        provider = create_provider("anthropic", cfg, "claude-3-5-haiku-latest")
        assert provider.model == "claude-3-5-haiku-latest"

    def test_subscription_requires_login(self, make_config):
        pytest.importorskip("anthropic")
        cfg = make_config({"llm": {"providers": {"claude-sub": {"client_id": "cid"}}}})
        with pytest.raises(CredentialError, match="Not logged in"):
            create_provider("claude-sub", cfg)

    def test_subscription_requires_client_id(self, make_config):
        with pytest.raises(CredentialError, match="client_id"):
            create_provider("claude-sub", make_config())

    @pytest.mark.parametrize("model,current,expected", [
        ("gemini-2.5-pro", "", "gemini"),
        ("gpt-4o", "gemini", "openai"),
        ("o3-mini", "", "openai"),
        ("claude-sonnet-4-20250514", "gemini", "anthropic"),
        ("claude-sonnet-4-20250514", "claude-sub", "claude-sub"),
        ("llama3", "gemini", None),
    ])
    def test_provider_for_model(self, model, current, expected):
        assert provider_for_model(model, current) == expected

    def test_known_prefixes_deduplicated(self):
        prefixes = known_model_prefixes()
        assert len(prefixes) == len(set(prefixes))
        assert "claude-" in prefixes and "gemini-" in prefixes


# ─── Anthropic Provider ──────────────────────────────────────────

class TestAnthropicProvider:
    @pytest.fixture(autouse=True)
    def _skip_if_no_sdk(self):
        pytest.importorskip("anthropic")

    def _make_provider(self, **kwargs):
        from providers.anthropic_compat import AnthropicCompatProvider
        defaults = dict(api_key="test-key", model="test-model")
        defaults.update(kwargs)
        return AnthropicCompatProvider(**defaults)

    def test_format_tools_passthrough(self):
        tools = [{"name": "t1", "description": "d", "input_schema": {"type": "object"}}]
        assert self._make_provider().format_tools(tools) == tools

    def test_format_system(self):
        blocks = [{"text": "persona", "tier": "stable"}, {"text": "time", "tier": "dynamic"}]
        assert self._make_provider().format_system(blocks) == [
            {"type": "text", "text": "persona", "cache_control": {"type": "ephemeral"}},
            {"type": "text", "text": "time"},
        ]

    def test_format_messages(self):
        out = self._make_provider().format_messages(_CONVERSATION)
        assert out[0] == {"role": "user", "content": "list files"}
        assert out[1]["content"] == [
            {"type": "text", "text": "Sure."},
            {"type": "tool_use", "id": "c1", "name": "bash", "input": {"command": "ls"}},
        ]
        assert out[2] == {"role": "user", "content": [
            {"type": "tool_result", "tool_use_id": "c1", "content": '{"output": "a\\n"}'},
        ]}
        assert out[3] == {"role": "assistant",
                          "content": [{"type": "text", "text": "There is one file."}]}

    @pytest.mark.asyncio
    async def test_complete_parses_blocks(self):
        p = self._make_provider()
        sent = {}

        async def create(**params):
            sent.update(params)
            return SimpleNamespace(
                content=[
                    SimpleNamespace(type="text", text="Running it."),
                    SimpleNamespace(type="tool_use", id="t9", name="bash", input='{"command": "ls"}'),
                ],
                usage=SimpleNamespace(input_tokens=12, output_tokens=3),
                stop_reason="tool_use",
            )

        p.client = SimpleNamespace(messages=SimpleNamespace(create=create))
        resp = await p.complete([{"type": "text", "text": "sys"}],
                                [{"role": "user", "content": "hi"}], [])
        assert resp.text == "Running it."
        assert resp.tool_calls == [ToolCall(id="t9", name="bash", arguments={"command": "ls"})]
        assert resp.stop_reason == "tool_use"
        assert resp.usage.input_tokens == 12
        assert "tools" not in sent
        assert resp.request["system"] == [{"type": "text", "text": "sys"}]


class TestSubscriptionProvider:
    @pytest.fixture(autouse=True)
    def _skip_if_no_sdk(self):
        pytest.importorskip("anthropic")

    def _make(self, tmp_path, expires_at):
        from providers.anthropic_compat import AnthropicSubscriptionProvider
        store = CredentialStore(tmp_path / "auth.json")
        store.set("claude-sub", OAuthCredentials("old-access", "refresh-1", expires_at))
        return AnthropicSubscriptionProvider(
            credentials=store, token_url="https://auth.example/token",
            client_id="cid", model="claude-x",
        ), store

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_and_persisted(self, tmp_path, monkeypatch):
        import providers.anthropic_compat as mod

        async def fake_refresh(url, client_id, creds):
            assert creds.refresh_token == "refresh-1"
            return OAuthCredentials("new-access", "refresh-2", 10**15)

        monkeypatch.setattr(mod, "refresh_credentials", fake_refresh)
        provider, store = self._make(tmp_path, expires_at=0)
        await provider.ensure_fresh_credential()
        assert store.get("claude-sub").access_token == "new-access"
        assert provider.client is not None

    @pytest.mark.asyncio
    async def test_fresh_token_not_refreshed(self, tmp_path, monkeypatch):
        import providers.anthropic_compat as mod

        async def fail_refresh(*a):
            raise AssertionError("should not refresh")

        monkeypatch.setattr(mod, "refresh_credentials", fail_refresh)
        provider, _ = self._make(tmp_path, expires_at=10**15)
        await provider.ensure_fresh_credential()
        assert provider.client is not None


# ─── OpenAI Provider ─────────────────────────────────────────────

class TestOpenAIProvider:
    @pytest.fixture(autouse=True)
    def _skip_if_no_sdk(self):
        pytest.importorskip("openai")

    def _make_provider(self, **kwargs):
        from providers.openai_compat import OpenAICompatProvider
        defaults = dict(api_key="test-key", model="gpt-test")
        defaults.update(kwargs)
        return OpenAICompatProvider(**defaults)

    def test_format_tools_wraps_function(self):
        out = self._make_provider().format_tools(
            [{"name": "t1", "description": "d", "input_schema": {"type": "object"}}]
        )
        assert out == [{"type": "function", "function": {
            "name": "t1", "description": "d", "parameters": {"type": "object"},
        }}]

    def test_format_system_joins_blocks(self):
        p = self._make_provider()
        assert p.format_system([{"text": "a"}, {"text": "b"}]) == "a\n\nb"

    def test_format_messages(self):
        out = self._make_provider().format_messages(_CONVERSATION)
        assert out[1]["tool_calls"][0]["function"] == {
            "name": "bash", "arguments": json.dumps({"command": "ls"}),
        }
        assert out[2] == {"role": "tool", "tool_call_id": "c1", "content": '{"output": "a\\n"}'}
        assert out[3] == {"role": "assistant", "content": "There is one file."}

    @pytest.mark.asyncio
    async def test_complete_parses_tool_calls(self):
        p = self._make_provider()
        sent = {}

        async def create(**params):
            sent.update(params)
            call = SimpleNamespace(id="x1", function=SimpleNamespace(name="bash", arguments="{bad"))
            return SimpleNamespace(
                choices=[SimpleNamespace(
                    message=SimpleNamespace(content=None, tool_calls=[call]),
                    finish_reason="tool_calls",
                )],
                usage=None,
            )

        p.client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
        resp = await p.complete("sys", [{"role": "user", "content": "hi"}], [{"type": "function"}])
        assert sent["messages"][0] == {"role": "system", "content": "sys"}
        assert sent["tools"] == [{"type": "function"}]
        assert resp.tool_calls[0].arguments == {"raw": "{bad"}
        assert resp.stop_reason == "tool_use"
        assert resp.usage.input_tokens == 0

    @pytest.mark.asyncio
    async def test_complete_length_stop(self):
        p = self._make_provider()
        response = SimpleNamespace(
            choices=[SimpleNamespace(
                message=SimpleNamespace(content="partial", tool_calls=None),
                finish_reason="length",
            )],
            usage=SimpleNamespace(prompt_tokens=5, completion_tokens=7),
        )
        async def create(**params):
            return response

        p.client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
        resp = await p.complete(None, [], [])
        assert resp.text == "partial"
        assert resp.stop_reason == "max_tokens"
        assert resp.usage.output_tokens == 7


class TestParsing:
    def test_arguments(self):
        from providers.openai_compat import parse_arguments
        assert parse_arguments("") == {}
        assert parse_arguments(None) == {}
        assert parse_arguments('{"a": 1}') == {"a": 1}
        assert parse_arguments("[1, 2]") == {"raw": "[1, 2]"}
        assert parse_arguments({"b": 2}) == {"b": 2}

    def test_completion_fills_missing_ids(self):
        from providers.openai_compat import parse_completion
        calls = [
            SimpleNamespace(id=None, function=SimpleNamespace(name="read_file", arguments='{"path": "x"}')),
            SimpleNamespace(id="", function=SimpleNamespace(name="bash", arguments="")),
        ]
        response = SimpleNamespace(choices=[SimpleNamespace(
            message=SimpleNamespace(content=None, tool_calls=calls),
            finish_reason="stop",
        )])
        resp = parse_completion(response, {})
        assert [tc.id for tc in resp.tool_calls] == ["call_0", "call_1"]
        assert resp.tool_calls[1].arguments == {}
        assert resp.stop_reason == "end_turn"

    def test_message_without_text(self):
        pytest.importorskip("anthropic")
        from providers.anthropic_compat import parse_message
        response = SimpleNamespace(
            content=[SimpleNamespace(type="tool_use", id="t1", name="bash", input={"command": "pwd"})],
            usage=SimpleNamespace(input_tokens=1, output_tokens=2),
            stop_reason="tool_use",
        )
        resp = parse_message(response, {"model": "m"})
        assert resp.text is None
        assert resp.tool_calls[0].arguments == {"command": "pwd"}
        assert resp.request == {"model": "m"}


# ─── OAuth ───────────────────────────────────────────────────────

class TestCredentialStore:
    def test_roundtrip_and_mode(self, tmp_path):
        store = CredentialStore(tmp_path / "auth.json")
        store.set("claude-sub", OAuthCredentials("a", "r", 123, {"account": "me"}))
        assert store.get("claude-sub") == OAuthCredentials("a", "r", 123, {"account": "me"})
        assert stat.S_IMODE((tmp_path / "auth.json").stat().st_mode) == 0o600

    def test_missing_entry(self, tmp_path):
        assert CredentialStore(tmp_path / "auth.json").get("claude-sub") is None

    def test_delete(self, tmp_path):
        store = CredentialStore(tmp_path / "auth.json")
        store.set("p", OAuthCredentials("a", "r", 1))
        assert store.delete("p") is True
        assert store.delete("p") is False

    def test_corrupt_file(self, tmp_path):
        (tmp_path / "auth.json").write_text("{oops")
        with pytest.raises(CredentialError, match="Cannot read"):
            CredentialStore(tmp_path / "auth.json").get("p")

    def test_expiry_skew(self):
        creds = OAuthCredentials("a", "r", expires_at=1_000_000)
        assert creds.is_expired(now_ms=1_000_000 - 60_000)
        assert not creds.is_expired(now_ms=1_000_000 - 10 * 60_000)


class TestRefresh:
    def _client(self, handler):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"access_token": "new", "expires_in": 60})

        async with self._client(handler) as client:
            creds = await refresh_credentials(
                "https://auth.example/token", "cid",
                OAuthCredentials("old", "r1", 0), client=client,
            )
        assert seen == {"grant_type": "refresh_token", "client_id": "cid", "refresh_token": "r1"}
        assert creds.access_token == "new"
        assert creds.refresh_token == "r1"
        assert creds.expires_at > 0

    @pytest.mark.asyncio
    async def test_rejected(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        async with self._client(handler) as client:
            with pytest.raises(CredentialError, match="invalid_grant"):
                await refresh_credentials("https://auth.example/token", "cid",
                                          OAuthCredentials("old", "r1", 0), client=client)

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("down")

        async with self._client(handler) as client:
            with pytest.raises(CredentialError, match="down"):
                await refresh_credentials("https://auth.example/token", "cid",
                                          OAuthCredentials("old", "r1", 0), client=client)

    @pytest.mark.asyncio
    async def test_no_refresh_token(self):
        with pytest.raises(CredentialError, match="no refresh token"):
            await refresh_credentials("https://x", "cid", OAuthCredentials("a", "", 0))
