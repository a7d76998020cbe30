"""Tests for session.py — state persistence, stats, corruption recovery, LLM log."""

import json

import pytest

from session import SessionState, SessionStore, safe_id


class TestSafeId:
    def test_plain_ids_unchanged(self):
        assert safe_id("telegram_12345") == "telegram_12345"
        assert safe_id("cli_99") == "cli_99"

    def test_path_separators_replaced(self):
        assert "/" not in safe_id("../../etc/passwd")

    @pytest.mark.parametrize("sid", ["", ".", ".."])
    def test_special_names_never_used_verbatim(self, sid):
        name = safe_id(sid)
        assert name not in ("", ".", "..")
        assert "/" not in name

    def test_rewritten_ids_stay_distinct(self):
        names = {safe_id(s) for s in ("a/b", "a b", "a_b", "a:b")}
        assert len(names) == 4
        assert safe_id("a_b") == "a_b"

    def test_id_shaped_like_hashed_name_is_rehashed(self):
        hashed = safe_id("a/b")
        assert safe_id(hashed) != hashed


class TestSessionStore:
    def test_ensure_creates_empty_state(self, session_store):
        session_store.ensure("s1")
        assert session_store.exists("s1")
        state = session_store.read_state("s1")
        assert state.messages == []
        assert state.summary is None

    def test_ensure_keeps_existing(self, session_store):
        session_store.append("s1", "user", "hi")
        session_store.ensure("s1")
        assert len(session_store.read_raw("s1")) == 1

    def test_similar_ids_do_not_share_history(self, session_store):
        session_store.append("a/b", "user", "secret of a/b")
        session_store.append("a b", "user", "from a b")
        assert session_store.read_raw("a_b") == []
        assert session_store.read_raw("a/b") == [{"role": "user", "content": "secret of a/b"}]
        assert session_store.read_raw("a b") == [{"role": "user", "content": "from a b"}]

    def test_append_in_order(self, session_store):
        session_store.append("s1", "user", "first")
        session_store.append("s1", "assistant", "second")
        msgs = session_store.read_raw("s1")
        assert msgs == [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "second"},
        ]

    def test_append_rejects_unknown_role(self, session_store):
        with pytest.raises(ValueError, match="role"):
            session_store.append("s1", "system", "nope")

    def test_sessions_are_isolated(self, session_store):
        session_store.append("a", "user", "for a")
        session_store.append("b", "user", "for b")
        assert session_store.read_raw("a")[0]["content"] == "for a"
        assert session_store.read_raw("b")[0]["content"] == "for b"

    def test_missing_session_reads_empty(self, session_store):
        assert session_store.read_raw("ghost") == []

    def test_clear_discards_summary(self, session_store):
        session_store.write_state("s1", SessionState(
            messages=[{"role": "user", "content": "x"}],
            summary="old", summary_message_count=4,
        ))
        session_store.clear("s1")
        state = session_store.read_state("s1")
        assert state.messages == []
        assert state.summary is None
        assert state.summary_message_count == 0

    def test_no_temp_file_left_behind(self, session_store, tmp_sessions):
        session_store.append("s1", "user", "hi")
        assert not list(tmp_sessions.glob("*.tmp"))

    def test_unicode_roundtrip(self, session_store):
        session_store.append("s1", "user", "Grüße 👋")
        assert session_store.read_raw("s1")[0]["content"] == "Grüße 👋"


class TestCorruptState:
    def test_corrupt_file_quarantined(self, session_store, tmp_sessions):
        path = session_store.state_path("s1")
        path.write_text("{broken")
        state = session_store.read_state("s1")
        assert state.messages == []
        assert (tmp_sessions / "s1.json.corrupt").exists()
        assert not path.exists()

    def test_non_object_state_quarantined(self, session_store):
        session_store.state_path("s1").write_text("[1, 2]")
        assert session_store.read_state("s1").messages == []


class TestStats:
    def test_stats_without_summary(self, session_store):
        session_store.append("s1", "user", "x" * 40)       # 10 + 20
        session_store.append("s1", "assistant", "y" * 8)   # 2 + 20
        stats = session_store.read_stats("s1")
        assert stats == {
            "message_count": 2,
            "summarized_count": 0,
            "has_summary": False,
            "estimated_tokens": 52,
        }

    def test_stats_count_summary_preamble(self, session_store):
        session_store.write_state("s1", SessionState(
            messages=[{"role": "user", "content": "hi"}],
            summary="earlier", summary_message_count=6,
        ))
        stats = session_store.read_stats("s1")
        assert stats["message_count"] == 1
        assert stats["summarized_count"] == 6
        assert stats["has_summary"] is True
        # preamble + ack + message, each with overhead
        assert stats["estimated_tokens"] > 3 * 20


class TestLLMLog:
    def test_append_and_read(self, session_store):
        session_store.append_llm_log("s1", {"status": 0, "model": "m"})
        session_store.append_llm_log("s1", {"status": 1, "model": "m"})
        entries = session_store.read_llm_log("s1")
        assert [e["status"] for e in entries] == [0, 1]
        assert all("timestamp" in e for e in entries)

    def test_log_kept_out_of_state(self, session_store):
        session_store.append("s1", "user", "hi")
        session_store.append_llm_log("s1", {"raw_provider_response": {"big": "x" * 1000}})
        data = json.loads(session_store.state_path("s1").read_text())
        assert "raw_provider_response" not in json.dumps(data)

    def test_malformed_lines_skipped(self, session_store):
        session_store.log_path("s1").write_text('{"status": 0}\nnot json\n\n')
        assert session_store.read_llm_log("s1") == [{"status": 0}]

    def test_missing_log_empty(self, session_store):
        assert session_store.read_llm_log("nobody") == []

    def test_clear_keeps_log(self, session_store):
        session_store.append_llm_log("s1", {"status": 0})
        session_store.clear("s1")
        assert len(session_store.read_llm_log("s1")) == 1
