"""Tests for namedpipes.py — record codec, FIFO lifecycle, client/daemon roundtrip."""

import asyncio
import base64
import stat

import pytest

from namedpipes import (
    INPUT_PIPE,
    OUTPUT_PIPE,
    DaemonNotRunning,
    PipeClient,
    create_pipes,
    decode_inbound,
    decode_reply,
    encode_inbound,
    encode_reply,
    escape_text,
    fifo_reader,
    remove_pipes,
    unescape_text,
    wake_reader,
    write_reply,
)

# ─── Codec ───────────────────────────────────────────────────────


class TestInboundRecord:
    def test_single_line(self):
        assert encode_inbound("s1", "pipe", "hello") == "s1|pipe|hello\n"

    def test_multiline_text_stays_on_one_line(self):
        record = encode_inbound("s1", "cli", "line one\nline two")
        assert record.count("\n") == 1
        msg = decode_inbound(record)
        assert msg.text == "line one\nline two"
        assert msg.source == "cli"

    def test_pipes_in_text_preserved(self):
        msg = decode_inbound(encode_inbound("s1", "pipe", "a | b | c"))
        assert msg.session_id == "s1"
        assert msg.text == "a | b | c"

    def test_backslashes_survive(self):
        text = r"C:\new\table" + "\n" + "\\n literal"
        assert unescape_text(escape_text(text)) == text

    def test_unknown_escape_kept(self):
        assert unescape_text(r"a\tb") == r"a\tb"

    @pytest.mark.parametrize("line", ["no separators", "s1|pipe", "|pipe|text", "s1||text"])
    def test_malformed_rejected(self, line):
        with pytest.raises(ValueError):
            decode_inbound(line)

    def test_bad_session_id_rejected(self):
        with pytest.raises(ValueError):
            encode_inbound("a|b", "pipe", "x")
        with pytest.raises(ValueError):
            encode_inbound("", "pipe", "x")


class TestReplyRecord:
    def test_base64_payload(self):
        record = encode_reply("s1", "héllo\nworld")
        session, payload = record.rstrip("\n").split("|")
        assert session == "s1"
        assert base64.b64decode(payload).decode("utf-8") == "héllo\nworld"

    def test_decode(self):
        assert decode_reply(encode_reply("cli_42", "multi\nline")) == ("cli_42", "multi\nline")

    def test_empty_reply(self):
        assert decode_reply(encode_reply("s1", "")) == ("s1", "")

    def test_missing_separator(self):
        with pytest.raises(ValueError):
            decode_reply("garbage")

    def test_bad_payload(self):
        with pytest.raises(ValueError, match="Undecodable"):
            decode_reply("s1|!!!not base64!!!")


# ─── FIFO lifecycle ──────────────────────────────────────────────


class TestPipeFiles:
    def test_create_makes_fifos(self, tmp_path):
        inp, out = create_pipes(tmp_path / "pipes")
        assert inp.name == INPUT_PIPE
        assert out.name == OUTPUT_PIPE
        for p in (inp, out):
            assert stat.S_ISFIFO(p.stat().st_mode)

    def test_create_replaces_stale_files(self, tmp_path):
        d = tmp_path / "pipes"
        d.mkdir()
        (d / INPUT_PIPE).write_text("stale regular file")
        inp, _ = create_pipes(d)
        assert stat.S_ISFIFO(inp.stat().st_mode)

    def test_remove(self, tmp_path):
        d = tmp_path / "pipes"
        create_pipes(d)
        remove_pipes(d)
        assert not (d / INPUT_PIPE).exists()
        assert not (d / OUTPUT_PIPE).exists()
        remove_pipes(d)  # idempotent

    def test_wake_without_reader_is_noop(self, tmp_path):
        inp, _ = create_pipes(tmp_path / "pipes")
        wake_reader(inp)
        wake_reader(tmp_path / "missing.pipe")


class TestWriteReply:
    @pytest.mark.asyncio
    async def test_no_reader_drops_reply(self, tmp_path):
        _, out = create_pipes(tmp_path / "pipes")
        assert await write_reply(out, "s1", "nobody home", timeout=0.2) is False

    @pytest.mark.asyncio
    async def test_missing_pipe(self, tmp_path):
        assert await write_reply(tmp_path / "gone.pipe", "s1", "x", timeout=0.2) is False


# ─── Client ──────────────────────────────────────────────────────


class TestPipeClient:
    def test_no_pipes_means_not_running(self, tmp_path):
        client = PipeClient(tmp_path / "pipes", timeout=1)
        with pytest.raises(DaemonNotRunning):
            client.send("s1", "hello")

    @pytest.mark.asyncio
    async def test_roundtrip_through_reader(self, tmp_path):
        d = tmp_path / "pipes"
        inp, out = create_pipes(d)
        queue: asyncio.Queue = asyncio.Queue()
        reader = asyncio.create_task(fifo_reader(inp, queue))
        client = PipeClient(d, timeout=10)
        try:
            pending = asyncio.create_task(
                asyncio.to_thread(client.send, "s1", "two\nlines", "cli")
            )
            msg = await asyncio.wait_for(queue.get(), timeout=5)
            assert (msg.session_id, msg.source, msg.text) == ("s1", "cli", "two\nlines")

            # A reply for another session is skipped by this client
            assert await write_reply(out, "someone_else", "not yours", timeout=2)
            assert await write_reply(out, "s1", "got it", timeout=2)
            assert await asyncio.wait_for(pending, timeout=5) == "got it"
        finally:
            reader.cancel()
            wake_reader(inp)
            await asyncio.gather(reader, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_malformed_records_skipped(self, tmp_path):
        d = tmp_path / "pipes"
        inp, _ = create_pipes(d)
        queue: asyncio.Queue = asyncio.Queue()
        reader = asyncio.create_task(fifo_reader(inp, queue))
        client = PipeClient(d)
        try:
            record = "garbage line\n" + encode_inbound("s2", "pipe", "valid")
            await asyncio.to_thread(client._send_record, record)
            msg = await asyncio.wait_for(queue.get(), timeout=5)
            assert msg.session_id == "s2"
            assert queue.empty()
        finally:
            reader.cancel()
            wake_reader(inp)
            await asyncio.gather(reader, return_exceptions=True)
