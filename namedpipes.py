"""Local transport over two named pipes.

Inbound (client → daemon), one record per line:
    session_id|source|text
with backslashes and newlines in text escaped so a record never spans
lines. Outbound (daemon → client):
    session_id|base64(utf-8 reply)
Clients read the output pipe until a line for their own session arrives.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import errno
import logging
import os
import select
import time
from pathlib import Path

from channels import InboundMessage

log = logging.getLogger(__name__)

INPUT_PIPE = "input.pipe"
OUTPUT_PIPE = "output.pipe"

# How long the daemon waits for a client to open the output pipe
REPLY_OPEN_TIMEOUT = 5.0
_REPLY_OPEN_INTERVAL = 0.1
_CLIENT_OPEN_GRACE = 2.0

DEFAULT_CLIENT_TIMEOUT = 600.0

PIPE_SOURCES = ("pipe", "cli")


class DaemonNotRunning(Exception):
    """No daemon is reading the input pipe."""


# ─── Record codec ────────────────────────────────────────────────


def escape_text(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\r", "\\r").replace("\n", "\\n")


def unescape_text(text: str) -> str:
    out = []
    chars = iter(text)
    for c in chars:
        if c != "\\":
            out.append(c)
            continue
        nxt = next(chars, "")
        out.append({"n": "\n", "r": "\r", "\\": "\\"}.get(nxt, "\\" + nxt))
    return "".join(out)


def _check_field(name: str, value: str) -> None:
    if not value or "|" in value or "\n" in value or "\r" in value:
        raise ValueError(f"Invalid {name} for pipe record: {value!r}")


def encode_inbound(session_id: str, source: str, text: str) -> str:
    _check_field("session id", session_id)
    _check_field("source", source)
    return f"{session_id}|{source}|{escape_text(text)}\n"


def decode_inbound(line: str) -> InboundMessage:
    """Parse one inbound record. Raises ValueError on malformed input."""
    parts = line.rstrip("\n").split("|", 2)
    if len(parts) != 3 or not parts[0] or not parts[1]:
        raise ValueError(f"Malformed pipe record: {line[:200]!r}")
    session_id, source, text = parts
    return InboundMessage(session_id=session_id, source=source, text=unescape_text(text))


def encode_reply(session_id: str, text: str) -> str:
    encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")
    return f"{session_id}|{encoded}\n"


def decode_reply(line: str) -> tuple[str, str]:
    session_id, sep, payload = line.strip().partition("|")
    if not sep:
        raise ValueError(f"Malformed reply record: {line[:200]!r}")
    try:
        text = base64.b64decode(payload, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError(f"Undecodable reply payload for {session_id}: {e}") from e
    return session_id, text


# ─── Daemon side ─────────────────────────────────────────────────


def create_pipes(pipes_dir: Path) -> tuple[Path, Path]:
    """Create fresh input/output FIFOs, replacing stale ones."""
    pipes_dir.mkdir(parents=True, exist_ok=True)
    paths = (pipes_dir / INPUT_PIPE, pipes_dir / OUTPUT_PIPE)
    for p in paths:
        if p.exists():
            p.unlink()
        os.mkfifo(p, mode=0o600)
    log.info("Pipes: %s, %s", *paths)
    return paths


def wake_reader(fifo_path: Path) -> None:
    """Unblock a reader thread parked in open() so shutdown can finish."""
    try:
        fd = os.open(str(fifo_path), os.O_WRONLY | os.O_NONBLOCK)
    except OSError as e:
        # Nobody is waiting, or the pipe is already gone
        if e.errno in (errno.ENXIO, errno.ENOENT):
            return
        raise
    os.close(fd)


def remove_pipes(pipes_dir: Path) -> None:
    for name in (INPUT_PIPE, OUTPUT_PIPE):
        (pipes_dir / name).unlink(missing_ok=True)


async def fifo_reader(fifo_path: Path, queue: asyncio.Queue) -> None:
    """Read inbound records from the input FIFO forever."""
    while True:
        try:
            # Blocks until a writer connects
            fd = await asyncio.to_thread(os.open, str(fifo_path), os.O_RDONLY)
            with os.fdopen(fd, "r", encoding="utf-8", errors="replace") as f:
                data = await asyncio.to_thread(f.read)
            for line in data.splitlines():
                if not line.strip():
                    continue
                try:
                    msg = decode_inbound(line)
                except ValueError as e:
                    log.warning("%s", e)
                    continue
                await queue.put(msg)
        except asyncio.CancelledError:
            break
        except OSError as e:
            log.error("FIFO reader error: %s", e)
            await asyncio.sleep(1)


def _open_for_reply(path: Path, deadline: float) -> int | None:
    while True:
        try:
            fd = os.open(str(path), os.O_WRONLY | os.O_NONBLOCK)
        except OSError as e:
            # ENXIO: no reader has the pipe open yet
            if e.errno != errno.ENXIO:
                raise
            if time.monotonic() >= deadline:
                return None
            time.sleep(_REPLY_OPEN_INTERVAL)
            continue
        os.set_blocking(fd, True)
        return fd


def _write_all(fd: int, data: bytes) -> None:
    try:
        view = memoryview(data)
        while view:
            written = os.write(fd, view)
            view = view[written:]
    finally:
        os.close(fd)


async def write_reply(path: Path, session_id: str, text: str,
                      timeout: float = REPLY_OPEN_TIMEOUT) -> bool:
    """Write one reply record to the output FIFO. False if no client was listening."""
    deadline = time.monotonic() + timeout
    try:
        fd = await asyncio.to_thread(_open_for_reply, path, deadline)
        if fd is None:
            log.warning("No reader on %s, dropping reply for %s", path.name, session_id)
            return False
        await asyncio.to_thread(_write_all, fd, encode_reply(session_id, text).encode("ascii"))
    except OSError as e:
        log.error("Failed to write reply for %s: %s", session_id, e)
        return False
    return True


# ─── Client side ─────────────────────────────────────────────────


class PipeClient:
    """Synchronous client used by the -t and --cli front ends."""

    def __init__(self, pipes_dir: Path, timeout: float = DEFAULT_CLIENT_TIMEOUT):
        self.input_path = pipes_dir / INPUT_PIPE
        self.output_path = pipes_dir / OUTPUT_PIPE
        self.timeout = timeout

    def _send_record(self, record: str) -> None:
        # The daemon reopens the pipe after every writer, so allow a short gap
        deadline = time.monotonic() + _CLIENT_OPEN_GRACE
        while True:
            try:
                fd = os.open(str(self.input_path), os.O_WRONLY | os.O_NONBLOCK)
                break
            except FileNotFoundError as e:
                raise DaemonNotRunning(str(e)) from e
            except OSError as e:
                if e.errno != errno.ENXIO:
                    raise
                if time.monotonic() >= deadline:
                    raise DaemonNotRunning("no reader on input pipe") from e
                time.sleep(_REPLY_OPEN_INTERVAL)
        os.set_blocking(fd, True)
        _write_all(fd, record.encode("utf-8"))

    def send(self, session_id: str, text: str, source: str = "pipe") -> str:
        """Send one message and block until its reply arrives."""
        if not self.output_path.exists():
            raise DaemonNotRunning(f"{self.output_path} does not exist")
        # O_RDWR keeps the FIFO open across daemon writes (no EOF between replies)
        out_fd = os.open(str(self.output_path), os.O_RDWR | os.O_NONBLOCK)
        try:
            self._send_record(encode_inbound(session_id, source, text))
            return self._await_reply(out_fd, session_id)
        finally:
            os.close(out_fd)

    def _await_reply(self, fd: int, session_id: str) -> str:
        deadline = time.monotonic() + self.timeout
        buf = b""
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"No reply within {self.timeout:.0f}s")
            ready, _, _ = select.select([fd], [], [], remaining)
            if not ready:
                continue
            try:
                chunk = os.read(fd, 65536)
            except BlockingIOError:
                continue
            buf += chunk
            while b"\n" in buf:
                line, buf = buf.split(b"\n", 1)
                if not line.strip():
                    continue
                try:
                    reply_session, reply = decode_reply(line.decode("ascii", errors="replace"))
                except ValueError as e:
                    log.warning("%s", e)
                    continue
                if reply_session == session_id:
                    return reply
                log.debug("Skipping reply for other session %s", reply_session)
