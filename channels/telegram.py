"""Telegram Bot API channel.

Updates arrive through getUpdates long polling over httpx. Each chat maps
to its own session, "telegram_<chat_id>". Replies go out with sendMessage,
split into pieces that fit Telegram's message size.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator
from pathlib import Path

import httpx

from . import InboundMessage

log = logging.getLogger(__name__)

_BOT_URL = "https://api.telegram.org/bot{token}/{method}"
_LONG_POLL_SECONDS = 30

# Poll restart delay doubles from 1s up to 10s, +/-20% jitter
_RECONNECT_INITIAL = 1.0
_RECONNECT_MAX = 10.0
_RECONNECT_JITTER = 0.2

SESSION_PREFIX = "telegram_"
UNAUTHORIZED_REPLY = "Sorry, you are not authorized to use this bot."


class TelegramError(RuntimeError):
    """The Bot API answered with ok=false."""


def session_id_for_chat(chat_id: int) -> str:
    return SESSION_PREFIX + str(chat_id)


def chat_id_for_session(session_id: str) -> int | None:
    """Chat id encoded in a telegram session id, or None for other sessions."""
    prefix, sep, rest = session_id.partition("_")
    if not sep or prefix + sep != SESSION_PREFIX:
        return None
    try:
        return int(rest)
    except ValueError:
        return None


def split_message(text: str, limit: int) -> list[str]:
    """Pack whole lines into pieces of at most `limit` characters.

    A single line longer than the limit is cut into fixed-size slices.
    """
    if len(text) <= limit:
        return [text]
    pieces: list[str] = []
    buf: list[str] = []
    size = 0
    for line in text.split("\n"):
        while len(line) > limit:
            if buf:
                pieces.append("\n".join(buf))
                buf, size = [], 0
            pieces.append(line[:limit])
            line = line[limit:]
        added = len(line) + (1 if buf else 0)
        if buf and size + added > limit:
            pieces.append("\n".join(buf))
            buf, size = [], 0
            added = len(line)
        buf.append(line)
        size += added
    if buf and any(buf):
        pieces.append("\n".join(buf))
    return pieces


class TelegramChannel:
    name = "telegram"

    def __init__(
        self,
        token: str,
        allowed_users: list[int] | None = None,
        chunk_limit: int = 4000,
        state_dir: Path | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token = token
        # An empty set lets every user through
        self.allowed_users = set(allowed_users or ())
        self.chunk_limit = chunk_limit
        self.offset_file = Path(state_dir) / "telegram_offset" if state_dir else None
        self._transport = transport
        self._http: httpx.AsyncClient | None = None
        self._bot_id = 0
        self._bot_username = ""
        self._offset = self._read_offset()

    # ─── Offset persistence ──────────────────────────────────────

    def _read_offset(self) -> int:
        if self.offset_file is None:
            return 0
        try:
            raw = self.offset_file.read_text().strip()
        except FileNotFoundError:
            return 0
        if not raw.isdigit():
            log.warning("Ignoring malformed Telegram offset file %s", self.offset_file)
            return 0
        return int(raw)

    def _write_offset(self) -> None:
        if self.offset_file is None:
            return
        try:
            self.offset_file.parent.mkdir(parents=True, exist_ok=True)
            self.offset_file.write_text(str(self._offset))
        except OSError as e:
            log.warning("Could not store Telegram offset in %s: %s", self.offset_file, e)

    # ─── HTTP ────────────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(_LONG_POLL_SECONDS + 30.0, connect=10.0),
                transport=self._transport,
            )
        return self._http

    async def _api(self, method: str, **params):
        """POST a Bot API method and return its "result" field."""
        url = _BOT_URL.format(token=self.token, method=method)
        resp = await self._client().post(url, json=params)
        # Error descriptions come back in the JSON body even on 4xx
        try:
            body = resp.json()
        except ValueError:
            resp.raise_for_status()
            raise TelegramError(f"{method}: unexpected non-JSON reply ({resp.status_code})")
        if not isinstance(body, dict):
            raise TelegramError(f"{method}: reply is not a JSON object ({resp.status_code})")
        if not body.get("ok"):
            reason = body.get("description") or f"HTTP {resp.status_code}"
            raise TelegramError(f"{method} failed: {reason}")
        return body.get("result")

    # ─── Channel protocol ────────────────────────────────────────

    async def connect(self) -> None:
        try:
            me = await self._api("getMe")
        except (httpx.HTTPError, TelegramError) as e:
            log.error("Telegram getMe failed: %s", e)
            raise ConnectionError(f"Cannot reach Telegram Bot API: {e}") from e
        self._bot_id = me.get("id", 0)
        self._bot_username = me.get("username", "")
        log.info("Telegram connected as @%s (id=%d)", self._bot_username, self._bot_id)

    async def receive(self) -> AsyncIterator[InboundMessage]:
        """Yield inbound messages forever, restarting the poll after errors."""
        delay = _RECONNECT_INITIAL
        while True:
            try:
                async for msg in self._poll_loop():
                    delay = _RECONNECT_INITIAL
                    yield msg
            except (httpx.HTTPError, TelegramError) as e:
                wait = delay * (1 + _RECONNECT_JITTER * random.uniform(-1, 1))  # noqa: S311
                log.warning("Telegram polling failed (%s), reconnecting in %.1fs", e, wait)
                await asyncio.sleep(wait)
                delay = min(delay * 2, _RECONNECT_MAX)

    async def reply(self, session_id: str, text: str) -> None:
        chat_id = chat_id_for_session(session_id)
        if chat_id is None:
            log.warning("Telegram: session %s is not a chat, reply dropped", session_id)
            return
        if text:
            await self._send(chat_id, text)

    async def disconnect(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # ─── Internals ───────────────────────────────────────────────

    async def _poll_loop(self) -> AsyncIterator[InboundMessage]:
        while True:
            batch = await self._api(
                "getUpdates",
                offset=self._offset,
                timeout=_LONG_POLL_SECONDS,
                allowed_updates=["message"],
            )
            if not isinstance(batch, list):
                raise TelegramError(f"getUpdates: expected a list, got {type(batch).__name__}")
            for update in batch:
                if not isinstance(update, dict):
                    log.warning("Telegram: skipping malformed update %r", update)
                    continue
                uid = update.get("update_id", 0)
                if uid >= self._offset:
                    self._offset = uid + 1
                    # Stored before handling so a crash never replays the update
                    self._write_offset()
                if "message" not in update or not update["message"]:
                    continue
                msg = await self._parse_message(update["message"])
                if msg is not None:
                    yield msg

    async def _parse_message(self, message: dict) -> InboundMessage | None:
        """Turn a Telegram message into an InboundMessage; None means skip it."""
        sender = message.get("from") or {}
        user_id = sender.get("id", 0)
        chat_id = (message.get("chat") or {}).get("id")
        text = message.get("text") or ""
        if chat_id is None or not text or user_id == self._bot_id:
            return None

        who = sender.get("username") or sender.get("first_name") or str(user_id)
        if self.allowed_users and user_id not in self.allowed_users:
            log.info("Telegram: rejected user %d (%s)", user_id, who)
            await self._send(chat_id, UNAUTHORIZED_REPLY)
            return None

        log.info("Telegram: %s in chat %d: %s", who, chat_id, text[:50])
        try:
            await self._api("sendChatAction", chat_id=chat_id, action="typing")
        except (httpx.HTTPError, TelegramError) as e:
            log.debug("Typing indicator not sent: %s", e)
        return InboundMessage(session_id=session_id_for_chat(chat_id), source="telegram", text=text)

    async def _send(self, chat_id: int, text: str) -> None:
        for piece in self._chunk_text(text):
            await self._api("sendMessage", chat_id=chat_id, text=piece)

    def _chunk_text(self, text: str) -> list[str]:
        return split_message(text, self.chunk_limit)
