"""Channel interface and shared types.

Defines the contract between the daemon and messaging transports.
Each channel yields inbound messages tagged with a session id and accepts
replies addressed to that same session id.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
import time
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from config import Config


@dataclass
class InboundMessage:
    session_id: str
    source: str           # "pipe", "cli", "telegram", "heartbeat"
    text: str
    timestamp: float = field(default_factory=time.time)


class Channel(Protocol):
    name: str

    async def connect(self) -> None: ...
    def receive(self) -> AsyncIterator[InboundMessage]: ...
    async def reply(self, session_id: str, text: str) -> None: ...
    async def disconnect(self) -> None: ...


def _make_telegram(config: Config) -> Channel:
    from .telegram import TelegramChannel
    tg = config.telegram_config
    return TelegramChannel(
        token=config.telegram_token,
        allowed_users=tg.get("allow_from", []),
        chunk_limit=tg.get("text_chunk_limit", 4000),
        state_dir=config.state_dir,
    )


CHANNELS: dict[str, Callable[[Config], Channel]] = {
    "telegram": _make_telegram,
}


def create_channels(config: Config) -> list[Channel]:
    """Factory: create every enabled channel from config."""
    from config import ConfigError
    channels = []
    for name in config.channels:
        factory = CHANNELS.get(name)
        if factory is None:
            raise ConfigError(f"Unknown channel: {name!r} (known: {', '.join(CHANNELS)})")
        channels.append(factory(config))
    return channels
