"""OAuth credential storage and refresh for subscription-based providers.

Credentials are written by an external login flow into auth.json, keyed
by provider name. This module only keeps them fresh: an expired access
token is exchanged for a new one with the stored refresh token, and the
result is persisted before use.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from session import _atomic_write

from . import CredentialError

log = logging.getLogger(__name__)

DEFAULT_ANTHROPIC_TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"

# Treat tokens as expired this long before their real expiry
EXPIRY_SKEW_MS = 5 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class OAuthCredentials:
    access_token: str
    refresh_token: str
    expires_at: int  # epoch milliseconds
    extra: dict = field(default_factory=dict)

    def is_expired(self, now_ms: int | None = None) -> bool:
        now = _now_ms() if now_ms is None else now_ms
        return now >= self.expires_at - EXPIRY_SKEW_MS

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, data: dict) -> OAuthCredentials:
        return cls(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            expires_at=int(data.get("expires_at", 0)),
            extra=dict(data.get("extra", {})),
        )


class CredentialStore:
    """auth.json: {provider_name: credentials}, mode 0600, atomic replace."""

    def __init__(self, path: Path):
        self.path = path

    def _load_all(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise CredentialError(f"Cannot read credentials file {self.path}: {e}") from e
        return data if isinstance(data, dict) else {}

    def _save_all(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.path, json.dumps(data, indent=2), mode=0o600)

    def get(self, provider: str) -> OAuthCredentials | None:
        entry = self._load_all().get(provider)
        if not isinstance(entry, dict) or not entry.get("access_token"):
            return None
        return OAuthCredentials.from_dict(entry)

    def set(self, provider: str, creds: OAuthCredentials) -> None:
        data = self._load_all()
        data[provider] = creds.to_dict()
        self._save_all(data)

    def delete(self, provider: str) -> bool:
        data = self._load_all()
        if provider not in data:
            return False
        del data[provider]
        self._save_all(data)
        return True


async def refresh_credentials(
    token_url: str,
    client_id: str,
    creds: OAuthCredentials,
    client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> OAuthCredentials:
    """Exchange the refresh token for a new access token.

    Raises CredentialError on transport failure or a rejected refresh.
    """
    if not creds.refresh_token:
        raise CredentialError("Token refresh failed: no refresh token stored")
    payload = {
        "grant_type": "refresh_token",
        "client_id": client_id,
        "refresh_token": creds.refresh_token,
    }
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout)
    try:
        resp = await client.post(token_url, json=payload)
    except httpx.HTTPError as e:
        raise CredentialError(f"Token refresh failed: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    try:
        data = resp.json()
    except ValueError:
        data = {}
    if resp.status_code >= 400 or not isinstance(data, dict) or not data.get("access_token"):
        desc = ""
        if isinstance(data, dict):
            desc = data.get("error_description") or data.get("error") or ""
        raise CredentialError(f"Token refresh failed: {desc or f'HTTP {resp.status_code}'}")

    expires_in = int(data.get("expires_in", 3600))
    log.info("OAuth token refreshed (expires in %ds)", expires_in)
    return OAuthCredentials(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or creds.refresh_token,
        expires_at=_now_ms() + expires_in * 1000,
        extra=creds.extra,
    )
