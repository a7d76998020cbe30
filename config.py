"""Configuration loader for the Bashobot daemon.

Loads bashobot.toml, applies environment variable overrides for secrets
and settings, validates required fields, and provides typed access to
all settings. Immutable after load. The small set of settings users can
flip at runtime (provider, model, tool/memory toggles) lives in a
separate RuntimeConfig overlay that is re-read on every message.
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from session import _atomic_write

log = logging.getLogger(__name__)

DEFAULT_STATE_DIR = "~/.bashobot"
DEFAULT_CONFIG_NAME = "bashobot.toml"

KNOWN_CHANNELS = ("telegram",)
KNOWN_MEMORY_BACKENDS = ("keyword", "markdown")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _parse_bool(val: str) -> bool:
    return val.strip().lower() in ("1", "true", "yes", "on", "enable", "enabled")


def _parse_list(val: str) -> list[str]:
    return [item.strip() for item in val.split(",") if item.strip()]


def _parse_channels(val: str) -> list[str]:
    if val.strip().lower() in ("", "none"):
        return []
    return _parse_list(val)


def _parse_user_ids(val: str) -> list[int]:
    ids = []
    for item in _parse_list(val):
        try:
            ids.append(int(item))
        except ValueError:
            raise ConfigError(f"TELEGRAM_ALLOWED_USERS: not a numeric user id: {item!r}") from None
    return ids


# Environment variable overrides for secrets
_ENV_OVERRIDES = {
    "BASHOBOT_ANTHROPIC_KEY": ("api_keys", "anthropic"),
    "ANTHROPIC_API_KEY": ("api_keys", "anthropic"),
    "BASHOBOT_OPENAI_KEY": ("api_keys", "openai"),
    "OPENAI_API_KEY": ("api_keys", "openai"),
    "BASHOBOT_GEMINI_KEY": ("api_keys", "gemini"),
    "GEMINI_API_KEY": ("api_keys", "gemini"),
}

# Environment variable overrides for settings: var -> (key path, converter)
_ENV_SETTINGS: dict[str, tuple[tuple[str, ...], Callable[[str], Any]]] = {
    "BASHOBOT_CONFIG_DIR": (("paths", "state_dir"), str),
    "BASHOBOT_WORKSPACE": (("paths", "workspace"), str),
    "BASHOBOT_LLM": (("llm", "provider"), str),
    "BASHOBOT_MODEL": (("llm", "model"), str),
    "BASHOBOT_INTERFACE": (("channels", "enabled"), _parse_channels),
    "BASHOBOT_TOOLS_ENABLED": (("tools", "enabled"), _parse_bool),
    "BASHOBOT_ALLOWED_DIRS": (("tools", "allowed_dirs"), _parse_list),
    "BASHOBOT_MAX_OUTPUT": (("tools", "max_output"), int),
    "BASHOBOT_BASH_TIMEOUT": (("tools", "bash_timeout"), int),
    "BASHOBOT_CMD_WHITELIST_ENABLED": (("tools", "whitelist_enabled"), _parse_bool),
    "BASHOBOT_MEMORY_ENABLED": (("memory", "enabled"), _parse_bool),
    "BASHOBOT_MEMORY_BACKEND": (("memory", "backend"), str),
    "BASHOBOT_HEARTBEAT_ENABLED": (("heartbeat", "enabled"), _parse_bool),
    "BASHOBOT_HEARTBEAT_INTERVAL": (("heartbeat", "interval"), int),
    "MAX_CONTEXT_TOKENS": (("context", "max_tokens"), int),
    "KEEP_RECENT_TOKENS": (("context", "keep_recent_tokens"), int),
    "TELEGRAM_ALLOWED_USERS": (("channels", "telegram", "allow_from"), _parse_user_ids),
}


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _deep_set(d: dict, keys: tuple[str, ...], value: Any) -> None:
    for k in keys[:-1]:
        d = d.setdefault(k, {})
    d[keys[-1]] = value


def _resolve_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


class Config:
    """Immutable configuration loaded from bashobot.toml."""

    def __init__(self, data: dict, config_dir: Path | None = None):
        self._data = data
        self._config_dir = config_dir or Path.cwd()
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self):
        for env_var, key_path in _ENV_OVERRIDES.items():
            val = os.environ.get(env_var)
            if val:
                section, key = key_path
                if section not in self._data:
                    self._data[section] = {}
                self._data[section][key] = val
        for env_var, (key_path, convert) in _ENV_SETTINGS.items():
            val = os.environ.get(env_var)
            if val is None:
                continue
            try:
                _deep_set(self._data, key_path, convert(val))
            except ValueError as e:
                raise ConfigError(f"{env_var}: invalid value {val!r} ({e})") from e

    def _validate(self):
        errors = []
        if not self.llm_provider:
            errors.append("[llm] provider is required")
        for name, value in (
            ("[context] max_tokens", self.max_context_tokens),
            ("[context] keep_recent_tokens", self.keep_recent_tokens),
            ("[tools] max_output", self.max_output),
            ("[tools] bash_timeout", self.bash_timeout),
            ("[llm] max_tool_iterations", self.max_tool_iterations),
        ):
            if not isinstance(value, int) or value <= 0:
                errors.append(f"{name} must be a positive integer")
        if (isinstance(self.keep_recent_tokens, int) and isinstance(self.max_context_tokens, int)
                and self.keep_recent_tokens >= self.max_context_tokens):
            errors.append("[context] keep_recent_tokens must be below max_tokens")
        for ch in self.channels:
            if ch not in KNOWN_CHANNELS:
                errors.append(f"[channels] unknown channel: {ch!r}")
        if "telegram" in self.channels and not self.telegram_token:
            token_env = self.telegram_config.get("token_env", "TELEGRAM_BOT_TOKEN")
            errors.append(f"[channels.telegram] bot token not found in env var {token_env}")
        if self.memory_backend not in KNOWN_MEMORY_BACKENDS:
            errors.append(f"[memory] backend must be one of {', '.join(KNOWN_MEMORY_BACKENDS)}")
        if self.heartbeat_enabled and self.heartbeat_interval <= 0:
            errors.append("[heartbeat] interval must be positive")
        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    # --- Paths ---

    @property
    def config_dir(self) -> Path:
        """Directory containing bashobot.toml (for resolving relative paths)."""
        return self._config_dir

    @property
    def state_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "state_dir", default=DEFAULT_STATE_DIR))

    @property
    def workspace(self) -> Path:
        ws = _deep_get(self._data, "paths", "workspace", default="")
        return _resolve_path(ws) if ws else self.state_dir

    @property
    def sessions_dir(self) -> Path:
        return self.state_dir / "sessions"

    @property
    def pipes_dir(self) -> Path:
        return self.state_dir / "pipes"

    @property
    def pid_file(self) -> Path:
        return self.state_dir / "bashobot.pid"

    @property
    def log_file(self) -> Path:
        return self.state_dir / "bashobot.log"

    @property
    def runtime_file(self) -> Path:
        return self.state_dir / "runtime.json"

    @property
    def whitelist_file(self) -> Path:
        return self.state_dir / "command_whitelist"

    @property
    def approvals_dir(self) -> Path:
        return self.state_dir / "approvals"

    @property
    def credentials_file(self) -> Path:
        return self.state_dir / "auth.json"

    @property
    def memory_dir(self) -> Path:
        default = "memories" if self.memory_backend == "keyword" else "memory"
        return self.state_dir / _deep_get(self._data, "memory", "dir", default=default)

    # --- LLM ---

    @property
    def llm_provider(self) -> str:
        return _deep_get(self._data, "llm", "provider", default="gemini")

    @property
    def llm_model(self) -> str:
        """Configured model, or "" to use the provider's default."""
        return _deep_get(self._data, "llm", "model", default="")

    @property
    def max_tokens(self) -> int:
        return _deep_get(self._data, "llm", "max_tokens", default=8192)

    @property
    def llm_timeout(self) -> float:
        return float(_deep_get(self._data, "llm", "timeout", default=120))

    @property
    def max_tool_iterations(self) -> int:
        return _deep_get(self._data, "llm", "max_tool_iterations", default=10)

    def provider_config(self, name: str) -> dict:
        """Per-provider settings from [llm.providers.<name>] (may be empty)."""
        return _deep_get(self._data, "llm", "providers", name, default={}) or {}

    # --- Context ---

    @property
    def max_context_tokens(self) -> int:
        return _deep_get(self._data, "context", "max_tokens", default=110000)

    @property
    def keep_recent_tokens(self) -> int:
        return _deep_get(self._data, "context", "keep_recent_tokens", default=2000)

    @property
    def context_files(self) -> list[str]:
        return _deep_get(self._data, "context", "files", default=["SOUL.md"])

    # --- Tools ---

    @property
    def tools_enabled(self) -> bool:
        return _deep_get(self._data, "tools", "enabled", default=True)

    @property
    def allowed_dirs(self) -> list[str]:
        dirs = _deep_get(self._data, "tools", "allowed_dirs", default=[])
        return [os.path.normpath(os.path.expanduser(d)) for d in dirs]

    @property
    def max_output(self) -> int:
        return _deep_get(self._data, "tools", "max_output", default=50000)

    @property
    def bash_timeout(self) -> int:
        return _deep_get(self._data, "tools", "bash_timeout", default=30)

    @property
    def whitelist_enabled(self) -> bool:
        return _deep_get(self._data, "tools", "whitelist_enabled", default=True)

    # --- Memory ---

    @property
    def memory_enabled(self) -> bool:
        return _deep_get(self._data, "memory", "enabled", default=True)

    @property
    def memory_backend(self) -> str:
        return _deep_get(self._data, "memory", "backend", default="keyword")

    @property
    def memory_max_in_context(self) -> int:
        return _deep_get(self._data, "memory", "max_in_context", default=3)

    @property
    def memory_min_messages(self) -> int:
        return _deep_get(self._data, "memory", "min_messages", default=4)

    # --- Channels ---

    @property
    def channels(self) -> list[str]:
        enabled = _deep_get(self._data, "channels", "enabled", default=[])
        if isinstance(enabled, str):
            return _parse_channels(enabled)
        return list(enabled)

    @property
    def telegram_config(self) -> dict:
        return _deep_get(self._data, "channels", "telegram", default={})

    @property
    def telegram_token(self) -> str:
        token_env = self.telegram_config.get("token_env", "TELEGRAM_BOT_TOKEN")
        return os.environ.get(token_env, "")

    # --- Heartbeat ---

    @property
    def heartbeat_enabled(self) -> bool:
        return _deep_get(self._data, "heartbeat", "enabled", default=True)

    @property
    def heartbeat_interval(self) -> int:
        return _deep_get(self._data, "heartbeat", "interval", default=300)

    # --- Logging ---

    @property
    def log_max_bytes(self) -> int:
        return _deep_get(self._data, "logging", "max_bytes", default=10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return _deep_get(self._data, "logging", "backup_count", default=3)

    # --- API Keys ---

    def api_key(self, provider: str) -> str:
        return _deep_get(self._data, "api_keys", provider, default="")

    # --- Raw access ---

    def raw(self, *keys: str, default: Any = None) -> Any:
        return _deep_get(self._data, *keys, default=default)


def _load_dotenv(toml_path: Path) -> None:
    """Load .env file from same directory as bashobot.toml if it exists."""
    env_file = toml_path.parent / ".env"
    if not env_file.exists():
        return
    with open(env_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, val = line.partition("=")
            key = key.strip()
            if key.startswith("export "):
                key = key[len("export "):].strip()
            val = val.strip().strip('"').strip("'")
            # Only set if not already in environment (env takes precedence)
            if key not in os.environ:
                os.environ[key] = val


def default_config_path() -> Path:
    env_path = os.environ.get("BASHOBOT_CONFIG")
    if env_path:
        return Path(env_path)
    state_dir = os.environ.get("BASHOBOT_CONFIG_DIR", DEFAULT_STATE_DIR)
    return Path(state_dir) / DEFAULT_CONFIG_NAME


def load_config(path: str | Path | None = None, overrides: dict | None = None) -> Config:
    """Load and validate config from a TOML file.

    Args:
        path: Path to bashobot.toml. When omitted, the default location is
              used and a missing file means "defaults + environment".
        overrides: Dict of dotted-key overrides to apply to raw TOML data
                   before constructing Config (e.g. CLI args).
    """
    explicit = path is not None
    p = Path(path if explicit else default_config_path()).expanduser().resolve()
    data: dict = {}
    if p.exists():
        _load_dotenv(p)
        try:
            with open(p, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Malformed config file {p}: {e}") from e
    elif explicit:
        raise ConfigError(f"Config file not found: {p}")
    else:
        log.debug("No config file at %s, using defaults and environment", p)
    if overrides:
        for key_path, value in overrides.items():
            _deep_set(data, tuple(key_path.split(".")), value)
    return Config(data, config_dir=p.parent)


# ─── Runtime overlay ────────────────────────────────────────────


@dataclass
class RuntimeConfig:
    """Settings that slash commands can change while the daemon runs."""

    provider: str
    model: str
    tools_enabled: bool = True
    memory_enabled: bool = True

    @classmethod
    def from_config(cls, config: Config) -> RuntimeConfig:
        return cls(
            provider=config.llm_provider,
            model=config.llm_model,
            tools_enabled=config.tools_enabled,
            memory_enabled=config.memory_enabled,
        )


class RuntimeStore:
    """Persists RuntimeConfig changes as a JSON overlay on the static config.

    load() is called once per processed message so that changes made by
    commands (or by hand-editing the file) take effect on the next turn.
    """

    def __init__(self, path: Path, defaults: RuntimeConfig):
        self.path = path
        self.defaults = defaults

    def load(self) -> RuntimeConfig:
        if not self.path.exists():
            return replace(self.defaults)
        try:
            with open(self.path, encoding="utf-8") as f:
                overlay = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            log.warning("Ignoring unreadable runtime overlay %s: %s", self.path, e)
            return replace(self.defaults)
        if not isinstance(overlay, dict):
            log.warning("Ignoring runtime overlay %s: not a JSON object", self.path)
            return replace(self.defaults)
        known = {k: v for k, v in overlay.items() if k in asdict(self.defaults)}
        return replace(self.defaults, **known)

    def save(self, runtime: RuntimeConfig) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.path, json.dumps(asdict(runtime), indent=2))

    def update(self, **changes: Any) -> RuntimeConfig:
        runtime = replace(self.load(), **changes)
        self.save(runtime)
        log.info("Runtime config updated: %s", changes)
        return runtime
