#!/usr/bin/env python3
"""Bashobot — a personal assistant daemon.

Entry point. Wires config → stores → tools → orchestrator → channels.
Handles PID file, named pipes, Unix signals, the heartbeat, and the
single-flight message loop. Also hosts the small pipe clients
(-t, --cli) and process controls (--status, --stop).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.handlers
import os
import signal
import sys
import time
from collections.abc import Callable
from pathlib import Path

# Add bashobot directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from approval import ApprovalGate, CommandWhitelist, PendingApprovals
from channels import Channel, InboundMessage, create_channels
from config import Config, ConfigError, RuntimeConfig, RuntimeStore, load_config
from context import ContextManager, PromptBuilder
from memory import create_memory_store
from namedpipes import (
    DEFAULT_CLIENT_TIMEOUT,
    DaemonNotRunning,
    PipeClient,
    create_pipes,
    fifo_reader,
    remove_pipes,
    wake_reader,
    write_reply,
)
from orchestrator import APOLOGY, Orchestrator
from providers import CredentialError, LLMProvider, create_provider
from session import SessionStore
from tools import ToolRegistry, filesystem, memory_tools, shell

log = logging.getLogger("bashobot")

HEARTBEAT_SESSION = "heartbeat"
HEARTBEAT_MESSAGE = (
    "Read HEARTBEAT.md if it exists (workspace context). Follow it strictly. "
    "Do not infer or repeat old tasks from prior chats. "
    "If nothing needs attention, reply HEARTBEAT_OK."
)
HEARTBEAT_OK = "HEARTBEAT_OK"

NOT_RUNNING = "Error: Bashobot daemon is not running."

# A crashed channel listener is restarted after 1s, doubling up to 60s
CHANNEL_RESTART_INITIAL = 1.0
CHANNEL_RESTART_MAX = 60.0

# ─── PID File ────────────────────────────────────────────────────

def read_live_pid(path: Path) -> int | None:
    """PID from the file if that process is alive, else None."""
    try:
        pid = int(path.read_text().strip())
    except (OSError, ValueError):
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return None
    except PermissionError:
        return pid
    return pid


def _check_pid_file(path: Path) -> None:
    """Refuse to start if another instance is live."""
    if not path.exists():
        return
    pid = read_live_pid(path)
    if pid is not None:
        print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
        sys.exit(1)
    log.info("Stale PID file found, removing")
    path.unlink()


def _write_pid_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(os.getpid()))


def _remove_pid_file(path: Path) -> None:
    path.unlink(missing_ok=True)


# ─── Daemon ──────────────────────────────────────────────────────

class BashobotDaemon:
    def __init__(
        self,
        config: Config,
        provider_factory: Callable[[str, Config, str], LLMProvider] = create_provider,
    ):
        self.config = config
        self.running = True
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self.channels: dict[str, Channel] = {}
        self.orchestrator: Orchestrator | None = None
        self.input_pipe: Path | None = None
        self.output_pipe: Path | None = None
        self._provider_factory = provider_factory
        self._tasks: list[asyncio.Task] = []

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count, encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)

        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(logging.INFO)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)
        root.addHandler(sh)

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore", "anthropic", "openai"):
            logging.getLogger(name).setLevel(logging.WARNING)

    def init_components(self) -> None:
        """Build stores, tools, orchestrator and channels.

        Raises ConfigError or CredentialError when the configured provider
        or a channel cannot be set up; nothing has started at that point.
        """
        cfg = self.config
        sessions = SessionStore(cfg.sessions_dir)
        context = ContextManager(sessions, cfg.max_context_tokens, cfg.keep_recent_tokens)
        prompt = PromptBuilder(cfg.workspace, cfg.context_files)
        whitelist = CommandWhitelist(cfg.whitelist_file)
        gate = ApprovalGate(whitelist, PendingApprovals(cfg.approvals_dir),
                            enabled=cfg.whitelist_enabled)
        memory = create_memory_store(cfg)

        shell.configure(timeout=cfg.bash_timeout, max_output=cfg.max_output, gate=gate)
        filesystem.configure(allowed_dirs=cfg.allowed_dirs)
        memory_tools.configure(memory)
        registry = ToolRegistry()
        registry.register_many(shell.TOOLS + filesystem.TOOLS + memory_tools.TOOLS)
        log.info("Tools registered: %s", ", ".join(registry.tool_names))

        runtime = RuntimeStore(cfg.runtime_file, RuntimeConfig.from_config(cfg))
        self.orchestrator = Orchestrator(
            config=cfg,
            sessions=sessions,
            context=context,
            prompt=prompt,
            tools=registry,
            gate=gate,
            whitelist=whitelist,
            runtime=runtime,
            memory=memory,
            provider_factory=self._provider_factory,
        )

        # Fail fast: the active provider must be usable before we listen
        rt = runtime.load()
        self.orchestrator.get_provider(rt.provider, rt.model)

        self.channels = {ch.name: ch for ch in create_channels(cfg)}

    # ─── Producers ───────────────────────────────────────────────

    async def _channel_reader(self, channel: Channel) -> None:
        """Push a channel's messages onto the queue, restarting it after crashes.

        Returns only when the channel's stream ends on its own.
        """
        delay = CHANNEL_RESTART_INITIAL
        while True:
            try:
                async for msg in channel.receive():
                    delay = CHANNEL_RESTART_INITIAL
                    await self.queue.put(msg)
                return
            except asyncio.CancelledError:
                return
            except Exception:
                log.exception("Channel %s reader failed, restarting in %.1fs", channel.name, delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, CHANNEL_RESTART_MAX)

    async def _heartbeat_loop(self) -> None:
        interval = self.config.heartbeat_interval
        log.info("Heartbeat every %ds", interval)
        while True:
            await asyncio.sleep(interval)
            try:
                self.queue.put_nowait(InboundMessage(
                    session_id=HEARTBEAT_SESSION, source="heartbeat", text=HEARTBEAT_MESSAGE,
                ))
            except asyncio.QueueFull:
                log.warning("Queue full, skipping heartbeat")

    # ─── Consumer ────────────────────────────────────────────────

    async def _message_loop(self) -> None:
        """Main message processing loop — sequential."""
        while self.running:
            try:
                item = await asyncio.wait_for(self.queue.get(), timeout=1.0)
            except TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            await self.handle(item)

    async def handle(self, msg: InboundMessage) -> None:
        """Process one inbound message and route its reply. Never raises."""
        if not msg.text.strip():
            return
        log.info("Message from %s (%s): %s", msg.session_id, msg.source, msg.text[:80])
        try:
            reply = await self.orchestrator.process_message(msg.session_id, msg.text, msg.source)
        except Exception:
            log.exception("Processing failed for session %s", msg.session_id)
            reply = APOLOGY
        await self.route_reply(msg, reply)

    async def route_reply(self, msg: InboundMessage, reply: str) -> None:
        if msg.source == "heartbeat":
            if reply.strip() == HEARTBEAT_OK:
                log.debug("Heartbeat: nothing to do")
            else:
                log.info("Heartbeat reply: %s", reply[:500])
            return

        channel = self.channels.get(msg.source)
        if channel is not None:
            try:
                await channel.reply(msg.session_id, reply)
            except Exception as e:
                log.error("Failed to deliver reply via %s: %s", msg.source, e)
            return

        if self.output_pipe is None:
            log.warning("No output pipe, dropping reply for %s", msg.session_id)
            return
        await write_reply(self.output_pipe, msg.session_id, reply)

    # ─── Lifecycle ───────────────────────────────────────────────

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_sigterm():
            log.info("Signal received: shutting down gracefully")
            self.running = False

        try:
            loop.add_signal_handler(signal.SIGTERM, handle_sigterm)
            loop.add_signal_handler(signal.SIGINT, handle_sigterm)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    async def run(self) -> None:
        """Main entry point — starts all components and runs until signalled."""
        cfg = self.config

        self._setup_logging()
        log.info("Starting Bashobot daemon")

        _check_pid_file(cfg.pid_file)
        _write_pid_file(cfg.pid_file)

        try:
            self.init_components()

            for name, channel in self.channels.items():
                await channel.connect()
                log.info("Channel connected: %s", name)

            self._setup_signals(asyncio.get_running_loop())

            self.input_pipe, self.output_pipe = create_pipes(cfg.pipes_dir)
            self._tasks.append(asyncio.create_task(fifo_reader(self.input_pipe, self.queue)))
            for channel in self.channels.values():
                self._tasks.append(asyncio.create_task(self._channel_reader(channel)))
            if cfg.heartbeat_enabled:
                self._tasks.append(asyncio.create_task(self._heartbeat_loop()))

            log.info("Bashobot daemon running (PID %d)", os.getpid())
            await self._message_loop()

        except (ConfigError, CredentialError, ConnectionError) as e:
            log.error("Startup failed: %s", e)
            raise
        finally:
            for task in self._tasks:
                task.cancel()
            if self.input_pipe is not None:
                wake_reader(self.input_pipe)
            await asyncio.gather(*self._tasks, return_exceptions=True)

            for name, channel in self.channels.items():
                try:
                    await channel.disconnect()
                except Exception as e:
                    log.warning("Channel %s disconnect failed: %s", name, e)
            remove_pipes(cfg.pipes_dir)
            _remove_pid_file(cfg.pid_file)
            log.info("Bashobot daemon stopped")


# ─── Process controls ────────────────────────────────────────────

def cmd_status(config: Config) -> int:
    pid = read_live_pid(config.pid_file)
    if pid is None:
        print("Bashobot daemon is not running")
        return 1
    print(f"Bashobot daemon is running (PID: {pid})")
    return 0


def cmd_stop(config: Config, grace: float = 5.0) -> int:
    pid_file = config.pid_file
    if not pid_file.exists():
        print("No PID file found")
        return 1
    pid = read_live_pid(pid_file)
    if pid is None:
        print("Daemon not running, cleaning up PID file")
        _remove_pid_file(pid_file)
        return 0

    os.kill(pid, signal.SIGTERM)
    deadline = time.monotonic() + grace
    while time.monotonic() < deadline:
        if read_live_pid(pid_file) is None:
            break
        time.sleep(0.1)
    else:
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        _remove_pid_file(pid_file)
        remove_pipes(config.pipes_dir)
    print(f"Stopped Bashobot daemon (PID: {pid})")
    return 0


def _client(config: Config, timeout: float) -> PipeClient | None:
    if read_live_pid(config.pid_file) is None:
        print(NOT_RUNNING, file=sys.stderr)
        print("Start it with: bashobot --daemon", file=sys.stderr)
        return None
    return PipeClient(config.pipes_dir, timeout=timeout)


def cmd_send(config: Config, text: str, session_id: str,
             timeout: float = DEFAULT_CLIENT_TIMEOUT) -> int:
    client = _client(config, timeout)
    if client is None:
        return 1
    try:
        print(client.send(session_id, text, source="pipe"))
    except DaemonNotRunning:
        print(NOT_RUNNING, file=sys.stderr)
        return 1
    except TimeoutError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def cmd_cli(config: Config, timeout: float = DEFAULT_CLIENT_TIMEOUT) -> int:
    client = _client(config, timeout)
    if client is None:
        return 1
    session_id = f"cli_{os.getpid()}"
    print("Bashobot Interactive CLI")
    print("Type /help for commands, /exit to quit")
    print()
    while True:
        try:
            text = input("You: ")
        except EOFError:
            print()
            print("Goodbye!")
            return 0
        if not text.strip():
            continue
        if text.strip() == "/exit":
            print("Goodbye!")
            return 0
        try:
            reply = client.send(session_id, text, source="cli")
        except DaemonNotRunning:
            print(NOT_RUNNING, file=sys.stderr)
            return 1
        except TimeoutError as e:
            print(f"Error: {e}", file=sys.stderr)
            continue
        print(f"Bot: {reply}")
        print()


# ─── CLI Entry Point ─────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bashobot",
        description="Bashobot — a personal assistant daemon",
    )
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to config file (default: $BASHOBOT_CONFIG or ~/.bashobot/bashobot.toml)",
    )
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--daemon", action="store_true", help="Run the daemon (default)")
    action.add_argument("-t", "--text", metavar="MESSAGE", help="Send one message to the running daemon")
    action.add_argument("--cli", action="store_true", help="Interactive client for the running daemon")
    action.add_argument("--status", action="store_true", help="Check whether the daemon is running")
    action.add_argument("--stop", action="store_true", help="Stop the running daemon")
    parser.add_argument("-s", "--session", default="pipe_default",
                        help="Session id for -t (default: pipe_default)")
    parser.add_argument("--timeout", type=float, default=DEFAULT_CLIENT_TIMEOUT,
                        help="Seconds a client waits for a reply")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    if args.status:
        sys.exit(cmd_status(config))
    if args.stop:
        sys.exit(cmd_stop(config))
    if args.text is not None:
        sys.exit(cmd_send(config, args.text, args.session, args.timeout))
    if args.cli:
        sys.exit(cmd_cli(config, args.timeout))

    daemon = BashobotDaemon(config)
    try:
        asyncio.run(daemon.run())
    except (ConfigError, CredentialError, ConnectionError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
