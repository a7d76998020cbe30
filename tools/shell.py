"""Shell execution tool — bash.

Every command passes the approval gate first. Approved commands run in
their own process group with a wall-clock timeout; stdout and stderr are
captured together and clipped to a byte ceiling. A nonzero exit code is
reported as data, not as a tool failure.
"""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from approval import ApprovalGate

_TIMEOUT = 30
_MAX_OUTPUT = 50000
_BASE_DIR: Path | None = None
_gate: ApprovalGate | None = None

# Session whose turn is executing; set by the orchestrator before each loop
_session_id = ""

TIMEOUT_EXIT_CODE = 124

# Environment variable patterns to filter out of child processes
_SECRET_PREFIXES = ("BASHOBOT_",)
_SECRET_SUFFIXES = ("_KEY", "_TOKEN", "_SECRET", "_PASSWORD", "_CREDENTIALS", "_PASS")


def configure(
    timeout: int = 30,
    max_output: int = 50000,
    gate: ApprovalGate | None = None,
    base_dir: Path | None = None,
) -> None:
    global _TIMEOUT, _MAX_OUTPUT, _gate, _BASE_DIR
    _TIMEOUT = timeout
    _MAX_OUTPUT = max_output
    _gate = gate
    _BASE_DIR = base_dir


def set_current_session(session_id: str) -> None:
    global _session_id
    _session_id = session_id


def _safe_env() -> dict[str, str]:
    """Build environment dict with secret variables filtered out."""
    env = {}
    for key, val in os.environ.items():
        if any(key.startswith(p) for p in _SECRET_PREFIXES):
            continue
        if any(key.endswith(s) for s in _SECRET_SUFFIXES):
            continue
        env[key] = val
    return env


def truncate_output(data: bytes, limit: int) -> str:
    """Decode output, clipping at limit bytes with a marker."""
    if len(data) <= limit:
        return data.decode("utf-8", errors="replace")
    clipped = data[:limit].decode("utf-8", errors="replace")
    return f"{clipped}\n\n[Output truncated at {limit} bytes]"


def _resolve_working_dir(working_dir: str | None) -> Path:
    base = _BASE_DIR or Path.home()
    if not working_dir:
        return base
    p = Path(os.path.expanduser(working_dir))
    if not p.is_absolute():
        p = base / p
    return Path(os.path.normpath(p))


async def tool_bash(command: str, working_dir: str | None = None) -> dict:
    """Run a bash command and return combined output and exit code."""
    if not command or not command.strip():
        return {"error": "No command provided"}

    if _gate is not None:
        blocked = _gate.check(_session_id, command)
        if blocked is not None:
            return blocked

    cwd = _resolve_working_dir(working_dir)
    if not cwd.is_dir():
        return {"error": f"Working directory does not exist: {cwd}"}

    try:
        proc = await asyncio.create_subprocess_exec(
            "bash", "-c", command,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=_safe_env(),
            start_new_session=True,
        )
    except OSError as e:
        return {"error": f"Command execution failed: {e}"}

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=_TIMEOUT)
    except TimeoutError:
        # Kill entire process group to prevent orphans
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        await proc.wait()
        return {
            "output": f"Command timed out after {_TIMEOUT}s",
            "exit_code": TIMEOUT_EXIT_CODE,
        }

    return {
        "output": truncate_output(stdout or b"", _MAX_OUTPUT),
        "exit_code": proc.returncode,
    }


TOOLS = [
    {
        "name": "bash",
        "description": (
            "Execute a bash command and return the output. Use this to run shell "
            "commands, scripts, or system utilities. The command runs in a bash shell "
            "with a timeout. Be careful with destructive commands."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The bash command to execute"},
                "working_dir": {
                    "type": "string",
                    "description": "Optional working directory for the command (defaults to home directory)",
                },
            },
            "required": ["command"],
        },
        "function": tool_bash,
    },
]
