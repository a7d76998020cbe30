"""Approval gate — the first use of any shell command needs a human "yes".

The gate is a two-turn protocol. When the model runs a command whose name
is not on the global whitelist, the bash tool records a pending approval
for the session and returns an approval-required result instead of
running it. The user's next plain-text message in that session is read
as the decision.
"""

from __future__ import annotations

import logging
import re
import shlex
from pathlib import Path

from session import _atomic_write, safe_id

log = logging.getLogger(__name__)

APPROVAL_PROMPT = "The command `{command}` is about to be executed for the first time, approve? <yes|no>"

_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


def extract_command_name(command: str) -> str:
    """Leading command token, skipping VAR=value prefixes and sudo."""
    try:
        tokens = shlex.split(command)
    except ValueError:
        tokens = command.split()
    for tok in tokens:
        if _ASSIGNMENT.match(tok) or tok == "sudo":
            continue
        return tok
    return ""


class CommandWhitelist:
    """Global set of approved command names, one per line on disk."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> set[str]:
        if not self.path.exists():
            return set()
        with open(self.path, encoding="utf-8") as f:
            return {line.strip() for line in f if line.strip()}

    def __contains__(self, name: str) -> bool:
        return name in self.load()

    def names(self) -> list[str]:
        return sorted(self.load())

    def add(self, name: str) -> bool:
        """Add a command name. Returns False if it was already present."""
        names = self.load()
        if name in names:
            return False
        names.add(name)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.path, "".join(f"{n}\n" for n in sorted(names)), mode=0o600)
        log.info("Whitelisted command: %s", name)
        return True


class PendingApprovals:
    """At most one pending command name per session, one file each."""

    def __init__(self, directory: Path):
        self.dir = directory

    def _path(self, session_id: str) -> Path:
        return self.dir / safe_id(session_id)

    def get(self, session_id: str) -> str | None:
        path = self._path(session_id)
        if not path.exists():
            return None
        name = path.read_text(encoding="utf-8").strip()
        return name or None

    def set(self, session_id: str, command_name: str) -> None:
        self.dir.mkdir(parents=True, exist_ok=True)
        _atomic_write(self._path(session_id), command_name, mode=0o600)

    def clear(self, session_id: str) -> None:
        self._path(session_id).unlink(missing_ok=True)


class ApprovalGate:
    def __init__(self, whitelist: CommandWhitelist, pending: PendingApprovals,
                 enabled: bool = True):
        self.whitelist = whitelist
        self.pending = pending
        self.enabled = enabled

    def check(self, session_id: str, command: str) -> dict | None:
        """Return None if command may run, else an error/approval result."""
        if not self.enabled:
            return None
        name = extract_command_name(command)
        if not name:
            return {"error": "Unable to determine command name"}
        if name in self.whitelist:
            return None

        existing = self.pending.get(session_id)
        if existing and existing != name:
            log.warning("Session %s: pending approval for %r replaced by %r",
                        session_id, existing, name)
        self.pending.set(session_id, name)
        prompt = APPROVAL_PROMPT.format(command=name)
        log.info("Session %s: approval required for %r", session_id, name)
        return {
            "error": prompt,
            "approval_required": True,
            "command": name,
            "prompt": prompt,
        }

    def pending_for(self, session_id: str) -> str | None:
        return self.pending.get(session_id)

    def resolve(self, session_id: str, text: str) -> str:
        """Apply the user's yes/no decision to the pending approval."""
        name = self.pending.get(session_id)
        if name is None:
            return "No command is awaiting approval."
        self.pending.clear(session_id)
        if text.strip().lower() == "yes":
            self.whitelist.add(name)
            return f"Approved command: {name}"
        log.info("Session %s: command %r denied", session_id, name)
        return f"Error: command denied: {name}"
