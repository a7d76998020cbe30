"""File operation tools — read, write, list."""

from __future__ import annotations

import os
from pathlib import Path

# Allowed directory prefixes, set at startup via configure(). Empty = no restriction.
_PATH_ALLOW: list[str] = []
_BASE_DIR: Path | None = None

_BINARY_SNIFF_BYTES = 8192
_LIST_MAX_DEPTH = 3
_LIST_MAX_ENTRIES = 200


def configure(allowed_dirs: list[str] | None = None, base_dir: Path | None = None) -> None:
    global _PATH_ALLOW, _BASE_DIR
    if allowed_dirs is not None:
        _PATH_ALLOW = [os.path.normpath(os.path.expanduser(d)) for d in allowed_dirs if d]
    _BASE_DIR = base_dir


def resolve_path(path: str) -> str:
    """Expand ~, anchor relative paths at home, normalise without following symlinks."""
    p = os.path.expanduser(path or "~")
    if not os.path.isabs(p):
        p = os.path.join(str(_BASE_DIR or Path.home()), p)
    return os.path.normpath(p)


def _check_path(resolved: str) -> dict | None:
    """Validate a resolved path against the allowlist. Returns error or None if OK."""
    if not _PATH_ALLOW:
        return None
    for prefix in _PATH_ALLOW:
        if resolved == prefix or resolved.startswith(prefix.rstrip(os.sep) + os.sep):
            return None
    return {"error": f"Access denied: {resolved} is outside allowed directories"}


def _is_binary(p: Path) -> bool:
    with open(p, "rb") as f:
        return b"\0" in f.read(_BINARY_SNIFF_BYTES)


def tool_read_file(path: str, offset: int = 1, limit: int = 500) -> dict:
    """Read a window of lines from a text file."""
    resolved = resolve_path(path)
    err = _check_path(resolved)
    if err:
        return err
    p = Path(resolved)
    if not p.exists():
        return {"error": f"File not found: {resolved}"}
    if not p.is_file():
        return {"error": f"Not a file: {resolved}"}
    try:
        if _is_binary(p):
            size = p.stat().st_size
            return {"error": f"Binary file ({size} bytes): {resolved}", "size": size}
        with open(p, encoding="utf-8", errors="replace") as f:
            lines = f.readlines()
    except PermissionError:
        return {"error": f"Permission denied: {resolved}"}

    offset = max(1, int(offset))
    limit = max(1, int(limit))
    total = len(lines)
    selected = lines[offset - 1:offset - 1 + limit]
    return {
        "path": resolved,
        "content": "".join(selected),
        "total_lines": total,
        "showing": {"from": offset, "to": offset - 1 + len(selected)},
    }


def tool_write_file(path: str, content: str) -> dict:
    """Write content to a file, creating directories as needed."""
    resolved = resolve_path(path)
    err = _check_path(resolved)
    if err:
        return err
    p = Path(resolved)
    data = content.encode("utf-8")
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        with open(p, "wb") as f:
            f.write(data)
    except PermissionError:
        return {"error": f"Permission denied: {resolved}"}
    except IsADirectoryError:
        return {"error": f"Is a directory: {resolved}"}
    return {"success": True, "path": resolved, "bytes_written": len(data)}


def _entry(p: Path, root: Path) -> dict:
    if p.is_symlink():
        kind = "symlink"
    elif p.is_dir():
        kind = "directory"
    else:
        kind = "file"
    try:
        size = p.lstat().st_size if kind != "directory" else 0
    except OSError:
        size = 0
    return {"name": str(p.relative_to(root)), "type": kind, "size": size}


def tool_list_files(path: str = "~", recursive: bool = False) -> dict:
    """List directory entries, optionally recursing a few levels."""
    resolved = resolve_path(path)
    err = _check_path(resolved)
    if err:
        return err
    root = Path(resolved)
    if not root.exists():
        return {"error": f"Directory not found: {resolved}"}
    if not root.is_dir():
        return {"error": f"Not a directory: {resolved}"}

    entries: list[dict] = []
    truncated = False
    stack = [(root, 1)]
    try:
        while stack:
            current, depth = stack.pop(0)
            for child in sorted(current.iterdir(), key=lambda c: c.name):
                if len(entries) >= _LIST_MAX_ENTRIES:
                    truncated = True
                    break
                entries.append(_entry(child, root))
                if recursive and depth < _LIST_MAX_DEPTH and child.is_dir() \
                        and not child.is_symlink():
                    stack.append((child, depth + 1))
            if truncated:
                break
    except PermissionError:
        return {"error": f"Permission denied: {resolved}"}

    return {"path": resolved, "entries": entries, "truncated": truncated}


TOOLS = [
    {
        "name": "read_file",
        "description": (
            "Read the contents of a file. Returns the file contents as text. "
            "For binary files, returns a message indicating it's binary."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file to read"},
                "offset": {"type": "integer", "description": "First line to return (1-indexed)", "default": 1},
                "limit": {"type": "integer", "description": "Max lines to return", "default": 500},
            },
            "required": ["path"],
        },
        "function": tool_read_file,
    },
    {
        "name": "write_file",
        "description": (
            "Write content to a file. Creates the file if it doesn't exist, "
            "overwrites if it does. Creates parent directories automatically."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file to write"},
                "content": {"type": "string", "description": "Content to write to the file"},
            },
            "required": ["path", "content"],
        },
        "function": tool_write_file,
    },
    {
        "name": "list_files",
        "description": (
            "List files and directories in a given path. "
            "Returns a listing with file types and sizes."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path to list (defaults to home directory)"},
                "recursive": {"type": "boolean", "description": "List recursively (max depth 3)", "default": False},
            },
            "required": [],
        },
        "function": tool_list_files,
    },
]
