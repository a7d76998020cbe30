"""Tests for tools/filesystem.py — read/write/list and directory containment."""

import os

from tools import filesystem
from tools.filesystem import tool_list_files, tool_read_file, tool_write_file


# ─── Read ────────────────────────────────────────────────────────

class TestReadFile:
    def test_read_whole_file(self, fs_workspace):
        result = tool_read_file(str(fs_workspace / "hello.txt"))
        assert result["content"] == "line one\nline two\nline three\n"
        assert result["total_lines"] == 3
        assert result["showing"] == {"from": 1, "to": 3}

    def test_offset_and_limit(self, fs_workspace):
        result = tool_read_file(str(fs_workspace / "hello.txt"), offset=2, limit=1)
        assert result["content"] == "line two\n"
        assert result["showing"] == {"from": 2, "to": 2}

    def test_relative_path_anchored_at_base(self, fs_workspace):
        result = tool_read_file("subdir/nested.txt")
        assert result["content"] == "nested content\n"

    def test_missing_file(self, fs_workspace):
        assert "not found" in tool_read_file(str(fs_workspace / "nope.txt"))["error"]

    def test_directory_is_not_a_file(self, fs_workspace):
        assert "Not a file" in tool_read_file(str(fs_workspace / "subdir"))["error"]

    def test_binary_detected(self, fs_workspace):
        (fs_workspace / "blob.bin").write_bytes(b"\x89PNG\x00\x01\x02")
        result = tool_read_file(str(fs_workspace / "blob.bin"))
        assert result["error"].startswith("Binary file (7 bytes)")
        assert result["size"] == 7


# ─── Write ───────────────────────────────────────────────────────

class TestWriteFile:
    def test_write_creates_parents(self, fs_workspace):
        target = fs_workspace / "a" / "b" / "out.txt"
        result = tool_write_file(str(target), "héllo")
        assert result == {"success": True, "path": str(target), "bytes_written": 6}
        assert target.read_text() == "héllo"

    def test_overwrite(self, fs_workspace):
        tool_write_file(str(fs_workspace / "hello.txt"), "new")
        assert (fs_workspace / "hello.txt").read_text() == "new"

    def test_write_to_directory_fails(self, fs_workspace):
        result = tool_write_file(str(fs_workspace / "subdir"), "x")
        assert "error" in result


# ─── List ────────────────────────────────────────────────────────

class TestListFiles:
    def test_flat_listing(self, fs_workspace):
        result = tool_list_files(str(fs_workspace))
        names = {e["name"]: e for e in result["entries"]}
        assert set(names) == {"hello.txt", "long.txt", "subdir"}
        assert names["subdir"]["type"] == "directory"
        assert names["hello.txt"]["size"] == len("line one\nline two\nline three\n")
        assert result["truncated"] is False

    def test_recursive_listing(self, fs_workspace):
        result = tool_list_files(str(fs_workspace), recursive=True)
        names = [e["name"] for e in result["entries"]]
        assert os.path.join("subdir", "nested.txt") in names

    def test_depth_limited(self, fs_workspace):
        deep = fs_workspace / "d1" / "d2" / "d3" / "d4"
        deep.mkdir(parents=True)
        (deep / "too_deep.txt").write_text("x")
        names = [e["name"] for e in tool_list_files(str(fs_workspace), recursive=True)["entries"]]
        assert os.path.join("d1", "d2", "d3") in names
        assert not any("too_deep" in n for n in names)

    def test_entry_cap(self, fs_workspace):
        many = fs_workspace / "many"
        many.mkdir()
        for i in range(250):
            (many / f"f{i:03d}").write_text("")
        result = tool_list_files(str(many))
        assert len(result["entries"]) == 200
        assert result["truncated"] is True

    def test_symlink_reported(self, fs_workspace):
        (fs_workspace / "link").symlink_to(fs_workspace / "hello.txt")
        entries = {e["name"]: e for e in tool_list_files(str(fs_workspace))["entries"]}
        assert entries["link"]["type"] == "symlink"

    def test_missing_directory(self, fs_workspace):
        assert "not found" in tool_list_files(str(fs_workspace / "nope"))["error"]


# ─── Containment ─────────────────────────────────────────────────

class TestAllowedDirs:
    def test_outside_denied(self, fs_workspace):
        result = tool_read_file("/etc/hostname")
        assert result["error"] == "Access denied: /etc/hostname is outside allowed directories"

    def test_dotdot_escape_denied(self, fs_workspace):
        result = tool_read_file(str(fs_workspace / ".." / "escape.txt"))
        assert result["error"].startswith("Access denied")

    def test_sibling_prefix_denied(self, fs_workspace):
        sibling = str(fs_workspace) + "-evil"
        result = tool_write_file(os.path.join(sibling, "x.txt"), "x")
        assert result["error"].startswith("Access denied")
        assert not os.path.exists(sibling)

    def test_write_outside_denied(self, fs_workspace, tmp_path_factory):
        other = tmp_path_factory.mktemp("other")
        result = tool_write_file(str(other / "x.txt"), "x")
        assert result["error"].startswith("Access denied")
        assert not (other / "x.txt").exists()

    def test_list_outside_denied(self, fs_workspace):
        assert tool_list_files("/")["error"].startswith("Access denied")

    def test_empty_allowlist_means_unrestricted(self, tmp_path):
        filesystem.configure([])
        (tmp_path / "f.txt").write_text("ok")
        assert tool_read_file(str(tmp_path / "f.txt"))["content"] == "ok"

    def test_root_itself_allowed(self, fs_workspace):
        assert "entries" in tool_list_files(str(fs_workspace))
