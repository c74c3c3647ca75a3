"""Tests for the built-in tools and the ToolCatalog dispatcher."""

import asyncio
import os
import sys
import time
from pathlib import Path

import pytest

from bigdream.messages import ToolCall
from bigdream.report import ToolExecutionError
from bigdream.tools import (
    MAX_LIST_RESULTS,
    ToolCatalog,
    _delete_file,
    _edit_file,
    _list_files,
    _read_file,
    _run_command,
    _write_file,
    safe_resolve,
)


def _touch(path, content="", mtime=None):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


# ---------------------------------------------------------------------------
# safe_resolve
# ---------------------------------------------------------------------------


class TestSafeResolve:
    def test_inside(self, tmp_path):
        assert safe_resolve("a/b.txt", str(tmp_path)) == tmp_path.resolve() / "a" / "b.txt"

    def test_parent_escape(self, tmp_path):
        with pytest.raises(ToolExecutionError, match="outside the working directory"):
            safe_resolve("../secret", str(tmp_path))

    def test_absolute_outside(self, tmp_path):
        with pytest.raises(ToolExecutionError):
            safe_resolve("/etc/passwd", str(tmp_path))

    def test_absolute_inside(self, tmp_path):
        target = tmp_path / "x.txt"
        assert safe_resolve(str(target), str(tmp_path)) == target.resolve()

    def test_symlink_escape(self, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        base = tmp_path / "base"
        base.mkdir()
        (base / "link").symlink_to(outside)
        with pytest.raises(ToolExecutionError):
            safe_resolve("link/file.txt", str(base))


# ---------------------------------------------------------------------------
# list_files / read_file
# ---------------------------------------------------------------------------


class TestListFiles:
    def test_pattern_and_mtime_order(self, tmp_path):
        now = time.time()
        _touch(tmp_path / "old.py", mtime=now - 100)
        _touch(tmp_path / "pkg" / "new.py", mtime=now)
        _touch(tmp_path / "notes.md")

        out = _list_files(str(tmp_path), "**/*.py")

        assert out.splitlines() == [os.path.join("pkg", "new.py"), "old.py"]

    def test_skips_git(self, tmp_path):
        _touch(tmp_path / ".git" / "config")
        _touch(tmp_path / "a.txt")
        assert _list_files(str(tmp_path)) == "a.txt"

    def test_no_match(self, tmp_path):
        assert _list_files(str(tmp_path), "*.rs") == "No files matched the pattern."

    def test_truncation(self, tmp_path):
        for i in range(MAX_LIST_RESULTS + 5):
            _touch(tmp_path / f"f{i}.txt")
        out = _list_files(str(tmp_path), "*.txt")
        assert "Results truncated" in out
        assert len(out.splitlines()) == MAX_LIST_RESULTS + 1

    def test_rejects_escaping_pattern(self, tmp_path):
        with pytest.raises(ToolExecutionError):
            _list_files(str(tmp_path), "../*")

    def test_subdirectory(self, tmp_path):
        _touch(tmp_path / "src" / "m.py")
        _touch(tmp_path / "top.py")
        assert _list_files(str(tmp_path), "*.py", "src") == os.path.join("src", "m.py")


class TestReadFile:
    def test_numbered_lines(self, tmp_path):
        _touch(tmp_path / "a.txt", "one\ntwo\nthree\n")
        assert _read_file(str(tmp_path), "a.txt") == "1: one\n2: two\n3: three"

    def test_offset_and_limit(self, tmp_path):
        _touch(tmp_path / "a.txt", "\n".join(f"l{i}" for i in range(1, 11)))
        out = _read_file(str(tmp_path), "a.txt", offset=3, limit=2)
        assert out.splitlines()[:2] == ["3: l3", "4: l4"]
        assert "use offset=5 to continue" in out

    def test_directory_listing(self, tmp_path):
        _touch(tmp_path / "d" / "x.txt")
        (tmp_path / "d" / "sub").mkdir()
        assert _read_file(str(tmp_path), "d") == "sub/\nx.txt"

    def test_missing(self, tmp_path):
        with pytest.raises(ToolExecutionError, match="does not exist"):
            _read_file(str(tmp_path), "nope.txt")

    def test_binary(self, tmp_path):
        (tmp_path / "b.bin").write_bytes(b"\x00\x01\x02")
        with pytest.raises(ToolExecutionError, match="binary"):
            _read_file(str(tmp_path), "b.bin")


# ---------------------------------------------------------------------------
# write / edit / delete
# ---------------------------------------------------------------------------


class TestWriteEditDelete:
    def test_write_creates_parents(self, tmp_path):
        msg = _write_file(str(tmp_path), "deep/dir/f.txt", "hi")
        assert (tmp_path / "deep" / "dir" / "f.txt").read_text() == "hi"
        assert msg == "Wrote 2 bytes to deep/dir/f.txt"

    def test_write_outside_rejected(self, tmp_path):
        with pytest.raises(ToolExecutionError):
            _write_file(str(tmp_path), "../evil.txt", "x")

    def test_edit_unique(self, tmp_path):
        _touch(tmp_path / "f.py", "a = 1\nb = 2\n")
        _edit_file(str(tmp_path), "f.py", "b = 2", "b = 3")
        assert (tmp_path / "f.py").read_text() == "a = 1\nb = 3\n"

    def test_edit_ambiguous(self, tmp_path):
        _touch(tmp_path / "f.py", "x\nx\n")
        with pytest.raises(ToolExecutionError, match="occurs 2 times"):
            _edit_file(str(tmp_path), "f.py", "x", "y")
        assert (tmp_path / "f.py").read_text() == "x\nx\n"

    def test_edit_replace_all(self, tmp_path):
        _touch(tmp_path / "f.py", "x\nx\n")
        _edit_file(str(tmp_path), "f.py", "x", "y", replace_all=True)
        assert (tmp_path / "f.py").read_text() == "y\ny\n"

    def test_edit_not_found(self, tmp_path):
        _touch(tmp_path / "f.py", "abc")
        with pytest.raises(ToolExecutionError, match="not found"):
            _edit_file(str(tmp_path), "f.py", "zzz", "y")

    def test_edit_missing_file(self, tmp_path):
        with pytest.raises(ToolExecutionError, match="does not exist"):
            _edit_file(str(tmp_path), "nope.py", "a", "b")

    def test_edit_write_failure(self, tmp_path, monkeypatch):
        _touch(tmp_path / "f.py", "a = 1\n")

        def refuse(self, *args, **kwargs):
            raise PermissionError(13, "Permission denied", str(self))

        monkeypatch.setattr(Path, "write_text", refuse)
        with pytest.raises(ToolExecutionError, match="Permission denied"):
            _edit_file(str(tmp_path), "f.py", "a = 1", "a = 2")

    def test_delete(self, tmp_path):
        _touch(tmp_path / "gone.txt")
        assert _delete_file(str(tmp_path), "gone.txt") == "Deleted gone.txt"
        assert not (tmp_path / "gone.txt").exists()

    def test_delete_directory_refused(self, tmp_path):
        (tmp_path / "d").mkdir()
        with pytest.raises(ToolExecutionError, match="not a file"):
            _delete_file(str(tmp_path), "d")


# ---------------------------------------------------------------------------
# run_command
# ---------------------------------------------------------------------------


@pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh")
class TestRunCommand:
    def test_output_and_cwd(self, tmp_path):
        _touch(tmp_path / "marker.txt")
        out = _run_command(str(tmp_path), "ls && echo done")
        assert "marker.txt" in out
        assert "done" in out

    def test_nonzero_exit(self, tmp_path):
        out = _run_command(str(tmp_path), "echo oops >&2; exit 3")
        assert out.startswith("Exit code: 3")
        assert "oops" in out

    def test_no_output(self, tmp_path):
        assert _run_command(str(tmp_path), "true") == "(no output)"

    def test_timeout(self, tmp_path):
        with pytest.raises(ToolExecutionError, match="timed out after 1s"):
            _run_command(str(tmp_path), "sleep 5", timeout=0)


# ---------------------------------------------------------------------------
# ToolCatalog
# ---------------------------------------------------------------------------


class TestToolCatalog:
    def test_definitions(self, tmp_path):
        catalog = ToolCatalog(str(tmp_path))
        by_name = {d.name: d for d in catalog.definitions()}
        assert set(by_name) == {
            "list_files",
            "read_file",
            "write_file",
            "edit_file",
            "delete_file",
            "run_command",
        }
        assert not by_name["read_file"].side_effecting
        assert not by_name["list_files"].side_effecting
        assert by_name["delete_file"].side_effecting
        assert by_name["run_command"].side_effecting
        assert catalog.get("nope") is None

    def test_execute_runs_tool(self, tmp_path):
        _touch(tmp_path / "a.txt", "hello")
        catalog = ToolCatalog(str(tmp_path))
        out = asyncio.run(catalog.execute("read_file", {"file_path": "a.txt"}))
        assert out == "1: hello"

    def test_execute_ignores_unknown_arguments(self, tmp_path):
        _touch(tmp_path / "a.txt", "hello")
        catalog = ToolCatalog(str(tmp_path))
        out = asyncio.run(
            catalog.execute("read_file", {"file_path": "a.txt", "verbose": True})
        )
        assert out == "1: hello"

    def test_execute_unknown_tool(self, tmp_path):
        catalog = ToolCatalog(str(tmp_path))
        with pytest.raises(ToolExecutionError, match="unknown tool"):
            asyncio.run(catalog.execute("nope", {}))

    def test_confirmation_for_write(self, tmp_path):
        catalog = ToolCatalog(str(tmp_path))
        call = ToolCall("c1", "write_file", "{}")
        args = {"file_path": "new.txt", "content": "body"}

        req = catalog.confirmation_for(call, args)
        assert (req.operation, req.target, req.content) == ("Create file", "new.txt", "body")
        assert not req.show_editor_open
        assert req.tool_name == "write_file"

        _touch(tmp_path / "new.txt", "old")
        req = catalog.confirmation_for(call, args)
        assert req.operation == "Overwrite file"
        assert req.show_editor_open

    def test_confirmation_for_edit_has_diff(self, tmp_path):
        _touch(tmp_path / "f.py", "a = 1\n")
        catalog = ToolCatalog(str(tmp_path))
        req = catalog.confirmation_for(
            ToolCall("c1", "edit_file", "{}"),
            {"file_path": "f.py", "old_string": "a = 1", "new_string": "a = 2"},
        )
        assert req.operation == "Edit file"
        assert "-a = 1" in req.content
        assert "+a = 2" in req.content

    def test_confirmation_for_edit_without_match(self, tmp_path):
        _touch(tmp_path / "f.py", "a = 1\n")
        catalog = ToolCatalog(str(tmp_path))
        req = catalog.confirmation_for(
            ToolCall("c1", "edit_file", "{}"),
            {"file_path": "f.py", "old_string": "zzz", "new_string": "y"},
        )
        assert req.content is None

    def test_confirmation_for_command_and_delete(self, tmp_path):
        catalog = ToolCatalog(str(tmp_path))
        req = catalog.confirmation_for(
            ToolCall("c1", "run_command", "{}"), {"command": "rm -rf build"}
        )
        assert (req.operation, req.target) == ("Run command", "rm -rf build")

        req = catalog.confirmation_for(
            ToolCall("c2", "delete_file", "{}"), {"file_path": "config.json"}
        )
        assert (req.operation, req.target) == ("Delete file", "config.json")
