"""Built-in tools and the dispatcher the agent loop calls into."""

import asyncio
import difflib
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .messages import ConfirmationRequest, ToolCall, ToolDefinition
from .report import ToolExecutionError

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 100
MAX_TIMEOUT = 120
DEFAULT_TIMEOUT = 30


LIST_FILES = ToolDefinition(
    name="list_files",
    description=(
        "Recursively list files matching a glob pattern, newest first, "
        "relative to the working directory."
    ),
    parameters={
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": 'Glob pattern, e.g. "**/*.py". Defaults to "**/*".',
            },
            "path": {
                "type": "string",
                "description": 'Directory to search in. Defaults to ".".',
            },
        },
        "required": [],
    },
)

READ_FILE = ToolDefinition(
    name="read_file",
    description=(
        "Read a file with line numbers, or list a directory. "
        "Use offset/limit to page through long files."
    ),
    parameters={
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to read."},
            "offset": {
                "type": "integer",
                "description": "1-based line to start from. Defaults to 1.",
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of lines. Defaults to 2000.",
            },
        },
        "required": ["file_path"],
    },
)

WRITE_FILE = ToolDefinition(
    name="write_file",
    description=(
        "Create or overwrite a file with the given content, "
        "creating parent directories as needed."
    ),
    parameters={
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to write."},
            "content": {"type": "string", "description": "Full file content."},
        },
        "required": ["file_path", "content"],
    },
    side_effecting=True,
)

EDIT_FILE = ToolDefinition(
    name="edit_file",
    description=(
        "Replace old_string with new_string in an existing file. "
        "old_string must match exactly and be unique unless replace_all is set."
    ),
    parameters={
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to edit."},
            "old_string": {"type": "string", "description": "Exact text to replace."},
            "new_string": {"type": "string", "description": "Replacement text."},
            "replace_all": {
                "type": "boolean",
                "description": "Replace every occurrence.",
            },
        },
        "required": ["file_path", "old_string", "new_string"],
    },
    side_effecting=True,
)

DELETE_FILE = ToolDefinition(
    name="delete_file",
    description="Delete a file.",
    parameters={
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to delete."},
        },
        "required": ["file_path"],
    },
    side_effecting=True,
)

RUN_COMMAND = ToolDefinition(
    name="run_command",
    description=(
        "Run a shell command in the working directory and return its combined "
        "output. Optional timeout in seconds (1-120, default 30)."
    ),
    parameters={
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Shell command string."},
            "timeout": {"type": "integer", "description": "Timeout in seconds."},
        },
        "required": ["command"],
    },
    side_effecting=True,
)


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a path and make sure it stays inside base_dir.

    Raises:
        ToolExecutionError: If the resolved path escapes the base directory.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()
    if not resolved.is_relative_to(base):
        raise ToolExecutionError(
            f"path {file_path!r} resolves to {resolved}, "
            f"which is outside the working directory {base}"
        )
    return resolved


def _list_files(base_dir: str, pattern: str = "**/*", path: str = ".") -> str:
    if Path(pattern).is_absolute() or ".." in Path(pattern).parts:
        raise ToolExecutionError(f"pattern {pattern!r} must be relative without '..'")
    root = safe_resolve(path, base_dir)
    if not root.is_dir():
        raise ToolExecutionError(f"not a directory: {path}")

    base = Path(base_dir).resolve()
    matched = [
        p
        for p in root.glob(pattern)
        if p.is_file() and ".git" not in p.relative_to(root).parts
    ]
    if not matched:
        return "No files matched the pattern."
    matched.sort(key=lambda f: f.stat().st_mtime, reverse=True)

    truncated = len(matched) > MAX_LIST_RESULTS
    lines = [str(p.relative_to(base)) for p in matched[:MAX_LIST_RESULTS]]
    result = "\n".join(lines)
    if truncated:
        result += f"\n(Results truncated: showing first {MAX_LIST_RESULTS} results.)"
    return result


def _read_file(base_dir: str, file_path: str, offset: int = 1, limit: int = 2000) -> str:
    resolved = safe_resolve(file_path, base_dir)
    if not resolved.exists():
        raise ToolExecutionError(f"path does not exist: {file_path}")

    if resolved.is_dir():
        names = [c.name + ("/" if c.is_dir() else "") for c in sorted(resolved.iterdir())]
        return "\n".join(names) or "(empty directory)"

    try:
        with open(resolved, "rb") as f:
            head = f.read(BINARY_CHECK_BYTES)
        if b"\x00" in head:
            raise ToolExecutionError(f"binary file detected: {file_path}")
        text = resolved.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as e:
        raise ToolExecutionError(str(e)) from e

    lines = text.splitlines()
    start = max(offset - 1, 0)
    selected = lines[start : start + limit]

    out: list[str] = []
    total = 0
    for i, line in enumerate(selected, start=start + 1):
        numbered = f"{i}: {line[:MAX_LINE_LENGTH]}"
        total += len(numbered.encode("utf-8")) + 1
        if total > MAX_OUTPUT_BYTES:
            break
        out.append(numbered)

    result = "\n".join(out)
    remaining = len(lines) - (start + len(out))
    if remaining > 0:
        result += f"\n[{remaining} more lines, use offset={start + len(out) + 1} to continue]"
    return result


def _write_file(base_dir: str, file_path: str, content: str) -> str:
    resolved = safe_resolve(file_path, base_dir)
    data = content.encode("utf-8")
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_bytes(data)
    except OSError as e:
        raise ToolExecutionError(str(e)) from e
    return f"Wrote {len(data)} bytes to {file_path}"


def _replace(content: str, old: str, new: str, replace_all: bool) -> str:
    if not old:
        raise ToolExecutionError("old_string must not be empty")
    count = content.count(old)
    if count == 0:
        raise ToolExecutionError("old_string not found in file")
    if count > 1 and not replace_all:
        raise ToolExecutionError(
            f"old_string occurs {count} times; add context or set replace_all"
        )
    return content.replace(old, new) if replace_all else content.replace(old, new, 1)


def _edit_file(
    base_dir: str,
    file_path: str,
    old_string: str,
    new_string: str,
    replace_all: bool = False,
) -> str:
    resolved = safe_resolve(file_path, base_dir)
    if not resolved.is_file():
        raise ToolExecutionError(f"file does not exist: {file_path}")
    try:
        content = resolved.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as e:
        raise ToolExecutionError(str(e)) from e
    updated = _replace(content, old_string, new_string, replace_all)
    try:
        resolved.write_text(updated, encoding="utf-8")
    except OSError as e:
        raise ToolExecutionError(str(e)) from e
    return f"Edited {file_path}"


def _delete_file(base_dir: str, file_path: str) -> str:
    resolved = safe_resolve(file_path, base_dir)
    if not resolved.is_file():
        raise ToolExecutionError(f"not a file: {file_path}")
    try:
        resolved.unlink()
    except OSError as e:
        raise ToolExecutionError(str(e)) from e
    return f"Deleted {file_path}"


def _run_command(base_dir: str, command: str, timeout: int = DEFAULT_TIMEOUT) -> str:
    timeout = max(1, min(timeout, MAX_TIMEOUT))
    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]
    try:
        proc = subprocess.run(
            shell_cmd,
            cwd=base_dir,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise ToolExecutionError(f"command timed out after {timeout}s") from e
    except OSError as e:
        raise ToolExecutionError(f"failed to start command: {e}") from e

    output = proc.stdout[:MAX_OUTPUT_BYTES].decode("utf-8", errors="replace")
    parts = []
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    if output:
        parts.append(output)
    if len(proc.stdout) > MAX_OUTPUT_BYTES:
        parts.append("[output truncated at 50KB]")
    return "\n".join(parts) if parts else "(no output)"


# --- Confirmation previews ---


def _confirm_write(base_dir: str, args: dict) -> ConfirmationRequest:
    path = args["file_path"]
    try:
        exists = safe_resolve(path, base_dir).exists()
    except ToolExecutionError:
        exists = False
    return ConfirmationRequest(
        operation="Overwrite file" if exists else "Create file",
        target=path,
        content=args["content"],
        show_editor_open=exists,
    )


def _confirm_edit(base_dir: str, args: dict) -> ConfirmationRequest:
    path = args["file_path"]
    preview = None
    try:
        before = safe_resolve(path, base_dir).read_text(encoding="utf-8")
        after = _replace(
            before, args["old_string"], args["new_string"], args.get("replace_all", False)
        )
        preview = "".join(
            difflib.unified_diff(
                before.splitlines(keepends=True),
                after.splitlines(keepends=True),
                fromfile=f"a/{path}",
                tofile=f"b/{path}",
            )
        )
    except (ToolExecutionError, OSError, UnicodeDecodeError):
        pass  # the edit will fail with a proper message when executed
    return ConfirmationRequest(
        operation="Edit file", target=path, content=preview, show_editor_open=True
    )


def _confirm_delete(base_dir: str, args: dict) -> ConfirmationRequest:
    return ConfirmationRequest(
        operation="Delete file", target=args["file_path"], show_editor_open=True
    )


def _confirm_command(base_dir: str, args: dict) -> ConfirmationRequest:
    return ConfirmationRequest(operation="Run command", target=args["command"])


@dataclass(frozen=True)
class Tool:
    definition: ToolDefinition
    run: Callable[..., str]
    confirm: Callable[[str, dict], ConfirmationRequest] | None = None


BUILTIN_TOOLS = [
    Tool(LIST_FILES, _list_files),
    Tool(READ_FILE, _read_file),
    Tool(WRITE_FILE, _write_file, _confirm_write),
    Tool(EDIT_FILE, _edit_file, _confirm_edit),
    Tool(DELETE_FILE, _delete_file, _confirm_delete),
    Tool(RUN_COMMAND, _run_command, _confirm_command),
]


class ToolCatalog:
    """The tool-execution collaborator: definitions, confirmations, dispatch."""

    def __init__(self, base_dir: str = ".", tools: list[Tool] | None = None):
        self.base_dir = base_dir
        self._tools = {t.definition.name: t for t in (tools or BUILTIN_TOOLS)}

    def definitions(self) -> list[ToolDefinition]:
        return [t.definition for t in self._tools.values()]

    def get(self, name: str) -> ToolDefinition | None:
        tool = self._tools.get(name)
        return tool.definition if tool else None

    def confirmation_for(self, call: ToolCall, args: dict) -> ConfirmationRequest:
        tool = self._tools[call.name]
        if tool.confirm is None:
            req = ConfirmationRequest(operation=f"Run {call.name}", target=call.arguments)
        else:
            req = tool.confirm(self.base_dir, args)
        return ConfirmationRequest(
            operation=req.operation,
            target=req.target,
            content=req.content,
            show_editor_open=req.show_editor_open,
            tool_name=call.name,
        )

    async def execute(self, name: str, args: dict) -> str:
        """Run a tool in a worker thread so the event loop keeps running.

        Raises:
            ToolExecutionError: If the tool is unknown or fails.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolExecutionError(f"unknown tool: {name!r}")
        known = tool.definition.parameters.get("properties", {})
        kwargs = {k: v for k, v in args.items() if k in known}
        return await asyncio.to_thread(tool.run, self.base_dir, **kwargs)
