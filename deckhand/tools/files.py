"""File tools: read_file, write_file and list_dir."""

import difflib
from typing import Any

from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolResult, resolve_tool_path

log = get_logger(__name__)

_DIFF_PREVIEW_LINES = 30


def compact_diff(old: str | None, new: str, max_lines: int = _DIFF_PREVIEW_LINES) -> str:
    """Short change summary for the model; not meant as a patch."""
    new_lines = new.splitlines()
    if old is None:
        if len(new_lines) <= max_lines:
            body = "\n".join(f"+ {line}" for line in new_lines)
            return f"NEW FILE ({len(new_lines)} lines):\n{body}".rstrip()
        return f"NEW FILE: {len(new_lines)} lines written"

    if old == new:
        return "No changes (file identical)"

    changed: list[str] = []
    additions = deletions = hunks = 0
    for line in difflib.unified_diff(old.splitlines(), new_lines, lineterm="", n=0):
        if line.startswith(("---", "+++")):
            continue
        if line.startswith("@@"):
            hunks += 1
            changed.append(line)
        elif line.startswith("+"):
            additions += 1
            changed.append(f"+ {line[1:]}")
        elif line.startswith("-"):
            deletions += 1
            changed.append(f"- {line[1:]}")

    summary = f"{additions} additions, {deletions} deletions in {hunks} hunk(s)"
    if not changed:
        return summary
    shown = "\n".join(changed[:max_lines])
    if len(changed) > max_lines:
        shown += f"\n... ({len(changed) - max_lines} more lines)"
    return f"{summary}\n{shown}"


class ReadFileTool(Tool):
    """Read file contents."""

    name = "read_file"
    description = "Read the contents of a file at the given path. Returns file metadata and content."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Absolute or relative path to the file",
            },
        },
        "required": ["path"],
    }

    def __init__(self, max_bytes: int = 200_000):
        self.max_bytes = max_bytes

    async def execute(self, path: str, **kwargs: Any) -> ToolResult:
        """Read a file.

        Args:
            path: Path to file

        Returns:
            ToolResult with a header block followed by the file contents
        """
        file_path = resolve_tool_path(path, kwargs.get("_cwd"))
        try:
            if not file_path.exists():
                return ToolResult(success=False, error=f"File not found at {file_path}")
            if not file_path.is_file():
                return ToolResult(success=False, error=f"Not a file: {file_path}")

            file_size = file_path.stat().st_size
            if file_size > self.max_bytes:
                return ToolResult(
                    success=False,
                    error=f"File too large: {file_size} bytes (max {self.max_bytes})",
                )

            content = file_path.read_text(encoding="utf-8", errors="replace")
            line_count = len(content.splitlines())
            return ToolResult(
                success=True,
                content=(
                    f"File: {file_path}\n"
                    f"Size: {file_size} bytes\n"
                    f"Lines: {line_count}\n\n"
                    f"{content}"
                ),
            )
        except OSError as e:
            log.error("Read failed", path=str(file_path), error=str(e))
            return ToolResult(success=False, error=str(e))


class WriteFileTool(Tool):
    """Write content to files."""

    name = "write_file"
    description = (
        "Write content to a file. Creates parent directories if needed. "
        "Overwrites if the file already exists."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Absolute or relative path to the file",
            },
            "content": {
                "type": "string",
                "description": "Full content to write to the file",
            },
        },
        "required": ["path", "content"],
    }

    async def execute(self, path: str, content: str, **kwargs: Any) -> ToolResult:
        """Write content to a file, reporting a compact diff against the old version."""
        file_path = resolve_tool_path(path, kwargs.get("_cwd"))
        text = "" if content is None else str(content)
        try:
            previous: str | None = None
            if file_path.is_file():
                previous = file_path.read_text(encoding="utf-8", errors="replace")

            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(text, encoding="utf-8")

            return ToolResult(
                success=True,
                content=(
                    f"File: {file_path}\n"
                    f"Status: {'updated' if previous is not None else 'created'}\n"
                    f"Size: {len(text)} chars\n\n"
                    f"{compact_diff(previous, text)}"
                ),
            )
        except OSError as e:
            log.error("Write failed", path=str(file_path), error=str(e))
            return ToolResult(success=False, error=str(e))


class ListDirTool(Tool):
    """List directory contents."""

    name = "list_dir"
    description = "List contents of a directory. Shows directories first (with trailing /), then files."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Absolute or relative directory path",
            },
        },
        "required": ["path"],
    }

    async def execute(self, path: str = ".", **kwargs: Any) -> ToolResult:
        dir_path = resolve_tool_path(path, kwargs.get("_cwd"))
        if not dir_path.exists():
            return ToolResult(success=False, error=f"Directory not found at {dir_path}")
        if not dir_path.is_dir():
            return ToolResult(success=False, error=f"Not a directory: {dir_path}")

        try:
            entries = sorted(dir_path.iterdir(), key=lambda p: p.name.lower())
        except OSError as e:
            log.error("List failed", path=str(dir_path), error=str(e))
            return ToolResult(success=False, error=str(e))

        dirs = [f"{entry.name}/" for entry in entries if entry.is_dir()]
        files = [entry.name for entry in entries if not entry.is_dir()]
        listing = "\n".join([*dirs, *files]) or "(empty)"
        return ToolResult(
            success=True,
            content=f"Directory: {dir_path}\nEntries: {len(dirs) + len(files)}\n\n{listing}",
        )