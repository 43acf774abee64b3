"""
File tools: Read, Write, Edit.

Every path goes through ExecutionContext.resolve_path, so anything that
resolves outside the allowed roots is rejected before the file is touched.
"""

from __future__ import annotations

from typing import Any

from .base import ExecutionContext, Tool, ToolResult, int_arg, require

MAX_READ_BYTES = 10 * 1024 * 1024
DEFAULT_LIMIT = 2000
MAX_LIMIT = 5000
MAX_LINE_LENGTH = 2000


class ReadTool(Tool):
    name = "Read"
    description = "Read a file with line numbers. Supports offset/limit for large files."
    input_schema = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Absolute or working-directory relative path"},
            "offset": {"type": "integer", "description": "1-based line to start from"},
            "limit": {"type": "integer", "description": f"Lines to read (default {DEFAULT_LIMIT}, max {MAX_LIMIT})"},
        },
        "required": ["file_path"],
    }

    def run(self, input: dict[str, Any], context: ExecutionContext) -> ToolResult:
        file_path = str(require(input, "file_path"))
        offset = int_arg(input, "offset", 1, 1, 2**31)
        limit = int_arg(input, "limit", DEFAULT_LIMIT, 1, MAX_LIMIT)

        path = context.resolve_path(file_path)
        if not path.exists():
            return ToolResult.failure(f"File not found: {file_path}")
        if path.is_dir():
            return ToolResult.failure(f"Path is a directory, not a file: {file_path}")
        if path.stat().st_size > MAX_READ_BYTES and "offset" not in input and "limit" not in input:
            return ToolResult.failure("File too large (> 10MB). Use offset/limit for large files.")

        lines = path.read_text(errors="replace").splitlines()
        total = len(lines)
        if total == 0:
            return ToolResult.success("(empty file)")
        if offset > total:
            return ToolResult.failure(f"Offset {offset} exceeds file length ({total} lines)")

        selected = lines[offset - 1 : offset - 1 + limit]
        out = []
        for i, line in enumerate(selected, start=offset):
            if len(line) > MAX_LINE_LENGTH:
                line = line[:MAX_LINE_LENGTH] + "... [truncated]"
            out.append(f"{i:6d}\t{line}")

        result = "\n".join(out)
        last = offset + len(selected) - 1
        if offset > 1 or last < total:
            result += f"\n\n[Showing lines {offset}-{last} of {total}]"
        return ToolResult.success(result)


class WriteTool(Tool):
    name = "Write"
    description = "Write content to a file, creating parent directories as needed. Overwrites existing files."
    input_schema = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string"},
            "content": {"type": "string"},
        },
        "required": ["file_path", "content"],
    }

    def run(self, input: dict[str, Any], context: ExecutionContext) -> ToolResult:
        file_path = str(require(input, "file_path"))
        content = input.get("content")
        if not isinstance(content, str):
            return ToolResult.failure("content is required")

        path = context.resolve_path(file_path)
        if path.is_dir():
            return ToolResult.failure(f"Path is a directory, not a file: {file_path}")
        is_new = not path.exists()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

        action = "Created" if is_new else "Wrote"
        n_bytes = len(content.encode())
        n_lines = content.count("\n") + 1
        return ToolResult.success(f"{action} {n_bytes} bytes ({n_lines} lines) to {file_path}")


class EditTool(Tool):
    name = "Edit"
    description = "Replace an exact string in a file. old_string must be unique unless replace_all is set."
    input_schema = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string"},
            "old_string": {"type": "string"},
            "new_string": {"type": "string"},
            "replace_all": {"type": "boolean", "default": False},
        },
        "required": ["file_path", "old_string", "new_string"],
    }

    def run(self, input: dict[str, Any], context: ExecutionContext) -> ToolResult:
        file_path = str(require(input, "file_path"))
        old = str(require(input, "old_string"))
        new = input.get("new_string")
        if not isinstance(new, str):
            return ToolResult.failure("new_string is required")
        if old == new:
            return ToolResult.failure("old_string and new_string are identical")

        path = context.resolve_path(file_path)
        if not path.is_file():
            return ToolResult.failure(f"File not found: {file_path}")

        text = path.read_text()
        count = text.count(old)
        if count == 0:
            return ToolResult.failure(
                "old_string not found in file. Make sure you're using the exact text including whitespace."
            )

        if input.get("replace_all"):
            path.write_text(text.replace(old, new))
            return ToolResult.success(f"Replaced {count} occurrence(s)")

        if count > 1:
            return ToolResult.failure(
                f"old_string appears {count} times in the file. "
                "Provide more surrounding context to make it unique, or use replace_all: true"
            )
        path.write_text(text.replace(old, new, 1))
        return ToolResult.success("File updated successfully")
