"""
Search tools: Glob (file names) and Grep (file contents).

Both search under a directory that must pass the path check and report
paths relative to it. Hidden directories and common dependency folders
are skipped by Grep.
"""

from __future__ import annotations

import fnmatch
import os
import re
from pathlib import Path
from typing import Any, Iterator

from .base import ExecutionContext, Tool, ToolResult, int_arg, require, truncate

SKIP_DIRS = {".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv", "vendor"}
BINARY_SNIFF_BYTES = 8192


def _relative(path: Path, base: Path) -> str:
    try:
        return str(path.relative_to(base))
    except ValueError:
        return str(path)


class GlobTool(Tool):
    name = "Glob"
    description = "Find files by glob pattern (e.g. **/*.py). Results are sorted newest first."
    input_schema = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string"},
            "path": {"type": "string", "description": "Directory to search (default: working directory)"},
            "limit": {"type": "integer", "description": "Max results (default 100, max 1000)"},
        },
        "required": ["pattern"],
    }

    def run(self, input: dict[str, Any], context: ExecutionContext) -> ToolResult:
        pattern = str(require(input, "pattern"))
        limit = int_arg(input, "limit", 100, 1, 1000)
        base = context.resolve_path(input.get("path") or context.working_directory)
        if not base.is_dir():
            return ToolResult.failure(f"Directory not found: {base}")

        try:
            matches = [p for p in base.glob(pattern) if p.is_file()]
        except ValueError as e:
            return ToolResult.failure(f"Search failed: {e}")
        if not matches:
            return ToolResult.success("No files found matching pattern")

        matches.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        shown = matches[:limit]
        result = "\n".join(_relative(p, base) for p in shown)
        if len(matches) > limit:
            result += f"\n\n[Limited to {limit} results]"
        return ToolResult.success(result)


class GrepTool(Tool):
    name = "Grep"
    description = "Search file contents with a regular expression."
    input_schema = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Python regular expression"},
            "path": {"type": "string", "description": "File or directory to search (default: working directory)"},
            "glob": {"type": "string", "description": "Only search files whose name matches, e.g. *.py"},
            "output_mode": {
                "type": "string",
                "enum": ["files_with_matches", "count", "content"],
                "default": "files_with_matches",
            },
            "case_insensitive": {"type": "boolean", "default": False},
            "context": {"type": "integer", "description": "Context lines for content mode (max 10)"},
        },
        "required": ["pattern"],
    }

    def run(self, input: dict[str, Any], context: ExecutionContext) -> ToolResult:
        raw = str(require(input, "pattern"))
        flags = re.IGNORECASE if input.get("case_insensitive") else 0
        try:
            regex = re.compile(raw, flags)
        except re.error as e:
            return ToolResult.failure(f"Invalid regular expression: {e}")

        mode = input.get("output_mode") or "files_with_matches"
        if mode not in ("files_with_matches", "count", "content"):
            return ToolResult.failure(f"Unknown output_mode: {mode}")
        ctx_lines = int_arg(input, "context", 0, 0, 10)
        name_glob = input.get("glob")

        target = context.resolve_path(input.get("path") or context.working_directory)
        if not target.exists():
            return ToolResult.failure(f"Path not found: {target}")
        base = target if target.is_dir() else target.parent

        out: list[str] = []
        for path in self._files(target, name_glob):
            lines = self._read_lines(path)
            if lines is None:
                continue
            hits = [i for i, line in enumerate(lines) if regex.search(line)]
            if not hits:
                continue
            rel = _relative(path, base)
            if mode == "files_with_matches":
                out.append(rel)
            elif mode == "count":
                out.append(f"{rel}:{len(hits)}")
            else:
                out.extend(self._content_block(rel, lines, hits, ctx_lines))

        if not out:
            return ToolResult.success("No matches found")
        return ToolResult.success(truncate("\n".join(out), context.max_output_length))

    def _files(self, target: Path, name_glob: str | None) -> Iterator[Path]:
        if target.is_file():
            yield target
            return
        for root, dirs, files in os.walk(target):
            dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRS and not d.startswith("."))
            for name in sorted(files):
                if name_glob and not fnmatch.fnmatch(name, name_glob):
                    continue
                yield Path(root) / name

    def _read_lines(self, path: Path) -> list[str] | None:
        try:
            data = path.read_bytes()
        except OSError:
            return None
        if b"\0" in data[:BINARY_SNIFF_BYTES]:
            return None
        return data.decode("utf-8", errors="replace").splitlines()

    def _content_block(self, rel: str, lines: list[str], hits: list[int], ctx: int) -> list[str]:
        hit_set = set(hits)
        shown: list[int] = []
        for i in hits:
            for j in range(max(0, i - ctx), min(len(lines), i + ctx + 1)):
                if not shown or j > shown[-1]:
                    shown.append(j)

        out: list[str] = []
        prev = None
        for j in shown:
            if ctx and prev is not None and j != prev + 1:
                out.append("--")
            sep = ":" if j in hit_set else "-"
            out.append(f"{rel}{sep}{j + 1}{sep}{lines[j]}")
            prev = j
        return out
