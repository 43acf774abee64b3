"""
Built-in tools executed by chatrelay for hosted-API providers.

File tools go through the ExecutionContext path check.
CLI providers (claude_code, codex) run their own tools and do not use these.
"""

from __future__ import annotations

from .base import Tool


def builtin_tools() -> list[Tool]:
    """One instance of every built-in tool."""
    from .bash import BashTool
    from .files import EditTool, ReadTool, WriteTool
    from .search import GlobTool, GrepTool

    return [ReadTool(), WriteTool(), EditTool(), BashTool(), GrepTool(), GlobTool()]
