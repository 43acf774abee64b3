"""
ToolRegistry: name -> Tool, built once at startup from `tools.enabled`.

Read-only after construction. Lookups are case-exact; an unknown name is
a programming error (UnknownTool), not tool output.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Iterable

from ..core.errors import UnknownTool
from .base import Tool

log = logging.getLogger("chatrelay.tool")


class ToolRegistry:
    def __init__(self, tools: Iterable[Tool]) -> None:
        by_name: dict[str, Tool] = {}
        for tool in tools:
            if tool.name in by_name:
                raise ValueError(f"Duplicate tool name: {tool.name}")
            by_name[tool.name] = tool
        self._tools = MappingProxyType(by_name)

    @classmethod
    def from_names(cls, names: Iterable[str], available: Iterable[Tool] | None = None) -> "ToolRegistry":
        """Enable `names` out of `available` (defaults to the built-in tools)."""
        if available is None:
            from . import builtin_tools
            available = builtin_tools()
        catalog = {t.name: t for t in available}
        selected = []
        for name in names:
            if name not in catalog:
                raise UnknownTool(f"Unknown tool in configuration: {name}", tool=name)
            selected.append(catalog[name])
        registry = cls(selected)
        log.info("Tools enabled  names=%s", ",".join(registry.names) or "(none)")
        return registry

    def get(self, name: str) -> Tool:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownTool(f"Unknown tool: {name}", tool=name) from None

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Definitions for all tools, or for the subset `names` (unknown names are skipped)."""
        if names is None:
            return [t.definition() for t in self._tools.values()]
        wanted = set(names)
        return [t.definition() for n, t in self._tools.items() if n in wanted]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __repr__(self) -> str:
        return f"ToolRegistry(names={self.names!r})"
