"""
BlockAssembler: rebuilds content blocks from interleaved block events.

Events are grouped by block_index. Tool arguments arrive as JSON
fragments and are concatenated in arrival order, then parsed once at
tool_use_stop. Unparsable arguments raise MalformedBackendOutput rather
than being repaired.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from .errors import MalformedBackendOutput
from .events import CanonicalEvent, EventType

_START_KINDS = {
    EventType.THINKING_START.value: "thinking",
    EventType.TEXT_START.value: "text",
    EventType.TOOL_USE_START.value: "tool_use",
}
_DELTA_TYPES = {
    EventType.THINKING_DELTA.value,
    EventType.TEXT_DELTA.value,
    EventType.TOOL_USE_DELTA.value,
}
_STOP_TYPES = {
    EventType.THINKING_STOP.value,
    EventType.TEXT_STOP.value,
    EventType.TOOL_USE_STOP.value,
}


@dataclass
class Block:
    index: int
    kind: str
    parts: list[str] = field(default_factory=list)
    signature: str | None = None
    redacted_data: str | None = None
    tool_id: str | None = None
    tool_name: str | None = None
    input: dict[str, Any] | None = None
    closed: bool = False

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def to_content(self) -> dict[str, Any]:
        if self.kind == "thinking" and self.redacted_data is not None:
            return {"type": "redacted_thinking", "data": self.redacted_data}
        if self.kind == "thinking":
            block: dict[str, Any] = {"type": "thinking", "thinking": self.text}
            if self.signature:
                block["signature"] = self.signature
            return block
        if self.kind == "tool_use":
            return {
                "type": "tool_use",
                "id": self.tool_id,
                "name": self.tool_name,
                "input": self.input if self.input is not None else {},
            }
        return {"type": "text", "text": self.text}


def parse_tool_arguments(raw: str, tool_id: str | None = None) -> dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedBackendOutput(
            f"Tool arguments are not valid JSON: {e.msg}",
            tool_id=tool_id,
            raw=raw[:500],
        ) from None
    if not isinstance(value, dict):
        raise MalformedBackendOutput("Tool arguments must be a JSON object", tool_id=tool_id, raw=raw[:500])
    return value


class BlockAssembler:
    def __init__(self) -> None:
        self._blocks: dict[int, Block] = {}
        self._extra: list[dict[str, Any]] = []

    def feed(self, event: CanonicalEvent) -> Block | None:
        """Apply one event. Returns the block when this event closed it."""
        etype = event.type
        idx = event.block_index

        if etype == EventType.TOOL_RESULT.value:
            meta = event.metadata or {}
            self._extra.append({
                "type": "tool_result",
                "tool_use_id": meta.get("tool_id"),
                "content": event.content or "",
                "is_error": bool(meta.get("is_error", False)),
            })
            return None

        if idx is None:
            return None

        if etype in _START_KINDS:
            block = Block(index=idx, kind=_START_KINDS[etype])
            meta = event.metadata or {}
            if block.kind == "tool_use":
                block.tool_id = meta.get("tool_id")
                block.tool_name = meta.get("tool_name")
            elif block.kind == "thinking":
                block.redacted_data = meta.get("redacted_data")
            self._blocks[idx] = block
            return None

        block = self._blocks.get(idx)
        if block is None:
            return None

        if etype in _DELTA_TYPES:
            block.parts.append(event.content or "")
        elif etype == EventType.THINKING_SIGNATURE.value:
            block.signature = event.content
        elif etype in _STOP_TYPES:
            if block.kind == "tool_use":
                block.input = parse_tool_arguments(block.text, block.tool_id)
            block.closed = True
            return block
        return None

    @property
    def blocks(self) -> list[Block]:
        return [self._blocks[i] for i in sorted(self._blocks)]

    @property
    def open_blocks(self) -> list[Block]:
        return [b for b in self.blocks if not b.closed]

    def tool_uses(self) -> list[Block]:
        return [b for b in self.blocks if b.kind == "tool_use" and b.closed]

    def content_blocks(self, include_open: bool = False) -> list[dict[str, Any]]:
        """Stored content, in block order, followed by any tool results seen.

        Open tool-use blocks are never included: their arguments are incomplete.
        """
        out = []
        for b in self.blocks:
            if b.closed or (include_open and b.kind != "tool_use" and b.parts):
                out.append(b.to_content())
        return out + self._extra
