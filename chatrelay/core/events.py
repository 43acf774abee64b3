"""
Canonical streaming event protocol for chatrelay.

Every backend (hosted API or CLI agent) is translated into this one
vocabulary. The same CanonicalEvent is:
- Yielded by providers (AnthropicProvider, OpenAIProvider, ClaudeCodeProvider, CodexProvider, MockProvider)
- Pushed to the client as `data: <json>\\n\\n` frames by SseWriter
- Consumed by ConversationStreamHandler for bookkeeping and in tests

Events are immutable. Absent fields are omitted from serialization,
never emitted as nulls, and the same rule applies inside `metadata`.
"""

from __future__ import annotations

import json
import secrets
import time
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class EventType(str, Enum):
    THINKING_START = "thinking_start"
    THINKING_DELTA = "thinking_delta"
    THINKING_SIGNATURE = "thinking_signature"
    THINKING_STOP = "thinking_stop"
    TEXT_START = "text_start"
    TEXT_DELTA = "text_delta"
    TEXT_STOP = "text_stop"
    TOOL_USE_START = "tool_use_start"
    TOOL_USE_DELTA = "tool_use_delta"
    TOOL_USE_STOP = "tool_use_stop"
    TOOL_RESULT = "tool_result"
    USAGE = "usage"
    DONE = "done"
    ERROR = "error"
    DEBUG = "debug"
    SYSTEM_INFO = "system_info"
    CONTEXT_COMPACTED = "context_compacted"
    COMPACTION_SUMMARY = "compaction_summary"
    SCREEN_CREATED = "screen_created"


TERMINAL_TYPES = frozenset({EventType.DONE.value, EventType.ERROR.value})


def new_event_id() -> str:
    """Millisecond timestamp prefix + random suffix. Sorts roughly by creation time."""
    return f"{int(time.time() * 1000):012x}-{secrets.token_hex(4)}"


def _compact(values: Mapping[str, Any]) -> dict[str, Any] | None:
    """Drop None values; an empty mapping becomes None so the field is omitted."""
    out = {k: v for k, v in values.items() if v is not None}
    return out or None


def context_percentage(
    context_input: int | None,
    context_output: int | None,
    window: int | None,
) -> float | None:
    """Share of the context window in use, clamped to [0, 100] with one decimal.

    Returns None when there is no window or nothing has been counted yet.
    """
    if not window or window <= 0:
        return None
    total = max(0, context_input or 0) + max(0, context_output or 0)
    if total <= 0:
        return None
    return min(100.0, round(total / window * 100, 1))


class CanonicalEvent(BaseModel):
    """The single normalized event type every backend is translated into."""

    model_config = ConfigDict(frozen=True)

    type: str
    block_index: int | None = None
    content: str | None = None
    metadata: Mapping[str, Any] | None = None
    event_id: str = Field(default_factory=new_event_id)

    @field_validator("metadata")
    @classmethod
    def _freeze_metadata(cls, v: Mapping[str, Any] | None) -> Mapping[str, Any] | None:
        """Nulls dropped, then wrapped read-only."""
        compact = _compact(v) if v is not None else None
        return MappingProxyType(compact) if compact is not None else None

    @field_serializer("metadata")
    def _plain_metadata(self, v: Mapping[str, Any] | None) -> dict[str, Any] | None:
        return dict(v) if v is not None else None

    # ── Thinking block ────────────────────────────────────────────────────────

    @classmethod
    def thinking_start(cls, block_index: int, redacted_data: str | None = None) -> "CanonicalEvent":
        """`redacted_data` carries an encrypted thinking block that has no readable text."""
        return cls(
            type=EventType.THINKING_START.value,
            block_index=block_index,
            metadata={"redacted_data": redacted_data},
        )

    @classmethod
    def thinking_delta(cls, block_index: int, content: str) -> "CanonicalEvent":
        return cls(type=EventType.THINKING_DELTA.value, block_index=block_index, content=content)

    @classmethod
    def thinking_signature(cls, block_index: int, signature: str) -> "CanonicalEvent":
        return cls(type=EventType.THINKING_SIGNATURE.value, block_index=block_index, content=signature)

    @classmethod
    def thinking_stop(cls, block_index: int) -> "CanonicalEvent":
        return cls(type=EventType.THINKING_STOP.value, block_index=block_index)

    # ── Text block ────────────────────────────────────────────────────────────

    @classmethod
    def text_start(cls, block_index: int) -> "CanonicalEvent":
        return cls(type=EventType.TEXT_START.value, block_index=block_index)

    @classmethod
    def text_delta(cls, block_index: int, content: str) -> "CanonicalEvent":
        return cls(type=EventType.TEXT_DELTA.value, block_index=block_index, content=content)

    @classmethod
    def text_stop(cls, block_index: int) -> "CanonicalEvent":
        return cls(type=EventType.TEXT_STOP.value, block_index=block_index)

    # ── Tool use block ────────────────────────────────────────────────────────

    @classmethod
    def tool_use_start(cls, block_index: int, tool_id: str, tool_name: str) -> "CanonicalEvent":
        return cls(
            type=EventType.TOOL_USE_START.value,
            block_index=block_index,
            metadata={"tool_id": tool_id, "tool_name": tool_name},
        )

    @classmethod
    def tool_use_delta(cls, block_index: int, partial_json: str) -> "CanonicalEvent":
        return cls(type=EventType.TOOL_USE_DELTA.value, block_index=block_index, content=partial_json)

    @classmethod
    def tool_use_stop(cls, block_index: int) -> "CanonicalEvent":
        return cls(type=EventType.TOOL_USE_STOP.value, block_index=block_index)

    @classmethod
    def tool_result(cls, tool_id: str, content: str, is_error: bool = False) -> "CanonicalEvent":
        """Correlated by tool_id, not block_index: the result may come from another actor."""
        return cls(
            type=EventType.TOOL_RESULT.value,
            content=content,
            metadata={"tool_id": tool_id, "is_error": is_error},
        )

    # ── Accounting ────────────────────────────────────────────────────────────

    @classmethod
    def usage(
        cls,
        input_tokens: int,
        output_tokens: int,
        cache_creation_tokens: int | None = None,
        cache_read_tokens: int | None = None,
        cost: float | None = None,
        context_window_size: int | None = None,
        context_input_tokens: int | None = None,
        context_output_tokens: int | None = None,
    ) -> "CanonicalEvent":
        """Usage snapshot.

        input/output/cache/cost are cumulative billing counters. The
        context_* counters describe the latest internal turn and are what
        the percentage is computed from; without them the billing counters
        are used instead.
        """
        if context_input_tokens is not None or context_output_tokens is not None:
            pct = context_percentage(context_input_tokens, context_output_tokens, context_window_size)
        else:
            pct = context_percentage(input_tokens, output_tokens, context_window_size)

        return cls(
            type=EventType.USAGE.value,
            metadata={
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cache_creation_tokens": cache_creation_tokens,
                "cache_read_tokens": cache_read_tokens,
                "cost": cost,
                "context_window_size": context_window_size,
                "context_input_tokens": context_input_tokens,
                "context_output_tokens": context_output_tokens,
                "context_percentage": pct,
            },
        )

    # ── Terminal / diagnostic ─────────────────────────────────────────────────

    @classmethod
    def done(cls, stop_reason: str = "end_turn") -> "CanonicalEvent":
        return cls(type=EventType.DONE.value, metadata={"stop_reason": stop_reason})

    @classmethod
    def error(cls, message: str, **context: Any) -> "CanonicalEvent":
        return cls(type=EventType.ERROR.value, content=message, metadata=context or None)

    @classmethod
    def debug(cls, message: str, context: dict[str, Any] | None = None) -> "CanonicalEvent":
        return cls(type=EventType.DEBUG.value, content=message, metadata=context or None)

    @classmethod
    def system_info(cls, content: str, command: str | None = None) -> "CanonicalEvent":
        return cls(
            type=EventType.SYSTEM_INFO.value,
            content=content,
            metadata={"command": command} if command else None,
        )

    # ── Compaction / UI surfaces ──────────────────────────────────────────────

    @classmethod
    def context_compacted(cls, pre_tokens: int | None = None, trigger: str = "auto") -> "CanonicalEvent":
        return cls(
            type=EventType.CONTEXT_COMPACTED.value,
            content="Context was automatically compacted",
            metadata={"pre_tokens": pre_tokens, "trigger": trigger},
        )

    @classmethod
    def compaction_summary(cls, summary: str, metadata: dict[str, Any] | None = None) -> "CanonicalEvent":
        return cls(type=EventType.COMPACTION_SUMMARY.value, content=summary, metadata=metadata or None)

    @classmethod
    def screen_created(cls, screen_id: str, screen_type: str, panel_slug: str | None = None) -> "CanonicalEvent":
        return cls(
            type=EventType.SCREEN_CREATED.value,
            metadata={"screen_id": screen_id, "screen_type": screen_type, "panel_slug": panel_slug},
        )

    # ── Serialization ─────────────────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_TYPES

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    def to_sse(self) -> str:
        return f"data: {self.to_json()}\n\n"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CanonicalEvent":
        """Rebuild a previously serialized event, keeping its event_id (replay after reconnect)."""
        return cls.model_validate(data)

    def __repr__(self) -> str:
        return f"CanonicalEvent(type={self.type!r}, block_index={self.block_index!r})"
