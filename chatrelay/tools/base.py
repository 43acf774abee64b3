"""
Tool contract: Tool ABC, ToolResult, ExecutionContext.

Tools implement `run` (synchronous). The stream handler awaits
`aexecute`, which runs `arun` and by default puts `run` on a worker
thread; tools that start child processes override `arun` so that
cancelling the turn stops them.

Any failure a model can react to (bad arguments, path outside the
allowed roots, non-zero exit) is returned as ToolResult(is_error=True),
never raised past `execute` or `aexecute`.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import BaseModel, ConfigDict

from ..core.errors import PathRejected, ToolExecutionFailed

if TYPE_CHECKING:
    from ..core.events import CanonicalEvent
    from .paths import PathValidator

log = logging.getLogger("chatrelay.tool")


class ToolResult(BaseModel):
    """Output of one tool invocation, reported back to the model as content."""
    model_config = ConfigDict(frozen=True)

    output: str
    is_error: bool = False

    @classmethod
    def success(cls, output: str) -> "ToolResult":
        return cls(output=output)

    @classmethod
    def failure(cls, message: str) -> "ToolResult":
        return cls(output=message, is_error=True)


@dataclass
class ExecutionContext:
    """Per-request execution boundary handed to every tool call."""
    working_directory: Path
    validator: "PathValidator"
    timeout: int = 120
    max_output_length: int = 30000
    # Side events a tool wants surfaced on the stream (e.g. screen_created)
    events: "list[CanonicalEvent]" = field(default_factory=list)

    def resolve_path(self, path: str | Path) -> Path:
        """Relative paths are taken from the working directory. Raises PathRejected."""
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.working_directory / candidate
        return self.validator.validate(candidate)

    def emit(self, event: "CanonicalEvent") -> None:
        self.events.append(event)

    def drain_events(self) -> "list[CanonicalEvent]":
        pending, self.events = self.events, []
        return pending


class Tool(ABC):
    """An executable capability exposed to a model."""

    name: ClassVar[str]
    description: ClassVar[str]
    input_schema: ClassVar[dict[str, Any]]
    instructions: ClassVar[str] = ""

    def definition(self) -> dict[str, Any]:
        """Anthropic-style tool definition (name, description, input_schema)."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }

    @abstractmethod
    def run(self, input: dict[str, Any], context: ExecutionContext) -> ToolResult: ...

    async def arun(self, input: dict[str, Any], context: ExecutionContext) -> ToolResult:
        return await asyncio.to_thread(self.run, input, context)

    def execute(self, input: dict[str, Any], context: ExecutionContext) -> ToolResult:
        log.info("Tool called  tool=%s keys=%s", self.name, ",".join(sorted(input)))
        try:
            result = self.run(input, context)
        except (PathRejected, ToolExecutionFailed, OSError) as e:
            result = self._failure(e)
        log.info("Tool done  tool=%s error=%s output_len=%d", self.name, result.is_error, len(result.output))
        return result

    async def aexecute(self, input: dict[str, Any], context: ExecutionContext) -> ToolResult:
        """Like `execute`, but awaitable. Cancellation propagates into `arun`."""
        log.info("Tool called  tool=%s keys=%s", self.name, ",".join(sorted(input)))
        try:
            result = await self.arun(input, context)
        except (PathRejected, ToolExecutionFailed, OSError) as e:
            result = self._failure(e)
        log.info("Tool done  tool=%s error=%s output_len=%d", self.name, result.is_error, len(result.output))
        return result

    def _failure(self, e: Exception) -> ToolResult:
        if isinstance(e, PathRejected):
            log.warning("Path rejected  tool=%s path=%s", self.name, e.context.get("path"))
            return ToolResult.failure(f"Access denied: {e.message}")
        if isinstance(e, ToolExecutionFailed):
            return ToolResult.failure(e.message)
        log.warning("Tool I/O error  tool=%s error=%s", self.name, e)
        return ToolResult.failure(f"{type(e).__name__}: {e}")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


def require(input: dict[str, Any], key: str) -> Any:
    value = input.get(key)
    if value is None or value == "":
        raise ToolExecutionFailed(f"{key} is required")
    return value


def int_arg(input: dict[str, Any], key: str, default: int, lower: int, upper: int) -> int:
    raw = input.get(key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ToolExecutionFailed(f"{key} must be an integer") from None
    return max(lower, min(value, upper))


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n\n[Output truncated at {limit} characters]"
