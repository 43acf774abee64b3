"""
ConversationStreamHandler: drives one user turn against a provider.

- Validates (working directory, model, availability) before streaming
- Appends the user turn, forwards every provider event unchanged
- Aggregates usage and reassembles content blocks per round
- Persists a newly captured native session id as soon as it appears
- For API providers, executes requested tools through the ToolRegistry,
  emits tool_result events, stores the results and re-invokes the provider
  (only tools named in the `tools` option run; others answer is_error)
- Saves the assistant turn; a stream that ends without done/error, or is
  cancelled, is saved as interrupted and flagged on the next turn
- Interrupted during a tool round, every stored tool_use still gets a
  stored tool_result (is_error for the ones that never ran)

One handler instance is shared by all requests; per-turn state lives on
the TurnStream it returns.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Mapping

from ..tools.base import ExecutionContext, ToolResult
from .assembly import Block, BlockAssembler
from .errors import PathRejected, RelayError
from .events import CanonicalEvent, EventType
from .models import StreamOptions
from .provider import INTERRUPTION_REMINDER
from .session import auto_title

if TYPE_CHECKING:
    from ..tools.paths import PathValidator
    from ..tools.registry import ToolRegistry
    from .models import Conversation
    from .provider import BaseProvider
    from .session import ConversationStore

log = logging.getLogger("chatrelay.stream")


class TurnOutcome(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass
class UsageTotals:
    """Billing counters summed over every usage event of one turn."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost: float = 0.0
    context_percentage: float | None = None

    def add(self, metadata: Mapping[str, Any]) -> None:
        self.input_tokens += int(metadata.get("input_tokens", 0))
        self.output_tokens += int(metadata.get("output_tokens", 0))
        self.cache_creation_tokens += int(metadata.get("cache_creation_tokens", 0))
        self.cache_read_tokens += int(metadata.get("cache_read_tokens", 0))
        self.cost += float(metadata.get("cost", 0.0))
        if "context_percentage" in metadata:
            self.context_percentage = metadata["context_percentage"]


class TurnStream:
    """Async-iterable events of one turn plus its bookkeeping."""

    def __init__(self) -> None:
        self.outcome = TurnOutcome.RUNNING
        self.stop_reason: str | None = None
        self.usage = UsageTotals()
        self.tool_rounds = 0
        self._gen: AsyncIterator[CanonicalEvent] | None = None

    def __aiter__(self) -> AsyncIterator[CanonicalEvent]:
        assert self._gen is not None
        return self._gen

    async def aclose(self) -> None:
        if self._gen is not None:
            await self._gen.aclose()  # type: ignore[attr-defined]


class ConversationStreamHandler:
    def __init__(
        self,
        store: "ConversationStore",
        tools: "ToolRegistry",
        validator: "PathValidator",
        max_tool_rounds: int = 25,
        tool_timeout: int = 120,
        max_output_length: int = 30000,
    ) -> None:
        self._store = store
        self._tools = tools
        self._validator = validator
        self._max_tool_rounds = max_tool_rounds
        self._tool_timeout = tool_timeout
        self._max_output_length = max_output_length

    def resolve_cwd(self, conversation: "Conversation", opts: StreamOptions) -> Path:
        """Working directory for the turn. With no allowed roots configured, the cwd is its own root."""
        raw = opts.cwd or conversation.working_directory
        cwd = Path(raw).expanduser() if raw else Path.cwd()
        if not cwd.is_absolute():
            raise PathRejected(f"Working directory must be absolute: {raw}", path=str(raw))
        if self._validator.roots:
            resolved = self._validator.validate(cwd)
        else:
            resolved = cwd.resolve()
        if not resolved.is_dir():
            raise PathRejected(f"Working directory does not exist: {raw}", path=str(raw))
        return resolved

    async def stream(
        self,
        conversation: "Conversation",
        provider: "BaseProvider",
        prompt: str,
        options: "StreamOptions | dict[str, Any] | None" = None,
    ) -> TurnStream:
        """Start a turn. Contract errors raise here, before any event."""
        opts = StreamOptions.coerce(options)
        cwd = self.resolve_cwd(conversation, opts)
        opts = opts.model_copy(update={"cwd": str(cwd)})

        last = conversation.last_assistant_turn
        if last is not None and last.interrupted and not opts.interruption_reminder:
            opts = opts.model_copy(update={"interruption_reminder": INTERRUPTION_REMINDER})

        first = await provider.stream_message(conversation, prompt, opts)

        if not conversation.turns and conversation.title == "New conversation":
            conversation.title = auto_title(prompt)
        conversation.append_turn("user", prompt)
        self._store.save(conversation)

        validator = self._validator if self._validator.roots else self._validator.with_root(cwd)
        context = ExecutionContext(
            working_directory=cwd,
            validator=validator,
            timeout=self._tool_timeout,
            max_output_length=self._max_output_length,
        )

        turn = TurnStream()
        turn._gen = self._run(turn, conversation, provider, opts, first, context)
        log.info(
            "Turn started  id=%s provider=%s model=%s",
            conversation.id, provider.provider_type, opts.model or conversation.model,
        )
        return turn

    async def _run(
        self,
        turn: TurnStream,
        conversation: "Conversation",
        provider: "BaseProvider",
        opts: StreamOptions,
        stream: AsyncIterator[CanonicalEvent],
        context: ExecutionContext,
    ) -> AsyncIterator[CanonicalEvent]:
        assembler = BlockAssembler()
        known_session = conversation.native_session_id
        # True while this round's assistant turn is stored but its tool results are not
        round_saved = False
        tool_uses: list[Block] = []
        results: list[dict[str, Any]] = []
        try:
            while True:
                assembler = BlockAssembler()
                round_saved = False
                terminal: CanonicalEvent | None = None

                async with aclosing(stream) as events:  # type: ignore[type-var]
                    async for event in events:
                        if event.type == EventType.USAGE.value:
                            turn.usage.add(event.metadata or {})

                        try:
                            assembler.feed(event)
                        except RelayError as e:
                            log.warning("Malformed block  id=%s error=%s", conversation.id, e.message)
                            terminal = e.to_event()
                            break

                        if conversation.native_session_id != known_session:
                            known_session = conversation.native_session_id
                            self._store.save(conversation)
                            log.info("Native session saved  id=%s session=%s", conversation.id, known_session)

                        if event.is_terminal:
                            terminal = event
                            break
                        yield event

                if terminal is None:
                    # Provider ended without done/error
                    turn.outcome = TurnOutcome.INTERRUPTED
                    self._save_assistant(conversation, assembler, interrupted=True)
                    log.warning("Turn ended without terminal event  id=%s", conversation.id)
                    return

                if terminal.type == EventType.ERROR.value:
                    turn.outcome = TurnOutcome.FAILED
                    self._save_assistant(conversation, assembler)
                    log.warning("Turn failed  id=%s error=%s", conversation.id, terminal.content)
                    yield terminal
                    return

                turn.stop_reason = (terminal.metadata or {}).get("stop_reason")
                self._save_assistant(conversation, assembler)
                round_saved = True
                tool_uses = assembler.tool_uses()

                if turn.stop_reason != "tool_use" or provider.executes_tools_internally or not tool_uses:
                    turn.outcome = TurnOutcome.COMPLETED
                    log.info(
                        "Turn done  id=%s stop=%s rounds=%d in=%d out=%d",
                        conversation.id, turn.stop_reason, turn.tool_rounds,
                        turn.usage.input_tokens, turn.usage.output_tokens,
                    )
                    yield terminal
                    return

                turn.tool_rounds += 1
                if turn.tool_rounds > self._max_tool_rounds:
                    turn.outcome = TurnOutcome.FAILED
                    conversation.append_turn("user", [
                        _tool_result_block(b, "Maximum tool execution rounds reached", True) for b in tool_uses
                    ])
                    self._store.save(conversation)
                    yield CanonicalEvent.error(
                        "Maximum tool execution rounds reached",
                        max_tool_rounds=self._max_tool_rounds,
                    )
                    return

                results = []
                for block in tool_uses:
                    result = await self._execute_tool(block, context, opts)
                    results.append(_tool_result_block(block, result.output, result.is_error))
                    for side_event in context.drain_events():
                        yield side_event
                    yield CanonicalEvent.tool_result(block.tool_id or "", result.output, result.is_error)
                conversation.append_turn("user", results)
                self._store.save(conversation)
                # from here on an interruption belongs to the next round
                assembler = BlockAssembler()
                round_saved = False

                # the reminder belongs to the user's prompt only
                opts = opts.model_copy(update={"interruption_reminder": None})
                try:
                    stream = await provider.stream_message(conversation, None, opts)
                except RelayError as e:
                    turn.outcome = TurnOutcome.FAILED
                    yield e.to_event()
                    return
        finally:
            if turn.outcome == TurnOutcome.RUNNING:
                # Cancelled or closed by the consumer mid-flight
                turn.outcome = TurnOutcome.INTERRUPTED
                if round_saved:
                    self._save_interrupted_tool_round(conversation, tool_uses, results)
                else:
                    self._save_assistant(conversation, assembler, interrupted=True)
                log.info("Turn interrupted  id=%s", conversation.id)

    async def _execute_tool(self, block: Block, context: ExecutionContext, opts: StreamOptions) -> ToolResult:
        name = block.tool_name or ""
        if name not in self._tools:
            return ToolResult.failure(f"Unknown tool: {name}")
        if opts.tools is not None and name not in opts.tools:
            log.warning("Tool not enabled  tool=%s enabled=%s", name, ",".join(opts.tools))
            return ToolResult.failure(f"Tool not enabled: {name}")
        tool = self._tools.get(name)
        try:
            return await tool.aexecute(block.input or {}, context)
        except Exception as e:
            log.error("Tool crashed  tool=%s error=%s", name, e, exc_info=True)
            return ToolResult.failure(f"Tool {name} failed: {e}")

    def _save_assistant(self, conversation: "Conversation", assembler: BlockAssembler, interrupted: bool = False) -> None:
        content = assembler.content_blocks(include_open=interrupted)
        if not content and not interrupted:
            return
        conversation.append_turn("assistant", content, interrupted=interrupted)
        self._store.save(conversation)

    def _save_interrupted_tool_round(
        self,
        conversation: "Conversation",
        tool_uses: list[Block],
        results: list[dict[str, Any]],
    ) -> None:
        """The assistant turn is already stored; answer every tool_use so the history stays replayable."""
        done = {r["tool_use_id"] for r in results}
        pending = [
            _tool_result_block(b, "Tool execution was interrupted", True)
            for b in tool_uses if b.tool_id not in done
        ]
        last = conversation.last_assistant_turn
        if last is not None:
            last.interrupted = True
        conversation.append_turn("user", results + pending)
        self._store.save(conversation)


def _tool_result_block(block: Block, output: str, is_error: bool) -> dict[str, Any]:
    return {
        "type": "tool_result",
        "tool_use_id": block.tool_id,
        "content": output,
        "is_error": is_error,
    }
