"""
Shared base for CLI agent providers (Claude Code, Codex).

Each call owns one child process:
  - stdout is read line by line; every complete JSON line is handed to a
    per-call LineParser which returns zero or more CanonicalEvents
  - stderr is drained concurrently and only reported on non-zero exit
  - no output for `streaming.idle_timeout` seconds -> ProcessTimedOut
  - a line that looks like JSON but does not parse -> MalformedBackendOutput
  - plain-text lines are logged and passed on as debug events
  - a newly reported native session id is written to the conversation
    (in memory) as soon as it is seen
  - with a trace_dir, the command, stdin, every output line and the outcome
    are appended to a per-conversation StreamTrace

After a clean exit: open blocks are closed, usage is emitted, then done.
Non-zero exit: open blocks are closed, then exactly one error event with
the exit code and stderr. On every exit path (including cancellation) the
process group is terminated and staged temp files are removed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator

from ..core.errors import MalformedBackendOutput, PathRejected, ProcessFailed, ProcessTimedOut, ProviderUnavailable
from ..core.events import CanonicalEvent
from ..core.process import terminate_process_group
from ..core.provider import BaseProvider, NativeSession
from ..logging_config import StreamTrace

if TYPE_CHECKING:
    from ..core.catalog import ModelCatalog
    from ..core.models import Conversation, ModelInfo, StreamOptions

log = logging.getLogger("chatrelay.provider")

LINE_LIMIT = 16 * 1024 * 1024
STDERR_MAX = 4000


@dataclass
class CliCommand:
    argv: list[str]
    stdin: str | None = None
    env: dict[str, str] | None = None
    staged_files: list[Path] = field(default_factory=list)


class LineParser(ABC):
    """Per-call translation state for one CLI's JSONL output."""

    def __init__(self, model: "ModelInfo") -> None:
        self.model = model
        self.session_id: str | None = None
        self.stop_reason: str | None = None
        self._next_block = 0
        self._open: tuple[int, str] | None = None

    @abstractmethod
    def feed(self, data: dict[str, Any]) -> list[CanonicalEvent]: ...

    @abstractmethod
    def usage_event(self) -> CanonicalEvent | None: ...

    # ── Block bookkeeping shared by CLI parsers ───────────────────────────────

    def start_block(self, kind: str, tool_id: str = "", tool_name: str = "") -> tuple[int, list[CanonicalEvent]]:
        out = self.close_open_blocks()
        index = self._next_block
        self._next_block += 1
        self._open = (index, kind)
        if kind == "thinking":
            out.append(CanonicalEvent.thinking_start(index))
        elif kind == "tool_use":
            out.append(CanonicalEvent.tool_use_start(index, tool_id, tool_name))
        else:
            out.append(CanonicalEvent.text_start(index))
        return index, out

    def close_open_blocks(self) -> list[CanonicalEvent]:
        if self._open is None:
            return []
        index, kind = self._open
        self._open = None
        if kind == "thinking":
            return [CanonicalEvent.thinking_stop(index)]
        if kind == "tool_use":
            return [CanonicalEvent.tool_use_stop(index)]
        return [CanonicalEvent.text_stop(index)]

    @property
    def open_block(self) -> tuple[int, str] | None:
        return self._open

    def whole_block(self, kind: str, content: str, tool_id: str = "", tool_name: str = "") -> list[CanonicalEvent]:
        """start + one delta + stop, for backends that deliver complete blocks."""
        index, out = self.start_block(kind, tool_id, tool_name)
        if content:
            if kind == "thinking":
                out.append(CanonicalEvent.thinking_delta(index, content))
            elif kind == "tool_use":
                out.append(CanonicalEvent.tool_use_delta(index, content))
            else:
                out.append(CanonicalEvent.text_delta(index, content))
        out += self.close_open_blocks()
        return out


class BaseCliProvider(BaseProvider, NativeSession):
    executes_tools_internally = True

    def __init__(
        self,
        catalog: "ModelCatalog",
        binary: str,
        credentials_path: Path | str | None = None,
        idle_timeout: float = 1800.0,
        trace_dir: Path | None = None,
    ) -> None:
        super().__init__(catalog=catalog)
        self.binary = binary
        self.credentials_path = Path(credentials_path).expanduser() if credentials_path else None
        self.idle_timeout = idle_timeout
        self.trace_dir = trace_dir

    def is_available(self) -> bool:
        if shutil.which(self.binary) is None:
            return False
        return self.credentials_path is None or self.credentials_path.exists()

    def build_messages_from_conversation(self, conversation: "Conversation") -> list[dict[str, Any]]:
        """Plain-text view of stored turns. The CLI keeps the real history in its native session."""
        messages = []
        for turn in conversation.prior_messages():
            if isinstance(turn.content, str):
                text = turn.content
            else:
                text = "\n\n".join(b.get("text", "") for b in turn.content if b.get("type") == "text")
            if text:
                messages.append({"role": turn.role, "content": text})
        return messages

    @abstractmethod
    def _command(
        self,
        model: "ModelInfo",
        opts: "StreamOptions",
        prompt: str,
        session_id: str | None,
        cwd: Path,
    ) -> CliCommand: ...

    @abstractmethod
    def _new_parser(self, model: "ModelInfo") -> LineParser: ...

    def _child_env(self) -> dict[str, str]:
        # nested agent sessions refuse to start when these are set
        return {k: v for k, v in os.environ.items() if k not in ("CLAUDECODE", "CLAUDE_CODE")}

    async def stream_message(
        self,
        conversation: "Conversation",
        prompt: str | None,
        options: "StreamOptions | dict[str, Any] | None" = None,
    ) -> AsyncIterator[CanonicalEvent]:
        opts, model = self._prepare(conversation, options)
        if prompt is None:
            raise ValueError(f"{self.provider_type} runs its own tools; a prompt is required")
        cwd = Path(opts.cwd).expanduser() if opts.cwd else Path.cwd()
        if not cwd.is_dir():
            raise PathRejected(f"Working directory does not exist: {cwd}", path=str(cwd))
        if opts.interruption_reminder:
            prompt = f"{opts.interruption_reminder}\n\n{prompt}"
        session_id = self.get_session_id(conversation)

        async def _gen() -> AsyncIterator[CanonicalEvent]:
            parser = self._new_parser(model)
            trace = StreamTrace.open(self.trace_dir, conversation.id) if self.trace_dir else None
            command: CliCommand | None = None
            proc: asyncio.subprocess.Process | None = None
            stderr_task: asyncio.Task | None = None
            try:
                try:
                    command = self._command(model, opts, prompt, session_id, cwd)
                except OSError as e:
                    log.error("Could not stage run files  provider=%s error=%s", self.provider_type, e)
                    yield CanonicalEvent.error(f"Could not prepare {self.provider_type} run: {e}", error_type="staging_failed")
                    return
                if trace is not None:
                    trace.command(command.argv)
                    if command.stdin is not None:
                        trace.stdin(command.stdin)
                log.info(
                    "Run started  provider=%s model=%s resume=%s cwd=%s",
                    self.provider_type, model.model_id, bool(session_id), cwd,
                )
                try:
                    proc = await asyncio.create_subprocess_exec(
                        *command.argv,
                        stdin=asyncio.subprocess.PIPE if command.stdin is not None else asyncio.subprocess.DEVNULL,
                        stdout=asyncio.subprocess.PIPE,
                        stderr=asyncio.subprocess.PIPE,
                        cwd=str(cwd),
                        env=command.env,
                        limit=LINE_LIMIT,
                        start_new_session=True,
                    )
                except OSError as e:
                    log.error("Could not start %s: %s", command.argv[0], e)
                    yield ProviderUnavailable(
                        f"Could not start {command.argv[0]}: {e}", provider=self.provider_type
                    ).to_event()
                    return

                assert proc.stdout is not None and proc.stderr is not None
                stderr_task = asyncio.create_task(proc.stderr.read())
                if command.stdin is not None and proc.stdin is not None:
                    try:
                        proc.stdin.write(command.stdin.encode())
                        await proc.stdin.drain()
                        proc.stdin.close()
                    except (BrokenPipeError, ConnectionResetError) as e:
                        # exit code and stderr below tell the real story
                        log.warning("Could not write prompt  provider=%s error=%s", self.provider_type, e)

                while True:
                    try:
                        raw = await asyncio.wait_for(proc.stdout.readline(), timeout=self.idle_timeout)
                    except asyncio.TimeoutError:
                        log.warning("Run timed out  provider=%s idle=%ss", self.provider_type, self.idle_timeout)
                        if trace is not None:
                            trace.error(f"idle timeout after {self.idle_timeout}s")
                        for event in parser.close_open_blocks():
                            yield event
                        yield ProcessTimedOut(
                            f"No output from {self.provider_type} for {int(self.idle_timeout)} seconds",
                            provider=self.provider_type,
                            timeout=self.idle_timeout,
                        ).to_event()
                        return
                    except ValueError:
                        yield MalformedBackendOutput(
                            "Output line exceeds the read limit", provider=self.provider_type
                        ).to_event()
                        return
                    if not raw:
                        break

                    for event in self._parse_line(parser, raw, trace):
                        self._sync_session(conversation, parser)
                        yield event
                        if event.is_terminal:
                            return
                    self._sync_session(conversation, parser)

                returncode = await proc.wait()
                stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
                self._sync_session(conversation, parser)

                for event in parser.close_open_blocks():
                    yield event

                if returncode != 0:
                    log.error("Run failed  provider=%s exit=%d stderr=%s", self.provider_type, returncode, stderr[:500])
                    if trace is not None:
                        trace.stderr(stderr)
                        trace.error(f"exit code {returncode}")
                    yield ProcessFailed(
                        returncode,
                        stderr[-STDERR_MAX:],
                        message=f"{self.provider_type} exited with code {returncode}"
                        + (f": {stderr[-STDERR_MAX:]}" if stderr else ""),
                    ).to_event()
                    return

                usage = parser.usage_event()
                if usage is not None:
                    yield usage
                log.info("Run done  provider=%s session=%s", self.provider_type, parser.session_id)
                if trace is not None:
                    trace.complete({"session_id": parser.session_id, "stop_reason": parser.stop_reason or "end_turn"})
                yield CanonicalEvent.done(parser.stop_reason or "end_turn")
            finally:
                await terminate_process_group(proc)
                if stderr_task is not None and not stderr_task.done():
                    stderr_task.cancel()
                if command is not None:
                    for path in command.staged_files:
                        try:
                            path.unlink(missing_ok=True)
                        except OSError as e:
                            log.warning("Could not remove staged file %s: %s", path, e)

        return _gen()

    def _parse_line(self, parser: LineParser, raw: bytes, trace: StreamTrace | None = None) -> list[CanonicalEvent]:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return []
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            if trace is not None:
                trace.stream(line)
            if line.startswith("{") or line.startswith("["):
                return [MalformedBackendOutput(
                    f"Unparsable output from {self.provider_type}",
                    provider=self.provider_type,
                    line=line[:500],
                ).to_event()]
            log.debug("Non-JSON line  provider=%s line=%s", self.provider_type, line[:200])
            return [CanonicalEvent.debug("Non-JSON output", {"provider": self.provider_type, "line": line[:500]})]
        if not isinstance(data, dict):
            log.warning("Skipping non-object JSON line  provider=%s", self.provider_type)
            return []
        if trace is not None:
            trace.stream(data)
        return parser.feed(data)

    def _sync_session(self, conversation: "Conversation", parser: LineParser) -> None:
        if parser.session_id and parser.session_id != self.get_session_id(conversation):
            self.set_session_id(conversation, parser.session_id)

