"""
Claude Code CLI provider.

Invocation (prompt on stdin):
  claude --print --verbose --output-format stream-json --include-partial-messages
         --dangerously-skip-permissions --model M [--resume SID] [--tools a,b]
         [--system-prompt S]
  MAX_THINKING_TOKENS=<budget> when a thinking level is set.

Line types handled:
  system        session id; subtype compact_boundary -> context_compacted, and the
                next user line is captured as the compaction_summary
  stream_event  partial message events (blocks, per-turn usage)
  assistant     complete blocks; only used when no stream_event lines arrived
  user          tool results, compaction summary, <local-command-stdout> output
  result        session id, cumulative usage, total_cost_usd

The CLI runs several internal model turns per request: message_start /
message_delta usage describes the current context window, the result line
carries cumulative billing totals.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..core.events import CanonicalEvent
from ..core.models import thinking_budget
from .cli import BaseCliProvider, CliCommand, LineParser

if TYPE_CHECKING:
    from ..core.models import ModelInfo, StreamOptions

log = logging.getLogger("chatrelay.provider")

_LOCAL_STDOUT = re.compile(r"<local-command-stdout>(.*?)</local-command-stdout>", re.S)
_COMMAND_NAME = re.compile(r"<command-name>(.*?)</command-name>", re.S)


def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list) and all(isinstance(c, dict) and c.get("type") == "text" for c in content):
        return "".join(c.get("text", "") for c in content)
    return json.dumps(content)


class ClaudeStreamParser(LineParser):
    def __init__(self, model: "ModelInfo") -> None:
        super().__init__(model)
        self.got_stream_events = False
        self.awaiting_compaction_summary = False
        self.compaction_metadata: dict[str, Any] = {}
        # per internal turn
        self.context_input: int | None = None
        self.context_output: int | None = None
        # cumulative, from the result line
        self.input_tokens = 0
        self.output_tokens = 0
        self.cache_creation_tokens = 0
        self.cache_read_tokens = 0
        self.total_cost: float | None = None
        self.saw_result = False

    def feed(self, data: dict[str, Any]) -> list[CanonicalEvent]:
        ltype = data.get("type")
        if ltype == "system":
            return self._system(data)
        if ltype == "stream_event":
            self.got_stream_events = True
            return self._stream_event(data.get("event") or {})
        if ltype == "assistant":
            return self._assistant(data.get("message") or {})
        if ltype == "user":
            return self._user(data.get("message") or {})
        if ltype == "result":
            return self._result(data)
        log.debug("Ignoring claude line  type=%s", ltype)
        return []

    # ── system ────────────────────────────────────────────────────────────────

    def _system(self, data: dict[str, Any]) -> list[CanonicalEvent]:
        if data.get("session_id"):
            self.session_id = data["session_id"]
        if data.get("subtype") != "compact_boundary":
            return []
        meta = data.get("compact_metadata") or {}
        pre_tokens = meta.get("pre_tokens") if isinstance(meta, dict) else None
        trigger = (meta.get("trigger") if isinstance(meta, dict) else None) or "auto"
        log.info("Context compacted  pre_tokens=%s trigger=%s", pre_tokens, trigger)
        self.awaiting_compaction_summary = True
        self.compaction_metadata = {"pre_tokens": pre_tokens, "trigger": trigger}
        return self.close_open_blocks() + [CanonicalEvent.context_compacted(pre_tokens, trigger)]

    # ── partial messages ──────────────────────────────────────────────────────

    def _stream_event(self, event: dict[str, Any]) -> list[CanonicalEvent]:
        etype = event.get("type")

        if etype == "message_start":
            usage = (event.get("message") or {}).get("usage") or {}
            self.context_input = (
                int(usage.get("input_tokens") or 0)
                + int(usage.get("cache_creation_input_tokens") or 0)
                + int(usage.get("cache_read_input_tokens") or 0)
            )
            self.context_output = int(usage.get("output_tokens") or 0)
            return []

        if etype == "message_delta":
            usage = event.get("usage") or {}
            if usage.get("output_tokens") is not None:
                self.context_output = int(usage["output_tokens"])
            return []

        if etype == "content_block_start":
            block = event.get("content_block") or {}
            btype = block.get("type")
            if btype in ("thinking", "redacted_thinking"):
                return self.start_block("thinking")[1]
            if btype == "text":
                index, out = self.start_block("text")
                if block.get("text"):
                    out.append(CanonicalEvent.text_delta(index, block["text"]))
                return out
            if btype == "tool_use":
                return self.start_block("tool_use", str(block.get("id", "")), str(block.get("name", "")))[1]
            return []

        if etype == "content_block_delta":
            if self.open_block is None:
                return []
            index, _ = self.open_block
            delta = event.get("delta") or {}
            dtype = delta.get("type")
            if dtype == "thinking_delta":
                return [CanonicalEvent.thinking_delta(index, delta.get("thinking", ""))]
            if dtype == "signature_delta":
                return [CanonicalEvent.thinking_signature(index, delta.get("signature", ""))]
            if dtype == "text_delta":
                return [CanonicalEvent.text_delta(index, delta.get("text", ""))]
            if dtype == "input_json_delta":
                return [CanonicalEvent.tool_use_delta(index, delta.get("partial_json", ""))]
            return []

        if etype == "content_block_stop":
            return self.close_open_blocks()

        return []

    # ── complete messages ─────────────────────────────────────────────────────

    def _assistant(self, message: dict[str, Any]) -> list[CanonicalEvent]:
        if self.got_stream_events:
            return []
        usage = message.get("usage") or {}
        if usage:
            self.context_input = (
                int(usage.get("input_tokens") or 0)
                + int(usage.get("cache_creation_input_tokens") or 0)
                + int(usage.get("cache_read_input_tokens") or 0)
            )
            self.context_output = int(usage.get("output_tokens") or 0)

        out: list[CanonicalEvent] = []
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            btype = block.get("type")
            if btype == "thinking":
                out += self.whole_block("thinking", block.get("thinking", ""))
            elif btype == "text":
                out += self.whole_block("text", block.get("text", ""))
            elif btype == "tool_use":
                out += self.whole_block(
                    "tool_use",
                    json.dumps(block.get("input") or {}),
                    str(block.get("id", "")),
                    str(block.get("name", "")),
                )
        return out

    def _user(self, message: dict[str, Any]) -> list[CanonicalEvent]:
        content = message.get("content")

        if self.awaiting_compaction_summary:
            self.awaiting_compaction_summary = False
            summary = ""
            if isinstance(content, str):
                summary = content
            elif isinstance(content, list):
                summary = next(
                    (b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text"),
                    "",
                )
            if summary:
                log.info("Compaction summary captured  chars=%d", len(summary))
                return [CanonicalEvent.compaction_summary(summary, self.compaction_metadata)]

        out = self.close_open_blocks()
        if isinstance(content, str):
            match = _LOCAL_STDOUT.search(content)
            if match:
                command = _COMMAND_NAME.search(content)
                out.append(CanonicalEvent.system_info(match.group(1).strip(), command.group(1) if command else None))
            return out

        for block in content or []:
            if isinstance(block, dict) and block.get("type") == "tool_result":
                out.append(CanonicalEvent.tool_result(
                    str(block.get("tool_use_id") or "unknown"),
                    _result_text(block.get("content", "")),
                    bool(block.get("is_error", False)),
                ))
        return out

    def _result(self, data: dict[str, Any]) -> list[CanonicalEvent]:
        self.saw_result = True
        if data.get("session_id"):
            self.session_id = data["session_id"]
        if data.get("total_cost_usd") is not None:
            self.total_cost = float(data["total_cost_usd"])
        usage = data.get("usage") or {}
        self.input_tokens = int(usage.get("input_tokens") or 0)
        self.output_tokens = int(usage.get("output_tokens") or 0)
        self.cache_creation_tokens = int(usage.get("cache_creation_input_tokens") or 0)
        self.cache_read_tokens = int(usage.get("cache_read_input_tokens") or 0)

        subtype = data.get("subtype") or "success"
        if data.get("is_error"):
            message = data.get("result") or f"Claude Code run failed ({subtype})"
            return self.close_open_blocks() + [CanonicalEvent.error(
                str(message),
                error_type=subtype,
                session_id=self.session_id,
            )]
        self.stop_reason = "end_turn" if subtype == "success" else subtype
        return []

    def usage_event(self) -> CanonicalEvent | None:
        if not self.saw_result and self.context_input is None:
            return None
        return CanonicalEvent.usage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens or None,
            cache_read_tokens=self.cache_read_tokens or None,
            cost=self.total_cost,
            context_window_size=self.model.context_window,
            context_input_tokens=self.context_input,
            context_output_tokens=self.context_output,
        )


class ClaudeCodeProvider(BaseCliProvider):
    provider_type = "claude_code"
    session_id_key = "claude_session_id"

    def _new_parser(self, model: "ModelInfo") -> ClaudeStreamParser:
        return ClaudeStreamParser(model)

    def _command(
        self,
        model: "ModelInfo",
        opts: "StreamOptions",
        prompt: str,
        session_id: str | None,
        cwd: Path,
    ) -> CliCommand:
        argv = [
            self.binary,
            "--print",
            "--verbose",
            "--output-format", "stream-json",
            "--include-partial-messages",
            "--dangerously-skip-permissions",
            "--model", model.model_id,
        ]
        if session_id:
            argv += ["--resume", session_id]
        if opts.tools:
            argv += ["--tools", ",".join(opts.tools)]
        if opts.system:
            argv += ["--system-prompt", opts.system]

        env = self._child_env()
        budget = thinking_budget(opts.thinking_level)
        if budget > 0:
            env["MAX_THINKING_TOKENS"] = str(budget)

        # prompt goes through stdin: --tools swallows trailing positional arguments
        return CliCommand(argv=argv, stdin=prompt, env=env)
