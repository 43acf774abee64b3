"""
Codex CLI provider.

Invocation (prompt as the last argument):
  codex exec --json --skip-git-repo-check --dangerously-bypass-approvals-and-sandbox
        --model M -C CWD [-c model_reasoning_effort=E]
        [-c project_doc_fallback_filenames=["<staged file>"]] [resume THREAD] PROMPT

Codex has no system prompt flag. The system prompt is written to a
uniquely named file in the working directory and offered to Codex as a
project doc; the file is removed when the run ends, however it ends.

Events handled: thread.started (session id), item.started / item.completed
(reasoning, agent_message, command_execution, file_change), turn.completed
(usage), turn.failed and error (terminal).
"""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..core.events import CanonicalEvent
from ..core.models import reasoning_effort
from .cli import BaseCliProvider, CliCommand, LineParser

if TYPE_CHECKING:
    from ..core.models import ModelInfo, StreamOptions

log = logging.getLogger("chatrelay.provider")

STAGED_PREFIX = ".chatrelay-system-"


class CodexStreamParser(LineParser):
    def __init__(self, model: "ModelInfo") -> None:
        super().__init__(model)
        self._commands: dict[str, int] = {}
        self.input_tokens = 0
        self.cached_tokens = 0
        self.output_tokens = 0
        self.context_input: int | None = None
        self.context_output: int | None = None

    def feed(self, data: dict[str, Any]) -> list[CanonicalEvent]:
        etype = data.get("type")

        if etype == "thread.started":
            if data.get("thread_id"):
                self.session_id = data["thread_id"]
            return []

        if etype == "item.started":
            return self._item_started(data.get("item") or {})

        if etype == "item.completed":
            return self._item_completed(data.get("item") or {})

        if etype == "turn.completed":
            usage = data.get("usage") or {}
            turn_input = int(usage.get("input_tokens") or 0)
            turn_cached = int(usage.get("cached_input_tokens") or 0)
            turn_output = int(usage.get("output_tokens") or 0)
            self.input_tokens += max(0, turn_input - turn_cached)
            self.cached_tokens += turn_cached
            self.output_tokens += turn_output
            self.context_input = turn_input
            self.context_output = turn_output
            return self.close_open_blocks()

        if etype in ("turn.failed", "error"):
            err = data.get("error")
            message = err.get("message") if isinstance(err, dict) else None
            message = message or data.get("message") or "Codex run failed"
            log.warning("Codex error  type=%s message=%s", etype, message)
            return self.close_open_blocks() + [CanonicalEvent.error(str(message), error_type=etype)]

        return []

    def _item_started(self, item: dict[str, Any]) -> list[CanonicalEvent]:
        if item.get("type") != "command_execution":
            return []
        item_id = str(item.get("id", ""))
        index, out = self.start_block("tool_use", item_id, "Bash")
        out.append(CanonicalEvent.tool_use_delta(index, json.dumps({"command": item.get("command", "")})))
        self._commands[item_id] = index
        return out

    def _item_completed(self, item: dict[str, Any]) -> list[CanonicalEvent]:
        itype = item.get("type")
        item_id = str(item.get("id", ""))

        if itype == "reasoning":
            return self.whole_block("thinking", item.get("text", ""))

        if itype == "agent_message":
            return self.whole_block("text", item.get("text", ""))

        if itype == "command_execution":
            if item_id in self._commands and self.open_block == (self._commands[item_id], "tool_use"):
                out = self.close_open_blocks()
            elif item_id in self._commands:
                out = []
            else:
                out = self.whole_block("tool_use", json.dumps({"command": item.get("command", "")}), item_id, "Bash")
            self._commands.pop(item_id, None)
            exit_code = item.get("exit_code")
            is_error = (exit_code is not None and exit_code != 0) or item.get("status") == "failed"
            out.append(CanonicalEvent.tool_result(item_id, item.get("aggregated_output", ""), is_error))
            return out

        if itype == "file_change":
            changes = item.get("changes") or []
            out = self.whole_block("tool_use", json.dumps({"changes": changes}), item_id, "Edit")
            summary = "\n".join(f"{c.get('kind', 'update')} {c.get('path', '')}" for c in changes if isinstance(c, dict))
            out.append(CanonicalEvent.tool_result(item_id, summary or "(no changes)", item.get("status") == "failed"))
            return out

        return []

    def usage_event(self) -> CanonicalEvent | None:
        if self.context_input is None:
            return None
        return CanonicalEvent.usage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_read_tokens=self.cached_tokens or None,
            cost=self.model.calculate_cost(self.input_tokens, self.output_tokens, 0, self.cached_tokens),
            context_window_size=self.model.context_window,
            context_input_tokens=self.context_input,
            context_output_tokens=self.context_output,
        )


class CodexProvider(BaseCliProvider):
    provider_type = "codex"
    session_id_key = "codex_thread_id"

    def _new_parser(self, model: "ModelInfo") -> CodexStreamParser:
        return CodexStreamParser(model)

    def _command(
        self,
        model: "ModelInfo",
        opts: "StreamOptions",
        prompt: str,
        session_id: str | None,
        cwd: Path,
    ) -> CliCommand:
        argv = [
            self.binary, "exec",
            "--json",
            "--skip-git-repo-check",
            "--dangerously-bypass-approvals-and-sandbox",
            "--model", model.model_id,
            "-C", str(cwd),
        ]
        effort = reasoning_effort(opts.thinking_level)
        if effort != "none":
            argv += ["-c", f"model_reasoning_effort={effort}"]

        staged: list[Path] = []
        if opts.system:
            doc = cwd / f"{STAGED_PREFIX}{uuid.uuid4().hex}.md"
            doc.write_text(opts.system)
            staged.append(doc)
            argv += ["-c", f"project_doc_fallback_filenames={json.dumps([doc.name])}"]

        if session_id:
            argv += ["resume", session_id]
        # a prompt starting with "-" must not be read as a flag
        argv += ["--", prompt]
        return CliCommand(argv=argv, env=self._child_env(), staged_files=staged)
