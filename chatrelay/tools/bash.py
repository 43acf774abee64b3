"""
Bash shell execution tool.

Runs the command with `bash -c` in the conversation's working directory.
stdout and stderr are combined and truncated at `tools.max_output_length`.
A handful of obviously destructive commands are refused outright.
Under the stream handler the command runs as an asyncio subprocess in
its own process group, so cancelling the turn kills it.
"""

from __future__ import annotations

import asyncio
import logging
import re
import subprocess
from typing import Any

from ..core.errors import ToolExecutionFailed
from ..core.process import terminate_process_group
from .base import ExecutionContext, Tool, ToolResult, int_arg, require, truncate

log = logging.getLogger("chatrelay.tool")

MAX_TIMEOUT = 600

BLOCKED_PATTERNS = [
    re.compile(r"\brm\s+-[a-z]*r[a-z]*f[a-z]*\s+/(\s|\*|$)"),
    re.compile(r"\brm\s+-[a-z]*f[a-z]*r[a-z]*\s+/(\s|\*|$)"),
    re.compile(r"\bmkfs(\.\w+)?\b"),
    re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"),
    re.compile(r">\s*/dev/sd[a-z]\b"),
    re.compile(r"\bdd\s+if=/dev/(zero|random|urandom)\b"),
    re.compile(r"\bchmod\s+-R\s+777\s+/(\s|$)"),
]


def is_blocked(command: str) -> bool:
    return any(p.search(command) for p in BLOCKED_PATTERNS)


class BashTool(Tool):
    name = "Bash"
    description = "Execute a bash command in the working directory and return its combined stdout and stderr."
    input_schema = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The bash command to execute"},
            "timeout": {
                "type": "integer",
                "description": f"Timeout in seconds (default 120, max {MAX_TIMEOUT})",
            },
        },
        "required": ["command"],
    }
    instructions = "Prefer the Read, Grep and Glob tools over cat, grep and find."

    def _command(self, input: dict[str, Any], context: ExecutionContext) -> tuple[str, int]:
        command = str(require(input, "command"))
        timeout = int_arg(input, "timeout", context.timeout, 1, MAX_TIMEOUT)
        if is_blocked(command):
            log.warning("Blocked command  command=%s", command[:100])
            raise ToolExecutionFailed("Command blocked for safety reasons")
        return command, timeout

    def run(self, input: dict[str, Any], context: ExecutionContext) -> ToolResult:
        command, timeout = self._command(input, context)
        try:
            proc = subprocess.run(
                ["bash", "-c", command],
                cwd=context.working_directory,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return self._timed_out(command, timeout)
        return _result(proc.returncode, proc.stdout, proc.stderr, context.max_output_length)

    async def arun(self, input: dict[str, Any], context: ExecutionContext) -> ToolResult:
        """Runs in its own process group; timeout or cancellation kills the whole group."""
        command, timeout = self._command(input, context)
        proc = await asyncio.create_subprocess_exec(
            "bash", "-c", command,
            cwd=context.working_directory,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            return self._timed_out(command, timeout)
        finally:
            await terminate_process_group(proc)
        return _result(
            proc.returncode or 0,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            context.max_output_length,
        )

    def _timed_out(self, command: str, timeout: int) -> ToolResult:
        log.warning("Tool timeout  tool=bash timeout=%d command=%s", timeout, command[:100])
        return ToolResult.failure(f"Command timed out after {timeout} seconds")


def _result(returncode: int, stdout: str, stderr: str, limit: int) -> ToolResult:
    output = stdout
    if stderr:
        output = f"{output}\n{stderr}" if output else stderr
    output = truncate(output.strip(), limit) or "(no output)"
    if returncode != 0:
        return ToolResult.failure(f"Exit code {returncode}:\n{output}")
    return ToolResult.success(output)
