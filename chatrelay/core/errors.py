"""
Error taxonomy for chatrelay.

Contract errors (UnknownModel, ProviderUnavailable, PathRejected on the
working directory, missing credentials) are raised to the caller before
any event is produced. Runtime errors discovered mid-stream are turned
into a single `error` CanonicalEvent via `to_event()` and the stream ends.
Tool failures never surface as exceptions past the tool boundary; they
become ToolResult(is_error=True).
"""

from __future__ import annotations

from typing import Any

from .events import CanonicalEvent


class RelayError(Exception):
    """Base class. `context` ends up as the error event's metadata."""

    error_type: str = "relay_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_event(self) -> CanonicalEvent:
        return CanonicalEvent.error(self.message, error_type=self.error_type, **self.context)


class ProviderUnavailable(RelayError):
    error_type = "provider_unavailable"


class UnknownModel(RelayError):
    error_type = "unknown_model"


class AuthenticationFailed(RelayError):
    error_type = "authentication_failed"


class UpstreamTimeout(RelayError):
    error_type = "upstream_timeout"


class UpstreamProtocolError(RelayError):
    error_type = "upstream_protocol_error"


class PathRejected(RelayError):
    error_type = "path_rejected"


class ProcessFailed(RelayError):
    error_type = "process_failed"

    def __init__(self, exit_code: int, stderr: str = "", message: str | None = None) -> None:
        super().__init__(
            message or f"Process exited with code {exit_code}",
            exit_code=exit_code,
            stderr=stderr or None,
        )
        self.exit_code = exit_code
        self.stderr = stderr


class ProcessTimedOut(RelayError):
    error_type = "process_timed_out"


class MalformedBackendOutput(RelayError):
    error_type = "malformed_backend_output"


class ToolExecutionFailed(RelayError):
    error_type = "tool_execution_failed"


class UnknownTool(RelayError):
    error_type = "unknown_tool"


class ClientDisconnected(RelayError):
    error_type = "client_disconnected"
