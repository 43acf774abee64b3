"""
BaseProvider ABC, the NativeSession capability, and MockProvider for testing.

A provider turns (conversation, prompt, options) into a lazy, ordered
stream of CanonicalEvents. `stream_message` is a coroutine that returns
the async generator, so contract errors are raised before the first
event:

    events = await provider.stream_message(conversation, "hi", options)
    async for event in events:
        ...

Closing the generator (aclose / cancellation) stops the underlying HTTP
request or child process. Providers hold only read-only state (model
catalog, tool registry, settings) so one instance serves concurrent
requests.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, AsyncIterator, ClassVar

from .catalog import ModelCatalog
from .errors import ProviderUnavailable
from .events import CanonicalEvent
from .models import ModelInfo, StreamOptions

if TYPE_CHECKING:
    from ..tools.registry import ToolRegistry
    from .models import Conversation

log = logging.getLogger("chatrelay.provider")

INTERRUPTION_REMINDER = (
    "<system-reminder>Your previous response was interrupted by the user. "
    "Completed content blocks have been retained. You may continue from where you left off "
    "or address the user's new message as appropriate.</system-reminder>"
)


def inject_interruption_reminder(messages: list[dict[str, Any]], reminder: str) -> list[dict[str, Any]]:
    """Prepend `reminder` to the last user message. Returns a new list."""
    out = [dict(m) for m in messages]
    for msg in reversed(out):
        if msg.get("role") != "user":
            continue
        content = msg.get("content")
        if isinstance(content, str):
            msg["content"] = f"{reminder}\n\n{content}"
        elif isinstance(content, list) and content:
            msg["content"] = [{"type": "text", "text": reminder}, *content]
        break
    return out


class BaseProvider(ABC):
    """Abstract base for every backend."""

    provider_type: ClassVar[str]
    # CLI agents run their own tools; the stream handler only executes tools for API providers
    executes_tools_internally: ClassVar[bool] = False

    def __init__(self, catalog: ModelCatalog, tools: "ToolRegistry | None" = None) -> None:
        self.catalog = catalog
        self.tools = tools

    def get_provider_type(self) -> str:
        return self.provider_type

    @abstractmethod
    def is_available(self) -> bool:
        """Credentials / binary present. Cheap and side-effect free."""

    def get_models(self) -> dict[str, dict[str, Any]]:
        return self.catalog.summary()

    def get_context_window(self, model_id: str) -> int:
        return self.catalog.context_window(model_id)

    @abstractmethod
    def build_messages_from_conversation(self, conversation: "Conversation") -> list[dict[str, Any]]:
        """Pure transform of stored turns into the backend's message list."""

    @abstractmethod
    async def stream_message(
        self,
        conversation: "Conversation",
        prompt: str | None,
        options: "StreamOptions | dict[str, Any] | None" = None,
    ) -> AsyncIterator[CanonicalEvent]:
        """Validate, then return the event stream. `prompt=None` continues after tool results."""

    # ── Helpers for subclasses ────────────────────────────────────────────────

    def _prepare(self, conversation: "Conversation", options: "StreamOptions | dict[str, Any] | None") -> tuple[StreamOptions, ModelInfo]:
        """Fail-fast checks shared by all providers."""
        opts = StreamOptions.coerce(options)
        if not self.is_available():
            raise ProviderUnavailable(
                f"Provider {self.provider_type} is not available",
                provider=self.provider_type,
            )
        model = self.catalog.get(opts.model or conversation.model or self.catalog.default_model)
        return opts, model

    def _tool_definitions(self, opts: StreamOptions) -> list[dict[str, Any]]:
        if self.tools is None:
            return []
        return self.tools.definitions(opts.tools)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(type={self.provider_type!r})"


class NativeSession(ABC):
    """Capability for backends that keep their own multi-turn history.

    set_session_id only changes the in-memory conversation; persisting it
    is the caller's job.
    """

    session_id_key: ClassVar[str] = "native_session_id"

    def get_session_id(self, conversation: "Conversation") -> str | None:
        return conversation.native_session_id

    def set_session_id(self, conversation: "Conversation", session_id: str | None) -> None:
        if session_id and session_id != conversation.native_session_id:
            log.debug("Captured native session  provider=%s id=%s", getattr(self, "provider_type", "?"), session_id)
        conversation.set_native_session_id(session_id)


def supports_native_session(provider: BaseProvider) -> bool:
    return isinstance(provider, NativeSession)


class MockProvider(BaseProvider):
    """Scripted provider for tests. No I/O, no subprocess, no network.

    Either `responses` (text chunks answered on every call) or `script`
    (one list of events per call, consumed in order) drives the output.
    """

    provider_type = "mock"

    def __init__(
        self,
        responses: list[str] | None = None,
        script: list[list[CanonicalEvent]] | None = None,
        delay: float = 0.0,
        available: bool = True,
        tools: "ToolRegistry | None" = None,
    ) -> None:
        super().__init__(
            catalog=ModelCatalog("mock", [ModelInfo(model_id="mock", display_name="Mock", context_window=1000)]),
            tools=tools,
        )
        self._responses = responses or []
        self._script = list(script or [])
        self._delay = delay
        self._available = available
        self.calls: list[dict[str, Any]] = []

    def is_available(self) -> bool:
        return self._available

    def build_messages_from_conversation(self, conversation: "Conversation") -> list[dict[str, Any]]:
        return [{"role": t.role, "content": t.content} for t in conversation.prior_messages()]

    async def stream_message(
        self,
        conversation: "Conversation",
        prompt: str | None,
        options: "StreamOptions | dict[str, Any] | None" = None,
    ) -> AsyncIterator[CanonicalEvent]:
        opts, model = self._prepare(conversation, options)
        messages = self.build_messages_from_conversation(conversation)
        if prompt is not None:
            messages.append({"role": "user", "content": prompt})
        if opts.interruption_reminder:
            messages = inject_interruption_reminder(messages, opts.interruption_reminder)
        self.calls.append({"messages": messages, "prompt": prompt, "options": opts})

        if self._script:
            events = self._script.pop(0)
        else:
            events = [CanonicalEvent.text_start(0)]
            events += [CanonicalEvent.text_delta(0, chunk) for chunk in self._responses]
            events += [
                CanonicalEvent.text_stop(0),
                CanonicalEvent.usage(10, len(self._responses), context_window_size=model.context_window),
                CanonicalEvent.done("end_turn"),
            ]

        async def _gen() -> AsyncIterator[CanonicalEvent]:
            for event in events:
                if self._delay:
                    await asyncio.sleep(self._delay)
                yield event

        return _gen()
