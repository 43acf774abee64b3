"""
Shared base for hosted HTTP API providers (Anthropic, OpenAI).

One streaming POST per call via httpx.AsyncClient. The response body is
server-sent events; each `data:` payload is decoded and handed to a
per-call parser that yields CanonicalEvents. Closing the generator
closes the HTTP connection.

Error mapping (all surface as a single `error` event, then the stream ends):
  401 / 403           AuthenticationFailed
  408 / 504, timeout  UpstreamTimeout
  undecodable data    UpstreamProtocolError
  other HTTP errors   error event with status_code
  connection failure  error event with error_type=connection_error
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, AsyncIterator

import httpx

from ..core.errors import AuthenticationFailed, RelayError, UpstreamProtocolError, UpstreamTimeout
from ..core.events import CanonicalEvent
from ..core.provider import BaseProvider, inject_interruption_reminder

if TYPE_CHECKING:
    from ..core.catalog import ModelCatalog
    from ..core.models import Conversation, ModelInfo, StreamOptions
    from ..tools.registry import ToolRegistry

log = logging.getLogger("chatrelay.provider")


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str | None, str]]:
    """Group raw lines into (event name, data) pairs. Multi-line data is joined with newlines."""
    event_name: str | None = None
    data: list[str] = []
    async for line in lines:
        if line == "":
            if data:
                yield event_name, "\n".join(data)
            event_name, data = None, []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event_name = value
        elif field == "data":
            data.append(value)
    if data:
        yield event_name, "\n".join(data)


def _error_message(body: bytes, status_code: int) -> str:
    try:
        payload = json.loads(body)
    except ValueError:
        text = body.decode("utf-8", errors="replace").strip()
        return text[:500] or f"HTTP {status_code}"
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
        if payload.get("message"):
            return str(payload["message"])
    return f"HTTP {status_code}"


class StreamParser(ABC):
    """Per-call translation state. Never shared between requests."""

    def __init__(self, model: "ModelInfo") -> None:
        self.model = model
        self.finished = False

    @abstractmethod
    def feed(self, event_name: str | None, data: dict[str, Any]) -> list[CanonicalEvent]: ...

    def on_done_marker(self) -> list[CanonicalEvent]:
        """`data: [DONE]` terminator."""
        return []

    def finish(self) -> list[CanonicalEvent]:
        """Body ended. Must not leave the stream without a terminal event."""
        if self.finished:
            return []
        raise UpstreamProtocolError("Stream ended before completion", provider_model=self.model.model_id)


class BaseApiProvider(BaseProvider):
    def __init__(
        self,
        catalog: "ModelCatalog",
        api_key: str,
        base_url: str,
        tools: "ToolRegistry | None" = None,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(catalog=catalog, tools=tools)
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(connect=15.0, read=timeout, write=30.0, pool=15.0)
        self._transport = transport

    def is_available(self) -> bool:
        return bool(self._api_key)

    @property
    @abstractmethod
    def endpoint(self) -> str: ...

    @abstractmethod
    def _headers(self) -> dict[str, str]: ...

    @abstractmethod
    def _build_payload(self, messages: list[dict[str, Any]], opts: "StreamOptions", model: "ModelInfo") -> dict[str, Any]: ...

    @abstractmethod
    def _new_parser(self, model: "ModelInfo") -> StreamParser: ...

    def _http_error(self, status_code: int, body: bytes) -> RelayError | CanonicalEvent:
        message = _error_message(body, status_code)
        if status_code in (401, 403):
            return AuthenticationFailed(message, provider=self.provider_type, status_code=status_code)
        if status_code in (408, 504):
            return UpstreamTimeout(message, provider=self.provider_type, status_code=status_code)
        return CanonicalEvent.error(
            message,
            error_type="upstream_http_error",
            provider=self.provider_type,
            status_code=status_code,
        )

    async def stream_message(
        self,
        conversation: "Conversation",
        prompt: str | None,
        options: "StreamOptions | dict[str, Any] | None" = None,
    ) -> AsyncIterator[CanonicalEvent]:
        opts, model = self._prepare(conversation, options)
        messages = self.build_messages_from_conversation(conversation)
        if prompt is not None:
            messages.append(self._user_message(prompt))
            if opts.interruption_reminder:
                messages = inject_interruption_reminder(messages, opts.interruption_reminder)
        payload = self._build_payload(messages, opts, model)
        url = self._base_url + self.endpoint

        async def _gen() -> AsyncIterator[CanonicalEvent]:
            parser = self._new_parser(model)
            log.info("Request started  provider=%s model=%s messages=%d", self.provider_type, model.model_id, len(messages))
            try:
                async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                    async with client.stream("POST", url, headers=self._headers(), json=payload) as response:
                        if response.status_code >= 400:
                            body = await response.aread()
                            failure = self._http_error(response.status_code, body)
                            log.warning("Request rejected  provider=%s status=%d", self.provider_type, response.status_code)
                            yield failure.to_event() if isinstance(failure, RelayError) else failure
                            return

                        async for event_name, raw in iter_sse(response.aiter_lines()):
                            if raw.strip() == "[DONE]":
                                out = parser.on_done_marker()
                            else:
                                out = parser.feed(event_name, self._decode(raw))
                            for event in out:
                                yield event
                                if event.is_terminal:
                                    return
                        for event in parser.finish():
                            yield event
            except RelayError as e:
                log.warning("Stream failed  provider=%s error=%s", self.provider_type, e.message)
                yield e.to_event()
            except httpx.TimeoutException as e:
                log.warning("Upstream timeout  provider=%s error=%s", self.provider_type, e)
                yield UpstreamTimeout(
                    f"No data from {self.provider_type} within the configured timeout",
                    provider=self.provider_type,
                ).to_event()
            except httpx.HTTPError as e:
                log.error("Connection error  provider=%s error=%s", self.provider_type, e)
                yield CanonicalEvent.error(
                    f"Connection error: {e}",
                    error_type="connection_error",
                    provider=self.provider_type,
                )

        return _gen()

    def _user_message(self, prompt: str) -> dict[str, Any]:
        return {"role": "user", "content": prompt}

    def _decode(self, raw: str) -> dict[str, Any]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            raise UpstreamProtocolError(
                "Could not decode event from upstream",
                provider=self.provider_type,
                raw=raw[:200],
            ) from None
        if not isinstance(data, dict):
            raise UpstreamProtocolError("Upstream event is not a JSON object", provider=self.provider_type)
        return data
