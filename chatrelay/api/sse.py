"""
Server-Sent Events transport.

SseWriter knows nothing about providers: it frames CanonicalEvents as
`data: <json>\\n\\n` and pushes each one to the ASGI `send` callable
immediately. EventStreamResponse pumps a TurnStream (or any async iterable
of events) through a writer while watching for the client going away; on
disconnect the event source is closed so the provider stops working.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterable, Awaitable, Callable, MutableMapping

from fastapi.responses import Response

from ..core.errors import ClientDisconnected, RelayError
from ..core.events import CanonicalEvent, EventType

log = logging.getLogger("chatrelay.sse")

Message = MutableMapping[str, Any]
Send = Callable[[Message], Awaitable[None]]
Receive = Callable[[], Awaitable[Message]]

# No caching, no proxy buffering (nginx honours X-Accel-Buffering)
SSE_HEADERS = {
    "content-type": "text/event-stream; charset=utf-8",
    "cache-control": "no-cache",
    "connection": "keep-alive",
    "x-accel-buffering": "no",
}


class SseWriter:
    def __init__(self, send: Send, debug: bool = False, status_code: int = 200) -> None:
        self._send = send
        self.debug = debug
        self.status_code = status_code
        self.initialized = False
        self.closed = False

    async def initialize(self) -> None:
        """Send the response start once. Safe to call repeatedly."""
        if self.initialized:
            return
        self.initialized = True
        await self._push({
            "type": "http.response.start",
            "status": self.status_code,
            "headers": [(k.encode("latin-1"), v.encode("latin-1")) for k, v in SSE_HEADERS.items()],
        })

    async def write(self, event: CanonicalEvent) -> None:
        await self._frame(event.to_sse())

    async def write_error(self, message: str) -> None:
        """For failures that happen before a CanonicalEvent can be built."""
        await self._frame(f"data: {json.dumps({'type': 'error', 'content': message})}\n\n")

    async def write_debug(self, message: str, context: dict[str, Any] | None = None) -> None:
        if not self.debug:
            return
        await self.write(CanonicalEvent.debug(message, context))

    async def close(self) -> None:
        if self.closed:
            return
        await self.initialize()
        self.closed = True
        await self._push({"type": "http.response.body", "body": b"", "more_body": False})

    async def _frame(self, text: str) -> None:
        await self.initialize()
        if self.closed:
            raise ClientDisconnected("Stream already closed")
        await self._push({"type": "http.response.body", "body": text.encode("utf-8"), "more_body": True})

    async def _push(self, message: Message) -> None:
        try:
            await self._send(message)
        except OSError as e:
            self.closed = True
            raise ClientDisconnected(f"Client went away: {e}") from e


class EventStreamResponse(Response):
    """Streams CanonicalEvents as SSE until the source ends or the client disconnects."""

    media_type = "text/event-stream"

    def __init__(self, events: AsyncIterable[CanonicalEvent], debug: bool = False) -> None:
        self.events = events
        self.debug = debug
        self.status_code = 200
        self.background = None
        self.disconnected = False

    async def __call__(self, scope: Any, receive: Receive, send: Send) -> None:
        writer = SseWriter(send, debug=self.debug)
        pump = asyncio.ensure_future(self._pump(writer))
        watch = asyncio.ensure_future(self._watch(receive))
        try:
            done, _ = await asyncio.wait({pump, watch}, return_when=asyncio.FIRST_COMPLETED)
            if pump in done:
                pump.result()
            else:
                self.disconnected = True
                log.info("Client disconnected, cancelling stream")
        finally:
            for task in (pump, watch):
                task.cancel()
            await asyncio.gather(pump, watch, return_exceptions=True)
            await self._close_source()

    async def _pump(self, writer: SseWriter) -> None:
        try:
            await writer.initialize()
            try:
                async for event in self.events:
                    if event.type == EventType.DEBUG.value and not self.debug:
                        continue
                    await writer.write(event)
            except ClientDisconnected:
                raise
            except RelayError as e:
                log.warning("Stream aborted  error_type=%s error=%s", e.error_type, e.message)
                await writer.write(e.to_event())
            except Exception as e:
                log.error("Stream crashed  error=%s", e, exc_info=True)
                await writer.write_error(f"Internal error: {e}")
            await writer.close()
        except ClientDisconnected as e:
            self.disconnected = True
            log.info("Write failed, client gone  error=%s", e.message)

    async def _watch(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                return

    async def _close_source(self) -> None:
        aclose = getattr(self.events, "aclose", None)
        if aclose is not None:
            await aclose()
