"""
Anthropic Messages API provider.

POST {base_url}/v1/messages with stream=true. The SSE stream maps onto the
canonical protocol almost one-to-one: content_block_* events keep their
index as block_index. One usage event is emitted right before `done`:
billing input excludes cache traffic, context input includes it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..core.errors import UpstreamProtocolError
from ..core.events import CanonicalEvent
from ..core.models import response_tokens, thinking_budget
from .http_api import BaseApiProvider, StreamParser

if TYPE_CHECKING:
    from ..core.models import Conversation, ModelInfo, StreamOptions

log = logging.getLogger("chatrelay.provider")

# Content block types an assistant turn may replay back to the API
_REPLAYABLE = {"text", "tool_use", "thinking", "redacted_thinking"}


class AnthropicStreamParser(StreamParser):
    def __init__(self, model: "ModelInfo") -> None:
        super().__init__(model)
        self._kinds: dict[int, str] = {}
        self._stop_reason: str | None = None
        self.input_tokens = 0
        self.output_tokens = 0
        self.cache_creation_tokens = 0
        self.cache_read_tokens = 0

    def _read_usage(self, usage: dict[str, Any]) -> None:
        if "input_tokens" in usage and usage["input_tokens"] is not None:
            self.input_tokens = int(usage["input_tokens"])
        if usage.get("output_tokens") is not None:
            self.output_tokens = int(usage["output_tokens"])
        if usage.get("cache_creation_input_tokens") is not None:
            self.cache_creation_tokens = int(usage["cache_creation_input_tokens"])
        if usage.get("cache_read_input_tokens") is not None:
            self.cache_read_tokens = int(usage["cache_read_input_tokens"])

    def feed(self, event_name: str | None, data: dict[str, Any]) -> list[CanonicalEvent]:
        etype = data.get("type") or event_name

        if etype == "message_start":
            self._read_usage((data.get("message") or {}).get("usage") or {})
            return []

        if etype == "content_block_start":
            return self._block_start(int(data.get("index", 0)), data.get("content_block") or {})

        if etype == "content_block_delta":
            return self._block_delta(int(data.get("index", 0)), data.get("delta") or {})

        if etype == "content_block_stop":
            index = int(data.get("index", 0))
            kind = self._kinds.pop(index, None)
            if kind == "thinking":
                return [CanonicalEvent.thinking_stop(index)]
            if kind == "text":
                return [CanonicalEvent.text_stop(index)]
            if kind == "tool_use":
                return [CanonicalEvent.tool_use_stop(index)]
            return []

        if etype == "message_delta":
            delta = data.get("delta") or {}
            if delta.get("stop_reason"):
                self._stop_reason = delta["stop_reason"]
            self._read_usage(data.get("usage") or {})
            return []

        if etype == "message_stop":
            return self._complete()

        if etype == "error":
            err = data.get("error") or {}
            self.finished = True
            return [CanonicalEvent.error(
                str(err.get("message") or "Upstream error"),
                error_type=err.get("type") or "upstream_error",
                provider="anthropic",
            )]

        if etype != "ping":
            log.debug("Ignoring Anthropic event  type=%s", etype)
        return []

    def _block_start(self, index: int, block: dict[str, Any]) -> list[CanonicalEvent]:
        btype = block.get("type")
        if btype == "redacted_thinking":
            self._kinds[index] = "thinking"
            return [CanonicalEvent.thinking_start(index, redacted_data=str(block.get("data", "")))]
        if btype == "thinking":
            self._kinds[index] = "thinking"
            out = [CanonicalEvent.thinking_start(index)]
            if block.get("thinking"):
                out.append(CanonicalEvent.thinking_delta(index, block["thinking"]))
            return out
        if btype == "text":
            self._kinds[index] = "text"
            out = [CanonicalEvent.text_start(index)]
            if block.get("text"):
                out.append(CanonicalEvent.text_delta(index, block["text"]))
            return out
        if btype in ("tool_use", "server_tool_use"):
            self._kinds[index] = "tool_use"
            return [CanonicalEvent.tool_use_start(index, str(block.get("id", "")), str(block.get("name", "")))]
        log.debug("Ignoring content block  type=%s", btype)
        return []

    def _block_delta(self, index: int, delta: dict[str, Any]) -> list[CanonicalEvent]:
        if index not in self._kinds:
            raise UpstreamProtocolError(f"Delta for unopened block {index}", provider="anthropic")
        dtype = delta.get("type")
        if dtype == "thinking_delta":
            return [CanonicalEvent.thinking_delta(index, delta.get("thinking", ""))]
        if dtype == "signature_delta":
            return [CanonicalEvent.thinking_signature(index, delta.get("signature", ""))]
        if dtype == "text_delta":
            return [CanonicalEvent.text_delta(index, delta.get("text", ""))]
        if dtype == "input_json_delta":
            return [CanonicalEvent.tool_use_delta(index, delta.get("partial_json", ""))]
        log.debug("Ignoring delta  type=%s", dtype)
        return []

    def usage_event(self) -> CanonicalEvent:
        cost = self.model.calculate_cost(
            self.input_tokens, self.output_tokens, self.cache_creation_tokens, self.cache_read_tokens
        )
        return CanonicalEvent.usage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens or None,
            cache_read_tokens=self.cache_read_tokens or None,
            cost=cost,
            context_window_size=self.model.context_window,
            context_input_tokens=self.input_tokens + self.cache_creation_tokens + self.cache_read_tokens,
            context_output_tokens=self.output_tokens,
        )

    def _complete(self) -> list[CanonicalEvent]:
        if self.finished:
            return []
        self.finished = True
        out: list[CanonicalEvent] = []
        # blocks the API never closed
        for index, kind in sorted(self._kinds.items()):
            if kind == "thinking":
                out.append(CanonicalEvent.thinking_stop(index))
            elif kind == "text":
                out.append(CanonicalEvent.text_stop(index))
            else:
                out.append(CanonicalEvent.tool_use_stop(index))
        self._kinds.clear()
        out.append(self.usage_event())
        out.append(CanonicalEvent.done(self._stop_reason or "end_turn"))
        return out


class AnthropicProvider(BaseApiProvider):
    provider_type = "anthropic"

    def __init__(self, *args: Any, api_version: str = "2023-06-01", **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._api_version = api_version

    @property
    def endpoint(self) -> str:
        return "/v1/messages"

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": self._api_version,
            "content-type": "application/json",
            "accept": "text/event-stream",
        }

    def _new_parser(self, model: "ModelInfo") -> AnthropicStreamParser:
        return AnthropicStreamParser(model)

    def _user_message(self, prompt: str) -> dict[str, Any]:
        return {"role": "user", "content": [{"type": "text", "text": prompt}]}

    def build_messages_from_conversation(self, conversation: "Conversation") -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        for turn in conversation.prior_messages():
            if isinstance(turn.content, str):
                if not turn.content:
                    continue
                content: list[dict[str, Any]] = [{"type": "text", "text": turn.content}]
            elif turn.role == "assistant":
                content = [
                    b for b in turn.content
                    if b.get("type") in _REPLAYABLE
                    and not (b.get("type") == "thinking" and not b.get("signature"))
                ]
            else:
                content = [b for b in turn.content if b.get("type") in ("text", "tool_result", "image")]
            if content:
                messages.append({"role": turn.role, "content": content})
        return messages

    def _build_payload(self, messages: list[dict[str, Any]], opts: "StreamOptions", model: "ModelInfo") -> dict[str, Any]:
        budget = thinking_budget(opts.thinking_level)
        max_tokens = budget + response_tokens(opts.response_level)
        if model.max_output_tokens:
            max_tokens = min(max_tokens, model.max_output_tokens)

        payload: dict[str, Any] = {
            "model": model.model_id,
            "max_tokens": max_tokens,
            "messages": messages,
            "stream": True,
        }
        if opts.system:
            payload["system"] = opts.system
        if budget > 0:
            payload["thinking"] = {"type": "enabled", "budget_tokens": budget}
        tools = self._tool_definitions(opts)
        if tools:
            payload["tools"] = tools
        return payload
