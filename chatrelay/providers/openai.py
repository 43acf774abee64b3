"""
OpenAI Responses API provider.

POST {base_url}/v1/responses with stream=true. Each output item (reasoning,
message, function_call) becomes one block; block indexes are assigned in
the order items first produce output. Stored tool_use / tool_result
blocks are replayed as function_call / function_call_output items.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from ..core.events import CanonicalEvent
from ..core.models import reasoning_effort, response_tokens
from .http_api import BaseApiProvider, StreamParser

if TYPE_CHECKING:
    from ..core.models import Conversation, ModelInfo, StreamOptions

log = logging.getLogger("chatrelay.provider")


class _Item:
    def __init__(self, block_index: int, kind: str) -> None:
        self.block_index = block_index
        self.kind = kind
        self.saw_delta = False


class OpenAIStreamParser(StreamParser):
    def __init__(self, model: "ModelInfo") -> None:
        super().__init__(model)
        self._items: dict[int, _Item] = {}
        self._next_block = 0
        self._tool_calls = 0

    def _open(self, output_index: int, kind: str) -> tuple[_Item, list[CanonicalEvent]]:
        item = self._items.get(output_index)
        if item is not None:
            return item, []
        item = _Item(self._next_block, kind)
        self._next_block += 1
        self._items[output_index] = item
        if kind == "thinking":
            return item, [CanonicalEvent.thinking_start(item.block_index)]
        return item, [CanonicalEvent.text_start(item.block_index)]

    def _close(self, output_index: int) -> list[CanonicalEvent]:
        item = self._items.pop(output_index, None)
        if item is None:
            return []
        if item.kind == "thinking":
            return [CanonicalEvent.thinking_stop(item.block_index)]
        if item.kind == "tool_use":
            return [CanonicalEvent.tool_use_stop(item.block_index)]
        return [CanonicalEvent.text_stop(item.block_index)]

    def _close_all(self) -> list[CanonicalEvent]:
        out: list[CanonicalEvent] = []
        for output_index in sorted(self._items):
            out += self._close(output_index)
        return out

    def feed(self, event_name: str | None, data: dict[str, Any]) -> list[CanonicalEvent]:
        etype = data.get("type") or event_name or ""
        output_index = int(data.get("output_index", 0))

        if etype == "response.output_item.added":
            item = data.get("item") or {}
            if item.get("type") == "function_call":
                block = _Item(self._next_block, "tool_use")
                self._next_block += 1
                self._items[output_index] = block
                self._tool_calls += 1
                return [CanonicalEvent.tool_use_start(
                    block.block_index, str(item.get("call_id") or item.get("id") or ""), str(item.get("name", ""))
                )]
            return []

        if etype == "response.output_text.delta":
            item, out = self._open(output_index, "text")
            return out + [CanonicalEvent.text_delta(item.block_index, data.get("delta", ""))]

        if etype in ("response.reasoning_summary_text.delta", "response.reasoning_text.delta"):
            item, out = self._open(output_index, "thinking")
            return out + [CanonicalEvent.thinking_delta(item.block_index, data.get("delta", ""))]

        if etype == "response.reasoning_summary_part.added":
            item = self._items.get(output_index)
            # separate consecutive summary parts inside one thinking block
            if item is not None and item.kind == "thinking":
                return [CanonicalEvent.thinking_delta(item.block_index, "\n\n")]
            return []

        if etype == "response.function_call_arguments.delta":
            item = self._items.get(output_index)
            if item is None:
                return []
            item.saw_delta = True
            return [CanonicalEvent.tool_use_delta(item.block_index, data.get("delta", ""))]

        if etype == "response.function_call_arguments.done":
            item = self._items.get(output_index)
            if item is None or item.saw_delta:
                return []
            item.saw_delta = True
            return [CanonicalEvent.tool_use_delta(item.block_index, data.get("arguments", ""))]

        if etype == "response.output_item.done":
            return self._close(output_index)

        if etype in ("response.completed", "response.incomplete"):
            response = data.get("response") or {}
            if etype == "response.incomplete":
                stop = "max_tokens"
            else:
                stop = "tool_use" if self._tool_calls else "end_turn"
            self.finished = True
            return self._close_all() + [self.usage_event(response.get("usage") or {}), CanonicalEvent.done(stop)]

        if etype in ("response.failed", "error"):
            self.finished = True
            err = data.get("error") or (data.get("response") or {}).get("error") or {}
            message = err.get("message") if isinstance(err, dict) else None
            return [CanonicalEvent.error(
                str(message or data.get("message") or "Response failed"),
                error_type=(err.get("code") if isinstance(err, dict) else None) or "upstream_error",
                provider="openai",
            )]

        return []

    def on_done_marker(self) -> list[CanonicalEvent]:
        if self.finished:
            return []
        self.finished = True
        return self._close_all() + [CanonicalEvent.done("tool_use" if self._tool_calls else "end_turn")]

    def usage_event(self, usage: dict[str, Any]) -> CanonicalEvent:
        total_input = int(usage.get("input_tokens") or 0)
        output = int(usage.get("output_tokens") or 0)
        cached = int((usage.get("input_tokens_details") or {}).get("cached_tokens") or 0)
        billed_input = max(0, total_input - cached)
        return CanonicalEvent.usage(
            input_tokens=billed_input,
            output_tokens=output,
            cache_read_tokens=cached or None,
            cost=self.model.calculate_cost(billed_input, output, 0, cached),
            context_window_size=self.model.context_window,
            context_input_tokens=total_input,
            context_output_tokens=output,
        )


class OpenAIProvider(BaseApiProvider):
    provider_type = "openai"

    @property
    def endpoint(self) -> str:
        return "/v1/responses"

    def _headers(self) -> dict[str, str]:
        return {
            "authorization": f"Bearer {self._api_key}",
            "content-type": "application/json",
            "accept": "text/event-stream",
        }

    def _new_parser(self, model: "ModelInfo") -> OpenAIStreamParser:
        return OpenAIStreamParser(model)

    def build_messages_from_conversation(self, conversation: "Conversation") -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for turn in conversation.prior_messages():
            if isinstance(turn.content, str):
                if turn.content:
                    items.append({"role": turn.role, "content": turn.content})
                continue
            for block in turn.content:
                btype = block.get("type")
                if btype == "text" and block.get("text"):
                    items.append({"role": turn.role, "content": block["text"]})
                elif btype == "tool_use" and turn.role == "assistant":
                    items.append({
                        "type": "function_call",
                        "call_id": block.get("id"),
                        "name": block.get("name"),
                        "arguments": json.dumps(block.get("input") or {}),
                    })
                elif btype == "tool_result" and turn.role == "user":
                    items.append({
                        "type": "function_call_output",
                        "call_id": block.get("tool_use_id"),
                        "output": _as_text(block.get("content")),
                    })
        return items

    def _build_payload(self, messages: list[dict[str, Any]], opts: "StreamOptions", model: "ModelInfo") -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model.model_id,
            "input": messages,
            "stream": True,
            "max_output_tokens": response_tokens(opts.response_level),
        }
        if opts.system:
            payload["instructions"] = opts.system
        effort = reasoning_effort(opts.thinking_level)
        if effort != "none":
            payload["reasoning"] = {"effort": effort, "summary": "auto"}
        tools = [
            {
                "type": "function",
                "name": d["name"],
                "description": d.get("description", ""),
                "parameters": d.get("input_schema") or {"type": "object", "properties": {}},
            }
            for d in self._tool_definitions(opts)
        ]
        if tools:
            payload["tools"] = tools
        return payload


def _as_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content)
