"""Tests for CanonicalEvent constructors and serialization."""

import json

import pytest
from pydantic import ValidationError

from chatrelay.core.events import CanonicalEvent, EventType, context_percentage


def _null_free(value):
    if isinstance(value, dict):
        return all(v is not None and _null_free(v) for v in value.values())
    return True


def test_usage_context_percentage():
    event = CanonicalEvent.usage(
        input_tokens=100,
        output_tokens=50,
        context_window_size=200,
        context_input_tokens=100,
        context_output_tokens=50,
    )
    assert event.type == "usage"
    assert event.metadata["context_percentage"] == 75.0


def test_usage_without_window_has_no_percentage():
    event = CanonicalEvent.usage(input_tokens=10, output_tokens=5, context_window_size=0)
    assert "context_percentage" not in event.metadata
    assert "context_window_size" in event.metadata  # 0 is a value, not absent
    assert "cache_read_tokens" not in event.metadata


def test_usage_falls_back_to_billing_counters():
    event = CanonicalEvent.usage(input_tokens=500, output_tokens=500, context_window_size=2000)
    assert event.metadata["context_percentage"] == 50.0


def test_context_percentage_clamped_and_rounded():
    assert context_percentage(300, 0, 200) == 100.0
    assert context_percentage(1, 0, 3) == 33.3
    assert context_percentage(0, 0, 200) is None
    assert context_percentage(10, 10, None) is None


@pytest.mark.parametrize("event", [
    CanonicalEvent.usage(1, 2),
    CanonicalEvent.error("boom", exit_code=None, stderr="x"),
    CanonicalEvent.debug("d"),
    CanonicalEvent.system_info("out"),
    CanonicalEvent.context_compacted(),
    CanonicalEvent.compaction_summary("s"),
    CanonicalEvent.screen_created("id1", "html"),
    CanonicalEvent.tool_use_start(0, "t1", "Bash"),
])
def test_metadata_never_contains_null(event):
    assert _null_free(event.to_dict())
    assert event.metadata is None or all(v is not None for v in event.metadata.values())


def test_to_sse_frame_omits_absent_fields():
    event = CanonicalEvent.text_delta(2, "hi")
    frame = event.to_sse()
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    payload = json.loads(frame[len("data: "):])
    assert payload == {"type": "text_delta", "block_index": 2, "content": "hi", "event_id": event.event_id}


def test_event_ids_are_unique():
    ids = {CanonicalEvent.text_start(0).event_id for _ in range(500)}
    assert len(ids) == 500


def test_from_dict_keeps_event_id():
    event = CanonicalEvent.tool_result("t1", "ok", is_error=True)
    replayed = CanonicalEvent.from_dict(json.loads(event.to_json()))
    assert replayed == event
    assert replayed.metadata == {"tool_id": "t1", "is_error": True}


def test_terminal_types():
    assert CanonicalEvent.done().is_terminal
    assert CanonicalEvent.error("x").is_terminal
    assert not CanonicalEvent.usage(1, 1).is_terminal
    assert CanonicalEvent.done("max_tokens").metadata == {"stop_reason": "max_tokens"}


def test_unknown_type_round_trips():
    event = CanonicalEvent.from_dict({"type": "future_thing", "content": "x"})
    assert event.type == "future_thing"
    assert not event.is_terminal


def test_compaction_defaults():
    event = CanonicalEvent.context_compacted(pre_tokens=1234)
    assert event.type == EventType.CONTEXT_COMPACTED.value
    assert event.content == "Context was automatically compacted"
    assert event.metadata == {"pre_tokens": 1234, "trigger": "auto"}


def test_events_are_immutable():
    event = CanonicalEvent.text_start(0)
    with pytest.raises(ValidationError):
        event.content = "changed"

    event = CanonicalEvent.done("end_turn")
    with pytest.raises(TypeError):
        event.metadata["stop_reason"] = None
    assert event.to_dict()["metadata"] == {"stop_reason": "end_turn"}


def test_metadata_passed_in_is_not_shared():
    context = {"exit_code": 2}
    event = CanonicalEvent.error("failed", **context)
    context["exit_code"] = None
    source = {"tool_id": "t1", "is_error": False}
    copied = CanonicalEvent(type="tool_result", metadata=source)
    source["is_error"] = True
    assert event.metadata == {"exit_code": 2}
    assert copied.metadata == {"tool_id": "t1", "is_error": False}


def test_redacted_thinking_start():
    assert CanonicalEvent.thinking_start(0).metadata is None
    event = CanonicalEvent.thinking_start(3, redacted_data="blob")
    assert event.to_dict()["metadata"] == {"redacted_data": "blob"}
