"""Tests for the Claude Code CLI provider."""

import asyncio
import json
import os

import pytest

from chatrelay.core.catalog import ModelCatalog
from chatrelay.core.models import Conversation
from chatrelay.providers.claude_cli import ClaudeCodeProvider, ClaudeStreamParser


def parser():
    return ClaudeStreamParser(ModelCatalog.for_provider("claude_code").get("sonnet"))


def feed_all(p, lines):
    out = []
    for line in lines:
        out += p.feed(line)
    return out


def stream_event(event):
    return {"type": "stream_event", "event": event}


def jsonl(*lines):
    return "\n".join(json.dumps(line) for line in lines)


# ── Line parsing ──────────────────────────────────────────────────────────────


def test_partial_messages_become_blocks():
    p = parser()
    events = feed_all(p, [
        {"type": "system", "subtype": "init", "session_id": "sess-1"},
        stream_event({"type": "message_start", "message": {"usage": {"input_tokens": 10, "cache_read_input_tokens": 90}}}),
        stream_event({"type": "content_block_start", "index": 0, "content_block": {"type": "thinking"}}),
        stream_event({"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "hmm"}}),
        stream_event({"type": "content_block_delta", "index": 0, "delta": {"type": "signature_delta", "signature": "sig"}}),
        stream_event({"type": "content_block_stop", "index": 0}),
        stream_event({"type": "content_block_start", "index": 1, "content_block": {"type": "text"}}),
        stream_event({"type": "content_block_delta", "index": 1, "delta": {"type": "text_delta", "text": "Hi"}}),
        stream_event({"type": "content_block_stop", "index": 1}),
        stream_event({"type": "message_delta", "usage": {"output_tokens": 7}}),
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "Hi"}]}},
        {"type": "result", "subtype": "success", "session_id": "sess-1", "total_cost_usd": 0.01,
         "usage": {"input_tokens": 30, "output_tokens": 20, "cache_read_input_tokens": 270}},
    ])

    assert [e.type for e in events] == [
        "thinking_start", "thinking_delta", "thinking_signature", "thinking_stop",
        "text_start", "text_delta", "text_stop",
    ]
    assert p.session_id == "sess-1"
    assert p.stop_reason == "end_turn"

    usage = p.usage_event().metadata
    # cumulative billing from the result line, context from the last internal turn
    assert usage["input_tokens"] == 30
    assert usage["cache_read_tokens"] == 270
    assert usage["cost"] == 0.01
    assert usage["context_input_tokens"] == 100
    assert usage["context_output_tokens"] == 7


def test_compaction_precedes_summary():
    p = parser()
    p.feed(stream_event({"type": "content_block_start", "index": 0, "content_block": {"type": "text"}}))
    events = feed_all(p, [
        {"type": "system", "subtype": "compact_boundary", "compact_metadata": {"pre_tokens": 150000, "trigger": "auto"}},
        {"type": "user", "message": {"content": "Summary of the earlier conversation"}},
    ])

    assert [e.type for e in events] == ["text_stop", "context_compacted", "compaction_summary"]
    assert events[1].metadata == {"pre_tokens": 150000, "trigger": "auto"}
    assert events[2].content == "Summary of the earlier conversation"


def test_local_command_output_is_system_info():
    events = parser().feed({"type": "user", "message": {
        "content": "<command-name>/cost</command-name><local-command-stdout>Total cost: $0.12</local-command-stdout>",
    }})
    assert len(events) == 1
    assert events[0].type == "system_info"
    assert events[0].content == "Total cost: $0.12"
    assert events[0].metadata == {"command": "/cost"}


def test_tool_results_from_cli():
    events = parser().feed({"type": "user", "message": {"content": [
        {"type": "tool_result", "tool_use_id": "toolu_1", "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]},
        {"type": "tool_result", "tool_use_id": "toolu_2", "content": "failed", "is_error": True},
    ]}})
    assert [(e.content, e.metadata["is_error"]) for e in events] == [("ab", False), ("failed", True)]


def test_assistant_messages_used_without_partial_events():
    p = parser()
    events = p.feed({"type": "assistant", "message": {"content": [
        {"type": "text", "text": "Let me look."},
        {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"command": "ls"}},
    ]}})
    assert [e.type for e in events] == [
        "text_start", "text_delta", "text_stop",
        "tool_use_start", "tool_use_delta", "tool_use_stop",
    ]
    assert json.loads(events[4].content) == {"command": "ls"}


def test_error_result():
    events = parser().feed({"type": "result", "subtype": "error_max_turns", "is_error": True, "session_id": "s"})
    assert events[-1].type == "error"
    assert events[-1].metadata["error_type"] == "error_max_turns"


# ── Process handling ──────────────────────────────────────────────────────────


def provider(binary, idle_timeout=30.0):
    return ClaudeCodeProvider(ModelCatalog.for_provider("claude_code"), binary=str(binary), idle_timeout=idle_timeout)


def conversation(**kwargs):
    return Conversation(id="c1", provider_type="claude_code", model="sonnet", **kwargs)


async def collect(stream):
    return [e async for e in stream]


@pytest.mark.asyncio
async def test_run_streams_and_captures_session(write_script, workdir):
    output = jsonl(
        {"type": "system", "subtype": "init", "session_id": "sess-9"},
        stream_event({"type": "content_block_start", "index": 0, "content_block": {"type": "text"}}),
        stream_event({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Done."}}),
        stream_event({"type": "content_block_stop", "index": 0}),
        {"type": "result", "subtype": "success", "session_id": "sess-9", "usage": {"input_tokens": 5, "output_tokens": 2}},
    )
    script = write_script("claude", f"""
dir=$(dirname "$0")
cat > "$dir/stdin.txt"
printf '%s\\n' "$@" > "$dir/args.txt"
echo "$MAX_THINKING_TOKENS" > "$dir/env.txt"
cat <<'EOF'
{output}
EOF
""")
    conv = conversation(native_session_id="sess-old")
    options = {"cwd": str(workdir), "system": "Be brief.", "tools": ["Read", "Bash"], "thinkingLevel": 1}
    events = await collect(await provider(script).stream_message(conv, "hello", options))

    assert [e.type for e in events] == ["text_start", "text_delta", "text_stop", "usage", "done"]
    assert conv.native_session_id == "sess-9"

    bin_dir = script.parent
    assert (bin_dir / "stdin.txt").read_text() == "hello"
    args = (bin_dir / "args.txt").read_text().splitlines()
    assert args[:3] == ["--print", "--verbose", "--output-format"]
    assert args[args.index("--resume") + 1] == "sess-old"
    assert args[args.index("--tools") + 1] == "Read,Bash"
    assert args[args.index("--system-prompt") + 1] == "Be brief."
    assert (bin_dir / "env.txt").read_text().strip() == "4000"


@pytest.mark.asyncio
async def test_nonzero_exit_is_one_error(write_script, workdir):
    script = write_script("claude", """
cat > /dev/null
echo "fatal: not logged in" >&2
exit 2
""")
    events = await collect(await provider(script).stream_message(conversation(), "hi", {"cwd": str(workdir)}))

    assert len(events) == 1
    error = events[0]
    assert error.type == "error"
    assert error.metadata["exit_code"] == 2
    assert error.metadata["stderr"] == "fatal: not logged in"
    assert "fatal: not logged in" in error.content


@pytest.mark.asyncio
async def test_idle_timeout_kills_process(write_script, workdir):
    script = write_script("claude", """
echo $$ > "$(dirname "$0")/pid.txt"
cat > /dev/null
sleep 30
""")
    events = await asyncio.wait_for(
        collect(await provider(script, idle_timeout=0.5).stream_message(conversation(), "hi", {"cwd": str(workdir)})),
        timeout=10,
    )
    assert events[-1].type == "error"
    assert events[-1].metadata["error_type"] == "process_timed_out"
    pid = int((script.parent / "pid.txt").read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@pytest.mark.asyncio
async def test_cancel_terminates_process(write_script, workdir):
    script = write_script("claude", """
echo $$ > "$(dirname "$0")/pid.txt"
cat > /dev/null
echo '{"type":"stream_event","event":{"type":"content_block_start","index":0,"content_block":{"type":"text"}}}'
sleep 30
""")
    stream = await provider(script).stream_message(conversation(), "hi", {"cwd": str(workdir)})
    first = await stream.__anext__()
    assert first.type == "text_start"
    await asyncio.wait_for(stream.aclose(), timeout=10)

    pid = int((script.parent / "pid.txt").read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@pytest.mark.asyncio
async def test_malformed_and_plain_lines(write_script, workdir):
    script = write_script("claude", """
cat > /dev/null
echo "warming up"
echo '{"type": "system", broken'
echo '{"type":"result","subtype":"success"}'
""")
    events = await collect(await provider(script).stream_message(conversation(), "hi", {"cwd": str(workdir)}))
    assert [e.type for e in events] == ["debug", "error"]
    assert events[1].metadata["error_type"] == "malformed_backend_output"


@pytest.mark.asyncio
async def test_prompt_required(write_script, workdir):
    script = write_script("claude", "exit 0\n")
    with pytest.raises(ValueError):
        await provider(script).stream_message(conversation(), None, {"cwd": str(workdir)})


@pytest.mark.asyncio
async def test_stream_trace_records_run(write_script, workdir, tmp_path):
    script = write_script("claude", """
cat > /dev/null
echo '{"type":"system","subtype":"init","session_id":"sess-t"}'
echo "plain text"
echo '{"type":"result","subtype":"success","session_id":"sess-t"}'
""")
    trace_dir = tmp_path / "traces"
    traced = ClaudeCodeProvider(
        ModelCatalog.for_provider("claude_code"), binary=str(script), trace_dir=trace_dir
    )
    await collect(await traced.stream_message(conversation(), "hello", {"cwd": str(workdir)}))

    entries = [json.loads(line) for line in (trace_dir / "c1.jsonl").read_text().splitlines()]
    assert [(e["dir"], e["type"]) for e in entries] == [
        ("meta", "command"),
        ("in", "stdin"),
        ("out", "stream"),
        ("out", "stream"),
        ("out", "stream"),
        ("meta", "complete"),
    ]
    assert entries[0]["data"][0] == str(script)
    assert entries[1]["data"] == "hello"
    assert entries[3]["data"] == "plain text"
    assert entries[-1]["data"] == {"session_id": "sess-t", "stop_reason": "end_turn"}
