"""Tests for the provider contract, MockProvider and ProviderFactory."""

import pytest

from chatrelay.core.errors import ProviderUnavailable, UnknownModel
from chatrelay.core.models import Conversation, StreamOptions
from chatrelay.core.provider import (
    INTERRUPTION_REMINDER,
    MockProvider,
    inject_interruption_reminder,
    supports_native_session,
)
from chatrelay.providers.registry import ProviderFactory


def _conversation():
    return Conversation(id="c1", provider_type="mock", model="mock")


@pytest.mark.asyncio
async def test_mock_provider_yields_text_usage_done():
    provider = MockProvider(responses=["Hello", " world"])
    events = [e async for e in await provider.stream_message(_conversation(), "hi")]

    assert [e.type for e in events] == ["text_start", "text_delta", "text_delta", "text_stop", "usage", "done"]
    assert events[1].content == "Hello"
    assert events[-1].metadata == {"stop_reason": "end_turn"}


@pytest.mark.asyncio
async def test_unknown_model_fails_before_streaming():
    provider = MockProvider()
    with pytest.raises(UnknownModel):
        await provider.stream_message(_conversation(), "hi", {"model": "nope"})
    assert provider.calls == []


@pytest.mark.asyncio
async def test_unavailable_provider_fails_fast():
    with pytest.raises(ProviderUnavailable):
        await MockProvider(available=False).stream_message(_conversation(), "hi")


def test_stream_options_accept_camel_case():
    opts = StreamOptions.coerce({"thinkingLevel": 2, "responseLevel": 3, "cwd": "/tmp", "unknown": 1})
    assert opts.thinking_level == 2
    assert opts.response_level == 3
    with pytest.raises(ValueError):
        StreamOptions.coerce({"thinking_level": -1})


def test_reminder_prefixes_string_prompt():
    messages = [{"role": "assistant", "content": "a"}, {"role": "user", "content": "next"}]
    out = inject_interruption_reminder(messages, INTERRUPTION_REMINDER)
    assert out[-1]["content"].startswith("<system-reminder>")
    assert out[-1]["content"].endswith("next")
    assert messages[-1]["content"] == "next"


def test_reminder_becomes_first_block():
    messages = [{"role": "user", "content": [{"type": "text", "text": "next"}]}]
    out = inject_interruption_reminder(messages, "R")
    assert out[-1]["content"][0] == {"type": "text", "text": "R"}
    assert out[-1]["content"][1] == {"type": "text", "text": "next"}


def test_factory_builds_all_providers(tmp_config):
    factory = ProviderFactory(tmp_config)
    assert {d["type"] for d in factory.describe()} == {"anthropic", "openai", "claude_code", "codex"}
    assert factory.make("openai").get_provider_type() == "openai"
    assert supports_native_session(factory.make("codex"))
    assert not supports_native_session(factory.make("anthropic"))
    with pytest.raises(ProviderUnavailable):
        factory.make("gemini")


def test_factory_availability_follows_credentials(tmp_config, monkeypatch):
    factory = ProviderFactory(tmp_config)
    assert "anthropic" not in factory.available_types()

    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    factory = ProviderFactory(tmp_config)
    assert "anthropic" in factory.available_types()
    assert factory.default().provider_type == "anthropic"


def test_context_window_lookup():
    provider = MockProvider()
    assert provider.get_context_window("mock") == 1000
    assert provider.get_models() == {"mock": {"name": "Mock", "context_window": 1000}}
    with pytest.raises(UnknownModel):
        provider.get_context_window("gpt-7")
