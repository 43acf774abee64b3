"""Tests for Conversation and the conversation stores."""

import pytest

from chatrelay.core.models import Conversation
from chatrelay.core.session import FileConversationStore, MemoryConversationStore, auto_title


def test_memory_store_create_and_load():
    store = MemoryConversationStore()
    conv = store.create(provider_type="anthropic", model="claude-haiku-4-5-20251001")
    assert store.load(conv.id) is conv
    assert conv.title == "New conversation"
    with pytest.raises(KeyError):
        store.load("missing")


def test_file_store_round_trip(tmp_path):
    store = FileConversationStore(tmp_path / "conversations")
    conv = store.create(provider_type="codex", model="gpt-5.1-codex-max", title="T")
    conv.append_turn("user", "hi")
    conv.append_turn("assistant", [{"type": "text", "text": "hello"}], interrupted=True)
    conv.set_native_session_id("thread-1")
    store.save(conv)

    loaded = store.load(conv.id)
    assert loaded.native_session_id == "thread-1"
    assert loaded.turns[1].content == [{"type": "text", "text": "hello"}]
    assert loaded.last_assistant_turn.interrupted is True
    assert [c.id for c in store.list()] == [conv.id]


def test_file_store_rejects_path_like_ids(tmp_path):
    store = FileConversationStore(tmp_path)
    with pytest.raises(KeyError):
        store.load("../settings")


def test_file_store_delete(tmp_path):
    store = FileConversationStore(tmp_path)
    conv = store.create(provider_type="openai", model="gpt-5.1-codex-mini")
    store.delete(conv.id)
    assert store.list() == []


def test_prior_messages_is_a_copy():
    conv = Conversation(id="c1", provider_type="mock", model="mock")
    conv.append_turn("user", "a")
    conv.prior_messages().clear()
    assert len(conv.turns) == 1


def test_auto_title():
    assert auto_title("Fix the bug\nin parser") == "Fix the bug"
    assert len(auto_title("x" * 200)) == 60
    assert auto_title("   ") == "New conversation"
