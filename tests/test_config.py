"""Tests for Config and the model catalog."""

import json

import pytest

from chatrelay.config import Config, get_config, reset_config
from chatrelay.core.catalog import ModelCatalog
from chatrelay.core.errors import UnknownModel


def test_defaults(tmp_config):
    assert tmp_config.default_provider == "anthropic"
    assert tmp_config.enabled_tools == ["Read", "Write", "Edit", "Bash", "Grep", "Glob"]
    assert tmp_config.allowed_paths == []
    assert tmp_config.idle_timeout == 1800.0
    assert tmp_config.max_tool_rounds == 25
    assert tmp_config.debug is False
    assert tmp_config.conversations_dir.is_dir()
    assert tmp_config.agents_dir.is_dir()


def test_settings_file_deep_merged(tmp_path, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    base = tmp_path / "home"
    base.mkdir()
    (base / "settings.json").write_text(json.dumps({
        "providers": {"openai": {"api_key": "sk-file"}},
        "tools": {"allowed_paths": ["/srv/work"]},
    }))
    config = Config(base_dir=base)
    assert config.api_key("openai") == "sk-file"
    assert config.get("providers.openai.base_url") == "https://api.openai.com"
    assert config.allowed_paths[0].as_posix() == "/srv/work"
    assert config.tool_timeout == 120


def test_unreadable_settings_fall_back_to_defaults(tmp_path):
    base = tmp_path / "home"
    base.mkdir()
    (base / "settings.json").write_text("{not json")
    assert Config(base_dir=base).default_provider == "anthropic"


def test_env_api_key_wins(tmp_config, monkeypatch):
    tmp_config.set("providers.anthropic.api_key", "from-file")
    assert tmp_config.api_key("anthropic") == "from-file"
    monkeypatch.setenv("ANTHROPIC_API_KEY", "from-env")
    assert tmp_config.api_key("anthropic") == "from-env"


def test_set_persists(tmp_config):
    tmp_config.set("streaming.max_tool_rounds", 3)
    assert Config(base_dir=tmp_config.base_dir).max_tool_rounds == 3


def test_dev_mode_enables_debug(tmp_config, monkeypatch):
    monkeypatch.setenv("DEV_MODE", "1")
    assert tmp_config.debug is True


# ── Catalog ───────────────────────────────────────────────────────────────────


def test_builtin_catalogs():
    anthropic = ModelCatalog.for_provider("anthropic")
    assert anthropic.default_model == "claude-opus-4-5-20251101"
    assert anthropic.context_window("claude-haiku-4-5-20251001") == 200_000
    assert ModelCatalog.for_provider("openai").context_window("gpt-5.1-codex-max") == 400_000
    assert "sonnet" in ModelCatalog.for_provider("claude_code")


def test_unknown_model_raises():
    with pytest.raises(UnknownModel):
        ModelCatalog.for_provider("openai").get("gpt-2")


def test_settings_add_and_override_models(tmp_config):
    tmp_config.set("providers.openai.models", {
        "gpt-5.1-codex-mini": {"context_window": 123},
        "local-model": {"context_window": 8000, "display_name": "Local"},
    })
    catalog = ModelCatalog.for_provider("openai", tmp_config)
    assert catalog.context_window("gpt-5.1-codex-mini") == 123
    assert catalog.get("gpt-5.1-codex-mini").input_price == 0.25
    assert catalog.get("local-model").display_name == "Local"


def test_cost_calculation():
    model = ModelCatalog.for_provider("anthropic").get("claude-sonnet-4-5-20250929")
    # 1M input at $3, 1M output at $15, 1M cache read at $0.30
    assert model.calculate_cost(1_000_000, 1_000_000, 0, 1_000_000) == 18.3
    assert ModelCatalog.for_provider("claude_code").get("opus").calculate_cost(10, 10) is None


def test_get_config_is_a_singleton(tmp_path, monkeypatch):
    monkeypatch.setenv("CHATRELAY_DIR", str(tmp_path / "env-home"))
    reset_config()
    try:
        config = get_config()
        assert config is get_config()
        assert config.base_dir == tmp_path / "env-home"
        assert config.conversations_dir.is_dir()
    finally:
        reset_config()


def test_stream_traces_follow_debug(tmp_config, monkeypatch):
    assert tmp_config.stream_traces is False
    assert tmp_config.trace_dir == tmp_config.log_dir / "conversations"
    monkeypatch.setenv("DEV_MODE", "true")
    assert tmp_config.stream_traces is True
