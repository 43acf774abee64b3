"""
Configuration management for chatrelay.

Loads settings from ~/.chatrelay/settings.json and provides
typed access to all configurable values. The streaming core only
reads from it; writes happen through the settings file or `set()`.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any

log = logging.getLogger("chatrelay.config")

DEFAULT_TOOLS = ["Read", "Write", "Edit", "Bash", "Grep", "Glob"]


class Config:
    """Manages chatrelay configuration and directory structure."""

    def __init__(self, base_dir: Path | str | None = None) -> None:
        if base_dir is not None:
            self.base_dir = Path(base_dir).expanduser()
        else:
            env_dir = os.getenv("CHATRELAY_DIR")
            self.base_dir = Path(env_dir).expanduser() if env_dir else Path.home() / ".chatrelay"

        self.log_dir = self.base_dir / "log"
        self.trace_dir = self.log_dir / "conversations"
        self.conversations_dir = self.base_dir / "conversations"
        self.agents_dir = self.base_dir / "agents"

        self.settings_file = self.base_dir / "settings.json"

        self._ensure_dirs()
        self._settings: dict[str, Any] = self._load_settings()

    def _ensure_dirs(self) -> None:
        for d in [self.base_dir, self.log_dir, self.conversations_dir, self.agents_dir]:
            d.mkdir(parents=True, exist_ok=True)

    def _default_settings(self) -> dict[str, Any]:
        return {
            "version": "0.1.0",
            "created_at": datetime.now().isoformat(),
            "server": {"host": "127.0.0.1", "port": 8000},
            "default_provider": "anthropic",
            "debug": False,
            "providers": {
                "anthropic": {
                    "api_key": "",
                    "base_url": "https://api.anthropic.com",
                    "api_version": "2023-06-01",
                },
                "openai": {
                    "api_key": "",
                    "base_url": "https://api.openai.com",
                },
                "claude_code": {
                    "binary": "claude",
                    "credentials": "~/.claude/.credentials.json",
                },
                "codex": {
                    "binary": "codex",
                    "credentials": "~/.codex/auth.json",
                },
            },
            "tools": {
                "enabled": list(DEFAULT_TOOLS),
                "allowed_paths": [],
                "timeout": 120,
                "max_output_length": 30000,
            },
            "streaming": {
                "idle_timeout": 1800,
                "http_timeout": 300,
                "max_tool_rounds": 25,
            },
            "logging": {"level": "INFO", "keep": 30, "stream_traces": False},
        }

    def _load_settings(self) -> dict[str, Any]:
        defaults = self._default_settings()
        if self.settings_file.exists():
            try:
                data = json.loads(self.settings_file.read_text())
            except (OSError, ValueError) as e:
                log.warning("Unreadable settings file %s: %s", self.settings_file, e)
                return defaults
            if isinstance(data, dict):
                return self._deep_merge(defaults, data)
            log.warning("Ignoring settings file %s: top level is not an object", self.settings_file)
        return defaults

    def _deep_merge(self, base: dict, override: dict) -> dict:
        result = base.copy()
        for k, v in override.items():
            if k in result and isinstance(result[k], dict) and isinstance(v, dict):
                result[k] = self._deep_merge(result[k], v)
            else:
                result[k] = v
        return result

    def save(self) -> None:
        tmp = self.settings_file.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._settings, indent=2))
        tmp.replace(self.settings_file)

    def get(self, key_path: str, default: Any = None) -> Any:
        """Dot-notation access. e.g. config.get('providers.anthropic.api_key')"""
        val: Any = self._settings
        for part in key_path.split("."):
            if not isinstance(val, dict) or part not in val:
                return default
            val = val[part]
        return val

    def set(self, key_path: str, value: Any, save: bool = True) -> None:
        parts = key_path.split(".")
        d = self._settings
        for part in parts[:-1]:
            d = d.setdefault(part, {})
        d[parts[-1]] = value
        if save:
            self.save()

    # ── Typed accessors ───────────────────────────────────────────────────────

    @property
    def log_level(self) -> str:
        return str(self.get("logging.level", "INFO")).upper()

    @property
    def log_keep(self) -> int:
        return int(self.get("logging.keep", 30))

    @property
    def stream_traces(self) -> bool:
        """Per-conversation CLI traces: on with `logging.stream_traces` or in debug mode."""
        return bool(self.get("logging.stream_traces", False)) or self.debug

    @property
    def dev_mode(self) -> bool:
        return os.getenv("DEV_MODE", "").lower() in ("1", "true", "yes")

    @property
    def debug(self) -> bool:
        return bool(self.get("debug", False)) or self.dev_mode

    @property
    def default_provider(self) -> str:
        return str(self.get("default_provider", "anthropic"))

    @property
    def enabled_tools(self) -> list[str]:
        return list(self.get("tools.enabled", DEFAULT_TOOLS) or [])

    @property
    def allowed_paths(self) -> list[Path]:
        return [Path(p).expanduser() for p in self.get("tools.allowed_paths", []) or []]

    @property
    def tool_timeout(self) -> int:
        return int(self.get("tools.timeout", 120))

    @property
    def max_output_length(self) -> int:
        return int(self.get("tools.max_output_length", 30000))

    @property
    def idle_timeout(self) -> float:
        return float(self.get("streaming.idle_timeout", 1800))

    @property
    def http_timeout(self) -> float:
        return float(self.get("streaming.http_timeout", 300))

    @property
    def max_tool_rounds(self) -> int:
        return int(self.get("streaming.max_tool_rounds", 25))

    def provider_settings(self, provider_type: str) -> dict[str, Any]:
        return dict(self.get(f"providers.{provider_type}", {}) or {})

    def api_key(self, provider_type: str) -> str:
        """Env var wins over the settings file (ANTHROPIC_API_KEY, OPENAI_API_KEY)."""
        env_val = os.getenv(f"{provider_type.upper()}_API_KEY")
        if env_val:
            return env_val
        return str(self.get(f"providers.{provider_type}.api_key", "") or "")

    def __repr__(self) -> str:
        return f"Config(base_dir={str(self.base_dir)!r})"


# Module-level singleton
_config: Config | None = None


def get_config(base_dir: Path | str | None = None) -> Config:
    global _config
    if _config is None:
        _config = Config(base_dir)
    return _config


def reset_config() -> None:
    """Reset singleton (tests)."""
    global _config
    _config = None
