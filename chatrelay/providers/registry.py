"""
ProviderFactory: configuration-driven construction of providers.

Providers are built once at startup (read-only state only) and shared by
all requests. `make()` raises ProviderUnavailable for unknown types.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

import httpx

from ..core.catalog import ModelCatalog
from ..core.errors import ProviderUnavailable
from .anthropic import AnthropicProvider
from .claude_cli import ClaudeCodeProvider
from .codex_cli import CodexProvider
from .openai import OpenAIProvider

if TYPE_CHECKING:
    from pathlib import Path

    from ..config import Config
    from ..core.provider import BaseProvider
    from ..tools.registry import ToolRegistry

log = logging.getLogger("chatrelay.provider")

PROVIDER_TYPES = ("anthropic", "openai", "claude_code", "codex")


class ProviderFactory:
    def __init__(
        self,
        config: "Config",
        tools: "ToolRegistry | None" = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._tools = tools
        self._transport = transport
        builders: dict[str, Callable[[], "BaseProvider"]] = {
            "anthropic": self._anthropic,
            "openai": self._openai,
            "claude_code": self._claude_code,
            "codex": self._codex,
        }
        self._providers = {name: build() for name, build in builders.items()}

    def supports(self, provider_type: str) -> bool:
        return provider_type in self._providers

    def make(self, provider_type: str) -> "BaseProvider":
        try:
            return self._providers[provider_type]
        except KeyError:
            raise ProviderUnavailable(f"Unknown provider: {provider_type}", provider=provider_type) from None

    def default(self) -> "BaseProvider":
        return self.make(self._config.default_provider)

    def available_types(self) -> list[str]:
        return [t for t, p in self._providers.items() if p.is_available()]

    def available(self) -> list["BaseProvider"]:
        return [self.make(t) for t in self.available_types()]

    def describe(self) -> list[dict[str, Any]]:
        return [
            {
                "type": t,
                "available": self.make(t).is_available(),
                "default": t == self._config.default_provider,
                "models": self.make(t).get_models(),
            }
            for t in self._providers
        ]

    # ── Builders ──────────────────────────────────────────────────────────────

    def _catalog(self, provider_type: str) -> ModelCatalog:
        return ModelCatalog.for_provider(provider_type, self._config)

    def _trace_dir(self) -> Path | None:
        return self._config.trace_dir if self._config.stream_traces else None

    def _anthropic(self) -> AnthropicProvider:
        settings = self._config.provider_settings("anthropic")
        return AnthropicProvider(
            self._catalog("anthropic"),
            api_key=self._config.api_key("anthropic"),
            base_url=settings.get("base_url") or "https://api.anthropic.com",
            api_version=settings.get("api_version") or "2023-06-01",
            tools=self._tools,
            timeout=self._config.http_timeout,
            transport=self._transport,
        )

    def _openai(self) -> OpenAIProvider:
        settings = self._config.provider_settings("openai")
        return OpenAIProvider(
            self._catalog("openai"),
            api_key=self._config.api_key("openai"),
            base_url=settings.get("base_url") or "https://api.openai.com",
            tools=self._tools,
            timeout=self._config.http_timeout,
            transport=self._transport,
        )

    def _claude_code(self) -> ClaudeCodeProvider:
        settings = self._config.provider_settings("claude_code")
        return ClaudeCodeProvider(
            self._catalog("claude_code"),
            binary=settings.get("binary") or "claude",
            credentials_path=settings.get("credentials") or None,
            idle_timeout=self._config.idle_timeout,
            trace_dir=self._trace_dir(),
        )

    def _codex(self) -> CodexProvider:
        settings = self._config.provider_settings("codex")
        return CodexProvider(
            self._catalog("codex"),
            binary=settings.get("binary") or "codex",
            credentials_path=settings.get("credentials") or None,
            idle_timeout=self._config.idle_timeout,
            trace_dir=self._trace_dir(),
        )
