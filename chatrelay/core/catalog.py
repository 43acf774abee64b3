"""
Model catalogs per provider type.

Built-in tables ship with the package; settings may add or override
entries under `providers.<type>.models.<model_id>` with the same keys
as ModelInfo. A catalog is read-only once built.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterator

from .errors import UnknownModel
from .models import ModelInfo

if TYPE_CHECKING:
    from ..config import Config

log = logging.getLogger("chatrelay.provider")

_ANTHROPIC_PRICING = {
    "claude-opus-4-5-20251101": (5.0, 25.0, 6.25, 0.50),
    "claude-sonnet-4-5-20250929": (3.0, 15.0, 3.75, 0.30),
    "claude-haiku-4-5-20251001": (1.0, 5.0, 1.25, 0.10),
}

_NAMES = {
    "claude-opus-4-5-20251101": "Claude Opus 4.5",
    "claude-sonnet-4-5-20250929": "Claude Sonnet 4.5",
    "claude-haiku-4-5-20251001": "Claude Haiku 4.5",
    "gpt-5.1-codex-max": "GPT-5.1 Codex Max",
    "gpt-5.1-codex-mini": "GPT-5.1 Codex Mini",
}


def _anthropic_models() -> list[ModelInfo]:
    return [
        ModelInfo(
            model_id=model_id,
            display_name=_NAMES[model_id],
            context_window=200_000,
            max_output_tokens=64_000,
            input_price=inp,
            output_price=out,
            cache_write_price=cw,
            cache_read_price=cr,
        )
        for model_id, (inp, out, cw, cr) in _ANTHROPIC_PRICING.items()
    ]


def _openai_models() -> list[ModelInfo]:
    return [
        ModelInfo(
            model_id="gpt-5.1-codex-max",
            display_name=_NAMES["gpt-5.1-codex-max"],
            context_window=400_000,
            max_output_tokens=128_000,
            input_price=1.25,
            output_price=10.0,
            cache_read_price=0.125,
        ),
        ModelInfo(
            model_id="gpt-5.1-codex-mini",
            display_name=_NAMES["gpt-5.1-codex-mini"],
            context_window=200_000,
            max_output_tokens=100_000,
            input_price=0.25,
            output_price=2.0,
            cache_read_price=0.025,
        ),
    ]


def _claude_code_models() -> list[ModelInfo]:
    # The CLI resolves aliases itself; pricing comes back in its result line.
    return [
        ModelInfo(model_id="opus", display_name="Opus", context_window=200_000),
        ModelInfo(model_id="sonnet", display_name="Sonnet", context_window=200_000),
        ModelInfo(model_id="haiku", display_name="Haiku", context_window=200_000),
    ]


def _codex_models() -> list[ModelInfo]:
    return [m.model_copy() for m in _openai_models()]


BUILTIN_MODELS = {
    "anthropic": _anthropic_models,
    "openai": _openai_models,
    "claude_code": _claude_code_models,
    "codex": _codex_models,
}


class ModelCatalog:
    """Ordered, read-only mapping of model id -> ModelInfo for one provider."""

    def __init__(self, provider_type: str, models: list[ModelInfo]) -> None:
        if not models:
            raise ValueError(f"Empty model catalog for {provider_type}")
        self.provider_type = provider_type
        self._models: dict[str, ModelInfo] = {m.model_id: m for m in models}

    @classmethod
    def for_provider(cls, provider_type: str, config: "Config | None" = None) -> "ModelCatalog":
        builtin = BUILTIN_MODELS.get(provider_type)
        models = builtin() if builtin else []
        if config is not None:
            overrides: dict[str, Any] = config.get(f"providers.{provider_type}.models", {}) or {}
            by_id = {m.model_id: m for m in models}
            for model_id, fields in overrides.items():
                if not isinstance(fields, dict):
                    log.warning("Ignoring model override %s/%s: not an object", provider_type, model_id)
                    continue
                base = by_id[model_id].model_dump() if model_id in by_id else {"display_name": model_id}
                base.update(fields)
                base["model_id"] = model_id
                by_id[model_id] = ModelInfo.model_validate(base)
            models = list(by_id.values())
        return cls(provider_type, models)

    @property
    def default_model(self) -> str:
        return next(iter(self._models))

    def get(self, model_id: str) -> ModelInfo:
        try:
            return self._models[model_id]
        except KeyError:
            raise UnknownModel(
                f"Unknown model for {self.provider_type}: {model_id}",
                provider=self.provider_type,
                model=model_id,
            ) from None

    def context_window(self, model_id: str) -> int:
        return self.get(model_id).context_window

    def summary(self) -> dict[str, dict[str, Any]]:
        return {m.model_id: m.summary() for m in self._models.values()}

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __iter__(self) -> Iterator[ModelInfo]:
        return iter(self._models.values())

    def __len__(self) -> int:
        return len(self._models)
