"""
Pydantic data models for chatrelay.

No I/O here. These are the serializable data layer:
- Conversation / Turn: saved by a ConversationStore, read by providers
- ModelInfo: one catalog entry (context window, pricing)
- StreamOptions: per-call options accepted by `stream_message`
- AgentConfig: a parsed agent profile
- Level tables mapping thinking / response selectors to budgets
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# ── Level tables ──────────────────────────────────────────────────────────────

# Anthropic extended-thinking budget per thinking level
THINKING_BUDGETS = [0, 4000, 10000, 20000, 32000]

# OpenAI / Codex reasoning effort per thinking level
REASONING_EFFORTS = ["none", "low", "medium", "high", "high"]

# max output tokens per response level
RESPONSE_TOKENS = {0: 4000, 1: 8192, 2: 16000, 3: 32000}
DEFAULT_RESPONSE_LEVEL = 1


def _clamp(level: int, upper: int) -> int:
    return max(0, min(int(level), upper))


def thinking_budget(level: int) -> int:
    return THINKING_BUDGETS[_clamp(level, len(THINKING_BUDGETS) - 1)]


def reasoning_effort(level: int) -> str:
    return REASONING_EFFORTS[_clamp(level, len(REASONING_EFFORTS) - 1)]


def response_tokens(level: int) -> int:
    return RESPONSE_TOKENS[_clamp(level, max(RESPONSE_TOKENS))]


# ── Conversation ──────────────────────────────────────────────────────────────

TurnContent = Union[str, list[dict[str, Any]]]


class Turn(BaseModel):
    """One stored turn. Content is plain text or a list of content blocks."""
    role: Literal["user", "assistant"]
    content: TurnContent
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    interrupted: bool = False


class Conversation(BaseModel):
    """On-disk format for a conversation. Saved to ~/.chatrelay/conversations/{id}.json.

    The streaming core only touches it through prior_messages(),
    native_session_id, append_turn() and set_native_session_id().
    """
    id: str
    title: str = "New conversation"
    provider_type: str
    model: str
    agent_id: str | None = None
    working_directory: str | None = None
    turns: list[Turn] = []
    native_session_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def prior_messages(self) -> list[Turn]:
        return list(self.turns)

    def append_turn(self, role: str, content: TurnContent, interrupted: bool = False) -> Turn:
        turn = Turn(role=role, content=content, interrupted=interrupted)  # type: ignore[arg-type]
        self.turns.append(turn)
        self.updated_at = turn.timestamp
        return turn

    def set_native_session_id(self, session_id: str | None) -> None:
        self.native_session_id = session_id

    @property
    def last_assistant_turn(self) -> Turn | None:
        for turn in reversed(self.turns):
            if turn.role == "assistant":
                return turn
        return None


# ── Catalog entry ─────────────────────────────────────────────────────────────


class ModelInfo(BaseModel):
    """One model a provider can serve. Prices are USD per million tokens."""
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    display_name: str
    context_window: int
    max_output_tokens: int | None = None
    input_price: float | None = None
    output_price: float | None = None
    cache_write_price: float | None = None
    cache_read_price: float | None = None

    def calculate_cost(
        self,
        input_tokens: int,
        output_tokens: int,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
    ) -> float | None:
        """None when the model has no pricing."""
        if self.input_price is None or self.output_price is None:
            return None
        cost = (
            input_tokens * self.input_price
            + output_tokens * self.output_price
            + cache_creation_tokens * (self.cache_write_price or self.input_price)
            + cache_read_tokens * (self.cache_read_price or 0.0)
        ) / 1_000_000
        return round(cost, 6)

    def summary(self) -> dict[str, Any]:
        return {"name": self.display_name, "context_window": self.context_window}



# ── Agent profile ─────────────────────────────────────────────────────────────


class AgentConfig(BaseModel):
    """Parsed agents/{id}.md: front matter plus the body as system prompt."""
    id: str
    name: str
    provider_type: str | None = None
    model: str | None = None
    tools: list[str] | None = None
    system_prompt: str = ""


# ── Per-call options ──────────────────────────────────────────────────────────


class StreamOptions(BaseModel):
    """Options for one `stream_message` call.

    Accepts snake_case or camelCase keys (thinkingLevel, responseLevel).
    Unrecognized keys are ignored.
    """
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    model: str | None = None
    thinking_level: int = 0
    response_level: int = DEFAULT_RESPONSE_LEVEL
    tools: list[str] | None = None
    cwd: str | None = None
    system: str | None = None
    interruption_reminder: str | None = None

    @field_validator("thinking_level", "response_level")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("level must be >= 0")
        return v

    @classmethod
    def coerce(cls, options: "StreamOptions | dict[str, Any] | None") -> "StreamOptions":
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        return cls.model_validate(options)
