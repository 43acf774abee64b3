"""
Agent profiles.

An agent is a markdown file in ~/.chatrelay/agents/{id}.md whose YAML front
matter picks the provider, model and tool allow-list, and whose body is the
system prompt:

    ---
    name: Reviewer
    provider: anthropic
    model: claude-sonnet-4-5-20250929
    tools: [Read, Grep, Glob]
    ---
    You review code. Be brief.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import frontmatter

from .models import AgentConfig, StreamOptions

if TYPE_CHECKING:
    from ..config import Config

log = logging.getLogger("chatrelay.agent")


def _parse_tools(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    return [str(t) for t in value]


def _parse_agent_file(path: Path) -> AgentConfig:
    """Parse a .md agent file with YAML front matter -> AgentConfig."""
    post = frontmatter.load(str(path))
    metadata = dict(post.metadata)
    agent_id = path.stem
    return AgentConfig(
        id=agent_id,
        name=str(metadata.get("name", agent_id)),
        provider_type=metadata.get("provider"),
        model=metadata.get("model"),
        tools=_parse_tools(metadata.get("tools")),
        system_prompt=post.content.strip(),
    )


class Agent:
    """Domain class wrapping AgentConfig."""

    def __init__(self, config: AgentConfig) -> None:
        self.config = config

    # ── Factories ──────────────────────────────────────────────────────────────

    @classmethod
    def load(cls, agent_id: str, config: "Config") -> "Agent":
        """Raises KeyError if not found."""
        path = config.agents_dir / f"{agent_id}.md"
        if not path.is_file():
            raise KeyError(f"Agent not found: {agent_id}")
        log.debug("Loaded agent: %s", agent_id)
        return cls(_parse_agent_file(path))

    @classmethod
    def list(cls, config: "Config") -> "list[Agent]":
        agents = []
        if not config.agents_dir.exists():
            return agents
        for path in sorted(config.agents_dir.glob("*.md")):
            try:
                agents.append(cls(_parse_agent_file(path)))
            except (OSError, ValueError) as e:
                log.warning("Failed to load agent %s: %s", path.name, e)
        return agents

    # ── Behaviour ─────────────────────────────────────────────────────────────

    def apply(self, options: StreamOptions) -> StreamOptions:
        """Fill system prompt and tool allow-list where the request left them unset."""
        update: dict[str, Any] = {}
        if options.system is None and self.config.system_prompt:
            update["system"] = self.config.system_prompt
        if options.tools is None and self.config.tools is not None:
            update["tools"] = self.config.tools
        return options.model_copy(update=update) if update else options

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name

    def __repr__(self) -> str:
        return f"Agent(id={self.id!r}, provider={self.config.provider_type!r})"
