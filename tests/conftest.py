"""
Shared pytest fixtures for chatrelay tests.
"""

import pytest
from pathlib import Path


@pytest.fixture
def tmp_config(tmp_path, monkeypatch):
    """A Config instance using tmp_path as base_dir, with no credentials from the environment."""
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("DEV_MODE", raising=False)
    from chatrelay.config import Config
    return Config(base_dir=tmp_path / "home")


@pytest.fixture
def workdir(tmp_path):
    """An empty working directory for tools and conversations."""
    d = tmp_path / "work"
    d.mkdir()
    return d


@pytest.fixture
def memory_store():
    from chatrelay.core.session import MemoryConversationStore
    return MemoryConversationStore()


@pytest.fixture
def tool_context(workdir):
    """ExecutionContext rooted at workdir."""
    from chatrelay.tools.base import ExecutionContext
    from chatrelay.tools.paths import PathValidator
    return ExecutionContext(working_directory=workdir, validator=PathValidator([workdir]))


@pytest.fixture
def conversation(memory_store, workdir):
    return memory_store.create(provider_type="mock", model="mock", working_directory=str(workdir))


@pytest.fixture
def write_script(tmp_path):
    """Factory for executable shell scripts standing in for a CLI agent."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def _write(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(0o755)
        return path

    return _write
