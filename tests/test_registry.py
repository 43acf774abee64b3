"""Tests for ToolRegistry."""

import pytest

from chatrelay.core.errors import UnknownTool
from chatrelay.tools import builtin_tools
from chatrelay.tools.registry import ToolRegistry


def test_from_names_keeps_configured_order():
    registry = ToolRegistry.from_names(["Bash", "Read"])
    assert registry.names == ["Bash", "Read"]
    assert "Bash" in registry
    assert len(registry) == 2


def test_unknown_name_in_configuration():
    with pytest.raises(UnknownTool):
        ToolRegistry.from_names(["Read", "Teleport"])


def test_lookup_is_case_exact():
    registry = ToolRegistry.from_names(["Bash"])
    assert "bash" not in registry
    with pytest.raises(UnknownTool):
        registry.get("bash")


def test_duplicate_tools_rejected():
    tools = builtin_tools()
    with pytest.raises(ValueError):
        ToolRegistry(tools + tools[:1])


def test_definitions_subset():
    registry = ToolRegistry(builtin_tools())
    defs = registry.definitions(["Grep", "Unknown"])
    assert [d["name"] for d in defs] == ["Grep"]
    assert set(defs[0]) == {"name", "description", "input_schema"}
    assert len(registry.definitions()) == 6


def test_registry_is_read_only():
    registry = ToolRegistry.from_names(["Bash"])
    with pytest.raises(TypeError):
        registry._tools["Read"] = None
