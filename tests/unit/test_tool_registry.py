"""Tests for tool registration and lookup."""

import pytest

from taskrelay.domain.errors import ConflictError, UnknownToolError
from taskrelay.domain.tool.tool_registry import ToolRegistry, ToolSpec


async def _noop(arguments, context):
    return {}


class TestToolRegistry:
    """Registration, resolution and discovery"""

    def test_register_and_resolve(self):
        registry = ToolRegistry()
        spec = ToolSpec(id="search", name="Search", description="Find documents")

        registry.register_tool(spec, _noop)

        resolved = registry.resolve("search")
        assert resolved.spec is spec
        assert resolved.handler is _noop
        assert "search" in registry
        assert len(registry) == 1

    def test_duplicate_registration_conflicts(self):
        registry = ToolRegistry()
        registry.register_tool(ToolSpec(id="search", name="Search"), _noop)

        with pytest.raises(ConflictError):
            registry.register_tool(ToolSpec(id="search", name="Search again"), _noop)

    def test_unknown_tool(self):
        registry = ToolRegistry()

        with pytest.raises(UnknownToolError) as exc_info:
            registry.resolve("missing")

        assert exc_info.value.code == "unknown_tool"
        assert exc_info.value.data == {"tool_id": "missing"}
        assert registry.get_tool_info("missing") is None

    def test_decorator_uses_docstring_as_description(self):
        registry = ToolRegistry()

        @registry.tool("weather", category="info", requires_approval=False)
        async def weather(arguments, context):
            """Current weather for a city"""
            return {"temp": 20}

        spec = registry.get_tool_info("weather")
        assert spec.name == "weather"
        assert spec.description == "Current weather for a city"
        assert spec.requires_approval is False
        assert spec.cancellable is False

    def test_categories_and_search(self):
        registry = ToolRegistry()
        registry.register_tool(ToolSpec(id="a", name="File reader", category="files"), _noop)
        registry.register_tool(ToolSpec(id="b", name="File writer", category="files"), _noop)
        registry.register_tool(ToolSpec(id="c", name="Clock", description="Tells the time"), _noop)

        assert [spec.id for spec in registry.get_tools_by_category("files")] == ["a", "b"]
        assert [spec.id for spec in registry.search_tools("file")] == ["a", "b"]
        assert [spec.id for spec in registry.search_tools("TIME")] == ["c"]
        assert len(registry.get_available_tools()) == 3

    def test_unregister(self):
        registry = ToolRegistry()
        registry.register_tool(ToolSpec(id="a", name="A", category="files"), _noop)

        registry.unregister_tool("a")

        assert "a" not in registry
        assert registry.get_tools_by_category("files") == []
        with pytest.raises(UnknownToolError):
            registry.unregister_tool("a")
