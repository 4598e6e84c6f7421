from typing import Dict, List, Any, Optional, Callable, Awaitable
from dataclasses import dataclass

from pydantic import BaseModel, Field

from taskrelay.domain.errors import ConflictError, UnknownToolError


class ToolSpec(BaseModel):
    """Closed, versioned description of a tool"""
    id: str = Field(description="Unique tool identifier")
    name: str = Field(description="Human readable name")
    description: str = ""
    category: str = "general"
    version: int = Field(default=1, ge=1)
    parameters_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object"},
        description="JSON Schema for the arguments payload"
    )
    result_schema: Optional[Dict[str, Any]] = Field(
        None, description="JSON Schema for the success payload"
    )
    cancellable: bool = Field(default=False, description="Handler observes the cancellation signal")
    requires_approval: bool = True
    timeout: Optional[float] = Field(None, gt=0, description="Execution deadline in seconds")


ToolHandler = Callable[[Dict[str, Any], Any], Awaitable[Any]]


@dataclass(frozen=True)
class RegisteredTool:
    """A spec bound to the handler that implements it"""
    spec: ToolSpec
    handler: ToolHandler


class ToolRegistry:
    """Registry mapping tool ids to handlers. Pure lookup, no execution."""

    def __init__(self):
        self.tools: Dict[str, RegisteredTool] = {}
        self.tool_categories: Dict[str, List[str]] = {}

    def register_tool(self, spec: ToolSpec, handler: ToolHandler) -> RegisteredTool:
        """Register a new tool"""

        if spec.id in self.tools:
            raise ConflictError(f"Tool already registered: {spec.id}", {"tool_id": spec.id})

        registered = RegisteredTool(spec=spec, handler=handler)
        self.tools[spec.id] = registered
        self.tool_categories.setdefault(spec.category, []).append(spec.id)
        return registered

    def tool(self, tool_id: str, name: Optional[str] = None, **spec_fields: Any):
        """Decorator form of ``register_tool``"""

        def decorator(handler: ToolHandler) -> ToolHandler:
            spec = ToolSpec(
                id=tool_id,
                name=name or tool_id,
                description=spec_fields.pop("description", (handler.__doc__ or "").strip()),
                **spec_fields
            )
            self.register_tool(spec, handler)
            return handler

        return decorator

    def unregister_tool(self, tool_id: str) -> None:
        """Remove a tool"""

        registered = self.tools.pop(tool_id, None)
        if registered is None:
            raise UnknownToolError(tool_id)
        category_ids = self.tool_categories.get(registered.spec.category, [])
        if tool_id in category_ids:
            category_ids.remove(tool_id)

    def resolve(self, tool_id: str) -> RegisteredTool:
        """Resolve a tool id to its handler, raising UnknownToolError"""

        registered = self.tools.get(tool_id)
        if registered is None:
            raise UnknownToolError(tool_id)
        return registered

    def get_tool_info(self, tool_id: str) -> Optional[ToolSpec]:
        """Get the spec of a specific tool"""

        registered = self.tools.get(tool_id)
        return registered.spec if registered else None

    def get_available_tools(self) -> List[ToolSpec]:
        """Get all available tools"""

        return [registered.spec for registered in self.tools.values()]

    def get_tools_by_category(self, category: str) -> List[ToolSpec]:
        """Get tools by category"""

        tool_ids = self.tool_categories.get(category, [])
        return [self.tools[tool_id].spec for tool_id in tool_ids if tool_id in self.tools]

    def search_tools(self, query: str) -> List[ToolSpec]:
        """Search tools by name or description"""

        query_lower = query.lower()
        matching_tools = []

        for registered in self.tools.values():
            name = registered.spec.name.lower()
            description = registered.spec.description.lower()

            if query_lower in name or query_lower in description:
                matching_tools.append(registered.spec)

        return matching_tools

    def __contains__(self, tool_id: object) -> bool:
        return tool_id in self.tools

    def __len__(self) -> int:
        return len(self.tools)
