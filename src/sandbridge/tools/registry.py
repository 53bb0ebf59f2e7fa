"""
Sandbridge Tool Registry

Central table of host tools. Each tool pairs a machine name, a
description, a pydantic parameter model and an invocation handler.

list_tools() is the read-only view the sandbox engine consumes: it is
re-read on every execution and drops the code-execution tools so that
sandboxed code can never start another sandbox.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel

from sandbridge.tools.models import ToolAnnotations, ToolContext

ToolHandler = Callable[[dict[str, Any], ToolContext], Any] | Callable[[dict[str, Any], ToolContext], Awaitable[Any]]

# Never injected into a sandbox: the orchestration tool and any other
# code-execution tool.
EXCLUDED_TOOL_NAMES = frozenset({"tool_runner", "execute-code", "execute_code"})


class ToolDefinition:
    """A host tool: name, description, parameter model and handler.

    The handler is called as handler(params, context) where params is
    the validated argument dict. It may be sync or async.
    """

    def __init__(
        self,
        name: str,
        description: str,
        parameters: type[BaseModel],
        handler: ToolHandler,
        annotations: ToolAnnotations | None = None,
    ):
        self.name = name
        self.description = description
        self.parameters = parameters
        self.handler = handler
        self.annotations = annotations or ToolAnnotations()

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.parameters.model_json_schema()

    def __repr__(self) -> str:
        return f"ToolDefinition(name={self.name!r})"


class ToolRegistry:
    """The host's live tool table.

    Tools may be registered or removed at any time; consumers must
    re-read the table instead of caching it.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        """Register a tool.

        Raises ValueError if a tool with the same name already exists.
        """
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> ToolDefinition | None:
        """Remove a tool by name, returning it if it was registered."""
        return self._tools.pop(name, None)

    def get(self, name: str) -> ToolDefinition | None:
        """Look up a registered tool by name."""
        return self._tools.get(name)

    def get_all(self) -> list[ToolDefinition]:
        """Return all registered tools in registration order."""
        return list(self._tools.values())

    def get_schemas(self, tools: list[ToolDefinition] | None = None) -> list[dict]:
        """Get name/description/input_schema dicts for a set of tools.

        If tools is None, returns schemas for all registered tools.
        """
        source = tools if tools is not None else list(self._tools.values())
        return [
            {
                "name": t.name,
                "description": t.description,
                "input_schema": t.input_schema,
            }
            for t in source
        ]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


def is_excluded(name: str) -> bool:
    """True if the tool must never be injected into a sandbox."""
    return name in EXCLUDED_TOOL_NAMES


def list_tools(
    registry: ToolRegistry,
    exclude_code_execution: bool = True,
) -> list[ToolDefinition]:
    """Snapshot of the tools available for injection.

    Exclusion is by exact name. Pass exclude_code_execution=False only
    in tests.
    """
    tools = registry.get_all()
    if not exclude_code_execution:
        return tools
    return [t for t in tools if not is_excluded(t.name)]
