"""
Sandbridge Tool Table

Host tools that sandboxed code can reach through generated bindings:

- ToolDefinition: name + description + pydantic parameter model + handler
- ToolRegistry: the host's live tool table
- list_tools: read-only view that drops code-execution tools
- ToolResult / ContentBlock: structured result convention
- ToolContext: per-request context handed to handlers
"""

from sandbridge.tools.models import ContentBlock, ToolAnnotations, ToolContext, ToolResult
from sandbridge.tools.registry import (
    EXCLUDED_TOOL_NAMES,
    ToolDefinition,
    ToolRegistry,
    is_excluded,
    list_tools,
)

__all__ = [
    "EXCLUDED_TOOL_NAMES",
    "ContentBlock",
    "ToolAnnotations",
    "ToolContext",
    "ToolDefinition",
    "ToolRegistry",
    "ToolResult",
    "is_excluded",
    "list_tools",
]
