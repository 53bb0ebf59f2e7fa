"""
Sandbridge Tool Models

Pydantic models for the host's tool convention: structured tool results
made of typed content blocks, the call context handed to handlers and
the descriptive annotations attached to a tool.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

from pydantic import BaseModel, Field


class ContentBlock(BaseModel):
    """One typed block of a structured tool result."""
    type: str = "text"
    text: str | None = None
    data: str | None = None
    mime_type: str | None = None
    uri: str | None = None


class ToolResult(BaseModel):
    """Structured result returned by host tool handlers."""
    content: list[ContentBlock] = Field(default_factory=list)
    is_error: bool = False

    @classmethod
    def text(cls, text: str, is_error: bool = False) -> ToolResult:
        return cls(content=[ContentBlock(type="text", text=text)], is_error=is_error)

    @classmethod
    def json(cls, value: Any, is_error: bool = False) -> ToolResult:
        return cls.text(json.dumps(value), is_error=is_error)


class ToolContext(BaseModel):
    """Per-request context the host hands to tool handlers.

    Never exposed to sandboxed code; bindings only pass it through
    to the handler they wrap.
    """
    request_id: str = Field(default_factory=lambda: f"req-{uuid.uuid4().hex[:8]}")
    session_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ToolAnnotations(BaseModel):
    """Descriptive hints published alongside a tool definition."""
    destructive_hint: bool = False
    requires_confirmation: bool = False
    category: str = "general"
    estimated_duration: str = "fast"
