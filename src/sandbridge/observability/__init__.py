"""Sandbridge observability: OpenTelemetry metrics (optional)."""

from sandbridge.observability.metrics import record_execution, record_tool_call

__all__ = ["record_execution", "record_tool_call"]
