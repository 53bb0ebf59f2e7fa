"""OpenTelemetry metrics for sandbridge.

Counters and histograms for sandbox executions and bridged tool calls.
All functions are no-ops if opentelemetry is not installed or not configured.
"""

from __future__ import annotations

from sandbridge import __version__

_meter = None
_executions_total = None
_execution_duration = None
_tool_calls_total = None
_initialized = False


def _ensure_meter() -> bool:
    """Lazily initialize the meter and instruments."""
    global _meter, _executions_total, _execution_duration, _tool_calls_total, _initialized

    if _initialized:
        return _meter is not None

    _initialized = True

    try:
        from opentelemetry import metrics

        _meter = metrics.get_meter("sandbridge", __version__)

        _executions_total = _meter.create_counter(
            "sandbridge.executions.total",
            description="Total sandbox executions",
            unit="1",
        )
        _execution_duration = _meter.create_histogram(
            "sandbridge.execution.duration_seconds",
            description="Sandbox execution duration in seconds",
            unit="s",
        )
        _tool_calls_total = _meter.create_counter(
            "sandbridge.tool_calls.total",
            description="Total tool calls issued from sandboxed code",
            unit="1",
        )
        return True
    except ImportError:
        return False


def record_execution(
    *,
    mode: str,
    language: str,
    success: bool,
    duration_seconds: float,
    error_kind: str | None = None,
) -> None:
    """Record a finished sandbox execution."""
    if not _ensure_meter() or _executions_total is None or _execution_duration is None:
        return
    attributes = {
        "sandbridge.mode": mode,
        "sandbridge.language": language,
        "sandbridge.success": str(success),
        "sandbridge.error_kind": error_kind or "none",
    }
    _executions_total.add(1, attributes)
    _execution_duration.record(duration_seconds, {"sandbridge.mode": mode})


def record_tool_call(*, tool_name: str, success: bool) -> None:
    """Record a tool call made through a binding."""
    if not _ensure_meter() or _tool_calls_total is None:
        return
    _tool_calls_total.add(
        1,
        {"sandbridge.tool_name": tool_name, "sandbridge.success": str(success)},
    )
