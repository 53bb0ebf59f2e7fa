"""
Sandbridge — sandboxed code execution with host tool orchestration

Usage:
    from sandbridge import ToolRegistry, ToolDefinition, register_tool_runner

    registry = ToolRegistry()
    registry.register(ToolDefinition("get_weather", "Current weather", WeatherParams, get_weather))
    runner = register_tool_runner(registry, {"mode": "micro-vm", "timeout": 5000})

    result = await runner.run({
        "language": "python",
        "code": "a = getWeather(city='Oslo')\nb = getWeather(city='Rome')\nreturn [a, b]",
    })
"""

__version__ = "0.3.0"

from sandbridge.bridge import create_bindings, generate_declarations
from sandbridge.core.models import (
    ContainerSettings,
    ErrorKind,
    ExecutionConfig,
    ExecutionMode,
    ExecutionResult,
    Language,
)
from sandbridge.exceptions import (
    BackendUnavailableError,
    ConfigError,
    InputError,
    SandbridgeError,
    SerializationError,
    ToolInvocationError,
    ToolValidationError,
)
from sandbridge.runner import (
    TOOL_RUNNER_NAME,
    ToolRunner,
    get_tool_runner_metadata,
    register_tool_runner,
)
from sandbridge.sandbox.loader import create_executor, detect_backend_health, validate_config
from sandbridge.tools import (
    ContentBlock,
    ToolAnnotations,
    ToolContext,
    ToolDefinition,
    ToolRegistry,
    ToolResult,
    list_tools,
)

__all__ = [
    "TOOL_RUNNER_NAME",
    "BackendUnavailableError",
    "ConfigError",
    "ContainerSettings",
    "ContentBlock",
    "ErrorKind",
    "ExecutionConfig",
    "ExecutionMode",
    "ExecutionResult",
    "InputError",
    "Language",
    "SandbridgeError",
    "SerializationError",
    "ToolAnnotations",
    "ToolContext",
    "ToolDefinition",
    "ToolInvocationError",
    "ToolRegistry",
    "ToolResult",
    "ToolRunner",
    "ToolValidationError",
    "create_bindings",
    "create_executor",
    "detect_backend_health",
    "generate_declarations",
    "get_tool_runner_metadata",
    "list_tools",
    "register_tool_runner",
    "validate_config",
]
