"""
Sandbridge Custom Exceptions

Structured exception hierarchy for the sandbox engine.
All sandbridge-specific exceptions inherit from SandbridgeError.

Exception hierarchy:
    SandbridgeError
    +-- ConfigError                 (invalid mode/timeout/language, fatal at construction)
    +-- InputError                  (invalid per-call parameters)
    +-- BackendUnavailableError     (interpreter package or docker missing)
    +-- SandboxRuntimeError         (sandboxed code raised or failed to compile)
    +-- SerializationError          (value cannot cross the trust boundary)
    +-- ExecutionTimeoutError       (deadline exceeded)
    +-- ToolInvocationError         (bridged tool call failed)
        +-- ToolValidationError     (arguments rejected by the tool schema)
"""

from __future__ import annotations


class SandbridgeError(Exception):
    """Base exception for all sandbridge errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ConfigError(SandbridgeError):
    """Raised when an execution config is invalid.

    Represents a deployment mistake: the tool instance must not be created.
    """

    pass


class InputError(SandbridgeError):
    """Raised when per-call parameters are missing or not allowed."""

    pass


class BackendUnavailableError(SandbridgeError):
    """Raised when an isolation backend cannot be loaded or reached."""

    def __init__(self, backend: str, message: str, details: dict | None = None):
        super().__init__(message, details={"backend": backend, **(details or {})})
        self.backend = backend


class SandboxRuntimeError(SandbridgeError):
    """Raised when sandboxed code fails. Carries the sandbox-side traceback."""

    def __init__(self, message: str, stack_trace: str | None = None, details: dict | None = None):
        super().__init__(message, details=details)
        self.stack_trace = stack_trace


class SerializationError(SandbridgeError):
    """Raised when a value cannot round-trip through JSON."""

    pass


class ExecutionTimeoutError(SandbridgeError):
    """Raised when an execution exceeds its deadline."""

    def __init__(self, timeout_ms: int, details: dict | None = None):
        super().__init__(
            f"Execution timed out after {timeout_ms}ms",
            details={"timeout_ms": timeout_ms, **(details or {})},
        )
        self.timeout_ms = timeout_ms


class ToolInvocationError(SandbridgeError):
    """Raised when a bridged tool call fails.

    The message is prefixed with the tool's registry name and keeps
    the original message intact.
    """

    def __init__(self, tool_name: str, message: str, details: dict | None = None):
        super().__init__(
            f"Tool '{tool_name}' failed: {message}",
            details={"tool_name": tool_name, **(details or {})},
        )
        self.tool_name = tool_name
        self.original_message = message


class ToolValidationError(ToolInvocationError):
    """Raised when arguments do not match the tool's parameter schema."""

    def __init__(self, tool_name: str, errors: list[str], details: dict | None = None):
        super().__init__(
            tool_name,
            "invalid parameters: " + "; ".join(errors),
            details={"errors": errors, **(details or {})},
        )
        self.errors = errors
