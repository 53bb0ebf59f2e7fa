"""
Sandbridge Orchestration Tool

The single tool exposed to the host: ``tool_runner``. It accepts a
program that chains calls to the other registered tools, runs it in a
sandbox and returns one ExecutionResult.

Per call:
    Created -> Validated -> ExecutorReady -> Executing -> {Succeeded, Failed, TimedOut}

Configuration is validated once, when the runner is constructed, and a
bad config raises ConfigError. Everything that goes wrong afterwards is
reported inside the result envelope, never raised to the host.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel, Field

from sandbridge.bridge.bindings import create_bindings
from sandbridge.bridge.declarations import generate_declarations
from sandbridge.core.models import (
    DEFAULT_TIMEOUT_MS,
    ErrorKind,
    ExecutionConfig,
    ExecutionResult,
    Language,
)
from sandbridge.exceptions import (
    BackendUnavailableError,
    ConfigError,
    ExecutionTimeoutError,
    InputError,
    SandboxRuntimeError,
    SandbridgeError,
    SerializationError,
    ToolInvocationError,
)
from sandbridge.logging import get_logger
from sandbridge.observability.metrics import record_execution
from sandbridge.sandbox.base import SandboxExecutor
from sandbridge.sandbox.loader import create_executor, parse_timeout, validate_config
from sandbridge.tools.models import ToolAnnotations, ToolContext, ToolResult
from sandbridge.tools.registry import ToolDefinition, ToolRegistry, list_tools

logger = get_logger("sandbridge.runner")

TOOL_RUNNER_NAME = "tool_runner"

TOOL_RUNNER_DESCRIPTION = (
    "Execute a Python program in an isolated sandbox that orchestrates multiple tool calls "
    "in a single round trip. Every other registered tool is available inside the sandbox as "
    "a function named in camelCase (for example get_weather becomes getWeather) taking keyword "
    "arguments and returning a plain value. Use `return` (or a final expression) to produce "
    "the result. Output written with print() is captured. Tool failures raise RuntimeError "
    "inside the sandbox and can be caught."
)

ExecutorFactory = Callable[[ExecutionConfig], SandboxExecutor]

_ERROR_KINDS: tuple[tuple[type[SandbridgeError], ErrorKind], ...] = (
    (ConfigError, ErrorKind.INPUT),
    (InputError, ErrorKind.INPUT),
    (BackendUnavailableError, ErrorKind.BACKEND),
    (SerializationError, ErrorKind.SERIALIZATION),
    (ExecutionTimeoutError, ErrorKind.TIMEOUT),
    (ToolInvocationError, ErrorKind.TOOL),
    (SandboxRuntimeError, ErrorKind.RUNTIME),
)


class ToolRunnerParams(BaseModel):
    """Parameters of the orchestration tool."""

    code: str = Field(description="Python source to run. Use `return` to produce a value.")
    language: Language | None = Field(
        default=None,
        description="'python' or 'typed-python' (checked against the tool declarations).",
    )
    timeout: int | None = Field(
        default=None,
        gt=0,
        description="Per-call deadline in milliseconds; overrides the configured timeout.",
    )


def _error_kind(exc: SandbridgeError) -> ErrorKind:
    for exc_type, kind in _ERROR_KINDS:
        if isinstance(exc, exc_type):
            return kind
    return ErrorKind.RUNTIME


class ToolRunner:
    """Orchestration tool: runs sandboxed code with the host tools injected.

    The executor is created on the first call and reused afterwards;
    executors are safe for concurrent callers. Bindings and declarations
    are rebuilt from the registry on every call so newly registered tools
    show up immediately.
    """

    def __init__(
        self,
        config: ExecutionConfig | Mapping[str, Any] | None = None,
        registry: ToolRegistry | None = None,
        executor_factory: ExecutorFactory = create_executor,
    ):
        self.config = validate_config(config)
        self.registry = registry if registry is not None else ToolRegistry()
        self._executor_factory = executor_factory
        self._executor: SandboxExecutor | None = None
        self._executor_lock = asyncio.Lock()
        self.executors_created = 0

    async def _get_executor(self) -> SandboxExecutor:
        if self._executor is not None:
            return self._executor
        async with self._executor_lock:
            if self._executor is None:
                self._executor = self._executor_factory(self.config)
                self.executors_created += 1
                logger.info("Executor ready", extra={"mode": self.config.mode.value})
            return self._executor

    def _check_params(self, params: Any) -> tuple[str, Language, int]:
        """Per-call validation. Returns (code, language, effective timeout)."""
        if not isinstance(params, Mapping):
            raise InputError("Code parameter is required and must be a string")

        code = params.get("code")
        if not isinstance(code, str) or not code.strip():
            raise InputError("Code parameter is required and must be a string")

        allowed = sorted(lang.value for lang in self.config.allowed_languages)
        raw_language = params.get("language")
        if raw_language is None:
            raw_language = self.config.language.value
        try:
            language = Language(raw_language)
        except ValueError:
            language = None
        if language is None or language not in self.config.allowed_languages:
            raise InputError(
                f"Language '{getattr(raw_language, 'value', raw_language)}' is not allowed. "
                f"Allowed languages: {', '.join(allowed)}",
                details={"language": str(raw_language), "allowed": allowed},
            )

        try:
            timeout_ms = parse_timeout(params.get("timeout", params.get("timeout_ms")))
        except ConfigError as exc:
            raise InputError(str(exc)) from None

        effective = timeout_ms or self.config.timeout_ms or DEFAULT_TIMEOUT_MS
        return code, language, effective

    async def run(
        self,
        params: Mapping[str, Any],
        context: ToolContext | None = None,
    ) -> ExecutionResult:
        """Validate, execute and report one call. Never raises."""
        start = time.perf_counter()
        mode = self.config.mode.value
        language_label = str(params.get("language") if isinstance(params, Mapping) else None)

        try:
            code, language, timeout_ms = self._check_params(params)
            language_label = language.value
            logger.debug("Call validated", extra={"mode": mode, "language": language_label})

            executor = await self._get_executor()
            logger.debug("Executor ready for call", extra={"mode": mode})

            tools = list_tools(self.registry)
            bindings = create_bindings(tools, context)
            declarations = generate_declarations(tools)

            logger.debug(
                "Executing",
                extra={"mode": mode, "language": language_label, "timeout_ms": timeout_ms},
            )
            result = await executor.execute(
                code,
                bindings=bindings,
                declarations=declarations,
                timeout_ms=timeout_ms,
                capture_output=self.config.capture_output,
                language=language,
            )
        except SandbridgeError as exc:
            result = ExecutionResult.failure(str(exc), _error_kind(exc))
        except Exception as exc:
            logger.exception("Unexpected error in tool runner", extra={"mode": mode})
            result = ExecutionResult.failure(
                f"Internal error: {type(exc).__name__}: {exc}", ErrorKind.RUNTIME
            )

        if not result.execution_time_ms:
            result.execution_time_ms = round((time.perf_counter() - start) * 1000, 3)

        state = "Succeeded" if result.success else (
            "TimedOut" if result.error_kind == ErrorKind.TIMEOUT else "Failed"
        )
        logger.debug(
            "Call %s",
            state,
            extra={
                "mode": mode,
                "language": language_label,
                "duration_ms": result.execution_time_ms,
                "error_kind": result.error_kind.value if result.error_kind else None,
            },
        )
        record_execution(
            mode=mode,
            language=language_label,
            success=result.success,
            duration_seconds=result.execution_time_ms / 1000,
            error_kind=result.error_kind.value if result.error_kind else None,
        )
        return result

    async def handle(self, params: dict[str, Any], context: ToolContext | None = None) -> ToolResult:
        """Host handler: the result as one JSON text block."""
        result = await self.run(params, context)
        return ToolResult.text(json.dumps(result.to_payload()), is_error=not result.success)

    async def cleanup(self) -> None:
        """Release the cached executor. The next call creates a new one."""
        async with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            await executor.cleanup()

    def definition(self) -> ToolDefinition:
        """This runner as a registry entry."""
        metadata = get_tool_runner_metadata()
        return ToolDefinition(
            name=metadata["name"],
            description=metadata["description"],
            parameters=ToolRunnerParams,
            handler=self.handle,
            annotations=metadata["annotations"],
        )


def get_tool_runner_metadata() -> dict[str, Any]:
    """Name, description and annotations of the orchestration tool."""
    return {
        "name": TOOL_RUNNER_NAME,
        "description": TOOL_RUNNER_DESCRIPTION,
        "annotations": ToolAnnotations(
            destructive_hint=True,
            requires_confirmation=False,
            category="orchestration",
            estimated_duration="fast",
        ),
    }


def register_tool_runner(
    registry: ToolRegistry,
    config: ExecutionConfig | Mapping[str, Any] | None = None,
    executor_factory: ExecutorFactory = create_executor,
) -> ToolRunner:
    """Create a runner over registry and register it there.

    Raises:
        ConfigError: invalid config.
        ValueError: a tool named tool_runner is already registered.
    """
    runner = ToolRunner(config, registry, executor_factory)
    registry.register(runner.definition())
    return runner
