"""
Sandbridge Core Models

Pydantic models shared by the executors and the orchestration tool:
execution configuration and the normalized result envelope.
"""

from __future__ import annotations

import os
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ExecutionMode(str, Enum):
    """Isolation backend used to run sandboxed code."""
    MICRO_VM = "micro-vm"
    CONTAINER = "container"


class Language(str, Enum):
    """Languages accepted by the orchestration tool.

    TYPED_PYTHON is checked against the generated tool declarations
    before it runs.
    """
    PYTHON = "python"
    TYPED_PYTHON = "typed-python"


class ErrorKind(str, Enum):
    """Classification of a failed execution."""
    INPUT = "input"
    COMPILE = "compile"
    TYPE_CHECK = "type_check"
    RUNTIME = "runtime"
    SERIALIZATION = "serialization"
    TOOL = "tool"
    TIMEOUT = "timeout"
    MEMORY = "memory"
    BACKEND = "backend"


DEFAULT_TIMEOUT_MS = 30_000


class ContainerSettings(BaseModel):
    """Docker settings for the container backend."""
    model_config = ConfigDict(frozen=True)

    image: str = "python:3.12-slim"
    memory_limit_mb: int = Field(default=256, ge=16, le=16384)
    cpus: float | None = Field(default=None, gt=0.0)
    network_enabled: bool = False
    pids_limit: int = Field(default=100, ge=1)
    docker_binary: str = "docker"


class ExecutionConfig(BaseModel):
    """Validated configuration for one orchestration tool instance.

    Immutable once created. Build it through
    sandbridge.sandbox.loader.validate_config to get ConfigError
    messages instead of raw pydantic errors.
    """
    model_config = ConfigDict(frozen=True)

    mode: ExecutionMode = ExecutionMode.MICRO_VM
    language: Language = Language.TYPED_PYTHON
    timeout_ms: int | None = Field(default=None, gt=0)
    capture_output: bool = True
    allowed_languages: frozenset[Language] = frozenset(Language)
    memory_limit_mb: int = Field(default=128, ge=1)
    max_output_bytes: int = Field(default=10 * 1024 * 1024, ge=1024)
    max_concurrency: int = Field(default=4, ge=1, le=64)
    container: ContainerSettings = Field(default_factory=ContainerSettings)

    @property
    def effective_timeout_ms(self) -> int:
        return self.timeout_ms or DEFAULT_TIMEOUT_MS

    @classmethod
    def from_env(cls, **overrides: Any) -> ExecutionConfig:
        """Build a config from SANDBRIDGE_* environment variables.

        Recognized: SANDBRIDGE_MODE, SANDBRIDGE_LANGUAGE, SANDBRIDGE_TIMEOUT_MS,
        SANDBRIDGE_CAPTURE_OUTPUT, SANDBRIDGE_ALLOWED_LANGUAGES (comma separated),
        SANDBRIDGE_CONTAINER_IMAGE. Keyword overrides win over the environment.
        """
        from sandbridge.sandbox.loader import validate_config

        options: dict[str, Any] = {}
        if mode := os.environ.get("SANDBRIDGE_MODE"):
            options["mode"] = mode
        if language := os.environ.get("SANDBRIDGE_LANGUAGE"):
            options["language"] = language
        if timeout := os.environ.get("SANDBRIDGE_TIMEOUT_MS"):
            options["timeout_ms"] = int(timeout) if timeout.lstrip("-").isdigit() else timeout
        if capture := os.environ.get("SANDBRIDGE_CAPTURE_OUTPUT"):
            options["capture_output"] = capture.strip().lower() not in ("0", "false", "no", "off")
        if allowed := os.environ.get("SANDBRIDGE_ALLOWED_LANGUAGES"):
            options["allowed_languages"] = [p.strip() for p in allowed.split(",") if p.strip()]
        if image := os.environ.get("SANDBRIDGE_CONTAINER_IMAGE"):
            options["container"] = {"image": image}
        options.update(overrides)
        return validate_config(options)


class ExecutionResult(BaseModel):
    """Normalized outcome of one sandbox execution.

    Created fresh per call. success=True never carries error fields and
    a failure never carries a return value.
    """
    success: bool
    return_value: Any = None
    stdout: str | None = None
    stderr: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    stack_trace: str | None = None
    execution_time_ms: float = 0.0

    @model_validator(mode="after")
    def _check_outcome(self) -> ExecutionResult:
        if self.success:
            if self.error is not None or self.stack_trace is not None or self.error_kind is not None:
                raise ValueError("successful result cannot carry error details")
        else:
            if not self.error:
                raise ValueError("failed result requires an error message")
            if self.return_value is not None:
                raise ValueError("failed result cannot carry a return value")
        return self

    @classmethod
    def ok(
        cls,
        return_value: Any = None,
        *,
        stdout: str | None = None,
        stderr: str | None = None,
        execution_time_ms: float = 0.0,
    ) -> ExecutionResult:
        return cls(
            success=True,
            return_value=return_value,
            stdout=stdout,
            stderr=stderr,
            execution_time_ms=execution_time_ms,
        )

    @classmethod
    def failure(
        cls,
        error: str,
        kind: ErrorKind = ErrorKind.RUNTIME,
        *,
        stack_trace: str | None = None,
        stdout: str | None = None,
        stderr: str | None = None,
        execution_time_ms: float = 0.0,
    ) -> ExecutionResult:
        return cls(
            success=False,
            error=error,
            error_kind=kind,
            stack_trace=stack_trace,
            stdout=stdout,
            stderr=stderr,
            execution_time_ms=execution_time_ms,
        )

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict with absent fields omitted."""
        payload = self.model_dump(mode="json", exclude_none=True)
        if self.success and "return_value" not in payload:
            payload["return_value"] = None
        return payload
