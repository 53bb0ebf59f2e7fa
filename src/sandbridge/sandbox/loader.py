"""
Executor factory and configuration validation.

validate_config() is the single place raw options become an
ExecutionConfig; every rejection is a ConfigError with a message naming
the offending value and the accepted ones. create_executor() only
constructs: backends import their heavy dependencies on construction,
so the orchestration tool calls it lazily on first use.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ValidationError

from sandbridge.core.models import ExecutionConfig, ExecutionMode, Language
from sandbridge.exceptions import ConfigError
from sandbridge.logging import get_logger
from sandbridge.sandbox.base import SandboxExecutor

logger = get_logger("sandbridge.sandbox.loader")

SUPPORTED_MODES: tuple[str, ...] = tuple(m.value for m in ExecutionMode)
SUPPORTED_LANGUAGES: tuple[str, ...] = tuple(lang.value for lang in Language)


def _quoted(values: tuple[str, ...]) -> str:
    return ", ".join(f"'{v}'" for v in values)


def parse_mode(value: Any) -> ExecutionMode:
    try:
        return ExecutionMode(value)
    except ValueError:
        raise ConfigError(
            f"Invalid execution mode: {value}. Supported modes: {_quoted(SUPPORTED_MODES)}",
            details={"mode": str(value)},
        ) from None


def parse_language(value: Any) -> Language:
    try:
        return Language(value)
    except ValueError:
        raise ConfigError(
            f"Invalid language: {value}. Supported languages: {_quoted(SUPPORTED_LANGUAGES)}",
            details={"language": str(value)},
        ) from None


def parse_timeout(value: Any) -> int | None:
    """Validate a timeout in milliseconds. None means "use the default"."""
    if value is None:
        return None
    if (
        isinstance(value, bool)
        or not isinstance(value, (int, float))
        or not math.isfinite(value)
        or value <= 0
    ):
        raise ConfigError(
            f"Invalid timeout: {value}. Timeout must be a positive number",
            details={"timeout_ms": repr(value)},
        )
    return max(1, math.ceil(value))


def parse_allowed_languages(value: Any) -> frozenset[Language]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple, set, frozenset)) or not value:
        raise ConfigError("Invalid allowed_languages: must be a non-empty list")
    invalid = [v for v in value if v not in SUPPORTED_LANGUAGES]
    if invalid:
        raise ConfigError(
            f"Invalid allowed_languages: {', '.join(map(str, invalid))}. "
            f"Supported languages: {_quoted(SUPPORTED_LANGUAGES)}",
            details={"invalid": [str(v) for v in invalid]},
        )
    return frozenset(Language(v) for v in value)


def validate_config(options: ExecutionConfig | Mapping[str, Any] | None = None) -> ExecutionConfig:
    """Validate raw options into an immutable ExecutionConfig.

    Raises:
        ConfigError: for any invalid option.
    """
    if isinstance(options, ExecutionConfig):
        return options
    if options is None:
        options = {}
    if not isinstance(options, Mapping):
        raise ConfigError(f"Invalid configuration: expected a mapping, got {type(options).__name__}")

    values = dict(options)
    if "timeout" in values:
        values.setdefault("timeout_ms", values.pop("timeout"))
    if "mode" in values:
        values["mode"] = parse_mode(values["mode"])
    if "language" in values:
        values["language"] = parse_language(values["language"])
    if "timeout_ms" in values:
        values["timeout_ms"] = parse_timeout(values["timeout_ms"])
    if "allowed_languages" in values:
        values["allowed_languages"] = parse_allowed_languages(values["allowed_languages"])

    try:
        return ExecutionConfig.model_validate(values)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from exc


def create_executor(config: ExecutionConfig) -> SandboxExecutor:
    """Construct the backend for config.mode.

    Raises:
        ConfigError: unknown mode.
        BackendUnavailableError: the backend's dependency is missing.
    """
    mode = parse_mode(config.mode)
    logger.debug("Creating executor", extra={"mode": mode.value})
    if mode == ExecutionMode.MICRO_VM:
        from sandbridge.sandbox.interpreter import InterpreterExecutor

        return InterpreterExecutor(config)
    if mode == ExecutionMode.CONTAINER:
        from sandbridge.sandbox.container import ContainerExecutor

        return ContainerExecutor(config)
    raise ConfigError(
        f"Invalid execution mode: {mode}. Supported modes: {_quoted(SUPPORTED_MODES)}"
    )


class BackendHealth(BaseModel):
    """Availability of one execution backend."""

    mode: ExecutionMode
    healthy: bool
    detail: str


def detect_backend_health(config: ExecutionConfig | None = None) -> dict[str, BackendHealth]:
    """Probe every backend without constructing executors."""
    from sandbridge.sandbox.container import ContainerExecutor
    from sandbridge.sandbox.interpreter import InterpreterExecutor

    config = config or ExecutionConfig()
    probes = {
        ExecutionMode.MICRO_VM: InterpreterExecutor.check_health(),
        ExecutionMode.CONTAINER: ContainerExecutor.check_health(config.container.docker_binary),
    }
    return {
        mode.value: BackendHealth(mode=mode, healthy=healthy, detail=detail)
        for mode, (healthy, detail) in probes.items()
    }
