"""Sandbridge sandbox backends: micro-vm interpreter and container."""

from sandbridge.sandbox.base import OutputBuffer, SandboxExecutor, prepare_source
from sandbridge.sandbox.loader import (
    SUPPORTED_LANGUAGES,
    SUPPORTED_MODES,
    BackendHealth,
    create_executor,
    detect_backend_health,
    validate_config,
)

__all__ = [
    "SUPPORTED_LANGUAGES",
    "SUPPORTED_MODES",
    "BackendHealth",
    "OutputBuffer",
    "SandboxExecutor",
    "create_executor",
    "detect_backend_health",
    "prepare_source",
    "validate_config",
]
