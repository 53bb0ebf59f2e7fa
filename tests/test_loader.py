"""Tests for configuration validation and the executor factory."""

import pytest

from sandbridge.core.models import ExecutionConfig, ExecutionMode, Language
from sandbridge.exceptions import ConfigError
from sandbridge.sandbox.loader import (
    SUPPORTED_LANGUAGES,
    SUPPORTED_MODES,
    BackendHealth,
    create_executor,
    detect_backend_health,
    parse_timeout,
    validate_config,
)


class TestValidateConfig:
    def test_defaults(self):
        config = validate_config({})
        assert config == ExecutionConfig()
        assert validate_config(None) == ExecutionConfig()

    def test_passes_config_through(self):
        config = ExecutionConfig(timeout_ms=10)
        assert validate_config(config) is config

    def test_full_options(self):
        config = validate_config({
            "mode": "container",
            "language": "python",
            "timeout": 5000,
            "capture_output": False,
            "allowed_languages": ["python"],
        })
        assert config.mode == ExecutionMode.CONTAINER
        assert config.language == Language.PYTHON
        assert config.timeout_ms == 5000
        assert config.capture_output is False
        assert config.allowed_languages == frozenset({Language.PYTHON})

    def test_invalid_mode(self):
        with pytest.raises(ConfigError) as exc_info:
            validate_config({"mode": "wasm"})
        assert str(exc_info.value) == "Invalid execution mode: wasm. Supported modes: 'micro-vm', 'container'"

    @pytest.mark.parametrize("timeout", [-1000, 0, "fast", float("inf"), True])
    def test_invalid_timeout(self, timeout):
        with pytest.raises(ConfigError, match="Invalid timeout") as exc_info:
            validate_config({"timeout_ms": timeout})
        assert "Timeout must be a positive number" in str(exc_info.value)

    def test_fractional_timeout_rounded_up(self):
        assert validate_config({"timeout_ms": 0.5}).timeout_ms == 1

    def test_invalid_language(self):
        with pytest.raises(ConfigError, match="Invalid language: ruby"):
            validate_config({"language": "ruby"})

    def test_allowed_languages_must_be_non_empty_list(self):
        for value in ([], "python", None, 3):
            with pytest.raises(ConfigError, match="must be a non-empty list"):
                validate_config({"allowed_languages": value})

    def test_allowed_languages_entries_checked(self):
        with pytest.raises(ConfigError, match="Invalid allowed_languages: ruby"):
            validate_config({"allowed_languages": ["python", "ruby"]})

    def test_other_field_errors_wrapped(self):
        with pytest.raises(ConfigError, match="max_concurrency"):
            validate_config({"max_concurrency": 0})

    def test_not_a_mapping(self):
        with pytest.raises(ConfigError):
            validate_config(["micro-vm"])  # type: ignore[arg-type]

    def test_supported_values(self):
        assert SUPPORTED_MODES == ("micro-vm", "container")
        assert SUPPORTED_LANGUAGES == ("python", "typed-python")


class TestParseTimeout:
    def test_none_means_default(self):
        assert parse_timeout(None) is None

    def test_positive_int(self):
        assert parse_timeout(250) == 250


class TestCreateExecutor:
    def test_container_mode(self):
        from sandbridge.sandbox.container import ContainerExecutor

        executor = create_executor(ExecutionConfig(mode=ExecutionMode.CONTAINER))
        assert isinstance(executor, ContainerExecutor)
        assert executor.name == "container"

    def test_micro_vm_mode(self):
        pytest.importorskip("pydantic_monty")
        from sandbridge.sandbox.interpreter import InterpreterExecutor

        executor = create_executor(ExecutionConfig())
        assert isinstance(executor, InterpreterExecutor)
        assert executor.name == "micro-vm"

    def test_does_not_run_anything(self, monkeypatch):
        """Construction alone must not touch docker."""
        import asyncio

        def fail(*args, **kwargs):
            raise AssertionError("subprocess started during construction")

        monkeypatch.setattr(asyncio, "create_subprocess_exec", fail)
        create_executor(ExecutionConfig(mode=ExecutionMode.CONTAINER))


class TestDetectBackendHealth:
    def test_reports_both_backends(self, monkeypatch):
        from sandbridge.sandbox.container import ContainerExecutor
        from sandbridge.sandbox.interpreter import InterpreterExecutor

        monkeypatch.setattr(InterpreterExecutor, "check_health", staticmethod(lambda: (True, "ok")))
        monkeypatch.setattr(
            ContainerExecutor, "check_health", staticmethod(lambda binary="docker": (False, "docker CLI not found"))
        )
        health = detect_backend_health()
        assert set(health) == {"micro-vm", "container"}
        assert health["micro-vm"] == BackendHealth(mode=ExecutionMode.MICRO_VM, healthy=True, detail="ok")
        assert health["container"].healthy is False
        assert health["container"].detail == "docker CLI not found"
