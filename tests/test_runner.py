"""Tests for the orchestration tool (tool_runner) with an in-process executor."""

import asyncio
import json

import pytest

from conftest import EmptyParams, FakeExecutor, make_tool
from sandbridge.core.models import ErrorKind, Language
from sandbridge.exceptions import BackendUnavailableError, ConfigError
from sandbridge.runner import (
    TOOL_RUNNER_NAME,
    ToolRunner,
    get_tool_runner_metadata,
    register_tool_runner,
)
from sandbridge.tools.registry import ToolRegistry


class TestConstruction:
    def test_invalid_mode_is_fatal(self):
        with pytest.raises(ConfigError, match="Invalid execution mode"):
            ToolRunner({"mode": "wasm", "timeout": 5000})

    def test_invalid_timeout_is_fatal(self):
        with pytest.raises(ConfigError, match="Invalid timeout"):
            ToolRunner({"timeout": -1000})

    def test_executor_not_created_eagerly(self, fake_factory):
        ToolRunner({}, ToolRegistry(), fake_factory)
        assert fake_factory.created == []


class TestPerCallValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("params", [
        {"language": "python"},
        {"language": "python", "code": ""},
        {"language": "python", "code": "   \n"},
        {"language": "python", "code": 42},
        {"language": "python", "code": None},
    ])
    async def test_code_required(self, fake_factory, params):
        runner = ToolRunner({}, ToolRegistry(), fake_factory)
        result = await runner.run(params)
        assert result.success is False
        assert result.error == "Code parameter is required and must be a string"
        assert result.error_kind == ErrorKind.INPUT
        assert fake_factory.created == []

    @pytest.mark.asyncio
    async def test_disallowed_language(self, fake_factory):
        runner = ToolRunner({"allowed_languages": ["typed-python"]}, ToolRegistry(), fake_factory)
        result = await runner.run({"language": "python", "code": "return 1"})
        assert result.success is False
        assert "Language 'python' is not allowed" in result.error
        assert "Allowed languages: typed-python" in result.error

    @pytest.mark.asyncio
    async def test_unknown_language(self, fake_factory):
        runner = ToolRunner({}, ToolRegistry(), fake_factory)
        result = await runner.run({"language": "javascript", "code": "return 1"})
        assert result.success is False
        assert "Language 'javascript' is not allowed" in result.error

    @pytest.mark.asyncio
    async def test_allowed_language(self, fake_factory):
        runner = ToolRunner({"allowed_languages": ["python"]}, ToolRegistry(), fake_factory)
        result = await runner.run({"language": "python", "code": "return 42"})
        assert result.success is True
        assert result.return_value == 42
        assert result.error is None

    @pytest.mark.asyncio
    async def test_language_defaults_to_config(self, fake_factory):
        runner = ToolRunner({"language": "python"}, ToolRegistry(), fake_factory)
        await runner.run({"code": "return 1"})
        assert fake_factory.created[0].calls[0]["language"] == Language.PYTHON

    @pytest.mark.asyncio
    async def test_invalid_call_timeout(self, fake_factory):
        runner = ToolRunner({}, ToolRegistry(), fake_factory)
        result = await runner.run({"language": "python", "code": "return 1", "timeout": -5})
        assert result.success is False
        assert "Invalid timeout" in result.error
        assert result.error_kind == ErrorKind.INPUT

    @pytest.mark.asyncio
    async def test_not_a_mapping(self, fake_factory):
        runner = ToolRunner({}, ToolRegistry(), fake_factory)
        result = await runner.run("return 1")  # type: ignore[arg-type]
        assert result.success is False


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_param_overrides_config(self, fake_factory):
        runner = ToolRunner({"timeout": 5000}, ToolRegistry(), fake_factory)
        await runner.run({"language": "python", "code": "return 1", "timeout": 100})
        assert fake_factory.created[0].calls[0]["timeout_ms"] == 100

    @pytest.mark.asyncio
    async def test_config_used_without_param(self, fake_factory):
        runner = ToolRunner({"timeout": 700}, ToolRegistry(), fake_factory)
        await runner.run({"language": "python", "code": "return 1"})
        assert fake_factory.created[0].calls[0]["timeout_ms"] == 700

    @pytest.mark.asyncio
    async def test_default_timeout(self, fake_factory):
        runner = ToolRunner({}, ToolRegistry(), fake_factory)
        await runner.run({"language": "python", "code": "return 1"})
        assert fake_factory.created[0].calls[0]["timeout_ms"] == 30_000


class TestExecutorLifecycle:
    @pytest.mark.asyncio
    async def test_executor_created_once(self, fake_factory):
        runner = ToolRunner({}, ToolRegistry(), fake_factory)
        for _ in range(3):
            await runner.run({"language": "python", "code": "return 1"})
        assert runner.executors_created == 1
        assert len(fake_factory.created[0].calls) == 3

    @pytest.mark.asyncio
    async def test_concurrent_first_calls_share_executor(self, fake_factory):
        runner = ToolRunner({}, ToolRegistry(), fake_factory)
        results = await asyncio.gather(*(
            runner.run({"language": "python", "code": f"return {i}"}) for i in range(5)
        ))
        assert all(r.success for r in results)
        assert runner.executors_created == 1

    @pytest.mark.asyncio
    async def test_construction_failure_reported_and_retried(self, fake_factory):
        attempts = []

        def factory(config):
            attempts.append(config)
            if len(attempts) == 1:
                raise BackendUnavailableError("micro-vm", "pydantic-monty package is not installed.")
            return fake_factory(config)

        runner = ToolRunner({}, ToolRegistry(), factory)
        first = await runner.run({"language": "python", "code": "return 1"})
        assert first.success is False
        assert first.error_kind == ErrorKind.BACKEND
        assert "pydantic-monty" in first.error

        second = await runner.run({"language": "python", "code": "return 1"})
        assert second.success is True
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_cleanup_releases_executor(self, fake_factory):
        runner = ToolRunner({}, ToolRegistry(), fake_factory)
        await runner.run({"language": "python", "code": "return 1"})
        await runner.cleanup()
        assert fake_factory.created[0].cleaned_up is True

        await runner.run({"language": "python", "code": "return 1"})
        assert runner.executors_created == 2

    @pytest.mark.asyncio
    async def test_unexpected_executor_error_captured(self):
        class Exploding:
            name = "exploding"

            async def execute(self, code, **kwargs):
                raise KeyError("internal")

            async def cleanup(self):
                pass

        runner = ToolRunner({}, ToolRegistry(), lambda config: Exploding())
        result = await runner.run({"language": "python", "code": "return 1"})
        assert result.success is False
        assert "KeyError" in result.error
        assert result.execution_time_ms > 0


class TestToolInjection:
    @pytest.mark.asyncio
    async def test_bindings_and_declarations_from_registry(self, registry, fake_factory):
        runner = register_tool_runner(registry, {}, fake_factory)
        await runner.run({"language": "python", "code": "return 1"})
        call = fake_factory.created[0].calls[0]
        assert call["bindings"].names == ["addNumbers", "brokenTool", "getWeather"]
        assert "def getWeather(" in call["declarations"]
        assert "toolRunner" not in call["declarations"]

    @pytest.mark.asyncio
    async def test_registry_reread_every_call(self, registry, fake_factory):
        runner = ToolRunner({}, registry, fake_factory)
        await runner.run({"language": "python", "code": "return 1"})
        registry.register(make_tool("late_tool", lambda p, c: "late", EmptyParams))
        await runner.run({"language": "python", "code": "return 1"})
        first, second = fake_factory.created[0].calls
        assert "lateTool" not in first["bindings"]
        assert "lateTool" in second["bindings"]

    @pytest.mark.asyncio
    async def test_chained_tool_calls(self, registry, context):
        async def script(bindings):
            weather = await bindings.getWeather(city="Oslo")
            total = await bindings.addNumbers(a=weather["temp"], b=1)
            return {"city": weather["city"], "total": total}

        runner = ToolRunner({}, registry, lambda config: FakeExecutor(config, script))
        result = await runner.run({"language": "python", "code": "..."}, context)
        assert result.success is True
        assert result.return_value == {"city": "Oslo", "total": 22}

    @pytest.mark.asyncio
    async def test_capture_output_passed(self, fake_factory):
        runner = ToolRunner({"capture_output": False}, ToolRegistry(), fake_factory)
        await runner.run({"language": "python", "code": "return 1"})
        assert fake_factory.created[0].calls[0]["capture_output"] is False


class TestHandle:
    @pytest.mark.asyncio
    async def test_success_envelope(self, fake_factory):
        runner = ToolRunner({}, ToolRegistry(), fake_factory)
        tool_result = await runner.handle({"language": "python", "code": "return 42"})
        assert tool_result.is_error is False
        assert len(tool_result.content) == 1
        payload = json.loads(tool_result.content[0].text)
        assert payload["success"] is True
        assert payload["return_value"] == 42
        assert "error" not in payload

    @pytest.mark.asyncio
    async def test_failure_envelope(self, fake_factory):
        runner = ToolRunner({}, ToolRegistry(), fake_factory)
        tool_result = await runner.handle({"language": "python"})
        assert tool_result.is_error is True
        payload = json.loads(tool_result.content[0].text)
        assert payload["success"] is False
        assert "Code parameter is required" in payload["error"]
        assert "return_value" not in payload


class TestMetadata:
    def test_metadata(self):
        metadata = get_tool_runner_metadata()
        assert metadata["name"] == TOOL_RUNNER_NAME == "tool_runner"
        assert "isolated sandbox" in metadata["description"]
        assert "orchestrates multiple tool calls" in metadata["description"]
        annotations = metadata["annotations"]
        assert annotations.destructive_hint is True
        assert annotations.requires_confirmation is False
        assert annotations.category == "orchestration"
        assert annotations.estimated_duration == "fast"

    def test_register_tool_runner(self, fake_factory):
        registry = ToolRegistry()
        runner = register_tool_runner(registry, {"timeout": 1000}, fake_factory)
        tool = registry.get("tool_runner")
        assert tool is not None
        assert tool.handler == runner.handle
        assert tool.input_schema["required"] == ["code"]
        assert runner.config.timeout_ms == 1000

    def test_register_twice_rejected(self, fake_factory):
        registry = ToolRegistry()
        register_tool_runner(registry, {}, fake_factory)
        with pytest.raises(ValueError):
            register_tool_runner(registry, {}, fake_factory)

    @pytest.mark.asyncio
    async def test_registered_runner_never_injected(self, fake_factory):
        registry = ToolRegistry()
        runner = register_tool_runner(registry, {}, fake_factory)
        await runner.run({"language": "python", "code": "return 1"})
        assert len(fake_factory.created[0].calls[0]["bindings"]) == 0
        assert fake_factory.created[0].calls[0]["declarations"] == ""
