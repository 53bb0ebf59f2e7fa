"""Shared test fixtures for the sandbridge test suite."""

from __future__ import annotations

import shutil
import subprocess
from typing import Any

import pytest
from pydantic import BaseModel, Field

from sandbridge.core.models import ExecutionConfig, ExecutionResult, Language
from sandbridge.tools.models import ToolContext, ToolResult
from sandbridge.tools.registry import ToolDefinition, ToolRegistry


class WeatherParams(BaseModel):
    city: str = Field(description="City name")
    units: str = "metric"


class AddParams(BaseModel):
    a: float
    b: float


class EmptyParams(BaseModel):
    pass


def get_weather(params: dict[str, Any], context: ToolContext | None) -> ToolResult:
    return ToolResult.json({"city": params["city"], "temp": 21, "units": params["units"]})


async def add_numbers(params: dict[str, Any], context: ToolContext | None) -> float:
    return params["a"] + params["b"]


def broken_tool(params: dict[str, Any], context: ToolContext | None) -> Any:
    raise ValueError("backend exploded")


def make_tool(name: str, handler, parameters: type[BaseModel] = EmptyParams, description: str = "") -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description=description or f"The {name} tool",
        parameters=parameters,
        handler=handler,
    )


@pytest.fixture
def registry() -> ToolRegistry:
    reg = ToolRegistry()
    reg.register(make_tool("get_weather", get_weather, WeatherParams, "Get the current weather for a city"))
    reg.register(make_tool("add_numbers", add_numbers, AddParams, "Add two numbers"))
    reg.register(make_tool("broken_tool", broken_tool))
    return reg


@pytest.fixture
def context() -> ToolContext:
    return ToolContext(request_id="req-test", session_id="session-1")


class FakeExecutor:
    """In-process executor for orchestration tests.

    `script` is an async callable taking the BindingSet; its return value
    becomes the result. Without a script every call returns 42.
    """

    name = "fake"

    def __init__(self, config: ExecutionConfig, script=None):
        self.config = config
        self.script = script
        self.calls: list[dict[str, Any]] = []
        self.cleaned_up = False

    async def execute(
        self,
        code: str,
        *,
        bindings,
        declarations: str,
        timeout_ms: int,
        capture_output: bool,
        language: Language = Language.PYTHON,
    ) -> ExecutionResult:
        self.calls.append(
            {
                "code": code,
                "bindings": bindings,
                "declarations": declarations,
                "timeout_ms": timeout_ms,
                "capture_output": capture_output,
                "language": language,
            }
        )
        if self.script is None:
            return ExecutionResult.ok(42, execution_time_ms=1.0)
        return ExecutionResult.ok(await self.script(bindings), execution_time_ms=1.0)

    async def cleanup(self) -> None:
        self.cleaned_up = True


@pytest.fixture
def fake_factory():
    """Factory returning FakeExecutor instances and remembering them."""
    created: list[FakeExecutor] = []

    def factory(config: ExecutionConfig, script=None) -> FakeExecutor:
        executor = FakeExecutor(config, script)
        created.append(executor)
        return executor

    factory.created = created  # type: ignore[attr-defined]
    return factory


def docker_available() -> bool:
    if shutil.which("docker") is None:
        return False
    try:
        result = subprocess.run(
            ["docker", "info", "--format", "{{.ServerVersion}}"],
            capture_output=True,
            timeout=5,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0
