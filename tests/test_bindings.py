"""Tests for the tool wrapper bridge: validation, extraction, serialization, immutability."""

import asyncio
from typing import Any

import pytest

from conftest import AddParams, EmptyParams, WeatherParams, make_tool
from sandbridge.bridge.bindings import (
    BindingSet,
    ToolBinding,
    create_bindings,
    ensure_json_serializable,
    extract_result,
)
from sandbridge.exceptions import (
    ConfigError,
    SerializationError,
    ToolInvocationError,
    ToolValidationError,
)
from sandbridge.tools.models import ContentBlock, ToolContext, ToolResult


class TestExtractResult:
    def test_single_text_block_json_parsed(self):
        assert extract_result(ToolResult.text('{"a": 1}')) == {"a": 1}

    def test_single_text_block_plain_text(self):
        assert extract_result(ToolResult.text("hello world")) == "hello world"

    def test_json_scalar_text_is_parsed(self):
        assert extract_result(ToolResult.text("42")) == 42

    def test_multiple_blocks_become_list(self):
        result = ToolResult(content=[
            ContentBlock(type="text", text="first"),
            ContentBlock(type="text", text='{"n": 2}'),
        ])
        assert extract_result(result) == ["first", {"n": 2}]

    def test_non_text_block_returned_as_dict(self):
        result = ToolResult(content=[ContentBlock(type="image", data="aGk=", mime_type="image/png")])
        assert extract_result(result) == {"type": "image", "data": "aGk=", "mime_type": "image/png"}

    def test_dict_following_convention(self):
        assert extract_result({"content": [{"type": "text", "text": "[1, 2]"}]}) == [1, 2]

    def test_plain_values_unchanged(self):
        assert extract_result(5) == 5
        assert extract_result({"content": "not blocks"}) == {"content": "not blocks"}
        assert extract_result(None) is None


class TestEnsureJsonSerializable:
    def test_plain_data(self):
        assert ensure_json_serializable({"a": [1, 2.5, "x", None, True]}) == {"a": [1, 2.5, "x", None, True]}

    def test_tuple_becomes_list(self):
        assert ensure_json_serializable((1, 2)) == [1, 2]

    def test_cycle_rejected(self):
        value: dict[str, Any] = {}
        value["self"] = value
        with pytest.raises(SerializationError, match="must be JSON-serializable"):
            ensure_json_serializable(value)

    def test_unsupported_member_rejected(self):
        with pytest.raises(SerializationError, match="must be JSON-serializable"):
            ensure_json_serializable({"when": object()})

    def test_nan_rejected(self):
        with pytest.raises(SerializationError):
            ensure_json_serializable(float("nan"))


class TestToolBinding:
    @pytest.mark.asyncio
    async def test_keyword_call(self, registry, context):
        bindings = create_bindings(registry.get_all(), context)
        result = await bindings["getWeather"](city="Oslo")
        assert result == {"city": "Oslo", "temp": 21, "units": "metric"}

    @pytest.mark.asyncio
    async def test_single_mapping_argument(self, registry, context):
        bindings = create_bindings(registry.get_all(), context)
        assert await bindings.addNumbers({"a": 2, "b": 3}) == 5

    @pytest.mark.asyncio
    async def test_extra_fields_dropped(self, context):
        seen: list[dict] = []

        def handler(params, ctx):
            seen.append(params)
            return "ok"

        binding = ToolBinding(make_tool("get_weather", handler, WeatherParams), context)
        await binding(city="Oslo", unexpected=True)
        assert seen == [{"city": "Oslo", "units": "metric"}]

    @pytest.mark.asyncio
    async def test_validation_failure_names_tool(self, registry, context):
        bindings = create_bindings(registry.get_all(), context)
        with pytest.raises(ToolValidationError) as exc_info:
            await bindings.getWeather(units="imperial")
        assert "get_weather" in str(exc_info.value)
        assert "city" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_positional_non_mapping_rejected(self, registry, context):
        bindings = create_bindings(registry.get_all(), context)
        with pytest.raises(ToolValidationError):
            await bindings.addNumbers(1, 2)

    @pytest.mark.asyncio
    async def test_handler_failure_prefixed(self, registry, context):
        bindings = create_bindings(registry.get_all(), context)
        with pytest.raises(ToolInvocationError) as exc_info:
            await bindings.brokenTool()
        assert str(exc_info.value) == "Tool 'broken_tool' failed: backend exploded"
        assert exc_info.value.original_message == "backend exploded"

    @pytest.mark.asyncio
    async def test_error_result_raised(self, context):
        binding = ToolBinding(
            make_tool("flaky", lambda p, c: ToolResult.text("quota exceeded", is_error=True)),
            context,
        )
        with pytest.raises(ToolInvocationError, match="Tool 'flaky' failed: quota exceeded"):
            await binding()

    @pytest.mark.asyncio
    async def test_non_serializable_result(self, context):
        def handler(params, ctx):
            value: dict[str, Any] = {}
            value["loop"] = value
            return value

        binding = ToolBinding(make_tool("cyclic", handler), context)
        with pytest.raises(SerializationError, match="must be JSON-serializable"):
            await binding()

    @pytest.mark.asyncio
    async def test_context_passed_to_handler(self, context):
        seen: list[Any] = []

        async def handler(params, ctx):
            seen.append(ctx)
            return None

        await ToolBinding(make_tool("spy", handler), context)()
        assert seen == [context]

    @pytest.mark.asyncio
    async def test_handler_may_be_sync_or_async(self, context):
        async def slow(params, ctx):
            await asyncio.sleep(0)
            return "async"

        assert await ToolBinding(make_tool("slow", slow), context)() == "async"
        assert await ToolBinding(make_tool("fast", lambda p, c: "sync"), context)() == "sync"

    def test_immutable(self, context):
        binding = ToolBinding(make_tool("ping", lambda p, c: None, EmptyParams), context)
        with pytest.raises(AttributeError):
            binding.name = "other"
        with pytest.raises(AttributeError):
            binding.extra = 1
        with pytest.raises(AttributeError):
            del binding.tool_name

    def test_context_not_exposed(self, context):
        binding = ToolBinding(make_tool("ping", lambda p, c: None), context)
        assert not hasattr(binding, "context")
        assert not hasattr(binding, "__dict__")


class TestBindingSet:
    def test_one_binding_per_non_excluded_tool(self, registry, context):
        registry.register(make_tool("tool_runner", lambda p, c: None))
        bindings = create_bindings(registry.get_all(), context)
        assert bindings.names == ["addNumbers", "brokenTool", "getWeather"]
        assert "toolRunner" not in bindings

    def test_opt_out_of_exclusion(self, context):
        bindings = create_bindings([make_tool("tool_runner", lambda p, c: None)], context, exclude_code_execution=False)
        assert bindings.names == ["toolRunner"]

    def test_read_only(self, registry, context):
        bindings = create_bindings(registry.get_all(), context)
        with pytest.raises(AttributeError):
            bindings.getWeather = None
        with pytest.raises(AttributeError):
            bindings.newTool = None
        with pytest.raises(AttributeError):
            del bindings.getWeather
        with pytest.raises(TypeError):
            bindings["getWeather"] = None  # type: ignore[index]

    def test_unknown_attribute(self, registry, context):
        bindings = create_bindings(registry.get_all(), context)
        with pytest.raises(AttributeError, match="No binding named"):
            bindings.missingTool

    def test_tool_name_for(self, registry, context):
        bindings = create_bindings(registry.get_all(), context)
        assert bindings.tool_name_for("getWeather") == "get_weather"
        assert bindings.tool_name_for("notRegistered") == "not_registered"

    def test_colliding_names_rejected(self, context):
        with pytest.raises(ConfigError, match="getItem"):
            BindingSet([
                ToolBinding(make_tool("get_item", lambda p, c: None), context),
                ToolBinding(make_tool("get-item", lambda p, c: None), context),
            ])

    def test_empty(self):
        bindings = create_bindings([], ToolContext())
        assert len(bindings) == 0
        assert bindings.names == []


class TestAddParamsValidation:
    def test_validate_coerces(self, context):
        binding = ToolBinding(make_tool("add_numbers", lambda p, c: None, AddParams), context)
        assert binding.validate({"a": "1.5", "b": 2}) == {"a": 1.5, "b": 2.0}
