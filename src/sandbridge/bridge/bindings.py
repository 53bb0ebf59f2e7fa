"""
Sandbridge Tool Bindings

Turns host tools into the callables a sandbox can reach. Every call
through a binding:

    arguments -> schema validation -> handler(params, context)
              -> plain value extraction -> JSON round-trip -> sandbox

Bindings and the set holding them are immutable once created, and the
host call context is never reachable from the sandbox side.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ValidationError

from sandbridge.bridge.declarations import camel_to_snake, snake_to_camel
from sandbridge.exceptions import (
    ConfigError,
    SerializationError,
    ToolInvocationError,
    ToolValidationError,
)
from sandbridge.logging import get_logger
from sandbridge.observability.metrics import record_tool_call
from sandbridge.tools.models import ContentBlock, ToolContext, ToolResult
from sandbridge.tools.registry import ToolDefinition, is_excluded

logger = get_logger("sandbridge.bridge")


def ensure_json_serializable(value: Any, what: str = "Value") -> Any:
    """Round-trip `value` through JSON and return the plain copy.

    Raises SerializationError for cycles, NaN/Infinity and members
    json cannot encode.
    """
    try:
        return json.loads(json.dumps(value, allow_nan=False))
    except (TypeError, ValueError, RecursionError) as exc:
        raise SerializationError(
            f"{what} must be JSON-serializable: {exc}",
            details={"python_type": type(value).__name__},
        ) from exc


def _parse_text(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return text


def _extract_block(block: ContentBlock | Mapping[str, Any]) -> Any:
    if isinstance(block, Mapping):
        block = ContentBlock.model_validate(block)
    if block.type == "text" and block.text is not None:
        return _parse_text(block.text)
    return block.model_dump(exclude_none=True)


def _is_block(block: Any) -> bool:
    return isinstance(block, ContentBlock) or (isinstance(block, Mapping) and "type" in block)


def _content_blocks(result: Any) -> list | None:
    if isinstance(result, ToolResult):
        return list(result.content)
    if isinstance(result, Mapping):
        content = result.get("content")
        if isinstance(content, list) and all(_is_block(b) for b in content):
            return content
    return None


def _is_error_result(result: Any) -> bool:
    if isinstance(result, ToolResult):
        return result.is_error
    if isinstance(result, Mapping):
        return bool(result.get("is_error") or result.get("isError"))
    return False


def extract_result(result: Any) -> Any:
    """Reduce a handler result to a plain value.

    Structured results (a list of typed content blocks) are unwrapped:
    a single text block is JSON-parsed when possible and returned as
    text otherwise; several blocks become a list of extracted values.
    Other values are returned unchanged (pydantic models are dumped).
    """
    blocks = _content_blocks(result)
    if blocks is None:
        if isinstance(result, BaseModel):
            return result.model_dump(mode="json")
        return result
    values = [_extract_block(b) for b in blocks]
    if len(values) == 1:
        return values[0]
    return values


def _collect_arguments(tool_name: str, args: tuple, kwargs: dict[str, Any]) -> dict[str, Any]:
    if not args:
        return dict(kwargs)
    if len(args) == 1 and isinstance(args[0], Mapping):
        return {**args[0], **kwargs}
    raise ToolValidationError(
        tool_name,
        ["expected a single argument object or keyword arguments"],
    )


class ToolBinding:
    """Validated, immutable callable bridging the sandbox to one host tool."""

    __slots__ = ("name", "tool_name", "description", "_tool", "_context")

    def __init__(self, tool: ToolDefinition, context: ToolContext | None):
        object.__setattr__(self, "name", snake_to_camel(tool.name))
        object.__setattr__(self, "tool_name", tool.name)
        object.__setattr__(self, "description", tool.description)
        object.__setattr__(self, "_tool", tool)
        object.__setattr__(self, "_context", context)

    def __setattr__(self, key: str, value: Any) -> None:
        raise AttributeError(f"Binding '{self.name}' is immutable; cannot set '{key}'")

    def __delattr__(self, key: str) -> None:
        raise AttributeError(f"Binding '{self.name}' is immutable; cannot delete '{key}'")

    def __repr__(self) -> str:
        return f"<ToolBinding {self.name} -> {self.tool_name}>"

    def validate(self, arguments: Mapping[str, Any]) -> dict[str, Any]:
        """Validate arguments against the tool schema. Unknown fields are dropped."""
        try:
            model = self._tool.parameters.model_validate(dict(arguments))
        except ValidationError as exc:
            errors = [
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in exc.errors()
            ]
            raise ToolValidationError(self.tool_name, errors) from exc
        return model.model_dump()

    async def __call__(self, *args: Any, **kwargs: Any) -> Any:
        start = time.monotonic()
        success = False
        try:
            params = self.validate(_collect_arguments(self.tool_name, args, kwargs))
            try:
                result = self._tool.handler(params, self._context)
                if asyncio.iscoroutine(result):
                    result = await result
            except Exception as exc:
                raise ToolInvocationError(self.tool_name, str(exc) or type(exc).__name__) from exc

            if _is_error_result(result):
                message = extract_result(result)
                raise ToolInvocationError(
                    self.tool_name,
                    message if isinstance(message, str) else json.dumps(message, default=str),
                )

            value = ensure_json_serializable(
                extract_result(result),
                what=f"Result of tool '{self.tool_name}'",
            )
            success = True
            return value
        finally:
            duration_ms = (time.monotonic() - start) * 1000
            logger.debug(
                "Tool call %s",
                "succeeded" if success else "failed",
                extra={"tool_name": self.tool_name, "duration_ms": round(duration_ms, 2)},
            )
            record_tool_call(tool_name=self.tool_name, success=success)


class BindingSet(Mapping[str, ToolBinding]):
    """Read-only mapping of sandbox callable name -> ToolBinding.

    Bindings are reachable as items or attributes; nothing can be added,
    replaced or removed after creation.
    """

    __slots__ = ("_bindings",)

    def __init__(self, bindings: Iterable[ToolBinding] = ()):
        table: dict[str, ToolBinding] = {}
        for binding in bindings:
            if binding.name in table:
                raise ConfigError(
                    f"Tools '{table[binding.name].tool_name}' and '{binding.tool_name}' "
                    f"both map to sandbox name '{binding.name}'"
                )
            table[binding.name] = binding
        object.__setattr__(self, "_bindings", MappingProxyType(table))

    def __getitem__(self, name: str) -> ToolBinding:
        return self._bindings[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._bindings)

    def __len__(self) -> int:
        return len(self._bindings)

    def __getattr__(self, name: str) -> ToolBinding:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._bindings[name]
        except KeyError:
            raise AttributeError(f"No binding named '{name}'") from None

    def __setattr__(self, key: str, value: Any) -> None:
        raise AttributeError(f"BindingSet is immutable; cannot set '{key}'")

    def __delattr__(self, key: str) -> None:
        raise AttributeError(f"BindingSet is immutable; cannot delete '{key}'")

    def __repr__(self) -> str:
        return f"BindingSet({sorted(self._bindings)})"

    @property
    def names(self) -> list[str]:
        return sorted(self._bindings)

    def tool_name_for(self, callable_name: str) -> str:
        """Registry name behind a sandbox callable name."""
        binding = self._bindings.get(callable_name)
        return binding.tool_name if binding is not None else camel_to_snake(callable_name)


def create_bindings(
    tools: Iterable[ToolDefinition],
    context: ToolContext | None,
    exclude_code_execution: bool = True,
) -> BindingSet:
    """Build one binding per injectable tool, keyed by its camelCase name."""
    return BindingSet(
        ToolBinding(tool, context)
        for tool in tools
        if not (exclude_code_execution and is_excluded(tool.name))
    )
