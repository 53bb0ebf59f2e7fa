"""
Sandbridge Type Declarations

Renders the tool table as Python stub text describing the callables
available inside the sandbox. The text is purely descriptive: it is
shown to the code author and, for typed-python, handed to the
interpreter's type checker as stubs.

Registry names are snake_case; sandbox callables use camelCase.
"""

from __future__ import annotations

import keyword
import re
from collections.abc import Iterable
from typing import Any

from sandbridge.tools.registry import ToolDefinition, is_excluded

_PRIMITIVES = {
    "string": "str",
    "number": "float",
    "integer": "int",
    "boolean": "bool",
    "null": "None",
}

_HEADER = "from typing import Any, Literal, NotRequired, TypedDict\n"


def snake_to_camel(name: str) -> str:
    """get_user_by_id -> getUserById. Hyphens count as separators."""
    parts = [p for p in re.split(r"[_\-]+", name) if p]
    if not parts:
        return name
    result = parts[0] + "".join(p[:1].upper() + p[1:] for p in parts[1:])
    if keyword.iskeyword(result):
        result += "_"
    return result


def camel_to_snake(name: str) -> str:
    """getUserById -> get_user_by_id."""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _pascal(name: str) -> str:
    camel = snake_to_camel(name).rstrip("_")
    return camel[:1].upper() + camel[1:]


def _is_identifier(name: str) -> bool:
    return name.isidentifier() and not keyword.iskeyword(name)


class _TypeRenderer:
    """Converts one tool's JSON schema into type expressions.

    Object schemas with properties become TypedDict classes, collected
    in definition order (nested classes first).
    """

    def __init__(self, defs: dict[str, Any], classes: list[str], used_names: set[str], prefix: str):
        self._defs = defs
        self._classes = classes
        self._used = used_names
        self._prefix = prefix
        self._refs: dict[str, str] = {}
        self._done: set[str] = set()

    def render(self, schema: dict[str, Any] | None, hint: str) -> str:
        if not schema:
            return "Any"

        if "$ref" in schema:
            return self._render_ref(schema["$ref"])

        enum = schema.get("enum")
        if enum:
            return "Literal[" + ", ".join(repr(v) for v in enum) + "]"
        if "const" in schema:
            return f"Literal[{schema['const']!r}]"

        for key in ("anyOf", "oneOf"):
            if key in schema:
                return self._union(self.render(s, hint) for s in schema[key])
        if "allOf" in schema and len(schema["allOf"]) == 1:
            return self.render(schema["allOf"][0], hint)

        schema_type = schema.get("type")
        if isinstance(schema_type, list):
            return self._union(self.render({**schema, "type": t}, hint) for t in schema_type)

        if schema_type in _PRIMITIVES:
            return _PRIMITIVES[schema_type]
        if schema_type == "array":
            items = schema.get("items")
            if not items:
                return "list[Any]"
            return f"list[{self.render(items, hint + 'Item')}]"
        if schema_type == "object" or "properties" in schema:
            return self._render_object(schema, hint)
        return "Any"

    def _render_object(self, schema: dict[str, Any], hint: str) -> str:
        properties = schema.get("properties") or {}
        if not properties:
            extra = schema.get("additionalProperties")
            if isinstance(extra, dict) and extra:
                return f"dict[str, {self.render(extra, hint + 'Value')}]"
            return "dict[str, Any]"
        name = self._claim(self._prefix + hint)
        self._emit_typed_dict(name, schema)
        return name

    def _render_ref(self, ref: str) -> str:
        if ref in self._refs:
            name = self._refs[ref]
            # still being emitted: recursive model, needs a forward reference
            return name if name in self._done else repr(name)
        def_name = ref.rsplit("/", 1)[-1]
        target = self._defs.get(def_name)
        if target is None:
            return "Any"
        if not (target.get("properties") and (target.get("type") in (None, "object"))):
            return self.render(target, def_name)
        name = self._claim(self._prefix + _pascal(def_name))
        self._refs[ref] = name
        self._emit_typed_dict(name, target)
        self._done.add(name)
        return name

    def _emit_typed_dict(self, name: str, schema: dict[str, Any]) -> None:
        required = set(schema.get("required") or [])
        fields: list[tuple[str, str]] = []
        for field_name, field_schema in schema["properties"].items():
            field_type = self.render(field_schema, _pascal(field_name))
            if field_name not in required:
                field_type = f"NotRequired[{field_type}]"
            fields.append((field_name, field_type))

        if all(_is_identifier(f) for f, _ in fields):
            body = "\n".join(f"    {f}: {t}" for f, t in fields)
            self._classes.append(f"class {name}(TypedDict):\n{body}\n")
        else:
            items = ", ".join(f"{f!r}: {t}" for f, t in fields)
            self._classes.append(f"{name} = TypedDict({name!r}, {{{items}}})\n")

    def _claim(self, name: str) -> str:
        candidate = name
        n = 2
        while candidate in self._used:
            candidate = f"{name}{n}"
            n += 1
        self._used.add(candidate)
        return candidate

    @staticmethod
    def _union(parts: Iterable[str]) -> str:
        seen: list[str] = []
        for part in parts:
            if part not in seen:
                seen.append(part)
        if "Any" in seen:
            return "Any"
        return " | ".join(seen)


def schema_to_type(
    schema: dict[str, Any] | None,
    *,
    name: str = "Params",
    classes: list[str] | None = None,
) -> str:
    """Convert a JSON schema fragment into a Python type expression.

    Object schemas with properties are emitted as TypedDict classes into
    `classes` (when given) and referenced by name.
    """
    renderer = _TypeRenderer(
        defs=(schema or {}).get("$defs", {}),
        classes=classes if classes is not None else [],
        used_names=set(),
        prefix="",
    )
    return renderer.render(schema, name)


def _docstring(tool: ToolDefinition, properties: dict[str, Any]) -> str:
    lines: list[str] = []
    if tool.description:
        lines.extend(tool.description.strip().splitlines())
    arg_lines = [
        f"    {field}: {field_schema['description']}"
        for field, field_schema in properties.items()
        if isinstance(field_schema, dict) and field_schema.get("description")
    ]
    if arg_lines:
        if lines:
            lines.append("")
        lines.append("Args:")
        lines.extend(arg_lines)
    if not lines:
        lines = [f"Call the '{tool.name}' tool."]
    text = "\n    ".join(line.replace('"""', '\\"\\"\\"') for line in lines)
    return f'    """{text}\n    """' if len(lines) > 1 else f'    """{text}"""'


def render_declaration(tool: ToolDefinition, classes: list[str], used_names: set[str]) -> str:
    """Render one tool as a stub function; nested types go into `classes`."""
    schema = tool.input_schema
    properties: dict[str, Any] = schema.get("properties") or {}
    required = set(schema.get("required") or [])
    func_name = snake_to_camel(tool.name)
    prefix = _pascal(tool.name)
    renderer = _TypeRenderer(schema.get("$defs", {}), classes, used_names, prefix)

    if not properties:
        signature = f"def {func_name}() -> Any:"
    elif all(_is_identifier(p) for p in properties):
        params = []
        for field, field_schema in properties.items():
            field_type = renderer.render(field_schema, _pascal(field))
            if field in required:
                params.append(f"{field}: {field_type}")
            else:
                params.append(f"{field}: {field_type} = ...")
        signature = f"def {func_name}(*, {', '.join(params)}) -> Any:"
    else:
        params_type = renderer.render(schema, "Params")
        signature = f"def {func_name}(params: {params_type}, /) -> Any:"

    return f"{signature}\n{_docstring(tool, properties)}\n    ...\n"


def generate_declarations(
    tools: Iterable[ToolDefinition],
    exclude_code_execution: bool = True,
) -> str:
    """Build the declaration block for the sandbox call surface.

    Returns an empty string when no tool is left after exclusion.
    """
    classes: list[str] = []
    functions: list[str] = []
    used_names: set[str] = set()
    for tool in tools:
        if exclude_code_execution and is_excluded(tool.name):
            continue
        functions.append(render_declaration(tool, classes, used_names))

    if not functions:
        return ""
    return "\n\n".join([_HEADER, *classes, *functions])
