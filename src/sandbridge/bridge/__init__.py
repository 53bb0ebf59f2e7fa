"""
Sandbridge Bridge

The call surface injected into a sandbox, generated from the live tool
table:

- generate_declarations: stub text describing the callables
- create_bindings: immutable, validating callables that reach host handlers
"""

from sandbridge.bridge.bindings import (
    BindingSet,
    ToolBinding,
    create_bindings,
    ensure_json_serializable,
    extract_result,
)
from sandbridge.bridge.declarations import (
    camel_to_snake,
    generate_declarations,
    schema_to_type,
    snake_to_camel,
)

__all__ = [
    "BindingSet",
    "ToolBinding",
    "camel_to_snake",
    "create_bindings",
    "ensure_json_serializable",
    "extract_result",
    "generate_declarations",
    "schema_to_type",
    "snake_to_camel",
]
