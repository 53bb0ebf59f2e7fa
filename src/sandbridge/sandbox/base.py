"""
Base types for sandbox execution backends.
"""

from __future__ import annotations

import ast
import textwrap
import time
from collections.abc import Iterable
from typing import Protocol

from sandbridge.bridge.bindings import BindingSet
from sandbridge.core.models import ErrorKind, ExecutionResult, Language
from sandbridge.exceptions import SerializationError

ENTRYPOINT = "__sandbox_main__"
CHECKED = "__sandbox_checked__"
REJECT_HOOK = "__sandbox_reject__"
RETURN_VALUE = "Return value"

# Runs inside the sandbox. Identity is compared along the current path only,
# so shared but acyclic references still pass.
_CYCLE_GUARD = f"""\
def __sandbox_acyclic__(value, path):
    if not (isinstance(value, list) or isinstance(value, tuple) or isinstance(value, dict)):
        return True
    for seen in path:
        if seen is value:
            return False
    path.append(value)
    items = value.values() if isinstance(value, dict) else value
    for item in items:
        if not __sandbox_acyclic__(item, path):
            return False
    path.pop()
    return True


def {CHECKED}(value, what):
    if not __sandbox_acyclic__(value, []):
        {REJECT_HOOK}(what)
    return value"""


class SandboxExecutor(Protocol):
    """Contract shared by every isolation backend.

    One instance is created per orchestration tool and reused across
    calls; implementations must tolerate concurrent execute() calls.
    """

    name: str

    async def execute(
        self,
        code: str,
        *,
        bindings: BindingSet,
        declarations: str,
        timeout_ms: int,
        capture_output: bool,
        language: Language = Language.PYTHON,
    ) -> ExecutionResult:
        """Run code with the bindings injected and return a normalized result."""

    async def cleanup(self) -> None:
        """Release the backend handle."""


class _StripAwait(ast.NodeTransformer):
    # Bindings are plain calls inside the sandbox; `await tool(...)` is accepted.
    def visit_Await(self, node: ast.Await) -> ast.AST:
        return self.visit(node.value)


def prepare_function(code: str) -> str:
    """Wrap user code in a function so `return` works at the top level.

    A trailing bare expression becomes the return value. The code is only
    parsed on the host, never executed. Raises SyntaxError.
    """
    tree = ast.parse(code, filename="<sandbox>", mode="exec")
    tree = _StripAwait().visit(tree)
    body = tree.body
    if body and isinstance(body[-1], ast.Expr):
        body[-1] = ast.copy_location(ast.Return(value=body[-1].value), body[-1])
    rendered = ast.unparse(ast.Module(body=body, type_ignores=[])) if body else "pass"
    return f"def {ENTRYPOINT}():\n{textwrap.indent(rendered, '    ')}\n"


def prepare_source(code: str, guarded: Iterable[str] | None = None) -> str:
    """prepare_function() followed by a call whose value is the script result.

    With ``guarded`` (the binding names), the script also refuses to let a
    self-referential value leave the sandbox: arguments of calls to those
    names and the return value are walked for cycles inside the sandbox,
    and a hit calls the REJECT_HOOK external function instead.
    """
    if guarded is None:
        return f"{prepare_function(code)}\n\n{ENTRYPOINT}()\n"

    tree = ast.parse(code, filename="<sandbox>", mode="exec")
    tree = ast.fix_missing_locations(_GuardCalls(frozenset(guarded)).visit(tree))
    function = prepare_function(ast.unparse(tree))
    return (
        f"{function}\n\n{_CYCLE_GUARD}\n\n"
        f"{CHECKED}({ENTRYPOINT}(), {RETURN_VALUE!r})\n"
    )


class _GuardCalls(ast.NodeTransformer):
    def __init__(self, names: frozenset[str]):
        self._names = names

    def visit_Call(self, node: ast.Call) -> ast.AST:
        self.generic_visit(node)
        if not isinstance(node.func, ast.Name) or node.func.id not in self._names:
            return node
        what = f"Arguments to '{node.func.id}'"
        node.args = [
            ast.Starred(value=_checked(arg.value, what), ctx=arg.ctx)
            if isinstance(arg, ast.Starred)
            else _checked(arg, what)
            for arg in node.args
        ]
        for keyword in node.keywords:
            keyword.value = _checked(keyword.value, what)
        return node


def _checked(value: ast.expr, what: str) -> ast.expr:
    return ast.Call(
        func=ast.Name(id=CHECKED, ctx=ast.Load()),
        args=[value, ast.Constant(value=what)],
        keywords=[],
    )


def compile_error_message(exc: SyntaxError) -> str:
    location = f" (line {exc.lineno})" if exc.lineno else ""
    return f"Code compilation failed: SyntaxError: {exc.msg}{location}"


class OutputBuffer:
    """Accumulates captured output up to a size limit."""

    def __init__(self, limit: int):
        self._limit = limit
        self._parts: list[str] = []
        self._size = 0
        self.truncated = False

    def write(self, text: str) -> None:
        if self.truncated or not text:
            return
        remaining = self._limit - self._size
        if len(text) > remaining:
            text = text[:remaining]
            self.truncated = True
        self._parts.append(text)
        self._size += len(text)

    def getvalue(self) -> str | None:
        """Captured text, or None if nothing was written."""
        if not self._parts and not self.truncated:
            return None
        value = "".join(self._parts)
        if self.truncated:
            value += f"\n[TRUNCATED at {self._limit} bytes]"
        return value


def elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


def classify_runtime_error(message: str, last_tool_error: BaseException | None) -> ErrorKind:
    """Attribute an uncaught sandbox error to the tool call that caused it, if any."""
    if last_tool_error is not None and str(last_tool_error) in message:
        if isinstance(last_tool_error, SerializationError):
            return ErrorKind.SERIALIZATION
        return ErrorKind.TOOL
    return ErrorKind.RUNTIME
