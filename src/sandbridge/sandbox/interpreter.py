"""
Interpreter backend (micro-vm mode).

Runs sandboxed Python inside ``pydantic_monty``, a Rust implementation
of a Python subset with no filesystem, network, import or eval access.
Bindings are declared as external functions: when sandboxed code calls
one, the interpreter pauses and hands the call to the host, which awaits
the binding on the event loop and resumes the interpreter with the
value (or with a RuntimeError the sandboxed code may catch)::

    host loop                         worker thread
    ---------                         -------------
    execute() -----------------------> Monty(source).start()
                                            | MontySnapshot(fn, args)
    binding(*args) <-- run_coroutine_threadsafe
    value ---------------------------> snapshot.resume(return_value=value)
                                            | MontyComplete(output)
    ExecutionResult <--------------------- output

Each call gets its own interpreter instance, so nothing survives from one
execution to the next. The long-lived handle is the worker thread pool.

Deadlines are enforced twice: an asyncio race around the whole run, and
the interpreter's own duration limit, which also stops busy loops that
never reach an external call.

The interpreter replaces cycles with placeholder strings on the way out,
so self-referential values are refused inside the sandbox by the guard
prepare_source() adds, which calls REJECT_HOOK on a hit.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import importlib.util
import threading
import time
from dataclasses import dataclass, field
from types import ModuleType
from typing import Any

from sandbridge.bridge.bindings import BindingSet, ensure_json_serializable
from sandbridge.core.models import ErrorKind, ExecutionConfig, ExecutionResult, Language
from sandbridge.exceptions import (
    BackendUnavailableError,
    SandbridgeError,
    SerializationError,
)
from sandbridge.logging import get_logger
from sandbridge.sandbox.base import (
    REJECT_HOOK,
    OutputBuffer,
    classify_runtime_error,
    compile_error_message,
    elapsed_ms,
    prepare_source,
)

logger = get_logger("sandbridge.sandbox.interpreter")

SCRIPT_NAME = "sandbox.py"


def load_monty() -> ModuleType:
    """Import pydantic_monty or explain how to install it."""
    try:
        import pydantic_monty
    except ImportError as exc:
        raise BackendUnavailableError(
            "micro-vm",
            "pydantic-monty package is not installed.\n\n"
            "To use code execution with micro-vm mode, install it:\n"
            "  pip install 'pydantic-monty>=0.0.3,<0.0.8'\n\n"
            "Alternatively, use 'container' mode.\n\n"
            f"Error: {exc}",
        ) from exc
    return pydantic_monty


def type_check(source: str, external_functions: list[str], stubs: str) -> str | None:
    """Type-check source against the declaration stubs without running it.

    Returns the concise error report, or None when the code checks.
    Syntax errors propagate as SyntaxError.
    """
    monty = load_monty()
    try:
        monty.Monty(
            source,
            external_functions=external_functions,
            script_name=SCRIPT_NAME,
            type_check=True,
            type_check_stubs=stubs,
        )
    except monty.MontyTypingError as exc:
        return exc.display("concise")
    except monty.MontySyntaxError as exc:
        raise SyntaxError(exc.display("msg")) from exc
    return None


class _Cancelled(Exception):
    pass


@dataclass
class _Run:
    """State shared between the event loop and the worker running one execution."""

    source: str
    bindings: BindingSet
    loop: asyncio.AbstractEventLoop
    limits: dict[str, Any]
    output: OutputBuffer | None
    deadline: float
    stubs: str | None = None
    checked_source: str | None = None
    cancelled: threading.Event = field(default_factory=threading.Event)
    pending: concurrent.futures.Future | None = None
    last_tool_error: BaseException | None = None

    def expired(self) -> bool:
        return self.cancelled.is_set() or time.monotonic() >= self.deadline

    def cancel(self) -> None:
        self.cancelled.set()
        pending = self.pending
        if pending is not None:
            pending.cancel()


class InterpreterExecutor:
    """Executes code in a fresh pydantic_monty interpreter per call."""

    name = "micro-vm"

    def __init__(self, config: ExecutionConfig):
        self._config = config
        self._monty = load_monty()
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=config.max_concurrency,
            thread_name_prefix="sandbridge-vm",
        )
        self._closed = False

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
        """Execute code in the interpreter with the bindings as external functions."""
        start = time.perf_counter()
        output = OutputBuffer(self._config.max_output_bytes) if capture_output else None

        typed = language == Language.TYPED_PYTHON
        try:
            source = prepare_source(code, guarded=list(bindings))
            # Type-checked without the cycle guard so binding arguments keep their types.
            checked_source = prepare_source(code) if typed else None
        except SyntaxError as exc:
            return ExecutionResult.failure(
                compile_error_message(exc),
                ErrorKind.COMPILE,
                execution_time_ms=elapsed_ms(start),
            )

        run = _Run(
            source=source,
            bindings=bindings,
            loop=asyncio.get_running_loop(),
            limits={
                "max_duration_secs": timeout_ms / 1000,
                "max_memory": self._config.memory_limit_mb * 1024 * 1024,
            },
            output=output,
            deadline=time.monotonic() + timeout_ms / 1000,
            stubs=declarations if typed else None,
            checked_source=checked_source,
        )

        try:
            result = await asyncio.wait_for(
                run.loop.run_in_executor(self._pool, self._run_sync, run),
                timeout=timeout_ms / 1000,
            )
        except TimeoutError:
            run.cancel()
            logger.warning(
                "Interpreter execution timed out",
                extra={"timeout_ms": timeout_ms, "mode": self.name},
            )
            result = ExecutionResult.failure(
                f"Execution timed out after {timeout_ms}ms",
                ErrorKind.TIMEOUT,
            )

        if output is not None:
            result.stdout = output.getvalue()
        result.execution_time_ms = elapsed_ms(start)
        logger.debug(
            "Interpreter execution finished",
            extra={
                "mode": self.name,
                "duration_ms": result.execution_time_ms,
                "error_kind": result.error_kind.value if result.error_kind else None,
            },
        )
        return result

    def _run_sync(self, run: _Run) -> ExecutionResult:
        monty = self._monty

        def print_callback(stream: str, text: str) -> None:
            # Output is always intercepted; it is only kept when capturing.
            if run.output is not None:
                run.output.write(text)

        try:
            if run.checked_source is not None and run.stubs is not None:
                report = type_check(run.checked_source, list(run.bindings), run.stubs)
                if report is not None:
                    return ExecutionResult.failure(
                        f"Type check failed:\n{report}", ErrorKind.TYPE_CHECK
                    )
            program = monty.Monty(
                run.source,
                external_functions=[*run.bindings, REJECT_HOOK],
                script_name=SCRIPT_NAME,
            )
        except SyntaxError as exc:
            return ExecutionResult.failure(f"Code compilation failed: {exc}", ErrorKind.COMPILE)
        except monty.MontySyntaxError as exc:
            return ExecutionResult.failure(
                f"Code compilation failed: {exc.display('msg')}", ErrorKind.COMPILE
            )

        try:
            progress = program.start(
                limits=monty.ResourceLimits(**run.limits),
                print_callback=print_callback,
            )
            while isinstance(progress, monty.MontySnapshot):
                if run.expired():
                    raise _Cancelled()
                progress = self._dispatch(run, progress)
        except _Cancelled:
            timeout_ms = int(run.limits["max_duration_secs"] * 1000)
            return ExecutionResult.failure(
                f"Execution timed out after {timeout_ms}ms", ErrorKind.TIMEOUT
            )
        except monty.MontyRuntimeError as exc:
            return self._runtime_failure(run, exc)

        if not isinstance(progress, monty.MontyComplete):
            return ExecutionResult.failure(
                "Sandboxed code awaited an unsupported asynchronous operation",
                ErrorKind.RUNTIME,
            )

        try:
            value = ensure_json_serializable(progress.output, what="Return value")
        except SerializationError as exc:
            return ExecutionResult.failure(str(exc), ErrorKind.SERIALIZATION)
        except RecursionError as exc:
            return ExecutionResult.failure(
                f"Return value must be JSON-serializable: {exc}", ErrorKind.SERIALIZATION
            )
        return ExecutionResult.ok(value)

    def _dispatch(self, run: _Run, snapshot: Any) -> Any:
        """Resolve one external call on the event loop, in issue order."""
        name = snapshot.function_name
        if name == REJECT_HOOK:
            what = snapshot.args[0] if snapshot.args else "Value"
            error = SerializationError(f"{what} must be JSON-serializable: circular reference detected")
            run.last_tool_error = error
            return snapshot.resume(exception=ValueError(str(error)))

        binding = run.bindings.get(name)
        if binding is None:
            return snapshot.resume(exception=NameError(f"name '{name}' is not defined"))

        # A sync handler can hold the loop past the deadline before the timeout fires.
        if run.expired():
            raise _Cancelled()
        future = asyncio.run_coroutine_threadsafe(
            binding(*snapshot.args, **snapshot.kwargs), run.loop
        )
        run.pending = future
        try:
            value = future.result()
        except concurrent.futures.CancelledError:
            raise _Cancelled() from None
        except SandbridgeError as exc:
            run.last_tool_error = exc
            return snapshot.resume(exception=RuntimeError(str(exc)))
        except Exception as exc:
            run.last_tool_error = exc
            return snapshot.resume(
                exception=RuntimeError(f"Tool '{binding.tool_name}' failed: {exc}")
            )
        finally:
            run.pending = None
        return snapshot.resume(return_value=value)

    def _runtime_failure(self, run: _Run, exc: Any) -> ExecutionResult:
        inner = exc.exception()
        if isinstance(inner, TimeoutError):
            timeout_ms = int(run.limits["max_duration_secs"] * 1000)
            return ExecutionResult.failure(
                f"Execution timed out after {timeout_ms}ms", ErrorKind.TIMEOUT
            )
        if isinstance(inner, MemoryError):
            return ExecutionResult.failure(
                f"Execution exceeded memory limit ({self._config.memory_limit_mb}MB)",
                ErrorKind.MEMORY,
            )

        message = exc.display("type-msg")
        trace = exc.display("traceback")
        kind = classify_runtime_error(message, run.last_tool_error)
        return ExecutionResult.failure(message, kind, stack_trace=trace)

    async def cleanup(self) -> None:
        """Shut the worker pool down. Running interpreters stop at their duration limit."""
        if self._closed:
            return
        self._closed = True
        self._pool.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def check_health() -> tuple[bool, str]:
        """Return (healthy, detail) for interpreter availability."""
        if importlib.util.find_spec("pydantic_monty") is None:
            return False, "pydantic-monty not installed (pip install pydantic-monty)"
        return True, "pydantic-monty available"
