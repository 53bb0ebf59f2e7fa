"""
Container backend (container mode).

Each execution starts a throwaway Docker container running CPython with
the stdlib-only bootstrap script (bootstrap.py). The container has no
network, a read-only root filesystem, no capabilities, a process limit
and a memory cap. Bindings never enter the container: the bootstrap
defines stand-in functions that send a call message over stdout and
block until the host answers on stdin.

The long-lived handle is the verified docker CLI plus a concurrency
limit; containers themselves are never reused between executions.
"""

from __future__ import annotations

import asyncio
import json
import shutil
import subprocess
import time
import uuid
from pathlib import Path
from typing import Any

from sandbridge.bridge.bindings import BindingSet
from sandbridge.core.models import ErrorKind, ExecutionConfig, ExecutionResult, Language
from sandbridge.exceptions import BackendUnavailableError, SandbridgeError
from sandbridge.logging import get_logger
from sandbridge.sandbox.base import (
    ENTRYPOINT,
    OutputBuffer,
    classify_runtime_error,
    compile_error_message,
    elapsed_ms,
    prepare_function,
    prepare_source,
)
from sandbridge.sandbox.interpreter import type_check

logger = get_logger("sandbridge.sandbox.container")

BOOTSTRAP_PATH = Path(__file__).with_name("bootstrap.py")
STREAM_LIMIT = 64 * 1024 * 1024
OOM_EXIT_CODE = 137


async def _run_command(cmd: list[str], timeout: float) -> tuple[int, str, str]:
    """Run a short docker CLI command and return (returncode, stdout, stderr)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return -1, "", str(exc)
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        return -1, "", f"command timed out after {timeout}s"
    return (
        proc.returncode if proc.returncode is not None else -1,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


def _pipe(stream: Any, name: str) -> Any:
    if stream is None:
        raise BackendUnavailableError("container", f"Container {name} is not connected to a pipe.")
    return stream


class _Session:
    """Host side of the line protocol for one running container."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        bindings: BindingSet,
        stdout: OutputBuffer | None,
        stderr: OutputBuffer | None,
    ):
        self.proc = proc
        self.bindings = bindings
        self.stdout = stdout
        self.stderr = stderr
        self.last_tool_error: BaseException | None = None
        self.outcome: dict[str, Any] | None = None

    async def _send(self, message: dict[str, Any]) -> None:
        stdin = _pipe(self.proc.stdin, "stdin")
        stdin.write((json.dumps(message) + "\n").encode("utf-8"))
        await stdin.drain()

    async def run(self, request: dict[str, Any]) -> None:
        reader = _pipe(self.proc.stdout, "stdout")
        await self._send(request)
        while self.outcome is None:
            line = await reader.readline()
            if not line:
                break
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                # Bytes written straight to the process stdout, bypassing sys.stdout.
                if self.stdout is not None:
                    self.stdout.write(line.decode("utf-8", errors="replace"))
                continue
            await self._handle(message)
        await self.proc.wait()

    async def _handle(self, message: dict[str, Any]) -> None:
        op = message.get("op")
        if op == "output":
            buffer = self.stderr if message.get("stream") == "stderr" else self.stdout
            if buffer is not None:
                buffer.write(str(message.get("text", "")))
        elif op == "call":
            await self._dispatch(message)
        elif op in ("done", "error"):
            self.outcome = message
        else:
            logger.warning("Ignoring unknown sandbox message", extra={"error_kind": str(op)})

    async def _dispatch(self, message: dict[str, Any]) -> None:
        call_id = message.get("id")
        name = str(message.get("name"))
        args = message.get("args") or []
        kwargs = message.get("kwargs") or {}

        binding = self.bindings.get(name)
        if binding is None:
            await self._send({"op": "raise", "id": call_id, "message": f"name '{name}' is not defined"})
            return
        try:
            value = await binding(*args, **kwargs)
        except SandbridgeError as exc:
            self.last_tool_error = exc
            await self._send({"op": "raise", "id": call_id, "message": str(exc)})
        except Exception as exc:
            self.last_tool_error = exc
            await self._send({
                "op": "raise",
                "id": call_id,
                "message": f"Tool '{binding.tool_name}' failed: {exc}",
            })
        else:
            await self._send({"op": "return", "id": call_id, "value": value})


class ContainerExecutor:
    """Executes code in a fresh, locked-down Docker container per call."""

    name = "container"

    def __init__(self, config: ExecutionConfig):
        self._config = config
        self._settings = config.container
        self._bootstrap = BOOTSTRAP_PATH.read_text(encoding="utf-8")
        self._binary: str | None = None
        self._ready_lock = asyncio.Lock()
        self._slots = asyncio.Semaphore(config.max_concurrency)
        self._active: set[str] = set()
        self._closed = False

    async def _ensure_ready(self) -> str:
        """Verify the docker CLI, daemon and image once, on first use."""
        if self._binary is not None:
            return self._binary
        async with self._ready_lock:
            if self._binary is not None:
                return self._binary

            binary = shutil.which(self._settings.docker_binary)
            if binary is None:
                raise BackendUnavailableError(
                    "container",
                    "Docker CLI not found. Install Docker or use 'micro-vm' mode.",
                )
            code, _, err = await _run_command([binary, "version", "--format", "{{.Server.Version}}"], 10)
            if code != 0:
                raise BackendUnavailableError(
                    "container",
                    f"Docker daemon is not reachable: {err.strip() or 'unknown error'}",
                )

            image = self._settings.image
            code, _, _ = await _run_command([binary, "image", "inspect", image], 30)
            if code != 0:
                logger.info("Pulling sandbox image %s", image)
                code, _, err = await _run_command([binary, "pull", image], 600)
                if code != 0:
                    raise BackendUnavailableError(
                        "container",
                        f"Failed to pull image '{image}': {err.strip()}",
                    )

            self._binary = binary
            return binary

    def build_command(self, binary: str, container_name: str) -> list[str]:
        """docker run arguments for one execution."""
        settings = self._settings
        cmd = [
            binary, "run", "-i", "--rm",
            "--name", container_name,
            "--memory", f"{settings.memory_limit_mb}m",
            "--memory-swap", f"{settings.memory_limit_mb}m",
            "--pids-limit", str(settings.pids_limit),
            "--read-only",
            "--tmpfs", "/tmp:rw,noexec,nosuid,size=64m",
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
            "--ulimit", "nofile=64:64",
            "--user", "65534:65534",
            "--env", "PYTHONDONTWRITEBYTECODE=1",
        ]
        if not settings.network_enabled:
            cmd.extend(["--network", "none"])
        if settings.cpus:
            cmd.extend(["--cpus", f"{settings.cpus}"])
        cmd.extend([settings.image, "python", "-u", "-c", self._bootstrap])
        return cmd

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
        """Execute code in a new container with the bindings proxied over stdio."""
        start = time.perf_counter()

        try:
            function_source = prepare_function(code)
        except SyntaxError as exc:
            return ExecutionResult.failure(
                compile_error_message(exc),
                ErrorKind.COMPILE,
                execution_time_ms=elapsed_ms(start),
            )

        if language == Language.TYPED_PYTHON and declarations:
            try:
                problems = await asyncio.to_thread(
                    type_check, prepare_source(code), list(bindings), declarations
                )
            except SyntaxError as exc:
                problems = str(exc)
            if problems:
                return ExecutionResult.failure(
                    f"Type check failed:\n{problems}",
                    ErrorKind.TYPE_CHECK,
                    execution_time_ms=elapsed_ms(start),
                )

        binary = await self._ensure_ready()
        async with self._slots:
            result = await self._run_container(
                binary,
                {
                    "op": "run",
                    "source": function_source,
                    "entrypoint": ENTRYPOINT,
                    "functions": list(bindings),
                    "capture": capture_output,
                },
                bindings,
                timeout_ms,
                capture_output,
            )
        result.execution_time_ms = elapsed_ms(start)
        return result

    async def _run_container(
        self,
        binary: str,
        request: dict[str, Any],
        bindings: BindingSet,
        timeout_ms: int,
        capture_output: bool,
    ) -> ExecutionResult:
        limit = self._config.max_output_bytes
        stdout = OutputBuffer(limit) if capture_output else None
        stderr = OutputBuffer(limit) if capture_output else None

        container_name = f"sandbridge-{uuid.uuid4().hex[:12]}"
        self._active.add(container_name)
        proc = await asyncio.create_subprocess_exec(
            *self.build_command(binary, container_name),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
        docker_stderr = asyncio.create_task(_pipe(proc.stderr, "stderr").read())
        session = _Session(proc, bindings, stdout, stderr)

        try:
            await asyncio.wait_for(session.run(request), timeout=timeout_ms / 1000)
        except TimeoutError:
            logger.warning(
                "Container execution timed out",
                extra={"timeout_ms": timeout_ms, "mode": self.name},
            )
            result = ExecutionResult.failure(
                f"Execution timed out after {timeout_ms}ms", ErrorKind.TIMEOUT
            )
        except (ValueError, asyncio.LimitOverrunError):
            result = ExecutionResult.failure(
                f"Sandbox message exceeded {STREAM_LIMIT} bytes", ErrorKind.RUNTIME
            )
        except (BrokenPipeError, ConnectionResetError):
            result = self._exit_failure(proc.returncode, "")
        else:
            result = self._to_result(session, proc.returncode, await docker_stderr)
        finally:
            if proc.returncode is None:
                await self._kill(binary, container_name, proc)
            self._active.discard(container_name)
            if not docker_stderr.done():
                docker_stderr.cancel()

        result.stdout = stdout.getvalue() if stdout is not None else None
        result.stderr = stderr.getvalue() if stderr is not None else None
        return result

    def _to_result(
        self, session: _Session, returncode: int | None, docker_stderr: bytes
    ) -> ExecutionResult:
        outcome = session.outcome
        if outcome is None:
            return self._exit_failure(returncode, docker_stderr.decode("utf-8", errors="replace"))

        if outcome.get("op") == "done":
            return ExecutionResult.ok(outcome.get("value"))

        message = str(outcome.get("message") or "Unknown sandbox error")
        kind = outcome.get("kind")
        if kind == "compile":
            return ExecutionResult.failure(message, ErrorKind.COMPILE)
        if kind == "serialization":
            return ExecutionResult.failure(message, ErrorKind.SERIALIZATION)
        if "MemoryError" in message:
            return self._memory_failure()
        return ExecutionResult.failure(
            message,
            classify_runtime_error(message, session.last_tool_error),
            stack_trace=outcome.get("traceback"),
        )

    def _exit_failure(self, returncode: int | None, detail: str) -> ExecutionResult:
        if returncode == OOM_EXIT_CODE:
            return self._memory_failure()
        detail = detail.strip()
        return ExecutionResult.failure(
            f"Container exited with code {returncode}" + (f": {detail}" if detail else ""),
            ErrorKind.BACKEND,
        )

    def _memory_failure(self) -> ExecutionResult:
        return ExecutionResult.failure(
            f"Execution exceeded memory limit ({self._settings.memory_limit_mb}MB)",
            ErrorKind.MEMORY,
        )

    async def _kill(self, binary: str, container_name: str, proc: asyncio.subprocess.Process) -> None:
        await _run_command([binary, "kill", container_name], 10)
        if proc.returncode is None:
            proc.kill()
        await proc.wait()

    async def cleanup(self) -> None:
        """Kill containers still running for this executor."""
        if self._closed:
            return
        self._closed = True
        if self._binary is None:
            return
        for name in list(self._active):
            await _run_command([self._binary, "kill", name], 10)
        self._active.clear()

    @staticmethod
    def check_health(docker_binary: str = "docker", timeout_seconds: float = 2.5) -> tuple[bool, str]:
        """Return (healthy, detail) for docker availability."""
        try:
            result = subprocess.run(
                [docker_binary, "info", "--format", "{{.ServerVersion}}"],
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                check=False,
            )
        except FileNotFoundError:
            return False, "docker CLI not found"
        except subprocess.TimeoutExpired:
            return False, "docker check timed out"

        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip() or "docker daemon unavailable"
            return False, detail

        version = result.stdout.strip() or "unknown"
        return True, f"docker daemon ready (server {version})"
