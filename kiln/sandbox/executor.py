"""SandboxExecutor — runs a stored function behind an explicit allow-list boundary.

Isolation model:
  - Each invocation gets a fresh worker process (``kiln.sandbox.worker``).
    Source is compiled there with RestrictedPython and executed against a
    globals dict holding ONLY ``params``, ``external_apis``, the fixed
    utilities (``json``, ``math``, ``uuid4``, ``log``) and curated builtins.
    No imports, no files, no process/environment/network handles.
  - ``external_apis.<name>(args)`` inside the worker becomes a request on
    its stdout; the host awaits the capability on its own loop and writes
    the reply back on the worker's stdin.
  - Hard wall-clock timeout: the whole conversation runs under
    ``asyncio.wait_for``; at the deadline the worker is killed and any
    capability call in flight is cancelled.
  - The worker caps its own address space (``memory_limit_mb``, POSIX), so
    oversized allocations fail with MemoryError instead of loading the host.
  - Non-string results are encoded as strict JSON by the worker.

``execute()`` raises ``ExecutionError``; ``run()`` never raises and renders
every failure as a tagged ``"Error: [...]"`` string.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import os
import sys
import time
import traceback
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import structlog

from kiln.capabilities.registry import CapabilityRegistry
from kiln.models.errors import ExecutionError
from kiln.utils import preview

logger = structlog.get_logger().bind(component="sandbox.executor")

DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_MEMORY_LIMIT_MB = 1024
MAX_MESSAGE_BYTES = 16 * 1024 * 1024
MAX_STDERR_CHARS = 2000

FaultHook = Callable[[str, ExecutionError, str], Any]

_GUEST_LEVELS = ("debug", "info", "warning", "error")


def _worker_env() -> dict[str, str]:
    """Environment for the worker: the host's, with kiln importable."""
    env = os.environ.copy()
    root = str(Path(__file__).resolve().parents[2])
    env["PYTHONPATH"] = root + os.pathsep + env["PYTHONPATH"] if env.get("PYTHONPATH") else root
    return env


class _Session:
    """Host side of one worker conversation."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        entry_name: str,
        registry: CapabilityRegistry,
    ) -> None:
        self.proc = proc
        self.entry_name = entry_name
        self.registry = registry
        self.guest_log = structlog.get_logger().bind(component="sandbox.guest", function=entry_name)

    async def send(self, message: dict[str, Any]) -> None:
        self.proc.stdin.write((json.dumps(message, default=str) + "\n").encode("utf-8"))
        await self.proc.stdin.drain()

    async def converse(self, request: dict[str, Any]) -> dict[str, Any] | None:
        """Feed the request, serve log lines and capability calls, return the final message.

        Returns None if the worker exits without one.
        """
        await self.send(request)
        while True:
            line = await self.proc.stdout.readline()
            if not line:
                return None
            message = json.loads(line)
            kind = message.get("type")
            if kind == "log":
                self._relay_log(message)
            elif kind == "call":
                reply = await self._call(message)
                try:
                    await self.send(reply)
                except (BrokenPipeError, ConnectionResetError):
                    # worker died mid-call; readline() reports it next
                    pass
            else:
                return message

    def _relay_log(self, message: dict[str, Any]) -> None:
        level = message.get("level")
        emit = getattr(self.guest_log, level if level in _GUEST_LEVELS else "info")
        fields = message.get("fields")
        if fields:
            emit("guest_log", text=message.get("text", ""), guest_fields=fields)
        else:
            emit("guest_log", text=message.get("text", ""))

    async def _call(self, message: dict[str, Any]) -> dict[str, Any]:
        name = message.get("name")
        function = self.registry.get(name)
        if function is None:
            return {"id": message.get("id"), "ok": False,
                    "error": f"external_apis has no capability '{name}'"}
        try:
            result = await function(message.get("args") or {})
        except Exception as exc:
            logger.warning("capability_failed", function=self.entry_name, capability=name, error=str(exc))
            return {"id": message.get("id"), "ok": False, "error": str(exc)}
        return {"id": message.get("id"), "ok": True,
                "result": result if isinstance(result, str) else str(result)}


async def _reap(proc: asyncio.subprocess.Process, stderr_task: asyncio.Task) -> str:
    """Kill the worker if it is still running and collect its stderr."""
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    await proc.wait()
    stderr = await stderr_task
    return stderr.decode("utf-8", errors="replace")[-MAX_STDERR_CHARS:]


class SandboxExecutor:
    """Evaluates stored source with injected params and capabilities."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        on_fault: FaultHook | None = None,
        memory_limit_mb: int = DEFAULT_MEMORY_LIMIT_MB,
    ) -> None:
        self.timeout = timeout
        self.on_fault = on_fault
        self.memory_limit_mb = memory_limit_mb

    async def execute(
        self,
        code: str,
        entry_name: str,
        params: Any,
        capabilities: CapabilityRegistry | Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> str:
        """Run ``entry_name(params)`` from ``code`` and return its string result.

        Raises:
            ExecutionError: kind ``timeout``, ``runtime_fault`` or
                ``unserializable_result``.
        """
        limit = self.timeout if timeout is None else timeout
        start = time.monotonic()

        try:
            registry = (
                capabilities
                if isinstance(capabilities, CapabilityRegistry)
                else CapabilityRegistry(capabilities)
            )
            request = {
                "code": code,
                "entry": entry_name,
                "params": json.loads(json.dumps(params, allow_nan=False)),
                "capabilities": registry.names(),
                "memory_limit_mb": self.memory_limit_mb,
            }
        except (ValueError, TypeError) as exc:
            raise ExecutionError("runtime_fault", f"{type(exc).__name__}: {exc}") from exc

        try:
            proc = await asyncio.create_subprocess_exec(
                sys.executable, "-m", "kiln.sandbox.worker",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_worker_env(),
                limit=MAX_MESSAGE_BYTES,
            )
        except OSError as exc:
            raise ExecutionError("runtime_fault", f"Could not start sandbox worker: {exc}") from exc

        stderr_task = asyncio.create_task(proc.stderr.read())
        session = _Session(proc, entry_name, registry)
        try:
            message = await asyncio.wait_for(
                session.converse(request),
                timeout=max(start + limit - time.monotonic(), 0.0),
            )
        except asyncio.TimeoutError as exc:
            raise ExecutionError(
                "timeout", f"Dynamic function {entry_name} did not finish within {limit}s"
            ) from exc
        except (ValueError, OSError) as exc:
            raise ExecutionError("runtime_fault", f"Sandbox worker protocol error: {exc}") from exc
        finally:
            stderr = await _reap(proc, stderr_task)

        if message is None:
            raise ExecutionError(
                "runtime_fault",
                f"Sandbox worker exited with code {proc.returncode} before returning. "
                f"{stderr.strip()}".strip(),
            )
        if message.get("type") == "fault":
            kind = message.get("kind")
            raise ExecutionError(
                kind if kind in ExecutionError.KINDS else "runtime_fault",
                str(message.get("detail", "")),
                traceback=str(message.get("traceback", "")),
            )

        output = str(message.get("output", ""))
        logger.info(
            "execution_complete",
            function=entry_name,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
            output_len=len(output),
        )
        return output

    async def run(
        self,
        code: str,
        entry_name: str,
        params: Any,
        capabilities: CapabilityRegistry | Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> str:
        """Like ``execute`` but failures come back as tagged strings, never raised."""
        try:
            return await self.execute(code, entry_name, params, capabilities, timeout)
        except ExecutionError as exc:
            logger.error(
                "execution_failed",
                function=entry_name,
                kind=exc.kind,
                error=preview(exc.detail, 200),
                code_preview=preview(code, 200),
            )
            await self._notify_fault(entry_name, exc)
            return (
                f"Error: [{exc.kind}] Failed to execute dynamic function {entry_name}. "
                f"Details: {exc.detail}"
            )

    async def _notify_fault(self, entry_name: str, exc: ExecutionError) -> None:
        if self.on_fault is None:
            return
        tb_text = exc.traceback
        if not tb_text and exc.__cause__ is not None:
            tb_text = "".join(traceback.format_exception(exc.__cause__))
        try:
            outcome = self.on_fault(entry_name, exc, tb_text)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as hook_error:
            logger.error("fault_hook_failed", function=entry_name, error=str(hook_error))
