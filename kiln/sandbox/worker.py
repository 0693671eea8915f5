"""Sandbox worker — the child process that actually evaluates guest code.

Started by ``SandboxExecutor`` as ``python -m kiln.sandbox.worker``. Speaks
newline-delimited JSON with the host:

  host → worker (stdin)
    {"code", "entry", "params", "capabilities", "memory_limit_mb"}   first line
    {"id", "ok": true, "result": str}                        capability reply
    {"id", "ok": false, "error": str}

  worker → host (stdout)
    {"type": "log", "level", "text", "fields"}
    {"type": "call", "id", "name", "args"}                   blocks for a reply
    {"type": "result", "output": str}                        final
    {"type": "fault", "kind", "detail", "traceback"}         final

The host owns the deadline and kills this process when it passes, so a guest
stuck inside a single C-level call is stopped like any other.
"""

from __future__ import annotations

import json
import os
import sys
import traceback
from typing import Any, TextIO

from RestrictedPython import compile_restricted

from kiln.sandbox.guards import ExternalApis, GuestLog, build_guest_globals


class _Channel:
    """Line protocol over the worker's private copy of stdout and its stdin."""

    def __init__(self, reader: TextIO, writer: TextIO) -> None:
        self._reader = reader
        self._writer = writer
        self._next_id = 0

    def send(self, message: dict[str, Any]) -> None:
        self._writer.write(json.dumps(message, default=str) + "\n")
        self._writer.flush()

    def log(self, level: str, text: str, fields: dict) -> None:
        self.send({"type": "log", "level": level, "text": text, "fields": fields})

    def call(self, name: str, args: Any) -> str:
        self._next_id += 1
        try:
            line = json.dumps(
                {"type": "call", "id": self._next_id, "name": name, "args": args},
                allow_nan=False,
            )
        except (TypeError, ValueError) as exc:
            raise TypeError(f"arguments to {name} must be JSON-serializable: {exc}") from None
        self._writer.write(line + "\n")
        self._writer.flush()

        reply_line = self._reader.readline()
        if not reply_line:
            # host is gone; nothing left to report to
            raise SystemExit(1)
        reply = json.loads(reply_line)
        if not reply.get("ok"):
            raise RuntimeError(reply.get("error") or f"capability {name} failed")
        return reply.get("result")

    def bridge(self, name: str):
        def call(args=None):
            return self.call(name, {} if args is None else args)

        call.__name__ = name
        return call


def _encode(result: Any) -> str:
    """Strings pass through; anything else becomes strict JSON."""
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, allow_nan=False)


def _fault(kind: str, exc: BaseException) -> dict[str, Any]:
    return {
        "type": "fault",
        "kind": kind,
        "detail": f"{type(exc).__name__}: {exc}",
        "traceback": "".join(traceback.format_exception(exc)),
    }


def evaluate(request: dict[str, Any], channel: _Channel) -> dict[str, Any]:
    """Compile, run ``entry(params)`` and return the final protocol message."""
    entry_name = request["entry"]
    try:
        byte_code = compile_restricted(request["code"], filename=f"<kiln:{entry_name}>", mode="exec")
        external_apis = ExternalApis({name: channel.bridge(name) for name in request["capabilities"]})
        guest_globals = build_guest_globals(request["params"], external_apis, GuestLog(channel.log))
        exec(byte_code, guest_globals)
        entry = guest_globals.get(entry_name)
        if not callable(entry):
            raise NameError(
                f"Code did not define a callable function named {entry_name}. "
                f"Type: {type(entry).__name__}"
            )
        result = entry(request["params"])
    except Exception as exc:
        return _fault("runtime_fault", exc)

    try:
        output = _encode(result)
    except (TypeError, ValueError, RecursionError) as exc:
        fault = _fault("unserializable_result", exc)
        fault["detail"] = (
            f"Dynamic function {entry_name} returned a {type(result).__name__} "
            f"that could not be serialized: {exc}"
        )
        return fault
    return {"type": "result", "output": output}


def limit_memory(megabytes: int) -> None:
    """Cap this process's address space. No-op where RLIMIT_AS is unavailable."""
    if megabytes <= 0 or sys.platform == "win32":
        return
    import resource

    limit = megabytes * 1024 * 1024
    _, hard = resource.getrlimit(resource.RLIMIT_AS)
    if hard != resource.RLIM_INFINITY:
        limit = min(limit, hard)
    resource.setrlimit(resource.RLIMIT_AS, (limit, hard))


def main() -> int:
    # keep the real stdout for the protocol; anything else printed goes to stderr
    writer = os.fdopen(os.dup(sys.stdout.fileno()), "w", encoding="utf-8")
    os.dup2(sys.stderr.fileno(), sys.stdout.fileno())
    channel = _Channel(sys.stdin, writer)

    first = sys.stdin.readline()
    if not first:
        return 1
    request = json.loads(first)
    limit_memory(int(request.get("memory_limit_mb") or 0))
    channel.send(evaluate(request, channel))
    return 0


if __name__ == "__main__":
    sys.exit(main())
