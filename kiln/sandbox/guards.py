"""Guest globals — the complete allow-list a sandboxed function can see.

Built on RestrictedPython: the compiler rewrites attribute access, item
access, iteration, unpacking, augmented assignment and ``print`` into calls
to the ``_xxx_`` hooks below, so every one of those operations passes
through a guard we control. Anything not placed in the globals dict simply
does not exist for the guest (there is no ``__import__``, ``open``,
``eval``, ``exec``, ``compile``, ``globals`` or ``input``).
"""

from __future__ import annotations

import json
import math
import operator
import uuid
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any

from RestrictedPython import safe_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)

# Names the guest may never shadow with its own function name.
RESERVED_NAMES = frozenset({"params", "external_apis", "json", "math", "uuid4", "log", "print"})

_BLOCKED_BUILTINS = frozenset(
    {"open", "exec", "eval", "compile", "__import__", "input", "breakpoint", "globals", "vars"}
)

_EXTRA_BUILTINS: dict[str, Any] = {
    "list": list,
    "dict": dict,
    "set": set,
    "frozenset": frozenset,
    "enumerate": enumerate,
    "reversed": reversed,
    "map": map,
    "filter": filter,
    "any": any,
    "all": all,
    "sum": sum,
    "min": min,
    "max": max,
}

_INPLACE_OPS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
    "@=": operator.imatmul,
}


def _inplacevar(op: str, x: Any, y: Any) -> Any:
    try:
        fn = _INPLACE_OPS[op]
    except KeyError:
        raise SyntaxError(f"unsupported augmented assignment {op}") from None
    return fn(x, y)


def _apply(fn, *args, **kwargs):
    return fn(*args, **kwargs)


def _build_builtins() -> dict[str, Any]:
    builtins = dict(safe_builtins)
    builtins.update(_EXTRA_BUILTINS)
    for blocked in _BLOCKED_BUILTINS:
        builtins.pop(blocked, None)
    return builtins


SAFE_BUILTINS = _build_builtins()

# json is exposed as a namespace, not the module: the module object carries
# references to codecs and other modules.
GUEST_JSON = SimpleNamespace(
    dumps=json.dumps,
    loads=json.loads,
    JSONDecodeError=json.JSONDecodeError,
)


def guest_uuid4() -> str:
    """Random identifier for guest code, as a string."""
    return str(uuid.uuid4())


LogSink = Callable[[str, str, dict], None]


class GuestLog:
    """Logging sink for guest code.

    Lines are handed to ``sink(level, text, fields)``; the worker process
    forwards them to the host, which re-emits them through structlog.
    """

    def __init__(self, sink: LogSink) -> None:
        self._sink = sink

    def _emit(self, level: str, args: tuple, fields: dict) -> None:
        self._sink(level, " ".join(str(a) for a in args), fields)

    def debug(self, *args, **fields) -> None:
        self._emit("debug", args, fields)

    def info(self, *args, **fields) -> None:
        self._emit("info", args, fields)

    def warning(self, *args, **fields) -> None:
        self._emit("warning", args, fields)

    def error(self, *args, **fields) -> None:
        self._emit("error", args, fields)


class GuestPrint:
    """Target of RestrictedPython's print rewrite; routes output to GuestLog."""

    def __init__(self, log: GuestLog, _getattr_=None) -> None:
        self._log = log

    def _call_print(self, *objects, **kwargs) -> None:
        sep = kwargs.get("sep")
        self._log.info((" " if sep is None else str(sep)).join(str(o) for o in objects))

    def __call__(self) -> str:
        # value of the guest's `printed` name; output already went to the log
        return ""


class ExternalApis:
    """The guest's view of the capability registry.

    Supports ``external_apis.name(args)`` and ``external_apis["name"](args)``.
    Unknown names raise, they never fall through to anything else.
    """

    def __init__(self, bridges: dict[str, Callable[..., Any]]) -> None:
        self.__bridges = bridges

    def __getattr__(self, name: str):
        try:
            return self.__bridges[name]
        except KeyError:
            raise AttributeError(f"external_apis has no capability '{name}'") from None

    def __getitem__(self, name: str):
        try:
            return self.__bridges[name]
        except KeyError:
            raise KeyError(f"external_apis has no capability '{name}'") from None

    def __contains__(self, name: object) -> bool:
        return name in self.__bridges

    def __repr__(self) -> str:
        return f"<external_apis: {', '.join(sorted(self.__bridges)) or 'none'}>"


def build_guest_globals(params: Any, external_apis: ExternalApis, log: GuestLog) -> dict[str, Any]:
    """Fresh globals dict for one invocation."""
    return {
        "__builtins__": SAFE_BUILTINS,
        "__name__": "kiln_guest",
        "__metaclass__": type,
        # RestrictedPython hooks
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": _inplacevar,
        "_apply_": _apply,
        "_print_": lambda _getattr_=None: GuestPrint(log, _getattr_),
        # The guest's whole world
        "params": params,
        "external_apis": external_apis,
        "json": GUEST_JSON,
        "math": math,
        "uuid4": guest_uuid4,
        "log": log,
    }
