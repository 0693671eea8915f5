"""CapabilityRegistry — the host's explicit list of callable capabilities.

Generated functions can affect or observe the outside world only through the
capabilities registered here. Each capability is:
  - name        : a bare identifier (exposed as ``external_apis.<name>``)
  - function    : ``async def fn(args: dict) -> str`` (JSON string by convention)
  - description : one line for the synthesis prompt

The registry is built once by the host and injected per execution. A call
can swap in a different registry (``capability_overrides``) without touching
the shared one.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass

import structlog

from kiln.models.schemas import is_valid_function_name

logger = structlog.get_logger().bind(component="capabilities.registry")

CapabilityFn = Callable[[dict], Awaitable[str]]

_NO_CAPABILITIES = (
    "No specific host APIs were described for this task. The function must "
    "operate using only its params and the built-in utilities."
)


@dataclass(frozen=True)
class Capability:
    name: str
    function: CapabilityFn
    description: str = ""


def _is_async_callable(fn: object) -> bool:
    if inspect.iscoroutinefunction(fn):
        return True
    call = getattr(fn, "__call__", None)
    return inspect.iscoroutinefunction(call)


class CapabilityRegistry:
    """Named async host operations exposed to sandboxed code."""

    def __init__(
        self,
        capabilities: Mapping[str, CapabilityFn] | None = None,
        descriptions: Mapping[str, str] | None = None,
    ) -> None:
        self._capabilities: dict[str, Capability] = {}
        descriptions = descriptions or {}
        for name, fn in (capabilities or {}).items():
            self.register(name, fn, descriptions.get(name, ""))

    def register(self, name: str, function: CapabilityFn, description: str = "") -> None:
        """Add (or replace) a capability. Rejects non-async callables."""
        if not is_valid_function_name(name) or name.startswith("_"):
            raise ValueError(f"Capability name '{name}' is not a public identifier")
        if not _is_async_callable(function):
            raise TypeError(f"Capability '{name}' must be an async callable")
        if name in self._capabilities:
            logger.info("capability_replaced", capability=name)
        self._capabilities[name] = Capability(name, function, description.strip())

    def capability(self, name: str | None = None, description: str | None = None):
        """Decorator form of ``register``. Description defaults to the docstring."""

        def decorator(fn: CapabilityFn) -> CapabilityFn:
            doc = description if description is not None else inspect.getdoc(fn) or ""
            self.register(name or fn.__name__, fn, doc.splitlines()[0] if doc else "")
            return fn

        return decorator

    def get(self, name: str) -> CapabilityFn | None:
        cap = self._capabilities.get(name)
        return cap.function if cap else None

    def names(self) -> list[str]:
        return sorted(self._capabilities)

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)

    def __iter__(self) -> Iterator[Capability]:
        return iter(self._capabilities[n] for n in self.names())

    def describe(self) -> str:
        """Human-readable listing embedded into synthesis prompts."""
        if not self._capabilities:
            return _NO_CAPABILITIES
        lines = []
        for cap in self:
            line = f"- external_apis.{cap.name}(args: dict) -> str"
            if cap.description:
                line += f": {cap.description}"
            lines.append(line)
        return "\n".join(lines)

    def with_overrides(self, overrides: Mapping[str, CapabilityFn] | None) -> "CapabilityRegistry":
        """Registry to use for one call.

        ``None`` keeps this registry. Anything else replaces it entirely for
        the call; the shared registry is not mutated.
        """
        if overrides is None:
            return self
        if isinstance(overrides, CapabilityRegistry):
            return overrides
        return CapabilityRegistry(overrides)
