"""Error taxonomy.

Every failure inside Kiln is one of these. They travel as exceptions between
components and are flattened to strings only at two boundaries: the
SandboxExecutor (``run``) and the ToolDispatcher (``dispatch``). ``render()``
produces the tagged external form::

    Error: [<kind>] <message>
"""

from __future__ import annotations


class KilnError(Exception):
    """Base class. ``kind`` is the stable tag used in rendered error strings."""

    kind: str = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def render(self) -> str:
        return f"Error: [{self.kind}] {self.message}"


class InvalidRequest(KilnError):
    """Bad or missing arguments; rejected before any oracle call."""

    kind = "invalid_request"


class OracleError(KilnError):
    """The synthesis call failed or produced nothing usable.

    ``reason`` is ``"empty_response"`` or ``"transport"``.
    """

    kind = "oracle_error"

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or reason)
        self.reason = reason


class CodeSyntaxError(KilnError):
    """Candidate source failed validation (parse error, restricted construct,
    or no callable bound to the expected name)."""

    kind = "syntax_error"


class SynthesisFailure(KilnError):
    """Repair budget exhausted. Terminal; the candidate is never stored."""

    kind = "synthesis_failure"

    def __init__(
        self, name: str, last_error: str, attempts: int, history: list | None = None
    ) -> None:
        super().__init__(
            f"Failed to generate/validate code for {name} after {attempts} attempt(s). "
            f"Last error: {last_error}"
        )
        self.name = name
        self.last_error = last_error
        self.attempts = attempts
        # SynthesisAttempt records, oldest first
        self.history = list(history or [])


class StorageError(KilnError):
    """Persistence I/O failure. Any prior record is left intact."""

    kind = "storage_error"


class NotFound(KilnError):
    """Invocation of a function name the store does not hold."""

    kind = "not_found"


class ExecutionError(KilnError):
    """Sandbox-boundary failure.

    ``kind`` is set per instance: ``timeout``, ``runtime_fault`` or
    ``unserializable_result``.
    """

    KINDS = ("timeout", "runtime_fault", "unserializable_result")

    def __init__(self, kind: str, detail: str, traceback: str = "") -> None:
        if kind not in self.KINDS:
            raise ValueError(f"unknown execution error kind: {kind}")
        super().__init__(detail)
        self.kind = kind
        self.detail = detail
        self.traceback = traceback
