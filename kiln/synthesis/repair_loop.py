"""RepairLoop — bounded synthesize → validate → repair state machine.

Transitions:

    IDLE ──► SYNTHESIZING ──► VALIDATING ──► DONE
                  │               │
                  ▼               ▼
               RETRYING ◄─────────┘ ──► SYNTHESIZING
                  │
                  ▼
              EXHAUSTED

Attempt 0 sends the synthesis prompt. Each later attempt sends a repair prompt
seeded with the most recent candidate the oracle produced and the error that
candidate was rejected with. An oracle failure consumes an attempt like a
validation failure does; if no candidate exists yet, the next attempt repeats
the synthesis prompt.

Total oracle calls never exceed ``max_attempts + 1``. The returned
FunctionDefinition is NOT persisted here.
"""

from __future__ import annotations

import time

import structlog

from kiln.models.errors import CodeSyntaxError, OracleError, SynthesisFailure
from kiln.models.schemas import (
    FunctionDefinition,
    FunctionSpec,
    RepairContext,
    RepairState,
    SynthesisAttempt,
)
from kiln.models.synapse import SynapseEvent, SynapseEventBus
from kiln.synthesis import prompts
from kiln.synthesis.synthesizer import Synthesizer
from kiln.synthesis.validator import Validator
from kiln.utils import preview

logger = structlog.get_logger().bind(component="synthesis.repair")

_TRANSITIONS: dict[RepairState, frozenset[RepairState]] = {
    RepairState.IDLE: frozenset({RepairState.SYNTHESIZING}),
    RepairState.SYNTHESIZING: frozenset(
        {RepairState.VALIDATING, RepairState.RETRYING, RepairState.EXHAUSTED}
    ),
    RepairState.VALIDATING: frozenset(
        {RepairState.DONE, RepairState.RETRYING, RepairState.EXHAUSTED}
    ),
    RepairState.RETRYING: frozenset({RepairState.SYNTHESIZING}),
    RepairState.DONE: frozenset(),
    RepairState.EXHAUSTED: frozenset(),
}


class _RepairRun:
    """Mutable state of one loop run: counter, last candidate, last error."""

    def __init__(self, spec: FunctionSpec, total_attempts: int) -> None:
        self.spec = spec
        self.total_attempts = total_attempts
        self.state = RepairState.IDLE
        self.attempts: list[SynthesisAttempt] = []
        self.last_error: str | None = None
        self.last_candidate: str | None = None
        self.last_candidate_error: str | None = None

    def transition(self, new_state: RepairState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal repair transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    def repair_context(self) -> RepairContext | None:
        if self.last_candidate is None:
            return None
        return RepairContext(
            previous_code=self.last_candidate,
            error_message=self.last_candidate_error or "Unknown error",
        )

    def record_failure(self, index: int, candidate: str | None, error: str) -> None:
        self.last_error = error
        if candidate is not None:
            self.last_candidate = candidate
            self.last_candidate_error = error
        is_last = index + 1 >= self.total_attempts
        self.transition(RepairState.EXHAUSTED if is_last else RepairState.RETRYING)
        self.attempts.append(SynthesisAttempt(
            attempt_index=index,
            candidate_code=candidate,
            last_error=error,
            state=self.state,
        ))


class RepairLoop:
    """Orchestrates Synthesizer + Validator across a bounded number of attempts."""

    def __init__(
        self,
        synthesizer: Synthesizer,
        validator: Validator | None = None,
        synapse: SynapseEventBus | None = None,
        max_attempts: int = 3,
    ) -> None:
        self.synthesizer = synthesizer
        self.validator = validator or Validator()
        self.synapse = synapse
        self.max_attempts = max_attempts

    async def create(
        self,
        spec: FunctionSpec,
        capability_description: str,
        max_attempts: int | None = None,
        correlation_id: str = "",
    ) -> FunctionDefinition:
        """Synthesize until a candidate validates.

        Raises:
            SynthesisFailure: every one of the ``max_attempts + 1`` attempts failed.
        """
        budget = self.max_attempts if max_attempts is None else max_attempts
        run = _RepairRun(spec, total_attempts=budget + 1)
        start = time.perf_counter()

        for index in range(run.total_attempts):
            if run.state is RepairState.RETRYING:
                logger.info("repair_attempt", function=spec.name, attempt=index + 1)
            run.transition(RepairState.SYNTHESIZING)
            context = run.repair_context() if index > 0 else None
            prompt = prompts.build(spec, capability_description, context)

            try:
                candidate = await self.synthesizer.synthesize(prompt)
            except OracleError as exc:
                run.record_failure(index, None, exc.message)
                self._emit_failure(correlation_id, spec.name, index, exc)
                continue

            run.transition(RepairState.VALIDATING)
            try:
                self.validator.validate(candidate, spec.name)
            except CodeSyntaxError as exc:
                run.record_failure(index, candidate, exc.message)
                self._emit_failure(correlation_id, spec.name, index, exc)
                continue

            run.transition(RepairState.DONE)
            logger.info(
                "synthesis_succeeded",
                function=spec.name,
                attempt=index + 1,
                healed=index > 0,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            return FunctionDefinition.from_spec(spec, candidate)

        failure = SynthesisFailure(
            spec.name,
            run.last_error or "Unknown error",
            run.total_attempts,
            history=run.attempts,
        )
        logger.error(
            "synthesis_exhausted",
            function=spec.name,
            attempts=run.total_attempts,
            errors=[preview(a.last_error or "", 80) for a in run.attempts],
            last_error=(run.last_error or "")[:200],
        )
        if self.synapse is not None:
            self.synapse.emit(SynapseEvent(
                correlation_id=correlation_id or "unknown",
                event_type="synthesis_exhausted",
                source="synthesis.repair",
                target=spec.name,
                error=failure.message[:300],
                payload={"attempts": run.total_attempts},
            ))
        raise failure

    def _emit_failure(self, correlation_id: str, name: str, index: int, exc: Exception) -> None:
        logger.warning(
            "synthesis_attempt_failed",
            function=name,
            attempt=index + 1,
            error_type=type(exc).__name__,
            error=str(exc)[:200],
        )
        if self.synapse is None:
            return
        self.synapse.emit(SynapseEvent(
            correlation_id=correlation_id or "unknown",
            event_type="synthesis_attempt_failed",
            source="synthesis.repair",
            target=name,
            payload={"attempt": index + 1, "error_type": type(exc).__name__, "error": str(exc)[:200]},
        ))
