"""ToolDispatcher — the single entry point a host calls.

Two request classes:
  - definition request: ``create_dynamic_function`` → validate arguments →
    RepairLoop → FunctionStore.put
  - invocation request: any other name → FunctionStore.get →
    SandboxExecutor.run

``dispatch()`` always returns a string, success or failure. Typed errors from
the components below are rendered here (``Error: [<kind>] ...``); nothing is
raised to the caller.
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any

import structlog
from pydantic import ValidationError

from kiln.capabilities.registry import CapabilityRegistry
from kiln.config import KilnSettings
from kiln.models.errors import InvalidRequest, KilnError, NotFound
from kiln.models.schemas import (
    ExecutionRequest,
    FunctionDefinition,
    FunctionSpec,
    is_valid_function_name,
)
from kiln.models.synapse import SynapseEvent, SynapseEventBus
from kiln.sandbox.executor import SandboxExecutor
from kiln.sandbox.guards import RESERVED_NAMES
from kiln.synthesis.repair_loop import RepairLoop
from kiln.synthesis.synthesizer import Synthesizer
from kiln.synthesis.validator import Validator
from kiln.tools.function_store import FunctionStore
from kiln.utils import preview

logger = structlog.get_logger().bind(component="dispatcher")

FUNCTION_CREATION_TOOL_NAME = "create_dynamic_function"

FUNCTION_CREATION_TOOL_DEFINITION: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": FUNCTION_CREATION_TOOL_NAME,
        "description": (
            "Define and create a new Python function that can be executed later. Takes the "
            "desired function name, a high-level description of its purpose, and a parameter "
            "schema for the function itself. The generated code runs in a sandbox where it can "
            "call host capabilities through an 'external_apis' object, whose available "
            "functions are described by the host if provided."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "new_function_name": {
                    "type": "string",
                    "description": "The name for the new function (a snake_case identifier).",
                },
                "new_function_description": {
                    "type": "string",
                    "description": "A clear, high-level description of what the new function should achieve.",
                },
                "new_function_parameters_schema": {
                    "type": "object",
                    "description": (
                        "A JSON schema object describing the parameters the new function "
                        "will accept in its `params` argument."
                    ),
                    "properties": {
                        "type": {"type": "string", "enum": ["object"]},
                        "properties": {"type": "object"},
                        "required": {"type": "array", "items": {"type": "string"}},
                    },
                    "required": ["type", "properties"],
                },
                "host_provided_api_description_for_new_func": {
                    "type": "string",
                    "description": "Optional description of host capabilities available to the new function.",
                },
                "allow_case_variant": {
                    "type": "boolean",
                    "description": (
                        "Set to true to store the function even though a stored function's "
                        "name differs from it only in letter casing."
                    ),
                },
            },
            "required": [
                "new_function_name",
                "new_function_description",
                "new_function_parameters_schema",
            ],
        },
    },
}

_REQUIRED_CREATION_ARGS = (
    "new_function_name",
    "new_function_description",
    "new_function_parameters_schema",
)

_RESERVED = RESERVED_NAMES | {FUNCTION_CREATION_TOOL_NAME}


def _check_function_name(name: Any) -> str:
    if not is_valid_function_name(name):
        raise InvalidRequest(f"Invalid function name '{name}'.")
    if name in _RESERVED:
        raise InvalidRequest(f"Function name '{name}' is reserved.")
    return name


def _coerce_schema(schema: Any) -> dict[str, Any]:
    if isinstance(schema, str):
        try:
            schema = json.loads(schema)
        except ValueError as exc:
            raise InvalidRequest(f"Parameter schema is not valid JSON: {exc}") from exc
    if not isinstance(schema, dict):
        raise InvalidRequest("Parameter schema must be a JSON object.")
    return schema


class ToolDispatcher:
    """Routes definition and invocation requests; always answers with a string.

    Components default to ones built from ``settings``; pass any of them in
    to share or replace them (tests inject a mock oracle and a temp store).
    """

    def __init__(
        self,
        settings: KilnSettings,
        *,
        oracle=None,
        store: FunctionStore | None = None,
        capabilities: CapabilityRegistry | None = None,
        repair_loop: RepairLoop | None = None,
        executor: SandboxExecutor | None = None,
        validator: Validator | None = None,
        synapse: SynapseEventBus | None = None,
    ) -> None:
        self.settings = settings
        self.synapse = synapse or SynapseEventBus(
            trace_dir=settings.trace_dir,
            persist=settings.persist_traces,
            max_events=settings.trace_buffer_size,
        )
        self.store = store or FunctionStore(settings.function_store_dir)
        self.capabilities = capabilities if capabilities is not None else CapabilityRegistry()
        self.validator = validator or Validator()
        self._owned_oracle = None
        if repair_loop is None:
            if oracle is None:
                from kiln.tools.oracle import OracleClient
                oracle = self._owned_oracle = OracleClient(settings)
            repair_loop = RepairLoop(
                Synthesizer(oracle, temperature=settings.oracle_temperature),
                validator=self.validator,
                synapse=self.synapse,
                max_attempts=settings.max_repair_attempts,
            )
        self.repair_loop = repair_loop
        self.executor = executor or SandboxExecutor(
            timeout=settings.sandbox_timeout,
            memory_limit_mb=settings.sandbox_memory_limit_mb,
        )

    async def initialize(self) -> None:
        """Seed the internal creation-tool record so hosts can discover it."""
        spec = FUNCTION_CREATION_TOOL_DEFINITION["function"]
        seeded = self.store.ensure_internal(FunctionDefinition(
            name=FUNCTION_CREATION_TOOL_NAME,
            description=spec["description"],
            parameter_schema=spec["parameters"],
            code="# Executed locally by ToolDispatcher",
            is_internal=True,
        ))
        logger.info("dispatcher_initialized", seeded=seeded, store_dir=str(self.store.store_dir))

    async def aclose(self) -> None:
        """Close the oracle client if this dispatcher created it."""
        if self._owned_oracle is not None:
            await self._owned_oracle.close()

    # ── Entry point ───────────────────────────────────────────

    async def handle(self, request: ExecutionRequest) -> str:
        return await self.dispatch(
            request.function_name, request.params, request.capability_overrides
        )

    async def dispatch(
        self,
        function_name: str,
        params: Any = None,
        capability_overrides: Any = None,
        correlation_id: str | None = None,
    ) -> str:
        """Handle one request. Never raises."""
        correlation_id = correlation_id or str(uuid.uuid4())
        start = time.perf_counter()
        self.synapse.emit(SynapseEvent(
            correlation_id=correlation_id,
            event_type="dispatch_start",
            source="dispatcher",
            target=str(function_name),
        ))
        try:
            if function_name == FUNCTION_CREATION_TOOL_NAME:
                result = await self._handle_definition(params, correlation_id)
            else:
                result = await self._handle_invocation(
                    function_name, params, capability_overrides, correlation_id
                )
        except KilnError as exc:
            result = exc.render()
            self._emit_error(correlation_id, function_name, exc, start)
        except Exception as exc:
            logger.exception("dispatch_internal_error", function=function_name)
            result = f"Error: [internal_error] Failed to handle {function_name}. {exc}"
            self._emit_error(correlation_id, function_name, exc, start)
        return result

    # ── Definition path ───────────────────────────────────────

    async def _handle_definition(self, params: Any, correlation_id: str) -> str:
        if not isinstance(params, dict):
            raise InvalidRequest(f"{FUNCTION_CREATION_TOOL_NAME} expects an object of arguments.")
        for arg in _REQUIRED_CREATION_ARGS:
            if params.get(arg) in (None, "", {}):
                raise InvalidRequest(
                    f"Missing required parameter '{arg}' for {FUNCTION_CREATION_TOOL_NAME}."
                )
        return await self.create_function(
            params["new_function_name"],
            params["new_function_description"],
            params["new_function_parameters_schema"],
            params.get("host_provided_api_description_for_new_func"),
            correlation_id=correlation_id,
            allow_case_variant=params.get("allow_case_variant") is True,
        )

    async def create_function(
        self,
        name: Any,
        description: str,
        parameter_schema: Any,
        capability_description: str | None = None,
        correlation_id: str = "",
        allow_case_variant: bool = False,
    ) -> str:
        """Synthesize, validate and store a new function.

        Raises:
            InvalidRequest: bad name or schema, or a stored name differing
                only in casing without ``allow_case_variant`` (before any
                oracle call).
            SynthesisFailure: repair budget exhausted.
            StorageError: the validated definition could not be written.
        """
        spec = FunctionSpec(
            name=_check_function_name(name),
            description=str(description),
            parameter_schema=_coerce_schema(parameter_schema),
        )
        self._check_case_variants(spec.name, allow_case_variant)
        logger.info("function_creation_requested", function=spec.name)
        definition = await self.repair_loop.create(
            spec,
            capability_description or self.capabilities.describe(),
            correlation_id=correlation_id,
        )
        self.store.put(definition)
        self.synapse.emit(SynapseEvent(
            correlation_id=correlation_id or "unknown",
            event_type="function_created",
            source="dispatcher",
            target=spec.name,
            payload={"code_chars": len(definition.code)},
        ))
        return f"Successfully created/updated dynamic function: {spec.name}"

    async def store_predefined_function(
        self,
        definition: FunctionDefinition | dict,
        allow_case_variant: bool = False,
    ) -> str:
        """Store hand-written code, skipping synthesis but not validation. Never raises."""
        try:
            definition = self._predefined_definition(definition)
            self._check_case_variants(definition.name, allow_case_variant)
            self.validator.validate(definition.code, definition.name)
            self.store.put(definition.model_copy(update={"is_internal": False}))
        except KilnError as exc:
            logger.error("predefined_function_rejected", error=exc.message)
            return exc.render()
        return f"Successfully stored predefined function: {definition.name}"

    def _predefined_definition(self, definition: Any) -> FunctionDefinition:
        if isinstance(definition, FunctionDefinition):
            _check_function_name(definition.name)
            return definition
        if not isinstance(definition, dict):
            raise InvalidRequest(
                f"A predefined function must be a FunctionDefinition or a dict, "
                f"not {type(definition).__name__}."
            )
        missing = [
            k for k in ("name", "description", "parameter_schema", "code")
            if not definition.get(k)
        ]
        if missing:
            raise InvalidRequest(
                f"Missing required fields for {definition.get('name') or 'unnamed function'}: "
                f"{', '.join(missing)}."
            )
        _check_function_name(definition["name"])
        try:
            return FunctionDefinition(
                name=definition["name"],
                description=definition["description"],
                parameter_schema=_coerce_schema(definition["parameter_schema"]),
                code=definition["code"],
            )
        except ValidationError as exc:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
            raise InvalidRequest(
                f"Invalid fields for {definition['name']}: {fields}."
            ) from exc

    def _check_case_variants(self, name: str, allow_case_variant: bool) -> None:
        if allow_case_variant:
            return
        variants = self.store.case_variants(name)
        if variants:
            raise InvalidRequest(
                f"Function name '{name}' differs only in casing from stored "
                f"function(s): {', '.join(variants)}. Use the existing name, or set "
                f"allow_case_variant to store both."
            )

    # ── Invocation path ───────────────────────────────────────

    async def _handle_invocation(
        self,
        function_name: str,
        params: Any,
        capability_overrides: Any,
        correlation_id: str,
    ) -> str:
        definition = self.store.get(function_name) if is_valid_function_name(function_name) else None
        if definition is None or not definition.code:
            raise NotFound(f"Function '{function_name}' not found or has no code.")
        if definition.is_internal:
            raise InvalidRequest(
                f"Cannot directly execute special internal function '{function_name}'."
            )

        registry = self.capabilities.with_overrides(capability_overrides)
        logger.info(
            "invoking_function",
            function=function_name,
            params_preview=preview(json.dumps(params, default=str), 100),
            capabilities=registry.names(),
        )
        start = time.perf_counter()
        result = await self.executor.run(
            definition.code,
            definition.name,
            {} if params is None else params,
            registry,
            timeout=self.settings.sandbox_timeout,
        )
        failed = result.startswith("Error:")
        self.synapse.emit(SynapseEvent(
            correlation_id=correlation_id,
            event_type="function_failed" if failed else "function_executed",
            source="sandbox.executor",
            target=function_name,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
            error=result[:300] if failed else "",
            payload={"output_preview": result[:200]},
        ))
        return result

    # ── Management ────────────────────────────────────────────

    def get_function_definition(self, name: str) -> FunctionDefinition | None:
        return self.store.get(name) if is_valid_function_name(name) else None

    def clear_functions(self) -> str:
        """Bulk-clear generated functions (internal records survive). Never raises."""
        try:
            removed = self.store.clear()
        except KilnError as exc:
            return exc.render()
        return f"Cleared {removed} dynamic function(s)."

    def available_tool_definitions(self) -> list[dict[str, Any]]:
        """OpenAI function-tool schemas: the creation tool plus every stored function."""
        tools = [FUNCTION_CREATION_TOOL_DEFINITION]
        tools += [d.as_tool() for d in self.store.list_definitions() if not d.is_internal]
        return tools

    def _emit_error(self, correlation_id: str, function_name: Any, exc: Exception, start: float) -> None:
        kind = getattr(exc, "kind", "internal_error")
        logger.warning("dispatch_failed", function=function_name, kind=kind, error=str(exc)[:200])
        self.synapse.emit(SynapseEvent(
            correlation_id=correlation_id,
            event_type="function_not_found" if kind == "not_found" else "function_failed",
            source="dispatcher",
            target=str(function_name),
            error=str(exc)[:300],
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        ))
