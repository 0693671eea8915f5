"""Core schemas — function records, execution requests, and repair-loop state."""

from __future__ import annotations

import keyword
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def is_valid_function_name(name: Any) -> bool:
    """True if *name* is a bare Python identifier that is not a keyword."""
    return isinstance(name, str) and name.isidentifier() and not keyword.iskeyword(name)


class FunctionSpec(BaseModel):
    """What the oracle is asked to author."""

    name: str = Field(description="Identifier the generated callable must be bound to")
    description: str = Field(description="Natural-language purpose of the function")
    parameter_schema: dict[str, Any] = Field(
        default_factory=dict,
        description="JSON-Schema-like object describing the `params` argument",
    )


class FunctionDefinition(BaseModel):
    """A stored, validated function. One record per name; overwrite only."""

    name: str = Field(description="Unique key, a bare identifier")
    description: str = Field(default="", description="Informational only")
    parameter_schema: dict[str, Any] = Field(default_factory=dict)
    code: str = Field(description="Source of a single callable bound to `name`")
    is_internal: bool = Field(
        default=False,
        description="Reserved entries; exempt from bulk clear and not directly invocable",
    )

    @field_validator("name")
    @classmethod
    def _name_is_identifier(cls, v: str) -> str:
        if not is_valid_function_name(v):
            raise ValueError(f"'{v}' is not a valid bare identifier")
        return v

    @classmethod
    def from_spec(cls, spec: FunctionSpec, code: str) -> "FunctionDefinition":
        return cls(
            name=spec.name,
            description=spec.description,
            parameter_schema=spec.parameter_schema,
            code=code,
        )

    def as_tool(self) -> dict[str, Any]:
        """OpenAI function-tool form, for hosts that let an LLM pick functions."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameter_schema,
            },
        }


class ExecutionRequest(BaseModel):
    """One invocation of a stored function. Never persisted."""

    function_name: str
    params: Any = Field(default_factory=dict)
    capability_overrides: dict[str, Any] | None = Field(
        default=None,
        description="Replaces the capability registry for this call only",
    )


class RepairState(str, Enum):
    """States of the bounded synthesize/validate/repair machine."""

    IDLE = "idle"
    SYNTHESIZING = "synthesizing"
    VALIDATING = "validating"
    RETRYING = "retrying"
    DONE = "done"
    EXHAUSTED = "exhausted"


class RepairContext(BaseModel):
    """What a repair prompt needs from the failed attempt."""

    previous_code: str
    error_message: str


class SynthesisAttempt(BaseModel):
    """Record of one synthesize-then-validate cycle. Scoped to a single loop run."""

    attempt_index: int
    candidate_code: str | None = None
    last_error: str | None = None
    state: RepairState = RepairState.IDLE
