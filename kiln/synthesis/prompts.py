"""PromptBuilder — spec (+ optional failed attempt) → oracle prompt text.

Pure and deterministic: the same inputs always give the same prompt. Two
shapes:
  - synthesis prompt : spec + capability listing + rules + example
  - repair prompt    : failing code + error, then the same spec and rules
"""

from __future__ import annotations

import json

from kiln.models.schemas import FunctionSpec, RepairContext

SYSTEM_PROMPT = """\
You are an expert Python function generator. You write a single, standalone
Python function that runs inside a restricted sandbox. You output ONLY code."""

_RULES = """\
CRITICAL rules for the generated code:
1.  Write exactly one top-level function: `def {name}(params):`.
    - `params` is the value described by the parameters schema (usually a dict).
    - Helper functions may be nested inside `{name}`.
    - Do NOT use `async def` or `await`; capability calls are synchronous from your side.
2.  The function MUST return a string on every path.
    - For structured data return `json.dumps({{"success": True, ...}})`.
    - To report a problem return a string starting with "Error: " or
      `json.dumps({{"error": "..."}})`.
3.  The ONLY way to reach the outside world is the `external_apis` object:
    `result_string = external_apis.some_api({{"key": "value"}})`.
    Every capability takes one dict and returns a string (usually JSON).
    Wrap capability calls and `json.loads` in try/except when you want to
    handle their failures and still return a string.
4.  Read parameters with `params["name"]` or `params.get("name", default)`.
5.  Available without import: `json` (dumps/loads), `math`, `uuid4()` (returns
    a string id), `log.info(...)`/`log.warning(...)`/`log.error(...)`, `print`
    (goes to the host log), and common builtins (len, str, int, float, bool,
    dict, list, tuple, set, sorted, min, max, sum, range, enumerate, zip,
    isinstance, round, abs, any, all).
6.  Do NOT use `import`, `open`, `eval`, `exec`, `globals`, or names starting
    with an underscore. There is no filesystem, process, environment or
    network access outside `external_apis`.
7.  Output ONLY the Python code. No markdown fences, no prose, no tests."""

_EXAMPLE = '''\
Example of the expected shape:

def example_tool(params):
    item_id = params.get("item_id")
    if item_id is None:
        return json.dumps({"error": "Missing item_id."})
    try:
        raw = external_apis.lookup_item({"id": item_id})
    except Exception as e:
        return json.dumps({"error": "Host API call failed: " + str(e)})
    try:
        data = json.loads(raw)
    except ValueError as e:
        return json.dumps({"error": "Host API returned invalid JSON: " + str(e)})
    if not data.get("success"):
        return json.dumps({"error": data.get("error", "Unknown API error")})
    log.info("looked up item", item_id=item_id)
    return json.dumps({"success": True, "name": data.get("name")})'''


def _spec_block(spec: FunctionSpec, capability_description: str) -> str:
    schema = json.dumps(spec.parameter_schema, indent=2, sort_keys=True)
    return (
        f"Function Name: {spec.name}\n"
        f"High-Level Description: {spec.description}\n"
        f"Parameters Schema (for the `params` argument):\n{schema}\n\n"
        "Host APIs available on the `external_apis` object:\n"
        f"{capability_description}"
    )


def build(
    spec: FunctionSpec,
    capability_description: str,
    repair_context: RepairContext | None = None,
) -> str:
    """Build a synthesis prompt, or a repair prompt when *repair_context* is set."""
    parts: list[str] = []
    if repair_context is not None:
        parts.append(
            f"The Python code you previously generated for the function `{spec.name}` "
            f"was rejected with this error:\n{repair_context.error_message}\n\n"
            f"The faulty code was:\n{repair_context.previous_code}\n\n"
            "Correct the error and output the complete, valid function again. "
            "The original specification and rules still apply."
        )
    else:
        parts.append(
            "Create a single standalone Python function from this specification."
        )
    parts.append(_spec_block(spec, capability_description))
    parts.append(_RULES.format(name=spec.name))
    parts.append(_EXAMPLE)
    parts.append(
        f"Your task: output only the code of `def {spec.name}(params):`, following "
        "the specification and rules exactly. Every path must return a string."
    )
    return "\n\n".join(parts)
