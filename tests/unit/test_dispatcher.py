"""ToolDispatcher — definition and invocation paths, end to end with a MockOracle."""

from __future__ import annotations

import pytest

from kiln.dispatcher import FUNCTION_CREATION_TOOL_NAME, ToolDispatcher
from kiln.models.schemas import ExecutionRequest, FunctionDefinition
from kiln.tools.function_store import FunctionStore

BAD_CODE = "def add(params)\n    return 1\n"
SCHEMA = {
    "type": "object",
    "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
    "required": ["a", "b"],
}


def _create_args(name="add", description="Add a and b", schema=SCHEMA) -> dict:
    return {
        "new_function_name": name,
        "new_function_description": description,
        "new_function_parameters_schema": schema,
    }


class _CountingValidator:
    def __init__(self) -> None:
        self.calls = 0

    def validate(self, candidate_code: str, expected_name: str) -> None:
        self.calls += 1


class _CountingExecutor:
    def __init__(self) -> None:
        self.calls = 0

    async def run(self, *args, **kwargs) -> str:
        self.calls += 1
        return "unused"


@pytest.fixture
def dispatcher(settings, mock_oracle, registry, synapse):
    return ToolDispatcher(settings, oracle=mock_oracle, capabilities=registry, synapse=synapse)


# ── Definition path ───────────────────────────────────────────


class TestDefine:
    @pytest.mark.asyncio
    async def test_define_then_invoke_add(self, dispatcher, mock_oracle):
        created = await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, _create_args())
        assert created == "Successfully created/updated dynamic function: add"
        assert mock_oracle.chat_simple_calls == 1

        assert await dispatcher.dispatch("add", {"a": 2, "b": 3}) == "5"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_name", ["123bad", "has space", "params", "class", FUNCTION_CREATION_TOOL_NAME])
    async def test_invalid_or_reserved_names_rejected_without_oracle(self, dispatcher, mock_oracle, bad_name):
        result = await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, _create_args(name=bad_name))
        assert result.startswith("Error: [invalid_request]")
        assert mock_oracle.chat_simple_calls == 0

    @pytest.mark.asyncio
    async def test_missing_field_rejected_without_oracle(self, dispatcher, mock_oracle):
        args = _create_args()
        del args["new_function_description"]
        result = await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, args)
        assert "new_function_description" in result
        assert result.startswith("Error: [invalid_request]")
        assert mock_oracle.chat_simple_calls == 0

    @pytest.mark.asyncio
    async def test_schema_as_json_string_accepted(self, dispatcher):
        result = await dispatcher.dispatch(
            FUNCTION_CREATION_TOOL_NAME, _create_args(schema='{"type": "object", "properties": {}}')
        )
        assert result.startswith("Successfully created")

    @pytest.mark.asyncio
    async def test_exhausted_repairs_reported_and_nothing_stored(self, settings, scripted_oracle, synapse):
        oracle = scripted_oracle([BAD_CODE])
        dispatcher = ToolDispatcher(settings, oracle=oracle, synapse=synapse)
        result = await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, _create_args(), correlation_id="cid")
        assert result.startswith("Error: [synthesis_failure] Failed to generate/validate code for add")
        assert oracle.chat_simple_calls == settings.max_repair_attempts + 1
        assert dispatcher.get_function_definition("add") is None
        assert "function_failed" in [e.event_type for e in synapse.events_for("cid")]

    @pytest.mark.asyncio
    async def test_rebound_name_never_stored(self, settings, scripted_oracle):
        oracle = scripted_oracle(["def add(params):\n    return 1\nadd = 5\n"])
        dispatcher = ToolDispatcher(settings, oracle=oracle)
        result = await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, _create_args())
        assert result.startswith("Error: [synthesis_failure]")
        assert dispatcher.get_function_definition("add") is None

    @pytest.mark.asyncio
    async def test_case_variant_rejected_before_oracle(self, dispatcher, mock_oracle):
        await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, _create_args())
        result = await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, _create_args(name="Add"))
        assert result.startswith("Error: [invalid_request]")
        assert "add" in result
        assert mock_oracle.chat_simple_calls == 1
        assert dispatcher.get_function_definition("Add") is None

    @pytest.mark.asyncio
    async def test_case_variant_allowed_with_explicit_flag(self, settings, scripted_oracle, add_code):
        oracle = scripted_oracle([add_code, "def Add(params):\n    return 0\n"])
        dispatcher = ToolDispatcher(settings, oracle=oracle)
        await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, _create_args())
        args = _create_args(name="Add")
        args["allow_case_variant"] = True
        result = await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, args)
        assert result == "Successfully created/updated dynamic function: Add"
        assert oracle.chat_simple_calls == 2

    @pytest.mark.asyncio
    async def test_same_name_redefinition_is_not_a_case_variant(self, dispatcher):
        await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, _create_args())
        result = await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, _create_args())
        assert result.startswith("Successfully created")

    @pytest.mark.asyncio
    async def test_host_description_reaches_prompt(self, dispatcher, mock_oracle):
        args = _create_args()
        args["host_provided_api_description_for_new_func"] = "- external_apis.special(args) -> str"
        await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, args)
        assert "external_apis.special" in mock_oracle.prompts[0]

    @pytest.mark.asyncio
    async def test_registry_description_used_by_default(self, dispatcher, mock_oracle):
        await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, _create_args())
        assert "external_apis.upper" in mock_oracle.prompts[0]


# ── Invocation path ───────────────────────────────────────────


class TestInvoke:
    @pytest.mark.asyncio
    async def test_unknown_function_touches_nothing(self, settings, mock_oracle, synapse):
        validator = _CountingValidator()
        executor = _CountingExecutor()
        dispatcher = ToolDispatcher(
            settings, oracle=mock_oracle, validator=validator, executor=executor, synapse=synapse
        )
        result = await dispatcher.dispatch("ghost", {}, correlation_id="cid")
        assert result.startswith("Error: [not_found]")
        assert "ghost" in result
        assert mock_oracle.chat_simple_calls == 0
        assert validator.calls == 0
        assert executor.calls == 0
        assert [e.event_type for e in synapse.events_for("cid")] == ["dispatch_start", "function_not_found"]

    @pytest.mark.asyncio
    async def test_internal_record_not_invocable(self, dispatcher):
        await dispatcher.initialize()
        result = await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME + "_x", {})
        assert result.startswith("Error: [not_found]")
        dispatcher.store.put(FunctionDefinition(name="hidden", code="# internal", is_internal=True))
        result = await dispatcher.dispatch("hidden", {})
        assert result.startswith("Error: [invalid_request]")

    @pytest.mark.asyncio
    async def test_capability_overrides_replace_registry_for_one_call(self, dispatcher):
        await dispatcher.store_predefined_function({
            "name": "shout",
            "description": "Uppercase text via the host",
            "parameter_schema": {"type": "object"},
            "code": "def shout(params):\n    return external_apis.upper({'text': params['text']})\n",
        })

        async def fake_upper(args: dict) -> str:
            return "overridden"

        assert await dispatcher.dispatch("shout", {"text": "hi"}) == "HI"
        assert await dispatcher.dispatch("shout", {"text": "hi"}, {"upper": fake_upper}) == "overridden"
        assert await dispatcher.dispatch("shout", {"text": "hi"}) == "HI"

    @pytest.mark.asyncio
    async def test_execution_failure_returned_as_string(self, dispatcher, synapse):
        await dispatcher.store_predefined_function(
            FunctionDefinition(name="boom", code="def boom(params):\n    return 1 / 0\n")
        )
        result = await dispatcher.dispatch("boom", {}, correlation_id="cid")
        assert result.startswith("Error: [runtime_fault]")
        assert synapse.events_for("cid")[-1].event_type == "function_failed"

    @pytest.mark.asyncio
    async def test_handle_accepts_execution_request(self, dispatcher):
        await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, _create_args())
        assert await dispatcher.handle(ExecutionRequest(function_name="add", params={"a": 1, "b": 1})) == "2"


# ── Management operations ─────────────────────────────────────


class TestManagement:
    @pytest.mark.asyncio
    async def test_store_predefined_validates_first(self, dispatcher):
        result = await dispatcher.store_predefined_function({
            "name": "broken",
            "description": "does not parse",
            "parameter_schema": {"type": "object"},
            "code": "def broken(params)\n    return 1\n",
        })
        assert result.startswith("Error: [syntax_error]")
        assert dispatcher.get_function_definition("broken") is None

    @pytest.mark.asyncio
    async def test_store_predefined_reports_missing_fields(self, dispatcher):
        result = await dispatcher.store_predefined_function({"name": "x"})
        assert result.startswith("Error: [invalid_request]")
        assert "code" in result

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field, value", [("code", 123), ("description", ["not", "text"])])
    async def test_store_predefined_wrong_field_types(self, dispatcher, field, value):
        record = {
            "name": "f",
            "description": "d",
            "parameter_schema": {"type": "object"},
            "code": "def f(params):\n    return ''\n",
        }
        record[field] = value
        result = await dispatcher.store_predefined_function(record)
        assert result.startswith("Error: [invalid_request]")
        assert field in result
        assert dispatcher.get_function_definition("f") is None

    @pytest.mark.asyncio
    async def test_store_predefined_rejects_non_mapping(self, dispatcher):
        result = await dispatcher.store_predefined_function("def f(params): pass")
        assert result.startswith("Error: [invalid_request]")

    @pytest.mark.asyncio
    async def test_store_predefined_case_variant(self, dispatcher):
        record = {
            "name": "add",
            "description": "Add a and b",
            "parameter_schema": {"type": "object"},
            "code": "def add(params):\n    return params['a'] + params['b']\n",
        }
        assert (await dispatcher.store_predefined_function(record)).startswith("Successfully")
        upper = dict(record, name="ADD", code="def ADD(params):\n    return 0\n")
        rejected = await dispatcher.store_predefined_function(upper)
        assert rejected.startswith("Error: [invalid_request]")
        allowed = await dispatcher.store_predefined_function(upper, allow_case_variant=True)
        assert allowed == "Successfully stored predefined function: ADD"

    @pytest.mark.asyncio
    async def test_clear_keeps_creation_tool(self, dispatcher):
        await dispatcher.initialize()
        await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, _create_args())
        assert dispatcher.clear_functions() == "Cleared 1 dynamic function(s)."
        assert dispatcher.get_function_definition("add") is None
        assert dispatcher.get_function_definition(FUNCTION_CREATION_TOOL_NAME).is_internal

    @pytest.mark.asyncio
    async def test_available_tool_definitions(self, dispatcher):
        await dispatcher.initialize()
        await dispatcher.dispatch(FUNCTION_CREATION_TOOL_NAME, _create_args())
        names = [tool["function"]["name"] for tool in dispatcher.available_tool_definitions()]
        assert names == [FUNCTION_CREATION_TOOL_NAME, "add"]

    def test_get_function_definition_invalid_name(self, dispatcher):
        assert dispatcher.get_function_definition("../etc/passwd") is None

    @pytest.mark.asyncio
    async def test_records_survive_new_dispatcher(self, settings, mock_oracle):
        first = ToolDispatcher(settings, oracle=mock_oracle)
        await first.dispatch(FUNCTION_CREATION_TOOL_NAME, _create_args())
        second = ToolDispatcher(settings, store=FunctionStore(settings.function_store_dir), oracle=mock_oracle)
        assert await second.dispatch("add", {"a": 20, "b": 22}) == "42"
