"""PromptBuilder and Validator — the pure halves of synthesis."""

from __future__ import annotations

import pytest

from kiln.models.errors import CodeSyntaxError
from kiln.models.schemas import FunctionSpec, RepairContext
from kiln.synthesis import prompts
from kiln.synthesis.validator import Validator

SPEC = FunctionSpec(
    name="add",
    description="Add a and b",
    parameter_schema={"type": "object", "properties": {"a": {}, "b": {}}},
)


# ── PromptBuilder ─────────────────────────────────────────────


class TestPrompts:
    def test_synthesis_prompt_carries_spec_and_capabilities(self):
        text = prompts.build(SPEC, "- external_apis.echo(args: dict) -> str")
        assert "Function Name: add" in text
        assert "Add a and b" in text
        assert "external_apis.echo" in text
        assert "def add(params):" in text
        assert "previously generated" not in text

    def test_repair_prompt_includes_failed_code_and_error(self):
        ctx = RepairContext(previous_code="def add(params) return 1", error_message="invalid syntax")
        text = prompts.build(SPEC, "none", ctx)
        assert "def add(params) return 1" in text
        assert "invalid syntax" in text
        assert "Function Name: add" in text

    def test_build_is_deterministic(self):
        assert prompts.build(SPEC, "caps") == prompts.build(SPEC, "caps")


# ── Validator ─────────────────────────────────────────────────


class TestValidator:
    def setup_method(self):
        self.validator = Validator()

    def test_accepts_plain_function(self):
        self.validator.validate("def add(params):\n    return str(params['a'] + params['b'])\n", "add")

    def test_accepts_lambda_binding(self):
        self.validator.validate("add = lambda params: 'x'\n", "add")

    def test_rejects_syntax_error(self):
        with pytest.raises(CodeSyntaxError):
            self.validator.validate("def add(params)\n    return 1\n", "add")

    def test_rejects_wrong_name(self):
        with pytest.raises(CodeSyntaxError, match="did not define a function named add"):
            self.validator.validate("def subtract(params):\n    return ''\n", "add")

    def test_rejects_async_def(self):
        with pytest.raises(CodeSyntaxError):
            self.validator.validate("async def add(params):\n    return ''\n", "add")

    def test_rejects_dunder_access(self):
        with pytest.raises(CodeSyntaxError):
            self.validator.validate(
                "def add(params):\n    return params.__class__.__name__\n", "add"
            )

    def test_rejects_invalid_expected_name(self):
        with pytest.raises(CodeSyntaxError):
            self.validator.validate("def f(params):\n    return ''\n", "123bad")

    @pytest.mark.parametrize(
        "tail",
        [
            "add = 5\n",
            "import math as add\n",
            "class add:\n    pass\n",
            "for add in range(3):\n    pass\n",
            "del add\n",
            "if True:\n    add = None\n",
        ],
    )
    def test_rejects_later_rebinding(self, tail):
        code = "def add(params):\n    return 1\n" + tail
        with pytest.raises(CodeSyntaxError):
            self.validator.validate(code, "add")

    def test_accepts_redefinition_as_last_binding(self):
        code = "add = 5\ndef add(params):\n    return 1\n"
        self.validator.validate(code, "add")

    def test_local_assignment_in_other_function_is_ignored(self):
        code = (
            "def add(params):\n    return 1\n"
            "def helper(params):\n    add = 2\n    return add\n"
        )
        self.validator.validate(code, "add")

    def test_conditional_definition_rejected(self):
        code = "if True:\n    def add(params):\n        return 1\n"
        with pytest.raises(CodeSyntaxError):
            self.validator.validate(code, "add")
