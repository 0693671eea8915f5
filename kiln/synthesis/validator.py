"""Validator — checks candidate source without running it.

Rules:
  - the code compiles under RestrictedPython's policy (parse errors and
    forbidden constructs such as ``async def``, dunder access or ``exec``
    statements are rejected with the compiler's message)
  - the last top-level binding of ``expected_name`` is a callable
    (``def expected_name(...)`` or ``expected_name = lambda ...``)

Nothing is executed and no capability is reachable from here.
"""

from __future__ import annotations

import ast

import structlog
from RestrictedPython import compile_restricted_exec

from kiln.models.errors import CodeSyntaxError
from kiln.models.schemas import is_valid_function_name

logger = structlog.get_logger().bind(component="synthesis.validator")


_SCOPES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef, ast.Lambda)


def _defines_callable(node: ast.stmt, name: str) -> bool:
    if isinstance(node, ast.FunctionDef):
        return node.name == name
    if isinstance(node, ast.Assign) and isinstance(node.value, ast.Lambda):
        return any(isinstance(t, ast.Name) and t.id == name for t in node.targets)
    return False


def _rebinds(node: ast.AST, name: str) -> bool:
    """True if ``node`` binds or deletes ``name`` in the module scope.

    Bodies of nested functions, classes and lambdas are their own scope and
    are not searched; their own names are.
    """
    stack = [node]
    while stack:
        current = stack.pop()
        if isinstance(current, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            if current.name == name:
                return True
            stack.extend(current.decorator_list)
            if current is not node:
                continue
        if isinstance(current, ast.Lambda) and current is not node:
            continue
        if isinstance(current, ast.Name) and current.id == name:
            if isinstance(current.ctx, (ast.Store, ast.Del)):
                return True
        if isinstance(current, ast.alias) and (current.asname or current.name.split(".")[0]) == name:
            return True
        if isinstance(current, ast.ExceptHandler) and current.name == name:
            return True
        if isinstance(current, (ast.MatchAs, ast.MatchStar)) and current.name == name:
            return True
        if isinstance(current, ast.MatchMapping) and current.rest == name:
            return True
        if isinstance(current, _SCOPES) and current is node:
            continue
        stack.extend(ast.iter_child_nodes(current))
    return False


def _binds_callable(tree: ast.Module, name: str) -> bool:
    """The last top-level statement that binds ``name`` must define it as callable.

    A ``def`` or lambda assignment followed by any other rebinding (plain
    assignment, import alias, class, loop target, ``del``) does not count,
    and neither does a definition that only happens inside an ``if``/``try``.
    """
    bound = False
    for node in tree.body:
        if _defines_callable(node, name):
            bound = True
        elif _rebinds(node, name):
            bound = False
    return bound


class Validator:
    """Static gate between the Synthesizer and the FunctionStore."""

    def validate(self, candidate_code: str, expected_name: str) -> None:
        """Return None if the code is acceptable.

        Raises:
            CodeSyntaxError: with the underlying compiler message, or a note
                that ``expected_name`` is not defined as a callable.
        """
        if not is_valid_function_name(expected_name):
            raise CodeSyntaxError(f"'{expected_name}' is not a valid function name")

        try:
            result = compile_restricted_exec(
                candidate_code, filename=f"<syntax_check:{expected_name}>"
            )
        except ValueError as exc:  # e.g. NUL bytes on older interpreters
            raise CodeSyntaxError(str(exc)) from exc
        if result.errors:
            message = "; ".join(result.errors)
            logger.warning("validation_failed", function=expected_name, error=message[:200])
            raise CodeSyntaxError(message)

        tree = ast.parse(candidate_code)
        if not _binds_callable(tree, expected_name):
            logger.warning("validation_missing_callable", function=expected_name)
            raise CodeSyntaxError(
                f"Generated code did not define a function named {expected_name}."
            )
        logger.info("validation_passed", function=expected_name)
