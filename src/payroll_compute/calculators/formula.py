"""Restricted arithmetic formulas for pay rules.

Formulas are single Python expressions parsed with ``ast`` and evaluated
by walking a whitelisted subset of the tree; nothing is ever passed to
``eval``.

Allowed:
  - Literals: numbers (evaluated as Decimal), strings, booleans
  - Names: any variable present in the calculation context
  - Arithmetic: + - * / and unary minus
  - Comparisons: <, <=, >, >=, ==, !=
  - Logical: and, or, not
  - Conditional: a if cond else b
  - Functions: min, max, abs, round(x, places), tax(code, income),
    convert(amount, from_ccy, to_ccy)

Rejected:
  - attribute access, subscripts, comprehensions, lambda, keyword
    arguments, any other function
"""

from __future__ import annotations

import ast
import asyncio
import inspect
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Any, Callable, Mapping

from payroll_compute.errors import FormulaEvaluationError, FormulaTimeoutError

BUILTIN_FUNCTIONS: frozenset[str] = frozenset({"min", "max", "abs", "round"})
CONTEXT_FUNCTIONS: frozenset[str] = frozenset({"tax", "convert"})
ALLOWED_FUNCTIONS: frozenset[str] = BUILTIN_FUNCTIONS | CONTEXT_FUNCTIONS

_BINARY_OPS: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: lambda a, b: a + b,
    ast.Sub: lambda a, b: a - b,
    ast.Mult: lambda a, b: a * b,
    ast.Div: lambda a, b: a / b,
}

_COMPARE_OPS: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
    ast.Eq: lambda a, b: a == b,
    ast.NotEq: lambda a, b: a != b,
    ast.Lt: lambda a, b: a < b,
    ast.LtE: lambda a, b: a <= b,
    ast.Gt: lambda a, b: a > b,
    ast.GtE: lambda a, b: a >= b,
}

MAX_NESTING_DEPTH = 100

FormulaFunction = Callable[..., Any]


@dataclass(frozen=True)
class FormulaIssue:
    """A validation problem found in a formula."""

    formula: str
    message: str
    node_type: str = ""


def validate_formula(formula: str) -> list[FormulaIssue]:
    """Validate a formula against the restricted grammar.

    Returns a list of issues. Empty list means the formula is valid.
    """
    if not formula or not formula.strip():
        return [FormulaIssue(formula=formula, message="Formula is empty")]
    try:
        tree = ast.parse(formula.strip(), mode="eval")
    except SyntaxError as e:
        return [FormulaIssue(formula=formula, message=f"Syntax error: {e.msg}")]
    except (RecursionError, MemoryError):
        return [FormulaIssue(formula=formula, message="Formula is too deeply nested")]
    except ValueError as e:
        return [FormulaIssue(formula=formula, message=f"Invalid formula: {e}")]

    depth = _nesting_depth(tree)
    if depth > MAX_NESTING_DEPTH:
        return [
            FormulaIssue(
                formula=formula,
                message=f"Formula is nested {depth} levels deep, at most {MAX_NESTING_DEPTH} allowed",
            )
        ]

    issues: list[FormulaIssue] = []
    _validate_node(tree.body, formula, issues)
    return issues


def referenced_names(formula: str) -> set[str]:
    """Variable names a valid formula reads from the context."""
    tree = parse_formula(formula)
    called = {
        id(node.func) for node in ast.walk(tree) if isinstance(node, ast.Call)
    }
    return {
        node.id
        for node in ast.walk(tree)
        if isinstance(node, ast.Name) and id(node) not in called
    }


@lru_cache(maxsize=512)
def parse_formula(formula: str) -> ast.Expression:
    """Parse and validate a formula.

    Raises:
        FormulaEvaluationError: If the formula is not valid
    """
    issues = validate_formula(formula)
    if issues:
        raise FormulaEvaluationError(formula, "; ".join(issue.message for issue in issues))
    return ast.parse(formula.strip(), mode="eval")


def _nesting_depth(tree: ast.AST) -> int:
    deepest = 0
    stack = [(tree, 1)]
    while stack:
        node, depth = stack.pop()
        deepest = max(deepest, depth)
        stack.extend((child, depth + 1) for child in ast.iter_child_nodes(node))
    return deepest


def _validate_node(node: ast.AST, formula: str, issues: list[FormulaIssue]) -> None:
    """Recursively validate an AST node."""
    if isinstance(node, ast.BoolOp):
        for value in node.values:
            _validate_node(value, formula, issues)

    elif isinstance(node, ast.UnaryOp):
        if not isinstance(node.op, (ast.USub, ast.UAdd, ast.Not)):
            issues.append(
                FormulaIssue(formula, f"Disallowed unary operator: {type(node.op).__name__}", "UnaryOp")
            )
        _validate_node(node.operand, formula, issues)

    elif isinstance(node, ast.BinOp):
        if type(node.op) not in _BINARY_OPS:
            issues.append(
                FormulaIssue(formula, f"Disallowed binary operator: {type(node.op).__name__}", "BinOp")
            )
        _validate_node(node.left, formula, issues)
        _validate_node(node.right, formula, issues)

    elif isinstance(node, ast.Compare):
        for op in node.ops:
            if type(op) not in _COMPARE_OPS:
                issues.append(
                    FormulaIssue(formula, f"Disallowed comparison: {type(op).__name__}", "Compare")
                )
        _validate_node(node.left, formula, issues)
        for comparator in node.comparators:
            _validate_node(comparator, formula, issues)

    elif isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in ALLOWED_FUNCTIONS:
            issues.append(
                FormulaIssue(formula, f"Disallowed function call: {ast.unparse(node.func)}", "Call")
            )
        if node.keywords:
            issues.append(FormulaIssue(formula, "Keyword arguments are not allowed", "Call"))
        for arg in node.args:
            _validate_node(arg, formula, issues)

    elif isinstance(node, ast.IfExp):
        _validate_node(node.test, formula, issues)
        _validate_node(node.body, formula, issues)
        _validate_node(node.orelse, formula, issues)

    elif isinstance(node, ast.Name):
        pass

    elif isinstance(node, ast.Constant):
        if not isinstance(node.value, (int, float, str, bool)):
            issues.append(
                FormulaIssue(
                    formula,
                    f"Disallowed constant type: {type(node.value).__name__}",
                    "Constant",
                )
            )

    else:
        issues.append(
            FormulaIssue(formula, f"Disallowed expression: {type(node).__name__}", type(node).__name__)
        )


def to_decimal(value: Any) -> Any:
    """Coerce numeric values to Decimal, leaving other types untouched."""
    if isinstance(value, bool) or isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    return value


def _round(value: Decimal, places: Decimal = Decimal("0")) -> Decimal:
    exponent = Decimal(1).scaleb(-int(places))
    return value.quantize(exponent, rounding=ROUND_HALF_UP)


_BUILTINS: dict[str, Callable[..., Any]] = {
    "min": min,
    "max": max,
    "abs": abs,
    "round": _round,
}


class _Evaluation:
    """State of a single evaluation: variables, functions, step budget."""

    def __init__(
        self,
        formula: str,
        variables: Mapping[str, Any],
        functions: Mapping[str, FormulaFunction],
        max_steps: int,
    ):
        self.formula = formula
        self.variables = variables
        self.functions = functions
        self.max_steps = max_steps
        self.steps = 0

    def _tick(self) -> None:
        self.steps += 1
        if self.steps > self.max_steps:
            raise FormulaTimeoutError(self.formula, f"exceeded {self.max_steps} evaluation steps")

    async def eval(self, node: ast.AST) -> Any:
        self._tick()

        if isinstance(node, ast.Constant):
            return to_decimal(node.value)

        if isinstance(node, ast.Name):
            if node.id not in self.variables:
                raise FormulaEvaluationError(self.formula, f"unknown variable '{node.id}'")
            return to_decimal(self.variables[node.id])

        if isinstance(node, ast.BinOp):
            left = await self.eval(node.left)
            right = await self.eval(node.right)
            return _BINARY_OPS[type(node.op)](left, right)

        if isinstance(node, ast.UnaryOp):
            operand = await self.eval(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            return +operand

        if isinstance(node, ast.BoolOp):
            is_and = isinstance(node.op, ast.And)
            value: Any = None
            for operand in node.values:
                value = await self.eval(operand)
                if bool(value) != is_and:
                    return value
            return value

        if isinstance(node, ast.Compare):
            left = await self.eval(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = await self.eval(comparator)
                if not _COMPARE_OPS[type(op)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if await self.eval(node.test):
                return await self.eval(node.body)
            return await self.eval(node.orelse)

        if isinstance(node, ast.Call):
            name = node.func.id  # type: ignore[attr-defined]
            args = [await self.eval(arg) for arg in node.args]
            if name in _BUILTINS:
                return _BUILTINS[name](*args)
            function = self.functions.get(name)
            if function is None:
                raise FormulaEvaluationError(self.formula, f"function '{name}' is not available here")
            result = function(*args)
            if inspect.isawaitable(result):
                result = await result
            return to_decimal(result)

        raise FormulaEvaluationError(self.formula, f"unsupported expression {type(node).__name__}")


class FormulaEvaluator:
    """Evaluates pay rule formulas against a calculation context.

    Evaluation is bounded twice: by a step budget counted per visited node
    and by a wall-clock timeout around the whole evaluation (which covers
    awaited tax() and convert() lookups). Exceeding either raises
    FormulaTimeoutError.
    """

    def __init__(self, max_steps: int = 10_000, timeout_seconds: float = 0.5):
        self.max_steps = max_steps
        self.timeout_seconds = timeout_seconds

    async def evaluate(
        self,
        formula: str,
        variables: Mapping[str, Any],
        functions: Mapping[str, FormulaFunction] | None = None,
    ) -> Decimal:
        """Evaluate a formula to a Decimal.

        Raises:
            FormulaEvaluationError: If parsing or evaluation fails or the
                result is not a number
            FormulaTimeoutError: If the step budget or timeout is exceeded
        """
        tree = parse_formula(formula)
        evaluation = _Evaluation(formula, variables, functions or {}, self.max_steps)

        try:
            value = await asyncio.wait_for(evaluation.eval(tree.body), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise FormulaTimeoutError(formula, f"exceeded {self.timeout_seconds}s") from e
        except FormulaEvaluationError:
            raise
        except (ArithmeticError, TypeError, ValueError, RecursionError) as e:
            raise FormulaEvaluationError(formula, f"{type(e).__name__}: {e}") from e

        if isinstance(value, bool) or not isinstance(value, Decimal):
            raise FormulaEvaluationError(
                formula, f"result must be a number, got {type(value).__name__}"
            )
        if not value.is_finite():
            raise FormulaEvaluationError(formula, "result is not finite")
        return value
