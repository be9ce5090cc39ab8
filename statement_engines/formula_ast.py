"""
statement_engines.formula_ast -- Restricted AST for formula and condition expressions.

Template formulas and display conditions are arithmetic/comparison
expressions over line codes and event codes.  This module parses them with
``ast.parse(mode="eval")``, rejects anything outside a fixed node set, and
evaluates the survivors with Decimal arithmetic.  Nothing is ever passed to
``eval``.

Allowed:
  - Arithmetic: +, -, *, / and unary +/-
  - Comparisons: <, <=, >, >=, ==, !=
  - Logical: and, or, not (template spellings &&, || and ! are accepted)
  - Names: upper-case line/event codes resolved through a callback
  - Literals: numbers, booleans
  - Functions: SUM, DIFF, MAX, MIN, AVG, ABS

Rejected:
  - attribute access, subscripts, lambdas, comprehensions, arbitrary calls
"""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass
from decimal import Decimal, DivisionByZero, InvalidOperation
from typing import Callable

from statement_kernel.domain.amounts import ZERO
from statement_kernel.exceptions import FormulaEvaluationError

ALLOWED_FUNCTIONS: frozenset[str] = frozenset({"SUM", "DIFF", "MAX", "MIN", "AVG", "ABS"})

_BOOLEAN_NAMES = {"True": True, "False": False, "true": True, "false": False}

# JS-style logical operators found in stored templates
_AND = re.compile(r"&&")
_OR = re.compile(r"\|\|")
_NOT = re.compile(r"!(?!=)")

Resolver = Callable[[str], Decimal]


@dataclass(frozen=True)
class ExpressionError:
    """A validation error found in a formula or condition expression."""

    expression: str
    message: str
    node_type: str = ""


def normalize_expression(expression: str) -> str:
    """Rewrite template logical operators into Python spellings."""
    text = _AND.sub(" and ", expression)
    text = _OR.sub(" or ", text)
    return _NOT.sub(" not ", text)


def parse_expression(expression: str) -> ast.expr:
    """Parse and validate; raise FormulaEvaluationError on any violation."""
    normalized = normalize_expression(expression).strip()
    try:
        tree = ast.parse(normalized, mode="eval")
    except SyntaxError as exc:
        raise FormulaEvaluationError(expression, f"Syntax error: {exc.msg}") from exc

    errors: list[ExpressionError] = []
    _validate_node(tree.body, expression, errors)
    if errors:
        raise FormulaEvaluationError(expression, "; ".join(e.message for e in errors))
    return tree.body


def validate_expression(expression: str) -> list[ExpressionError]:
    """Return every violation; an empty list means the expression is valid."""
    normalized = normalize_expression(expression).strip()
    try:
        tree = ast.parse(normalized, mode="eval")
    except SyntaxError as exc:
        return [ExpressionError(expression=expression, message=f"Syntax error: {exc.msg}")]

    errors: list[ExpressionError] = []
    _validate_node(tree.body, expression, errors)
    return errors


def _validate_node(node: ast.AST, expression: str, errors: list[ExpressionError]) -> None:
    if isinstance(node, ast.BoolOp):
        for value in node.values:
            _validate_node(value, expression, errors)

    elif isinstance(node, ast.UnaryOp):
        if not isinstance(node.op, (ast.Not, ast.USub, ast.UAdd)):
            errors.append(
                ExpressionError(
                    expression=expression,
                    message=f"Disallowed unary operator: {type(node.op).__name__}",
                    node_type=type(node.op).__name__,
                )
            )
        _validate_node(node.operand, expression, errors)

    elif isinstance(node, ast.Compare):
        _validate_node(node.left, expression, errors)
        for comparator in node.comparators:
            _validate_node(comparator, expression, errors)
        for op in node.ops:
            if not isinstance(op, (ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE)):
                errors.append(
                    ExpressionError(
                        expression=expression,
                        message=f"Disallowed comparison: {type(op).__name__}",
                        node_type=type(op).__name__,
                    )
                )

    elif isinstance(node, ast.BinOp):
        if isinstance(node.op, (ast.Add, ast.Sub, ast.Mult, ast.Div)):
            _validate_node(node.left, expression, errors)
            _validate_node(node.right, expression, errors)
        else:
            errors.append(
                ExpressionError(
                    expression=expression,
                    message=f"Disallowed binary operator: {type(node.op).__name__}",
                    node_type=type(node.op).__name__,
                )
            )

    elif isinstance(node, ast.Call):
        if isinstance(node.func, ast.Name) and node.func.id.upper() in ALLOWED_FUNCTIONS:
            if node.keywords:
                errors.append(
                    ExpressionError(
                        expression=expression,
                        message=f"Keyword arguments are not allowed: {node.func.id}",
                        node_type="Call",
                    )
                )
            for arg in node.args:
                _validate_node(arg, expression, errors)
        else:
            errors.append(
                ExpressionError(
                    expression=expression,
                    message=f"Disallowed function call: {_get_name(node.func)}",
                    node_type="Call",
                )
            )

    elif isinstance(node, ast.Name):
        pass

    elif isinstance(node, ast.Constant):
        if not isinstance(node.value, (bool, int, float)):
            errors.append(
                ExpressionError(
                    expression=expression,
                    message=f"Disallowed constant type: {type(node.value).__name__}",
                    node_type="Constant",
                )
            )

    else:
        errors.append(
            ExpressionError(
                expression=expression,
                message=f"Disallowed AST node type: {type(node).__name__}",
                node_type=type(node).__name__,
            )
        )


def _get_name(node: ast.AST) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return f"{_get_name(node.value)}.{node.attr}"
    return type(node).__name__


# =========================================================================
# Evaluation
# =========================================================================


def _as_decimal(value: Decimal | bool) -> Decimal:
    if isinstance(value, bool):
        return Decimal(1) if value else ZERO
    return value


def _truthy(value: Decimal | bool) -> bool:
    if isinstance(value, bool):
        return value
    return value != ZERO


def evaluate_expression(expression: str, resolve: Resolver) -> Decimal | bool:
    """Evaluate ``expression``; names are looked up through ``resolve``.

    Raises:
        FormulaEvaluationError: invalid syntax, disallowed construct,
            division by zero, or a function called with bad arity.
    """
    node = parse_expression(expression)
    try:
        return _eval(node, expression, resolve)
    except (DivisionByZero, InvalidOperation, ZeroDivisionError) as exc:
        raise FormulaEvaluationError(expression, "Division by zero") from exc


def _eval(node: ast.AST, expression: str, resolve: Resolver) -> Decimal | bool:
    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool):
            return node.value
        return Decimal(str(node.value))

    if isinstance(node, ast.Name):
        if node.id in _BOOLEAN_NAMES:
            return _BOOLEAN_NAMES[node.id]
        return resolve(node.id)

    if isinstance(node, ast.UnaryOp):
        operand = _eval(node.operand, expression, resolve)
        if isinstance(node.op, ast.Not):
            return not _truthy(operand)
        if isinstance(node.op, ast.USub):
            return -_as_decimal(operand)
        return _as_decimal(operand)

    if isinstance(node, ast.BinOp):
        left = _as_decimal(_eval(node.left, expression, resolve))
        right = _as_decimal(_eval(node.right, expression, resolve))
        if isinstance(node.op, ast.Add):
            return left + right
        if isinstance(node.op, ast.Sub):
            return left - right
        if isinstance(node.op, ast.Mult):
            return left * right
        if right == ZERO:
            raise FormulaEvaluationError(expression, "Division by zero")
        return left / right

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_truthy(_eval(v, expression, resolve)) for v in node.values)
        return any(_truthy(_eval(v, expression, resolve)) for v in node.values)

    if isinstance(node, ast.Compare):
        left = _as_decimal(_eval(node.left, expression, resolve))
        for op, comparator in zip(node.ops, node.comparators):
            right = _as_decimal(_eval(comparator, expression, resolve))
            if not _compare(op, left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.Call):
        name = node.func.id.upper()  # validated as ast.Name
        args = [_as_decimal(_eval(arg, expression, resolve)) for arg in node.args]
        return _call(name, args, expression)

    raise FormulaEvaluationError(expression, f"Unsupported node: {type(node).__name__}")


def _compare(op: ast.cmpop, left: Decimal, right: Decimal) -> bool:
    if isinstance(op, ast.Eq):
        return left == right
    if isinstance(op, ast.NotEq):
        return left != right
    if isinstance(op, ast.Lt):
        return left < right
    if isinstance(op, ast.LtE):
        return left <= right
    if isinstance(op, ast.Gt):
        return left > right
    return left >= right


def _call(name: str, args: list[Decimal], expression: str) -> Decimal:
    if name == "DIFF":
        if len(args) != 2:
            raise FormulaEvaluationError(expression, "DIFF requires exactly two arguments")
        return args[0] - args[1]
    if name == "ABS":
        if len(args) != 1:
            raise FormulaEvaluationError(expression, "ABS requires exactly one argument")
        return abs(args[0])
    if not args:
        raise FormulaEvaluationError(expression, f"{name} requires at least one argument")
    if name == "SUM":
        return sum(args, ZERO)
    if name == "MAX":
        return max(args)
    if name == "MIN":
        return min(args)
    return sum(args, ZERO) / Decimal(len(args))
