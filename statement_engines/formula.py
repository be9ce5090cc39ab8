"""
statement_engines.formula -- Formula parsing, evaluation and line dependency ordering.

Responsibility:
    Parse template formulas into a closed set of typed operations, evaluate
    them against a read-only value context, build the dependency graph
    between statement lines, detect cycles, order evaluation topologically,
    and re-check computed line values after a statement is assembled.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Used by the line processor (evaluation), the template loader (syntax
    validation) and the statement generator (dependency ordering and
    post-assembly re-validation).

Grammar (keywords are case-insensitive):
    SUM(a, b, ...)                     sum of the referenced values
    DIFF(a, b)                         a - b
    LEFT = RIGHT                       COMPUTED_BALANCE; evaluates the left side
    WORKING_CAPITAL_CHANGE(kind)       kind is RECEIVABLES or PAYABLES
    CROSS_STATEMENT_SURPLUS_DEFICIT    surplus/deficit carried in from REV_EXP
    anything else                      CUSTOM arithmetic over line/event codes

Invariants enforced:
    - SUM / DIFF / COMPUTED_BALANCE operands are looked up in event values
      first, then line values; a missing or zero value is zero.
    - CUSTOM expressions resolve names in line values first, then event
      values; unknown names are zero.
    - A formula with a cycle in its line references is a configuration error
      carrying the exact cycle path, e.g. [A, B, A].
    - Every dependency of a line is ordered before the line itself.

Failure modes:
    - FormulaEvaluationError: malformed expression, division by zero.
    - InvalidFormulaOperandError: WORKING_CAPITAL_CHANGE with an unknown kind.
    - CircularDependencyError: from resolve_dependencies.
    - FormulaSyntaxError: from require_valid_syntax.

Usage:
    from statement_engines.formula import FormulaContext, FormulaEngine

    engine = FormulaEngine()
    ctx = FormulaContext(line_values={"A": Decimal("10")}, event_values={})
    engine.evaluate("A * 2", ctx)    # Decimal("20")
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Iterable, Mapping, Sequence, Union

from statement_kernel.domain.amounts import BALANCE_TOLERANCE, ZERO, fmt
from statement_kernel.domain.statement import StatementLine, WorkingCapitalAccount
from statement_kernel.domain.template import LineTemplate
from statement_kernel.exceptions import (
    CircularDependencyError,
    FormulaEvaluationError,
    FormulaSyntaxError,
    InvalidFormulaOperandError,
)
from statement_kernel.logging_config import get_logger
from statement_engines.formula_ast import evaluate_expression, validate_expression
from statement_engines.tracer import traced_engine
from statement_engines.working_capital import apply_cash_flow_sign, sum_account_balance

logger = get_logger("engines.formula")

WORKING_CAPITAL_CHANGE = "WORKING_CAPITAL_CHANGE"
CROSS_STATEMENT_SURPLUS_DEFICIT = "CROSS_STATEMENT_SURPLUS_DEFICIT"

FORMULA_KEYWORDS: frozenset[str] = frozenset(
    {
        "SUM", "DIFF", "MAX", "MIN", "AVG", "ABS", "COUNT", "IF", "AND", "OR", "NOT",
        WORKING_CAPITAL_CHANGE, CROSS_STATEMENT_SURPLUS_DEFICIT,
    }
)

DEFAULT_MAX_DEPENDENCIES = 10
DEFAULT_MAX_VARIABLE_NAME_LENGTH = 50
DEFAULT_SIGNIFICANT_IMBALANCE = Decimal("100")

_IDENTIFIER = re.compile(r"\b[A-Z_][A-Z0-9_]*\b")
_VALID_VARIABLE = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_FUNCTION_CALL = re.compile(r"\b(SUM|DIFF|MAX|MIN|AVG)\s*\(([^)]*)\)", re.IGNORECASE)
_SIMPLE_PARAM = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")
_WHOLE_SUM = re.compile(r"^SUM\s*\(([^()]*)\)$", re.IGNORECASE)
_WHOLE_DIFF = re.compile(r"^DIFF\s*\(([^(),]*),([^(),]*)\)$", re.IGNORECASE)
_WORKING_CAPITAL = re.compile(r"WORKING_CAPITAL_CHANGE\s*\(\s*(\w+)\s*\)", re.IGNORECASE)
# A lone "=" that is not part of ==, <=, >= or !=
_EQUATION = re.compile(r"(?<![=<>!])=(?!=)")
_OPERAND_SPLIT = re.compile(r"[+\-*/()\s]+")


# =========================================================================
# Operations
# =========================================================================


class OperationKind(str, Enum):
    SUM = "SUM"
    DIFF = "DIFF"
    COMPUTED_BALANCE = "COMPUTED_BALANCE"
    CUSTOM = "CUSTOM"
    WORKING_CAPITAL_CHANGE = "WORKING_CAPITAL_CHANGE"
    CROSS_STATEMENT_SURPLUS_DEFICIT = "CROSS_STATEMENT_SURPLUS_DEFICIT"


@dataclass(frozen=True)
class SumOperation:
    codes: tuple[str, ...]
    kind: OperationKind = OperationKind.SUM

    @property
    def operands(self) -> tuple[str, ...]:
        return self.codes


@dataclass(frozen=True)
class DiffOperation:
    minuend: str
    subtrahend: str
    kind: OperationKind = OperationKind.DIFF

    @property
    def operands(self) -> tuple[str, ...]:
        return (self.minuend, self.subtrahend)


@dataclass(frozen=True)
class ComputedBalanceOperation:
    equation: str
    left_side: tuple[str, ...]
    right_side: tuple[str, ...]
    kind: OperationKind = OperationKind.COMPUTED_BALANCE

    @property
    def operands(self) -> tuple[str, ...]:
        return self.left_side + self.right_side


@dataclass(frozen=True)
class CustomOperation:
    expression: str
    variables: tuple[str, ...]
    kind: OperationKind = OperationKind.CUSTOM

    @property
    def operands(self) -> tuple[str, ...]:
        return self.variables


@dataclass(frozen=True)
class WorkingCapitalChangeOperation:
    account: str
    kind: OperationKind = OperationKind.WORKING_CAPITAL_CHANGE

    @property
    def operands(self) -> tuple[str, ...]:
        return ()


@dataclass(frozen=True)
class CrossStatementOperation:
    kind: OperationKind = OperationKind.CROSS_STATEMENT_SURPLUS_DEFICIT

    @property
    def operands(self) -> tuple[str, ...]:
        return ()


FormulaOperation = Union[
    SumOperation,
    DiffOperation,
    ComputedBalanceOperation,
    CustomOperation,
    WorkingCapitalChangeOperation,
    CrossStatementOperation,
]


# =========================================================================
# Context
# =========================================================================


@dataclass(frozen=True)
class BalanceSheetContext:
    """Event-code balances for the current and previous period."""

    current: Mapping[str, Decimal]
    previous: Mapping[str, Decimal]


@dataclass(frozen=True)
class CrossStatementValues:
    surplus_deficit: Decimal | None = None
    previous_surplus_deficit: Decimal | None = None


@dataclass(frozen=True)
class FormulaContext:
    line_values: Mapping[str, Decimal]
    event_values: Mapping[str, Decimal]
    previous_period_values: Mapping[str, Decimal] = field(default_factory=dict)
    balance_sheet: BalanceSheetContext | None = None
    cross_statement: CrossStatementValues | None = None


# =========================================================================
# Dependency graph
# =========================================================================


@dataclass(frozen=True)
class DependencyNode:
    line_code: str
    formula: str | None
    dependencies: tuple[str, ...]
    dependents: tuple[str, ...]


@dataclass(frozen=True)
class DependencyGraph:
    """Nodes keyed by line code in template order; edges are formula references."""

    nodes: Mapping[str, DependencyNode]

    def edges(self, line_code: str) -> tuple[str, ...]:
        node = self.nodes.get(line_code)
        return node.dependencies if node else ()


@dataclass(frozen=True)
class SyntaxCheck:
    is_valid: bool
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class CalculationCheck:
    """Outcome of re-evaluating computed lines of an assembled statement."""

    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    lines_checked: int = 0

    @property
    def is_valid(self) -> bool:
        return not self.errors


# =========================================================================
# Engine
# =========================================================================


class FormulaEngine:
    """
    Stateless formula engine.

    Every call receives all of its inputs; nothing computed is retained
    between calls, so one instance can be shared across requests.
    """

    def __init__(
        self,
        max_dependencies: int = DEFAULT_MAX_DEPENDENCIES,
        max_variable_name_length: int = DEFAULT_MAX_VARIABLE_NAME_LENGTH,
        tolerance: Decimal = BALANCE_TOLERANCE,
        significant_imbalance: Decimal = DEFAULT_SIGNIFICANT_IMBALANCE,
    ):
        self.max_dependencies = max_dependencies
        self.max_variable_name_length = max_variable_name_length
        self.tolerance = tolerance
        self.significant_imbalance = significant_imbalance

    # ---------------------------------------------------------------------
    # Parsing
    # ---------------------------------------------------------------------

    def parse(self, formula: str) -> FormulaOperation:
        """Classify a formula into its operation kind."""
        text = formula.strip()
        upper = text.upper()

        if upper.startswith(WORKING_CAPITAL_CHANGE + "(") or upper.startswith(
            WORKING_CAPITAL_CHANGE + " "
        ):
            match = _WORKING_CAPITAL.search(text)
            if not match:
                raise FormulaEvaluationError(
                    formula, "Invalid WORKING_CAPITAL_CHANGE formula syntax"
                )
            return WorkingCapitalChangeOperation(account=match.group(1).upper())

        if upper == CROSS_STATEMENT_SURPLUS_DEFICIT:
            return CrossStatementOperation()

        whole_sum = _WHOLE_SUM.match(text)
        if whole_sum:
            return SumOperation(codes=_split_params(whole_sum.group(1)))

        whole_diff = _WHOLE_DIFF.match(text)
        if whole_diff:
            return DiffOperation(
                minuend=_clean_param(whole_diff.group(1)),
                subtrahend=_clean_param(whole_diff.group(2)),
            )

        if _EQUATION.search(text):
            parts = _EQUATION.split(text)
            if len(parts) != 2:
                raise FormulaEvaluationError(formula, "Invalid balance equation")
            return ComputedBalanceOperation(
                equation=text,
                left_side=_expression_operands(parts[0]),
                right_side=_expression_operands(parts[1]),
            )

        return CustomOperation(expression=text, variables=self.extract_dependencies(text))

    # ---------------------------------------------------------------------
    # Evaluation
    # ---------------------------------------------------------------------

    def evaluate(self, formula: str, context: FormulaContext) -> Decimal:
        """
        Evaluate ``formula`` against ``context``.

        Raises:
            FormulaEvaluationError: the formula cannot be evaluated.
        """
        operation = self.parse(formula)
        return self.execute(operation, context, formula)

    def execute(
        self, operation: FormulaOperation, context: FormulaContext, formula: str = ""
    ) -> Decimal:
        if isinstance(operation, SumOperation):
            return sum((_lookup(code, context) for code in operation.codes), ZERO)

        if isinstance(operation, DiffOperation):
            return _lookup(operation.minuend, context) - _lookup(operation.subtrahend, context)

        if isinstance(operation, ComputedBalanceOperation):
            return sum((_lookup(code, context) for code in operation.left_side), ZERO)

        if isinstance(operation, WorkingCapitalChangeOperation):
            return self._working_capital_change(operation, context, formula)

        if isinstance(operation, CrossStatementOperation):
            return self._cross_statement_surplus(context)

        result = evaluate_expression(
            operation.expression, lambda name: _resolve_custom(name, context)
        )
        if isinstance(result, bool):
            return Decimal(1) if result else ZERO
        return result

    def _working_capital_change(
        self,
        operation: WorkingCapitalChangeOperation,
        context: FormulaContext,
        formula: str,
    ) -> Decimal:
        try:
            account = WorkingCapitalAccount(operation.account)
        except ValueError as exc:
            raise InvalidFormulaOperandError(
                formula or f"{WORKING_CAPITAL_CHANGE}({operation.account})",
                operation.account,
                f"Invalid account type for WORKING_CAPITAL_CHANGE: {operation.account}. "
                "Must be RECEIVABLES or PAYABLES.",
            ) from exc

        if context.balance_sheet is None:
            logger.warning(
                "working_capital_context_missing",
                extra={"account_type": account.value},
            )
            return ZERO

        current = sum_account_balance(account, context.balance_sheet.current)
        previous = sum_account_balance(account, context.balance_sheet.previous)
        if current == ZERO and previous == ZERO:
            logger.warning(
                "working_capital_no_balance_data",
                extra={"account_type": account.value},
            )
        return apply_cash_flow_sign(account, current - previous)

    def _cross_statement_surplus(self, context: FormulaContext) -> Decimal:
        values = context.cross_statement
        if values is None or values.surplus_deficit is None:
            logger.warning("cross_statement_surplus_missing")
            return ZERO
        return values.surplus_deficit

    # ---------------------------------------------------------------------
    # Dependencies and syntax
    # ---------------------------------------------------------------------

    def extract_dependencies(self, formula: str | None) -> tuple[str, ...]:
        """Upper-case identifiers referenced by a formula, deduplicated.

        Domain intrinsics take no line references.
        """
        if not formula:
            return ()
        if _is_intrinsic(formula):
            return ()
        seen: dict[str, None] = {}
        for token in _IDENTIFIER.findall(formula):
            if token.upper() not in FORMULA_KEYWORDS and token not in ("True", "False"):
                seen.setdefault(token, None)
        return tuple(seen)

    def extract_all_dependencies(self, formula: str) -> tuple[str, ...]:
        """Dependencies plus raw function parameters, used for name checks."""
        if _is_intrinsic(formula):
            return ()
        seen: dict[str, None] = {}
        for match in _FUNCTION_CALL.finditer(formula):
            for param in _split_params(match.group(2)):
                if _SIMPLE_PARAM.match(param) and param.upper() not in FORMULA_KEYWORDS:
                    seen.setdefault(param, None)
        for token in self.extract_dependencies(formula):
            seen.setdefault(token, None)
        return tuple(seen)

    def validate_syntax(self, formula: str) -> SyntaxCheck:
        errors: list[str] = []

        if not _balanced(formula):
            errors.append("Unbalanced parentheses in formula")

        wc_match = _WORKING_CAPITAL.search(formula)
        if wc_match:
            account = wc_match.group(1).upper()
            if account not in WorkingCapitalAccount.__members__:
                errors.append(
                    f"Invalid account type for WORKING_CAPITAL_CHANGE: {account}. "
                    "Must be RECEIVABLES or PAYABLES."
                )

        for match in _FUNCTION_CALL.finditer(formula):
            name = match.group(1).upper()
            params = _split_params(match.group(2))
            if name == "DIFF" and len(params) != 2:
                errors.append(f"DIFF function requires exactly two parameters: {match.group(0)}")
            elif name != "DIFF" and not params:
                errors.append(
                    f"{name} function requires at least one parameter: {match.group(0)}"
                )

        dependencies = self.extract_all_dependencies(formula)
        for variable in dependencies:
            if not _VALID_VARIABLE.match(variable):
                errors.append(f"Invalid variable name: {variable}")
            if len(variable) > self.max_variable_name_length:
                errors.append(f"Variable name too long: {variable}")

        if len(dependencies) > self.max_dependencies:
            errors.append(
                f"Formula has too many dependencies (max {self.max_dependencies})"
            )

        if not errors and _needs_expression_check(formula):
            errors.extend(e.message for e in validate_expression(formula))

        return SyntaxCheck(is_valid=not errors, errors=tuple(errors))

    def require_valid_syntax(self, formula: str) -> None:
        check = self.validate_syntax(formula)
        if not check.is_valid:
            raise FormulaSyntaxError(formula, check.errors)

    # ---------------------------------------------------------------------
    # Graph and ordering
    # ---------------------------------------------------------------------

    def build_dependency_graph(self, lines: Sequence[LineTemplate]) -> DependencyGraph:
        edges = {
            line.line_code: self.extract_dependencies(line.calculation_formula)
            for line in lines
        }
        dependents: dict[str, list[str]] = {code: [] for code in edges}
        for code, dependencies in edges.items():
            for dependency in dependencies:
                if dependency in dependents:
                    dependents[dependency].append(code)

        nodes = {
            line.line_code: DependencyNode(
                line_code=line.line_code,
                formula=line.calculation_formula,
                dependencies=edges[line.line_code],
                dependents=tuple(dependents[line.line_code]),
            )
            for line in lines
        }
        return DependencyGraph(nodes=nodes)

    def detect_cycles(self, graph: DependencyGraph) -> list[list[str]]:
        """
        Depth-first search; one cycle path per unvisited root that reaches one.

        A dependency closes a cycle only when it is on the current path, so a
        line that merely depends on an already reported cycle adds nothing.
        """
        cycles: list[list[str]] = []
        visited: set[str] = set()

        def visit(code: str, path: list[str]) -> list[str]:
            visited.add(code)
            path = path + [code]
            for dependency in graph.edges(code):
                if dependency in path:
                    return path[path.index(dependency):] + [dependency]
                if dependency not in visited:
                    cycle = visit(dependency, path)
                    if cycle:
                        return cycle
            return []

        for code in graph.nodes:
            if code not in visited:
                cycle = visit(code, [])
                if cycle:
                    cycles.append(cycle)
        return cycles

    @traced_engine("formula.resolve_dependencies", "1.0", fingerprint_fields=("lines",))
    def resolve_dependencies(self, lines: Sequence[LineTemplate]) -> list[LineTemplate]:
        """
        Order lines so that every formula's references come first.

        Lines are visited in the given order, so unrelated lines keep their
        relative position.

        Raises:
            CircularDependencyError: with the cycle path of every cycle found.
        """
        graph = self.build_dependency_graph(lines)
        cycles = self.detect_cycles(graph)
        if cycles:
            logger.error(
                "circular_dependency_detected",
                extra={"cycles": [" -> ".join(c) for c in cycles]},
            )
            raise CircularDependencyError(cycles)

        order: list[str] = []
        done: set[str] = set()

        def visit(code: str) -> None:
            if code in done:
                return
            done.add(code)
            for dependency in graph.edges(code):
                if dependency in graph.nodes:
                    visit(dependency)
            order.append(code)

        for line in lines:
            visit(line.line_code)

        by_code = {line.line_code: line for line in lines}
        ordered = [by_code.pop(code) for code in order if code in by_code]
        ordered.extend(by_code.values())
        return ordered

    # ---------------------------------------------------------------------
    # Post-assembly re-validation
    # ---------------------------------------------------------------------

    def validate_calculations(
        self,
        lines: Iterable[StatementLine],
        context: FormulaContext | None = None,
    ) -> CalculationCheck:
        """
        Re-evaluate every computed line and compare with its stored value.

        A difference beyond tolerance is a warning; beyond the significant
        imbalance it is an error.  Broken syntax is always an error.
        """
        lines = list(lines)
        values: dict[str, Decimal] = {}
        for line in lines:
            if not line.metadata.is_computed:
                values.setdefault(line.line_code, line.current_period_value)
        for line in lines:
            values.setdefault(line.line_code, line.current_period_value)
        if context is not None:
            for code, value in context.line_values.items():
                values.setdefault(code, value)

        check_context = FormulaContext(
            line_values=values,
            event_values=context.event_values if context else {},
            previous_period_values={
                line.line_code: line.previous_period_value for line in lines
            },
            balance_sheet=context.balance_sheet if context else None,
            cross_statement=context.cross_statement if context else None,
        )

        errors: list[str] = []
        warnings: list[str] = []
        checked = 0
        for line in lines:
            formula = line.metadata.formula
            if not formula:
                continue
            checked += 1
            syntax = self.validate_syntax(formula)
            if not syntax.is_valid:
                errors.append(f"Line {line.line_code}: {', '.join(syntax.errors)}")
                continue
            try:
                calculated = self.evaluate(formula, check_context)
            except FormulaEvaluationError as exc:
                errors.append(
                    f"Line {line.line_code}: formula validation failed - {exc.reason}"
                )
                continue

            difference = abs(calculated - line.current_period_value)
            if difference > self.tolerance:
                message = (
                    f"Line {line.line_code}: calculated value ({fmt(calculated)}) "
                    f"differs from stored value ({fmt(line.current_period_value)})"
                )
                if difference > self.significant_imbalance:
                    errors.append(message)
                else:
                    warnings.append(message)

        logger.info(
            "formula_calculations_validated",
            extra={
                "lines_checked": checked,
                "error_count": len(errors),
                "warning_count": len(warnings),
            },
        )
        return CalculationCheck(
            errors=tuple(errors), warnings=tuple(warnings), lines_checked=checked
        )


# =========================================================================
# Helpers
# =========================================================================


def _lookup(code: str, context: FormulaContext) -> Decimal:
    return context.event_values.get(code) or context.line_values.get(code) or ZERO


def _resolve_custom(name: str, context: FormulaContext) -> Decimal:
    if name in context.line_values:
        return context.line_values[name]
    return context.event_values.get(name, ZERO)


def _clean_param(param: str) -> str:
    return param.strip().replace("'", "").replace('"', "")


def _split_params(text: str) -> tuple[str, ...]:
    return tuple(p for p in (_clean_param(part) for part in text.split(",")) if p)


def _expression_operands(expression: str) -> tuple[str, ...]:
    return tuple(
        token
        for token in (t.strip() for t in _OPERAND_SPLIT.split(expression))
        if token and not _NUMBER.match(token)
    )


def _balanced(formula: str) -> bool:
    depth = 0
    for char in formula:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if depth < 0:
            return False
    return depth == 0


def _is_intrinsic(formula: str) -> bool:
    upper = formula.strip().upper()
    return upper == CROSS_STATEMENT_SURPLUS_DEFICIT or upper.startswith(WORKING_CAPITAL_CHANGE)


def _needs_expression_check(formula: str) -> bool:
    text = formula.strip()
    if _is_intrinsic(text) or _EQUATION.search(text):
        return False
    return not (_WHOLE_SUM.match(text) or _WHOLE_DIFF.match(text))
