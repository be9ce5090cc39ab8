"""
statement_engines.line_processor -- Template line -> concrete statement line.

Responsibility:
    Resolve each template line's value (formula or event mappings), apply
    its aggregation method, evaluate its display conditions and emit a
    ``StatementLine``.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Called by the statement generator once per period, in dependency order.

Invariants enforced:
    - A formula takes precedence over event mappings; a line with neither
      is zero.
    - Event references match by event code first, then by numeric id.
    - Each computed value is written into the shared line-value map before
      the next line is processed.
    - Display conditions only ever hide a zero line.
    - A formula failure yields zero for that line; any other failure yields
      a zero "(ERROR)" line at the same position.  Neither aborts the batch.
"""

from __future__ import annotations

import operator
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, MutableMapping, Sequence

from statement_kernel.domain.amounts import ZERO, to_decimal
from statement_kernel.domain.statement import (
    LineFormatting,
    LineMetadata,
    StatementLine,
)
from statement_kernel.domain.template import (
    AggregationMethod,
    Condition,
    ConditionOperator,
    DisplayConditions,
    FieldCondition,
    LineTemplate,
)
from statement_kernel.exceptions import (
    FormulaEvaluationError,
    FormulaSyntaxError,
    StatementEngineError,
)
from statement_kernel.logging_config import get_logger
from statement_engines.formula import (
    BalanceSheetContext,
    CrossStatementValues,
    FormulaContext,
    FormulaEngine,
)
from statement_engines.formula_ast import evaluate_expression
from statement_engines.variance import calculate_line_variance

logger = get_logger("engines.line_processor")

ERROR_SUFFIX = " (ERROR)"

_NUMERIC_COMPARISONS: dict[str, Callable[[Decimal, Decimal], bool]] = {
    ConditionOperator.GT.value: operator.gt,
    ConditionOperator.LT.value: operator.lt,
    ConditionOperator.GTE.value: operator.ge,
    ConditionOperator.LTE.value: operator.le,
}


class _UnknownName(LookupError):
    pass


@dataclass(frozen=True)
class EventLookup:
    """Event totals for one period, addressable by event code or event id."""

    by_code: Mapping[str, Decimal]
    by_id: Mapping[str, Decimal] = field(default_factory=dict)

    @classmethod
    def from_totals(
        cls,
        event_totals: Mapping[str, Decimal],
        event_ids: Mapping[str, int] | None = None,
    ) -> EventLookup:
        by_id: dict[str, Decimal] = {}
        for code, event_id in (event_ids or {}).items():
            if code in event_totals:
                by_id[str(event_id)] = event_totals[code]
        return cls(by_code=dict(event_totals), by_id=by_id)

    def amount(self, reference: str | int) -> Decimal | None:
        key = str(reference)
        if key in self.by_code:
            return self.by_code[key]
        return self.by_id.get(key)


@dataclass(frozen=True)
class LineProcessingResult:
    """Lines in display order plus the value maps built while processing."""

    lines: tuple[StatementLine, ...]
    line_values: Mapping[str, Decimal]
    previous_line_values: Mapping[str, Decimal]
    formulas_calculated: int
    errors: tuple[str, ...] = ()

    @property
    def visible_lines(self) -> tuple[StatementLine, ...]:
        return tuple(line for line in self.lines if not line.metadata.is_hidden)


class LineProcessor:
    def __init__(self, formula_engine: FormulaEngine | None = None):
        self.formula_engine = formula_engine or FormulaEngine()

    # ---------------------------------------------------------------------
    # Value resolution
    # ---------------------------------------------------------------------

    def resolve_value(
        self,
        template: LineTemplate,
        events: EventLookup,
        line_values: Mapping[str, Decimal],
        balance_sheet: BalanceSheetContext | None = None,
        cross_statement: CrossStatementValues | None = None,
        previous_values: Mapping[str, Decimal] | None = None,
    ) -> Decimal:
        if template.has_formula:
            context = FormulaContext(
                line_values=line_values,
                event_values=events.by_code,
                previous_period_values=previous_values or {},
                balance_sheet=balance_sheet,
                cross_statement=cross_statement,
            )
            try:
                return self.formula_engine.evaluate(template.calculation_formula, context)
            except (FormulaEvaluationError, FormulaSyntaxError) as exc:
                logger.warning(
                    "formula_evaluation_failed",
                    extra={
                        "line_code": template.line_code,
                        "formula": template.calculation_formula,
                        "error": str(exc),
                    },
                )
                return ZERO

        if template.event_mappings:
            total = ZERO
            for reference in template.event_mappings:
                amount = events.amount(reference)
                if amount is not None:
                    total += amount
            return total

        return ZERO

    def apply_aggregation_method(self, value: Decimal, template: LineTemplate) -> Decimal:
        """Only SUM is defined; the other declared methods pass the value through."""
        if template.aggregation_method is not AggregationMethod.SUM:
            logger.debug(
                "aggregation_method_passthrough",
                extra={
                    "line_code": template.line_code,
                    "aggregation_method": template.aggregation_method.value,
                },
            )
        return value

    # ---------------------------------------------------------------------
    # Display conditions
    # ---------------------------------------------------------------------

    def evaluate_display_conditions(
        self,
        conditions: DisplayConditions,
        value: Decimal,
        line_values: Mapping[str, Decimal],
        events: EventLookup,
    ) -> bool:
        if conditions.is_empty:
            return True
        if conditions.show_when is not None and not self.evaluate_condition(
            conditions.show_when, value, line_values, events
        ):
            return False
        if conditions.hide_when is not None and self.evaluate_condition(
            conditions.hide_when, value, line_values, events
        ):
            return False
        if conditions.hide_empty and value == ZERO:
            return False
        return True

    def evaluate_condition(
        self,
        condition: Condition,
        value: Decimal,
        line_values: Mapping[str, Decimal],
        events: EventLookup,
    ) -> bool:
        if isinstance(condition, FieldCondition):
            return _evaluate_field_condition(condition, line_values, events)

        def resolve(name: str) -> Decimal:
            if name in line_values:
                return line_values[name]
            event_amount = events.amount(name)
            if event_amount is not None:
                return event_amount
            if name.lower() == "value":
                return value
            raise _UnknownName(name)

        try:
            result = evaluate_expression(condition, resolve)
        except (_UnknownName, FormulaEvaluationError) as exc:
            logger.debug(
                "display_condition_unevaluable",
                extra={"condition": condition, "error": str(exc)},
            )
            return True
        if isinstance(result, bool):
            return result
        return result != ZERO

    # ---------------------------------------------------------------------
    # Line construction
    # ---------------------------------------------------------------------

    def process_line(
        self,
        template: LineTemplate,
        events: EventLookup,
        line_values: MutableMapping[str, Decimal],
        previous_value: Decimal | None = None,
        balance_sheet: BalanceSheetContext | None = None,
        cross_statement: CrossStatementValues | None = None,
        previous_values: Mapping[str, Decimal] | None = None,
    ) -> StatementLine:
        """
        Build the statement line for ``template`` and record its value.

        ``line_values`` is updated in place so later lines can reference
        this one.
        """
        value = self.resolve_value(
            template, events, line_values, balance_sheet, cross_statement, previous_values
        )
        value = self.apply_aggregation_method(value, template)
        visible = self.evaluate_display_conditions(
            template.display_conditions, value, line_values, events
        )
        line_values[template.line_code] = value

        previous = previous_value if previous_value is not None else ZERO
        return StatementLine(
            id=template.line_code,
            description=template.description,
            current_period_value=value,
            previous_period_value=previous,
            formatting=line_formatting(template),
            metadata=line_metadata(template, is_hidden=not visible and value == ZERO),
            variance=(
                calculate_line_variance(value, previous) if previous_value is not None else None
            ),
        )

    def error_line(self, template: LineTemplate, previous_value: Decimal | None = None) -> StatementLine:
        return StatementLine(
            id=template.line_code,
            description=f"{template.description}{ERROR_SUFFIX}",
            current_period_value=ZERO,
            previous_period_value=previous_value if previous_value is not None else ZERO,
            formatting=line_formatting(template),
            metadata=line_metadata(template, has_error=True),
        )

    def compute_values(
        self,
        templates: Sequence[LineTemplate],
        events: EventLookup,
        balance_sheet: BalanceSheetContext | None = None,
        cross_statement: CrossStatementValues | None = None,
    ) -> dict[str, Decimal]:
        """Line values for one period without building lines."""
        values: dict[str, Decimal] = {}
        for template in templates:
            value = self.resolve_value(template, events, values, balance_sheet, cross_statement)
            values[template.line_code] = self.apply_aggregation_method(value, template)
        return values

    def process_lines(
        self,
        templates: Sequence[LineTemplate],
        events: EventLookup,
        previous_events: EventLookup | None = None,
        balance_sheet: BalanceSheetContext | None = None,
        cross_statement: CrossStatementValues | None = None,
        previous_cross_statement: CrossStatementValues | None = None,
    ) -> LineProcessingResult:
        """
        Process ``templates`` (already in dependency order) for both periods.

        The previous period is computed first so each line can carry its
        comparative value.  Returned lines are sorted by display order.
        """
        previous_values: dict[str, Decimal] = {}
        if previous_events is not None:
            previous_values = self.compute_values(
                templates, previous_events, balance_sheet=None,
                cross_statement=previous_cross_statement,
            )

        line_values: dict[str, Decimal] = {}
        lines: list[StatementLine] = []
        errors: list[str] = []
        formulas = 0
        for template in templates:
            previous_value = previous_values.get(template.line_code) if previous_events else None
            try:
                line = self.process_line(
                    template,
                    events,
                    line_values,
                    previous_value=previous_value,
                    balance_sheet=balance_sheet,
                    cross_statement=cross_statement,
                    previous_values=previous_values,
                )
            except (StatementEngineError, ArithmeticError, ValueError, TypeError) as exc:
                logger.error(
                    "line_processing_failed",
                    extra={"line_code": template.line_code, "error": str(exc)},
                    exc_info=True,
                )
                errors.append(f"Line {template.line_code}: {exc}")
                line = self.error_line(template, previous_value)
                line_values[template.line_code] = ZERO
            if template.has_formula:
                formulas += 1
            lines.append(line)

        lines.sort(key=lambda line: line.display_order)
        logger.info(
            "statement_lines_processed",
            extra={
                "line_count": len(lines),
                "hidden_count": sum(1 for line in lines if line.metadata.is_hidden),
                "formulas_calculated": formulas,
                "error_count": len(errors),
            },
        )
        return LineProcessingResult(
            lines=tuple(lines),
            line_values=line_values,
            previous_line_values=previous_values,
            formulas_calculated=formulas,
            errors=tuple(errors),
        )


# =========================================================================
# Helpers
# =========================================================================


def line_formatting(template: LineTemplate) -> LineFormatting:
    rules = template.formatting
    return LineFormatting(
        bold=rules.bold or template.is_total_line,
        italic=rules.italic,
        indent_level=rules.indent_level,
        is_section=rules.is_section,
        is_subtotal=rules.is_subtotal or template.is_subtotal_line,
        is_total=rules.is_total or template.is_total_line,
    )


def line_metadata(
    template: LineTemplate, is_hidden: bool = False, has_error: bool = False
) -> LineMetadata:
    return LineMetadata(
        line_code=template.line_code,
        display_order=template.display_order,
        event_codes=template.event_codes,
        formula=template.calculation_formula or None,
        is_computed=template.has_formula,
        column_type=template.column_type,
        note_number=template.note_number,
        is_hidden=is_hidden,
        has_error=has_error,
    )


def _field_value(
    name: str, line_values: Mapping[str, Decimal], events: EventLookup
) -> Decimal:
    if name in line_values:
        return line_values[name]
    amount = events.amount(name)
    return amount if amount is not None else ZERO


def _numeric(value: Any) -> Decimal | None:
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return to_decimal(value)
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            return None
    return None


def _evaluate_field_condition(
    condition: FieldCondition, line_values: Mapping[str, Decimal], events: EventLookup
) -> bool:
    field_value = _field_value(condition.field, line_values, events)
    op = condition.operator

    if op in _NUMERIC_COMPARISONS:
        target = _numeric(condition.value)
        if target is None:
            return False
        return _NUMERIC_COMPARISONS[op](field_value, target)

    if op in (ConditionOperator.EQ.value, ConditionOperator.NE.value):
        target = _numeric(condition.value)
        equal = field_value == target if target is not None else str(field_value) == str(condition.value)
        return equal if op == ConditionOperator.EQ.value else not equal

    text = str(field_value)
    if op == ConditionOperator.CONTAINS.value:
        return str(condition.value) in text
    if op == ConditionOperator.STARTS_WITH.value:
        return text.startswith(str(condition.value))
    if op == ConditionOperator.ENDS_WITH.value:
        return text.endswith(str(condition.value))

    logger.warning("unknown_condition_operator", extra={"operator": op})
    return True
