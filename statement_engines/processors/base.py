"""
statement_engines.processors.base -- Shared shape of statement-type processors.

Responsibility:
    Define the processor input/result records, the keyword classifier used
    by every categorizer, computed-line construction and the template
    sequence that every processor follows:

        prepare lines -> categorize (current and previous) -> totals
        -> computed lines -> statement-specific validation

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Consumes the output of ``LineProcessor``; produces the lines and totals
    the statement generator assembles into a ``StatementDocument``.

Invariants enforced:
    - Only visible, non-formula, non-total lines are categorized; formula
      and total lines already hold values derived from other lines.
    - A total provided by the template (a line whose code is one of the
      total's source codes) overrides the heuristic category total.
    - A computed line is only added when the template does not already
      carry a line for that total.
    - Input lines are never mutated; processors derive new ones with
      ``dataclasses.replace``.
"""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, ClassVar, Generic, Mapping, Sequence, TypeVar

from statement_kernel.domain.amounts import BALANCE_TOLERANCE, ZERO, fmt
from statement_kernel.domain.events import EventAggregation
from statement_kernel.domain.statement import (
    BalanceValidation,
    BusinessRuleValidation,
    LineFormatting,
    LineMetadata,
    RuleSeverity,
    StatementCode,
    StatementLine,
    ValidationResults,
)
from statement_kernel.domain.template import StatementTemplate
from statement_kernel.logging_config import get_logger
from statement_engines.formula import DEFAULT_SIGNIFICANT_IMBALANCE
from statement_engines.variance import calculate_line_variance

logger = get_logger("engines.processors")

C = TypeVar("C")

ValueOf = Callable[[StatementLine], Decimal]


def current_value(line: StatementLine) -> Decimal:
    return line.current_period_value


def previous_value(line: StatementLine) -> Decimal:
    return line.previous_period_value


# =========================================================================
# Keyword classification
# =========================================================================


@dataclass(frozen=True)
class KeywordRule:
    """
    Substring classifier over a line.

    ``keywords`` are matched against the lower-cased description and
    ``code_fragments`` against the upper-cased line code.  Either match
    classifies the line.
    """

    keywords: tuple[str, ...] = ()
    code_fragments: tuple[str, ...] = ()

    @classmethod
    def anywhere(cls, *keywords: str) -> KeywordRule:
        """Keywords matched in both the description and the line code."""
        return cls(keywords=keywords, code_fragments=tuple(k.upper() for k in keywords))

    def matches(self, line: StatementLine) -> bool:
        return self.matches_text(line.line_code, line.description)

    def matches_text(self, line_code: str, description: str) -> bool:
        lowered = description.lower()
        upper = line_code.upper()
        return any(k in lowered for k in self.keywords) or any(
            fragment in upper for fragment in self.code_fragments
        )


def is_categorizable(line: StatementLine) -> bool:
    metadata = line.metadata
    return not (
        metadata.is_hidden
        or metadata.is_computed
        or metadata.has_error
        or line.formatting.is_total
        or line.formatting.is_subtotal
    )


# =========================================================================
# Input / result records
# =========================================================================


@dataclass(frozen=True)
class ProcessorInput:
    """
    Everything a processor needs for one statement.

    ``lines`` are the visible lines from the line processor in display
    order.  ``budget_values`` maps line codes to planning values and is
    only read by the budget vs actual processor.
    """

    template: StatementTemplate
    lines: tuple[StatementLine, ...]
    current: EventAggregation
    previous: EventAggregation | None = None
    budget_values: Mapping[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class ProcessorResult:
    lines: tuple[StatementLine, ...]
    categories: Any
    totals: Mapping[str, Decimal]
    previous_totals: Mapping[str, Decimal]
    validation: ValidationResults

    def rule(self, rule_id: str) -> BusinessRuleValidation | None:
        for result in self.validation.business_rules:
            if result.rule_id == rule_id:
                return result
        return None


@dataclass(frozen=True)
class ComputedLineSpec:
    """A processor-owned line carrying one total."""

    line_code: str
    description: str
    total_key: str
    display_order: int
    is_total: bool = False
    is_subtotal: bool = False
    negative_description: str | None = None

    def describe(self, value: Decimal) -> str:
        if self.negative_description is not None and value < ZERO:
            return self.negative_description
        return self.description


# =========================================================================
# Processor
# =========================================================================


class StatementProcessor(ABC, Generic[C]):
    """
    Base class for the five statement-type processors.

    Subclasses provide the statement code, computed-line specs, the
    template codes that may supply each total, and the categorize / totals /
    validate steps.
    """

    statement_code: ClassVar[StatementCode]
    computed_lines: ClassVar[tuple[ComputedLineSpec, ...]] = ()
    total_sources: ClassVar[Mapping[str, tuple[str, ...]]] = {}

    def __init__(
        self,
        tolerance: Decimal = BALANCE_TOLERANCE,
        significant_imbalance: Decimal = DEFAULT_SIGNIFICANT_IMBALANCE,
    ):
        self.tolerance = tolerance
        self.significant_imbalance = significant_imbalance

    # ---------------------------------------------------------------------
    # Steps
    # ---------------------------------------------------------------------

    def prepare_lines(self, data: ProcessorInput) -> list[StatementLine]:
        return list(data.lines)

    @abstractmethod
    def categorize(self, lines: Sequence[StatementLine], value_of: ValueOf) -> C:
        ...

    @abstractmethod
    def category_totals(self, categories: C) -> dict[str, Decimal]:
        ...

    @abstractmethod
    def validate(
        self,
        categories: C,
        totals: Mapping[str, Decimal],
        lines: Sequence[StatementLine],
    ) -> ValidationResults:
        ...

    # ---------------------------------------------------------------------
    # Template
    # ---------------------------------------------------------------------

    def process_statement(self, data: ProcessorInput) -> ProcessorResult:
        lines = self.prepare_lines(data)
        categories = self.categorize(lines, current_value)
        previous_categories = self.categorize(lines, previous_value)

        totals = self.effective_totals(
            self.category_totals(categories),
            {line.line_code: line.current_period_value for line in lines},
        )
        previous_totals = self.effective_totals(
            self.category_totals(previous_categories),
            {line.line_code: line.previous_period_value for line in lines},
        )

        has_previous = data.previous is not None
        lines.extend(self.build_computed_lines(lines, totals, previous_totals, has_previous))
        lines.sort(key=lambda line: line.display_order)

        validation = self.validate(categories, totals, lines)
        logger.info(
            "statement_processed",
            extra={
                "statement_code": self.statement_code.value,
                "line_count": len(lines),
                "is_valid": validation.is_valid,
                "error_count": len(validation.errors),
                "warning_count": len(validation.warnings),
            },
        )
        return ProcessorResult(
            lines=tuple(lines),
            categories=categories,
            totals=totals,
            previous_totals=previous_totals,
            validation=validation,
        )

    def effective_totals(
        self, computed: Mapping[str, Decimal], line_values: Mapping[str, Decimal]
    ) -> dict[str, Decimal]:
        totals = dict(computed)
        provided: set[str] = set()
        for key, sources in self.total_sources.items():
            for code in sources:
                if code in line_values:
                    totals[key] = line_values[code]
                    provided.add(key)
                    break
        self.complete_totals(totals, provided)
        return totals

    def complete_totals(self, totals: dict[str, Decimal], provided: set[str]) -> None:
        """Re-derive totals the template did not provide from those it did."""

    def build_computed_lines(
        self,
        lines: Sequence[StatementLine],
        totals: Mapping[str, Decimal],
        previous_totals: Mapping[str, Decimal],
        has_previous: bool,
    ) -> list[StatementLine]:
        present = {line.line_code for line in lines}
        computed: list[StatementLine] = []
        for spec in self.computed_lines:
            sources = self.total_sources.get(spec.total_key, ())
            if spec.line_code in present or any(code in present for code in sources):
                continue
            current = totals.get(spec.total_key, ZERO)
            previous = previous_totals.get(spec.total_key, ZERO)
            computed.append(
                StatementLine(
                    id=f"{self.statement_code.value}_{spec.line_code}",
                    description=spec.describe(current),
                    current_period_value=current,
                    previous_period_value=previous,
                    formatting=LineFormatting(
                        bold=True,
                        is_subtotal=spec.is_subtotal,
                        is_total=spec.is_total,
                    ),
                    metadata=LineMetadata(
                        line_code=spec.line_code,
                        display_order=spec.display_order,
                        is_computed=True,
                    ),
                    variance=calculate_line_variance(current, previous) if has_previous else None,
                )
            )
        return computed

    # ---------------------------------------------------------------------
    # Helpers for subclasses
    # ---------------------------------------------------------------------

    def balance(self, left: Decimal, right: Decimal, equation: str) -> BalanceValidation:
        difference = left - right
        return BalanceValidation(
            is_valid=abs(difference) <= self.tolerance,
            left_side=left,
            right_side=right,
            difference=difference,
            equation=equation,
        )

    def imbalance_findings(
        self,
        difference: Decimal,
        label: str,
        warnings: list[str],
        errors: list[str],
        warn_small: bool = False,
    ) -> None:
        """Large differences are errors; small ones optionally rounding warnings."""
        magnitude = abs(difference)
        if magnitude > self.significant_imbalance:
            errors.append(f"Significant {label} imbalance: {fmt(difference)}")
        elif warn_small and magnitude > self.tolerance:
            warnings.append(f"Small {label} imbalance: {fmt(difference)} (may be due to rounding)")

    def results(
        self,
        equation: BalanceValidation,
        rules: Sequence[BusinessRuleValidation],
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
    ) -> ValidationResults:
        """Fold failed rules into the warning and error lists by severity."""
        all_warnings = list(warnings)
        all_errors = list(errors)
        for result in rules:
            if result.is_valid:
                continue
            if result.severity is RuleSeverity.WARNING:
                all_warnings.append(result.message)
            else:
                all_errors.append(result.message)
        return ValidationResults.from_parts(
            accounting_equation=equation,
            business_rules=rules,
            warnings=all_warnings,
            errors=all_errors,
        )

    @staticmethod
    def with_formatting(line: StatementLine, **changes: Any) -> StatementLine:
        return dataclasses.replace(line, formatting=dataclasses.replace(line.formatting, **changes))


def rule(
    rule_id: str,
    rule_name: str,
    is_valid: bool,
    passed: str,
    failed: str,
    severity: RuleSeverity = RuleSeverity.ERROR,
    fields: Sequence[str] = (),
) -> BusinessRuleValidation:
    """A processor rule result with the message picked by outcome."""
    return BusinessRuleValidation(
        rule_id=rule_id,
        rule_name=rule_name,
        is_valid=is_valid,
        message=passed if is_valid else failed,
        severity=severity,
        affected_fields=tuple(fields),
    )


def code_contains(line_code: str, *fragments: str) -> bool:
    upper = line_code.upper()
    return any(fragment in upper for fragment in fragments)
