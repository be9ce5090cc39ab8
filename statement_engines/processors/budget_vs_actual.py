"""
statement_engines.processors.budget_vs_actual -- BUDGET_VS_ACTUAL comparison.

Responsibility:
    Pair every line's actual value (execution data) with its budget value
    (planning data), derive ``variance = actual - budget`` and decide
    favorability by item type, then roll revenue / expense / net variances
    up for the reasonableness rules.

Invariants enforced:
    - Revenue: actual > budget is favorable.  Expense: actual < budget is
      favorable.  Anything else: actual > budget is favorable.
    - Variance percentage is relative to |budget| and is 0 when the budget
      is 0.  Both amount and percentage are rounded half-up to cents.
    - Revenue variance beyond +/-50% and expense variance beyond +/-30% are
      warnings, never errors.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Mapping, Sequence

from statement_kernel.domain.amounts import HUNDRED, ZERO, fmt, round2
from statement_kernel.domain.statement import (
    BalanceValidation,
    LineVariance,
    RuleSeverity,
    StatementCode,
    StatementLine,
    ValidationResults,
)
from statement_engines.processors.base import (
    ComputedLineSpec,
    ProcessorInput,
    StatementProcessor,
    ValueOf,
    code_contains,
    is_categorizable,
    rule,
)
from statement_engines.processors.revenue_expenditure import (
    EXPENDITURE,
    REVENUE,
    is_expenditure_item,
    is_revenue_item,
)
from statement_engines.variance import calculate_line_variance

TOTAL_CODE_MARKERS = ("TOTAL", "SUM", "NET")

REVENUE_VARIANCE_LIMIT = Decimal("50")
EXPENSE_VARIANCE_LIMIT = Decimal("30")
UNFAVORABLE_LINE_PERCENT = Decimal("10")


class ItemKind(str, Enum):
    REVENUE = "revenue"
    EXPENSE = "expense"
    OTHER = "other"


def item_kind(line_code: str, description: str) -> ItemKind:
    if REVENUE.matches_text(line_code, description):
        return ItemKind.REVENUE
    if EXPENDITURE.matches_text(line_code, description):
        return ItemKind.EXPENSE
    return ItemKind.OTHER


def is_favorable(kind: ItemKind, budget: Decimal, actual: Decimal) -> bool:
    if kind is ItemKind.EXPENSE:
        return actual < budget
    return actual > budget


@dataclass(frozen=True)
class BudgetVariance:
    absolute: Decimal
    percentage: Decimal
    favorable: bool

    @classmethod
    def between(cls, budget: Decimal, actual: Decimal, kind: ItemKind) -> BudgetVariance:
        absolute = actual - budget
        percentage = absolute / abs(budget) * HUNDRED if budget != ZERO else ZERO
        return cls(
            absolute=round2(absolute),
            percentage=round2(percentage),
            favorable=is_favorable(kind, budget, actual),
        )

    def as_line_variance(self, budget: Decimal, actual: Decimal) -> LineVariance:
        trend = calculate_line_variance(actual, budget).trend
        return LineVariance(absolute=self.absolute, percentage=self.percentage, trend=trend)


def apply_budget(line: StatementLine, budget: Decimal, kind: ItemKind) -> StatementLine:
    """Attach budget, actual and variance fields; current value is the actual."""
    actual = line.current_period_value
    variance = BudgetVariance.between(budget, actual, kind)
    return dataclasses.replace(
        line,
        budget_value=budget,
        actual_value=actual,
        variance_amount=variance.absolute,
        variance_percentage=variance.percentage,
        is_favorable=variance.favorable,
        variance=variance.as_line_variance(budget, actual),
    )


# =========================================================================
# Categories
# =========================================================================


@dataclass(frozen=True)
class BudgetVsActualCategories:
    budget_revenues: Decimal = ZERO
    budget_expenses: Decimal = ZERO
    actual_revenues: Decimal = ZERO
    actual_expenses: Decimal = ZERO
    # Budget values of template lines that carry a total.
    provided_budget: Mapping[str, Decimal] = field(default_factory=dict)

    @property
    def net_budget(self) -> Decimal:
        return self.budget_revenues - self.budget_expenses

    @property
    def net_actual(self) -> Decimal:
        return self.actual_revenues - self.actual_expenses


_BUDGET_KEYS = {
    "TOTAL_REVENUE": "BUDGET_REVENUE",
    "TOTAL_EXPENSES": "BUDGET_EXPENSES",
    "NET_RESULT": "NET_BUDGET",
}
_TOTAL_KINDS = {
    "TOTAL_REVENUE": ItemKind.REVENUE,
    "TOTAL_EXPENSES": ItemKind.EXPENSE,
    "NET_RESULT": ItemKind.OTHER,
}


class BudgetVsActualProcessor(StatementProcessor[BudgetVsActualCategories]):
    statement_code = StatementCode.BUDGET_VS_ACTUAL
    computed_lines = (
        ComputedLineSpec("TOTAL_REVENUE", "Total Revenue", "TOTAL_REVENUE", 1000, is_subtotal=True),
        ComputedLineSpec("TOTAL_EXPENSES", "Total Expenses", "TOTAL_EXPENSES", 2000, is_subtotal=True),
        ComputedLineSpec(
            "NET_RESULT",
            "Net Surplus",
            "NET_RESULT",
            3000,
            is_total=True,
            negative_description="Net Deficit",
        ),
    )
    total_sources = {
        "TOTAL_REVENUE": ("TOTAL_REVENUE", "TOTAL_RECEIPTS"),
        "TOTAL_EXPENSES": ("TOTAL_EXPENSES", "TOTAL_EXPENDITURE", "TOTAL_EXPENDITURES"),
        "NET_RESULT": ("NET_RESULT", "SURPLUS_DEFICIT", "NET_SURPLUS_DEFICIT"),
    }

    def prepare_lines(self, data: ProcessorInput) -> list[StatementLine]:
        prepared: list[StatementLine] = []
        for line in data.lines:
            budget = data.budget_values.get(line.line_code, ZERO)
            line = apply_budget(line, budget, item_kind(line.line_code, line.description))
            if code_contains(line.line_code, *TOTAL_CODE_MARKERS):
                line = self.with_formatting(line, bold=True)
            if not line.is_favorable and abs(line.variance_percentage) > UNFAVORABLE_LINE_PERCENT:
                line = self.with_formatting(line, italic=True)
            prepared.append(line)
        return prepared

    def categorize(
        self, lines: Sequence[StatementLine], value_of: ValueOf
    ) -> BudgetVsActualCategories:
        budget_revenues = ZERO
        budget_expenses = ZERO
        actual_revenues = ZERO
        actual_expenses = ZERO
        codes = {line.line_code: line for line in lines}
        provided_budget: dict[str, Decimal] = {}
        for key, sources in self.total_sources.items():
            for code in sources:
                if code in codes:
                    provided_budget[key] = codes[code].budget_value or ZERO
                    break

        for line in lines:
            if not is_categorizable(line):
                continue
            budget = line.budget_value or ZERO
            actual = value_of(line)
            if is_revenue_item(line):
                budget_revenues += budget
                actual_revenues += actual
            if is_expenditure_item(line):
                budget_expenses += abs(budget)
                actual_expenses += abs(actual)
        return BudgetVsActualCategories(
            budget_revenues=budget_revenues,
            budget_expenses=budget_expenses,
            actual_revenues=actual_revenues,
            actual_expenses=actual_expenses,
            provided_budget=provided_budget,
        )

    def category_totals(self, categories: BudgetVsActualCategories) -> dict[str, Decimal]:
        provided = categories.provided_budget
        budget_revenue = provided.get("TOTAL_REVENUE", categories.budget_revenues)
        budget_expenses = provided.get("TOTAL_EXPENSES", categories.budget_expenses)
        return {
            "TOTAL_REVENUE": categories.actual_revenues,
            "TOTAL_EXPENSES": categories.actual_expenses,
            "NET_RESULT": categories.net_actual,
            "BUDGET_REVENUE": budget_revenue,
            "BUDGET_EXPENSES": budget_expenses,
            "NET_BUDGET": provided.get("NET_RESULT", budget_revenue - budget_expenses),
        }

    def complete_totals(self, totals: dict[str, Decimal], provided: set[str]) -> None:
        if "NET_RESULT" not in provided:
            totals["NET_RESULT"] = totals["TOTAL_REVENUE"] - totals["TOTAL_EXPENSES"]

    def build_computed_lines(self, lines, totals, previous_totals, has_previous):
        computed = super().build_computed_lines(lines, totals, previous_totals, has_previous)
        by_code = {spec.line_code: spec for spec in self.computed_lines}
        enriched = []
        for line in computed:
            key = by_code[line.line_code].total_key
            line = apply_budget(line, totals[_BUDGET_KEYS[key]], _TOTAL_KINDS[key])
            if key == "NET_RESULT" and line.current_period_value < ZERO:
                line = self.with_formatting(line, italic=True)
            enriched.append(line)
        return enriched

    def variances(self, totals: Mapping[str, Decimal]) -> dict[str, BudgetVariance]:
        return {
            key: BudgetVariance.between(totals[_BUDGET_KEYS[key]], totals[key], kind)
            for key, kind in _TOTAL_KINDS.items()
        }

    def validate(
        self,
        categories: BudgetVsActualCategories,
        totals: Mapping[str, Decimal],
        lines: Sequence[StatementLine],
    ) -> ValidationResults:
        variances = self.variances(totals)
        revenue = variances["TOTAL_REVENUE"]
        expense = variances["TOTAL_EXPENSES"]
        net = variances["NET_RESULT"]

        # Budget and actual are compared, not balanced.
        equation = BalanceValidation(
            is_valid=True,
            left_side=totals["NET_BUDGET"],
            right_side=totals["NET_RESULT"],
            difference=net.absolute,
            equation="Budget vs Actual Variance Analysis",
        )

        has_budget = totals["BUDGET_REVENUE"] > ZERO or totals["BUDGET_EXPENSES"] > ZERO
        has_actual = totals["TOTAL_REVENUE"] > ZERO or totals["TOTAL_EXPENSES"] > ZERO
        expected_net = revenue.absolute - expense.absolute

        rules = [
            rule(
                "BUDGET_VS_ACTUAL_BUDGET_DATA",
                "Budget Data Availability",
                has_budget,
                "Budget data is available for comparison",
                "No budget data available - variance analysis not meaningful",
                RuleSeverity.WARNING,
                ("TOTAL_REVENUE", "TOTAL_EXPENSES"),
            ),
            rule(
                "BUDGET_VS_ACTUAL_ACTUAL_DATA",
                "Actual Data Availability",
                has_actual,
                "Actual data is available for comparison",
                "No actual data available - variance analysis not meaningful",
                RuleSeverity.WARNING,
                ("TOTAL_REVENUE", "TOTAL_EXPENSES"),
            ),
            rule(
                "BUDGET_VS_ACTUAL_REVENUE_VARIANCE",
                "Revenue Variance Reasonableness",
                abs(revenue.percentage) <= REVENUE_VARIANCE_LIMIT,
                f"Revenue variance is reasonable ({fmt(revenue.percentage, 1)}%)",
                "Large revenue variance may indicate budget or data issues "
                f"({fmt(revenue.percentage, 1)}%)",
                RuleSeverity.WARNING,
                ("TOTAL_REVENUE",),
            ),
            rule(
                "BUDGET_VS_ACTUAL_EXPENSE_VARIANCE",
                "Expense Variance Reasonableness",
                abs(expense.percentage) <= EXPENSE_VARIANCE_LIMIT,
                f"Expense variance is reasonable ({fmt(expense.percentage, 1)}%)",
                "Large expense variance may indicate budget or control issues "
                f"({fmt(expense.percentage, 1)}%)",
                RuleSeverity.WARNING,
                ("TOTAL_EXPENSES",),
            ),
            rule(
                "BUDGET_VS_ACTUAL_NET_VARIANCE_CALC",
                "Net Variance Calculation",
                abs(net.absolute - expected_net) <= self.tolerance,
                "Net variance calculation is correct",
                "Net variance calculation does not match revenue and expense variances",
                RuleSeverity.ERROR,
                ("NET_RESULT",),
            ),
        ]

        warnings: list[str] = []
        errors: list[str] = []
        if revenue.percentage < -20:
            warnings.append(f"Revenue significantly under budget ({fmt(revenue.percentage, 1)}%)")
        if expense.percentage > 20:
            warnings.append(f"Expenses significantly over budget ({fmt(expense.percentage, 1)}%)")
        if not net.favorable and abs(net.percentage) > 25:
            warnings.append(
                "Unfavorable net variance indicates significant budget performance issues "
                f"({fmt(net.percentage, 1)}%)"
            )

        unfavorable = [
            line
            for line in lines
            if line.is_favorable is False
            and abs(line.variance_percentage or ZERO) > UNFAVORABLE_LINE_PERCENT
        ]
        if len(unfavorable) > len(lines) * Decimal("0.3"):
            warnings.append(f"{len(unfavorable)} line items have significant unfavorable variances")

        if revenue.favorable and revenue.percentage > 10:
            warnings.append(
                f"Revenue exceeded budget by {fmt(revenue.percentage, 1)}% - strong performance"
            )
        if expense.favorable and abs(expense.percentage) > 10:
            warnings.append(
                f"Expenses under budget by {fmt(abs(expense.percentage), 1)}% - good cost control"
            )

        if not has_budget and not has_actual:
            errors.append("No budget or actual data available - cannot perform variance analysis")
        if totals["BUDGET_REVENUE"] < ZERO or totals["TOTAL_REVENUE"] < ZERO:
            errors.append("Negative revenue values detected - data integrity issue")

        return self.results(equation, rules, warnings, errors)
