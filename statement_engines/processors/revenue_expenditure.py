"""
statement_engines.processors.revenue_expenditure -- REV_EXP categorization.

Buckets line values into operating / non-operating revenue and expenditure,
derives operating and net surplus, and checks
``Revenue - Expenditure = Surplus/Deficit``.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Sequence

from statement_kernel.domain.amounts import ZERO, fmt_grouped
from statement_kernel.domain.statement import (
    RuleSeverity,
    StatementCode,
    StatementLine,
    ValidationResults,
)
from statement_engines.processors.base import (
    ComputedLineSpec,
    KeywordRule,
    ProcessorInput,
    StatementProcessor,
    ValueOf,
    code_contains,
    is_categorizable,
    rule,
)

REVENUE = KeywordRule(
    keywords=("revenue", "income", "grant", "donation", "fee", "service", "interest"),
    code_fragments=("REV", "INC", "GRANT", "DONATION", "FEE"),
)
EXPENDITURE = KeywordRule(
    keywords=("expense", "expenditure", "cost", "salary", "wage", "supply", "equipment"),
    code_fragments=("EXP", "COST", "SAL", "WAGE", "SUPPLY", "EQUIP"),
)
NON_OPERATING_REVENUE = KeywordRule(
    keywords=("interest", "investment", "donation", "grant", "other"),
)
NON_OPERATING_EXPENSE = KeywordRule(
    keywords=("interest", "depreciation", "amortization", "other"),
)

TOTAL_CODE_MARKERS = ("TOTAL", "SUM", "SURPLUS", "DEFICIT")

LARGE_DEFICIT = Decimal("-10000")


def is_revenue_item(line: StatementLine) -> bool:
    return REVENUE.matches(line)


def is_expenditure_item(line: StatementLine) -> bool:
    return EXPENDITURE.matches(line)


def is_operating_revenue(line: StatementLine) -> bool:
    return not NON_OPERATING_REVENUE.matches(line)


def is_operating_expense(line: StatementLine) -> bool:
    return not NON_OPERATING_EXPENSE.matches(line)


@dataclass(frozen=True)
class RevenueExpenditureCategories:
    operating_revenue: Decimal = ZERO
    non_operating_revenue: Decimal = ZERO
    operating_expenses: Decimal = ZERO
    non_operating_expenses: Decimal = ZERO

    @property
    def total_revenue(self) -> Decimal:
        return self.operating_revenue + self.non_operating_revenue

    @property
    def total_expenditure(self) -> Decimal:
        return self.operating_expenses + self.non_operating_expenses

    @property
    def operating_surplus(self) -> Decimal:
        return self.operating_revenue - self.operating_expenses

    @property
    def net_surplus(self) -> Decimal:
        return self.total_revenue - self.total_expenditure


class RevenueExpenditureProcessor(StatementProcessor[RevenueExpenditureCategories]):
    statement_code = StatementCode.REV_EXP
    computed_lines = (
        ComputedLineSpec("TOTAL_REVENUE", "Total Revenue", "TOTAL_REVENUE", 1000, is_subtotal=True),
        ComputedLineSpec(
            "TOTAL_EXPENDITURE", "Total Expenditure", "TOTAL_EXPENSES", 2000, is_subtotal=True
        ),
        ComputedLineSpec(
            "NET_SURPLUS",
            "Net Surplus",
            "NET_SURPLUS_DEFICIT",
            3000,
            is_total=True,
            negative_description="Net Deficit",
        ),
    )
    total_sources = {
        "TOTAL_REVENUE": ("TOTAL_REVENUE",),
        "TOTAL_EXPENSES": ("TOTAL_EXPENSES", "TOTAL_EXPENDITURE"),
        "NET_SURPLUS_DEFICIT": ("SURPLUS_DEFICIT", "NET_SURPLUS_DEFICIT", "NET_SURPLUS"),
    }

    def prepare_lines(self, data: ProcessorInput) -> list[StatementLine]:
        return [
            self.with_formatting(line, bold=True)
            if code_contains(line.line_code, *TOTAL_CODE_MARKERS)
            else line
            for line in data.lines
        ]

    def categorize(
        self, lines: Sequence[StatementLine], value_of: ValueOf
    ) -> RevenueExpenditureCategories:
        operating_revenue = ZERO
        non_operating_revenue = ZERO
        operating_expenses = ZERO
        non_operating_expenses = ZERO
        for line in lines:
            if not is_categorizable(line):
                continue
            value = value_of(line)
            if is_revenue_item(line):
                if is_operating_revenue(line):
                    operating_revenue += value
                else:
                    non_operating_revenue += value
            if is_expenditure_item(line):
                if is_operating_expense(line):
                    operating_expenses += abs(value)
                else:
                    non_operating_expenses += abs(value)
        return RevenueExpenditureCategories(
            operating_revenue=operating_revenue,
            non_operating_revenue=non_operating_revenue,
            operating_expenses=operating_expenses,
            non_operating_expenses=non_operating_expenses,
        )

    def category_totals(self, categories: RevenueExpenditureCategories) -> dict[str, Decimal]:
        return {
            "OPERATING_REVENUE": categories.operating_revenue,
            "NON_OPERATING_REVENUE": categories.non_operating_revenue,
            "TOTAL_REVENUE": categories.total_revenue,
            "OPERATING_EXPENSES": categories.operating_expenses,
            "NON_OPERATING_EXPENSES": categories.non_operating_expenses,
            "TOTAL_EXPENSES": categories.total_expenditure,
            "OPERATING_SURPLUS": categories.operating_surplus,
            "NET_SURPLUS_DEFICIT": categories.net_surplus,
        }

    def complete_totals(self, totals: dict[str, Decimal], provided: set[str]) -> None:
        if "NET_SURPLUS_DEFICIT" not in provided:
            totals["NET_SURPLUS_DEFICIT"] = totals["TOTAL_REVENUE"] - totals["TOTAL_EXPENSES"]

    def validate(
        self,
        categories: RevenueExpenditureCategories,
        totals: Mapping[str, Decimal],
        lines: Sequence[StatementLine],
    ) -> ValidationResults:
        revenue = totals["TOTAL_REVENUE"]
        expenditure = totals["TOTAL_EXPENSES"]
        net = totals["NET_SURPLUS_DEFICIT"]

        rules = [
            rule(
                "REV_EXP_REVENUE_NON_NEGATIVE",
                "Revenue Non-Negative Check",
                revenue >= ZERO,
                "Total revenue is non-negative",
                "Total revenue is negative - this may indicate data entry errors",
                RuleSeverity.WARNING,
                ("TOTAL_REVENUE",),
            ),
            rule(
                "REV_EXP_EXPENDITURE_NON_NEGATIVE",
                "Expenditure Non-Negative Check",
                expenditure >= ZERO,
                "Total expenditure is non-negative",
                "Total expenditure is negative - this may indicate data entry errors",
                RuleSeverity.WARNING,
                ("TOTAL_EXPENDITURE",),
            ),
            rule(
                "REV_EXP_OPERATING_SURPLUS_CALC",
                "Operating Surplus Calculation",
                abs(
                    totals["OPERATING_SURPLUS"]
                    - (categories.operating_revenue - categories.operating_expenses)
                )
                <= self.tolerance,
                "Operating surplus calculation is correct",
                "Operating surplus does not equal operating revenue less operating expenses",
                RuleSeverity.ERROR,
                ("OPERATING_SURPLUS",),
            ),
            rule(
                "REV_EXP_NET_SURPLUS_CALC",
                "Net Surplus Calculation",
                abs(net - (revenue - expenditure)) <= self.tolerance,
                "Net surplus calculation is correct",
                "Net surplus does not equal total revenue less total expenditure",
                RuleSeverity.ERROR,
                ("NET_SURPLUS",),
            ),
        ]

        warnings: list[str] = []
        if net < LARGE_DEFICIT:
            warnings.append(f"Large deficit detected: {fmt_grouped(abs(net))}")
        if revenue == ZERO:
            warnings.append("No revenue recorded for this period")
        if expenditure == ZERO:
            warnings.append("No expenditure recorded for this period")

        equation = self.balance(
            revenue - expenditure, net, "Revenue - Expenditure = Surplus/Deficit"
        )
        return self.results(equation, rules, warnings)
