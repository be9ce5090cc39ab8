"""
statement_engines.processors.balance_sheet -- BAL_SHEET categorization.

Current / non-current assets and liabilities, retained earnings vs
current-period surplus, section totals and the ``Assets = Liabilities +
Equity`` identity with ratio sanity rules.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Sequence

from statement_kernel.domain.amounts import HUNDRED, ZERO, fmt
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

ASSET = KeywordRule(
    keywords=("asset", "cash", "receivable", "inventory", "equipment", "building", "land"),
    code_fragments=("ASSET", "CASH", "RECV", "INV", "EQUIP", "BLDG", "LAND"),
)
LIABILITY = KeywordRule(
    keywords=("liability", "payable", "loan", "debt", "accrued", "deferred"),
    code_fragments=("LIAB", "PAY", "LOAN", "DEBT", "ACCR", "DEF"),
)
EQUITY = KeywordRule(
    keywords=("equity", "capital", "retained", "surplus", "fund", "reserve"),
    code_fragments=("EQUITY", "CAP", "RETAIN", "SURP", "FUND", "RES"),
)
CURRENT_ASSET = KeywordRule.anywhere("current", "cash", "receivable", "inventory", "prepaid")
NON_CURRENT_ASSET = KeywordRule(
    keywords=("fixed", "property", "equipment", "building", "land", "long-term"),
)
CURRENT_LIABILITY = KeywordRule.anywhere("current", "payable", "accrued", "short-term")
NON_CURRENT_LIABILITY = KeywordRule(keywords=("long-term", "mortgage", "bond", "deferred"))
RETAINED_EARNINGS = KeywordRule.anywhere("retained", "accumulated", "reserve", "fund")
CURRENT_PERIOD_SURPLUS = KeywordRule.anywhere("surplus", "deficit", "current", "period", "year")

TOTAL_CODE_MARKERS = ("TOTAL", "SUM")


def is_current_asset(line: StatementLine) -> bool:
    if NON_CURRENT_ASSET.matches(line):
        return False
    return CURRENT_ASSET.matches(line)


def is_current_liability(line: StatementLine) -> bool:
    if NON_CURRENT_LIABILITY.matches(line):
        return False
    return CURRENT_LIABILITY.matches(line)


@dataclass(frozen=True)
class BalanceSheetCategories:
    current_assets: Decimal = ZERO
    non_current_assets: Decimal = ZERO
    current_liabilities: Decimal = ZERO
    non_current_liabilities: Decimal = ZERO
    retained_earnings: Decimal = ZERO
    current_period_surplus: Decimal = ZERO

    @property
    def total_assets(self) -> Decimal:
        return self.current_assets + self.non_current_assets

    @property
    def total_liabilities(self) -> Decimal:
        return self.current_liabilities + self.non_current_liabilities

    @property
    def total_equity(self) -> Decimal:
        return self.retained_earnings + self.current_period_surplus


class BalanceSheetProcessor(StatementProcessor[BalanceSheetCategories]):
    statement_code = StatementCode.BAL_SHEET
    computed_lines = (
        ComputedLineSpec(
            "CURRENT_ASSETS_TOTAL", "Total Current Assets", "CURRENT_ASSETS_TOTAL", 1000,
            is_subtotal=True,
        ),
        ComputedLineSpec(
            "NON_CURRENT_ASSETS_TOTAL", "Total Non-Current Assets", "NON_CURRENT_ASSETS_TOTAL", 1100,
            is_subtotal=True,
        ),
        ComputedLineSpec("TOTAL_ASSETS", "TOTAL ASSETS", "TOTAL_ASSETS", 1200, is_total=True),
        ComputedLineSpec(
            "CURRENT_LIABILITIES_TOTAL", "Total Current Liabilities", "CURRENT_LIABILITIES_TOTAL",
            2000, is_subtotal=True,
        ),
        ComputedLineSpec(
            "NON_CURRENT_LIABILITIES_TOTAL", "Total Non-Current Liabilities",
            "NON_CURRENT_LIABILITIES_TOTAL", 2100, is_subtotal=True,
        ),
        ComputedLineSpec(
            "TOTAL_LIABILITIES", "Total Liabilities", "TOTAL_LIABILITIES", 2200, is_subtotal=True
        ),
        ComputedLineSpec("TOTAL_EQUITY", "Total Equity", "TOTAL_EQUITY", 3000, is_subtotal=True),
        ComputedLineSpec(
            "TOTAL_LIABILITIES_EQUITY", "TOTAL LIABILITIES AND EQUITY", "TOTAL_LIABILITIES_EQUITY",
            3100, is_total=True,
        ),
    )
    total_sources = {
        "CURRENT_ASSETS_TOTAL": ("CURRENT_ASSETS_TOTAL", "TOTAL_CURRENT_ASSETS"),
        "NON_CURRENT_ASSETS_TOTAL": ("NON_CURRENT_ASSETS_TOTAL", "TOTAL_NON_CURRENT_ASSETS"),
        "TOTAL_ASSETS": ("TOTAL_ASSETS",),
        "CURRENT_LIABILITIES_TOTAL": ("CURRENT_LIABILITIES_TOTAL", "TOTAL_CURRENT_LIABILITIES"),
        "NON_CURRENT_LIABILITIES_TOTAL": (
            "NON_CURRENT_LIABILITIES_TOTAL",
            "TOTAL_NON_CURRENT_LIABILITIES",
        ),
        "TOTAL_LIABILITIES": ("TOTAL_LIABILITIES",),
        "TOTAL_EQUITY": ("TOTAL_EQUITY", "TOTAL_NET_ASSETS"),
        "TOTAL_LIABILITIES_EQUITY": ("TOTAL_LIABILITIES_EQUITY", "TOTAL_LIABILITIES_NET_ASSETS"),
    }

    def prepare_lines(self, data: ProcessorInput) -> list[StatementLine]:
        return [
            self.with_formatting(line, bold=True)
            if code_contains(line.line_code, *TOTAL_CODE_MARKERS)
            else line
            for line in data.lines
        ]

    def categorize(self, lines: Sequence[StatementLine], value_of: ValueOf) -> BalanceSheetCategories:
        current_assets = ZERO
        non_current_assets = ZERO
        current_liabilities = ZERO
        non_current_liabilities = ZERO
        retained = ZERO
        period_surplus = ZERO
        for line in lines:
            if not is_categorizable(line):
                continue
            value = value_of(line)
            if ASSET.matches(line):
                if is_current_asset(line):
                    current_assets += value
                else:
                    non_current_assets += value
            if LIABILITY.matches(line):
                if is_current_liability(line):
                    current_liabilities += abs(value)
                else:
                    non_current_liabilities += abs(value)
            if EQUITY.matches(line):
                if RETAINED_EARNINGS.matches(line):
                    retained += value
                elif CURRENT_PERIOD_SURPLUS.matches(line):
                    period_surplus += value
        return BalanceSheetCategories(
            current_assets=current_assets,
            non_current_assets=non_current_assets,
            current_liabilities=current_liabilities,
            non_current_liabilities=non_current_liabilities,
            retained_earnings=retained,
            current_period_surplus=period_surplus,
        )

    def category_totals(self, categories: BalanceSheetCategories) -> dict[str, Decimal]:
        return {
            "CURRENT_ASSETS_TOTAL": categories.current_assets,
            "NON_CURRENT_ASSETS_TOTAL": categories.non_current_assets,
            "TOTAL_ASSETS": categories.total_assets,
            "CURRENT_LIABILITIES_TOTAL": categories.current_liabilities,
            "NON_CURRENT_LIABILITIES_TOTAL": categories.non_current_liabilities,
            "TOTAL_LIABILITIES": categories.total_liabilities,
            "RETAINED_EARNINGS": categories.retained_earnings,
            "CURRENT_PERIOD_SURPLUS": categories.current_period_surplus,
            "TOTAL_EQUITY": categories.total_equity,
            "TOTAL_LIABILITIES_EQUITY": categories.total_liabilities + categories.total_equity,
        }

    def complete_totals(self, totals: dict[str, Decimal], provided: set[str]) -> None:
        if "TOTAL_ASSETS" not in provided:
            totals["TOTAL_ASSETS"] = totals["CURRENT_ASSETS_TOTAL"] + totals["NON_CURRENT_ASSETS_TOTAL"]
        if "TOTAL_LIABILITIES" not in provided:
            totals["TOTAL_LIABILITIES"] = (
                totals["CURRENT_LIABILITIES_TOTAL"] + totals["NON_CURRENT_LIABILITIES_TOTAL"]
            )
        if "TOTAL_LIABILITIES_EQUITY" not in provided:
            totals["TOTAL_LIABILITIES_EQUITY"] = totals["TOTAL_LIABILITIES"] + totals["TOTAL_EQUITY"]

    def validate(
        self,
        categories: BalanceSheetCategories,
        totals: Mapping[str, Decimal],
        lines: Sequence[StatementLine],
    ) -> ValidationResults:
        assets = totals["TOTAL_ASSETS"]
        liabilities = totals["TOTAL_LIABILITIES"]
        equity = totals["TOTAL_EQUITY"]
        current_assets = totals["CURRENT_ASSETS_TOTAL"]
        current_liabilities = totals["CURRENT_LIABILITIES_TOTAL"]

        equation = self.balance(assets, liabilities + equity, "Assets = Liabilities + Equity")
        difference = equation.difference

        asset_ratio = current_assets / assets if assets > ZERO else ZERO
        asset_ratio_ok = ZERO <= asset_ratio <= 1
        liability_ratio = current_liabilities / liabilities if liabilities > ZERO else ZERO
        liability_ratio_ok = ZERO <= liability_ratio <= 1
        equity_too_negative = equity < -abs(assets * Decimal("0.5"))

        rules = [
            rule(
                "BAL_SHEET_ACCOUNTING_EQUATION",
                "Accounting Equation Balance",
                equation.is_valid,
                "Assets equal Liabilities plus Equity",
                f"Assets do not equal Liabilities plus Equity (difference: {fmt(difference)})",
                RuleSeverity.ERROR,
                ("TOTAL_ASSETS", "TOTAL_LIABILITIES", "TOTAL_EQUITY"),
            ),
            rule(
                "BAL_SHEET_ASSETS_NON_NEGATIVE",
                "Assets Non-Negative Check",
                assets >= ZERO,
                "Total assets are non-negative",
                "Total assets are negative - this indicates a data error",
                RuleSeverity.ERROR,
                ("TOTAL_ASSETS",),
            ),
            rule(
                "BAL_SHEET_CURRENT_ASSET_RATIO",
                "Current Asset Ratio Check",
                asset_ratio_ok,
                f"Current assets represent {fmt(asset_ratio * HUNDRED, 1)}% of total assets",
                "Current asset ratio is outside expected range",
                RuleSeverity.WARNING,
                ("CURRENT_ASSETS_TOTAL", "TOTAL_ASSETS"),
            ),
            rule(
                "BAL_SHEET_CURRENT_LIABILITY_RATIO",
                "Current Liability Ratio Check",
                liability_ratio_ok,
                f"Current liabilities represent {fmt(liability_ratio * HUNDRED, 1)}% "
                "of total liabilities",
                "Current liability ratio is outside expected range",
                RuleSeverity.WARNING,
                ("CURRENT_LIABILITIES_TOTAL", "TOTAL_LIABILITIES"),
            ),
            rule(
                "BAL_SHEET_EQUITY_REASONABLE",
                "Equity Reasonableness Check",
                not equity_too_negative,
                "Equity level appears reasonable",
                "Equity is excessively negative relative to assets",
                RuleSeverity.WARNING,
                ("TOTAL_EQUITY",),
            ),
        ]

        warnings: list[str] = []
        errors: list[str] = []
        self.imbalance_findings(difference, "accounting equation", warnings, errors, warn_small=True)
        if current_assets == ZERO and assets > ZERO:
            warnings.append("No current assets recorded - this may indicate incomplete data")
        if liabilities == ZERO and equity > ZERO:
            warnings.append("No liabilities recorded - unusual for most organizations")
        if equity < ZERO:
            warnings.append("Negative equity indicates accumulated losses exceed contributed capital")

        return self.results(equation, rules, warnings, errors)
