"""
statement_engines.processors.net_assets -- NET_ASSETS changes statement.

Responsibility:
    Tag every line with a three-column type (ACCUMULATED, ADJUSTMENT,
    TOTAL), strike the running totals into TOTAL lines, categorize
    beginning / change / ending net assets and check
    ``Beginning Net Assets + Changes = Ending Net Assets``.

Invariants enforced:
    - An explicit column type on the template wins; otherwise it is
      inferred from the line code.
    - At each TOTAL line: ``total = accumulated + adjustments`` from the
      running sums since the previous TOTAL.
    - The fiscal-year closing balance TOTAL carries its total forward as
      the running accumulated base and resets adjustments to 0.  Every
      other TOTAL resets both running sums to 0.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Sequence

from statement_kernel.domain.amounts import HUNDRED, ZERO, fmt
from statement_kernel.domain.statement import (
    ColumnType,
    RuleSeverity,
    StatementCode,
    StatementLine,
    ValidationResults,
)
from statement_kernel.logging_config import get_logger
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

logger = get_logger("engines.processors.net_assets")

BEGINNING = KeywordRule.anywhere("beginning", "start", "opening", "initial")
ENDING = KeywordRule.anywhere("ending", "end", "closing", "final")
CHANGE = KeywordRule.anywhere("change", "revenue", "expense", "release", "gain", "loss")
UNRESTRICTED = KeywordRule.anywhere("unrestricted", "general", "operating")
TEMPORARILY_RESTRICTED = KeywordRule.anywhere("temporarily", "temp", "restricted", "purpose")
PERMANENTLY_RESTRICTED = KeywordRule.anywhere("permanently", "perm", "endowment", "permanent")
REVENUE = KeywordRule.anywhere("revenue", "income", "grant", "donation", "contribution")
EXPENSE = KeywordRule.anywhere("expense", "cost", "expenditure")
RESTRICTION_RELEASE = KeywordRule.anywhere("release", "satisfaction", "restriction")
OTHER_CHANGE = KeywordRule.anywhere("other", "miscellaneous", "adjustment", "transfer")

TOTAL_CODE_MARKERS = ("TOTAL", "SUM", "NET")

LARGE_GROWTH_PERCENT = Decimal("50")


# =========================================================================
# Three-column model
# =========================================================================


def get_column_type(line_code: str, explicit: ColumnType | None = None) -> ColumnType:
    if explicit is not None:
        return explicit
    code = line_code.upper()
    if "BALANCES" in code and "JUNE" in code and "PREV" in code:
        return ColumnType.ACCUMULATED
    if is_closing_balance(code):
        return ColumnType.TOTAL
    if "BALANCE" in code and "JULY" in code:
        return ColumnType.ACCUMULATED
    if "BALANCE" in code and "PERIOD_END" in code:
        return ColumnType.TOTAL
    if "ADJUSTMENTS" in code and "TOTAL" not in code:
        return ColumnType.ACCUMULATED
    if "TOTAL" in code or "SUBTOTAL" in code:
        return ColumnType.TOTAL
    return ColumnType.ADJUSTMENT


def is_closing_balance(line_code: str) -> bool:
    """The TOTAL line holding the current fiscal-year closing balance."""
    code = line_code.upper()
    return "BALANCE" in code and "JUNE" in code and "CURRENT" in code


def calculate_three_column_totals(lines: Sequence[StatementLine]) -> list[StatementLine]:
    """
    Fill the three-column fields of ``lines`` (in display order).

    Returns new lines; ACCUMULATED and ADJUSTMENT lines carry their value in
    their own column, TOTAL lines get the running sums struck into them.
    """
    accumulated = ZERO
    adjustments = ZERO
    result: list[StatementLine] = []
    for line in lines:
        column = get_column_type(line.line_code, line.metadata.column_type)
        metadata = dataclasses.replace(line.metadata, column_type=column)
        value = line.current_period_value

        if column is ColumnType.ACCUMULATED:
            accumulated += value
            result.append(dataclasses.replace(line, metadata=metadata, accumulated_surplus=value))
            continue
        if column is ColumnType.ADJUSTMENT:
            adjustments += value
            result.append(dataclasses.replace(line, metadata=metadata, adjustments=value))
            continue

        total = accumulated + adjustments
        struck = dataclasses.replace(
            line,
            metadata=metadata,
            accumulated_surplus=accumulated,
            adjustments=adjustments,
            total=total,
        )
        # A total line with no value source shows the struck total.
        if not line.metadata.is_computed and not line.metadata.event_codes and value == ZERO:
            struck = dataclasses.replace(struck, current_period_value=total)
        result.append(struck)

        if is_closing_balance(line.line_code):
            accumulated = total
        else:
            accumulated = ZERO
        adjustments = ZERO
    return result


# =========================================================================
# Categories
# =========================================================================


@dataclass(frozen=True)
class NetAssetBalances:
    unrestricted: Decimal = ZERO
    temporarily_restricted: Decimal = ZERO
    permanently_restricted: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.unrestricted + self.temporarily_restricted + self.permanently_restricted

    @property
    def has_components(self) -> bool:
        return any(
            v != ZERO
            for v in (self.unrestricted, self.temporarily_restricted, self.permanently_restricted)
        )


@dataclass(frozen=True)
class NetAssetsCategories:
    beginning: NetAssetBalances
    ending: NetAssetBalances
    revenues: Decimal = ZERO
    expenses: Decimal = ZERO
    restriction_releases: Decimal = ZERO
    other_changes: Decimal = ZERO
    column_adjustments: Decimal = ZERO
    ending_rolled_forward: bool = False

    @property
    def net_revenues(self) -> Decimal:
        return self.revenues - self.expenses

    @property
    def total_changes(self) -> Decimal:
        return self.net_revenues + self.restriction_releases + self.other_changes

    @property
    def has_change_items(self) -> bool:
        return any(
            v != ZERO
            for v in (self.revenues, self.expenses, self.restriction_releases, self.other_changes)
        )


def _restriction_bucket(line: StatementLine) -> str | None:
    if UNRESTRICTED.matches(line):
        return "unrestricted"
    if PERMANENTLY_RESTRICTED.matches(line):
        return "permanently_restricted"
    if TEMPORARILY_RESTRICTED.matches(line):
        return "temporarily_restricted"
    return None


def is_change_item(line: StatementLine) -> bool:
    return CHANGE.matches(line) and not BEGINNING.matches(line) and not ENDING.matches(line)


def roll_forward(beginning: NetAssetBalances, total_changes: Decimal) -> NetAssetBalances:
    """Ending balances distributed in proportion to the beginning components."""
    if beginning.total == ZERO:
        return NetAssetBalances()
    factor = 1 + total_changes / beginning.total
    return NetAssetBalances(
        unrestricted=beginning.unrestricted * factor,
        temporarily_restricted=beginning.temporarily_restricted * factor,
        permanently_restricted=beginning.permanently_restricted * factor,
    )


class NetAssetsProcessor(StatementProcessor[NetAssetsCategories]):
    statement_code = StatementCode.NET_ASSETS
    computed_lines = (
        ComputedLineSpec(
            "BEGINNING_NET_ASSETS_TOTAL", "Total Beginning Net Assets", "BEGINNING_NET_ASSETS",
            1000, is_subtotal=True,
        ),
        ComputedLineSpec(
            "NET_REVENUES", "Net Revenues (Revenues less Expenses)", "NET_REVENUES", 2000,
        ),
        ComputedLineSpec(
            "TOTAL_CHANGES_NET_ASSETS", "Total Changes in Net Assets", "CHANGE_IN_NET_ASSETS",
            2100, is_subtotal=True,
        ),
        ComputedLineSpec(
            "ENDING_UNRESTRICTED", "Unrestricted Net Assets", "ENDING_UNRESTRICTED", 3000,
        ),
        ComputedLineSpec(
            "ENDING_TEMP_RESTRICTED", "Temporarily Restricted Net Assets",
            "ENDING_TEMP_RESTRICTED", 3100,
        ),
        ComputedLineSpec(
            "ENDING_PERM_RESTRICTED", "Permanently Restricted Net Assets",
            "ENDING_PERM_RESTRICTED", 3200,
        ),
        ComputedLineSpec(
            "ENDING_NET_ASSETS_TOTAL", "Total Ending Net Assets", "ENDING_NET_ASSETS", 3300,
            is_total=True,
        ),
    )
    total_sources = {
        "BEGINNING_NET_ASSETS": ("BEGINNING_NET_ASSETS_TOTAL", "BALANCES_JUNE_PREV"),
        "CHANGE_IN_NET_ASSETS": ("TOTAL_CHANGES_NET_ASSETS",),
        "ENDING_NET_ASSETS": ("ENDING_NET_ASSETS_TOTAL", "BALANCE_PERIOD_END"),
    }

    def prepare_lines(self, data: ProcessorInput) -> list[StatementLine]:
        lines = calculate_three_column_totals(data.lines)
        prepared: list[StatementLine] = []
        for line in lines:
            if code_contains(line.line_code, *TOTAL_CODE_MARKERS):
                line = self.with_formatting(line, bold=True)
            elif line.current_period_value < ZERO and is_change_item(line):
                line = self.with_formatting(line, italic=True)
            prepared.append(line)
        return prepared

    def build_computed_lines(self, lines, totals, previous_totals, has_previous):
        # Three-column templates carry their own balance lines.
        if any(line.total is not None for line in lines):
            return []
        return super().build_computed_lines(lines, totals, previous_totals, has_previous)

    def categorize(self, lines: Sequence[StatementLine], value_of: ValueOf) -> NetAssetsCategories:
        beginning = dict.fromkeys(
            ("unrestricted", "temporarily_restricted", "permanently_restricted"), ZERO
        )
        ending = dict(beginning)
        changes = dict.fromkeys(("revenues", "expenses", "restriction_releases", "other_changes"), ZERO)
        column_adjustments = ZERO

        for line in lines:
            value = value_of(line)
            if line.metadata.column_type is ColumnType.ADJUSTMENT and not line.metadata.is_hidden:
                column_adjustments += value
            if not is_categorizable(line):
                continue

            if BEGINNING.matches(line):
                bucket = _restriction_bucket(line)
                if bucket:
                    beginning[bucket] += value

            if is_change_item(line):
                if REVENUE.matches(line):
                    changes["revenues"] += value
                elif EXPENSE.matches(line):
                    changes["expenses"] += abs(value)
                elif RESTRICTION_RELEASE.matches(line):
                    changes["restriction_releases"] += value
                elif OTHER_CHANGE.matches(line):
                    changes["other_changes"] += value

            if ENDING.matches(line):
                bucket = _restriction_bucket(line)
                if bucket:
                    ending[bucket] += value

        categories = NetAssetsCategories(
            beginning=NetAssetBalances(**beginning),
            ending=NetAssetBalances(**ending),
            column_adjustments=column_adjustments,
            **changes,
        )
        if categories.ending.total == ZERO and categories.beginning.total != ZERO:
            categories = dataclasses.replace(
                categories,
                ending=roll_forward(categories.beginning, categories.total_changes),
                ending_rolled_forward=True,
            )
        return categories

    def category_totals(self, categories: NetAssetsCategories) -> dict[str, Decimal]:
        change = (
            categories.total_changes
            if categories.has_change_items
            else categories.column_adjustments
        )
        return {
            "BEGINNING_NET_ASSETS": categories.beginning.total,
            "REVENUES": categories.revenues,
            "EXPENSES": categories.expenses,
            "NET_REVENUES": categories.net_revenues,
            "RESTRICTION_RELEASES": categories.restriction_releases,
            "OTHER_CHANGES": categories.other_changes,
            "CHANGE_IN_NET_ASSETS": change,
            "ENDING_UNRESTRICTED": categories.ending.unrestricted,
            "ENDING_TEMP_RESTRICTED": categories.ending.temporarily_restricted,
            "ENDING_PERM_RESTRICTED": categories.ending.permanently_restricted,
            "ENDING_NET_ASSETS": categories.ending.total,
        }

    def validate(
        self,
        categories: NetAssetsCategories,
        totals: Mapping[str, Decimal],
        lines: Sequence[StatementLine],
    ) -> ValidationResults:
        beginning = totals["BEGINNING_NET_ASSETS"]
        change = totals["CHANGE_IN_NET_ASSETS"]
        ending = totals["ENDING_NET_ASSETS"]

        equation = self.balance(
            beginning + change, ending, "Beginning Net Assets + Changes = Ending Net Assets"
        )
        difference = -equation.difference

        rules = [
            rule(
                "NET_ASSETS_CHANGE_BALANCE",
                "Net Asset Change Balance",
                equation.is_valid,
                "Net asset changes balance correctly",
                f"Net asset changes do not balance (difference: {fmt(difference)})",
                RuleSeverity.ERROR,
                ("BEGINNING_NET_ASSETS_TOTAL", "TOTAL_CHANGES_NET_ASSETS", "ENDING_NET_ASSETS_TOTAL"),
            ),
            rule(
                "NET_ASSETS_NET_REVENUES_CALC",
                "Net Revenues Calculation",
                abs(totals["NET_REVENUES"] - (categories.revenues - categories.expenses))
                <= self.tolerance,
                "Net revenues calculation is correct",
                "Net revenues calculation does not match revenues minus expenses",
                RuleSeverity.ERROR,
                ("NET_REVENUES",),
            ),
            rule(
                "NET_ASSETS_TOTAL_CHANGES_CALC",
                "Total Changes Calculation",
                abs(
                    categories.total_changes
                    - (
                        categories.net_revenues
                        + categories.restriction_releases
                        + categories.other_changes
                    )
                )
                <= self.tolerance,
                "Total changes calculation is correct",
                "Total changes calculation does not match sum of individual changes",
                RuleSeverity.ERROR,
                ("TOTAL_CHANGES_NET_ASSETS",),
            ),
        ]

        temporarily_restricted = categories.beginning.temporarily_restricted
        releases = categories.restriction_releases
        if temporarily_restricted > ZERO and releases > ZERO:
            rules.append(
                rule(
                    "NET_ASSETS_RESTRICTION_RELEASE_LIMIT",
                    "Restriction Release Limit Check",
                    releases <= temporarily_restricted,
                    "Restriction releases are within available temporarily restricted assets",
                    "Restriction releases exceed available temporarily restricted assets",
                    RuleSeverity.WARNING,
                    ("RESTRICTION_RELEASES", "BEGINNING_TEMP_RESTRICTED"),
                )
            )

        components_found = categories.ending.has_components and not categories.ending_rolled_forward
        rules.append(
            rule(
                "NET_ASSETS_ENDING_COMPONENTS_SUM",
                "Ending Net Assets Components Sum",
                not components_found
                or abs(ending - categories.ending.total) <= self.tolerance,
                "Ending net assets components sum correctly",
                "Ending net assets components do not sum to total",
                RuleSeverity.ERROR,
                (
                    "ENDING_UNRESTRICTED",
                    "ENDING_TEMP_RESTRICTED",
                    "ENDING_PERM_RESTRICTED",
                    "ENDING_NET_ASSETS_TOTAL",
                ),
            )
        )
        rules.extend(self.three_column_rules(lines))

        warnings: list[str] = []
        errors: list[str] = []
        if change < ZERO:
            warnings.append("Negative change in net assets indicates organizational challenges")
        if ending < ZERO:
            warnings.append("Negative ending net assets indicates accumulated deficits")
        if categories.revenues == ZERO:
            warnings.append("No revenues recorded for this period")
        if categories.expenses == ZERO:
            warnings.append("No expenses recorded for this period")
        if beginning == ZERO:
            warnings.append("No beginning net assets - this may be the first reporting period")
        if beginning > ZERO:
            growth = change / beginning * HUNDRED
            if abs(growth) > LARGE_GROWTH_PERCENT:
                warnings.append(f"Large change in net assets: {fmt(growth, 1)}% growth rate")

        self.imbalance_findings(difference, "net asset change", warnings, errors)
        return self.results(equation, rules, warnings, errors)

    def three_column_rules(self, lines: Sequence[StatementLine]):
        mismatched: list[str] = []
        accumulated_sum = ZERO
        adjustment_sum = ZERO
        final_total = ZERO
        for line in lines:
            column = line.metadata.column_type
            if column is ColumnType.ACCUMULATED and line.accumulated_surplus is not None:
                accumulated_sum += line.accumulated_surplus
            elif column is ColumnType.ADJUSTMENT and line.adjustments is not None:
                adjustment_sum += line.adjustments
            elif column is ColumnType.TOTAL and line.total is not None:
                expected = (line.accumulated_surplus or ZERO) + (line.adjustments or ZERO)
                if abs(line.total - expected) > self.tolerance:
                    mismatched.append(line.line_code)
                final_total = line.total

        balanced = final_total == ZERO or (
            abs(final_total - (accumulated_sum + adjustment_sum)) <= self.tolerance
        )
        if not balanced:
            logger.warning(
                "three_column_imbalance",
                extra={
                    "final_total": str(final_total),
                    "accumulated_sum": str(accumulated_sum),
                    "adjustment_sum": str(adjustment_sum),
                },
            )
        return [
            rule(
                "NET_ASSETS_THREE_COLUMN_TOTALS",
                "Three-Column Total Calculation",
                not mismatched,
                "All total lines correctly calculate accumulated + adjustments",
                f"Total calculation mismatch in lines: {', '.join(mismatched)}",
                RuleSeverity.ERROR,
                tuple(mismatched),
            ),
            rule(
                "NET_ASSETS_THREE_COLUMN_BALANCE",
                "Three-Column Balance Validation",
                balanced,
                "Three-column format balances correctly",
                "Three-column format does not balance",
                RuleSeverity.WARNING,
                ("ACCUMULATED_SURPLUS", "ADJUSTMENTS", "TOTAL"),
            ),
        ]
