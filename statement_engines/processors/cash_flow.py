"""
statement_engines.processors.cash_flow -- CASH_FLOW categorization.

Operating receipts and payments, investing purchases and sales, financing
borrowings, repayments and contributions.  Category amounts are taken as
absolute values; each section's sign comes from its own formula:

    operating = receipts - payments
    investing = sales - purchases
    financing = borrowings + contributions - repayments

Identity: ``Beginning Cash + Net Cash Flow = Ending Cash``.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Sequence

from statement_kernel.domain.amounts import ZERO, fmt
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

OPERATING = KeywordRule(
    keywords=("receipt", "payment", "customer", "supplier", "employee", "salary", "service"),
    code_fragments=("OPER", "RCPT", "PAY", "CUST", "SUPP", "SAL"),
)
INVESTING = KeywordRule(
    keywords=("asset", "equipment", "building", "investment", "purchase", "sale"),
    code_fragments=("INV", "ASSET", "EQUIP", "BLDG", "PURCH", "SALE"),
)
FINANCING = KeywordRule(
    keywords=("loan", "borrow", "repay", "capital", "equity", "debt"),
    code_fragments=("FIN", "LOAN", "BORR", "REPAY", "CAP", "DEBT"),
)
RECEIPT = KeywordRule(
    keywords=("receipt", "received", "collection", "income", "revenue"),
    code_fragments=("RCPT", "REC"),
)
PAYMENT = KeywordRule(keywords=("payment", "paid", "expense", "cost"), code_fragments=("PAY", "EXP"))
PURCHASE = KeywordRule(
    keywords=("purchase", "acquisition", "buy", "bought"), code_fragments=("PURCH", "ACQ")
)
SALE = KeywordRule(keywords=("sale", "disposal", "sell", "sold"), code_fragments=("SALE", "DISP"))
BORROWING = KeywordRule(keywords=("borrow", "loan", "advance"), code_fragments=("BORR", "LOAN"))
REPAYMENT = KeywordRule(keywords=("repay", "repayment", "principal"), code_fragments=("REPAY", "PRIN"))
CAPITAL_CONTRIBUTION = KeywordRule(
    keywords=("capital", "contribution", "equity", "investment"), code_fragments=("CAP", "CONTRIB")
)
BEGINNING_CASH = KeywordRule(keywords=("beginning", "start", "opening"), code_fragments=("BEG", "OPEN"))
ENDING_CASH = KeywordRule(keywords=("ending", "end", "closing"), code_fragments=("END", "CLOS"))

TOTAL_CODE_MARKERS = ("TOTAL", "NET", "SUM")

RECEIPT_PAYMENT_RATIO_RANGE = (Decimal("0.1"), Decimal("10"))
LIQUIDITY_FLOOR = Decimal("-1000")


@dataclass(frozen=True)
class CashFlowCategories:
    cash_receipts: Decimal = ZERO
    cash_payments: Decimal = ZERO
    asset_purchases: Decimal = ZERO
    asset_sales: Decimal = ZERO
    borrowings: Decimal = ZERO
    repayments: Decimal = ZERO
    capital_contributions: Decimal = ZERO
    beginning_cash: Decimal = ZERO
    ending_cash: Decimal = ZERO

    @property
    def net_operating(self) -> Decimal:
        return self.cash_receipts - self.cash_payments

    @property
    def net_investing(self) -> Decimal:
        return self.asset_sales - self.asset_purchases

    @property
    def net_financing(self) -> Decimal:
        return self.borrowings + self.capital_contributions - self.repayments

    @property
    def net_cash_flow(self) -> Decimal:
        return self.net_operating + self.net_investing + self.net_financing


class CashFlowProcessor(StatementProcessor[CashFlowCategories]):
    statement_code = StatementCode.CASH_FLOW
    computed_lines = (
        ComputedLineSpec(
            "NET_OPERATING_CASH_FLOW", "Net Cash Flow from Operating Activities",
            "OPERATING_CASH_FLOW", 1000, is_total=True,
        ),
        ComputedLineSpec(
            "NET_INVESTING_CASH_FLOW", "Net Cash Flow from Investing Activities",
            "INVESTING_CASH_FLOW", 2000, is_total=True,
        ),
        ComputedLineSpec(
            "NET_FINANCING_CASH_FLOW", "Net Cash Flow from Financing Activities",
            "FINANCING_CASH_FLOW", 3000, is_total=True,
        ),
        ComputedLineSpec("NET_CHANGE_CASH", "Net Change in Cash", "NET_CASH_FLOW", 4000, is_total=True),
        ComputedLineSpec("BEGINNING_CASH", "Cash at Beginning of Period", "BEGINNING_CASH", 4100),
        ComputedLineSpec("ENDING_CASH", "Cash at End of Period", "ENDING_CASH", 4200, is_total=True),
    )
    total_sources = {
        "OPERATING_CASH_FLOW": ("NET_OPERATING_CASH_FLOW", "NET_CASH_FLOW_OPERATING"),
        "INVESTING_CASH_FLOW": ("NET_INVESTING_CASH_FLOW", "NET_CASH_FLOW_INVESTING"),
        "FINANCING_CASH_FLOW": ("NET_FINANCING_CASH_FLOW", "NET_CASH_FLOW_FINANCING"),
        "NET_CASH_FLOW": ("NET_CHANGE_CASH", "NET_INCREASE_CASH"),
        "BEGINNING_CASH": ("BEGINNING_CASH", "CASH_BEGINNING"),
        "ENDING_CASH": ("ENDING_CASH", "CASH_ENDING"),
    }

    def prepare_lines(self, data: ProcessorInput) -> list[StatementLine]:
        lines: list[StatementLine] = []
        for line in data.lines:
            is_total = code_contains(line.line_code, *TOTAL_CODE_MARKERS)
            if is_total:
                line = self.with_formatting(line, bold=True)
            elif line.current_period_value < ZERO:
                line = self.with_formatting(line, italic=True)
            lines.append(line)
        return lines

    def categorize(self, lines: Sequence[StatementLine], value_of: ValueOf) -> CashFlowCategories:
        amounts = dict.fromkeys(
            (
                "cash_receipts", "cash_payments", "asset_purchases", "asset_sales",
                "borrowings", "repayments", "capital_contributions",
            ),
            ZERO,
        )
        beginning = ZERO
        ending = ZERO
        for line in lines:
            if not is_categorizable(line):
                continue
            value = value_of(line)
            magnitude = abs(value)

            if OPERATING.matches(line):
                if RECEIPT.matches(line):
                    amounts["cash_receipts"] += magnitude
                elif PAYMENT.matches(line):
                    amounts["cash_payments"] += magnitude

            if INVESTING.matches(line):
                if PURCHASE.matches(line):
                    amounts["asset_purchases"] += magnitude
                elif SALE.matches(line):
                    amounts["asset_sales"] += magnitude

            if FINANCING.matches(line):
                if BORROWING.matches(line):
                    amounts["borrowings"] += magnitude
                elif REPAYMENT.matches(line):
                    amounts["repayments"] += magnitude
                elif CAPITAL_CONTRIBUTION.matches(line):
                    amounts["capital_contributions"] += magnitude

            if BEGINNING_CASH.matches(line):
                beginning = value
            elif ENDING_CASH.matches(line):
                ending = value

        return CashFlowCategories(beginning_cash=beginning, ending_cash=ending, **amounts)

    def category_totals(self, categories: CashFlowCategories) -> dict[str, Decimal]:
        return {
            "CASH_RECEIPTS": categories.cash_receipts,
            "CASH_PAYMENTS": categories.cash_payments,
            "ASSET_PURCHASES": categories.asset_purchases,
            "ASSET_SALES": categories.asset_sales,
            "BORROWINGS": categories.borrowings,
            "REPAYMENTS": categories.repayments,
            "CAPITAL_CONTRIBUTIONS": categories.capital_contributions,
            "OPERATING_CASH_FLOW": categories.net_operating,
            "INVESTING_CASH_FLOW": categories.net_investing,
            "FINANCING_CASH_FLOW": categories.net_financing,
            "NET_CASH_FLOW": categories.net_cash_flow,
            "BEGINNING_CASH": categories.beginning_cash,
            "ENDING_CASH": categories.ending_cash,
        }

    def complete_totals(self, totals: dict[str, Decimal], provided: set[str]) -> None:
        if "NET_CASH_FLOW" not in provided:
            totals["NET_CASH_FLOW"] = (
                totals["OPERATING_CASH_FLOW"]
                + totals["INVESTING_CASH_FLOW"]
                + totals["FINANCING_CASH_FLOW"]
            )
        # A missing ending balance is rolled forward from the beginning one.
        if (
            "ENDING_CASH" not in provided
            and totals["ENDING_CASH"] == ZERO
            and totals["BEGINNING_CASH"] != ZERO
        ):
            totals["ENDING_CASH"] = totals["BEGINNING_CASH"] + totals["NET_CASH_FLOW"]

    def validate(
        self,
        categories: CashFlowCategories,
        totals: Mapping[str, Decimal],
        lines: Sequence[StatementLine],
    ) -> ValidationResults:
        operating = totals["OPERATING_CASH_FLOW"]
        investing = totals["INVESTING_CASH_FLOW"]
        financing = totals["FINANCING_CASH_FLOW"]
        net = totals["NET_CASH_FLOW"]
        beginning = totals["BEGINNING_CASH"]
        ending = totals["ENDING_CASH"]
        receipts = categories.cash_receipts
        payments = categories.cash_payments

        equation = self.balance(
            beginning + net, ending, "Beginning Cash + Net Cash Flow = Ending Cash"
        )
        # Reported as ending minus expected ending.
        difference = -equation.difference

        net_ok = abs(net - (operating + investing + financing)) <= self.tolerance
        has_operating = receipts > ZERO or payments > ZERO

        rules = [
            rule(
                "CASH_FLOW_BALANCE",
                "Cash Flow Balance Check",
                equation.is_valid,
                "Cash flow balances correctly",
                f"Cash flow does not balance (difference: {fmt(difference)})",
                RuleSeverity.ERROR,
                ("BEGINNING_CASH", "NET_CHANGE_CASH", "ENDING_CASH"),
            ),
            rule(
                "CASH_FLOW_NET_CALCULATION",
                "Net Cash Flow Calculation",
                net_ok,
                "Net cash flow calculation is correct",
                "Net cash flow calculation does not match sum of activities",
                RuleSeverity.ERROR,
                (
                    "NET_OPERATING_CASH_FLOW",
                    "NET_INVESTING_CASH_FLOW",
                    "NET_FINANCING_CASH_FLOW",
                    "NET_CHANGE_CASH",
                ),
            ),
            rule(
                "CASH_FLOW_OPERATING_ACTIVITY",
                "Operating Activity Check",
                has_operating,
                "Operating cash flow activities are present",
                "No operating cash flow activities recorded",
                RuleSeverity.WARNING,
                ("NET_OPERATING_CASH_FLOW",),
            ),
        ]
        if receipts > ZERO and payments > ZERO:
            ratio = receipts / payments
            low, high = RECEIPT_PAYMENT_RATIO_RANGE
            rules.append(
                rule(
                    "CASH_FLOW_RECEIPT_PAYMENT_RATIO",
                    "Receipt to Payment Ratio Check",
                    low < ratio < high,
                    f"Receipt to payment ratio is reasonable ({fmt(ratio)})",
                    f"Receipt to payment ratio may indicate data issues ({fmt(ratio)})",
                    RuleSeverity.WARNING,
                    ("CASH_RECEIPTS", "CASH_PAYMENTS"),
                )
            )

        warnings: list[str] = []
        errors: list[str] = []
        if operating < ZERO:
            warnings.append("Negative operating cash flow may indicate operational challenges")
        if net < ZERO and abs(net) > beginning * Decimal("0.5"):
            warnings.append("Large negative cash flow relative to beginning cash balance")
        if investing > ZERO and categories.asset_purchases == ZERO:
            warnings.append("Positive investing cash flow with no asset purchases may indicate asset sales")
        if financing < ZERO and categories.repayments > categories.borrowings:
            warnings.append("Net debt repayment may indicate deleveraging strategy")

        self.imbalance_findings(difference, "cash flow", warnings, errors)
        if ending < LIQUIDITY_FLOOR:
            errors.append("Large negative ending cash balance indicates potential liquidity issues")

        return self.results(equation, rules, warnings, errors)
