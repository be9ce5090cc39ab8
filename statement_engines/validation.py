"""
statement_engines.validation -- Accounting identities and business rules.

Responsibility:
    Validate a fully assembled ``StatementDocument``: dispatch the
    accounting-equation check by statement code and run every registered
    business rule whose statement types include the document's code.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Called by the statement generator after the statement-type processor
    has produced the final lines and totals.

Invariants enforced:
    - Rules are data (``BusinessRule``); new checks are added with
      ``add_business_rule``, never by editing the dispatch.
    - A rule whose condition raises is reported as failed with the raised
      message; the exception never propagates.
    - ``ValidationResults.is_valid`` is "no errors"; failed warning rules are
      reported as warnings and never flip it.
    - Balance comparisons use an absolute tolerance, never exact equality.

Usage:
    engine = ValidationEngine()
    results = engine.validate_statement_balance(document)
    results.accounting_equation.difference
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterable

from statement_kernel.domain.amounts import BALANCE_TOLERANCE, ZERO, to_decimal
from statement_kernel.domain.statement import (
    BalanceValidation,
    BusinessRuleValidation,
    RuleSeverity,
    StatementCode,
    StatementDocument,
    ValidationResults,
)
from statement_kernel.logging_config import get_logger
from statement_engines.tracer import traced_engine

logger = get_logger("engines.validation")

DEFAULT_LARGE_VALUE_THRESHOLD = Decimal("1000000000")

_ALL_STATEMENTS = tuple(StatementCode)


@dataclass(frozen=True)
class BusinessRule:
    """
    A registered business rule.

    ``condition`` returns True when the document satisfies the rule.
    """

    id: str
    name: str
    statement_types: tuple[StatementCode, ...]
    condition: Callable[[StatementDocument], bool]
    message: str
    severity: RuleSeverity = RuleSeverity.ERROR
    affected_fields: tuple[str, ...] = ()

    def applies_to(self, statement_code: StatementCode) -> bool:
        return statement_code in self.statement_types


class ValidationEngine:
    """
    Statement-agnostic validation.

    Contract:
        ``validate_statement_balance`` never raises for data problems; every
        finding is returned in ``ValidationResults``.
    """

    def __init__(
        self,
        tolerance: Decimal = BALANCE_TOLERANCE,
        large_value_threshold: Decimal = DEFAULT_LARGE_VALUE_THRESHOLD,
        rules: Iterable[BusinessRule] | None = None,
    ):
        self.tolerance = tolerance
        self.large_value_threshold = large_value_threshold
        self._rules: dict[str, BusinessRule] = {}
        for rule in (rules if rules is not None else default_business_rules(large_value_threshold)):
            self._rules[rule.id] = rule

    # ---------------------------------------------------------------------
    # Registry
    # ---------------------------------------------------------------------

    @property
    def rules(self) -> tuple[BusinessRule, ...]:
        return tuple(self._rules.values())

    def add_business_rule(self, rule: BusinessRule) -> None:
        """Register ``rule``; an existing rule with the same id is replaced."""
        self._rules[rule.id] = rule
        logger.debug("business_rule_registered", extra={"rule_id": rule.id})

    def remove_business_rule(self, rule_id: str) -> bool:
        removed = self._rules.pop(rule_id, None) is not None
        if removed:
            logger.debug("business_rule_removed", extra={"rule_id": rule_id})
        return removed

    # ---------------------------------------------------------------------
    # Accounting equation
    # ---------------------------------------------------------------------

    def validate_accounting_equation(self, document: StatementDocument) -> BalanceValidation:
        handler = self._EQUATIONS.get(document.statement_code)
        if handler is None:
            return BalanceValidation(
                is_valid=True,
                left_side=ZERO,
                right_side=ZERO,
                difference=ZERO,
                equation="No specific equation validation for this statement type",
            )
        return handler(self, document)

    def _balance(self, left: Decimal, right: Decimal, equation: str) -> BalanceValidation:
        difference = left - right
        return BalanceValidation(
            is_valid=abs(difference) <= self.tolerance,
            left_side=left,
            right_side=right,
            difference=difference,
            equation=equation,
        )

    def _balance_sheet_equation(self, document: StatementDocument) -> BalanceValidation:
        assets = document.total("TOTAL_ASSETS")
        liabilities_and_equity = document.total("TOTAL_LIABILITIES") + document.total("TOTAL_EQUITY")
        return self._balance(assets, liabilities_and_equity, "Assets = Liabilities + Equity")

    def _cash_flow_equation(self, document: StatementDocument) -> BalanceValidation:
        net = document.total("NET_CASH_FLOW")
        activities = (
            document.total("OPERATING_CASH_FLOW")
            + document.total("INVESTING_CASH_FLOW")
            + document.total("FINANCING_CASH_FLOW")
        )
        return self._balance(
            net, activities, "Net Cash Flow = Operating + Investing + Financing Cash Flows"
        )

    def _revenue_expenditure_equation(self, document: StatementDocument) -> BalanceValidation:
        net = document.total("NET_SURPLUS_DEFICIT")
        computed = document.total("TOTAL_REVENUE") - document.total("TOTAL_EXPENSES")
        return self._balance(net, computed, "Net Surplus/Deficit = Total Revenue - Total Expenses")

    def _net_assets_equation(self, document: StatementDocument) -> BalanceValidation:
        ending = document.total("ENDING_NET_ASSETS")
        computed = document.total("BEGINNING_NET_ASSETS") + document.total("CHANGE_IN_NET_ASSETS")
        return self._balance(
            ending, computed, "Ending Net Assets = Beginning Net Assets + Change in Net Assets"
        )

    def _budget_vs_actual_equation(self, document: StatementDocument) -> BalanceValidation:
        checked = 0
        mismatches = 0
        for line in document.lines:
            if line.variance is None or not _has_values(line):
                continue
            checked += 1
            baseline = line.budget_value if line.budget_value is not None else line.previous_period_value
            if abs(line.variance.absolute - (line.current_period_value - baseline)) > self.tolerance:
                mismatches += 1
        return BalanceValidation(
            is_valid=mismatches == 0,
            left_side=Decimal(checked),
            right_side=Decimal(checked - mismatches),
            difference=Decimal(mismatches),
            equation="All variance calculations must be accurate",
        )

    _EQUATIONS: dict[StatementCode, Callable[[ValidationEngine, StatementDocument], BalanceValidation]] = {
        StatementCode.BAL_SHEET: _balance_sheet_equation,
        StatementCode.CASH_FLOW: _cash_flow_equation,
        StatementCode.REV_EXP: _revenue_expenditure_equation,
        StatementCode.NET_ASSETS: _net_assets_equation,
        StatementCode.BUDGET_VS_ACTUAL: _budget_vs_actual_equation,
    }

    # ---------------------------------------------------------------------
    # Business rules
    # ---------------------------------------------------------------------

    def validate_business_rules(self, document: StatementDocument) -> list[BusinessRuleValidation]:
        results: list[BusinessRuleValidation] = []
        for rule in self._rules.values():
            if not rule.applies_to(document.statement_code):
                continue
            results.append(self._run_rule(rule, document))
        return results

    def _run_rule(self, rule: BusinessRule, document: StatementDocument) -> BusinessRuleValidation:
        try:
            passed = bool(rule.condition(document))
        except Exception as exc:  # rule conditions are caller-supplied
            logger.warning(
                "business_rule_failed_to_evaluate",
                extra={"rule_id": rule.id, "error": str(exc)},
            )
            return BusinessRuleValidation(
                rule_id=rule.id,
                rule_name=rule.name,
                is_valid=False,
                message=f"Error validating {rule.name}: {exc}",
                severity=rule.severity,
                affected_fields=rule.affected_fields,
            )
        return BusinessRuleValidation(
            rule_id=rule.id,
            rule_name=rule.name,
            is_valid=passed,
            message=f"{rule.name} validation passed" if passed else rule.message,
            severity=rule.severity,
            affected_fields=rule.affected_fields,
        )

    # ---------------------------------------------------------------------
    # Full validation
    # ---------------------------------------------------------------------

    @traced_engine("statement_validation", "1.0")
    def validate_statement_balance(self, document: StatementDocument) -> ValidationResults:
        equation = self.validate_accounting_equation(document)
        rules = self.validate_business_rules(document)

        errors: list[str] = []
        warnings: list[str] = []
        if not equation.is_valid:
            errors.append(f"Accounting equation validation failed: {equation.equation}")
        for result in rules:
            if result.is_valid:
                continue
            if result.severity is RuleSeverity.WARNING:
                warnings.append(result.message)
            else:
                errors.append(result.message)

        results = ValidationResults.from_parts(
            accounting_equation=equation,
            business_rules=rules,
            warnings=warnings,
            errors=errors,
        )
        logger.info(
            "statement_validated",
            extra={
                "statement_code": document.statement_code.value,
                "is_valid": results.is_valid,
                "equation_difference": str(equation.difference),
                "rules_run": len(rules),
                "error_count": len(errors),
                "warning_count": len(warnings),
            },
        )
        return results


# =========================================================================
# Default rules
# =========================================================================


def _has_values(line) -> bool:
    return line.current_period_value != ZERO or line.previous_period_value != ZERO


def _working_capital(document: StatementDocument):
    return document.metadata.working_capital


def _receivables_non_negative(document: StatementDocument) -> bool:
    wc = _working_capital(document)
    if wc is None:
        return True
    return wc.receivables.current_balance >= ZERO


def _within_double(change: Decimal, previous: Decimal) -> bool:
    if previous == ZERO:
        return True
    return abs(change / previous) <= 1


def _receivables_variance(document: StatementDocument) -> bool:
    wc = _working_capital(document)
    if wc is None:
        return True
    return _within_double(wc.receivables.change, wc.receivables.previous_balance)


def _payables_variance(document: StatementDocument) -> bool:
    wc = _working_capital(document)
    if wc is None:
        return True
    return _within_double(wc.payables.change, wc.payables.previous_balance)


def _previous_period_available(document: StatementDocument) -> bool:
    wc = _working_capital(document)
    if wc is None:
        return True
    return not any(
        "previous period" in warning.lower() or "baseline" in warning.lower()
        for warning in wc.warnings
    )


def _consistent_balances(threshold: Decimal) -> Callable[[StatementDocument], bool]:
    def condition(document: StatementDocument) -> bool:
        wc = _working_capital(document)
        if wc is None:
            return True
        receivables = wc.receivables.current_balance
        payables = wc.payables.current_balance
        if payables < ZERO:
            return False
        return abs(receivables) <= threshold and abs(payables) <= threshold

    return condition


def _equity_reasonable(document: StatementDocument) -> bool:
    assets = document.total("TOTAL_ASSETS")
    if assets == ZERO:
        return True
    return abs(document.total("TOTAL_EQUITY") / assets) <= 2


def _operating_flow_reasonable(document: StatementDocument) -> bool:
    revenue = document.total("TOTAL_REVENUE")
    if revenue == ZERO:
        return True
    return abs(document.total("OPERATING_CASH_FLOW") / revenue) <= 3


def _variance_calculations_accurate(document: StatementDocument) -> bool:
    for line in document.lines:
        if line.variance is None or not _has_values(line):
            continue
        baseline = line.budget_value if line.budget_value is not None else line.previous_period_value
        if abs(line.variance.absolute - (line.current_period_value - baseline)) > BALANCE_TOLERANCE:
            return False
    return True


def _no_extreme_values(threshold: Decimal) -> Callable[[StatementDocument], bool]:
    def condition(document: StatementDocument) -> bool:
        for line in document.lines:
            if abs(line.current_period_value) > threshold or abs(line.previous_period_value) > threshold:
                return False
        return all(abs(to_decimal(value)) <= threshold for value in document.totals.values())

    return condition


def default_business_rules(
    large_value_threshold: Decimal = DEFAULT_LARGE_VALUE_THRESHOLD,
) -> list[BusinessRule]:
    """The rules every ``ValidationEngine`` starts with."""
    cash_flow = (StatementCode.CASH_FLOW,)
    return [
        BusinessRule(
            id="WC_NEGATIVE_RECEIVABLES",
            name="Working Capital Negative Receivables Balance",
            statement_types=cash_flow,
            condition=_receivables_non_negative,
            message="Negative receivables balance detected. This may indicate data quality issues.",
            severity=RuleSeverity.ERROR,
            affected_fields=("CHANGES_RECEIVABLES",),
        ),
        BusinessRule(
            id="WC_EXTREME_RECEIVABLES_VARIANCE",
            name="Working Capital Extreme Receivables Variance",
            statement_types=cash_flow,
            condition=_receivables_variance,
            message=(
                "Significant variance in receivables detected (>100% change). "
                "Please review the underlying data."
            ),
            severity=RuleSeverity.WARNING,
            affected_fields=("CHANGES_RECEIVABLES",),
        ),
        BusinessRule(
            id="WC_EXTREME_PAYABLES_VARIANCE",
            name="Working Capital Extreme Payables Variance",
            statement_types=cash_flow,
            condition=_payables_variance,
            message=(
                "Significant variance in payables detected (>100% change). "
                "Please review the underlying data."
            ),
            severity=RuleSeverity.WARNING,
            affected_fields=("CHANGES_PAYABLES",),
        ),
        BusinessRule(
            id="WC_MISSING_PREVIOUS_PERIOD",
            name="Working Capital Missing Previous Period",
            statement_types=cash_flow,
            condition=_previous_period_available,
            message=(
                "Previous period data not available for working capital calculation. "
                "Using zero as baseline."
            ),
            severity=RuleSeverity.WARNING,
            affected_fields=("CHANGES_RECEIVABLES", "CHANGES_PAYABLES"),
        ),
        BusinessRule(
            id="WC_INCONSISTENT_BALANCE_SHEET_DATA",
            name="Working Capital Inconsistent Balance Sheet Data",
            statement_types=cash_flow,
            condition=_consistent_balances(large_value_threshold),
            message=(
                "Inconsistent balance sheet data detected in working capital accounts. "
                "Please verify the data integrity."
            ),
            severity=RuleSeverity.ERROR,
            affected_fields=("CHANGES_RECEIVABLES", "CHANGES_PAYABLES"),
        ),
        BusinessRule(
            id="BS_POSITIVE_ASSETS",
            name="Balance Sheet Positive Assets",
            statement_types=(StatementCode.BAL_SHEET,),
            condition=lambda document: document.total("TOTAL_ASSETS") >= ZERO,
            message="Total assets cannot be negative",
            severity=RuleSeverity.ERROR,
            affected_fields=("TOTAL_ASSETS",),
        ),
        BusinessRule(
            id="BS_EQUITY_REASONABLE",
            name="Balance Sheet Reasonable Equity",
            statement_types=(StatementCode.BAL_SHEET,),
            condition=_equity_reasonable,
            message="Equity ratio appears unreasonable (>200% of assets)",
            severity=RuleSeverity.WARNING,
            affected_fields=("TOTAL_EQUITY", "TOTAL_ASSETS"),
        ),
        BusinessRule(
            id="RE_POSITIVE_REVENUE",
            name="Revenue Expenditure Positive Revenue",
            statement_types=(StatementCode.REV_EXP,),
            condition=lambda document: document.total("TOTAL_REVENUE") >= ZERO,
            message="Total revenue should not be negative",
            severity=RuleSeverity.WARNING,
            affected_fields=("TOTAL_REVENUE",),
        ),
        BusinessRule(
            id="RE_POSITIVE_EXPENSES",
            name="Revenue Expenditure Positive Expenses",
            statement_types=(StatementCode.REV_EXP,),
            condition=lambda document: document.total("TOTAL_EXPENSES") >= ZERO,
            message="Total expenses should not be negative",
            severity=RuleSeverity.WARNING,
            affected_fields=("TOTAL_EXPENSES",),
        ),
        BusinessRule(
            id="CF_REASONABLE_OPERATING",
            name="Cash Flow Reasonable Operating Flow",
            statement_types=cash_flow,
            condition=_operating_flow_reasonable,
            message="Operating cash flow appears unreasonable compared to revenue",
            severity=RuleSeverity.WARNING,
            affected_fields=("OPERATING_CASH_FLOW",),
        ),
        BusinessRule(
            id="BVA_VARIANCE_CALCULATION",
            name="Budget vs Actual Variance Calculation",
            statement_types=(StatementCode.BUDGET_VS_ACTUAL,),
            condition=_variance_calculations_accurate,
            message="One or more variance calculations are incorrect",
            severity=RuleSeverity.ERROR,
            affected_fields=("variance",),
        ),
        BusinessRule(
            id="GEN_NO_EXTREME_VALUES",
            name="General No Extreme Values",
            statement_types=_ALL_STATEMENTS,
            condition=_no_extreme_values(large_value_threshold),
            message="Statement contains extremely large values that may indicate data errors",
            severity=RuleSeverity.WARNING,
            affected_fields=("all_values",),
        ),
    ]
