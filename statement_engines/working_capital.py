"""
statement_engines.working_capital -- Receivables/payables movement for cash flow.

Responsibility:
    Compute the period-over-period change of the working-capital balance
    sheet accounts and convert it to its cash-flow effect.  The same event
    code sets back the ``WORKING_CAPITAL_CHANGE(kind)`` formula intrinsic.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The statement generator
    feeds it the execution event totals of both periods.

Invariants enforced:
    - change = current - previous.
    - Cash-flow sign: a receivables increase is a cash outflow (negated);
      a payables increase is a cash inflow (unchanged).
    - A missing previous period is a zero baseline plus a warning, never an
      error.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Mapping

from statement_kernel.domain.amounts import ZERO, fmt, round_to
from statement_kernel.domain.statement import (
    FacilityWorkingCapital,
    WorkingCapitalAccount,
    WorkingCapitalChange,
    WorkingCapitalResult,
)
from statement_kernel.logging_config import get_logger
from statement_engines.tracer import traced_engine

logger = get_logger("engines.working_capital")

RECEIVABLES_EVENT_CODES: tuple[str, ...] = (
    "ADVANCE_PAYMENTS",
    "RECEIVABLES_EXCHANGE",
    "RECEIVABLES_NON_EXCHANGE",
)

PAYABLES_EVENT_CODES: tuple[str, ...] = ("PAYABLES",)

WORKING_CAPITAL_EVENT_CODES: dict[WorkingCapitalAccount, tuple[str, ...]] = {
    WorkingCapitalAccount.RECEIVABLES: RECEIVABLES_EVENT_CODES,
    WorkingCapitalAccount.PAYABLES: PAYABLES_EVENT_CODES,
}


def sum_account_balance(
    account: WorkingCapitalAccount, balances: Mapping[str, Decimal]
) -> Decimal:
    return sum(
        (balances.get(code, ZERO) for code in WORKING_CAPITAL_EVENT_CODES[account]),
        ZERO,
    )


def apply_cash_flow_sign(account: WorkingCapitalAccount, change: Decimal) -> Decimal:
    if account is WorkingCapitalAccount.RECEIVABLES:
        return -change
    return change


def _account_change(
    account: WorkingCapitalAccount,
    current: Mapping[str, Decimal],
    previous: Mapping[str, Decimal],
    breakdown: tuple[FacilityWorkingCapital, ...] = (),
) -> WorkingCapitalChange:
    current_balance = sum_account_balance(account, current)
    previous_balance = sum_account_balance(account, previous)
    change = current_balance - previous_balance
    return WorkingCapitalChange(
        account_type=account,
        current_balance=current_balance,
        previous_balance=previous_balance,
        change=change,
        cash_flow_adjustment=apply_cash_flow_sign(account, change),
        event_codes=WORKING_CAPITAL_EVENT_CODES[account],
        facility_breakdown=breakdown,
    )


def _facility_breakdown(
    account: WorkingCapitalAccount,
    current_by_facility: Mapping[int, Mapping[str, Decimal]],
    previous_by_facility: Mapping[int, Mapping[str, Decimal]],
    facility_ids: tuple[int, ...],
    facility_names: Mapping[int, str],
) -> tuple[FacilityWorkingCapital, ...]:
    rows = []
    for facility_id in facility_ids:
        current = sum_account_balance(account, current_by_facility.get(facility_id, {}))
        previous = sum_account_balance(account, previous_by_facility.get(facility_id, {}))
        change = current - previous
        rows.append(
            FacilityWorkingCapital(
                facility_id=facility_id,
                facility_name=facility_names.get(facility_id, f"Facility {facility_id}"),
                current_balance=current,
                previous_balance=previous,
                change=change,
                cash_flow_adjustment=apply_cash_flow_sign(account, change),
            )
        )
    return tuple(rows)


def _variance_warnings(change: WorkingCapitalChange, label: str) -> list[str]:
    warnings: list[str] = []
    if change.previous_balance > ZERO:
        ratio = abs(change.change / change.previous_balance)
        if ratio > 1:
            warnings.append(
                f"Significant variance in {label}: changed by "
                f"{round_to(ratio * 100, 1):.1f}% "
                f"(from {fmt(change.previous_balance)} to {fmt(change.current_balance)})"
            )
    return warnings


@traced_engine("working_capital", "1.0", fingerprint_fields=("current_balances", "previous_balances"))
def calculate_working_capital(
    current_balances: Mapping[str, Decimal],
    previous_balances: Mapping[str, Decimal],
    *,
    previous_period_id: int | None = None,
    facility_ids: tuple[int, ...] = (),
    current_by_facility: Mapping[int, Mapping[str, Decimal]] | None = None,
    previous_by_facility: Mapping[int, Mapping[str, Decimal]] | None = None,
    facility_names: Mapping[int, str] | None = None,
) -> WorkingCapitalResult:
    """
    Receivables and payables changes between two periods.

    Args:
        current_balances: Event code -> balance for the current period.
        previous_balances: Event code -> balance for the previous period.
        previous_period_id: None when the period has no predecessor.
        facility_ids: When more than one id is given a per-facility
            breakdown is produced from the ``*_by_facility`` maps.
    """
    warnings: list[str] = []
    if previous_period_id is None:
        warnings.append(
            "No previous period found. Using zero as baseline for previous period balances."
        )

    multi_facility = len(facility_ids) > 1
    current_by_facility = current_by_facility or {}
    previous_by_facility = previous_by_facility or {}
    names = facility_names or {}

    changes: dict[WorkingCapitalAccount, WorkingCapitalChange] = {}
    for account in WorkingCapitalAccount:
        breakdown: tuple[FacilityWorkingCapital, ...] = ()
        if multi_facility:
            breakdown = _facility_breakdown(
                account, current_by_facility, previous_by_facility, facility_ids, names
            )
        changes[account] = _account_change(
            account, current_balances, previous_balances, breakdown
        )

    receivables = changes[WorkingCapitalAccount.RECEIVABLES]
    payables = changes[WorkingCapitalAccount.PAYABLES]

    if receivables.current_balance < ZERO:
        warnings.append(
            f"Negative receivables balance detected: {fmt(receivables.current_balance)}. "
            "This may indicate data quality issues."
        )
    warnings.extend(_variance_warnings(receivables, "receivables"))
    warnings.extend(_variance_warnings(payables, "payables"))

    if multi_facility:
        with_data = {
            row.facility_id
            for change in (receivables, payables)
            for row in change.facility_breakdown
            if row.current_balance != ZERO or row.previous_balance != ZERO
        }
        missing = [str(fid) for fid in facility_ids if fid not in with_data]
        if missing:
            warnings.append(f"Facilities with no balance sheet data: {', '.join(missing)}")

    logger.info(
        "working_capital_calculated",
        extra={
            "receivables_change": str(receivables.change),
            "receivables_adjustment": str(receivables.cash_flow_adjustment),
            "payables_change": str(payables.change),
            "payables_adjustment": str(payables.cash_flow_adjustment),
            "warning_count": len(warnings),
        },
    )

    return WorkingCapitalResult(
        receivables=receivables,
        payables=payables,
        warnings=tuple(warnings),
        previous_period_id=previous_period_id,
    )
