"""
statement_engines.carryforward -- Beginning cash carried from the previous period.

Responsibility:
    Decide the CASH_FLOW beginning cash balance: the previous period's
    ending cash by default, a manual entry when one was recorded for the
    current period, and zero when neither is available.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The statement generator
    loads the previous period's execution activities per facility and the
    current period's ``CASH_EQUIVALENTS_BEGIN`` total.

Invariants enforced:
    - Ending cash = cumulative balance of the section D cash accounts
      (``_D_1`` cash at bank, ``_D_2`` petty cash, ``_D_3`` other
      receivables).
    - A positive manual entry always wins; a difference from the carried
      amount beyond tolerance is reported as ``discrepancy``.
    - More than one facility aggregates their ending cash and reports the
      facilities with no previous data.

Failure modes:
    - No previous period and no manual entry -> FALLBACK, zero, success False.
    - Single facility with no previous ending cash and no manual entry ->
      FALLBACK, zero, success False.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Mapping

from statement_kernel.domain.amounts import BALANCE_TOLERANCE, ZERO, fmt
from statement_kernel.domain.statement import (
    CarryforwardResult,
    CarryforwardSource,
    FacilityEndingCash,
)
from statement_kernel.logging_config import get_logger
from statement_engines.stock_flow import ExecutionActivity, extract_section_from_code
from statement_engines.tracer import traced_engine

logger = get_logger("engines.carryforward")

BEGINNING_CASH_EVENT = "CASH_EQUIVALENTS_BEGIN"

CASH_ACTIVITY_SUFFIXES: tuple[str, ...] = ("_D_1", "_D_2", "_D_3")


def ending_cash_from_activities(activities: Iterable[ExecutionActivity]) -> Decimal:
    """Sum of the cash account balances; a later row for the same account wins."""
    balances: dict[str, Decimal] = {}
    for activity in activities:
        code = activity.code.upper()
        if extract_section_from_code(code) != "D":
            continue
        for suffix in CASH_ACTIVITY_SUFFIXES:
            if code.endswith(suffix):
                balances[suffix] = activity.cumulative_balance or ZERO
    return sum(balances.values(), ZERO)


def _fallback(
    reason: str,
    manual_entry: Decimal,
    previous_period_id: int | None,
) -> CarryforwardResult:
    if manual_entry > ZERO:
        tail = "Using manual entry."
    else:
        tail = "No manual entry available, defaulting to zero."
    return CarryforwardResult(
        success=manual_entry > ZERO,
        beginning_cash=manual_entry,
        source=CarryforwardSource.FALLBACK,
        previous_period_id=previous_period_id,
        manual_entry_amount=manual_entry if manual_entry > ZERO else None,
        error=reason,
        warnings=(f"Carryforward failed: {reason}. {tail}",),
    )


def _missing_facility_warning(
    missing: list[FacilityEndingCash], facility_count: int
) -> str | None:
    if not missing:
        return None
    if len(missing) == facility_count:
        return (
            f"No previous period data available for any of the {facility_count} facilities. "
            "This is expected for the first reporting period."
        )
    names = ", ".join(f"{row.facility_name} (ID: {row.facility_id})" for row in missing)
    return (
        f"Missing previous period statements for {len(missing)} out of "
        f"{facility_count} facilities: {names}"
    )


@traced_engine(
    "carryforward", "1.0", fingerprint_fields=("manual_entry", "previous_period_id", "ending_cash")
)
def resolve_beginning_cash(
    manual_entry: Decimal,
    previous_period_id: int | None,
    ending_cash: Mapping[int, Decimal],
    *,
    facility_ids: tuple[int, ...] = (),
    facility_names: Mapping[int, str] | None = None,
    tolerance: Decimal = BALANCE_TOLERANCE,
) -> CarryforwardResult:
    """
    Beginning cash for a CASH_FLOW statement.

    Args:
        manual_entry: Current period ``CASH_EQUIVALENTS_BEGIN`` total;
            values <= 0 count as no entry.
        previous_period_id: None when the period has no predecessor.
        ending_cash: Facility id -> previous period ending cash.
        facility_ids: Facilities in scope, in reporting order.
    """
    manual = manual_entry if manual_entry > ZERO else ZERO
    names = facility_names or {}

    if previous_period_id is None:
        if manual > ZERO:
            result = CarryforwardResult(
                success=True,
                beginning_cash=manual,
                source=CarryforwardSource.MANUAL_ENTRY,
                manual_entry_amount=manual,
                warnings=("No previous period found. Using manual entry.",),
            )
        else:
            result = CarryforwardResult(
                success=False,
                beginning_cash=ZERO,
                source=CarryforwardSource.FALLBACK,
                error="No previous period found",
                warnings=("No previous period found and no manual entry available.",),
            )
        return _logged(result)

    if not facility_ids:
        return _logged(_fallback("No facility ID provided", manual, previous_period_id))

    warnings: list[str] = []
    breakdown: tuple[FacilityEndingCash, ...] = ()
    missing: tuple[int, ...] = ()
    aggregated = len(facility_ids) > 1

    if aggregated:
        breakdown = tuple(
            FacilityEndingCash(
                facility_id=fid,
                facility_name=names.get(fid, f"Facility {fid}"),
                ending_cash=ending_cash.get(fid, ZERO),
            )
            for fid in facility_ids
        )
        absent = [row for row in breakdown if row.ending_cash == ZERO]
        missing = tuple(row.facility_id for row in absent)
        warning = _missing_facility_warning(absent, len(facility_ids))
        if warning:
            warnings.append(warning)
        carried = sum((row.ending_cash for row in breakdown), ZERO)
        source = CarryforwardSource.CARRYFORWARD_AGGREGATED
    else:
        carried = ending_cash.get(facility_ids[0], ZERO)
        source = CarryforwardSource.CARRYFORWARD
        if carried == ZERO:
            if manual > ZERO:
                return _logged(
                    CarryforwardResult(
                        success=True,
                        beginning_cash=manual,
                        source=CarryforwardSource.MANUAL_ENTRY,
                        previous_period_id=previous_period_id,
                        manual_entry_amount=manual,
                        warnings=(
                            "No previous period ending cash found from execution data. "
                            "Using manual entry.",
                        ),
                    )
                )
            return _logged(
                _fallback(
                    "No previous period ending cash found from execution data",
                    manual,
                    previous_period_id,
                )
            )

    if manual > ZERO:
        discrepancy = manual - carried
        if abs(discrepancy) > tolerance:
            warnings.append(
                f"Beginning cash override detected: Manual entry ({fmt(manual)}) differs from "
                f"previous period ending cash ({fmt(carried)}) by {fmt(abs(discrepancy))}. "
                "Using manual entry value."
            )
        else:
            discrepancy = ZERO
        return _logged(
            CarryforwardResult(
                success=True,
                beginning_cash=manual,
                source=CarryforwardSource.MANUAL_ENTRY,
                previous_period_id=previous_period_id,
                previous_period_ending_cash=carried,
                manual_entry_amount=manual,
                discrepancy=discrepancy,
                facility_breakdown=breakdown,
                facilities_with_missing_data=missing,
                warnings=tuple(warnings),
            )
        )

    if carried == ZERO:
        warnings.append(
            "Previous period ending cash is zero. This may indicate missing data or a new account."
        )

    return _logged(
        CarryforwardResult(
            success=True,
            beginning_cash=carried,
            source=source,
            previous_period_id=previous_period_id,
            previous_period_ending_cash=carried,
            facility_breakdown=breakdown,
            facilities_with_missing_data=missing,
            warnings=tuple(warnings),
        )
    )


def _logged(result: CarryforwardResult) -> CarryforwardResult:
    logger.info(
        "beginning_cash_resolved",
        extra={
            "source": result.source.value,
            "beginning_cash": str(result.beginning_cash),
            "previous_period_id": result.previous_period_id,
            "success": result.success,
            "warning_count": len(result.warnings),
        },
    )
    return result
