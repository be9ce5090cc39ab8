"""
statement_engines.stock_flow -- Stock vs flow amount rules for execution activities.

Responsibility:
    Decide how a single execution activity (four quarterly values plus an
    optional cumulative balance) collapses into one event amount.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Used by the data aggregation service when extracting the actuals JSON
    shape.

Invariants enforced:
    - Sections D (financial assets) and E (financial liabilities) are stock
      sections: the amount is ``cumulative_balance`` and a zero balance is
      kept, never dropped.
    - The accumulated surplus/deficit item of section G is a stock item by
      convention: the amount is Q1 (falling back to the cumulative balance).
    - Every other section sums Q1..Q4; a zero sum is dropped.

Usage:
    activity = ExecutionActivity.from_mapping({"code": "HIV_EXEC_HOSPITAL_D_1", ...})
    amount = calculate_section_amount(activity)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping

from statement_kernel.domain.amounts import ZERO, to_decimal
from statement_kernel.logging_config import get_logger

logger = get_logger("engines.stock_flow")

EXECUTION_MARKER = "EXEC"
SECTION_LETTERS = frozenset("ABCDEFGX")
STOCK_SECTIONS = frozenset({"D", "E"})
CLOSING_BALANCE_SECTION = "G"

_ACCUMULATED_CODE_MARKER = "_g_1"
_PRIOR_YEAR_ADJUSTMENT_MARKER = "_g_g-01"


class SectionType(str, Enum):
    STOCK = "stock"
    FLOW = "flow"


@dataclass(frozen=True)
class SectionInfo:
    section: str
    name: str
    section_type: SectionType
    is_computed: bool
    description: str


_SECTION_NAMES: dict[str, tuple[str, bool]] = {
    "A": ("Receipts/Revenue", False),
    "B": ("Expenditures/Expenses", False),
    "C": ("Surplus/Deficit (computed)", True),
    "D": ("Financial Assets", False),
    "E": ("Financial Liabilities", False),
    "F": ("Net Financial Assets (computed)", True),
    "G": ("Equity Changes", False),
    "X": ("Miscellaneous Adjustments", False),
}


@dataclass(frozen=True)
class ExecutionActivity:
    """One entry of an execution (actuals) ``activities`` collection."""

    code: str
    name: str = ""
    q1: Decimal | None = None
    q2: Decimal | None = None
    q3: Decimal | None = None
    q4: Decimal | None = None
    cumulative_balance: Decimal | None = None
    sub_section: str | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], code: str | None = None) -> ExecutionActivity:
        def optional(key: str) -> Decimal | None:
            value = raw.get(key)
            return None if value is None else to_decimal(value)

        return cls(
            code=str(raw.get("code") or code or ""),
            name=str(raw.get("name") or ""),
            q1=optional("q1"),
            q2=optional("q2"),
            q3=optional("q3"),
            q4=optional("q4"),
            cumulative_balance=optional("cumulative_balance"),
            sub_section=raw.get("subSection") or raw.get("sub_section"),
        )

    @property
    def quarter_total(self) -> Decimal:
        return sum((q or ZERO for q in (self.q1, self.q2, self.q3, self.q4)), ZERO)

    @property
    def has_quarterly_data(self) -> bool:
        return any(q is not None for q in (self.q1, self.q2, self.q3, self.q4))


def extract_section_from_code(code: str | None) -> str | None:
    """Section letter from an execution code, e.g. ``HIV_EXEC_HOSPITAL_D_1`` -> ``D``."""
    if not code:
        return None
    parts = code.split("_")
    if EXECUTION_MARKER not in parts:
        return None
    for part in parts[parts.index(EXECUTION_MARKER) + 1:]:
        if len(part) == 1 and part in SECTION_LETTERS:
            return part
    return None


def is_stock_section(section: str | None) -> bool:
    return section in STOCK_SECTIONS


def _accumulated_by_name(name: str) -> bool:
    lowered = name.lower()
    return "accumulated" in lowered and ("surplus" in lowered or "deficit" in lowered)


def _accumulated_by_code(code: str, section: str | None) -> bool:
    lowered = code.lower()
    return (
        section == CLOSING_BALANCE_SECTION
        and _ACCUMULATED_CODE_MARKER in lowered
        and _PRIOR_YEAR_ADJUSTMENT_MARKER not in lowered
    )


def is_accumulated_surplus_item(code: str, name: str, section: str | None = None) -> bool:
    """True when the item is the opening accumulated surplus/deficit balance."""
    if section is None:
        section = extract_section_from_code(code)
    return _accumulated_by_name(name) or _accumulated_by_code(code, section)


def accumulated_surplus_warning(code: str, name: str, section: str | None = None) -> str | None:
    """Warn when the name and code heuristics disagree about an item."""
    if section is None:
        section = extract_section_from_code(code)
    by_name = _accumulated_by_name(name)
    by_code = _accumulated_by_code(code, section)
    if by_name == by_code:
        return None
    matched = "name" if by_name else "code"
    return (
        f"Activity {code} is classified as accumulated surplus/deficit by {matched} only; "
        "verify the activity configuration"
    )


def section_of(activity: ExecutionActivity) -> str | None:
    """Section letter from the code; the declared subSection only when the code has none."""
    return extract_section_from_code(activity.code) or activity.sub_section


def calculate_section_amount(activity: ExecutionActivity, section: str | None = None) -> Decimal:
    if section is None:
        section = section_of(activity)
    if is_stock_section(section):
        return activity.cumulative_balance or ZERO
    if is_accumulated_surplus_item(activity.code, activity.name, section):
        return activity.q1 or activity.cumulative_balance or ZERO
    return activity.quarter_total


def should_include_amount(amount: Decimal, section: str | None) -> bool:
    """Zero stock balances are kept; zero flows are dropped."""
    return amount != ZERO or is_stock_section(section)


def validate_activity_data(activity: ExecutionActivity, section: str | None = None) -> list[str]:
    if section is None:
        section = section_of(activity)
    warnings: list[str] = []
    if is_stock_section(section):
        if activity.cumulative_balance is None:
            warnings.append(f"Stock section activity {activity.code} missing cumulative_balance")
    elif not activity.has_quarterly_data:
        warnings.append(f"Flow section activity {activity.code} has no quarterly data")

    heuristic = accumulated_surplus_warning(activity.code, activity.name, section)
    if heuristic:
        warnings.append(heuristic)
    return warnings


def get_section_info(section: str) -> SectionInfo:
    name, is_computed = _SECTION_NAMES.get(section, ("Unknown section", False))
    if is_stock_section(section):
        return SectionInfo(
            section=section,
            name=name,
            section_type=SectionType.STOCK,
            is_computed=is_computed,
            description="cumulative_balance (latest quarter balance)",
        )
    return SectionInfo(
        section=section,
        name=name,
        section_type=SectionType.FLOW,
        is_computed=is_computed,
        description="sum of all quarters (Q1 + Q2 + Q3 + Q4)",
    )
