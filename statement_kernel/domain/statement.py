"""
Statement -- Output records of one statement generation run.

Responsibility:
    Defines the statement codes, the concrete ``StatementLine`` emitted per
    template row (plus processor-computed rows), the validation result
    records, the working-capital record attached to cash flow statements,
    and the assembled ``StatementDocument``.

Architecture position:
    Kernel > Domain -- pure data definitions, zero I/O.

Invariants enforced:
    - All monetary fields are ``Decimal``.
    - Records are frozen.  Processors derive modified lines with
      ``dataclasses.replace``; nothing is mutated after validation begins.
    - ``ValidationResults.is_valid`` is computed by the producer as
      "no errors"; warnings never flip it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Mapping

from statement_kernel.domain.amounts import ZERO
from statement_kernel.domain.rendering import render_to_dict


# =========================================================================
# Enums
# =========================================================================


class StatementCode(str, Enum):
    """Supported statement types."""

    REV_EXP = "REV_EXP"
    BAL_SHEET = "BAL_SHEET"
    CASH_FLOW = "CASH_FLOW"
    NET_ASSETS = "NET_ASSETS"
    BUDGET_VS_ACTUAL = "BUDGET_VS_ACTUAL"


class ColumnType(str, Enum):
    """Net assets three-column model."""

    ACCUMULATED = "ACCUMULATED"
    ADJUSTMENT = "ADJUSTMENT"
    TOTAL = "TOTAL"


class Trend(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    STABLE = "stable"


class RuleSeverity(str, Enum):
    """Failed error rules invalidate a statement; failed warnings do not."""

    ERROR = "error"
    WARNING = "warning"


# =========================================================================
# Lines
# =========================================================================


@dataclass(frozen=True)
class LineVariance:
    absolute: Decimal
    percentage: Decimal
    trend: Trend = Trend.STABLE


@dataclass(frozen=True)
class LineFormatting:
    bold: bool = False
    italic: bool = False
    indent_level: int = 0
    is_section: bool = False
    is_subtotal: bool = False
    is_total: bool = False


@dataclass(frozen=True)
class LineMetadata:
    line_code: str
    display_order: int
    event_codes: tuple[str, ...] = ()
    formula: str | None = None
    is_computed: bool = False
    column_type: ColumnType | None = None
    note_number: int | None = None
    is_hidden: bool = False
    has_error: bool = False


@dataclass(frozen=True)
class StatementLine:
    """
    One concrete statement row.

    Three-column fields (``accumulated_surplus``, ``adjustments``, ``total``)
    are only populated for NET_ASSETS.  Budget fields are only populated for
    BUDGET_VS_ACTUAL.
    """

    id: str
    description: str
    current_period_value: Decimal
    previous_period_value: Decimal
    formatting: LineFormatting
    metadata: LineMetadata
    variance: LineVariance | None = None
    accumulated_surplus: Decimal | None = None
    adjustments: Decimal | None = None
    total: Decimal | None = None
    budget_value: Decimal | None = None
    actual_value: Decimal | None = None
    variance_amount: Decimal | None = None
    variance_percentage: Decimal | None = None
    is_favorable: bool | None = None

    @property
    def line_code(self) -> str:
        return self.metadata.line_code

    @property
    def display_order(self) -> int:
        return self.metadata.display_order


# =========================================================================
# Validation
# =========================================================================


@dataclass(frozen=True)
class BalanceValidation:
    """Result of one accounting-identity check."""

    is_valid: bool
    left_side: Decimal
    right_side: Decimal
    difference: Decimal
    equation: str


@dataclass(frozen=True)
class BusinessRuleValidation:
    rule_id: str
    rule_name: str
    is_valid: bool
    message: str
    severity: RuleSeverity = RuleSeverity.ERROR
    affected_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class ValidationResults:
    is_valid: bool
    accounting_equation: BalanceValidation
    business_rules: tuple[BusinessRuleValidation, ...] = ()
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()

    @classmethod
    def from_parts(
        cls,
        accounting_equation: BalanceValidation,
        business_rules: tuple[BusinessRuleValidation, ...] | list[BusinessRuleValidation] = (),
        warnings: tuple[str, ...] | list[str] = (),
        errors: tuple[str, ...] | list[str] = (),
    ) -> ValidationResults:
        """Build results with ``is_valid`` derived from the error list."""
        return cls(
            is_valid=len(errors) == 0,
            accounting_equation=accounting_equation,
            business_rules=tuple(business_rules),
            warnings=tuple(warnings),
            errors=tuple(errors),
        )


# =========================================================================
# Working capital
# =========================================================================


class WorkingCapitalAccount(str, Enum):
    RECEIVABLES = "RECEIVABLES"
    PAYABLES = "PAYABLES"


@dataclass(frozen=True)
class FacilityWorkingCapital:
    facility_id: int
    facility_name: str
    current_balance: Decimal
    previous_balance: Decimal
    change: Decimal
    cash_flow_adjustment: Decimal


@dataclass(frozen=True)
class WorkingCapitalChange:
    """Period-over-period movement of one working-capital account."""

    account_type: WorkingCapitalAccount
    current_balance: Decimal
    previous_balance: Decimal
    change: Decimal
    cash_flow_adjustment: Decimal
    event_codes: tuple[str, ...]
    facility_breakdown: tuple[FacilityWorkingCapital, ...] = ()


@dataclass(frozen=True)
class WorkingCapitalResult:
    receivables: WorkingCapitalChange
    payables: WorkingCapitalChange
    warnings: tuple[str, ...] = ()
    previous_period_id: int | None = None


class CarryforwardSource(str, Enum):
    CARRYFORWARD = "CARRYFORWARD"
    CARRYFORWARD_AGGREGATED = "CARRYFORWARD_AGGREGATED"
    MANUAL_ENTRY = "MANUAL_ENTRY"
    FALLBACK = "FALLBACK"


@dataclass(frozen=True)
class FacilityEndingCash:
    facility_id: int
    facility_name: str
    ending_cash: Decimal


@dataclass(frozen=True)
class CarryforwardResult:
    """
    Where a cash flow statement's beginning cash came from.

    ``success`` is False only when neither the previous period nor a manual
    entry supplied a value.
    """

    success: bool
    beginning_cash: Decimal
    source: CarryforwardSource
    previous_period_id: int | None = None
    previous_period_ending_cash: Decimal | None = None
    manual_entry_amount: Decimal | None = None
    discrepancy: Decimal | None = None
    error: str | None = None
    facility_breakdown: tuple[FacilityEndingCash, ...] = ()
    facilities_with_missing_data: tuple[int, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def is_carried_forward(self) -> bool:
        return self.source in (
            CarryforwardSource.CARRYFORWARD,
            CarryforwardSource.CARRYFORWARD_AGGREGATED,
        )


# =========================================================================
# Document
# =========================================================================


@dataclass(frozen=True)
class ReportingPeriodInfo:
    year: int
    period_type: str
    start_date: date
    end_date: date


@dataclass(frozen=True)
class FacilityInfo:
    id: int
    name: str
    facility_type: str
    district: str | None = None
    has_data: bool = False


@dataclass(frozen=True)
class ProjectInfo:
    id: int
    name: str
    code: str
    project_type: str


@dataclass(frozen=True)
class PerformanceMetrics:
    processing_time_ms: float
    lines_processed: int
    events_processed: int
    formulas_calculated: int


@dataclass(frozen=True)
class StatementMetadata:
    statement_type: StatementCode
    currency: str
    template_version: str
    data_sources: tuple[str, ...] = ()
    facility: FacilityInfo | None = None
    project: ProjectInfo | None = None
    facilities_included: tuple[int, ...] = ()
    previous_period_id: int | None = None
    performance: PerformanceMetrics | None = None
    working_capital: WorkingCapitalResult | None = None
    carryforward: CarryforwardResult | None = None


@dataclass(frozen=True)
class StatementDocument:
    """
    Fully assembled statement.

    Contract:
        ``validation_results`` is ``None`` only while the document is being
        validated; documents returned by the generator always carry results.
    """

    statement_code: StatementCode
    statement_name: str
    generated_date: datetime
    reporting_period: ReportingPeriodInfo | None
    lines: tuple[StatementLine, ...]
    totals: Mapping[str, Decimal]
    metadata: StatementMetadata
    validation_results: ValidationResults | None = None

    def total(self, key: str) -> Decimal:
        return self.totals.get(key, ZERO)

    def line(self, line_code: str) -> StatementLine | None:
        for line in self.lines:
            if line.metadata.line_code == line_code:
                return line
        return None

    @property
    def is_valid(self) -> bool:
        return self.validation_results is not None and self.validation_results.is_valid

    def to_dict(self) -> dict:
        """camelCase primitives for the presentation layer."""
        return render_to_dict(self)


@dataclass(frozen=True)
class CompletenessReport:
    is_complete: bool
    completion_percentage: Decimal
    missing_fields: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
