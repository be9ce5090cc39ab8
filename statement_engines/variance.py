"""
statement_engines.variance -- Period-over-period variance calculations.

Responsibility:
    Absolute and percentage change between a current and a previous value,
    trend classification, significance buckets, display formatting, batch
    variances over event-code maps, and summary statistics.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Consumed by the aggregation service (period comparisons) and by every
    statement processor (line variances).

Invariants enforced:
    - Division-by-zero safe: a zero previous value yields 0% when current is
      also zero, otherwise +/-100% by the sign of current.
    - Percentages are rounded half-up to 2 decimal places.
    - Trend is ``stable`` when |absolute| < 0.01.

Usage:
    from statement_engines.variance import VarianceCalculator

    v = VarianceCalculator.calculate_line_variance(Decimal("120"), Decimal("100"))
    v.percentage   # Decimal("20.00")
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Mapping

from statement_kernel.domain.amounts import HUNDRED, ZERO, round2, round_to
from statement_kernel.domain.statement import LineVariance, Trend
from statement_kernel.logging_config import get_logger
from statement_engines.tracer import traced_engine

logger = get_logger("engines.variance")

_STABLE_BAND = Decimal("0.01")

_TREND_ARROWS = {
    Trend.INCREASE: "↑",
    Trend.DECREASE: "↓",
    Trend.STABLE: "→",
}


class VarianceSignificance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class FormattedVariance:
    absolute: str
    percentage: str
    trend: str
    is_significant: bool


@dataclass(frozen=True)
class VarianceSummary:
    total_variances: int
    significant_variances: int
    average_percentage_change: Decimal
    total_absolute_change: Decimal
    increase_count: int
    decrease_count: int
    stable_count: int


class VarianceCalculator:
    """
    Pure function calculator for statement variances.

    Contract:
        No I/O, no database access, fully deterministic.
    Guarantees:
        - ``calculate_line_variance`` never divides by zero.
        - ``calculate_batch_variances`` covers the union of keys; a key absent
          from one side is treated as zero there.
    Non-goals:
        - Does not decide favorability; budget processors apply their own
          sign conventions.
    """

    SIGNIFICANCE_THRESHOLD = Decimal("10")

    @staticmethod
    def calculate_line_variance(current: Decimal, previous: Decimal) -> LineVariance:
        absolute = current - previous

        if previous == ZERO:
            if current == ZERO:
                percentage = ZERO
            else:
                percentage = HUNDRED if current > ZERO else -HUNDRED
        else:
            percentage = absolute / abs(previous) * HUNDRED

        if abs(absolute) < _STABLE_BAND:
            trend = Trend.STABLE
        elif absolute > ZERO:
            trend = Trend.INCREASE
        else:
            trend = Trend.DECREASE

        return LineVariance(absolute=absolute, percentage=round2(percentage), trend=trend)

    @staticmethod
    def significance(variance: LineVariance) -> VarianceSignificance:
        magnitude = abs(variance.percentage)
        if magnitude >= 50:
            return VarianceSignificance.CRITICAL
        if magnitude >= 25:
            return VarianceSignificance.HIGH
        if magnitude >= 10:
            return VarianceSignificance.MEDIUM
        return VarianceSignificance.LOW

    @classmethod
    def format_variance(
        cls,
        variance: LineVariance,
        show_currency: bool = False,
        currency_symbol: str = "$",
        decimal_places: int = 2,
    ) -> FormattedVariance:
        """Display strings: unsigned absolute, 1-dp percentage, trend arrow."""
        magnitude = round_to(abs(variance.absolute), decimal_places)
        absolute = f"{magnitude:.{decimal_places}f}"
        if show_currency:
            absolute = f"{currency_symbol}{absolute}"

        return FormattedVariance(
            absolute=absolute,
            percentage=f"{round_to(variance.percentage, 1):.1f}%",
            trend=_TREND_ARROWS[variance.trend],
            is_significant=abs(variance.percentage) >= cls.SIGNIFICANCE_THRESHOLD,
        )

    @classmethod
    @traced_engine("variance", "1.0", fingerprint_fields=("current", "previous"))
    def calculate_batch_variances(
        cls,
        current: Mapping[str, Decimal],
        previous: Mapping[str, Decimal],
    ) -> dict[str, LineVariance]:
        keys = list(dict.fromkeys([*current.keys(), *previous.keys()]))
        return {
            key: cls.calculate_line_variance(current.get(key, ZERO), previous.get(key, ZERO))
            for key in keys
        }

    @classmethod
    def summarize(cls, variances: Mapping[str, LineVariance]) -> VarianceSummary:
        values = list(variances.values())
        count = len(values)

        significant = sum(
            1 for v in values if cls.significance(v) is not VarianceSignificance.LOW
        )
        average = (
            sum((v.percentage for v in values), ZERO) / Decimal(count) if count else ZERO
        )

        return VarianceSummary(
            total_variances=count,
            significant_variances=significant,
            average_percentage_change=round2(average),
            total_absolute_change=sum((abs(v.absolute) for v in values), ZERO),
            increase_count=sum(1 for v in values if v.trend is Trend.INCREASE),
            decrease_count=sum(1 for v in values if v.trend is Trend.DECREASE),
            stable_count=sum(1 for v in values if v.trend is Trend.STABLE),
        )


# Module-level conveniences
calculate_line_variance = VarianceCalculator.calculate_line_variance
variance_significance = VarianceCalculator.significance
format_variance = VarianceCalculator.format_variance
calculate_batch_variances = VarianceCalculator.calculate_batch_variances
variance_summary = VarianceCalculator.summarize
