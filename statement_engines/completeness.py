"""
statement_engines.completeness -- How much of a statement carries data.

Completion is the share of lines with a non-zero current value.  Total and
subtotal lines that came out as zero are reported as missing fields since
they usually point at an unmapped section.
"""

from __future__ import annotations

from decimal import Decimal

from statement_kernel.domain.amounts import HUNDRED, ZERO, round_to
from statement_kernel.domain.statement import CompletenessReport, StatementDocument
from statement_kernel.logging_config import get_logger

logger = get_logger("engines.completeness")

DEFAULT_COMPLETENESS_THRESHOLD = Decimal("80")


def check_completeness(
    statement: StatementDocument,
    threshold: Decimal = DEFAULT_COMPLETENESS_THRESHOLD,
) -> CompletenessReport:
    lines = statement.lines
    if not lines:
        return CompletenessReport(
            is_complete=False,
            completion_percentage=ZERO,
            warnings=("Statement is 0% complete",),
        )

    with_data = sum(1 for line in lines if line.current_period_value != ZERO)
    percentage = Decimal(with_data) / Decimal(len(lines)) * HUNDRED

    missing = tuple(
        line.line_code
        for line in lines
        if (line.formatting.is_total or line.formatting.is_subtotal)
        and line.current_period_value == ZERO
    )

    warnings: list[str] = []
    if percentage < threshold:
        warnings.append(f"Statement is {round_to(percentage, 0)}% complete")

    logger.debug(
        "statement_completeness_checked",
        extra={
            "statement_code": statement.statement_code.value,
            "completion_percentage": str(round_to(percentage, 2)),
            "missing_fields": list(missing),
        },
    )
    return CompletenessReport(
        is_complete=percentage >= threshold,
        completion_percentage=round_to(percentage, 2),
        missing_fields=missing,
        warnings=tuple(warnings),
    )
