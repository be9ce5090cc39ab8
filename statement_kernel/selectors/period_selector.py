"""
Module: statement_kernel.selectors.period_selector
Responsibility: Reporting period lookups and period chronology.
Architecture position: Kernel > Selectors.

Previous-period rule:
    - QUARTERLY: the period of the same type with the latest ``end_date``
      strictly before the current ``start_date``.
    - every other type: the same period type in ``year - 1``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from sqlalchemy import select

from statement_kernel.logging_config import get_logger
from statement_kernel.models.reporting_period import PeriodType, ReportingPeriod
from statement_kernel.selectors.base import BaseSelector

logger = get_logger("selectors.period")


@dataclass(frozen=True)
class PeriodDTO:
    id: int
    year: int
    period_type: str
    start_date: date
    end_date: date


def _to_dto(period: ReportingPeriod) -> PeriodDTO:
    return PeriodDTO(
        id=period.id,
        year=period.year,
        period_type=period.period_type,
        start_date=period.start_date,
        end_date=period.end_date,
    )


class PeriodSelector(BaseSelector):
    """Read-only access to ``reporting_periods``."""

    def get(self, period_id: int) -> PeriodDTO | None:
        period = self.session.get(ReportingPeriod, period_id)
        return _to_dto(period) if period is not None else None

    def previous_period_id(self, period_id: int) -> int | None:
        """Id of the period preceding ``period_id``, or None."""
        current = self.session.get(ReportingPeriod, period_id)
        if current is None:
            logger.info("current_period_not_found", extra={"reporting_period_id": period_id})
            return None

        if current.period_type == PeriodType.QUARTERLY.value:
            stmt = (
                select(ReportingPeriod.id)
                .where(
                    ReportingPeriod.period_type == current.period_type,
                    ReportingPeriod.end_date < current.start_date,
                )
                .order_by(ReportingPeriod.end_date.desc())
                .limit(1)
            )
        else:
            stmt = select(ReportingPeriod.id).where(ReportingPeriod.year == current.year - 1)
            if current.period_type:
                stmt = stmt.where(ReportingPeriod.period_type == current.period_type)
            stmt = stmt.order_by(ReportingPeriod.id).limit(1)

        previous_id = self.session.execute(stmt).scalar_one_or_none()
        logger.debug(
            "previous_period_resolved",
            extra={
                "reporting_period_id": period_id,
                "period_type": current.period_type,
                "previous_period_id": previous_id,
            },
        )
        return previous_id
