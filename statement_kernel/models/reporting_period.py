"""
Module: statement_kernel.models.reporting_period
Responsibility: ORM persistence for reporting periods and the
    chronology used to find a period's predecessor.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - (year, period_type, start_date) identifies a period.
    - start_date <= end_date (checked by the seeding code, not the database).

Audit relevance:
    Period boundaries decide which planning/execution rows feed a statement
    and which period supplies the comparative column.
"""

from datetime import date
from enum import Enum

from sqlalchemy import Date, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from statement_kernel.db.base import Base, TimestampMixin


class PeriodType(str, Enum):
    ANNUAL = "ANNUAL"
    QUARTERLY = "QUARTERLY"
    MONTHLY = "MONTHLY"


class ReportingPeriod(TimestampMixin, Base):
    """
    Reporting period for planning and execution data.

    Contract:
        ANNUAL periods chain by ``year``; QUARTERLY periods chain by date.
    """

    __tablename__ = "reporting_periods"
    __table_args__ = (
        UniqueConstraint("year", "period_type", "start_date", name="uq_reporting_period"),
        Index("idx_reporting_period_dates", "start_date", "end_date"),
    )

    year: Mapped[int] = mapped_column(Integer, nullable=False)

    period_type: Mapped[str] = mapped_column(
        String(20),
        default=PeriodType.ANNUAL.value,
        nullable=False,
    )

    start_date: Mapped[date] = mapped_column(Date, nullable=False)

    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default="ACTIVE", nullable=False)

    def __repr__(self) -> str:
        return f"<ReportingPeriod {self.year} {self.period_type}>"

    @property
    def is_quarterly(self) -> bool:
        return self.period_type == PeriodType.QUARTERLY.value
