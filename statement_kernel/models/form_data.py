"""
Module: statement_kernel.models.form_data
Responsibility: ORM persistence for submitted planning/execution forms.
Architecture position: Kernel > Models.  May import from db/base.py only.

A row takes one of two storage shapes:
    - normalized: ``entity_id`` references an activity and
      ``form_data["amount"]`` carries the amount;
    - JSON: ``entity_id`` is NULL and ``form_data["activities"]`` holds every
      activity of the facility/period, keyed by numeric activity id (budget
      shape, ``total_budget``) or by activity code (actuals shape,
      ``q1``..``q4`` and ``cumulative_balance``).
"""

from typing import Any

from sqlalchemy import JSON, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from statement_kernel.db.base import Base, TimestampMixin


class FormDataEntry(TimestampMixin, Base):
    """One submitted form for a (project, facility, period, entity type)."""

    __tablename__ = "schema_form_data_entries"
    __table_args__ = (
        Index(
            "idx_form_data_scope",
            "project_id",
            "reporting_period_id",
            "facility_id",
            "entity_type",
        ),
    )

    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False)

    facility_id: Mapped[int] = mapped_column(ForeignKey("facilities.id"), nullable=False)

    reporting_period_id: Mapped[int] = mapped_column(
        ForeignKey("reporting_periods.id"),
        nullable=False,
    )

    # 'planning' or 'execution'
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Activity id for normalized rows; NULL for JSON rows
    entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    form_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    def __repr__(self) -> str:
        shape = "normalized" if self.entity_id is not None else "json"
        return f"<FormDataEntry {self.entity_type} {shape} facility={self.facility_id}>"
