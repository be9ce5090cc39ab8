"""
Module: statement_kernel.models.project
Responsibility: ORM persistence for health programs (projects) and the
    facilities that report against them.
Architecture position: Kernel > Models.  May import from db/base.py only.
"""

from sqlalchemy import Boolean, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from statement_kernel.db.base import Base, TimestampMixin


class Project(TimestampMixin, Base):
    """A health program (e.g. HIV, Malaria, TB) scoping all data entry."""

    __tablename__ = "projects"
    __table_args__ = (UniqueConstraint("code", name="uq_project_code"),)

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    code: Mapped[str] = mapped_column(String(50), nullable=False)

    # Program family used to pick activity catalogues (HIV, MAL, TB)
    project_type: Mapped[str] = mapped_column(String(20), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Project {self.code}>"


class Facility(TimestampMixin, Base):
    """A reporting health facility (hospital or health center)."""

    __tablename__ = "facilities"
    __table_args__ = (Index("idx_facility_district", "district"),)

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    facility_type: Mapped[str] = mapped_column(String(50), nullable=False)

    district: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<Facility {self.id}: {self.name}>"
