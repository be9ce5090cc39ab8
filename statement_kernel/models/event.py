"""
Module: statement_kernel.models.event
Responsibility: ORM persistence for financial events (ledger-style account
    codes), the activity catalogue, and the activity -> event mapping table.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Event ``code`` is unique; statement templates reference events by
      code or by numeric id.
    - Only active mappings (``is_active``) resolve activities to events.

Audit relevance:
    The mapping table is the single place where a data-entry activity is
    tied to the statement line that will carry its amount.
"""

from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from statement_kernel.db.base import Base, TimestampMixin


class Event(TimestampMixin, Base):
    """A financial event code that statement lines sum over."""

    __tablename__ = "events"
    __table_args__ = (UniqueConstraint("code", name="uq_event_code"),)

    code: Mapped[str] = mapped_column(String(100), nullable=False)

    description: Mapped[str] = mapped_column(Text, default="", nullable=False)

    # Statement codes this event appears in (informational)
    statement_codes: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)

    is_current: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Event {self.code}>"


class DynamicActivity(TimestampMixin, Base):
    """
    A data-entry activity row from the planning or execution catalogue.

    Execution activity codes encode a section letter after the ``EXEC``
    marker (``HIV_EXEC_HOSPITAL_D_1`` is section D).
    """

    __tablename__ = "dynamic_activities"
    __table_args__ = (
        Index("idx_activity_module_project", "module_type", "project_type"),
    )

    code: Mapped[str | None] = mapped_column(String(150), nullable=True)

    name: Mapped[str] = mapped_column(String(300), nullable=False)

    project_type: Mapped[str | None] = mapped_column(String(20), nullable=True)

    facility_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # 'planning' or 'execution'
    module_type: Mapped[str] = mapped_column(String(20), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<DynamicActivity {self.code or self.id}>"


class EventMapping(TimestampMixin, Base):
    """Resolves an activity to the event its amounts post to."""

    __tablename__ = "configurable_event_mappings"
    __table_args__ = (
        Index("idx_event_mapping_activity", "activity_id"),
    )

    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), nullable=False)

    activity_id: Mapped[int | None] = mapped_column(
        ForeignKey("dynamic_activities.id"),
        nullable=True,
    )

    mapping_type: Mapped[str] = mapped_column(String(20), default="DIRECT", nullable=False)

    project_type: Mapped[str | None] = mapped_column(String(20), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
