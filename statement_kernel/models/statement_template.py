"""
Module: statement_kernel.models.statement_template
Responsibility: ORM persistence for statement template rows.  One row per
    statement line; all rows sharing a ``statement_code`` form a template.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - (statement_code, line_code) is unique.
    - Only ``is_active`` rows are loaded into templates.
"""

from typing import Any

from sqlalchemy import JSON, Boolean, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from statement_kernel.db.base import Base, TimestampMixin


class StatementTemplateRow(TimestampMixin, Base):
    """A single line definition of a statement template."""

    __tablename__ = "statement_templates"
    __table_args__ = (
        UniqueConstraint("statement_code", "line_code", name="uq_template_line"),
        Index("idx_template_code_order", "statement_code", "display_order"),
    )

    statement_code: Mapped[str] = mapped_column(String(50), nullable=False)

    statement_name: Mapped[str] = mapped_column(String(200), nullable=False)

    line_item: Mapped[str] = mapped_column(Text, nullable=False)

    line_code: Mapped[str] = mapped_column(String(100), nullable=False)

    parent_line_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    display_order: Mapped[int] = mapped_column(Integer, nullable=False)

    level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    is_total_line: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    is_subtotal_line: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Event codes or numeric event ids
    event_mappings: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)

    calculation_formula: Mapped[str | None] = mapped_column(Text, nullable=True)

    aggregation_method: Mapped[str] = mapped_column(String(20), default="SUM", nullable=False)

    display_conditions: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    format_rules: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # "metadata" is reserved on declarative classes
    line_metadata: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<StatementTemplateRow {self.statement_code}.{self.line_code}>"
