"""
Module: statement_kernel.selectors.template_selector
Responsibility: Active statement template rows for a statement code, ordered
    by display order.
Architecture position: Kernel > Selectors.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select

from statement_kernel.models.statement_template import StatementTemplateRow
from statement_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class TemplateRowDTO:
    statement_code: str
    statement_name: str
    line_item: str
    line_code: str
    display_order: int
    level: int
    is_total_line: bool
    is_subtotal_line: bool
    event_mappings: tuple[Any, ...]
    calculation_formula: str | None
    aggregation_method: str
    display_conditions: dict[str, Any] | None
    format_rules: dict[str, Any] | None
    metadata: dict[str, Any] | None
    parent_line_id: int | None = None


class TemplateSelector(BaseSelector):
    """Read-only access to ``statement_templates``."""

    def active_rows(self, statement_code: str) -> list[TemplateRowDTO]:
        stmt = (
            select(StatementTemplateRow)
            .where(
                StatementTemplateRow.statement_code == statement_code,
                StatementTemplateRow.is_active.is_(True),
            )
            .order_by(StatementTemplateRow.display_order, StatementTemplateRow.id)
        )
        return [
            TemplateRowDTO(
                statement_code=row.statement_code,
                statement_name=row.statement_name,
                line_item=row.line_item,
                line_code=row.line_code,
                display_order=row.display_order,
                level=row.level,
                is_total_line=row.is_total_line,
                is_subtotal_line=row.is_subtotal_line,
                event_mappings=tuple(row.event_mappings or ()),
                calculation_formula=row.calculation_formula,
                aggregation_method=row.aggregation_method,
                display_conditions=row.display_conditions,
                format_rules=row.format_rules,
                metadata=row.line_metadata,
                parent_line_id=row.parent_line_id,
            )
            for row in self.session.execute(stmt).scalars()
        ]

    def statement_codes(self) -> list[str]:
        stmt = (
            select(StatementTemplateRow.statement_code)
            .where(StatementTemplateRow.is_active.is_(True))
            .distinct()
            .order_by(StatementTemplateRow.statement_code)
        )
        return list(self.session.execute(stmt).scalars())
