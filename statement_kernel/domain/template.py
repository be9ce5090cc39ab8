"""
Template -- Declarative line templates for statement generation.

Responsibility:
    Defines the immutable records the Template Loader produces and every
    downstream stage consumes: ``LineTemplate`` (one statement row),
    ``DisplayConditions`` (when a zero row may be suppressed) and
    ``StatementTemplate`` (ordered rows for one statement code).

Architecture position:
    Kernel > Domain -- pure data definitions, zero I/O.

Invariants enforced:
    - ``line_code`` is the identity of a line within a template (uniqueness is
      checked by the Template Loader, not here).
    - Event mappings are an ordered tuple of event codes or numeric event ids.
    - Aggregation method is a closed enum; unknown strings are rejected at
      load time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from statement_kernel.domain.statement import ColumnType, StatementCode


class AggregationMethod(str, Enum):
    """How a line's computed value is aggregated."""

    SUM = "SUM"
    DIFF = "DIFF"
    AVERAGE = "AVERAGE"
    MAX = "MAX"
    MIN = "MIN"

    @classmethod
    def parse(cls, value: str | None) -> AggregationMethod:
        """Parse a stored method name.  ``DIFFERENCE`` is an accepted alias."""
        if not value:
            return cls.SUM
        normalized = value.strip().upper()
        if normalized == "DIFFERENCE":
            return cls.DIFF
        return cls(normalized)


class ConditionOperator(str, Enum):
    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    EQ = "=="
    NE = "!="
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"


@dataclass(frozen=True)
class FieldCondition:
    """Structured display condition: ``<field> <operator> <value>``.

    ``field`` names a line code whose already computed value is compared.
    An operator outside ``ConditionOperator`` is kept verbatim and treated as
    satisfied, so a malformed condition never hides a line.
    """

    field: str
    operator: str
    value: Any


# A condition is either an arithmetic/comparison expression string over line
# codes, or a structured FieldCondition.
Condition = str | FieldCondition


@dataclass(frozen=True)
class DisplayConditions:
    show_when: Condition | None = None
    hide_when: Condition | None = None
    hide_empty: bool = False

    @property
    def is_empty(self) -> bool:
        return self.show_when is None and self.hide_when is None and not self.hide_empty


@dataclass(frozen=True)
class LineFormatRules:
    """Presentation hints carried from the template into the statement line."""

    bold: bool = False
    italic: bool = False
    indent_level: int = 1
    is_section: bool = False
    is_subtotal: bool = False
    is_total: bool = False


@dataclass(frozen=True)
class LineTemplate:
    """
    One row of a statement template.

    Contract:
        Exactly one value source applies, in this order: a non-empty
        ``calculation_formula``, then ``event_mappings``, else zero.

    Guarantees:
        - Immutable once loaded.
        - ``event_mappings`` preserves template order.
    """

    line_code: str
    description: str
    display_order: int
    event_mappings: tuple[str | int, ...] = ()
    calculation_formula: str | None = None
    aggregation_method: AggregationMethod = AggregationMethod.SUM
    is_total_line: bool = False
    is_subtotal_line: bool = False
    display_conditions: DisplayConditions = field(default_factory=DisplayConditions)
    formatting: LineFormatRules = field(default_factory=LineFormatRules)
    note_number: int | None = None
    level: int = 1
    column_type: ColumnType | None = None
    parent_line_code: str | None = None

    @property
    def has_formula(self) -> bool:
        return bool(self.calculation_formula and self.calculation_formula.strip())

    @property
    def event_codes(self) -> tuple[str, ...]:
        """Event mappings rendered as strings (numeric ids stringified)."""
        return tuple(str(ref) for ref in self.event_mappings)


@dataclass(frozen=True)
class StatementTemplate:
    """Ordered line templates for one statement code."""

    statement_code: StatementCode
    statement_name: str
    lines: tuple[LineTemplate, ...]
    version: str = "1.0"
    source: str = "database"
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def line(self, line_code: str) -> LineTemplate | None:
        for line in self.lines:
            if line.line_code == line_code:
                return line
        return None

    @property
    def line_codes(self) -> tuple[str, ...]:
        return tuple(line.line_code for line in self.lines)

    def all_event_codes(self) -> tuple[str, ...]:
        """Distinct event references across all lines, in first-seen order."""
        seen: dict[str, None] = {}
        for line in self.lines:
            for code in line.event_codes:
                seen.setdefault(code, None)
        return tuple(seen)

    def ordered(self) -> tuple[LineTemplate, ...]:
        return tuple(sorted(self.lines, key=lambda t: t.display_order))


@dataclass(frozen=True)
class TemplateValidationResult:
    is_valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
