"""
statement_services.template_loader -- Statement templates with a TTL cache.

Responsibility:
    Load the active line template for a statement code from the template
    store (``statement_templates`` rows) or, when the store has none, from
    the YAML seed templates; validate it; and cache the validated template
    for a short time.

Architecture position:
    Services -- I/O boundary for template definitions.
    Reads through ``TemplateSelector``; parses rows with the same line
    parser the YAML seeds use (``statement_config.loader``).

Invariants enforced:
    - Only validated templates are cached or returned.
    - Cache expiry is decided against the injected ``Clock``; entries
      older than ``ttl_seconds`` are reloaded.
    - The cache holds immutable template definitions only, never computed
      statement values.

Failure modes:
    - TemplateNotFoundError: neither the store nor the seeds define the code.
    - TemplateValidationError: the template has structural errors.
    - UnsupportedStatementError: the code is not a known statement type.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

from sqlalchemy.orm import Session

from statement_config.loader import load_seed_templates, parse_line_template
from statement_kernel.domain.clock import Clock, SystemClock
from statement_kernel.domain.statement import StatementCode
from statement_kernel.domain.template import (
    LineTemplate,
    StatementTemplate,
    TemplateValidationResult,
)
from statement_kernel.exceptions import (
    TemplateNotFoundError,
    TemplateValidationError,
    UnsupportedStatementError,
)
from statement_kernel.logging_config import get_logger
from statement_kernel.selectors.template_selector import TemplateRowDTO, TemplateSelector
from statement_engines.formula import FormulaEngine

logger = get_logger("services.template_loader")

DEFAULT_CACHE_TTL_SECONDS = 60

_FORMULA_CHARACTERS = re.compile(r"^[a-zA-Z0-9\s+\-*/().,_><=!&|\[\]]*$")
_INVALID_CHARACTER = re.compile(r"[^a-zA-Z0-9\s+\-*/().,_><=!&|\[\]]")


@dataclass(frozen=True)
class CacheEntry:
    template: StatementTemplate
    loaded_at: datetime


@dataclass(frozen=True)
class CacheStats:
    size: int
    hits: int
    misses: int
    entries: tuple[str, ...]

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


def _statement_code(code: StatementCode | str) -> StatementCode:
    try:
        return StatementCode(code)
    except ValueError as exc:
        raise UnsupportedStatementError(str(code)) from exc


def template_from_rows(code: StatementCode, rows: list[TemplateRowDTO]) -> StatementTemplate:
    """Build a template from active store rows (already in display order)."""
    lines = tuple(
        parse_line_template(
            {
                "line_code": row.line_code,
                "line_item": row.line_item,
                "display_order": row.display_order,
                "level": row.level,
                "is_total_line": row.is_total_line,
                "is_subtotal_line": row.is_subtotal_line,
                "event_mappings": list(row.event_mappings),
                "calculation_formula": row.calculation_formula,
                "aggregation_method": row.aggregation_method,
                "display_conditions": row.display_conditions,
                "format_rules": row.format_rules,
                "metadata": row.metadata,
            }
        )
        for row in rows
    )
    return StatementTemplate(
        statement_code=code,
        statement_name=rows[0].statement_name,
        lines=lines,
        source="database",
    )


# =========================================================================
# Validation
# =========================================================================


def check_formula_text(formula: str) -> list[str]:
    """Character whitelist, parenthesis balance and emptiness."""
    if not formula.strip():
        return ["Formula cannot be empty"]
    errors: list[str] = []
    depth = 0
    for char in formula:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                break
    if depth != 0:
        errors.append("Mismatched parentheses")
    if not _FORMULA_CHARACTERS.match(formula):
        invalid = "".join(dict.fromkeys(_INVALID_CHARACTER.findall(formula)))
        errors.append(f"Invalid characters: {invalid}")
    return errors


def validate_template(
    template: StatementTemplate,
    formula_engine: FormulaEngine | None = None,
) -> TemplateValidationResult:
    """
    Structural checks run before a template is used.

    Duplicate display orders are errors; a line with neither event
    mappings nor a formula is a warning unless it is a section header.
    """
    engine = formula_engine or FormulaEngine()
    errors: list[str] = []
    warnings: list[str] = []

    if not template.statement_code:
        errors.append("Statement code is required")
    if not template.statement_name:
        errors.append("Statement name is required")
    if not template.lines:
        errors.append("Template must have at least one line")

    seen_codes: set[str] = set()
    seen_orders: set[int] = set()
    for line in template.lines:
        if line.line_code in seen_codes:
            errors.append(f"Duplicate line code: {line.line_code}")
        seen_codes.add(line.line_code)

        if line.display_order in seen_orders:
            errors.append(f"Duplicate display order: {line.display_order}")
        seen_orders.add(line.display_order)

        if not line.description.strip():
            errors.append(f"Line {line.line_code} missing description")

        if line.calculation_formula is not None:
            formula_errors = check_formula_text(line.calculation_formula)
            if not formula_errors:
                formula_errors = list(engine.validate_syntax(line.calculation_formula).errors)
            for message in formula_errors:
                errors.append(f"Invalid formula in line {line.line_code}: {message}")

        if _has_no_source(line):
            warnings.append(f"Line {line.line_code} has no event mappings or calculation formula")

    return TemplateValidationResult(
        is_valid=not errors,
        errors=tuple(errors),
        warnings=tuple(warnings),
    )


def _has_no_source(line: LineTemplate) -> bool:
    if line.event_mappings or line.has_formula:
        return False
    return not line.formatting.is_section


# =========================================================================
# Loader
# =========================================================================


class TemplateLoader:
    """
    Loads and caches statement templates.

    Contract:
        ``session`` is optional; without one only the seed templates are
        available.  ``seed_templates`` overrides the packaged YAML seeds.
    Guarantees:
        - ``load_template`` returns the same object until the entry expires
          or ``invalidate_cache`` drops it.
    Non-goals:
        - Does not write templates back to the store.
    """

    def __init__(
        self,
        session: Session | None = None,
        clock: Clock | None = None,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        seed_templates: Mapping[StatementCode, StatementTemplate] | None = None,
        formula_engine: FormulaEngine | None = None,
    ):
        self.session = session
        self.clock = clock or SystemClock()
        self.ttl_seconds = ttl_seconds
        self.formula_engine = formula_engine or FormulaEngine()
        self._seed_templates = dict(seed_templates) if seed_templates is not None else None
        self._cache: dict[StatementCode, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------

    def load_template(self, statement_code: StatementCode | str) -> StatementTemplate:
        code = _statement_code(statement_code)
        entry = self._cache.get(code)
        if entry is not None and not self._expired(entry):
            self._hits += 1
            logger.debug("template_cache_hit", extra={"statement_code": code.value})
            return entry.template

        self._misses += 1
        logger.debug("template_cache_miss", extra={"statement_code": code.value})
        template = self._load(code)

        result = validate_template(template, self.formula_engine)
        if not result.is_valid:
            logger.error(
                "template_validation_failed",
                extra={"statement_code": code.value, "errors": list(result.errors)},
            )
            raise TemplateValidationError(code.value, result.errors)
        if result.warnings:
            logger.warning(
                "template_validation_warnings",
                extra={"statement_code": code.value, "warnings": list(result.warnings)},
            )

        self._cache[code] = CacheEntry(template=template, loaded_at=self.clock.now())
        logger.info(
            "template_loaded",
            extra={
                "statement_code": code.value,
                "source": template.source,
                "line_count": len(template.lines),
            },
        )
        return template

    def invalidate_cache(self, statement_code: StatementCode | str | None = None) -> None:
        if statement_code is None:
            self._cache.clear()
            logger.info("template_cache_cleared")
            return
        code = _statement_code(statement_code)
        self._cache.pop(code, None)
        logger.info("template_cache_invalidated", extra={"statement_code": code.value})

    def get_cache_stats(self) -> CacheStats:
        return CacheStats(
            size=len(self._cache),
            hits=self._hits,
            misses=self._misses,
            entries=tuple(sorted(code.value for code in self._cache)),
        )

    def available_statement_codes(self) -> list[StatementCode]:
        codes: set[StatementCode] = set(self._seeds())
        if self.session is not None:
            for value in TemplateSelector(self.session).statement_codes():
                if value in StatementCode.__members__:
                    codes.add(StatementCode(value))
        return sorted(codes, key=lambda code: code.value)

    # ---------------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------------

    def _expired(self, entry: CacheEntry) -> bool:
        age = (self.clock.now() - entry.loaded_at).total_seconds()
        return age > self.ttl_seconds

    def _load(self, code: StatementCode) -> StatementTemplate:
        if self.session is not None:
            rows = TemplateSelector(self.session).active_rows(code.value)
            if rows:
                return template_from_rows(code, rows)
            logger.info("template_rows_missing_using_seed", extra={"statement_code": code.value})

        template = self._seeds().get(code)
        if template is None:
            raise TemplateNotFoundError(code.value)
        return template

    def _seeds(self) -> dict[StatementCode, StatementTemplate]:
        if self._seed_templates is None:
            self._seed_templates = load_seed_templates()
        return self._seed_templates
