"""
Typed Exception Hierarchy for the Statement Engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Statement generation fails in a small number of well-understood ways, and
callers react to each differently: a broken template is a configuration
problem to be fixed by an administrator, a failed event query is an
operational problem that may be retried, and an unbalanced statement is not
an exception at all (it is reported in ``ValidationResults``).

Every error therefore has:
  1. A TYPED exception class (catch by type, not message)
  2. A CODE attribute (machine-readable, API-safe)
  3. Structured DATA attributes (not just a message string)

Example:
    try:
        document = generator.generate(request)
    except CircularDependencyError as e:
        report_template_defect(e.statement_code, e.cycle)
    except DataCollectionError as e:
        retry_later(e.filters)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    StatementEngineError (base)
    |
    +-- ConfigurationError
    |   +-- TemplateNotFoundError
    |   +-- TemplateValidationError
    |   +-- FormulaSyntaxError
    |   +-- CircularDependencyError
    |   +-- UnsupportedStatementError
    |
    +-- FormulaEvaluationError
    |   +-- InvalidFormulaOperandError
    |
    +-- DataCollectionError
    |
    +-- PeriodNotFoundError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Configuration   | TEMPLATE_NOT_FOUND          | No active template rows for a code
                | TEMPLATE_VALIDATION_FAILED  | Structural template defects
                | FORMULA_SYNTAX_ERROR        | Formula rejected by syntax checks
                | CIRCULAR_DEPENDENCY         | Formula references form a cycle
                | UNSUPPORTED_STATEMENT       | No processor for a statement code
----------------|-----------------------------|-----------------------------------------
Formula         | FORMULA_EVALUATION_ERROR    | A single formula could not be evaluated
                | INVALID_FORMULA_OPERAND     | Intrinsic called with a bad argument
----------------|-----------------------------|-----------------------------------------
Data            | DATA_COLLECTION_FAILED      | Event source query failed
                | PERIOD_NOT_FOUND            | Reporting period id does not exist

===============================================================================
HANDLING PATTERNS
===============================================================================

Configuration errors are fatal and raised before any line is produced.
Formula evaluation errors are caught per line by the line processor and
turned into a zero value plus a logged warning; they only escape when a
formula is evaluated directly.  DataCollectionError carries the complete
filter context so a failed generation can be reproduced.
"""

from __future__ import annotations

from typing import Any, Sequence


class StatementEngineError(Exception):
    """
    Base exception for all statement engine errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "STATEMENT_ENGINE_ERROR"


# Configuration exceptions


class ConfigurationError(StatementEngineError):
    """Base exception for template and formula configuration defects."""

    code: str = "CONFIGURATION_ERROR"


class TemplateNotFoundError(ConfigurationError):
    """No active template exists for the requested statement code."""

    code: str = "TEMPLATE_NOT_FOUND"

    def __init__(self, statement_code: str):
        self.statement_code = statement_code
        super().__init__(
            f"No active template found for statement code: {statement_code}"
        )


class TemplateValidationError(ConfigurationError):
    """Template failed structural validation."""

    code: str = "TEMPLATE_VALIDATION_FAILED"

    def __init__(self, statement_code: str, errors: Sequence[str]):
        self.statement_code = statement_code
        self.errors = list(errors)
        super().__init__(f"Template validation failed: {', '.join(self.errors)}")


class FormulaSyntaxError(ConfigurationError):
    """Formula rejected by syntax validation."""

    code: str = "FORMULA_SYNTAX_ERROR"

    def __init__(self, formula: str, errors: Sequence[str]):
        self.formula = formula
        self.errors = list(errors)
        super().__init__(f"Invalid formula '{formula}': {', '.join(self.errors)}")


class CircularDependencyError(ConfigurationError):
    """Formula references between lines form at least one cycle."""

    code: str = "CIRCULAR_DEPENDENCY"

    def __init__(self, cycles: Sequence[Sequence[str]]):
        self.cycles = [list(c) for c in cycles]
        self.cycle = self.cycles[0] if self.cycles else []
        rendered = ", ".join(" -> ".join(c) for c in self.cycles)
        super().__init__(f"Circular dependencies detected: {rendered}")


class UnsupportedStatementError(ConfigurationError):
    """No statement-type processor is registered for the code."""

    code: str = "UNSUPPORTED_STATEMENT"

    def __init__(self, statement_code: str):
        self.statement_code = statement_code
        super().__init__(f"Unsupported statement code: {statement_code}")


# Formula evaluation exceptions


class FormulaEvaluationError(StatementEngineError):
    """A formula could not be evaluated against its context."""

    code: str = "FORMULA_EVALUATION_ERROR"

    def __init__(self, formula: str, reason: str):
        self.formula = formula
        self.reason = reason
        super().__init__(f"Failed to evaluate formula: {formula} ({reason})")


class InvalidFormulaOperandError(FormulaEvaluationError):
    """A formula intrinsic received an argument it does not accept."""

    code: str = "INVALID_FORMULA_OPERAND"

    def __init__(self, formula: str, operand: str, reason: str):
        self.operand = operand
        super().__init__(formula, reason)


# Data exceptions


class DataCollectionError(StatementEngineError):
    """The event source failed while collecting statement data."""

    code: str = "DATA_COLLECTION_FAILED"

    def __init__(
        self,
        filters: dict[str, Any],
        event_codes: Sequence[str | int],
        reason: str,
    ):
        self.filters = filters
        self.event_codes = list(event_codes)
        self.reason = reason
        super().__init__(f"Failed to collect event data: {reason}")


class PeriodNotFoundError(StatementEngineError):
    """Reporting period does not exist."""

    code: str = "PERIOD_NOT_FOUND"

    def __init__(self, reporting_period_id: int):
        self.reporting_period_id = reporting_period_id
        super().__init__(f"Reporting period not found: {reporting_period_id}")
