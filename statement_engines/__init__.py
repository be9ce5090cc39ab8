"""
Module: statement_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines used to
    build financial statements: formula evaluation, line processing,
    statement-type processors, variance, working capital, beginning cash
    carry-forward, stock/flow
    section rules, validation and completeness.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import statement_kernel domain types and sibling engines.
    MUST NOT import statement_services.

Invariants enforced:
    - Decimal-only arithmetic for every monetary amount.
    - Engines never read the clock; generation timestamps come from the
      service layer.
    - Determinism: identical inputs always produce identical outputs.

Usage:
    from statement_engines.formula import FormulaEngine
    from statement_engines.line_processor import LineProcessor
    from statement_engines.processors import get_processor
    from statement_engines.validation import ValidationEngine
"""

from statement_kernel.logging_config import get_logger

logger = get_logger("engines")

from statement_engines.carryforward import (
    ending_cash_from_activities,
    resolve_beginning_cash,
)
from statement_engines.completeness import check_completeness
from statement_engines.formula import (
    CrossStatementValues,
    DependencyGraph,
    FormulaContext,
    FormulaEngine,
    OperationKind,
)
from statement_engines.line_processor import (
    EventLookup,
    LineProcessingResult,
    LineProcessor,
)
from statement_engines.processors import (
    ProcessorInput,
    ProcessorResult,
    StatementProcessor,
    get_processor,
)
from statement_engines.stock_flow import (
    ExecutionActivity,
    calculate_section_amount,
    extract_section_from_code,
    is_accumulated_surplus_item,
    is_stock_section,
)
from statement_engines.tracer import traced_engine
from statement_engines.validation import (
    BusinessRule,
    ValidationEngine,
    default_business_rules,
)
from statement_engines.variance import (
    VarianceCalculator,
    VarianceSignificance,
    calculate_line_variance,
)
from statement_engines.working_capital import calculate_working_capital

__all__ = [
    "BusinessRule",
    "CrossStatementValues",
    "DependencyGraph",
    "EventLookup",
    "ExecutionActivity",
    "FormulaContext",
    "FormulaEngine",
    "LineProcessingResult",
    "LineProcessor",
    "OperationKind",
    "ProcessorInput",
    "ProcessorResult",
    "StatementProcessor",
    "ValidationEngine",
    "VarianceCalculator",
    "VarianceSignificance",
    "calculate_line_variance",
    "calculate_section_amount",
    "calculate_working_capital",
    "check_completeness",
    "default_business_rules",
    "ending_cash_from_activities",
    "extract_section_from_code",
    "get_processor",
    "is_accumulated_surplus_item",
    "is_stock_section",
    "resolve_beginning_cash",
    "traced_engine",
]
