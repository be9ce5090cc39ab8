"""
statement_services -- Package init and public API.

Responsibility:
    Orchestration services that compose the pure statement engines with
    database sessions and the clock: template loading and caching, event
    collection and aggregation, and end-to-end statement generation.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        statement_services/ -> statement_engines/  (allowed)
        statement_services/ -> statement_kernel/   (allowed)
        statement_engines/  -> statement_services/ (FORBIDDEN)
        statement_kernel/   -> statement_services/ (FORBIDDEN)

Invariants enforced:
    - Only this layer holds sessions or reads the clock.
    - Services receive their Session and Clock from the caller.
"""

from statement_kernel.logging_config import get_logger

logger = get_logger("services")

from statement_services.aggregation import DataAggregationEngine
from statement_services.statement_generator import (
    StatementGenerationRequest,
    StatementGenerator,
)
from statement_services.template_loader import TemplateLoader, validate_template

__all__ = [
    "DataAggregationEngine",
    "StatementGenerationRequest",
    "StatementGenerator",
    "TemplateLoader",
    "validate_template",
]
