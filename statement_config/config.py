"""
Statement Engine Configuration Schema.

Tolerances, thresholds and defaults shared by the template loader, the
data aggregation engine and the statement generator.  Every amount is a
``Decimal``; values read from YAML or dicts are coerced on construction.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from decimal import Decimal
from typing import Any, Self

from statement_kernel.domain.amounts import to_decimal
from statement_kernel.domain.events import EntityType
from statement_kernel.logging_config import get_logger

logger = get_logger("config.statement_engine")

_DECIMAL_FIELDS = (
    "balance_tolerance",
    "significant_variance_threshold",
    "large_value_threshold",
    "completeness_threshold",
    "significant_imbalance",
)


@dataclass
class StatementEngineConfig:
    """
    Configuration schema for statement generation.

    ``balance_tolerance`` applies to every identity check; differences up to
    ``significant_imbalance`` are reported as warnings where a processor
    distinguishes rounding from real imbalances.
    """

    # Absolute tolerance for every balance comparison
    balance_tolerance: Decimal = Decimal("0.01")

    # Template cache lifetime
    template_cache_ttl_seconds: int = 60

    # Reporting currency shown on statements
    default_currency: str = "FRW"

    # Sources collected when a request names none
    default_entity_types: tuple[EntityType, ...] = (
        EntityType.PLANNING,
        EntityType.EXECUTION,
    )

    # Percentage change at which a variance counts as significant
    significant_variance_threshold: Decimal = Decimal("10")

    # Any line above this magnitude is flagged by the extreme-value rule
    large_value_threshold: Decimal = Decimal("1000000000")

    # Formula guards
    max_formula_dependencies: int = 10
    max_variable_name_length: int = 50

    # Statements below this completion percentage carry a warning
    completeness_threshold: Decimal = Decimal("80")

    # Imbalance above which a difference is an error rather than rounding
    significant_imbalance: Decimal = Decimal("100")

    # Whether comparatives are collected by default
    include_previous_period: bool = True

    def __post_init__(self):
        for name in _DECIMAL_FIELDS:
            setattr(self, name, to_decimal(getattr(self, name)))
        self.default_entity_types = tuple(
            EntityType(t) for t in self.default_entity_types
        )

        if self.balance_tolerance < 0:
            raise ValueError("balance_tolerance cannot be negative")
        if self.template_cache_ttl_seconds < 0:
            raise ValueError("template_cache_ttl_seconds cannot be negative")
        if len(self.default_currency) != 3:
            raise ValueError("default_currency must be a 3-letter ISO 4217 code")
        if not self.default_entity_types:
            raise ValueError("default_entity_types must name at least one entity type")
        if self.max_formula_dependencies < 1:
            raise ValueError("max_formula_dependencies must be at least 1")
        if self.max_variable_name_length < 1:
            raise ValueError("max_variable_name_length must be at least 1")
        if not 0 <= self.completeness_threshold <= 100:
            raise ValueError("completeness_threshold must be between 0 and 100")
        if self.significant_imbalance < self.balance_tolerance:
            raise ValueError("significant_imbalance cannot be below balance_tolerance")

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with standard defaults."""
        logger.info("statement_engine_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create config from a dictionary; unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown statement engine config keys: {', '.join(unknown)}")
        values = dict(data)
        if "default_entity_types" in values:
            values["default_entity_types"] = tuple(values["default_entity_types"])
        logger.info(
            "statement_engine_config_loading_from_dict",
            extra={"keys": sorted(values.keys())},
        )
        return cls(**values)
