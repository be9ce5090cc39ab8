"""
Events -- Normalized financial event records and their aggregations.

Responsibility:
    Defines the ``EventEntry`` produced by reconciling both planning/execution
    storage shapes, the filter scope of a collection request, and the
    aggregation maps consumed by the line processor.

Architecture position:
    Kernel > Domain -- pure data definitions, zero I/O.

Invariants enforced:
    - ``EventAggregation`` for a single-period collection satisfies
      ``sum(event_totals) == sum(facility_totals)``; both maps are filled in
      the same pass by the aggregation engine.
    - Amounts are ``Decimal``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Mapping

from statement_kernel.domain.amounts import ZERO


class EntityType(str, Enum):
    """Raw data source for an event amount."""

    PLANNING = "planning"
    EXECUTION = "execution"


@dataclass(frozen=True)
class EventEntry:
    event_code: str
    facility_id: int
    amount: Decimal
    entity_type: EntityType
    reporting_period_id: int


@dataclass(frozen=True)
class DataFilters:
    """
    Scope of one event collection request.

    ``facility_ids`` takes precedence over ``facility_id`` when non-empty.
    Neither set means "every facility of the project".
    """

    project_id: int
    reporting_period_id: int
    entity_types: tuple[EntityType, ...] = (EntityType.PLANNING, EntityType.EXECUTION)
    facility_id: int | None = None
    facility_ids: tuple[int, ...] = ()
    project_type: str | None = None

    def __post_init__(self) -> None:
        if not self.entity_types:
            raise ValueError("DataFilters requires at least one entity type")

    @property
    def scoped_facility_ids(self) -> tuple[int, ...]:
        if self.facility_ids:
            return self.facility_ids
        if self.facility_id is not None:
            return (self.facility_id,)
        return ()

    def for_facility(self, facility_id: int) -> DataFilters:
        return DataFilters(
            project_id=self.project_id,
            reporting_period_id=self.reporting_period_id,
            entity_types=self.entity_types,
            facility_id=facility_id,
            project_type=self.project_type,
        )

    def with_entity_types(self, *entity_types: EntityType) -> DataFilters:
        return DataFilters(
            project_id=self.project_id,
            reporting_period_id=self.reporting_period_id,
            entity_types=tuple(entity_types),
            facility_id=self.facility_id,
            facility_ids=self.facility_ids,
            project_type=self.project_type,
        )

    def as_log_context(self) -> dict:
        return {
            "project_id": self.project_id,
            "reporting_period_id": self.reporting_period_id,
            "entity_types": [t.value for t in self.entity_types],
            "facility_id": self.facility_id,
            "facility_ids": list(self.facility_ids),
            "project_type": self.project_type,
        }


@dataclass(frozen=True)
class CollectionMetadata:
    total_events: int
    facilities_included: tuple[int, ...]
    periods_included: tuple[int, ...]
    data_sources: tuple[EntityType, ...]
    collection_timestamp: datetime
    previous_period_id: int | None = None


@dataclass(frozen=True)
class EventDataCollection:
    current_period: tuple[EventEntry, ...]
    previous_period: tuple[EventEntry, ...]
    metadata: CollectionMetadata


@dataclass(frozen=True)
class AggregationMetadata:
    total_events: int
    total_facilities: int
    total_amount: Decimal
    aggregation_method: str = "SUM"
    processing_time_ms: float = 0.0


@dataclass(frozen=True)
class EventAggregation:
    """Totals of one period's entries keyed three ways."""

    event_totals: Mapping[str, Decimal]
    facility_totals: Mapping[int, Decimal]
    period_totals: Mapping[int, Decimal]
    metadata: AggregationMetadata
    facility_breakdown: Mapping[int, Mapping[str, Decimal]] = field(default_factory=dict)

    def amount(self, event_code: str) -> Decimal:
        return self.event_totals.get(event_code, ZERO)

    @classmethod
    def empty(cls) -> EventAggregation:
        return cls(
            event_totals={},
            facility_totals={},
            period_totals={},
            metadata=AggregationMetadata(
                total_events=0,
                total_facilities=0,
                total_amount=ZERO,
            ),
        )


@dataclass(frozen=True)
class EventSummary:
    total_events: int
    total_amount: Decimal
    event_breakdown: Mapping[str, Decimal]
    facility_breakdown: Mapping[int, Decimal]


@dataclass(frozen=True)
class FacilityAccessResult:
    valid_facilities: tuple[int, ...]
    invalid_facilities: tuple[int, ...]
    access_denied: tuple[int, ...] = ()
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class MissingFacilityReport:
    facilities_with_data: tuple[int, ...]
    facilities_without_data: tuple[int, ...]
    warnings: tuple[str, ...]
    should_continue: bool
