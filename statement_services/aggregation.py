"""
statement_services.aggregation -- Event data collection and aggregation.

Responsibility:
    Collect the planning/execution amounts behind a statement from both
    storage shapes, reconcile them into ``EventEntry`` records, prioritize
    execution over planning, and aggregate them into per-event,
    per-facility and per-period totals.  Also resolves the previous period
    and exposes facility and variance helpers used by the generator.

Architecture position:
    Services -- the only I/O boundary for event data.
    Reads through ``EventSelector``, ``PeriodSelector`` and
    ``FacilitySelector``; delegates the stock/flow amount rule to
    ``statement_engines.stock_flow`` and variances to
    ``statement_engines.variance``.

Storage shapes:
    normalized rows   one activity per row, ``entity_id`` joined through the
                      activity -> event mapping table.
    JSON ``budget``   ``activities`` keyed by numeric activity id, amount in
                      ``total_budget``.
    JSON ``actuals``  ``activities`` keyed by activity code (or an array of
                      activities), amounts in ``q1..q4`` and
                      ``cumulative_balance``.

    JSON rows are read only when a period has no normalized rows.

Invariants enforced:
    - Execution entries replace planning entries for the same
      (event code, facility); the two are never summed.
    - Stock-section entries are kept even when their balance is zero; flow
      entries summing to zero are dropped.
    - JSON entries honor the event reference filter exactly like
      normalized rows.
    - ``sum(event_totals) == sum(facility_totals)`` for every aggregation.
    - Per-facility collections merge in ascending facility order.

Failure modes:
    - DataCollectionError: any SQLAlchemy failure, with the filter context.
    - No previous period, no facility data, unknown JSON shape: empty
      results plus a log record, never an exception.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from statement_kernel.domain.amounts import ZERO, to_decimal
from statement_kernel.domain.clock import Clock, SystemClock
from statement_kernel.domain.events import (
    AggregationMetadata,
    CollectionMetadata,
    DataFilters,
    EntityType,
    EventAggregation,
    EventDataCollection,
    EventEntry,
    EventSummary,
    FacilityAccessResult,
    MissingFacilityReport,
)
from statement_kernel.domain.statement import FacilityInfo, LineVariance, ReportingPeriodInfo, Trend
from statement_kernel.exceptions import DataCollectionError
from statement_kernel.logging_config import get_logger
from statement_kernel.selectors.event_selector import (
    EventRef,
    EventReferenceFilter,
    EventSelector,
    JsonFormRow,
)
from statement_kernel.selectors.facility_selector import FacilitySelector
from statement_kernel.selectors.period_selector import PeriodSelector
from statement_engines.carryforward import ending_cash_from_activities
from statement_engines.stock_flow import (
    ExecutionActivity,
    calculate_section_amount,
    section_of,
    should_include_amount,
    validate_activity_data,
)
from statement_engines.variance import (
    FormattedVariance,
    VarianceSignificance,
    VarianceSummary,
    calculate_batch_variances,
    calculate_line_variance,
    format_variance,
    variance_significance,
    variance_summary,
)

logger = get_logger("services.aggregation")

TOP_VARIANCE_COUNT = 5


class ActivitiesShape(str, Enum):
    BUDGET = "budget"
    ACTUALS = "actuals"
    UNKNOWN = "unknown"


def detect_activities_shape(activities: Any) -> ActivitiesShape:
    """An array, or a mapping whose first key is not numeric, is the actuals shape."""
    if not activities:
        return ActivitiesShape.UNKNOWN
    if isinstance(activities, list):
        return ActivitiesShape.ACTUALS
    if isinstance(activities, Mapping):
        first_key = str(next(iter(activities)))
        return ActivitiesShape.BUDGET if first_key.isdigit() else ActivitiesShape.ACTUALS
    return ActivitiesShape.UNKNOWN


def prioritize_data_sources(entries: Iterable[EventEntry]) -> list[EventEntry]:
    """
    Keep execution entries wherever a (event code, facility) has any;
    otherwise keep the planning entries.  Group order is first-seen order.
    """
    groups: dict[tuple[str, int], list[EventEntry]] = {}
    for entry in entries:
        groups.setdefault((entry.event_code, entry.facility_id), []).append(entry)

    prioritized: list[EventEntry] = []
    for group in groups.values():
        execution = [e for e in group if e.entity_type is EntityType.EXECUTION]
        prioritized.extend(execution or [e for e in group if e.entity_type is EntityType.PLANNING])
    return prioritized


def aggregate_entries(
    entries: Sequence[EventEntry],
    with_facility_breakdown: bool = False,
) -> EventAggregation:
    started = time.perf_counter()
    event_totals: dict[str, Decimal] = {}
    facility_totals: dict[int, Decimal] = {}
    period_totals: dict[int, Decimal] = {}
    breakdown: dict[int, dict[str, Decimal]] = {}

    for entry in entries:
        event_totals[entry.event_code] = event_totals.get(entry.event_code, ZERO) + entry.amount
        facility_totals[entry.facility_id] = (
            facility_totals.get(entry.facility_id, ZERO) + entry.amount
        )
        period_totals[entry.reporting_period_id] = (
            period_totals.get(entry.reporting_period_id, ZERO) + entry.amount
        )
        if with_facility_breakdown:
            per_facility = breakdown.setdefault(entry.facility_id, {})
            per_facility[entry.event_code] = per_facility.get(entry.event_code, ZERO) + entry.amount

    return EventAggregation(
        event_totals=event_totals,
        facility_totals=facility_totals,
        period_totals=period_totals,
        metadata=AggregationMetadata(
            total_events=len(entries),
            total_facilities=len(facility_totals),
            total_amount=sum(event_totals.values(), ZERO),
            processing_time_ms=(time.perf_counter() - started) * 1000,
        ),
        facility_breakdown=breakdown,
    )


# =========================================================================
# Result records
# =========================================================================


@dataclass(frozen=True)
class PeriodComparison:
    current: EventAggregation
    previous: EventAggregation
    variances: Mapping[str, LineVariance]


@dataclass(frozen=True)
class SignificantVariance:
    event_code: str
    variance: LineVariance
    significance: VarianceSignificance
    formatted: FormattedVariance


@dataclass(frozen=True)
class VarianceAnalysis:
    summary: VarianceSummary
    significant_variances: tuple[SignificantVariance, ...]
    top_increases: tuple[tuple[str, LineVariance], ...]
    top_decreases: tuple[tuple[str, LineVariance], ...]


@dataclass(frozen=True)
class DisplayVariance:
    variance: LineVariance
    formatted: FormattedVariance
    significance: VarianceSignificance


# =========================================================================
# Engine
# =========================================================================


class DataAggregationEngine:
    """
    Collects and aggregates statement event data.

    Contract:
        Receives a Session (owned by the caller) and an optional Clock.
    Guarantees:
        - ``collect_event_data`` returns both periods; the previous period
          is empty when none precedes the requested one.
        - Aggregations are pure functions of the collected entries.
    Non-goals:
        - Does not enforce project-level facility permissions; access
          validation only checks that facilities exist.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
        self.events = EventSelector(session)
        self.periods = PeriodSelector(session)
        self.facilities = FacilitySelector(session)

    # ---------------------------------------------------------------------
    # Collection
    # ---------------------------------------------------------------------

    def collect_event_data(
        self,
        filters: DataFilters,
        event_codes: Sequence[str | int] = (),
    ) -> EventDataCollection:
        event_filter = EventReferenceFilter.from_references(event_codes)
        try:
            current = self.collect_period_data(filters, event_filter)
            previous_period_id = self.get_previous_period_id(filters.reporting_period_id)
            previous: list[EventEntry] = []
            if previous_period_id is None:
                logger.info(
                    "previous_period_not_found",
                    extra={"reporting_period_id": filters.reporting_period_id},
                )
            else:
                previous = self.collect_period_data(
                    replace(filters, reporting_period_id=previous_period_id), event_filter
                )
        except SQLAlchemyError as exc:
            logger.error(
                "event_data_collection_failed",
                extra={
                    **filters.as_log_context(),
                    "event_codes": [str(c) for c in event_codes],
                    "error": str(exc),
                },
                exc_info=True,
            )
            raise DataCollectionError(filters.as_log_context(), event_codes, str(exc)) from exc

        facilities = self._facilities_included(filters, current, previous)
        logger.info(
            "event_data_collected",
            extra={
                **filters.as_log_context(),
                "current_count": len(current),
                "previous_count": len(previous),
                "previous_period_id": previous_period_id,
            },
        )
        return EventDataCollection(
            current_period=tuple(current),
            previous_period=tuple(previous),
            metadata=CollectionMetadata(
                total_events=len(current) + len(previous),
                facilities_included=facilities,
                periods_included=(filters.reporting_period_id,),
                data_sources=filters.entity_types,
                collection_timestamp=self.clock.now(),
                previous_period_id=previous_period_id,
            ),
        )

    def collect_period_data(
        self,
        filters: DataFilters,
        event_filter: EventReferenceFilter | None = None,
    ) -> list[EventEntry]:
        """
        Entries for exactly ``filters.reporting_period_id``.

        SQLAlchemy errors propagate; ``collect_event_data`` wraps them.
        """
        event_filter = event_filter or EventReferenceFilter()
        entity_types = [t.value for t in filters.entity_types]
        facility_ids = filters.scoped_facility_ids

        rows = self.events.normalized_rows(
            filters.project_id,
            filters.reporting_period_id,
            entity_types,
            facility_ids,
            event_filter,
        )
        entries = [
            EventEntry(
                event_code=row.event_code,
                facility_id=row.facility_id,
                amount=row.amount,
                entity_type=EntityType(row.entity_type),
                reporting_period_id=row.reporting_period_id,
            )
            for row in rows
        ]
        if not entries:
            json_rows = self.events.json_rows(
                filters.project_id, filters.reporting_period_id, entity_types, facility_ids
            )
            if json_rows:
                entries = self._json_entries(json_rows, event_filter, filters.project_type)
            logger.debug(
                "json_form_rows_collected",
                extra={
                    "reporting_period_id": filters.reporting_period_id,
                    "row_count": len(json_rows),
                    "entry_count": len(entries),
                },
            )
        return prioritize_data_sources(entries)

    def collect_event_data_for_facilities(
        self,
        filters: DataFilters,
        event_codes: Sequence[str | int] = (),
        facility_ids: Sequence[int] | None = None,
    ) -> EventDataCollection:
        """Collect each facility separately, then merge in ascending facility order."""
        targets = sorted(set(facility_ids or filters.scoped_facility_ids))
        if not targets:
            return self.collect_event_data(filters, event_codes)

        collections = [
            self.collect_event_data(filters.for_facility(facility_id), event_codes)
            for facility_id in targets
        ]
        previous_period_id = next(
            (c.metadata.previous_period_id for c in collections if c.metadata.previous_period_id),
            None,
        )
        return EventDataCollection(
            current_period=tuple(e for c in collections for e in c.current_period),
            previous_period=tuple(e for c in collections for e in c.previous_period),
            metadata=CollectionMetadata(
                total_events=sum(c.metadata.total_events for c in collections),
                facilities_included=tuple(targets),
                periods_included=(filters.reporting_period_id,),
                data_sources=filters.entity_types,
                collection_timestamp=self.clock.now(),
                previous_period_id=previous_period_id,
            ),
        )

    def collect_ending_cash(
        self,
        filters: DataFilters,
        reporting_period_id: int,
        facility_ids: Sequence[int] = (),
    ) -> dict[int, Decimal]:
        """
        Facility id -> ending cash of ``reporting_period_id``'s execution form.

        Facilities without an execution form are absent from the result.
        """
        entity_types = [EntityType.EXECUTION.value]
        by_facility: dict[int, list[ExecutionActivity]] = {}
        try:
            rows = self.events.normalized_activity_rows(
                filters.project_id, reporting_period_id, entity_types, facility_ids
            )
            for row in rows:
                values = dict(row.values)
                if values.get("cumulative_balance") is None:
                    values["cumulative_balance"] = values.get("amount")
                by_facility.setdefault(row.facility_id, []).append(
                    ExecutionActivity.from_mapping(values, code=row.activity_code)
                )
            if not rows:
                for json_row in self.events.json_rows(
                    filters.project_id, reporting_period_id, entity_types, facility_ids
                ):
                    if detect_activities_shape(json_row.activities) is ActivitiesShape.ACTUALS:
                        by_facility.setdefault(json_row.facility_id, []).extend(
                            execution_activities(json_row.activities)
                        )
        except SQLAlchemyError as exc:
            context = {**filters.as_log_context(), "reporting_period_id": reporting_period_id}
            logger.error(
                "ending_cash_collection_failed",
                extra={**context, "error": str(exc)},
                exc_info=True,
            )
            raise DataCollectionError(context, (), str(exc)) from exc

        ending_cash = {
            facility_id: ending_cash_from_activities(activities)
            for facility_id, activities in by_facility.items()
        }
        logger.debug(
            "ending_cash_collected",
            extra={
                "reporting_period_id": reporting_period_id,
                "facilities_with_data": len(ending_cash),
            },
        )
        return ending_cash

    # ---------------------------------------------------------------------
    # JSON shapes
    # ---------------------------------------------------------------------

    def _json_entries(
        self,
        rows: Sequence[JsonFormRow],
        event_filter: EventReferenceFilter,
        project_type: str | None,
    ) -> list[EventEntry]:
        code_to_id = self.events.activity_code_to_id(project_type)
        activity_ids = set(code_to_id.values())
        for row in rows:
            if detect_activities_shape(row.activities) is ActivitiesShape.BUDGET:
                activity_ids.update(int(key) for key in row.activities if str(key).isdigit())
        mappings = self.events.event_mappings_for_activities(sorted(activity_ids))

        entries: list[EventEntry] = []
        for row in rows:
            shape = detect_activities_shape(row.activities)
            if shape is ActivitiesShape.BUDGET:
                entries.extend(budget_entries(row, mappings, event_filter))
            elif shape is ActivitiesShape.ACTUALS:
                entries.extend(actuals_entries(row, code_to_id, mappings, event_filter))
            else:
                logger.warning(
                    "unknown_activities_shape",
                    extra={
                        "facility_id": row.facility_id,
                        "reporting_period_id": row.reporting_period_id,
                    },
                )
        return entries

    # ---------------------------------------------------------------------
    # Aggregation
    # ---------------------------------------------------------------------

    def aggregate_by_event(self, collection: EventDataCollection) -> EventAggregation:
        aggregation = aggregate_entries(collection.current_period)
        logger.debug(
            "events_aggregated",
            extra={
                "total_events": aggregation.metadata.total_events,
                "total_facilities": aggregation.metadata.total_facilities,
            },
        )
        return aggregation

    def aggregate_by_event_with_facilities(self, collection: EventDataCollection) -> EventAggregation:
        return aggregate_entries(collection.current_period, with_facility_breakdown=True)

    def aggregate_previous_period(
        self, collection: EventDataCollection, with_facility_breakdown: bool = False
    ) -> EventAggregation:
        if not collection.previous_period:
            return self.create_empty_period_aggregation()
        return aggregate_entries(collection.previous_period, with_facility_breakdown)

    @staticmethod
    def create_empty_period_aggregation() -> EventAggregation:
        return EventAggregation.empty()

    # ---------------------------------------------------------------------
    # Variances
    # ---------------------------------------------------------------------

    def calculate_period_comparisons(
        self, current: EventAggregation, previous: EventAggregation
    ) -> PeriodComparison:
        return PeriodComparison(
            current=current,
            previous=previous,
            variances=calculate_batch_variances(current.event_totals, previous.event_totals),
        )

    def get_variance_analysis(self, comparison: PeriodComparison) -> VarianceAnalysis:
        variances = comparison.variances
        significant = sorted(
            (
                SignificantVariance(
                    event_code=code,
                    variance=variance,
                    significance=variance_significance(variance),
                    formatted=format_variance(variance, show_currency=True),
                )
                for code, variance in variances.items()
            ),
            key=lambda item: abs(item.variance.absolute),
            reverse=True,
        )
        increases = sorted(
            ((code, v) for code, v in variances.items() if v.trend is Trend.INCREASE),
            key=lambda item: item[1].absolute,
            reverse=True,
        )
        decreases = sorted(
            ((code, v) for code, v in variances.items() if v.trend is Trend.DECREASE),
            key=lambda item: item[1].absolute,
        )
        return VarianceAnalysis(
            summary=variance_summary(variances),
            significant_variances=tuple(
                item
                for item in significant
                if item.significance in (VarianceSignificance.HIGH, VarianceSignificance.CRITICAL)
            ),
            top_increases=tuple(increases[:TOP_VARIANCE_COUNT]),
            top_decreases=tuple(decreases[:TOP_VARIANCE_COUNT]),
        )

    @staticmethod
    def format_variance_for_display(
        current_value: Decimal,
        previous_value: Decimal,
        show_currency: bool = False,
        currency_symbol: str = "$",
        decimal_places: int = 2,
    ) -> DisplayVariance:
        variance = calculate_line_variance(current_value, previous_value)
        return DisplayVariance(
            variance=variance,
            formatted=format_variance(variance, show_currency, currency_symbol, decimal_places),
            significance=variance_significance(variance),
        )

    # ---------------------------------------------------------------------
    # Periods
    # ---------------------------------------------------------------------

    def get_previous_period_id(self, reporting_period_id: int) -> int | None:
        return self.periods.previous_period_id(reporting_period_id)

    def get_period_info(self, reporting_period_id: int) -> ReportingPeriodInfo | None:
        period = self.periods.get(reporting_period_id)
        if period is None:
            return None
        return ReportingPeriodInfo(
            year=period.year,
            period_type=period.period_type,
            start_date=period.start_date,
            end_date=period.end_date,
        )

    # ---------------------------------------------------------------------
    # Facilities
    # ---------------------------------------------------------------------

    def get_facility_info(self, facility_ids: Sequence[int]) -> dict[int, FacilityInfo]:
        """Known facilities plus a placeholder for ids without a facility record."""
        if not facility_ids:
            return {}
        with_data = self.facilities.facilities_with_data(facility_ids)
        info = {
            facility.id: FacilityInfo(
                id=facility.id,
                name=facility.name,
                facility_type=facility.facility_type,
                district=facility.district,
                has_data=facility.id in with_data,
            )
            for facility in self.facilities.get_facilities(facility_ids)
        }
        for facility_id in facility_ids:
            if facility_id not in info:
                info[facility_id] = FacilityInfo(
                    id=facility_id,
                    name=f"Facility {facility_id}",
                    facility_type="Unknown",
                    has_data=facility_id in with_data,
                )
        return info

    def validate_facility_access(
        self, facility_ids: Sequence[int], project_id: int
    ) -> FacilityAccessResult:
        if not facility_ids:
            return FacilityAccessResult(valid_facilities=(), invalid_facilities=())
        existing = self.facilities.existing_ids(facility_ids)
        valid = tuple(fid for fid in facility_ids if fid in existing)
        invalid = tuple(fid for fid in facility_ids if fid not in existing)
        if invalid:
            logger.warning(
                "facility_access_invalid",
                extra={"project_id": project_id, "invalid_facilities": list(invalid)},
            )
        return FacilityAccessResult(
            valid_facilities=valid,
            invalid_facilities=invalid,
            errors=tuple(f"Facility {fid} does not exist" for fid in invalid),
        )

    @staticmethod
    def handle_missing_facility_data(
        requested: Sequence[int], with_data: Sequence[int]
    ) -> MissingFacilityReport:
        present = set(with_data)
        without = tuple(fid for fid in requested if fid not in present)
        warnings: list[str] = []
        if without:
            warnings.append(
                f"{len(without)} facilities have no data: {', '.join(str(f) for f in without)}"
            )
        should_continue = len(present) > 0
        if not should_continue and requested:
            warnings.append("No facilities have data for the specified criteria")
        return MissingFacilityReport(
            facilities_with_data=tuple(with_data),
            facilities_without_data=without,
            warnings=tuple(warnings),
            should_continue=should_continue,
        )

    # ---------------------------------------------------------------------
    # Summary
    # ---------------------------------------------------------------------

    def get_event_data_summary(self, filters: DataFilters) -> EventSummary:
        try:
            entries = self.collect_period_data(filters)
        except SQLAlchemyError as exc:
            raise DataCollectionError(filters.as_log_context(), (), str(exc)) from exc
        aggregation = aggregate_entries(entries)
        return EventSummary(
            total_events=len(entries),
            total_amount=aggregation.metadata.total_amount,
            event_breakdown=aggregation.event_totals,
            facility_breakdown=aggregation.facility_totals,
        )

    @staticmethod
    def _facilities_included(
        filters: DataFilters,
        current: Sequence[EventEntry],
        previous: Sequence[EventEntry],
    ) -> tuple[int, ...]:
        if filters.facility_id is not None and not filters.facility_ids:
            return (filters.facility_id,)
        return tuple(sorted({e.facility_id for e in (*current, *previous)}))


# =========================================================================
# Shape extraction
# =========================================================================


def budget_entries(
    row: JsonFormRow,
    mappings: Mapping[int, EventRef],
    event_filter: EventReferenceFilter,
) -> list[EventEntry]:
    """Budget shape: one entry per mapped activity with a non-zero ``total_budget``."""
    entries: list[EventEntry] = []
    for key, raw in row.activities.items():
        if not str(key).isdigit():
            continue
        ref = mappings.get(int(key))
        if ref is None or not event_filter.matches(ref.event_id, ref.event_code):
            continue
        amount = to_decimal((raw or {}).get("total_budget"))
        if amount == ZERO:
            continue
        entries.append(
            EventEntry(
                event_code=ref.event_code,
                facility_id=row.facility_id,
                amount=amount,
                entity_type=EntityType(row.entity_type),
                reporting_period_id=row.reporting_period_id,
            )
        )
    return entries


def execution_activities(activities: Any) -> list[ExecutionActivity]:
    """Parse an actuals-shape collection, keyed by activity code or listed."""
    if isinstance(activities, Mapping):
        items = [(str(key), raw) for key, raw in activities.items()]
    else:
        items = [(None, raw) for raw in activities or ()]
    return [
        ExecutionActivity.from_mapping(raw, code=key)
        for key, raw in items
        if isinstance(raw, Mapping)
    ]


def actuals_entries(
    row: JsonFormRow,
    code_to_id: Mapping[str, int],
    mappings: Mapping[int, EventRef],
    event_filter: EventReferenceFilter,
) -> list[EventEntry]:
    """Actuals shape: the stock/flow rule decides each activity's amount."""
    entries: list[EventEntry] = []
    for activity in execution_activities(row.activities):
        activity_id = code_to_id.get(activity.code)
        if activity_id is None:
            continue
        ref = mappings.get(activity_id)
        if ref is None or not event_filter.matches(ref.event_id, ref.event_code):
            continue

        section = section_of(activity)
        for warning in validate_activity_data(activity, section):
            logger.warning(
                "activity_data_warning",
                extra={"activity_code": activity.code, "warning": warning},
            )
        amount = calculate_section_amount(activity, section)
        if not should_include_amount(amount, section):
            continue
        entries.append(
            EventEntry(
                event_code=ref.event_code,
                facility_id=row.facility_id,
                amount=amount,
                entity_type=EntityType(row.entity_type),
                reporting_period_id=row.reporting_period_id,
            )
        )
    return entries
