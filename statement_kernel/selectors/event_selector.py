"""
Module: statement_kernel.selectors.event_selector
Responsibility: Raw reads of planning/execution form rows in both storage
    shapes, plus the activity and event mapping lookups needed to resolve
    them into event codes.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Normalized rows are joined entity_id -> activity mapping -> event and
      filtered by event id OR event code, matching template references of
      either kind.
    - JSON rows are returned unparsed; shape detection and stock/flow rules
      belong to the aggregation service.
    - Only active event mappings resolve.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy import and_, or_, select
from sqlalchemy.sql.elements import ColumnElement

from statement_kernel.domain.amounts import to_decimal
from statement_kernel.logging_config import get_logger
from statement_kernel.models.event import DynamicActivity, Event, EventMapping
from statement_kernel.models.form_data import FormDataEntry
from statement_kernel.selectors.base import BaseSelector

logger = get_logger("selectors.event")


@dataclass(frozen=True)
class EventRef:
    event_id: int
    event_code: str


@dataclass(frozen=True)
class NormalizedRow:
    event_code: str
    facility_id: int
    amount: Decimal
    entity_type: str
    reporting_period_id: int


@dataclass(frozen=True)
class ActivityValueRow:
    """A normalized row resolved to its activity code instead of an event."""

    facility_id: int
    activity_code: str
    values: dict[str, Any]


@dataclass(frozen=True)
class JsonFormRow:
    facility_id: int
    entity_type: str
    reporting_period_id: int
    activities: Any


@dataclass(frozen=True)
class EventReferenceFilter:
    """Template event references split into numeric ids and string codes."""

    event_ids: tuple[int, ...] = ()
    event_codes: tuple[str, ...] = ()

    @classmethod
    def from_references(cls, references: Sequence[str | int]) -> EventReferenceFilter:
        ids: list[int] = []
        codes: list[str] = []
        for ref in references:
            text = str(ref).strip()
            if text.isdigit():
                ids.append(int(text))
            else:
                codes.append(text)
        return cls(event_ids=tuple(ids), event_codes=tuple(codes))

    @property
    def is_empty(self) -> bool:
        return not self.event_ids and not self.event_codes

    def matches(self, event_id: int, event_code: str) -> bool:
        if self.is_empty:
            return True
        return event_id in self.event_ids or event_code in self.event_codes

    def clause(self) -> ColumnElement[bool] | None:
        if self.event_ids and self.event_codes:
            return or_(Event.id.in_(self.event_ids), Event.code.in_(self.event_codes))
        if self.event_ids:
            return Event.id.in_(self.event_ids)
        if self.event_codes:
            return Event.code.in_(self.event_codes)
        return None


def _facility_clause(facility_ids: Sequence[int]) -> ColumnElement[bool] | None:
    if not facility_ids:
        return None
    if len(facility_ids) == 1:
        return FormDataEntry.facility_id == facility_ids[0]
    return FormDataEntry.facility_id.in_(list(facility_ids))


class EventSelector(BaseSelector):
    """Read-only access to form data, activities and event mappings."""

    def normalized_rows(
        self,
        project_id: int,
        reporting_period_id: int,
        entity_types: Sequence[str],
        facility_ids: Sequence[int] = (),
        event_filter: EventReferenceFilter | None = None,
    ) -> list[NormalizedRow]:
        """Rows stored one activity per row (``entity_id`` set)."""
        conditions: list[ColumnElement[bool]] = [
            FormDataEntry.project_id == project_id,
            FormDataEntry.reporting_period_id == reporting_period_id,
            FormDataEntry.entity_type.in_(list(entity_types)),
            FormDataEntry.entity_id.is_not(None),
        ]
        facility = _facility_clause(facility_ids)
        if facility is not None:
            conditions.append(facility)
        if event_filter is not None:
            event_clause = event_filter.clause()
            if event_clause is not None:
                conditions.append(event_clause)

        stmt = (
            select(
                Event.code,
                FormDataEntry.facility_id,
                FormDataEntry.form_data,
                FormDataEntry.entity_type,
                FormDataEntry.reporting_period_id,
            )
            .join(EventMapping, FormDataEntry.entity_id == EventMapping.activity_id)
            .join(Event, EventMapping.event_id == Event.id)
            .where(and_(*conditions))
            .order_by(FormDataEntry.id)
        )

        rows = [
            NormalizedRow(
                event_code=code,
                facility_id=facility_id,
                amount=to_decimal((form_data or {}).get("amount")),
                entity_type=entity_type,
                reporting_period_id=period_id or reporting_period_id,
            )
            for code, facility_id, form_data, entity_type, period_id in self.session.execute(stmt)
        ]

        if len(facility_ids) > 1 and rows:
            logger.info(
                "multi_facility_rows_collected",
                extra={
                    "facilities_queried": len(facility_ids),
                    "facilities_with_data": len({r.facility_id for r in rows}),
                    "record_count": len(rows),
                },
            )
        return rows

    def json_rows(
        self,
        project_id: int,
        reporting_period_id: int,
        entity_types: Sequence[str],
        facility_ids: Sequence[int] = (),
    ) -> list[JsonFormRow]:
        """Rows storing a whole facility/period form as an ``activities`` blob."""
        conditions: list[ColumnElement[bool]] = [
            FormDataEntry.project_id == project_id,
            FormDataEntry.reporting_period_id == reporting_period_id,
            FormDataEntry.entity_type.in_(list(entity_types)),
            FormDataEntry.entity_id.is_(None),
        ]
        facility = _facility_clause(facility_ids)
        if facility is not None:
            conditions.append(facility)

        stmt = select(FormDataEntry).where(and_(*conditions)).order_by(FormDataEntry.id)
        result: list[JsonFormRow] = []
        for entry in self.session.execute(stmt).scalars():
            activities = (entry.form_data or {}).get("activities")
            if activities is None:
                continue
            result.append(
                JsonFormRow(
                    facility_id=entry.facility_id,
                    entity_type=entry.entity_type,
                    reporting_period_id=entry.reporting_period_id or reporting_period_id,
                    activities=activities,
                )
            )
        return result

    def activity_code_to_id(self, project_type: str | None = None) -> dict[str, int]:
        """Execution activity code -> activity id."""
        stmt = select(DynamicActivity.code, DynamicActivity.id).where(
            DynamicActivity.module_type == "execution"
        )
        if project_type:
            stmt = stmt.where(DynamicActivity.project_type == project_type)
        mapping = {code: activity_id for code, activity_id in self.session.execute(stmt) if code}
        logger.debug("activity_code_mapping_built", extra={"activity_count": len(mapping)})
        return mapping

    def activity_names(self, activity_ids: Sequence[int]) -> dict[int, str]:
        if not activity_ids:
            return {}
        stmt = select(DynamicActivity.id, DynamicActivity.name).where(
            DynamicActivity.id.in_(list(activity_ids))
        )
        return {activity_id: name for activity_id, name in self.session.execute(stmt)}

    def event_mappings_for_activities(self, activity_ids: Sequence[int]) -> dict[int, EventRef]:
        """Active activity -> event resolutions."""
        if not activity_ids:
            return {}
        stmt = (
            select(EventMapping.activity_id, EventMapping.event_id, Event.code)
            .join(Event, EventMapping.event_id == Event.id)
            .where(
                EventMapping.activity_id.in_(list(activity_ids)),
                EventMapping.is_active.is_(True),
            )
            .order_by(EventMapping.id)
        )
        mapping: dict[int, EventRef] = {}
        for activity_id, event_id, code in self.session.execute(stmt):
            if activity_id is not None and event_id is not None and code:
                mapping[activity_id] = EventRef(event_id=event_id, event_code=code)
        logger.debug("event_mappings_built", extra={"mapping_count": len(mapping)})
        return mapping

    def event_ids(self, event_codes: Sequence[str]) -> dict[str, int]:
        """Event code -> event id, for templates that reference events by id."""
        if not event_codes:
            return {}
        stmt = select(Event.code, Event.id).where(Event.code.in_(list(event_codes)))
        return {code: event_id for code, event_id in self.session.execute(stmt)}

    def normalized_activity_rows(
        self,
        project_id: int,
        reporting_period_id: int,
        entity_types: Sequence[str],
        facility_ids: Sequence[int] = (),
    ) -> list[ActivityValueRow]:
        """Normalized rows keyed by activity code, with their raw form values."""
        conditions: list[ColumnElement[bool]] = [
            FormDataEntry.project_id == project_id,
            FormDataEntry.reporting_period_id == reporting_period_id,
            FormDataEntry.entity_type.in_(list(entity_types)),
            FormDataEntry.entity_id.is_not(None),
            DynamicActivity.code.is_not(None),
        ]
        facility = _facility_clause(facility_ids)
        if facility is not None:
            conditions.append(facility)

        stmt = (
            select(FormDataEntry.facility_id, DynamicActivity.code, FormDataEntry.form_data)
            .join(DynamicActivity, FormDataEntry.entity_id == DynamicActivity.id)
            .where(and_(*conditions))
            .order_by(FormDataEntry.id)
        )
        return [
            ActivityValueRow(facility_id=facility_id, activity_code=code, values=dict(form_data or {}))
            for facility_id, code, form_data in self.session.execute(stmt)
        ]
