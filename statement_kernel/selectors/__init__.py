"""Selectors for the statement kernel (read side)."""

from statement_kernel.selectors.event_selector import (
    EventReferenceFilter,
    EventRef,
    EventSelector,
    JsonFormRow,
    NormalizedRow,
)
from statement_kernel.selectors.facility_selector import (
    FacilityDTO,
    FacilitySelector,
    ProjectDTO,
)
from statement_kernel.selectors.period_selector import PeriodDTO, PeriodSelector
from statement_kernel.selectors.template_selector import TemplateRowDTO, TemplateSelector

__all__ = [
    "EventReferenceFilter",
    "EventRef",
    "EventSelector",
    "FacilityDTO",
    "FacilitySelector",
    "JsonFormRow",
    "NormalizedRow",
    "PeriodDTO",
    "PeriodSelector",
    "ProjectDTO",
    "TemplateRowDTO",
    "TemplateSelector",
]
