"""ORM models for the planning/execution data sources and template store."""

from statement_kernel.models.event import DynamicActivity, Event, EventMapping
from statement_kernel.models.form_data import FormDataEntry
from statement_kernel.models.project import Facility, Project
from statement_kernel.models.reporting_period import PeriodType, ReportingPeriod
from statement_kernel.models.statement_template import StatementTemplateRow

__all__ = [
    "DynamicActivity",
    "Event",
    "EventMapping",
    "Facility",
    "FormDataEntry",
    "PeriodType",
    "Project",
    "ReportingPeriod",
    "StatementTemplateRow",
]
