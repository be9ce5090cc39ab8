"""
statement_services.statement_generator -- End-to-end statement generation.

Responsibility:
    Orchestrate one statement run: load the template, collect and aggregate
    the events it references, process lines for both periods, hand the
    lines to the statement-type processor, validate the assembled document
    and attach metadata.

Architecture position:
    Services -- the only layer that combines I/O (selectors) with the pure
    engines.  Callers own the Session and its transaction; the generator
    never writes.

Invariants enforced:
    - Lines are evaluated in dependency order; a template cycle aborts the
      run before any data is collected.
    - The document's validation results combine the processor's identity
      check, the validation engine's rules, formula re-evaluation and the
      completeness check.  ``is_valid`` is "no errors".
    - BUDGET_VS_ACTUAL line values come from execution events and budget
      values from planning events of the same period.
    - A BAL_SHEET or NET_ASSETS line reading the period surplus sees the
      surplus of a REV_EXP statement generated over the same scope.
    - A CASH_FLOW period with no recorded beginning cash starts from the
      previous period's ending cash.

Failure modes:
    - UnsupportedStatementError / TemplateNotFoundError /
      TemplateValidationError / CircularDependencyError: template problems.
    - PeriodNotFoundError: the reporting period does not exist.
    - DataCollectionError: the event source failed.
    Line-level evaluation errors do not abort the run; they are recorded on
    the line and in the validation errors.

Audit relevance:
    Every run logs ``statement_generation_started`` and
    ``statement_generation_completed`` under a correlation id bound to the
    request scope.
"""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping, Sequence
from uuid import uuid4

from sqlalchemy.orm import Session

from statement_config.config import StatementEngineConfig
from statement_kernel.domain.amounts import ZERO
from statement_kernel.domain.clock import Clock, SystemClock
from statement_kernel.domain.events import (
    DataFilters,
    EntityType,
    EventAggregation,
    EventDataCollection,
)
from statement_kernel.domain.statement import (
    BusinessRuleValidation,
    CarryforwardResult,
    FacilityInfo,
    PerformanceMetrics,
    ProjectInfo,
    StatementCode,
    StatementDocument,
    StatementMetadata,
    ValidationResults,
    WorkingCapitalResult,
)
from statement_kernel.domain.template import LineTemplate, StatementTemplate
from statement_kernel.exceptions import PeriodNotFoundError
from statement_kernel.logging_config import LogContext, get_logger
from statement_engines.carryforward import BEGINNING_CASH_EVENT, resolve_beginning_cash
from statement_engines.completeness import check_completeness
from statement_engines.formula import (
    CROSS_STATEMENT_SURPLUS_DEFICIT,
    BalanceSheetContext,
    CrossStatementValues,
    FormulaContext,
    FormulaEngine,
)
from statement_engines.line_processor import EventLookup, LineProcessingResult, LineProcessor
from statement_engines.processors import ProcessorInput, ProcessorResult, get_processor
from statement_engines.validation import ValidationEngine
from statement_engines.working_capital import (
    PAYABLES_EVENT_CODES,
    RECEIVABLES_EVENT_CODES,
    calculate_working_capital,
)
from statement_services.aggregation import DataAggregationEngine
from statement_services.template_loader import TemplateLoader

logger = get_logger("services.statement_generator")

SURPLUS_TOTAL_KEY = "NET_SURPLUS_DEFICIT"


# =========================================================================
# Request
# =========================================================================


@dataclass(frozen=True)
class StatementGenerationRequest:
    """
    One statement to generate.

    ``facility_ids`` takes precedence over ``facility_id``; neither means
    the whole project.  ``entity_types`` and ``include_comparatives`` fall
    back to the engine configuration when None.  ``custom_mappings``
    replaces the event mappings of the named template lines for this run.
    """

    statement_code: StatementCode | str
    reporting_period_id: int
    project_id: int
    facility_id: int | None = None
    facility_ids: tuple[int, ...] = ()
    entity_types: tuple[EntityType, ...] | None = None
    include_comparatives: bool | None = None
    custom_mappings: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    project_type: str | None = None
    correlation_id: str | None = None

    def __post_init__(self) -> None:
        if self.reporting_period_id <= 0:
            raise ValueError("reporting_period_id must be a positive integer")
        if self.project_id <= 0:
            raise ValueError("project_id must be a positive integer")
        if self.facility_id is not None and self.facility_id <= 0:
            raise ValueError("facility_id must be a positive integer")
        if any(fid <= 0 for fid in self.facility_ids):
            raise ValueError("facility_ids must be positive integers")


@dataclass(frozen=True)
class _PeriodData:
    """Collected events for one statement scope, both periods."""

    collection: EventDataCollection
    current: EventAggregation
    previous: EventAggregation | None
    events: EventLookup
    previous_events: EventLookup | None

    @property
    def events_processed(self) -> int:
        return len(self.collection.current_period) + len(self.collection.previous_period)


# =========================================================================
# Generator
# =========================================================================


class StatementGenerator:
    """
    Generates financial statements from templates and event data.

    Contract:
        Receives a Session (owned by the caller), an optional engine
        configuration and an optional Clock.  Collaborators may be injected
        for tests; otherwise they are built from the configuration.
    Guarantees:
        - Returned documents always carry validation results.
        - Repeating a request over unchanged data yields the same lines,
          totals and validation results.
    Non-goals:
        - Does not persist statements or render them beyond ``to_dict``.
        - Does not enforce user permissions on projects or facilities.
    """

    def __init__(
        self,
        session: Session,
        config: StatementEngineConfig | None = None,
        clock: Clock | None = None,
        template_loader: TemplateLoader | None = None,
        aggregation: DataAggregationEngine | None = None,
    ):
        self.session = session
        self.config = config or StatementEngineConfig.with_defaults()
        self.clock = clock or SystemClock()
        self.formula_engine = FormulaEngine(
            max_dependencies=self.config.max_formula_dependencies,
            max_variable_name_length=self.config.max_variable_name_length,
            tolerance=self.config.balance_tolerance,
            significant_imbalance=self.config.significant_imbalance,
        )
        self.line_processor = LineProcessor(self.formula_engine)
        self.template_loader = template_loader or TemplateLoader(
            session,
            clock=self.clock,
            ttl_seconds=self.config.template_cache_ttl_seconds,
            formula_engine=self.formula_engine,
        )
        self.aggregation = aggregation or DataAggregationEngine(session, self.clock)
        self.validation_engine = ValidationEngine(
            self.config.balance_tolerance,
            self.config.large_value_threshold,
        )

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------

    def generate(self, request: StatementGenerationRequest) -> StatementDocument:
        statement_code = getattr(request.statement_code, "value", request.statement_code)
        correlation_id = request.correlation_id or uuid4().hex
        with LogContext.bind(
            correlation_id=correlation_id,
            statement_code=statement_code,
            project_id=request.project_id,
            facility_id=request.facility_id,
            reporting_period_id=request.reporting_period_id,
        ):
            return self._generate(request)

    # ---------------------------------------------------------------------
    # Pipeline
    # ---------------------------------------------------------------------

    def _generate(self, request: StatementGenerationRequest) -> StatementDocument:
        started = time.perf_counter()
        template = self.template_loader.load_template(request.statement_code)
        template = self._apply_custom_mappings(template, request.custom_mappings)
        code = template.statement_code
        ordered = self.formula_engine.resolve_dependencies(template.lines)

        filters = self._filters(request)
        include_comparatives = (
            self.config.include_previous_period
            if request.include_comparatives is None
            else request.include_comparatives
        )
        logger.info(
            "statement_generation_started",
            extra={
                **filters.as_log_context(),
                "statement_code": code.value,
                "include_comparatives": include_comparatives,
                "line_count": len(ordered),
            },
        )

        period = self.aggregation.get_period_info(request.reporting_period_id)
        if period is None:
            raise PeriodNotFoundError(request.reporting_period_id)

        budget_values: dict[str, Decimal] = {}
        events_processed = 0
        if code is StatementCode.BUDGET_VS_ACTUAL:
            data = self._collect(
                ordered, filters.with_entity_types(EntityType.EXECUTION), include_comparatives
            )
            planning = self._collect(
                ordered, filters.with_entity_types(EntityType.PLANNING), include_comparatives=False
            )
            budget_values = self.line_processor.compute_values(ordered, planning.events)
            events_processed += len(planning.collection.current_period)
        else:
            extra: tuple[str, ...] = ()
            if code is StatementCode.CASH_FLOW:
                extra = (BEGINNING_CASH_EVENT, *RECEIVABLES_EVENT_CODES, *PAYABLES_EVENT_CODES)
            data = self._collect(ordered, filters, include_comparatives, extra)
        events_processed += data.events_processed

        balance_sheet: BalanceSheetContext | None = None
        working_capital: WorkingCapitalResult | None = None
        carryforward: CarryforwardResult | None = None
        if code is StatementCode.CASH_FLOW:
            carryforward = self._beginning_cash(data, filters)
            data = _with_beginning_cash(data, carryforward)
            previous_totals = data.previous.event_totals if data.previous is not None else {}
            balance_sheet = BalanceSheetContext(
                current=data.current.event_totals, previous=previous_totals
            )
            working_capital = self._working_capital(data, filters)

        cross_statement = previous_cross = None
        if _reads_surplus(ordered):
            cross_statement, previous_cross = self._surplus_deficit(filters, include_comparatives)

        line_result = self.line_processor.process_lines(
            ordered,
            data.events,
            data.previous_events,
            balance_sheet=balance_sheet,
            cross_statement=cross_statement,
            previous_cross_statement=previous_cross,
        )

        processor = get_processor(
            code, self.config.balance_tolerance, self.config.significant_imbalance
        )
        processed = processor.process_statement(
            ProcessorInput(
                template=template,
                lines=line_result.visible_lines,
                current=data.current,
                previous=data.previous,
                budget_values=budget_values,
            )
        )

        facility_ids = data.collection.metadata.facilities_included
        document = StatementDocument(
            statement_code=code,
            statement_name=template.statement_name,
            generated_date=self.clock.now(),
            reporting_period=period,
            lines=processed.lines,
            totals=dict(processed.totals),
            metadata=StatementMetadata(
                statement_type=code,
                currency=str(template.metadata.get("currency", self.config.default_currency)),
                template_version=template.version,
                data_sources=tuple(t.value for t in filters.entity_types),
                facility=self._facility(filters),
                project=self._project(request.project_id),
                facilities_included=facility_ids,
                previous_period_id=data.collection.metadata.previous_period_id,
                working_capital=working_capital,
                carryforward=carryforward,
            ),
        )

        validation = self._validate(
            document,
            processed,
            line_result,
            FormulaContext(
                line_values=line_result.line_values,
                event_values=data.current.event_totals,
                balance_sheet=balance_sheet,
                cross_statement=cross_statement,
            ),
            working_capital,
            carryforward,
        )

        elapsed_ms = (time.perf_counter() - started) * 1000
        document = dataclasses.replace(
            document,
            metadata=dataclasses.replace(
                document.metadata,
                performance=PerformanceMetrics(
                    processing_time_ms=round(elapsed_ms, 3),
                    lines_processed=len(document.lines),
                    events_processed=events_processed,
                    formulas_calculated=line_result.formulas_calculated,
                ),
            ),
            validation_results=validation,
        )

        logger.info(
            "statement_generation_completed",
            extra={
                "statement_code": code.value,
                "line_count": len(document.lines),
                "events_processed": events_processed,
                "is_valid": validation.is_valid,
                "error_count": len(validation.errors),
                "warning_count": len(validation.warnings),
                "duration_ms": round(elapsed_ms, 2),
            },
        )
        return document

    # ---------------------------------------------------------------------
    # Template preparation
    # ---------------------------------------------------------------------

    @staticmethod
    def _apply_custom_mappings(
        template: StatementTemplate,
        custom_mappings: Mapping[str, Sequence[str]],
    ) -> StatementTemplate:
        if not custom_mappings:
            return template
        unknown = sorted(set(custom_mappings) - set(template.line_codes))
        if unknown:
            logger.warning(
                "custom_mapping_unknown_lines",
                extra={"statement_code": template.statement_code.value, "line_codes": unknown},
            )
        lines = tuple(
            dataclasses.replace(line, event_mappings=tuple(custom_mappings[line.line_code]))
            if line.line_code in custom_mappings
            else line
            for line in template.lines
        )
        return dataclasses.replace(template, lines=lines)

    def _event_references(
        self, lines: Sequence[LineTemplate], extra: Sequence[str] = ()
    ) -> list[str | int]:
        """Event mappings plus formula identifiers that are not line codes."""
        line_codes = {line.line_code for line in lines}
        seen: dict[str | int, None] = {}
        for line in lines:
            for ref in line.event_mappings:
                seen.setdefault(ref, None)
            for name in self.formula_engine.extract_dependencies(line.calculation_formula):
                if name not in line_codes:
                    seen.setdefault(name, None)
        for code in extra:
            seen.setdefault(code, None)
        return list(seen)

    # ---------------------------------------------------------------------
    # Data
    # ---------------------------------------------------------------------

    def _filters(self, request: StatementGenerationRequest) -> DataFilters:
        return DataFilters(
            project_id=request.project_id,
            reporting_period_id=request.reporting_period_id,
            entity_types=tuple(request.entity_types or self.config.default_entity_types),
            facility_id=request.facility_id,
            facility_ids=tuple(sorted(set(request.facility_ids))),
            project_type=request.project_type,
        )

    def _collect(
        self,
        lines: Sequence[LineTemplate],
        filters: DataFilters,
        include_comparatives: bool,
        extra_references: Sequence[str] = (),
    ) -> _PeriodData:
        references = self._event_references(lines, extra_references)
        multi_facility = len(filters.scoped_facility_ids) > 1
        if multi_facility:
            collection = self.aggregation.collect_event_data_for_facilities(filters, references)
            current = self.aggregation.aggregate_by_event_with_facilities(collection)
        else:
            collection = self.aggregation.collect_event_data(filters, references)
            current = self.aggregation.aggregate_by_event(collection)

        previous: EventAggregation | None = None
        if include_comparatives:
            previous = self.aggregation.aggregate_previous_period(
                collection, with_facility_breakdown=multi_facility
            )

        event_ids: dict[str, int] = {}
        if any(_is_numeric_reference(ref) for ref in references):
            known = set(current.event_totals)
            if previous is not None:
                known.update(previous.event_totals)
            event_ids = self.aggregation.events.event_ids(sorted(known))

        return _PeriodData(
            collection=collection,
            current=current,
            previous=previous,
            events=EventLookup.from_totals(current.event_totals, event_ids),
            previous_events=(
                EventLookup.from_totals(previous.event_totals, event_ids)
                if previous is not None
                else None
            ),
        )

    def _working_capital(self, data: _PeriodData, filters: DataFilters) -> WorkingCapitalResult:
        facility_ids = filters.scoped_facility_ids
        names: dict[int, str] = {}
        if len(facility_ids) > 1:
            names = {
                fid: info.name
                for fid, info in self.aggregation.get_facility_info(facility_ids).items()
            }
        previous = data.previous or EventAggregation.empty()
        return calculate_working_capital(
            data.current.event_totals,
            previous.event_totals,
            previous_period_id=data.collection.metadata.previous_period_id,
            facility_ids=facility_ids,
            current_by_facility=data.current.facility_breakdown,
            previous_by_facility=previous.facility_breakdown,
            facility_names=names,
        )

    def _beginning_cash(self, data: _PeriodData, filters: DataFilters) -> CarryforwardResult:
        """Previous period ending cash, overridden by a manual entry when one exists."""
        previous_period_id = data.collection.metadata.previous_period_id
        facility_ids = tuple(
            filters.scoped_facility_ids or data.collection.metadata.facilities_included
        )
        ending_cash: dict[int, Decimal] = {}
        if previous_period_id is not None and facility_ids:
            ending_cash = self.aggregation.collect_ending_cash(
                filters, previous_period_id, facility_ids
            )
        names: dict[int, str] = {}
        if len(facility_ids) > 1:
            names = {
                fid: info.name
                for fid, info in self.aggregation.get_facility_info(facility_ids).items()
            }
        return resolve_beginning_cash(
            data.current.event_totals.get(BEGINNING_CASH_EVENT, ZERO),
            previous_period_id,
            ending_cash,
            facility_ids=facility_ids,
            facility_names=names,
        )

    def _surplus_deficit(
        self, filters: DataFilters, include_comparatives: bool
    ) -> tuple[CrossStatementValues, CrossStatementValues | None]:
        """Surplus/(deficit) of a revenue and expenditure statement over the same scope."""
        template = self.template_loader.load_template(StatementCode.REV_EXP)
        ordered = self.formula_engine.resolve_dependencies(template.lines)
        data = self._collect(ordered, filters, include_comparatives)
        line_result = self.line_processor.process_lines(ordered, data.events, data.previous_events)
        processed = get_processor(
            StatementCode.REV_EXP, self.config.balance_tolerance, self.config.significant_imbalance
        ).process_statement(
            ProcessorInput(
                template=template,
                lines=line_result.visible_lines,
                current=data.current,
                previous=data.previous,
            )
        )
        surplus = processed.totals.get(SURPLUS_TOTAL_KEY)
        previous_surplus = (
            processed.previous_totals.get(SURPLUS_TOTAL_KEY) if data.previous is not None else None
        )
        logger.info(
            "cross_statement_surplus_calculated",
            extra={
                "surplus_deficit": str(surplus),
                "previous_surplus_deficit": str(previous_surplus),
            },
        )
        current = CrossStatementValues(
            surplus_deficit=surplus, previous_surplus_deficit=previous_surplus
        )
        previous = (
            CrossStatementValues(surplus_deficit=previous_surplus)
            if previous_surplus is not None
            else None
        )
        return current, previous

    # ---------------------------------------------------------------------
    # Metadata
    # ---------------------------------------------------------------------

    def _project(self, project_id: int) -> ProjectInfo | None:
        project = self.aggregation.facilities.get_project(project_id)
        if project is None:
            return None
        return ProjectInfo(
            id=project.id,
            name=project.name,
            code=project.code,
            project_type=project.project_type,
        )

    def _facility(self, filters: DataFilters) -> FacilityInfo | None:
        scoped = filters.scoped_facility_ids
        if len(scoped) != 1:
            return None
        return self.aggregation.get_facility_info(scoped).get(scoped[0])

    # ---------------------------------------------------------------------
    # Validation
    # ---------------------------------------------------------------------

    def _validate(
        self,
        document: StatementDocument,
        processed: ProcessorResult,
        line_result: LineProcessingResult,
        context: FormulaContext,
        working_capital: WorkingCapitalResult | None,
        carryforward: CarryforwardResult | None = None,
    ) -> ValidationResults:
        engine_results = self.validation_engine.validate_statement_balance(document)
        calculations = self.formula_engine.validate_calculations(document.lines, context)
        completeness = check_completeness(document, self.config.completeness_threshold)

        rules: dict[str, BusinessRuleValidation] = {}
        for result in (*processed.validation.business_rules, *engine_results.business_rules):
            rules.setdefault(result.rule_id, result)

        errors = [
            *processed.validation.errors,
            *engine_results.errors,
            *calculations.errors,
            *line_result.errors,
        ]
        warnings = [
            *processed.validation.warnings,
            *engine_results.warnings,
            *calculations.warnings,
            *completeness.warnings,
        ]
        if working_capital is not None:
            warnings.extend(working_capital.warnings)
        if carryforward is not None:
            warnings.extend(carryforward.warnings)

        return ValidationResults.from_parts(
            accounting_equation=processed.validation.accounting_equation,
            business_rules=tuple(rules.values()),
            warnings=tuple(dict.fromkeys(warnings)),
            errors=tuple(dict.fromkeys(errors)),
        )


# =========================================================================
# Helpers
# =========================================================================


def _with_beginning_cash(data: _PeriodData, carryforward: CarryforwardResult) -> _PeriodData:
    """Fill an empty beginning cash event with the carried-forward amount."""
    if (
        not carryforward.success
        or not carryforward.is_carried_forward
        or carryforward.beginning_cash == ZERO
        or data.current.event_totals.get(BEGINNING_CASH_EVENT, ZERO) != ZERO
    ):
        return data
    totals = {**data.current.event_totals, BEGINNING_CASH_EVENT: carryforward.beginning_cash}
    return dataclasses.replace(
        data,
        current=dataclasses.replace(data.current, event_totals=totals),
        events=EventLookup(
            by_code={**data.events.by_code, BEGINNING_CASH_EVENT: carryforward.beginning_cash},
            by_id=data.events.by_id,
        ),
    )


def _reads_surplus(lines: Sequence[LineTemplate]) -> bool:
    return any(
        line.calculation_formula
        and line.calculation_formula.strip().upper() == CROSS_STATEMENT_SURPLUS_DEFICIT
        for line in lines
    )


def _is_numeric_reference(reference: str | int) -> bool:
    return isinstance(reference, int) or str(reference).isdigit()
