"""Tests for DataAggregationEngine against a real database session."""

from datetime import date
from decimal import Decimal

import pytest

from statement_kernel.domain.events import DataFilters, EntityType, EventEntry
from statement_kernel.domain.statement import ReportingPeriodInfo, Trend
from statement_kernel.models import DynamicActivity, EventMapping, FormDataEntry
from statement_services.aggregation import (
    ActivitiesShape,
    DataAggregationEngine,
    aggregate_entries,
    detect_activities_shape,
    prioritize_data_sources,
)


def _entry(code, facility_id, amount, entity_type=EntityType.EXECUTION, period_id=1):
    return EventEntry(
        event_code=code,
        facility_id=facility_id,
        amount=Decimal(str(amount)),
        entity_type=entity_type,
        reporting_period_id=period_id,
    )


@pytest.fixture
def engine(session, deterministic_clock):
    return DataAggregationEngine(session, clock=deterministic_clock)


@pytest.fixture
def mapped_activity(session, make_event):
    """Create an activity mapped to an event code."""

    def _make(code: str, event_code: str, module_type: str = "execution", name: str = "") -> DynamicActivity:
        activity = DynamicActivity(
            code=code,
            name=name or code,
            project_type="HIV",
            module_type=module_type,
        )
        session.add(activity)
        session.flush()
        session.add(EventMapping(event_id=make_event(event_code).id, activity_id=activity.id))
        session.flush()
        return activity

    return _make


@pytest.fixture
def add_form(session, project):
    """Store one whole-form JSON row (no entity_id)."""

    def _add(activities, facility, period, entity_type="execution") -> FormDataEntry:
        entry = FormDataEntry(
            project_id=project.id,
            facility_id=facility.id,
            reporting_period_id=period.id,
            entity_type=entity_type,
            entity_id=None,
            form_data={"activities": activities},
        )
        session.add(entry)
        session.flush()
        return entry

    return _add


class TestNormalizedCollection:
    def test_current_and_previous_periods(
        self, engine, project, facilities, periods, add_amount, deterministic_clock
    ):
        hospital, centre = facilities
        add_amount("TAX_REVENUE", "1000", hospital, periods["current"])
        add_amount("GRANTS", "500", centre, periods["current"])
        add_amount("TAX_REVENUE", "800", hospital, periods["previous"])

        collection = engine.collect_event_data(
            DataFilters(project_id=project.id, reporting_period_id=periods["current"].id),
            ["TAX_REVENUE", "GRANTS"],
        )

        assert len(collection.current_period) == 2
        assert len(collection.previous_period) == 1
        assert collection.metadata.previous_period_id == periods["previous"].id
        assert collection.metadata.total_events == 3
        assert collection.metadata.facilities_included == tuple(sorted((hospital.id, centre.id)))
        assert collection.metadata.collection_timestamp == deterministic_clock.now()

        current = engine.aggregate_by_event(collection)
        assert current.event_totals == {"TAX_REVENUE": Decimal("1000"), "GRANTS": Decimal("500")}
        assert current.facility_totals == {hospital.id: Decimal("1000"), centre.id: Decimal("500")}
        assert current.metadata.total_amount == Decimal("1500")

        previous = engine.aggregate_previous_period(collection)
        assert previous.event_totals == {"TAX_REVENUE": Decimal("800")}

    def test_event_references_filter_rows(self, engine, project, facilities, periods, add_amount):
        add_amount("TAX_REVENUE", "1000", facilities[0], periods["current"])
        add_amount("GRANTS", "500", facilities[0], periods["current"])

        collection = engine.collect_event_data(
            DataFilters(project_id=project.id, reporting_period_id=periods["current"].id),
            ["GRANTS"],
        )
        assert [e.event_code for e in collection.current_period] == ["GRANTS"]

    def test_numeric_event_reference(self, engine, project, facilities, periods, add_amount, make_event):
        add_amount("GRANTS", "500", facilities[0], periods["current"])
        grants_id = make_event("GRANTS").id

        collection = engine.collect_event_data(
            DataFilters(project_id=project.id, reporting_period_id=periods["current"].id),
            [grants_id],
        )
        assert [e.amount for e in collection.current_period] == [Decimal("500")]

    def test_execution_replaces_planning(self, engine, project, facilities, periods, add_amount):
        hospital, centre = facilities
        current = periods["current"]
        add_amount("TAX_REVENUE", "900", hospital, current, entity_type="planning")
        add_amount("TAX_REVENUE", "1000", hospital, current, entity_type="execution")
        add_amount("TAX_REVENUE", "400", centre, current, entity_type="planning")

        collection = engine.collect_event_data(
            DataFilters(project_id=project.id, reporting_period_id=current.id),
        )
        aggregation = engine.aggregate_by_event_with_facilities(collection)

        assert aggregation.event_totals == {"TAX_REVENUE": Decimal("1400")}
        assert aggregation.facility_breakdown[hospital.id] == {"TAX_REVENUE": Decimal("1000")}
        assert aggregation.facility_breakdown[centre.id] == {"TAX_REVENUE": Decimal("400")}

    def test_entity_type_scope(self, engine, project, facilities, periods, add_amount):
        current = periods["current"]
        add_amount("TAX_REVENUE", "900", facilities[0], current, entity_type="planning")
        add_amount("TAX_REVENUE", "1000", facilities[0], current, entity_type="execution")

        filters = DataFilters(
            project_id=project.id,
            reporting_period_id=current.id,
            entity_types=(EntityType.PLANNING,),
        )
        aggregation = engine.aggregate_by_event(engine.collect_event_data(filters))
        assert aggregation.event_totals == {"TAX_REVENUE": Decimal("900")}

    def test_no_previous_period(self, engine, project, facilities, periods, add_amount, captured_logs):
        add_amount("TAX_REVENUE", "800", facilities[0], periods["previous"])

        collection = engine.collect_event_data(
            DataFilters(project_id=project.id, reporting_period_id=periods["previous"].id),
        )

        assert collection.previous_period == ()
        assert collection.metadata.previous_period_id is None
        assert engine.aggregate_previous_period(collection).event_totals == {}
        assert any(r["message"] == "previous_period_not_found" for r in captured_logs())

    def test_facility_scope(self, engine, project, facilities, periods, add_amount):
        hospital, centre = facilities
        add_amount("TAX_REVENUE", "1000", hospital, periods["current"])
        add_amount("TAX_REVENUE", "300", centre, periods["current"])

        collection = engine.collect_event_data(
            DataFilters(
                project_id=project.id,
                reporting_period_id=periods["current"].id,
                facility_id=centre.id,
            )
        )
        assert [e.amount for e in collection.current_period] == [Decimal("300")]
        assert collection.metadata.facilities_included == (centre.id,)

    def test_per_facility_merge_is_ascending(self, engine, project, facilities, periods, add_amount):
        hospital, centre = facilities
        add_amount("TAX_REVENUE", "1000", hospital, periods["current"])
        add_amount("GRANTS", "300", centre, periods["current"])

        collection = engine.collect_event_data_for_facilities(
            DataFilters(project_id=project.id, reporting_period_id=periods["current"].id),
            facility_ids=[centre.id, hospital.id],
        )

        ordered = sorted((hospital.id, centre.id))
        assert collection.metadata.facilities_included == tuple(ordered)
        assert [e.facility_id for e in collection.current_period] == ordered
        assert collection.metadata.previous_period_id == periods["previous"].id

    def test_event_data_summary(self, engine, project, facilities, periods, add_amount):
        hospital, centre = facilities
        add_amount("TAX_REVENUE", "1000", hospital, periods["current"])
        add_amount("GRANTS", "250", centre, periods["current"])

        summary = engine.get_event_data_summary(
            DataFilters(project_id=project.id, reporting_period_id=periods["current"].id)
        )
        assert summary.total_events == 2
        assert summary.total_amount == Decimal("1250")
        assert summary.event_breakdown["GRANTS"] == Decimal("250")
        assert summary.facility_breakdown[hospital.id] == Decimal("1000")


class TestJsonCollection:
    def test_budget_shape(self, engine, project, facilities, periods, mapped_activity, add_form):
        salaries = mapped_activity("HIV_PLAN_SALARIES", "COMPENSATION_EMPLOYEES", "planning")
        supplies = mapped_activity("HIV_PLAN_SUPPLIES", "GOODS_SERVICES", "planning")
        add_form(
            {
                str(salaries.id): {"total_budget": "1200"},
                str(supplies.id): {"total_budget": 0},
            },
            facilities[0],
            periods["current"],
            entity_type="planning",
        )

        collection = engine.collect_event_data(
            DataFilters(project_id=project.id, reporting_period_id=periods["current"].id),
        )

        assert len(collection.current_period) == 1
        entry = collection.current_period[0]
        assert entry.event_code == "COMPENSATION_EMPLOYEES"
        assert entry.amount == Decimal("1200")
        assert entry.entity_type is EntityType.PLANNING

    def test_actuals_shape_applies_stock_flow_rule(
        self, engine, project, facilities, periods, mapped_activity, add_form
    ):
        mapped_activity("HIV_EXEC_HOSPITAL_A_1", "TRANSFERS_PUBLIC_ENTITIES", name="Transfers")
        mapped_activity("HIV_EXEC_HOSPITAL_D_1", "CASH_EQUIVALENTS_END", name="Cash at bank")
        mapped_activity("HIV_EXEC_HOSPITAL_B_2", "COMPENSATION_EMPLOYEES", name="Salaries")
        add_form(
            {
                "HIV_EXEC_HOSPITAL_A_1": {"q1": 100, "q2": 200, "q3": 0, "q4": 50},
                "HIV_EXEC_HOSPITAL_D_1": {"cumulative_balance": 0},
                "HIV_EXEC_HOSPITAL_B_2": {"q1": 0},
                "HIV_EXEC_HOSPITAL_A_9": {"q1": 999},
            },
            facilities[0],
            periods["current"],
        )

        collection = engine.collect_event_data(
            DataFilters(project_id=project.id, reporting_period_id=periods["current"].id),
        )
        amounts = {e.event_code: e.amount for e in collection.current_period}

        assert amounts == {
            "TRANSFERS_PUBLIC_ENTITIES": Decimal("350"),
            "CASH_EQUIVALENTS_END": Decimal("0"),
        }

    def test_actuals_array_shape(self, engine, project, facilities, periods, mapped_activity, add_form):
        mapped_activity("HIV_EXEC_HOSPITAL_A_1", "TRANSFERS_PUBLIC_ENTITIES", name="Transfers")
        add_form(
            [{"code": "HIV_EXEC_HOSPITAL_A_1", "q1": "10", "q3": "5"}],
            facilities[0],
            periods["current"],
        )

        collection = engine.collect_event_data(
            DataFilters(project_id=project.id, reporting_period_id=periods["current"].id),
            ["TRANSFERS_PUBLIC_ENTITIES"],
        )
        assert [e.amount for e in collection.current_period] == [Decimal("15")]

    def test_json_rows_honor_event_filter(
        self, engine, project, facilities, periods, mapped_activity, add_form
    ):
        mapped_activity("HIV_EXEC_HOSPITAL_A_1", "TRANSFERS_PUBLIC_ENTITIES")
        add_form({"HIV_EXEC_HOSPITAL_A_1": {"q1": 10}}, facilities[0], periods["current"])

        collection = engine.collect_event_data(
            DataFilters(project_id=project.id, reporting_period_id=periods["current"].id),
            ["OTHER_REVENUE"],
        )
        assert collection.current_period == ()

    def test_normalized_rows_shadow_json_rows(
        self, engine, project, facilities, periods, mapped_activity, add_form, add_amount
    ):
        mapped_activity("HIV_EXEC_HOSPITAL_A_1", "TRANSFERS_PUBLIC_ENTITIES")
        add_form({"HIV_EXEC_HOSPITAL_A_1": {"q1": 10}}, facilities[0], periods["current"])
        add_amount("GRANTS", "75", facilities[0], periods["current"])

        collection = engine.collect_event_data(
            DataFilters(project_id=project.id, reporting_period_id=periods["current"].id),
        )
        assert [e.event_code for e in collection.current_period] == ["GRANTS"]


class TestEndingCashCollection:
    def test_json_execution_form(self, engine, project, facilities, periods, add_form):
        hospital, centre = facilities
        add_form(
            {
                "HIV_EXEC_HOSPITAL_D_1": {"cumulative_balance": "4000"},
                "HIV_EXEC_HOSPITAL_D_2": {"cumulative_balance": 150},
                "HIV_EXEC_HOSPITAL_D_4": {"cumulative_balance": 999},
                "HIV_EXEC_HOSPITAL_A_1": {"q1": 10},
            },
            hospital,
            periods["previous"],
        )
        add_form(
            {"HIV_EXEC_HEALTH_CENTER_D_1": {"cumulative_balance": 77}},
            centre,
            periods["previous"],
            entity_type="planning",
        )

        ending_cash = engine.collect_ending_cash(
            DataFilters(project_id=project.id, reporting_period_id=periods["current"].id),
            periods["previous"].id,
            [hospital.id, centre.id],
        )

        assert ending_cash == {hospital.id: Decimal("4150")}

    def test_normalized_rows_read_amount(
        self, session, engine, project, facilities, periods, mapped_activity
    ):
        centre = facilities[1]
        activity = mapped_activity("HIV_EXEC_HEALTH_CENTER_D_1", "CASH_EQUIVALENTS_END")
        session.add(
            FormDataEntry(
                project_id=project.id,
                facility_id=centre.id,
                reporting_period_id=periods["previous"].id,
                entity_type="execution",
                entity_id=activity.id,
                form_data={"amount": "820"},
            )
        )
        session.flush()

        ending_cash = engine.collect_ending_cash(
            DataFilters(project_id=project.id, reporting_period_id=periods["current"].id),
            periods["previous"].id,
            [centre.id],
        )

        assert ending_cash == {centre.id: Decimal("820")}


class TestShapeAndPriority:
    @pytest.mark.parametrize(
        "activities, expected",
        [
            ({"12": {"total_budget": 1}}, ActivitiesShape.BUDGET),
            ({"HIV_EXEC_HOSPITAL_A_1": {"q1": 1}}, ActivitiesShape.ACTUALS),
            ([{"code": "X"}], ActivitiesShape.ACTUALS),
            ({}, ActivitiesShape.UNKNOWN),
            (None, ActivitiesShape.UNKNOWN),
            ("activities", ActivitiesShape.UNKNOWN),
        ],
    )
    def test_detect_activities_shape(self, activities, expected):
        assert detect_activities_shape(activities) is expected

    def test_prioritize_data_sources(self):
        entries = [
            _entry("TAX_REVENUE", 1, 900, EntityType.PLANNING),
            _entry("TAX_REVENUE", 1, 1000),
            _entry("TAX_REVENUE", 1, 50),
            _entry("TAX_REVENUE", 2, 400, EntityType.PLANNING),
            _entry("GRANTS", 1, 30, EntityType.PLANNING),
        ]
        kept = prioritize_data_sources(entries)
        assert [(e.event_code, e.facility_id, e.amount) for e in kept] == [
            ("TAX_REVENUE", 1, Decimal("1000")),
            ("TAX_REVENUE", 1, Decimal("50")),
            ("TAX_REVENUE", 2, Decimal("400")),
            ("GRANTS", 1, Decimal("30")),
        ]


class TestFacilitiesAndPeriods:
    def test_facility_info_with_placeholder(self, engine, facilities, periods, add_amount):
        hospital, centre = facilities
        add_amount("TAX_REVENUE", "1000", hospital, periods["current"])

        info = engine.get_facility_info([hospital.id, centre.id, 9999])

        assert info[hospital.id].name == "Kigali Hospital"
        assert info[hospital.id].has_data
        assert info[centre.id].district == "Bugesera"
        assert not info[centre.id].has_data
        assert info[9999].name == "Facility 9999"
        assert info[9999].facility_type == "Unknown"
        assert engine.get_facility_info([]) == {}

    def test_validate_facility_access(self, engine, project, facilities):
        result = engine.validate_facility_access([facilities[0].id, 9999], project.id)
        assert result.valid_facilities == (facilities[0].id,)
        assert result.invalid_facilities == (9999,)
        assert result.errors == ("Facility 9999 does not exist",)

    def test_missing_facility_data(self):
        report = DataAggregationEngine.handle_missing_facility_data([1, 2, 3], [2])
        assert report.facilities_without_data == (1, 3)
        assert report.warnings == ("2 facilities have no data: 1, 3",)
        assert report.should_continue

    def test_no_facility_has_data(self):
        report = DataAggregationEngine.handle_missing_facility_data([1, 2], [])
        assert report.warnings == (
            "2 facilities have no data: 1, 2",
            "No facilities have data for the specified criteria",
        )
        assert not report.should_continue

    def test_period_info(self, engine, periods):
        info = engine.get_period_info(periods["current"].id)
        assert info == ReportingPeriodInfo(
            year=2025,
            period_type="ANNUAL",
            start_date=date(2024, 7, 1),
            end_date=date(2025, 6, 30),
        )
        assert engine.get_period_info(9999) is None


class TestVarianceAnalysis:
    def setup_method(self):
        self.current = {"A": Decimal("150"), "B": Decimal("50"), "C": Decimal("100")}
        self.previous = {"A": Decimal("100"), "B": Decimal("100"), "C": Decimal("100")}

    def test_comparison_and_analysis(self, engine):
        current = aggregate_entries([_entry(k, 1, v) for k, v in self.current.items()])
        previous = aggregate_entries([_entry(k, 1, v) for k, v in self.previous.items()])

        comparison = engine.calculate_period_comparisons(current, previous)
        assert comparison.variances["A"].percentage == Decimal("50.00")
        assert comparison.variances["C"].trend is Trend.STABLE

        analysis = engine.get_variance_analysis(comparison)
        assert [item.event_code for item in analysis.significant_variances] == ["A", "B"]
        assert [code for code, _ in analysis.top_increases] == ["A"]
        assert [code for code, _ in analysis.top_decreases] == ["B"]
        assert analysis.summary.total_variances == 3

    def test_format_for_display(self):
        display = DataAggregationEngine.format_variance_for_display(Decimal("120"), Decimal("100"))
        assert display.variance.absolute == Decimal("20")
        assert display.variance.trend is Trend.INCREASE
