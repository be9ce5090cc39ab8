"""
End-to-end statement generation over the packaged seed templates.

Each test stores normalized form rows through the ``add_amount`` fixture
and generates one statement against the test database.
"""

from decimal import Decimal

import pytest

from statement_config.config import StatementEngineConfig
from statement_kernel.domain.events import EntityType
from statement_kernel.domain.statement import CarryforwardSource, StatementCode
from statement_kernel.exceptions import PeriodNotFoundError, UnsupportedStatementError
from statement_kernel.models import FormDataEntry
from statement_services.statement_generator import (
    StatementGenerationRequest,
    StatementGenerator,
)


@pytest.fixture
def generator(session, deterministic_clock):
    return StatementGenerator(session, clock=deterministic_clock)


@pytest.fixture
def add_execution_form(session, project):
    """Store a whole-form JSON execution row."""

    def _add(activities, facility, period) -> FormDataEntry:
        entry = FormDataEntry(
            project_id=project.id,
            facility_id=facility.id,
            reporting_period_id=period.id,
            entity_type="execution",
            entity_id=None,
            form_data={"activities": activities},
        )
        session.add(entry)
        session.flush()
        return entry

    return _add


def _request(code, project, period, **kwargs) -> StatementGenerationRequest:
    return StatementGenerationRequest(
        statement_code=code,
        reporting_period_id=period.id,
        project_id=project.id,
        **kwargs,
    )


class TestGenerationRequest:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"reporting_period_id": 0},
            {"project_id": -1},
            {"facility_id": 0},
            {"facility_ids": (3, 0)},
        ],
    )
    def test_rejects_non_positive_ids(self, overrides):
        values = {"statement_code": "REV_EXP", "reporting_period_id": 1, "project_id": 1}
        values.update(overrides)
        with pytest.raises(ValueError):
            StatementGenerationRequest(**values)


class TestRevenueExpenditureGeneration:
    def test_totals_and_comparatives(
        self, generator, project, facilities, periods, add_amount, deterministic_clock
    ):
        hospital = facilities[0]
        add_amount("TAX_REVENUE", "1000", hospital, periods["current"])
        add_amount("GRANTS", "500", hospital, periods["current"])
        add_amount("COMPENSATION_EMPLOYEES", "600", hospital, periods["current"])
        add_amount("TAX_REVENUE", "800", hospital, periods["previous"])

        document = generator.generate(
            _request(StatementCode.REV_EXP, project, periods["current"])
        )

        assert document.statement_code is StatementCode.REV_EXP
        assert document.total("TOTAL_REVENUE") == Decimal("1500")
        assert document.total("TOTAL_EXPENSES") == Decimal("600")
        assert document.total("NET_SURPLUS_DEFICIT") == Decimal("900")

        tax = document.line("TAX_REVENUE")
        assert tax.current_period_value == Decimal("1000")
        assert tax.previous_period_value == Decimal("800")
        assert document.line("BORROWINGS_RECEIVED") is None

        assert document.generated_date == deterministic_clock.now()
        assert document.reporting_period.year == 2025
        assert document.metadata.previous_period_id == periods["previous"].id
        assert document.metadata.project.code == "HIV-01"
        assert document.metadata.facilities_included == (hospital.id,)
        assert document.metadata.performance.events_processed == 4

        assert document.validation_results.errors == ()
        assert document.is_valid

    def test_lines_follow_display_order(self, generator, project, facilities, periods, add_amount):
        add_amount("TAX_REVENUE", "1000", facilities[0], periods["current"])
        document = generator.generate(_request("REV_EXP", project, periods["current"]))

        orders = [line.metadata.display_order for line in document.lines]
        assert orders == sorted(orders)

    def test_without_comparatives(self, generator, project, facilities, periods, add_amount):
        add_amount("TAX_REVENUE", "1000", facilities[0], periods["current"])
        add_amount("TAX_REVENUE", "800", facilities[0], periods["previous"])

        document = generator.generate(
            _request("REV_EXP", project, periods["current"], include_comparatives=False)
        )
        assert document.line("TAX_REVENUE").previous_period_value == Decimal("0")

    def test_facility_scope(self, generator, project, facilities, periods, add_amount):
        hospital, centre = facilities
        add_amount("TAX_REVENUE", "1000", hospital, periods["current"])
        add_amount("TAX_REVENUE", "250", centre, periods["current"])

        document = generator.generate(
            _request("REV_EXP", project, periods["current"], facility_id=centre.id)
        )
        assert document.total("TOTAL_REVENUE") == Decimal("250")
        assert document.metadata.facility.name == "Nyamata Health Centre"

    def test_custom_mappings_replace_line_events(
        self, generator, project, facilities, periods, add_amount
    ):
        add_amount("GRANTS", "500", facilities[0], periods["current"])

        document = generator.generate(
            _request(
                "REV_EXP",
                project,
                periods["current"],
                custom_mappings={"OTHER_REVENUE": ("GRANTS",)},
            )
        )
        assert document.line("OTHER_REVENUE").current_period_value == Decimal("500")
        assert document.line("GRANTS").current_period_value == Decimal("500")

    def test_generation_is_logged_with_correlation_id(
        self, generator, project, facilities, periods, add_amount, captured_logs
    ):
        add_amount("TAX_REVENUE", "1000", facilities[0], periods["current"])

        generator.generate(
            _request("REV_EXP", project, periods["current"], correlation_id="run-42")
        )

        records = captured_logs()
        started = [r for r in records if r["message"] == "statement_generation_started"]
        completed = [r for r in records if r["message"] == "statement_generation_completed"]
        assert len(started) == 1 and len(completed) == 1
        assert started[0]["correlation_id"] == "run-42"
        assert completed[0]["statement_code"] == "REV_EXP"
        assert completed[0]["is_valid"] is True

    def test_to_dict(self, generator, project, facilities, periods, add_amount):
        add_amount("TAX_REVENUE", "1000", facilities[0], periods["current"])
        rendered = generator.generate(_request("REV_EXP", project, periods["current"])).to_dict()

        assert rendered["statementCode"] == "REV_EXP"
        assert Decimal(rendered["totals"]["TOTAL_REVENUE"]) == Decimal("1000")
        assert rendered["validationResults"]["isValid"] is True

    def test_repeatable(self, generator, project, facilities, periods, add_amount):
        add_amount("TAX_REVENUE", "1000", facilities[0], periods["current"])
        request = _request("REV_EXP", project, periods["current"])

        first = generator.generate(request)
        second = generator.generate(request)
        assert first.lines == second.lines
        assert first.totals == second.totals
        assert first.validation_results == second.validation_results


class TestGenerationFailures:
    def test_unknown_period(self, generator, project):
        request = StatementGenerationRequest(
            statement_code="REV_EXP", reporting_period_id=9999, project_id=project.id
        )
        with pytest.raises(PeriodNotFoundError):
            generator.generate(request)

    def test_unsupported_statement(self, generator, project, periods):
        with pytest.raises(UnsupportedStatementError):
            generator.generate(_request("INCOME_STATEMENT", project, periods["current"]))


class TestBudgetVsActualGeneration:
    def test_budget_from_planning_actuals_from_execution(
        self, generator, project, facilities, periods, add_amount
    ):
        hospital = facilities[0]
        add_amount("TAX_REVENUE", "1000", hospital, periods["current"], entity_type="planning")
        add_amount("TAX_REVENUE", "900", hospital, periods["current"], entity_type="execution")
        add_amount("GOODS_SERVICES", "400", hospital, periods["current"], entity_type="planning")

        document = generator.generate(
            _request(StatementCode.BUDGET_VS_ACTUAL, project, periods["current"])
        )

        tax = document.line("TAX_REVENUE")
        assert tax.current_period_value == Decimal("900")
        assert tax.budget_value == Decimal("1000")

        goods = document.line("GOODS_SERVICES")
        assert goods.current_period_value == Decimal("0")
        assert goods.budget_value == Decimal("400")

        assert document.total("TOTAL_REVENUE") == Decimal("900")
        assert document.total("BUDGET_REVENUE") == Decimal("1000")


class TestCashFlowGeneration:
    def test_working_capital_changes(self, generator, project, facilities, periods, add_amount):
        hospital = facilities[0]
        add_amount("TAX_REVENUE", "1000", hospital, periods["current"])
        add_amount("RECEIVABLES_EXCHANGE", "300", hospital, periods["current"])
        add_amount("RECEIVABLES_EXCHANGE", "200", hospital, periods["previous"])
        add_amount("PAYABLES", "150", hospital, periods["current"])
        add_amount("PAYABLES", "100", hospital, periods["previous"])

        document = generator.generate(_request("CASH_FLOW", project, periods["current"]))

        working_capital = document.metadata.working_capital
        assert working_capital.receivables.change == Decimal("100")
        assert working_capital.receivables.cash_flow_adjustment == Decimal("-100")
        assert working_capital.payables.cash_flow_adjustment == Decimal("50")
        assert working_capital.previous_period_id == periods["previous"].id

        assert document.line("CHANGES_RECEIVABLES").current_period_value == Decimal("-100")
        assert document.line("CHANGES_PAYABLES").current_period_value == Decimal("50")

    def test_missing_previous_period_warns(self, generator, project, facilities, periods, add_amount):
        add_amount("TAX_REVENUE", "1000", facilities[0], periods["previous"])

        document = generator.generate(_request("CASH_FLOW", project, periods["previous"]))

        assert document.metadata.working_capital.previous_period_id is None
        assert (
            "No previous period found. Using zero as baseline for previous period balances."
            in document.validation_results.warnings
        )


class TestBeginningCashCarryforward:
    def test_previous_ending_cash_becomes_beginning_cash(
        self, generator, project, facilities, periods, add_amount, add_execution_form
    ):
        hospital = facilities[0]
        add_amount("TAX_REVENUE", "1000", hospital, periods["current"])
        add_execution_form(
            {
                "HIV_EXEC_HOSPITAL_D_1": {"cumulative_balance": "5000"},
                "HIV_EXEC_HOSPITAL_D_2": {"cumulative_balance": "250"},
                "HIV_EXEC_HOSPITAL_B_1": {"q1": 10},
            },
            hospital,
            periods["previous"],
        )

        document = generator.generate(_request("CASH_FLOW", project, periods["current"]))

        carryforward = document.metadata.carryforward
        assert carryforward.source is CarryforwardSource.CARRYFORWARD
        assert carryforward.previous_period_id == periods["previous"].id
        assert carryforward.beginning_cash == Decimal("5250")
        assert document.line("CASH_BEGINNING").current_period_value == Decimal("5250")

    def test_manual_entry_overrides_previous_ending_cash(
        self, generator, project, facilities, periods, add_amount, add_execution_form
    ):
        hospital = facilities[0]
        add_amount("CASH_EQUIVALENTS_BEGIN", "5000", hospital, periods["current"])
        add_execution_form(
            {"HIV_EXEC_HOSPITAL_D_1": {"cumulative_balance": "4000"}},
            hospital,
            periods["previous"],
        )

        document = generator.generate(_request("CASH_FLOW", project, periods["current"]))

        carryforward = document.metadata.carryforward
        assert carryforward.source is CarryforwardSource.MANUAL_ENTRY
        assert carryforward.discrepancy == Decimal("1000")
        assert document.line("CASH_BEGINNING").current_period_value == Decimal("5000")
        assert any(
            w.startswith("Beginning cash override detected: Manual entry (5000.00)")
            for w in document.validation_results.warnings
        )

    def test_first_period_without_manual_entry_falls_back_to_zero(
        self, generator, project, facilities, periods, add_amount
    ):
        add_amount("TAX_REVENUE", "1000", facilities[0], periods["previous"])

        document = generator.generate(_request("CASH_FLOW", project, periods["previous"]))

        carryforward = document.metadata.carryforward
        assert carryforward.source is CarryforwardSource.FALLBACK
        assert not carryforward.success
        assert carryforward.beginning_cash == Decimal("0")
        assert (
            "No previous period found and no manual entry available."
            in document.validation_results.warnings
        )

    def test_other_statements_carry_no_beginning_cash(
        self, generator, project, facilities, periods, add_amount
    ):
        add_amount("TAX_REVENUE", "1000", facilities[0], periods["current"])

        document = generator.generate(_request("REV_EXP", project, periods["current"]))

        assert document.metadata.carryforward is None


class TestCrossStatementSurplus:
    def test_balance_sheet_reads_period_surplus(
        self, generator, project, facilities, periods, add_amount
    ):
        hospital = facilities[0]
        add_amount("TAX_REVENUE", "1000", hospital, periods["current"])
        add_amount("COMPENSATION_EMPLOYEES", "600", hospital, periods["current"])

        document = generator.generate(_request("BAL_SHEET", project, periods["current"]))

        assert document.line("SURPLUS_DEFICITS_PERIOD").current_period_value == Decimal("400")
        assert document.line("TOTAL_NET_ASSETS").current_period_value == Decimal("400")

    def test_configured_entity_types_and_template_currency(self, session, project, facilities, periods, add_amount):
        add_amount("TAX_REVENUE", "1000", facilities[0], periods["current"])
        generator = StatementGenerator(
            session,
            config=StatementEngineConfig(
                default_currency="USD", default_entity_types=(EntityType.EXECUTION,)
            ),
        )

        document = generator.generate(_request("REV_EXP", project, periods["current"]))
        assert document.metadata.currency == "FRW"
        assert document.metadata.data_sources == ("execution",)
