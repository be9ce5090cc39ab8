"""
Tests for beginning cash carry-forward.

Covers:
- Ending cash from section D cash accounts
- No previous period, with and without a manual entry
- Single facility carry-forward, override and fallback
- Multi-facility aggregation and missing-data warnings
"""

from decimal import Decimal

from statement_engines.carryforward import (
    ending_cash_from_activities,
    resolve_beginning_cash,
)
from statement_engines.stock_flow import ExecutionActivity
from statement_kernel.domain.statement import CarryforwardSource


def _activity(code, cumulative_balance=None, **values):
    return ExecutionActivity.from_mapping(
        {"code": code, "cumulative_balance": cumulative_balance, **values}
    )


class TestEndingCash:
    def test_sums_cash_accounts(self):
        activities = [
            _activity("HIV_EXEC_HOSPITAL_D_1", "1200.50"),
            _activity("HIV_EXEC_HOSPITAL_D_2", 300),
            _activity("HIV_EXEC_HOSPITAL_D_3", 100),
        ]
        assert ending_cash_from_activities(activities) == Decimal("1600.50")

    def test_other_accounts_are_ignored(self):
        activities = [
            _activity("HIV_EXEC_HOSPITAL_D_4", 999),
            _activity("HIV_EXEC_HOSPITAL_E_1", 50),
            _activity("HIV_EXEC_HOSPITAL_A_1", None, q1=70),
            _activity("HIV_PLAN_HOSPITAL_D_1", 40),
        ]
        assert ending_cash_from_activities(activities) == Decimal("0")

    def test_lowercase_code_and_missing_balance(self):
        activities = [
            _activity("hiv_exec_hospital_d_1", 80),
            _activity("HIV_EXEC_HOSPITAL_D_2"),
        ]
        assert ending_cash_from_activities(activities) == Decimal("80")

    def test_later_row_for_same_account_wins(self):
        activities = [
            _activity("HIV_EXEC_HOSPITAL_D_1", 10),
            _activity("HIV_EXEC_HOSPITAL_D_1", 25),
        ]
        assert ending_cash_from_activities(activities) == Decimal("25")


class TestNoPreviousPeriod:
    def test_manual_entry_is_used(self):
        result = resolve_beginning_cash(Decimal("750"), None, {}, facility_ids=(1,))

        assert result.success
        assert result.source is CarryforwardSource.MANUAL_ENTRY
        assert result.beginning_cash == Decimal("750")
        assert result.manual_entry_amount == Decimal("750")
        assert result.warnings == ("No previous period found. Using manual entry.",)

    def test_without_manual_entry_falls_back_to_zero(self):
        result = resolve_beginning_cash(Decimal("0"), None, {}, facility_ids=(1,))

        assert not result.success
        assert result.source is CarryforwardSource.FALLBACK
        assert result.beginning_cash == Decimal("0")
        assert result.error == "No previous period found"
        assert result.warnings == ("No previous period found and no manual entry available.",)


class TestSingleFacility:
    def test_previous_ending_cash_is_carried(self):
        result = resolve_beginning_cash(Decimal("0"), 4, {1: Decimal("5000")}, facility_ids=(1,))

        assert result.success
        assert result.is_carried_forward
        assert result.source is CarryforwardSource.CARRYFORWARD
        assert result.beginning_cash == Decimal("5000")
        assert result.previous_period_id == 4
        assert result.previous_period_ending_cash == Decimal("5000")
        assert result.warnings == ()

    def test_manual_entry_within_tolerance(self):
        result = resolve_beginning_cash(
            Decimal("5000.01"), 4, {1: Decimal("5000")}, facility_ids=(1,)
        )

        assert result.source is CarryforwardSource.MANUAL_ENTRY
        assert result.beginning_cash == Decimal("5000.01")
        assert result.discrepancy == Decimal("0")
        assert result.warnings == ()

    def test_manual_entry_override_reports_discrepancy(self):
        result = resolve_beginning_cash(Decimal("4500"), 4, {1: Decimal("5000")}, facility_ids=(1,))

        assert result.source is CarryforwardSource.MANUAL_ENTRY
        assert result.beginning_cash == Decimal("4500")
        assert result.discrepancy == Decimal("-500")
        assert result.warnings == (
            "Beginning cash override detected: Manual entry (4500.00) differs from "
            "previous period ending cash (5000.00) by 500.00. Using manual entry value.",
        )

    def test_no_ending_cash_uses_manual_entry(self):
        result = resolve_beginning_cash(Decimal("300"), 4, {}, facility_ids=(1,))

        assert result.success
        assert result.source is CarryforwardSource.MANUAL_ENTRY
        assert result.beginning_cash == Decimal("300")
        assert result.warnings == (
            "No previous period ending cash found from execution data. Using manual entry.",
        )

    def test_no_ending_cash_and_no_manual_entry(self):
        result = resolve_beginning_cash(Decimal("0"), 4, {1: Decimal("0")}, facility_ids=(1,))

        assert not result.success
        assert result.source is CarryforwardSource.FALLBACK
        assert result.beginning_cash == Decimal("0")
        assert result.warnings == (
            "Carryforward failed: No previous period ending cash found from execution data. "
            "No manual entry available, defaulting to zero.",
        )

    def test_no_facility_in_scope(self):
        result = resolve_beginning_cash(Decimal("0"), 4, {})

        assert result.source is CarryforwardSource.FALLBACK
        assert result.error == "No facility ID provided"

    def test_negative_manual_entry_counts_as_none(self):
        result = resolve_beginning_cash(Decimal("-20"), 4, {1: Decimal("900")}, facility_ids=(1,))

        assert result.source is CarryforwardSource.CARRYFORWARD
        assert result.beginning_cash == Decimal("900")


class TestMultipleFacilities:
    def setup_method(self):
        self.names = {1: "Kigali Hospital", 2: "Nyamata Health Centre", 3: "Rwamagana Hospital"}

    def test_ending_cash_is_aggregated(self):
        result = resolve_beginning_cash(
            Decimal("0"),
            4,
            {1: Decimal("1000"), 2: Decimal("250")},
            facility_ids=(1, 2),
            facility_names=self.names,
        )

        assert result.source is CarryforwardSource.CARRYFORWARD_AGGREGATED
        assert result.beginning_cash == Decimal("1250")
        assert [row.facility_name for row in result.facility_breakdown] == [
            "Kigali Hospital",
            "Nyamata Health Centre",
        ]
        assert result.facilities_with_missing_data == ()
        assert result.warnings == ()

    def test_partial_data_is_reported(self):
        result = resolve_beginning_cash(
            Decimal("0"),
            4,
            {1: Decimal("1000")},
            facility_ids=(1, 2, 3),
            facility_names=self.names,
        )

        assert result.beginning_cash == Decimal("1000")
        assert result.facilities_with_missing_data == (2, 3)
        assert result.warnings == (
            "Missing previous period statements for 2 out of 3 facilities: "
            "Nyamata Health Centre (ID: 2), Rwamagana Hospital (ID: 3)",
        )

    def test_no_data_for_any_facility(self):
        result = resolve_beginning_cash(Decimal("0"), 4, {}, facility_ids=(1, 2))

        assert result.success
        assert result.source is CarryforwardSource.CARRYFORWARD_AGGREGATED
        assert result.beginning_cash == Decimal("0")
        assert result.warnings == (
            "No previous period data available for any of the 2 facilities. "
            "This is expected for the first reporting period.",
            "Previous period ending cash is zero. This may indicate missing data or a new account.",
        )
        assert [row.facility_name for row in result.facility_breakdown] == [
            "Facility 1",
            "Facility 2",
        ]

    def test_manual_entry_overrides_aggregate(self):
        result = resolve_beginning_cash(
            Decimal("2000"),
            4,
            {1: Decimal("1000"), 2: Decimal("250")},
            facility_ids=(1, 2),
        )

        assert result.source is CarryforwardSource.MANUAL_ENTRY
        assert result.previous_period_ending_cash == Decimal("1250")
        assert result.discrepancy == Decimal("750")
        assert len(result.facility_breakdown) == 2
