"""
Tests for stock vs flow section rules of execution activities.
"""

from decimal import Decimal

import pytest

from statement_engines.stock_flow import (
    ExecutionActivity,
    SectionType,
    calculate_section_amount,
    extract_section_from_code,
    get_section_info,
    is_accumulated_surplus_item,
    section_of,
    should_include_amount,
    validate_activity_data,
)


class TestSectionExtraction:
    @pytest.mark.parametrize(
        "code,section",
        [
            ("HIV_EXEC_HOSPITAL_D_1", "D"),
            ("MAL_EXEC_HEALTH_CENTER_A_2", "A"),
            ("TB_EXEC_HOSPITAL_G_1", "G"),
            ("HIV_PLAN_HOSPITAL_D_1", None),
            ("HIV_EXEC_HOSPITAL", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract(self, code, section):
        assert extract_section_from_code(code) == section


class TestSectionAmount:
    def test_flow_section_sums_quarters(self):
        activity = ExecutionActivity.from_mapping(
            {"code": "HIV_EXEC_HOSPITAL_B_1", "q1": 10, "q2": "20.5", "q3": None, "q4": 4.5}
        )
        assert calculate_section_amount(activity) == Decimal("35.0")

    def test_stock_section_uses_cumulative_balance(self):
        activity = ExecutionActivity.from_mapping(
            {"code": "HIV_EXEC_HOSPITAL_D_1", "q1": 10, "q2": 20, "cumulative_balance": 700}
        )
        assert calculate_section_amount(activity) == Decimal("700")

    def test_code_section_wins_over_mislabelled_sub_section(self):
        activity = ExecutionActivity.from_mapping(
            {"code": "HIV_EXEC_HOSPITAL_B_1", "q1": 1, "q2": 2, "cumulative_balance": 9, "subSection": "D"}
        )
        assert section_of(activity) == "B"
        assert calculate_section_amount(activity) == Decimal("3")

    def test_sub_section_used_when_code_has_no_section(self):
        activity = ExecutionActivity.from_mapping(
            {"code": "LEGACY_CASH_AT_BANK", "q1": 1, "cumulative_balance": 9, "subSection": "E"}
        )
        assert section_of(activity) == "E"
        assert calculate_section_amount(activity) == Decimal("9")

    def test_accumulated_surplus_uses_q1(self):
        activity = ExecutionActivity.from_mapping(
            {"code": "HIV_EXEC_HOSPITAL_G_1", "name": "Accumulated surplus/deficit", "q1": 400, "q2": 50}
        )
        assert calculate_section_amount(activity) == Decimal("400")

    def test_accumulated_surplus_falls_back_to_cumulative(self):
        activity = ExecutionActivity.from_mapping(
            {"code": "HIV_EXEC_HOSPITAL_G_1", "name": "Accumulated Surplus", "cumulative_balance": 90}
        )
        assert calculate_section_amount(activity) == Decimal("90")

    def test_prior_year_adjustment_is_a_flow(self):
        activity = ExecutionActivity.from_mapping(
            {"code": "HIV_EXEC_HOSPITAL_G_G-01_1", "name": "Prior year adjustment", "q1": 5, "q2": 5}
        )
        assert not is_accumulated_surplus_item(activity.code, activity.name)
        assert calculate_section_amount(activity) == Decimal("10")

    def test_code_from_key(self):
        activity = ExecutionActivity.from_mapping({"q1": 1}, code="HIV_EXEC_HOSPITAL_A_1")
        assert activity.code == "HIV_EXEC_HOSPITAL_A_1"


class TestInclusion:
    def test_zero_stock_is_kept(self):
        assert should_include_amount(Decimal("0"), "D")

    def test_zero_flow_is_dropped(self):
        assert not should_include_amount(Decimal("0"), "A")
        assert should_include_amount(Decimal("-3"), "A")


class TestActivityValidation:
    def test_stock_without_cumulative_balance(self):
        activity = ExecutionActivity.from_mapping({"code": "HIV_EXEC_HOSPITAL_E_2", "q1": 1})
        assert validate_activity_data(activity) == [
            "Stock section activity HIV_EXEC_HOSPITAL_E_2 missing cumulative_balance"
        ]

    def test_flow_without_quarters(self):
        activity = ExecutionActivity.from_mapping({"code": "HIV_EXEC_HOSPITAL_A_2"})
        assert validate_activity_data(activity) == [
            "Flow section activity HIV_EXEC_HOSPITAL_A_2 has no quarterly data"
        ]

    def test_heuristic_disagreement_is_reported(self):
        activity = ExecutionActivity.from_mapping(
            {"code": "HIV_EXEC_HOSPITAL_X_3", "name": "Accumulated deficit", "q1": 1}
        )
        warnings = validate_activity_data(activity)
        assert len(warnings) == 1
        assert "classified as accumulated surplus/deficit by name only" in warnings[0]


class TestSectionInfo:
    def test_stock(self):
        info = get_section_info("D")
        assert info.section_type is SectionType.STOCK
        assert info.name == "Financial Assets"

    def test_computed_flow(self):
        info = get_section_info("C")
        assert info.section_type is SectionType.FLOW
        assert info.is_computed

    def test_unknown(self):
        assert get_section_info("Q").name == "Unknown section"
