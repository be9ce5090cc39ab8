"""
Tests for the Line Processor.

Covers:
- Value resolution: formula over event mappings, event id fallback
- Shared line-value map across a batch
- Display conditions (expression, structured and hide_empty)
- Per-line error isolation
- Comparative values and variances
"""

from decimal import Decimal

from statement_engines.line_processor import ERROR_SUFFIX, EventLookup, LineProcessor
from statement_kernel.domain.statement import Trend
from statement_kernel.domain.template import (
    AggregationMethod,
    DisplayConditions,
    FieldCondition,
    LineFormatRules,
)
from tests.builders import decimals, make_line_template


def _events(values: dict, ids: dict | None = None) -> EventLookup:
    return EventLookup.from_totals(decimals(values), ids)


class TestEventLookup:
    def test_matches_code_then_id(self):
        events = _events({"TAX_REVENUE": 100}, {"TAX_REVENUE": 7})
        assert events.amount("TAX_REVENUE") == Decimal("100")
        assert events.amount(7) == Decimal("100")
        assert events.amount("7") == Decimal("100")

    def test_unknown_reference_is_none(self):
        assert _events({}).amount("GRANTS") is None

    def test_ids_without_totals_are_ignored(self):
        events = _events({"A": 1}, {"A": 1, "B": 2})
        assert events.amount(2) is None


class TestResolveValue:
    def setup_method(self):
        self.processor = LineProcessor()

    def test_event_mappings_are_summed(self):
        template = make_line_template("REV", event_mappings=("TAX_REVENUE", "GRANTS", "UNKNOWN"))
        events = _events({"TAX_REVENUE": "100.10", "GRANTS": "50.05"})
        assert self.processor.resolve_value(template, events, {}) == Decimal("150.15")

    def test_formula_wins_over_event_mappings(self):
        template = make_line_template(
            "REV", event_mappings=("TAX_REVENUE",), calculation_formula="A * 2"
        )
        events = _events({"TAX_REVENUE": 100})
        assert self.processor.resolve_value(template, events, decimals({"A": 3})) == Decimal("6")

    def test_line_without_source_is_zero(self):
        assert self.processor.resolve_value(make_line_template("X"), _events({}), {}) == Decimal("0")

    def test_formula_failure_yields_zero(self):
        template = make_line_template("RATIO", calculation_formula="A / B")
        values = decimals({"A": 1, "B": 0})
        assert self.processor.resolve_value(template, _events({}), values) == Decimal("0")

    def test_numeric_event_reference(self):
        template = make_line_template("REV", event_mappings=(12,))
        events = _events({"OTHER_REVENUE": 40}, {"OTHER_REVENUE": 12})
        assert self.processor.resolve_value(template, events, {}) == Decimal("40")

    def test_non_sum_aggregation_passes_value_through(self):
        template = make_line_template("AVG_LINE", aggregation_method=AggregationMethod.AVERAGE)
        assert self.processor.apply_aggregation_method(Decimal("9"), template) == Decimal("9")


class TestDisplayConditions:
    def setup_method(self):
        self.processor = LineProcessor()
        self.events = _events({"GRANTS": 0})

    def _visible(self, conditions, value="0", lines=None):
        return self.processor.evaluate_display_conditions(
            conditions, Decimal(value), decimals(lines or {}), self.events
        )

    def test_no_conditions_is_visible(self):
        assert self._visible(DisplayConditions())

    def test_hide_empty(self):
        assert not self._visible(DisplayConditions(hide_empty=True))
        assert self._visible(DisplayConditions(hide_empty=True), value="5")

    def test_show_when_expression(self):
        conditions = DisplayConditions(show_when="TOTAL_REVENUE > 0")
        assert not self._visible(conditions, lines={"TOTAL_REVENUE": 0})
        assert self._visible(conditions, lines={"TOTAL_REVENUE": 10})

    def test_hide_when_uses_own_value(self):
        conditions = DisplayConditions(hide_when="value == 0")
        assert not self._visible(conditions)
        assert self._visible(conditions, value="1")

    def test_template_logical_operators(self):
        conditions = DisplayConditions(show_when="A > 0 && B > 0")
        assert not self._visible(conditions, lines={"A": 1, "B": 0})
        assert self._visible(conditions, lines={"A": 1, "B": 2})

    def test_unknown_names_keep_line_visible(self):
        assert self._visible(DisplayConditions(show_when="NOT_A_LINE > 100"))

    def test_structured_condition(self):
        conditions = DisplayConditions(
            show_when=FieldCondition(field="CASH", operator=">=", value="100")
        )
        assert self._visible(conditions, lines={"CASH": 100})
        assert not self._visible(conditions, lines={"CASH": 99})

    def test_structured_equality_with_text(self):
        condition = FieldCondition(field="CASH", operator="==", value="n/a")
        assert not self.processor.evaluate_condition(
            condition, Decimal("0"), decimals({"CASH": 1}), self.events
        )

    def test_structured_string_operators(self):
        condition = FieldCondition(field="CASH", operator="startsWith", value="12")
        assert self.processor.evaluate_condition(
            condition, Decimal("0"), decimals({"CASH": "1250"}), self.events
        )

    def test_unknown_operator_is_satisfied(self):
        condition = FieldCondition(field="CASH", operator="~=", value=1)
        assert self.processor.evaluate_condition(condition, Decimal("0"), {}, self.events)


class TestProcessLines:
    def setup_method(self):
        self.processor = LineProcessor()

    def test_formula_lines_see_earlier_values(self):
        templates = [
            make_line_template("TAX", 10, event_mappings=("TAX_REVENUE",)),
            make_line_template("GRANTS", 20, event_mappings=("GRANTS",)),
            make_line_template("TOTAL", 30, calculation_formula="SUM(TAX, GRANTS)", is_total_line=True),
        ]
        result = self.processor.process_lines(templates, _events({"TAX_REVENUE": 70, "GRANTS": 30}))

        assert result.line_values["TOTAL"] == Decimal("100")
        assert result.formulas_calculated == 1
        total = result.lines[-1]
        assert total.metadata.is_computed
        assert total.metadata.formula == "SUM(TAX, GRANTS)"
        assert total.formatting.bold and total.formatting.is_total

    def test_lines_sorted_by_display_order(self):
        templates = [
            make_line_template("TOTAL", 30, calculation_formula="A"),
            make_line_template("A", 10, event_mappings=("A_EVENT",)),
        ]
        result = self.processor.process_lines(templates, _events({"A_EVENT": 5}))
        assert [line.line_code for line in result.lines] == ["A", "TOTAL"]

    def test_comparatives_and_variance(self):
        templates = [make_line_template("TAX", 10, event_mappings=("TAX_REVENUE",))]
        result = self.processor.process_lines(
            templates,
            _events({"TAX_REVENUE": 120}),
            previous_events=_events({"TAX_REVENUE": 100}),
        )
        line = result.lines[0]
        assert line.previous_period_value == Decimal("100")
        assert line.variance.absolute == Decimal("20")
        assert line.variance.percentage == Decimal("20.00")
        assert line.variance.trend is Trend.INCREASE
        assert result.previous_line_values == {"TAX": Decimal("100")}

    def test_no_previous_period_means_no_variance(self):
        templates = [make_line_template("TAX", 10, event_mappings=("TAX_REVENUE",))]
        line = self.processor.process_lines(templates, _events({"TAX_REVENUE": 1})).lines[0]
        assert line.variance is None
        assert line.previous_period_value == Decimal("0")

    def test_hidden_lines_only_when_zero(self):
        templates = [
            make_line_template(
                "EMPTY", 10, event_mappings=("NONE",),
                display_conditions=DisplayConditions(hide_empty=True),
            ),
            make_line_template(
                "FILLED", 20, event_mappings=("TAX_REVENUE",),
                display_conditions=DisplayConditions(show_when="1 == 2"),
            ),
        ]
        result = self.processor.process_lines(templates, _events({"TAX_REVENUE": 5}))
        assert [line.line_code for line in result.visible_lines] == ["FILLED"]
        assert result.lines[0].metadata.is_hidden

    def test_failing_line_becomes_error_line(self):
        templates = [
            make_line_template("GOOD", 10, event_mappings=("TAX_REVENUE",)),
            make_line_template("BAD", 20, event_mappings=("BROKEN",)),
            make_line_template("AFTER", 30, calculation_formula="GOOD + BAD"),
        ]
        events = EventLookup(by_code={"TAX_REVENUE": Decimal("10"), "BROKEN": "not a number"})
        result = self.processor.process_lines(templates, events)

        bad = result.lines[1]
        assert bad.description.endswith(ERROR_SUFFIX)
        assert bad.metadata.has_error
        assert bad.current_period_value == Decimal("0")
        assert result.errors[0].startswith("Line BAD:")
        assert result.line_values["AFTER"] == Decimal("10")

    def test_format_rules_carry_through(self):
        templates = [
            make_line_template(
                "SECTION", 10,
                formatting=LineFormatRules(is_section=True, italic=True, indent_level=0),
                is_subtotal_line=True,
            )
        ]
        line = self.processor.process_lines(templates, _events({})).lines[0]
        assert line.formatting.is_section
        assert line.formatting.italic
        assert line.formatting.is_subtotal
        assert line.formatting.indent_level == 0

    def test_compute_values_does_not_build_lines(self):
        templates = [
            make_line_template("A", 10, event_mappings=("X",)),
            make_line_template("B", 20, calculation_formula="A * 3"),
        ]
        values = self.processor.compute_values(templates, _events({"X": 2}))
        assert values == {"A": Decimal("2"), "B": Decimal("6")}
