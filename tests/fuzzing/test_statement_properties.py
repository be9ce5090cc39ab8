"""
Property-based checks of the pure statement engines.

Properties:
- SUM formulas are additive over event values.
- Line variances satisfy absolute == current - previous with a consistent trend.
- Aggregations keep event, facility and overall totals equal.
- Prioritized entries never mix planning and execution for one event/facility.
- Three-column TOTAL lines strike accumulated + adjustments.
"""

from decimal import Decimal

from hypothesis import given, settings
from hypothesis import strategies as st

from statement_engines.formula import FormulaContext, FormulaEngine
from statement_engines.processors.net_assets import calculate_three_column_totals
from statement_engines.variance import calculate_line_variance
from statement_kernel.domain.events import EntityType, EventEntry
from statement_kernel.domain.statement import ColumnType, Trend
from statement_services.aggregation import aggregate_entries, prioritize_data_sources
from tests.builders import make_statement_line

amounts = st.decimals(
    min_value=Decimal("-1000000000"),
    max_value=Decimal("1000000000"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)

entries = st.builds(
    EventEntry,
    event_code=st.sampled_from(["TAX_REVENUE", "GRANTS", "GOODS_SERVICES", "PAYABLES"]),
    facility_id=st.integers(min_value=1, max_value=4),
    amount=amounts,
    entity_type=st.sampled_from(list(EntityType)),
    reporting_period_id=st.integers(min_value=1, max_value=2),
)


class TestFormulaProperties:
    @given(a=amounts, b=amounts, c=amounts)
    @settings(max_examples=200)
    def test_sum_is_additive(self, a, b, c):
        context = FormulaContext(line_values={}, event_values={"A": a, "B": b, "C": c})
        engine = FormulaEngine()
        assert engine.evaluate("SUM(A, B, C)", context) == a + b + c

    @given(a=amounts, b=amounts)
    def test_custom_difference(self, a, b):
        context = FormulaContext(line_values={"A": a, "B": b}, event_values={})
        assert FormulaEngine().evaluate("A - B", context) == a - b


class TestVarianceProperties:
    @given(current=amounts, previous=amounts)
    @settings(max_examples=300)
    def test_variance_identity(self, current, previous):
        variance = calculate_line_variance(current, previous)
        assert variance.absolute == current - previous
        if abs(variance.absolute) < Decimal("0.01"):
            assert variance.trend is Trend.STABLE
        elif variance.absolute > 0:
            assert variance.trend is Trend.INCREASE
        else:
            assert variance.trend is Trend.DECREASE
        if previous != 0 and variance.percentage != 0:
            assert (variance.percentage > 0) == (variance.absolute > 0)


class TestAggregationProperties:
    @given(items=st.lists(entries, max_size=30))
    @settings(max_examples=150)
    def test_totals_agree(self, items):
        aggregation = aggregate_entries(items, with_facility_breakdown=True)
        overall = sum((e.amount for e in items), Decimal("0"))
        assert sum(aggregation.event_totals.values(), Decimal("0")) == overall
        assert sum(aggregation.facility_totals.values(), Decimal("0")) == overall
        assert aggregation.metadata.total_amount == overall
        breakdown = sum(
            (sum(per.values(), Decimal("0")) for per in aggregation.facility_breakdown.values()),
            Decimal("0"),
        )
        assert breakdown == overall

    @given(items=st.lists(entries, max_size=30))
    @settings(max_examples=150)
    def test_priority_never_mixes_sources(self, items):
        kept = prioritize_data_sources(items)
        groups: dict[tuple[str, int], set[EntityType]] = {}
        for entry in kept:
            groups.setdefault((entry.event_code, entry.facility_id), set()).add(entry.entity_type)
        assert all(len(types) == 1 for types in groups.values())

        with_execution = {
            (e.event_code, e.facility_id) for e in items if e.entity_type is EntityType.EXECUTION
        }
        for key in with_execution:
            assert groups[key] == {EntityType.EXECUTION}


class TestThreeColumnProperties:
    @given(
        values=st.lists(
            st.tuples(st.sampled_from([ColumnType.ACCUMULATED, ColumnType.ADJUSTMENT]), amounts),
            min_size=1,
            max_size=12,
        )
    )
    def test_total_line_strikes_running_sums(self, values):
        lines = [
            make_statement_line(f"ITEM_{i}", value, display_order=i, column_type=column)
            for i, (column, value) in enumerate(values)
        ]
        lines.append(
            make_statement_line("CLOSING", display_order=len(values), column_type=ColumnType.TOTAL)
        )

        total_line = calculate_three_column_totals(lines)[-1]

        accumulated = sum(
            (v for c, v in values if c is ColumnType.ACCUMULATED), Decimal("0")
        )
        adjustments = sum((v for c, v in values if c is ColumnType.ADJUSTMENT), Decimal("0"))
        assert total_line.accumulated_surplus == accumulated
        assert total_line.adjustments == adjustments
        assert total_line.total == accumulated + adjustments
        assert total_line.current_period_value == accumulated + adjustments
