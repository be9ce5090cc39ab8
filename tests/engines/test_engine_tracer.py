"""Tests for the engine trace decorator and the injectable clock."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from statement_engines.tracer import input_fingerprint, traced_engine
from statement_engines.working_capital import calculate_working_capital
from statement_kernel.domain.clock import DeterministicClock, SystemClock
from statement_kernel.domain.statement import StatementCode


class TestEngineTracer:
    def test_decorated_engine_logs_trace(self, captured_logs):
        calculate_working_capital({"PAYABLES": Decimal("10")}, {}, previous_period_id=1)

        traces = [r for r in captured_logs() if r["message"] == "STATEMENT_ENGINE_TRACE"]
        assert len(traces) == 1
        assert traces[0]["engine_name"] == "working_capital"
        assert traces[0]["engine_version"] == "1.0"
        assert traces[0]["function"] == "calculate_working_capital"
        assert len(traces[0]["input_fingerprint"]) == 16

    def test_positional_and_keyword_arguments_fingerprint_alike(self, captured_logs):
        @traced_engine("sum", "1.0", fingerprint_fields=("a", "b"))
        def add(a, b=Decimal("0")):
            return a + b

        assert add(Decimal("1"), Decimal("2")) == Decimal("3")
        assert add(a=Decimal("1"), b=Decimal("2")) == Decimal("3")

        fingerprints = [
            r["input_fingerprint"]
            for r in captured_logs()
            if r["message"] == "STATEMENT_ENGINE_TRACE"
        ]
        assert len(fingerprints) == 2
        assert fingerprints[0] == fingerprints[1]

    def test_fingerprint_normalizes_values(self):
        first = input_fingerprint(
            {"totals": {"B": Decimal("1.50"), "A": Decimal("2")}, "code": StatementCode.CASH_FLOW},
            ("totals", "code"),
        )
        second = input_fingerprint(
            {"code": "CASH_FLOW", "totals": {"A": Decimal("2.0"), "B": Decimal("1.5")}},
            ("totals", "code"),
        )
        assert first == second

    def test_fingerprint_changes_with_input(self):
        assert input_fingerprint({"a": 1}, ("a",)) != input_fingerprint({"a": 2}, ("a",))

    def test_missing_field_is_null(self):
        assert input_fingerprint({}, ("a",)) == input_fingerprint({"a": None}, ("a",))

    def test_mixed_key_types(self):
        fingerprint = input_fingerprint({"cash": {1: Decimal("5"), 2: Decimal("0")}}, ("cash",))
        assert len(fingerprint) == 16


class TestClock:
    def test_deterministic_clock_is_frozen_until_advanced(self):
        start = datetime(2025, 7, 1, tzinfo=timezone.utc)
        clock = DeterministicClock(start)

        assert clock.now() == start
        assert clock.now() == start
        clock.advance(90)
        assert clock.now() == start + timedelta(seconds=90)

    def test_system_clock_is_utc(self):
        assert SystemClock().now().tzinfo is timezone.utc
