"""Tests for statement completeness checks."""

from decimal import Decimal

from statement_engines.completeness import check_completeness
from statement_kernel.domain.statement import LineFormatting, StatementCode
from tests.builders import make_document, make_statement_line


class TestCompleteness:
    def test_empty_statement(self):
        report = check_completeness(make_document(StatementCode.REV_EXP))
        assert not report.is_complete
        assert report.completion_percentage == Decimal("0")
        assert report.warnings == ("Statement is 0% complete",)

    def test_fully_populated(self):
        lines = (make_statement_line("A", "1"), make_statement_line("B", "-2"))
        report = check_completeness(make_document(StatementCode.REV_EXP, lines=lines))
        assert report.is_complete
        assert report.completion_percentage == Decimal("100")
        assert report.warnings == ()

    def test_partial_with_missing_totals(self):
        lines = (
            make_statement_line("A", "1"),
            make_statement_line("B", "0"),
            make_statement_line("TOTAL", "0", formatting=LineFormatting(is_total=True)),
        )
        report = check_completeness(make_document(StatementCode.BAL_SHEET, lines=lines))
        assert not report.is_complete
        assert report.completion_percentage == Decimal("33.33")
        assert report.missing_fields == ("TOTAL",)
        assert report.warnings == ("Statement is 33% complete",)

    def test_custom_threshold(self):
        lines = (make_statement_line("A", "1"), make_statement_line("B", "0"))
        report = check_completeness(
            make_document(StatementCode.REV_EXP, lines=lines), threshold=Decimal("50")
        )
        assert report.is_complete
