"""The packaged seed templates must be usable as shipped."""

from decimal import Decimal

import pytest

from statement_config.loader import load_seed_templates
from statement_engines.formula import FormulaContext, FormulaEngine
from statement_kernel.domain.statement import ColumnType, StatementCode
from statement_services.template_loader import validate_template

SEEDS = load_seed_templates()


class TestSeedTemplates:
    def test_every_statement_code_has_a_seed(self):
        assert set(SEEDS) == set(StatementCode)

    @pytest.mark.parametrize("code", list(StatementCode))
    def test_seed_validates(self, code):
        result = validate_template(SEEDS[code])
        assert result.is_valid, result.errors

    @pytest.mark.parametrize("code", list(StatementCode))
    def test_seed_has_no_formula_cycles(self, code):
        engine = FormulaEngine()
        graph = engine.build_dependency_graph(SEEDS[code].lines)
        assert engine.detect_cycles(graph) == []

    @pytest.mark.parametrize("code", [c for c in StatementCode if c is not StatementCode.NET_ASSETS])
    def test_formula_references_are_line_codes(self, code):
        template = SEEDS[code]
        engine = FormulaEngine()
        codes = set(template.line_codes)
        for line in template.lines:
            missing = set(engine.extract_dependencies(line.calculation_formula)) - codes
            assert not missing, f"{line.line_code} references {sorted(missing)}"

    def test_net_assets_seed_declares_column_types(self):
        template = SEEDS[StatementCode.NET_ASSETS]
        assert template.line("BALANCE_PERIOD_END").column_type is ColumnType.TOTAL
        assert template.line("BALANCE_JULY_CURRENT").column_type is ColumnType.ACCUMULATED

    def test_cash_flow_seed_uses_working_capital(self):
        template = SEEDS[StatementCode.CASH_FLOW]
        assert template.line("CHANGES_RECEIVABLES").calculation_formula == (
            "WORKING_CAPITAL_CHANGE(RECEIVABLES)"
        )

    def test_previous_year_surplus_reads_event_values(self):
        formula = SEEDS[StatementCode.NET_ASSETS].line("NET_SURPLUS_PREV_CURRENT").calculation_formula
        context = FormulaContext(
            line_values={},
            event_values={
                "TRANSFERS_PUBLIC_ENTITIES": Decimal("100"),
                "OTHER_REVENUE": Decimal("20"),
                "GOODS_SERVICES": Decimal("50"),
                "OTHER_EXPENSES": Decimal("10"),
            },
        )
        assert FormulaEngine().evaluate(formula, context) == Decimal("60")
