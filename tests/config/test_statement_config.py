"""Tests for StatementEngineConfig and the YAML loader."""

from decimal import Decimal

import pytest
import yaml

from statement_config.config import StatementEngineConfig
from statement_config.loader import (
    load_engine_config,
    load_template_file,
    parse_condition,
    parse_line_template,
    parse_statement_template,
)
from statement_kernel.domain.events import EntityType
from statement_kernel.domain.statement import ColumnType, StatementCode
from statement_kernel.domain.template import AggregationMethod, FieldCondition


class TestStatementEngineConfig:
    def test_defaults(self):
        config = StatementEngineConfig.with_defaults()
        assert config.balance_tolerance == Decimal("0.01")
        assert config.template_cache_ttl_seconds == 60
        assert config.default_currency == "FRW"
        assert config.default_entity_types == (EntityType.PLANNING, EntityType.EXECUTION)
        assert config.significant_imbalance == Decimal("100")

    def test_from_dict_coerces_amounts(self):
        config = StatementEngineConfig.from_dict(
            {"balance_tolerance": "0.5", "default_entity_types": ["execution"]}
        )
        assert config.balance_tolerance == Decimal("0.5")
        assert config.default_entity_types == (EntityType.EXECUTION,)

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValueError, match="Unknown statement engine config keys: colour"):
            StatementEngineConfig.from_dict({"colour": "blue"})

    @pytest.mark.parametrize(
        "overrides",
        [
            {"balance_tolerance": "-1"},
            {"template_cache_ttl_seconds": -5},
            {"default_currency": "RWFX"},
            {"default_entity_types": ()},
            {"max_formula_dependencies": 0},
            {"completeness_threshold": "120"},
            {"significant_imbalance": "0.001"},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ValueError):
            StatementEngineConfig(**overrides)

    def test_unknown_entity_type(self):
        with pytest.raises(ValueError):
            StatementEngineConfig(default_entity_types=("forecast",))

    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text(
            yaml.safe_dump(
                {"statement_engine": {"default_currency": "USD", "significant_imbalance": 250}}
            )
        )
        config = load_engine_config(path)
        assert config.default_currency == "USD"
        assert config.significant_imbalance == Decimal("250")


class TestParseLineTemplate:
    def test_minimal_line(self):
        line = parse_line_template({"line_code": "TAX_REVENUE", "display_order": 20})
        assert line.description == ""
        assert line.event_mappings == ()
        assert line.calculation_formula is None
        assert line.aggregation_method is AggregationMethod.SUM
        assert line.level == 1
        assert line.formatting.indent_level == 1

    def test_required_fields(self):
        with pytest.raises(KeyError):
            parse_line_template({"line_code": "TAX_REVENUE"})

    def test_row_layout_with_camel_case_keys(self):
        line = parse_line_template(
            {
                "line_code": "CASH",
                "line_item": "Cash and cash equivalents",
                "display_order": 10,
                "level": 2,
                "is_total_line": True,
                "event_mappings": ["CASH_EQUIVALENTS", 14],
                "calculation_formula": "   ",
                "aggregation_method": "difference",
                "display_conditions": {"hideEmpty": True, "showWhen": "value > 0"},
                "format_rules": {"italic": True, "indentLevel": 3},
                "metadata": {"columnType": "adjustment", "noteNumber": 4},
            }
        )
        assert line.description == "Cash and cash equivalents"
        assert line.event_mappings == ("CASH_EQUIVALENTS", 14)
        assert line.event_codes == ("CASH_EQUIVALENTS", "14")
        assert line.calculation_formula is None
        assert line.aggregation_method is AggregationMethod.DIFF
        assert line.display_conditions.hide_empty
        assert line.display_conditions.show_when == "value > 0"
        assert line.formatting.bold and line.formatting.italic and line.formatting.is_total
        assert line.formatting.indent_level == 3
        assert line.column_type is ColumnType.ADJUSTMENT
        assert line.note_number == 4

    def test_top_level_keys_win_over_metadata(self):
        line = parse_line_template(
            {
                "line_code": "X",
                "display_order": 1,
                "column_type": "TOTAL",
                "note_number": 2,
                "metadata": {"column_type": "ACCUMULATED", "note_number": 9},
            }
        )
        assert line.column_type is ColumnType.TOTAL
        assert line.note_number == 2

    def test_unknown_aggregation_method(self):
        with pytest.raises(ValueError):
            parse_line_template({"line_code": "X", "display_order": 1, "aggregation_method": "MEDIAN"})

    def test_structured_condition(self):
        condition = parse_condition({"field": "CASH", "operator": ">", "value": 0})
        assert condition == FieldCondition(field="CASH", operator=">", value=0)
        assert parse_condition("") is None

    def test_unparseable_condition(self):
        with pytest.raises(ValueError, match="Cannot parse display condition"):
            parse_condition(42)


class TestParseStatementTemplate:
    def test_lines_sorted_by_display_order(self):
        template = parse_statement_template(
            {
                "statement_code": "REV_EXP",
                "statement_name": "Revenue and Expenditure",
                "version": 2,
                "lines": [
                    {"line_code": "B", "display_order": 20},
                    {"line_code": "A", "display_order": 10},
                ],
            }
        )
        assert template.statement_code is StatementCode.REV_EXP
        assert template.line_codes == ("A", "B")
        assert template.version == "2"
        assert template.source == "yaml"

    def test_unknown_statement_code(self):
        with pytest.raises(ValueError):
            parse_statement_template({"statement_code": "INCOME", "lines": []})

    def test_load_template_file(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "statement_code": "CASH_FLOW",
                    "statement_name": "Cash Flow",
                    "lines": [{"line_code": "CASH", "display_order": 1, "event_mappings": ["CASH"]}],
                }
            )
        )
        template = load_template_file(path)
        assert template.statement_code is StatementCode.CASH_FLOW
        assert template.all_event_codes() == ("CASH",)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_template_file(tmp_path / "missing.yaml")
