"""
Configuration Loader (``statement_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into the typed template records of
``statement_kernel.domain.template`` and into ``StatementEngineConfig``.
The same line parsers serve database template rows, whose JSON columns
share the YAML layout.

Architecture position
---------------------
**Config layer**.  Depends on kernel domain types only; consumed by the
template loader service and by tests.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; required fields (``line_code``, ``display_order``) have no
  silent defaults.
* Display-condition and format-rule keys are accepted in both snake_case
  and the camelCase stored by older template rows.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown statement code, aggregation method or column type  -> ``ValueError``.
"""

from __future__ import annotations

from importlib import resources
from pathlib import Path
from typing import Any, Mapping

import yaml

from statement_config.config import StatementEngineConfig
from statement_kernel.domain.statement import ColumnType, StatementCode
from statement_kernel.domain.template import (
    AggregationMethod,
    Condition,
    DisplayConditions,
    FieldCondition,
    LineFormatRules,
    LineTemplate,
    StatementTemplate,
)
from statement_kernel.logging_config import get_logger

logger = get_logger("config.loader")

SEED_TEMPLATE_PACKAGE = "statement_config.templates"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


# ---------------------------------------------------------------------------
# Line parts
# ---------------------------------------------------------------------------


def parse_condition(value: Any) -> Condition | None:
    """A condition is an expression string or a ``{field, operator, value}`` map."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        return FieldCondition(
            field=str(value["field"]),
            operator=str(value.get("operator", "==")),
            value=value.get("value"),
        )
    raise ValueError(f"Cannot parse display condition from {value!r}")


def parse_display_conditions(data: Mapping[str, Any] | None) -> DisplayConditions:
    if not data:
        return DisplayConditions()
    return DisplayConditions(
        show_when=parse_condition(_pick(data, "show_when", "showWhen")),
        hide_when=parse_condition(_pick(data, "hide_when", "hideWhen")),
        hide_empty=bool(_pick(data, "hide_empty", "hideEmpty", default=False)),
    )


def parse_format_rules(
    data: Mapping[str, Any] | None,
    level: int = 1,
    is_total_line: bool = False,
    is_subtotal_line: bool = False,
) -> LineFormatRules:
    """Total lines are always bold; indent follows the line level."""
    data = data or {}
    return LineFormatRules(
        bold=bool(data.get("bold", False)) or is_total_line,
        italic=bool(data.get("italic", False)),
        indent_level=int(_pick(data, "indent_level", "indentLevel", default=level)),
        is_section=bool(_pick(data, "is_section", "isSection", default=False)),
        is_subtotal=is_subtotal_line,
        is_total=is_total_line,
    )


def parse_column_type(value: Any) -> ColumnType | None:
    if not value:
        return None
    return ColumnType(str(value).strip().upper())


def parse_line_template(data: Mapping[str, Any]) -> LineTemplate:
    """
    Parse one ``LineTemplate`` from a YAML mapping or template row dict.

    ``metadata`` may carry ``column_type`` / ``columnType`` and
    ``note_number`` / ``noteNumber``; top-level keys win.

    Raises:
        KeyError: ``line_code`` or ``display_order`` is missing.
        ValueError: unknown aggregation method or column type.
    """
    metadata = data.get("metadata") or {}
    level = int(data.get("level", 1) or 1)
    is_total_line = bool(data.get("is_total_line", False))
    is_subtotal_line = bool(data.get("is_subtotal_line", False))
    note = _pick(data, "note_number", default=_pick(metadata, "note_number", "noteNumber"))
    formula = data.get("calculation_formula")

    return LineTemplate(
        line_code=str(data["line_code"]),
        description=str(_pick(data, "description", "line_item", default="")),
        display_order=int(data["display_order"]),
        event_mappings=tuple(data.get("event_mappings") or ()),
        calculation_formula=formula.strip() if isinstance(formula, str) and formula.strip() else None,
        aggregation_method=AggregationMethod.parse(data.get("aggregation_method")),
        is_total_line=is_total_line,
        is_subtotal_line=is_subtotal_line,
        display_conditions=parse_display_conditions(data.get("display_conditions")),
        formatting=parse_format_rules(
            data.get("format_rules"), level, is_total_line, is_subtotal_line
        ),
        note_number=int(note) if note is not None else None,
        level=level,
        column_type=parse_column_type(
            _pick(data, "column_type", default=_pick(metadata, "column_type", "columnType"))
        ),
        parent_line_code=data.get("parent_line_code"),
    )


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def parse_statement_template(data: Mapping[str, Any], source: str = "yaml") -> StatementTemplate:
    """
    Parse a whole template mapping.

    Lines are returned sorted by display order.
    """
    lines = tuple(
        sorted(
            (parse_line_template(line) for line in data.get("lines") or ()),
            key=lambda line: line.display_order,
        )
    )
    return StatementTemplate(
        statement_code=StatementCode(data["statement_code"]),
        statement_name=str(data.get("statement_name", "")),
        lines=lines,
        version=str(data.get("version", "1.0")),
        source=source,
        metadata=dict(data.get("metadata") or {}),
    )


def load_template_file(path: Path) -> StatementTemplate:
    template = parse_statement_template(load_yaml_file(path))
    logger.debug(
        "template_file_loaded",
        extra={
            "path": str(path),
            "statement_code": template.statement_code.value,
            "line_count": len(template.lines),
        },
    )
    return template


def load_seed_templates(directory: Path | None = None) -> dict[StatementCode, StatementTemplate]:
    """
    Load every ``*.yaml`` template in ``directory``.

    Defaults to the seed templates shipped with this package.
    """
    if directory is None:
        files = sorted(
            (entry for entry in resources.files(SEED_TEMPLATE_PACKAGE).iterdir()
             if entry.name.endswith(".yaml")),
            key=lambda entry: entry.name,
        )
        parsed = [
            parse_statement_template(yaml.safe_load(entry.read_text()) or {}) for entry in files
        ]
    else:
        parsed = [load_template_file(path) for path in sorted(Path(directory).glob("*.yaml"))]

    templates = {template.statement_code: template for template in parsed}
    logger.info(
        "seed_templates_loaded",
        extra={"statement_codes": sorted(code.value for code in templates)},
    )
    return templates


def load_engine_config(path: Path) -> StatementEngineConfig:
    """Load ``StatementEngineConfig`` from a YAML file (top-level mapping)."""
    data = load_yaml_file(path)
    return StatementEngineConfig.from_dict(data.get("statement_engine", data))
