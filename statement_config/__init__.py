"""
Statement engine configuration.

``StatementEngineConfig`` holds tolerances and thresholds; the loader
parses YAML templates and config files.  Seed templates for every
statement code ship in ``statement_config/templates``.
"""

from statement_config.config import StatementEngineConfig
from statement_config.loader import (
    load_engine_config,
    load_seed_templates,
    load_template_file,
    parse_line_template,
    parse_statement_template,
)

__all__ = [
    "StatementEngineConfig",
    "load_engine_config",
    "load_seed_templates",
    "load_template_file",
    "parse_line_template",
    "parse_statement_template",
]
