"""
Import-boundary enforcement for the statement engine layers.

1. Kernel isolation   -- statement_kernel/** may not import engines,
                         services or config.
2. Domain purity      -- statement_kernel/domain/** may not import the ORM.
3. Engine purity      -- statement_engines/** may not import DB drivers,
                         ORM, models, selectors, services or config, and may
                         not read the wall clock or the environment.
4. Config boundary    -- statement_config/** may not import engines or
                         services.

All scanning is done via AST; these tests are read-only.
"""

import ast
import glob
from pathlib import Path

import pytest


def _python_files(root: str) -> list[str]:
    return sorted(glob.glob(f"{root}/**/*.py", recursive=True))


def _extract_imports(filepath: str) -> list[tuple[int, str]]:
    tree = ast.parse(Path(filepath).read_text(), filename=filepath)
    results: list[tuple[int, str]] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                results.append((node.lineno, alias.name))
        elif isinstance(node, ast.ImportFrom) and node.module:
            results.append((node.lineno, node.module))
    return results


def _extract_attribute_calls(filepath: str) -> list[tuple[int, str]]:
    tree = ast.parse(Path(filepath).read_text(), filename=filepath)
    return [
        (node.lineno, f"{node.value.id}.{node.attr}")
        for node in ast.walk(tree)
        if isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name)
    ]


def _matches_any(module: str, prefixes: tuple[str, ...]) -> bool:
    return any(module == prefix or module.startswith(f"{prefix}.") for prefix in prefixes)


def _violations(root: str, forbidden: tuple[str, ...]) -> list[str]:
    return [
        f"{path}:{lineno} imports {module}"
        for path in _python_files(root)
        for lineno, module in _extract_imports(path)
        if _matches_any(module, forbidden)
    ]


@pytest.mark.parametrize(
    "root, forbidden",
    [
        (
            "statement_kernel",
            ("statement_engines", "statement_services", "statement_config"),
        ),
        (
            "statement_kernel/domain",
            ("sqlalchemy", "statement_kernel.models", "statement_kernel.db"),
        ),
        (
            "statement_engines",
            (
                "sqlalchemy",
                "psycopg2",
                "statement_kernel.models",
                "statement_kernel.db",
                "statement_kernel.selectors",
                "statement_services",
                "statement_config",
            ),
        ),
        ("statement_config", ("statement_engines", "statement_services")),
    ],
)
def test_layer_does_not_import_forbidden_modules(root, forbidden):
    assert _python_files(root), f"no sources found under {root}"
    violations = _violations(root, forbidden)
    assert not violations, "\n".join(violations)


class TestEngineDeterminism:
    FORBIDDEN_CALLS = (
        "datetime.now",
        "datetime.utcnow",
        "date.today",
        "time.time",
        "os.environ",
        "os.getenv",
    )

    def test_engines_do_not_read_clock_or_environment(self):
        violations = [
            f"{path}:{lineno} uses {call}"
            for path in _python_files("statement_engines")
            for lineno, call in _extract_attribute_calls(path)
            if call in self.FORBIDDEN_CALLS
        ]
        assert not violations, "\n".join(violations)
