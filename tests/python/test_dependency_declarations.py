"""Every third-party import under src/expense_portal must be declared."""

from __future__ import annotations

import ast
import re
import sys
import tomllib
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
IMPORT_TO_DISTRIBUTION = {"yaml": "pyyaml"}


def _imported_top_level_modules() -> set[str]:
    modules: set[str] = set()
    for path in (ROOT / "src" / "expense_portal").rglob("*.py"):
        for node in ast.walk(ast.parse(path.read_text(encoding="utf-8"))):
            if isinstance(node, ast.Import):
                modules.update(alias.name.split(".")[0] for alias in node.names)
            elif isinstance(node, ast.ImportFrom) and node.module and not node.level:
                modules.add(node.module.split(".")[0])
    return modules


def _distribution_name(requirement: str) -> str:
    return re.split(r"[<>=!~\[; ]", requirement, maxsplit=1)[0].strip().lower()


def test_runtime_imports_are_declared() -> None:
    project = tomllib.loads((ROOT / "pyproject.toml").read_text(encoding="utf-8"))["project"]
    declared = {_distribution_name(requirement) for requirement in project["dependencies"]}

    third_party = {
        IMPORT_TO_DISTRIBUTION.get(module, module)
        for module in _imported_top_level_modules()
        if module not in sys.stdlib_module_names and module != "expense_portal"
    }

    assert third_party - declared == set()
    assert {"pydantic", "pyyaml", "fastapi"} <= declared


def test_test_extra_carries_http_client() -> None:
    project = tomllib.loads((ROOT / "pyproject.toml").read_text(encoding="utf-8"))["project"]
    extras = project["optional-dependencies"]

    assert {"pytest", "httpx"} <= {_distribution_name(item) for item in extras["test"]}
