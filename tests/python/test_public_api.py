"""Tests for package root public API imports."""

from __future__ import annotations

import tomllib
from pathlib import Path

import expense_portal as portal
from expense_portal import (
    ApprovalWorkflow,
    BudgetTracker,
    PolicyEngine,
    __version__,
    error_response,
)


def test_public_api_exports() -> None:
    """Core API symbols should be importable from the package root."""
    required_exports = {
        "__version__",
        "ApprovalWorkflow",
        "BudgetTracker",
        "PolicyEngine",
        "PolicyStore",
        "error_response",
        "fold_status",
    }

    assert required_exports.issubset(set(portal.__all__))
    assert all(hasattr(portal, name) for name in portal.__all__)
    assert callable(error_response)
    assert ApprovalWorkflow is not None
    assert BudgetTracker is not None
    assert PolicyEngine is not None


def test_version_matches_pyproject() -> None:
    """Package __version__ should align with pyproject.toml."""
    pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    pyproject_data = tomllib.loads(pyproject_path.read_text(encoding="utf-8"))
    assert __version__ == pyproject_data["project"]["version"]


def test_console_script_is_declared() -> None:
    pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    pyproject_data = tomllib.loads(pyproject_path.read_text(encoding="utf-8"))
    assert pyproject_data["project"]["scripts"]["expense-policy-check"] == (
        "expense_portal.cli:main"
    )
