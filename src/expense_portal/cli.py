"""Command-line interface for checking an expense against a site policy."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .errors import ExpensePortalError
from .models import Budget, ExpenseRequest, Policy, Site
from .policy import PolicyEngine, PolicyResult
from .policy_store import build_policy


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="expense-policy-check",
        description="Evaluate an expense JSON file against a site policy YAML file.",
    )
    parser.add_argument("expense_json", type=Path, help="Path to the expense JSON input.")
    parser.add_argument("policy_yaml", type=Path, help="Path to the site policy YAML file.")
    parser.add_argument(
        "--submitter",
        default="cli",
        help="Submitter id used for the evaluation (default: cli).",
    )
    parser.add_argument(
        "--json", action="store_true", dest="as_json", help="Print results as JSON."
    )
    return parser


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        msg = f"Input file not found: {path}"
        raise FileNotFoundError(msg) from exc
    except OSError as exc:
        msg = f"Unable to read input file: {path}"
        raise OSError(msg) from exc


def _load_expense(path: Path) -> ExpenseRequest:
    try:
        payload = json.loads(_read(path))
    except json.JSONDecodeError as exc:
        msg = f"Invalid JSON in input file: {path}"
        raise ValueError(msg) from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Expense file must contain a JSON object: {path}")
    data = {_snake(key): value for key, value in payload.items()}
    data.setdefault("site_id", "cli")
    return ExpenseRequest.model_validate(data)


def _snake(key: str) -> str:
    return "".join(f"_{char.lower()}" if char.isupper() else char for char in key)


def _load_policy(path: Path) -> Policy:
    data = yaml.safe_load(_read(path)) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Policy file must contain a mapping: {path}")
    # Accept either a bare policy or a document with a `defaults` section.
    return build_policy(data.get("defaults", data))


def _format(results: list[PolicyResult]) -> list[str]:
    lines = []
    for result in results:
        marker = "PASS" if result.passed else "FAIL"
        code = f" [{result.code}]" if result.code and not result.passed else ""
        lines.append(f"{marker} {result.rule_id}{code}: {result.message}")
    return lines


def _as_dict(result: PolicyResult) -> dict[str, Any]:
    return {
        "ruleId": result.rule_id,
        "code": result.code,
        "severity": result.severity,
        "passed": result.passed,
        "message": result.message,
        "escalate": result.escalate,
    }


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        request = _load_expense(args.expense_json)
        policy = _load_policy(args.policy_yaml)
    except ValidationError as exc:
        print("Error: expense validation failed.", file=sys.stderr)
        print(str(exc), file=sys.stderr)
        return 1
    except ExpensePortalError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    site = Site(
        id=request.site_id,
        code="CLI",
        name="Policy check",
        budget=Budget(monthly=0, yearly=0),
        policy=policy,
    )
    results = PolicyEngine().evaluate(request, site, submitter_id=args.submitter)
    blocked = [result for result in results if not result.passed]

    if args.as_json:
        print(json.dumps([_as_dict(result) for result in results], indent=2))
    else:
        print("\n".join(_format(results)))
        if blocked:
            print(f"Rejected by {blocked[0].rule_id}")
        elif any(result.escalate for result in results):
            print("Accepted; director sign-off required")
        else:
            print("Accepted")
    return 2 if blocked else 0


if __name__ == "__main__":
    raise SystemExit(main())
