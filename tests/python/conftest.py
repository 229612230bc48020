"""Test configuration for adding src to the import path."""

from __future__ import annotations

import sys
from collections.abc import Callable
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from expense_portal import (
    ApprovalWorkflow,
    Budget,
    ExpenseCategory,
    ExpenseRepository,
    ExpenseRequest,
    Policy,
    RecordingDispatcher,
    Site,
    SiteRepository,
    User,
    UserDirectory,
    UserRole,
)
from expense_portal.repository import new_id

# 2024-06-11 is a Tuesday.
TUESDAY = date(2024, 6, 11)
NOW = datetime(2024, 6, 12, 9, 30, tzinfo=UTC)


@pytest.fixture()
def site_factory() -> Callable[..., Site]:
    def _factory(**overrides: object) -> Site:
        data: dict[str, object] = {
            "id": new_id(),
            "code": "PUNE",
            "name": "Pune Plant",
            "location": "Pune",
            "budget": Budget(monthly=Decimal("100000"), yearly=Decimal("1200000")),
            "policy": Policy(
                per_category_limits={"TRAVEL": 5000, "FOOD": 1500},
                require_director_above={"TRAVEL": 5000},
                cash_max=Decimal("2000"),
            ),
        }
        data.update(overrides)
        return Site(**data)

    return _factory


@pytest.fixture()
def request_factory() -> Callable[..., ExpenseRequest]:
    def _factory(site_id: str, **overrides: object) -> ExpenseRequest:
        data: dict[str, object] = {
            "title": "Team lunch",
            "category": ExpenseCategory.FOOD,
            "amount": Decimal("1000"),
            "site_id": site_id,
            "department": "Operations",
            "expense_date": TUESDAY,
        }
        data.update(overrides)
        return ExpenseRequest(**data)

    return _factory


class Portal:
    """A wired workflow with one site and one user per role."""

    def __init__(self, site: Site) -> None:
        self.sites = SiteRepository()
        self.site = self.sites.add(site)
        self.expenses = ExpenseRepository()
        self.users = UserDirectory()
        self.dispatcher = RecordingDispatcher()
        self.workflow = ApprovalWorkflow(
            self.expenses,
            self.sites,
            users=self.users,
            dispatcher=self.dispatcher,
            clock=lambda: NOW,
        )
        self.submitter = self.add_user("Asha", UserRole.SUBMITTER)
        self.l1 = self.add_user("Bilal", UserRole.L1_APPROVER)
        self.l2 = self.add_user("Chen", UserRole.L2_APPROVER)
        self.l3 = self.add_user("Dev", UserRole.L3_APPROVER)
        self.finance = self.add_user("Esi", UserRole.FINANCE)
        self.director = self.add_user("Farah", UserRole.DIRECTOR)

    def add_user(self, name: str, role: UserRole, site_id: str | None = None) -> User:
        return self.users.add(
            User(id=new_id(), name=name, role=role, site_id=site_id or self.site.id)
        )

    def current_site(self) -> Site:
        return self.sites.get(self.site.id)

    def approve_through(self, expense_id: str, *approvers: User) -> None:
        for approver in approvers:
            self.workflow.approve(expense_id, approver)


@pytest.fixture()
def portal(site_factory: Callable[..., Site]) -> Portal:
    return Portal(site_factory())
