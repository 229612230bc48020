"""Racing transitions must serialize without corrupting history or budgets."""

from __future__ import annotations

import threading
from collections.abc import Callable
from decimal import Decimal

from expense_portal import (
    AlreadyDecided,
    ExpenseCategory,
    ExpensePortalError,
    ExpenseStatus,
    InvalidTransition,
    UserRole,
)


def _race(count: int, action: Callable[[int], object]) -> tuple[list[object], list[Exception]]:
    barrier = threading.Barrier(count)
    results: list[object] = []
    errors: list[Exception] = []
    lock = threading.Lock()

    def _run(index: int) -> None:
        barrier.wait()
        try:
            outcome = action(index)
        except ExpensePortalError as exc:
            with lock:
                errors.append(exc)
        else:
            with lock:
                results.append(outcome)

    threads = [threading.Thread(target=_run, args=(index,)) for index in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results, errors


def test_racing_level_one_approvers_record_one_decision(portal, request_factory) -> None:
    expense = portal.workflow.create(request_factory(portal.site.id), portal.submitter)
    approvers = [portal.l1] + [
        portal.add_user(f"Approver {index}", UserRole.L1_APPROVER) for index in range(5)
    ]

    results, errors = _race(
        len(approvers), lambda index: portal.workflow.approve(expense.id, approvers[index])
    )

    assert len(results) == 1
    assert len(errors) == len(approvers) - 1
    assert all(isinstance(error, (AlreadyDecided, InvalidTransition)) for error in errors)
    stored = portal.expenses.get(expense.id)
    assert stored.status == ExpenseStatus.APPROVED_L1
    assert len(stored.approval_history) == 1


def test_retried_finance_approval_counts_budget_once(portal, request_factory) -> None:
    expense = portal.workflow.create(request_factory(portal.site.id), portal.submitter)
    portal.approve_through(expense.id, portal.l1, portal.l2, portal.l3)

    results, errors = _race(8, lambda _: portal.workflow.approve(expense.id, portal.finance))

    assert len(results) == 1
    assert all(isinstance(error, AlreadyDecided) for error in errors)
    statistics = portal.current_site().statistics
    assert statistics.monthly_spend == Decimal("1000")
    assert statistics.total_expenses == 1


def test_concurrent_approvals_of_different_expenses_all_count(
    portal, request_factory
) -> None:
    categories = [
        ExpenseCategory.FOOD,
        ExpenseCategory.FUEL,
        ExpenseCategory.MAINTENANCE,
        ExpenseCategory.EQUIPMENT,
        ExpenseCategory.OFFICE_SUPPLIES,
        ExpenseCategory.MISCELLANEOUS,
    ]
    expenses = []
    for category in categories:
        expense = portal.workflow.create(
            request_factory(portal.site.id, category=category, amount=Decimal("250")),
            portal.submitter,
        )
        portal.approve_through(expense.id, portal.l1, portal.l2, portal.l3)
        expenses.append(expense)

    results, errors = _race(
        len(expenses), lambda index: portal.workflow.approve(expenses[index].id, portal.finance)
    )

    assert errors == []
    assert len(results) == len(expenses)
    statistics = portal.current_site().statistics
    assert statistics.monthly_spend == Decimal("250") * len(expenses)
    assert statistics.total_expenses == len(expenses)


def test_identical_concurrent_submissions_accept_one(portal, request_factory) -> None:
    request = request_factory(portal.site.id)

    results, errors = _race(6, lambda _: portal.workflow.create(request, portal.submitter))

    assert len(results) == 1
    assert {error.code for error in errors} == {"DUPLICATE_SUSPECTED"}
    assert len(portal.expenses.expenses) == 1


def test_expense_locks_are_released_after_use(portal, request_factory) -> None:
    expenses = [
        portal.workflow.create(
            request_factory(portal.site.id, amount=Decimal(100 + index)), portal.submitter
        )
        for index in range(5)
    ]
    for expense in expenses:
        portal.approve_through(expense.id, portal.l1, portal.l2)

    assert len(portal.workflow._locks) == 0
