from __future__ import annotations

import pytest

from expense_portal import (
    DuplicateRecord,
    ExpenseRepository,
    InvalidIdentifier,
    InvalidTransition,
    NotFound,
    SiteRepository,
)
from expense_portal.models import Expense, ExpenseCategory
from expense_portal.repository import new_id


def _expense(number: str, **overrides: object) -> Expense:
    data: dict[str, object] = {
        "id": new_id(),
        "expense_number": number,
        "title": "Lunch",
        "category": ExpenseCategory.FOOD,
        "amount": 10,
        "original_amount": 10,
        "site_id": "site",
        "submitter_id": "user",
        "department": "Ops",
        "expense_date": "2024-06-11",
    }
    data.update(overrides)
    return Expense(**data)


def test_numbers_are_sequential() -> None:
    repository = ExpenseRepository()

    assert [repository.next_number() for _ in range(3)] == ["EXP-0001", "EXP-0002", "EXP-0003"]
    assert ExpenseRepository(prefix="PL-").next_number() == "PL-0001"


def test_add_rejects_duplicates() -> None:
    repository = ExpenseRepository()
    expense = repository.add(_expense("EXP-0001"))

    with pytest.raises(DuplicateRecord):
        repository.add(expense)
    with pytest.raises(DuplicateRecord):
        repository.add(_expense("EXP-0001"))


def test_replace_checks_version() -> None:
    repository = ExpenseRepository()
    expense = repository.add(_expense("EXP-0001"))

    stored = repository.replace(expense.model_copy(update={"title": "Dinner"}), expected_version=0)
    assert stored.version == 1

    with pytest.raises(InvalidTransition):
        repository.replace(expense.model_copy(update={"title": "Brunch"}), expected_version=0)
    assert repository.get(expense.id).title == "Dinner"


def test_get_validates_identifier() -> None:
    repository = ExpenseRepository()

    with pytest.raises(InvalidIdentifier):
        repository.get("42")
    with pytest.raises(NotFound):
        repository.get(new_id())


def test_filter_sorts_by_number() -> None:
    repository = ExpenseRepository()
    second = repository.add(_expense("EXP-0002"))
    first = repository.add(_expense("EXP-0001", submitter_id="other"))

    assert repository.filter(lambda expense: True) == [first, second]
    assert repository.for_submitter("site", "user") == [second]


def test_sites_unique_codes_and_inactive_lookup(site_factory) -> None:
    sites = SiteRepository()
    sites.add(site_factory(id="a", code="PUNE"))
    sites.add(site_factory(id="b", code="HQ", is_active=False))

    with pytest.raises(DuplicateRecord):
        sites.add(site_factory(id="c", code="pune"))
    with pytest.raises(NotFound):
        sites.get("b")
    assert sites.get("b", include_inactive=True).code == "HQ"
    assert [site.id for site in sites.list()] == ["a"]
    assert [site.id for site in sites.list(active_only=False)] == ["b", "a"]
