"""Thread-safe in-memory stores for expenses, sites and users."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from uuid import UUID, uuid4

from .errors import DuplicateRecord, InvalidIdentifier, InvalidTransition, NotFound
from .models import Expense, Site, User

EXPENSE_NUMBER_PREFIX = "EXP-"


def new_id() -> str:
    return str(uuid4())


def check_id(value: str) -> str:
    """Return ``value`` when it is a well-formed identifier."""

    try:
        UUID(str(value))
    except ValueError as exc:
        raise InvalidIdentifier(f"Invalid identifier provided: {value!r}") from exc
    return str(value)


def format_expense_number(sequence: int, prefix: str = EXPENSE_NUMBER_PREFIX) -> str:
    return f"{prefix}{sequence:04d}"


@dataclass
class ExpenseRepository:
    """Expense store with optimistic version checks."""

    expenses: dict[str, Expense] = field(default_factory=dict)
    sequence: int = 0
    prefix: str = EXPENSE_NUMBER_PREFIX
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def next_number(self) -> str:
        """Reserve the next sequential expense number."""

        with self._lock:
            self.sequence += 1
            return format_expense_number(self.sequence, self.prefix)

    def add(self, expense: Expense) -> Expense:
        with self._lock:
            if expense.id in self.expenses:
                raise DuplicateRecord(f"expense {expense.id} already exists")
            if any(
                existing.expense_number == expense.expense_number
                for existing in self.expenses.values()
            ):
                raise DuplicateRecord(f"expenseNumber {expense.expense_number} already exists")
            self.expenses[expense.id] = expense
            return expense

    def get(self, expense_id: str) -> Expense:
        check_id(expense_id)
        with self._lock:
            expense = self.expenses.get(expense_id)
        if expense is None:
            raise NotFound(f"Expense {expense_id} not found")
        return expense

    def replace(self, expense: Expense, *, expected_version: int) -> Expense:
        """Store ``expense`` if the stored copy is still at ``expected_version``."""

        with self._lock:
            current = self.expenses.get(expense.id)
            if current is None:
                raise NotFound(f"Expense {expense.id} not found")
            if current.version != expected_version:
                raise InvalidTransition(
                    f"Expense {current.expense_number} was modified concurrently",
                    expected_version=expected_version,
                    actual_version=current.version,
                )
            stored = expense.model_copy(update={"version": expected_version + 1})
            self.expenses[expense.id] = stored
            return stored

    def for_submitter(self, site_id: str, submitter_id: str) -> list[Expense]:
        with self._lock:
            return [
                expense
                for expense in self.expenses.values()
                if expense.site_id == site_id and expense.submitter_id == submitter_id
            ]

    def filter(self, predicate: Callable[[Expense], bool]) -> list[Expense]:
        with self._lock:
            matches = [expense for expense in self.expenses.values() if predicate(expense)]
        return sorted(matches, key=lambda expense: expense.expense_number)


@dataclass
class SiteRepository:
    """Site store; each site has a lock guarding its counters and policy."""

    sites: dict[str, Site] = field(default_factory=dict)
    _locks: dict[str, threading.RLock] = field(default_factory=dict, repr=False)
    _guard: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _site_lock(self, site_id: str) -> threading.RLock:
        with self._guard:
            return self._locks.setdefault(site_id, threading.RLock())

    @contextmanager
    def locked(self, site_id: str) -> Iterator[None]:
        """Hold the site's lock for a compound read-check-write."""

        with self._site_lock(site_id):
            yield

    def add(self, site: Site) -> Site:
        with self._guard:
            if site.id in self.sites:
                raise DuplicateRecord(f"site {site.id} already exists")
            if any(existing.code == site.code for existing in self.sites.values()):
                raise DuplicateRecord(f"code {site.code} already exists")
            self.sites[site.id] = site
        return site

    def get(self, site_id: str, *, include_inactive: bool = False) -> Site:
        site = self.sites.get(site_id)
        if site is None or (not site.is_active and not include_inactive):
            raise NotFound(f"Site {site_id} not found")
        return site

    def update(self, site_id: str, mutate: Callable[[Site], Site]) -> Site:
        """Apply ``mutate`` to the current site atomically and store the result."""

        with self._site_lock(site_id):
            updated = mutate(self.get(site_id, include_inactive=True))
            self.sites[site_id] = updated
            return updated

    def list(self, *, active_only: bool = True) -> list[Site]:
        sites = list(self.sites.values())
        if active_only:
            sites = [site for site in sites if site.is_active]
        return sorted(sites, key=lambda site: site.code)


@dataclass
class UserDirectory:
    """Lookup of portal users by id."""

    users: dict[str, User] = field(default_factory=dict)

    def add(self, user: User) -> User:
        if user.id in self.users:
            raise DuplicateRecord(f"user {user.id} already exists")
        self.users[user.id] = user
        return user

    def get(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return user
