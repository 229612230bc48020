"""Site policy rules gating expense submissions.

The engine evaluates a candidate expense against its site's :class:`Policy`
in a fixed order: weekday restriction, duplicate detection, per-category
limit, cash ceiling and director escalation. :meth:`PolicyEngine.validate`
is fail-fast and raises the first violation; :meth:`PolicyEngine.evaluate`
runs every rule and returns the full result set for advisory views.

The engine never mutates expenses or sites. Director escalation is reported
on the returned :class:`PolicyDecision` and applied by the workflow.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from .errors import (
    CashLimitExceeded,
    CategoryLimitExceeded,
    DateRestricted,
    DuplicateSuspected,
    PolicyViolation,
)
from .models import (
    WEEKDAY_NAMES,
    Expense,
    ExpenseCategory,
    ExpenseRequest,
    ExpenseStatus,
    PaymentMethod,
    Site,
)

logger = logging.getLogger(__name__)

ExpenseSource = Callable[[str, str], Iterable[Expense]]
"""Callable returning the expenses of ``(site_id, submitter_id)``."""


class Severity(str):
    """Severity of a policy result."""

    BLOCKING = "blocking"
    ADVISORY = "advisory"
    INFO = "info"


@dataclass
class PolicyResult:
    """Result of evaluating a single policy rule."""

    rule_id: str
    code: str | None
    severity: str
    passed: bool
    message: str
    escalate: bool = False


@dataclass
class PolicyContext:
    """Fields of a candidate expense the rules look at."""

    submitter_id: str
    site_id: str
    category: ExpenseCategory
    amount: Decimal
    expense_date: date
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    escalate_to_director: bool = False
    expense_id: str | None = None

    @classmethod
    def from_request(cls, request: ExpenseRequest, submitter_id: str) -> PolicyContext:
        return cls(
            submitter_id=submitter_id,
            site_id=request.site_id,
            category=request.category,
            amount=request.amount,
            expense_date=request.expense_date,
            payment_method=request.payment_method,
            escalate_to_director=request.escalate_to_director,
        )

    @classmethod
    def from_expense(cls, expense: Expense) -> PolicyContext:
        return cls(
            submitter_id=expense.submitter_id,
            site_id=expense.site_id,
            category=expense.category,
            amount=expense.amount,
            expense_date=expense.expense_date,
            payment_method=expense.payment_method,
            escalate_to_director=expense.escalate_to_director,
            expense_id=expense.id,
        )


@dataclass
class PolicyDecision:
    """Outcome of an accepted submission."""

    requires_director_signoff: bool
    results: list[PolicyResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return True


class PolicyRule(ABC):
    """Base class for site policy rules."""

    rule_id: str
    violation: type[PolicyViolation] | None = None

    def __init__(self, severity: str = Severity.BLOCKING) -> None:
        self.severity = severity

    @abstractmethod
    def evaluate(self, context: PolicyContext, site: Site) -> PolicyResult:
        """Evaluate the rule and return a structured result."""

    def _result(self, passed: bool, message: str, *, escalate: bool = False) -> PolicyResult:
        return PolicyResult(
            rule_id=self.rule_id,
            code=self.violation.code if self.violation is not None else None,
            severity=self.severity if not passed else Severity.INFO,
            passed=passed,
            message=message,
            escalate=escalate,
        )


class DateRestrictionRule(PolicyRule):
    rule_id = "date_restriction"
    violation = DateRestricted

    def evaluate(self, context: PolicyContext, site: Site) -> PolicyResult:
        weekday = WEEKDAY_NAMES[context.expense_date.weekday()]
        if site.policy.disallows(context.expense_date):
            return self._result(
                False,
                f"Expenses dated on {weekday.capitalize()} are not accepted at site {site.code}.",
            )
        return self._result(True, f"{weekday.capitalize()} is an accepted expense date.")


class DuplicateExpenseRule(PolicyRule):
    """Flag a submission matching an existing submitted, non-rejected expense."""

    rule_id = "duplicate_detection"
    violation = DuplicateSuspected

    def __init__(self, source: ExpenseSource, severity: str = Severity.BLOCKING) -> None:
        super().__init__(severity)
        self.source = source

    def _is_match(self, context: PolicyContext, existing: Expense, site: Site) -> bool:
        policy = site.policy
        if existing.id == context.expense_id or not existing.is_active:
            return False
        if existing.status in (ExpenseStatus.REJECTED, ExpenseStatus.DRAFT):
            return False
        if existing.category != context.category:
            return False
        if abs((existing.expense_date - context.expense_date).days) > policy.duplicate_window_days:
            return False
        tolerance = policy.duplicate_amount_tolerance
        return any(
            abs(amount - context.amount) <= tolerance
            for amount in {existing.amount, existing.original_amount}
        )

    def find_duplicate(self, context: PolicyContext, site: Site) -> Expense | None:
        for existing in self.source(context.site_id, context.submitter_id):
            if self._is_match(context, existing, site):
                return existing
        return None

    def evaluate(self, context: PolicyContext, site: Site) -> PolicyResult:
        duplicate = self.find_duplicate(context, site)
        if duplicate is not None:
            return self._result(
                False,
                (
                    f"Expense {duplicate.expense_number} already claims {duplicate.amount}"
                    f" for {context.category.value} on {duplicate.expense_date.isoformat()}"
                    f" (window {site.policy.duplicate_window_days} days)."
                ),
            )
        return self._result(True, "No matching expense found.")


def _director_threshold_exceeded(context: PolicyContext, site: Site) -> bool:
    threshold = site.policy.director_threshold(context.category)
    return threshold is not None and context.amount > threshold


class CategoryLimitRule(PolicyRule):
    rule_id = "category_limit"
    violation = CategoryLimitExceeded

    def evaluate(self, context: PolicyContext, site: Site) -> PolicyResult:
        limit = site.policy.category_limit(context.category)
        if limit is None:
            return self._result(True, f"No limit configured for {context.category.value}.")
        if context.amount <= limit:
            return self._result(
                True, f"{context.category.value} amount within limit {limit}."
            )
        if context.escalate_to_director or _director_threshold_exceeded(context, site):
            return self._result(
                True,
                f"Amount {context.amount} exceeds {context.category.value} limit {limit};"
                " accepted pending director sign-off.",
            )
        return self._result(
            False,
            f"Amount {context.amount} exceeds the {context.category.value} limit of {limit}.",
        )


class CashLimitRule(PolicyRule):
    rule_id = "cash_limit"
    violation = CashLimitExceeded

    def evaluate(self, context: PolicyContext, site: Site) -> PolicyResult:
        cash_max = site.policy.cash_max
        if context.payment_method != PaymentMethod.CASH or cash_max is None:
            return self._result(True, "Cash ceiling not applicable.")
        if context.amount > cash_max:
            return self._result(
                False,
                f"Cash payments are limited to {cash_max}; {context.amount} requested.",
            )
        return self._result(True, f"Cash amount within ceiling {cash_max}.")


class DirectorEscalationRule(PolicyRule):
    """Accept the expense but require director sign-off above a threshold."""

    rule_id = "director_escalation"

    def __init__(self) -> None:
        super().__init__(Severity.ADVISORY)

    def evaluate(self, context: PolicyContext, site: Site) -> PolicyResult:
        if _director_threshold_exceeded(context, site):
            threshold = site.policy.director_threshold(context.category)
            return self._result(
                True,
                f"Amount {context.amount} is above the director threshold {threshold}"
                f" for {context.category.value}.",
                escalate=True,
            )
        if context.escalate_to_director:
            return self._result(
                True, "Submitter requested director review.", escalate=True
            )
        return self._result(True, "Director sign-off not required.")


def default_rules(source: ExpenseSource) -> list[PolicyRule]:
    """Return the rule chain in evaluation order."""

    return [
        DateRestrictionRule(),
        DuplicateExpenseRule(source),
        CategoryLimitRule(),
        CashLimitRule(),
        DirectorEscalationRule(),
    ]


class PolicyEngine:
    """Run the site policy rule chain against candidate expenses."""

    def __init__(
        self,
        source: ExpenseSource | None = None,
        rules: Sequence[PolicyRule] | None = None,
    ) -> None:
        if rules is None:
            rules = default_rules(source or (lambda site_id, submitter_id: ()))
        self.rules = list(rules)

    @staticmethod
    def _context(
        candidate: ExpenseRequest | Expense | PolicyContext, submitter_id: str | None
    ) -> PolicyContext:
        if isinstance(candidate, PolicyContext):
            return candidate
        if isinstance(candidate, Expense):
            return PolicyContext.from_expense(candidate)
        if submitter_id is None:
            raise ValueError("submitter_id is required to evaluate a new request")
        return PolicyContext.from_request(candidate, submitter_id)

    def evaluate(
        self,
        candidate: ExpenseRequest | Expense | PolicyContext,
        site: Site,
        *,
        submitter_id: str | None = None,
    ) -> list[PolicyResult]:
        """Run every rule and return all results."""

        context = self._context(candidate, submitter_id)
        return [rule.evaluate(context, site) for rule in self.rules]

    def validate(
        self,
        candidate: ExpenseRequest | Expense | PolicyContext,
        site: Site,
        *,
        submitter_id: str | None = None,
    ) -> PolicyDecision:
        """Accept the candidate or raise the first violated rule's error."""

        context = self._context(candidate, submitter_id)
        results: list[PolicyResult] = []
        for rule in self.rules:
            result = rule.evaluate(context, site)
            results.append(result)
            if not result.passed and result.severity == Severity.BLOCKING:
                logger.info(
                    "Policy rule %s rejected submission",
                    rule.rule_id,
                    extra={"site_id": site.id, "submitter_id": context.submitter_id},
                )
                violation = rule.violation or PolicyViolation
                raise violation(result.message, rule_id=rule.rule_id)
        return PolicyDecision(
            requires_director_signoff=any(result.escalate for result in results),
            results=results,
        )

    def blocking_results(
        self,
        candidate: ExpenseRequest | Expense | PolicyContext,
        site: Site,
        *,
        submitter_id: str | None = None,
    ) -> list[PolicyResult]:
        return [
            result
            for result in self.evaluate(candidate, site, submitter_id=submitter_id)
            if result.severity == Severity.BLOCKING and not result.passed
        ]
