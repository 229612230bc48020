"""Approval workflow: the expense state machine.

An expense's status is a pure function of its approval history and payment
metadata (:func:`derive_status`). Every transition runs under a per-expense
lock and is stored with an optimistic version check; notifications go out
after the lock is released and their failures never undo a transition.
"""

from __future__ import annotations

import logging
import threading
import weakref
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from .budget import BudgetTracker
from .errors import (
    AlreadyDecided,
    InvalidTransition,
    PermissionDenied,
    ValidationFailure,
)
from .logging_config import LogContext
from .models import (
    DIRECTOR_LEVEL,
    FINANCE_LEVEL,
    ApprovalAction,
    ApprovalRecord,
    Expense,
    ExpenseRequest,
    ExpenseStatus,
    User,
    UserRole,
)
from .notifications import (
    LoggingDispatcher,
    NotificationDispatcher,
    NotificationEvent,
    NotificationKind,
)
from .policy import PolicyEngine
from .repository import ExpenseRepository, SiteRepository, UserDirectory, check_id, new_id
from .security import ROLE_APPROVAL_LEVELS, Permission, SecurityModel, approval_level_for

logger = logging.getLogger(__name__)

_LEVEL_STATUSES = {
    1: ExpenseStatus.APPROVED_L1,
    2: ExpenseStatus.APPROVED_L2,
    3: ExpenseStatus.APPROVED_L3,
    DIRECTOR_LEVEL: ExpenseStatus.APPROVED,
}

ARCHIVABLE_STATUSES = frozenset(
    {ExpenseStatus.DRAFT, ExpenseStatus.REJECTED, ExpenseStatus.PAYMENT_PROCESSED}
)

_DRAFT_FIELDS = frozenset(
    {
        "title",
        "description",
        "category",
        "amount",
        "currency",
        "department",
        "expense_date",
        "payment_method",
        "priority",
        "attachments",
        "escalate_to_director",
    }
)


def fold_status(
    history: Iterable[ApprovalRecord], *, requires_director_signoff: bool
) -> ExpenseStatus:
    """Return the approval-chain status implied by ``history``.

    A submitted expense starts in ``submitted``, or in ``under_review`` when it
    is tagged for director sign-off. Each advancing record moves it to the
    status of its level; a finance approval completes the chain unless a
    director sign-off is still owed.
    """

    status = (
        ExpenseStatus.UNDER_REVIEW if requires_director_signoff else ExpenseStatus.SUBMITTED
    )
    for record in history:
        if record.action == ApprovalAction.REJECT:
            return ExpenseStatus.REJECTED
        if record.level == FINANCE_LEVEL:
            status = (
                ExpenseStatus.APPROVED_FINANCE
                if requires_director_signoff
                else ExpenseStatus.APPROVED
            )
        else:
            status = _LEVEL_STATUSES[record.level]
    return status


def derive_status(expense: Expense) -> ExpenseStatus:
    """Status of ``expense`` from its history and payment metadata."""

    if expense.status == ExpenseStatus.DRAFT:
        return ExpenseStatus.DRAFT
    if expense.reimbursement.processed_by is not None:
        return ExpenseStatus.PAYMENT_PROCESSED
    if expense.reimbursement.reimbursed_at is not None:
        return ExpenseStatus.REIMBURSED
    return fold_status(
        expense.approval_history,
        requires_director_signoff=expense.requires_director_signoff,
    )


@dataclass(frozen=True)
class FailedNotification:
    """A notification the dispatcher could not deliver."""

    event: NotificationEvent
    error: str
    failed_at: datetime = field(default_factory=lambda: datetime.now(UTC))


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ApprovalWorkflow:
    """Create expenses and move them through the approval chain."""

    def __init__(
        self,
        expenses: ExpenseRepository,
        sites: SiteRepository,
        *,
        users: UserDirectory | None = None,
        policy_engine: PolicyEngine | None = None,
        budget: BudgetTracker | None = None,
        dispatcher: NotificationDispatcher | None = None,
        security: SecurityModel | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.expenses = expenses
        self.sites = sites
        self.users = users or UserDirectory()
        self.policy_engine = policy_engine or PolicyEngine(source=expenses.for_submitter)
        self.budget = budget or BudgetTracker(sites)
        self.dispatcher = dispatcher or LoggingDispatcher()
        self.security = security or SecurityModel()
        self.clock = clock
        self.failed_notifications: list[FailedNotification] = []
        # Entries vanish once no caller holds the expense's lock.
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._guard = threading.Lock()

    @contextmanager
    def _expense_lock(self, expense_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(expense_id, threading.Lock())
        with lock:
            yield

    def _today(self) -> date:
        return self.clock().date()

    # Creation and drafts

    def create(
        self, request: ExpenseRequest, actor: User, *, as_draft: bool = False
    ) -> Expense:
        """Store a new expense after the site policy accepts it.

        Drafts skip the policy check until :meth:`submit_draft`. The duplicate
        check and the insert run under the site lock so two identical
        concurrent submissions cannot both be accepted.
        """

        self._require_permission(actor, Permission.SUBMIT)
        self.security.require_site(actor, request.site_id)
        with LogContext.bind(actor_id=actor.id, site_id=request.site_id):
            with self.sites.locked(request.site_id):
                site = self.sites.get(request.site_id)
                requires_director = False
                status = ExpenseStatus.DRAFT
                submitted_at = None
                if not as_draft:
                    decision = self.policy_engine.validate(request, site, submitter_id=actor.id)
                    requires_director = decision.requires_director_signoff
                    status = fold_status((), requires_director_signoff=requires_director)
                    submitted_at = self.clock()
                expense = Expense(
                    id=new_id(),
                    expense_number=self.expenses.next_number(),
                    title=request.title,
                    description=request.description,
                    category=request.category,
                    amount=request.amount,
                    original_amount=request.amount,
                    currency=request.currency,
                    site_id=site.id,
                    submitter_id=actor.id,
                    department=request.department,
                    expense_date=request.expense_date,
                    submission_date=submitted_at,
                    status=status,
                    priority=request.priority,
                    payment_method=request.payment_method,
                    attachments=tuple(request.attachments),
                    escalate_to_director=request.escalate_to_director,
                    requires_director_signoff=requires_director,
                )
                stored = self.expenses.add(expense)
            logger.info(
                "Created expense %s in %s",
                stored.expense_number,
                stored.status.value,
                extra={"expense_id": stored.id},
            )
        if not as_draft:
            self._notify(NotificationKind.EXPENSE_SUBMITTED, stored, actor)
        return stored

    def update_draft(self, expense_id: str, actor: User, changes: dict[str, Any]) -> Expense:
        """Edit a draft. The amount is not a claim until submission, so
        ``original_amount`` follows it while the expense is a draft."""

        unknown = set(changes).difference(_DRAFT_FIELDS)
        if unknown:
            raise ValidationFailure(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        with self._expense_lock(expense_id):
            expense = self.expenses.get(expense_id)
            self._require_owner(expense, actor)
            if expense.status != ExpenseStatus.DRAFT:
                raise InvalidTransition("Only draft expenses can be edited")
            merged = {
                name: getattr(expense, name) for name in _DRAFT_FIELDS
            } | {"site_id": expense.site_id} | dict(changes)
            merged["attachments"] = list(merged["attachments"])
            try:
                request = ExpenseRequest.model_validate(merged)
            except ValidationError as exc:
                raise ValidationFailure(str(exc)) from exc
            updates = request.model_dump(exclude={"site_id"})
            updates["attachments"] = tuple(request.attachments)
            updates["original_amount"] = request.amount
            return self.expenses.replace(
                expense.model_copy(update=updates), expected_version=expense.version
            )

    def submit_draft(self, expense_id: str, actor: User) -> Expense:
        """Run the policy check on a draft and enter the approval chain."""

        expense = self.expenses.get(expense_id)
        self._require_owner(expense, actor)
        with self._expense_lock(expense_id), self.sites.locked(expense.site_id):
            expense = self.expenses.get(expense_id)
            if expense.status != ExpenseStatus.DRAFT:
                raise InvalidTransition(
                    f"Expense {expense.expense_number} is already {expense.status.value}"
                )
            site = self.sites.get(expense.site_id)
            decision = self.policy_engine.validate(expense, site)
            requires_director = decision.requires_director_signoff
            stored = self.expenses.replace(
                expense.model_copy(
                    update={
                        "status": fold_status(
                            (), requires_director_signoff=requires_director
                        ),
                        "requires_director_signoff": requires_director,
                        "submission_date": self.clock(),
                    }
                ),
                expected_version=expense.version,
            )
        logger.info(
            "Submitted draft %s",
            stored.expense_number,
            extra={"expense_id": stored.id, "actor_id": actor.id},
        )
        self._notify(NotificationKind.EXPENSE_SUBMITTED, stored, actor)
        return stored

    # Approval chain

    def approve(
        self,
        expense_id: str,
        approver: User,
        *,
        level: int | None = None,
        comment: str = "",
        modified_amount: Decimal | None = None,
        modification_reason: str | None = None,
    ) -> Expense:
        """Record the pending level's approval, optionally changing the amount."""

        if modified_amount is not None:
            if modified_amount < 0:
                raise ValidationFailure("modifiedAmount cannot be negative")
            if not (modification_reason and modification_reason.strip()):
                raise ValidationFailure("A modification reason is required to change the amount")
        action = ApprovalAction.APPROVE if modified_amount is None else ApprovalAction.MODIFY
        return self._decide(
            expense_id,
            approver,
            action,
            level=level,
            comment=comment,
            modified_amount=modified_amount,
            modification_reason=modification_reason,
        )

    def reject(
        self, expense_id: str, approver: User, *, comment: str, level: int | None = None
    ) -> Expense:
        """Reject the expense at the pending level; rejection is terminal."""

        if not (comment and comment.strip()):
            raise ValidationFailure("A comment is required to reject an expense")
        return self._decide(
            expense_id, approver, ApprovalAction.REJECT, level=level, comment=comment
        )

    def _decide(
        self,
        expense_id: str,
        approver: User,
        action: ApprovalAction,
        *,
        level: int | None,
        comment: str,
        modified_amount: Decimal | None = None,
        modification_reason: str | None = None,
    ) -> Expense:
        check_id(expense_id)
        with LogContext.bind(actor_id=approver.id, expense_id=expense_id):
            with self._expense_lock(expense_id):
                expense = self.expenses.get(expense_id)
                approver_level = self._approver_level(approver, level)
                self._check_replay(expense, approver, approver_level, action)
                self._check_pending(expense, approver, approver_level)

                previous_amount = expense.amount
                new_amount = modified_amount if modified_amount is not None else expense.amount
                record = ApprovalRecord(
                    approver_id=approver.id,
                    level=approver_level,
                    action=action,
                    comment=comment,
                    amount_at_decision=new_amount,
                    previous_amount=previous_amount if modified_amount is not None else None,
                    modification_reason=modification_reason,
                    timestamp=self.clock(),
                )
                updates: dict[str, Any] = {
                    "approval_history": (*expense.approval_history, record)
                }
                if modified_amount is not None:
                    updates["amount"] = new_amount
                    updates["modification_reason"] = modification_reason
                updated = expense.model_copy(update=updates)
                updated = updated.model_copy(update={"status": derive_status(updated)})
                stored = self.expenses.replace(updated, expected_version=expense.version)
                if stored.status == ExpenseStatus.APPROVED:
                    stored = self._record_budget(stored)

            logger.info(
                "Expense %s %s at level %s -> %s",
                stored.expense_number,
                action.value,
                approver_level,
                stored.status.value,
            )

        if stored.status == ExpenseStatus.REJECTED:
            kind = NotificationKind.EXPENSE_REJECTED
        elif stored.status == ExpenseStatus.APPROVED:
            kind = NotificationKind.EXPENSE_FULLY_APPROVED
        else:
            kind = NotificationKind.EXPENSE_APPROVED
        self._notify(kind, stored, approver, level=approver_level, comment=comment or None)
        return stored

    def _approver_level(self, approver: User, level: int | None) -> int:
        if not approver.is_active:
            raise PermissionDenied("User account is inactive")
        approver_level = approval_level_for(approver.role)
        if approver_level is None:
            raise PermissionDenied(f"Role {approver.role.value} cannot approve expenses")
        if level is not None and level != approver_level:
            raise PermissionDenied(
                f"Role {approver.role.value} decides level {approver_level}, not level {level}"
            )
        return approver_level

    @staticmethod
    def _check_replay(
        expense: Expense, approver: User, level: int, action: ApprovalAction
    ) -> None:
        if any(record.matches(approver.id, level, action) for record in expense.approval_history):
            raise AlreadyDecided(
                f"{approver.id} already recorded this decision at level {level}"
                f" for {expense.expense_number}"
            )

    def _check_pending(self, expense: Expense, approver: User, level: int) -> None:
        pending = expense.pending_level
        if not expense.is_active or expense.status.is_terminal or pending is None:
            raise InvalidTransition(
                f"Expense {expense.expense_number} is {expense.status.value}"
                " and awaits no approval"
            )
        if not self.security.can_access_site(approver, expense.site_id):
            raise PermissionDenied("You can only act on expenses of your assigned site")
        if level < pending:
            raise InvalidTransition(
                f"Level {level} has already been decided for {expense.expense_number}"
            )
        if level > pending:
            raise PermissionDenied(
                f"Expense {expense.expense_number} is awaiting level {pending} approval"
            )

    def _record_budget(self, expense: Expense) -> Expense:
        if expense.budget_recorded:
            return expense
        self.budget.record_approved(expense.site_id, expense.id, expense.amount, self._today())
        return self.expenses.replace(
            expense.model_copy(update={"budget_recorded": True}),
            expected_version=expense.version,
        )

    def reconcile_budget(self, expense_id: str) -> Expense:
        """Count a fully approved expense whose budget update did not complete."""

        with self._expense_lock(expense_id):
            expense = self.expenses.get(expense_id)
            if not expense.is_fully_approved:
                raise InvalidTransition(
                    f"Expense {expense.expense_number} is not fully approved"
                )
            return self._record_budget(expense)

    # Payment

    def mark_reimbursed(
        self, expense_id: str, actor: User, *, reference: str | None = None
    ) -> Expense:
        """Move an approved expense to ``reimbursed``."""

        self._require_permission(actor, Permission.PAY)
        with self._expense_lock(expense_id):
            expense = self.expenses.get(expense_id)
            if expense.status != ExpenseStatus.APPROVED:
                raise InvalidTransition(
                    f"Expense {expense.expense_number} is {expense.status.value};"
                    " only approved expenses can be reimbursed"
                )
            reimbursement = expense.reimbursement.model_copy(
                update={
                    "reimbursed_at": self.clock(),
                    "reimbursed_by": actor.id,
                    "reference": reference,
                }
            )
            updated = expense.model_copy(update={"reimbursement": reimbursement})
            stored = self.expenses.replace(
                updated.model_copy(update={"status": derive_status(updated)}),
                expected_version=expense.version,
            )
        logger.info(
            "Expense %s reimbursed",
            stored.expense_number,
            extra={"expense_id": stored.id, "actor_id": actor.id},
        )
        self._notify(NotificationKind.EXPENSE_REIMBURSED, stored, actor)
        return stored

    def record_payment(
        self,
        expense_id: str,
        actor: User,
        *,
        payment_amount: Decimal | None = None,
        payment_date: date | None = None,
    ) -> Expense:
        """Close out a reimbursed expense with its payment details."""

        self._require_permission(actor, Permission.PAY)
        if payment_amount is not None and payment_amount < 0:
            raise ValidationFailure("paymentAmount cannot be negative")
        with self._expense_lock(expense_id):
            expense = self.expenses.get(expense_id)
            if expense.status != ExpenseStatus.REIMBURSED:
                raise InvalidTransition(
                    f"Expense {expense.expense_number} is {expense.status.value};"
                    " payment can only be recorded after reimbursement"
                )
            reimbursement = expense.reimbursement.model_copy(
                update={
                    "payment_amount": (
                        payment_amount if payment_amount is not None else expense.amount
                    ),
                    "payment_date": payment_date or self._today(),
                    "processed_by": actor.id,
                }
            )
            updated = expense.model_copy(update={"reimbursement": reimbursement})
            stored = self.expenses.replace(
                updated.model_copy(update={"status": derive_status(updated)}),
                expected_version=expense.version,
            )
        logger.info(
            "Payment recorded for expense %s",
            stored.expense_number,
            extra={"expense_id": stored.id, "actor_id": actor.id},
        )
        self._notify(NotificationKind.PAYMENT_PROCESSED, stored, actor)
        return stored

    # Lifecycle and queries

    def archive(self, expense_id: str, actor: User) -> Expense:
        """Soft-delete an expense; its history stays readable."""

        with self._expense_lock(expense_id):
            expense = self.expenses.get(expense_id)
            if actor.role != UserRole.ADMIN:
                self._require_owner(expense, actor)
            if not expense.is_active:
                return expense
            if expense.status not in ARCHIVABLE_STATUSES:
                raise InvalidTransition(
                    f"Expense {expense.expense_number} is {expense.status.value}"
                    " and cannot be archived"
                )
            stored = self.expenses.replace(
                expense.model_copy(update={"is_active": False}),
                expected_version=expense.version,
            )
        logger.info(
            "Archived expense %s",
            stored.expense_number,
            extra={"expense_id": stored.id, "actor_id": actor.id},
        )
        return stored

    def get(self, expense_id: str, viewer: User) -> Expense:
        expense = self.expenses.get(expense_id)
        if not self.security.can_view(viewer, expense):
            raise PermissionDenied("You cannot view this expense")
        return expense

    def pending_for(self, user: User) -> list[Expense]:
        """Expenses awaiting ``user``'s decision, scoped to what they may see."""

        return self.security.scope_pending(
            user, self.expenses.filter(lambda expense: expense.pending_level is not None)
        )

    # Helpers

    def _require_permission(self, actor: User, permission: Permission) -> None:
        role = self.security.roles[actor.role]
        if not actor.is_active or not role.can(permission):
            raise PermissionDenied(
                f"Role {actor.role.value} lacks the {permission.value} permission"
            )

    @staticmethod
    def _require_owner(expense: Expense, actor: User) -> None:
        if expense.submitter_id != actor.id:
            raise PermissionDenied("Only the submitter can change this expense")

    def _recipients(self, expense: Expense, actor: User) -> tuple[str, ...]:
        recipients = [expense.submitter_id]
        pending = expense.pending_level
        if pending is not None:
            for user in self.users.users.values():
                if (
                    user.is_active
                    and ROLE_APPROVAL_LEVELS.get(user.role) == pending
                    and self.security.can_access_site(user, expense.site_id)
                ):
                    recipients.append(user.id)
        return tuple(dict.fromkeys(rid for rid in recipients if rid != actor.id))

    def _notify(
        self,
        kind: NotificationKind,
        expense: Expense,
        actor: User,
        *,
        level: int | None = None,
        comment: str | None = None,
    ) -> None:
        event = NotificationEvent(
            kind=kind,
            expense_id=expense.id,
            expense_number=expense.expense_number,
            status=expense.status,
            amount=expense.amount,
            site_id=expense.site_id,
            actor_id=actor.id,
            recipient_ids=self._recipients(expense, actor),
            level=level,
            comment=comment,
            timestamp=self.clock(),
        )
        try:
            self.dispatcher.dispatch(event)
        except Exception as exc:
            logger.exception(
                "Notification %s failed for expense %s",
                kind.value,
                expense.expense_number,
                extra={"expense_id": expense.id},
            )
            self.failed_notifications.append(FailedNotification(event=event, error=str(exc)))
