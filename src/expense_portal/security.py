"""Authorization model: roles, approval capabilities and query scoping."""

from __future__ import annotations

import secrets
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from .errors import AuthenticationRequired, PermissionDenied
from .models import (
    DIRECTOR_LEVEL,
    FINANCE_LEVEL,
    PENDING_LEVELS,
    Expense,
    ExpenseStatus,
    User,
    UserRole,
)
from .repository import UserDirectory


class Permission(StrEnum):
    """Supported permissions for API endpoints."""

    VIEW = "view"
    SUBMIT = "submit"
    APPROVE = "approve"
    PAY = "pay"
    CONFIGURE = "configure"


@dataclass(frozen=True)
class Role:
    """Role definition including its permissions."""

    name: UserRole
    permissions: frozenset[Permission]

    def can(self, permission: Permission) -> bool:
        """Return whether the role grants a permission."""

        return permission in self.permissions


_APPROVER = frozenset({Permission.VIEW, Permission.SUBMIT, Permission.APPROVE})

DEFAULT_ROLES: dict[UserRole, Role] = {
    UserRole.SUBMITTER: Role(
        name=UserRole.SUBMITTER, permissions=frozenset({Permission.VIEW, Permission.SUBMIT})
    ),
    UserRole.L1_APPROVER: Role(name=UserRole.L1_APPROVER, permissions=_APPROVER),
    UserRole.L2_APPROVER: Role(name=UserRole.L2_APPROVER, permissions=_APPROVER),
    UserRole.L3_APPROVER: Role(name=UserRole.L3_APPROVER, permissions=_APPROVER),
    UserRole.FINANCE: Role(
        name=UserRole.FINANCE,
        permissions=frozenset(
            {Permission.VIEW, Permission.APPROVE, Permission.PAY, Permission.CONFIGURE}
        ),
    ),
    UserRole.DIRECTOR: Role(
        name=UserRole.DIRECTOR,
        permissions=frozenset({Permission.VIEW, Permission.APPROVE, Permission.CONFIGURE}),
    ),
    UserRole.ADMIN: Role(name=UserRole.ADMIN, permissions=frozenset(Permission)),
}

ROLE_APPROVAL_LEVELS: dict[UserRole, int] = {
    UserRole.L1_APPROVER: 1,
    UserRole.L2_APPROVER: 2,
    UserRole.L3_APPROVER: 3,
    UserRole.FINANCE: FINANCE_LEVEL,
    UserRole.DIRECTOR: DIRECTOR_LEVEL,
}
"""Capability table: the single approval level each approver role decides."""

SITE_SCOPED_ROLES = frozenset({UserRole.SUBMITTER, UserRole.L1_APPROVER})
"""Roles restricted to their own site; everyone else sees all sites."""


API_ENDPOINT_PERMISSIONS: dict[str, Permission] = {
    "POST /expenses/create": Permission.SUBMIT,
    "GET /expenses/pending-approvals": Permission.APPROVE,
    "GET /expenses/:id": Permission.VIEW,
    "POST /expenses/:id/approve": Permission.APPROVE,
    "POST /expenses/:id/reject": Permission.APPROVE,
    "POST /expenses/:id/reimburse": Permission.PAY,
    "POST /expenses/:id/payment": Permission.PAY,
    "GET /sites/:id/policy": Permission.VIEW,
    "PUT /sites/:id/policy": Permission.CONFIGURE,
    "GET /sites/:id/budget": Permission.VIEW,
    "GET /sites/budget-alerts": Permission.VIEW,
}


def approval_level_for(role: UserRole) -> int | None:
    """Return the approval level a role decides, or None for non-approvers."""

    return ROLE_APPROVAL_LEVELS.get(role)


def pending_statuses_for(role: UserRole) -> frozenset[ExpenseStatus]:
    """Statuses whose pending decision belongs to ``role``."""

    level = approval_level_for(role)
    if level is None:
        return frozenset()
    return frozenset(status for status, pending in PENDING_LEVELS.items() if pending == level)


class AuditEventType(StrEnum):
    """Types of audit events recorded by the system."""

    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"


@dataclass
class AuditLogEvent:
    """Single audit log entry capturing auth-related activity."""

    event_type: AuditEventType
    actor: str
    subject: str | None
    outcome: str
    metadata: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class AuditLog:
    """In-memory audit log capturing authentication and authorization events."""

    events: list[AuditLogEvent] = field(default_factory=list)

    def record(
        self,
        event_type: AuditEventType,
        actor: str,
        outcome: str,
        subject: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEvent:
        """Record a new audit event."""

        event = AuditLogEvent(
            event_type=event_type,
            actor=actor,
            subject=subject,
            outcome=outcome,
            metadata=metadata or {},
        )
        self.events.append(event)
        return event

    def filter_by_type(self, event_type: AuditEventType) -> list[AuditLogEvent]:
        """Return audit events filtered by type."""

        return [event for event in self.events if event.event_type == event_type]


@dataclass
class TokenDirectory:
    """Resolve bearer tokens to active users."""

    users: UserDirectory
    tokens: dict[str, str] = field(default_factory=dict)
    audit_log: AuditLog = field(default_factory=AuditLog)

    def issue(self, user_id: str) -> str:
        self.users.get(user_id)
        token = secrets.token_urlsafe(24)
        self.tokens[token] = user_id
        return token

    def revoke(self, token: str) -> None:
        self.tokens.pop(token, None)

    def resolve(self, token: str | None) -> User:
        user_id = self.tokens.get(token or "")
        if user_id is None:
            self.audit_log.record(
                AuditEventType.AUTHENTICATION, actor="anonymous", outcome="denied"
            )
            raise AuthenticationRequired()
        user = self.users.get(user_id)
        if not user.is_active:
            self.audit_log.record(
                AuditEventType.AUTHENTICATION, actor=user.id, outcome="inactive"
            )
            raise AuthenticationRequired("User account is inactive")
        return user


class SecurityModel:
    """Maps roles to permissions and scopes queries to what a user may see."""

    def __init__(
        self,
        roles: dict[UserRole, Role] | None = None,
        endpoint_permissions: dict[str, Permission] | None = None,
        audit_log: AuditLog | None = None,
    ) -> None:
        self.roles = roles or DEFAULT_ROLES
        self.endpoint_permissions = endpoint_permissions or API_ENDPOINT_PERMISSIONS
        self.audit_log = audit_log or AuditLog()

    def required_permission(self, endpoint: str) -> Permission:
        """Return the permission required for an API endpoint."""

        if endpoint not in self.endpoint_permissions:
            raise KeyError(f"No permission mapped for endpoint '{endpoint}'")
        return self.endpoint_permissions[endpoint]

    def authorize(self, user: User, endpoint: str) -> bool:
        """Return whether ``user`` may call ``endpoint``; the check is audited."""

        required = self.required_permission(endpoint)
        allowed = user.is_active and self.roles[user.role].can(required)
        self.audit_log.record(
            event_type=AuditEventType.AUTHORIZATION,
            actor=user.id,
            outcome="allowed" if allowed else "denied",
            metadata={
                "role": user.role.value,
                "endpoint": endpoint,
                "required_permission": required.value,
            },
        )
        return allowed

    def require(self, user: User, endpoint: str) -> None:
        if not self.authorize(user, endpoint):
            raise PermissionDenied()

    @staticmethod
    def can_access_site(user: User, site_id: str) -> bool:
        if user.role in SITE_SCOPED_ROLES:
            return user.site_id is not None and user.site_id == site_id
        return True

    def require_site(self, user: User, site_id: str) -> None:
        if user.role in SITE_SCOPED_ROLES and user.site_id is None:
            raise PermissionDenied("No site assigned to user")
        if not self.can_access_site(user, site_id):
            raise PermissionDenied("You can only act on expenses of your assigned site")

    def can_view(self, user: User, expense: Expense) -> bool:
        if user.role == UserRole.SUBMITTER:
            return expense.submitter_id == user.id
        return self.can_access_site(user, expense.site_id)

    def scope_pending(self, user: User, expenses: Iterable[Expense]) -> list[Expense]:
        """Filter ``expenses`` to those awaiting ``user``'s decision."""

        statuses = pending_statuses_for(user.role)
        return [
            expense
            for expense in expenses
            if expense.is_active
            and expense.status in statuses
            and self.can_access_site(user, expense.site_id)
        ]
