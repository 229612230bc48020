"""REST surface for the expense portal.

Routes translate HTTP bodies into workflow calls and back; every error goes
through :func:`expense_portal.errors.error_response` so clients always see the
``{success, errorCode, message}`` envelope.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .budget import BudgetSummary, BudgetTracker
from .config import Settings, load_settings
from .errors import ExpensePortalError, PermissionDenied, ValidationFailure, error_response
from .logging_config import LogContext, configure_logging
from .models import (
    Currency,
    Expense,
    ExpenseRequest,
    PaymentMethod,
    Priority,
    Site,
    User,
)
from .notifications import NotificationDispatcher
from .policy import PolicyEngine
from .policy_store import PolicyStore, default_policy_path
from .policy_versioning import policy_config
from .repository import ExpenseRepository, SiteRepository, UserDirectory
from .security import AuditLog, SecurityModel, TokenDirectory
from .workflow import ApprovalWorkflow

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class PortalServices:
    """The collaborators behind one running portal."""

    settings: Settings
    sites: SiteRepository
    users: UserDirectory
    expenses: ExpenseRepository
    policies: PolicyStore
    budget: BudgetTracker
    security: SecurityModel
    tokens: TokenDirectory
    workflow: ApprovalWorkflow
    clock: Callable[[], datetime] = _utcnow

    @classmethod
    def build(
        cls,
        settings: Settings | None = None,
        *,
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> PortalServices:
        settings = settings or load_settings()
        sites = SiteRepository()
        users = UserDirectory()
        expenses = ExpenseRepository(prefix=settings.expense_number_prefix)
        if settings.policy_config_path is not None or default_policy_path() is not None:
            policies = PolicyStore.from_file(sites, settings.policy_config_path)
        else:
            policies = PolicyStore(sites=sites)
        audit_log = AuditLog()
        security = SecurityModel(audit_log=audit_log)
        budget = BudgetTracker(sites)
        workflow = ApprovalWorkflow(
            expenses,
            sites,
            users=users,
            policy_engine=PolicyEngine(source=expenses.for_submitter),
            budget=budget,
            dispatcher=dispatcher,
            security=security,
            clock=clock,
        )
        return cls(
            settings=settings,
            sites=sites,
            users=users,
            expenses=expenses,
            policies=policies,
            budget=budget,
            security=security,
            tokens=TokenDirectory(users, audit_log=audit_log),
            workflow=workflow,
            clock=clock,
        )

    def register_site(self, site: Site, *, apply_defaults: bool = True) -> Site:
        return self.policies.register_site(site, apply_defaults=apply_defaults)

    def register_user(self, user: User) -> str:
        """Add a user and return a bearer token for them."""

        self.users.add(user)
        return self.tokens.issue(user.id)


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateExpenseBody(_WireModel):
    title: str
    description: str = ""
    category: str
    amount: Decimal
    currency: Currency = Currency.INR
    site_id: str
    department: str
    expense_date: date
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    priority: Priority | None = None
    attachments: list[str] = Field(default_factory=list)
    escalate_to_director: bool = False
    as_draft: bool = False

    def to_request(self) -> ExpenseRequest:
        return ExpenseRequest.model_validate(self.model_dump(exclude={"as_draft"}))


class ApproveBody(_WireModel):
    level: int | None = None
    approver_id: str | None = None
    comment: str = Field(default="", validation_alias=AliasChoices("comments", "comment"))
    modified_amount: Decimal | None = None
    modification_reason: str | None = None


class RejectBody(_WireModel):
    level: int | None = None
    approver_id: str | None = None
    comment: str = Field(..., validation_alias=AliasChoices("comments", "comment"))


class ReimburseBody(_WireModel):
    reference: str | None = None


class PaymentBody(_WireModel):
    payment_amount: Decimal | None = None
    payment_date: date | None = None


def _camelize(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            to_camel(key) if isinstance(key, str) and "_" in key else key: _camelize(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_camelize(item) for item in value]
    return value


def expense_payload(expense: Expense) -> dict[str, Any]:
    data = expense.model_dump(mode="json", exclude={"budget_recorded"})
    data["pendingLevel"] = expense.pending_level
    return _camelize(data)


def policy_payload(services: PortalServices, site_id: str) -> dict[str, Any]:
    data = _camelize(policy_config(services.policies.get_policy(site_id)))
    data["version"] = services.policies.current_version(site_id).label
    return data


def budget_payload(summary: BudgetSummary) -> dict[str, Any]:
    return _camelize(
        {
            "site_id": summary.site_id,
            "site_code": summary.site_code,
            "monthly_budget": str(summary.monthly_budget),
            "monthly_spend": str(summary.monthly_spend),
            "remaining": str(summary.remaining),
            "utilization": str(summary.utilization),
            "projected_utilization": str(summary.projected_utilization),
            "alert_level": summary.alert_level.value,
            "over_alert_threshold": summary.over_alert_threshold,
        }
    )


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


def _check_approver(body: ApproveBody | RejectBody, user: User) -> None:
    """The authenticated user decides; a body naming someone else is refused."""

    if body.approver_id is not None and body.approver_id != user.id:
        raise PermissionDenied("approverId does not match the authenticated user")


_bearer = HTTPBearer(auto_error=False)


def create_app(services: PortalServices | None = None) -> FastAPI:
    """Build the FastAPI application around ``services``.

    When no services are given they are built from the loaded settings, and
    logging is configured from the same settings.
    """

    if services is None:
        services = PortalServices.build()
        configure_logging(
            level=services.settings.logging.level,
            structured=services.settings.logging.structured,
        )
    app = FastAPI(title=services.settings.app_name)
    app.state.services = services

    def current_user(
        credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    ) -> User:
        return services.tokens.resolve(credentials.credentials if credentials else None)

    @app.middleware("http")
    async def bind_request_context(request: Request, call_next):
        correlation_id = request.headers.get("X-Request-ID") or uuid4().hex
        with LogContext.bind(correlation_id=correlation_id):
            response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    def _error(request: Request, exc: BaseException) -> JSONResponse:
        status, envelope = error_response(
            exc, context={"path": request.url.path, "method": request.method}
        )
        return JSONResponse(status_code=status, content=envelope)

    @app.exception_handler(ExpensePortalError)
    async def handle_portal_error(request: Request, exc: ExpensePortalError) -> JSONResponse:
        return _error(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
            messages.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
        return _error(request, ValidationFailure(", ".join(messages) or None))

    @app.exception_handler(ValidationError)
    async def handle_model_validation(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(request, exc)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        return _error(request, exc)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/expenses/create", status_code=201)
    def create_expense(body: CreateExpenseBody, user: User = Depends(current_user)):
        services.security.require(user, "POST /expenses/create")
        expense = services.workflow.create(body.to_request(), user, as_draft=body.as_draft)
        return _ok(expense_payload(expense))

    @app.get("/expenses/pending-approvals")
    def pending_approvals(user: User = Depends(current_user)):
        services.security.require(user, "GET /expenses/pending-approvals")
        return _ok([expense_payload(expense) for expense in services.workflow.pending_for(user)])

    @app.get("/expenses/{expense_id}")
    def get_expense(expense_id: str, user: User = Depends(current_user)):
        services.security.require(user, "GET /expenses/:id")
        return _ok(expense_payload(services.workflow.get(expense_id, user)))

    @app.post("/expenses/{expense_id}/approve")
    def approve_expense(
        expense_id: str,
        body: ApproveBody | None = None,
        user: User = Depends(current_user),
    ):
        services.security.require(user, "POST /expenses/:id/approve")
        body = body or ApproveBody()
        _check_approver(body, user)
        expense = services.workflow.approve(
            expense_id,
            user,
            level=body.level,
            comment=body.comment,
            modified_amount=body.modified_amount,
            modification_reason=body.modification_reason,
        )
        return _ok(expense_payload(expense))

    @app.post("/expenses/{expense_id}/reject")
    def reject_expense(expense_id: str, body: RejectBody, user: User = Depends(current_user)):
        services.security.require(user, "POST /expenses/:id/reject")
        _check_approver(body, user)
        expense = services.workflow.reject(
            expense_id, user, comment=body.comment, level=body.level
        )
        return _ok(expense_payload(expense))

    @app.post("/expenses/{expense_id}/reimburse")
    def reimburse_expense(
        expense_id: str,
        body: ReimburseBody | None = None,
        user: User = Depends(current_user),
    ):
        services.security.require(user, "POST /expenses/:id/reimburse")
        body = body or ReimburseBody()
        expense = services.workflow.mark_reimbursed(expense_id, user, reference=body.reference)
        return _ok(expense_payload(expense))

    @app.post("/expenses/{expense_id}/payment")
    def record_payment(
        expense_id: str,
        body: PaymentBody | None = None,
        user: User = Depends(current_user),
    ):
        services.security.require(user, "POST /expenses/:id/payment")
        body = body or PaymentBody()
        expense = services.workflow.record_payment(
            expense_id,
            user,
            payment_amount=body.payment_amount,
            payment_date=body.payment_date,
        )
        return _ok(expense_payload(expense))

    @app.get("/sites/budget-alerts")
    def budget_alerts(user: User = Depends(current_user)):
        services.security.require(user, "GET /sites/budget-alerts")
        today = services.clock().date()
        sites = [
            site
            for site in services.budget.sites_with_alerts(as_of=today)
            if services.security.can_access_site(user, site.id)
        ]
        return _ok([budget_payload(services.budget.summary(site.id, today)) for site in sites])

    @app.get("/sites/{site_id}/policy")
    def get_policy(site_id: str, user: User = Depends(current_user)):
        services.security.require(user, "GET /sites/:id/policy")
        services.security.require_site(user, site_id)
        return _ok(policy_payload(services, site_id))

    @app.put("/sites/{site_id}/policy")
    def put_policy(
        site_id: str,
        payload: Any = Body(...),
        user: User = Depends(current_user),
    ):
        services.security.require(user, "PUT /sites/:id/policy")
        if not isinstance(payload, dict):
            raise ValidationFailure("Policy payload must be a JSON object")
        services.policies.update_policy(site_id, payload)
        return _ok(policy_payload(services, site_id))

    @app.get("/sites/{site_id}/budget")
    def get_budget(site_id: str, user: User = Depends(current_user)):
        services.security.require(user, "GET /sites/:id/budget")
        services.security.require_site(user, site_id)
        return _ok(budget_payload(services.budget.summary(site_id, services.clock().date())))

    return app
