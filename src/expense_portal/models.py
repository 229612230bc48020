"""Core models for expenses, sites, policies and approval history."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

WEEKDAY_NAMES = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


class ExpenseCategory(str, Enum):
    """Categories an expense can be filed under."""

    TRAVEL = "Travel"
    FOOD = "Food"
    ACCOMMODATION = "Accommodation"
    VEHICLE_KM = "Vehicle KM"
    FUEL = "Fuel"
    EQUIPMENT = "Equipment"
    MAINTENANCE = "Maintenance"
    OFFICE_SUPPLIES = "Office Supplies"
    MISCELLANEOUS = "Miscellaneous"

    @classmethod
    def parse(cls, value: object) -> ExpenseCategory:
        """Resolve a category from its value or a case-insensitive key.

        Policy documents key their maps by ``TRAVEL``/``travel``/``Travel`` or
        ``VEHICLE_KM``; all of them resolve to the same member.
        """

        if isinstance(value, cls):
            return value
        text = str(value).strip()
        normalized = text.replace(" ", "_").upper()
        for member in cls:
            if member.name == normalized or member.value.lower() == text.lower():
                return member
        raise ValueError(f"Unknown expense category: {value!r}")


class Currency(str, Enum):
    INR = "INR"
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"


class PaymentMethod(str, Enum):
    """How the submitter paid for the expense."""

    BANK_TRANSFER = "Bank Transfer"
    CASH = "Cash"
    CHEQUE = "Cheque"
    DIGITAL_WALLET = "Digital Wallet"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ExpenseStatus(str, Enum):
    """Lifecycle status of an expense."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED_L1 = "approved_l1"
    APPROVED_L2 = "approved_l2"
    APPROVED_L3 = "approved_l3"
    APPROVED_FINANCE = "approved_finance"
    APPROVED = "approved"
    REIMBURSED = "reimbursed"
    PAYMENT_PROCESSED = "payment_processed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ExpenseStatus.REJECTED, ExpenseStatus.PAYMENT_PROCESSED})


class UserRole(str, Enum):
    """Roles a portal user can hold."""

    SUBMITTER = "submitter"
    L1_APPROVER = "l1_approver"
    L2_APPROVER = "l2_approver"
    L3_APPROVER = "l3_approver"
    FINANCE = "finance"
    DIRECTOR = "director"
    ADMIN = "admin"


class ApprovalAction(str, Enum):
    """Decision recorded in the approval history."""

    APPROVE = "approve"
    REJECT = "reject"
    MODIFY = "modify"


FINANCE_LEVEL = 4
DIRECTOR_LEVEL = 5


class ApprovalRecord(BaseModel):
    """Immutable audit record for a single approval decision."""

    approver_id: str = Field(..., description="Identifier of the approver")
    level: int = Field(
        ..., ge=1, le=DIRECTOR_LEVEL, description="Approval level (4 = Finance, 5 = Director)"
    )
    action: ApprovalAction = Field(..., description="Decision taken at this level")
    comment: str = Field(default="", description="Approver comment")
    amount_at_decision: Decimal = Field(
        ..., ge=0, description="Expense amount after this decision was applied"
    )
    previous_amount: Decimal | None = Field(
        default=None, description="Amount before a modification, if any"
    )
    modification_reason: str | None = Field(
        default=None, description="Mandatory explanation for amount modifications"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the decision was recorded",
    )

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_decision_details(self) -> ApprovalRecord:
        if self.action == ApprovalAction.MODIFY and not (
            self.modification_reason and self.modification_reason.strip()
        ):
            msg = "Amount modifications require a modification reason"
            raise ValueError(msg)
        if self.action == ApprovalAction.REJECT and not self.comment.strip():
            msg = "Rejections require a comment"
            raise ValueError(msg)
        return self

    @property
    def advances(self) -> bool:
        """True when the record moves the expense to the next level."""

        return self.action in (ApprovalAction.APPROVE, ApprovalAction.MODIFY)

    def matches(self, approver_id: str, level: int, action: ApprovalAction) -> bool:
        """Return True when the record is a replay of the given decision."""

        if self.approver_id != approver_id or self.level != level:
            return False
        if action == ApprovalAction.REJECT:
            return self.action == ApprovalAction.REJECT
        return self.advances


class ReimbursementDetails(BaseModel):
    """Payment metadata filled in after full approval."""

    reimbursed_at: datetime | None = None
    reimbursed_by: str | None = None
    reference: str | None = None
    payment_amount: Decimal | None = Field(default=None, ge=0)
    payment_date: date | None = None
    processed_by: str | None = None


def _normalize_category_map(value: object, field_name: str) -> dict[ExpenseCategory, Decimal]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{field_name} must be a mapping of category to amount")
    normalized: dict[ExpenseCategory, Decimal] = {}
    for key, amount in value.items():
        if isinstance(amount, bool) or not isinstance(amount, (int, float, str, Decimal)):
            raise ValueError(f"{field_name}[{key}] must be a number")
        try:
            limit = Decimal(str(amount))
        except InvalidOperation as exc:
            raise ValueError(f"{field_name}[{key}] must be a number") from exc
        if limit < 0:
            raise ValueError(f"{field_name}[{key}] cannot be negative")
        normalized[ExpenseCategory.parse(key)] = limit
    return normalized


class Policy(BaseModel):
    """Per-site rule set constraining acceptable submissions."""

    duplicate_window_days: int = Field(default=30, ge=0)
    duplicate_amount_tolerance: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Maximum absolute amount difference treated as a duplicate",
    )
    per_category_limits: dict[ExpenseCategory, Decimal] = Field(default_factory=dict)
    cash_max: Decimal | None = Field(default=Decimal("2000"), ge=0)
    require_director_above: dict[ExpenseCategory, Decimal] = Field(default_factory=dict)
    weekend_disallow: frozenset[str] = Field(default_factory=frozenset)

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @field_validator("per_category_limits", mode="before")
    @classmethod
    def _coerce_limits(cls, value: object) -> dict[ExpenseCategory, Decimal]:
        return _normalize_category_map(value, "per_category_limits")

    @field_validator("require_director_above", mode="before")
    @classmethod
    def _coerce_thresholds(cls, value: object) -> dict[ExpenseCategory, Decimal]:
        return _normalize_category_map(value, "require_director_above")

    @field_validator("weekend_disallow", mode="before")
    @classmethod
    def _coerce_weekdays(cls, value: object) -> frozenset[str]:
        if value is None:
            return frozenset()
        if isinstance(value, str) or not hasattr(value, "__iter__"):
            raise ValueError("weekend_disallow must be a list of weekday names")
        days = {str(day).strip().lower() for day in value}
        unknown = days.difference(WEEKDAY_NAMES)
        if unknown:
            raise ValueError(f"Unknown weekday names: {sorted(unknown)}")
        return frozenset(days)

    def category_limit(self, category: ExpenseCategory) -> Decimal | None:
        return self.per_category_limits.get(category)

    def director_threshold(self, category: ExpenseCategory) -> Decimal | None:
        return self.require_director_above.get(category)

    def disallows(self, day: date) -> bool:
        """Return True when submissions dated on ``day`` are blocked."""

        return WEEKDAY_NAMES[day.weekday()] in self.weekend_disallow


class Budget(BaseModel):
    monthly: Decimal = Field(..., ge=0)
    yearly: Decimal = Field(..., ge=0)
    alert_threshold: Decimal = Field(default=Decimal("80"), ge=0, le=100)


class SiteStatistics(BaseModel):
    """Cached spend counters maintained by the budget tracker."""

    monthly_spend: Decimal = Field(default=Decimal("0"), ge=0)
    yearly_spend: Decimal = Field(default=Decimal("0"), ge=0)
    total_expenses: int = Field(default=0, ge=0)
    period_month: str | None = Field(
        default=None, description="Month (YYYY-MM) the monthly counter belongs to"
    )
    period_year: int | None = Field(
        default=None, description="Year the yearly counter belongs to"
    )
    counted_expense_ids: frozenset[str] = Field(default_factory=frozenset)


class Site(BaseModel):
    """A cost centre owning a budget and a policy."""

    id: str
    code: str
    name: str
    location: str | None = None
    budget: Budget
    statistics: SiteStatistics = Field(default_factory=SiteStatistics)
    policy: Policy = Field(default_factory=Policy)
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def _upper_code(cls, value: str) -> str:
        code = value.strip().upper()
        if not code or len(code) > 10:
            raise ValueError("Site code must be 1-10 characters")
        return code


class User(BaseModel):
    id: str
    name: str
    role: UserRole
    site_id: str | None = None
    email: str | None = None
    phone: str | None = None
    is_active: bool = True


class ExpenseRequest(BaseModel):
    """Submission payload for a new expense."""

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=1000)
    category: ExpenseCategory
    amount: Annotated[Decimal, Field(ge=0)]
    currency: Currency = Currency.INR
    site_id: str
    department: str = Field(..., min_length=1)
    expense_date: date
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    priority: Priority | None = None
    attachments: list[str] = Field(default_factory=list)
    escalate_to_director: bool = Field(
        default=False,
        description="Submitter asks for director review instead of a category-limit rejection",
    )

    @field_validator("category", mode="before")
    @classmethod
    def _parse_category(cls, value: object) -> ExpenseCategory:
        return ExpenseCategory.parse(value)


class Expense(BaseModel):
    """An expense claim moving through the approval chain."""

    id: str
    expense_number: str
    title: str
    description: str = ""
    category: ExpenseCategory
    amount: Annotated[Decimal, Field(ge=0)]
    original_amount: Annotated[Decimal, Field(ge=0)]
    currency: Currency = Currency.INR
    site_id: str
    submitter_id: str
    department: str
    expense_date: date
    submission_date: datetime | None = None
    status: ExpenseStatus = ExpenseStatus.DRAFT
    approval_history: tuple[ApprovalRecord, ...] = Field(default_factory=tuple)
    priority: Priority | None = None
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    attachments: tuple[str, ...] = Field(default_factory=tuple)
    escalate_to_director: bool = False
    requires_director_signoff: bool = False
    modification_reason: str | None = None
    budget_recorded: bool = False
    reimbursement: ReimbursementDetails = Field(default_factory=ReimbursementDetails)
    is_active: bool = True
    version: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_amount_provenance(self) -> Expense:
        if self.amount != self.original_amount and not self.modification_reason:
            msg = "amount differs from original_amount without a modification reason"
            raise ValueError(msg)
        return self

    @property
    def pending_level(self) -> int | None:
        """Approval level whose decision is awaited, if any."""

        return PENDING_LEVELS.get(self.status)

    @property
    def is_fully_approved(self) -> bool:
        return self.status in (
            ExpenseStatus.APPROVED,
            ExpenseStatus.REIMBURSED,
            ExpenseStatus.PAYMENT_PROCESSED,
        )


PENDING_LEVELS: dict[ExpenseStatus, int] = {
    ExpenseStatus.SUBMITTED: 1,
    ExpenseStatus.UNDER_REVIEW: 1,
    ExpenseStatus.APPROVED_L1: 2,
    ExpenseStatus.APPROVED_L2: 3,
    ExpenseStatus.APPROVED_L3: FINANCE_LEVEL,
    ExpenseStatus.APPROVED_FINANCE: DIRECTOR_LEVEL,
}
