"""Expense Portal - approval workflow and site budget policy for expense claims."""

from .budget import BudgetAlertLevel, BudgetSummary, BudgetTracker, classify
from .config import Settings, load_settings
from .errors import (
    AlreadyDecided,
    AuthenticationRequired,
    CashLimitExceeded,
    CategoryLimitExceeded,
    DateRestricted,
    DuplicateRecord,
    DuplicateSuspected,
    ExpensePortalError,
    InvalidIdentifier,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    PersistenceFailure,
    PolicyViolation,
    ValidationFailure,
    WorkflowError,
    error_response,
)
from .logging_config import LogContext, StructuredFormatter, configure_logging
from .models import (
    ApprovalAction,
    ApprovalRecord,
    Budget,
    Currency,
    Expense,
    ExpenseCategory,
    ExpenseRequest,
    ExpenseStatus,
    PaymentMethod,
    Policy,
    Priority,
    Site,
    SiteStatistics,
    User,
    UserRole,
)
from .notifications import (
    NotificationDispatcher,
    NotificationEvent,
    NotificationKind,
    PreferenceAwareDispatcher,
    RecordingDispatcher,
)
from .policy import (
    PolicyContext,
    PolicyDecision,
    PolicyEngine,
    PolicyResult,
    PolicyRule,
    Severity,
)
from .policy_store import PolicyStore
from .policy_versioning import PolicyVersion, simulate_policy_change
from .repository import ExpenseRepository, SiteRepository, UserDirectory
from .security import SecurityModel, TokenDirectory
from .workflow import ApprovalWorkflow, derive_status, fold_status

__all__ = [
    "AlreadyDecided",
    "ApprovalAction",
    "ApprovalRecord",
    "ApprovalWorkflow",
    "AuthenticationRequired",
    "Budget",
    "BudgetAlertLevel",
    "BudgetSummary",
    "BudgetTracker",
    "CashLimitExceeded",
    "CategoryLimitExceeded",
    "Currency",
    "DateRestricted",
    "DuplicateRecord",
    "DuplicateSuspected",
    "Expense",
    "ExpenseCategory",
    "ExpensePortalError",
    "ExpenseRepository",
    "ExpenseRequest",
    "ExpenseStatus",
    "InvalidIdentifier",
    "InvalidTransition",
    "LogContext",
    "NotFound",
    "NotificationDispatcher",
    "NotificationEvent",
    "NotificationKind",
    "PaymentMethod",
    "PermissionDenied",
    "PersistenceFailure",
    "Policy",
    "PolicyContext",
    "PolicyDecision",
    "PolicyEngine",
    "PolicyResult",
    "PolicyRule",
    "PolicyStore",
    "PolicyVersion",
    "PolicyViolation",
    "PreferenceAwareDispatcher",
    "Priority",
    "RecordingDispatcher",
    "SecurityModel",
    "Settings",
    "Severity",
    "Site",
    "SiteRepository",
    "SiteStatistics",
    "StructuredFormatter",
    "TokenDirectory",
    "User",
    "UserDirectory",
    "UserRole",
    "ValidationFailure",
    "WorkflowError",
    "classify",
    "configure_logging",
    "derive_status",
    "error_response",
    "fold_status",
    "load_settings",
    "simulate_policy_change",
    "__version__",
]
__version__ = "0.1.0"
