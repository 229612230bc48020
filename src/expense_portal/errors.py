"""Typed errors raised by the portal core and their wire translation.

Every error carries a stable machine-readable ``code`` and the HTTP-style
``status`` it surfaces as. Business logic raises these; only
:func:`error_response` turns them into the ``{success, errorCode, message}``
envelope returned to callers.

    ExpensePortalError (APP_ERROR, 400)
    +-- ValidationFailure (VALIDATION_ERROR, 400)
    +-- InvalidIdentifier (INVALID_ID, 400)
    +-- DuplicateRecord (DUPLICATE, 409)
    +-- AuthenticationRequired (AUTH_REQUIRED, 401)
    +-- PermissionDenied (PERMISSION_DENIED, 403)
    +-- NotFound (NOT_FOUND, 404)
    +-- PolicyViolation (400)
    |   +-- DateRestricted (DATE_RESTRICTED)
    |   +-- DuplicateSuspected (DUPLICATE_SUSPECTED)
    |   +-- CategoryLimitExceeded (CATEGORY_LIMIT_EXCEEDED)
    |   +-- CashLimitExceeded (CASH_LIMIT_EXCEEDED)
    +-- WorkflowError (400)
    |   +-- AlreadyDecided (ALREADY_DECIDED)
    |   +-- InvalidTransition (INVALID_TRANSITION)
    +-- PersistenceFailure (INTERNAL_ERROR, 500)
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal server error"


class ExpensePortalError(Exception):
    """Base class for all portal errors."""

    code: str = "APP_ERROR"
    status: int = 400
    default_message: str = "Unexpected error"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ValidationFailure(ExpensePortalError):
    code = "VALIDATION_ERROR"
    default_message = "Invalid input"


class InvalidIdentifier(ExpensePortalError):
    code = "INVALID_ID"
    default_message = "Invalid identifier provided"


class DuplicateRecord(ExpensePortalError):
    code = "DUPLICATE"
    status = 409
    default_message = "Record already exists"


class AuthenticationRequired(ExpensePortalError):
    code = "AUTH_REQUIRED"
    status = 401
    default_message = "Authentication required"


class PermissionDenied(ExpensePortalError):
    code = "PERMISSION_DENIED"
    status = 403
    default_message = "You do not have permission to perform this action"


class NotFound(ExpensePortalError):
    code = "NOT_FOUND"
    status = 404
    default_message = "Resource not found"


class PolicyViolation(ExpensePortalError):
    """A submission broke a site policy rule; the submitter can correct it."""

    rule_id: str = "policy"

    @property
    def reason(self) -> str:
        return self.message


class DateRestricted(PolicyViolation):
    code = "DATE_RESTRICTED"
    rule_id = "date_restriction"
    default_message = "Expenses dated on this weekday are not accepted"


class DuplicateSuspected(PolicyViolation):
    code = "DUPLICATE_SUSPECTED"
    rule_id = "duplicate_detection"
    default_message = "A matching expense already exists"


class CategoryLimitExceeded(PolicyViolation):
    code = "CATEGORY_LIMIT_EXCEEDED"
    rule_id = "category_limit"
    default_message = "Amount exceeds the category limit"


class CashLimitExceeded(PolicyViolation):
    code = "CASH_LIMIT_EXCEEDED"
    rule_id = "cash_limit"
    default_message = "Cash amount exceeds the site cash ceiling"


class WorkflowError(ExpensePortalError):
    """The requested transition conflicts with the expense's history."""


class AlreadyDecided(WorkflowError):
    code = "ALREADY_DECIDED"
    default_message = "This decision has already been recorded"


class InvalidTransition(WorkflowError):
    code = "INVALID_TRANSITION"
    default_message = "The expense cannot make this transition"


class PersistenceFailure(ExpensePortalError):
    code = "INTERNAL_ERROR"
    status = 500
    default_message = INTERNAL_ERROR_MESSAGE


def _validation_message(exc: ValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        text = error.get("msg", "Invalid value")
        messages.append(f"{location}: {text}" if location else text)
    return ", ".join(messages) or "Invalid input"


def error_response(
    exc: BaseException, *, context: dict[str, Any] | None = None
) -> tuple[int, dict[str, Any]]:
    """Translate an exception into ``(status, envelope)``.

    Known portal errors keep their code and message. Infrastructure failures
    and unknown exceptions are logged with full context and answered with a
    generic message.
    """

    log_context = dict(context or {})
    if isinstance(exc, ExpensePortalError) and exc.status < 500:
        status, code, message = exc.status, exc.code, exc.message
        logger.warning(
            "Request failed with %s",
            code,
            extra={"error_code": code, "status": status, **log_context},
        )
    elif isinstance(exc, ValidationError):
        status, code, message = 400, ValidationFailure.code, _validation_message(exc)
        logger.warning(
            "Request failed validation",
            extra={"error_code": code, "status": status, **log_context},
        )
    else:
        status = 500
        code = PersistenceFailure.code
        message = INTERNAL_ERROR_MESSAGE
        logger.error(
            "Unhandled error: %s",
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
            extra={"error_code": code, "status": status, **log_context},
        )
    return status, {"success": False, "errorCode": code, "message": message}
