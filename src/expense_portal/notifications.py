"""Notification contract used by the approval workflow, plus user preferences.

Delivery channels (email, SMS, chat) live outside the core. The workflow only
hands a :class:`NotificationEvent` to a :class:`NotificationDispatcher`; any
exception the dispatcher raises is logged by the workflow and never undoes the
transition that triggered it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Protocol

from pydantic import BaseModel, Field

from .models import ExpenseStatus, User
from .repository import UserDirectory

logger = logging.getLogger(__name__)


class NotificationKind(StrEnum):
    EXPENSE_SUBMITTED = "expense_submitted"
    EXPENSE_APPROVED = "expense_approved"
    EXPENSE_FULLY_APPROVED = "expense_fully_approved"
    EXPENSE_REJECTED = "expense_rejected"
    EXPENSE_REIMBURSED = "expense_reimbursed"
    PAYMENT_PROCESSED = "payment_processed"


@dataclass(frozen=True)
class NotificationEvent:
    """What happened to an expense, addressed to the people who care."""

    kind: NotificationKind
    expense_id: str
    expense_number: str
    status: ExpenseStatus
    amount: Decimal
    site_id: str
    actor_id: str
    recipient_ids: tuple[str, ...] = ()
    level: int | None = None
    comment: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class NotificationDispatcher(Protocol):
    def dispatch(self, event: NotificationEvent) -> None:
        """Deliver ``event``; may raise, callers treat delivery as best effort."""


@dataclass
class RecordingDispatcher:
    """Keep dispatched events in memory."""

    events: list[NotificationEvent] = field(default_factory=list)

    def dispatch(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[NotificationKind]:
        return [event.kind for event in self.events]


class LoggingDispatcher:
    """Write events to the log; the default when no channel is wired."""

    def dispatch(self, event: NotificationEvent) -> None:
        logger.info(
            "Notification %s for expense %s (%s)",
            event.kind.value,
            event.expense_number,
            event.status.value,
            extra={"expense_id": event.expense_id, "actor_id": event.actor_id},
        )


class NotificationPreferences(BaseModel):
    """Stored notification preferences for a user."""

    email: bool = Field(default=True, description="Whether to send email notifications")
    sms: bool = Field(default=False, description="Whether to send SMS notifications")
    status_updates: bool = Field(
        default=True, description="Whether to notify on expense status changes"
    )
    approval_requests: bool = Field(
        default=True, description="Whether to notify approvers of pending decisions"
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Timestamp of the latest preference update",
    )

    def channels(self) -> list[str]:
        return [name for name in ("email", "sms") if getattr(self, name)]


class NotificationPreferencesUpdate(BaseModel):
    """Partial update payload for notification preferences."""

    email: bool | None = Field(default=None, description="Updated email preference")
    sms: bool | None = Field(default=None, description="Updated SMS preference")
    status_updates: bool | None = Field(
        default=None, description="Updated status update preference"
    )
    approval_requests: bool | None = Field(
        default=None, description="Updated approval request preference"
    )

    def apply_to(self, current: NotificationPreferences) -> NotificationPreferences:
        """Return a new NotificationPreferences with updates applied."""

        data = current.model_dump()
        data.update(self.model_dump(exclude_none=True))
        data["updated_at"] = datetime.now(UTC)
        return NotificationPreferences(**data)


@dataclass
class NotificationPreferenceStore:
    """In-memory store for notification preferences keyed by user id."""

    preferences: dict[str, NotificationPreferences] = field(default_factory=dict)

    def get_preferences(self, user_id: str) -> NotificationPreferences:
        """Return stored preferences for a user or defaults."""

        return self.preferences.get(user_id, NotificationPreferences())

    def save_preferences(
        self, user_id: str, preferences: NotificationPreferences
    ) -> NotificationPreferences:
        """Persist full notification preferences for a user."""

        self.preferences[user_id] = preferences
        return preferences

    def update_preferences(
        self, user_id: str, update: NotificationPreferencesUpdate
    ) -> NotificationPreferences:
        """Persist a partial update to a user's preferences."""

        current = self.get_preferences(user_id)
        updated = update.apply_to(current)
        self.preferences[user_id] = updated
        return updated


ChannelSender = Callable[[User, NotificationEvent], None]

_APPROVAL_REQUEST_KINDS = frozenset(
    {NotificationKind.EXPENSE_SUBMITTED, NotificationKind.EXPENSE_APPROVED}
)


@dataclass
class PreferenceAwareDispatcher:
    """Fan events out to channel senders according to each recipient's preferences.

    A failing channel is logged and does not stop delivery on the others; the
    dispatcher raises only after every recipient has been tried.
    """

    users: UserDirectory
    preferences: NotificationPreferenceStore
    channels: Mapping[str, ChannelSender]

    def _wants(self, prefs: NotificationPreferences, event: NotificationEvent, user: User) -> bool:
        if event.kind in _APPROVAL_REQUEST_KINDS and user.id != event.actor_id:
            return prefs.approval_requests or prefs.status_updates
        return prefs.status_updates

    def dispatch(self, event: NotificationEvent) -> None:
        failures: list[str] = []
        for recipient_id in event.recipient_ids:
            user = self.users.users.get(recipient_id)
            if user is None or not user.is_active:
                continue
            prefs = self.preferences.get_preferences(recipient_id)
            if not self._wants(prefs, event, user):
                continue
            for channel in prefs.channels():
                sender = self.channels.get(channel)
                if sender is None:
                    continue
                try:
                    sender(user, event)
                except Exception:
                    logger.exception(
                        "Channel %s failed for %s",
                        channel,
                        recipient_id,
                        extra={"expense_id": event.expense_id},
                    )
                    failures.append(f"{channel}:{recipient_id}")
        if failures:
            raise RuntimeError(f"Notification delivery failed for {', '.join(failures)}")
