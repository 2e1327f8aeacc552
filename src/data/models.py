"""
Lead CRM Reminders — Data Models.

Reminders are owner-directed notes that must eventually be acted on.
The engine owns their schedule and lifecycle; everything else about a
lead (property, chat, client record) lives elsewhere and only reaches
the engine through the opaque ``context`` map.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReminderKind(Enum):
    REMINDER = "reminder"
    ALERT = "alert"


class ReminderStatus(Enum):
    PENDING = "pending"
    SNOOZED = "snoozed"
    DISPATCHING = "dispatching"  # claimed by the scheduler, send in flight
    COMPLETED = "completed"
    DISMISSED = "dismissed"


TERMINAL_STATUSES = frozenset({ReminderStatus.COMPLETED, ReminderStatus.DISMISSED})
DUE_STATUSES = frozenset({ReminderStatus.PENDING, ReminderStatus.SNOOZED})


class RepeatInterval(Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"  # every ``repeat_minutes`` minutes


class ResponseQuality(Enum):
    RED = "red"        # fewer than 10 words
    YELLOW = "yellow"  # 10 to 20 words
    GREEN = "green"    # more than 20 words


class DispatchChannel(Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


class AttemptOutcome(Enum):
    SENT = "sent"
    FAILED = "failed"
    TIMEOUT = "timeout"


class RecipientRole(Enum):
    ADMIN = "admin"
    EMPLOYEE = "employee"
    USER = "user"


NO_RECIPIENT_ADDRESS = "no-recipient-address"


def count_words(text: str | None) -> int:
    if not text:
        return 0
    return len(text.split())


def response_quality(word_count: int) -> ResponseQuality:
    if word_count < 10:
        return ResponseQuality.RED
    if word_count <= 20:
        return ResponseQuality.YELLOW
    return ResponseQuality.GREEN


def add_interval(
    moment: datetime, interval: RepeatInterval, repeat_minutes: int | None = None
) -> datetime:
    """Return ``moment`` advanced by one repeat cycle."""
    if interval is RepeatInterval.DAILY:
        return moment + timedelta(days=1)
    if interval is RepeatInterval.WEEKLY:
        return moment + timedelta(weeks=1)
    if interval is RepeatInterval.MONTHLY:
        year = moment.year + moment.month // 12
        month = moment.month % 12 + 1
        day = min(moment.day, calendar.monthrange(year, month)[1])
        return moment.replace(year=year, month=month, day=day)
    if interval is RepeatInterval.CUSTOM:
        if not repeat_minutes or repeat_minutes <= 0:
            raise ValueError("custom repeat interval needs repeat_minutes > 0")
        return moment + timedelta(minutes=repeat_minutes)
    raise ValueError(f"Reminder with repeat interval {interval.value!r} does not repeat")


@dataclass
class EditRecord:
    """One entry of a reminder's edit history."""

    edited_at: datetime
    edited_by: str | None
    old: dict[str, str]
    new: dict[str, str]


@dataclass
class Reminder:
    """A scheduled reminder or system alert.

    ``next_trigger_at`` is only meaningful while snoozed or repeating,
    or after a one-off fired early from a snooze (it then pins the
    consumed fire time); otherwise the reminder is due at ``trigger_at``.
    """

    id: str
    owner_id: str
    title: str
    trigger_at: datetime
    note: str = ""
    kind: ReminderKind = ReminderKind.REMINDER
    context: dict[str, str] = field(default_factory=dict)
    created_by: str | None = None
    is_repeating: bool = False
    repeat_interval: RepeatInterval = RepeatInterval.NONE
    repeat_minutes: int | None = None
    status: ReminderStatus = ReminderStatus.PENDING
    snooze_count: int = 0
    trigger_count: int = 0
    last_triggered_at: datetime | None = None
    next_trigger_at: datetime | None = None
    completion_response: str | None = None
    completed_at: datetime | None = None
    response_word_count: int = 0
    response_quality: ResponseQuality | None = None
    edit_history: list[EditRecord] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0

    @property
    def effective_trigger_at(self) -> datetime:
        return self.next_trigger_at or self.trigger_at

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_due(self, now: datetime) -> bool:
        """Due = awaiting a fire for its current effective trigger time."""
        if self.status not in DUE_STATUSES:
            return False
        effective = self.effective_trigger_at
        if effective > now:
            return False
        return self.last_triggered_at is None or self.last_triggered_at < effective

    def is_past_due(self, now: datetime) -> bool:
        """Awaiting the owner with its due time behind us, fired or not."""
        return self.status in DUE_STATUSES and self.effective_trigger_at <= now

    def is_overdue(self, now: datetime) -> bool:
        """Fired at least once, still pending, and not re-armed for later."""
        return (
            self.status is ReminderStatus.PENDING
            and self.trigger_count > 0
            and self.effective_trigger_at <= now
        )


@dataclass(frozen=True)
class DispatchAttempt:
    """Append-only audit record of one delivery try."""

    reminder_id: str | None
    address: str | None
    channel: DispatchChannel
    outcome: AttemptOutcome
    timestamp: datetime
    error_detail: str | None = None


@dataclass
class DispatchOutcome:
    reminder_id: str | None
    success: bool
    attempts: list[DispatchAttempt] = field(default_factory=list)
    delivered_addresses: list[str] = field(default_factory=list)
    no_recipient: bool = False


@dataclass
class AnnouncementSummary:
    """Aggregate result of one bulk announcement."""

    sent_count: int
    failed_count: int
    total_recipients: int
    addressless_count: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "sentCount": self.sent_count,
            "failedCount": self.failed_count,
            "totalRecipients": self.total_recipients,
        }


@dataclass
class Recipient:
    recipient_id: str
    role: RecipientRole
    display_name: str = ""


@dataclass
class DeviceAddress:
    """A push token registered by a recipient under one role."""

    recipient_id: str
    role: RecipientRole
    address: str
    registered_at: datetime


class NotificationKind(Enum):
    GENERAL = "general"
    REMINDER = "reminder"          # in-app copy of a fired reminder
    BAD_ATTENDANT = "bad_attendant"  # admin alert for a red-quality response


class NotificationPriority(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


@dataclass
class Notification:
    """In-app notification record, kept whether or not a push got through.

    ``recipient_id`` is None for the shared admin inbox.
    """

    id: str
    title: str
    message: str
    kind: NotificationKind = NotificationKind.GENERAL
    priority: NotificationPriority = NotificationPriority.NORMAL
    recipient_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    read: bool = False
    read_at: datetime | None = None
    created_at: datetime | None = None
