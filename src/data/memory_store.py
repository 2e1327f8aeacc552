"""In-memory reminder store, recipient directory and notification inbox.

Same contracts as ReminderDB / DirectoryDB / NotificationDB, held in
process memory behind a lock. Used by tests and by ``DATABASE_PATH=:memory:`` runs.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable, Collection
from dataclasses import replace
from datetime import datetime
from uuid import uuid4

from src.core.errors import ReminderNotFoundError
from src.data.models import (
    DeviceAddress,
    DispatchAttempt,
    Notification,
    NotificationKind,
    Recipient,
    RecipientRole,
    Reminder,
    ReminderStatus,
    utcnow,
)
from src.data.validation import validate_new_reminder
from src.ports.reminder_store_port import Mutation

logger = logging.getLogger(__name__)


class InMemoryReminderStore:
    """Reminder store whose conditional update is a single locked step."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._reminders: dict[str, Reminder] = {}
        self._attempts: list[DispatchAttempt] = []

    def create(self, reminder: Reminder) -> str:
        now = self._clock()
        validate_new_reminder(reminder, now)
        stored = replace(
            copy.deepcopy(reminder),
            id=reminder.id or uuid4().hex,
            status=ReminderStatus.PENDING,
            snooze_count=0,
            trigger_count=0,
            last_triggered_at=None,
            next_trigger_at=None,
            created_at=now,
            updated_at=now,
            version=1,
        )
        with self._lock:
            self._reminders[stored.id] = stored
        logger.info("Reminder created: %s '%s' for %s", stored.id, stored.title, stored.owner_id)
        return stored.id

    def get(self, reminder_id: str) -> Reminder | None:
        with self._lock:
            reminder = self._reminders.get(reminder_id)
            return copy.deepcopy(reminder) if reminder else None

    def list_due_before(self, now: datetime) -> list[Reminder]:
        with self._lock:
            due = [copy.deepcopy(r) for r in self._reminders.values() if r.is_due(now)]
        due.sort(key=lambda r: (r.effective_trigger_at, r.created_at))
        return due

    def update(
        self,
        reminder_id: str,
        mutation: Mutation,
        expected: Collection[ReminderStatus] | None = None,
    ) -> Reminder | None:
        with self._lock:
            current = self._reminders.get(reminder_id)
            if current is None:
                raise ReminderNotFoundError(reminder_id)
            if expected is not None and current.status not in expected:
                return None
            updated = mutation(copy.deepcopy(current))
            updated = replace(
                updated,
                id=current.id,
                version=current.version + 1,
                updated_at=self._clock(),
            )
            self._reminders[reminder_id] = updated
            return copy.deepcopy(updated)

    def delete(self, reminder_id: str) -> bool:
        with self._lock:
            removed = self._reminders.pop(reminder_id, None) is not None
            if removed:
                self._attempts = [a for a in self._attempts if a.reminder_id != reminder_id]
        return removed

    def list_reminders(
        self,
        owner_id: str | None = None,
        status: ReminderStatus | None = None,
    ) -> list[Reminder]:
        with self._lock:
            found = [
                copy.deepcopy(r)
                for r in self._reminders.values()
                if (owner_id is None or r.owner_id == owner_id)
                and (status is None or r.status is status)
            ]
        found.sort(key=lambda r: r.effective_trigger_at)
        return found

    def list_overdue(
        self, owner_id: str | None = None, now: datetime | None = None
    ) -> list[Reminder]:
        now = now or self._clock()
        return [
            r for r in self.list_reminders(owner_id, ReminderStatus.PENDING)
            if r.is_overdue(now)
        ]

    def count_by_status(self, owner_id: str | None = None) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for r in self._reminders.values():
                if owner_id is None or r.owner_id == owner_id:
                    counts[r.status.value] = counts.get(r.status.value, 0) + 1
        return counts

    def release_stale_claims(self, older_than: datetime) -> int:
        released = 0
        with self._lock:
            for rid, r in self._reminders.items():
                if r.status is ReminderStatus.DISPATCHING and r.updated_at < older_than:
                    self._reminders[rid] = replace(
                        r,
                        status=ReminderStatus.PENDING,
                        version=r.version + 1,
                        updated_at=self._clock(),
                    )
                    released += 1
        if released:
            logger.warning("Released %d stale dispatch claim(s)", released)
        return released

    def record_attempt(self, attempt: DispatchAttempt) -> None:
        with self._lock:
            self._attempts.append(attempt)

    def list_attempts(self, reminder_id: str) -> list[DispatchAttempt]:
        with self._lock:
            return [a for a in self._attempts if a.reminder_id == reminder_id]


class InMemoryDirectory:
    """Recipient directory held in memory."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._recipients: dict[str, Recipient] = {}
        self._addresses: list[DeviceAddress] = []

    def register_recipient(
        self, recipient_id: str, role: RecipientRole, display_name: str = ""
    ) -> Recipient:
        recipient = Recipient(recipient_id=recipient_id, role=role, display_name=display_name)
        with self._lock:
            self._recipients[recipient_id] = recipient
        return recipient

    def list_recipients(
        self, roles: Collection[RecipientRole] | None = None
    ) -> list[Recipient]:
        with self._lock:
            return [
                r for r in self._recipients.values()
                if not roles or r.role in roles
            ]

    def resolve_addresses(self, recipient_id: str) -> list[str]:
        with self._lock:
            entries = [a for a in self._addresses if a.recipient_id == recipient_id]
        # stable sort keeps later registrations ahead on equal timestamps
        entries.reverse()
        entries.sort(key=lambda a: a.registered_at, reverse=True)
        return [a.address for a in entries]

    def register_address(
        self,
        recipient_id: str,
        address: str,
        role: RecipientRole = RecipientRole.EMPLOYEE,
    ) -> None:
        with self._lock:
            self._recipients.setdefault(
                recipient_id, Recipient(recipient_id=recipient_id, role=role)
            )
            self._addresses = [
                a for a in self._addresses
                if not (a.recipient_id == recipient_id and a.address == address)
            ]
            self._addresses.append(
                DeviceAddress(
                    recipient_id=recipient_id,
                    role=role,
                    address=address,
                    registered_at=self._clock(),
                )
            )

    def unregister_address(self, recipient_id: str, address: str) -> bool:
        with self._lock:
            before = len(self._addresses)
            self._addresses = [
                a for a in self._addresses
                if not (a.recipient_id == recipient_id and a.address == address)
            ]
            return len(self._addresses) < before


class InMemoryNotificationStore:
    """Notification inbox held in memory, newest first on read."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._notifications: list[Notification] = []

    def add(self, notification: Notification) -> str:
        stored = replace(
            copy.deepcopy(notification),
            id=notification.id or uuid4().hex,
            read=False,
            read_at=None,
            created_at=notification.created_at or self._clock(),
        )
        with self._lock:
            self._notifications.append(stored)
        return stored.id

    def get(self, notification_id: str) -> Notification | None:
        with self._lock:
            for n in self._notifications:
                if n.id == notification_id:
                    return copy.deepcopy(n)
        return None

    def _matching(
        self,
        kind: NotificationKind | None,
        recipient_id: str | None,
        unread_only: bool,
        since: datetime | None = None,
    ) -> list[Notification]:
        with self._lock:
            found = [
                copy.deepcopy(n)
                for n in self._notifications
                if (kind is None or n.kind is kind)
                and (recipient_id is None or n.recipient_id == recipient_id)
                and not (unread_only and n.read)
                and (since is None or n.created_at >= since)
            ]
        # stable sort keeps later inserts ahead on equal timestamps
        found.reverse()
        found.sort(key=lambda n: n.created_at, reverse=True)
        return found

    def list_notifications(
        self,
        kind: NotificationKind | None = None,
        recipient_id: str | None = None,
        unread_only: bool = False,
        since: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Notification]:
        found = self._matching(kind, recipient_id, unread_only, since)
        if limit is None:
            return found[offset:]
        return found[offset:offset + limit]

    def count_notifications(
        self,
        kind: NotificationKind | None = None,
        recipient_id: str | None = None,
        unread_only: bool = False,
    ) -> int:
        return len(self._matching(kind, recipient_id, unread_only))

    def mark_read(self, notification_id: str) -> Notification | None:
        with self._lock:
            for i, n in enumerate(self._notifications):
                if n.id == notification_id:
                    if not n.read:
                        n = replace(n, read=True, read_at=self._clock())
                        self._notifications[i] = n
                    return copy.deepcopy(n)
        return None
