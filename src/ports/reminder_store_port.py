"""Reminder store port — abstract interface for reminder persistence.

Core modules depend on this protocol, never on a specific database.
Every state change (scheduler claim, recipient action) goes through
``update``, which is the single conditional-update mechanism.
"""

from __future__ import annotations

from collections.abc import Callable, Collection
from datetime import datetime
from typing import Protocol

from src.data.models import DispatchAttempt, Reminder, ReminderStatus

Mutation = Callable[[Reminder], Reminder]


class ReminderStorePort(Protocol):
    """Abstract reminder store used by core modules."""

    def create(self, reminder: Reminder) -> str: ...

    def get(self, reminder_id: str) -> Reminder | None: ...

    def list_due_before(self, now: datetime) -> list[Reminder]: ...

    def update(
        self,
        reminder_id: str,
        mutation: Mutation,
        expected: Collection[ReminderStatus] | None = None,
    ) -> Reminder | None: ...

    def delete(self, reminder_id: str) -> bool: ...

    def list_reminders(
        self,
        owner_id: str | None = None,
        status: ReminderStatus | None = None,
    ) -> list[Reminder]: ...

    def list_overdue(
        self, owner_id: str | None = None, now: datetime | None = None
    ) -> list[Reminder]: ...

    def count_by_status(self, owner_id: str | None = None) -> dict[str, int]: ...

    def release_stale_claims(self, older_than: datetime) -> int: ...

    def record_attempt(self, attempt: DispatchAttempt) -> None: ...

    def list_attempts(self, reminder_id: str) -> list[DispatchAttempt]: ...
