"""
Lead CRM Reminders — Lifecycle Manager.

Applies recipient actions to a reminder:

    pending  --complete(response)--> completed
    pending  --snooze(minutes)-----> snoozed
    snoozed  --(scheduler fires)---> pending
    pending  --dismiss()-----------> dismissed
    snoozed  --dismiss()-----------> dismissed

``completed`` and ``dismissed`` are terminal. Every action is a single
conditional store update, the same mechanism the scheduler claims with,
so an action and a fire can never interleave. While the scheduler holds
a reminder (``dispatching``) actions fail with ReminderBusyError and the
caller retries.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from src.core.errors import (
    InvalidStateError,
    ReminderBusyError,
    ValidationError,
)
from src.data.models import (
    EditRecord,
    Reminder,
    ReminderStatus,
    count_words,
    response_quality,
    utcnow,
)
from src.data.validation import require_aware

if TYPE_CHECKING:
    from src.ports.reminder_store_port import ReminderStorePort

logger = logging.getLogger(__name__)


class LifecycleManager:
    """State transitions triggered by the reminder's owner."""

    def __init__(
        self,
        store: ReminderStorePort,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._clock = clock

    def complete(self, reminder_id: str, response: str) -> Reminder:
        """Close a reminder with the owner's written response."""
        text = (response or "").strip()
        if not text:
            raise ValidationError("A completion response is required")

        def mutate(current: Reminder) -> Reminder:
            self._check_actionable(current, "complete")
            words = count_words(text)
            return replace(
                current,
                status=ReminderStatus.COMPLETED,
                completion_response=text,
                completed_at=self._clock(),
                response_word_count=words,
                response_quality=response_quality(words),
                next_trigger_at=None,
            )

        updated = self._store.update(reminder_id, mutate)
        logger.info(
            "Reminder %s completed (%d words, %s)",
            reminder_id, updated.response_word_count, updated.response_quality.value,
        )
        return updated

    def snooze(self, reminder_id: str, minutes: int) -> Reminder:
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
            raise ValidationError("Snooze minutes must be a positive integer")

        def mutate(current: Reminder) -> Reminder:
            self._check_actionable(current, "snooze")
            return replace(
                current,
                status=ReminderStatus.SNOOZED,
                snooze_count=current.snooze_count + 1,
                next_trigger_at=self._clock() + timedelta(minutes=minutes),
            )

        updated = self._store.update(reminder_id, mutate)
        logger.info(
            "Reminder %s snoozed %d min (snooze #%d)",
            reminder_id, minutes, updated.snooze_count,
        )
        return updated

    def dismiss(self, reminder_id: str) -> Reminder:
        """Dismiss a reminder. Dismissing twice is a no-op."""

        def mutate(current: Reminder) -> Reminder:
            if current.status is ReminderStatus.DISMISSED:
                return current
            self._check_actionable(current, "dismiss")
            return replace(current, status=ReminderStatus.DISMISSED, next_trigger_at=None)

        updated = self._store.update(reminder_id, mutate)
        logger.info("Reminder %s dismissed", reminder_id)
        return updated

    def edit(
        self,
        reminder_id: str,
        title: str | None = None,
        note: str | None = None,
        trigger_at: datetime | None = None,
        edited_by: str | None = None,
    ) -> Reminder:
        """Change title, note or schedule of a live reminder.

        A new trigger time re-arms the reminder from scratch: it must be
        in the future and any snooze is dropped.
        """
        if title is not None and not title.strip():
            raise ValidationError("title cannot be empty")
        if trigger_at is not None:
            require_aware(trigger_at, "trigger_at")

        def mutate(current: Reminder) -> Reminder:
            self._check_actionable(current, "edit")
            now = self._clock()
            old: dict[str, str] = {}
            new: dict[str, str] = {}
            changes: dict = {}

            if title is not None and title.strip() != current.title:
                old["title"], new["title"] = current.title, title.strip()
                changes["title"] = title.strip()
            if note is not None and note != current.note:
                old["note"], new["note"] = current.note, note
                changes["note"] = note
            if trigger_at is not None and trigger_at != current.trigger_at:
                if trigger_at <= now:
                    raise ValidationError(
                        f"trigger_at {trigger_at.isoformat()} is not in the future"
                    )
                old["trigger_at"] = current.trigger_at.isoformat()
                new["trigger_at"] = trigger_at.isoformat()
                changes.update(
                    trigger_at=trigger_at,
                    next_trigger_at=None,
                    status=ReminderStatus.PENDING,
                )

            if not changes:
                return current
            history = list(current.edit_history)
            history.append(EditRecord(edited_at=now, edited_by=edited_by, old=old, new=new))
            return replace(current, edit_history=history, **changes)

        updated = self._store.update(reminder_id, mutate)
        logger.info("Reminder %s edited", reminder_id)
        return updated

    @staticmethod
    def _check_actionable(current: Reminder, attempted: str) -> None:
        if current.status is ReminderStatus.DISPATCHING:
            raise ReminderBusyError(current.id)
        if current.is_terminal:
            raise InvalidStateError(current.status.value, attempted)
