"""
Lead CRM Reminders — Scheduler.

Polls the reminder store for reminders that are due, claims each one
by moving it to ``dispatching`` through a conditional update, hands it
to the Dispatcher and then re-arms it:

- repeating reminders get the next cycle strictly in the future,
  skipping any cycles missed while the process was down;
- one-off reminders stay pending (overdue) until the owner acts.

A claim is the only way a reminder reaches the Dispatcher, so two
ticks (or two processes) can never send the same fire twice, and a
reminder dismissed before its claim is never sent.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.core.errors import ReminderNotFoundError, StoreError
from src.data.models import (
    DUE_STATUSES,
    Notification,
    NotificationKind,
    Reminder,
    ReminderStatus,
    RepeatInterval,
    add_interval,
    utcnow,
)

if TYPE_CHECKING:
    from src.core.dispatcher import Dispatcher
    from src.ports.notification_store_port import NotificationStorePort
    from src.ports.reminder_store_port import ReminderStorePort

logger = logging.getLogger(__name__)

_CLAIMED = frozenset({ReminderStatus.DISPATCHING})


class _NoLongerDue(Exception):
    """Raised inside a claim when the reminder changed since it was listed."""


def next_occurrence(
    fired_at: datetime,
    interval: RepeatInterval,
    repeat_minutes: int | None,
    now: datetime,
) -> datetime:
    """First cycle after ``fired_at`` that is strictly later than ``now``."""
    candidate = add_interval(fired_at, interval, repeat_minutes)
    while candidate <= now:
        candidate = add_interval(candidate, interval, repeat_minutes)
    return candidate


class ReminderScheduler:
    """One poll tick = list due, claim, dispatch in parallel, re-arm."""

    def __init__(
        self,
        store: ReminderStorePort,
        dispatcher: Dispatcher,
        clock: Callable[[], datetime] = utcnow,
        concurrency: int = 8,
        notifications: NotificationStorePort | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._clock = clock
        self._concurrency = concurrency
        self._notifications = notifications

    async def run_once(self) -> int:
        """Run a single tick. Returns how many reminders were fired.

        Never raises: a store outage is logged and retried next tick.
        """
        now = self._clock()
        try:
            due = self._store.list_due_before(now)
        except StoreError as exc:
            logger.error("Scheduler tick skipped, store unavailable: %s", exc)
            return 0

        if not due:
            return 0

        logger.info("Scheduler tick: %d reminder(s) due", len(due))
        limiter = asyncio.Semaphore(self._concurrency)
        fired = await asyncio.gather(*(self._fire(r, now, limiter) for r in due))
        return sum(1 for ok in fired if ok)

    async def release_stale_claims(self, max_age: timedelta) -> int:
        """Return claims abandoned by a crashed worker to the due pool."""
        try:
            return self._store.release_stale_claims(self._clock() - max_age)
        except StoreError as exc:
            logger.error("Stale claim sweep failed: %s", exc)
            return 0

    # ------------------------------------------------------------------

    async def _fire(
        self, listed: Reminder, now: datetime, limiter: asyncio.Semaphore
    ) -> bool:
        async with limiter:
            prior: list[ReminderStatus] = []

            def claim(current: Reminder) -> Reminder:
                if not current.is_due(now):
                    raise _NoLongerDue
                prior.append(current.status)
                return replace(current, status=ReminderStatus.DISPATCHING)

            try:
                claimed = self._store.update(listed.id, claim, expected=DUE_STATUSES)
            except (_NoLongerDue, ReminderNotFoundError):
                claimed = None
            except StoreError as exc:
                logger.error("Could not claim reminder %s: %s", listed.id, exc)
                return False

            if claimed is None:
                logger.debug("Reminder %s no longer due, skipped", listed.id)
                return False

            fired_at = self._clock()
            self._record_in_app(claimed)
            try:
                outcome = await self._dispatcher.dispatch(claimed)
            except Exception:
                logger.exception("Dispatch of reminder %s failed", listed.id)
                self._release(listed.id, prior[-1])
                return False

            if outcome.no_recipient:
                logger.warning(
                    "Reminder %s fired with nobody to deliver to", listed.id,
                )
            elif not outcome.success:
                logger.warning(
                    "Reminder %s fired but every delivery attempt failed", listed.id,
                )
            self._rearm(listed.id, fired_at)
            return True

    def _rearm(self, reminder_id: str, fired_at: datetime) -> None:
        def finish(current: Reminder) -> Reminder:
            if current.is_repeating:
                next_at = next_occurrence(
                    fired_at, current.repeat_interval, current.repeat_minutes,
                    self._clock(),
                )
            elif current.trigger_at > fired_at:
                # fired early from a snooze: the original trigger is spent too
                next_at = fired_at
            else:
                next_at = None
            return replace(
                current,
                status=ReminderStatus.PENDING,
                trigger_count=current.trigger_count + 1,
                last_triggered_at=fired_at,
                next_trigger_at=next_at,
            )

        try:
            updated = self._store.update(reminder_id, finish, expected=_CLAIMED)
        except StoreError as exc:
            # left in dispatching; the stale-claim sweep will put it back
            logger.error("Could not re-arm reminder %s: %s", reminder_id, exc)
            return
        if updated is not None and updated.is_repeating:
            logger.info(
                "Reminder %s re-armed for %s",
                reminder_id, updated.next_trigger_at.isoformat(),
            )

    def _record_in_app(self, reminder: Reminder) -> None:
        """Keep an inbox copy of the fire so the owner sees it without a push."""
        if self._notifications is None:
            return
        try:
            self._notifications.add(
                Notification(
                    id="",
                    title=reminder.title,
                    message=reminder.note or reminder.title,
                    kind=NotificationKind.REMINDER,
                    recipient_id=reminder.owner_id,
                    metadata={
                        **reminder.context,
                        "reminderId": reminder.id,
                        "triggerAt": reminder.effective_trigger_at.isoformat(),
                    },
                )
            )
        except StoreError as exc:
            logger.error("In-app record for reminder %s not stored: %s", reminder.id, exc)

    def _release(self, reminder_id: str, status: ReminderStatus) -> None:
        try:
            self._store.update(
                reminder_id,
                lambda current: replace(current, status=status),
                expected=_CLAIMED,
            )
        except StoreError as exc:
            logger.error("Could not release claim on %s: %s", reminder_id, exc)


def setup_scheduler(
    reminder_scheduler: ReminderScheduler,
    poll_seconds: int | None = None,
    stale_claim_minutes: int | None = None,
) -> AsyncIOScheduler:
    """Build the APScheduler instance that drives the poll loop."""
    from src.config import settings

    poll_seconds = poll_seconds or settings.POLL_INTERVAL_SECONDS
    stale_claim_minutes = stale_claim_minutes or settings.STALE_CLAIM_MINUTES
    max_age = timedelta(minutes=stale_claim_minutes)

    scheduler = AsyncIOScheduler(
        timezone=settings.TIMEZONE,
        job_defaults={"coalesce": True, "max_instances": 1},
    )

    scheduler.add_job(
        reminder_scheduler.run_once,
        IntervalTrigger(seconds=poll_seconds),
        id="reminder_poll",
        replace_existing=True,
    )

    async def sweep_stale_claims() -> None:
        await reminder_scheduler.release_stale_claims(max_age)

    scheduler.add_job(
        sweep_stale_claims,
        IntervalTrigger(minutes=stale_claim_minutes),
        id="reminder_stale_claims",
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: poll every %ds, stale claims after %d min",
        poll_seconds, stale_claim_minutes,
    )
    return scheduler
