"""
Lead CRM Reminders — Application wiring.

Builds the reminder engine from settings (stores, push gateway,
dispatcher, lifecycle, announcer, service facade) and runs the
scheduler's poll loop on an asyncio event loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from src.config import settings
from src.core.announcer import BulkAnnouncer
from src.core.dispatcher import Dispatcher
from src.core.lifecycle import LifecycleManager
from src.core.reminder_service import ReminderService
from src.core.scheduler import ReminderScheduler, setup_scheduler
from src.data.models import utcnow
from src.ports.notification_store_port import NotificationStorePort
from src.ports.push_gateway_port import PushGatewayPort
from src.ports.recipient_directory_port import RecipientDirectoryPort
from src.ports.reminder_store_port import ReminderStorePort

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    store: ReminderStorePort
    directory: RecipientDirectoryPort
    notifications: NotificationStorePort
    gateway: PushGatewayPort
    dispatcher: Dispatcher
    lifecycle: LifecycleManager
    announcer: BulkAnnouncer
    service: ReminderService
    scheduler: ReminderScheduler


def build_engine(
    store: ReminderStorePort | None = None,
    directory: RecipientDirectoryPort | None = None,
    gateway: PushGatewayPort | None = None,
    fallback_gateway: PushGatewayPort | None = None,
    notifications: NotificationStorePort | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Engine:
    """Assemble every component. Anything not passed in comes from settings."""
    if store is None or directory is None or notifications is None:
        if settings.DATABASE_PATH == ":memory:":
            from src.data.memory_store import (
                InMemoryDirectory,
                InMemoryNotificationStore,
                InMemoryReminderStore,
            )

            store = store or InMemoryReminderStore(clock=clock)
            directory = directory or InMemoryDirectory(clock=clock)
            notifications = notifications or InMemoryNotificationStore(clock=clock)
        else:
            from src.data.db import DirectoryDB, NotificationDB, ReminderDB

            store = store or ReminderDB(clock=clock)
            directory = directory or DirectoryDB(clock=clock)
            notifications = notifications or NotificationDB(clock=clock)

    if gateway is None:
        from src.adapters.gateway_factory import create_push_gateway

        gateway = create_push_gateway()

    dispatcher = Dispatcher(
        directory,
        gateway,
        store=store,
        fallback_gateway=fallback_gateway,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        clock=clock,
    )
    lifecycle = LifecycleManager(store, clock=clock)
    announcer = BulkAnnouncer(directory, gateway, batch_size=settings.MULTICAST_BATCH_SIZE)
    service = ReminderService(
        store,
        directory,
        lifecycle,
        dispatcher,
        announcer,
        notifications,
        clock=clock,
        default_snooze_minutes=settings.DEFAULT_SNOOZE_MINUTES,
    )
    reminder_scheduler = ReminderScheduler(
        store,
        dispatcher,
        clock=clock,
        concurrency=settings.DISPATCH_CONCURRENCY,
        notifications=notifications,
    )
    return Engine(
        store=store,
        directory=directory,
        notifications=notifications,
        gateway=gateway,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        announcer=announcer,
        service=service,
        scheduler=reminder_scheduler,
    )


async def run(engine: Engine | None = None) -> None:
    """Start the poll loop and keep the event loop alive until cancelled."""
    engine = engine or build_engine()
    scheduler: AsyncIOScheduler = setup_scheduler(engine.scheduler)
    scheduler.start()
    logger.info("Reminder engine running (push provider: %s)", settings.PUSH_PROVIDER)

    # pick up anything that fell due while the process was down
    await engine.scheduler.release_stale_claims(
        timedelta(minutes=settings.STALE_CLAIM_MINUTES)
    )
    await engine.scheduler.run_once()
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        await engine.gateway.aclose()


def main() -> None:
    """Entry point: build the engine and run it forever."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting Lead CRM reminder engine...")
    try:
        asyncio.run(run())
    except (KeyboardInterrupt, SystemExit):
        logger.info("Reminder engine stopped")


if __name__ == "__main__":
    main()
