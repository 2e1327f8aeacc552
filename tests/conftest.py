"""Shared test fixtures and configuration.

Sets up fake environment variables so src.config doesn't sys.exit(),
and provides common fixtures: a controllable clock, temp SQLite stores,
in-memory stores (reminders, directory, notifications) and a
scriptable push gateway.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("PUSH_PROVIDER", "log")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("FCM_PROJECT_ID", "test-project")

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from src.data.models import Reminder
from src.ports.push_gateway_port import MulticastResult, SendResult

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """Push gateway whose answer per address is scripted.

    ``behaviour`` maps an address to a SendResult or an exception to
    raise; unknown addresses succeed.
    """

    def __init__(self, behaviour=None, delay=0.0, multicast_error=None,
                 multicast_failures=0):
        self.behaviour = behaviour or {}
        self.delay = delay
        self.multicast_error = multicast_error
        self.multicast_failures = multicast_failures
        self.sent = []
        self.multicast_calls = []
        self.closed = False

    async def send_to_one(self, address, payload):
        self.sent.append((address, payload))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.behaviour.get(address, SendResult.ok(message_id=f"msg-{address}"))
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def send_multicast(self, addresses, payload):
        self.multicast_calls.append((list(addresses), payload))
        if self.multicast_error is not None:
            raise self.multicast_error
        failed = min(self.multicast_failures, len(addresses))
        return MulticastResult(
            success_count=len(addresses) - failed, failure_count=failed,
        )

    async def aclose(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_gateway():
    return FakeGateway


@pytest.fixture
def make_reminder(clock):
    """Factory for unsaved reminders due one hour from the fake now."""

    def _make(**overrides):
        fields = {
            "id": "",
            "owner_id": "emp-1",
            "title": "Call Mr. Sharma about 2BHK",
            "note": "Site visit feedback",
            "trigger_at": clock() + timedelta(hours=1),
        }
        fields.update(overrides)
        return Reminder(**fields)

    return _make


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_reminders.db")


@pytest.fixture
def reminder_db(tmp_db_path, clock):
    """Return a ReminderDB instance backed by a temp file."""
    from src.data.db import ReminderDB
    return ReminderDB(db_path=tmp_db_path, clock=clock)


@pytest.fixture
def directory_db(tmp_path, clock):
    """Return a DirectoryDB instance backed by a temp file."""
    from src.data.db import DirectoryDB
    return DirectoryDB(db_path=str(tmp_path / "test_directory.db"), clock=clock)


@pytest.fixture
def memory_store(clock):
    from src.data.memory_store import InMemoryReminderStore
    return InMemoryReminderStore(clock=clock)


@pytest.fixture
def memory_directory(clock):
    from src.data.memory_store import InMemoryDirectory
    return InMemoryDirectory(clock=clock)


@pytest.fixture
def notification_db(tmp_path, clock):
    """Return a NotificationDB instance backed by a temp file."""
    from src.data.db import NotificationDB
    return NotificationDB(db_path=str(tmp_path / "test_notifications.db"), clock=clock)


@pytest.fixture
def memory_notifications(clock):
    from src.data.memory_store import InMemoryNotificationStore
    return InMemoryNotificationStore(clock=clock)
