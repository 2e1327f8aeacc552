"""
Lead CRM Reminders — SQLite Storage.

Reminders, their dispatch audit trail, the recipient directory and the
in-app notification inbox persist in SQLite, surviving restarts of the
scheduler process.
Conditional updates use a per-row version counter so the scheduler's
claim and a recipient's action can never both win.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Collection, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from src.core.errors import ReminderNotFoundError, StoreError
from src.data.models import (
    AttemptOutcome,
    DispatchAttempt,
    DispatchChannel,
    EditRecord,
    Notification,
    NotificationKind,
    NotificationPriority,
    Recipient,
    RecipientRole,
    Reminder,
    ReminderKind,
    ReminderStatus,
    RepeatInterval,
    ResponseQuality,
    utcnow,
)
from src.data.validation import validate_new_reminder
from src.ports.reminder_store_port import Mutation

logger = logging.getLogger(__name__)

_MAX_UPDATE_RETRIES = 5


def _iso(value: datetime | None) -> str | None:
    """Fixed-width UTC ISO string, so SQL string comparison orders correctly."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class _SQLiteBase:
    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back on error, always close."""
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open database {self._db_path}: {exc}") from exc
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise StoreError(f"Database error: {exc}") from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        raise NotImplementedError


class ReminderDB(_SQLiteBase):
    """SQLite-backed reminder store with an append-only dispatch audit."""

    def __init__(
        self,
        db_path: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._clock = clock
        super().__init__(db_path)

    def _init_db(self) -> None:
        """Create the reminder tables if they don't exist."""
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS reminders (
                    id                   TEXT    PRIMARY KEY,
                    owner_id             TEXT    NOT NULL,
                    created_by           TEXT,
                    kind                 TEXT    NOT NULL DEFAULT 'reminder',
                    title                TEXT    NOT NULL,
                    note                 TEXT    NOT NULL DEFAULT '',
                    context_json         TEXT    NOT NULL DEFAULT '{}',
                    trigger_at           TEXT    NOT NULL,
                    is_repeating         INTEGER NOT NULL DEFAULT 0,
                    repeat_interval      TEXT    NOT NULL DEFAULT 'none',
                    repeat_minutes       INTEGER,
                    status               TEXT    NOT NULL DEFAULT 'pending',
                    snooze_count         INTEGER NOT NULL DEFAULT 0,
                    trigger_count        INTEGER NOT NULL DEFAULT 0,
                    last_triggered_at    TEXT,
                    next_trigger_at      TEXT,
                    completion_response  TEXT,
                    completed_at         TEXT,
                    response_word_count  INTEGER NOT NULL DEFAULT 0,
                    response_quality     TEXT,
                    edit_history_json    TEXT    NOT NULL DEFAULT '[]',
                    created_at           TEXT    NOT NULL,
                    updated_at           TEXT    NOT NULL,
                    version              INTEGER NOT NULL DEFAULT 1
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_reminders_owner_status "
                "ON reminders (owner_id, status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_reminders_due "
                "ON reminders (status, next_trigger_at, trigger_at)"
            )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS dispatch_attempts (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    reminder_id  TEXT    NOT NULL,
                    address      TEXT,
                    channel      TEXT    NOT NULL,
                    outcome      TEXT    NOT NULL,
                    timestamp    TEXT    NOT NULL,
                    error_detail TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_attempts_reminder "
                "ON dispatch_attempts (reminder_id)"
            )
        logger.debug("Reminder tables initialized at %s", self._db_path)

    # --- row mapping ---

    @staticmethod
    def _row_to_reminder(row: sqlite3.Row) -> Reminder:
        history = [
            EditRecord(
                edited_at=datetime.fromisoformat(h["edited_at"]),
                edited_by=h.get("edited_by"),
                old=h.get("old", {}),
                new=h.get("new", {}),
            )
            for h in json.loads(row["edit_history_json"])
        ]
        quality = row["response_quality"]
        return Reminder(
            id=row["id"],
            owner_id=row["owner_id"],
            created_by=row["created_by"],
            kind=ReminderKind(row["kind"]),
            title=row["title"],
            note=row["note"],
            context=json.loads(row["context_json"]),
            trigger_at=datetime.fromisoformat(row["trigger_at"]),
            is_repeating=bool(row["is_repeating"]),
            repeat_interval=RepeatInterval(row["repeat_interval"]),
            repeat_minutes=row["repeat_minutes"],
            status=ReminderStatus(row["status"]),
            snooze_count=row["snooze_count"],
            trigger_count=row["trigger_count"],
            last_triggered_at=_dt(row["last_triggered_at"]),
            next_trigger_at=_dt(row["next_trigger_at"]),
            completion_response=row["completion_response"],
            completed_at=_dt(row["completed_at"]),
            response_word_count=row["response_word_count"],
            response_quality=ResponseQuality(quality) if quality else None,
            edit_history=history,
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            version=row["version"],
        )

    @staticmethod
    def _reminder_params(r: Reminder) -> dict:
        return {
            "id": r.id,
            "owner_id": r.owner_id,
            "created_by": r.created_by,
            "kind": r.kind.value,
            "title": r.title,
            "note": r.note,
            "context_json": json.dumps(r.context),
            "trigger_at": _iso(r.trigger_at),
            "is_repeating": int(r.is_repeating),
            "repeat_interval": r.repeat_interval.value,
            "repeat_minutes": r.repeat_minutes,
            "status": r.status.value,
            "snooze_count": r.snooze_count,
            "trigger_count": r.trigger_count,
            "last_triggered_at": _iso(r.last_triggered_at),
            "next_trigger_at": _iso(r.next_trigger_at),
            "completion_response": r.completion_response,
            "completed_at": _iso(r.completed_at),
            "response_word_count": r.response_word_count,
            "response_quality": r.response_quality.value if r.response_quality else None,
            "edit_history_json": json.dumps([
                {
                    "edited_at": _iso(h.edited_at),
                    "edited_by": h.edited_by,
                    "old": h.old,
                    "new": h.new,
                }
                for h in r.edit_history
            ]),
            "created_at": _iso(r.created_at),
            "updated_at": _iso(r.updated_at),
            "version": r.version,
        }

    # --- reminders ---

    def create(self, reminder: Reminder) -> str:
        """Insert a new reminder. Raises ValidationError for a past trigger."""
        now = self._clock()
        validate_new_reminder(reminder, now)
        stored = replace(
            reminder,
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
        params = self._reminder_params(stored)
        columns = ", ".join(params)
        placeholders = ", ".join(f":{k}" for k in params)
        with self._session() as conn:
            conn.execute(
                f"INSERT INTO reminders ({columns}) VALUES ({placeholders})", params
            )
        logger.info(
            "Reminder created: %s '%s' for %s at %s",
            stored.id, stored.title, stored.owner_id, _iso(stored.trigger_at),
        )
        return stored.id

    def get(self, reminder_id: str) -> Reminder | None:
        """Fetch a single reminder by ID."""
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM reminders WHERE id = ?", (reminder_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_reminder(row)

    def list_due_before(self, now: datetime) -> list[Reminder]:
        """Return reminders awaiting a fire at or before ``now``, oldest due first."""
        cutoff = _iso(now)
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM reminders
                WHERE status IN (?, ?)
                  AND COALESCE(next_trigger_at, trigger_at) <= ?
                  AND (last_triggered_at IS NULL
                       OR last_triggered_at < COALESCE(next_trigger_at, trigger_at))
                ORDER BY COALESCE(next_trigger_at, trigger_at), created_at
                """,
                (ReminderStatus.PENDING.value, ReminderStatus.SNOOZED.value, cutoff),
            ).fetchall()
        return [self._row_to_reminder(r) for r in rows]

    def update(
        self,
        reminder_id: str,
        mutation: Mutation,
        expected: Collection[ReminderStatus] | None = None,
    ) -> Reminder | None:
        """Apply ``mutation`` if the reminder is in an ``expected`` status.

        Optimistic: on a version conflict the row is re-read and the
        precondition re-checked. Returns None when the precondition fails.
        Exceptions raised by ``mutation`` propagate unchanged.
        """
        for _ in range(_MAX_UPDATE_RETRIES):
            current = self.get(reminder_id)
            if current is None:
                raise ReminderNotFoundError(reminder_id)
            if expected is not None and current.status not in expected:
                return None

            updated = mutation(replace(current, context=dict(current.context)))
            updated = replace(
                updated,
                id=current.id,
                version=current.version + 1,
                updated_at=self._clock(),
            )
            params = self._reminder_params(updated)
            assignments = ", ".join(f"{k} = :{k}" for k in params if k != "id")
            params["expected_version"] = current.version
            with self._session() as conn:
                cursor = conn.execute(
                    f"UPDATE reminders SET {assignments} "
                    "WHERE id = :id AND version = :expected_version",
                    params,
                )
            if cursor.rowcount == 1:
                return updated
            logger.debug("Version conflict on reminder %s, retrying", reminder_id)

        raise StoreError(f"Reminder {reminder_id} kept changing, update abandoned")

    def delete(self, reminder_id: str) -> bool:
        """Permanently delete a reminder and its dispatch history."""
        with self._session() as conn:
            cursor = conn.execute("DELETE FROM reminders WHERE id = ?", (reminder_id,))
            conn.execute(
                "DELETE FROM dispatch_attempts WHERE reminder_id = ?", (reminder_id,)
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Reminder %s deleted", reminder_id)
        return deleted

    def list_reminders(
        self,
        owner_id: str | None = None,
        status: ReminderStatus | None = None,
    ) -> list[Reminder]:
        """List reminders, optionally filtered by owner and/or status."""
        conditions: list[str] = []
        params: list = []
        if owner_id is not None:
            conditions.append("owner_id = ?")
            params.append(owner_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)

        query = "SELECT * FROM reminders"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY COALESCE(next_trigger_at, trigger_at)"

        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_reminder(r) for r in rows]

    def list_overdue(
        self, owner_id: str | None = None, now: datetime | None = None
    ) -> list[Reminder]:
        """Pending reminders that have fired and are still waiting on the owner."""
        now = now or self._clock()
        return [
            r for r in self.list_reminders(owner_id, ReminderStatus.PENDING)
            if r.is_overdue(now)
        ]

    def count_by_status(self, owner_id: str | None = None) -> dict[str, int]:
        query = "SELECT status, COUNT(*) AS n FROM reminders"
        params: list = []
        if owner_id is not None:
            query += " WHERE owner_id = ?"
            params.append(owner_id)
        query += " GROUP BY status"
        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()
        return {row["status"]: row["n"] for row in rows}

    def release_stale_claims(self, older_than: datetime) -> int:
        """Return reminders stuck in ``dispatching`` to pending."""
        with self._session() as conn:
            cursor = conn.execute(
                """
                UPDATE reminders
                SET status = ?, version = version + 1, updated_at = ?
                WHERE status = ? AND updated_at < ?
                """,
                (
                    ReminderStatus.PENDING.value,
                    _iso(self._clock()),
                    ReminderStatus.DISPATCHING.value,
                    _iso(older_than),
                ),
            )
        released = cursor.rowcount
        if released:
            logger.warning("Released %d stale dispatch claim(s)", released)
        return released

    # --- dispatch audit ---

    def record_attempt(self, attempt: DispatchAttempt) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO dispatch_attempts
                    (reminder_id, address, channel, outcome, timestamp, error_detail)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    attempt.reminder_id,
                    attempt.address,
                    attempt.channel.value,
                    attempt.outcome.value,
                    _iso(attempt.timestamp),
                    attempt.error_detail,
                ),
            )

    def list_attempts(self, reminder_id: str) -> list[DispatchAttempt]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM dispatch_attempts WHERE reminder_id = ? ORDER BY id",
                (reminder_id,),
            ).fetchall()
        return [
            DispatchAttempt(
                reminder_id=row["reminder_id"],
                address=row["address"],
                channel=DispatchChannel(row["channel"]),
                outcome=AttemptOutcome(row["outcome"]),
                timestamp=datetime.fromisoformat(row["timestamp"]),
                error_detail=row["error_detail"],
            )
            for row in rows
        ]


class DirectoryDB(_SQLiteBase):
    """SQLite-backed recipient directory (recipient → device push tokens)."""

    def __init__(
        self,
        db_path: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._clock = clock
        super().__init__(db_path)

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS recipients (
                    recipient_id  TEXT PRIMARY KEY,
                    role          TEXT NOT NULL,
                    display_name  TEXT NOT NULL DEFAULT '',
                    created_at    TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS device_addresses (
                    id             INTEGER PRIMARY KEY AUTOINCREMENT,
                    recipient_id   TEXT    NOT NULL,
                    role           TEXT    NOT NULL,
                    address        TEXT    NOT NULL,
                    registered_at  TEXT    NOT NULL,
                    active         INTEGER NOT NULL DEFAULT 1,
                    UNIQUE (recipient_id, address)
                )
            """)
        logger.debug("Directory tables initialized at %s", self._db_path)

    def register_recipient(
        self, recipient_id: str, role: RecipientRole, display_name: str = ""
    ) -> Recipient:
        """Insert or update a recipient."""
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO recipients (recipient_id, role, display_name, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (recipient_id)
                DO UPDATE SET role = excluded.role, display_name = excluded.display_name
                """,
                (recipient_id, role.value, display_name, _iso(self._clock())),
            )
        return Recipient(recipient_id=recipient_id, role=role, display_name=display_name)

    def list_recipients(
        self, roles: Collection[RecipientRole] | None = None
    ) -> list[Recipient]:
        query = "SELECT * FROM recipients"
        params: list = []
        if roles:
            query += f" WHERE role IN ({', '.join('?' for _ in roles)})"
            params.extend(r.value for r in roles)
        query += " ORDER BY created_at, recipient_id"
        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            Recipient(
                recipient_id=row["recipient_id"],
                role=RecipientRole(row["role"]),
                display_name=row["display_name"],
            )
            for row in rows
        ]

    def resolve_addresses(self, recipient_id: str) -> list[str]:
        """Live addresses for a recipient, most recently registered first."""
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT address FROM device_addresses
                WHERE recipient_id = ? AND active = 1
                ORDER BY registered_at DESC, id DESC
                """,
                (recipient_id,),
            ).fetchall()
        return [row["address"] for row in rows]

    def register_address(
        self,
        recipient_id: str,
        address: str,
        role: RecipientRole = RecipientRole.EMPLOYEE,
    ) -> None:
        """Register (or refresh) a device address for a recipient."""
        now = _iso(self._clock())
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO recipients (recipient_id, role, display_name, created_at)
                VALUES (?, ?, '', ?)
                ON CONFLICT (recipient_id) DO NOTHING
                """,
                (recipient_id, role.value, now),
            )
            conn.execute(
                """
                INSERT INTO device_addresses (recipient_id, role, address, registered_at, active)
                VALUES (?, ?, ?, ?, 1)
                ON CONFLICT (recipient_id, address)
                DO UPDATE SET role = excluded.role,
                              registered_at = excluded.registered_at,
                              active = 1
                """,
                (recipient_id, role.value, address, now),
            )
        logger.info("Device address registered for %s (%s)", recipient_id, role.value)

    def unregister_address(self, recipient_id: str, address: str) -> bool:
        """Soft-delete a device address (set active = 0)."""
        with self._session() as conn:
            cursor = conn.execute(
                """
                UPDATE device_addresses SET active = 0
                WHERE recipient_id = ? AND address = ? AND active = 1
                """,
                (recipient_id, address),
            )
        removed = cursor.rowcount > 0
        if removed:
            logger.info("Device address unregistered for %s", recipient_id)
        return removed


class NotificationDB(_SQLiteBase):
    """SQLite-backed in-app notification inbox."""

    def __init__(
        self,
        db_path: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._clock = clock
        super().__init__(db_path)

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    id             TEXT    PRIMARY KEY,
                    title          TEXT    NOT NULL,
                    message        TEXT    NOT NULL,
                    kind           TEXT    NOT NULL DEFAULT 'general',
                    priority       TEXT    NOT NULL DEFAULT 'normal',
                    recipient_id   TEXT,
                    metadata_json  TEXT    NOT NULL DEFAULT '{}',
                    read           INTEGER NOT NULL DEFAULT 0,
                    read_at        TEXT,
                    created_at     TEXT    NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_notifications_kind "
                "ON notifications (kind, read, created_at)"
            )
        logger.debug("Notification table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_notification(row: sqlite3.Row) -> Notification:
        return Notification(
            id=row["id"],
            title=row["title"],
            message=row["message"],
            kind=NotificationKind(row["kind"]),
            priority=NotificationPriority(row["priority"]),
            recipient_id=row["recipient_id"],
            metadata=json.loads(row["metadata_json"]),
            read=bool(row["read"]),
            read_at=_dt(row["read_at"]),
            created_at=_dt(row["created_at"]),
        )

    @staticmethod
    def _filters(
        kind: NotificationKind | None,
        recipient_id: str | None,
        unread_only: bool,
        since: datetime | None = None,
    ) -> tuple[str, list]:
        conditions: list[str] = []
        params: list = []
        if kind is not None:
            conditions.append("kind = ?")
            params.append(kind.value)
        if recipient_id is not None:
            conditions.append("recipient_id = ?")
            params.append(recipient_id)
        if unread_only:
            conditions.append("read = 0")
        if since is not None:
            conditions.append("created_at >= ?")
            params.append(_iso(since))
        where = " WHERE " + " AND ".join(conditions) if conditions else ""
        return where, params

    def add(self, notification: Notification) -> str:
        stored = replace(
            notification,
            id=notification.id or uuid4().hex,
            read=False,
            read_at=None,
            created_at=notification.created_at or self._clock(),
        )
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO notifications
                    (id, title, message, kind, priority, recipient_id,
                     metadata_json, read, read_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, NULL, ?)
                """,
                (
                    stored.id,
                    stored.title,
                    stored.message,
                    stored.kind.value,
                    stored.priority.value,
                    stored.recipient_id,
                    json.dumps(stored.metadata),
                    _iso(stored.created_at),
                ),
            )
        logger.info("Notification stored: %s (%s)", stored.id, stored.kind.value)
        return stored.id

    def get(self, notification_id: str) -> Notification | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM notifications WHERE id = ?", (notification_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_notification(row)

    def list_notifications(
        self,
        kind: NotificationKind | None = None,
        recipient_id: str | None = None,
        unread_only: bool = False,
        since: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Notification]:
        """Newest first."""
        where, params = self._filters(kind, recipient_id, unread_only, since)
        query = f"SELECT * FROM notifications{where} ORDER BY created_at DESC, rowid DESC"
        if limit is not None or offset:
            # LIMIT -1 is unbounded in SQLite
            query += " LIMIT ? OFFSET ?"
            params.extend([-1 if limit is None else limit, offset])
        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_notification(r) for r in rows]

    def count_notifications(
        self,
        kind: NotificationKind | None = None,
        recipient_id: str | None = None,
        unread_only: bool = False,
    ) -> int:
        where, params = self._filters(kind, recipient_id, unread_only)
        with self._session() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS n FROM notifications{where}", params
            ).fetchone()
        return row["n"]

    def mark_read(self, notification_id: str) -> Notification | None:
        """Mark a notification read. Returns None if it does not exist."""
        with self._session() as conn:
            conn.execute(
                "UPDATE notifications SET read = 1, read_at = ? "
                "WHERE id = ? AND read = 0",
                (_iso(self._clock()), notification_id),
            )
        return self.get(notification_id)
