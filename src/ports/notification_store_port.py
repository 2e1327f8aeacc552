"""Notification store port — abstract interface for the in-app inbox.

Holds the persisted side of every notification: admin alerts and the
in-app copy of each fired reminder. A push may be lost; the record
is not.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from src.data.models import Notification, NotificationKind


class NotificationStorePort(Protocol):
    """Abstract notification store used by core modules."""

    def add(self, notification: Notification) -> str: ...

    def get(self, notification_id: str) -> Notification | None: ...

    def list_notifications(
        self,
        kind: NotificationKind | None = None,
        recipient_id: str | None = None,
        unread_only: bool = False,
        since: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Notification]: ...

    def count_notifications(
        self,
        kind: NotificationKind | None = None,
        recipient_id: str | None = None,
        unread_only: bool = False,
    ) -> int: ...

    def mark_read(self, notification_id: str) -> Notification | None: ...
