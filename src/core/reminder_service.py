"""
Lead CRM Reminders — UI-Agnostic Reminder Service.

Stateless service layer the HTTP routes (or any other front end) call:
validate input -> run the store / lifecycle / dispatch operation ->
return a structured ServiceResponse with an HTTP-style status code.

Engine errors never escape: each is mapped onto a response
(validation 400, not found 404, invalid state 409, store 503).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from src.core.errors import (
    InvalidStateError,
    NotFoundError,
    NotificationNotFoundError,
    ReminderEngineError,
    ReminderNotFoundError,
    StoreError,
    ValidationError,
)
from src.core.leads import (
    FollowUp,
    LeadAssignment,
    assignment_payload,
    reminder_from_assignment,
    reminder_from_follow_up,
)
from src.core.payloads import TYPE_ALERT, build_payload, chat_payload
from src.data.models import (
    Notification,
    NotificationKind,
    NotificationPriority,
    Reminder,
    ReminderKind,
    ReminderStatus,
    RecipientRole,
    RepeatInterval,
    ResponseQuality,
    utcnow,
)

if TYPE_CHECKING:
    from src.core.announcer import BulkAnnouncer
    from src.core.dispatcher import Dispatcher
    from src.core.lifecycle import LifecycleManager
    from src.ports.notification_store_port import NotificationStorePort
    from src.ports.recipient_directory_port import RecipientDirectoryPort
    from src.ports.reminder_store_port import ReminderStorePort

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Response types
# ---------------------------------------------------------------------------


class ResponseKind(Enum):
    SUCCESS = "success"
    ERROR = "error"
    QUERY_RESULT = "query_result"
    NO_ACTION = "no_action"


@dataclass
class ServiceResponse:
    kind: ResponseKind
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    status_code: int = 200

    @property
    def ok(self) -> bool:
        return self.kind is not ResponseKind.ERROR


def _error_response(exc: ReminderEngineError) -> ServiceResponse:
    if isinstance(exc, ValidationError):
        status = 400
    elif isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, InvalidStateError):
        status = 409
    elif isinstance(exc, StoreError):
        status = 503
    else:
        status = 500
    data: dict[str, Any] = {}
    if isinstance(exc, InvalidStateError):
        data = {"currentState": exc.current_state, "attempted": exc.attempted}
    elif isinstance(exc, StoreError):
        data = {"retriable": True}
    return ServiceResponse(ResponseKind.ERROR, str(exc), data, status)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def reminder_to_dict(reminder: Reminder, now: datetime | None = None) -> dict[str, Any]:
    """JSON-ready view of a reminder, camelCase like the mobile client expects."""
    data = {
        "id": reminder.id,
        "ownerId": reminder.owner_id,
        "createdBy": reminder.created_by,
        "kind": reminder.kind.value,
        "title": reminder.title,
        "note": reminder.note,
        "context": dict(reminder.context),
        "triggerAt": _iso(reminder.trigger_at),
        "nextTriggerAt": _iso(reminder.next_trigger_at),
        "isRepeating": reminder.is_repeating,
        "repeatInterval": reminder.repeat_interval.value,
        "repeatMinutes": reminder.repeat_minutes,
        "status": reminder.status.value,
        "snoozeCount": reminder.snooze_count,
        "triggerCount": reminder.trigger_count,
        "lastTriggeredAt": _iso(reminder.last_triggered_at),
        "completionResponse": reminder.completion_response,
        "completedAt": _iso(reminder.completed_at),
        "responseWordCount": reminder.response_word_count,
        "responseQuality": (
            reminder.response_quality.value if reminder.response_quality else None
        ),
        "editCount": len(reminder.edit_history),
        "createdAt": _iso(reminder.created_at),
        "updatedAt": _iso(reminder.updated_at),
    }
    if now is not None:
        data["isOverdue"] = reminder.is_overdue(now)
        data["isDue"] = reminder.is_past_due(now)
    return data


def notification_to_dict(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "title": notification.title,
        "message": notification.message,
        "type": notification.kind.value,
        "priority": notification.priority.value,
        "recipientId": notification.recipient_id,
        "metadata": dict(notification.metadata),
        "read": notification.read,
        "readAt": _iso(notification.read_at),
        "createdAt": _iso(notification.created_at),
    }


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ReminderService:
    """Entry point for every reminder, announcement, inbox and device operation."""

    def __init__(
        self,
        store: ReminderStorePort,
        directory: RecipientDirectoryPort,
        lifecycle: LifecycleManager,
        dispatcher: Dispatcher,
        announcer: BulkAnnouncer,
        notifications: NotificationStorePort,
        clock: Callable[[], datetime] = utcnow,
        default_snooze_minutes: int = 15,
    ) -> None:
        self._store = store
        self._directory = directory
        self._lifecycle = lifecycle
        self._dispatcher = dispatcher
        self._announcer = announcer
        self._notifications = notifications
        self._clock = clock
        self._default_snooze_minutes = default_snooze_minutes

    # --- create ---

    def create_reminder(
        self,
        owner_id: str,
        title: str,
        trigger_at: datetime,
        note: str = "",
        kind: str = "reminder",
        context: dict[str, str] | None = None,
        created_by: str | None = None,
        is_repeating: bool = False,
        repeat_interval: str = "none",
        repeat_minutes: int | None = None,
    ) -> ServiceResponse:
        """Mirror of ``POST /reminders``."""
        try:
            reminder = Reminder(
                id="",
                owner_id=owner_id,
                title=title,
                trigger_at=trigger_at,
                note=note or "",
                kind=_parse_enum(ReminderKind, kind, "kind"),
                context={str(k): str(v) for k, v in (context or {}).items()},
                created_by=created_by,
                is_repeating=is_repeating,
                repeat_interval=_parse_enum(RepeatInterval, repeat_interval, "repeatInterval"),
                repeat_minutes=repeat_minutes,
            )
            reminder_id = self._store.create(reminder)
            created = self._store.get(reminder_id)
        except ReminderEngineError as exc:
            logger.warning("Reminder not created for %s: %s", owner_id, exc)
            return _error_response(exc)

        return ServiceResponse(
            ResponseKind.SUCCESS,
            f"Reminder '{created.title}' scheduled",
            reminder_to_dict(created),
            201,
        )

    async def create_from_assignment(
        self, assignment: LeadAssignment, created_by: str | None = None
    ) -> ServiceResponse:
        """Schedule the assignment's due reminder, then push it to the employee."""
        try:
            reminder = reminder_from_assignment(assignment, created_by=created_by)
            reminder_id = self._store.create(reminder) if reminder else None
            outcome = await self._dispatcher.notify(
                assignment.employee_id, assignment_payload(assignment),
            )
        except ReminderEngineError as exc:
            logger.warning("Assignment %s reminder failed: %s", assignment.id, exc)
            return _error_response(exc)

        if reminder_id is None:
            return ServiceResponse(
                ResponseKind.NO_ACTION,
                "Assignment pushed; no reminder needed",
                {"notified": outcome.success},
            )
        return ServiceResponse(
            ResponseKind.SUCCESS,
            "Assignment reminder scheduled",
            {"reminderId": reminder_id, "notified": outcome.success},
            201,
        )

    def create_from_follow_up(
        self, follow_up: FollowUp, created_by: str | None = None
    ) -> ServiceResponse:
        try:
            reminder = reminder_from_follow_up(follow_up, created_by=created_by)
            if reminder is None:
                return ServiceResponse(
                    ResponseKind.NO_ACTION, "Follow-up is closed or has no next date",
                )
            reminder_id = self._store.create(reminder)
        except ReminderEngineError as exc:
            logger.warning("Follow-up %s reminder failed: %s", follow_up.id, exc)
            return _error_response(exc)

        return ServiceResponse(
            ResponseKind.SUCCESS,
            "Follow-up reminder scheduled",
            {"reminderId": reminder_id},
            201,
        )

    # --- queries ---

    def list_reminders(
        self,
        owner_id: str | None = None,
        status: str | None = None,
        overdue_only: bool = False,
        due_only: bool = False,
    ) -> ServiceResponse:
        """Mirror of ``GET /reminders?status=&ownerId=``.

        ``overdue_only`` keeps reminders that fired and still wait on the
        owner; ``due_only`` keeps every live reminder whose time has
        passed, including ones the scheduler has not reached yet.
        """
        now = self._clock()
        try:
            if overdue_only:
                reminders = self._store.list_overdue(owner_id, now)
            elif due_only:
                reminders = [
                    r for r in self._store.list_reminders(owner_id) if r.is_past_due(now)
                ]
            else:
                parsed = _parse_enum(ReminderStatus, status, "status") if status else None
                reminders = self._store.list_reminders(owner_id, parsed)
        except ReminderEngineError as exc:
            return _error_response(exc)

        return ServiceResponse(
            ResponseKind.QUERY_RESULT,
            f"{len(reminders)} reminder(s)",
            {
                "count": len(reminders),
                "reminders": [reminder_to_dict(r, now) for r in reminders],
            },
        )

    def get_stats(self, owner_id: str | None = None) -> ServiceResponse:
        try:
            counts = self._store.count_by_status(owner_id)
            overdue = len(self._store.list_overdue(owner_id, self._clock()))
        except ReminderEngineError as exc:
            return _error_response(exc)

        stats = {status.value: counts.get(status.value, 0) for status in ReminderStatus}
        stats["total"] = sum(counts.values())
        stats["overdue"] = overdue
        return ServiceResponse(ResponseKind.QUERY_RESULT, "Reminder stats", stats)

    def get_attempts(self, reminder_id: str) -> ServiceResponse:
        try:
            if self._store.get(reminder_id) is None:
                raise ReminderNotFoundError(reminder_id)
            attempts = self._store.list_attempts(reminder_id)
        except ReminderEngineError as exc:
            return _error_response(exc)

        return ServiceResponse(
            ResponseKind.QUERY_RESULT,
            f"{len(attempts)} attempt(s)",
            {
                "attempts": [
                    {
                        "address": a.address,
                        "channel": a.channel.value,
                        "outcome": a.outcome.value,
                        "timestamp": a.timestamp.isoformat(),
                        "errorDetail": a.error_detail,
                    }
                    for a in attempts
                ],
            },
        )

    # --- lifecycle ---

    async def complete(self, reminder_id: str, response: str) -> ServiceResponse:
        """Mirror of ``POST /reminders/{id}/complete``."""
        try:
            reminder = self._lifecycle.complete(reminder_id, response)
        except ReminderEngineError as exc:
            return _error_response(exc)

        if reminder.response_quality is ResponseQuality.RED:
            await self._alert_admins_low_quality(reminder)

        return ServiceResponse(
            ResponseKind.SUCCESS, "Reminder completed", reminder_to_dict(reminder),
        )

    def snooze(self, reminder_id: str, minutes: int | None = None) -> ServiceResponse:
        """Mirror of ``PUT /reminders/{id}/snooze``."""
        if minutes is None:
            minutes = self._default_snooze_minutes
        try:
            reminder = self._lifecycle.snooze(reminder_id, minutes)
        except ReminderEngineError as exc:
            return _error_response(exc)
        return ServiceResponse(
            ResponseKind.SUCCESS,
            f"Reminder snoozed for {minutes} minutes",
            reminder_to_dict(reminder),
        )

    def dismiss(self, reminder_id: str) -> ServiceResponse:
        """Mirror of ``PUT /reminders/{id}/dismiss``."""
        try:
            reminder = self._lifecycle.dismiss(reminder_id)
        except ReminderEngineError as exc:
            return _error_response(exc)
        return ServiceResponse(
            ResponseKind.SUCCESS, "Reminder dismissed", reminder_to_dict(reminder),
        )

    def edit(
        self,
        reminder_id: str,
        title: str | None = None,
        note: str | None = None,
        trigger_at: datetime | None = None,
        edited_by: str | None = None,
    ) -> ServiceResponse:
        try:
            reminder = self._lifecycle.edit(
                reminder_id, title=title, note=note, trigger_at=trigger_at,
                edited_by=edited_by,
            )
        except ReminderEngineError as exc:
            return _error_response(exc)
        return ServiceResponse(
            ResponseKind.SUCCESS, "Reminder updated", reminder_to_dict(reminder),
        )

    def delete(self, reminder_id: str) -> ServiceResponse:
        try:
            deleted = self._store.delete(reminder_id)
        except ReminderEngineError as exc:
            return _error_response(exc)
        if not deleted:
            return _error_response(ReminderNotFoundError(reminder_id))
        return ServiceResponse(ResponseKind.SUCCESS, "Reminder deleted", {"id": reminder_id})

    # --- notifications ---

    async def announce(
        self,
        title: str,
        body: str,
        roles: list[str] | None = None,
        sender_name: str = "System",
    ) -> ServiceResponse:
        """Mirror of ``POST /announcements``."""
        if not (title or "").strip() or not (body or "").strip():
            return _error_response(ValidationError("title and message are required"))
        try:
            parsed_roles = (
                [_parse_enum(RecipientRole, r, "role") for r in roles] if roles else None
            )
            summary = await self._announcer.announce(
                title.strip(), body.strip(), roles=parsed_roles, sender_name=sender_name,
            )
        except ReminderEngineError as exc:
            return _error_response(exc)

        return ServiceResponse(
            ResponseKind.SUCCESS,
            f"Announcement sent to {summary.sent_count} device(s)",
            summary.as_dict(),
        )

    def register_device(
        self, recipient_id: str, address: str, role: str = "employee"
    ) -> ServiceResponse:
        """Store the push token a device reported for its user."""
        if not (recipient_id or "").strip() or not (address or "").strip():
            return _error_response(ValidationError("recipient id and token are required"))
        try:
            self._directory.register_address(
                recipient_id, address.strip(), _parse_enum(RecipientRole, role, "role"),
            )
        except ReminderEngineError as exc:
            return _error_response(exc)
        logger.info("Push token registered for %s (%s)", recipient_id, role)
        return ServiceResponse(ResponseKind.SUCCESS, "Device registered")

    async def notify_chat_message(
        self,
        recipient_id: str,
        chat_id: str,
        sender_id: str,
        sender_name: str,
        text: str,
    ) -> ServiceResponse:
        if recipient_id == sender_id:
            return ServiceResponse(ResponseKind.NO_ACTION, "Sender is the recipient")
        try:
            outcome = await self._dispatcher.notify(
                recipient_id, chat_payload(chat_id, sender_id, sender_name, text),
            )
        except ReminderEngineError as exc:
            return _error_response(exc)
        if outcome.no_recipient:
            return ServiceResponse(ResponseKind.NO_ACTION, "Recipient has no device")
        return ServiceResponse(
            ResponseKind.SUCCESS,
            "Chat notification sent" if outcome.success else "Chat notification failed",
            {"delivered": len(outcome.delivered_addresses)},
        )

    # --- in-app inbox ---

    def list_notifications(
        self,
        kind: str | None = None,
        recipient_id: str | None = None,
        unread_only: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> ServiceResponse:
        """Mirror of ``GET /notifications?type=&unreadOnly=&page=&limit=``."""
        try:
            if page < 1 or limit < 1:
                raise ValidationError("page and limit must be positive")
            parsed = _parse_enum(NotificationKind, kind, "type") if kind else None
            found = self._notifications.list_notifications(
                kind=parsed,
                recipient_id=recipient_id,
                unread_only=unread_only,
                limit=limit,
                offset=(page - 1) * limit,
            )
            total = self._notifications.count_notifications(
                kind=parsed, recipient_id=recipient_id, unread_only=unread_only,
            )
        except ReminderEngineError as exc:
            return _error_response(exc)

        return ServiceResponse(
            ResponseKind.QUERY_RESULT,
            f"{len(found)} notification(s)",
            {
                "notifications": [notification_to_dict(n) for n in found],
                "pagination": {
                    "currentPage": page,
                    "totalPages": -(-total // limit),
                    "total": total,
                    "hasNext": page * limit < total,
                    "hasPrev": page > 1,
                },
            },
        )

    def mark_notification_read(self, notification_id: str) -> ServiceResponse:
        try:
            notification = self._notifications.mark_read(notification_id)
            if notification is None:
                raise NotificationNotFoundError(notification_id)
        except ReminderEngineError as exc:
            return _error_response(exc)
        return ServiceResponse(
            ResponseKind.SUCCESS,
            "Notification marked as read",
            notification_to_dict(notification),
        )

    def get_low_quality_stats(self, days: int = 7) -> ServiceResponse:
        """Red-quality completions over the last ``days``, grouped by employee."""
        try:
            if days < 1:
                raise ValidationError("days must be positive")
            alerts = self._notifications.list_notifications(
                kind=NotificationKind.BAD_ATTENDANT,
                since=self._clock() - timedelta(days=days),
            )
        except ReminderEngineError as exc:
            return _error_response(exc)

        grouped: dict[str, dict[str, Any]] = {}
        for alert in alerts:
            employee_id = alert.metadata.get("employeeId")
            entry = grouped.setdefault(
                employee_id, {"employeeId": employee_id, "count": 0, "totalWordCount": 0},
            )
            entry["count"] += 1
            entry["totalWordCount"] += int(alert.metadata.get("wordCount", 0))
        by_employee = sorted(grouped.values(), key=lambda e: e["count"], reverse=True)
        for entry in by_employee:
            entry["avgWordCount"] = entry["totalWordCount"] / entry["count"]

        return ServiceResponse(
            ResponseKind.QUERY_RESULT,
            "Low-quality response stats",
            {
                "total": len(alerts),
                "byEmployee": by_employee,
                "period": f"Last {days} days",
            },
        )

    async def _alert_admins_low_quality(self, reminder: Reminder) -> None:
        """Record a red-quality completion in the admin inbox, then push it.

        Neither step can fail the completion, which is already stored.
        """
        notification = Notification(
            id="",
            title=f"Low-quality reminder response from {reminder.owner_id}",
            message=(
                f"{reminder.owner_id} completed '{reminder.title}' with "
                f"{reminder.response_word_count} word(s)"
            ),
            kind=NotificationKind.BAD_ATTENDANT,
            priority=NotificationPriority.HIGH,
            metadata={
                "reminderId": reminder.id,
                "employeeId": reminder.owner_id,
                "reminderTitle": reminder.title,
                "clientName": reminder.context.get("clientName", ""),
                "response": reminder.completion_response or "",
                "wordCount": reminder.response_word_count,
                "zone": ResponseQuality.RED.value,
            },
        )
        data = {
            "action": "review_response",
            "reminderId": reminder.id,
            "ownerId": reminder.owner_id,
            "responseWordCount": reminder.response_word_count,
            "responseQuality": ResponseQuality.RED.value,
        }
        try:
            data["notificationId"] = self._notifications.add(notification)
        except ReminderEngineError as exc:
            logger.error("Low-quality alert for %s not stored: %s", reminder.id, exc)

        payload = build_payload(
            TYPE_ALERT, title=notification.title, body=notification.message, data=data,
        )
        try:
            admins = self._directory.list_recipients([RecipientRole.ADMIN])
            for admin in admins:
                await self._dispatcher.notify(admin.recipient_id, payload)
        except ReminderEngineError as exc:
            logger.error("Low-quality alert for %s not pushed: %s", reminder.id, exc)
            return
        logger.info(
            "Low-quality alert for reminder %s sent to %d admin(s)",
            reminder.id, len(admins),
        )


def _parse_enum(enum_cls: type[Enum], value: Any, field_name: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"{field_name} must be one of: {allowed}") from None
