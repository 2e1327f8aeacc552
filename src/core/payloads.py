"""
Lead CRM Reminders — Notification Payloads.

Every notification-worthy event (reminder fire, alert, chat message,
lead assignment, bulk announcement) is rendered into one stable schema:

    {
        "notification": {"title": ..., "body": ...},
        "data": {"type": "reminder" | "alert" | "chat" | "system_announcement", ...},
        "deliveryHints": {"platformPriority": "high", "sound": "default", "badge": 1}
    }

``data`` values are always strings so the payload survives FCM's
string-only data map unchanged.
"""

from __future__ import annotations

from typing import Any

from src.data.models import Reminder

TYPE_REMINDER = "reminder"
TYPE_ALERT = "alert"
TYPE_CHAT = "chat"
TYPE_ANNOUNCEMENT = "system_announcement"

PAYLOAD_TYPES = frozenset({TYPE_REMINDER, TYPE_ALERT, TYPE_CHAT, TYPE_ANNOUNCEMENT})

_CHAT_PREVIEW_CHARS = 50


def build_payload(
    payload_type: str,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
    priority: str = "high",
    sound: str = "default",
    badge: int = 1,
) -> dict[str, Any]:
    """Assemble a payload. ``type`` always wins over a same-named data key."""
    if payload_type not in PAYLOAD_TYPES:
        raise ValueError(f"Unknown payload type: {payload_type!r}")

    flat: dict[str, str] = {}
    for key, value in (data or {}).items():
        flat[str(key)] = "" if value is None else str(value)
    flat["type"] = payload_type

    return {
        "notification": {"title": title, "body": body},
        "data": flat,
        "deliveryHints": {
            "platformPriority": priority,
            "sound": sound,
            "badge": badge,
        },
    }


def reminder_payload(reminder: Reminder) -> dict[str, Any]:
    """Payload for a reminder or alert fire; context rides along for deep links."""
    data: dict[str, Any] = dict(reminder.context)
    data.update(
        reminderId=reminder.id,
        title=reminder.title,
        note=reminder.note,
        triggerAt=reminder.effective_trigger_at.isoformat(),
    )
    return build_payload(
        reminder.kind.value,
        title=reminder.title,
        body=reminder.note or reminder.title,
        data=data,
    )


def chat_payload(
    chat_id: str, sender_id: str, sender_name: str, text: str
) -> dict[str, Any]:
    preview = text
    if len(text) > _CHAT_PREVIEW_CHARS:
        preview = text[:_CHAT_PREVIEW_CHARS] + "..."
    return build_payload(
        TYPE_CHAT,
        title=f"💬 {sender_name}",
        body=preview,
        data={
            "chatId": chat_id,
            "senderId": sender_id,
            "senderName": sender_name,
            "action": "open_chat",
        },
    )


def announcement_payload(
    title: str, body: str, sender_name: str = "System"
) -> dict[str, Any]:
    return build_payload(
        TYPE_ANNOUNCEMENT,
        title=title,
        body=body,
        data={"action": "view_announcement", "senderName": sender_name},
        badge=0,
    )


def simplify(payload: dict[str, Any]) -> dict[str, Any]:
    """Data-only rendition used by the fallback path.

    Title and body move into ``data`` so a device that drops the
    notification block still has something to show.
    """
    notification = payload.get("notification") or {}
    data = dict(payload.get("data") or {})
    data.setdefault("title", str(notification.get("title", "")))
    data.setdefault("body", str(notification.get("body", "")))
    hints = payload.get("deliveryHints") or {}
    return {
        "notification": None,
        "data": data,
        "deliveryHints": {
            "platformPriority": hints.get("platformPriority", "high"),
            "sound": None,
            "badge": None,
        },
    }
