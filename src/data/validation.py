"""Creation-time checks shared by every reminder store implementation."""

from __future__ import annotations

from datetime import datetime

from src.core.errors import ValidationError
from src.data.models import Reminder, RepeatInterval


def require_aware(value: datetime, field_name: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(f"{field_name} must be timezone-aware")


def validate_new_reminder(reminder: Reminder, now: datetime) -> None:
    """Reject a reminder that may not be stored.

    A reminder scheduled for the past is rejected, never silently fired.
    """
    if not reminder.owner_id or not reminder.owner_id.strip():
        raise ValidationError("owner_id is required")
    if not reminder.title or not reminder.title.strip():
        raise ValidationError("title is required")
    require_aware(reminder.trigger_at, "trigger_at")
    if reminder.trigger_at <= now:
        raise ValidationError(
            f"trigger_at {reminder.trigger_at.isoformat()} is not in the future"
        )
    if reminder.is_repeating:
        if reminder.repeat_interval is RepeatInterval.NONE:
            raise ValidationError("a repeating reminder needs a repeat interval")
        if reminder.repeat_interval is RepeatInterval.CUSTOM and (
            not reminder.repeat_minutes or reminder.repeat_minutes <= 0
        ):
            raise ValidationError("custom repeat needs repeat_minutes > 0")
