"""Error taxonomy for the reminder engine.

Validation and state errors are user-facing and never retried.
Delivery and store errors are retried at the layer that owns them
(gateway fallback, next scheduler tick) and never crash the poll loop.
"""

from __future__ import annotations


class ReminderEngineError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(ReminderEngineError):
    """Raised on bad input: empty response, past schedule, bad snooze."""


class InvalidStateError(ReminderEngineError):
    """Raised when a transition is attempted from an incompatible state."""

    def __init__(self, current_state: str, attempted: str) -> None:
        self.current_state = current_state
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} a reminder that is {current_state}"
        )


class DeliveryError(ReminderEngineError):
    """Raised by a push gateway adapter when the transport call fails."""


class StoreError(ReminderEngineError):
    """Raised when the persistence layer is unavailable. Retriable."""


class NotFoundError(StoreError):
    """Raised when a stored record does not exist."""


class ReminderNotFoundError(NotFoundError):
    """Raised when a reminder id does not exist."""

    def __init__(self, reminder_id: str) -> None:
        self.reminder_id = reminder_id
        super().__init__(f"Reminder {reminder_id} not found")


class ReminderBusyError(StoreError):
    """Raised when a recipient action hits a reminder that is mid-dispatch."""

    def __init__(self, reminder_id: str) -> None:
        self.reminder_id = reminder_id
        super().__init__(
            f"Reminder {reminder_id} is being delivered right now, try again"
        )


class NoRecipientAddress(ReminderEngineError):
    """The owner has no live device address. Logged, never surfaced."""

    def __init__(self, recipient_id: str) -> None:
        self.recipient_id = recipient_id
        super().__init__(f"No live device address for recipient {recipient_id}")


class NotificationNotFoundError(NotFoundError):
    """Raised when an in-app notification id does not exist."""

    def __init__(self, notification_id: str) -> None:
        self.notification_id = notification_id
        super().__init__(f"Notification {notification_id} not found")
