"""
Lead CRM Reminders — Dispatcher.

Delivers one payload to one recipient: resolves the recipient's live
device addresses, tries the primary gateway per address and falls back
when the primary fails, times out or rejects the send. Every try is
recorded as a DispatchAttempt.

The dispatcher never touches reminder state; the scheduler owns that.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from src.core.errors import NoRecipientAddress, StoreError
from src.core.payloads import reminder_payload, simplify
from src.data.models import (
    NO_RECIPIENT_ADDRESS,
    AttemptOutcome,
    DispatchAttempt,
    DispatchChannel,
    DispatchOutcome,
    Reminder,
    utcnow,
)
from src.ports.push_gateway_port import SendFailure, SendResult

if TYPE_CHECKING:
    from src.ports.push_gateway_port import PushGatewayPort
    from src.ports.recipient_directory_port import RecipientDirectoryPort
    from src.ports.reminder_store_port import ReminderStorePort

logger = logging.getLogger(__name__)


class Dispatcher:
    """Primary-then-fallback delivery to every address of a recipient."""

    def __init__(
        self,
        directory: RecipientDirectoryPort,
        gateway: PushGatewayPort,
        store: ReminderStorePort | None = None,
        fallback_gateway: PushGatewayPort | None = None,
        timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._directory = directory
        self._gateway = gateway
        self._store = store
        self._fallback_gateway = fallback_gateway
        self._timeout = timeout
        self._clock = clock

    async def dispatch(self, reminder: Reminder) -> DispatchOutcome:
        """Deliver a fired reminder to its owner. Attempts are audited."""
        return await self._deliver(
            reminder.owner_id, reminder_payload(reminder), reminder_id=reminder.id,
        )

    async def notify(
        self, recipient_id: str, payload: dict[str, Any]
    ) -> DispatchOutcome:
        """Deliver a non-reminder event (chat, assignment, admin alert)."""
        return await self._deliver(recipient_id, payload, reminder_id=None)

    # ------------------------------------------------------------------

    async def _deliver(
        self,
        recipient_id: str,
        payload: dict[str, Any],
        reminder_id: str | None,
    ) -> DispatchOutcome:
        addresses = self._directory.resolve_addresses(recipient_id)
        outcome = DispatchOutcome(reminder_id=reminder_id, success=False)

        if not addresses:
            logger.warning("%s; skipping delivery", NoRecipientAddress(recipient_id))
            attempt = DispatchAttempt(
                reminder_id=reminder_id,
                address=None,
                channel=DispatchChannel.PRIMARY,
                outcome=AttemptOutcome.FAILED,
                timestamp=self._clock(),
                error_detail=NO_RECIPIENT_ADDRESS,
            )
            self._record(attempt)
            outcome.attempts.append(attempt)
            outcome.no_recipient = True
            return outcome

        fallback_gateway = self._fallback_gateway or self._gateway
        fallback_payload = payload if self._fallback_gateway else simplify(payload)

        for address in addresses:
            primary, attempt = await self._attempt(
                self._gateway, address, payload, DispatchChannel.PRIMARY, reminder_id,
            )
            outcome.attempts.append(attempt)
            if primary is not None and primary.success:
                outcome.delivered_addresses.append(address)
                continue

            fallback, attempt = await self._attempt(
                fallback_gateway, address, fallback_payload,
                DispatchChannel.FALLBACK, reminder_id,
            )
            outcome.attempts.append(attempt)
            if fallback is not None and fallback.success:
                outcome.delivered_addresses.append(address)
                continue

            if _is_dead_address(primary) and _is_dead_address(fallback):
                logger.info(
                    "Unregistering dead address %s… for %s", address[:12], recipient_id,
                )
                try:
                    self._directory.unregister_address(recipient_id, address)
                except StoreError as exc:
                    logger.error(
                        "Could not unregister %s… for %s: %s",
                        address[:12], recipient_id, exc,
                    )

        outcome.success = bool(outcome.delivered_addresses)
        logger.info(
            "Delivery to %s (reminder=%s): %d/%d address(es) reached",
            recipient_id, reminder_id,
            len(outcome.delivered_addresses), len(addresses),
        )
        return outcome

    async def _attempt(
        self,
        gateway: PushGatewayPort,
        address: str,
        payload: dict[str, Any],
        channel: DispatchChannel,
        reminder_id: str | None,
    ) -> tuple[SendResult | None, DispatchAttempt]:
        """One bounded send. Returns (result or None on error, audit record)."""
        result: SendResult | None = None
        try:
            result = await asyncio.wait_for(
                gateway.send_to_one(address, payload), timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            status, detail = AttemptOutcome.TIMEOUT, f"no response in {self._timeout}s"
        except Exception as exc:
            status, detail = AttemptOutcome.FAILED, f"{type(exc).__name__}: {exc}"
        else:
            if result.success:
                status, detail = AttemptOutcome.SENT, None
            else:
                failure = result.failure.value if result.failure else "unknown"
                status = AttemptOutcome.FAILED
                detail = f"{failure}: {result.detail}" if result.detail else failure

        if status is not AttemptOutcome.SENT:
            logger.warning(
                "%s send to %s… failed (%s): %s",
                channel.value, address[:12], status.value, detail,
            )

        attempt = DispatchAttempt(
            reminder_id=reminder_id,
            address=address,
            channel=channel,
            outcome=status,
            timestamp=self._clock(),
            error_detail=detail,
        )
        self._record(attempt)
        return result, attempt

    def _record(self, attempt: DispatchAttempt) -> None:
        if self._store is None or attempt.reminder_id is None:
            return
        self._store.record_attempt(attempt)


def _is_dead_address(result: SendResult | None) -> bool:
    return (
        result is not None
        and not result.success
        and result.failure is SendFailure.INVALID_ADDRESS
    )
