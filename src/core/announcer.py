"""
Lead CRM Reminders — Bulk Announcer.

Fans one system announcement out to every recipient in scope with
multicast sends of at most ``MULTICAST_BATCH_SIZE`` addresses each.
There is no per-recipient retry and no checkpointing: the summary
reports what the gateway said happened.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from typing import TYPE_CHECKING

from src.core.payloads import announcement_payload
from src.data.models import AnnouncementSummary, RecipientRole

if TYPE_CHECKING:
    from src.ports.push_gateway_port import PushGatewayPort
    from src.ports.recipient_directory_port import RecipientDirectoryPort

logger = logging.getLogger(__name__)


class BulkAnnouncer:
    def __init__(
        self,
        directory: RecipientDirectoryPort,
        gateway: PushGatewayPort,
        batch_size: int = 500,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._directory = directory
        self._gateway = gateway
        self._batch_size = batch_size

    async def announce(
        self,
        title: str,
        body: str,
        roles: Collection[RecipientRole] | None = None,
        sender_name: str = "System",
    ) -> AnnouncementSummary:
        """Send an announcement to every recipient holding one of ``roles``.

        ``roles=None`` means everyone. Recipients without a live address
        are counted in ``addressless_count``, not as failures.
        """
        recipients = self._directory.list_recipients(roles)
        addresses: list[str] = []
        seen: set[str] = set()
        addressless = 0

        for recipient in recipients:
            resolved = self._directory.resolve_addresses(recipient.recipient_id)
            if not resolved:
                addressless += 1
            for address in resolved:
                if address not in seen:
                    seen.add(address)
                    addresses.append(address)

        summary = AnnouncementSummary(
            sent_count=0,
            failed_count=0,
            total_recipients=len(recipients),
            addressless_count=addressless,
        )
        if not addresses:
            logger.warning(
                "Announcement '%s' has no deliverable addresses (%d recipients)",
                title, len(recipients),
            )
            return summary

        payload = announcement_payload(title, body, sender_name=sender_name)
        for start in range(0, len(addresses), self._batch_size):
            batch = addresses[start:start + self._batch_size]
            try:
                result = await self._gateway.send_multicast(batch, payload)
            except Exception as exc:
                logger.error(
                    "Announcement batch of %d failed outright: %s", len(batch), exc,
                )
                summary.failed_count += len(batch)
                continue
            summary.sent_count += result.success_count
            summary.failed_count += result.failure_count

        logger.info(
            "Announcement '%s': %d sent, %d failed, %d recipients (%d without address)",
            title, summary.sent_count, summary.failed_count,
            summary.total_recipients, summary.addressless_count,
        )
        return summary
