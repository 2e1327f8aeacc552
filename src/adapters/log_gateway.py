"""Log-only push gateway — implements PushGatewayPort without a transport.

Used for local runs (PUSH_PROVIDER=log): every send succeeds and is
written to the log instead of a device.
"""

from __future__ import annotations

import logging
from typing import Any

from src.ports.push_gateway_port import MulticastResult, SendResult

logger = logging.getLogger(__name__)


class LogGateway:
    """Logging implementation of PushGatewayPort."""

    def __init__(self, name: str = "log") -> None:
        self._name = name
        self._counter = 0

    async def send_to_one(self, address: str, payload: dict[str, Any]) -> SendResult:
        self._counter += 1
        notification = payload.get("notification") or {}
        logger.info(
            "[%s] push to %s…: %s | %s (type=%s)",
            self._name, address[:12],
            notification.get("title", ""), notification.get("body", ""),
            payload.get("data", {}).get("type"),
        )
        return SendResult.ok(message_id=f"{self._name}-{self._counter}")

    async def send_multicast(
        self, addresses: list[str], payload: dict[str, Any]
    ) -> MulticastResult:
        results = [await self.send_to_one(a, payload) for a in addresses]
        return MulticastResult(
            success_count=len(results), failure_count=0, results=results,
        )

    async def aclose(self) -> None:
        """Nothing to release."""
