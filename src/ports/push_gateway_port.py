"""Push gateway port — abstract interface for mobile push delivery.

The transport is assumed unreliable: a send may fail outright, time
out, or be rejected for a dead token. Adapters report typed failures
in ``SendResult`` and raise ``DeliveryError`` only for transport errors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol


class SendFailure(Enum):
    UNREACHABLE = "unreachable"
    REJECTED = "rejected"
    INVALID_ADDRESS = "invalid-address"


@dataclass
class SendResult:
    success: bool
    message_id: str | None = None
    failure: SendFailure | None = None
    detail: str = ""

    @classmethod
    def ok(cls, message_id: str | None = None) -> SendResult:
        return cls(success=True, message_id=message_id)

    @classmethod
    def failed(cls, failure: SendFailure, detail: str = "") -> SendResult:
        return cls(success=False, failure=failure, detail=detail)


@dataclass
class MulticastResult:
    success_count: int
    failure_count: int
    results: list[SendResult] = field(default_factory=list)


class PushGatewayPort(Protocol):
    """Abstract push gateway used by the dispatcher and announcer."""

    async def send_to_one(self, address: str, payload: dict[str, Any]) -> SendResult: ...

    async def send_multicast(
        self, addresses: list[str], payload: dict[str, Any]
    ) -> MulticastResult: ...

    async def aclose(self) -> None: ...
