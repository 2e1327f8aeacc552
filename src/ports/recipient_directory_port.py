"""Recipient directory port — resolves recipients to device addresses.

One precedence policy for every caller: most-recently-registered
address first. Addresses are opaque push tokens and are not assumed to
be unique across roles.
"""

from __future__ import annotations

from collections.abc import Collection
from typing import Protocol

from src.data.models import Recipient, RecipientRole


class RecipientDirectoryPort(Protocol):
    """Abstract recipient directory used by core modules."""

    def register_recipient(
        self, recipient_id: str, role: RecipientRole, display_name: str = ""
    ) -> Recipient: ...

    def list_recipients(
        self, roles: Collection[RecipientRole] | None = None
    ) -> list[Recipient]: ...

    def resolve_addresses(self, recipient_id: str) -> list[str]: ...

    def register_address(
        self,
        recipient_id: str,
        address: str,
        role: RecipientRole = RecipientRole.EMPLOYEE,
    ) -> None: ...

    def unregister_address(self, recipient_id: str, address: str) -> bool: ...
