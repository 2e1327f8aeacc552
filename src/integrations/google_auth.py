"""
Lead CRM Reminders — Firebase Cloud Messaging Authentication.

FCM HTTP v1 needs a short-lived OAuth2 access token minted from a
service account. Without it no push leaves the server, so every
gateway call goes through ``FCMCredentials.access_token()``.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from google.auth.transport.requests import Request
from google.oauth2 import service_account

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/firebase.messaging"]


class FCMCredentials:
    """Lazily loads the service account and refreshes its token when expired."""

    def __init__(self, service_account_path: str) -> None:
        self._path = Path(service_account_path)
        self._creds: service_account.Credentials | None = None
        self._lock = asyncio.Lock()

    def _load(self) -> service_account.Credentials:
        if not self._path.exists():
            raise FileNotFoundError(
                f"Firebase service account file not found at {self._path}. "
                "Download it from the Firebase console (Project settings > Service accounts)."
            )
        creds = service_account.Credentials.from_service_account_file(
            str(self._path), scopes=SCOPES,
        )
        logger.info("Loaded Firebase service account %s", creds.service_account_email)
        return creds

    def _refresh(self) -> str:
        if self._creds is None:
            self._creds = self._load()
        if not self._creds.valid:
            self._creds.refresh(Request())
            logger.debug("FCM access token refreshed")
        return self._creds.token

    async def access_token(self) -> str:
        """Return a valid bearer token; the blocking refresh runs off the loop."""
        async with self._lock:
            return await asyncio.to_thread(self._refresh)
