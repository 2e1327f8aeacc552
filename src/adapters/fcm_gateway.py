"""Firebase Cloud Messaging adapter — implements PushGatewayPort.

Renders the engine's payload schema into an FCM HTTP v1 message and
maps FCM error responses onto typed send failures. FCM v1 has no
multicast endpoint, so a multicast is one request per token, sent
concurrently over the gateway's pooled client.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from src.core.errors import DeliveryError
from src.ports.push_gateway_port import MulticastResult, SendFailure, SendResult

logger = logging.getLogger(__name__)

_FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
_TIMEOUT_SECONDS = 10
_MAX_PARALLEL_SENDS = 50

TokenProvider = Callable[[], Awaitable[str]]


def build_fcm_message(
    address: str, payload: dict[str, Any], channel_id: str
) -> dict[str, Any]:
    """Translate a payload into the ``message`` body of an FCM v1 request."""
    notification = payload.get("notification")
    hints = payload.get("deliveryHints") or {}
    priority = hints.get("platformPriority") or "high"
    sound = hints.get("sound")
    badge = hints.get("badge")

    android: dict[str, Any] = {"priority": "high" if priority == "high" else "normal"}
    aps: dict[str, Any] = {"content-available": 1}
    if notification:
        android_notification: dict[str, Any] = {"channel_id": channel_id}
        if sound:
            android_notification["sound"] = sound
        android["notification"] = android_notification
        aps["alert"] = {
            "title": notification.get("title", ""),
            "body": notification.get("body", ""),
        }
        if sound:
            aps["sound"] = sound
        if badge is not None:
            aps["badge"] = badge

    message: dict[str, Any] = {
        "token": address,
        "data": {k: str(v) for k, v in (payload.get("data") or {}).items()},
        "android": android,
        "apns": {
            "headers": {"apns-priority": "10" if priority == "high" else "5"},
            "payload": {"aps": aps},
        },
    }
    if notification:
        message["notification"] = {
            "title": notification.get("title", ""),
            "body": notification.get("body", ""),
        }
    return message


def _classify_error(status_code: int, body: dict[str, Any]) -> SendResult:
    error = body.get("error") or {}
    message = error.get("message", "")
    codes = {
        d.get("errorCode")
        for d in error.get("details", [])
        if isinstance(d, dict)
    }
    detail = f"HTTP {status_code}: {message}".strip()

    if status_code == 404 or "UNREGISTERED" in codes:
        return SendResult.failed(SendFailure.INVALID_ADDRESS, detail)
    if status_code == 400 and "registration token" in message.lower():
        return SendResult.failed(SendFailure.INVALID_ADDRESS, detail)
    if status_code in (400, 401, 403) or "SENDER_ID_MISMATCH" in codes:
        return SendResult.failed(SendFailure.REJECTED, detail)
    return SendResult.failed(SendFailure.UNREACHABLE, detail)


class FCMGateway:
    """FCM HTTP v1 implementation of PushGatewayPort."""

    def __init__(
        self,
        project_id: str,
        token_provider: TokenProvider,
        channel_id: str = "reminder_channel",
        timeout: float = _TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = _FCM_SEND_URL.format(project_id=project_id)
        self._token_provider = token_provider
        self._channel_id = channel_id
        self._timeout = timeout
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    def _client(self) -> httpx.AsyncClient:
        """One pooled client for the gateway's lifetime, opened on first use."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def _bearer(self) -> str:
        try:
            return await self._token_provider()
        except Exception as exc:
            raise DeliveryError(f"Could not obtain FCM access token: {exc}") from exc

    async def _post(
        self, client: httpx.AsyncClient, token: str, address: str, payload: dict[str, Any]
    ) -> SendResult:
        body = {"message": build_fcm_message(address, payload, self._channel_id)}
        try:
            resp = await client.post(
                self._url,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise DeliveryError(f"FCM request failed: {exc}") from exc

        if 200 <= resp.status_code < 300:
            return SendResult.ok(message_id=resp.json().get("name"))

        try:
            data = resp.json()
        except ValueError:
            data = {"error": {"message": resp.text[:200]}}
        result = _classify_error(resp.status_code, data)
        logger.warning("FCM send to %s… failed: %s", address[:12], result.detail)
        return result

    async def send_to_one(self, address: str, payload: dict[str, Any]) -> SendResult:
        token = await self._bearer()
        return await self._post(self._client(), token, address, payload)

    async def send_multicast(
        self, addresses: list[str], payload: dict[str, Any]
    ) -> MulticastResult:
        if not addresses:
            return MulticastResult(success_count=0, failure_count=0)

        token = await self._bearer()
        limiter = asyncio.Semaphore(_MAX_PARALLEL_SENDS)
        client = self._client()

        async def _one(address: str) -> SendResult:
            async with limiter:
                try:
                    return await self._post(client, token, address, payload)
                except DeliveryError as exc:
                    return SendResult.failed(SendFailure.UNREACHABLE, str(exc))

        results = await asyncio.gather(*(_one(a) for a in addresses))

        success = sum(1 for r in results if r.success)
        logger.info(
            "FCM multicast: %d sent, %d failed", success, len(results) - success,
        )
        return MulticastResult(
            success_count=success,
            failure_count=len(results) - success,
            results=list(results),
        )
