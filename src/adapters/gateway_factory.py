"""Push gateway factory — creates the right adapter based on config."""

from __future__ import annotations

from src.config import settings
from src.ports.push_gateway_port import PushGatewayPort


def create_push_gateway() -> PushGatewayPort:
    """Return the push gateway matching the PUSH_PROVIDER setting."""
    provider = settings.PUSH_PROVIDER.lower()

    if provider == "fcm":
        from src.adapters.fcm_gateway import FCMGateway
        from src.integrations.google_auth import FCMCredentials

        credentials = FCMCredentials(settings.FCM_SERVICE_ACCOUNT_PATH)
        return FCMGateway(
            project_id=settings.FCM_PROJECT_ID,
            token_provider=credentials.access_token,
            channel_id=settings.FCM_ANDROID_CHANNEL_ID,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )

    if provider == "log":
        from src.adapters.log_gateway import LogGateway

        return LogGateway()

    raise ValueError(f"Unknown PUSH_PROVIDER: {provider!r}")
