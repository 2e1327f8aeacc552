"""
Lead CRM Reminders — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # SQLite (":memory:" keeps everything in process memory)
    DATABASE_PATH: str = "data/reminders.db"

    # Push provider: "fcm" | "log"
    PUSH_PROVIDER: str = "fcm"

    # Firebase Cloud Messaging (only needed when PUSH_PROVIDER=fcm)
    FCM_PROJECT_ID: str = ""
    FCM_SERVICE_ACCOUNT_PATH: str = "serviceAccountKey.json"
    FCM_ANDROID_CHANNEL_ID: str = "reminder_channel"

    # Scheduler
    POLL_INTERVAL_SECONDS: int = 60
    DISPATCH_CONCURRENCY: int = 8
    STALE_CLAIM_MINUTES: int = 10

    # Dispatch
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    MULTICAST_BATCH_SIZE: int = 500  # FCM's per-multicast token cap

    # Lifecycle
    DEFAULT_SNOOZE_MINUTES: int = 15

    TIMEZONE: str = "Asia/Kolkata"

    @field_validator(
        "POLL_INTERVAL_SECONDS",
        "DISPATCH_CONCURRENCY",
        "STALE_CLAIM_MINUTES",
        "MULTICAST_BATCH_SIZE",
        "DEFAULT_SNOOZE_MINUTES",
        mode="before",
    )
    @classmethod
    def parse_positive_int(cls, v: str | int) -> int:
        value = int(v)
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("GATEWAY_TIMEOUT_SECONDS", mode="before")
    @classmethod
    def parse_timeout(cls, v: str | float) -> float:
        return float(v)


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    provider = os.getenv("PUSH_PROVIDER", "fcm").lower()
    project_id = os.getenv("FCM_PROJECT_ID", "")

    if provider == "fcm" and (not project_id or project_id.startswith("your-")):
        print("ERROR: FCM_PROJECT_ID is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/reminders.db"),
        PUSH_PROVIDER=provider,
        FCM_PROJECT_ID=project_id,
        FCM_SERVICE_ACCOUNT_PATH=os.getenv("FCM_SERVICE_ACCOUNT_PATH", "serviceAccountKey.json"),
        FCM_ANDROID_CHANNEL_ID=os.getenv("FCM_ANDROID_CHANNEL_ID", "reminder_channel"),
        POLL_INTERVAL_SECONDS=os.getenv("POLL_INTERVAL_SECONDS", "60"),
        DISPATCH_CONCURRENCY=os.getenv("DISPATCH_CONCURRENCY", "8"),
        STALE_CLAIM_MINUTES=os.getenv("STALE_CLAIM_MINUTES", "10"),
        GATEWAY_TIMEOUT_SECONDS=os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"),
        MULTICAST_BATCH_SIZE=os.getenv("MULTICAST_BATCH_SIZE", "500"),
        DEFAULT_SNOOZE_MINUTES=os.getenv("DEFAULT_SNOOZE_MINUTES", "15"),
        TIMEZONE=os.getenv("TIMEZONE", "Asia/Kolkata"),
    )


# Singleton — imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
