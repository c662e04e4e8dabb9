"""Environment-driven settings for the integration core."""

import os
import logging
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Bounds enforced by the core regardless of caller input
DEFAULT_BATCH_LIMIT = 10
MAX_BATCH_LIMIT = 50
DEFAULT_WINDOW_DAYS = 14
MAX_WINDOW_DAYS = 90


def _int_env(name: str, default: int) -> int:
    """Read an integer environment variable, falling back on bad input."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer value for {name}: {raw!r}")
        return default


class Settings(BaseModel):
    """Runtime settings for the dispatcher, poller and reconciliation runner."""
    outbox_batch_size: int = Field(default=DEFAULT_BATCH_LIMIT)
    outbox_poll_interval_seconds: int = Field(default=0, description="0 runs a single batch")
    outbox_max_attempts: int = Field(default=5, ge=1)
    outbox_claim_timeout_seconds: int = Field(default=300, ge=1)
    reconcile_window_days: int = Field(default=DEFAULT_WINDOW_DAYS)
    calendar_retry_attempts: int = Field(default=3, ge=1)
    calendar_retry_delay_ms: int = Field(default=750, ge=0)
    match_window_days: int = Field(default=3, ge=0)
    site_url: str = Field(default="http://localhost:3000")
    stripe_api_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        return cls(
            outbox_batch_size=_int_env("OUTBOX_BATCH_SIZE", DEFAULT_BATCH_LIMIT),
            outbox_poll_interval_seconds=_int_env("OUTBOX_POLL_INTERVAL_SECONDS", 0),
            outbox_max_attempts=_int_env("OUTBOX_MAX_ATTEMPTS", 5),
            outbox_claim_timeout_seconds=_int_env("OUTBOX_CLAIM_TIMEOUT_SECONDS", 300),
            reconcile_window_days=_int_env("RECONCILE_WINDOW_DAYS", DEFAULT_WINDOW_DAYS),
            calendar_retry_attempts=_int_env("CALENDAR_RETRY_ATTEMPTS", 3),
            calendar_retry_delay_ms=_int_env("CALENDAR_RETRY_DELAY_MS", 750),
            match_window_days=_int_env("MATCH_WINDOW_DAYS", 3),
            site_url=os.getenv("SITE_URL", "http://localhost:3000"),
            stripe_api_key=os.getenv("STRIPE_API_KEY"),
        )


def clamp_limit(value: object) -> int:
    """Clamp a caller-supplied batch limit into [1, MAX_BATCH_LIMIT].

    Non-numeric, boolean and non-positive values fall back to the default.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_BATCH_LIMIT
    if value != value or value <= 0:  # NaN or non-positive
        return DEFAULT_BATCH_LIMIT
    return int(min(value, MAX_BATCH_LIMIT)) or 1


def clamp_window_days(value: object) -> int:
    """Validate a reconciliation window; anything outside (0, 90] uses the default."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_WINDOW_DAYS
    if value != value or value <= 0 or value > MAX_WINDOW_DAYS:
        return DEFAULT_WINDOW_DAYS
    return int(value) or 1


def get_settings() -> Settings:
    """Dependency returning settings read from the current environment."""
    return Settings.from_env()
