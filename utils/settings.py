"""Environment-driven configuration for the lifecycle scheduler."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass(slots=True)
class LifecycleSettings:
    """Runtime configuration for lifecycle jobs and notification delivery."""

    activation_schedule: str = "every 60s"
    ending_schedule: str = "every 60s"
    cleanup_schedule: str = "daily 03:00"
    notification_retention_days: int = 30
    cleanup_batch_size: int = 500
    max_concurrency: int = 1
    scheduler_enabled: bool = True
    mail_relay_url: Optional[str] = None
    mail_relay_token: Optional[str] = None
    mail_from: str = "noreply@auctions.local"
    mail_timeout_seconds: float = 10.0


def _env_value(name: str, default: T, parse: Callable[[str], T], *, positive: bool = False) -> T:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = parse(raw.strip())
        if positive and value <= 0:  # type: ignore[operator]
            raise ValueError
    except (TypeError, ValueError):
        logger.warning("Invalid configuration value; using default", variable=name, value=raw, default=default)
        return default
    return value


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(raw)


def load_settings() -> LifecycleSettings:
    defaults = LifecycleSettings()
    return LifecycleSettings(
        activation_schedule=os.getenv("AUCTION_ACTIVATION_SCHEDULE") or defaults.activation_schedule,
        ending_schedule=os.getenv("AUCTION_ENDING_SCHEDULE") or defaults.ending_schedule,
        cleanup_schedule=os.getenv("NOTIFICATION_CLEANUP_SCHEDULE") or defaults.cleanup_schedule,
        notification_retention_days=_env_value(
            "NOTIFICATION_RETENTION_DAYS", defaults.notification_retention_days, int, positive=True
        ),
        cleanup_batch_size=_env_value(
            "NOTIFICATION_CLEANUP_BATCH_SIZE", defaults.cleanup_batch_size, int, positive=True
        ),
        max_concurrency=_env_value(
            "LIFECYCLE_MAX_CONCURRENCY", defaults.max_concurrency, int, positive=True
        ),
        scheduler_enabled=_env_value("SCHEDULER_ENABLED", defaults.scheduler_enabled, _parse_bool),
        mail_relay_url=os.getenv("MAIL_RELAY_URL") or None,
        mail_relay_token=os.getenv("MAIL_RELAY_TOKEN") or None,
        mail_from=os.getenv("EMAIL_FROM") or defaults.mail_from,
        mail_timeout_seconds=_env_value(
            "MAIL_TIMEOUT_SECONDS", defaults.mail_timeout_seconds, float, positive=True
        ),
    )
