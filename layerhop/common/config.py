from __future__ import annotations

import os
from dataclasses import dataclass, field

from layerhop.common import constants as c


def _env_bool(value: str, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _parse_origins(value: str | None) -> list[str]:
    if not value:
        return [
            "http://localhost:8000",
            "http://127.0.0.1:8000",
        ]
    return [origin.strip() for origin in value.split(",") if origin.strip()]


@dataclass(frozen=True)
class HopPolicy:
    """Timings, budgets and TTLs that drive a hop attempt."""

    max_retries: int = c.MAX_HOP_RETRIES
    hop_timeout_seconds: float = c.HOP_TIMEOUT_SECONDS
    settle_seconds: float = c.SETTLE_SECONDS
    retry_delay_seconds: float = c.RETRY_DELAY_SECONDS
    search_timeout_seconds: float = c.SEARCH_TIMEOUT_SECONDS
    reminder_delay_seconds: float = c.REMINDER_DELAY_SECONDS
    request_cooldown_seconds: float = c.REQUEST_COOLDOWN_SECONDS
    cross_continent_ttl: float = c.CROSS_CONTINENT_TTL
    recent_hop_ttl: float = c.RECENT_HOP_TTL
    declined_ttl: float = c.DECLINED_TTL
    decline_whisper_cooldown: float = c.DECLINE_WHISPER_COOLDOWN
    broadcast_window_seconds: float = c.HOP_BROADCAST_WINDOW
    whisper_memory_seconds: float = c.WHISPER_MEMORY_SECONDS
    leave_retry_seconds: float = c.LEAVE_RETRY_SECONDS
    leave_grace_seconds: float = c.LEAVE_GRACE_SECONDS
    leave_slow_seconds: float = c.LEAVE_SLOW_SECONDS
    thanks_whisper_enabled: bool = True
    thanks_whisper: str = c.THANKS_WHISPER
    home_realm: str = ""


@dataclass(frozen=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    db_path: str = os.getenv("LAYERHOP_DB_PATH", "layerhop.db")
    home_realm: str = os.getenv("LAYERHOP_HOME_REALM", "")
    max_retries: int = int(os.getenv("LAYERHOP_MAX_RETRIES", str(c.MAX_HOP_RETRIES)))
    hop_timeout_seconds: float = float(
        os.getenv("LAYERHOP_HOP_TIMEOUT", str(c.HOP_TIMEOUT_SECONDS))
    )
    settle_seconds: float = float(os.getenv("LAYERHOP_SETTLE_SECONDS", str(c.SETTLE_SECONDS)))
    search_timeout_seconds: float = float(
        os.getenv("LAYERHOP_SEARCH_TIMEOUT", str(c.SEARCH_TIMEOUT_SECONDS))
    )
    signal_stale_seconds: float = float(
        os.getenv("LAYERHOP_SIGNAL_STALE_SECONDS", str(c.SIGNAL_STALE_SECONDS))
    )
    thanks_whisper_enabled: bool = _env_bool(os.getenv("LAYERHOP_THANKS_WHISPER", "1"))
    thanks_whisper: str = os.getenv("LAYERHOP_THANKS_MESSAGE", c.THANKS_WHISPER)
    toast_duration: int = int(os.getenv("LAYERHOP_TOAST_DURATION", str(c.TOAST_DURATION_SECONDS)))
    cors_origins: list[str] = field(
        default_factory=lambda: _parse_origins(os.getenv("LAYERHOP_CORS_ORIGINS"))
    )
    api_key: str | None = os.getenv("LAYERHOP_API_KEY")

    def hop_policy(self) -> HopPolicy:
        return HopPolicy(
            max_retries=self.max_retries,
            hop_timeout_seconds=self.hop_timeout_seconds,
            settle_seconds=self.settle_seconds,
            search_timeout_seconds=self.search_timeout_seconds,
            thanks_whisper_enabled=self.thanks_whisper_enabled,
            thanks_whisper=self.thanks_whisper,
            home_realm=self.home_realm,
        )


settings = Settings()
