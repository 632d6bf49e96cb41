from __future__ import annotations

from dataclasses import dataclass
import os

DEFAULT_DATABASE_URL = "sqlite:///spendsync.db"
LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Pipeline configuration loaded at process startup."""

    database_url: str = DEFAULT_DATABASE_URL
    fetch_timeout_seconds: float = 30.0
    sync_window_days: int = 30
    stale_sync_minutes: int = 60
    log_level: str = "INFO"


def _positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{name} must be greater than zero")
    return value


def _positive_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{name} must be greater than zero")
    return value


def load_config_from_env() -> SyncConfig:
    """Load pipeline config from env and validate startup requirements."""
    database_url = os.environ.get("DATABASE_URL", "").strip() or DEFAULT_DATABASE_URL

    log_level = os.environ.get("SPENDSYNC_LOG_LEVEL", "INFO").strip().upper()
    if log_level not in LOG_LEVELS:
        raise ValueError(
            "SPENDSYNC_LOG_LEVEL must be one of: " + ", ".join(sorted(LOG_LEVELS))
        )

    return SyncConfig(
        database_url=database_url,
        fetch_timeout_seconds=_positive_float("SPENDSYNC_FETCH_TIMEOUT_SECONDS", 30.0),
        sync_window_days=_positive_int("SPENDSYNC_SYNC_WINDOW_DAYS", 30),
        stale_sync_minutes=_positive_int("SPENDSYNC_STALE_SYNC_MINUTES", 60),
        log_level=log_level,
    )
