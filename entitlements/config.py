"""Environment-driven settings for the entitlement service."""

from __future__ import annotations

import logging
import os

DEFAULT_DATABASE_URL = "sqlite:///./data/entitlements.db"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def database_url() -> str:
    url = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    # SQLAlchemy only accepts the postgresql:// scheme
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def database_busy_timeout() -> int:
    """Seconds a SQLite connection waits on a locked database file."""
    return _env_int("DATABASE_BUSY_TIMEOUT", 30)


def log_level() -> str:
    return os.getenv("ENTITLEMENTS_LOG_LEVEL", "INFO").upper()


def rate_limit_base_attempts() -> int:
    """Per-minute request ceiling used when no plan value applies."""
    return _env_int("RATE_LIMIT_BASE_ATTEMPTS", 500)


def default_plan_slug() -> str:
    return os.getenv("DEFAULT_PLAN_SLUG", "free")


def seed_on_startup() -> bool:
    return _env_bool("ENTITLEMENTS_SEED_ON_STARTUP", True)


def configure_logging() -> None:
    logging.basicConfig(
        level=log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
