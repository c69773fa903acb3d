"""Centralised configuration helper.

This module eliminates scattered ``os.getenv`` calls by exposing a **single**
:class:`Settings` container (retrieved via :func:`get_settings`).  The process
entry point (:mod:`dentalcore.main`) reads it once and hands the values to the
components it builds; nothing below the entry point calls ``get_settings``
itself.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ``_REPO_ROOT`` points to the top-level repository directory (one level
# **above** the "backend" package).  This file lives at
# ``backend/dentalcore/config/__init__.py``.

_REPO_ROOT = Path(__file__).resolve().parents[3]


def _truthy(value: str | None) -> bool:  # noqa: D401 – small helper
    """Return *True* when *value* looks like an affirmative string."""

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer value for {name}={raw!r}, using default: {default}")
        return default


def _env_float(name: str, default: float) -> float:
    """Parse seconds; accepts ``"2"``, ``"2.5"`` and a trailing ``s`` (``"30s"``)."""

    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value.endswith("s"):
        value = value[:-1]
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid duration value for {name}={raw!r}, using default: {default}s")
        return default


@dataclass
class Settings:  # noqa: D401 – simple data container
    """Lightweight settings container populated from environment variables."""

    # Runtime flags -----------------------------------------------------
    testing: bool
    log_level: str

    # Backing store ----------------------------------------------------
    database_url: str
    db_pool_size: int
    db_max_overflow: int

    # Shared cache / lock store ----------------------------------------
    redis_url: str
    redis_pool_size: int
    redis_dial_timeout: float
    redis_read_timeout: float
    redis_max_retries: int

    # Lock policy ------------------------------------------------------
    lock_ttl_seconds: float
    aggregate_lock_ttl_seconds: float
    lock_retry_attempts: int
    lock_retry_delay_seconds: float

    # Cache / reads ----------------------------------------------------
    cache_ttl_seconds: int
    read_timeout_seconds: float
    read_workers: int

    # Helper for tests to override values at runtime -------------------
    def override(self, **kwargs: Any) -> None:  # pragma: no cover – test util
        for key, value in kwargs.items():
            if not hasattr(self, key):  # pragma: no cover – safety
                raise AttributeError(f"Settings has no attribute '{key}'")
            setattr(self, key, value)


# ---------------------------------------------------------------------------
# Loader – values read from the environment on every call
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:  # noqa: D401 – helper
    """Populate :class:`Settings` from environment variables."""

    app_env = os.getenv("APP_ENV", "development")

    if app_env == "test":
        env_path = _REPO_ROOT / ".env.test"
        if not env_path.exists():
            env_path = _REPO_ROOT / ".env"  # Fallback to main .env
    else:
        env_path = _REPO_ROOT / ".env"

    if env_path.exists():
        # Explicit process environment wins over the file
        load_dotenv(env_path, override=False)

    testing = _truthy(os.getenv("TESTING"))

    return Settings(
        testing=testing,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        database_url=os.getenv("DATABASE_URL", ""),
        db_pool_size=_env_int("DB_POOL_SIZE", 20),
        db_max_overflow=_env_int("DB_MAX_OVERFLOW", 20),
        redis_url=os.getenv("REDIS_URL", ""),
        redis_pool_size=_env_int("REDIS_POOL_SIZE", 10),
        redis_dial_timeout=_env_float("REDIS_DIAL_TIMEOUT", 30.0),
        redis_read_timeout=_env_float("REDIS_READ_TIMEOUT", 10.0),
        redis_max_retries=_env_int("REDIS_MAX_RETRIES", 3),
        lock_ttl_seconds=_env_float("LOCK_TTL_SECONDS", 10.0),
        aggregate_lock_ttl_seconds=_env_float("AGGREGATE_LOCK_TTL_SECONDS", 60.0),
        lock_retry_attempts=_env_int("LOCK_RETRY_ATTEMPTS", 3),
        lock_retry_delay_seconds=_env_float("LOCK_RETRY_DELAY_SECONDS", 2.0),
        cache_ttl_seconds=_env_int("CACHE_TTL_SECONDS", 7 * 24 * 60 * 60),
        read_timeout_seconds=_env_float("READ_TIMEOUT_SECONDS", 5.0),
        read_workers=_env_int("READ_WORKERS", 8),
    )


# ------------------------------------------------------------------
# Runtime validation – fail fast when *required* settings are missing.
# ------------------------------------------------------------------


def _validate_required(settings: Settings) -> None:  # noqa: D401 – helper
    """Abort startup when mandatory configuration is missing.

    Outside of tests both collaborators must be addressable: the repositories
    cannot serialise writes without the shared lock store, and cannot persist
    anything without the backing store.
    """

    if settings.testing:
        return

    missing_vars = []

    if not settings.database_url:
        missing_vars.append("DATABASE_URL")

    if not settings.redis_url:
        missing_vars.append("REDIS_URL")

    if settings.lock_retry_attempts < 1:
        missing_vars.append("LOCK_RETRY_ATTEMPTS (must be >= 1)")

    if missing_vars:
        error_msg = (
            f"CRITICAL: Missing required environment variables: {', '.join(missing_vars)}\n"
            f"Set these in your .env file or deployment environment."
        )
        raise RuntimeError(error_msg)


def get_settings() -> Settings:  # noqa: D401 – public accessor
    """Return :class:`Settings` instance loaded from environment."""

    settings = _load_settings()
    _validate_required(settings)
    return settings


__all__ = [
    "Settings",
    "get_settings",
]
