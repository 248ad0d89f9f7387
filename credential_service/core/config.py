from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]


def _getenv(name: str, default: str) -> str:
    # Centralize env access so it's easy to extend later (type casting, required vars)
    return os.environ.get(name, default).strip()


def _getint(name: str, default: str, *, minimum: int = 0) -> int:
    raw = _getenv(name, default)
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


def _getfloat(name: str, default: str) -> float:
    raw = _getenv(name, default)
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {raw!r})") from None
    if value < 0:
        raise ValueError(f"{name} must be >= 0 (got {value})")
    return value


def _getbool(name: str, default: str) -> bool:
    raw = _getenv(name, default).lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"{name} must be a boolean (got {raw!r})")


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None
    ledger_url: str | None
    blob_store_url: str | None

    # Every store call is bounded by this timeout, per attempt.
    store_timeout_seconds: float = 5.0
    retry_max_attempts: int = 4
    retry_base_delay_seconds: float = 0.2
    retry_max_delay_seconds: float = 5.0

    verification_cache_ttl_seconds: int = 300
    rate_limit_window_seconds: int = 60
    rate_limit_max_requests: int = 120

    reconcile_poll_seconds: float = 5.0

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=_getbool("LOG_JSON", "false"),
        port=_getint("PORT", "8000"),
        database_url=_getenv("DATABASE_URL", "") or None,
        redis_url=_getenv("REDIS_URL", "") or None,
        ledger_url=_getenv("LEDGER_URL", "") or None,
        blob_store_url=_getenv("BLOB_STORE_URL", "") or None,
        store_timeout_seconds=_getfloat("STORE_TIMEOUT_SECONDS", "5"),
        retry_max_attempts=_getint("RETRY_MAX_ATTEMPTS", "4", minimum=1),
        retry_base_delay_seconds=_getfloat("RETRY_BASE_DELAY_SECONDS", "0.2"),
        retry_max_delay_seconds=_getfloat("RETRY_MAX_DELAY_SECONDS", "5"),
        verification_cache_ttl_seconds=_getint(
            "VERIFICATION_CACHE_TTL_SECONDS", "300", minimum=1
        ),
        rate_limit_window_seconds=_getint("RATE_LIMIT_WINDOW_SECONDS", "60", minimum=1),
        rate_limit_max_requests=_getint("RATE_LIMIT_MAX_REQUESTS", "120", minimum=1),
        reconcile_poll_seconds=_getfloat("RECONCILE_POLL_SECONDS", "5"),
    )
