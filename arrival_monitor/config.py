"""Configuration loader.

Reads environment variables and `.env` to configure the service.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load variables from a .env file if present (project root).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _parse_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


# ---- Monitored page ----------------------------------------------------------

# The "new arrivals" page. Also used as the base URL when resolving hrefs.
TARGET_URL: str = _get_env("TARGET_URL", "https://jellycat.com/new")

# Row key in scraper_state holding the validator headers for TARGET_URL.
STATE_KEY: str = _get_env("STATE_KEY", "jellycat:/new")

USER_AGENT: str = _get_env("USER_AGENT", "arrival-monitor/1.0 (+stock-check)")

# Only the newest N products on the page are tracked.
MAX_TRACKED_PRODUCTS: int = _parse_int(_get_env("MAX_TRACKED_PRODUCTS"), 20)

# ---- Fetch retry policy ------------------------------------------------------

FETCH_MAX_ATTEMPTS: int = _parse_int(_get_env("FETCH_MAX_ATTEMPTS"), 5)
FETCH_TIMEOUT_SECONDS: float = _parse_float(_get_env("FETCH_TIMEOUT_SECONDS"), 12.0)
BACKOFF_BASE_SECONDS: float = _parse_float(_get_env("BACKOFF_BASE_SECONDS"), 0.75)
BACKOFF_MAX_SECONDS: float = _parse_float(_get_env("BACKOFF_MAX_SECONDS"), 30.0)
# Longest server-requested Retry-After honoured; larger values are clamped.
RETRY_AFTER_MAX_SECONDS: float = _parse_float(_get_env("RETRY_AFTER_MAX_SECONDS"), 120.0)
# Upper bounds of the random jitter added to Retry-After / exponential delays.
RETRY_AFTER_JITTER_SECONDS: float = 0.25
BACKOFF_JITTER_SECONDS: float = 0.35

# ---- Storage & logging -------------------------------------------------------

# Path to SQLite database.
SQLITE_DB_PATH: str = _get_env("SQLITE_DB_PATH", "monitor.db")

# Seconds a connection waits on a locked database before giving up.
SQLITE_BUSY_TIMEOUT: float = _parse_float(_get_env("SQLITE_BUSY_TIMEOUT"), 30.0)

# Logging level: DEBUG, INFO, WARNING, ERROR.
LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO")

# ---- Trigger endpoints & scheduling -----------------------------------------

# Shared secret for the cron endpoints. Sent as "Authorization: Bearer <secret>"
# or in the CRON_HEADER_NAME header.
CRON_SECRET: Optional[str] = _get_env("CRON_SECRET")
CRON_HEADER_NAME: str = _get_env("CRON_HEADER_NAME", "x-cron-secret")

SERVER_HOST: str = _get_env("SERVER_HOST", "127.0.0.1")
SERVER_PORT: int = _parse_int(_get_env("SERVER_PORT"), 8080)

LOCK_KEY: str = _get_env("LOCK_KEY", "arrival-monitor:cron:stock-check")
# Lease length; a crashed holder's lock becomes acquirable after this.
LOCK_TTL_SECONDS: int = _parse_int(_get_env("LOCK_TTL_SECONDS"), 300)

# Optional in-process scheduler (off when an external cron hits the endpoint).
ENABLE_SCHEDULER: bool = _parse_bool(_get_env("ENABLE_SCHEDULER", "false"), False)
SCHEDULE_INTERVAL_SECONDS: int = _parse_int(_get_env("SCHEDULE_INTERVAL_SECONDS"), 60)

# ---- Notifications -----------------------------------------------------------

NOTIFY_MAX_WORKERS: int = _parse_int(_get_env("NOTIFY_MAX_WORKERS"), 16)

# Subscription plan that unlocks SMS alerts.
SMS_PLAN_NAME: str = _get_env("SMS_PLAN_NAME", "plus")

EMAIL_SMTP_HOST: str = _get_env("EMAIL_SMTP_HOST", "smtp.gmail.com")
EMAIL_SMTP_PORT: int = _parse_int(_get_env("EMAIL_SMTP_PORT"), 587)  # 587 (TLS) or 465 (SSL)
EMAIL_USE_TLS: bool = _parse_bool(_get_env("EMAIL_USE_TLS", "true"), True)  # if False and port=465, SSL will be used
EMAIL_USERNAME: Optional[str] = _get_env("EMAIL_USERNAME")
EMAIL_PASSWORD: Optional[str] = _get_env("EMAIL_PASSWORD")  # app password if using Gmail
EMAIL_FROM: Optional[str] = _get_env("EMAIL_FROM")
EMAIL_SUBJECT_PREFIX: str = _get_env("EMAIL_SUBJECT_PREFIX", "")

CLICK_SEND_API_KEY: Optional[str] = _get_env("CLICK_SEND_API_KEY")
# ClickSend accepts the API key as the username when none is configured.
CLICK_SEND_USERNAME: Optional[str] = _get_env("CLICK_SEND_USERNAME") or CLICK_SEND_API_KEY
CLICK_SEND_URL: str = _get_env("CLICK_SEND_URL", "https://rest.clicksend.com/v3/sms/send")

# ---- Validation --------------------------------------------------------------

def validate() -> None:
    """Validate required configuration parameters."""
    if not CRON_SECRET:
        raise RuntimeError(
            "CRON_SECRET must be set to protect the trigger endpoints. See .env.example for details."
        )


__all__ = [
    # Monitored page
    "TARGET_URL",
    "STATE_KEY",
    "USER_AGENT",
    "MAX_TRACKED_PRODUCTS",
    # Fetch policy
    "FETCH_MAX_ATTEMPTS",
    "FETCH_TIMEOUT_SECONDS",
    "BACKOFF_BASE_SECONDS",
    "BACKOFF_MAX_SECONDS",
    "RETRY_AFTER_MAX_SECONDS",
    "RETRY_AFTER_JITTER_SECONDS",
    "BACKOFF_JITTER_SECONDS",
    # Storage
    "SQLITE_DB_PATH",
    "SQLITE_BUSY_TIMEOUT",
    "LOG_LEVEL",
    # Endpoints & scheduling
    "CRON_SECRET",
    "CRON_HEADER_NAME",
    "SERVER_HOST",
    "SERVER_PORT",
    "LOCK_KEY",
    "LOCK_TTL_SECONDS",
    "ENABLE_SCHEDULER",
    "SCHEDULE_INTERVAL_SECONDS",
    # Notifications
    "NOTIFY_MAX_WORKERS",
    "SMS_PLAN_NAME",
    "EMAIL_SMTP_HOST", "EMAIL_SMTP_PORT", "EMAIL_USE_TLS",
    "EMAIL_USERNAME", "EMAIL_PASSWORD", "EMAIL_FROM", "EMAIL_SUBJECT_PREFIX",
    "CLICK_SEND_API_KEY", "CLICK_SEND_USERNAME", "CLICK_SEND_URL",
    # Helpers
    "validate",
]
