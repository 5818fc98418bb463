# backend/backoffice/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/backoffice.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///backoffice.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Pending orders older than this are expired by the reaper
    ORDER_EXPIRY_DAYS = _int_env("ORDER_EXPIRY_DAYS", 30)
    # OrderIssue.due_at offset for hold / shortage issues
    ISSUE_SLA_HOURS = _int_env("ISSUE_SLA_HOURS", 48)
    # Chat sessions idle this long get the bot switched back on
    BOT_SESSION_IDLE_MINUTES = _int_env("BOT_SESSION_IDLE_MINUTES", 120)

    LOCK_RETRY_ATTEMPTS = _int_env("LOCK_RETRY_ATTEMPTS", 3)

    OTP_TTL_SECONDS = _int_env("OTP_TTL_SECONDS", 300)
    OTP_MAX_ATTEMPTS = _int_env("OTP_MAX_ATTEMPTS", 5)

    # Background sweep cadence (reaper + bot reactivation)
    SWEEP_INTERVAL_SECONDS = _int_env("SWEEP_INTERVAL_SECONDS", 300)
    SWEEP_ENABLED = os.environ.get("SWEEP_ENABLED", "0") == "1"
