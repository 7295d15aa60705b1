"""
Lingxin Commitments — Centralized configuration.

Loads all settings from .env and validates required keys.
Every other module reads configuration through the `settings` singleton.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (one level up from lingxin/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # SQLite
    DATABASE_PATH: str = "data/lingxin.db"

    # Security
    ALLOWED_USER_IDS: list[int] = []

    # Default zone for new users' nudge preferences
    TIMEZONE: str = "Asia/Taipei"

    # Scheduler sweep
    SWEEP_INTERVAL_MINUTES: int = 5
    SWEEP_BATCH_SIZE: int = 50
    DEFAULT_MAX_DAILY_NUDGES: int = 3

    # /list page size
    LIST_LIMIT: int = 20

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator(
        "SWEEP_INTERVAL_MINUTES", "SWEEP_BATCH_SIZE",
        "DEFAULT_MAX_DAILY_NUDGES", "LIST_LIMIT",
        mode="before",
    )
    @classmethod
    def parse_positive_int(cls, v: str | int) -> int:
        value = int(v)
        if value < 1:
            raise ValueError(f"must be >= 1, got {value}")
        return value

    @field_validator("TIMEZONE")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone {v!r}") from exc
        return v


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/lingxin.db"),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        TIMEZONE=os.getenv("TIMEZONE", "Asia/Taipei"),
        SWEEP_INTERVAL_MINUTES=os.getenv("SWEEP_INTERVAL_MINUTES", "5"),
        SWEEP_BATCH_SIZE=os.getenv("SWEEP_BATCH_SIZE", "50"),
        DEFAULT_MAX_DAILY_NUDGES=os.getenv("DEFAULT_MAX_DAILY_NUDGES", "3"),
        LIST_LIMIT=os.getenv("LIST_LIMIT", "20"),
    )


# Singleton, imported by all other modules as:
#   from lingxin.config import settings
settings = _load_settings()
