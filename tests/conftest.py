"""Shared test fixtures and configuration.

Sets up fake environment variables so lingxin.config doesn't sys.exit(),
and provides stores that share one temp SQLite file.
"""

import os

# Patch env vars BEFORE any lingxin imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "Asia/Taipei")

from datetime import datetime, timezone

import pytest


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_lingxin.db")


@pytest.fixture
def commitment_db(tmp_db_path):
    """Return a CommitmentDB instance backed by a temp file."""
    from lingxin.data.db import CommitmentDB
    return CommitmentDB(db_path=tmp_db_path)


@pytest.fixture
def prefs_db(tmp_db_path):
    """Return a NudgePrefsDB sharing the commitment DB file."""
    from lingxin.data.db import NudgePrefsDB
    return NudgePrefsDB(db_path=tmp_db_path)


@pytest.fixture
def log_db(tmp_db_path):
    """Return a NudgeLogDB sharing the commitment DB file."""
    from lingxin.data.db import NudgeLogDB
    return NudgeLogDB(db_path=tmp_db_path)


@pytest.fixture
def make_draft():
    """Return a factory for scheduled-ready DraftCommitments."""
    return _make_draft


def _make_draft(**overrides):
    from lingxin.core.parser import DraftCommitment
    from lingxin.data.models import IntentType

    fields = {
        "intent_type": IntentType.REMINDER,
        "title": "提醒: 運動",
        "what_action": "運動",
        "when_time": datetime(2024, 1, 1, 1, 0, tzinfo=timezone.utc),
        "needs_clarification": False,
        "source_message": "提醒我 運動",
    }
    fields.update(overrides)
    return DraftCommitment(**fields)
