"""Tests for lingxin.config — settings validation."""

import pytest
from pydantic import ValidationError

from lingxin.config import Settings, settings


class TestSettings:
    def test_singleton_loaded_from_env(self):
        assert settings.TELEGRAM_BOT_TOKEN == "fake-token-for-tests"
        assert 12345 in settings.ALLOWED_USER_IDS

    def test_defaults(self):
        s = Settings(TELEGRAM_BOT_TOKEN="t")
        assert s.DATABASE_PATH == "data/lingxin.db"
        assert s.SWEEP_INTERVAL_MINUTES == 5
        assert s.SWEEP_BATCH_SIZE == 50
        assert s.DEFAULT_MAX_DAILY_NUDGES == 3
        assert s.TIMEZONE == "Asia/Taipei"

    def test_parses_user_id_list(self):
        s = Settings(TELEGRAM_BOT_TOKEN="t", ALLOWED_USER_IDS="1, 2,,3")
        assert s.ALLOWED_USER_IDS == [1, 2, 3]

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValidationError):
            Settings(TELEGRAM_BOT_TOKEN="t", SWEEP_INTERVAL_MINUTES="0")

    def test_rejects_unknown_timezone(self):
        with pytest.raises(ValidationError):
            Settings(TELEGRAM_BOT_TOKEN="t", TIMEZONE="Mars/Olympus")
