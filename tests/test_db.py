"""Tests for lingxin.data.db — CommitmentDB, NudgePrefsDB and NudgeLogDB."""

import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from lingxin.data.db import CommitmentDB
from lingxin.data.models import (
    CommitmentStatus,
    DeliveryStatus,
    IntentType,
    NudgeEvent,
    NudgePreference,
)
from lingxin.ports.commitment_port import (
    ConflictingUpdate,
    NotFoundOrNotOwned,
    TransientStoreError,
    ValidationError,
)

USER = 12345
OTHER = 999
T0 = datetime(2024, 1, 1, 1, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Create / get
# ---------------------------------------------------------------------------


class TestCreate:
    def test_create_returns_scheduled_v1(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft())
        assert len(c.id) == 32
        assert c.status is CommitmentStatus.SCHEDULED
        assert c.version == 1
        assert c.user_id == USER
        assert c.created_at == c.updated_at
        assert c.series_id is None

    def test_get_round_trip(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft(where_location="公園", duration_minutes=30))
        fetched = commitment_db.get(USER, c.id)
        assert fetched.title == "提醒: 運動"
        assert fetched.when_time == T0
        assert fetched.where_location == "公園"
        assert fetched.duration_minutes == 30
        assert fetched.source_message == "提醒我 運動"

    def test_recurring_starts_series(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft(when_rrule="freq=daily"))
        assert c.when_rrule == "FREQ=DAILY"
        assert c.series_id == c.id

    def test_create_requires_when_time(self, commitment_db, make_draft):
        with pytest.raises(ValidationError):
            commitment_db.create(USER, make_draft(when_time=None))

    def test_rejects_naive_when_time(self, commitment_db, make_draft):
        with pytest.raises(ValidationError):
            commitment_db.create(USER, make_draft(when_time=datetime(2024, 1, 1, 9, 0)))

    def test_rejects_empty_title(self, commitment_db, make_draft):
        with pytest.raises(ValidationError):
            commitment_db.create(USER, make_draft(title="  "))

    def test_rejects_unsupported_rrule(self, commitment_db, make_draft):
        with pytest.raises(ValidationError):
            commitment_db.create(USER, make_draft(when_rrule="FREQ=YEARLY"))

    def test_save_draft_allows_missing_time(self, commitment_db, make_draft):
        c = commitment_db.save_draft(USER, make_draft(when_time=None))
        assert c.status is CommitmentStatus.DRAFT
        assert c.when_time is None

    def test_get_other_users_commitment(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft())
        with pytest.raises(NotFoundOrNotOwned):
            commitment_db.get(OTHER, c.id)

    def test_get_missing(self, commitment_db):
        with pytest.raises(NotFoundOrNotOwned):
            commitment_db.get(USER, "0" * 32)


class TestResolveId:
    def test_prefix(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft())
        assert commitment_db.resolve_id(USER, c.id[:8].upper()) == c.id

    def test_too_short(self, commitment_db):
        with pytest.raises(ValidationError):
            commitment_db.resolve_id(USER, "abc")

    def test_not_owned(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft())
        with pytest.raises(NotFoundOrNotOwned):
            commitment_db.resolve_id(OTHER, c.id[:8])


# ---------------------------------------------------------------------------
# List
# ---------------------------------------------------------------------------


class TestList:
    def test_newest_first(self, commitment_db, make_draft):
        a = commitment_db.create(USER, make_draft(title="A"))
        b = commitment_db.create(USER, make_draft(title="B"))
        c = commitment_db.create(USER, make_draft(title="C"))
        assert [x.id for x in commitment_db.list(USER)] == [c.id, b.id, a.id]

    def test_status_filter(self, commitment_db, make_draft):
        commitment_db.create(USER, make_draft(title="A"))
        commitment_db.save_draft(USER, make_draft(title="B", when_time=None))
        drafts = commitment_db.list(USER, "draft")
        assert [x.title for x in drafts] == ["B"]

    def test_scoped_to_user(self, commitment_db, make_draft):
        commitment_db.create(OTHER, make_draft())
        assert commitment_db.list(USER) == []

    def test_limit_clamped(self, commitment_db, make_draft):
        for i in range(3):
            commitment_db.create(USER, make_draft(title=f"T{i}"))
        assert len(commitment_db.list(USER, limit=0)) == 1
        assert len(commitment_db.list(USER, limit=500)) == 3

    def test_unknown_filter(self, commitment_db):
        with pytest.raises(ValidationError):
            commitment_db.list(USER, "archived")


# ---------------------------------------------------------------------------
# Update / delete
# ---------------------------------------------------------------------------


class TestUpdate:
    def test_bumps_version(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft())
        updated = commitment_db.update(USER, c.id, {"title": "New"}, expected_version=1)
        assert updated.title == "New"
        assert updated.version == 2
        assert updated.updated_at >= c.updated_at

    def test_stale_version_conflicts(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft())
        commitment_db.update(USER, c.id, {"title": "New"})
        with pytest.raises(ConflictingUpdate):
            commitment_db.update(USER, c.id, {"title": "Other"}, expected_version=1)
        assert commitment_db.get(USER, c.id).title == "New"

    def test_unknown_field(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft())
        with pytest.raises(ValidationError):
            commitment_db.update(USER, c.id, {"user_id": OTHER})

    def test_empty_patch(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft())
        with pytest.raises(ValidationError):
            commitment_db.update(USER, c.id, {})

    def test_illegal_transition(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft())
        with pytest.raises(ValidationError):
            commitment_db.update(USER, c.id, {"status": "draft"})

    def test_draft_needs_time_to_schedule(self, commitment_db, make_draft):
        c = commitment_db.save_draft(USER, make_draft(when_time=None))
        with pytest.raises(ValidationError):
            commitment_db.update(USER, c.id, {"status": "scheduled"})
        ok = commitment_db.update(USER, c.id, {"status": "scheduled", "when_time": T0})
        assert ok.status is CommitmentStatus.SCHEDULED

    def test_other_user_cannot_update(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft())
        with pytest.raises(NotFoundOrNotOwned):
            commitment_db.update(OTHER, c.id, {"title": "Hijack"})


class TestDelete:
    def test_delete(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft())
        commitment_db.delete(USER, c.id)
        with pytest.raises(NotFoundOrNotOwned):
            commitment_db.get(USER, c.id)

    def test_delete_not_owned(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft())
        with pytest.raises(NotFoundOrNotOwned):
            commitment_db.delete(OTHER, c.id)


class TestCancelSeries:
    def test_cancels_pending_members_only(self, commitment_db, make_draft):
        root = commitment_db.create(USER, make_draft(when_rrule="FREQ=DAILY"))
        nxt = commitment_db.complete_and_spawn(root, T0 + timedelta(days=1)).successor

        assert commitment_db.cancel_series(USER, root.series_id) == 1
        assert commitment_db.get(USER, nxt.id).status is CommitmentStatus.CANCELLED
        assert commitment_db.get(USER, root.id).status is CommitmentStatus.COMPLETED

    def test_unknown_series(self, commitment_db):
        with pytest.raises(NotFoundOrNotOwned):
            commitment_db.cancel_series(USER, "nope")


# ---------------------------------------------------------------------------
# Sweep side
# ---------------------------------------------------------------------------


class TestSweepOperations:
    def test_fetch_due_oldest_first(self, commitment_db, make_draft):
        later = commitment_db.create(USER, make_draft(when_time=T0 + timedelta(minutes=5)))
        early = commitment_db.create(USER, make_draft(when_time=T0))
        commitment_db.create(USER, make_draft(when_time=T0 + timedelta(days=1)))
        due = commitment_db.fetch_due(T0 + timedelta(minutes=10), 50)
        assert [c.id for c in due] == [early.id, later.id]

    def test_fetch_due_skips_drafts(self, commitment_db, make_draft):
        commitment_db.save_draft(USER, make_draft())
        assert commitment_db.fetch_due(T0 + timedelta(hours=1), 50) == []


class TestCompleteAndSpawn:
    def test_compare_and_swap(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft())
        first = commitment_db.complete_and_spawn(c)
        second = commitment_db.complete_and_spawn(c)
        assert first.completed is True
        assert first.successor is None
        assert second.completed is False
        assert commitment_db.get(USER, c.id).version == 2

    def test_successor_copies_fields(self, commitment_db, make_draft):
        root = commitment_db.create(
            USER, make_draft(when_rrule="FREQ=WEEKLY", intent_type=IntentType.RECURRING, priority=2),
        )
        nxt = commitment_db.complete_and_spawn(root, T0 + timedelta(days=7)).successor
        assert nxt.id != root.id
        assert nxt.status is CommitmentStatus.SCHEDULED
        assert nxt.version == 1
        assert nxt.series_id == root.id
        assert nxt.priority == 2
        assert commitment_db.get(USER, nxt.id).when_time == T0 + timedelta(days=7)

    def test_lost_race_spawns_nothing(self, commitment_db, make_draft):
        root = commitment_db.create(USER, make_draft(when_rrule="FREQ=DAILY"))
        commitment_db.complete_and_spawn(root, T0 + timedelta(days=1))
        assert commitment_db.complete_and_spawn(root, T0 + timedelta(days=1)).completed is False
        assert len(commitment_db.list(USER)) == 2

    def test_failed_insert_rolls_back_completion(self, commitment_db, make_draft):
        root = commitment_db.create(USER, make_draft(when_rrule="FREQ=DAILY"))
        with patch.object(
            CommitmentDB, "_insert", side_effect=sqlite3.OperationalError("database is locked"),
        ):
            with pytest.raises(TransientStoreError):
                commitment_db.complete_and_spawn(root, T0 + timedelta(days=1))

        [only] = commitment_db.list(USER)
        assert only.id == root.id
        assert only.status is CommitmentStatus.SCHEDULED
        assert only.version == 1

    def test_no_duplicate_when_series_already_continues(self, commitment_db, make_draft):
        root = commitment_db.create(USER, make_draft(when_rrule="FREQ=DAILY"))
        nxt = commitment_db.complete_and_spawn(root, T0 + timedelta(days=1)).successor
        commitment_db.update(USER, root.id, {"status": "scheduled"})

        again = commitment_db.complete_and_spawn(root, T0 + timedelta(days=1))

        assert again.completed is True
        assert again.successor is None
        assert [c.id for c in commitment_db.list(USER, "scheduled")] == [nxt.id]

    def test_revert_removes_successor(self, commitment_db, make_draft):
        root = commitment_db.create(USER, make_draft(when_rrule="FREQ=DAILY"))
        nxt = commitment_db.complete_and_spawn(root, T0 + timedelta(days=1)).successor

        assert commitment_db.revert_completed(root.id, nxt.id) is True

        [only] = commitment_db.list(USER)
        assert only.id == root.id
        assert only.status is CommitmentStatus.SCHEDULED

    def test_revert_requires_completed(self, commitment_db, make_draft):
        c = commitment_db.create(USER, make_draft())
        assert commitment_db.revert_completed(c.id) is False


# ---------------------------------------------------------------------------
# Nudge preferences & log
# ---------------------------------------------------------------------------


class TestNudgePrefsDB:
    def test_missing_returns_none(self, prefs_db):
        assert prefs_db.get(USER) is None

    def test_ensure_defaults(self, prefs_db):
        prefs = prefs_db.ensure_defaults(USER)
        assert prefs.dnd_enabled is False
        assert prefs.max_daily_nudges == 3
        assert prefs.timezone == "Asia/Taipei"
        assert prefs_db.get(USER) == prefs

    def test_upsert_normalizes_hours(self, prefs_db):
        prefs_db.upsert(NudgePreference(user_id=USER, dnd_enabled=True, dnd_start_time="7:05"))
        assert prefs_db.get(USER).dnd_start_time == "07:05"

    def test_upsert_replaces(self, prefs_db):
        prefs_db.upsert(NudgePreference(user_id=USER, max_daily_nudges=1))
        prefs_db.upsert(NudgePreference(user_id=USER, max_daily_nudges=5))
        assert prefs_db.get(USER).max_daily_nudges == 5

    @pytest.mark.parametrize("prefs", [
        NudgePreference(user_id=USER, dnd_start_time="25:00"),
        NudgePreference(user_id=USER, dnd_end_time="late"),
        NudgePreference(user_id=USER, max_daily_nudges=-1),
        NudgePreference(user_id=USER, timezone="Mars/Olympus"),
    ])
    def test_upsert_validation(self, prefs_db, prefs):
        with pytest.raises(ValidationError):
            prefs_db.upsert(prefs)


class TestNudgeLogDB:
    def _event(self, status, created_at, user_id=USER):
        return NudgeEvent(
            commitment_id="c1", user_id=user_id, delivery_status=status,
            channel="telegram", created_at=created_at,
        )

    def test_append_assigns_id(self, log_db):
        event = log_db.append(self._event(DeliveryStatus.SENT, T0))
        assert event.id is not None

    def test_count_sent_between_is_half_open(self, log_db):
        log_db.append(self._event(DeliveryStatus.SENT, T0))
        log_db.append(self._event(DeliveryStatus.SENT, T0 + timedelta(hours=1)))
        log_db.append(self._event(DeliveryStatus.SKIPPED_DND, T0))
        log_db.append(self._event(DeliveryStatus.SENT, T0, user_id=OTHER))
        assert log_db.count_sent_between(USER, T0, T0 + timedelta(hours=1)) == 1
        assert log_db.count_sent_between(USER, T0, T0 + timedelta(hours=2)) == 2

    def test_metadata_round_trip(self, log_db):
        event = self._event(DeliveryStatus.ERROR, T0)
        event.metadata = {"error": "網路錯誤"}
        log_db.append(event)
        [stored] = log_db.list_for_commitment("c1")
        assert stored.metadata == {"error": "網路錯誤"}
        assert stored.delivery_status is DeliveryStatus.ERROR
