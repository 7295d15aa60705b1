"""
Lingxin Commitments — SQLite storage.

Commitments, per-user nudge preferences and the append-only nudge log
persist in SQLite across restarts. Each table has its own store class; all
of them share one database file.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from lingxin.core.parser import DraftCommitment
from lingxin.core.timeutil import from_iso, parse_rrule, to_utc_iso
from lingxin.data.models import (
    Commitment,
    CommitmentStatus,
    Completion,
    DeliveryStatus,
    IntentType,
    NudgeEvent,
    NudgePreference,
    can_transition,
)
from lingxin.ports.commitment_port import (
    ConflictingUpdate,
    NotFoundOrNotOwned,
    TransientStoreError,
    ValidationError,
)

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 200


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _SQLiteStore(ABC):
    """Connection handling shared by every table store."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from lingxin.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, map lock/IO errors to TransientStoreError."""
        try:
            conn = sqlite3.connect(self._db_path, timeout=5.0)
        except sqlite3.OperationalError as exc:
            raise TransientStoreError(f"Cannot open database: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.OperationalError as exc:
            raise TransientStoreError(str(exc)) from exc
        finally:
            conn.close()

    @abstractmethod
    def _init_db(self) -> None:
        """Create this store's table(s) and migrate missing columns."""

    @staticmethod
    def _add_missing_columns(
        conn: sqlite3.Connection, table: str, columns: dict[str, str],
    ) -> None:
        existing_cols = {
            row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()
        }
        for name, ddl in columns.items():
            if name not in existing_cols:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")


# ---------------------------------------------------------------------------
# Commitments
# ---------------------------------------------------------------------------


def _require_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string")
    return value.strip()


def _require_aware(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValidationError(f"when_time is not ISO-8601: {value!r}") from exc
    if not isinstance(value, datetime):
        raise ValidationError("when_time must be a datetime")
    if value.tzinfo is None:
        raise ValidationError("when_time must be timezone-aware")
    return value


def _require_priority(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError("priority must be an integer >= 1")
    return value


def _require_duration(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError("duration_minutes must be a positive integer")
    return value


def _normalize_rrule(value: str | None) -> str | None:
    if value is None:
        return None
    freq = parse_rrule(value)
    if freq is None:
        raise ValidationError(
            f"Unsupported recurrence rule {value!r}; use FREQ=DAILY, FREQ=WEEKLY or FREQ=MONTHLY"
        )
    return freq.rrule


class CommitmentDB(_SQLiteStore):
    """SQLite-backed commitment store.

    User operations are scoped by user_id in every WHERE clause; a row that
    belongs to someone else behaves exactly like a missing row.
    """

    # Fields a user may patch. when_rrule is fixed at creation.
    UPDATABLE_FIELDS = frozenset({
        "title", "description", "what_action", "where_location", "notes",
        "when_time", "priority", "dnd_respect", "duration_minutes", "status",
    })

    def _init_db(self) -> None:
        """Create the commitments table if it doesn't exist, and migrate schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS commitments (
                    id                TEXT    PRIMARY KEY,
                    user_id           INTEGER NOT NULL,
                    intent_type       TEXT    NOT NULL,
                    title             TEXT    NOT NULL,
                    description       TEXT    NOT NULL DEFAULT '',
                    what_action       TEXT    NOT NULL,
                    where_location    TEXT,
                    notes             TEXT,
                    when_time         TEXT,
                    when_rrule        TEXT,
                    status            TEXT    NOT NULL,
                    version           INTEGER NOT NULL DEFAULT 1,
                    priority          INTEGER NOT NULL DEFAULT 1,
                    dnd_respect       INTEGER NOT NULL DEFAULT 1,
                    created_at        TEXT    NOT NULL,
                    updated_at        TEXT    NOT NULL
                )
            """)
            self._add_missing_columns(conn, "commitments", {
                "duration_minutes": "INTEGER",
                "series_id": "TEXT",
                "source_message": "TEXT",
            })
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_commitments_due "
                "ON commitments (status, when_time)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_commitments_user "
                "ON commitments (user_id, created_at)"
            )
        logger.debug("Commitments table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_commitment(row: sqlite3.Row) -> Commitment:
        return Commitment(
            id=row["id"],
            user_id=row["user_id"],
            intent_type=IntentType(row["intent_type"]),
            title=row["title"],
            description=row["description"],
            what_action=row["what_action"],
            where_location=row["where_location"],
            notes=row["notes"],
            when_time=from_iso(row["when_time"]),
            when_rrule=row["when_rrule"],
            status=CommitmentStatus(row["status"]),
            version=row["version"],
            priority=row["priority"],
            dnd_respect=bool(row["dnd_respect"]),
            duration_minutes=row["duration_minutes"],
            series_id=row["series_id"],
            source_message=row["source_message"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )

    @staticmethod
    def _insert(conn: sqlite3.Connection, c: Commitment) -> None:
        conn.execute(
            """
            INSERT INTO commitments
                (id, user_id, intent_type, title, description, what_action,
                 where_location, notes, when_time, when_rrule, status, version,
                 priority, dnd_respect, duration_minutes, series_id,
                 source_message, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                c.id, c.user_id, c.intent_type.value, c.title, c.description,
                c.what_action, c.where_location, c.notes,
                to_utc_iso(c.when_time) if c.when_time else None,
                c.when_rrule, c.status.value, c.version, c.priority,
                int(c.dnd_respect), c.duration_minutes, c.series_id,
                c.source_message, to_utc_iso(c.created_at), to_utc_iso(c.updated_at),
            ),
        )

    def _from_draft(
        self, user_id: int, draft: DraftCommitment, status: CommitmentStatus,
    ) -> Commitment:
        when_time = draft.when_time
        if status is CommitmentStatus.SCHEDULED and when_time is None:
            raise ValidationError("when_time is required to schedule a commitment")
        if when_time is not None:
            when_time = _require_aware(when_time)

        rrule = _normalize_rrule(draft.when_rrule)
        now = _utcnow()
        commitment_id = uuid.uuid4().hex
        return Commitment(
            id=commitment_id,
            user_id=user_id,
            intent_type=draft.intent_type,
            title=_require_text("title", draft.title),
            what_action=_require_text("what_action", draft.what_action),
            status=status,
            when_time=when_time,
            when_rrule=rrule,
            description=draft.description or "",
            where_location=draft.where_location,
            notes=draft.notes,
            version=1,
            priority=_require_priority(draft.priority),
            dnd_respect=draft.dnd_respect,
            duration_minutes=_require_duration(draft.duration_minutes),
            series_id=commitment_id if rrule else None,
            source_message=draft.source_message or None,
            created_at=now,
            updated_at=now,
        )

    def create(self, user_id: int, draft: DraftCommitment) -> Commitment:
        """Persist a confirmed draft as a scheduled commitment (version 1)."""
        commitment = self._from_draft(user_id, draft, CommitmentStatus.SCHEDULED)
        with self._connect() as conn:
            self._insert(conn, commitment)
        logger.info(
            "Commitment created: %s '%s' for user %d at %s",
            commitment.id, commitment.title, user_id, commitment.when_time,
        )
        return commitment

    def save_draft(self, user_id: int, draft: DraftCommitment) -> Commitment:
        """Persist a draft that still needs clarification before scheduling."""
        commitment = self._from_draft(user_id, draft, CommitmentStatus.DRAFT)
        with self._connect() as conn:
            self._insert(conn, commitment)
        logger.info("Draft saved: %s '%s' for user %d", commitment.id, commitment.title, user_id)
        return commitment

    def get(self, user_id: int, commitment_id: str) -> Commitment:
        """Fetch one commitment owned by user_id."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM commitments WHERE id = ? AND user_id = ?",
                (commitment_id, user_id),
            ).fetchone()
        if row is None:
            raise NotFoundOrNotOwned(f"Commitment {commitment_id} not found")
        return self._row_to_commitment(row)

    def resolve_id(self, user_id: int, prefix: str) -> str:
        """Expand a short id prefix (as shown in /list) to a full commitment id."""
        prefix = prefix.strip().lower()
        if len(prefix) < 6 or not all(ch in "0123456789abcdef" for ch in prefix):
            raise ValidationError("Commitment ids are at least 6 hex characters")
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM commitments WHERE user_id = ? AND id LIKE ? LIMIT 2",
                (user_id, prefix + "%"),
            ).fetchall()
        if not rows:
            raise NotFoundOrNotOwned(f"Commitment {prefix} not found")
        if len(rows) > 1:
            raise ValidationError(f"Id prefix {prefix} is ambiguous")
        return rows[0]["id"]

    def list(
        self, user_id: int, status_filter: str = "all", limit: int = 50,
    ) -> list[Commitment]:
        """List a user's commitments, newest-created first."""
        query = "SELECT * FROM commitments WHERE user_id = ?"
        params: list = [user_id]
        if status_filter != "all":
            try:
                status = CommitmentStatus(status_filter)
            except ValueError as exc:
                raise ValidationError(f"Unknown status filter {status_filter!r}") from exc
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(max(1, min(int(limit), MAX_LIST_LIMIT)))

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_commitment(r) for r in rows]

    def _validate_patch(self, current: Commitment, patch: dict[str, Any]) -> dict[str, Any]:
        """Check a patch against field rules and the status state machine.

        Returns the column → stored value mapping to write.
        """
        if not patch:
            raise ValidationError("Nothing to update")
        unknown = set(patch) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        columns: dict[str, Any] = {}
        status = current.status
        when_time = current.when_time

        if "status" in patch:
            try:
                target = CommitmentStatus(patch["status"])
            except ValueError as exc:
                raise ValidationError(f"Unknown status {patch['status']!r}") from exc
            if target is not current.status:
                if not can_transition(current.status, target):
                    raise ValidationError(
                        f"Cannot move commitment from {current.status.value} to {target.value}"
                    )
                status = target
                columns["status"] = target.value

        if "when_time" in patch:
            when_time = None if patch["when_time"] is None else _require_aware(patch["when_time"])
            columns["when_time"] = to_utc_iso(when_time) if when_time else None

        if when_time is None and status is not CommitmentStatus.DRAFT:
            raise ValidationError("when_time is required unless the commitment is a draft")

        for name in ("title", "what_action"):
            if name in patch:
                columns[name] = _require_text(name, patch[name])
        if "description" in patch:
            columns["description"] = patch["description"] or ""
        for name in ("where_location", "notes"):
            if name in patch:
                columns[name] = patch[name] or None
        if "priority" in patch:
            columns["priority"] = _require_priority(patch["priority"])
        if "dnd_respect" in patch:
            if not isinstance(patch["dnd_respect"], bool):
                raise ValidationError("dnd_respect must be a boolean")
            columns["dnd_respect"] = int(patch["dnd_respect"])
        if "duration_minutes" in patch:
            columns["duration_minutes"] = _require_duration(patch["duration_minutes"])

        if not columns:
            raise ValidationError("Nothing to update")
        return columns

    def update(
        self,
        user_id: int,
        commitment_id: str,
        patch: dict[str, Any],
        expected_version: int | None = None,
    ) -> Commitment:
        """Apply a patch, bumping version.

        Raises NotFoundOrNotOwned, ValidationError, or ConflictingUpdate when
        expected_version (or a concurrent write) does not match the stored row.
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM commitments WHERE id = ? AND user_id = ?",
                (commitment_id, user_id),
            ).fetchone()
            if row is None:
                raise NotFoundOrNotOwned(f"Commitment {commitment_id} not found")

            current = self._row_to_commitment(row)
            if expected_version is not None and expected_version != current.version:
                raise ConflictingUpdate(
                    f"Commitment {commitment_id} is at version {current.version}, "
                    f"not {expected_version}; re-fetch and retry"
                )

            columns = self._validate_patch(current, patch)
            assignments = ", ".join(f"{name} = ?" for name in columns)
            cursor = conn.execute(
                f"""
                UPDATE commitments
                SET {assignments}, version = version + 1, updated_at = ?
                WHERE id = ? AND user_id = ? AND version = ?
                """,
                (*columns.values(), to_utc_iso(_utcnow()), commitment_id, user_id, current.version),
            )
            if cursor.rowcount == 0:
                raise ConflictingUpdate(f"Commitment {commitment_id} changed concurrently")

            row = conn.execute(
                "SELECT * FROM commitments WHERE id = ?", (commitment_id,),
            ).fetchone()

        updated = self._row_to_commitment(row)
        logger.info(
            "Commitment %s updated to v%d (%s)",
            commitment_id, updated.version, ", ".join(sorted(columns)),
        )
        return updated

    def delete(self, user_id: int, commitment_id: str) -> None:
        """Hard-delete a commitment. Its recurrence chain stops with it."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM commitments WHERE id = ? AND user_id = ?",
                (commitment_id, user_id),
            )
            deleted = cursor.rowcount > 0
        if not deleted:
            raise NotFoundOrNotOwned(f"Commitment {commitment_id} not found")
        logger.info("Commitment %s deleted by user %d", commitment_id, user_id)

    def cancel_series(self, user_id: int, series_id: str) -> int:
        """Cancel every pending occurrence of a recurrence chain.

        Returns the number of commitments cancelled.
        """
        with self._connect() as conn:
            exists = conn.execute(
                "SELECT 1 FROM commitments WHERE series_id = ? AND user_id = ? LIMIT 1",
                (series_id, user_id),
            ).fetchone()
            if exists is None:
                raise NotFoundOrNotOwned(f"Series {series_id} not found")
            cursor = conn.execute(
                """
                UPDATE commitments
                SET status = 'cancelled', version = version + 1, updated_at = ?
                WHERE series_id = ? AND user_id = ? AND status IN ('scheduled', 'draft')
                """,
                (to_utc_iso(_utcnow()), series_id, user_id),
            )
            cancelled = cursor.rowcount
        logger.info("Series %s: %d occurrence(s) cancelled", series_id, cancelled)
        return cancelled

    # -- sweep side ---------------------------------------------------------

    def fetch_due(self, now: datetime, limit: int) -> list[Commitment]:
        """Scheduled commitments with when_time <= now, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM commitments
                WHERE status = 'scheduled' AND when_time IS NOT NULL AND when_time <= ?
                ORDER BY when_time ASC
                LIMIT ?
                """,
                (to_utc_iso(now), limit),
            ).fetchall()
        return [self._row_to_commitment(r) for r in rows]

    @staticmethod
    def _successor(commitment: Commitment, when_time: datetime) -> Commitment:
        now = _utcnow()
        return Commitment(
            id=uuid.uuid4().hex,
            user_id=commitment.user_id,
            intent_type=commitment.intent_type,
            title=commitment.title,
            what_action=commitment.what_action,
            status=CommitmentStatus.SCHEDULED,
            when_time=when_time,
            when_rrule=commitment.when_rrule,
            description=commitment.description,
            where_location=commitment.where_location,
            notes=commitment.notes,
            version=1,
            priority=commitment.priority,
            dnd_respect=commitment.dnd_respect,
            duration_minutes=commitment.duration_minutes,
            series_id=commitment.series_id or commitment.id,
            source_message=commitment.source_message,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _series_continues(conn: sqlite3.Connection, commitment: Commitment) -> bool:
        """True if a later scheduled occurrence of the same series already exists."""
        row = conn.execute(
            """
            SELECT 1 FROM commitments
            WHERE series_id = ? AND id != ? AND status = 'scheduled' AND when_time > ?
            LIMIT 1
            """,
            (
                commitment.series_id or commitment.id, commitment.id,
                to_utc_iso(commitment.when_time),
            ),
        ).fetchone()
        return row is not None

    def complete_and_spawn(
        self, commitment: Commitment, next_time: datetime | None = None,
    ) -> Completion:
        """Compare-and-swap scheduled → completed, spawning the next occurrence.

        The status change and the successor insert share one transaction, so
        a recurring series either advances as a whole or not at all. No
        successor is inserted when the series already has a later scheduled
        occurrence (a reactivated past occurrence firing again).

        `completed` is False when the row is no longer scheduled (another
        sweep got there first, or the user cancelled/deleted it meanwhile).
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE commitments
                SET status = 'completed', version = version + 1, updated_at = ?
                WHERE id = ? AND status = 'scheduled'
                """,
                (to_utc_iso(_utcnow()), commitment.id),
            )
            if cursor.rowcount != 1:
                return Completion(completed=False)

            if next_time is None:
                return Completion(completed=True)
            if self._series_continues(conn, commitment):
                logger.info("Series of %s already continues; no new occurrence", commitment.id)
                return Completion(completed=True)

            successor = self._successor(commitment, next_time)
            self._insert(conn, successor)

        logger.info(
            "Next occurrence of '%s' scheduled: %s at %s",
            commitment.title, successor.id, next_time,
        )
        return Completion(completed=True, successor=successor)

    def revert_completed(self, commitment_id: str, successor_id: str | None = None) -> bool:
        """Undo complete_and_spawn after a failed delivery.

        Moves the commitment back to scheduled and removes the untouched
        successor in one transaction.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE commitments
                SET status = 'scheduled', version = version + 1, updated_at = ?
                WHERE id = ? AND status = 'completed'
                """,
                (to_utc_iso(_utcnow()), commitment_id),
            )
            reverted = cursor.rowcount == 1
            if reverted and successor_id is not None:
                conn.execute(
                    "DELETE FROM commitments WHERE id = ? AND status = 'scheduled' AND version = 1",
                    (successor_id,),
                )
        if reverted:
            logger.info("Commitment %s back to scheduled after failed delivery", commitment_id)
        return reverted


# ---------------------------------------------------------------------------
# Nudge preferences
# ---------------------------------------------------------------------------


def _check_hour(name: str, value: str) -> str:
    try:
        hour_s, minute_s = value.split(":")
        hour, minute = int(hour_s), int(minute_s)
    except (ValueError, AttributeError) as exc:
        raise ValidationError(f"{name} must be HH:MM, got {value!r}") from exc
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValidationError(f"{name} out of range: {value!r}")
    return f"{hour:02d}:{minute:02d}"


class NudgePrefsDB(_SQLiteStore):
    """SQLite-backed storage for per-user nudge preferences."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS nudge_prefs (
                    user_id           INTEGER PRIMARY KEY,
                    dnd_enabled       INTEGER NOT NULL DEFAULT 0,
                    dnd_start_time    TEXT    NOT NULL DEFAULT '22:00',
                    dnd_end_time      TEXT    NOT NULL DEFAULT '08:00',
                    max_daily_nudges  INTEGER NOT NULL DEFAULT 3,
                    timezone          TEXT    NOT NULL
                )
            """)
        logger.debug("Nudge prefs table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_prefs(row: sqlite3.Row) -> NudgePreference:
        return NudgePreference(
            user_id=row["user_id"],
            dnd_enabled=bool(row["dnd_enabled"]),
            dnd_start_time=row["dnd_start_time"],
            dnd_end_time=row["dnd_end_time"],
            max_daily_nudges=row["max_daily_nudges"],
            timezone=row["timezone"],
        )

    def get(self, user_id: int) -> NudgePreference | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM nudge_prefs WHERE user_id = ?", (user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_prefs(row)

    def upsert(self, prefs: NudgePreference) -> NudgePreference:
        """Insert or replace a user's preferences after validating them."""
        start = _check_hour("dnd_start_time", prefs.dnd_start_time)
        end = _check_hour("dnd_end_time", prefs.dnd_end_time)
        if prefs.max_daily_nudges < 0:
            raise ValidationError("max_daily_nudges must be >= 0")
        try:
            ZoneInfo(prefs.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValidationError(f"Unknown timezone {prefs.timezone!r}") from exc

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO nudge_prefs
                    (user_id, dnd_enabled, dnd_start_time, dnd_end_time,
                     max_daily_nudges, timezone)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    dnd_enabled = excluded.dnd_enabled,
                    dnd_start_time = excluded.dnd_start_time,
                    dnd_end_time = excluded.dnd_end_time,
                    max_daily_nudges = excluded.max_daily_nudges,
                    timezone = excluded.timezone
                """,
                (
                    prefs.user_id, int(prefs.dnd_enabled), start, end,
                    prefs.max_daily_nudges, prefs.timezone,
                ),
            )
        prefs.dnd_start_time, prefs.dnd_end_time = start, end
        logger.info("Nudge preferences saved for user %d", prefs.user_id)
        return prefs

    def ensure_defaults(self, user_id: int) -> NudgePreference:
        """Return a user's preferences, creating defaults at onboarding."""
        existing = self.get(user_id)
        if existing is not None:
            return existing

        from lingxin.config import settings

        return self.upsert(NudgePreference(
            user_id=user_id,
            max_daily_nudges=settings.DEFAULT_MAX_DAILY_NUDGES,
            timezone=settings.TIMEZONE,
        ))


# ---------------------------------------------------------------------------
# Nudge log
# ---------------------------------------------------------------------------


class NudgeLogDB(_SQLiteStore):
    """Append-only log of nudge attempts. Rows are never updated or deleted."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS nudges_log (
                    id               INTEGER PRIMARY KEY AUTOINCREMENT,
                    commitment_id    TEXT    NOT NULL,
                    user_id          INTEGER NOT NULL,
                    delivery_status  TEXT    NOT NULL,
                    channel          TEXT    NOT NULL,
                    created_at       TEXT    NOT NULL,
                    metadata         TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_nudges_log_user "
                "ON nudges_log (user_id, delivery_status, created_at)"
            )
        logger.debug("Nudge log table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> NudgeEvent:
        return NudgeEvent(
            id=row["id"],
            commitment_id=row["commitment_id"],
            user_id=row["user_id"],
            delivery_status=DeliveryStatus(row["delivery_status"]),
            channel=row["channel"],
            created_at=from_iso(row["created_at"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )

    def append(self, event: NudgeEvent) -> NudgeEvent:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO nudges_log
                    (commitment_id, user_id, delivery_status, channel, created_at, metadata)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.commitment_id, event.user_id, event.delivery_status.value,
                    event.channel, to_utc_iso(event.created_at),
                    json.dumps(event.metadata, ensure_ascii=False) if event.metadata else None,
                ),
            )
            event.id = cursor.lastrowid
        logger.debug(
            "Nudge event #%d: %s %s", event.id, event.commitment_id, event.delivery_status.value,
        )
        return event

    def count_sent_between(self, user_id: int, start: datetime, end: datetime) -> int:
        """Count `sent` events for a user with start <= created_at < end."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM nudges_log
                WHERE user_id = ? AND delivery_status = 'sent'
                  AND created_at >= ? AND created_at < ?
                """,
                (user_id, to_utc_iso(start), to_utc_iso(end)),
            ).fetchone()
        return row[0]

    def list_for_commitment(self, commitment_id: str) -> list[NudgeEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM nudges_log WHERE commitment_id = ? ORDER BY id",
                (commitment_id,),
            ).fetchall()
        return [self._row_to_event(r) for r in rows]
