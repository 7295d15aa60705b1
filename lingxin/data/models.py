"""
Lingxin Commitments — Data Models.

A commitment is a user's scheduled obligation: a one-off reminder, a dated
task, or a recurring rule that regenerates itself after every firing.
Nudge preferences and the append-only nudge log live next to it in SQLite.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class IntentType(str, Enum):
    REMINDER = "reminder"
    SCHEDULED = "scheduled"
    RECURRING = "recurring"


class CommitmentStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    SKIPPED_DND = "skipped_dnd"
    SKIPPED_LIMIT = "skipped_limit"
    ERROR = "error"


# Allowed status transitions. Deletion is a hard delete, not a state.
TRANSITIONS: dict[CommitmentStatus, frozenset[CommitmentStatus]] = {
    CommitmentStatus.DRAFT: frozenset({CommitmentStatus.SCHEDULED, CommitmentStatus.CANCELLED}),
    CommitmentStatus.SCHEDULED: frozenset({CommitmentStatus.COMPLETED, CommitmentStatus.CANCELLED}),
    CommitmentStatus.COMPLETED: frozenset({CommitmentStatus.SCHEDULED}),
    CommitmentStatus.CANCELLED: frozenset({CommitmentStatus.SCHEDULED}),
}


def can_transition(current: CommitmentStatus, target: CommitmentStatus) -> bool:
    return target in TRANSITIONS[current]


@dataclass
class Commitment:
    """A user's scheduled obligation.

    `when_time` is None only while the commitment is a draft. `when_rrule`
    is fixed at creation; every firing of a recurring commitment spawns a
    new sibling row sharing the same `series_id`.
    """

    id: str
    user_id: int
    intent_type: IntentType
    title: str
    what_action: str
    status: CommitmentStatus
    when_time: datetime | None = None      # timezone-aware
    when_rrule: str | None = None          # FREQ=DAILY|WEEKLY|MONTHLY
    description: str = ""
    where_location: str | None = None
    notes: str | None = None
    version: int = 1
    priority: int = 1                      # higher = more important
    dnd_respect: bool = True
    duration_minutes: int | None = None    # meeting/task length hint
    series_id: str | None = None           # root id of a recurrence chain
    source_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_recurring(self) -> bool:
        return bool(self.when_rrule)

    def to_dict(self) -> dict:
        """JSON-ready view for export collaborators (calendar feeds, APIs)."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "intent_type": self.intent_type.value,
            "title": self.title,
            "description": self.description,
            "what_action": self.what_action,
            "where_location": self.where_location,
            "notes": self.notes,
            "when_time": self.when_time.isoformat() if self.when_time else None,
            "when_rrule": self.when_rrule,
            "status": self.status.value,
            "version": self.version,
            "priority": self.priority,
            "dnd_respect": self.dnd_respect,
            "duration_minutes": self.duration_minutes,
            "series_id": self.series_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class NudgePreference:
    """Per-user delivery preferences, created once at onboarding."""

    user_id: int
    dnd_enabled: bool = False
    dnd_start_time: str = "22:00"   # HH:MM, hour-level precision
    dnd_end_time: str = "08:00"     # may be earlier than start (wraps midnight)
    max_daily_nudges: int = 3
    timezone: str = "Asia/Taipei"


@dataclass
class NudgeEvent:
    """One append-only row of the nudge log."""

    commitment_id: str
    user_id: int
    delivery_status: DeliveryStatus
    channel: str
    created_at: datetime
    metadata: dict = field(default_factory=dict)
    id: int | None = None


@dataclass
class Completion:
    """Outcome of the guarded scheduled → completed transition."""

    completed: bool
    successor: Commitment | None = None    # next occurrence inserted alongside
