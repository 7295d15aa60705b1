"""
Lingxin Commitments — UI-Agnostic Commitment Service.

Stateless service layer between a UI adapter (the Telegram bot today) and
the engine: extract a draft from a message, persist it as scheduled or as
a draft awaiting clarification, confirm drafts, and drive the user-side
lifecycle (cancel, reactivate, series stop) plus nudge preferences.

Store errors (ValidationError, NotFoundOrNotOwned, ConflictingUpdate) are
propagated unchanged; the UI renders them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from lingxin.core.parser import DraftCommitment, extract
from lingxin.core.timeutil import resolve_when
from lingxin.data.models import Commitment, CommitmentStatus, NudgePreference
from lingxin.ports.commitment_port import ValidationError

if TYPE_CHECKING:
    from lingxin.ports.commitment_port import CommitmentStore, NudgePrefsStore

logger = logging.getLogger(__name__)


class CaptureKind(Enum):
    NO_ACTION = "no_action"
    CREATED = "created"
    NEEDS_CLARIFICATION = "needs_clarification"


@dataclass
class CaptureResult:
    kind: CaptureKind
    draft: DraftCommitment | None = None
    commitment: Commitment | None = None


def user_now(prefs: NudgePreference) -> datetime:
    """Current wall-clock time in the user's configured timezone."""
    return datetime.now(ZoneInfo(prefs.timezone))


# ---------------------------------------------------------------------------
# Capture: message → draft → commitment
# ---------------------------------------------------------------------------


def capture(
    store: CommitmentStore, user_id: int, message: str, now: datetime,
) -> CaptureResult:
    """Extract a commitment from a message and persist it.

    A fully resolved draft is created as `scheduled`; one that needs
    clarification is saved as `draft` so the user can pick a suggestion.
    """
    draft = extract(message, now=now)
    if draft is None:
        return CaptureResult(kind=CaptureKind.NO_ACTION)

    if draft.needs_clarification:
        commitment = store.save_draft(user_id, draft)
        return CaptureResult(
            kind=CaptureKind.NEEDS_CLARIFICATION, draft=draft, commitment=commitment,
        )

    commitment = store.create(user_id, draft)
    return CaptureResult(kind=CaptureKind.CREATED, draft=draft, commitment=commitment)


def confirm_draft(
    store: CommitmentStore,
    user_id: int,
    commitment_id: str,
    time_option: str,
    now: datetime,
) -> Commitment:
    """Schedule a draft at the time described by one of its suggestions."""
    current = store.get(user_id, commitment_id)
    if current.status is not CommitmentStatus.DRAFT:
        raise ValidationError(f"Commitment {commitment_id} is not a draft")

    when_time = resolve_when(time_option, now)
    logger.info("Draft %s confirmed for %s (%s)", commitment_id, when_time, time_option)
    return store.update(
        user_id, commitment_id,
        {"status": CommitmentStatus.SCHEDULED.value, "when_time": when_time},
        expected_version=current.version,
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def cancel(store: CommitmentStore, user_id: int, commitment_id: str) -> Commitment:
    return store.update(user_id, commitment_id, {"status": CommitmentStatus.CANCELLED.value})


def reactivate(store: CommitmentStore, user_id: int, commitment_id: str) -> Commitment:
    """Move a completed or cancelled commitment back to scheduled.

    If its when_time is already past, the next sweep fires it.
    """
    current = store.get(user_id, commitment_id)
    if current.status not in (CommitmentStatus.COMPLETED, CommitmentStatus.CANCELLED):
        raise ValidationError(
            f"Only completed or cancelled commitments can be reactivated "
            f"(this one is {current.status.value})"
        )
    return store.update(
        user_id, commitment_id,
        {"status": CommitmentStatus.SCHEDULED.value},
        expected_version=current.version,
    )


def stop_series(store: CommitmentStore, user_id: int, commitment_id: str) -> int:
    """Cancel every pending occurrence of the chain this commitment belongs to."""
    current = store.get(user_id, commitment_id)
    if not current.series_id:
        raise ValidationError(f"Commitment {commitment_id} does not recur")
    return store.cancel_series(user_id, current.series_id)


# ---------------------------------------------------------------------------
# Nudge preferences
# ---------------------------------------------------------------------------


def set_dnd(
    prefs_store: NudgePrefsStore, prefs: NudgePreference, start: str, end: str,
) -> NudgePreference:
    return prefs_store.upsert(
        replace(prefs, dnd_enabled=True, dnd_start_time=start, dnd_end_time=end),
    )


def disable_dnd(prefs_store: NudgePrefsStore, prefs: NudgePreference) -> NudgePreference:
    return prefs_store.upsert(replace(prefs, dnd_enabled=False))


def set_daily_limit(
    prefs_store: NudgePrefsStore, prefs: NudgePreference, limit: int,
) -> NudgePreference:
    return prefs_store.upsert(replace(prefs, max_daily_nudges=limit))
