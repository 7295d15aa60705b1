"""Commitment ports — persistence contracts and the error taxonomy.

Core modules depend on these protocols, never on a specific backend.
Every user-facing operation is scoped to the owning user; the sweep-side
operations (`fetch_due`, `complete_and_spawn`, ...) are not.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Protocol

from lingxin.core.parser import DraftCommitment
from lingxin.data.models import Commitment, Completion, NudgeEvent, NudgePreference


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CommitmentError(Exception):
    """Base class for every commitment store failure."""

    code = "COMMITMENT_ENGINE_FAILED"

    def to_payload(self) -> dict[str, Any]:
        """Structured error payload for the request layer."""
        return {
            "error": {
                "code": self.code,
                "message": str(self),
                "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            }
        }


class ValidationError(CommitmentError):
    """Malformed or missing draft/update fields. Never retried."""

    code = "VALIDATION_ERROR"


class NotFoundOrNotOwned(CommitmentError):
    """The commitment does not exist or belongs to someone else."""

    code = "NOT_FOUND"


class TransientStoreError(CommitmentError):
    """A single read/write failed; the sweep retries on its next pass."""

    code = "TRANSIENT_STORE_ERROR"


class ConflictingUpdate(CommitmentError):
    """Optimistic version mismatch on a user-initiated update."""

    code = "CONFLICTING_UPDATE"


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class CommitmentStore(Protocol):
    """Durable storage for commitments."""

    def create(self, user_id: int, draft: DraftCommitment) -> Commitment: ...

    def save_draft(self, user_id: int, draft: DraftCommitment) -> Commitment: ...

    def get(self, user_id: int, commitment_id: str) -> Commitment: ...

    def list(
        self, user_id: int, status_filter: str = "all", limit: int = 50,
    ) -> list[Commitment]: ...

    def update(
        self,
        user_id: int,
        commitment_id: str,
        patch: dict[str, Any],
        expected_version: int | None = None,
    ) -> Commitment: ...

    def delete(self, user_id: int, commitment_id: str) -> None: ...

    def cancel_series(self, user_id: int, series_id: str) -> int: ...

    # Sweep side
    def fetch_due(self, now: datetime, limit: int) -> list[Commitment]: ...

    def complete_and_spawn(
        self, commitment: Commitment, next_time: datetime | None = None,
    ) -> Completion: ...

    def revert_completed(
        self, commitment_id: str, successor_id: str | None = None,
    ) -> bool: ...


class NudgePrefsStore(Protocol):
    """Per-user nudge preferences."""

    def get(self, user_id: int) -> NudgePreference | None: ...

    def upsert(self, prefs: NudgePreference) -> NudgePreference: ...


class NudgeLog(Protocol):
    """Append-only event log of nudge attempts."""

    def append(self, event: NudgeEvent) -> NudgeEvent: ...

    def count_sent_between(
        self, user_id: int, start: datetime, end: datetime,
    ) -> int: ...

    def list_for_commitment(self, commitment_id: str) -> list[NudgeEvent]: ...
