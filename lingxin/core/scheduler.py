"""
Lingxin Commitments — Scheduler Sweep.

One sweep is a stateless batch pass over due commitments: consult the
delivery policy, fire what may fire, log every outcome, and spawn the next
occurrence of recurring rules. It is triggered periodically (every few
minutes) and on demand, and must stay correct when two sweeps overlap.

The only guarded write is the scheduled → completed transition, committed
together with the next occurrence of a recurring rule: whichever sweep wins
that compare-and-swap counts the firing, the loser treats the commitment as
already handled. A failed delivery undoes both.

This module is storage- and provider-agnostic: it depends on the commitment
ports and NudgeNotifier, not on specific implementations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from lingxin.config import settings
from lingxin.core.delivery_policy import DeliveryVerdict, may_deliver
from lingxin.core.timeutil import advance, ensure_aware, local_day_bounds, parse_rrule
from lingxin.data.models import Commitment, DeliveryStatus, NudgeEvent, NudgePreference

if TYPE_CHECKING:
    from lingxin.ports.commitment_port import CommitmentStore, NudgeLog, NudgePrefsStore
    from lingxin.ports.notification_port import NudgeNotifier

logger = logging.getLogger(__name__)

# Channel tag when no notifier is wired: the calendar feed picks the commitment up
ICS_CHANNEL = "ics"


class _Outcome(str, Enum):
    SENT = "sent"
    SKIPPED_DND = "skipped_dnd"
    SKIPPED_LIMIT = "skipped_limit"
    ALREADY_HANDLED = "already_handled"


@dataclass
class SweepResult:
    """Aggregate counts for one sweep. Skips are not errors."""

    processed: int = 0
    sent: int = 0
    errors: int = 0
    skipped_dnd: int = 0
    skipped_limit: int = 0
    already_handled: int = 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _default_prefs(user_id: int) -> NudgePreference:
    return NudgePreference(
        user_id=user_id,
        dnd_enabled=False,
        max_daily_nudges=settings.DEFAULT_MAX_DAILY_NUDGES,
        timezone=settings.TIMEZONE,
    )


def format_nudge(commitment: Commitment) -> str:
    """Format the text a user receives when a commitment fires."""
    lines = [f"⏰ {commitment.title}"]
    if commitment.what_action and commitment.what_action not in commitment.title:
        lines.append(commitment.what_action)
    if commitment.where_location:
        lines.append(f"📍 {commitment.where_location}")
    if commitment.notes:
        lines.append(commitment.notes)
    return "\n".join(lines)


def _append_event(
    event_log: NudgeLog,
    commitment: Commitment,
    status: DeliveryStatus,
    channel: str,
    now: datetime,
    metadata: dict | None = None,
) -> None:
    event_log.append(NudgeEvent(
        commitment_id=commitment.id,
        user_id=commitment.user_id,
        delivery_status=status,
        channel=channel,
        created_at=now,
        metadata=metadata or {},
    ))


def _next_occurrence(commitment: Commitment, tz: str) -> datetime | None:
    if not commitment.when_rrule:
        return None
    if parse_rrule(commitment.when_rrule) is None:
        logger.warning(
            "Commitment %s has unsupported rule %r; no next occurrence",
            commitment.id, commitment.when_rrule,
        )
        return None
    return advance(commitment.when_time, commitment.when_rrule, tz)


# ---------------------------------------------------------------------------
# Per-commitment processing
# ---------------------------------------------------------------------------


async def _process_commitment(
    commitment: Commitment,
    now: datetime,
    store: CommitmentStore,
    prefs_store: NudgePrefsStore,
    event_log: NudgeLog,
    notifier: NudgeNotifier | None,
    channel: str,
) -> _Outcome:
    prefs = prefs_store.get(commitment.user_id) or _default_prefs(commitment.user_id)

    day_start, day_end = local_day_bounds(now, prefs.timezone)
    sent_today = event_log.count_sent_between(commitment.user_id, day_start, day_end)

    verdict = may_deliver(commitment, prefs, now, sent_today)
    if verdict is DeliveryVerdict.SKIP_DND:
        _append_event(event_log, commitment, DeliveryStatus.SKIPPED_DND, channel, now)
        logger.info("Commitment %s skipped: user %d in DND", commitment.id, commitment.user_id)
        return _Outcome.SKIPPED_DND
    if verdict is DeliveryVerdict.SKIP_LIMIT:
        _append_event(
            event_log, commitment, DeliveryStatus.SKIPPED_LIMIT, channel, now,
            {"sent_today": sent_today, "max_daily_nudges": prefs.max_daily_nudges},
        )
        logger.info(
            "Commitment %s skipped: user %d reached %d/%d nudges today",
            commitment.id, commitment.user_id, sent_today, prefs.max_daily_nudges,
        )
        return _Outcome.SKIPPED_LIMIT

    next_time = _next_occurrence(commitment, prefs.timezone)

    # Guarded transition; the successor is inserted in the same transaction
    completion = store.complete_and_spawn(commitment, next_time)
    if not completion.completed:
        logger.info("Commitment %s already handled by another sweep", commitment.id)
        return _Outcome.ALREADY_HANDLED
    successor_id = completion.successor.id if completion.successor else None

    if notifier is not None:
        try:
            await notifier.send_message(commitment.user_id, format_nudge(commitment))
        except Exception:
            store.revert_completed(commitment.id, successor_id)
            raise

    logger.info("Commitment %s fired for user %d", commitment.id, commitment.user_id)
    try:
        _append_event(event_log, commitment, DeliveryStatus.SENT, channel, now)
    except Exception as exc:
        logger.error("Commitment %s fired but its sent event was not logged: %s", commitment.id, exc)

    return _Outcome.SENT


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def run_sweep(
    now: datetime,
    store: CommitmentStore,
    prefs_store: NudgePrefsStore,
    event_log: NudgeLog,
    notifier: NudgeNotifier | None = None,
    batch_size: int | None = None,
) -> SweepResult:
    """Run one pass over due commitments.

    Safe to call concurrently or redundantly. A failure on one commitment is
    logged as an `error` event and never aborts the batch; that commitment
    stays scheduled and is retried on the next sweep.
    """
    now = ensure_aware(now)
    if batch_size is None:
        batch_size = settings.SWEEP_BATCH_SIZE
    channel = notifier.channel if notifier is not None else ICS_CHANNEL
    result = SweepResult()

    try:
        due = store.fetch_due(now, batch_size)
    except Exception as exc:
        logger.error("Sweep aborted: could not fetch due commitments: %s", exc)
        result.errors += 1
        return result

    result.processed = len(due)

    for commitment in due:
        try:
            outcome = await _process_commitment(
                commitment, now, store, prefs_store, event_log, notifier, channel,
            )
        except Exception as exc:
            logger.error("Error processing commitment %s: %s", commitment.id, exc)
            result.errors += 1
            try:
                _append_event(
                    event_log, commitment, DeliveryStatus.ERROR, channel, now,
                    {"error": str(exc)},
                )
            except Exception as log_exc:
                logger.error("Could not log error event for %s: %s", commitment.id, log_exc)
            continue

        if outcome is _Outcome.SENT:
            result.sent += 1
        elif outcome is _Outcome.SKIPPED_DND:
            result.skipped_dnd += 1
        elif outcome is _Outcome.SKIPPED_LIMIT:
            result.skipped_limit += 1
        else:
            result.already_handled += 1

    logger.info(
        "Sweep completed: processed=%d sent=%d errors=%d skipped_dnd=%d skipped_limit=%d",
        result.processed, result.sent, result.errors,
        result.skipped_dnd, result.skipped_limit,
    )
    return result
