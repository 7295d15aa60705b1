"""Delivery policy — pure business logic.

Decides whether a due commitment may fire now, given the owner's
do-not-disturb window and how many nudges were already sent today.

No I/O: the scheduler sweep is solely responsible for acting on the verdict.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from zoneinfo import ZoneInfo

from lingxin.core.timeutil import ensure_aware
from lingxin.data.models import Commitment, NudgePreference

logger = logging.getLogger(__name__)

# Used when a stored DND bound cannot be parsed
_DEFAULT_DND_START = 22
_DEFAULT_DND_END = 8


class DeliveryVerdict(str, Enum):
    ALLOW = "allow"
    SKIP_DND = "skip_dnd"
    SKIP_LIMIT = "skip_limit"


def _hour_of(raw: str | int | None, default: int) -> int:
    """Extract the hour from "HH:MM", "HH" or an int; fall back to default."""
    if raw is None or raw == "":
        return default
    if isinstance(raw, int):
        hour = raw
    else:
        try:
            hour = int(str(raw).split(":")[0])
        except ValueError:
            logger.warning("Unparseable DND bound %r, using %02d:00", raw, default)
            return default
    if not 0 <= hour <= 23:
        logger.warning("DND bound %r out of range, using %02d:00", raw, default)
        return default
    return hour


def in_dnd_window(hour: int, start: int, end: int) -> bool:
    """Check if hour falls inside [start, end), wrapping past midnight when start > end.

    start == end is an empty window.
    """
    if start > end:
        return hour >= start or hour < end
    return start <= hour < end


def is_quiet_hours(prefs: NudgePreference, now: datetime) -> bool:
    """True if DND is enabled and now (in the user's zone) is inside the window."""
    if not prefs.dnd_enabled:
        return False
    local_hour = ensure_aware(now).astimezone(ZoneInfo(prefs.timezone)).hour
    start = _hour_of(prefs.dnd_start_time, _DEFAULT_DND_START)
    end = _hour_of(prefs.dnd_end_time, _DEFAULT_DND_END)
    return in_dnd_window(local_hour, start, end)


def may_deliver(
    commitment: Commitment,
    prefs: NudgePreference,
    now: datetime,
    today_sent_count: int,
) -> DeliveryVerdict:
    """Evaluate DND first, then the daily cap."""
    if commitment.dnd_respect and is_quiet_hours(prefs, now):
        return DeliveryVerdict.SKIP_DND
    if today_sent_count >= prefs.max_daily_nudges:
        return DeliveryVerdict.SKIP_LIMIT
    return DeliveryVerdict.ALLOW
