"""Time & recurrence utilities — pure functions.

Maps relative-date, time-of-day and frequency keywords (Chinese and English)
to concrete values, and advances a timestamp by a simple recurrence rule.

No I/O: this module only transforms data.
"""

from __future__ import annotations

import calendar
import re
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from zoneinfo import ZoneInfo

DEFAULT_CLOCK = (9, 0)


class Frequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"

    @property
    def rrule(self) -> str:
        return f"FREQ={self.value}"


# ---------------------------------------------------------------------------
# Keyword tables: longer phrases first so "day after tomorrow" wins over
# "tomorrow" and "下個月" is not read as "下"
# ---------------------------------------------------------------------------

DATE_KEYWORDS: tuple[tuple[str, int], ...] = (
    ("day after tomorrow", 2),
    ("tomorrow", 1),
    ("next week", 7),
    ("next month", 30),
    ("後天", 2),
    ("后天", 2),
    ("明天", 1),
    ("下星期", 7),
    ("下週", 7),
    ("下周", 7),
    ("下個月", 30),
    ("下个月", 30),
)

TIME_OF_DAY_KEYWORDS: tuple[tuple[str, tuple[int, int]], ...] = (
    ("this morning", (9, 0)),
    ("morning", (9, 0)),
    ("noon", (12, 0)),
    ("lunchtime", (12, 0)),
    ("afternoon", (15, 0)),
    ("evening", (20, 0)),
    ("tonight", (20, 0)),
    ("早上", (9, 0)),
    ("上午", (9, 0)),
    ("中午", (12, 0)),
    ("下午", (15, 0)),
    ("晚上", (20, 0)),
    ("晩上", (20, 0)),
)

FREQUENCY_KEYWORDS: tuple[tuple[str, Frequency], ...] = (
    ("every day", Frequency.DAILY),
    ("everyday", Frequency.DAILY),
    ("daily", Frequency.DAILY),
    ("every week", Frequency.WEEKLY),
    ("weekly", Frequency.WEEKLY),
    ("every month", Frequency.MONTHLY),
    ("monthly", Frequency.MONTHLY),
    ("每天", Frequency.DAILY),
    ("每日", Frequency.DAILY),
    ("每星期", Frequency.WEEKLY),
    ("每週", Frequency.WEEKLY),
    ("每周", Frequency.WEEKLY),
    ("每個月", Frequency.MONTHLY),
    ("每个月", Frequency.MONTHLY),
    ("每月", Frequency.MONTHLY),
)

# H:MM / HH:MM with ASCII or full-width colon
CLOCK_RE = re.compile(r"(?<!\d)(\d{1,2})\s*[:：]\s*(\d{2})(?!\d)")
# 8pm, 8:30 a.m.
_MERIDIEM_RE = re.compile(
    r"(?<![\d:：])(\d{1,2})(?:\s*[:：]\s*(\d{2}))?\s*([ap])\.?m\.?(?![a-z])", re.IGNORECASE,
)
# 8點, 8点半, 8點15分
_CJK_CLOCK_RE = re.compile(r"(?<!\d)(\d{1,2})\s*[點点](?:\s*(半)|\s*(\d{1,2})\s*分?)?")
# bare hour after a preposition: "at 8"
_AT_HOUR_RE = re.compile(r"\b(?:at|by)\s+(\d{1,2})(?![\d:：])", re.IGNORECASE)

_CLOCK_PREP = r"(?:\b(?:at|by)\s+|在\s*)?"
_CLOCK_STRIP_PATTERNS = [
    re.compile(_CLOCK_PREP + p.pattern, re.IGNORECASE)
    for p in (_MERIDIEM_RE, CLOCK_RE, _CJK_CLOCK_RE, _AT_HOUR_RE)
]

_RRULE_RE = re.compile(r"^FREQ=(DAILY|WEEKLY|MONTHLY)$")


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    # ASCII keywords need word boundaries; CJK keywords do not have any
    if keyword.isascii():
        return re.compile(r"\b" + re.escape(keyword) + r"\b", re.IGNORECASE)
    return re.compile(re.escape(keyword))


_DATE_PATTERNS = [(_keyword_pattern(k), k, v) for k, v in DATE_KEYWORDS]
_TIME_OF_DAY_PATTERNS = [(_keyword_pattern(k), k, v) for k, v in TIME_OF_DAY_KEYWORDS]
_FREQUENCY_PATTERNS = [(_keyword_pattern(k), k, v) for k, v in FREQUENCY_KEYWORDS]

ALL_KEYWORD_PATTERNS = [
    p for p, _, _ in (*_DATE_PATTERNS, *_TIME_OF_DAY_PATTERNS, *_FREQUENCY_PATTERNS)
]


# ---------------------------------------------------------------------------
# Keyword lookups
# ---------------------------------------------------------------------------


def _first_match(patterns, text: str):
    for pattern, _keyword, value in patterns:
        match = pattern.search(text)
        if match:
            return match.group(0), value
    return None


def find_date_offset(text: str) -> tuple[str, int] | None:
    """Return (matched keyword, day offset) for the first relative-date keyword."""
    return _first_match(_DATE_PATTERNS, text)


def find_time_of_day(text: str) -> tuple[str, tuple[int, int]] | None:
    """Return (matched keyword, (hour, minute)) for the first time-of-day keyword."""
    return _first_match(_TIME_OF_DAY_PATTERNS, text)


def find_frequency(text: str) -> tuple[str, Frequency] | None:
    """Return (matched keyword, Frequency) for the first frequency keyword."""
    return _first_match(_FREQUENCY_PATTERNS, text)


def _meridiem_clock(match: re.Match[str]) -> tuple[int, int] | None:
    hour, minute = int(match.group(1)), int(match.group(2) or 0)
    if not 1 <= hour <= 12 or minute > 59:
        return None
    hour %= 12
    if match.group(3).lower() == "p":
        hour += 12
    return hour, minute


def _cjk_clock(match: re.Match[str]) -> tuple[int, int] | None:
    hour = int(match.group(1))
    minute = 30 if match.group(2) else int(match.group(3) or 0)
    if hour > 23 or minute > 59:
        return None
    return hour, minute


def _plain_clock(match: re.Match[str]) -> tuple[int, int] | None:
    hour = int(match.group(1))
    minute = int(match.group(2)) if match.re.groups > 1 else 0
    if hour > 23 or minute > 59:
        return None
    return hour, minute


# (pattern, converter, meridiem given); tried in order
_CLOCK_FORMS = (
    (_MERIDIEM_RE, _meridiem_clock, True),
    (CLOCK_RE, _plain_clock, False),
    (_CJK_CLOCK_RE, _cjk_clock, False),
    (_AT_HOUR_RE, _plain_clock, False),
)


def _find_clock(text: str) -> tuple[tuple[int, int], bool] | None:
    for pattern, convert, meridiem in _CLOCK_FORMS:
        for match in pattern.finditer(text):
            clock = convert(match)
            if clock is not None:
                return clock, meridiem
    return None


def find_clock_time(text: str) -> tuple[int, int] | None:
    """Return (hour, minute) of the first valid clock time in text.

    Understands "8:30", "8pm", "8:30 a.m.", "8點", "8點半", "8点15分" and a
    bare hour after "at"/"by" ("at 8").
    """
    found = _find_clock(text)
    return found[0] if found else None


def strip_clock_times(text: str) -> str:
    """Remove every clock time, with a leading "at"/"by"/"在", from text."""
    for pattern in _CLOCK_STRIP_PATTERNS:
        text = pattern.sub(" ", text)
    return text


def resolve_clock(text: str) -> tuple[tuple[int, int], bool]:
    """Resolve the clock time mentioned in text.

    Returns ((hour, minute), explicit) where explicit is False when the
    09:00 default was used.
    """
    found = _find_clock(text)
    tod = find_time_of_day(text)
    if found is not None:
        clock, meridiem = found
        # "晚上 8:30" / "evening 8:30" means 20:30
        if not meridiem and tod is not None and tod[1][0] >= 15 and clock[0] < 12:
            return (clock[0] + 12, clock[1]), True
        return clock, True
    if tod is not None:
        return tod[1], True
    return DEFAULT_CLOCK, False


def resolve_when(text: str, now: datetime) -> datetime:
    """Resolve a date keyword (default today) and clock time (default 09:00).

    The result lives in now's timezone with seconds zeroed.
    """
    offset = find_date_offset(text)
    days = offset[1] if offset else 0
    (hour, minute), _ = resolve_clock(text)
    target = now + timedelta(days=days)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------


def parse_rrule(rule: str | None) -> Frequency | None:
    """Parse FREQ=DAILY|WEEKLY|MONTHLY. Anything else returns None."""
    if not rule:
        return None
    match = _RRULE_RE.match(rule.strip().upper())
    if match is None:
        return None
    return Frequency(match.group(1))


def add_months(d: date, months: int) -> date:
    """Add months to a date, clamping the day to the target month's length."""
    y = d.year + (d.month - 1 + months) // 12
    m = (d.month - 1 + months) % 12 + 1
    last = calendar.monthrange(y, m)[1]
    return date(y, m, min(d.day, last))


def advance(when: datetime, rule: str | Frequency, tz: str | None = None) -> datetime:
    """Advance `when` by one period of the recurrence rule.

    DAILY: +1 day, WEEKLY: +7 days, MONTHLY: +1 calendar month with the day
    clamped to month end (Jan 31 -> Feb 28/29). When `tz` is given the
    arithmetic happens on the wall clock in that zone, so 09:00 stays 09:00
    across DST changes.

    Raises ValueError for an unsupported rule.
    """
    freq = rule if isinstance(rule, Frequency) else parse_rrule(rule)
    if freq is None:
        raise ValueError(f"Unsupported recurrence rule: {rule!r}")

    when = ensure_aware(when)
    original_tz = when.tzinfo
    local = when.astimezone(ZoneInfo(tz)) if tz else when

    if freq is Frequency.DAILY:
        nxt = local + timedelta(days=1)
    elif freq is Frequency.WEEKLY:
        nxt = local + timedelta(days=7)
    else:
        d = add_months(local.date(), 1)
        nxt = local.replace(year=d.year, month=d.month, day=d.day)

    return nxt.astimezone(original_tz)


# ---------------------------------------------------------------------------
# Timezone helpers
# ---------------------------------------------------------------------------


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def local_day_bounds(now: datetime, tz: str) -> tuple[datetime, datetime]:
    """Return [start, end) of now's calendar day in zone tz, as UTC datetimes."""
    zone = ZoneInfo(tz)
    local = ensure_aware(now).astimezone(zone)
    start = datetime(local.year, local.month, local.day, tzinfo=zone)
    nxt = local.date() + timedelta(days=1)
    end = datetime(nxt.year, nxt.month, nxt.day, tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def to_utc_iso(dt: datetime) -> str:
    """Serialize to a sortable UTC ISO-8601 string (second precision)."""
    return ensure_aware(dt).astimezone(timezone.utc).isoformat(timespec="seconds")


def from_iso(raw: str | None) -> datetime | None:
    if not raw:
        return None
    return ensure_aware(datetime.fromisoformat(raw))
