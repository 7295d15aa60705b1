"""
Lingxin Commitments — Intent Extractor.

Converts one free-text message (Chinese or English) into a structured,
possibly incomplete commitment draft. Deterministic keyword/pattern
matching only: no model calls, no stored state. Given the same message and
the same `now`, the result is always the same.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field

from lingxin.core.timeutil import (
    ALL_KEYWORD_PATTERNS,
    find_date_offset,
    find_frequency,
    resolve_clock,
    strip_clock_times,
)
from lingxin.data.models import IntentType

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Draft contract, consumed by the commitment store and the bot
# ---------------------------------------------------------------------------


class Suggestions(BaseModel):
    """Deterministic options the caller can offer when clarification is needed.

    Every entry of `time_options` is understood by `timeutil.resolve_when`.
    """
    time_options: list[str] = Field(default_factory=list)
    action_options: list[str] = Field(default_factory=list)
    repeat_options: list[str] = Field(default_factory=list)
    frequency_options: list[str] = Field(default_factory=list)


class DraftCommitment(BaseModel):
    """Structured commitment extracted from natural language.

    JSON example:
    {
        "intent_type": "reminder",
        "title": "提醒: 運動",
        "what_action": "運動",
        "when_time": "2025-02-14T09:00:00+08:00",
        "when_rrule": null,
        "needs_clarification": false
    }
    """
    intent_type: IntentType
    title: str
    what_action: str
    when_time: datetime | None = None
    when_rrule: str | None = None
    needs_clarification: bool = True
    suggestions: Suggestions = Field(default_factory=Suggestions)
    source_message: str = ""
    description: str = ""
    where_location: str | None = None
    notes: str | None = None
    priority: int = 1
    dnd_respect: bool = True
    duration_minutes: int | None = None


# ---------------------------------------------------------------------------
# Intent patterns
# ---------------------------------------------------------------------------

_REMINDER_RE = re.compile(
    r"提醒我|提醒|記得|记得|別忘了|別忘記|別忘|别忘了|别忘记|别忘"
    r"|\bremind me(?:\s+to)?\b|\bremember to\b|\bdon'?t forget(?:\s+to)?\b",
    re.IGNORECASE,
)
_CJK_RE = re.compile(r"[一-鿿]")
_FILLER_RE = re.compile(r"\btoday\b|今天|\bon\b\s*$", re.IGNORECASE)
_LEADING_RE = re.compile(
    r"^(?:to|that|about|at|我要|我(?![們们])|要|去)(?:\s+|(?=[一-鿿]))", re.IGNORECASE,
)
_EDGE_PUNCT = " \t\n,，。.!！?？:：;；、-"


@dataclass
class _Hit:
    """Where an intent keyword sits in the message."""

    start: int
    end: int
    keyword: str


def _locate(text: str, keyword: str) -> _Hit:
    start = text.lower().find(keyword.lower())
    return _Hit(start, start + len(keyword), keyword)


def _find_reminder(text: str) -> _Hit | None:
    match = _REMINDER_RE.search(text)
    if match is None:
        return None
    return _Hit(match.start(), match.end(), match.group(0))


def _find_relative_date(text: str) -> _Hit | None:
    found = find_date_offset(text)
    return _locate(text, found[0]) if found else None


def _find_recurrence(text: str) -> _Hit | None:
    found = find_frequency(text)
    return _locate(text, found[0]) if found else None


# Tested in order; the first pattern with a non-empty action wins
_INTENT_PATTERNS: tuple[tuple[IntentType, Callable[[str], _Hit | None]], ...] = (
    (IntentType.REMINDER, _find_reminder),
    (IntentType.SCHEDULED, _find_relative_date),
    (IntentType.RECURRING, _find_recurrence),
)

_TITLE_TEMPLATES: dict[IntentType, tuple[str, str]] = {
    # (chinese, english)
    IntentType.REMINDER: ("提醒: {action}", "Reminder: {action}"),
    IntentType.SCHEDULED: ("{keyword} {action}", "{keyword}: {action}"),
    IntentType.RECURRING: ("{keyword} {action}", "{keyword}: {action}"),
}

_SUGGESTIONS_ZH: dict[IntentType, dict[str, list[str]]] = {
    IntentType.REMINDER: {
        "time_options": ["今天 18:00", "明天 09:00", "明天 14:00"],
        "action_options": ["{action}", "關於 {action}", "完成 {action}"],
    },
    IntentType.SCHEDULED: {
        "time_options": ["08:00", "09:00", "10:00"],
        "repeat_options": ["不重複", "每天", "每週"],
    },
    IntentType.RECURRING: {
        "time_options": ["早上 08:00", "中午 12:00", "18:00"],
        "frequency_options": ["每天", "每週", "每月"],
    },
}

_SUGGESTIONS_EN: dict[IntentType, dict[str, list[str]]] = {
    IntentType.REMINDER: {
        "time_options": ["today 18:00", "tomorrow 09:00", "tomorrow 14:00"],
        "action_options": ["{action}", "about {action}", "finish {action}"],
    },
    IntentType.SCHEDULED: {
        "time_options": ["08:00", "09:00", "10:00"],
        "repeat_options": ["no repeat", "every day", "every week"],
    },
    IntentType.RECURRING: {
        "time_options": ["morning 08:00", "noon 12:00", "18:00"],
        "frequency_options": ["every day", "every week", "every month"],
    },
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _is_chinese(text: str) -> bool:
    return _CJK_RE.search(text) is not None


def _clean_action(fragment: str) -> str:
    """Strip time keywords, clock times and connectors from an action phrase."""
    cleaned = strip_clock_times(fragment)
    cleaned = _REMINDER_RE.sub(" ", cleaned)
    for pattern in ALL_KEYWORD_PATTERNS:
        cleaned = pattern.sub(" ", cleaned)
    cleaned = _FILLER_RE.sub(" ", cleaned)
    cleaned = " ".join(cleaned.split()).strip(_EDGE_PUNCT)

    previous = None
    while previous != cleaned:
        previous = cleaned
        cleaned = _LEADING_RE.sub("", cleaned).strip(_EDGE_PUNCT)
    return cleaned


def _action_around(text: str, hit: _Hit) -> str:
    """Prefer the phrase after the keyword, fall back to the one before it."""
    after = _clean_action(text[hit.end:])
    if after:
        return after
    return _clean_action(text[:hit.start])


def _build_title(intent: IntentType, keyword: str, action: str, chinese: bool) -> str:
    zh, en = _TITLE_TEMPLATES[intent]
    if chinese:
        return zh.format(keyword=keyword, action=action)
    return en.format(keyword=keyword.capitalize(), action=action)


def _build_suggestions(intent: IntentType, action: str, chinese: bool) -> Suggestions:
    table = _SUGGESTIONS_ZH if chinese else _SUGGESTIONS_EN
    fields = {
        name: [option.format(action=action) for option in options]
        for name, options in table[intent].items()
    }
    return Suggestions(**fields)


def _build_draft(
    intent: IntentType, hit: _Hit, action: str, message: str, now: datetime,
) -> DraftCommitment:
    chinese = _is_chinese(message)

    frequency = find_frequency(message)
    date_hit = find_date_offset(message)
    (hour, minute), clock_found = resolve_clock(message)

    days = date_hit[1] if date_hit else 0
    when_time = (now + timedelta(days=days)).replace(
        hour=hour, minute=minute, second=0, microsecond=0,
    )
    rrule = frequency[1].rrule if frequency else None
    resolved = rrule is not None or date_hit is not None or clock_found

    return DraftCommitment(
        intent_type=intent,
        title=_build_title(intent, hit.keyword, action, chinese),
        what_action=action,
        when_time=when_time,
        when_rrule=rrule,
        needs_clarification=not resolved,
        suggestions=_build_suggestions(intent, action, chinese),
        source_message=message,
    )


def _handle_generic_extractor_error(exc: Exception, message: str) -> None:
    """Log any unexpected error during extraction."""
    logger.error("Unexpected error extracting commitment from '%s': %s", message[:80], exc)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def extract(message: str, now: datetime | None = None) -> DraftCommitment | None:
    """Extract a commitment draft from a user message.

    Returns None when no commitment intent is found. Never raises.

    Args:
        message: One user utterance.
        now: Reference instant; relative dates and clock times resolve in
             its timezone. Defaults to the current time in the configured
             timezone.
    """
    text = (message or "").strip()
    if not text:
        return None

    if now is None:
        from lingxin.config import settings

        now = datetime.now(ZoneInfo(settings.TIMEZONE))

    try:
        for intent, finder in _INTENT_PATTERNS:
            hit = finder(text)
            if hit is None:
                continue
            action = _action_around(text, hit)
            if not action:
                logger.debug("Intent %s matched without an action: %s", intent.value, text[:80])
                continue

            draft = _build_draft(intent, hit, action, text, now)
            logger.info(
                "Commitment intent detected: %s '%s' (clarify=%s)",
                intent.value, draft.title, draft.needs_clarification,
            )
            return draft
    except Exception as exc:
        _handle_generic_extractor_error(exc, text)
        return None

    logger.info("No commitment found in message: %s", text[:80])
    return None
