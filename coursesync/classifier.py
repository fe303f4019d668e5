from __future__ import annotations

from datetime import datetime

from coursesync.models import (
    EVENT_TYPE_ASSIGNMENT,
    EVENT_TYPE_EXAM,
    EVENT_TYPE_OTHER,
    EVENT_TYPE_PROJECT,
    EVENT_TYPE_QUIZ,
    STATUS_COMPLETED,
    STATUS_OVERDUE,
    STATUS_UPCOMING,
    ensure_tz,
)


# Checked in order; the first category with a matching keyword wins.
TYPE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (EVENT_TYPE_EXAM, ("exam", "test", "midterm", "final")),
    (EVENT_TYPE_QUIZ, ("quiz",)),
    (EVENT_TYPE_PROJECT, ("project",)),
    (EVENT_TYPE_ASSIGNMENT, ("assignment", "homework", "hw")),
)


def classify_type(title: str | None, description: str | None = "") -> str:
    text = f"{title or ''} {description or ''}".lower()
    for event_type, keywords in TYPE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return event_type
    return EVENT_TYPE_OTHER


def classify_status(end_date: datetime, now: datetime, is_completed: bool = False) -> str:
    if is_completed:
        return STATUS_COMPLETED
    if ensure_tz(end_date) < ensure_tz(now):
        return STATUS_OVERDUE
    return STATUS_UPCOMING
