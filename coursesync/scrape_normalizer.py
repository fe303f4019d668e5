from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict
from datetime import datetime, time, timezone

from dateutil import parser as dateparser

from coursesync.classifier import classify_status, classify_type
from coursesync.models import EventDraft, RawScrapeItem, ensure_tz, parse_iso_datetime, utc_now

logger = logging.getLogger(__name__)

DUE_PREFIX_PATTERN = re.compile(r"^\s*(?:due|due date|due on|deadline)\s*[:\-]?\s*", re.IGNORECASE)


def _collapse_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", str(value or "").strip())


def _parse_timestamp_attr(value: str) -> datetime | None:
    text = _collapse_whitespace(value)
    if not text:
        return None
    try:
        return parse_iso_datetime(text)
    except ValueError:
        pass
    try:
        return ensure_tz(dateparser.isoparse(text))
    except (ValueError, OverflowError):
        return None


def _parse_free_text(value: str, now: datetime) -> datetime | None:
    text = DUE_PREFIX_PATTERN.sub("", _collapse_whitespace(value))
    if not text:
        return None
    default = datetime.combine(now.astimezone(timezone.utc).date(), time.min)
    try:
        parsed = dateparser.parse(text, default=default, fuzzy=True)
    except (ValueError, OverflowError):
        return None
    return ensure_tz(parsed)


def parse_due_date(item: RawScrapeItem, now: datetime) -> tuple[datetime, bool]:
    """Return the due instant and whether it had to be guessed.

    Unparsable dates fall back to the start of the current UTC day so the
    item is still kept; repeated syncs on the same day then agree on it.
    """
    parsed = _parse_timestamp_attr(item.due_date_attr) or _parse_free_text(item.due_date_text, now)
    if parsed is not None:
        return parsed.astimezone(timezone.utc), False
    fallback = datetime.combine(now.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)
    return fallback, True


def normalize(
    item: RawScrapeItem,
    course_id: str,
    course_name: str,
    now: datetime | None = None,
) -> EventDraft:
    draft, _ = _normalize(item, course_id, course_name, now or utc_now())
    return draft


def _normalize(
    item: RawScrapeItem,
    course_id: str,
    course_name: str,
    now: datetime,
) -> tuple[EventDraft, bool]:
    title = _collapse_whitespace(item.title)
    description = str(item.description or "").strip()
    due, degraded = parse_due_date(item, now)
    if degraded:
        logger.debug("Unparsable due date %r for %r in course %s", item.due_date_text, title, course_id)
    raw_payload = asdict(item)
    raw_payload["date_degraded"] = degraded
    draft = EventDraft(
        uid=None,
        title=title,
        description=description,
        start_date=due,
        end_date=due,
        event_type=classify_type(title, description),
        course_id=course_id,
        course_name=course_name,
        status=classify_status(due, now),
        is_all_day=True,
        raw_source_data=json.dumps(raw_payload, ensure_ascii=False),
    )
    return draft, degraded


def normalize_items(
    items: list[RawScrapeItem],
    course_id: str,
    course_name: str,
    now: datetime | None = None,
) -> tuple[list[EventDraft], list[str]]:
    now = now or utc_now()
    drafts: list[EventDraft] = []
    warnings: list[str] = []
    for index, item in enumerate(items, start=1):
        if not _collapse_whitespace(item.title):
            warnings.append(f"Item {index}: missing title, skipped")
            continue
        draft, degraded = _normalize(item, course_id, course_name, now)
        if degraded:
            warnings.append(f"Item {index}: due date '{item.due_date_text}' could not be parsed")
        drafts.append(draft)
    return drafts, warnings
