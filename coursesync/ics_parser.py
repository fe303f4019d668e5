from __future__ import annotations

import logging
import re
import uuid
from datetime import date, datetime, timedelta, timezone
from pathlib import PurePath
from typing import Any

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from coursesync.classifier import classify_status, classify_type
from coursesync.errors import DocumentParseError, EntryParseError
from coursesync.models import (
    RECURRENCE_FREQUENCIES,
    EventDraft,
    ParseFailure,
    ParseIssue,
    ParseOutcome,
    ParseSuccess,
    Recurrence,
    date_to_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

UNNAMED_COURSE = "Unnamed Course"
UNTITLED_EVENT = "Untitled Event"
FILE_NAME_PATTERN = re.compile(r"^(.+?)(?:-calendar)?\.(?:ics|ical)$", re.IGNORECASE)
DATE_PROPERTIES = {"DTSTART", "DTEND", "DURATION"}


def _load_calendar(text: str) -> ICalendar:
    try:
        calendar_obj = ICalendar.from_ical(text)
    except Exception as exc:
        raise DocumentParseError(f"Failed to parse calendar file: {exc}") from exc
    if getattr(calendar_obj, "name", "") != "VCALENDAR":
        raise DocumentParseError("Failed to parse calendar file: VCALENDAR component missing")
    return calendar_obj


def _vevents(calendar_obj: ICalendar) -> list[ICEvent]:
    return [component for component in calendar_obj.walk() if component.name == "VEVENT"]


def _to_utc(value: datetime | date) -> datetime:
    converted = date_to_datetime(value)
    return converted.astimezone(timezone.utc)


def _text_property(vevent: ICEvent, name: str) -> str:
    value = vevent.get(name)
    if value is None:
        return ""
    return str(value).strip()


def _generate_uid() -> str:
    return f"event-{uuid.uuid4().hex}"


def _first(values: Any, default: Any = None) -> Any:
    if isinstance(values, list):
        return values[0] if values else default
    return values if values is not None else default


def _extract_recurrence(vevent: ICEvent, ordinal: int, warnings: list[str]) -> Recurrence | None:
    rrule = vevent.get("RRULE")
    if rrule is None:
        return None
    if isinstance(rrule, list):
        rrule = rrule[0] if rrule else None
        if rrule is None:
            return None
    frequency = str(_first(rrule.get("FREQ"), "")).strip().lower()
    if frequency not in RECURRENCE_FREQUENCIES:
        warnings.append(f"Event {ordinal}: unsupported recurrence frequency '{frequency or 'none'}' ignored")
        return None
    try:
        interval = max(1, int(_first(rrule.get("INTERVAL"), 1)))
    except (TypeError, ValueError):
        interval = 1
    until_raw = _first(rrule.get("UNTIL"))
    until = _to_utc(until_raw) if isinstance(until_raw, (date, datetime)) else None
    return Recurrence(frequency=frequency, interval=interval, until=until)


def _convert_entry(
    vevent: ICEvent,
    *,
    ordinal: int,
    course_id: str,
    course_name: str,
    course_color: str,
    now: datetime,
    warnings: list[str],
) -> EventDraft:
    for prop_name, message in getattr(vevent, "errors", []) or []:
        if str(prop_name).upper() in DATE_PROPERTIES:
            raise EntryParseError(f"invalid {prop_name}: {message}", ordinal)

    if vevent.get("DTSTART") is None:
        raise EntryParseError("DTSTART is missing", ordinal)
    dtstart_raw = vevent.decoded("DTSTART")
    if not isinstance(dtstart_raw, (date, datetime)):
        raise EntryParseError("DTSTART is not a date", ordinal)
    is_all_day = not isinstance(dtstart_raw, datetime)
    start = _to_utc(dtstart_raw)

    if vevent.get("DTEND") is not None:
        end = _to_utc(vevent.decoded("DTEND"))
    elif vevent.get("DURATION") is not None:
        end = start + vevent.decoded("DURATION")
    elif is_all_day:
        end = start + timedelta(days=1)
    else:
        end = start
    if end < start:
        warnings.append(f"Event {ordinal}: end precedes start, end set to start")
        end = start

    title = _text_property(vevent, "SUMMARY") or UNTITLED_EVENT
    description = _text_property(vevent, "DESCRIPTION")
    location = _text_property(vevent, "LOCATION") or None
    uid = _text_property(vevent, "UID") or _generate_uid()

    return EventDraft(
        uid=uid,
        title=title,
        description=description,
        start_date=start,
        end_date=end,
        event_type=classify_type(title, description),
        course_id=course_id,
        course_name=course_name,
        course_color=course_color,
        location=location,
        status=classify_status(end, now),
        is_all_day=is_all_day,
        recurrence=_extract_recurrence(vevent, ordinal, warnings),
        raw_source_data=vevent.to_ical().decode("utf-8", errors="replace"),
    )


def parse_calendar(
    text: str,
    course_id: str,
    course_name: str,
    course_color: str,
    source_label: str,
    now: datetime | None = None,
) -> ParseOutcome:
    """Parse one calendar export into event drafts.

    Entries are converted independently: a broken entry is reported with its
    1-based ordinal and skipped. The outcome is a ``ParseSuccess`` only when
    at least one entry was converted.
    """
    now = now or utc_now()
    try:
        calendar_obj = _load_calendar(text)
    except DocumentParseError as exc:
        logger.info("Rejected calendar document %s: %s", source_label, exc)
        return ParseFailure(
            source_label=source_label,
            course_id=course_id,
            course_name=course_name,
            errors=[ParseIssue(message=str(exc))],
        )

    errors: list[ParseIssue] = []
    warnings: list[str] = []
    vevents = _vevents(calendar_obj)
    if not vevents:
        warnings.append("No events found in calendar file")

    drafts: list[EventDraft] = []
    for index, vevent in enumerate(vevents, start=1):
        try:
            drafts.append(
                _convert_entry(
                    vevent,
                    ordinal=index,
                    course_id=course_id,
                    course_name=course_name,
                    course_color=course_color,
                    now=now,
                    warnings=warnings,
                )
            )
        except Exception as exc:
            errors.append(ParseIssue(message=f"Failed to parse event: {exc}", ordinal=index))

    logger.debug(
        "Parsed %s: %d events, %d errors, %d warnings",
        source_label,
        len(drafts),
        len(errors),
        len(warnings),
    )
    if not drafts:
        return ParseFailure(
            source_label=source_label,
            course_id=course_id,
            course_name=course_name,
            errors=errors,
            warnings=warnings,
        )
    return ParseSuccess(
        source_label=source_label,
        course_id=course_id,
        course_name=course_name,
        errors=errors,
        warnings=warnings,
        drafts=drafts,
    )


def course_name_from_file_name(file_name: str) -> str:
    base = PurePath(str(file_name or "")).name
    match = FILE_NAME_PATTERN.match(base)
    if not match:
        return ""
    spaced = re.sub(r"[-_]+", " ", match.group(1)).strip()
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), spaced)


def extract_course_name(text: str, file_name: str) -> str:
    try:
        calendar_obj = _load_calendar(text)
        calendar_name = _text_property(calendar_obj, "X-WR-CALNAME")
        if calendar_name:
            return calendar_name
    except DocumentParseError:
        pass
    return course_name_from_file_name(file_name) or UNNAMED_COURSE


def validate_calendar_text(text: str) -> tuple[bool, str]:
    try:
        _load_calendar(text)
    except DocumentParseError as exc:
        return False, str(exc)
    return True, ""


def count_entries(text: str) -> int:
    try:
        return len(_vevents(_load_calendar(text)))
    except DocumentParseError:
        return 0
