from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from coursesync.classifier import classify_status
from coursesync.models import (
    COURSE_COLOR_PALETTE,
    SOURCE_FILE_IMPORT,
    SOURCE_SCRAPE_SYNC,
    STATUS_COMPLETED,
    Course,
    CourseEvent,
    EventDraft,
    ensure_tz,
    serialize_datetime,
)

logger = logging.getLogger(__name__)

SOURCE_KINDS = {SOURCE_FILE_IMPORT, SOURCE_SCRAPE_SYNC}


def generate_event_id() -> str:
    return f"event-{uuid.uuid4().hex}"


def pick_course_color(ordinal: int | None = None, rng: random.Random | None = None) -> str:
    if ordinal is not None:
        return COURSE_COLOR_PALETTE[ordinal % len(COURSE_COLOR_PALETTE)]
    return (rng or random).choice(COURSE_COLOR_PALETTE)


def scrape_identity_key(course_id: str, title: str, due: datetime) -> tuple[str, str, str]:
    instant = ensure_tz(due).astimezone(timezone.utc)
    return (str(course_id), str(title or "").strip(), serialize_datetime(instant) or "")


@dataclass
class ReconcileRequest:
    source_kind: str
    course_id: str
    course_name: str
    source_label: str
    drafts: list[EventDraft] = field(default_factory=list)
    course_color: str = ""
    allow_deletions: bool = True
    color_ordinal: int | None = None


@dataclass
class ReconcileDiff:
    source_kind: str
    course_id: str
    course_upserts: list[Course] = field(default_factory=list)
    event_inserts: list[CourseEvent] = field(default_factory=list)
    event_updates: list[CourseEvent] = field(default_factory=list)
    event_deletes: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    deletions_skipped: bool = False
    observed_count: int = 0

    @property
    def course_upsert(self) -> Course | None:
        return self.course_upserts[0] if self.course_upserts else None

    def summary(self) -> dict[str, int]:
        return {
            "inserted": len(self.event_inserts),
            "updated": len(self.event_updates),
            "deleted": len(self.event_deletes),
        }


@dataclass
class BatchPlan:
    diffs: list[ReconcileDiff] = field(default_factory=list)
    course_upserts: list[Course] = field(default_factory=list)
    event_upserts: list[CourseEvent] = field(default_factory=list)
    event_deletes: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.course_upserts or self.event_upserts or self.event_deletes)


def _resolve_course(
    request: ReconcileRequest,
    courses_by_id: dict[str, Course],
    now: datetime,
) -> Course:
    existing = courses_by_id.get(request.course_id)
    if existing is not None:
        # Color and visibility belong to the user once the course exists.
        return existing.with_updates(
            name=request.course_name or existing.name,
            source_label=request.source_label or existing.source_label,
        )
    color = request.course_color or pick_course_color(request.color_ordinal)
    return Course(
        id=request.course_id,
        name=request.course_name,
        color=color,
        is_active=True,
        imported_date=now,
        event_count=0,
        source_label=request.source_label,
    )


def _event_from_draft(
    draft: EventDraft,
    *,
    event_id: str,
    course: Course,
    now: datetime,
    existing: CourseEvent | None = None,
) -> CourseEvent:
    start = ensure_tz(draft.start_date)
    end = ensure_tz(draft.end_date)
    if end < start:
        end = start
    completed = existing is not None and existing.status == STATUS_COMPLETED
    return CourseEvent(
        id=event_id,
        title=draft.title,
        description=draft.description,
        start_date=start,
        end_date=end,
        event_type=draft.event_type,
        course_id=course.id,
        course_name=course.name,
        course_color=course.color,
        location=draft.location,
        status=classify_status(end, now, is_completed=completed),
        is_all_day=draft.is_all_day,
        recurrence=draft.recurrence,
        raw_source_data=draft.raw_source_data,
    )


def _collapse_drafts(
    drafts: Iterable[EventDraft],
    key_func: Callable[[EventDraft], Any],
    warnings: list[str],
) -> dict[Any, EventDraft]:
    collapsed: dict[Any, EventDraft] = {}
    for draft in drafts:
        key = key_func(draft)
        if key in collapsed:
            warnings.append(f"Duplicate event identity for '{draft.title}', keeping the last occurrence")
        collapsed[key] = draft
    return collapsed


def _recount(
    course: Course,
    current_events: list[CourseEvent],
    courses_by_id: dict[str, Course],
    diff: ReconcileDiff,
) -> list[Course]:
    owner_by_id = {event.id: event.course_id for event in current_events}
    for event in diff.event_inserts + diff.event_updates:
        owner_by_id[event.id] = event.course_id
    for event_id in diff.event_deletes:
        owner_by_id.pop(event_id, None)

    counts: dict[str, int] = {}
    for owner in owner_by_id.values():
        counts[owner] = counts.get(owner, 0) + 1

    upserts = [course.with_updates(event_count=counts.get(course.id, 0))]
    for other_id, other in courses_by_id.items():
        if other_id == course.id:
            continue
        new_count = counts.get(other_id, 0)
        if new_count != other.event_count:
            upserts.append(other.with_updates(event_count=new_count))
    return upserts


def _refresh_denormalized(
    course: Course,
    current_events: list[CourseEvent],
    diff: ReconcileDiff,
) -> None:
    touched = {event.id for event in diff.event_inserts + diff.event_updates}
    deleted = set(diff.event_deletes)
    for event in current_events:
        if event.course_id != course.id or event.id in touched or event.id in deleted:
            continue
        if event.course_name != course.name or event.course_color != course.color:
            diff.event_updates.append(event.with_updates(course_name=course.name, course_color=course.color))


def _reconcile_file_import(
    request: ReconcileRequest,
    course: Course,
    current_events: list[CourseEvent],
    now: datetime,
    diff: ReconcileDiff,
) -> None:
    events_by_id = {event.id: event for event in current_events}
    drafts = _collapse_drafts(
        request.drafts,
        lambda draft: draft.uid or generate_event_id(),
        diff.warnings,
    )
    diff.observed_count = len(drafts)
    for event_id, draft in drafts.items():
        existing = events_by_id.get(event_id)
        merged = _event_from_draft(draft, event_id=event_id, course=course, now=now, existing=existing)
        if existing is None:
            diff.event_inserts.append(merged)
            continue
        if existing.course_id != course.id:
            diff.warnings.append(f"Event '{event_id}' moved from course {existing.course_id} to {course.id}")
        if merged != existing:
            diff.event_updates.append(merged)
    # A single file never proves that an event disappeared upstream.


def _reconcile_scrape_sync(
    request: ReconcileRequest,
    course: Course,
    current_events: list[CourseEvent],
    now: datetime,
    diff: ReconcileDiff,
) -> None:
    stored_by_key: dict[tuple[str, str, str], CourseEvent] = {}
    stored_duplicates: list[CourseEvent] = []
    for event in current_events:
        if event.course_id != course.id:
            continue
        key = scrape_identity_key(event.course_id, event.title, event.start_date)
        if key in stored_by_key:
            stored_duplicates.append(event)
        else:
            stored_by_key[key] = event

    drafts = _collapse_drafts(
        request.drafts,
        lambda draft: scrape_identity_key(course.id, draft.title, draft.start_date),
        diff.warnings,
    )
    diff.observed_count = len(drafts)
    seen_ids: set[str] = set()
    for key, draft in drafts.items():
        existing = stored_by_key.get(key)
        event_id = existing.id if existing is not None else generate_event_id()
        merged = _event_from_draft(draft, event_id=event_id, course=course, now=now, existing=existing)
        seen_ids.add(event_id)
        if existing is None:
            diff.event_inserts.append(merged)
        elif merged != existing:
            diff.event_updates.append(merged)

    stale = [event for event in stored_by_key.values() if event.id not in seen_ids] + stored_duplicates
    if not stale:
        return
    if not request.allow_deletions:
        diff.deletions_skipped = True
        diff.warnings.append(f"Kept {len(stale)} stored events that were not observed in this sync")
        return
    diff.event_deletes.extend(event.id for event in stale)


def reconcile(
    *,
    source_kind: str,
    course_id: str,
    course_name: str,
    course_color: str,
    source_label: str,
    drafts: list[EventDraft],
    current_events: list[CourseEvent],
    current_courses: list[Course],
    now: datetime,
    allow_deletions: bool = True,
    color_ordinal: int | None = None,
) -> ReconcileDiff:
    request = ReconcileRequest(
        source_kind=source_kind,
        course_id=course_id,
        course_name=course_name,
        source_label=source_label,
        drafts=list(drafts),
        course_color=course_color,
        allow_deletions=allow_deletions,
        color_ordinal=color_ordinal,
    )
    return reconcile_request(request, current_events, current_courses, now)


def reconcile_request(
    request: ReconcileRequest,
    current_events: list[CourseEvent],
    current_courses: list[Course],
    now: datetime,
) -> ReconcileDiff:
    """Compute the writes that merge one course's drafts into stored state.

    File imports upsert by document UID and never delete. Scrape syncs match
    on (course, title, due instant) and delete stored events of the course
    that were not observed, unless ``allow_deletions`` is off.
    """
    if request.source_kind not in SOURCE_KINDS:
        raise ValueError(f"Unknown source kind: {request.source_kind}")
    if not request.course_id:
        raise ValueError("course_id is required")

    courses_by_id = {course.id: course for course in current_courses}
    course = _resolve_course(request, courses_by_id, now)
    diff = ReconcileDiff(source_kind=request.source_kind, course_id=course.id)

    if request.source_kind == SOURCE_FILE_IMPORT:
        _reconcile_file_import(request, course, current_events, now, diff)
    else:
        _reconcile_scrape_sync(request, course, current_events, now, diff)

    _refresh_denormalized(course, current_events, diff)
    diff.course_upserts = _recount(course, current_events, courses_by_id, diff)
    logger.info(
        "Reconciled %s for course %s: %d inserted, %d updated, %d deleted",
        request.source_kind,
        course.id,
        len(diff.event_inserts),
        len(diff.event_updates),
        len(diff.event_deletes),
    )
    return diff


def apply_diff(
    events_by_id: dict[str, CourseEvent],
    courses_by_id: dict[str, Course],
    diff: ReconcileDiff,
) -> None:
    for course in diff.course_upserts:
        courses_by_id[course.id] = course
    for event in diff.event_inserts + diff.event_updates:
        events_by_id[event.id] = event
    for event_id in diff.event_deletes:
        events_by_id.pop(event_id, None)


def reconcile_batch(
    requests: list[ReconcileRequest],
    current_events: list[CourseEvent],
    current_courses: list[Course],
    now: datetime,
) -> BatchPlan:
    """Reconcile several courses against one snapshot and fold the result.

    Each request sees the state left by the previous ones, so two files that
    resolve to the same course merge instead of racing. The returned plan is
    the net set of writes for a single store transaction.
    """
    events_by_id = {event.id: event for event in current_events}
    courses_by_id = {course.id: course for course in current_courses}
    original_event_ids = set(events_by_id)
    plan = BatchPlan()
    upserted_courses: dict[str, Course] = {}
    upserted_events: dict[str, CourseEvent] = {}
    deleted: set[str] = set()

    for request in requests:
        diff = reconcile_request(
            request,
            list(events_by_id.values()),
            list(courses_by_id.values()),
            now,
        )
        apply_diff(events_by_id, courses_by_id, diff)
        plan.diffs.append(diff)
        for course in diff.course_upserts:
            upserted_courses[course.id] = course
        for event in diff.event_inserts + diff.event_updates:
            upserted_events[event.id] = event
            deleted.discard(event.id)
        for event_id in diff.event_deletes:
            upserted_events.pop(event_id, None)
            if event_id in original_event_ids:
                deleted.add(event_id)

    plan.course_upserts = list(upserted_courses.values())
    plan.event_upserts = list(upserted_events.values())
    plan.event_deletes = sorted(deleted)
    return plan
