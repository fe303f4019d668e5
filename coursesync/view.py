from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable

from coursesync.classifier import classify_status
from coursesync.models import (
    STATUS_OVERDUE,
    STATUS_UPCOMING,
    Course,
    CourseEvent,
    ensure_tz,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViewSnapshot:
    events: tuple[CourseEvent, ...] = ()
    courses: tuple[Course, ...] = ()
    active_course_ids: frozenset[str] = field(default_factory=frozenset)
    filtered_events: tuple[CourseEvent, ...] = ()


Listener = Callable[[ViewSnapshot], None]


def _sort_key(event: CourseEvent) -> tuple[datetime, str]:
    return (ensure_tz(event.start_date), event.id)


def filter_events(events: Iterable[CourseEvent], active_course_ids: Iterable[str]) -> list[CourseEvent]:
    active = set(active_course_ids)
    if not active:
        return sorted(events, key=_sort_key)
    return sorted((event for event in events if event.course_id in active), key=_sort_key)


class ReactiveView:
    """In-memory events, courses and course filter with change listeners.

    An empty active set means no filter. Listeners receive a complete
    ``ViewSnapshot`` after each change and never a partially applied one.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []
        self._snapshot = ViewSnapshot()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _publish(
        self,
        *,
        events: Iterable[CourseEvent] | None = None,
        courses: Iterable[Course] | None = None,
        active_course_ids: Iterable[str] | None = None,
    ) -> ViewSnapshot:
        with self._lock:
            current = self._snapshot
            new_events = tuple(events) if events is not None else current.events
            new_courses = tuple(courses) if courses is not None else current.courses
            new_active = (
                frozenset(active_course_ids) if active_course_ids is not None else current.active_course_ids
            )
            snapshot = ViewSnapshot(
                events=new_events,
                courses=new_courses,
                active_course_ids=new_active,
                filtered_events=tuple(filter_events(new_events, new_active)),
            )
            self._snapshot = snapshot
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("View listener failed")
        return snapshot

    # State replacement

    def load(self, events: Iterable[CourseEvent], courses: Iterable[Course]) -> ViewSnapshot:
        course_list = list(courses)
        return self._publish(
            events=events,
            courses=course_list,
            active_course_ids=[course.id for course in course_list],
        )

    def replace(self, events: Iterable[CourseEvent], courses: Iterable[Course]) -> ViewSnapshot:
        """Swap in a committed batch, keeping the filter for known courses.

        Newly seen courses become visible; deleted ones leave the filter.
        """
        course_list = list(courses)
        with self._lock:
            known = {course.id for course in self._snapshot.courses}
            active = set(self._snapshot.active_course_ids)
            course_ids = {course.id for course in course_list}
            active = (active & course_ids) | (course_ids - known)
            return self._publish(events=events, courses=course_list, active_course_ids=active)

    # Filter operations

    def set_active(self, course_ids: Iterable[str]) -> ViewSnapshot:
        return self._publish(active_course_ids=course_ids)

    def toggle(self, course_id: str) -> ViewSnapshot:
        with self._lock:
            active = set(self._snapshot.active_course_ids)
            if course_id in active:
                active.discard(course_id)
            else:
                active.add(course_id)
            return self._publish(active_course_ids=active)

    def show_all(self) -> ViewSnapshot:
        with self._lock:
            return self._publish(active_course_ids=[course.id for course in self._snapshot.courses])

    def hide_all(self) -> ViewSnapshot:
        return self._publish(active_course_ids=[])

    # Read side

    @property
    def snapshot(self) -> ViewSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def events(self) -> list[CourseEvent]:
        return self._with_current_status(self.snapshot.events)

    @property
    def courses(self) -> list[Course]:
        return list(self.snapshot.courses)

    @property
    def active_course_ids(self) -> set[str]:
        return set(self.snapshot.active_course_ids)

    def _with_current_status(self, events: Iterable[CourseEvent], now: datetime | None = None) -> list[CourseEvent]:
        now = now or self._clock()
        output: list[CourseEvent] = []
        for event in events:
            status = classify_status(event.end_date, now, is_completed=event.is_completed)
            output.append(event if status == event.status else event.with_updates(status=status))
        return output

    def filtered_events(self, now: datetime | None = None) -> list[CourseEvent]:
        return self._with_current_status(self.snapshot.filtered_events, now)

    def active_courses(self) -> list[Course]:
        return [course for course in self.snapshot.courses if course.is_active]

    def search(self, keyword: str) -> list[CourseEvent]:
        events = self.filtered_events()
        needle = str(keyword or "").strip().lower()
        if not needle:
            return events
        return [
            event
            for event in events
            if needle in event.title.lower()
            or needle in event.description.lower()
            or needle in event.course_name.lower()
        ]

    def events_in_range(self, start: datetime, end: datetime) -> list[CourseEvent]:
        start, end = ensure_tz(start), ensure_tz(end)
        return [event for event in self.filtered_events() if start <= ensure_tz(event.start_date) <= end]

    def events_by_type(self, event_type: str) -> list[CourseEvent]:
        return self.query(event_type=event_type)

    def events_by_status(self, status: str) -> list[CourseEvent]:
        return self.query(status=status)

    def query(self, keyword: str = "", event_type: str = "", status: str = "") -> list[CourseEvent]:
        """Keyword search narrowed by type and status; blank criteria match everything."""
        events = self.search(keyword)
        if event_type:
            events = [event for event in events if event.event_type == event_type]
        if status:
            events = [event for event in events if event.status == status]
        return events

    def upcoming(self, limit: int | None = None) -> list[CourseEvent]:
        upcoming = self.events_by_status(STATUS_UPCOMING)
        return upcoming[:limit] if limit else upcoming

    def overdue(self) -> list[CourseEvent]:
        return sorted(self.events_by_status(STATUS_OVERDUE), key=_sort_key, reverse=True)

    def total_event_count(self) -> int:
        return len(self.snapshot.events)

    def event_count_for(self, course_id: str) -> int:
        return sum(1 for event in self.snapshot.events if event.course_id == course_id)
