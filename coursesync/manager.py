from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from coursesync.classifier import classify_status
from coursesync.importer import FileImporter, ImportSource
from coursesync.models import (
    STATUS_COMPLETED,
    Course,
    CourseEvent,
    ImportReport,
    serialize_datetime,
    utc_now,
)
from coursesync.state_store import StateStore
from coursesync.view import ReactiveView, ViewSnapshot

logger = logging.getLogger(__name__)

EXPORT_VERSION = 1


class CourseManager:
    """User-facing operations on stored courses and events.

    Every write goes through the store first; the view is refreshed from the
    committed state afterwards.
    """

    def __init__(
        self,
        store: StateStore,
        view: ReactiveView,
        *,
        import_workers: int = 4,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.view = view
        self._clock = clock
        self.importer = FileImporter(store, max_workers=import_workers, on_committed=self.refresh, clock=clock)

    def load(self) -> ViewSnapshot:
        return self.view.load(self.store.get_all_events(), self.store.get_all_courses())

    def refresh(self) -> ViewSnapshot:
        return self.view.replace(self.store.get_all_events(), self.store.get_all_courses())

    def import_files(self, sources: list[ImportSource]) -> ImportReport:
        return self.importer.import_files(sources)

    def _require_event(self, event_id: str) -> CourseEvent:
        event = self.store.get_event(event_id)
        if event is None:
            raise KeyError(f"event not found: {event_id}")
        return event

    def _require_course(self, course_id: str) -> Course:
        course = self.store.get_course(course_id)
        if course is None:
            raise KeyError(f"course not found: {course_id}")
        return course

    def mark_completed(self, event_id: str) -> CourseEvent:
        with self.store.transaction():
            event = self._require_event(event_id)
            if event.is_completed:
                return event
            updated = event.with_updates(status=STATUS_COMPLETED)
            self.store.bulk_upsert_events([updated])
            self.store.record_audit_event(
                course_id=event.course_id,
                event_id=event.id,
                action="mark_completed",
                details={"title": event.title},
            )
        self.refresh()
        return updated

    def reopen_event(self, event_id: str) -> CourseEvent:
        with self.store.transaction():
            event = self._require_event(event_id)
            if not event.is_completed:
                return event
            updated = event.with_updates(status=classify_status(event.end_date, self._clock()))
            self.store.bulk_upsert_events([updated])
            self.store.record_audit_event(
                course_id=event.course_id,
                event_id=event.id,
                action="reopen_event",
                details={"title": event.title, "status": updated.status},
            )
        self.refresh()
        return updated

    def update_course(
        self,
        course_id: str,
        *,
        name: str | None = None,
        color: str | None = None,
        is_active: bool | None = None,
    ) -> Course:
        course = self._require_course(course_id)
        changes: dict[str, Any] = {}
        if name is not None and name.strip():
            changes["name"] = name.strip()
        if color is not None and color.strip():
            changes["color"] = color.strip()
        if is_active is not None:
            changes["is_active"] = bool(is_active)
        if not changes:
            return course
        updated = course.with_updates(**changes)
        touched = [
            event.with_updates(course_name=updated.name, course_color=updated.color)
            for event in self.store.get_all_events()
            if event.course_id == course_id
            and (event.course_name != updated.name or event.course_color != updated.color)
        ]
        with self.store.transaction():
            self.store.bulk_upsert_courses([updated])
            self.store.bulk_upsert_events(touched)
            self.store.record_audit_event(
                course_id=course_id,
                event_id="course",
                action="update_course",
                details={key: value for key, value in changes.items()},
            )
        self.refresh()
        return updated

    def delete_course(self, course_id: str) -> None:
        course = self._require_course(course_id)
        with self.store.transaction():
            self.store.delete_course(course_id, cascade=True)
            self.store.record_audit_event(
                course_id=course_id,
                event_id="course",
                action="delete_course",
                details={"name": course.name, "event_count": course.event_count},
            )
        logger.info("Deleted course %s (%s)", course.name, course_id)
        self.refresh()

    def clear_all(self) -> None:
        with self.store.transaction():
            self.store.clear_all()
            self.store.record_audit_event(
                course_id="system",
                event_id="data",
                action="clear_all",
                details={},
            )
        self.refresh()

    def export_data(self) -> dict[str, Any]:
        return {
            "version": EXPORT_VERSION,
            "exported_at": serialize_datetime(self._clock()),
            "courses": [course.to_dict() for course in self.store.get_all_courses()],
            "events": [event.to_dict() for event in self.store.get_all_events()],
        }

    def restore_data(self, payload: dict[str, Any]) -> dict[str, int]:
        """Replace all stored data with an export produced by ``export_data``."""
        if not isinstance(payload, dict):
            raise ValueError("backup must be an object")
        raw_courses = payload.get("courses")
        raw_events = payload.get("events")
        if not isinstance(raw_courses, list) or not isinstance(raw_events, list):
            raise ValueError("backup must contain 'courses' and 'events' lists")
        try:
            courses = [Course.from_dict(item) for item in raw_courses]
            events = [CourseEvent.from_dict(item) for item in raw_events]
        except (AttributeError, TypeError, ValueError) as exc:
            raise ValueError(f"invalid backup entry: {exc}") from exc

        if any(not course.id for course in courses) or any(not event.id for event in events):
            raise ValueError("backup entries must have an id")
        course_ids = {course.id for course in courses}
        orphans = [event.id for event in events if event.course_id not in course_ids]
        if orphans:
            raise ValueError(f"{len(orphans)} events reference unknown courses")
        counts: dict[str, int] = {}
        for event in events:
            counts[event.course_id] = counts.get(event.course_id, 0) + 1
        courses = [course.with_updates(event_count=counts.get(course.id, 0)) for course in courses]

        with self.store.transaction():
            self.store.replace_all(courses=courses, events=events)
            self.store.record_audit_event(
                course_id="system",
                event_id="data",
                action="restore_data",
                details={"courses": len(courses), "events": len(events)},
            )
        self.load()
        return {"courses": len(courses), "events": len(events)}
