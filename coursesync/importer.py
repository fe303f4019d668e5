from __future__ import annotations

import logging
import re
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from coursesync.ics_parser import extract_course_name, parse_calendar
from coursesync.models import (
    AUTO_SYNC_LABEL,
    SOURCE_FILE_IMPORT,
    Course,
    ImportReport,
    ParseFailure,
    ParseIssue,
    ParseOutcome,
    SourceReport,
    utc_now,
)
from coursesync.reconciler import ReconcileRequest, pick_course_color, reconcile_batch
from coursesync.state_store import StateStore

logger = logging.getLogger(__name__)

FILE_COURSE_NAMESPACE = uuid.UUID("6f1f3c2e-58a4-4d8e-9b7e-2f0a1c9d4e11")


@dataclass
class ImportSource:
    file_name: str
    content: str


def _normalize_course_name(value: str) -> str:
    return re.sub(r"\s+", " ", str(value or "").strip()).casefold()


def resolve_course_id(course_name: str, courses: list[Course]) -> str:
    """Map a course name from a calendar file to a stable course id.

    Synced courses are never reused for file imports.
    """
    key = _normalize_course_name(course_name)
    for course in courses:
        if course.source_label == AUTO_SYNC_LABEL:
            continue
        if _normalize_course_name(course.name) == key:
            return course.id
    return str(uuid.uuid5(FILE_COURSE_NAMESPACE, key))


def _issue_text(issue: ParseIssue) -> str:
    if issue.ordinal is None:
        return issue.message
    return f"Event {issue.ordinal}: {issue.message}"


class FileImporter:
    def __init__(
        self,
        store: StateStore,
        *,
        max_workers: int = 4,
        on_committed: Callable[[], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.max_workers = max(1, int(max_workers))
        self.on_committed = on_committed
        self._clock = clock

    def _parse(self, source: ImportSource, courses: list[Course], now: datetime) -> ParseOutcome:
        course_name = extract_course_name(source.content, source.file_name)
        course_id = resolve_course_id(course_name, courses)
        existing = next((course for course in courses if course.id == course_id), None)
        color = existing.color if existing is not None else pick_course_color()
        try:
            return parse_calendar(source.content, course_id, course_name, color, source.file_name, now)
        except Exception as exc:
            logger.exception("Unexpected failure parsing %s", source.file_name)
            return ParseFailure(
                source_label=source.file_name,
                course_id=course_id,
                course_name=course_name,
                errors=[ParseIssue(message=f"Failed to parse calendar file: {exc}")],
            )

    def import_files(self, sources: list[ImportSource]) -> ImportReport:
        """Parse calendar files in parallel and commit them as one batch.

        Parse problems end up in the per-file reports. A store failure
        propagates and leaves the store untouched.
        """
        if not sources:
            return ImportReport()
        now = self._clock()
        # Only used to resolve course ids and colors while parsing.
        known_courses = self.store.get_all_courses()

        workers = min(self.max_workers, len(sources))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="coursesync-import") as executor:
            outcomes = list(executor.map(lambda source: self._parse(source, known_courses, now), sources))

        requests: list[ReconcileRequest] = []
        request_index: dict[int, int] = {}
        for index, outcome in enumerate(outcomes):
            if not outcome.success:
                continue
            request_index[index] = len(requests)
            requests.append(
                ReconcileRequest(
                    source_kind=SOURCE_FILE_IMPORT,
                    course_id=outcome.course_id,
                    course_name=outcome.course_name,
                    source_label=outcome.source_label,
                    drafts=outcome.events,
                    course_color=outcome.events[0].course_color,
                )
            )

        with self.store.transaction():
            # Reconcile against the state as of the write, not as of the parse.
            plan = reconcile_batch(requests, self.store.get_all_events(), self.store.get_all_courses(), now)
            if not plan.is_empty:
                self.store.apply_batch(
                    course_upserts=plan.course_upserts,
                    event_upserts=plan.event_upserts,
                    event_deletes=plan.event_deletes,
                )
                for diff, request in zip(plan.diffs, requests):
                    self.store.record_audit_event(
                        course_id=diff.course_id,
                        event_id="course",
                        action="import_file",
                        details={"source": request.source_label, **diff.summary()},
                    )

        reports: list[SourceReport] = []
        for index, outcome in enumerate(outcomes):
            entry_errors = [_issue_text(issue) for issue in outcome.errors if issue.ordinal is not None]
            if index not in request_index:
                message = next((issue.message for issue in outcome.errors), "")
                reports.append(
                    SourceReport(
                        source_label=outcome.source_label,
                        success=False,
                        course_id=outcome.course_id,
                        course_name=outcome.course_name,
                        error=message or "; ".join(outcome.warnings) or "No events imported",
                        entry_errors=entry_errors,
                        warnings=list(outcome.warnings),
                    )
                )
                continue
            diff = plan.diffs[request_index[index]]
            reports.append(
                SourceReport(
                    source_label=outcome.source_label,
                    success=True,
                    course_id=diff.course_id,
                    course_name=outcome.course_name,
                    events_count=diff.observed_count,
                    entry_errors=entry_errors,
                    warnings=list(outcome.warnings) + diff.warnings,
                )
            )

        report = ImportReport(reports=reports)
        logger.info(
            "Imported %d of %d files, %d events",
            sum(1 for item in reports if item.success),
            len(reports),
            report.events_count,
        )
        if self.on_committed is not None and not plan.is_empty:
            self.on_committed()
        return report
