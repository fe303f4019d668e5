from __future__ import annotations

import logging
import threading
import time
import traceback
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from typing import Any, Callable

from coursesync.config_manager import ConfigManager
from coursesync.errors import SourceFetchError
from coursesync.models import (
    AUTO_SYNC_LABEL,
    SOURCE_SCRAPE_SYNC,
    EventDraft,
    RawScrapeItem,
    RemoteCourse,
    ScrapeConfig,
    SourceReport,
    SyncResult,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)
from coursesync.reconciler import ReconcileRequest, reconcile_batch
from coursesync.scrape_normalizer import normalize_items
from coursesync.scraper import HtmlScrapeTransport, ScrapeTransport
from coursesync.state_store import StateStore

logger = logging.getLogger(__name__)

LAST_SYNC_META_KEY = "last_sync_time"

TransportFactory = Callable[[ScrapeConfig, "dict[str, Any] | None", float], ScrapeTransport]


def _default_transport(
    config: ScrapeConfig, credentials: dict[str, Any] | None, timeout_seconds: float
) -> ScrapeTransport:
    return HtmlScrapeTransport(config, credentials=credentials, timeout_seconds=timeout_seconds)


class SyncEngine:
    """Pull every remote course and reconcile it into the store.

    Only one sync runs at a time; a request that arrives while one is in
    flight returns a ``skipped`` result instead of queueing.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        *,
        transport_factory: TransportFactory = _default_transport,
        on_committed: Callable[[], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.transport_factory = transport_factory
        self.on_committed = on_committed
        self._clock = clock
        self._run_lock = threading.Lock()

    @property
    def is_syncing(self) -> bool:
        return self._run_lock.locked()

    def get_sync_status(self) -> dict[str, Any]:
        config = self.config_manager.load()
        last_sync = parse_iso_datetime(self.state_store.get_meta(LAST_SYNC_META_KEY))
        return {
            "is_syncing": self.is_syncing,
            "last_sync_time": serialize_datetime(last_sync),
            "interval_minutes": config.sync.interval_minutes,
            "auto_sync_enabled": config.sync.auto_sync_enabled,
        }

    def set_sync_interval(self, minutes: int) -> int:
        if int(minutes) < 1:
            raise ValueError("interval must be at least 1 minute")
        config = self.config_manager.set_sync_interval(int(minutes))
        logger.info("Sync interval set to %d minutes", config.sync.interval_minutes)
        return config.sync.interval_minutes

    def _fetch_all(
        self,
        transport: ScrapeTransport,
        courses: list[RemoteCourse],
        max_workers: int,
        timeout_seconds: float,
    ) -> dict[str, list[RawScrapeItem] | SourceFetchError]:
        results: dict[str, list[RawScrapeItem] | SourceFetchError] = {}
        if not courses:
            return results
        executor = ThreadPoolExecutor(
            max_workers=min(max_workers, len(courses)),
            thread_name_prefix="coursesync-fetch",
        )
        try:
            futures = {course.id: executor.submit(transport.fetch_course_items, course) for course in courses}
            # One deadline for the whole batch; each course gets at most the configured timeout.
            deadline = time.monotonic() + timeout_seconds
            for course in courses:
                try:
                    remaining = max(0.0, deadline - time.monotonic())
                    results[course.id] = futures[course.id].result(timeout=remaining)
                except FutureTimeoutError:
                    futures[course.id].cancel()
                    results[course.id] = SourceFetchError(
                        f"Timed out after {timeout_seconds:g}s", course_id=course.id
                    )
                except SourceFetchError as exc:
                    results[course.id] = exc
                except Exception as exc:
                    results[course.id] = SourceFetchError(f"{type(exc).__name__}: {exc}", course_id=course.id)
        finally:
            # A hung fetch must not hold the sync open past its timeout.
            executor.shutdown(wait=False, cancel_futures=True)
        return results

    def sync_now(self, credentials: dict[str, Any] | None = None, trigger: str = "manual") -> SyncResult:
        if not self._run_lock.acquire(blocking=False):
            logger.info("Sync requested while another is running; ignored")
            return SyncResult(
                status="skipped",
                message="A sync is already running.",
                duration_ms=0,
                courses_count=0,
                events_count=0,
                trigger=trigger,
                error="A sync is already running.",
            )
        try:
            return self._run(credentials, trigger)
        finally:
            self._run_lock.release()

    def _run(self, credentials: dict[str, Any] | None, trigger: str) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        run_id: int | None = None
        transport: ScrapeTransport | None = None
        courses_count = 0
        events_count = 0

        def elapsed_ms() -> int:
            return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)

        try:
            config = self.config_manager.load()
            run_id = self.state_store.start_sync_run(trigger=trigger)
            now = self._clock()
            transport = self.transport_factory(config.scrape, credentials, config.sync.fetch_timeout_seconds)
            remote_courses = transport.list_courses()
            fetched = self._fetch_all(
                transport,
                remote_courses,
                config.sync.max_workers,
                config.sync.fetch_timeout_seconds,
            )

            normalized: list[tuple[int, RemoteCourse, list[EventDraft]]] = []
            reports: list[SourceReport] = []
            for ordinal, course in enumerate(remote_courses):
                outcome = fetched.get(course.id)
                if isinstance(outcome, SourceFetchError) or outcome is None:
                    message = str(outcome) if outcome is not None else "No result"
                    logger.warning("Fetch failed for course %s: %s", course.id, message)
                    reports.append(
                        SourceReport(
                            source_label=course.name,
                            success=False,
                            course_id=course.id,
                            course_name=course.name,
                            error=message,
                        )
                    )
                    self.state_store.record_audit_event(
                        course_id=course.id,
                        event_id="course",
                        action="sync_course_failed",
                        details={"course_name": course.name, "error": message},
                        run_id=run_id,
                    )
                    continue
                drafts, warnings = normalize_items(outcome, course.id, course.name, now)
                normalized.append((ordinal, course, drafts))
                reports.append(
                    SourceReport(
                        source_label=course.name,
                        success=True,
                        course_id=course.id,
                        course_name=course.name,
                        warnings=warnings,
                    )
                )

            with self.state_store.transaction():
                # Read the stored state under the transaction so user edits made
                # while the fetches ran are merged rather than overwritten.
                stored_events = self.state_store.get_all_events()
                stored_courses = self.state_store.get_all_courses()
                stored_counts: dict[str, int] = {}
                for event in stored_events:
                    stored_counts[event.course_id] = stored_counts.get(event.course_id, 0) + 1

                requests: list[ReconcileRequest] = []
                for ordinal, course, drafts in normalized:
                    allow_deletions = True
                    if not drafts and stored_counts.get(course.id):
                        # An empty page is ambiguous; keep stored events unless told otherwise.
                        allow_deletions = config.sync.delete_on_empty
                    requests.append(
                        ReconcileRequest(
                            source_kind=SOURCE_SCRAPE_SYNC,
                            course_id=course.id,
                            course_name=course.name,
                            source_label=AUTO_SYNC_LABEL,
                            drafts=drafts,
                            allow_deletions=allow_deletions,
                            color_ordinal=ordinal,
                        )
                    )

                plan = reconcile_batch(requests, stored_events, stored_courses, now)
                self.state_store.apply_batch(
                    course_upserts=plan.course_upserts,
                    event_upserts=plan.event_upserts,
                    event_deletes=plan.event_deletes,
                )
                for diff in plan.diffs:
                    self.state_store.record_audit_event(
                        course_id=diff.course_id,
                        event_id="course",
                        action="sync_course",
                        details={**diff.summary(), "deletions_skipped": diff.deletions_skipped},
                        run_id=run_id,
                    )
                    for event_id in diff.event_deletes:
                        self.state_store.record_audit_event(
                            course_id=diff.course_id,
                            event_id=event_id,
                            action="delete_stale_event",
                            details={},
                            run_id=run_id,
                        )
                self.state_store.set_meta(LAST_SYNC_META_KEY, serialize_datetime(now) or "")

            diffs = {diff.course_id: diff for diff in plan.diffs}
            for report in reports:
                diff = diffs.get(report.course_id)
                if report.success and diff is not None:
                    report.events_count = diff.observed_count
                    report.warnings.extend(diff.warnings)

            succeeded = [report for report in reports if report.success]
            failed = [report for report in reports if not report.success]
            courses_count = len(succeeded)
            events_count = sum(report.events_count for report in succeeded)
            status = "success"
            if failed:
                status = "partial" if succeeded else "error"
            message = f"Synced {courses_count} courses, {events_count} events."
            if failed:
                message += f" {len(failed)} courses failed."
            duration_ms = elapsed_ms()
            self.state_store.finish_sync_run(
                run_id=run_id,
                status=status,
                message=message,
                duration_ms=duration_ms,
                courses_count=courses_count,
                events_count=events_count,
            )
            logger.info("Sync %s (%s): %s", status, trigger, message)
            if self.on_committed is not None:
                self.on_committed()
            return SyncResult(
                status=status,
                message=message,
                duration_ms=duration_ms,
                courses_count=courses_count,
                events_count=events_count,
                trigger=trigger,
                error="; ".join(f"{report.course_name}: {report.error}" for report in failed),
                reports=reports,
                run_at=now,
            )
        except Exception as exc:
            duration_ms = elapsed_ms()
            error_message = f"{type(exc).__name__}: {exc}"
            logger.error("Sync failed (%s): %s", trigger, error_message)
            if run_id is None:
                run_id = self.state_store.record_sync_run(
                    trigger=trigger,
                    status="error",
                    message=error_message,
                    duration_ms=duration_ms,
                    courses_count=0,
                    events_count=0,
                )
            else:
                self.state_store.finish_sync_run(
                    run_id=run_id,
                    status="error",
                    message=error_message,
                    duration_ms=duration_ms,
                    courses_count=0,
                    events_count=0,
                )
            self.state_store.record_audit_event(
                course_id="system",
                event_id="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
                run_id=run_id,
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                courses_count=0,
                events_count=0,
                trigger=trigger,
                error=error_message,
            )
        finally:
            if transport is not None:
                transport.close()
