from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Protocol

from coursesync.errors import StoreWriteError
from coursesync.models import Course, CourseEvent, serialize_datetime

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StoreAdapter(Protocol):
    def get_all_events(self) -> list[CourseEvent]: ...

    def get_all_courses(self) -> list[Course]: ...

    def bulk_upsert_events(self, events: Iterable[CourseEvent]) -> None: ...

    def bulk_upsert_courses(self, courses: Iterable[Course]) -> None: ...

    def bulk_delete_events(self, event_ids: Iterable[str]) -> None: ...

    def delete_course(self, course_id: str, cascade: bool = True) -> None: ...

    def clear_all(self) -> None: ...


class StateStore:
    """SQLite-backed store for courses, events, sync runs and audit rows.

    Every public method is atomic. ``transaction()`` groups several writes so
    readers see either none or all of them.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._tx_conn: sqlite3.Connection | None = None
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS courses (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            is_active INTEGER NOT NULL,
            payload_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            course_id TEXT NOT NULL,
            start_date TEXT NOT NULL,
            event_type TEXT NOT NULL,
            status TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_events_course ON events(course_id);
        CREATE INDEX IF NOT EXISTS idx_events_start ON events(start_date);

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            courses_count INTEGER NOT NULL,
            events_count INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            course_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(schema_sql)
                conn.commit()
            finally:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._tx_conn is not None:
                yield self._tx_conn
                return
            conn = self._connect()
            self._tx_conn = conn
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                logger.error("Store write rolled back: %s", exc)
                raise StoreWriteError(f"{type(exc).__name__}: {exc}") from exc
            except Exception:
                conn.rollback()
                raise
            finally:
                self._tx_conn = None
                conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._tx_conn is not None:
                yield self._tx_conn
                return
            conn = self._connect()
            try:
                yield conn
            finally:
                conn.close()

    # Courses and events

    def get_all_events(self) -> list[CourseEvent]:
        with self._reader() as conn:
            rows = conn.execute("SELECT payload_json FROM events ORDER BY start_date, id").fetchall()
        return [CourseEvent.from_dict(json.loads(row["payload_json"])) for row in rows]

    def get_all_courses(self) -> list[Course]:
        with self._reader() as conn:
            rows = conn.execute("SELECT payload_json FROM courses ORDER BY name, id").fetchall()
        return [Course.from_dict(json.loads(row["payload_json"])) for row in rows]

    def get_event(self, event_id: str) -> CourseEvent | None:
        with self._reader() as conn:
            row = conn.execute("SELECT payload_json FROM events WHERE id = ?", (str(event_id),)).fetchone()
        if row is None:
            return None
        return CourseEvent.from_dict(json.loads(row["payload_json"]))

    def get_course(self, course_id: str) -> Course | None:
        with self._reader() as conn:
            row = conn.execute("SELECT payload_json FROM courses WHERE id = ?", (str(course_id),)).fetchone()
        if row is None:
            return None
        return Course.from_dict(json.loads(row["payload_json"]))

    def bulk_upsert_courses(self, courses: Iterable[Course]) -> None:
        rows = [
            (
                course.id,
                course.name,
                int(course.is_active),
                json.dumps(course.to_dict(), ensure_ascii=False),
                _utc_now(),
            )
            for course in courses
        ]
        if not rows:
            return
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO courses(id, name, is_active, payload_json, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    is_active = excluded.is_active,
                    payload_json = excluded.payload_json,
                    updated_at = excluded.updated_at
                """,
                rows,
            )

    def bulk_upsert_events(self, events: Iterable[CourseEvent]) -> None:
        rows = [
            (
                event.id,
                event.course_id,
                serialize_datetime(event.start_date),
                event.event_type,
                event.status,
                json.dumps(event.to_dict(), ensure_ascii=False),
                _utc_now(),
            )
            for event in events
        ]
        if not rows:
            return
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO events(id, course_id, start_date, event_type, status, payload_json, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    course_id = excluded.course_id,
                    start_date = excluded.start_date,
                    event_type = excluded.event_type,
                    status = excluded.status,
                    payload_json = excluded.payload_json,
                    updated_at = excluded.updated_at
                """,
                rows,
            )

    def bulk_delete_events(self, event_ids: Iterable[str]) -> None:
        rows = [(str(event_id),) for event_id in event_ids]
        if not rows:
            return
        with self.transaction() as conn:
            conn.executemany("DELETE FROM events WHERE id = ?", rows)

    def delete_course(self, course_id: str, cascade: bool = True) -> None:
        with self.transaction() as conn:
            if cascade:
                conn.execute("DELETE FROM events WHERE course_id = ?", (str(course_id),))
            conn.execute("DELETE FROM courses WHERE id = ?", (str(course_id),))

    def clear_all(self) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM events")
            conn.execute("DELETE FROM courses")

    def apply_batch(
        self,
        *,
        course_upserts: Iterable[Course],
        event_upserts: Iterable[CourseEvent],
        event_deletes: Iterable[str],
    ) -> None:
        # Courses go first so no event ever points at an unknown course.
        with self.transaction():
            self.bulk_upsert_courses(course_upserts)
            self.bulk_upsert_events(event_upserts)
            self.bulk_delete_events(event_deletes)

    def replace_all(self, *, courses: Iterable[Course], events: Iterable[CourseEvent]) -> None:
        with self.transaction():
            self.clear_all()
            self.bulk_upsert_courses(courses)
            self.bulk_upsert_events(events)

    # Sync runs, audit trail and metadata

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        courses_count: int,
        events_count: int,
    ) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, courses_count, events_count)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (_utc_now(), trigger, status, message, duration_ms, courses_count, events_count),
            )
            return int(cursor.lastrowid)

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        return self.record_sync_run(
            trigger=trigger,
            status="running",
            message=message,
            duration_ms=0,
            courses_count=0,
            events_count=0,
        )

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        courses_count: int,
        events_count: int,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE sync_runs
                SET status = ?, message = ?, duration_ms = ?, courses_count = ?, events_count = ?
                WHERE id = ?
                """,
                (
                    str(status),
                    str(message),
                    int(duration_ms),
                    int(courses_count),
                    int(events_count),
                    int(run_id),
                ),
            )

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._reader() as conn:
            rows = conn.execute(
                """
                SELECT id, run_at, trigger, status, message, duration_ms, courses_count, events_count
                FROM sync_runs
                ORDER BY id DESC
                LIMIT ?
                """,
                (max(1, limit),),
            ).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        course_id: str,
        event_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO audit_events(run_id, created_at, course_id, event_id, action, details_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (run_id, _utc_now(), course_id, event_id, action, json.dumps(details, ensure_ascii=False)),
            )

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._reader() as conn:
            if run_id is None:
                rows = conn.execute(
                    """
                    SELECT id, run_id, created_at, course_id, event_id, action, details_json
                    FROM audit_events
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT id, run_id, created_at, course_id, event_id, action, details_json
                    FROM audit_events
                    WHERE run_id = ?
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (int(run_id), max(1, limit)),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    def set_meta(self, key: str, value: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO app_meta(key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (str(key), str(value), _utc_now()),
            )

    def get_meta(self, key: str) -> str | None:
        with self._reader() as conn:
            row = conn.execute("SELECT value FROM app_meta WHERE key = ?", (str(key),)).fetchone()
        if row is None:
            return None
        return str(row["value"])
