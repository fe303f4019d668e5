from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, time, timezone
from typing import Any


EVENT_TYPE_ASSIGNMENT = "assignment"
EVENT_TYPE_EXAM = "exam"
EVENT_TYPE_QUIZ = "quiz"
EVENT_TYPE_PROJECT = "project"
EVENT_TYPE_OTHER = "other"
EVENT_TYPES = (
    EVENT_TYPE_ASSIGNMENT,
    EVENT_TYPE_EXAM,
    EVENT_TYPE_QUIZ,
    EVENT_TYPE_PROJECT,
    EVENT_TYPE_OTHER,
)

STATUS_UPCOMING = "upcoming"
STATUS_OVERDUE = "overdue"
STATUS_COMPLETED = "completed"
EVENT_STATUSES = (STATUS_UPCOMING, STATUS_OVERDUE, STATUS_COMPLETED)

RECURRENCE_FREQUENCIES = ("daily", "weekly", "monthly")

SOURCE_FILE_IMPORT = "file_import"
SOURCE_SCRAPE_SYNC = "scrape_sync"

AUTO_SYNC_LABEL = "auto-sync"

COURSE_COLOR_PALETTE = (
    "#FF6B6B",
    "#4ECDC4",
    "#45B7D1",
    "#FFA07A",
    "#98D8C8",
    "#6C5CE7",
    "#A29BFE",
    "#FD79A8",
    "#FDCB6E",
    "#E17055",
    "#74B9FF",
    "#00B894",
    "#00CEC9",
    "#FF7675",
)


def ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


@dataclass
class SyncConfig:
    interval_minutes: int = 30
    auto_sync_enabled: bool = False
    fetch_timeout_seconds: int = 60
    max_workers: int = 4
    delete_on_empty: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_minutes=max(1, int(data.get("interval_minutes", 30))),
            auto_sync_enabled=bool(data.get("auto_sync_enabled", False)),
            fetch_timeout_seconds=max(1, int(data.get("fetch_timeout_seconds", 60))),
            max_workers=max(1, int(data.get("max_workers", 4))),
            delete_on_empty=bool(data.get("delete_on_empty", False)),
        )


@dataclass
class ScrapeConfig:
    base_url: str = ""
    courses_path: str = "/courses"
    course_path_template: str = "/course/{course_id}/materials"
    cookies: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ScrapeConfig":
        data = data or {}
        raw_cookies = data.get("cookies", {})
        cookies: dict[str, str] = {}
        if isinstance(raw_cookies, dict):
            for key, value in raw_cookies.items():
                name = str(key).strip()
                if name:
                    cookies[name] = str(value or "")
        return cls(
            base_url=str(data.get("base_url", "")).strip().rstrip("/"),
            courses_path=str(data.get("courses_path", "/courses")).strip() or "/courses",
            course_path_template=str(
                data.get("course_path_template", "/course/{course_id}/materials")
            ).strip()
            or "/course/{course_id}/materials",
            cookies=cookies,
        )


@dataclass
class StorageConfig:
    db_path: str = "data/coursesync.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(db_path=str(data.get("db_path", "data/coursesync.db")).strip() or "data/coursesync.db")


@dataclass
class ImportConfig:
    max_workers: int = 4

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ImportConfig":
        data = data or {}
        return cls(max_workers=max(1, int(data.get("max_workers", 4))))


@dataclass
class AppConfig:
    sync: SyncConfig = field(default_factory=SyncConfig)
    scrape: ScrapeConfig = field(default_factory=ScrapeConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    imports: ImportConfig = field(default_factory=ImportConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            sync=SyncConfig.from_dict(data.get("sync")),
            scrape=ScrapeConfig.from_dict(data.get("scrape")),
            storage=StorageConfig.from_dict(data.get("storage")),
            imports=ImportConfig.from_dict(data.get("imports")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class Recurrence:
    frequency: str
    interval: int = 1
    until: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "frequency": self.frequency,
            "interval": self.interval,
            "until": serialize_datetime(self.until),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Recurrence | None":
        if not data:
            return None
        frequency = str(data.get("frequency", "")).strip().lower()
        if frequency not in RECURRENCE_FREQUENCIES:
            return None
        return cls(
            frequency=frequency,
            interval=max(1, int(data.get("interval", 1) or 1)),
            until=parse_iso_datetime(data.get("until")),
        )


@dataclass
class Course:
    id: str
    name: str
    color: str
    is_active: bool = True
    imported_date: datetime = field(default_factory=utc_now)
    event_count: int = 0
    source_label: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["imported_date"] = serialize_datetime(self.imported_date)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Course":
        return cls(
            id=str(data.get("id", "")).strip(),
            name=str(data.get("name", "")).strip(),
            color=str(data.get("color", "") or COURSE_COLOR_PALETTE[0]),
            is_active=bool(data.get("is_active", True)),
            imported_date=parse_iso_datetime(data.get("imported_date")) or utc_now(),
            event_count=max(0, int(data.get("event_count", 0) or 0)),
            source_label=str(data.get("source_label", "") or ""),
        )

    def with_updates(self, **kwargs: Any) -> "Course":
        return replace(self, **kwargs)


@dataclass
class CourseEvent:
    id: str
    title: str
    start_date: datetime
    end_date: datetime
    course_id: str
    course_name: str = ""
    course_color: str = ""
    description: str = ""
    event_type: str = EVENT_TYPE_OTHER
    location: str | None = None
    status: str = STATUS_UPCOMING
    is_all_day: bool = False
    recurrence: Recurrence | None = None
    raw_source_data: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "start_date": serialize_datetime(self.start_date),
            "end_date": serialize_datetime(self.end_date),
            "event_type": self.event_type,
            "course_id": self.course_id,
            "course_name": self.course_name,
            "course_color": self.course_color,
            "location": self.location,
            "status": self.status,
            "is_all_day": self.is_all_day,
            "recurrence": self.recurrence.to_dict() if self.recurrence else None,
            "raw_source_data": self.raw_source_data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CourseEvent":
        start = parse_iso_datetime(data.get("start_date"))
        if start is None:
            raise ValueError("event start_date is required")
        end = parse_iso_datetime(data.get("end_date")) or start
        event_type = str(data.get("event_type", EVENT_TYPE_OTHER))
        status = str(data.get("status", STATUS_UPCOMING))
        location = data.get("location")
        return cls(
            id=str(data.get("id", "")).strip(),
            title=str(data.get("title", "")),
            description=str(data.get("description", "") or ""),
            start_date=start,
            end_date=end,
            event_type=event_type if event_type in EVENT_TYPES else EVENT_TYPE_OTHER,
            course_id=str(data.get("course_id", "")).strip(),
            course_name=str(data.get("course_name", "") or ""),
            course_color=str(data.get("course_color", "") or ""),
            location=str(location) if location else None,
            status=status if status in EVENT_STATUSES else STATUS_UPCOMING,
            is_all_day=bool(data.get("is_all_day", False)),
            recurrence=Recurrence.from_dict(data.get("recurrence")),
            raw_source_data=data.get("raw_source_data"),
        )

    def with_updates(self, **kwargs: Any) -> "CourseEvent":
        return replace(self, **kwargs)

    @property
    def is_completed(self) -> bool:
        return self.status == STATUS_COMPLETED


@dataclass
class EventDraft:
    """An event as produced by the parser or the scrape normalizer.

    ``uid`` is the document identifier for calendar files and ``None`` for
    scraped items, whose identity is derived from content at merge time.
    """

    title: str
    start_date: datetime
    end_date: datetime
    course_id: str
    course_name: str = ""
    course_color: str = ""
    uid: str | None = None
    description: str = ""
    event_type: str = EVENT_TYPE_OTHER
    location: str | None = None
    status: str = STATUS_UPCOMING
    is_all_day: bool = False
    recurrence: Recurrence | None = None
    raw_source_data: str | None = None


@dataclass
class RawScrapeItem:
    title: str
    course_id: str
    course_name: str = ""
    description: str = ""
    due_date_text: str = ""
    due_date_attr: str = ""


@dataclass
class RemoteCourse:
    id: str
    name: str
    url: str = ""


@dataclass
class ParseIssue:
    message: str
    severity: str = "error"
    ordinal: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ParseOutcome:
    source_label: str
    course_id: str
    course_name: str
    errors: list[ParseIssue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return False

    @property
    def events(self) -> list[EventDraft]:
        return []

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "source_label": self.source_label,
            "course_id": self.course_id,
            "course_name": self.course_name,
            "events_imported": len(self.events),
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": list(self.warnings),
        }


@dataclass
class ParseSuccess(ParseOutcome):
    drafts: list[EventDraft] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return True

    @property
    def events(self) -> list[EventDraft]:
        return self.drafts


@dataclass
class ParseFailure(ParseOutcome):
    pass


@dataclass
class SourceReport:
    source_label: str
    success: bool
    course_id: str = ""
    course_name: str = ""
    events_count: int = 0
    error: str = ""
    entry_errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ImportReport:
    reports: list[SourceReport] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return any(report.success for report in self.reports)

    @property
    def events_count(self) -> int:
        return sum(report.events_count for report in self.reports if report.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "events_count": self.events_count,
            "reports": [report.to_dict() for report in self.reports],
        }


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    courses_count: int
    events_count: int
    trigger: str
    error: str = ""
    reports: list[SourceReport] = field(default_factory=list)
    run_at: datetime = field(default_factory=utc_now)

    @property
    def success(self) -> bool:
        return self.status in {"success", "partial"}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "courses_count": self.courses_count,
            "events_count": self.events_count,
            "trigger": self.trigger,
            "reports": [report.to_dict() for report in self.reports],
            "run_at": serialize_datetime(self.run_at),
        }
        if self.error:
            payload["error"] = self.error
        return payload
