from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from coursesync.config_manager import ConfigManager
from coursesync.errors import StoreWriteError
from coursesync.importer import ImportSource
from coursesync.manager import CourseManager
from coursesync.models import EVENT_STATUSES, EVENT_TYPES, CourseEvent, parse_iso_datetime
from coursesync.scheduler import SyncScheduler
from coursesync.state_store import StateStore
from coursesync.sync_engine import SyncEngine
from coursesync.view import ReactiveView, ViewSnapshot

logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ImportFileRequest(BaseModel):
    file_name: str = Field(min_length=1, max_length=255)
    content: str


class ImportRequest(BaseModel):
    files: list[ImportFileRequest] = Field(min_length=1)


class CourseUpdateRequest(BaseModel):
    name: str | None = None
    color: str | None = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")
    is_active: bool | None = None


class FilterUpdateRequest(BaseModel):
    course_ids: list[str] = Field(default_factory=list)


class SyncRunRequest(BaseModel):
    credentials: dict[str, Any] | None = None


class SyncIntervalRequest(BaseModel):
    minutes: int = Field(ge=1)


class AppContext:
    def __init__(self, config_path: str, state_path: str | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.state_store = StateStore(state_path or config.storage.db_path)
        self.view = ReactiveView()
        self.manager = CourseManager(
            self.state_store,
            self.view,
            import_workers=config.imports.max_workers,
        )
        self.sync_engine = SyncEngine(
            self.config_manager,
            self.state_store,
            on_committed=self.manager.refresh,
        )
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _filter_payload(snapshot: ViewSnapshot) -> dict[str, Any]:
    return {"active_course_ids": sorted(snapshot.active_course_ids)}


def _events_payload(events: list[CourseEvent]) -> dict[str, Any]:
    return {"events": [event.to_dict() for event in events], "count": len(events)}


def create_app(context: AppContext | None = None) -> FastAPI:
    if context is None:
        config_path = os.getenv("COURSESYNC_CONFIG_PATH", "config.yaml")
        state_path = os.getenv("COURSESYNC_STATE_PATH") or None
        context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="CourseSync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.manager.load()
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.exception_handler(StoreWriteError)
    def _store_write_failed(request: Request, exc: StoreWriteError) -> JSONResponse:
        logger.error("Store write failed on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": f"Storage write failed: {exc}"})

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"invalid config: {exc}") from exc
        app.state.context.scheduler.restart()
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
            "sync": updated.sync.__dict__,
        }

    @app.post("/api/import")
    def import_files(request: ImportRequest) -> dict[str, Any]:
        sources = [ImportSource(file_name=item.file_name, content=item.content) for item in request.files]
        report = app.state.context.manager.import_files(sources)
        return report.to_dict()

    @app.get("/api/events")
    def list_events(q: str = "", event_type: str = "", status: str = "") -> dict[str, Any]:
        if event_type and event_type not in EVENT_TYPES:
            raise HTTPException(status_code=400, detail=f"unknown event_type: {event_type}")
        if status and status not in EVENT_STATUSES:
            raise HTTPException(status_code=400, detail=f"unknown status: {status}")
        events = app.state.context.view.query(q, event_type=event_type, status=status)
        return _events_payload(events)

    @app.get("/api/events/upcoming")
    def upcoming_events(limit: int = 0) -> dict[str, Any]:
        return _events_payload(app.state.context.view.upcoming(limit=limit or None))

    @app.get("/api/events/overdue")
    def overdue_events() -> dict[str, Any]:
        return _events_payload(app.state.context.view.overdue())

    @app.get("/api/events/range")
    def events_in_range(start: str, end: str) -> dict[str, Any]:
        try:
            start_at, end_at = parse_iso_datetime(start), parse_iso_datetime(end)
        except ValueError:
            start_at = end_at = None
        if start_at is None or end_at is None:
            raise HTTPException(status_code=400, detail="start and end must be ISO datetimes")
        return _events_payload(app.state.context.view.events_in_range(start_at, end_at))

    @app.get("/api/courses")
    def list_courses(active_only: bool = False) -> dict[str, Any]:
        view = app.state.context.view
        courses = view.active_courses() if active_only else view.courses
        return {
            "courses": [course.to_dict() for course in courses],
            **_filter_payload(view.snapshot),
        }

    @app.put("/api/courses/{course_id}")
    def update_course(course_id: str, request: CourseUpdateRequest) -> dict[str, Any]:
        try:
            course = app.state.context.manager.update_course(
                course_id,
                name=request.name,
                color=request.color,
                is_active=request.is_active,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="course not found") from exc
        return {"message": "course updated", "course": course.to_dict()}

    @app.delete("/api/courses/{course_id}")
    def delete_course(course_id: str) -> dict[str, str]:
        try:
            app.state.context.manager.delete_course(course_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="course not found") from exc
        return {"message": "course deleted"}

    @app.put("/api/filter")
    def set_filter(request: FilterUpdateRequest) -> dict[str, Any]:
        return _filter_payload(app.state.context.view.set_active(request.course_ids))

    @app.post("/api/filter/toggle/{course_id}")
    def toggle_filter(course_id: str) -> dict[str, Any]:
        return _filter_payload(app.state.context.view.toggle(course_id))

    @app.post("/api/filter/show-all")
    def show_all() -> dict[str, Any]:
        return _filter_payload(app.state.context.view.show_all())

    @app.post("/api/filter/hide-all")
    def hide_all() -> dict[str, Any]:
        return _filter_payload(app.state.context.view.hide_all())

    @app.post("/api/events/{event_id}/complete")
    def complete_event(event_id: str) -> dict[str, Any]:
        try:
            event = app.state.context.manager.mark_completed(event_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="event not found") from exc
        return {"event": event.to_dict()}

    @app.post("/api/events/{event_id}/reopen")
    def reopen_event(event_id: str) -> dict[str, Any]:
        try:
            event = app.state.context.manager.reopen_event(event_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="event not found") from exc
        return {"event": event.to_dict()}

    @app.post("/api/sync/run")
    def trigger_sync(request: SyncRunRequest | None = None) -> dict[str, Any]:
        credentials = request.credentials if request is not None else None
        result = app.state.context.sync_engine.sync_now(credentials, trigger="manual")
        if result.status == "skipped":
            raise HTTPException(status_code=409, detail=result.message)
        return {"message": "sync completed", "result": result.to_dict()}

    @app.post("/api/sync/trigger")
    def trigger_background_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/status")
    def sync_status() -> dict[str, Any]:
        return app.state.context.sync_engine.get_sync_status()

    @app.put("/api/sync/interval")
    def set_sync_interval(request: SyncIntervalRequest) -> dict[str, Any]:
        minutes = app.state.context.sync_engine.set_sync_interval(request.minutes)
        app.state.context.scheduler.restart()
        return {"message": "interval updated", "interval_minutes": minutes}

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/export")
    def export_data() -> dict[str, Any]:
        return app.state.context.manager.export_data()

    @app.post("/api/restore")
    def restore_data(payload: dict[str, Any]) -> dict[str, Any]:
        try:
            counts = app.state.context.manager.restore_data(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"message": "data restored", **counts}

    @app.delete("/api/data")
    def clear_data() -> dict[str, str]:
        app.state.context.manager.clear_all()
        return {"message": "all data cleared"}

    return app
