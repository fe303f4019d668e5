import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from coursesync.errors import StoreWriteError
from coursesync.models import SyncResult
from coursesync.web_admin import AppContext, create_app

CALENDAR = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Course Calendar//EN",
        "BEGIN:VEVENT",
        "UID:chem-1",
        "SUMMARY:Midterm exam",
        "DTSTART:20990310T090000Z",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:chem-2",
        "SUMMARY:Lab notebook",
        "DESCRIPTION:Homework for week 2",
        "DTSTART:20990312T090000Z",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
) + "\r\n"


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.context = AppContext(config_path=str(root / "config.yaml"), state_path=str(root / "state.db"))
        self.client = TestClient(create_app(self.context))

        seed_payload = {
            "scrape": {"base_url": "https://school.example.com", "cookies": {"session": "secret-cookie"}},
            "sync": {"interval_minutes": 20},
        }
        resp = self.client.put("/api/config", json={"payload": seed_payload})
        self.assertEqual(resp.status_code, 200)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _import(self) -> dict:
        resp = self.client.post(
            "/api/import",
            json={"files": [{"file_name": "chemistry-calendar.ics", "content": CALENDAR}]},
        )
        self.assertEqual(resp.status_code, 200)
        return resp.json()

    def test_healthz(self) -> None:
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})

    def test_config_is_masked(self) -> None:
        data = self.client.get("/api/config").json()
        self.assertEqual(data["scrape"]["cookies"], {"session": "***"})
        self.assertEqual(data["sync"]["interval_minutes"], 20)

    def test_put_config_masked_cookie_does_not_override(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"scrape": {"cookies": {"session": "***"}}}})
        self.assertEqual(resp.status_code, 200)
        config = self.context.config_manager.load()
        self.assertEqual(config.scrape.cookies, {"session": "secret-cookie"})

    def test_import_and_list(self) -> None:
        report = self._import()
        self.assertTrue(report["success"])
        self.assertEqual(report["events_count"], 2)
        self.assertEqual(report["reports"][0]["course_name"], "Chemistry")

        courses = self.client.get("/api/courses").json()
        self.assertEqual(len(courses["courses"]), 1)
        self.assertEqual(courses["courses"][0]["event_count"], 2)

        events = self.client.get("/api/events").json()
        self.assertEqual(events["count"], 2)
        exams = self.client.get("/api/events", params={"event_type": "exam"}).json()
        self.assertEqual([event["id"] for event in exams["events"]], ["chem-1"])
        found = self.client.get("/api/events", params={"q": "week 2"}).json()
        self.assertEqual([event["id"] for event in found["events"]], ["chem-2"])

    def test_event_filters_combine(self) -> None:
        self._import()
        both = self.client.get("/api/events", params={"q": "chemistry", "event_type": "assignment"}).json()
        self.assertEqual([event["id"] for event in both["events"]], ["chem-2"])
        none = self.client.get("/api/events", params={"q": "week 2", "event_type": "exam"}).json()
        self.assertEqual(none["count"], 0)
        upcoming = self.client.get("/api/events", params={"status": "upcoming"}).json()
        self.assertEqual(upcoming["count"], 2)

    def test_event_query_routes(self) -> None:
        self._import()
        upcoming = self.client.get("/api/events/upcoming", params={"limit": 1}).json()
        self.assertEqual([event["id"] for event in upcoming["events"]], ["chem-1"])
        self.assertEqual(self.client.get("/api/events/overdue").json()["count"], 0)
        in_range = self.client.get(
            "/api/events/range",
            params={"start": "2099-03-11T00:00:00Z", "end": "2099-03-13T00:00:00Z"},
        ).json()
        self.assertEqual([event["id"] for event in in_range["events"]], ["chem-2"])
        bad = self.client.get("/api/events/range", params={"start": "soon", "end": "later"})
        self.assertEqual(bad.status_code, 400)

    def test_courses_active_only(self) -> None:
        self._import()
        course_id = self.client.get("/api/courses").json()["courses"][0]["id"]
        self.client.put(f"/api/courses/{course_id}", json={"is_active": False})
        self.assertEqual(self.client.get("/api/courses", params={"active_only": True}).json()["courses"], [])
        self.assertEqual(len(self.client.get("/api/courses").json()["courses"]), 1)

    def test_import_rejects_empty_request(self) -> None:
        self.assertEqual(self.client.post("/api/import", json={"files": []}).status_code, 422)

    def test_unknown_filters_are_rejected(self) -> None:
        self.assertEqual(self.client.get("/api/events", params={"status": "lost"}).status_code, 400)

    def test_filter_endpoints(self) -> None:
        self._import()
        course_id = self.client.get("/api/courses").json()["courses"][0]["id"]
        self.assertEqual(self.client.post(f"/api/filter/toggle/{course_id}").json(), {"active_course_ids": []})
        self.assertEqual(self.client.post("/api/filter/show-all").json(), {"active_course_ids": [course_id]})
        self.assertEqual(self.client.post("/api/filter/hide-all").json(), {"active_course_ids": []})
        resp = self.client.put("/api/filter", json={"course_ids": [course_id]})
        self.assertEqual(resp.json(), {"active_course_ids": [course_id]})

    def test_complete_and_reopen(self) -> None:
        self._import()
        resp = self.client.post("/api/events/chem-1/complete")
        self.assertEqual(resp.json()["event"]["status"], "completed")
        resp = self.client.post("/api/events/chem-1/reopen")
        self.assertEqual(resp.json()["event"]["status"], "upcoming")
        self.assertEqual(self.client.post("/api/events/nope/complete").status_code, 404)

    def test_update_and_delete_course(self) -> None:
        self._import()
        course_id = self.client.get("/api/courses").json()["courses"][0]["id"]
        resp = self.client.put(f"/api/courses/{course_id}", json={"color": "#ABCDEF"})
        self.assertEqual(resp.json()["course"]["color"], "#ABCDEF")
        self.assertEqual(self.client.put(f"/api/courses/{course_id}", json={"color": "red"}).status_code, 422)
        self.assertEqual(self.client.delete(f"/api/courses/{course_id}").status_code, 200)
        self.assertEqual(self.client.get("/api/events").json()["count"], 0)
        self.assertEqual(self.client.delete(f"/api/courses/{course_id}").status_code, 404)

    def test_sync_run_returns_result(self) -> None:
        result = SyncResult(
            status="success",
            message="Synced 1 courses, 3 events.",
            duration_ms=5,
            courses_count=1,
            events_count=3,
            trigger="manual",
        )
        with mock.patch.object(self.context.sync_engine, "sync_now", return_value=result) as sync_now:
            resp = self.client.post("/api/sync/run", json={"credentials": {"cookies": {"a": "b"}}})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()["result"]
        self.assertTrue(body["success"])
        self.assertEqual(body["events_count"], 3)
        self.assertNotIn("error", body)
        sync_now.assert_called_once_with({"cookies": {"a": "b"}}, trigger="manual")

    def test_sync_run_in_flight_conflict(self) -> None:
        skipped = SyncResult(
            status="skipped",
            message="A sync is already running.",
            duration_ms=0,
            courses_count=0,
            events_count=0,
            trigger="manual",
        )
        with mock.patch.object(self.context.sync_engine, "sync_now", return_value=skipped):
            resp = self.client.post("/api/sync/run")
        self.assertEqual(resp.status_code, 409)

    def test_sync_trigger_wakes_scheduler(self) -> None:
        with mock.patch.object(self.context.scheduler, "trigger_manual") as trigger_manual:
            resp = self.client.post("/api/sync/trigger")
        self.assertEqual(resp.json(), {"message": "sync triggered"})
        trigger_manual.assert_called_once_with()

    def test_sync_status_and_interval(self) -> None:
        status = self.client.get("/api/sync/status").json()
        self.assertEqual(status["interval_minutes"], 20)
        self.assertFalse(status["is_syncing"])
        self.assertIsNone(status["last_sync_time"])

        resp = self.client.put("/api/sync/interval", json={"minutes": 5})
        self.assertEqual(resp.json()["interval_minutes"], 5)
        self.assertEqual(self.client.get("/api/sync/status").json()["interval_minutes"], 5)
        self.assertEqual(self.client.put("/api/sync/interval", json={"minutes": 0}).status_code, 422)

    def test_export_restore_and_clear(self) -> None:
        self._import()
        exported = self.client.get("/api/export").json()
        self.assertEqual(self.client.delete("/api/data").status_code, 200)
        self.assertEqual(self.client.get("/api/events").json()["count"], 0)
        resp = self.client.post("/api/restore", json=exported)
        self.assertEqual(resp.json()["events"], 2)
        self.assertEqual(self.client.get("/api/events").json()["count"], 2)
        self.assertEqual(self.client.post("/api/restore", json={"courses": 1}).status_code, 400)

    def test_store_failure_maps_to_500(self) -> None:
        client = TestClient(create_app(self.context), raise_server_exceptions=False)
        with mock.patch.object(self.context.manager, "clear_all", side_effect=StoreWriteError("disk I/O error")):
            resp = client.delete("/api/data")
        self.assertEqual(resp.status_code, 500)
        self.assertIn("Storage write failed", resp.json()["detail"])

    def test_audit_and_runs(self) -> None:
        self._import()
        events = self.client.get("/api/audit/events").json()["events"]
        self.assertEqual(events[0]["action"], "import_file")
        self.assertEqual(self.client.get("/api/sync/runs").json(), {"runs": []})


if __name__ == "__main__":
    unittest.main()
