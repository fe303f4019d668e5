import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

from coursesync.errors import StoreWriteError
from coursesync.importer import FileImporter, ImportSource, resolve_course_id
from coursesync.models import Course
from coursesync.state_store import StateStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _calendar(name: str, *events: tuple[str, str, str]) -> str:
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//Course Calendar//EN", f"X-WR-CALNAME:{name}"]
    for uid, summary, dtstart in events:
        lines.extend(["BEGIN:VEVENT", f"UID:{uid}", f"SUMMARY:{summary}", f"DTSTART:{dtstart}", "END:VEVENT"])
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


BIOLOGY = _calendar(
    "Biology",
    ("bio-1", "Lab report", "20260305T090000Z"),
    ("bio-2", "Midterm", "20260312T090000Z"),
)
HISTORY = _calendar("History", ("his-1", "Essay draft", "20260306T090000Z"))


class FileImporterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.committed = mock.Mock()
        self.importer = FileImporter(self.store, max_workers=2, on_committed=self.committed, clock=lambda: NOW)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_imports_several_files_in_one_batch(self) -> None:
        report = self.importer.import_files(
            [ImportSource("biology.ics", BIOLOGY), ImportSource("history.ics", HISTORY)]
        )
        self.assertTrue(report.success)
        self.assertEqual(report.events_count, 3)
        self.assertEqual([item.source_label for item in report.reports], ["biology.ics", "history.ics"])
        courses = {course.name: course for course in self.store.get_all_courses()}
        self.assertEqual(set(courses), {"Biology", "History"})
        self.assertEqual(courses["Biology"].event_count, 2)
        self.assertEqual(courses["Biology"].source_label, "biology.ics")
        self.assertEqual(len(self.store.get_all_events()), 3)
        self.committed.assert_called_once()
        actions = [row["action"] for row in self.store.recent_audit_events()]
        self.assertEqual(actions.count("import_file"), 2)

    def test_reimport_keeps_course_and_color(self) -> None:
        self.importer.import_files([ImportSource("biology.ics", BIOLOGY)])
        before = self.store.get_all_courses()
        report = self.importer.import_files([ImportSource("biology-v2.ics", BIOLOGY)])
        after = self.store.get_all_courses()
        self.assertEqual(len(after), 1)
        self.assertEqual(after[0].id, before[0].id)
        self.assertEqual(after[0].color, before[0].color)
        self.assertEqual(report.reports[0].events_count, 2)
        self.assertEqual(len(self.store.get_all_events()), 2)

    def test_bad_file_does_not_block_good_ones(self) -> None:
        report = self.importer.import_files(
            [ImportSource("broken.ics", "not a calendar"), ImportSource("history.ics", HISTORY)]
        )
        self.assertTrue(report.success)
        broken, history = report.reports
        self.assertFalse(broken.success)
        self.assertIn("Failed to parse calendar file", broken.error)
        self.assertTrue(history.success)
        self.assertEqual(history.events_count, 1)
        self.assertEqual([course.name for course in self.store.get_all_courses()], ["History"])

    def test_entry_errors_are_reported(self) -> None:
        text = BIOLOGY.replace("DTSTART:20260312T090000Z\r\n", "")
        report = self.importer.import_files([ImportSource("biology.ics", text)])
        item = report.reports[0]
        self.assertTrue(item.success)
        self.assertEqual(item.events_count, 1)
        self.assertEqual(len(item.entry_errors), 1)
        self.assertTrue(item.entry_errors[0].startswith("Event 2:"))

    def test_empty_calendar_is_reported_as_failure(self) -> None:
        report = self.importer.import_files([ImportSource("empty.ics", _calendar("Empty"))])
        self.assertFalse(report.success)
        self.assertIn("No events found", report.reports[0].error)
        self.assertEqual(self.store.get_all_courses(), [])
        self.committed.assert_not_called()

    def test_store_failure_propagates_without_partial_writes(self) -> None:
        with mock.patch.object(self.store, "bulk_upsert_events", side_effect=StoreWriteError("disk full")):
            with self.assertRaises(StoreWriteError):
                self.importer.import_files([ImportSource("biology.ics", BIOLOGY)])
        self.assertEqual(self.store.get_all_courses(), [])
        self.committed.assert_not_called()

    def test_completion_during_parse_survives_reimport(self) -> None:
        self.importer.import_files([ImportSource("biology.ics", BIOLOGY)])
        revised = _calendar(
            "Biology",
            ("bio-1", "Lab report (revised)", "20260305T090000Z"),
            ("bio-2", "Midterm", "20260312T090000Z"),
        )
        parse = self.importer._parse

        def complete_then_parse(*args):
            event = self.store.get_event("bio-1")
            self.store.bulk_upsert_events([event.with_updates(status="completed")])
            return parse(*args)

        with mock.patch.object(self.importer, "_parse", side_effect=complete_then_parse):
            self.importer.import_files([ImportSource("biology.ics", revised)])
        stored = self.store.get_event("bio-1")
        self.assertEqual(stored.title, "Lab report (revised)")
        self.assertEqual(stored.status, "completed")

    def test_empty_input(self) -> None:
        report = self.importer.import_files([])
        self.assertFalse(report.success)
        self.assertEqual(report.reports, [])


class ResolveCourseIdTests(unittest.TestCase):
    def test_matches_existing_file_course_by_name(self) -> None:
        courses = [Course(id="existing", name="  Organic  Chemistry ", color="#FF6B6B")]
        self.assertEqual(resolve_course_id("organic chemistry", courses), "existing")

    def test_ignores_synced_courses(self) -> None:
        courses = [Course(id="42", name="Biology", color="#FF6B6B", source_label="auto-sync")]
        self.assertNotEqual(resolve_course_id("Biology", courses), "42")

    def test_new_name_is_deterministic(self) -> None:
        self.assertEqual(resolve_course_id("Biology", []), resolve_course_id("biology", []))


if __name__ == "__main__":
    unittest.main()
