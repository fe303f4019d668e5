import unittest
from datetime import datetime, timedelta, timezone

from coursesync.models import Course, CourseEvent
from coursesync.view import ReactiveView, filter_events

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _course(course_id: str) -> Course:
    return Course(id=course_id, name=f"Course {course_id}", color="#FF6B6B")


def _event(event_id: str, course_id: str, hours: int, title: str = "", **kwargs) -> CourseEvent:
    start = NOW + timedelta(hours=hours)
    return CourseEvent(
        id=event_id,
        title=title or f"Event {event_id}",
        start_date=start,
        end_date=start,
        course_id=course_id,
        course_name=f"Course {course_id}",
        **kwargs,
    )


class FilterEventsTests(unittest.TestCase):
    def test_empty_active_set_means_no_filter(self) -> None:
        events = [_event("b", "c2", 2), _event("a", "c1", 1)]
        self.assertEqual([event.id for event in filter_events(events, [])], ["a", "b"])

    def test_active_set_filters_by_course(self) -> None:
        events = [_event("a", "c1", 1), _event("b", "c2", 2)]
        self.assertEqual([event.id for event in filter_events(events, ["c2"])], ["b"])


class ReactiveViewTests(unittest.TestCase):
    def setUp(self) -> None:
        self.view = ReactiveView(clock=lambda: NOW)
        self.snapshots = []
        self.unsubscribe = self.view.subscribe(self.snapshots.append)
        self.view.load(
            [_event("a", "c1", 1), _event("b", "c2", 2), _event("c", "c2", -5)],
            [_course("c1"), _course("c2")],
        )

    def test_load_activates_all_courses(self) -> None:
        self.assertEqual(self.view.active_course_ids, {"c1", "c2"})
        self.assertEqual(len(self.snapshots), 1)
        self.assertEqual([event.id for event in self.snapshots[0].filtered_events], ["c", "a", "b"])

    def test_toggle_and_show_hide(self) -> None:
        self.view.toggle("c2")
        self.assertEqual([event.id for event in self.view.filtered_events()], ["a"])
        self.view.toggle("c2")
        self.assertEqual(self.view.active_course_ids, {"c1", "c2"})
        self.view.hide_all()
        self.assertEqual(self.view.active_course_ids, set())
        self.assertEqual(len(self.view.filtered_events()), 3)
        self.view.set_active(["c1"])
        self.assertEqual([event.id for event in self.view.filtered_events()], ["a"])
        self.view.show_all()
        self.assertEqual(self.view.active_course_ids, {"c1", "c2"})

    def test_every_change_publishes_a_consistent_snapshot(self) -> None:
        self.view.toggle("c1")
        snapshot = self.snapshots[-1]
        self.assertEqual(snapshot.active_course_ids, frozenset({"c2"}))
        self.assertTrue(all(event.course_id == "c2" for event in snapshot.filtered_events))

    def test_unsubscribe_stops_notifications(self) -> None:
        self.unsubscribe()
        self.view.hide_all()
        self.assertEqual(len(self.snapshots), 1)

    def test_failing_listener_does_not_block_others(self) -> None:
        def broken(_snapshot) -> None:
            raise RuntimeError("listener bug")

        seen = []
        self.view.subscribe(broken)
        self.view.subscribe(seen.append)
        with self.assertLogs("coursesync.view", level="ERROR"):
            self.view.show_all()
        self.assertEqual(len(seen), 1)

    def test_replace_keeps_filter_and_adds_new_courses(self) -> None:
        self.view.toggle("c1")
        self.view.replace(
            [_event("b", "c2", 2), _event("d", "c3", 3)],
            [_course("c2"), _course("c3")],
        )
        self.assertEqual(self.view.active_course_ids, {"c2", "c3"})
        self.assertEqual([course.id for course in self.view.courses], ["c2", "c3"])

    def test_status_is_derived_at_read_time(self) -> None:
        later = NOW + timedelta(hours=3)
        statuses = {event.id: event.status for event in self.view.filtered_events(now=later)}
        self.assertEqual(statuses, {"a": "overdue", "b": "overdue", "c": "overdue"})
        self.assertEqual(self.view.events_by_status("overdue"), [self.view.filtered_events()[0]])

    def test_queries(self) -> None:
        self.assertEqual([event.id for event in self.view.search("event b")], ["b"])
        self.assertEqual([event.id for event in self.view.search("course c2")], ["c", "b"])
        self.assertEqual([event.id for event in self.view.upcoming(limit=1)], ["a"])
        self.assertEqual([event.id for event in self.view.overdue()], ["c"])
        in_range = self.view.events_in_range(NOW, NOW + timedelta(hours=2))
        self.assertEqual([event.id for event in in_range], ["a", "b"])
        self.assertEqual(self.view.total_event_count(), 3)
        self.assertEqual(self.view.event_count_for("c2"), 2)

    def test_query_narrows_search_by_type_and_status(self) -> None:
        self.view.replace(
            [
                _event("q1", "c1", 1, title="Midterm exam", event_type="exam"),
                _event("q2", "c1", -2, title="Final exam", event_type="exam"),
                _event("q3", "c2", 3, title="Exam prep worksheet", event_type="assignment"),
            ],
            [_course("c1"), _course("c2")],
        )
        self.assertEqual([event.id for event in self.view.query("exam")], ["q2", "q1", "q3"])
        self.assertEqual([event.id for event in self.view.query("exam", event_type="exam")], ["q2", "q1"])
        self.assertEqual([event.id for event in self.view.query("exam", status="upcoming")], ["q1", "q3"])
        self.assertEqual([event.id for event in self.view.events_by_type("assignment")], ["q3"])
        self.assertEqual([event.id for event in self.view.events_by_status("overdue")], ["q2"])

    def test_active_courses(self) -> None:
        self.view.replace([], [_course("c1"), Course(id="c2", name="Old", color="#4ECDC4", is_active=False)])
        self.assertEqual([course.id for course in self.view.active_courses()], ["c1"])

    def test_completed_events_stay_completed(self) -> None:
        self.view.replace([_event("x", "c1", -10, status="completed")], [_course("c1"), _course("c2")])
        self.assertEqual(self.view.events_by_status("completed")[0].id, "x")
        self.assertEqual(self.view.overdue(), [])


if __name__ == "__main__":
    unittest.main()
