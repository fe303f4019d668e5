import unittest
from unittest import mock

import requests

from coursesync.errors import SourceFetchError
from coursesync.models import RemoteCourse, ScrapeConfig
from coursesync.scraper import HtmlScrapeTransport, extract_courses, extract_items

COURSES_HTML = """
<html><body>
  <div class="course-item"><h3 class="course-title">Calculus I</h3><a href="/course/101">Open</a></div>
  <div class="course-item"><h3 class="course-title">Drawing</h3><a href="/course/202/home">Open</a></div>
  <div class="course-item"><h3 class="course-title">Calculus I</h3><a href="/course/101">Again</a></div>
  <div class="course-item"><h3 class="course-title">No link</h3></div>
</body></html>
"""

COURSE_HTML = """
<html><body>
  <div class="upcoming-event">
    <span class="event-title">Problem set 1</span>
    <time datetime="2026-03-05T23:59:00Z">Mar 5</time>
    <p class="description">Chapters 1-2</p>
  </div>
  <div class="upcoming-event">
    <span class="event-title">Quiz 1</span>
    <span class="due-date">Due March 6, 2026</span>
  </div>
  <div class="upcoming-event"><span class="event-title"></span></div>
</body></html>
"""

CALCULUS = RemoteCourse(id="101", name="Calculus I", url="https://school.example.com/course/101/materials")


class ExtractTests(unittest.TestCase):
    def test_extract_courses_dedupes_and_builds_urls(self) -> None:
        courses = extract_courses(COURSES_HTML, "https://school.example.com", "/course/{course_id}/materials")
        self.assertEqual([course.id for course in courses], ["101", "202"])
        self.assertEqual(courses[0].name, "Calculus I")
        self.assertEqual(courses[1].url, "https://school.example.com/course/202/materials")

    def test_extract_items(self) -> None:
        items = extract_items(COURSE_HTML, CALCULUS)
        self.assertEqual([item.title for item in items], ["Problem set 1", "Quiz 1"])
        first, second = items
        self.assertEqual(first.due_date_attr, "2026-03-05T23:59:00Z")
        self.assertEqual(first.description, "Chapters 1-2")
        self.assertEqual(first.course_id, "101")
        self.assertEqual(second.due_date_attr, "")
        self.assertEqual(second.due_date_text, "Due March 6, 2026")


class HtmlScrapeTransportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = ScrapeConfig(base_url="https://school.example.com", cookies={"session": "abc"})

    def test_credentials_are_applied_to_session(self) -> None:
        transport = HtmlScrapeTransport(
            self.config,
            credentials={"cookies": {"csrf": "t"}, "headers": {"User-Agent": "coursesync-test"}},
        )
        self.addCleanup(transport.close)
        self.assertEqual(transport._session.cookies.get("session"), "abc")
        self.assertEqual(transport._session.cookies.get("csrf"), "t")
        self.assertEqual(transport._session.headers["User-Agent"], "coursesync-test")

    def test_list_courses_fetches_courses_page(self) -> None:
        transport = HtmlScrapeTransport(self.config, timeout_seconds=7)
        self.addCleanup(transport.close)
        response = mock.Mock(text=COURSES_HTML)
        with mock.patch.object(transport._session, "get", return_value=response) as get:
            courses = transport.list_courses()
        get.assert_called_once_with("https://school.example.com/courses", timeout=7)
        self.assertEqual(len(courses), 2)

    def test_http_errors_become_fetch_errors(self) -> None:
        transport = HtmlScrapeTransport(self.config)
        self.addCleanup(transport.close)
        with mock.patch.object(transport._session, "get", side_effect=requests.Timeout("read timed out")):
            with self.assertRaises(SourceFetchError) as ctx:
                transport.fetch_course_items(CALCULUS)
        self.assertEqual(ctx.exception.course_id, "101")
        self.assertIn("Timeout", str(ctx.exception))

    def test_missing_base_url(self) -> None:
        transport = HtmlScrapeTransport(ScrapeConfig())
        self.addCleanup(transport.close)
        with self.assertRaises(SourceFetchError):
            transport.list_courses()


if __name__ == "__main__":
    unittest.main()
