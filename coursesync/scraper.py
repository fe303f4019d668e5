from __future__ import annotations

import logging
import re
from typing import Any, Protocol
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup, Tag

from coursesync.errors import SourceFetchError
from coursesync.models import RawScrapeItem, RemoteCourse, ScrapeConfig

logger = logging.getLogger(__name__)

COURSE_LINK_PATTERN = re.compile(r"/course/(\d+)")

# Selector sets are heuristic; the remote markup changes without notice.
COURSE_CONTAINER_SELECTOR = ".course-item, .s-course-item, [class*='course']"
COURSE_TITLE_SELECTOR = ".course-title, h3, h4, a"
EVENT_SELECTOR = ".upcoming-event, .s-event-title, [class*='assignment'], [class*='event']"
TITLE_SELECTOR = ".event-title, .title, h3, h4, a"
DATE_SELECTOR = ".date, .due-date, time, [class*='date']"
DESCRIPTION_SELECTOR = ".description, .details"


class ScrapeTransport(Protocol):
    def list_courses(self) -> list[RemoteCourse]: ...

    def fetch_course_items(self, course: RemoteCourse) -> list[RawScrapeItem]: ...

    def close(self) -> None: ...


def _text(element: Tag | None) -> str:
    if element is None:
        return ""
    return re.sub(r"\s+", " ", element.get_text(" ", strip=True)).strip()


def extract_courses(html: str, base_url: str, course_path_template: str) -> list[RemoteCourse]:
    soup = BeautifulSoup(html, "html.parser")
    courses: dict[str, RemoteCourse] = {}
    for container in soup.select(COURSE_CONTAINER_SELECTOR):
        link = container.select_one("a[href*='/course/']")
        title = container.select_one(COURSE_TITLE_SELECTOR)
        if link is None or title is None:
            continue
        match = COURSE_LINK_PATTERN.search(str(link.get("href") or ""))
        if not match:
            continue
        course_id = match.group(1)
        name = _text(title)
        if course_id in courses or not name:
            continue
        url = urljoin(base_url + "/", course_path_template.format(course_id=course_id).lstrip("/"))
        courses[course_id] = RemoteCourse(id=course_id, name=name, url=url)
    return sorted(courses.values(), key=lambda course: course.id)


def extract_items(html: str, course: RemoteCourse) -> list[RawScrapeItem]:
    """Pull (title, date, description) tuples out of a course page.

    Event selectors match nested elements too, so candidates are grouped by
    title and the dated ones win over bare title matches.
    """
    soup = BeautifulSoup(html, "html.parser")
    candidates: dict[str, list[RawScrapeItem]] = {}
    for element in soup.select(EVENT_SELECTOR):
        title = _text(element.select_one(TITLE_SELECTOR))
        if not title:
            continue
        date_element = element.select_one(DATE_SELECTOR)
        due_date_attr = ""
        if date_element is not None and date_element.get("datetime"):
            due_date_attr = str(date_element.get("datetime")).strip()
        candidates.setdefault(title, []).append(
            RawScrapeItem(
                title=title,
                description=_text(element.select_one(DESCRIPTION_SELECTOR)),
                due_date_text=_text(date_element),
                due_date_attr=due_date_attr,
                course_id=course.id,
                course_name=course.name,
            )
        )

    items: list[RawScrapeItem] = []
    for group in candidates.values():
        dated = [item for item in group if item.due_date_attr or item.due_date_text]
        seen: set[tuple[str, str]] = set()
        for item in dated or group[:1]:
            key = (item.due_date_attr, item.due_date_text)
            if key in seen:
                continue
            seen.add(key)
            items.append(item)
    return items


class HtmlScrapeTransport:
    """Fetch course pages over HTTP with an already authenticated session.

    ``credentials`` is opaque to the sync engine; ``cookies`` and ``headers``
    entries are applied to the session as given.
    """

    def __init__(
        self,
        config: ScrapeConfig,
        credentials: dict[str, Any] | None = None,
        timeout_seconds: float = 60,
    ) -> None:
        self.config = config
        self.timeout_seconds = timeout_seconds
        self._session = requests.Session()
        self._session.cookies.update(config.cookies)
        credentials = credentials or {}
        if isinstance(credentials.get("cookies"), dict):
            self._session.cookies.update({str(k): str(v) for k, v in credentials["cookies"].items()})
        if isinstance(credentials.get("headers"), dict):
            self._session.headers.update({str(k): str(v) for k, v in credentials["headers"].items()})

    def _get(self, url: str, course_id: str = "") -> str:
        try:
            response = self._session.get(url, timeout=self.timeout_seconds)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise SourceFetchError(f"{type(exc).__name__}: {exc}", course_id=course_id) from exc
        return response.text

    def list_courses(self) -> list[RemoteCourse]:
        if not self.config.base_url:
            raise SourceFetchError("Scrape base_url is not configured.")
        url = urljoin(self.config.base_url + "/", self.config.courses_path.lstrip("/"))
        courses = extract_courses(self._get(url), self.config.base_url, self.config.course_path_template)
        logger.info("Found %d remote courses", len(courses))
        return courses

    def fetch_course_items(self, course: RemoteCourse) -> list[RawScrapeItem]:
        url = course.url or urljoin(
            self.config.base_url + "/",
            self.config.course_path_template.format(course_id=course.id).lstrip("/"),
        )
        items = extract_items(self._get(url, course_id=course.id), course)
        logger.info("Found %d items in %s", len(items), course.name)
        return items

    def close(self) -> None:
        self._session.close()
