from __future__ import annotations


class CourseSyncError(Exception):
    pass


class DocumentParseError(CourseSyncError):
    """The whole calendar document could not be read."""


class EntryParseError(CourseSyncError):
    def __init__(self, message: str, ordinal: int | None = None) -> None:
        super().__init__(message)
        self.ordinal = ordinal


class SourceFetchError(CourseSyncError):
    def __init__(self, message: str, course_id: str = "") -> None:
        super().__init__(message)
        self.course_id = course_id


class StoreWriteError(CourseSyncError):
    """The store rejected a write; nothing from the batch was committed."""
