"""Exception hierarchy shared by the ingestion and artifact services."""

from __future__ import annotations

from typing import Any, Dict


class CourseError(RuntimeError):
    """Base class for failures tied to a single course."""

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.__class__.__name__, "message": str(self)}


class CodecError(CourseError):
    """Raised when an upload cannot be decoded into courses."""


class PersistenceError(CourseError):
    """Raised when the storage backend fails. Never retried by the core."""


class MissingArtifactError(CourseError):
    """Raised when a payload or thumbnail that must exist is absent."""


class CourseNotFoundError(CourseError):
    """Raised when a course id does not resolve to a stored course."""

    def __init__(self, course_id: int) -> None:
        super().__init__(f"Course {course_id} not found")
        self.course_id = course_id


class SimilarityConflict(CourseError):
    """Raised when an upload is a near-duplicate of an accepted course."""

    def __init__(self, existing_id: int, existing_title: str, jaccard: float) -> None:
        super().__init__(
            f"Course is too similar to '{existing_title}' (id={existing_id}, jaccard={jaccard:.4f})"
        )
        self.existing_id = existing_id
        self.existing_title = existing_title
        self.jaccard = jaccard

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "similarCourseId": str(self.existing_id),
            "title": self.existing_title,
            "jaccard": self.jaccard,
        }


__all__ = [
    "CodecError",
    "CourseError",
    "CourseNotFoundError",
    "MissingArtifactError",
    "PersistenceError",
    "SimilarityConflict",
]
