"""Lazy derivation and caching of alternate course representations."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from ..errors import CourseNotFoundError, MissingArtifactError
from ..processing.codec import DecodedCourse, ZipCourseCodec, transcode_course
from ..processing.transforms import PayloadCipher, compress, resize_thumbnail
from .events import emit_file_event
from .storage import CoursePersistence


LOGGER = logging.getLogger(__name__)


class Representation(str, Enum):
    ENCRYPTED = "encrypted"
    COMPRESSED = "compressed"
    TRANSCODED = "transcoded"
    THUMB = "thumb"
    THUMB_S = "thumb_s"
    THUMB_M = "thumb_m"
    THUMB_L = "thumb_l"


FIELD_NAMES: Dict[Representation, str] = {
    Representation.ENCRYPTED: "data_encrypted",
    Representation.COMPRESSED: "data_compressed",
    Representation.TRANSCODED: "data_transcoded",
    Representation.THUMB: "thumb",
    Representation.THUMB_S: "thumb_s",
    Representation.THUMB_M: "thumb_m",
    Representation.THUMB_L: "thumb_l",
}

THUMBNAIL_DIMENSIONS: Dict[Representation, Tuple[int, int]] = {
    Representation.THUMB_S: (160, 90),
    Representation.THUMB_M: (320, 180),
    Representation.THUMB_L: (480, 270),
}

CANONICAL_REPRESENTATIONS = frozenset({Representation.ENCRYPTED, Representation.THUMB})
COURSE_FORMATS = frozenset(
    {Representation.ENCRYPTED, Representation.COMPRESSED, Representation.TRANSCODED}
)


class ArtifactCache:
    """Serve stored representations and derive missing ones on first request.

    Concurrent requests for the same missing representation may both derive
    it; the transforms are pure, so whichever write lands last stores the
    same bytes.
    """

    def __init__(
        self,
        repository: CoursePersistence,
        cipher: PayloadCipher,
        *,
        transcoder: Callable[[bytes], bytes] = transcode_course,
        compressor: Callable[[bytes], bytes] = compress,
        thumbnail_resizer: Callable[[bytes, Tuple[int, int]], bytes] = resize_thumbnail,
    ) -> None:
        self._repository = repository
        self._cipher = cipher
        self._transcoder = transcoder
        self._compressor = compressor
        self._thumbnail_resizer = thumbnail_resizer

    def get(self, course_id: int, representation: Representation) -> bytes:
        representation = Representation(representation)
        field_name = FIELD_NAMES[representation]
        cached = self._repository.fetch_derived_field(course_id, field_name)
        if cached is not None:
            LOGGER.debug("Serving cached %s for course id=%s", representation.value, course_id)
            return cached
        if representation in CANONICAL_REPRESENTATIONS:
            raise MissingArtifactError(
                f"Course {course_id} has no stored {representation.value} artifact"
            )

        start = time.perf_counter()
        derived = self._derive(course_id, representation)
        self._repository.update_derived_field(course_id, field_name, derived)
        emit_file_event(
            "derive_artifact",
            payload={
                "course_id": course_id,
                "representation": representation,
                "size": len(derived),
            },
            duration_ms=(time.perf_counter() - start) * 1000.0,
            level=logging.DEBUG,
        )
        return derived

    def build_bundle(
        self,
        course_id: int,
        course_format: Representation = Representation.ENCRYPTED,
    ) -> bytes:
        """Return a download archive holding the course data and its thumbnail."""

        course_format = Representation(course_format)
        if course_format not in COURSE_FORMATS:
            raise ValueError(f"{course_format.value} is not a course data format")
        record = self._repository.get_course(course_id)
        if record is None:
            raise CourseNotFoundError(course_id)
        bundle = DecodedCourse(
            title=record.title,
            payload=self.get(course_id, course_format),
            thumbnail=self.get(course_id, Representation.THUMB),
        )
        return ZipCourseCodec.encode([bundle])

    def _derive(self, course_id: int, representation: Representation) -> bytes:
        dimensions: Optional[Tuple[int, int]] = THUMBNAIL_DIMENSIONS.get(representation)
        if dimensions is not None:
            original = self._repository.fetch_derived_field(course_id, "thumb")
            if original is None:
                raise MissingArtifactError(f"Course {course_id} has no stored thumbnail")
            return self._thumbnail_resizer(original, dimensions)

        payload = self._cipher.decrypt(self._repository.fetch_payload(course_id))
        if representation is Representation.TRANSCODED:
            payload = self._transcoder(payload)
        return self._compressor(payload)


__all__ = [
    "ArtifactCache",
    "CANONICAL_REPRESENTATIONS",
    "COURSE_FORMATS",
    "FIELD_NAMES",
    "Representation",
    "THUMBNAIL_DIMENSIONS",
]
