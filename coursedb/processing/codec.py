"""Upload container decoding and canonical transcoding of course payloads."""

from __future__ import annotations

import base64
import hashlib
import io
import json
import logging
import re
import zipfile
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from ..errors import CodecError


LOGGER = logging.getLogger(__name__)


MAX_COURSES_PER_UPLOAD = 120
TRANSCODE_FORMAT = "coursedb/course2"
TRANSCODE_VERSION = 1

_MEMBER_PATTERN = re.compile(
    r"^course_(?P<kind>data|thumb|meta)_(?P<index>\d{3})\.(?P<ext>bcd|jpg|jpeg|json)$",
    re.IGNORECASE,
)
_KIND_EXTENSIONS = {
    "data": {"bcd"},
    "thumb": {"jpg", "jpeg"},
    "meta": {"json"},
}
# Fixed member timestamp so that encoded archives are byte-for-byte stable.
_ZIP_TIMESTAMP = (1980, 1, 1, 0, 0, 0)


@dataclass
class DecodedCourse:
    """A single course extracted from an upload."""

    title: str
    payload: bytes
    thumbnail: Optional[bytes] = None


class CourseCodec(Protocol):
    """Protocol describing an upload decoder."""

    def decode(self, raw_bytes: bytes) -> List[DecodedCourse]:
        """Return the courses contained in *raw_bytes* or raise :class:`CodecError`."""


class ZipCourseCodec:
    """Decode zip uploads holding ``course_data_NNN.bcd`` members.

    Each course may carry a ``course_thumb_NNN.jpg`` thumbnail and a
    ``course_meta_NNN.json`` document with a ``title``. Members are matched on
    their base name, so archives with nested folders are accepted.
    """

    def __init__(self, *, max_courses: int = MAX_COURSES_PER_UPLOAD) -> None:
        self._max_courses = max_courses

    def decode(self, raw_bytes: bytes) -> List[DecodedCourse]:
        if not raw_bytes:
            raise CodecError("Upload is empty")
        try:
            archive = zipfile.ZipFile(io.BytesIO(raw_bytes))
        except zipfile.BadZipFile as error:
            raise CodecError("Upload is not a valid course archive") from error

        grouped: Dict[str, Dict[str, bytes]] = {}
        with archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                name = info.filename.rsplit("/", 1)[-1]
                match = _MEMBER_PATTERN.match(name)
                if match is None:
                    LOGGER.debug("Ignoring unrelated archive member '%s'", info.filename)
                    continue
                kind = match.group("kind").lower()
                if match.group("ext").lower() not in _KIND_EXTENSIONS[kind]:
                    LOGGER.debug("Ignoring member '%s' with unexpected extension", info.filename)
                    continue
                index = match.group("index")
                if kind in grouped.get(index, {}):
                    raise CodecError(f"Duplicate {kind} member for course {index}")
                try:
                    grouped.setdefault(index, {})[kind] = archive.read(info)
                except (zipfile.BadZipFile, OSError) as error:
                    raise CodecError(f"Archive member '{info.filename}' is corrupted") from error

        if not grouped:
            raise CodecError("Upload does not contain any course")
        if len(grouped) > self._max_courses:
            raise CodecError(
                f"Upload contains {len(grouped)} courses; at most {self._max_courses} are allowed"
            )

        courses: List[DecodedCourse] = []
        for index in sorted(grouped):
            members = grouped[index]
            payload = members.get("data")
            if payload is None:
                raise CodecError(f"Course {index} has no course data member")
            courses.append(
                DecodedCourse(
                    title=self._read_title(index, members.get("meta")),
                    payload=payload,
                    thumbnail=members.get("thumb"),
                )
            )
        LOGGER.debug("Decoded %d course(s) from upload of %d bytes", len(courses), len(raw_bytes))
        return courses

    @staticmethod
    def _read_title(index: str, meta: Optional[bytes]) -> str:
        fallback = f"Course {index}"
        if meta is None:
            return fallback
        try:
            document = json.loads(meta.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as error:
            raise CodecError(f"Course {index} metadata is not valid JSON") from error
        if not isinstance(document, dict):
            raise CodecError(f"Course {index} metadata must be a JSON object")
        title = str(document.get("title") or "").strip()
        return title or fallback

    @staticmethod
    def encode(courses: Sequence[DecodedCourse]) -> bytes:
        """Pack *courses* into an archive that :meth:`decode` accepts."""

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for position, course in enumerate(courses):
                stem = f"{position:03d}"
                _write_member(archive, f"course_data_{stem}.bcd", course.payload)
                if course.thumbnail is not None:
                    _write_member(archive, f"course_thumb_{stem}.jpg", course.thumbnail)
                meta = json.dumps({"title": course.title}, sort_keys=True).encode("utf-8")
                _write_member(archive, f"course_meta_{stem}.json", meta)
        return buffer.getvalue()


def _write_member(archive: zipfile.ZipFile, name: str, data: bytes) -> None:
    info = zipfile.ZipInfo(name, date_time=_ZIP_TIMESTAMP)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = 0o644 << 16
    archive.writestr(info, data)


def transcode_course(payload: bytes) -> bytes:
    """Return the canonical, self-describing encoding of a decrypted payload."""

    document = {
        "format": TRANSCODE_FORMAT,
        "version": TRANSCODE_VERSION,
        "size": len(payload),
        "sha256": hashlib.sha256(payload).hexdigest(),
        "data": base64.b64encode(payload).decode("ascii"),
    }
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")


def read_transcoded(encoded: bytes) -> bytes:
    """Inverse of :func:`transcode_course`; validates the embedded digest."""

    try:
        document = json.loads(encoded.decode("utf-8"))
        payload = base64.b64decode(document["data"], validate=True)
    except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as error:
        raise CodecError("Transcoded course is malformed") from error
    if document.get("format") != TRANSCODE_FORMAT:
        raise CodecError(f"Unsupported transcoded format: {document.get('format')!r}")
    if hashlib.sha256(payload).hexdigest() != document.get("sha256"):
        raise CodecError("Transcoded course failed its integrity check")
    return payload


__all__ = [
    "CourseCodec",
    "DecodedCourse",
    "MAX_COURSES_PER_UPLOAD",
    "ZipCourseCodec",
    "read_transcoded",
    "transcode_course",
]
