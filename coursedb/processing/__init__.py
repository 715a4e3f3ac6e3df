"""Codec and transform backends for course ingestion and delivery."""

from .codec import (
    CourseCodec,
    DecodedCourse,
    ZipCourseCodec,
    read_transcoded,
    transcode_course,
)
from .transforms import (
    PayloadCipher,
    compress,
    decompress,
    load_or_create_key,
    resize_thumbnail,
    verify_thumbnail,
)

__all__ = [
    "CourseCodec",
    "DecodedCourse",
    "PayloadCipher",
    "ZipCourseCodec",
    "compress",
    "decompress",
    "load_or_create_key",
    "read_transcoded",
    "resize_thumbnail",
    "transcode_course",
    "verify_thumbnail",
]
