"""Deterministic payload and thumbnail transforms used by the artifact cache.

Every transform here must be a pure function of its input: the artifact cache
derives representations without a per-key lock and relies on concurrent
derivations producing identical bytes.
"""

from __future__ import annotations

import io
import logging
import os
import zlib
from pathlib import Path
from typing import Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from PIL import Image, UnidentifiedImageError

from ..errors import CodecError, MissingArtifactError


LOGGER = logging.getLogger(__name__)


COMPRESSION_LEVEL = 9
THUMBNAIL_JPEG_QUALITY = 85


class PayloadCipher:
    """Symmetric at-rest encryption for canonical course payloads."""

    def __init__(self, key: bytes) -> None:
        self._fernet = Fernet(key)

    @staticmethod
    def generate_key() -> bytes:
        return Fernet.generate_key()

    def encrypt(self, data: bytes) -> bytes:
        return self._fernet.encrypt(data)

    def decrypt(self, token: bytes) -> bytes:
        try:
            return self._fernet.decrypt(token)
        except InvalidToken as error:
            raise MissingArtifactError(
                "Stored course payload cannot be decrypted; storage is corrupted "
                "or the key changed"
            ) from error


def load_or_create_key(key_file: Path, *, env_key: Optional[str] = None) -> bytes:
    """Return the cipher key from *env_key* or *key_file*, creating the file if needed."""

    if env_key:
        return env_key.encode("ascii")
    if key_file.exists():
        return key_file.read_bytes().strip()

    key_file.parent.mkdir(parents=True, exist_ok=True)
    key = PayloadCipher.generate_key()
    key_file.write_bytes(key)
    try:
        os.chmod(key_file, 0o600)
    except OSError as error:  # pragma: no cover - platform dependent
        LOGGER.warning("Could not restrict permissions on %s: %s", key_file, error)
    LOGGER.info("Generated new payload cipher key at %s", key_file)
    return key


def compress(data: bytes) -> bytes:
    return zlib.compress(data, COMPRESSION_LEVEL)


def decompress(data: bytes) -> bytes:
    return zlib.decompress(data)


def verify_thumbnail(jpeg_bytes: bytes) -> None:
    """Raise :class:`CodecError` unless *jpeg_bytes* decodes as an image."""

    try:
        with Image.open(io.BytesIO(jpeg_bytes)) as image:
            image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as error:
        raise CodecError("Thumbnail is not a readable image") from error


def resize_thumbnail(
    jpeg_bytes: bytes,
    size: Tuple[int, int],
    *,
    quality: int = THUMBNAIL_JPEG_QUALITY,
) -> bytes:
    """Resize a thumbnail to exactly *size* and re-encode it as JPEG."""

    try:
        with Image.open(io.BytesIO(jpeg_bytes)) as source:
            image = source.convert("RGB")
    except (UnidentifiedImageError, OSError) as error:
        raise MissingArtifactError("Stored thumbnail is not a readable image") from error

    resized = image.resize(size, Image.Resampling.LANCZOS)
    buffer = io.BytesIO()
    resized.save(buffer, format="JPEG", quality=quality)
    LOGGER.debug("Resized thumbnail %sx%s -> %sx%s", image.width, image.height, *size)
    return buffer.getvalue()


__all__ = [
    "COMPRESSION_LEVEL",
    "PayloadCipher",
    "THUMBNAIL_JPEG_QUALITY",
    "compress",
    "decompress",
    "load_or_create_key",
    "resize_thumbnail",
    "verify_thumbnail",
]
