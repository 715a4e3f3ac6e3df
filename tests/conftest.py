from __future__ import annotations

import io
import sys
from pathlib import Path
from typing import Callable

import numpy as np
import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coursedb.bootstrap import Bootstrapper
from coursedb.config import SECRET_KEY_ENV, AppConfig
from coursedb.context import AppContext


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_file = config_dir / "default.json"
    config_file.write_text(
        """
        {
            \"storage_root\": \"storage\",\n
            \"database_file\": \"storage/courses.db\"\n
        }
        """,
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv(SECRET_KEY_ENV, raising=False)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/courses.db",
            "fingerprint": {"worker_count": 4},
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def app_context(temp_config: AppConfig) -> AppContext:
    return AppContext.build(temp_config)


@pytest.fixture()
def make_payload() -> Callable[..., bytes]:
    """Return a factory for reproducible pseudo-random course payloads."""

    def factory(seed: int, size: int = 64 * 1024) -> bytes:
        rng = np.random.default_rng(seed)
        return rng.integers(0, 256, size=size, dtype=np.uint8).tobytes()

    return factory


@pytest.fixture()
def near_duplicate() -> Callable[..., bytes]:
    """Return a helper flipping a handful of scattered bytes of a payload."""

    def mutate(payload: bytes, changes: int = 10, seed: int = 7) -> bytes:
        rng = np.random.default_rng(seed)
        data = bytearray(payload)
        for position in rng.choice(len(data), size=changes, replace=False):
            data[int(position)] ^= 0xFF
        return bytes(data)

    return mutate


@pytest.fixture()
def thumbnail_bytes() -> bytes:
    image = Image.new("RGB", (640, 360), color=(200, 80, 40))
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=90)
    return buffer.getvalue()
