"""Runtime configuration: storage paths and fingerprint engine parameters."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".coursedb_write_check"

SECRET_KEY_ENV = "COURSEDB_SECRET_KEY"


def _ensure_writable_directory(path: Path) -> bool:
    """Create *path* if needed and probe it with a throwaway file."""

    probe = path / _PERMISSION_SENTINEL
    try:
        path.mkdir(parents=True, exist_ok=True)
        probe.write_text("ok", encoding="utf-8")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            probe.unlink()
    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Pick the first writable directory among *preferred* and *fallbacks*.

    Returns the chosen path and whether it is a fallback. If none is usable
    *preferred* comes back unchanged and bootstrap reports the problem.
    """

    preferred = preferred.resolve()
    candidates: List[Path] = [preferred]
    candidates.extend(path.resolve() for path in fallbacks)
    for position, candidate in enumerate(candidates):
        if position and candidate == preferred:
            continue
        if not _ensure_writable_directory(candidate):
            continue
        if position:
            LOGGER.warning(
                "The %s directory %s is unusable; falling back to %s", label, preferred, candidate
            )
        return candidate, bool(position)

    LOGGER.warning("No writable %s directory found (tried %s)", label, preferred)
    return preferred, False


def _resolve_database_file(
    requested: Path,
    *,
    preferred_storage: Path,
    storage_root: Path,
) -> Path:
    """Place the database next to the storage root when *requested* is unusable.

    When the storage root itself fell back, a database configured inside the
    preferred storage root moves along with it.
    """

    candidates: List[Path] = []
    if storage_root != preferred_storage:
        with contextlib.suppress(ValueError):
            candidates.append(storage_root / requested.relative_to(preferred_storage))
    candidates.append(requested)
    candidates.append(storage_root / requested.name)

    for candidate in candidates:
        candidate = candidate.resolve()
        if _ensure_writable_directory(candidate.parent):
            if candidate != requested:
                LOGGER.warning("Database %s relocated to %s", requested, candidate)
            return candidate

    LOGGER.warning("No writable location found for database %s", requested)
    return requested


@dataclass(frozen=True)
class FingerprintConfig:
    """Parameters of the near-duplicate detection engine."""

    permutation_count: int = 128
    band_count: int = 8
    shingle_size: int = 8
    seed: int = 0x5EED_C0DE
    similarity_threshold: float = 0.95
    worker_count: int = 4

    @classmethod
    def from_mapping(cls, mapping: Optional[Mapping[str, Any]]) -> "FingerprintConfig":
        if not mapping:
            return cls()
        defaults = cls()
        values: Dict[str, Any] = {}
        for name in (
            "permutation_count",
            "band_count",
            "shingle_size",
            "seed",
            "worker_count",
        ):
            values[name] = int(mapping.get(name, getattr(defaults, name)))
        values["similarity_threshold"] = float(
            mapping.get("similarity_threshold", defaults.similarity_threshold)
        )
        if values["band_count"] <= 0 or values["permutation_count"] % values["band_count"] != 0:
            raise ValueError(
                "band_count must divide permutation_count "
                f"({values['band_count']} does not divide {values['permutation_count']})"
            )
        if not 0.0 < values["similarity_threshold"] <= 1.0:
            raise ValueError("similarity_threshold must be within (0, 1]")
        return cls(**values)


@dataclass(frozen=True)
class AppConfig:
    """Container describing runtime paths and engine parameters."""

    storage_root: Path
    database_file: Path
    key_file: Path
    fingerprint: FingerprintConfig = field(default_factory=FingerprintConfig)

    @property
    def export_root(self) -> Path:
        """Location used for exported course bundles."""

        return (self.storage_root / "_exports").resolve()

    @property
    def secret_key(self) -> Optional[str]:
        """Cipher key supplied through the environment, if any."""

        value = (os.environ.get(SECRET_KEY_ENV) or "").strip()
        return value or None

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        """Resolve *mapping* relative to *base_path*, falling back to ``~/.coursedb``."""

        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_root, _ = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(Path.home() / ".coursedb" / "storage",),
        )
        database_file = _resolve_database_file(
            (base_path / mapping["database_file"]).resolve(),
            preferred_storage=preferred_storage,
            storage_root=storage_root,
        )
        key_file = mapping.get("key_file")
        return cls(
            storage_root=storage_root,
            database_file=database_file,
            key_file=(base_path / key_file if key_file else storage_root / "coursedb.key").resolve(),
            fingerprint=FingerprintConfig.from_mapping(mapping.get("fingerprint")),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Read *config_path* (``config/default.json`` of the project by default)."""

    project_root = Path(__file__).resolve().parent.parent
    path = config_path or project_root / "config" / "default.json"
    raw_config = json.loads(path.read_text(encoding="utf-8"))
    return AppConfig.from_mapping(raw_config, base_path=project_root)


__all__ = ["AppConfig", "FingerprintConfig", "SECRET_KEY_ENV", "load_config"]
