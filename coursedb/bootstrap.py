"""Bootstrap logic that prepares runtime directories, the SQLite schema and the cipher key."""

from __future__ import annotations

import logging
import shutil
import sqlite3
import time
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config
from .processing.transforms import load_or_create_key
from .services.events import emit_file_event

LOGGER = logging.getLogger(__name__)


SCHEMA = """
PRAGMA foreign_keys = ON;
CREATE TABLE IF NOT EXISTS courses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    difficulty TEXT,
    votes INTEGER NOT NULL DEFAULT 0,
    uploaded INTEGER NOT NULL,
    last_modified INTEGER NOT NULL,
    signature BLOB NOT NULL,
    signature_fingerprint TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS course_data (
    course_id INTEGER PRIMARY KEY,
    data_encrypted BLOB NOT NULL,
    data_compressed BLOB,
    data_transcoded BLOB,
    thumb BLOB,
    thumb_s BLOB,
    thumb_m BLOB,
    thumb_l BLOB,
    FOREIGN KEY(course_id) REFERENCES courses(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS votes (
    account_id TEXT NOT NULL,
    course_id INTEGER NOT NULL,
    value INTEGER NOT NULL,
    timestamp INTEGER NOT NULL,
    PRIMARY KEY(account_id, course_id),
    FOREIGN KEY(course_id) REFERENCES courses(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_courses_owner ON courses(owner);
CREATE INDEX IF NOT EXISTS idx_courses_uploaded ON courses(uploaded);
"""


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        self._ensure_cipher_key()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        for label, path in (
            ("storage", self._config.storage_root),
            ("database", self._config.database_file.parent),
        ):
            if not config_module._ensure_writable_directory(path):
                raise BootstrapError(
                    f"The {label} directory '{path}' is not writable. "
                    "Update config/default.json or adjust permissions."
                )
            LOGGER.debug("Ensured directory exists: %s", path)

        export_root = self._config.export_root
        export_root.mkdir(parents=True, exist_ok=True)
        for child in export_root.iterdir():
            try:
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError as error:  # pragma: no cover - best effort cleanup
                LOGGER.warning("Could not remove stale export %s: %s", child, error)
        LOGGER.debug("Cleared export directory: %s", export_root)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        try:
            connection = sqlite3.connect(self._config.database_file)
        except sqlite3.Error as error:
            raise BootstrapError(
                f"Unable to open database '{self._config.database_file}': {error}"
            ) from error
        try:
            connection.executescript(SCHEMA)
            connection.commit()
        finally:
            connection.close()

    def _ensure_cipher_key(self) -> None:
        if self._config.secret_key:
            LOGGER.debug("Using payload cipher key from the environment")
            return
        key_file: Path = self._config.key_file
        existed = key_file.exists()
        start = time.perf_counter()
        try:
            load_or_create_key(key_file)
        except OSError as error:
            raise BootstrapError(f"Unable to prepare cipher key file '{key_file}'") from error
        emit_file_event(
            "ensure_cipher_key",
            payload={"path": key_file, "created": not existed},
            duration_ms=(time.perf_counter() - start) * 1000.0,
            level=logging.DEBUG,
        )


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "SCHEMA", "initialize_app"]
