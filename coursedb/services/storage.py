"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from ..config import AppConfig
from ..errors import CourseNotFoundError, MissingArtifactError, PersistenceError
from ..similarity import Signature


LOGGER = logging.getLogger(__name__)


class Difficulty(str, Enum):
    EASY = "easy"
    NORMAL = "normal"
    EXPERT = "expert"
    SUPER_EXPERT = "superexpert"


class SortField(str, Enum):
    UPLOADED = "uploaded"
    LAST_MODIFIED = "last_modified"
    VOTES = "votes"
    TITLE = "title"


DERIVED_FIELDS: FrozenSet[str] = frozenset(
    {"data_compressed", "data_transcoded", "thumb_s", "thumb_m", "thumb_l"}
)
ARTIFACT_FIELDS: Tuple[str, ...] = (
    "data_encrypted",
    "data_compressed",
    "data_transcoded",
    "thumb",
    "thumb_s",
    "thumb_m",
    "thumb_l",
)

_COURSE_COLUMNS = (
    "c.id, c.owner, c.title, c.difficulty, c.votes, c.uploaded, c.last_modified, "
    "c.signature, c.signature_fingerprint"
)
_ARTIFACT_PRESENCE = ", ".join(
    f"d.{name} IS NOT NULL AS has_{name}" for name in ARTIFACT_FIELDS
)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CourseDraft:
    """A course that passed the similarity check and is about to be stored."""

    owner: str
    title: str
    payload_encrypted: bytes
    thumbnail: Optional[bytes]
    signature: Signature
    difficulty: Optional[Difficulty] = None
    uploaded: int = field(default_factory=_now_ms)


@dataclass
class CourseRecord:
    id: int
    owner: str
    title: str
    difficulty: Optional[Difficulty]
    votes: int
    uploaded: int
    last_modified: int
    signature: Signature
    artifacts: FrozenSet[str] = frozenset()

    def to_dict(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "id": str(self.id),
            "owner": self.owner,
            "title": self.title,
            "lastModified": self.last_modified,
            "uploaded": self.uploaded,
            "votes": self.votes,
        }
        if self.difficulty is not None:
            document["difficulty"] = self.difficulty.value
        return document


class CoursePersistence(Protocol):
    """Storage collaborator consumed by the ingestion pipeline and artifact cache."""

    def store(self, draft: CourseDraft) -> int:
        """Persist *draft* and return its new id."""

    def fetch_signatures(self, course_ids: Iterable[int]) -> Dict[int, Signature]:
        """Return the stored signature of every id that still exists."""

    def fetch_payload(self, course_id: int) -> bytes:
        """Return the canonical encrypted payload."""

    def fetch_derived_field(self, course_id: int, field_name: str) -> Optional[bytes]:
        """Return a stored artifact column or ``None`` when it is not populated."""

    def update_derived_field(self, course_id: int, field_name: str, data: bytes) -> None:
        """Overwrite a derived artifact column (last write wins)."""

    def get_course(self, course_id: int) -> Optional[CourseRecord]:
        """Return course metadata or ``None``."""


class CourseRepository:
    """SQLite implementation of :class:`CoursePersistence` plus metadata helpers."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
        timeout: float = 30.0,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter
        self._timeout = timeout

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any):
        """Time a DB action, report it to the emitter and map driver errors.

        ``sqlite3.Error`` raised inside the block surfaces as
        :class:`PersistenceError`.
        """

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        try:
            yield event_payload
        except sqlite3.Error as exc:
            event_payload["status"] = "error"
            event_payload["error"] = f"{exc.__class__.__name__}: {exc}"
            raise PersistenceError(f"Database operation '{action}' failed: {exc}") from exc
        except Exception as exc:
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            event_payload.setdefault("status", "ok")
            if self._event_emitter is not None:
                filtered = {
                    key: value for key, value in event_payload.items() if value is not None
                }
                self._event_emitter(
                    action,
                    payload=filtered,
                    duration_ms=(time.perf_counter() - start) * 1000.0,
                    level=logging.DEBUG,
                )

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | None = None,
    ) -> sqlite3.Cursor:
        params = tuple(parameters) if parameters is not None else ()
        LOGGER.debug(
            "Executing %s with %d parameter(s)", self._summarize_sql(statement), len(params)
        )
        return connection.execute(statement, params)

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success and always close it."""

        connection = sqlite3.connect(self._db_path, timeout=self._timeout)
        connection.row_factory = sqlite3.Row
        try:
            connection.execute("PRAGMA foreign_keys = ON")
            with connection:
                yield connection
        finally:
            connection.close()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> CourseRecord:
        keys = row.keys()
        artifacts = frozenset(
            name for name in ARTIFACT_FIELDS if f"has_{name}" in keys and row[f"has_{name}"]
        )
        difficulty = row["difficulty"]
        return CourseRecord(
            id=int(row["id"]),
            owner=row["owner"],
            title=row["title"],
            difficulty=Difficulty(difficulty) if difficulty else None,
            votes=int(row["votes"]),
            uploaded=int(row["uploaded"]),
            last_modified=int(row["last_modified"]),
            signature=Signature.from_bytes(row["signature"], row["signature_fingerprint"]),
            artifacts=artifacts,
        )

    @staticmethod
    def _check_field(field_name: str, allowed: Iterable[str]) -> None:
        if field_name not in allowed:
            raise ValueError(f"Unknown artifact field: {field_name!r}")

    # ---------------------------------------------------------------------
    # Persistence collaborator
    # ---------------------------------------------------------------------
    def store(self, draft: CourseDraft) -> int:
        LOGGER.debug(
            "Storing course '%s' for owner=%s (payload=%d bytes, thumbnail=%s)",
            draft.title,
            draft.owner,
            len(draft.payload_encrypted),
            draft.thumbnail is not None,
        )
        with self._track_db_event("store_course", table="courses", owner=draft.owner) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    """
                    INSERT INTO courses(
                        owner, title, difficulty, votes, uploaded, last_modified,
                        signature, signature_fingerprint
                    ) VALUES (?, ?, ?, 0, ?, ?, ?, ?)
                    """,
                    (
                        draft.owner,
                        draft.title,
                        draft.difficulty.value if draft.difficulty else None,
                        draft.uploaded,
                        draft.uploaded,
                        draft.signature.to_bytes(),
                        draft.signature.fingerprint,
                    ),
                )
                course_id = int(cursor.lastrowid)
                self._execute(
                    connection,
                    "INSERT INTO course_data(course_id, data_encrypted, thumb) VALUES (?, ?, ?)",
                    (course_id, draft.payload_encrypted, draft.thumbnail),
                )
                event["course_id"] = course_id
        LOGGER.debug("Course '%s' stored with id=%s", draft.title, course_id)
        return course_id

    def fetch_signatures(self, course_ids: Iterable[int]) -> Dict[int, Signature]:
        ids = sorted({int(course_id) for course_id in course_ids})
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._track_db_event("fetch_signatures", table="courses", requested=len(ids)) as event:
            with self._connect() as connection:
                rows = self._execute(
                    connection,
                    f"SELECT id, signature, signature_fingerprint FROM courses WHERE id IN ({placeholders})",
                    ids,
                ).fetchall()
            event["found"] = len(rows)
            signatures: Dict[int, Signature] = {}
            for row in rows:
                course_id = int(row["id"])
                try:
                    signatures[course_id] = Signature.from_bytes(
                        row["signature"], row["signature_fingerprint"]
                    )
                except ValueError as exc:
                    raise PersistenceError(
                        f"Stored signature of course {course_id} is corrupt: {exc}"
                    ) from exc
        return signatures

    def fetch_payload(self, course_id: int) -> bytes:
        payload = self.fetch_derived_field(course_id, "data_encrypted")
        if payload is None:
            raise MissingArtifactError(f"Course {course_id} has no stored payload")
        return payload

    def fetch_derived_field(self, course_id: int, field_name: str) -> Optional[bytes]:
        self._check_field(field_name, ARTIFACT_FIELDS)
        with self._track_db_event(
            "fetch_artifact", table="course_data", course_id=course_id, field=field_name
        ) as event:
            with self._connect() as connection:
                row = self._execute(
                    connection,
                    f"SELECT {field_name} AS value FROM course_data WHERE course_id = ?",
                    (course_id,),
                ).fetchone()
            event["found"] = row is not None
        if row is None:
            raise CourseNotFoundError(course_id)
        value = row["value"]
        return bytes(value) if value is not None else None

    def update_derived_field(self, course_id: int, field_name: str, data: bytes) -> None:
        self._check_field(field_name, DERIVED_FIELDS)
        with self._track_db_event(
            "update_artifact",
            table="course_data",
            course_id=course_id,
            field=field_name,
            size=len(data),
        ) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    f"UPDATE course_data SET {field_name} = ? WHERE course_id = ?",
                    (data, course_id),
                )
            event["rowcount"] = cursor.rowcount
        if cursor.rowcount == 0:
            raise CourseNotFoundError(course_id)

    # ---------------------------------------------------------------------
    # Metadata helpers
    # ---------------------------------------------------------------------
    def get_course(self, course_id: int) -> Optional[CourseRecord]:
        LOGGER.debug("Fetching course id=%s", course_id)
        with self._track_db_event("get_course", table="courses", course_id=course_id) as event:
            with self._connect() as connection:
                row = self._execute(
                    connection,
                    f"""
                    SELECT {_COURSE_COLUMNS}, {_ARTIFACT_PRESENCE}
                    FROM courses c LEFT JOIN course_data d ON d.course_id = c.id
                    WHERE c.id = ?
                    """,
                    (course_id,),
                ).fetchone()
            event["found"] = row is not None
        return self._row_to_record(row) if row else None

    @staticmethod
    def _build_filters(
        owner: Optional[str],
        difficulty: Optional[Difficulty],
        title: Optional[str],
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if owner is not None:
            clauses.append("c.owner = ?")
            params.append(owner)
        if difficulty is not None:
            clauses.append("c.difficulty = ?")
            params.append(Difficulty(difficulty).value)
        if title:
            clauses.append("c.title LIKE ? ESCAPE '\\'")
            escaped = title.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            params.append(f"%{escaped}%")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def list_courses(
        self,
        *,
        owner: Optional[str] = None,
        difficulty: Optional[Difficulty] = None,
        title: Optional[str] = None,
        sort: SortField = SortField.UPLOADED,
        descending: bool = True,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[CourseRecord]:
        where, params = self._build_filters(owner, difficulty, title)
        order = "DESC" if descending else "ASC"
        query = (
            f"SELECT {_COURSE_COLUMNS}, {_ARTIFACT_PRESENCE} "
            "FROM courses c LEFT JOIN course_data d ON d.course_id = c.id "
            f"{where} ORDER BY c.{SortField(sort).value} {order}, c.id {order}"
        )
        query += " LIMIT ? OFFSET ?"
        params.extend([-1 if limit is None else int(limit), max(0, int(offset))])
        with self._track_db_event("list_courses", table="courses", offset=offset, limit=limit) as event:
            with self._connect() as connection:
                rows = self._execute(connection, query, params).fetchall()
            event["rowcount"] = len(rows)
        return [self._row_to_record(row) for row in rows]

    def count_courses(
        self,
        *,
        owner: Optional[str] = None,
        difficulty: Optional[Difficulty] = None,
        title: Optional[str] = None,
    ) -> int:
        where, params = self._build_filters(owner, difficulty, title)
        with self._track_db_event("count_courses", table="courses"):
            with self._connect() as connection:
                row = self._execute(
                    connection, f"SELECT COUNT(*) FROM courses c {where}", params
                ).fetchone()
        return int(row[0]) if row else 0

    def iter_signatures(self) -> Iterator[Tuple[int, Signature]]:
        """Yield ``(id, signature)`` for every stored course, oldest first.

        Rows whose signature blob cannot be decoded are logged and skipped.
        """

        with self._track_db_event("iter_signatures", table="courses") as event:
            with self._connect() as connection:
                rows = self._execute(
                    connection,
                    "SELECT id, signature, signature_fingerprint FROM courses ORDER BY id",
                ).fetchall()
            event["rowcount"] = len(rows)
            decoded: List[Tuple[int, Signature]] = []
            for row in rows:
                try:
                    signature = Signature.from_bytes(row["signature"], row["signature_fingerprint"])
                except ValueError as exc:
                    LOGGER.warning("Ignoring corrupt signature of course id=%s: %s", row["id"], exc)
                    continue
                decoded.append((int(row["id"]), signature))
            event["corrupt"] = len(rows) - len(decoded) or None
        yield from decoded

    def update_difficulty(self, course_id: int, difficulty: Optional[Difficulty]) -> None:
        LOGGER.debug("Setting difficulty of course id=%s to %s", course_id, difficulty)
        with self._track_db_event("update_difficulty", table="courses", course_id=course_id):
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "UPDATE courses SET difficulty = ?, last_modified = ? WHERE id = ?",
                    (Difficulty(difficulty).value if difficulty else None, _now_ms(), course_id),
                )
        if cursor.rowcount == 0:
            raise CourseNotFoundError(course_id)

    def vote(self, course_id: int, account_id: str, value: int) -> int:
        """Record *account_id*'s vote (``0`` withdraws it) and return the new total."""

        if value not in (-1, 0, 1):
            raise ValueError("vote value must be -1, 0 or 1")
        with self._track_db_event(
            "vote_course", table="votes", course_id=course_id, value=value
        ) as event:
            with self._connect() as connection:
                exists = self._execute(
                    connection, "SELECT 1 FROM courses WHERE id = ?", (course_id,)
                ).fetchone()
                if exists is None:
                    raise CourseNotFoundError(course_id)
                if value == 0:
                    self._execute(
                        connection,
                        "DELETE FROM votes WHERE account_id = ? AND course_id = ?",
                        (account_id, course_id),
                    )
                else:
                    self._execute(
                        connection,
                        """
                        INSERT INTO votes(account_id, course_id, value, timestamp)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(account_id, course_id)
                        DO UPDATE SET value = excluded.value, timestamp = excluded.timestamp
                        """,
                        (account_id, course_id, value, int(time.time())),
                    )
                total_row = self._execute(
                    connection,
                    "SELECT COALESCE(SUM(value), 0) FROM votes WHERE course_id = ?",
                    (course_id,),
                ).fetchone()
                total = int(total_row[0])
                self._execute(
                    connection,
                    "UPDATE courses SET votes = ? WHERE id = ?",
                    (total, course_id),
                )
            event["votes"] = total
        return total

    def remove_course(self, course_id: int) -> None:
        """Delete a course and its artifacts. The similarity index is not touched."""

        LOGGER.debug("Removing course id=%s", course_id)
        with self._track_db_event("remove_course", table="courses", course_id=course_id):
            with self._connect() as connection:
                cursor = self._execute(
                    connection, "DELETE FROM courses WHERE id = ?", (course_id,)
                )
        if cursor.rowcount == 0:
            raise CourseNotFoundError(course_id)


__all__ = [
    "ARTIFACT_FIELDS",
    "CourseDraft",
    "CoursePersistence",
    "CourseRecord",
    "CourseRepository",
    "DERIVED_FIELDS",
    "Difficulty",
    "SortField",
]
