"""Near-duplicate aware ingestion of uploaded courses."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ..errors import (
    CodecError,
    CourseError,
    MissingArtifactError,
    PersistenceError,
    SimilarityConflict,
)
from ..processing.codec import CourseCodec, DecodedCourse, ZipCourseCodec
from ..processing.transforms import PayloadCipher, verify_thumbnail
from ..similarity import LshIndex, PermutationSet, Signature, compute_signature
from .events import emit_task_event
from .storage import CourseDraft, CoursePersistence, CourseRecord, Difficulty


LOGGER = logging.getLogger(__name__)


DEFAULT_SIMILARITY_THRESHOLD = 0.95


@dataclass
class IngestionFailure:
    """A course of a batch that was not accepted."""

    position: int
    title: str
    error: CourseError

    def to_dict(self) -> Dict[str, Any]:
        document = self.error.to_dict()
        document["position"] = self.position
        document["courseTitle"] = self.title
        return document


@dataclass
class IngestionResult:
    succeeded: List[CourseRecord] = field(default_factory=list)
    failed: List[IngestionFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": [record.to_dict() for record in self.succeeded],
            "failed": [failure.to_dict() for failure in self.failed],
        }


_Outcome = Union[CourseRecord, IngestionFailure]


class CourseIngestor:
    """Accept or reject uploaded courses against everything accepted before.

    Signatures are computed in parallel. The verify-then-persist step for each
    course runs while the index lock is held, so two near-identical uploads
    racing each other can never both be accepted.
    """

    def __init__(
        self,
        repository: CoursePersistence,
        perm_set: PermutationSet,
        index: LshIndex,
        cipher: PayloadCipher,
        *,
        codec: Optional[CourseCodec] = None,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        max_workers: int = 4,
    ) -> None:
        if index.signature_length != perm_set.count:
            raise ValueError(
                f"index expects signatures of length {index.signature_length}, "
                f"permutation set produces {perm_set.count}"
            )
        self._repository = repository
        self._perm_set = perm_set
        self._index = index
        self._cipher = cipher
        self._codec: CourseCodec = codec or ZipCourseCodec()
        self._threshold = threshold
        self._max_workers = max(1, int(max_workers))

    @property
    def threshold(self) -> float:
        return self._threshold

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def ingest_upload(
        self,
        raw_bytes: bytes,
        *,
        owner: str,
        difficulty: Optional[Difficulty] = None,
    ) -> IngestionResult:
        """Decode *raw_bytes* and ingest every course it contains.

        A :class:`~coursedb.errors.CodecError` propagates since no course
        could be extracted.
        """

        courses = self._codec.decode(raw_bytes)
        return self.ingest_batch(courses, owner=owner, difficulty=difficulty)

    def ingest_batch(
        self,
        courses: Sequence[DecodedCourse],
        *,
        owner: str,
        difficulty: Optional[Difficulty] = None,
    ) -> IngestionResult:
        """Ingest *courses* and report the outcome of each one in batch order."""

        result = IngestionResult()
        if not courses:
            return result

        start = time.perf_counter()
        LOGGER.debug(
            "Beginning ingestion of %d course(s) for owner=%s", len(courses), owner
        )
        workers = min(self._max_workers, len(courses))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ingest") as pool:
            futures = [
                pool.submit(self._ingest_one, position, course, owner, difficulty)
                for position, course in enumerate(courses)
            ]
            outcomes: List[_Outcome] = [future.result() for future in futures]

        for outcome in outcomes:
            if isinstance(outcome, IngestionFailure):
                result.failed.append(outcome)
            else:
                result.succeeded.append(outcome)

        emit_task_event(
            "ingest_batch",
            payload={
                "owner": owner,
                "courses": len(courses),
                "succeeded": len(result.succeeded),
                "failed": len(result.failed),
            },
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _ingest_one(
        self,
        position: int,
        course: DecodedCourse,
        owner: str,
        difficulty: Optional[Difficulty],
    ) -> _Outcome:
        try:
            if not course.payload:
                raise CodecError(f"Course '{course.title}' has empty course data")
            if course.thumbnail is None:
                raise MissingArtifactError(f"Course '{course.title}' has no thumbnail")
            verify_thumbnail(course.thumbnail)
            signature = compute_signature(self._perm_set, course.payload)
            draft = CourseDraft(
                owner=owner,
                title=course.title,
                payload_encrypted=self._cipher.encrypt(course.payload),
                thumbnail=course.thumbnail,
                signature=signature,
                difficulty=difficulty,
            )
            return self._accept(draft)
        except CourseError as error:
            LOGGER.info("Rejected course #%d '%s': %s", position, course.title, error)
            return IngestionFailure(position=position, title=course.title, error=error)
        except Exception as error:
            LOGGER.exception("Unexpected failure ingesting course #%d '%s'", position, course.title)
            wrapped = PersistenceError(f"Course '{course.title}' could not be ingested: {error}")
            wrapped.__cause__ = error
            return IngestionFailure(position=position, title=course.title, error=wrapped)

    def _accept(self, draft: CourseDraft) -> CourseRecord:
        with self._index.exclusive():
            candidates = self._index.query(draft.signature)
            if candidates:
                stored = self._repository.fetch_signatures(candidates)
                match = self._best_match(draft.signature, stored)
                if match is not None:
                    existing_id, jaccard = match
                    existing = self._repository.get_course(existing_id)
                    raise SimilarityConflict(
                        existing_id, existing.title if existing else "", jaccard
                    )
            course_id = self._repository.store(draft)
            self._index.insert(course_id, draft.signature)

        LOGGER.debug("Accepted course '%s' as id=%s", draft.title, course_id)
        return CourseRecord(
            id=course_id,
            owner=draft.owner,
            title=draft.title,
            difficulty=draft.difficulty,
            votes=0,
            uploaded=draft.uploaded,
            last_modified=draft.uploaded,
            signature=draft.signature,
            artifacts=frozenset({"data_encrypted", "thumb"}),
        )

    def _best_match(
        self, signature: Signature, stored: Dict[int, Signature]
    ) -> Optional[Tuple[int, float]]:
        best: Optional[Tuple[int, float]] = None
        for course_id in sorted(stored):
            candidate = stored[course_id]
            if candidate.fingerprint != signature.fingerprint:
                LOGGER.debug("Skipping candidate %s with a foreign fingerprint", course_id)
                continue
            jaccard = signature.jaccard(candidate)
            if jaccard > self._threshold and (best is None or jaccard > best[1]):
                best = (course_id, jaccard)
        return best


__all__ = [
    "CourseIngestor",
    "DEFAULT_SIMILARITY_THRESHOLD",
    "IngestionFailure",
    "IngestionResult",
]
