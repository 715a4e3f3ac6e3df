"""Process-wide object graph shared by the CLI and the web server."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

from .config import AppConfig
from .processing.transforms import PayloadCipher, load_or_create_key
from .services.artifacts import ArtifactCache
from .services.events import emit_db_event, emit_task_event
from .services.ingestion import CourseIngestor
from .services.storage import CourseRepository
from .similarity import LshIndex, PermutationSet


LOGGER = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Owns the single permutation set and index and the services built on them."""

    config: AppConfig
    repository: CourseRepository
    perm_set: PermutationSet
    index: LshIndex
    cipher: PayloadCipher
    ingestor: CourseIngestor
    artifacts: ArtifactCache

    @classmethod
    def build(
        cls,
        config: AppConfig,
        *,
        repository: Optional[CourseRepository] = None,
        rebuild: bool = True,
    ) -> "AppContext":
        settings = config.fingerprint
        repository = repository or CourseRepository(config, event_emitter=emit_db_event)
        perm_set = PermutationSet(
            settings.permutation_count,
            seed=settings.seed,
            shingle_size=settings.shingle_size,
        )
        index = LshIndex(settings.band_count, settings.permutation_count)
        cipher = PayloadCipher(load_or_create_key(config.key_file, env_key=config.secret_key))
        context = cls(
            config=config,
            repository=repository,
            perm_set=perm_set,
            index=index,
            cipher=cipher,
            ingestor=CourseIngestor(
                repository,
                perm_set,
                index,
                cipher,
                threshold=settings.similarity_threshold,
                max_workers=settings.worker_count,
            ),
            artifacts=ArtifactCache(repository, cipher),
        )
        if rebuild:
            context.rebuild_index()
        return context

    def rebuild_index(self) -> int:
        """Load every stored signature produced under the current permutation set."""

        start = time.perf_counter()
        expected = self.perm_set.fingerprint
        skipped = 0

        def _compatible():
            nonlocal skipped
            for course_id, signature in self.repository.iter_signatures():
                if signature.fingerprint != expected or len(signature) != self.perm_set.count:
                    skipped += 1
                    continue
                yield course_id, signature

        loaded = self.index.bulk_load(_compatible())
        if skipped:
            LOGGER.warning(
                "Skipped %d stored signature(s) computed under different fingerprint parameters",
                skipped,
            )
        emit_task_event(
            "rebuild_index",
            payload={"loaded": loaded, "skipped": skipped},
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return loaded


__all__ = ["AppContext"]
