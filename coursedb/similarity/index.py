"""Locality sensitive hashing index over MinHash signatures."""

from __future__ import annotations

import contextlib
import logging
import threading
from typing import Dict, Hashable, Iterable, Iterator, List, Set, Tuple

from .signature import Signature


LOGGER = logging.getLogger(__name__)


class LshIndex:
    """Band a signature into ``band_count`` contiguous slices and bucket ids by slice.

    ``query`` returns *candidates*: ids sharing at least one band with the
    probe. Callers verify candidates with :meth:`Signature.jaccard` against
    the stored signatures before acting on them.

    The index is append-only. Ids whose course was deleted from storage stay
    retrievable, so callers must filter query results against storage.

    A single re-entrant lock guards the whole index. :meth:`exclusive` exposes
    it so that a caller can keep the index locked across a
    query-verify-insert sequence.
    """

    def __init__(self, band_count: int = 8, signature_length: int = 128) -> None:
        if band_count <= 0:
            raise ValueError("band_count must be > 0")
        if signature_length <= 0 or signature_length % band_count != 0:
            raise ValueError(
                f"band_count ({band_count}) must divide signature_length ({signature_length})"
            )
        self._band_count = band_count
        self._signature_length = signature_length
        self._rows = signature_length // band_count
        self._tables: List[Dict[bytes, Set[Hashable]]] = [dict() for _ in range(band_count)]
        self._ids: Set[Hashable] = set()
        self._lock = threading.RLock()

    @property
    def band_count(self) -> int:
        return self._band_count

    @property
    def rows_per_band(self) -> int:
        return self._rows

    @property
    def signature_length(self) -> int:
        return self._signature_length

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def __contains__(self, item: object) -> bool:
        with self._lock:
            return item in self._ids

    @contextlib.contextmanager
    def exclusive(self) -> Iterator["LshIndex"]:
        """Hold the index lock for the duration of the ``with`` block."""

        with self._lock:
            yield self

    def band_keys(self, signature: Signature) -> List[bytes]:
        """Return the bucket key of every band of *signature*."""

        if len(signature) != self._signature_length:
            raise ValueError(
                f"signature length {len(signature)} does not match index length "
                f"{self._signature_length}"
            )
        values = signature.values
        rows = self._rows
        return [
            values[band * rows : (band + 1) * rows].tobytes()
            for band in range(self._band_count)
        ]

    def insert(self, item_id: Hashable, signature: Signature) -> None:
        keys = self.band_keys(signature)
        with self._lock:
            for table, key in zip(self._tables, keys):
                bucket = table.get(key)
                if bucket is None:
                    table[key] = {item_id}
                else:
                    bucket.add(item_id)
            self._ids.add(item_id)
        LOGGER.debug("Indexed id=%s across %d bands", item_id, self._band_count)

    def query(self, signature: Signature) -> Set[Hashable]:
        keys = self.band_keys(signature)
        candidates: Set[Hashable] = set()
        with self._lock:
            for table, key in zip(self._tables, keys):
                bucket = table.get(key)
                if bucket:
                    candidates.update(bucket)
        LOGGER.debug("Index query returned %d candidate(s)", len(candidates))
        return candidates

    def bulk_load(self, items: Iterable[Tuple[Hashable, Signature]]) -> int:
        """Insert every ``(id, signature)`` pair; returns the number inserted."""

        loaded = 0
        with self._lock:
            for item_id, signature in items:
                self.insert(item_id, signature)
                loaded += 1
        LOGGER.info("Loaded %d signature(s) into the similarity index", loaded)
        return loaded


__all__ = ["LshIndex"]
