"""MinHash signatures over byte shingles of raw course payloads."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .permutations import PermutationSet


LOGGER = logging.getLogger(__name__)


SENTINEL = np.iinfo(np.uint64).max

# Number of shingles hashed per permutation pass; bounds the (count x chunk)
# intermediate matrix to a few megabytes.
_CHUNK_SIZE = 4096

_MIX_CONSTANT_1 = np.uint64(0xBF58476D1CE4E5B9)
_MIX_CONSTANT_2 = np.uint64(0x94D049BB133111EB)


def _mix64(values: np.ndarray) -> np.ndarray:
    """SplitMix64 finalizer applied element-wise (wrapping uint64 arithmetic)."""

    with np.errstate(over="ignore"):
        z = values.astype(np.uint64, copy=True)
        z ^= z >> np.uint64(30)
        z *= _MIX_CONSTANT_1
        z ^= z >> np.uint64(27)
        z *= _MIX_CONSTANT_2
        z ^= z >> np.uint64(31)
    return z


def shingle_hashes(data: bytes, width: int) -> np.ndarray:
    """Return the distinct 32-bit hashes of every ``width``-byte window of *data*.

    A payload shorter than ``width`` yields a single shingle covering all of it.
    """

    buffer = np.frombuffer(data, dtype=np.uint8)
    if buffer.size == 0:
        return np.empty(0, dtype=np.uint64)
    if buffer.size < width:
        windows = buffer[None, :]
    else:
        windows = sliding_window_view(buffer, width)

    span = windows.shape[1]
    packed = np.zeros(windows.shape[0], dtype=np.uint64)
    for column in range(span):
        packed |= windows[:, column].astype(np.uint64) << np.uint64(8 * column)
    # Fold the window length in so b"\x01" and b"\x01\x00" stay distinct.
    packed ^= np.uint64(span) << np.uint64(59)
    return np.unique(_mix64(packed) >> np.uint64(32))


class Signature:
    """Fixed-length MinHash sketch of a course payload.

    Slots start at :data:`SENTINEL` and keep the running minimum of every
    permutation over all shingles folded in through :meth:`update`. Windows
    that straddle two ``update`` calls are included, so streaming a payload in
    pieces produces the same sketch as hashing it in one go. Once
    :meth:`finalize` has run the signature is read-only.
    """

    __slots__ = ("_values", "_fingerprint", "_tail", "_full_window_seen", "_finalized")

    def __init__(self, perm_set: PermutationSet) -> None:
        self._values = np.full(len(perm_set), SENTINEL, dtype=np.uint64)
        self._fingerprint = perm_set.fingerprint
        self._tail = b""
        self._full_window_seen = False
        self._finalized = False

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------
    @classmethod
    def from_values(cls, values: Iterable[int], fingerprint: str) -> "Signature":
        """Build a finalized signature from raw slot values."""

        array = np.asarray(list(values), dtype=np.uint64)
        if array.ndim != 1 or array.size == 0:
            raise ValueError("signature values must be a non-empty 1-D sequence")
        signature = cls.__new__(cls)
        signature._values = array
        signature._fingerprint = fingerprint
        signature._tail = b""
        signature._full_window_seen = True
        signature._finalized = True
        signature._values.setflags(write=False)
        return signature

    @classmethod
    def from_bytes(cls, data: bytes, fingerprint: str) -> "Signature":
        """Inverse of :meth:`to_bytes`."""

        if not data or len(data) % 8 != 0:
            raise ValueError(f"invalid serialized signature length: {len(data)}")
        values = np.frombuffer(data, dtype="<u8").astype(np.uint64)
        return cls.from_values(values.tolist(), fingerprint)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def fingerprint(self) -> str:
        return self._fingerprint

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def values(self) -> np.ndarray:
        view = self._values.view()
        view.setflags(write=False)
        return view

    def __len__(self) -> int:
        return int(self._values.size)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Signature):
            return NotImplemented
        return self._fingerprint == other._fingerprint and np.array_equal(
            self._values, other._values
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        state = "final" if self._finalized else "open"
        return f"Signature(len={len(self)}, fingerprint={self._fingerprint}, {state})"

    def to_bytes(self) -> bytes:
        return self._values.astype("<u8").tobytes()

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------
    def _check_compatible(self, perm_set: PermutationSet) -> None:
        if perm_set.fingerprint != self._fingerprint:
            raise ValueError("signature was created under a different permutation set")

    def _fold(self, perm_set: PermutationSet, shingles: np.ndarray) -> None:
        for start in range(0, shingles.size, _CHUNK_SIZE):
            chunk = shingles[start : start + _CHUNK_SIZE]
            np.minimum(self._values, perm_set.apply(chunk).min(axis=1), out=self._values)

    def update(self, perm_set: PermutationSet, raw_bytes: bytes) -> "Signature":
        """Fold every shingle of *raw_bytes* into the running minima."""

        if self._finalized:
            raise ValueError("cannot update a finalized signature")
        self._check_compatible(perm_set)
        if not raw_bytes:
            return self

        width = perm_set.shingle_size
        combined = self._tail + bytes(raw_bytes)
        if len(combined) < width:
            self._tail = combined
            return self

        self._fold(perm_set, shingle_hashes(combined, width))
        self._full_window_seen = True
        self._tail = combined[len(combined) - (width - 1) :] if width > 1 else b""
        return self

    def finalize(self, perm_set: PermutationSet) -> "Signature":
        """Freeze the signature; a short payload contributes one shingle here."""

        if self._finalized:
            return self
        self._check_compatible(perm_set)
        if not self._full_window_seen and self._tail:
            self._fold(perm_set, shingle_hashes(self._tail, perm_set.shingle_size))
        self._tail = b""
        self._finalized = True
        self._values.setflags(write=False)
        return self

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------
    def jaccard(self, other: "Signature") -> float:
        """Estimated Jaccard similarity: the fraction of agreeing slots."""

        if len(self) != len(other):
            raise ValueError(f"signature length mismatch ({len(self)} != {len(other)})")
        if self._fingerprint != other._fingerprint:
            raise ValueError("signatures were created under different permutation sets")
        return float(np.count_nonzero(self._values == other._values)) / float(len(self))


def compute_signature(
    perm_set: PermutationSet,
    payload: bytes,
    *,
    chunk_size: Optional[int] = None,
) -> Signature:
    """Return the finalized signature of *payload*.

    ``chunk_size`` streams the payload through :meth:`Signature.update` in
    pieces, which keeps peak memory flat for large uploads.
    """

    signature = Signature(perm_set)
    if chunk_size is None or chunk_size <= 0:
        signature.update(perm_set, payload)
    else:
        view = memoryview(payload)
        for start in range(0, len(view), chunk_size):
            signature.update(perm_set, bytes(view[start : start + chunk_size]))
    return signature.finalize(perm_set)


__all__ = ["SENTINEL", "Signature", "compute_signature", "shingle_hashes"]
