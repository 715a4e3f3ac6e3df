"""Process-wide family of hash permutations used by MinHash signatures."""

from __future__ import annotations

import hashlib
import logging

import numpy as np


LOGGER = logging.getLogger(__name__)


MERSENNE_PRIME = (1 << 61) - 1
DEFAULT_SEED = 0x5EED_C0DE
DEFAULT_SHINGLE_SIZE = 8
MAX_SHINGLE_SIZE = 8

# Coefficients and shingle hashes stay below 2**32 so that a * x + b never
# overflows uint64 before the modulo.
_COEFFICIENT_LIMIT = 1 << 32


class PermutationSet:
    """Ordered affine permutations ``h_i(x) = (a_i * x + b_i) mod p``.

    Instances are immutable and meant to be built once per process, then
    shared by reference with every signature computation. Two instances built
    from the same ``count``, ``seed`` and ``shingle_size`` are identical and
    report the same :attr:`fingerprint`.
    """

    __slots__ = ("_count", "_seed", "_shingle_size", "_a", "_b", "_fingerprint")

    def __init__(
        self,
        count: int = 128,
        *,
        seed: int = DEFAULT_SEED,
        shingle_size: int = DEFAULT_SHINGLE_SIZE,
    ) -> None:
        if count <= 0:
            raise ValueError("permutation count must be > 0")
        if not 1 <= shingle_size <= MAX_SHINGLE_SIZE:
            raise ValueError(f"shingle_size must be within 1..{MAX_SHINGLE_SIZE}")

        rng = np.random.default_rng(seed)
        a = rng.integers(1, _COEFFICIENT_LIMIT, size=count, dtype=np.uint64)
        b = rng.integers(0, _COEFFICIENT_LIMIT, size=count, dtype=np.uint64)
        a.setflags(write=False)
        b.setflags(write=False)

        digest = hashlib.blake2b(digest_size=8)
        digest.update(count.to_bytes(4, "little"))
        digest.update(shingle_size.to_bytes(1, "little"))
        digest.update(a.astype("<u8").tobytes())
        digest.update(b.astype("<u8").tobytes())

        self._count = int(count)
        self._seed = int(seed)
        self._shingle_size = int(shingle_size)
        self._a = a
        self._b = b
        self._fingerprint = digest.hexdigest()
        LOGGER.debug(
            "Generated %d permutations (seed=%s, shingle_size=%d, fingerprint=%s)",
            self._count,
            self._seed,
            self._shingle_size,
            self._fingerprint,
        )

    @property
    def count(self) -> int:
        return self._count

    @property
    def seed(self) -> int:
        return self._seed

    @property
    def shingle_size(self) -> int:
        return self._shingle_size

    @property
    def modulus(self) -> int:
        return MERSENNE_PRIME

    @property
    def fingerprint(self) -> str:
        """Digest of the parameters; signatures are comparable only when equal."""

        return self._fingerprint

    def __len__(self) -> int:
        return self._count

    def __repr__(self) -> str:
        return (
            f"PermutationSet(count={self._count}, seed={self._seed}, "
            f"shingle_size={self._shingle_size})"
        )

    def apply(self, shingles: np.ndarray) -> np.ndarray:
        """Hash every shingle under every permutation.

        ``shingles`` holds 32-bit values as ``uint64``; the result has shape
        ``(count, len(shingles))``.
        """

        values = shingles.astype(np.uint64, copy=False)
        products = self._a[:, None] * values[None, :] + self._b[:, None]
        return products % np.uint64(MERSENNE_PRIME)


__all__ = ["DEFAULT_SEED", "DEFAULT_SHINGLE_SIZE", "MERSENNE_PRIME", "PermutationSet"]
