"""Content fingerprinting and near-duplicate lookup."""

from .index import LshIndex
from .permutations import DEFAULT_SEED, DEFAULT_SHINGLE_SIZE, PermutationSet
from .signature import SENTINEL, Signature, compute_signature, shingle_hashes

__all__ = [
    "DEFAULT_SEED",
    "DEFAULT_SHINGLE_SIZE",
    "LshIndex",
    "PermutationSet",
    "SENTINEL",
    "Signature",
    "compute_signature",
    "shingle_hashes",
]
