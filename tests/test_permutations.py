import numpy as np
import pytest

from coursedb.similarity import PermutationSet
from coursedb.similarity.permutations import MERSENNE_PRIME


def test_same_parameters_produce_same_fingerprint() -> None:
    first = PermutationSet(64, seed=11, shingle_size=4)
    second = PermutationSet(64, seed=11, shingle_size=4)

    assert first.fingerprint == second.fingerprint
    assert len(first) == 64
    assert first.modulus == MERSENNE_PRIME


@pytest.mark.parametrize(
    "kwargs",
    [
        {"count": 64, "seed": 12, "shingle_size": 4},
        {"count": 32, "seed": 11, "shingle_size": 4},
        {"count": 64, "seed": 11, "shingle_size": 5},
    ],
)
def test_changing_any_parameter_changes_fingerprint(kwargs) -> None:
    baseline = PermutationSet(64, seed=11, shingle_size=4)
    other = PermutationSet(kwargs["count"], seed=kwargs["seed"], shingle_size=kwargs["shingle_size"])

    assert other.fingerprint != baseline.fingerprint


@pytest.mark.parametrize("count", [0, -3])
def test_non_positive_count_is_rejected(count: int) -> None:
    with pytest.raises(ValueError):
        PermutationSet(count)


@pytest.mark.parametrize("shingle_size", [0, 9])
def test_shingle_size_outside_supported_range_is_rejected(shingle_size: int) -> None:
    with pytest.raises(ValueError):
        PermutationSet(16, shingle_size=shingle_size)


def test_apply_hashes_every_shingle_below_the_modulus() -> None:
    perm_set = PermutationSet(16, seed=3)
    shingles = np.array([0, 1, 2**32 - 1, 123456789], dtype=np.uint64)

    hashed = perm_set.apply(shingles)

    assert hashed.shape == (16, 4)
    assert hashed.dtype == np.uint64
    assert int(hashed.max()) < MERSENNE_PRIME
    np.testing.assert_array_equal(hashed, perm_set.apply(shingles))
