from __future__ import annotations

import threading

import pytest

from coursedb.similarity import LshIndex, PermutationSet, Signature, compute_signature


def _signature(values, fingerprint: str = "fp") -> Signature:
    return Signature.from_values(values, fingerprint)


def test_band_count_must_divide_signature_length() -> None:
    with pytest.raises(ValueError):
        LshIndex(band_count=7, signature_length=128)
    with pytest.raises(ValueError):
        LshIndex(band_count=0, signature_length=128)

    index = LshIndex(band_count=8, signature_length=128)
    assert index.rows_per_band == 16


def test_inserted_id_is_returned_by_query() -> None:
    index = LshIndex(band_count=4, signature_length=16)
    signature = _signature(range(16))

    index.insert(42, signature)

    assert 42 in index
    assert len(index) == 1
    assert index.query(signature) == {42}


def test_query_matches_when_a_single_band_agrees() -> None:
    index = LshIndex(band_count=4, signature_length=16)
    stored = _signature(range(16))
    probe = _signature(list(range(4)) + [100 + value for value in range(12)])

    index.insert("a", stored)

    assert index.query(probe) == {"a"}
    assert index.query(_signature(range(200, 216))) == set()


def test_insert_is_idempotent_per_id() -> None:
    index = LshIndex(band_count=4, signature_length=16)
    signature = _signature(range(16))

    index.insert(1, signature)
    index.insert(1, signature)

    assert len(index) == 1
    assert index.query(signature) == {1}


def test_band_keys_reject_wrong_length() -> None:
    index = LshIndex(band_count=4, signature_length=16)

    assert len(index.band_keys(_signature(range(16)))) == 4
    with pytest.raises(ValueError):
        index.band_keys(_signature(range(8)))


def test_bulk_load_reports_inserted_count() -> None:
    perm_set = PermutationSet(32, seed=5)
    index = LshIndex(band_count=8, signature_length=32)
    signatures = [(course_id, compute_signature(perm_set, bytes([course_id]) * 40)) for course_id in range(5)]

    assert index.bulk_load(signatures) == 5
    for course_id, signature in signatures:
        assert course_id in index.query(signature)


def test_exclusive_blocks_other_writers_until_released() -> None:
    index = LshIndex(band_count=4, signature_length=16)
    signature = _signature(range(16))
    inserted = threading.Event()

    def writer() -> None:
        index.insert("other", signature)
        inserted.set()

    with index.exclusive():
        thread = threading.Thread(target=writer)
        thread.start()
        assert not inserted.wait(timeout=0.2)
        # re-entrant for the lock holder
        index.insert("holder", signature)
        assert index.query(signature) == {"holder"}

    thread.join(timeout=5)
    assert inserted.is_set()
    assert index.query(signature) == {"holder", "other"}
