from __future__ import annotations

import logging

from coursedb.config import AppConfig
from coursedb.context import AppContext
from coursedb.processing import DecodedCourse
from coursedb.services.storage import CourseDraft
from coursedb.similarity import Signature


def test_context_shares_one_permutation_set_and_index(app_context: AppContext) -> None:
    settings = app_context.config.fingerprint

    assert app_context.perm_set.count == settings.permutation_count
    assert app_context.index.band_count == settings.band_count
    assert app_context.ingestor.threshold == settings.similarity_threshold
    assert len(app_context.index) == 0


def test_index_is_rebuilt_from_storage_on_start(
    temp_config: AppConfig, make_payload, near_duplicate, thumbnail_bytes
) -> None:
    first = AppContext.build(temp_config)
    payload = make_payload(5)
    accepted = first.ingestor.ingest_batch(
        [DecodedCourse(title="Persisted", payload=payload, thumbnail=thumbnail_bytes)],
        owner="alice",
    )
    course_id = accepted.succeeded[0].id

    restarted = AppContext.build(temp_config)
    assert course_id in restarted.index

    result = restarted.ingestor.ingest_batch(
        [DecodedCourse(title="Copy", payload=near_duplicate(payload), thumbnail=thumbnail_bytes)],
        owner="bob",
    )
    assert result.failed[0].error.existing_id == course_id


def test_rebuild_skips_foreign_fingerprints(temp_config: AppConfig, caplog) -> None:
    bootstrap = AppContext.build(temp_config, rebuild=False)
    bootstrap.repository.store(
        CourseDraft(
            owner="alice",
            title="Old parameters",
            payload_encrypted=b"token",
            thumbnail=None,
            signature=Signature.from_values(range(128), "stale-fingerprint"),
        )
    )

    with caplog.at_level(logging.WARNING, logger="coursedb.context"):
        context = AppContext.build(temp_config)

    assert len(context.index) == 0
    assert "different fingerprint" in caplog.text
