from __future__ import annotations

import io
import zlib

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from coursedb.context import AppContext
from coursedb.processing import DecodedCourse, ZipCourseCodec
from coursedb.web import create_app
from coursedb.web.server import MAX_UPLOAD_BYTES_ENV


OWNER = {"X-Owner-Id": "alice"}


@pytest.fixture()
def client(app_context: AppContext) -> TestClient:
    return TestClient(create_app(app_context))


def _upload(client: TestClient, courses, *, headers=OWNER, **params):
    return client.put(
        "/api/courses2",
        content=ZipCourseCodec.encode(courses),
        headers=headers,
        params=params,
    )


def _course(make_payload, thumbnail_bytes, seed: int, title: str) -> DecodedCourse:
    return DecodedCourse(title=title, payload=make_payload(seed), thumbnail=thumbnail_bytes)


def test_upload_and_fetch_course(client, make_payload, thumbnail_bytes) -> None:
    response = _upload(
        client, [_course(make_payload, thumbnail_bytes, 1, "Web Course")], difficulty="expert"
    )

    assert response.status_code == 200
    body = response.json()
    assert body["failed"] == []
    created = body["succeeded"][0]
    assert created["title"] == "Web Course"
    assert created["difficulty"] == "expert"
    assert created["owner"] == "alice"

    detail = client.get(f"/api/courses2/{created['id']}")
    assert detail.status_code == 200
    assert detail.json()["course"]["artifacts"] == ["data_encrypted", "thumb"]

    listing = client.get("/api/courses2", params={"owner": "alice"})
    assert listing.json()["total"] == 1
    assert [item["id"] for item in listing.json()["courses"]] == [created["id"]]


def test_upload_requires_owner_header(client, make_payload, thumbnail_bytes) -> None:
    response = _upload(client, [_course(make_payload, thumbnail_bytes, 2, "Anon")], headers={})

    assert response.status_code == 401


def test_malformed_upload_is_bad_request(client) -> None:
    response = client.put("/api/courses2", content=b"not a zip", headers=OWNER)

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "CodecError"


def test_oversized_upload_is_rejected(client, monkeypatch) -> None:
    monkeypatch.setenv(MAX_UPLOAD_BYTES_ENV, "16")

    response = client.put("/api/courses2", content=b"x" * 64, headers=OWNER)

    assert response.status_code == 413


def test_near_duplicate_upload_reports_conflict(
    client, make_payload, near_duplicate, thumbnail_bytes
) -> None:
    payload = make_payload(3)
    first = _upload(client, [DecodedCourse(title="First", payload=payload, thumbnail=thumbnail_bytes)])
    first_id = first.json()["succeeded"][0]["id"]

    response = _upload(
        client,
        [
            DecodedCourse(title="Copy", payload=near_duplicate(payload), thumbnail=thumbnail_bytes),
            DecodedCourse(title="No thumbnail", payload=make_payload(4)),
        ],
        headers={"X-Owner-Id": "bob"},
    )

    assert response.status_code == 200
    failed = response.json()["failed"]
    assert failed[0]["similarCourseId"] == first_id
    assert failed[0]["title"] == "First"
    assert failed[0]["jaccard"] > 0.95
    assert failed[0]["status"] == 400
    assert failed[1]["error"] == "MissingArtifactError"
    assert failed[1]["status"] == 400
    assert response.json()["succeeded"] == []


def test_thumbnail_sizes_and_download(client, make_payload, thumbnail_bytes) -> None:
    created = _upload(client, [_course(make_payload, thumbnail_bytes, 5, "Pictures")])
    course_id = created.json()["succeeded"][0]["id"]

    small = client.get(f"/api/courses2/{course_id}/thumbnail", params={"size": "s"})
    assert small.status_code == 200
    assert small.headers["content-type"] == "image/jpeg"
    with Image.open(io.BytesIO(small.content)) as image:
        assert image.size == (160, 90)

    original = client.get(f"/api/courses2/{course_id}/thumbnail", params={"size": "original"})
    assert original.content == thumbnail_bytes

    download = client.get(
        f"/api/courses2/{course_id}/download", params={"course_format": "compressed"}
    )
    assert download.status_code == 200
    assert download.headers["content-type"] == "application/zip"
    (course,) = ZipCourseCodec().decode(download.content)
    assert zlib.decompress(course.payload) == make_payload(5)
    assert course.thumbnail == thumbnail_bytes

    bad_format = client.get(
        f"/api/courses2/{course_id}/download", params={"course_format": "thumb_s"}
    )
    assert bad_format.status_code == 400


def test_unknown_course_returns_not_found(client) -> None:
    assert client.get("/api/courses2/999").status_code == 404
    assert client.get("/api/courses2/999/thumbnail").status_code == 404
    assert client.get("/api/courses2/999/download").status_code == 404
    assert client.post("/api/courses2/999/vote", json={"value": 1}, headers=OWNER).status_code == 404


def test_meta_vote_and_delete(client, app_context, make_payload, thumbnail_bytes) -> None:
    created = _upload(client, [_course(make_payload, thumbnail_bytes, 6, "Owned")])
    course_id = created.json()["succeeded"][0]["id"]
    intruder = {"X-Owner-Id": "mallory"}

    denied = client.post(
        f"/api/courses2/{course_id}/meta", json={"difficulty": "easy"}, headers=intruder
    )
    assert denied.status_code == 401

    updated = client.post(
        f"/api/courses2/{course_id}/meta", json={"difficulty": "easy"}, headers=OWNER
    )
    assert updated.status_code == 200
    assert updated.json()["course"]["difficulty"] == "easy"

    vote = client.post(f"/api/courses2/{course_id}/vote", json={"value": 1}, headers=intruder)
    assert vote.json() == {"id": course_id, "votes": 1}
    invalid = client.post(f"/api/courses2/{course_id}/vote", json={"value": 3}, headers=OWNER)
    assert invalid.status_code == 422

    assert client.delete(f"/api/courses2/{course_id}", headers=intruder).status_code == 401
    assert client.delete(f"/api/courses2/{course_id}", headers=OWNER).status_code == 204
    assert client.get(f"/api/courses2/{course_id}").status_code == 404
    assert int(course_id) in app_context.index


def test_missing_stored_thumbnail_is_server_error(client, app_context) -> None:
    from coursedb.services.storage import CourseDraft
    from coursedb.similarity import Signature

    course_id = app_context.repository.store(
        CourseDraft(
            owner="alice",
            title="Broken",
            payload_encrypted=app_context.cipher.encrypt(b"payload"),
            thumbnail=None,
            signature=Signature.from_values(range(128), app_context.perm_set.fingerprint),
        )
    )

    response = client.get(f"/api/courses2/{course_id}/thumbnail", params={"size": "m"})

    assert response.status_code == 500
    assert response.json()["detail"]["error"] == "MissingArtifactError"


def test_listing_validates_page_size(client) -> None:
    assert client.get("/api/courses2", params={"limit": 0}).status_code == 422
    assert client.get("/api/courses2", params={"limit": 500}).status_code == 422
