"""FastAPI application exposing the course catalogue."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request, Response
from fastapi import status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from ..context import AppContext
from ..errors import (
    CodecError,
    CourseError,
    CourseNotFoundError,
    MissingArtifactError,
    SimilarityConflict,
)
from ..services.artifacts import Representation
from ..services.events import emit_structured_event
from ..services.ingestion import IngestionFailure
from ..services.storage import CourseRecord, Difficulty, SortField


LOGGER = logging.getLogger(__name__)


MAX_UPLOAD_BYTES_ENV = "COURSEDB_MAX_UPLOAD_BYTES"
_DEFAULT_MAX_UPLOAD_BYTES = 64 * 1024 * 1024
_MAX_PAGE_SIZE = 120

_THUMBNAIL_SIZES: Dict[str, Representation] = {
    "s": Representation.THUMB_S,
    "m": Representation.THUMB_M,
    "l": Representation.THUMB_L,
    "original": Representation.THUMB,
}


def get_max_upload_bytes() -> int:
    """Return the configured maximum upload size in bytes."""

    raw = (os.environ.get(MAX_UPLOAD_BYTES_ENV) or "").strip()
    if not raw:
        return _DEFAULT_MAX_UPLOAD_BYTES
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid %s value: %r", MAX_UPLOAD_BYTES_ENV, raw)
        return _DEFAULT_MAX_UPLOAD_BYTES


class CourseMetaPayload(BaseModel):
    difficulty: Optional[Difficulty] = None


class VotePayload(BaseModel):
    value: int = Field(..., ge=-1, le=1)


def _log_event(message: str, **context: Any) -> None:
    emit_structured_event("REQUEST", message, payload=context, level=logging.DEBUG)


def _status_for_error(error: CourseError, *, stored: bool = False) -> int:
    """Map a core error to an HTTP status.

    A missing artifact is the client's fault at upload time and a storage
    fault when it concerns an already stored course.
    """

    if isinstance(error, CourseNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, (SimilarityConflict, CodecError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, MissingArtifactError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR if stored else status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _http_error(error: CourseError, *, stored: bool = False) -> HTTPException:
    return HTTPException(
        status_code=_status_for_error(error, stored=stored), detail=error.to_dict()
    )


def _serialize_course(record: CourseRecord) -> Dict[str, Any]:
    document = record.to_dict()
    document["artifacts"] = sorted(record.artifacts)
    return document


def _serialize_failure(failure: IngestionFailure) -> Dict[str, Any]:
    document = failure.to_dict()
    document["status"] = _status_for_error(failure.error)
    return document


def _require_account(owner_id: Optional[str]) -> str:
    account = (owner_id or "").strip()
    if not account:
        raise HTTPException(status_code=401, detail="Missing X-Owner-Id header")
    return account


def create_app(context: AppContext, *, root_path: str | None = None) -> FastAPI:
    """Return a configured FastAPI application."""

    app = FastAPI(
        title="CourseDB",
        description="Share courses and reject near-duplicate uploads",
        root_path=(root_path or "").rstrip("/"),
    )
    app.state.context = context
    app.state.server = None
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    repository = context.repository

    async def _load_course(course_id: int) -> CourseRecord:
        try:
            record = await asyncio.to_thread(repository.get_course, course_id)
        except CourseError as error:
            raise _http_error(error, stored=True) from error
        if record is None:
            raise HTTPException(status_code=404, detail="Course not found")
        return record

    async def _load_owned_course(course_id: int, owner_id: Optional[str]) -> CourseRecord:
        account = _require_account(owner_id)
        record = await _load_course(course_id)
        if record.owner != account:
            raise HTTPException(status_code=401, detail="Only the owner may modify this course")
        return record

    @app.get("/api/courses2")
    async def list_courses(
        owner: Optional[str] = None,
        difficulty: Optional[Difficulty] = None,
        title: Optional[str] = None,
        sort: SortField = SortField.UPLOADED,
        order: str = Query("desc", pattern="^(asc|desc)$"),
        skip: int = Query(0, ge=0),
        limit: int = Query(50, ge=1, le=_MAX_PAGE_SIZE),
    ) -> Dict[str, Any]:
        _log_event("Listing courses", owner=owner, difficulty=difficulty, skip=skip, limit=limit)
        filters = {"owner": owner, "difficulty": difficulty, "title": title}
        try:
            records: List[CourseRecord] = await asyncio.to_thread(
                lambda: repository.list_courses(
                    **filters,
                    sort=sort,
                    descending=order == "desc",
                    offset=skip,
                    limit=limit,
                )
            )
            total = await asyncio.to_thread(lambda: repository.count_courses(**filters))
        except CourseError as error:
            raise _http_error(error, stored=True) from error
        return {"courses": [_serialize_course(record) for record in records], "total": total}

    @app.get("/api/courses2/{course_id}")
    async def get_course(course_id: int) -> Dict[str, Any]:
        record = await _load_course(course_id)
        return {"course": _serialize_course(record)}

    @app.put("/api/courses2")
    async def put_courses(
        request: Request,
        difficulty: Optional[Difficulty] = None,
        x_owner_id: Optional[str] = Header(None),
    ) -> Dict[str, Any]:
        owner = _require_account(x_owner_id)
        limit = get_max_upload_bytes()
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > limit:
            raise HTTPException(status_code=413, detail="Upload exceeds the size limit")
        raw_bytes = await request.body()
        if len(raw_bytes) > limit:
            raise HTTPException(status_code=413, detail="Upload exceeds the size limit")

        _log_event("Ingesting upload", owner=owner, size=len(raw_bytes), difficulty=difficulty)
        try:
            result = await asyncio.to_thread(
                lambda: context.ingestor.ingest_upload(
                    raw_bytes, owner=owner, difficulty=difficulty
                )
            )
        except CodecError as error:
            raise _http_error(error) from error
        _log_event(
            "Ingested upload",
            owner=owner,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
        )
        return {
            "succeeded": [_serialize_course(record) for record in result.succeeded],
            "failed": [_serialize_failure(failure) for failure in result.failed],
        }

    @app.get("/api/courses2/{course_id}/download")
    async def download_course(
        course_id: int,
        course_format: Representation = Representation.ENCRYPTED,
    ) -> Response:
        try:
            bundle = await asyncio.to_thread(
                context.artifacts.build_bundle, course_id, course_format
            )
        except ValueError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        except CourseError as error:
            raise _http_error(error, stored=True) from error
        return Response(
            content=bundle,
            media_type="application/zip",
            headers={
                "Content-Disposition": f'attachment; filename="course_{course_id}.zip"'
            },
        )

    @app.get("/api/courses2/{course_id}/thumbnail")
    async def get_thumbnail(
        course_id: int,
        size: str = Query("m", pattern="^(s|m|l|original)$"),
    ) -> Response:
        representation = _THUMBNAIL_SIZES[size]
        try:
            data = await asyncio.to_thread(context.artifacts.get, course_id, representation)
        except CourseError as error:
            raise _http_error(error, stored=True) from error
        return Response(content=data, media_type="image/jpeg")

    @app.post("/api/courses2/{course_id}/meta")
    async def update_meta(
        course_id: int,
        payload: CourseMetaPayload,
        x_owner_id: Optional[str] = Header(None),
    ) -> Dict[str, Any]:
        await _load_owned_course(course_id, x_owner_id)
        _log_event("Updating course meta", course_id=course_id, difficulty=payload.difficulty)
        try:
            await asyncio.to_thread(repository.update_difficulty, course_id, payload.difficulty)
        except CourseError as error:
            raise _http_error(error, stored=True) from error
        record = await _load_course(course_id)
        return {"course": _serialize_course(record)}

    @app.post("/api/courses2/{course_id}/vote")
    async def vote_course(
        course_id: int,
        payload: VotePayload,
        x_owner_id: Optional[str] = Header(None),
    ) -> Dict[str, Any]:
        account = _require_account(x_owner_id)
        try:
            votes = await asyncio.to_thread(
                repository.vote, course_id, account, payload.value
            )
        except CourseError as error:
            raise _http_error(error, stored=True) from error
        return {"id": str(course_id), "votes": votes}

    @app.delete(
        "/api/courses2/{course_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def delete_course(
        course_id: int,
        x_owner_id: Optional[str] = Header(None),
    ) -> Response:
        await _load_owned_course(course_id, x_owner_id)
        _log_event("Deleting course", course_id=course_id)
        try:
            await asyncio.to_thread(repository.remove_course, course_id)
        except CourseError as error:
            raise _http_error(error, stored=True) from error
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app


__all__ = ["create_app", "get_max_upload_bytes", "MAX_UPLOAD_BYTES_ENV"]
