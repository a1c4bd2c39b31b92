from __future__ import annotations

import mimetypes
import tempfile
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Response, UploadFile, status
from fastapi.responses import StreamingResponse

from reelstore.api import deps
from reelstore.core.config import Settings
from reelstore.core.errors import (
    AssetIdCollision,
    IngestError,
    InvalidInput,
    NotFound,
    PersistenceFailure,
    StorageFailure,
    TranscodeFailure,
)
from reelstore.core.logging import get_logger
from reelstore.services.video_service import MAX_FEED_LIMIT

from . import schemas


router = APIRouter(prefix="/videos", tags=["videos"])
logger = get_logger(component="videos_api")

SPOOL_CHUNK_BYTES = 1024 * 1024


async def _spool_upload(file: UploadFile, settings: Settings) -> Path:
    """Copy the request body to a local file, enforcing the upload size limit."""
    suffix = Path(file.filename or "").suffix or ".bin"
    written = 0
    with tempfile.NamedTemporaryFile(delete=False, suffix=suffix, dir=settings.spool_dir) as tmp:
        spooled = Path(tmp.name)
        try:
            while True:
                chunk = await file.read(SPOOL_CHUNK_BYTES)
                if not chunk:
                    break
                written += len(chunk)
                if written > settings.max_upload_size_bytes:
                    break
                tmp.write(chunk)
        except BaseException:
            tmp.close()
            spooled.unlink(missing_ok=True)
            raise
    await file.close()

    if written > settings.max_upload_size_bytes:
        spooled.unlink(missing_ok=True)
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="upload_too_large")
    logger.info("upload_spooled", path=str(spooled), size_bytes=written)
    return spooled


def _ingest_http_error(exc: IngestError) -> HTTPException:
    cause = exc.cause
    if isinstance(cause, AssetIdCollision):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="asset_id_collision")
    if isinstance(cause, InvalidInput):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_input")
    if isinstance(cause, TranscodeFailure):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="unreadable_media")
    if isinstance(cause, StorageFailure):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="storage_unavailable")
    if isinstance(cause, PersistenceFailure):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="persistence_failed")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="ingest_failed")


@router.post("", response_model=schemas.VideoResponse, status_code=status.HTTP_201_CREATED)
async def upload_video(
    service: deps.VideoServiceDependency,
    context: deps.AuthDependency,
    file: UploadFile = File(...),
    title: Optional[str] = Form(default=None),
    description: Optional[str] = Form(default=None),
    settings: Settings = Depends(deps.get_app_settings),
) -> schemas.VideoResponse:
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="filename_required")
    content_type = (file.content_type or "").split(";")[0].strip().lower()
    if content_type not in settings.allowed_content_types:
        raise HTTPException(status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail="unsupported_media_type")

    spooled = await _spool_upload(file, settings)
    try:
        metadata = await service.ingest(context.owner_id, spooled, file.filename, title, description)
    except IngestError as exc:
        raise _ingest_http_error(exc) from exc
    return schemas.VideoResponse(**metadata.model_dump())


@router.get("", response_model=schemas.FeedResponse)
async def list_videos(
    service: deps.VideoServiceDependency,
    context: deps.AuthDependency,
    cursor: Optional[str] = None,
    limit: int = Query(default=10, ge=1, le=MAX_FEED_LIMIT),
) -> schemas.FeedResponse:
    try:
        page = await service.list_feed(cursor, limit)
    except InvalidInput as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_cursor") from exc
    return schemas.FeedResponse(**page.model_dump())


@router.get("/{video_id}", response_model=schemas.VideoResponse)
async def get_video(
    video_id: str,
    service: deps.VideoServiceDependency,
    context: deps.AuthDependency,
) -> schemas.VideoResponse:
    try:
        metadata = await service.get_metadata(video_id)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="video_not_found") from exc
    return schemas.VideoResponse(**metadata.model_dump())


@router.get("/{video_id}/stream")
async def stream_video(
    video_id: str,
    service: deps.VideoServiceDependency,
    context: deps.AuthDependency,
) -> StreamingResponse:
    try:
        metadata, chunks = await service.get_stream(video_id)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="video_not_found") from exc
    except StorageFailure as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="storage_unavailable") from exc
    media_type = mimetypes.guess_type(metadata.object_key)[0] or "video/mp4"
    return StreamingResponse(chunks, media_type=media_type)


@router.delete("/{video_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_video(
    video_id: str,
    service: deps.VideoServiceDependency,
    context: deps.AuthDependency,
) -> Response:
    try:
        await service.delete(video_id, requester_id=context.owner_id)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="video_not_found") from exc
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="owner_mismatch") from exc
    except StorageFailure as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="storage_unavailable") from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


__all__ = ["router"]
