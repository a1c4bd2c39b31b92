from __future__ import annotations

import asyncio
import dataclasses
import mimetypes
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Iterator, Optional

from redis.exceptions import RedisError

from reelstore.core.cache import ResultCache
from reelstore.core.config import Settings
from reelstore.core.errors import (
    AssetIdCollision,
    IngestError,
    InvalidInput,
    NotFound,
    ObjectNotFound,
    PersistenceFailure,
    PreviewFailure,
    StorageFailure,
)
from reelstore.core.logging import get_logger
from reelstore.core.storage import ObjectStore
from reelstore.db.models import Video
from reelstore.db.store import MetadataStore
from reelstore.domain import FeedPage, PreviewReport, ReconcileReport, VideoMetadata
from reelstore.ingest.naming import AssetNames, derive_asset_names, derive_key, derive_preview_key, now_millis
from reelstore.ingest.saga import CompensationStack, IngestState, Severity, StageStatus, run_stage, settle
from reelstore.ingest.transcode import TranscodeWorker

from .rewards import UPLOAD_REASON, RewardLedger

MAX_FEED_LIMIT = 50
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class IngestRun:
    """Mutable state owned by exactly one ingest."""

    names: AssetNames
    source: Path
    workdir: Path
    stack: CompensationStack
    logger: Any
    state: IngestState = IngestState.start
    upload_source: Path = field(init=False)
    probed_duration: float = 0.0
    duration_seconds: int = 0
    preview_key: Optional[str] = None
    history: list[tuple[IngestState, StageStatus]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.upload_source = self.source


class VideoService:
    """Ingest orchestrator plus the cache-through read and delete paths."""

    def __init__(
        self,
        settings: Settings,
        storage: ObjectStore,
        store: MetadataStore,
        cache: ResultCache,
        transcoder: TranscodeWorker,
        rewards: RewardLedger,
        *,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.settings = settings
        self.storage = storage
        self.store = store
        self.cache = cache
        self.transcoder = transcoder
        self.rewards = rewards
        self.clock = clock or now_millis
        self.logger = get_logger(component="video_service")

    async def ingest(
        self,
        owner_id: str,
        local_file_path: Path | str,
        original_filename: str,
        title: str | None = None,
        description: str | None = None,
        *,
        retain_source: bool = False,
    ) -> VideoMetadata:
        """Turn a spooled upload into a stored, cached ``VideoMetadata``.

        Any failure after the first side effect unwinds every completed side
        effect before an ``IngestError`` wrapping the original cause is raised.
        The spooled file and all intermediate files are removed on every path
        unless ``retain_source`` is set.
        """
        source = Path(local_file_path)
        try:
            names = derive_asset_names(owner_id, original_filename, now_ms=self.clock())
        except ValueError as exc:
            if not retain_source:
                self._remove_spooled(source, self.logger)
            raise IngestError(IngestState.start.value, InvalidInput(str(exc))) from exc

        logger = self.logger.bind(video_id=names.video_id, owner_id=owner_id)
        stack = CompensationStack(context={"video_id": names.video_id})
        try:
            with tempfile.TemporaryDirectory(prefix="reelstore-", dir=self.settings.spool_dir) as tmp:
                run = IngestRun(names=names, source=source, workdir=Path(tmp), stack=stack, logger=logger)
                try:
                    metadata = await self._run_pipeline(run, owner_id, title, description)
                except asyncio.CancelledError:
                    logger.warning("ingest_cancelled", stage=run.state.value, pending=stack.names)
                    await stack.unwind()
                    raise
                except IngestError as exc:
                    logger.error("ingest_failed", stage=exc.stage, error=str(exc.cause), pending=stack.names)
                    await stack.unwind()
                    raise
                except Exception as exc:
                    logger.exception("ingest_failed", stage=run.state.value, pending=stack.names)
                    await stack.unwind()
                    raise IngestError(run.state.value, exc, video_id=names.video_id) from exc
        finally:
            if not retain_source:
                self._remove_spooled(source, logger)

        await self._credit_upload(metadata, logger)
        return metadata

    async def _run_pipeline(
        self,
        run: IngestRun,
        owner_id: str,
        title: str | None,
        description: str | None,
    ) -> VideoMetadata:
        max_duration = self.settings.max_duration_seconds

        await self._stage(run, IngestState.validated, Severity.fatal, partial(self._validate, run))

        run.probed_duration = await self._stage(
            run,
            IngestState.probed,
            Severity.fatal,
            partial(asyncio.to_thread, self.transcoder.probe_duration, run.source),
        )
        run.duration_seconds = min(int(round(run.probed_duration)), max_duration)

        if run.probed_duration > max_duration:
            run.upload_source = await self._stage(
                run,
                IngestState.trimmed,
                Severity.fatal,
                partial(asyncio.to_thread, self.transcoder.trim_to_max, run.source, max_duration, run.workdir),
            )
            run.names = dataclasses.replace(
                run.names,
                media_key=derive_key(run.names.video_id, run.names.filename, trimmed=True),
            )

        await self._stage(run, IngestState.media_uploaded, Severity.fatal, partial(self._upload_media, run))

        preview = await run_stage(IngestState.preview_uploaded, Severity.best_effort, partial(self._upload_preview, run))
        run.history.append((preview.stage, preview.status))
        if preview.status is StageStatus.ok:
            run.state = IngestState.preview_uploaded
            run.preview_key = preview.value
        else:
            run.logger.warning("preview_degraded", error=str(preview.error))

        video = await self._stage(
            run,
            IngestState.record_created,
            Severity.fatal,
            partial(self._create_record, run, owner_id, title, description),
        )
        metadata = self._to_metadata(video)

        cached = await run_stage(IngestState.cached, Severity.best_effort, partial(self.cache.set, video.id, metadata))
        run.history.append((cached.stage, cached.status))
        if cached.status is StageStatus.ok:
            run.state = IngestState.cached
        else:
            run.logger.warning("cache_write_failed", error=str(cached.error))

        run.state = IngestState.done
        run.logger.info(
            "ingest_completed",
            object_key=metadata.object_key,
            preview_key=metadata.preview_key,
            duration_seconds=metadata.duration_seconds,
            stages=[f"{stage.value}:{status.value}" for stage, status in run.history],
        )
        return metadata

    async def _stage(self, run: IngestRun, stage: IngestState, severity: Severity, action) -> Any:
        result = await run_stage(stage, severity, action)
        run.history.append((stage, result.status))
        if result.status is StageStatus.fatal:
            cause = result.error or RuntimeError(f"stage {stage.value} failed")
            raise IngestError(stage.value, cause, video_id=run.names.video_id) from cause
        run.state = stage
        run.logger.debug("ingest_stage_completed", stage=stage.value)
        return result.value

    async def _validate(self, run: IngestRun) -> None:
        video_id = run.names.video_id
        await asyncio.to_thread(_check_readable, run.source)
        await settle(
            self.store.reserve(video_id),
            on_success=lambda _: run.stack.push("release_video_id", partial(self.store.release, video_id)),
        )
        if await self.store.exists(video_id):
            raise AssetIdCollision(f"asset id collision: {video_id}")
        if await asyncio.to_thread(self.storage.list, run.names.prefix):
            raise AssetIdCollision(f"asset id collision: objects already under {run.names.prefix}")

    async def _upload_media(self, run: IngestRun) -> str:
        key = run.names.media_key
        run.stack.push("delete_media_object", partial(self._delete_object, key))
        content_type = "video/mp4" if run.upload_source != run.source else _guess_content_type(run.names.filename)
        # The put runs in a thread; settle lets it land before any compensation deletes the key.
        await settle(asyncio.to_thread(self.storage.put_file, key, run.upload_source, content_type=content_type))
        return key

    async def _upload_preview(self, run: IngestRun) -> str:
        key = run.names.preview_key
        frame = await asyncio.to_thread(
            self.transcoder.extract_preview_frame,
            run.upload_source,
            float(min(run.probed_duration, self.settings.max_duration_seconds)),
            run.workdir,
        )
        entry = run.stack.push("delete_preview_object", partial(self._delete_object, key))
        try:
            await settle(asyncio.to_thread(self.storage.put_file, key, frame, content_type="image/jpeg"))
        except Exception:
            run.stack.discard(entry)
            await self._discard_object(key, run.logger)
            raise
        return key

    async def _create_record(
        self,
        run: IngestRun,
        owner_id: str,
        title: str | None,
        description: str | None,
    ) -> Video:
        video = Video(
            id=run.names.video_id,
            owner_id=owner_id,
            title=title,
            description=description,
            object_key=run.names.media_key,
            preview_key=run.preview_key,
            duration_seconds=run.duration_seconds,
            view_count=0,
            like_count=0,
            created_at=datetime.now(timezone.utc),
        )
        return await settle(
            self.store.create(video),
            on_success=lambda _: run.stack.push("delete_video_row", partial(self._delete_row, video.id)),
        )

    async def _delete_object(self, key: str) -> None:
        await asyncio.to_thread(self.storage.delete, key)

    async def _delete_row(self, video_id: str) -> None:
        await self.store.delete(video_id)

    async def _discard_object(self, key: str, logger: Any) -> None:
        try:
            await self._delete_object(key)
        except StorageFailure:
            logger.warning("preview_cleanup_failed", key=key)

    async def _credit_upload(self, metadata: VideoMetadata, logger: Any) -> None:
        try:
            await self.rewards.credit(
                metadata.owner_id,
                self.settings.upload_reward_amount,
                UPLOAD_REASON,
                metadata.id,
            )
        except Exception:
            logger.exception("reward_credit_failed")

    @staticmethod
    def _remove_spooled(source: Path, logger: Any) -> None:
        try:
            source.unlink(missing_ok=True)
        except OSError as cleanup_error:
            logger.warning("spooled_file_cleanup_failed", path=str(source), error=str(cleanup_error))

    async def get_metadata(self, video_id: str) -> VideoMetadata:
        """Cache-through metadata read that only returns videos whose media still resolves."""
        logger = self.logger.bind(video_id=video_id)
        cached = await self._cache_get(video_id)
        if cached is not None:
            if await self._object_exists(cached.object_key):
                return cached
            logger.warning("stale_cache_entry", object_key=cached.object_key)
            await self._cache_invalidate(video_id)

        video = await self.store.get(video_id)
        if video is None:
            raise NotFound(video_id)
        if not await self._object_exists(video.object_key):
            logger.warning("video_object_missing", object_key=video.object_key)
            raise NotFound(video_id)

        metadata = self._to_metadata(video)
        await self._cache_set(metadata)
        return metadata

    async def get_stream(self, video_id: str) -> tuple[VideoMetadata, Iterator[bytes]]:
        metadata = await self.get_metadata(video_id)
        try:
            chunks = await asyncio.to_thread(self.storage.get, metadata.object_key)
        except ObjectNotFound as exc:
            await self._cache_invalidate(video_id)
            raise NotFound(video_id) from exc
        return metadata, chunks

    async def delete(self, video_id: str, *, requester_id: str | None = None) -> None:
        """Remove the objects, then the row, then the cache entry.

        When requester_id is given, only the owner may delete.
        """
        video = await self.store.get(video_id)
        if video is None:
            raise NotFound(video_id)
        if requester_id is not None and requester_id != video.owner_id:
            raise PermissionError(video_id)
        for key in (video.preview_key, video.object_key):
            if key:
                await self._delete_object(key)
        if not await self.store.delete(video_id):
            raise NotFound(video_id)
        await self._cache_invalidate(video_id)
        self.logger.info("video_deleted", video_id=video_id)

    async def list_feed(self, cursor: str | None = None, limit: int = 10) -> FeedPage:
        limit = max(1, min(limit, MAX_FEED_LIMIT))
        before = _parse_cursor(cursor)
        videos = list(await self.store.list_feed(before=before, limit=limit + 1))
        has_more = len(videos) > limit
        page = videos[:limit]
        next_cursor = None
        if has_more and page:
            next_cursor = str((_as_utc(page[-1].created_at) - _EPOCH) // timedelta(microseconds=1))
        return FeedPage(videos=[self._to_metadata(video) for video in page], next_cursor=next_cursor, has_more=has_more)

    async def reconcile(self) -> ReconcileReport:
        """Drop rows whose media object is gone, together with their preview and cache entry."""
        report = ReconcileReport()
        for video in await self.store.list_all():
            report.checked += 1
            if await self._object_exists(video.object_key):
                continue
            self.logger.warning("orphaned_video_row", video_id=video.id, object_key=video.object_key)
            if video.preview_key:
                await self._discard_object(video.preview_key, self.logger)
            await self.store.delete(video.id)
            await self._cache_invalidate(video.id)
            report.removed.append(video.id)
        return report

    async def regenerate_previews(self) -> PreviewReport:
        """Extract and upload a preview for every stored video that has none.

        A video whose regeneration fails is reported and skipped; the sweep continues.
        """
        report = PreviewReport()
        for video in await self.store.list_missing_previews():
            report.checked += 1
            try:
                key = await self._regenerate_preview(video)
            except (NotFound, PreviewFailure, StorageFailure, PersistenceFailure, OSError) as exc:
                self.logger.warning("preview_regeneration_failed", video_id=video.id, error=str(exc))
                report.failed.append(video.id)
                continue
            self.logger.info("preview_regenerated", video_id=video.id, preview_key=key)
            report.regenerated.append(video.id)
        return report

    async def _regenerate_preview(self, video: Video) -> str:
        media_name = PurePosixPath(video.object_key).name
        key = derive_preview_key(video.id, media_name)
        with tempfile.TemporaryDirectory(prefix="reelstore-preview-", dir=self.settings.spool_dir) as tmp:
            workdir = Path(tmp)
            local = workdir / media_name
            await asyncio.to_thread(_download, self.storage, video.object_key, local)
            frame = await asyncio.to_thread(
                self.transcoder.extract_preview_frame,
                local,
                float(video.duration_seconds),
                workdir,
            )
            await asyncio.to_thread(self.storage.put_file, key, frame, content_type="image/jpeg")

        try:
            updated = await self.store.update_preview(video.id, key)
        except PersistenceFailure:
            await self._discard_object(key, self.logger)
            raise
        if not updated:
            await self._discard_object(key, self.logger)
            raise NotFound(video.id)
        await self._cache_invalidate(video.id)
        return key

    async def ensure_container(self) -> None:
        await asyncio.to_thread(self.storage.ensure_container)

    async def _object_exists(self, key: str) -> bool:
        return await asyncio.to_thread(self.storage.exists, key)

    async def _cache_get(self, video_id: str) -> VideoMetadata | None:
        try:
            return await self.cache.get(video_id)
        except (RedisError, OSError):
            self.logger.warning("cache_read_failed", video_id=video_id)
            return None

    async def _cache_set(self, metadata: VideoMetadata) -> None:
        try:
            await self.cache.set(metadata.id, metadata)
        except (RedisError, OSError):
            self.logger.warning("cache_write_failed", video_id=metadata.id)

    async def _cache_invalidate(self, video_id: str) -> None:
        try:
            await self.cache.invalidate(video_id)
        except (RedisError, OSError):
            self.logger.warning("cache_invalidate_failed", video_id=video_id)

    def _to_metadata(self, video: Video) -> VideoMetadata:
        return VideoMetadata(
            id=video.id,
            owner_id=video.owner_id,
            title=video.title,
            description=video.description,
            object_key=video.object_key,
            preview_key=video.preview_key,
            media_url=self.storage.object_url(video.object_key),
            preview_url=self.storage.object_url(video.preview_key) if video.preview_key else None,
            duration_seconds=video.duration_seconds,
            view_count=video.view_count,
            like_count=video.like_count,
            created_at=_as_utc(video.created_at),
        )


def _check_readable(path: Path) -> None:
    if not path.is_file():
        raise InvalidInput(f"upload not found: {path.name}")
    try:
        with path.open("rb") as handle:
            first = handle.read(1)
    except OSError as exc:
        raise InvalidInput(f"upload unreadable: {exc}") from exc
    if not first:
        raise InvalidInput("uploaded file is empty")


def _download(storage: ObjectStore, key: str, target: Path) -> None:
    with target.open("wb") as sink:
        for chunk in storage.get(key):
            sink.write(chunk)


def _guess_content_type(filename: str) -> str:
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_cursor(cursor: str | None) -> datetime | None:
    if not cursor:
        return None
    try:
        micros = int(cursor)
    except ValueError as exc:
        raise InvalidInput(f"invalid feed cursor: {cursor}") from exc
    return _EPOCH + timedelta(microseconds=micros)


__all__ = ["VideoService", "IngestRun", "MAX_FEED_LIMIT"]
