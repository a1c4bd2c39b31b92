from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest
from redis.exceptions import RedisError

from reelstore.core.cache import MemoryResultCache
from reelstore.core.errors import (
    AssetIdCollision,
    IngestError,
    InvalidInput,
    NotFound,
    PersistenceFailure,
    StorageFailure,
    TranscodeFailure,
)
from reelstore.core.storage import LocalObjectStore
from reelstore.db.store import MetadataStore
from reelstore.domain import VideoMetadata
from tests.conftest import FIXED_NOW_MS, FakeTranscodeWorker, RecordingRewardLedger, service_scope

VIDEO_ID = f"user42-{FIXED_NOW_MS}"


class FailingMetadataStore(MetadataStore):
    async def create(self, video):
        raise PersistenceFailure("video row insert failed: disk full")


class FlakyPreviewStorage(LocalObjectStore):
    """Rejects JPEG uploads so the preview stage fails after the frame is extracted."""

    def put_file(self, key, path, *, content_type=None):
        if key.endswith("-thumb.jpg"):
            raise StorageFailure(f"put failed for {key}: connection reset")
        super().put_file(key, path, content_type=content_type)


class SignallingStorage(LocalObjectStore):
    """Signals the test loop once an object has been written."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.started = None
        self.loop = None

    def put_file(self, key, path, *, content_type=None):
        super().put_file(key, path, content_type=content_type)
        self.loop.call_soon_threadsafe(self.started.set)


class SlowPutStorage(LocalObjectStore):
    """Signals as soon as a put starts, then takes a while before the object lands."""

    def __init__(self, *args, delay: float = 0.3, **kwargs):
        super().__init__(*args, **kwargs)
        self.delay = delay
        self.started = None
        self.loop = None

    def put_file(self, key, path, *, content_type=None):
        if self.loop is not None:
            self.loop.call_soon_threadsafe(self.started.set)
        time.sleep(self.delay)
        super().put_file(key, path, content_type=content_type)


class RejectingStorage(LocalObjectStore):
    def put_file(self, key, path, *, content_type=None):
        raise StorageFailure(f"put failed for {key}: bucket unavailable")


class UndeletableStorage(LocalObjectStore):
    def delete(self, key):
        raise StorageFailure(f"delete failed for {key}: timeout")


class UnreachableCache(MemoryResultCache):
    async def _set_raw(self, key, payload, ttl):
        raise RedisError("connection refused")


def _store(settings, cls=LocalObjectStore):
    return cls(Path(settings.local_storage_base_path), settings.bucket_name)


def test_short_upload_is_stored_without_trim(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload("My Clip!.mp4")
    transcoder = FakeTranscodeWorker(duration=10.0)
    rewards = RecordingRewardLedger()

    async def scenario():
        async with service_scope(settings, transcoder=transcoder, rewards=rewards) as service:
            metadata = await service.ingest("user42", source, "My Clip!.mp4", "Title", "Desc")
            keys = service.storage.list(f"{VIDEO_ID}/")
            cached = await service.cache.get(metadata.id)
            return metadata, keys, cached

    metadata, keys, cached = asyncio.run(scenario())

    assert metadata.id == VIDEO_ID
    assert metadata.object_key == f"{VIDEO_ID}/MyClip.mp4"
    assert metadata.preview_key == f"{VIDEO_ID}/MyClip-thumb.jpg"
    assert metadata.duration_seconds == 10
    assert metadata.title == "Title"
    assert metadata.view_count == 0 and metadata.like_count == 0
    assert transcoder.trim_calls == []
    assert keys == [f"{VIDEO_ID}/MyClip-thumb.jpg", f"{VIDEO_ID}/MyClip.mp4"]
    assert cached == metadata
    assert rewards.credits == [("user42", 10, "UPLOAD", VIDEO_ID)]
    assert not source.exists(), "spooled upload should be removed"


def test_long_upload_is_trimmed_and_clamped(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload("long.mp4")
    transcoder = FakeTranscodeWorker(duration=45.0)

    async def scenario():
        async with service_scope(settings, transcoder=transcoder) as service:
            metadata = await service.ingest("user42", source, "long.mp4")
            return metadata, service.storage.list(metadata.object_key.split("/")[0] + "/")

    metadata, keys = asyncio.run(scenario())

    assert metadata.duration_seconds == 30
    assert metadata.object_key == f"{VIDEO_ID}/trimmed-long.mp4"
    assert metadata.preview_key is not None
    assert keys == sorted([metadata.object_key, metadata.preview_key])
    assert len(transcoder.trim_calls) == 1
    assert transcoder.trim_calls[0][1] == settings.max_duration_seconds
    preview_source, preview_duration = transcoder.preview_calls[0]
    assert preview_source.name == "trimmed-long.mp4"
    assert preview_duration == 30.0


def test_duration_is_rounded_to_whole_seconds(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()

    async def scenario():
        async with service_scope(settings, transcoder=FakeTranscodeWorker(duration=12.6)) as service:
            return await service.ingest("user42", source, "clip.mp4")

    assert asyncio.run(scenario()).duration_seconds == 13


def test_preview_failure_degrades_but_succeeds(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()

    async def scenario():
        async with service_scope(settings, transcoder=FakeTranscodeWorker(fail_preview=True)) as service:
            metadata = await service.ingest("user42", source, "clip.mp4")
            row = await service.store.get(metadata.id)
            return metadata, row, service.storage.list(f"{VIDEO_ID}/")

    metadata, row, keys = asyncio.run(scenario())

    assert metadata.preview_key is None
    assert metadata.preview_url is None
    assert row.preview_key is None
    assert keys == [f"{VIDEO_ID}/clip.mp4"]


def test_preview_upload_failure_leaves_no_preview_object(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()

    async def scenario():
        async with service_scope(settings, storage=_store(settings, FlakyPreviewStorage)) as service:
            metadata = await service.ingest("user42", source, "clip.mp4")
            return metadata, service.storage.list(f"{VIDEO_ID}/")

    metadata, keys = asyncio.run(scenario())

    assert metadata.preview_key is None
    assert keys == [f"{VIDEO_ID}/clip.mp4"]


def test_metadata_failure_removes_uploaded_objects(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()
    rewards = RecordingRewardLedger()

    async def scenario():
        async with service_scope(settings, store_cls=FailingMetadataStore, rewards=rewards) as service:
            with pytest.raises(IngestError) as excinfo:
                await service.ingest("user42", source, "clip.mp4")
            exists = await service.store.exists(VIDEO_ID)
            cached = await service.cache.get(VIDEO_ID)
            return excinfo.value, service.storage.list(f"{VIDEO_ID}/"), exists, cached

    error, keys, exists, cached = asyncio.run(scenario())

    assert error.stage == "RECORD_CREATED"
    assert error.video_id == VIDEO_ID
    assert isinstance(error.cause, PersistenceFailure)
    assert error.__cause__ is error.cause
    assert keys == []
    assert exists is False
    assert cached is None
    assert rewards.credits == []
    assert not source.exists()


def test_unreadable_media_has_no_side_effects(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()

    async def scenario():
        async with service_scope(settings, transcoder=FakeTranscodeWorker(fail_duration=True)) as service:
            with pytest.raises(IngestError) as excinfo:
                await service.ingest("user42", source, "clip.mp4")
            return excinfo.value, service.storage.list("")

    error, keys = asyncio.run(scenario())

    assert error.stage == "PROBED"
    assert isinstance(error.cause, TranscodeFailure)
    assert keys == []
    assert not source.exists()


def test_empty_upload_is_invalid_input(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload(payload=b"")

    async def scenario():
        async with service_scope(settings) as service:
            with pytest.raises(IngestError) as excinfo:
                await service.ingest("user42", source, "clip.mp4")
            return excinfo.value

    error = asyncio.run(scenario())
    assert error.stage == "VALIDATED"
    assert isinstance(error.cause, InvalidInput)


def test_missing_upload_is_invalid_input(configure_environment, tmp_path):
    settings = configure_environment

    async def scenario():
        async with service_scope(settings) as service:
            with pytest.raises(IngestError) as excinfo:
                await service.ingest("user42", tmp_path / "nope.mp4", "nope.mp4")
            return excinfo.value

    assert isinstance(asyncio.run(scenario()).cause, InvalidInput)


def test_owner_without_safe_characters_is_rejected(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()

    async def scenario():
        async with service_scope(settings) as service:
            with pytest.raises(IngestError) as excinfo:
                await service.ingest("@@@", source, "clip.mp4")
            return excinfo.value

    error = asyncio.run(scenario())
    assert error.stage == "START"
    assert isinstance(error.cause, InvalidInput)
    assert not source.exists()


def test_id_collision_is_rejected_without_overwrite(configure_environment, spooled_upload):
    settings = configure_environment
    first = spooled_upload("first.mp4", b"first-upload")
    second = spooled_upload("second.mp4", b"second-upload")

    async def scenario():
        async with service_scope(settings) as service:
            original = await service.ingest("user42", first, "first.mp4")
            with pytest.raises(IngestError) as excinfo:
                await service.ingest("user42", second, "second.mp4")
            keys = service.storage.list(f"{VIDEO_ID}/")
            return original, excinfo.value, keys

    original, error, keys = asyncio.run(scenario())

    assert error.stage == "VALIDATED"
    assert isinstance(error.cause, AssetIdCollision)
    assert isinstance(error.cause, InvalidInput)
    assert "collision" in str(error.cause)
    assert original.object_key in keys
    assert f"{VIDEO_ID}/second.mp4" not in keys


def test_retain_source_keeps_the_callers_file(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()

    async def scenario():
        async with service_scope(settings) as service:
            return await service.ingest("user42", source, "clip.mp4", retain_source=True)

    asyncio.run(scenario())
    assert source.exists()


def test_reward_failure_does_not_fail_ingest(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()

    async def scenario():
        async with service_scope(settings, rewards=RecordingRewardLedger(fail=True)) as service:
            metadata = await service.ingest("user42", source, "clip.mp4")
            return metadata, await service.store.exists(metadata.id)

    metadata, exists = asyncio.run(scenario())
    assert metadata.id == VIDEO_ID
    assert exists is True


def test_cancellation_unwinds_uploaded_media(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()
    storage = _store(settings, SignallingStorage)

    async def scenario():
        storage.loop = asyncio.get_running_loop()
        storage.started = asyncio.Event()

        async with service_scope(settings, storage=storage) as service:
            original_upload_preview = service._upload_preview

            async def blocked_preview(run):
                await asyncio.Event().wait()
                return await original_upload_preview(run)

            service._upload_preview = blocked_preview
            task = asyncio.create_task(service.ingest("user42", source, "clip.mp4"))
            await storage.started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return service.storage.list(""), await service.store.exists(VIDEO_ID)

    keys, exists = asyncio.run(scenario())
    assert keys == []
    assert exists is False
    assert not source.exists()


def test_get_metadata_reads_through_cache(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()
    cache = MemoryResultCache()

    async def scenario():
        async with service_scope(settings, cache=cache) as service:
            metadata = await service.ingest("user42", source, "clip.mp4")
            cache.clear()
            first = await service.get_metadata(metadata.id)
            refilled = await cache.get(metadata.id)
            second = await service.get_metadata(metadata.id)
            return metadata, first, refilled, second

    metadata, first, refilled, second = asyncio.run(scenario())
    assert first == metadata
    assert refilled == metadata
    assert second == metadata


def test_cached_entry_with_missing_object_is_invalidated(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()

    async def scenario():
        async with service_scope(settings) as service:
            metadata = await service.ingest("user42", source, "clip.mp4")
            service.storage.delete(metadata.object_key)
            with pytest.raises(NotFound):
                await service.get_metadata(metadata.id)
            return await service.cache.get(metadata.id)

    assert asyncio.run(scenario()) is None


def test_get_metadata_unknown_id(configure_environment):
    settings = configure_environment

    async def scenario():
        async with service_scope(settings) as service:
            with pytest.raises(NotFound):
                await service.get_metadata("user42-1")

    asyncio.run(scenario())


def test_get_stream_yields_the_stored_bytes(configure_environment, spooled_upload):
    settings = configure_environment
    payload = b"stream-me" * 1000
    source = spooled_upload(payload=payload)

    async def scenario():
        async with service_scope(settings) as service:
            metadata = await service.ingest("user42", source, "clip.mp4")
            _, chunks = await service.get_stream(metadata.id)
            return b"".join(chunks)

    assert asyncio.run(scenario()) == payload


def test_delete_is_idempotent_via_not_found(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()

    async def scenario():
        async with service_scope(settings) as service:
            metadata = await service.ingest("user42", source, "clip.mp4")
            await service.delete(metadata.id)
            with pytest.raises(NotFound):
                await service.delete(metadata.id)
            cached = await service.cache.get(metadata.id)
            return service.storage.list(f"{VIDEO_ID}/"), cached

    keys, cached = asyncio.run(scenario())
    assert keys == []
    assert cached is None


def test_delete_by_someone_else_is_refused(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()

    async def scenario():
        async with service_scope(settings) as service:
            metadata = await service.ingest("user42", source, "clip.mp4")
            with pytest.raises(PermissionError):
                await service.delete(metadata.id, requester_id="user99")
            return await service.store.exists(metadata.id)

    assert asyncio.run(scenario()) is True


def test_feed_pages_newest_first(configure_environment, spooled_upload):
    settings = configure_environment
    ticks = iter(range(FIXED_NOW_MS, FIXED_NOW_MS + 100))

    async def scenario():
        async with service_scope(settings, clock=lambda: next(ticks)) as service:
            ids = []
            for index in range(3):
                source = spooled_upload(f"clip{index}.mp4")
                ids.append((await service.ingest("user42", source, f"clip{index}.mp4")).id)
            first = await service.list_feed(limit=2)
            second = await service.list_feed(cursor=first.next_cursor, limit=2)
            return ids, first, second

    ids, first, second = asyncio.run(scenario())

    assert [video.id for video in first.videos] == [ids[2], ids[1]]
    assert first.has_more is True
    assert first.next_cursor is not None
    assert [video.id for video in second.videos] == [ids[0]]
    assert second.has_more is False
    assert second.next_cursor is None


def test_feed_rejects_malformed_cursor(configure_environment):
    settings = configure_environment

    async def scenario():
        async with service_scope(settings) as service:
            with pytest.raises(InvalidInput):
                await service.list_feed(cursor="yesterday")

    asyncio.run(scenario())


def test_reconcile_drops_rows_without_media(configure_environment, spooled_upload):
    settings = configure_environment
    ticks = iter(range(FIXED_NOW_MS, FIXED_NOW_MS + 100))

    async def scenario():
        async with service_scope(settings, clock=lambda: next(ticks)) as service:
            kept = await service.ingest("user42", spooled_upload("a.mp4"), "a.mp4")
            orphan = await service.ingest("user42", spooled_upload("b.mp4"), "b.mp4")
            service.storage.delete(orphan.object_key)
            report = await service.reconcile()
            return kept, orphan, report, service.storage.list(f"{orphan.id}/"), await service.store.exists(orphan.id)

    kept, orphan, report, orphan_keys, orphan_exists = asyncio.run(scenario())

    assert report.checked == 2
    assert report.removed == [orphan.id]
    assert orphan_keys == []
    assert orphan_exists is False


def test_cancellation_waits_for_an_in_flight_upload_before_unwinding(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()
    storage = _store(settings, SlowPutStorage)

    async def scenario():
        storage.loop = asyncio.get_running_loop()
        storage.started = asyncio.Event()

        async with service_scope(settings, storage=storage) as service:
            task = asyncio.create_task(service.ingest("user42", source, "clip.mp4"))
            await storage.started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            # Give any stray writer thread time to land before listing.
            await asyncio.sleep(storage.delay)
            return service.storage.list(""), await service.store.exists(VIDEO_ID)

    keys, exists = asyncio.run(scenario())
    assert keys == []
    assert exists is False
    assert not source.exists()


def test_concurrent_ingests_with_the_same_id_keep_the_winner(configure_environment, spooled_upload):
    settings = configure_environment
    first = spooled_upload("first.mp4", b"first-upload")
    second = spooled_upload("second.mp4", b"second-upload")
    storage = _store(settings, SlowPutStorage)
    storage.delay = 0.2

    async def scenario():
        async with service_scope(settings, storage=storage) as service:
            results = await asyncio.gather(
                service.ingest("user42", first, "first.mp4"),
                service.ingest("user42", second, "second.mp4"),
                return_exceptions=True,
            )
            row = await service.store.get(VIDEO_ID)
            return results, row, service.storage.list(f"{VIDEO_ID}/")

    results, row, keys = asyncio.run(scenario())

    winners = [result for result in results if isinstance(result, VideoMetadata)]
    losers = [result for result in results if isinstance(result, IngestError)]
    assert len(winners) == 1 and len(losers) == 1
    winner, loser = winners[0], losers[0]
    assert loser.stage == "VALIDATED"
    assert isinstance(loser.cause, AssetIdCollision)
    assert row is not None
    assert row.object_key == winner.object_key
    assert keys == sorted([winner.object_key, winner.preview_key])


def test_failed_ingest_releases_its_id(configure_environment, spooled_upload):
    settings = configure_environment

    async def scenario():
        async with service_scope(settings, transcoder=FakeTranscodeWorker(fail_duration=True)) as service:
            with pytest.raises(IngestError):
                await service.ingest("user42", spooled_upload("a.mp4"), "a.mp4")
            service.transcoder.fail_duration = False
            return await service.ingest("user42", spooled_upload("b.mp4"), "b.mp4")

    assert asyncio.run(scenario()).id == VIDEO_ID


def test_trim_failure_leaves_no_objects(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload("long.mp4")
    transcoder = FakeTranscodeWorker(duration=45.0, fail_trim=True)

    async def scenario():
        async with service_scope(settings, transcoder=transcoder) as service:
            with pytest.raises(IngestError) as excinfo:
                await service.ingest("user42", source, "long.mp4")
            return excinfo.value, service.storage.list(""), await service.store.exists(VIDEO_ID)

    error, keys, exists = asyncio.run(scenario())

    assert error.stage == "TRIMMED"
    assert isinstance(error.cause, TranscodeFailure)
    assert keys == []
    assert exists is False
    assert not source.exists()


def test_media_upload_failure_is_fatal_without_side_effects(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()
    rewards = RecordingRewardLedger()

    async def scenario():
        async with service_scope(settings, storage=_store(settings, RejectingStorage), rewards=rewards) as service:
            with pytest.raises(IngestError) as excinfo:
                await service.ingest("user42", source, "clip.mp4")
            return excinfo.value, service.storage.list(""), await service.store.exists(VIDEO_ID)

    error, keys, exists = asyncio.run(scenario())

    assert error.stage == "MEDIA_UPLOADED"
    assert isinstance(error.cause, StorageFailure)
    assert keys == []
    assert exists is False
    assert rewards.credits == []
    assert not source.exists()


def test_cache_write_failure_does_not_fail_ingest(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()

    async def scenario():
        async with service_scope(settings, cache=UnreachableCache()) as service:
            metadata = await service.ingest("user42", source, "clip.mp4")
            return metadata, await service.store.exists(metadata.id), service.storage.list(f"{VIDEO_ID}/")

    metadata, exists, keys = asyncio.run(scenario())

    assert metadata.id == VIDEO_ID
    assert exists is True
    assert metadata.object_key in keys


def test_failing_compensation_does_not_mask_the_original_cause(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()

    async def scenario():
        async with service_scope(
            settings,
            storage=_store(settings, UndeletableStorage),
            store_cls=FailingMetadataStore,
        ) as service:
            with pytest.raises(IngestError) as excinfo:
                await service.ingest("user42", source, "clip.mp4")
            return excinfo.value, await service.store.exists(VIDEO_ID)

    error, exists = asyncio.run(scenario())

    assert error.stage == "RECORD_CREATED"
    assert isinstance(error.cause, PersistenceFailure)
    assert exists is False


def test_trimmed_quicktime_upload_is_stored_as_mp4(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload("long.mov")

    async def scenario():
        async with service_scope(settings, transcoder=FakeTranscodeWorker(duration=45.0)) as service:
            return await service.ingest("user42", source, "long.mov")

    metadata = asyncio.run(scenario())
    assert metadata.object_key == f"{VIDEO_ID}/trimmed-long.mp4"


def test_regenerate_previews_fills_in_degraded_ingests(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()
    transcoder = FakeTranscodeWorker(fail_preview=True)

    async def scenario():
        async with service_scope(settings, transcoder=transcoder) as service:
            degraded = await service.ingest("user42", source, "clip.mp4")
            transcoder.fail_preview = False
            report = await service.regenerate_previews()
            cached = await service.cache.get(degraded.id)
            refreshed = await service.get_metadata(degraded.id)
            return degraded, report, cached, refreshed, service.storage.list(f"{VIDEO_ID}/")

    degraded, report, cached, refreshed, keys = asyncio.run(scenario())

    assert degraded.preview_key is None
    assert report.checked == 1
    assert report.regenerated == [VIDEO_ID]
    assert report.failed == []
    assert cached is None
    assert refreshed.preview_key == f"{VIDEO_ID}/clip-thumb.jpg"
    assert keys == [f"{VIDEO_ID}/clip-thumb.jpg", f"{VIDEO_ID}/clip.mp4"]
    assert transcoder.preview_calls[-1][1] == 10.0


def test_regenerate_previews_reports_missing_media(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()
    transcoder = FakeTranscodeWorker(fail_preview=True)

    async def scenario():
        async with service_scope(settings, transcoder=transcoder) as service:
            metadata = await service.ingest("user42", source, "clip.mp4")
            service.storage.delete(metadata.object_key)
            transcoder.fail_preview = False
            report = await service.regenerate_previews()
            row = await service.store.get(metadata.id)
            return report, row, service.storage.list(f"{VIDEO_ID}/")

    report, row, keys = asyncio.run(scenario())

    assert report.checked == 1
    assert report.regenerated == []
    assert report.failed == [VIDEO_ID]
    assert row.preview_key is None
    assert keys == []


def test_regenerate_previews_skips_videos_that_have_one(configure_environment, spooled_upload):
    settings = configure_environment
    source = spooled_upload()

    async def scenario():
        async with service_scope(settings) as service:
            await service.ingest("user42", source, "clip.mp4")
            return await service.regenerate_previews()

    report = asyncio.run(scenario())
    assert report.checked == 0
