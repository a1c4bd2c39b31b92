from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from reelstore.core.auth import AuthContext, get_auth_context
from reelstore.core.cache import ResultCache
from reelstore.core.config import Settings, get_settings
from reelstore.core.storage import ObjectStore
from reelstore.db.store import MetadataStore
from reelstore.ingest.transcode import TranscodeWorker
from reelstore.services.rewards import RewardLedger
from reelstore.services.video_service import VideoService


def get_storage(request: Request) -> ObjectStore:
    storage: ObjectStore = request.app.state.storage
    return storage


def get_metadata_store(request: Request) -> MetadataStore:
    store: MetadataStore = request.app.state.metadata_store
    return store


def get_cache(request: Request) -> ResultCache:
    cache: ResultCache = request.app.state.cache
    return cache


def get_transcoder(request: Request) -> TranscodeWorker:
    transcoder: TranscodeWorker = request.app.state.transcoder
    return transcoder


def get_rewards(request: Request) -> RewardLedger:
    rewards: RewardLedger = request.app.state.rewards
    return rewards


def get_app_settings() -> Settings:
    return get_settings()


def get_video_service(
    settings: Settings = Depends(get_app_settings),
    storage: ObjectStore = Depends(get_storage),
    store: MetadataStore = Depends(get_metadata_store),
    cache: ResultCache = Depends(get_cache),
    transcoder: TranscodeWorker = Depends(get_transcoder),
    rewards: RewardLedger = Depends(get_rewards),
) -> VideoService:
    return VideoService(settings, storage, store, cache, transcoder, rewards)


VideoServiceDependency = Annotated[VideoService, Depends(get_video_service)]
AuthDependency = Annotated[AuthContext, Depends(get_auth_context)]


__all__ = [
    "get_storage",
    "get_metadata_store",
    "get_cache",
    "get_transcoder",
    "get_rewards",
    "get_app_settings",
    "get_video_service",
    "VideoServiceDependency",
    "AuthDependency",
]
