from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reelstore.core.errors import AssetIdCollision, PersistenceFailure
from reelstore.core.logging import get_logger

from .models import IngestReservation, Video


class MetadataStore:
    """Create/read/delete access to ``Video`` rows.

    Every call runs in its own session so concurrent ingests never share a
    transaction, and a failed insert cannot poison the compensating delete.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.logger = get_logger(component="metadata_store")

    async def reserve(self, video_id: str) -> None:
        """Claim ``video_id`` atomically; a second claim raises ``AssetIdCollision``."""
        async with self.session_factory() as session:
            session.add(IngestReservation(video_id=video_id, created_at=datetime.now(timezone.utc)))
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise AssetIdCollision(f"asset id collision: {video_id}") from exc
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceFailure(f"id reservation failed: {exc}") from exc
        self.logger.debug("video_id_reserved", video_id=video_id)

    async def release(self, video_id: str) -> None:
        async with self.session_factory() as session:
            try:
                await session.execute(delete(IngestReservation).where(IngestReservation.video_id == video_id))
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceFailure(f"id release failed: {exc}") from exc
        self.logger.debug("video_id_released", video_id=video_id)

    async def create(self, video: Video) -> Video:
        async with self.session_factory() as session:
            session.add(video)
            try:
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceFailure(f"video row insert failed: {exc}") from exc
        self.logger.info("video_row_created", video_id=video.id)
        return video

    async def get(self, video_id: str) -> Video | None:
        async with self.session_factory() as session:
            try:
                return await session.get(Video, video_id)
            except SQLAlchemyError as exc:
                raise PersistenceFailure(f"video row read failed: {exc}") from exc

    async def exists(self, video_id: str) -> bool:
        return await self.get(video_id) is not None

    async def delete(self, video_id: str) -> bool:
        async with self.session_factory() as session:
            try:
                result = await session.execute(delete(Video).where(Video.id == video_id))
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceFailure(f"video row delete failed: {exc}") from exc
        removed = (result.rowcount or 0) > 0
        if removed:
            self.logger.info("video_row_deleted", video_id=video_id)
        return removed

    async def update_preview(self, video_id: str, preview_key: str) -> bool:
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(Video).where(Video.id == video_id).values(preview_key=preview_key)
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise PersistenceFailure(f"preview update failed: {exc}") from exc
        return (result.rowcount or 0) > 0

    async def list_missing_previews(self) -> Sequence[Video]:
        stmt = select(Video).where(Video.preview_key.is_(None)).order_by(Video.created_at)
        async with self.session_factory() as session:
            try:
                return (await session.execute(stmt)).scalars().all()
            except SQLAlchemyError as exc:
                raise PersistenceFailure(f"preview scan failed: {exc}") from exc

    async def list_feed(self, *, before: datetime | None, limit: int) -> Sequence[Video]:
        stmt = select(Video).order_by(Video.created_at.desc(), Video.id.desc()).limit(limit)
        if before is not None:
            stmt = stmt.where(Video.created_at < before)
        async with self.session_factory() as session:
            try:
                return (await session.execute(stmt)).scalars().all()
            except SQLAlchemyError as exc:
                raise PersistenceFailure(f"feed query failed: {exc}") from exc

    async def list_all(self) -> Sequence[Video]:
        async with self.session_factory() as session:
            try:
                return (await session.execute(select(Video).order_by(Video.created_at))).scalars().all()
            except SQLAlchemyError as exc:
                raise PersistenceFailure(f"video scan failed: {exc}") from exc


__all__ = ["MetadataStore"]
