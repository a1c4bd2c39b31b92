from __future__ import annotations

from datetime import datetime, timezone
from pydantic import BaseModel, Field

from reelstore.domain import FeedPage, VideoMetadata


class HealthResponse(BaseModel):
    status: str = Field(default="ok", description="Health status indicator.")
    time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class VideoResponse(VideoMetadata):
    """Public representation of a stored video."""


class FeedResponse(FeedPage):
    """One page of the newest-first video feed."""


__all__ = ["HealthResponse", "VideoResponse", "FeedResponse"]
