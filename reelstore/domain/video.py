from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class VideoMetadata(BaseModel):
    """Assembled view of one stored video, as returned to callers and cached."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    object_key: str
    preview_key: Optional[str] = None
    media_url: str
    preview_url: Optional[str] = None
    duration_seconds: int = Field(ge=0)
    view_count: int = 0
    like_count: int = 0
    created_at: datetime


class FeedPage(BaseModel):
    videos: List[VideoMetadata]
    next_cursor: Optional[str] = None
    has_more: bool = False


class ReconcileReport(BaseModel):
    checked: int = 0
    removed: List[str] = Field(default_factory=list)



class PreviewReport(BaseModel):
    checked: int = 0
    regenerated: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)

__all__ = ["VideoMetadata", "FeedPage", "ReconcileReport", "PreviewReport"]
