"""Domain entities shared by the service layer, the cache and the API."""

from reelstore.domain.video import FeedPage, PreviewReport, ReconcileReport, VideoMetadata

__all__ = ["FeedPage", "PreviewReport", "ReconcileReport", "VideoMetadata"]
