"""Error taxonomy shared by the ingest pipeline and its read paths."""

from __future__ import annotations


class ReelstoreError(Exception):
    """Base class for every error raised by the ingest core."""


class InvalidInput(ReelstoreError, ValueError):
    """The spooled upload is missing, empty or unreadable."""


class AssetIdCollision(InvalidInput):
    """Another ingest already claimed the derived video id."""


class TranscodeFailure(ReelstoreError):
    """Probing or trimming the media failed. Always fatal to an ingest."""


class PreviewFailure(ReelstoreError):
    """Still-frame extraction failed. Degrades the ingest, never aborts it."""


class StorageFailure(ReelstoreError):
    """An object store call failed for a reason other than a missing key."""


class PersistenceFailure(ReelstoreError):
    """The metadata store rejected a write."""


class NotFound(ReelstoreError, LookupError):
    """A video id, or the object behind an expected key, does not exist."""


class ObjectNotFound(NotFound):
    """The object store has nothing under the requested key."""

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key


class IngestError(ReelstoreError):
    """Single failure surfaced to ingest callers; ``cause`` is the triggering error."""

    def __init__(self, stage: str, cause: BaseException, *, video_id: str | None = None) -> None:
        super().__init__(f"ingest failed at {stage}: {cause}")
        self.stage = stage
        self.cause = cause
        self.video_id = video_id


__all__ = [
    "ReelstoreError",
    "InvalidInput",
    "AssetIdCollision",
    "TranscodeFailure",
    "PreviewFailure",
    "StorageFailure",
    "PersistenceFailure",
    "NotFound",
    "ObjectNotFound",
    "IngestError",
]
