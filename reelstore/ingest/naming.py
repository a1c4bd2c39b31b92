from __future__ import annotations

import re
import time
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional

__all__ = [
    "AssetNames",
    "sanitize_filename",
    "derive_id",
    "derive_key",
    "derive_preview_key",
    "derive_asset_names",
    "now_millis",
]

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9.-]")
FALLBACK_FILENAME = "upload.mp4"


@dataclass(slots=True, frozen=True)
class AssetNames:
    """Every identifier derived for one upload. All keys share ``prefix``."""

    video_id: str
    filename: str
    media_key: str
    preview_key: str

    @property
    def prefix(self) -> str:
        return f"{self.video_id}/"


def now_millis() -> int:
    return time.time_ns() // 1_000_000


def sanitize_filename(name: str) -> str:
    """Strip everything outside ``[A-Za-z0-9.-]`` so the name is a safe key segment.

    Args:
        name: The client-supplied filename.

    Returns:
        The sanitized filename, or ``upload.mp4`` if nothing usable remains.
    """
    cleaned = _UNSAFE_CHARS.sub("", name or "").lstrip(".")
    return cleaned or FALLBACK_FILENAME


def derive_id(owner_id: str, now_ms: int) -> str:
    """Return the video id for an upload by ``owner_id`` at ``now_ms``.

    Args:
        owner_id: The uploading account.
        now_ms: Upload time in epoch milliseconds.

    Returns:
        ``"{owner}-{now_ms}"`` with the owner reduced to key-safe characters.
    """
    owner = _UNSAFE_CHARS.sub("", owner_id)
    if not owner:
        raise ValueError("owner_id has no key-safe characters")
    return f"{owner}-{now_ms}"


def derive_key(video_id: str, filename: str, *, trimmed: bool = False) -> str:
    """Return the media object key under the video's prefix.

    Args:
        video_id: The derived video id.
        filename: An already sanitized filename.
        trimmed: Whether the uploaded file is the trimmed copy. Trimmed copies are
            always MP4, so their key carries a ``.mp4`` suffix.

    Returns:
        The object key.
    """
    name = f"trimmed-{PurePosixPath(filename).stem or 'upload'}.mp4" if trimmed else filename
    return f"{video_id}/{name}"


def derive_preview_key(video_id: str, filename: str) -> str:
    stem = PurePosixPath(filename).stem or "preview"
    return f"{video_id}/{stem}-thumb.jpg"


def derive_asset_names(
    owner_id: str,
    original_filename: str,
    *,
    now_ms: Optional[int] = None,
    trimmed: bool = False,
) -> AssetNames:
    """Derive id, media key and preview key for an upload in one call."""
    video_id = derive_id(owner_id, now_ms if now_ms is not None else now_millis())
    filename = sanitize_filename(original_filename)
    return AssetNames(
        video_id=video_id,
        filename=filename,
        media_key=derive_key(video_id, filename, trimmed=trimmed),
        preview_key=derive_preview_key(video_id, filename),
    )
