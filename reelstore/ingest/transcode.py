from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any, Sequence, Tuple

import cv2  # type: ignore

from reelstore.core.config import Settings
from reelstore.core.errors import PreviewFailure, TranscodeFailure
from reelstore.core.logging import get_logger

PREVIEW_WIDTH = 320
TRIM_WIDTH = 720
TRIM_VIDEO_BITRATE = "1000k"
TRIM_AUDIO_BITRATE = "128k"


def parse_duration(raw: dict[str, Any]) -> float:
    """Return the container duration from ffprobe ``-show_format`` JSON.

    Args:
        raw: The decoded ffprobe output.

    Returns:
        The duration in seconds.

    Raises:
        TranscodeFailure: If the duration is missing, non-numeric or not positive.
    """
    value = (raw.get("format") or {}).get("duration")
    if value in (None, "N/A", ""):
        raise TranscodeFailure("unreadable media: duration unavailable")
    try:
        duration = float(value)
    except (TypeError, ValueError) as exc:
        raise TranscodeFailure(f"unreadable media: bad duration {value!r}") from exc
    if duration <= 0:
        raise TranscodeFailure("unreadable media: non-positive duration")
    return duration


class TranscodeWorker:
    """Blocking wrapper around ffprobe/ffmpeg. Callers run it off the event loop."""

    def __init__(
        self,
        *,
        ffmpeg_binary: str = "ffmpeg",
        ffprobe_binary: str = "ffprobe",
        timeout_s: float = 300.0,
    ) -> None:
        self.ffmpeg_binary = ffmpeg_binary
        self.ffprobe_binary = ffprobe_binary
        self.timeout_s = timeout_s
        self.logger = get_logger(component="transcode_worker")

    def probe_duration(self, path: Path) -> float:
        command = [
            self.ffprobe_binary,
            "-v",
            "error",
            "-show_format",
            "-print_format",
            "json",
            str(path),
        ]
        try:
            proc = self._run(command)
            raw = json.loads(proc.stdout)
        except (subprocess.SubprocessError, OSError, ValueError) as exc:
            raise TranscodeFailure(f"unreadable media: {_describe(exc)}") from exc
        duration = parse_duration(raw)
        self.logger.info("media_probed", path=str(path), duration_s=duration)
        return duration

    def trim_to_max(self, path: Path, max_seconds: float, workdir: Path) -> Path:
        output = workdir / f"trimmed-{path.stem}.mp4"
        command = [
            self.ffmpeg_binary,
            "-nostdin",
            "-y",
            "-v",
            "error",
            "-i",
            str(path),
            "-t",
            f"{max_seconds:.3f}",
            "-c:v",
            "libx264",
            "-b:v",
            TRIM_VIDEO_BITRATE,
            "-vf",
            f"scale={TRIM_WIDTH}:-2",
            "-c:a",
            "aac",
            "-b:a",
            TRIM_AUDIO_BITRATE,
            "-preset",
            "ultrafast",
            "-movflags",
            "+faststart",
            "-max_muxing_queue_size",
            "9999",
            str(output),
        ]
        try:
            self._run(command)
        except (subprocess.SubprocessError, OSError) as exc:
            output.unlink(missing_ok=True)
            raise TranscodeFailure(f"transcode failed: {_describe(exc)}") from exc
        if not output.is_file() or output.stat().st_size == 0:
            output.unlink(missing_ok=True)
            raise TranscodeFailure("transcode failed: empty output")
        self.logger.info("media_trimmed", source=str(path), output=str(output), max_seconds=max_seconds)
        return output

    def extract_preview_frame(
        self,
        path: Path,
        duration_s: float,
        workdir: Path,
        at_fraction: float = 0.5,
    ) -> Path:
        output = workdir / f"{path.stem}-thumb.jpg"
        timestamp = max(duration_s * min(max(at_fraction, 0.0), 1.0), 0.0)
        command = [
            self.ffmpeg_binary,
            "-nostdin",
            "-v",
            "error",
            "-ss",
            f"{timestamp:.3f}",
            "-i",
            str(path),
            "-frames:v",
            "1",
            "-vf",
            f"scale={PREVIEW_WIDTH}:-2",
            "-q:v",
            "2",
            "-y",
            str(output),
        ]
        try:
            self._run(command)
        except (subprocess.SubprocessError, OSError) as exc:
            output.unlink(missing_ok=True)
            raise PreviewFailure(f"preview failed: {_describe(exc)}") from exc

        try:
            width, height = _image_dimensions(output)
        except RuntimeError as exc:
            output.unlink(missing_ok=True)
            raise PreviewFailure(f"preview failed: {exc}") from exc
        self.logger.info("preview_extracted", output=str(output), width_px=width, height_px=height)
        return output

    def available(self) -> dict[str, bool]:
        results: dict[str, bool] = {}
        for binary in (self.ffmpeg_binary, self.ffprobe_binary):
            try:
                self._run([binary, "-version"])
                results[binary] = True
            except (subprocess.SubprocessError, OSError):
                results[binary] = False
        return results

    def _run(self, command: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            list(command),
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=self.timeout_s,
        )


def _describe(exc: BaseException) -> str:
    stderr = getattr(exc, "stderr", None)
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="ignore")
    if stderr:
        return stderr.strip().splitlines()[-1]
    return str(exc)


def _image_dimensions(image_path: Path) -> Tuple[int, int]:
    if not image_path.is_file() or image_path.stat().st_size == 0:
        raise RuntimeError(f"No preview frame written at {image_path}")
    image = cv2.imread(str(image_path))
    if image is None:
        raise RuntimeError(f"Failed to read generated preview at {image_path}")
    height, width = image.shape[:2]
    return width, height


def get_transcoder(settings: Settings) -> TranscodeWorker:
    return TranscodeWorker(
        ffmpeg_binary=settings.ffmpeg_binary,
        ffprobe_binary=settings.ffprobe_binary,
        timeout_s=settings.transcode_timeout_s,
    )


__all__ = ["TranscodeWorker", "get_transcoder", "parse_duration"]
