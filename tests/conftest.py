import asyncio
import shutil
import subprocess
from contextlib import asynccontextmanager
from pathlib import Path

import jwt
import pytest
from fastapi.testclient import TestClient

from reelstore.api import deps
from reelstore.core.cache import MemoryResultCache
from reelstore.core.config import get_settings
from reelstore.core.db import create_engine, create_schema, create_session_factory
from reelstore.core.errors import PreviewFailure, TranscodeFailure
from reelstore.core.storage import LocalObjectStore
from reelstore.db.store import MetadataStore
from reelstore.main import create_app
from reelstore.services.rewards import RewardLedger
from reelstore.services.video_service import VideoService

JWT_SECRET = "test-secret"
JWT_ISSUER = "reelstore-test"
JWT_AUDIENCE = "reelstore"
FIXED_NOW_MS = 1_700_000_000_000


@pytest.fixture(autouse=True)
def configure_environment(monkeypatch, tmp_path):
    db_path = tmp_path / "reelstore_test.db"
    spool_dir = tmp_path / "spool"
    spool_dir.mkdir()

    monkeypatch.setenv("REELSTORE_ENV", "test")
    monkeypatch.setenv("REELSTORE_LOG_LEVEL", "debug")
    monkeypatch.setenv("REELSTORE_DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("REELSTORE_STORAGE_BACKEND", "local")
    monkeypatch.setenv("REELSTORE_LOCAL_STORAGE_BASE_PATH", str(tmp_path / "objects"))
    monkeypatch.setenv("REELSTORE_SPOOL_DIR", str(spool_dir))
    monkeypatch.setenv("REELSTORE_CACHE_BACKEND", "memory")
    monkeypatch.setenv("REELSTORE_REWARD_BACKEND", "log")
    monkeypatch.setenv("REELSTORE_JWT_SECRET", JWT_SECRET)
    monkeypatch.setenv("REELSTORE_JWT_ISSUER", JWT_ISSUER)
    monkeypatch.setenv("REELSTORE_JWT_AUDIENCE", JWT_AUDIENCE)

    get_settings.cache_clear()
    settings = get_settings()

    async def _setup() -> None:
        engine = create_engine(settings)
        await create_schema(engine)
        await engine.dispose()

    asyncio.run(_setup())

    yield settings

    get_settings.cache_clear()


class FakeTranscodeWorker:
    """Stands in for ffmpeg: reports a fixed duration and writes placeholder outputs."""

    def __init__(
        self,
        duration: float = 10.0,
        *,
        fail_duration: bool = False,
        fail_trim: bool = False,
        fail_preview: bool = False,
    ):
        self.duration = duration
        self.fail_duration = fail_duration
        self.fail_trim = fail_trim
        self.fail_preview = fail_preview
        self.trim_calls: list[tuple[Path, float]] = []
        self.preview_calls: list[tuple[Path, float]] = []

    def probe_duration(self, path: Path) -> float:
        if self.fail_duration:
            raise TranscodeFailure("unreadable media: duration unavailable")
        return self.duration

    def trim_to_max(self, path: Path, max_seconds: float, workdir: Path) -> Path:
        self.trim_calls.append((path, max_seconds))
        if self.fail_trim:
            raise TranscodeFailure("trim failed: ffmpeg exited with 1")
        output = workdir / f"trimmed-{path.stem}.mp4"
        output.write_bytes(b"trimmed:" + path.read_bytes()[:16])
        return output

    def extract_preview_frame(self, path: Path, duration_s: float, workdir: Path, at_fraction: float = 0.5) -> Path:
        self.preview_calls.append((path, duration_s))
        if self.fail_preview:
            raise PreviewFailure("preview failed: no frame decoded")
        output = workdir / f"{path.stem}-thumb.jpg"
        output.write_bytes(b"\xff\xd8\xff\xe0fake-jpeg")
        return output

    def available(self) -> dict[str, bool]:
        return {"ffmpeg": True, "ffprobe": True}


class RecordingRewardLedger(RewardLedger):
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.credits: list[tuple[str, int, str, str]] = []

    async def credit(self, owner_id: str, amount: int, reason: str, video_id: str) -> None:
        if self.fail:
            raise ConnectionError("ledger unreachable")
        self.credits.append((owner_id, amount, reason, video_id))


@asynccontextmanager
async def service_scope(
    settings,
    *,
    transcoder=None,
    storage=None,
    store_cls=MetadataStore,
    cache=None,
    rewards=None,
    clock=lambda: FIXED_NOW_MS,
):
    """Build a VideoService on the test database inside the running event loop."""
    engine = create_engine(settings)
    try:
        service = VideoService(
            settings,
            storage or LocalObjectStore(Path(settings.local_storage_base_path), settings.bucket_name),
            store_cls(create_session_factory(engine)),
            cache or MemoryResultCache(settings.cache_ttl_seconds),
            transcoder or FakeTranscodeWorker(),
            rewards or RecordingRewardLedger(),
            clock=clock,
        )
        await asyncio.to_thread(service.storage.ensure_container)
        yield service
    finally:
        await engine.dispose()


@pytest.fixture()
def spooled_upload(configure_environment):
    """Factory writing a fake upload into the spool directory, as the HTTP adapter would."""

    def _make(name: str = "clip.mp4", payload: bytes = b"\x00\x00\x00\x18ftypmp42fake-video") -> Path:
        path = Path(configure_environment.spool_dir) / name
        path.write_bytes(payload)
        return path

    return _make


@pytest.fixture()
def fake_transcoder() -> FakeTranscodeWorker:
    return FakeTranscodeWorker()


@pytest.fixture()
def client(configure_environment, fake_transcoder):
    app = create_app()
    app.dependency_overrides[deps.get_transcoder] = lambda: fake_transcoder
    with TestClient(app) as client:
        yield client


def build_token(owner_id: str | None, *, scopes: list[str] | None = None) -> str:
    payload: dict = {"iss": JWT_ISSUER, "aud": JWT_AUDIENCE}
    if owner_id:
        payload["sub"] = owner_id
    if scopes:
        payload["scopes"] = scopes
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


@pytest.fixture()
def owner_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {build_token('user42')}"}


@pytest.fixture()
def other_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {build_token('user99')}"}


requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg/ffprobe not installed",
)


def _generate_video(path: Path, seconds: int) -> Path:
    command = [
        "ffmpeg",
        "-f", "lavfi",
        "-i", "color=c=black:s=128x72:r=30",
        "-t", str(seconds),
        "-pix_fmt", "yuv420p",
        str(path),
    ]
    subprocess.run(command, check=True, capture_output=True)
    return path


@pytest.fixture(scope="session")
def generated_video_file(tmp_path_factory) -> Path:
    """A small, valid one-second MP4 with a solid color."""
    if shutil.which("ffmpeg") is None:
        pytest.skip("ffmpeg not installed")
    return _generate_video(tmp_path_factory.mktemp("data") / "test_video.mp4", 1)


@pytest.fixture(scope="session")
def long_video_file(tmp_path_factory) -> Path:
    if shutil.which("ffmpeg") is None:
        pytest.skip("ffmpeg not installed")
    return _generate_video(tmp_path_factory.mktemp("data") / "long_video.mp4", 35)
