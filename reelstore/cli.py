from __future__ import annotations

import argparse
import asyncio
import shutil
import sys
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from .core.cache import get_cache
from .core.config import get_settings
from .core.db import create_engine, create_schema, create_session_factory
from .core.errors import IngestError, ReelstoreError
from .core.logging import configure_logging, level_from_name
from .core.storage import get_storage
from .db.store import MetadataStore
from .ingest.transcode import get_transcoder
from .services.rewards import get_reward_ledger
from .services.video_service import VideoService

console = Console()


def main(argv: Optional[list[str]] = None) -> None:
    """The main entry point for the CLI.

    Args:
        argv: The command-line arguments.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(level=level_from_name(settings.log_level))

    if getattr(args, "check", False):
        _run_environment_check()
        return

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    args.func(args)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reelstore ingest developer CLI")
    parser.add_argument("--check", action="store_true", help="Validate presence of ffmpeg/ffprobe dependencies")

    subparsers = parser.add_subparsers(dest="command")

    probe_parser = subparsers.add_parser("probe", help="Print the container duration reported by ffprobe")
    probe_parser.add_argument("--file", required=True, help="Path to the source media file")
    probe_parser.set_defaults(func=_cmd_probe)

    preview_parser = subparsers.add_parser("preview", help="Extract the mid-point preview frame")
    preview_parser.add_argument("--file", required=True, help="Path to the source media file")
    preview_parser.add_argument("--out", required=True, help="Where to write the JPEG preview")
    preview_parser.set_defaults(func=_cmd_preview)

    ingest_parser = subparsers.add_parser("ingest", help="Run the full ingest for a local file")
    ingest_parser.add_argument("--file", required=True, help="Path to the source media file")
    ingest_parser.add_argument("--owner", required=True, help="Owner id recorded on the video")
    ingest_parser.add_argument("--title", default=None)
    ingest_parser.add_argument("--description", default=None)
    ingest_parser.set_defaults(func=_cmd_ingest)

    bucket_parser = subparsers.add_parser("ensure-bucket", help="Create the configured bucket if it is missing")
    bucket_parser.set_defaults(func=_cmd_ensure_bucket)

    reconcile_parser = subparsers.add_parser("reconcile", help="Remove rows whose media object no longer exists")
    reconcile_parser.set_defaults(func=_cmd_reconcile)

    previews_parser = subparsers.add_parser(
        "regenerate-previews", help="Extract and upload previews for videos stored without one"
    )
    previews_parser.set_defaults(func=_cmd_regenerate_previews)
    return parser


def _resolve_media(raw: str) -> Path:
    media_path = Path(raw).expanduser().resolve()
    if not media_path.is_file():
        console.print(f"[red]File not found: {media_path}[/]")
        sys.exit(2)
    return media_path


def _cmd_probe(args: argparse.Namespace) -> None:
    media_path = _resolve_media(args.file)
    transcoder = get_transcoder(get_settings())
    try:
        duration = transcoder.probe_duration(media_path)
    except ReelstoreError as exc:
        console.print(f"[red]{exc}[/]")
        sys.exit(3)
    console.print_json(data={"file": str(media_path), "duration_seconds": duration})


def _cmd_preview(args: argparse.Namespace) -> None:
    """Write the preview frame to ``--out`` without touching storage or the database."""
    media_path = _resolve_media(args.file)
    out_path = Path(args.out).expanduser().resolve()
    transcoder = get_transcoder(get_settings())
    try:
        duration = transcoder.probe_duration(media_path)
        with tempfile.TemporaryDirectory(prefix="reelstore-preview-") as tmp:
            frame = transcoder.extract_preview_frame(media_path, duration, Path(tmp))
            out_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(frame, out_path)
    except ReelstoreError as exc:
        console.print(f"[red]{exc}[/]")
        sys.exit(3)
    console.print(f"[green]Preview written to {out_path}[/]")


def _cmd_ingest(args: argparse.Namespace) -> None:
    media_path = _resolve_media(args.file)

    async def _ingest():
        async with _service() as service:
            return await service.ingest(
                args.owner,
                media_path,
                media_path.name,
                args.title,
                args.description,
                retain_source=True,
            )

    try:
        metadata = asyncio.run(_ingest())
    except IngestError as exc:
        console.print(f"[red]Ingest failed at {exc.stage}:[/] {exc.cause}")
        sys.exit(4)
    console.print_json(metadata.model_dump_json())


def _cmd_ensure_bucket(args: argparse.Namespace) -> None:
    settings = get_settings()
    storage = get_storage(settings)
    try:
        storage.ensure_container()
    except ReelstoreError as exc:
        console.print(f"[red]{exc}[/]")
        sys.exit(5)
    console.print(f"[green]Bucket {settings.bucket_name} ready ({settings.storage_backend})[/]")


def _cmd_reconcile(args: argparse.Namespace) -> None:
    async def _reconcile():
        async with _service() as service:
            return await service.reconcile()

    report = asyncio.run(_reconcile())
    table = Table(title=f"Reconciled {report.checked} videos")
    table.add_column("Removed video id")
    for video_id in report.removed:
        table.add_row(video_id)
    console.print(table)


def _cmd_regenerate_previews(args: argparse.Namespace) -> None:
    async def _regenerate():
        async with _service() as service:
            return await service.regenerate_previews()

    report = asyncio.run(_regenerate())
    table = Table(title="Preview regeneration")
    table.add_column("Video id")
    table.add_column("Result")
    for video_id in report.regenerated:
        table.add_row(video_id, "[green]regenerated[/]")
    for video_id in report.failed:
        table.add_row(video_id, "[red]failed[/]")
    console.print(table)
    console.print(f"Regenerated {len(report.regenerated)} of {report.checked} missing previews")


@asynccontextmanager
async def _service():
    """Build a VideoService for one CLI command and dispose of its resources afterwards."""
    settings = get_settings()
    engine = create_engine(settings)
    cache = get_cache(settings)
    try:
        if settings.create_schema_on_startup:
            await create_schema(engine)
        yield VideoService(
            settings,
            get_storage(settings),
            MetadataStore(create_session_factory(engine)),
            cache,
            get_transcoder(settings),
            get_reward_ledger(settings),
        )
    finally:
        await cache.close()
        await engine.dispose()


def _run_environment_check() -> None:
    """Check for the presence of required external binaries."""
    results = get_transcoder(get_settings()).available()

    console.rule("[bold]Environment Check")
    for label, ok in results.items():
        console.print(f"[bold]{label}[/]: {'✅' if ok else '❌'}")

    if not all(results.values()):
        console.print("[red]Missing dependencies detected. Install ffmpeg (ffmpeg + ffprobe).[/]")
        sys.exit(1)
    console.print("[green]Environment looks good![/]")


if __name__ == "__main__":
    main()
