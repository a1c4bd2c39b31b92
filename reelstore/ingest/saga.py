"""Compensation stack and tagged stage results used by the ingest orchestrator."""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar

from reelstore.core.logging import get_logger

T = TypeVar("T")

CompensationAction = Callable[[], Awaitable[None]]


class IngestState(str, enum.Enum):
    start = "START"
    validated = "VALIDATED"
    probed = "PROBED"
    trimmed = "TRIMMED"
    media_uploaded = "MEDIA_UPLOADED"
    preview_uploaded = "PREVIEW_UPLOADED"
    record_created = "RECORD_CREATED"
    cached = "CACHED"
    done = "DONE"


class StageStatus(str, enum.Enum):
    ok = "ok"
    degraded = "degraded"
    fatal = "fatal"


class Severity(str, enum.Enum):
    """How a stage failure affects the ingest."""

    fatal = "fatal"
    best_effort = "best_effort"


@dataclass(slots=True)
class StageResult(Generic[T]):
    stage: IngestState
    status: StageStatus
    value: Optional[T] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.status is StageStatus.ok


async def settle(
    awaitable: Awaitable[T],
    *,
    on_success: Optional[Callable[[T], None]] = None,
) -> T:
    """Await ``awaitable`` to completion even if the caller is cancelled meanwhile.

    Work handed to a thread cannot be interrupted, so on cancellation this waits
    for it to finish before re-raising. ``on_success`` runs whenever the work
    succeeded, cancelled or not, so its side effect can still be registered
    for compensation.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        result = await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait({task})
        if on_success is not None and not task.cancelled() and task.exception() is None:
            on_success(task.result())
        raise
    if on_success is not None:
        on_success(result)
    return result


async def run_stage(
    stage: IngestState,
    severity: Severity,
    action: Callable[[], Awaitable[T]],
) -> StageResult[T]:
    """Run ``action`` and tag its outcome according to ``severity``.

    Only ``Exception`` is captured; cancellation propagates untouched.
    """
    try:
        value = await action()
    except Exception as exc:
        status = StageStatus.fatal if severity is Severity.fatal else StageStatus.degraded
        return StageResult(stage=stage, status=status, error=exc)
    return StageResult(stage=stage, status=StageStatus.ok, value=value)


@dataclass(slots=True, eq=False)
class Compensation:
    name: str
    action: CompensationAction


@dataclass
class CompensationStack:
    """Undo actions for completed side effects, unwound in reverse push order."""

    context: dict[str, Any] = field(default_factory=dict)
    _entries: List[Compensation] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.logger = get_logger(component="compensation", **self.context)

    def push(self, name: str, action: CompensationAction) -> Compensation:
        entry = Compensation(name=name, action=action)
        self._entries.append(entry)
        return entry

    def discard(self, entry: Compensation) -> None:
        if entry in self._entries:
            self._entries.remove(entry)

    @property
    def names(self) -> list[str]:
        return [entry.name for entry in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    async def unwind(self) -> list[str]:
        """Run every compensation newest first; return the names that failed.

        A failing compensation is logged and the remaining ones still run.
        """
        failed: list[str] = []
        while self._entries:
            entry = self._entries.pop()
            try:
                await entry.action()
            except Exception:
                failed.append(entry.name)
                self.logger.exception("compensation_failed", compensation=entry.name)
            else:
                self.logger.info("compensation_applied", compensation=entry.name)
        return failed


__all__ = [
    "IngestState",
    "StageStatus",
    "Severity",
    "StageResult",
    "run_stage",
    "settle",
    "Compensation",
    "CompensationStack",
]
