from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

from redis import Redis
from rq import Queue

from reelstore.core.config import Settings
from reelstore.core.logging import get_logger

UPLOAD_REASON = "UPLOAD"


class RewardLedger(ABC):
    """Client side of the external reward ledger. Credits are fire-and-forget."""

    @abstractmethod
    async def credit(self, owner_id: str, amount: int, reason: str, video_id: str) -> None: ...


class LogRewardLedger(RewardLedger):
    """Development ledger: records the credit in the structured log only."""

    def __init__(self) -> None:
        self.logger = get_logger(component="reward_ledger")

    async def credit(self, owner_id: str, amount: int, reason: str, video_id: str) -> None:
        self.logger.info("reward_credited", owner_id=owner_id, amount=amount, reason=reason, video_id=video_id)


class RQRewardLedger(RewardLedger):
    """Enqueues the ledger's own task on a Redis-backed RQ queue."""

    def __init__(self, queue: Queue, task_path: str):
        self.queue = queue
        self.task_path = task_path
        self.logger = get_logger(component="reward_ledger", queue=queue.name)

    async def credit(self, owner_id: str, amount: int, reason: str, video_id: str) -> None:
        job = await asyncio.to_thread(
            self.queue.enqueue,
            self.task_path,
            owner_id=owner_id,
            amount=amount,
            reason=reason,
            video_id=video_id,
        )
        self.logger.info("reward_enqueued", job_id=job.id, owner_id=owner_id, video_id=video_id)


def get_reward_ledger(settings: Settings) -> RewardLedger:
    if settings.reward_backend == "log":
        return LogRewardLedger()
    if settings.reward_backend == "rq":  # pragma: no cover - requires redis
        connection = Redis.from_url(settings.redis_url)
        return RQRewardLedger(Queue(settings.reward_queue_name, connection=connection), settings.reward_task_path)
    raise ValueError(f"Unsupported reward backend: {settings.reward_backend}")


__all__ = ["RewardLedger", "LogRewardLedger", "RQRewardLedger", "get_reward_ledger", "UPLOAD_REASON"]
