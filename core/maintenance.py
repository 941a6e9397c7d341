"""
Queue maintenance — CLEANUP jobs and the daily scheduler that enqueues them.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from job_queue.ticker import PeriodicTicker
from job_queue.work_queue import WorkQueue
from models.schemas import CleanupPayload, Job, JobType

logger = structlog.get_logger()


class CleanupHandler:
    """Deletes finished jobs older than ``payload.days``."""

    def __init__(self, queue: WorkQueue):
        self.queue = queue

    async def handle(self, payload: CleanupPayload, job: Job) -> dict[str, Any]:
        deleted = await self.queue.cleanup(payload.days)
        return {"deleted": deleted, "days": payload.days}


class CleanupScheduler:
    """Enqueues one low-priority CLEANUP job per interval."""

    def __init__(
        self,
        queue: WorkQueue,
        retention_days: int = 30,
        ticker: Optional[PeriodicTicker] = None,
    ):
        self.queue = queue
        self.retention_days = retention_days
        self.ticker = ticker

    async def enqueue_cleanup(self) -> Job:
        job = await self.queue.enqueue(
            JobType.CLEANUP, CleanupPayload(days=self.retention_days), priority=0,
        )
        logger.info("cleanup_scheduled", job_id=job.id, days=self.retention_days)
        return job

    def start_background(self, interval_seconds: float = 86400.0) -> None:
        if self.ticker is None:
            self.ticker = PeriodicTicker(
                "cleanup_scheduler", interval_seconds, self.enqueue_cleanup,
                initial_delay_seconds=interval_seconds,
            )
        self.ticker.start()

    async def stop(self) -> None:
        if self.ticker is not None:
            await self.ticker.stop()
