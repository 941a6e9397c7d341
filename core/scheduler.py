"""
Campaign Scheduler — Turns due recipients into CAMPAIGN_STEP jobs.

Each sweep pages through recipients that are open, due and belong to an
ACTIVE campaign, and enqueues one job per recipient. A recipient that
already has a PENDING/PROCESSING job (same dedupe key) is left alone, so a
backlogged queue never holds two actions for one recipient.

The scheduler never writes recipients; only the StepExecutor does.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional

from core.clock import Clock, SYSTEM_CLOCK
from database.store_base import BaseOutreachStore
from job_queue.ticker import PeriodicTicker
from job_queue.work_queue import WorkQueue
from models.schemas import CampaignStepPayload, JobType

logger = structlog.get_logger()


def step_dedupe_key(recipient_id: str) -> str:
    return f"campaign_step:{recipient_id}"


@dataclass
class SweepReport:
    found: int = 0
    enqueued: int = 0
    already_queued: int = 0
    campaign_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "found": self.found,
            "enqueued": self.enqueued,
            "already_queued": self.already_queued,
            "campaign_id": self.campaign_id,
        }


class CampaignScheduler:
    """
    Usage:
        scheduler = CampaignScheduler(store, queue, batch_size=100, priority=2)
        report = await scheduler.sweep()                # all campaigns
        report = await scheduler.sweep(campaign_id)     # one campaign (manual trigger)
    """

    def __init__(
        self,
        store: BaseOutreachStore,
        queue: WorkQueue,
        clock: Clock = SYSTEM_CLOCK,
        batch_size: int = 100,
        priority: int = 2,
        ticker: Optional[PeriodicTicker] = None,
    ):
        self.store = store
        self.queue = queue
        self.clock = clock
        self.batch_size = batch_size
        self.priority = priority
        self.ticker = ticker

    async def sweep(self, campaign_id: Optional[str] = None) -> SweepReport:
        now = self.clock.now()
        report = SweepReport(campaign_id=campaign_id)
        cursor: Optional[str] = None

        while True:
            batch = await self.store.find_due_recipients(
                now, self.batch_size, campaign_id=campaign_id, after_id=cursor,
            )
            if not batch:
                break
            report.found += len(batch)

            for recipient in batch:
                key = step_dedupe_key(recipient.id)
                if await self.queue.has_open_job(key):
                    report.already_queued += 1
                    continue
                await self.queue.enqueue(
                    JobType.CAMPAIGN_STEP,
                    CampaignStepPayload(recipient_id=recipient.id, campaign_id=recipient.campaign_id),
                    tenant_id=recipient.tenant_id,
                    priority=self.priority,
                    dedupe_key=key,
                )
                report.enqueued += 1

            cursor = batch[-1].id
            if len(batch) < self.batch_size:
                break

        if report.found:
            logger.info("campaign_sweep", campaign_id=campaign_id, found=report.found,
                        enqueued=report.enqueued, already_queued=report.already_queued)
        return report

    # ── Background loop ───────────────────────────────────────

    def start_background(self, interval_seconds: float = 300.0, initial_delay_seconds: float = 5.0) -> None:
        if self.ticker is None:
            self.ticker = PeriodicTicker(
                "campaign_scheduler", interval_seconds, self.sweep,
                initial_delay_seconds=initial_delay_seconds,
            )
        self.ticker.start()

    async def stop(self) -> None:
        if self.ticker is not None:
            await self.ticker.stop()
