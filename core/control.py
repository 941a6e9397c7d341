"""
Campaign control surface — start, pause, trigger and stats.

Validation failures raise CampaignNotFoundError / CampaignStateError; the
API maps them to 404 / 400.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from core.clock import Clock, SYSTEM_CLOCK
from core.scheduler import CampaignScheduler, SweepReport
from database.store_base import BaseOutreachStore
from models.schemas import Campaign, CampaignStatus, CampaignType

logger = structlog.get_logger()

_STARTABLE = (CampaignStatus.DRAFT, CampaignStatus.PAUSED)


class CampaignNotFoundError(LookupError):
    pass


class CampaignStateError(ValueError):
    pass


class CampaignControl:

    def __init__(
        self,
        store: BaseOutreachStore,
        scheduler: CampaignScheduler,
        clock: Clock = SYSTEM_CLOCK,
    ):
        self.store = store
        self.scheduler = scheduler
        self.clock = clock

    async def _load(self, campaign_id: str) -> Campaign:
        campaign = await self.store.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    async def start(self, campaign_id: str, scheduled_at: Optional[datetime] = None) -> Campaign:
        """Activate a DRAFT or PAUSED campaign and schedule its PENDING recipients."""
        campaign = await self._load(campaign_id)
        if campaign.status not in _STARTABLE:
            raise CampaignStateError(
                f"Campaign cannot be started from status {campaign.status.value}"
            )
        if not campaign.steps:
            raise CampaignStateError("Campaign has no steps")
        if await self.store.count_recipients(campaign_id) == 0:
            raise CampaignStateError("Campaign has no recipients")

        now = self.clock.now()
        if campaign.type == CampaignType.SCHEDULED and scheduled_at is not None:
            next_action_at = scheduled_at
        else:
            next_action_at = now

        scheduled = await self.store.schedule_pending_recipients(campaign_id, next_action_at)
        started_at = campaign.started_at or now
        await self.store.update_campaign(
            campaign_id, status=CampaignStatus.ACTIVE, started_at=started_at,
        )
        logger.info("campaign_started", campaign_id=campaign_id,
                    resumed=campaign.status == CampaignStatus.PAUSED,
                    recipients_scheduled=scheduled,
                    next_action_at=next_action_at.isoformat())
        return campaign.model_copy(update={
            "status": CampaignStatus.ACTIVE, "started_at": started_at,
        })

    async def pause(self, campaign_id: str) -> Campaign:
        campaign = await self._load(campaign_id)
        if campaign.status != CampaignStatus.ACTIVE:
            raise CampaignStateError(
                f"Only active campaigns can be paused (status {campaign.status.value})"
            )
        await self.store.update_campaign(campaign_id, status=CampaignStatus.PAUSED)
        logger.info("campaign_paused", campaign_id=campaign_id)
        return campaign.model_copy(update={"status": CampaignStatus.PAUSED})

    async def trigger(self, campaign_id: str) -> SweepReport:
        """Run a scheduler sweep scoped to one campaign right now."""
        campaign = await self._load(campaign_id)
        if campaign.status != CampaignStatus.ACTIVE:
            raise CampaignStateError(
                f"Only active campaigns can be triggered (status {campaign.status.value})"
            )
        report = await self.scheduler.sweep(campaign_id)
        logger.info("campaign_triggered", campaign_id=campaign_id, enqueued=report.enqueued)
        return report

    async def stats(self, campaign_id: str) -> dict[str, Any]:
        campaign = await self._load(campaign_id)
        return {
            "campaign_id": campaign.id,
            "status": campaign.status.value,
            "recipients": await self.store.recipient_status_counts(campaign_id),
            "attempts": await self.store.attempt_status_counts(campaign_id),
        }
