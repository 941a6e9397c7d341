"""Tests for campaign start / pause / trigger / stats."""
from datetime import timedelta

import pytest

from core.control import CampaignControl, CampaignNotFoundError, CampaignStateError
from core.scheduler import CampaignScheduler
from models.schemas import Campaign, CampaignStatus, CampaignType, RecipientStatus

from conftest import seed_campaign


@pytest.fixture
def control(store, queue, clock) -> CampaignControl:
    return CampaignControl(store, CampaignScheduler(store, queue, clock=clock), clock=clock)


class TestStart:
    @pytest.mark.asyncio
    async def test_start_activates_and_schedules_pending_recipients(self, store, clock, control):
        _, recipients = await seed_campaign(store, recipients=2)
        await store.update_recipient(recipients[1].id, status=RecipientStatus.UNSUBSCRIBED)

        campaign = await control.start("camp1")
        assert campaign.status == CampaignStatus.ACTIVE
        assert campaign.started_at == clock.now()

        assert (await store.get_recipient(recipients[0].id)).next_action_at == clock.now()
        assert (await store.get_recipient(recipients[1].id)).next_action_at is None
        assert (await store.get_campaign("camp1")).status == CampaignStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_scheduled_campaign_uses_requested_time(self, store, clock, control):
        campaign, [recipient] = await seed_campaign(store)
        await store.save_campaign(campaign.model_copy(update={"type": CampaignType.SCHEDULED}))
        later = clock.now() + timedelta(days=3)

        await control.start("camp1", scheduled_at=later)
        assert (await store.get_recipient(recipient.id)).next_action_at == later

    @pytest.mark.asyncio
    async def test_immediate_campaign_ignores_requested_time(self, store, clock, control):
        _, [recipient] = await seed_campaign(store)
        await control.start("camp1", scheduled_at=clock.now() + timedelta(days=3))
        assert (await store.get_recipient(recipient.id)).next_action_at == clock.now()

    @pytest.mark.asyncio
    async def test_resume_keeps_original_start_time(self, store, clock, control):
        await seed_campaign(store)
        first = await control.start("camp1")
        await control.pause("camp1")
        clock.advance(hours=5)

        resumed = await control.start("camp1")
        assert resumed.status == CampaignStatus.ACTIVE
        assert resumed.started_at == first.started_at

    @pytest.mark.asyncio
    async def test_start_validation(self, store, control):
        with pytest.raises(CampaignNotFoundError):
            await control.start("nope")

        await store.save_campaign(Campaign(id="empty", tenant_id="t1"))
        with pytest.raises(CampaignStateError, match="no steps"):
            await control.start("empty")

        await seed_campaign(store, recipients=0)
        with pytest.raises(CampaignStateError, match="no recipients"):
            await control.start("camp1")

    @pytest.mark.asyncio
    async def test_cannot_start_active_or_completed(self, store, control):
        await seed_campaign(store, status=CampaignStatus.ACTIVE)
        with pytest.raises(CampaignStateError):
            await control.start("camp1")
        await store.update_campaign("camp1", status=CampaignStatus.COMPLETED)
        with pytest.raises(CampaignStateError):
            await control.start("camp1")


class TestPauseAndTrigger:
    @pytest.mark.asyncio
    async def test_pause_only_from_active(self, store, control):
        await seed_campaign(store)
        with pytest.raises(CampaignStateError):
            await control.pause("camp1")
        await control.start("camp1")
        paused = await control.pause("camp1")
        assert paused.status == CampaignStatus.PAUSED
        with pytest.raises(CampaignNotFoundError):
            await control.pause("nope")

    @pytest.mark.asyncio
    async def test_trigger_sweeps_one_campaign(self, store, queue, control):
        await seed_campaign(store, recipients=3)
        await control.start("camp1")

        report = await control.trigger("camp1")
        assert report.enqueued == 3
        assert report.campaign_id == "camp1"
        assert (await queue.stats())["pending"] == 3

    @pytest.mark.asyncio
    async def test_trigger_requires_active(self, store, control):
        await seed_campaign(store)
        with pytest.raises(CampaignStateError):
            await control.trigger("camp1")


class TestStats:
    @pytest.mark.asyncio
    async def test_stats_counts(self, store, control):
        _, recipients = await seed_campaign(store, recipients=3)
        await store.update_recipient(recipients[0].id, status=RecipientStatus.COMPLETED)

        stats = await control.stats("camp1")
        assert stats["campaign_id"] == "camp1"
        assert stats["status"] == "DRAFT"
        assert stats["recipients"] == {"COMPLETED": 1, "PENDING": 2}
        assert stats["attempts"] == {}

    @pytest.mark.asyncio
    async def test_stats_unknown_campaign(self, control):
        with pytest.raises(CampaignNotFoundError):
            await control.stats("nope")
