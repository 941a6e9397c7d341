"""SqlOutreachStore against a throwaway SQLite database."""
import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from core.executor import StepExecutor
from database.session import close_db, init_db
from database.store import SqlOutreachStore
from job_queue.work_queue import WorkQueue
from models.schemas import (
    AttemptStatus, CampaignStatus, CampaignStepPayload, ChannelType, JobStatus,
    JobType, Lead, RecipientStatus, StepDelay, Tenant, User,
)

from conftest import seed_campaign


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    await init_db(f"sqlite:///{tmp_path}/outreach_test.db")
    yield SqlOutreachStore()
    await close_db()


@pytest.fixture
def sql_queue(sql_store, clock) -> WorkQueue:
    return WorkQueue(sql_store, clock=clock)


def _step(rid: str) -> CampaignStepPayload:
    return CampaignStepPayload(recipient_id=rid, campaign_id="camp1")


class TestSqlJobs:
    @pytest.mark.asyncio
    async def test_enqueue_claim_complete(self, sql_queue, clock):
        job = await sql_queue.enqueue(JobType.CAMPAIGN_STEP, _step("r1"), tenant_id="t1", priority=2)
        loaded = await sql_queue.get_job(job.id)
        assert loaded.payload == {"recipientId": "r1", "campaignId": "camp1"}
        assert loaded.scheduled_at == clock.now()

        [claimed] = await sql_queue.claim_batch(5)
        assert claimed.status == JobStatus.PROCESSING
        assert claimed.attempts == 1
        assert await sql_queue.claim_batch(5) == []

        done = await sql_queue.complete(job.id)
        assert done.status == JobStatus.COMPLETED
        assert await sql_queue.stats("t1") == {
            "pending": 0, "processing": 0, "completed": 1, "failed": 0, "total": 1,
        }

    @pytest.mark.asyncio
    async def test_claim_order_and_schedule(self, sql_queue, clock):
        low = await sql_queue.enqueue(JobType.CLEANUP, {}, priority=0)
        high = await sql_queue.enqueue(JobType.CAMPAIGN_STEP, _step("a"), priority=2)
        await sql_queue.enqueue(
            JobType.CAMPAIGN_STEP, _step("later"), priority=9,
            scheduled_at=clock.now() + timedelta(hours=1),
        )

        claimed = await sql_queue.claim_batch(10)
        assert [j.id for j in claimed] == [high.id, low.id]

    @pytest.mark.asyncio
    async def test_concurrent_claimers_never_share_a_job(self, sql_store, clock):
        producer = WorkQueue(sql_store, clock=clock)
        for i in range(9):
            await producer.enqueue(JobType.CAMPAIGN_STEP, _step(f"r{i}"))

        claimers = [WorkQueue(sql_store, clock=clock) for _ in range(3)]
        batches = await asyncio.gather(*(c.claim_batch(4) for c in claimers))
        batches += [await claimers[0].claim_batch(20)]

        ids = [job.id for batch in batches for job in batch]
        assert len(ids) == 9
        assert len(set(ids)) == 9

    @pytest.mark.asyncio
    async def test_backoff_then_permanent_failure(self, sql_queue, clock):
        job = await sql_queue.enqueue(JobType.CAMPAIGN_STEP, _step("r1"), max_attempts=2)
        await sql_queue.claim_batch(1)
        retried = await sql_queue.fail_with_backoff(job.id, "boom")
        assert retried.status == JobStatus.PENDING
        assert retried.scheduled_at == clock.now() + timedelta(minutes=2)

        clock.advance(minutes=2)
        await sql_queue.claim_batch(1)
        failed = await sql_queue.fail_with_backoff(job.id, "boom again")
        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 2

    @pytest.mark.asyncio
    async def test_dedupe_and_cleanup(self, sql_queue, clock):
        job = await sql_queue.enqueue(JobType.CAMPAIGN_STEP, _step("r1"), dedupe_key="campaign_step:r1")
        assert await sql_queue.has_open_job("campaign_step:r1")
        await sql_queue.claim_batch(1)
        await sql_queue.complete(job.id)
        assert not await sql_queue.has_open_job("campaign_step:r1")

        clock.advance(days=40)
        assert await sql_queue.cleanup(30) == 1
        assert await sql_queue.get_job(job.id) is None


class TestSqlCampaigns:
    @pytest.mark.asyncio
    async def test_campaign_round_trip_and_resave(self, sql_store):
        campaign, recipients = await seed_campaign(
            sql_store, recipients=2, delays=[StepDelay(), StepDelay(days=1, hours=2)],
        )
        loaded = await sql_store.get_campaign("camp1")
        assert loaded.status == CampaignStatus.DRAFT
        assert [s.order for s in loaded.steps] == [1, 2]
        assert loaded.steps[1].delay == StepDelay(days=1, hours=2)
        assert loaded.steps[0].campaign_id == "camp1"

        await sql_store.save_campaign(campaign.model_copy(update={"name": "Renamed"}))
        resaved = await sql_store.get_campaign("camp1")
        assert resaved.name == "Renamed"
        assert len(resaved.steps) == 2

        assert await sql_store.count_recipients("camp1") == 2
        contact = await sql_store.get_contact(recipients[0].contact_id)
        assert contact.first_name == "Person0"
        config = await sql_store.get_channel_config("cfg1")
        assert config.channel_type == ChannelType.EMAIL_SMTP
        assert config.credentials["host"] == "smtp.example.com"

    @pytest.mark.asyncio
    async def test_owner_tenant_and_lead_details(self, sql_store):
        campaign, _ = await seed_campaign(sql_store)
        await sql_store.upsert_tenant(Tenant(id="t1", name="Outbound Co"))
        await sql_store.upsert_user(User(id="u1", tenant_id="t1", name="Sam Seller", email="sam@outbound.example"))
        await sql_store.save_campaign(campaign.model_copy(update={"created_by_id": "u1"}))
        await sql_store.upsert_lead(Lead(id="lead1", tenant_id="t1", company_name="Acme GmbH",
                                         postal_code="80331", notes="met at expo"))

        assert (await sql_store.get_campaign("camp1")).created_by_id == "u1"
        assert (await sql_store.get_user("u1")).email == "sam@outbound.example"
        assert (await sql_store.get_tenant("t1")).name == "Outbound Co"
        assert await sql_store.get_tenant("nope") is None
        lead = await sql_store.get_lead("lead1")
        assert (lead.postal_code, lead.notes) == ("80331", "met at expo")

    @pytest.mark.asyncio
    async def test_due_recipients_and_completion(self, sql_store, clock):
        _, recipients = await seed_campaign(sql_store, recipients=3)
        assert await sql_store.schedule_pending_recipients("camp1", clock.now()) == 3
        assert await sql_store.find_due_recipients(clock.now(), 10) == []

        await sql_store.update_campaign("camp1", status=CampaignStatus.ACTIVE)
        due = await sql_store.find_due_recipients(clock.now(), 2)
        assert [r.id for r in due] == [recipients[0].id, recipients[1].id]
        rest = await sql_store.find_due_recipients(clock.now(), 2, after_id=due[-1].id)
        assert [r.id for r in rest] == [recipients[2].id]

        assert await sql_store.complete_campaign_if_active("camp1", clock.now())
        assert not await sql_store.complete_campaign_if_active("camp1", clock.now())
        assert (await sql_store.get_campaign("camp1")).completed_at == clock.now()

    @pytest.mark.asyncio
    async def test_executor_against_sql(self, sql_store, senders, clock):
        campaign, [recipient] = await seed_campaign(sql_store, status=CampaignStatus.ACTIVE)
        await sql_store.schedule_pending_recipients(campaign.id, clock.now())

        await StepExecutor(sql_store, senders, clock=clock).execute(
            CampaignStepPayload(recipient_id=recipient.id, campaign_id=campaign.id),
        )

        [attempt] = await sql_store.list_attempts(campaign_id=campaign.id)
        assert attempt.status == AttemptStatus.SENT
        assert attempt.subject == "Hello Person0"
        assert (await sql_store.find_attempt(recipient.id, attempt.step_id)).id == attempt.id
        assert (await sql_store.get_recipient(recipient.id)).status == RecipientStatus.COMPLETED
        assert (await sql_store.get_campaign(campaign.id)).status == CampaignStatus.COMPLETED
        assert await sql_store.attempt_status_counts(campaign.id) == {"SENT": 1}
        assert await sql_store.recipient_status_counts(campaign.id) == {"COMPLETED": 1}
