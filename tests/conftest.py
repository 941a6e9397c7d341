"""Shared test fixtures for the outreach engine."""
from __future__ import annotations

import pytest
from typing import Any, Optional

from channels.base import ChannelError, ChannelSender, ChannelSenderRegistry, SendResult
from config.settings import Settings
from core.clock import ManualClock
from database.store_memory import InMemoryOutreachStore
from job_queue.work_queue import WorkQueue
from models.schemas import (
    Campaign, CampaignRecipient, CampaignStatus, CampaignStep, ChannelConfig,
    ChannelType, Contact, Lead, MessageTemplate, RenderedMessage, StepDelay,
)


# ──────────────────────────────────────────────────────────────
#  Fake channel sender
# ──────────────────────────────────────────────────────────────

class FakeSender(ChannelSender):
    """Records every send. Fails for addresses in ``fail_for``; raises for ``raise_for``."""

    def __init__(self, channel_type: ChannelType = ChannelType.EMAIL_SMTP):
        self.channel_type = channel_type
        super().__init__()
        self.sent: list[tuple[dict[str, Any], Contact, RenderedMessage]] = []
        self.fail_for: set[str] = set()
        self.raise_for: set[str] = set()

    async def _do_send(self, credentials, contact, message) -> SendResult:
        self.sent.append((credentials, contact, message))
        if contact.email in self.raise_for:
            raise RuntimeError("provider exploded")
        if contact.email in self.fail_for:
            raise ChannelError("mailbox unavailable", self.channel_type.value)
        return SendResult.ok(f"msg-{len(self.sent)}")


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> InMemoryOutreachStore:
    return InMemoryOutreachStore()


@pytest.fixture
def queue(store, clock) -> WorkQueue:
    return WorkQueue(store, clock=clock)


@pytest.fixture
def email_sender() -> FakeSender:
    return FakeSender(ChannelType.EMAIL_SMTP)


@pytest.fixture
def senders(email_sender) -> ChannelSenderRegistry:
    registry = ChannelSenderRegistry()
    registry.register(email_sender)
    return registry


@pytest.fixture
def settings() -> Settings:
    return Settings()


# ──────────────────────────────────────────────────────────────
#  Campaign seeding
# ──────────────────────────────────────────────────────────────

async def seed_campaign(
    store,
    recipients: int = 1,
    delays: Optional[list[StepDelay]] = None,
    status: CampaignStatus = CampaignStatus.DRAFT,
    channel_type: ChannelType = ChannelType.EMAIL_SMTP,
    tenant_id: str = "t1",
    campaign_id: str = "camp1",
) -> tuple[Campaign, list[CampaignRecipient]]:
    """Campaign with one step per delay, an email template and N contacts."""
    delays = delays if delays is not None else [StepDelay()]

    await store.upsert_channel_config(ChannelConfig(
        id="cfg1", tenant_id=tenant_id, channel_type=channel_type, name="Sales SMTP",
        credentials={"host": "smtp.example.com", "user": "sales@example.com", "pass": "pw"},
    ))
    await store.upsert_template(MessageTemplate(
        id="tpl1", tenant_id=tenant_id, name="Intro",
        subject="Hello {{contact.firstName}}",
        body="Hi {{contact.firstName}}, a note for {{lead.companyName}}.",
    ))
    await store.upsert_lead(Lead(id="lead1", tenant_id=tenant_id, company_name="Acme GmbH"))

    campaign = Campaign(
        id=campaign_id, tenant_id=tenant_id, name="Q1 outreach", status=status,
        steps=[
            CampaignStep(
                id=f"{campaign_id}-step{i + 1}", order=i + 1, channel_type=channel_type,
                channel_config_id="cfg1", template_id="tpl1", delay=delay,
            )
            for i, delay in enumerate(delays)
        ],
    )
    await store.save_campaign(campaign)

    seeded = []
    for i in range(recipients):
        contact = Contact(
            id=f"{campaign_id}-contact{i}", tenant_id=tenant_id,
            name=f"Person {i}", first_name=f"Person{i}", email=f"person{i}@example.com",
        )
        await store.upsert_contact(contact)
        seeded.append(await store.add_recipient(CampaignRecipient(
            id=f"{campaign_id}-r{i}", tenant_id=tenant_id, campaign_id=campaign_id,
            lead_id="lead1", contact_id=contact.id,
        )))
    return campaign, seeded
