"""
InMemoryOutreachStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlOutreachStore
  - Claims are atomic: there is no await between the status check and the
    status write, so concurrent claimers on one event loop never share a row
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import Counter
from datetime import datetime
from typing import Any, Iterable, Optional

from database.store_base import BaseOutreachStore
from models.schemas import (
    Campaign, CampaignRecipient, CampaignStatus, ChannelConfig, Contact,
    ContactAttempt, Job, JobStatus, Lead, MessageTemplate,
    OPEN_RECIPIENT_STATUSES, RecipientStatus, Tenant, User,
)

logger = structlog.get_logger()

_OPEN_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)
_FINISHED_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class InMemoryOutreachStore(BaseOutreachStore):
    """
    Full-featured in-memory store with the same interface as SqlOutreachStore.
    Hands out copies so callers never mutate stored state by accident.
    """

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._campaigns: dict[str, Campaign] = {}
        self._recipients: dict[str, CampaignRecipient] = {}
        self._attempts: list[ContactAttempt] = []
        self._contacts: dict[str, Contact] = {}
        self._leads: dict[str, Lead] = {}
        self._tenants: dict[str, Tenant] = {}
        self._users: dict[str, User] = {}
        self._channel_configs: dict[str, ChannelConfig] = {}
        self._templates: dict[str, MessageTemplate] = {}

        # Indexes
        self._attempt_index: dict[tuple[str, str], ContactAttempt] = {}   # (recipient, step) → first attempt
        logger.info("inmemory_store_initialized")

    # ── Jobs ──────────────────────────────────────────────────

    async def insert_job(self, job: Job) -> Job:
        self._jobs[job.id] = job.model_copy()
        return job.model_copy()

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy() if job else None

    async def claim_due_jobs(self, limit: int, now: datetime) -> list[Job]:
        due = [
            j for j in self._jobs.values()
            if j.status == JobStatus.PENDING
            and j.scheduled_at <= now
            and j.attempts < j.max_attempts
        ]
        due.sort(key=lambda j: (-j.priority, j.scheduled_at))

        claimed = []
        for job in due[:limit]:
            if job.status != JobStatus.PENDING:
                continue
            job.status = JobStatus.PROCESSING
            job.started_at = now
            job.attempts += 1
            claimed.append(job.model_copy())
        return claimed

    async def update_job(self, job_id: str, **fields: Any) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        for k, v in fields.items():
            setattr(job, k, v)
        return job.model_copy()

    async def has_open_job(self, dedupe_key: str) -> bool:
        return any(
            j.dedupe_key == dedupe_key and j.status in _OPEN_JOB_STATUSES
            for j in self._jobs.values()
        )

    async def count_jobs_by_status(self, tenant_id: Optional[str] = None) -> dict[str, int]:
        counts = Counter(
            j.status.value for j in self._jobs.values()
            if tenant_id is None or j.tenant_id == tenant_id
        )
        return dict(counts)

    async def delete_finished_jobs(self, before: datetime) -> int:
        doomed = [
            jid for jid, j in self._jobs.items()
            if j.status in _FINISHED_JOB_STATUSES
            and j.completed_at is not None and j.completed_at < before
        ]
        for jid in doomed:
            del self._jobs[jid]
        return len(doomed)

    # ── Campaigns ─────────────────────────────────────────────

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        steps = [s.model_copy(update={"campaign_id": campaign.id}) for s in campaign.steps]
        stored = campaign.model_copy(update={"steps": steps})
        self._campaigns[campaign.id] = stored
        return stored.model_copy(deep=True)

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        campaign = self._campaigns.get(campaign_id)
        if campaign is None:
            return None
        return campaign.model_copy(update={"steps": campaign.ordered_steps}, deep=True)

    async def update_campaign(self, campaign_id: str, **fields: Any) -> None:
        campaign = self._campaigns.get(campaign_id)
        if campaign is None:
            return
        for k, v in fields.items():
            setattr(campaign, k, v)

    async def complete_campaign_if_active(self, campaign_id: str, now: datetime) -> bool:
        campaign = self._campaigns.get(campaign_id)
        if campaign is None or campaign.status != CampaignStatus.ACTIVE:
            return False
        campaign.status = CampaignStatus.COMPLETED
        campaign.completed_at = now
        return True

    # ── Recipients ────────────────────────────────────────────

    async def add_recipient(self, recipient: CampaignRecipient) -> CampaignRecipient:
        self._recipients[recipient.id] = recipient.model_copy()
        return recipient.model_copy()

    async def get_recipient(self, recipient_id: str) -> Optional[CampaignRecipient]:
        r = self._recipients.get(recipient_id)
        return r.model_copy() if r else None

    async def update_recipient(self, recipient_id: str, **fields: Any) -> None:
        r = self._recipients.get(recipient_id)
        if r is None:
            return
        for k, v in fields.items():
            setattr(r, k, v)

    async def find_due_recipients(
        self, now: datetime, limit: int,
        campaign_id: Optional[str] = None, after_id: Optional[str] = None,
    ) -> list[CampaignRecipient]:
        due = []
        for r in self._recipients.values():
            if campaign_id is not None and r.campaign_id != campaign_id:
                continue
            if after_id is not None and r.id <= after_id:
                continue
            if r.status not in OPEN_RECIPIENT_STATUSES:
                continue
            if r.next_action_at is None or r.next_action_at > now:
                continue
            campaign = self._campaigns.get(r.campaign_id)
            if campaign is None or campaign.status != CampaignStatus.ACTIVE:
                continue
            due.append(r)
        due.sort(key=lambda r: r.id)
        return [r.model_copy() for r in due[:limit]]

    async def count_recipients(
        self, campaign_id: str, statuses: Optional[Iterable[RecipientStatus]] = None,
    ) -> int:
        wanted = set(statuses) if statuses is not None else None
        return sum(
            1 for r in self._recipients.values()
            if r.campaign_id == campaign_id and (wanted is None or r.status in wanted)
        )

    async def schedule_pending_recipients(self, campaign_id: str, next_action_at: datetime) -> int:
        count = 0
        for r in self._recipients.values():
            if r.campaign_id == campaign_id and r.status == RecipientStatus.PENDING:
                r.next_action_at = next_action_at
                count += 1
        return count

    async def recipient_status_counts(self, campaign_id: str) -> dict[str, int]:
        return dict(Counter(
            r.status.value for r in self._recipients.values() if r.campaign_id == campaign_id
        ))

    # ── Contact attempts ──────────────────────────────────────

    async def add_attempt(self, attempt: ContactAttempt) -> ContactAttempt:
        self._attempts.append(attempt)
        self._attempt_index.setdefault((attempt.recipient_id, attempt.step_id), attempt)
        return attempt

    async def find_attempt(self, recipient_id: str, step_id: str) -> Optional[ContactAttempt]:
        return self._attempt_index.get((recipient_id, step_id))

    async def list_attempts(
        self, campaign_id: Optional[str] = None, recipient_id: Optional[str] = None,
    ) -> list[ContactAttempt]:
        return [
            a for a in self._attempts
            if (campaign_id is None or a.campaign_id == campaign_id)
            and (recipient_id is None or a.recipient_id == recipient_id)
        ]

    async def attempt_status_counts(self, campaign_id: str) -> dict[str, int]:
        return dict(Counter(
            a.status.value for a in self._attempts if a.campaign_id == campaign_id
        ))

    # ── Read-only collaborator data ───────────────────────────

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        return self._contacts.get(contact_id)

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        return self._leads.get(lead_id)

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        return self._tenants.get(tenant_id)

    async def get_user(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    async def get_channel_config(self, config_id: str) -> Optional[ChannelConfig]:
        return self._channel_configs.get(config_id)

    async def get_template(self, template_id: str) -> Optional[MessageTemplate]:
        return self._templates.get(template_id)

    async def upsert_contact(self, contact: Contact) -> Contact:
        self._contacts[contact.id] = contact
        return contact

    async def upsert_lead(self, lead: Lead) -> Lead:
        self._leads[lead.id] = lead
        return lead

    async def upsert_tenant(self, tenant: Tenant) -> Tenant:
        self._tenants[tenant.id] = tenant
        return tenant

    async def upsert_user(self, user: User) -> User:
        self._users[user.id] = user
        return user

    async def upsert_channel_config(self, config: ChannelConfig) -> ChannelConfig:
        self._channel_configs[config.id] = config
        return config

    async def upsert_template(self, template: MessageTemplate) -> MessageTemplate:
        self._templates[template.id] = template
        return template
