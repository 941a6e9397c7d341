"""
Abstract Outreach Store — Interface for all storage backends.

Implementations:
  - SqlOutreachStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryOutreachStore (dict-based, single-process, no persistence)

Job rows are only ever touched through WorkQueue; recipient rows only
through the StepExecutor and the campaign control surface.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from models.schemas import (
    Campaign, CampaignRecipient, ChannelConfig, Contact, ContactAttempt,
    Job, Lead, MessageTemplate, RecipientStatus, Tenant, User,
)


class BaseOutreachStore(ABC):
    """Interface that all outreach store backends must implement."""

    # ── Jobs ──────────────────────────────────────────────────

    @abstractmethod
    async def insert_job(self, job: Job) -> Job:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def claim_due_jobs(self, limit: int, now: datetime) -> list[Job]:
        """Atomically move up to ``limit`` due PENDING jobs to PROCESSING.

        Ordered by priority descending, then scheduled_at ascending. Each
        transition is conditional on the row still being PENDING, so a
        concurrent claimer that loses the race simply does not get the row.
        """
        ...

    @abstractmethod
    async def update_job(self, job_id: str, **fields: Any) -> Optional[Job]:
        ...

    @abstractmethod
    async def has_open_job(self, dedupe_key: str) -> bool:
        ...

    @abstractmethod
    async def count_jobs_by_status(self, tenant_id: Optional[str] = None) -> dict[str, int]:
        ...

    @abstractmethod
    async def delete_finished_jobs(self, before: datetime) -> int:
        ...

    # ── Campaigns ─────────────────────────────────────────────

    @abstractmethod
    async def save_campaign(self, campaign: Campaign) -> Campaign:
        ...

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        """Return the campaign with its steps ordered by ``order``."""
        ...

    @abstractmethod
    async def update_campaign(self, campaign_id: str, **fields: Any) -> None:
        ...

    @abstractmethod
    async def complete_campaign_if_active(self, campaign_id: str, now: datetime) -> bool:
        """Conditional ACTIVE → COMPLETED. Returns True only for the caller that flipped it."""
        ...

    # ── Recipients ────────────────────────────────────────────

    @abstractmethod
    async def add_recipient(self, recipient: CampaignRecipient) -> CampaignRecipient:
        ...

    @abstractmethod
    async def get_recipient(self, recipient_id: str) -> Optional[CampaignRecipient]:
        ...

    @abstractmethod
    async def update_recipient(self, recipient_id: str, **fields: Any) -> None:
        ...

    @abstractmethod
    async def find_due_recipients(
        self, now: datetime, limit: int,
        campaign_id: Optional[str] = None, after_id: Optional[str] = None,
    ) -> list[CampaignRecipient]:
        """Open recipients of ACTIVE campaigns with next_action_at <= now,
        ordered by id and starting after ``after_id``."""
        ...

    @abstractmethod
    async def count_recipients(
        self, campaign_id: str, statuses: Optional[Iterable[RecipientStatus]] = None,
    ) -> int:
        ...

    @abstractmethod
    async def schedule_pending_recipients(self, campaign_id: str, next_action_at: datetime) -> int:
        ...

    @abstractmethod
    async def recipient_status_counts(self, campaign_id: str) -> dict[str, int]:
        ...

    # ── Contact attempts (append-only) ────────────────────────

    @abstractmethod
    async def add_attempt(self, attempt: ContactAttempt) -> ContactAttempt:
        ...

    @abstractmethod
    async def find_attempt(self, recipient_id: str, step_id: str) -> Optional[ContactAttempt]:
        ...

    @abstractmethod
    async def list_attempts(
        self, campaign_id: Optional[str] = None, recipient_id: Optional[str] = None,
    ) -> list[ContactAttempt]:
        ...

    @abstractmethod
    async def attempt_status_counts(self, campaign_id: str) -> dict[str, int]:
        ...

    # ── Read-only collaborator data ───────────────────────────

    @abstractmethod
    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        ...

    @abstractmethod
    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        ...

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def get_channel_config(self, config_id: str) -> Optional[ChannelConfig]:
        ...

    @abstractmethod
    async def get_template(self, template_id: str) -> Optional[MessageTemplate]:
        ...

    @abstractmethod
    async def upsert_contact(self, contact: Contact) -> Contact:
        ...

    @abstractmethod
    async def upsert_lead(self, lead: Lead) -> Lead:
        ...

    @abstractmethod
    async def upsert_tenant(self, tenant: Tenant) -> Tenant:
        ...

    @abstractmethod
    async def upsert_user(self, user: User) -> User:
        ...

    @abstractmethod
    async def upsert_channel_config(self, config: ChannelConfig) -> ChannelConfig:
        ...

    @abstractmethod
    async def upsert_template(self, template: MessageTemplate) -> MessageTemplate:
        ...
