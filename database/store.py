"""
SqlOutreachStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Concurrency notes:
  - Job claims are conditional UPDATEs (``WHERE id = :id AND status = 'PENDING'``);
    a rowcount of 0 means another worker got there first.
  - Campaign completion is the same pattern on ``status = 'ACTIVE'``.
  - Counting queries use GROUP BY so stats stay a single round trip.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from sqlalchemy import select, update, delete, and_, func

from database.models import (
    JobRow, CampaignRow, CampaignStepRow, CampaignRecipientRow,
    ContactAttemptRow, ContactRow, LeadRow, ChannelConfigRow, TemplateRow,
    TenantRow, UserRow,
)
from database.session import get_session
from database.store_base import BaseOutreachStore
from models.schemas import (
    Campaign, CampaignRecipient, CampaignStatus, CampaignStep, ChannelConfig,
    Contact, ContactAttempt, Job, JobStatus, Lead, MessageTemplate,
    OPEN_RECIPIENT_STATUSES, RecipientStatus, StepDelay, Tenant, User,
)

logger = structlog.get_logger()

_OPEN_JOB_STATUSES = [JobStatus.PENDING.value, JobStatus.PROCESSING.value]
_FINISHED_JOB_STATUSES = [JobStatus.COMPLETED.value, JobStatus.FAILED.value]


def _plain(fields: dict[str, Any]) -> dict[str, Any]:
    """Enum members → their string values, for String-typed columns."""
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in fields.items()}


class SqlOutreachStore(BaseOutreachStore):
    """
    Persistent outreach store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Job operations ─────────────────────────────────────

    async def insert_job(self, job: Job) -> Job:
        async with get_session() as db:
            db.add(JobRow(**_plain(job.model_dump())))
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with get_session() as db:
            row = await db.get(JobRow, job_id)
            return self._row_to_job(row) if row else None

    async def claim_due_jobs(self, limit: int, now: datetime) -> list[Job]:
        async with get_session() as db:
            stmt = (
                select(JobRow.id)
                .where(and_(
                    JobRow.status == JobStatus.PENDING.value,
                    JobRow.scheduled_at <= now,
                    JobRow.attempts < JobRow.max_attempts,
                ))
                .order_by(JobRow.priority.desc(), JobRow.scheduled_at.asc())
                .limit(limit)
            )
            candidates = (await db.execute(stmt)).scalars().all()

            claimed_ids = []
            for job_id in candidates:
                result = await db.execute(
                    update(JobRow)
                    .where(and_(
                        JobRow.id == job_id,
                        JobRow.status == JobStatus.PENDING.value,
                    ))
                    .values(
                        status=JobStatus.PROCESSING.value,
                        started_at=now,
                        attempts=JobRow.attempts + 1,
                    )
                )
                if result.rowcount == 1:
                    claimed_ids.append(job_id)

            if not claimed_ids:
                return []

            rows = (await db.execute(
                select(JobRow)
                .where(JobRow.id.in_(claimed_ids))
                .order_by(JobRow.priority.desc(), JobRow.scheduled_at.asc())
                .execution_options(populate_existing=True)
            )).scalars().all()
            return [self._row_to_job(r) for r in rows]

    async def update_job(self, job_id: str, **fields: Any) -> Optional[Job]:
        async with get_session() as db:
            row = await db.get(JobRow, job_id)
            if row is None:
                return None
            for k, v in _plain(fields).items():
                setattr(row, k, v)
            await db.flush()
            return self._row_to_job(row)

    async def has_open_job(self, dedupe_key: str) -> bool:
        async with get_session() as db:
            stmt = (
                select(JobRow.id)
                .where(and_(
                    JobRow.dedupe_key == dedupe_key,
                    JobRow.status.in_(_OPEN_JOB_STATUSES),
                ))
                .limit(1)
            )
            return (await db.execute(stmt)).scalar_one_or_none() is not None

    async def count_jobs_by_status(self, tenant_id: Optional[str] = None) -> dict[str, int]:
        async with get_session() as db:
            stmt = select(JobRow.status, func.count()).group_by(JobRow.status)
            if tenant_id is not None:
                stmt = stmt.where(JobRow.tenant_id == tenant_id)
            return {status: count for status, count in (await db.execute(stmt)).all()}

    async def delete_finished_jobs(self, before: datetime) -> int:
        async with get_session() as db:
            result = await db.execute(
                delete(JobRow).where(and_(
                    JobRow.status.in_(_FINISHED_JOB_STATUSES),
                    JobRow.completed_at < before,
                ))
            )
            return result.rowcount or 0

    # ── Campaign operations ────────────────────────────────

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        step_rows = [
            CampaignStepRow(
                id=s.id,
                step_order=s.order,
                channel_type=s.channel_type.value,
                channel_config_id=s.channel_config_id,
                template_id=s.template_id,
                delay_days=s.delay.days,
                delay_hours=s.delay.hours,
                delay_minutes=s.delay.minutes,
            )
            for s in campaign.steps
        ]
        async with get_session() as db:
            row = await db.get(CampaignRow, campaign.id)
            if row is None:
                row = CampaignRow(id=campaign.id, created_at=campaign.created_at)
                db.add(row)
            else:
                # Step ids are reused on re-save; drop the old rows first.
                row.steps = []
                await db.flush()
            row.tenant_id = campaign.tenant_id
            row.name = campaign.name
            row.status = campaign.status.value
            row.type = campaign.type.value
            row.created_by_id = campaign.created_by_id
            row.started_at = campaign.started_at
            row.completed_at = campaign.completed_at
            row.steps = step_rows
        return campaign.model_copy(update={
            "steps": [s.model_copy(update={"campaign_id": campaign.id}) for s in campaign.ordered_steps],
        })

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        async with get_session() as db:
            row = await db.get(CampaignRow, campaign_id)
            return self._row_to_campaign(row) if row else None

    async def update_campaign(self, campaign_id: str, **fields: Any) -> None:
        async with get_session() as db:
            await db.execute(
                update(CampaignRow)
                .where(CampaignRow.id == campaign_id)
                .values(**_plain(fields))
            )

    async def complete_campaign_if_active(self, campaign_id: str, now: datetime) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(CampaignRow)
                .where(and_(
                    CampaignRow.id == campaign_id,
                    CampaignRow.status == CampaignStatus.ACTIVE.value,
                ))
                .values(status=CampaignStatus.COMPLETED.value, completed_at=now)
            )
            return result.rowcount == 1

    # ── Recipient operations ───────────────────────────────

    async def add_recipient(self, recipient: CampaignRecipient) -> CampaignRecipient:
        async with get_session() as db:
            db.add(CampaignRecipientRow(**_plain(recipient.model_dump())))
        return recipient

    async def get_recipient(self, recipient_id: str) -> Optional[CampaignRecipient]:
        async with get_session() as db:
            row = await db.get(CampaignRecipientRow, recipient_id)
            return self._row_to_recipient(row) if row else None

    async def update_recipient(self, recipient_id: str, **fields: Any) -> None:
        async with get_session() as db:
            await db.execute(
                update(CampaignRecipientRow)
                .where(CampaignRecipientRow.id == recipient_id)
                .values(**_plain(fields))
            )

    async def find_due_recipients(
        self, now: datetime, limit: int,
        campaign_id: Optional[str] = None, after_id: Optional[str] = None,
    ) -> list[CampaignRecipient]:
        async with get_session() as db:
            stmt = (
                select(CampaignRecipientRow)
                .join(CampaignRow, CampaignRow.id == CampaignRecipientRow.campaign_id)
                .where(and_(
                    CampaignRow.status == CampaignStatus.ACTIVE.value,
                    CampaignRecipientRow.status.in_([s.value for s in OPEN_RECIPIENT_STATUSES]),
                    CampaignRecipientRow.next_action_at.is_not(None),
                    CampaignRecipientRow.next_action_at <= now,
                ))
                .order_by(CampaignRecipientRow.id)
                .limit(limit)
            )
            if campaign_id is not None:
                stmt = stmt.where(CampaignRecipientRow.campaign_id == campaign_id)
            if after_id is not None:
                stmt = stmt.where(CampaignRecipientRow.id > after_id)
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_recipient(r) for r in rows]

    async def count_recipients(
        self, campaign_id: str, statuses: Optional[Iterable[RecipientStatus]] = None,
    ) -> int:
        async with get_session() as db:
            stmt = (
                select(func.count())
                .select_from(CampaignRecipientRow)
                .where(CampaignRecipientRow.campaign_id == campaign_id)
            )
            if statuses is not None:
                stmt = stmt.where(CampaignRecipientRow.status.in_([RecipientStatus(s).value for s in statuses]))
            return (await db.execute(stmt)).scalar_one()

    async def schedule_pending_recipients(self, campaign_id: str, next_action_at: datetime) -> int:
        async with get_session() as db:
            result = await db.execute(
                update(CampaignRecipientRow)
                .where(and_(
                    CampaignRecipientRow.campaign_id == campaign_id,
                    CampaignRecipientRow.status == RecipientStatus.PENDING.value,
                ))
                .values(next_action_at=next_action_at)
            )
            return result.rowcount or 0

    async def recipient_status_counts(self, campaign_id: str) -> dict[str, int]:
        async with get_session() as db:
            stmt = (
                select(CampaignRecipientRow.status, func.count())
                .where(CampaignRecipientRow.campaign_id == campaign_id)
                .group_by(CampaignRecipientRow.status)
            )
            return {status: count for status, count in (await db.execute(stmt)).all()}

    # ── Contact attempts ───────────────────────────────────

    async def add_attempt(self, attempt: ContactAttempt) -> ContactAttempt:
        data = _plain(attempt.model_dump())
        data["metadata_"] = data.pop("metadata")
        async with get_session() as db:
            db.add(ContactAttemptRow(**data))
        return attempt

    async def find_attempt(self, recipient_id: str, step_id: str) -> Optional[ContactAttempt]:
        async with get_session() as db:
            stmt = (
                select(ContactAttemptRow)
                .where(and_(
                    ContactAttemptRow.recipient_id == recipient_id,
                    ContactAttemptRow.step_id == step_id,
                ))
                .order_by(ContactAttemptRow.created_at)
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_attempt(row) if row else None

    async def list_attempts(
        self, campaign_id: Optional[str] = None, recipient_id: Optional[str] = None,
    ) -> list[ContactAttempt]:
        async with get_session() as db:
            stmt = select(ContactAttemptRow).order_by(ContactAttemptRow.created_at)
            if campaign_id is not None:
                stmt = stmt.where(ContactAttemptRow.campaign_id == campaign_id)
            if recipient_id is not None:
                stmt = stmt.where(ContactAttemptRow.recipient_id == recipient_id)
            rows = (await db.execute(stmt)).scalars().all()
            return [self._row_to_attempt(r) for r in rows]

    async def attempt_status_counts(self, campaign_id: str) -> dict[str, int]:
        async with get_session() as db:
            stmt = (
                select(ContactAttemptRow.status, func.count())
                .where(ContactAttemptRow.campaign_id == campaign_id)
                .group_by(ContactAttemptRow.status)
            )
            return {status: count for status, count in (await db.execute(stmt)).all()}

    # ── Read-only collaborator data ────────────────────────

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        async with get_session() as db:
            row = await db.get(ContactRow, contact_id)
            return Contact.model_validate(row, from_attributes=True) if row else None

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        async with get_session() as db:
            row = await db.get(LeadRow, lead_id)
            return Lead.model_validate(row, from_attributes=True) if row else None

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        async with get_session() as db:
            row = await db.get(TenantRow, tenant_id)
            return Tenant.model_validate(row, from_attributes=True) if row else None

    async def get_user(self, user_id: str) -> Optional[User]:
        async with get_session() as db:
            row = await db.get(UserRow, user_id)
            return User.model_validate(row, from_attributes=True) if row else None

    async def get_channel_config(self, config_id: str) -> Optional[ChannelConfig]:
        async with get_session() as db:
            row = await db.get(ChannelConfigRow, config_id)
            return ChannelConfig.model_validate(row, from_attributes=True) if row else None

    async def get_template(self, template_id: str) -> Optional[MessageTemplate]:
        async with get_session() as db:
            row = await db.get(TemplateRow, template_id)
            return MessageTemplate.model_validate(row, from_attributes=True) if row else None

    async def upsert_contact(self, contact: Contact) -> Contact:
        await self._upsert(ContactRow, contact.model_dump())
        return contact

    async def upsert_lead(self, lead: Lead) -> Lead:
        await self._upsert(LeadRow, lead.model_dump())
        return lead

    async def upsert_tenant(self, tenant: Tenant) -> Tenant:
        await self._upsert(TenantRow, tenant.model_dump())
        return tenant

    async def upsert_user(self, user: User) -> User:
        await self._upsert(UserRow, user.model_dump())
        return user

    async def upsert_channel_config(self, config: ChannelConfig) -> ChannelConfig:
        await self._upsert(ChannelConfigRow, config.model_dump())
        return config

    async def upsert_template(self, template: MessageTemplate) -> MessageTemplate:
        await self._upsert(TemplateRow, template.model_dump())
        return template

    @staticmethod
    async def _upsert(row_cls, data: dict[str, Any]) -> None:
        data = _plain(data)
        async with get_session() as db:
            existing = await db.get(row_cls, data["id"])
            if existing:
                for k, v in data.items():
                    if k != "id":
                        setattr(existing, k, v)
            else:
                db.add(row_cls(**data))

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_job(row: JobRow) -> Job:
        return Job(
            id=row.id, tenant_id=row.tenant_id, type=row.type,
            payload=row.payload or {}, status=JobStatus(row.status),
            priority=row.priority, attempts=row.attempts,
            max_attempts=row.max_attempts, dedupe_key=row.dedupe_key,
            scheduled_at=row.scheduled_at, started_at=row.started_at,
            completed_at=row.completed_at, error_message=row.error_message,
            created_at=row.created_at,
        )

    @staticmethod
    def _row_to_campaign(row: CampaignRow) -> Campaign:
        steps = [
            CampaignStep(
                id=s.id, campaign_id=row.id, order=s.step_order,
                channel_type=s.channel_type,
                channel_config_id=s.channel_config_id,
                template_id=s.template_id,
                delay=StepDelay(days=s.delay_days, hours=s.delay_hours, minutes=s.delay_minutes),
            )
            for s in row.steps
        ]
        return Campaign(
            id=row.id, tenant_id=row.tenant_id, name=row.name,
            status=CampaignStatus(row.status), type=row.type,
            created_by_id=row.created_by_id,
            steps=sorted(steps, key=lambda s: s.order),
            started_at=row.started_at, completed_at=row.completed_at,
            created_at=row.created_at,
        )

    @staticmethod
    def _row_to_recipient(row: CampaignRecipientRow) -> CampaignRecipient:
        return CampaignRecipient(
            id=row.id, tenant_id=row.tenant_id, campaign_id=row.campaign_id,
            lead_id=row.lead_id, contact_id=row.contact_id,
            current_step_order=row.current_step_order,
            status=RecipientStatus(row.status),
            next_action_at=row.next_action_at,
            created_at=row.created_at, updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_attempt(row: ContactAttemptRow) -> ContactAttempt:
        return ContactAttempt(
            id=row.id, tenant_id=row.tenant_id, campaign_id=row.campaign_id,
            recipient_id=row.recipient_id, step_id=row.step_id,
            step_order=row.step_order, lead_id=row.lead_id,
            contact_id=row.contact_id, channel_type=row.channel_type,
            channel_config_id=row.channel_config_id, status=row.status,
            subject=row.subject, content=row.content or "",
            external_id=row.external_id, metadata=row.metadata_ or {},
            sent_at=row.sent_at, created_at=row.created_at,
        )
