"""
Core data models for the outreach execution engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobType(str, Enum):
    CAMPAIGN_STEP = "CAMPAIGN_STEP"
    CLEANUP = "CLEANUP"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class CampaignStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"


class CampaignType(str, Enum):
    IMMEDIATE = "IMMEDIATE"
    SCHEDULED = "SCHEDULED"
    SEQUENCE = "SEQUENCE"


class RecipientStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    UNSUBSCRIBED = "UNSUBSCRIBED"


OPEN_RECIPIENT_STATUSES = (RecipientStatus.PENDING, RecipientStatus.IN_PROGRESS)


class AttemptStatus(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"


class ChannelType(str, Enum):
    EMAIL_SMTP = "EMAIL_SMTP"
    EMAIL_API = "EMAIL_API"
    SMS = "SMS"
    WHATSAPP_WEB = "WHATSAPP_WEB"
    WHATSAPP_BUSINESS = "WHATSAPP_BUSINESS"
    TELEGRAM = "TELEGRAM"
    VOICE = "VOICE"


class StepOutcome(str, Enum):
    EXECUTED = "executed"
    ALREADY_SENT = "already_sent"
    COMPLETED = "completed"
    SKIPPED = "skipped"


# ──────────────────────────────────────────────────────────────
#  Job payloads — one model per job type
# ──────────────────────────────────────────────────────────────

class CampaignStepPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    recipient_id: str = Field(alias="recipientId", min_length=1)
    campaign_id: str = Field(alias="campaignId", min_length=1)


class CleanupPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    days: int = Field(default=30, ge=1)


JOB_PAYLOAD_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.CAMPAIGN_STEP: CampaignStepPayload,
    JobType.CLEANUP: CleanupPayload,
}


def parse_job_payload(job_type: JobType, data: Any) -> BaseModel:
    """Validate raw payload data against the schema registered for ``job_type``."""
    model = JOB_PAYLOAD_MODELS[job_type]
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    return model.model_validate(data)


# ──────────────────────────────────────────────────────────────
#  Step delay — explicit duration value type
# ──────────────────────────────────────────────────────────────

class StepDelay(BaseModel):
    """Delay applied before a step, relative to the previous one."""
    model_config = ConfigDict(frozen=True)

    days: int = Field(default=0, ge=0)
    hours: int = Field(default=0, ge=0)
    minutes: int = Field(default=0, ge=0)

    @property
    def total_minutes(self) -> int:
        return self.days * 1440 + self.hours * 60 + self.minutes

    @property
    def is_zero(self) -> bool:
        return self.total_minutes == 0

    def as_timedelta(self) -> timedelta:
        return timedelta(minutes=self.total_minutes)

    def effective(self) -> StepDelay:
        # A zero delay would re-fire the next step immediately; fall back to 24h.
        return DEFAULT_STEP_DELAY if self.is_zero else self

    def __add__(self, other: StepDelay) -> StepDelay:
        if not isinstance(other, StepDelay):
            return NotImplemented
        return StepDelay(
            days=self.days + other.days,
            hours=self.hours + other.hours,
            minutes=self.minutes + other.minutes,
        )


DEFAULT_STEP_DELAY = StepDelay(hours=24)


# ──────────────────────────────────────────────────────────────
#  Job
# ──────────────────────────────────────────────────────────────

class Job(BaseModel):
    """A durable unit of work. ``type`` stays a plain string so rows written
    with a type this process does not know can still be loaded and failed."""
    id: str = Field(default_factory=new_id)
    tenant_id: Optional[str] = None
    type: str
    payload: dict[str, Any] = {}
    status: JobStatus = JobStatus.PENDING
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 3
    dedupe_key: Optional[str] = None
    scheduled_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


# ──────────────────────────────────────────────────────────────
#  Campaigns
# ──────────────────────────────────────────────────────────────

class CampaignStep(BaseModel):
    id: str = Field(default_factory=new_id)
    campaign_id: str = ""
    order: int = Field(ge=1)
    channel_type: ChannelType
    channel_config_id: str
    template_id: str
    delay: StepDelay = StepDelay()


class Campaign(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str = ""
    status: CampaignStatus = CampaignStatus.DRAFT
    type: CampaignType = CampaignType.IMMEDIATE
    created_by_id: Optional[str] = None
    steps: list[CampaignStep] = []
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def ordered_steps(self) -> list[CampaignStep]:
        return sorted(self.steps, key=lambda s: s.order)

    def get_step(self, order: int) -> Optional[CampaignStep]:
        return next((s for s in self.steps if s.order == order), None)


class CampaignRecipient(BaseModel):
    """A (campaign, contact) pairing progressing through the step sequence."""
    id: str = Field(default_factory=new_id)
    tenant_id: str
    campaign_id: str
    lead_id: Optional[str] = None
    contact_id: str
    current_step_order: int = 1
    status: RecipientStatus = RecipientStatus.PENDING
    next_action_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ContactAttempt(BaseModel):
    """Immutable record of one dispatch try."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    campaign_id: str
    recipient_id: str
    step_id: str
    step_order: int
    lead_id: Optional[str] = None
    contact_id: str
    channel_type: ChannelType
    channel_config_id: Optional[str] = None
    status: AttemptStatus
    subject: Optional[str] = None
    content: str = ""
    external_id: Optional[str] = None
    metadata: dict[str, Any] = {}
    sent_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Read-only collaborator records
# ──────────────────────────────────────────────────────────────

class Contact(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str = ""
    name: str = ""
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    position: str = ""
    custom_fields: dict[str, Any] = {}


class Lead(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str = ""
    company_name: str = ""
    website: str = ""
    industry: str = ""
    size: str = ""
    status: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    postal_code: str = ""
    notes: str = ""
    custom_fields: dict[str, Any] = {}


class Tenant(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = ""


class User(BaseModel):
    """A tenant user; campaigns name theirs as the sender in templates."""
    id: str = Field(default_factory=new_id)
    tenant_id: str = ""
    name: str = ""
    email: str = ""


class ChannelConfig(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str = ""
    channel_type: ChannelType
    name: str = ""
    credentials: dict[str, Any] = {}
    is_active: bool = True


class MessageTemplate(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str = ""
    name: str = ""
    channel_type: Optional[ChannelType] = None
    subject: str = ""
    body: str = ""


class RenderedMessage(BaseModel):
    subject: str = ""
    body: str = ""
