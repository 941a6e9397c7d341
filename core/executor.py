"""
Step Executor — Handler for CAMPAIGN_STEP jobs.

One invocation handles the recipient's current step:

  1. Guards: recipient exists, campaign ACTIVE, recipient open and due.
     Any guard that fails returns SKIPPED and writes nothing.
  2. No current step → recipient COMPLETED.
  3. Attempt already recorded for (recipient, step) → advance without
     re-sending (ALREADY_SENT). Absorbs retries of a job whose send landed.
  4. Render template, resolve channel config, credentials and sender.
     A missing piece records a FAILED attempt, advances the recipient and
     raises ConfigurationError so the job fails without retry.
  5. Send. Exceptions from the sender become a failed SendResult.
  6. Record exactly one ContactAttempt (SENT or FAILED).
  7. Advance. Sequences move forward even when a send fails.
  8. If the recipient completed, complete the campaign once nothing is open.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Optional

from channels.base import ChannelSenderRegistry, SendResult
from core.clock import Clock, SYSTEM_CLOCK
from core.credentials import CredentialError, StoredCredentialResolver
from core.recipient_state import RecipientStateMachine, RecipientTransition
from core.rendering import TemplateRenderer, build_context
from database.store_base import BaseOutreachStore
from job_queue.dispatcher import PermanentJobError
from models.schemas import (
    AttemptStatus, Campaign, CampaignRecipient, CampaignStatus, CampaignStep,
    CampaignStepPayload, ContactAttempt, Job, OPEN_RECIPIENT_STATUSES,
    RenderedMessage, StepOutcome, Tenant,
)

logger = structlog.get_logger()


class ConfigurationError(PermanentJobError):
    """Static misconfiguration of a step; retrying cannot fix it."""


@dataclass
class StepResult:
    outcome: StepOutcome
    recipient_id: str
    campaign_id: Optional[str] = None
    reason: Optional[str] = None
    step_order: Optional[int] = None
    attempt_id: Optional[str] = None
    attempt_status: Optional[AttemptStatus] = None
    next_step_order: Optional[int] = None
    next_action_at: Optional[datetime] = None
    campaign_completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        if self.attempt_status is not None:
            data["attempt_status"] = self.attempt_status.value
        if self.next_action_at is not None:
            data["next_action_at"] = self.next_action_at.isoformat()
        return data


class StepExecutor:
    """
    Usage:
        executor = StepExecutor(store, senders, renderer, resolver)
        registry.register(JobType.CAMPAIGN_STEP, executor.handle)
    """

    def __init__(
        self,
        store: BaseOutreachStore,
        senders: ChannelSenderRegistry,
        renderer: Optional[TemplateRenderer] = None,
        credentials: Optional[StoredCredentialResolver] = None,
        clock: Clock = SYSTEM_CLOCK,
        state_machine: Optional[RecipientStateMachine] = None,
    ):
        self.store = store
        self.senders = senders
        self.renderer = renderer or TemplateRenderer()
        self.credentials = credentials or StoredCredentialResolver()
        self.clock = clock
        self.sm = state_machine or RecipientStateMachine()

    async def handle(self, payload: CampaignStepPayload, job: Job) -> dict[str, Any]:
        result = await self.execute(payload)
        return result.to_dict()

    async def execute(self, payload: CampaignStepPayload) -> StepResult:
        now = self.clock.now()

        recipient = await self.store.get_recipient(payload.recipient_id)
        if recipient is None:
            logger.warning("step_recipient_not_found", recipient_id=payload.recipient_id)
            return StepResult(StepOutcome.SKIPPED, payload.recipient_id,
                              payload.campaign_id, reason="recipient_not_found")

        campaign = await self.store.get_campaign(recipient.campaign_id)
        if campaign is None or campaign.status != CampaignStatus.ACTIVE:
            logger.info("step_skipped_campaign_not_active", recipient_id=recipient.id,
                        campaign_id=recipient.campaign_id,
                        status=campaign.status.value if campaign else None)
            return StepResult(StepOutcome.SKIPPED, recipient.id, recipient.campaign_id,
                              reason="campaign_not_active")

        if self.sm.is_terminal(recipient.status):
            # The previous run may have failed between the recipient update and the completion check.
            completed = await self._check_campaign_completion(campaign.id, now)
            return StepResult(StepOutcome.SKIPPED, recipient.id, campaign.id,
                              reason="recipient_terminal", campaign_completed=completed)
        if not self.sm.is_due(recipient, now):
            logger.debug("step_skipped_not_due", recipient_id=recipient.id,
                         next_action_at=recipient.next_action_at)
            return StepResult(StepOutcome.SKIPPED, recipient.id, campaign.id, reason="not_due")

        step = campaign.get_step(recipient.current_step_order)
        if step is None:
            transition = self.sm.complete(recipient)
            completed = await self._apply(recipient, campaign, transition, now)
            return StepResult(StepOutcome.COMPLETED, recipient.id, campaign.id,
                              step_order=recipient.current_step_order,
                              campaign_completed=completed)

        existing = await self.store.find_attempt(recipient.id, step.id)
        if existing is not None:
            logger.info("step_already_sent", recipient_id=recipient.id,
                        step_order=step.order, attempt_id=existing.id)
            transition = self.sm.advance(recipient, campaign.steps, now)
            completed = await self._apply(recipient, campaign, transition, now)
            return self._result(StepOutcome.ALREADY_SENT, recipient, campaign, step,
                                existing, transition, completed)

        message: Optional[RenderedMessage] = None
        try:
            message, contact, credentials, sender = await self._prepare(campaign, recipient, step)
        except ConfigurationError as e:
            logger.error("step_configuration_error", recipient_id=recipient.id,
                         campaign_id=campaign.id, step_order=step.order, error=str(e))
            await self._record_attempt(
                recipient, step, SendResult.failed(str(e), configuration_error=True), message, now,
            )
            transition = self.sm.advance(recipient, campaign.steps, now)
            await self._apply(recipient, campaign, transition, now)
            raise

        try:
            send_result = await sender.send(credentials, contact, message)
        except Exception as e:
            logger.error("channel_send_exception", recipient_id=recipient.id,
                         channel=step.channel_type.value, error=str(e), exc_info=True)
            send_result = SendResult.failed(str(e) or type(e).__name__)

        attempt = await self._record_attempt(recipient, step, send_result, message, now)
        transition = self.sm.advance(recipient, campaign.steps, now)
        completed = await self._apply(recipient, campaign, transition, now)

        logger.info("step_executed", recipient_id=recipient.id, campaign_id=campaign.id,
                    step_order=step.order, channel=step.channel_type.value,
                    status=attempt.status.value, next_status=transition.status.value)
        return self._result(StepOutcome.EXECUTED, recipient, campaign, step,
                            attempt, transition, completed)

    # ── Preparation ───────────────────────────────────────────

    async def _prepare(self, campaign: Campaign, recipient: CampaignRecipient, step: CampaignStep):
        template = await self.store.get_template(step.template_id)
        if template is None:
            raise ConfigurationError(f"Template {step.template_id} not found")

        contact = await self.store.get_contact(recipient.contact_id)
        if contact is None:
            raise ConfigurationError(f"Contact {recipient.contact_id} not found")
        lead = await self.store.get_lead(recipient.lead_id) if recipient.lead_id else None

        tenant = await self.store.get_tenant(campaign.tenant_id) or Tenant(id=campaign.tenant_id)
        owner = await self.store.get_user(campaign.created_by_id) if campaign.created_by_id else None

        context = build_context(lead, contact, campaign, tenant=tenant, sender=owner,
                                now=self.clock.now())
        message = self.renderer.render(template, context)

        config = await self.store.get_channel_config(step.channel_config_id)
        if config is None or not config.is_active:
            raise ConfigurationError(f"Channel config {step.channel_config_id} not found or inactive")

        try:
            credentials = self.credentials.resolve(config)
        except CredentialError as e:
            raise ConfigurationError(str(e)) from e

        sender = self.senders.get(step.channel_type)
        if sender is None:
            raise ConfigurationError(f"No sender registered for channel {step.channel_type.value}")

        return message, contact, credentials, sender

    # ── Persistence ───────────────────────────────────────────

    async def _record_attempt(
        self,
        recipient: CampaignRecipient,
        step: CampaignStep,
        result: SendResult,
        message: Optional[RenderedMessage],
        now: datetime,
    ) -> ContactAttempt:
        metadata = dict(result.metadata)
        if result.error:
            metadata["error"] = result.error
        attempt = ContactAttempt(
            tenant_id=recipient.tenant_id,
            campaign_id=recipient.campaign_id,
            recipient_id=recipient.id,
            step_id=step.id,
            step_order=step.order,
            lead_id=recipient.lead_id,
            contact_id=recipient.contact_id,
            channel_type=step.channel_type,
            channel_config_id=step.channel_config_id,
            status=AttemptStatus.SENT if result.success else AttemptStatus.FAILED,
            subject=message.subject if message else None,
            content=message.body if message else "",
            external_id=result.message_id,
            metadata=metadata,
            sent_at=now if result.success else None,
            created_at=now,
        )
        return await self.store.add_attempt(attempt)

    async def _apply(
        self,
        recipient: CampaignRecipient,
        campaign: Campaign,
        transition: RecipientTransition,
        now: datetime,
    ) -> bool:
        """Persist the transition. Returns True if it completed the campaign."""
        await self.store.update_recipient(recipient.id, **transition.as_update(now))
        if not transition.completed:
            return False
        return await self._check_campaign_completion(campaign.id, now)

    async def _check_campaign_completion(self, campaign_id: str, now: datetime) -> bool:
        remaining = await self.store.count_recipients(campaign_id, OPEN_RECIPIENT_STATUSES)
        if remaining > 0:
            return False
        if await self.store.complete_campaign_if_active(campaign_id, now):
            logger.info("campaign_completed", campaign_id=campaign_id)
            return True
        return False

    @staticmethod
    def _result(
        outcome: StepOutcome,
        recipient: CampaignRecipient,
        campaign: Campaign,
        step: CampaignStep,
        attempt: ContactAttempt,
        transition: RecipientTransition,
        completed: bool,
    ) -> StepResult:
        return StepResult(
            outcome=outcome,
            recipient_id=recipient.id,
            campaign_id=campaign.id,
            step_order=step.order,
            attempt_id=attempt.id,
            attempt_status=attempt.status,
            next_step_order=None if transition.completed else transition.current_step_order,
            next_action_at=transition.next_action_at,
            campaign_completed=completed,
        )
