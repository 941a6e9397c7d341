"""
Recipient State Machine — Owns every change to a recipient's progress.

States:
  PENDING ──▶ IN_PROGRESS ──▶ COMPLETED
     │             │   ▲
     │             └───┘  (advance to the next step)
     └──────────────┴───▶ FAILED | UNSUBSCRIBED

COMPLETED, FAILED and UNSUBSCRIBED are terminal.

Usage:
    sm = RecipientStateMachine()
    transition = sm.advance(recipient, campaign.ordered_steps, now)
    await store.update_recipient(recipient.id, **transition.as_update(now))
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from models.schemas import CampaignRecipient, CampaignStep, RecipientStatus

logger = structlog.get_logger()

_TERMINAL = frozenset({
    RecipientStatus.COMPLETED, RecipientStatus.FAILED, RecipientStatus.UNSUBSCRIBED,
})

_ALLOWED: dict[RecipientStatus, frozenset[RecipientStatus]] = {
    RecipientStatus.PENDING: frozenset({
        RecipientStatus.IN_PROGRESS, RecipientStatus.COMPLETED,
        RecipientStatus.FAILED, RecipientStatus.UNSUBSCRIBED,
    }),
    RecipientStatus.IN_PROGRESS: frozenset({
        RecipientStatus.IN_PROGRESS, RecipientStatus.COMPLETED,
        RecipientStatus.FAILED, RecipientStatus.UNSUBSCRIBED,
    }),
}


class InvalidTransitionError(Exception):
    def __init__(self, from_status: RecipientStatus, to_status: RecipientStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid recipient transition {from_status.value} → {to_status.value}")


@dataclass(frozen=True)
class RecipientTransition:
    """Target state for one recipient after a step has been handled."""
    from_status: RecipientStatus
    status: RecipientStatus
    current_step_order: int
    next_action_at: Optional[datetime]

    @property
    def completed(self) -> bool:
        return self.status == RecipientStatus.COMPLETED

    def as_update(self, now: datetime) -> dict:
        return {
            "status": self.status,
            "current_step_order": self.current_step_order,
            "next_action_at": self.next_action_at,
            "updated_at": now,
        }

    def __repr__(self):
        return (f"<RecipientTransition {self.from_status.value} → {self.status.value} "
                f"step={self.current_step_order}>")


class RecipientStateMachine:

    @staticmethod
    def is_terminal(status: RecipientStatus) -> bool:
        return status in _TERMINAL

    @staticmethod
    def is_due(recipient: CampaignRecipient, now: datetime) -> bool:
        return recipient.next_action_at is not None and recipient.next_action_at <= now

    def check(self, from_status: RecipientStatus, to_status: RecipientStatus) -> None:
        if to_status not in _ALLOWED.get(from_status, frozenset()):
            raise InvalidTransitionError(from_status, to_status)

    @staticmethod
    def next_step(steps: Sequence[CampaignStep], current_order: int) -> Optional[CampaignStep]:
        """First step whose order is greater than ``current_order``."""
        later = [s for s in steps if s.order > current_order]
        return min(later, key=lambda s: s.order) if later else None

    def advance(
        self, recipient: CampaignRecipient, steps: Sequence[CampaignStep], now: datetime,
    ) -> RecipientTransition:
        nxt = self.next_step(steps, recipient.current_step_order)
        if nxt is None:
            return self.complete(recipient)

        self.check(recipient.status, RecipientStatus.IN_PROGRESS)
        return RecipientTransition(
            from_status=recipient.status,
            status=RecipientStatus.IN_PROGRESS,
            current_step_order=nxt.order,
            next_action_at=now + nxt.delay.effective().as_timedelta(),
        )

    def complete(self, recipient: CampaignRecipient) -> RecipientTransition:
        self.check(recipient.status, RecipientStatus.COMPLETED)
        return RecipientTransition(
            from_status=recipient.status,
            status=RecipientStatus.COMPLETED,
            current_step_order=recipient.current_step_order,
            next_action_at=None,
        )
