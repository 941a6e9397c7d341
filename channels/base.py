"""
Channel Senders — Base infrastructure for outbound delivery.

Provides:
- ChannelError: expected provider failure (auth, bad recipient, 4xx/5xx)
- SendResult: normalized outcome of one send
- ChannelMetrics: per-channel send/fail/latency tracking
- ChannelSender: abstract base wrapping every send with metrics and
  ChannelError → SendResult conversion
- ChannelSenderRegistry: sender lookup by channel type, health
"""
from __future__ import annotations

import abc
import re
import time
import structlog
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from models.schemas import ChannelType, Contact, RenderedMessage

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS & RESULTS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Expected provider-side failure. Never escapes ChannelSender.send()."""

    def __init__(self, message: str, channel: str = "", status_code: Optional[int] = None):
        self.channel = channel
        self.status_code = status_code
        super().__init__(message)


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message_id: Optional[str] = None, **metadata: Any) -> SendResult:
        return cls(success=True, message_id=message_id, metadata=metadata)

    @classmethod
    def failed(cls, error: str, **metadata: Any) -> SendResult:
        return cls(success=False, error=error, metadata=metadata)


def normalize_phone(phone: str, plus: bool = True) -> str:
    """Strip spaces, dashes and parens; add or drop the leading '+'."""
    digits = re.sub(r"[\s\-()]", "", phone or "").lstrip("+")
    return f"+{digits}" if plus else digits


def json_or_empty(resp) -> dict[str, Any]:
    """Decode a provider response body, tolerating non-JSON error pages."""
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-channel send, failure, and latency metrics over a bounded window."""

    LATENCY_WINDOW = 1000
    ERROR_WINDOW = 10

    def __init__(self, channel: ChannelType):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: deque[float] = deque(maxlen=self.LATENCY_WINDOW)
        self._errors: deque[str] = deque(maxlen=self.ERROR_WINDOW)

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": list(self._errors),
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL SENDER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelSender(abc.ABC):
    """
    Base class for all channel senders.

    Subclasses implement _do_send and raise ChannelError for expected
    provider failures. Anything else (bugs, credential shape problems the
    subclass did not anticipate) propagates to the caller.
    """

    channel_type: ChannelType

    def __init__(self):
        self.metrics = ChannelMetrics(self.channel_type)

    @abc.abstractmethod
    async def _do_send(
        self, credentials: dict[str, Any], contact: Contact, message: RenderedMessage,
    ) -> SendResult:
        ...

    async def send(
        self, credentials: dict[str, Any], contact: Contact, message: RenderedMessage,
    ) -> SendResult:
        start = time.monotonic()
        try:
            result = await self._do_send(credentials, contact, message)
        except ChannelError as e:
            extra = {"status_code": e.status_code} if e.status_code else {}
            result = SendResult.failed(str(e), **extra)

        if result.success:
            self.metrics.record_send((time.monotonic() - start) * 1000)
            logger.info("channel_send_ok", channel=self.channel_type.value,
                        contact_id=contact.id, message_id=result.message_id)
        else:
            self.metrics.record_failure(result.error or "")
            logger.warning("channel_send_failed", channel=self.channel_type.value,
                           contact_id=contact.id, error=result.error)
        return result

    async def health_check(self) -> dict[str, Any]:
        return {"channel": self.channel_type.value, "metrics": self.metrics.to_dict()}

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  CHANNEL SENDER REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelSenderRegistry:
    def __init__(self):
        self._senders: dict[ChannelType, ChannelSender] = {}

    def register(self, sender: ChannelSender) -> None:
        if sender.channel_type in self._senders:
            raise ValueError(f"Sender already registered for {sender.channel_type.value}")
        self._senders[sender.channel_type] = sender

    def get(self, channel_type: ChannelType) -> Optional[ChannelSender]:
        return self._senders.get(channel_type)

    def get_available(self) -> list[ChannelType]:
        return list(self._senders.keys())

    async def health(self) -> dict[str, Any]:
        return {ch.value: await s.health_check() for ch, s in self._senders.items()}

    async def shutdown_all(self) -> None:
        for s in self._senders.values():
            try:
                await s.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed", channel=s.channel_type.value, error=str(e))
