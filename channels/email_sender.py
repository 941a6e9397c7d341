"""
SMTP Email Sender — EMAIL_SMTP steps via aiosmtplib.

Credentials:
    host, port (587), secure (implicit TLS, default False), user, pass, from
"""
from __future__ import annotations

import structlog
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Awaitable, Callable, Optional

import aiosmtplib

from channels.base import ChannelError, ChannelSender, SendResult
from models.schemas import ChannelType, Contact, RenderedMessage

logger = structlog.get_logger()

SmtpTransport = Callable[..., Awaitable[Any]]


class SmtpEmailSender(ChannelSender):
    """
    Sends the rendered body as HTML with a plain-text part.

    ``transport`` defaults to ``aiosmtplib.send``; tests pass a stub with
    the same signature.
    """

    channel_type = ChannelType.EMAIL_SMTP

    def __init__(self, transport: Optional[SmtpTransport] = None, timeout: float = 30.0):
        super().__init__()
        self._transport = transport or aiosmtplib.send
        self.timeout = timeout

    def build_message(
        self, credentials: dict[str, Any], contact: Contact, message: RenderedMessage,
    ) -> EmailMessage:
        sender = credentials.get("from") or credentials.get("user")
        if not sender:
            raise ChannelError("SMTP credentials have no sender address", self.channel_type.value)

        msg = EmailMessage()
        msg["From"] = sender
        msg["To"] = contact.email
        msg["Subject"] = message.subject
        domain = sender.rsplit("@", 1)[-1] if "@" in sender else None
        msg["Message-ID"] = make_msgid(domain=domain)
        msg.set_content(message.body)
        msg.add_alternative(message.body, subtype="html")
        return msg

    async def _do_send(
        self, credentials: dict[str, Any], contact: Contact, message: RenderedMessage,
    ) -> SendResult:
        if not contact.email:
            return SendResult.failed("Contact has no email")
        if not credentials.get("host"):
            raise ChannelError("SMTP credentials have no host", self.channel_type.value)

        msg = self.build_message(credentials, contact, message)
        try:
            await self._transport(
                msg,
                hostname=credentials["host"],
                port=int(credentials.get("port") or 587),
                username=credentials.get("user"),
                password=credentials.get("pass"),
                use_tls=bool(credentials.get("secure", False)),
                timeout=self.timeout,
            )
        except aiosmtplib.SMTPException as e:
            raise ChannelError(f"SMTP error: {e}", self.channel_type.value) from e

        logger.info("email_sent", to=contact.email, subject=message.subject,
                    message_id=msg["Message-ID"])
        return SendResult.ok(msg["Message-ID"], to=contact.email)
