"""
Twilio Voice Sender — VOICE steps as an outbound call reading the message.

Credentials:
    accountSid (must start with "AC"), authToken, fromNumber

The rendered body is spoken with <Say>; an empty body places a silent
30-second call.

API Docs: https://www.twilio.com/docs/voice/api
"""
from __future__ import annotations

import re
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ChannelError, ChannelSender, SendResult, json_or_empty, normalize_phone
from models.schemas import ChannelType, Contact, RenderedMessage

logger = structlog.get_logger()


_TWIML_UNSAFE = re.compile(r"[<>&'\"]")


def build_twiml(text: str) -> str:
    if not text:
        return '<Response><Pause length="30"/></Response>'
    return '<Response><Say voice="alice">' + _TWIML_UNSAFE.sub("", text) + "</Say></Response>"


class TwilioVoiceSender(ChannelSender):

    channel_type = ChannelType.VOICE
    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))
        return self._client

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, account_sid: str, auth_token: str, form: dict[str, str]) -> httpx.Response:
        client = await self._get_client()
        # Twilio uses form-encoded POST, not JSON
        return await client.post(
            f"{self.BASE_URL}/{account_sid}/Calls.json",
            data=form,
            auth=(account_sid, auth_token),
        )

    async def _do_send(
        self, credentials: dict[str, Any], contact: Contact, message: RenderedMessage,
    ) -> SendResult:
        if not contact.phone:
            return SendResult.failed("Contact has no phone")
        account_sid = credentials.get("accountSid") or ""
        if not account_sid.startswith("AC"):
            return SendResult.failed("Invalid Twilio Account SID")

        to = normalize_phone(contact.phone)
        try:
            resp = await self._post(account_sid, credentials.get("authToken", ""), {
                "To": to,
                "From": credentials.get("fromNumber", ""),
                "Twiml": build_twiml(message.body),
            })
        except httpx.TransportError as e:
            raise ChannelError(f"Twilio transport error: {e}", self.channel_type.value) from e

        data = json_or_empty(resp)
        if resp.status_code >= 400:
            error = data.get("message") or "Twilio API error"
            logger.error("twilio_api_error", status=resp.status_code, error=error)
            raise ChannelError(error, self.channel_type.value, status_code=resp.status_code)

        logger.info("voice_call_initiated", to=to, call_sid=data.get("sid"))
        return SendResult.ok(data.get("sid"), to=to)

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.aclose()
