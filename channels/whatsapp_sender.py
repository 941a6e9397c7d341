"""
WhatsApp Business Sender — WHATSAPP_BUSINESS steps via the Cloud API.

Credentials:
    phoneNumberId, accessToken

API Docs: https://developers.facebook.com/docs/whatsapp/cloud-api/reference/messages
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ChannelError, ChannelSender, SendResult, json_or_empty, normalize_phone
from models.schemas import ChannelType, Contact, RenderedMessage

logger = structlog.get_logger()


class WhatsAppBusinessSender(ChannelSender):
    """Free-form text message to the contact's phone number."""

    channel_type = ChannelType.WHATSAPP_BUSINESS
    BASE_URL = "https://graph.facebook.com/v18.0"

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
    async def _post(self, url: str, access_token: str, body: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(
            url, json=body, headers={"Authorization": f"Bearer {access_token}"},
        )

    async def _do_send(
        self, credentials: dict[str, Any], contact: Contact, message: RenderedMessage,
    ) -> SendResult:
        if not contact.phone:
            return SendResult.failed("Contact has no phone")
        phone_number_id = credentials.get("phoneNumberId")
        access_token = credentials.get("accessToken")
        if not phone_number_id or not access_token:
            raise ChannelError("WhatsApp credentials need phoneNumberId and accessToken",
                               self.channel_type.value)

        to = normalize_phone(contact.phone, plus=False)
        try:
            resp = await self._post(
                f"{self.BASE_URL}/{phone_number_id}/messages",
                access_token,
                {
                    "messaging_product": "whatsapp",
                    "to": to,
                    "type": "text",
                    "text": {"body": message.body},
                },
            )
        except httpx.TransportError as e:
            raise ChannelError(f"WhatsApp transport error: {e}", self.channel_type.value) from e

        data = json_or_empty(resp)
        if resp.status_code >= 400:
            error = (data.get("error") or {}).get("message") or "WhatsApp API error"
            logger.error("whatsapp_api_error", status=resp.status_code, error=error)
            raise ChannelError(error, self.channel_type.value, status_code=resp.status_code)

        messages = data.get("messages") or [{}]
        return SendResult.ok(messages[0].get("id"), to=to)

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.aclose()

