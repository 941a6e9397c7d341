"""Tests for channel senders and the sender registry."""
import json
from unittest.mock import AsyncMock
from urllib.parse import parse_qs

import aiosmtplib
import httpx
import pytest

from channels.base import ChannelMetrics, ChannelSenderRegistry, SendResult, normalize_phone
from channels.email_sender import SmtpEmailSender
from channels.voice_sender import TwilioVoiceSender, build_twiml
from channels.whatsapp_sender import WhatsAppBusinessSender
from models.schemas import ChannelType, Contact, RenderedMessage

from conftest import FakeSender


CONTACT = Contact(id="c1", name="Ada Lovelace", email="ada@example.com", phone="+49 (151) 234-5678")
MESSAGE = RenderedMessage(subject="Hello Ada", body="Hi Ada, quick question.")


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

def test_normalize_phone():
    assert normalize_phone("+49 (151) 234-5678") == "+491512345678"
    assert normalize_phone("+49 (151) 234-5678", plus=False) == "491512345678"
    assert normalize_phone("0151 234") == "+0151234"


def test_build_twiml():
    assert build_twiml("") == '<Response><Pause length="30"/></Response>'
    assert build_twiml("Hi <b>Ada</b> & co") == '<Response><Say voice="alice">Hi bAda/b  co</Say></Response>'


def test_metrics_keep_a_bounded_window():
    metrics = ChannelMetrics(ChannelType.EMAIL_SMTP)
    for i in range(ChannelMetrics.LATENCY_WINDOW + 500):
        metrics.record_send(latency_ms=1000.0 if i < 500 else 10.0)
    for i in range(25):
        metrics.record_failure(f"error {i}")

    assert metrics.messages_sent == ChannelMetrics.LATENCY_WINDOW + 500
    assert metrics.messages_failed == 25
    assert metrics.avg_latency_ms == 10.0
    data = metrics.to_dict()
    assert data["recent_errors"] == [f"error {i}" for i in range(15, 25)]


# ──────────────────────────────────────────────────────────────
#  SMTP
# ──────────────────────────────────────────────────────────────

class TestSmtpEmailSender:
    CREDS = {"host": "smtp.example.com", "port": 465, "secure": True,
             "user": "sales@example.com", "pass": "pw"}

    @pytest.mark.asyncio
    async def test_sends_multipart_message(self):
        calls = []

        async def transport(msg, **kwargs):
            calls.append((msg, kwargs))

        sender = SmtpEmailSender(transport=transport)
        result = await sender.send(self.CREDS, CONTACT, MESSAGE)

        assert result.success
        assert result.message_id.endswith("@example.com>")
        msg, kwargs = calls[0]
        assert msg["To"] == "ada@example.com"
        assert msg["From"] == "sales@example.com"
        assert msg["Subject"] == "Hello Ada"
        assert msg.get_body(("html",)).get_content().strip() == "Hi Ada, quick question."
        assert kwargs["hostname"] == "smtp.example.com"
        assert kwargs["port"] == 465
        assert kwargs["use_tls"] is True
        assert kwargs["username"] == "sales@example.com"
        assert sender.metrics.messages_sent == 1

    @pytest.mark.asyncio
    async def test_smtp_error_becomes_failed_result(self):
        async def transport(msg, **kwargs):
            raise aiosmtplib.SMTPException("relay denied")

        sender = SmtpEmailSender(transport=transport)
        result = await sender.send(self.CREDS, CONTACT, MESSAGE)
        assert not result.success
        assert "relay denied" in result.error
        assert sender.metrics.messages_failed == 1

    @pytest.mark.asyncio
    async def test_contact_without_email(self):
        async def transport(msg, **kwargs):
            raise AssertionError("must not send")

        result = await SmtpEmailSender(transport=transport).send(
            self.CREDS, Contact(id="c2", phone="+1555"), MESSAGE,
        )
        assert result == SendResult.failed("Contact has no email")

    @pytest.mark.asyncio
    async def test_missing_host(self):
        async def transport(msg, **kwargs):
            raise AssertionError("must not send")

        result = await SmtpEmailSender(transport=transport).send({"user": "a@b.c"}, CONTACT, MESSAGE)
        assert not result.success
        assert "host" in result.error


# ──────────────────────────────────────────────────────────────
#  WhatsApp Business
# ──────────────────────────────────────────────────────────────

class TestWhatsAppBusinessSender:
    CREDS = {"phoneNumberId": "10987", "accessToken": "tok"}

    @pytest.mark.asyncio
    async def test_posts_text_message(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"messages": [{"id": "wamid.ABC"}]})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        result = await WhatsAppBusinessSender(client=client).send(self.CREDS, CONTACT, MESSAGE)

        assert result.success
        assert result.message_id == "wamid.ABC"
        request = requests[0]
        assert str(request.url) == "https://graph.facebook.com/v18.0/10987/messages"
        assert request.headers["Authorization"] == "Bearer tok"
        body = json.loads(request.content)
        assert body["to"] == "491512345678"
        assert body["text"] == {"body": "Hi Ada, quick question."}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_api_error_is_reported(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": {"message": "Invalid parameter"}})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        result = await WhatsAppBusinessSender(client=client).send(self.CREDS, CONTACT, MESSAGE)

        assert not result.success
        assert result.error == "Invalid parameter"
        assert result.metadata["status_code"] == 400
        await client.aclose()

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        result = await WhatsAppBusinessSender().send({"phoneNumberId": "1"}, CONTACT, MESSAGE)
        assert not result.success
        assert "accessToken" in result.error


# ──────────────────────────────────────────────────────────────
#  Twilio voice
# ──────────────────────────────────────────────────────────────

class TestTwilioVoiceSender:
    CREDS = {"accountSid": "AC123", "authToken": "secret", "fromNumber": "+15550001111"}

    @pytest.mark.asyncio
    async def test_places_call_with_twiml(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={"sid": "CA999", "status": "queued"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        result = await TwilioVoiceSender(client=client).send(self.CREDS, CONTACT, MESSAGE)

        assert result.success
        assert result.message_id == "CA999"
        request = requests[0]
        assert request.url.path == "/2010-04-01/Accounts/AC123/Calls.json"
        assert request.headers["Authorization"].startswith("Basic ")
        form = parse_qs(request.content.decode())
        assert form["To"] == ["+491512345678"]
        assert form["From"] == ["+15550001111"]
        assert "Hi Ada, quick question." in form["Twiml"][0]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_rejects_bad_account_sid(self):
        result = await TwilioVoiceSender().send({"accountSid": "XX1"}, CONTACT, MESSAGE)
        assert result == SendResult.failed("Invalid Twilio Account SID")

    @pytest.mark.asyncio
    async def test_api_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "Authenticate"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        result = await TwilioVoiceSender(client=client).send(self.CREDS, CONTACT, MESSAGE)
        assert result.error == "Authenticate"
        await client.aclose()


# ──────────────────────────────────────────────────────────────
#  Registry
# ──────────────────────────────────────────────────────────────

class TestChannelSenderRegistry:
    @pytest.mark.asyncio
    async def test_register_get_and_health(self):
        registry = ChannelSenderRegistry()
        email = FakeSender(ChannelType.EMAIL_SMTP)
        registry.register(email)

        assert registry.get(ChannelType.EMAIL_SMTP) is email
        assert registry.get(ChannelType.SMS) is None
        assert registry.get_available() == [ChannelType.EMAIL_SMTP]

        await email.send({}, CONTACT, MESSAGE)
        health = await registry.health()
        assert health["EMAIL_SMTP"]["metrics"]["sent"] == 1

    def test_duplicate_channel_rejected(self):
        registry = ChannelSenderRegistry()
        registry.register(FakeSender(ChannelType.EMAIL_SMTP))
        with pytest.raises(ValueError):
            registry.register(FakeSender(ChannelType.EMAIL_SMTP))

    @pytest.mark.asyncio
    async def test_shutdown_all_survives_a_failing_sender(self):
        registry = ChannelSenderRegistry()
        broken = FakeSender(ChannelType.SMS)
        broken.shutdown = AsyncMock(side_effect=RuntimeError("socket gone"))
        healthy = FakeSender(ChannelType.EMAIL_SMTP)
        healthy.shutdown = AsyncMock()
        registry.register(broken)
        registry.register(healthy)

        await registry.shutdown_all()
        broken.shutdown.assert_awaited_once()
        healthy.shutdown.assert_awaited_once()
