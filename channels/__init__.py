"""Channel senders for outbound campaign steps."""
from channels.base import (
    ChannelSender,
    ChannelSenderRegistry,
    ChannelError,
    ChannelMetrics,
    SendResult,
)
from channels.email_sender import SmtpEmailSender
from channels.whatsapp_sender import WhatsAppBusinessSender
from channels.voice_sender import TwilioVoiceSender

__all__ = [
    "ChannelSender", "ChannelSenderRegistry", "ChannelError", "ChannelMetrics", "SendResult",
    "SmtpEmailSender", "WhatsAppBusinessSender", "TwilioVoiceSender",
]
