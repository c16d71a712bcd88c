"""Channel adapters for the WhatsApp primary and SMS fallback channels."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    ChannelError,
    CircuitBreaker,
    CircuitOpenError,
    ChannelMetrics,
)
from channels.gateway import ChannelGateway
from channels.sms_adapter import SMSAdapter
from channels.twilio_client import TwilioMessagingClient
from channels.whatsapp_adapter import WhatsAppAdapter

__all__ = [
    "ChannelAdapter", "ChannelRegistry", "ChannelError", "CircuitOpenError",
    "CircuitBreaker", "ChannelMetrics", "ChannelGateway",
    "WhatsAppAdapter", "SMSAdapter", "TwilioMessagingClient",
]
