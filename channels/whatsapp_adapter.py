"""
WhatsApp Channel Adapter — WhatsApp via Twilio.

Provides:
- Approved content templates (ContentSid + numbered variables) for asks
- Free-form text for messages without a template
- Inbound parsing: body text and quick-reply button payloads
- Status callback parsing (queued, sent, delivered, read, undelivered, failed)

Without credentials the adapter runs in mock mode and returns synthetic
message ids, which keeps local development and tests off the network.
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional

from channels.base import ChannelAdapter
from channels.twilio_client import TwilioMessagingClient
from models.schemas import ChannelType, DeliveryStatusUpdate, InboundReply
from utils.phone import to_e164

logger = structlog.get_logger()

WHATSAPP_PREFIX = "whatsapp:"


class WhatsAppAdapter(ChannelAdapter):
    """Primary channel: rich template with YES / NO / NOLOC buttons."""

    channel_type = ChannelType.WHATSAPP

    def __init__(self, client: Optional[TwilioMessagingClient] = None):
        super().__init__()
        self._client = client
        self._sender: str = ""

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        sender = config.get("whatsapp_sender", "")
        if sender and not sender.startswith(WHATSAPP_PREFIX):
            sender = f"{WHATSAPP_PREFIX}{sender}"
        self._sender = sender
        if self._client is None and config.get("account_sid") and config.get("auth_token"):
            self._client = TwilioMessagingClient(
                account_sid=config["account_sid"],
                auth_token=config["auth_token"],
                status_callback_url=config.get("status_callback_url", ""),
                messaging_service_sid=config.get("messaging_service_sid", ""),
            )
        self._initialized = True
        logger.info("whatsapp_adapter_initialized", mock=self._client is None)

    @staticmethod
    def _address(recipient: str) -> str:
        e164 = to_e164(recipient) or recipient
        return f"{WHATSAPP_PREFIX}{e164}"

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(self, recipient: str, content: str, metadata: dict[str, Any]) -> dict[str, Any]:
        if not content:
            return {"status": "failed", "error": "Empty WhatsApp body"}
        if self._client is None:
            return self._mock_send(recipient, template=None)
        result = await self._client.send_message(self._address(recipient), self._sender, body=content)
        return {"status": "sent", "channel_message_id": result["sid"]}

    async def _do_send_template(self, recipient: str, template_id: str,
                                variables: dict[str, str], metadata: dict[str, Any]) -> dict[str, Any]:
        if self._client is None:
            return self._mock_send(recipient, template=template_id)
        result = await self._client.send_message(
            self._address(recipient), self._sender,
            content_sid=template_id, content_variables=variables,
        )
        return {"status": "sent", "channel_message_id": result["sid"]}

    def _mock_send(self, recipient: str, template: Optional[str]) -> dict[str, Any]:
        msg_id = f"WA{uuid.uuid4().hex[:32]}"
        logger.info("whatsapp_mock_sent", to=recipient, template=template, msg_id=msg_id)
        return {"status": "mock_sent", "channel_message_id": msg_id}

    # ── Inbound parsing ───────────────────────────────────────

    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[InboundReply]:
        """Parse a Twilio WhatsApp inbound webhook (form fields)."""
        sender = str(raw_payload.get("From", ""))
        if not sender:
            return None
        return InboundReply(
            sender=sender,
            body=str(raw_payload.get("Body", "")),
            button_payload=str(raw_payload.get("ButtonPayload", "")),
            provider_sid=str(raw_payload.get("MessageSid") or raw_payload.get("SmsMessageSid") or ""),
            channel=ChannelType.WHATSAPP,
            raw=dict(raw_payload),
        )

    def parse_status(self, raw_payload: dict[str, Any]) -> Optional[DeliveryStatusUpdate]:
        parsed = TwilioMessagingClient.parse_status_webhook(raw_payload)
        if not parsed["message_sid"] or not parsed["status"]:
            return None
        return DeliveryStatusUpdate(
            handle=parsed["message_sid"],
            status=parsed["status"],
            channel=ChannelType.WHATSAPP,
            error_code=parsed["error_code"],
        )

    async def shutdown(self) -> None:
        if self._client:
            await self._client.close()
