"""
SMS Channel Adapter — Twilio SMS, the fallback channel.

Provides:
- GSM-7 vs Unicode detection for accurate segment counting
- Automatic message truncation to max segment limit
- Inbound parsing of Twilio form posts
- Status webhook parsing (sent, delivered, undelivered, failed)

SMS has no templates: a template send falls back to the pre-rendered text
passed in the metadata, so the adapter never re-derives message copy.
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


# ══════════════════════════════════════════════════════════════
#  GSM-7 CHARACTER SET & SEGMENT COUNTING
# ══════════════════════════════════════════════════════════════

# GSM-7 basic character set (includes space, digits, common punctuation, Latin letters)
_GSM7_CHARS = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)

# Extended GSM-7 (takes 2 bytes each): ^{}[~]|\€
_GSM7_EXTENDED = set("^{}[]~|\\€")


def _is_gsm7(text: str) -> bool:
    """Check if all characters in text are in the GSM-7 charset."""
    return all(c in _GSM7_CHARS or c in _GSM7_EXTENDED for c in text)


def segment_count(text: str) -> int:
    """
    Calculate SMS segment count based on encoding.

    GSM-7: 160 chars single / 153 chars per segment (7 chars for UDH header)
    Unicode: 70 chars single / 67 chars per segment
    """
    if not text:
        return 0

    if _is_gsm7(text):
        char_count = sum(2 if c in _GSM7_EXTENDED else 1 for c in text)
        if char_count <= 160:
            return 1
        return (char_count + 152) // 153
    else:
        if len(text) <= 70:
            return 1
        return (len(text) + 66) // 67


# ══════════════════════════════════════════════════════════════
#  SMS ADAPTER
# ══════════════════════════════════════════════════════════════

class SMSAdapter(ChannelAdapter):
    """
    SMS adapter with segment awareness. STOP keywords are handled by the
    Twilio messaging service and reach us as ordinary inbound messages.

    Automatically truncates messages to stay within the configured
    max_segments limit.
    """

    channel_type = ChannelType.SMS

    def __init__(self, client: Optional[TwilioMessagingClient] = None):
        super().__init__()
        self._client = client
        self._from_number: str = ""
        self._max_segments: int = 3

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._from_number = config.get("sms_from", "")
        self._max_segments = config.get("max_segments", 3)
        if self._client is None and config.get("account_sid") and config.get("auth_token"):
            self._client = TwilioMessagingClient(
                account_sid=config["account_sid"],
                auth_token=config["auth_token"],
                status_callback_url=config.get("status_callback_url", ""),
                messaging_service_sid=config.get("messaging_service_sid", ""),
            )
        self._initialized = True
        logger.info("sms_adapter_initialized", mock=self._client is None)

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(self, recipient: str, content: str, metadata: dict[str, Any]) -> dict[str, Any]:
        phone = to_e164(recipient)
        if not phone:
            return {"status": "failed", "error": "No SMS number"}
        if not content:
            return {"status": "failed", "error": "Empty SMS body"}

        content = self._truncate_to_segments(content, self._max_segments)
        segments = segment_count(content)

        if self._client is None:
            msg_sid = f"SM{uuid.uuid4().hex[:32]}"
            logger.info("sms_mock_sent", to=phone, segments=segments, msg_sid=msg_sid)
            return {"status": "mock_sent", "channel_message_id": msg_sid, "segments": segments}

        result = await self._client.send_message(phone, self._from_number, body=content)
        logger.info("sms_sent", to=phone, segments=segments, msg_sid=result["sid"])
        return {"status": "sent", "channel_message_id": result["sid"], "segments": segments}

    async def _do_send_template(self, recipient: str, template_id: str,
                                variables: dict[str, str], metadata: dict[str, Any]) -> dict[str, Any]:
        return await self._do_send(recipient, metadata.get("fallback_text", ""), metadata)

    # ── Inbound ───────────────────────────────────────────────

    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[InboundReply]:
        """Parse Twilio-style inbound SMS webhook."""
        sender = str(raw_payload.get("From", ""))
        body = str(raw_payload.get("Body", "")).strip()
        if not sender:
            return None

        return InboundReply(
            sender=sender,
            body=body,
            provider_sid=str(raw_payload.get("MessageSid") or raw_payload.get("SmsMessageSid") or ""),
            channel=ChannelType.SMS,
            raw=dict(raw_payload),
        )

    def parse_status(self, raw_payload: dict[str, Any]) -> Optional[DeliveryStatusUpdate]:
        parsed = TwilioMessagingClient.parse_status_webhook(raw_payload)
        if not parsed["message_sid"] or not parsed["status"]:
            return None
        return DeliveryStatusUpdate(
            handle=parsed["message_sid"],
            status=parsed["status"],
            channel=ChannelType.SMS,
            error_code=parsed["error_code"],
        )

    # ── Truncation ────────────────────────────────────────────

    def _truncate_to_segments(self, content: str, max_segments: int) -> str:
        """Truncate message to fit within max_segments."""
        if segment_count(content) <= max_segments:
            return content

        if _is_gsm7(content):
            max_chars = 153 * max_segments - 3
        else:
            max_chars = 67 * max_segments - 3

        return content[:max_chars] + "..."

    async def shutdown(self) -> None:
        if self._client:
            await self._client.close()
