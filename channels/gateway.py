"""
Channel Gateway — one send with a primary channel and a fallback channel.

Usage:
    gateway = ChannelGateway(registry)
    result = await gateway.send("+447700900123", template_id="HX...",
                                variables={"1": "Sam"}, fallback_text="Hi Sam, ...")
    result.status    # "sent" | "failed"
    result.channel   # ChannelType.WHATSAPP or ChannelType.SMS

Nothing here retries a whole message: the primary is tried once, then the
fallback once with the pre-rendered text. A double failure is reported as a
SendResult with status "failed", never raised.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from channels.base import ChannelAdapter, ChannelError, ChannelRegistry
from models.schemas import ChannelType, DeliveryStatusUpdate, InboundReply, SendResult

logger = structlog.get_logger()


class ChannelGateway:
    """Primary (WhatsApp) then fallback (SMS) delivery of one message."""

    def __init__(self, registry: ChannelRegistry,
                 primary: ChannelType = ChannelType.WHATSAPP,
                 fallback: ChannelType = ChannelType.SMS):
        self._registry = registry
        self._primary_type = primary
        self._fallback_type = fallback

    @property
    def primary(self) -> Optional[ChannelAdapter]:
        return self._registry.get(self._primary_type)

    @property
    def fallback(self) -> Optional[ChannelAdapter]:
        return self._registry.get(self._fallback_type)

    async def send(self, recipient: str, template_id: str = "",
                   variables: Optional[dict[str, str]] = None,
                   fallback_text: str = "", body: str = "") -> SendResult:
        primary_error = ""
        if self.primary is not None:
            try:
                result = await self.primary.send(
                    recipient,
                    content=body or fallback_text,
                    template_id=template_id,
                    variables=variables,
                    metadata={"fallback_text": fallback_text},
                )
                return SendResult(handle=result.get("channel_message_id"), status="sent",
                                  channel=self._primary_type)
            except ChannelError as e:
                primary_error = str(e)
                logger.warning("primary_channel_failed", recipient=recipient,
                               channel=self._primary_type.value, error=primary_error)

        return await self.send_fallback(recipient, fallback_text or body, primary_error)

    async def send_fallback(self, recipient: str, text: str, primary_error: str = "") -> SendResult:
        """Send pre-rendered text on the fallback channel only."""
        if self.fallback is None:
            return SendResult(status="failed", error=primary_error or "no fallback channel")
        try:
            result = await self.fallback.send(recipient, content=text)
        except ChannelError as e:
            logger.error("all_channels_failed", recipient=recipient,
                         primary_error=primary_error, fallback_error=str(e))
            return SendResult(status="failed", error=f"{primary_error}; {e}".strip("; "))
        return SendResult(handle=result.get("channel_message_id"), status="sent",
                          channel=self._fallback_type, error=primary_error)

    # ── Webhooks ──────────────────────────────────────────────

    def _adapter_for(self, raw_payload: dict[str, Any]) -> Optional[ChannelAdapter]:
        addresses = f"{raw_payload.get('From', '')} {raw_payload.get('To', '')}"
        if "whatsapp:" in addresses:
            return self._registry.get(ChannelType.WHATSAPP)
        return self._registry.get(ChannelType.SMS)

    async def parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[InboundReply]:
        adapter = self._adapter_for(raw_payload)
        return await adapter.parse_inbound(raw_payload) if adapter else None

    def parse_status(self, raw_payload: dict[str, Any]) -> Optional[DeliveryStatusUpdate]:
        adapter = self._adapter_for(raw_payload)
        return adapter.parse_status(raw_payload) if adapter else None
