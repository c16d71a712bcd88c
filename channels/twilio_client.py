"""
Twilio Messaging Client — WhatsApp and SMS over the Messages REST API.

Both channels share one endpoint; WhatsApp addresses carry a "whatsapp:"
prefix and approved templates are sent as ContentSid + ContentVariables.

Message flow:
1. send_message() → Twilio queues the message, returns a MessageSid
2. Status webhooks (queued/sent/delivered/read/undelivered/failed) arrive
   at status_callback_url
3. Replies arrive at the inbound webhook as form posts

API Docs: https://www.twilio.com/docs/messaging/api/message-resource
"""
from __future__ import annotations

import json
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = structlog.get_logger()


class TwilioMessagingClient:
    """Twilio REST API client for outbound messages."""

    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"

    def __init__(self, account_sid: str, auth_token: str, status_callback_url: str = "",
                 messaging_service_sid: str = ""):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.status_callback_url = status_callback_url
        self.messaging_service_sid = messaging_service_sid
        self.base_url = f"{self.BASE_URL}/{account_sid}"
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                auth=(self.account_sid, self.auth_token),
                timeout=httpx.Timeout(30.0, connect=10.0),
            )
        return self._client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        url = f"{self.base_url}{path}.json"
        resp = await client.request(method, url, **kwargs)
        if resp.status_code >= 400:
            logger.error(
                "twilio_api_error",
                status=resp.status_code,
                body=resp.text[:500],
                path=path,
            )
            resp.raise_for_status()
        return resp.json()

    async def send_message(
        self,
        to: str,
        from_: str,
        body: str = "",
        content_sid: str = "",
        content_variables: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """
        Create a message.

        Args:
            to: Destination, "+44..." for SMS or "whatsapp:+44..." for WhatsApp
            from_: Sender in the same form; ignored when a messaging service is set
            body: Free-form text (SMS, or WhatsApp inside the session window)
            content_sid: Approved content template SID
            content_variables: Numbered template variables {"1": ..., "2": ...}
        """
        # Twilio uses form-encoded POST, not JSON
        payload: dict[str, str] = {"To": to}
        if self.messaging_service_sid:
            payload["MessagingServiceSid"] = self.messaging_service_sid
        else:
            payload["From"] = from_
        if content_sid:
            payload["ContentSid"] = content_sid
            payload["ContentVariables"] = json.dumps(content_variables or {})
        else:
            payload["Body"] = body
        if self.status_callback_url:
            payload["StatusCallback"] = self.status_callback_url

        logger.info("twilio_send_message", to=to, template=bool(content_sid))
        result = await self._request("POST", "/Messages", data=payload)
        return {
            "sid": result.get("sid", ""),
            "status": result.get("status", "queued"),
            "to": to,
            "provider": "twilio",
        }

    # ── Webhook Parsing ─────────────────────────────────────

    @staticmethod
    def parse_status_webhook(payload: dict[str, Any]) -> dict[str, Any]:
        """
        Normalize a Twilio message status callback.

        Twilio sends MessageSid, MessageStatus, ErrorCode, To, From.
        """
        return {
            "message_sid": payload.get("MessageSid") or payload.get("SmsSid", ""),
            "status": (payload.get("MessageStatus") or payload.get("SmsStatus") or "").lower(),
            "error_code": str(payload.get("ErrorCode") or ""),
            "is_whatsapp": str(payload.get("To", "")).startswith("whatsapp:")
                           or str(payload.get("From", "")).startswith("whatsapp:"),
        }

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
