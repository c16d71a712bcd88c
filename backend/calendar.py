"""
Calendar Provider — adds a confirmed performer to the event calendar.

A YES reply invites the performer to the (act, date) calendar event. The
call is fire-and-forget: failures are logged and never reach the reply path.
The HTTP provider talks to whatever calendar service sits behind
`calendar.base_url`; the null provider only logs.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import CalendarConfig, get_settings

logger = structlog.get_logger()


def event_id_for(act_id: str, date_iso: str) -> str:
    """Stable calendar event id for an act on a date."""
    return f"{act_id}_{date_iso.replace('-', '')}"


class CalendarProvider(abc.ABC):
    """Abstract base for calendar integrations."""

    @abc.abstractmethod
    async def add_attendee(self, act_id: str, date_iso: str, email: str, name: str = "") -> bool:
        """Invite `email` to the event for (act_id, date_iso). Returns False on failure."""
        ...

    async def close(self):
        pass


class NullCalendarProvider(CalendarProvider):
    """Used when no calendar is configured."""

    def __init__(self):
        self.calls: list[dict[str, Any]] = []

    async def add_attendee(self, act_id: str, date_iso: str, email: str, name: str = "") -> bool:
        self.calls.append({"act_id": act_id, "date_iso": date_iso, "email": email, "name": name})
        logger.info("calendar_attendee_skipped", act_id=act_id, date_iso=date_iso,
                    email=email, reason="no calendar provider")
        return True


class HttpCalendarProvider(CalendarProvider):
    """
    REST calendar service.

    POST {base_url}/events/{event_id}/attendees  {"email": ..., "name": ...}
    """

    def __init__(self, config: CalendarConfig = None):
        self.config = config or get_settings().calendar
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10), reraise=True)
    async def _request(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        return response.json() if response.content else {}

    async def add_attendee(self, act_id: str, date_iso: str, email: str, name: str = "") -> bool:
        if not email:
            logger.debug("calendar_attendee_no_email", act_id=act_id, date_iso=date_iso)
            return False
        event_id = event_id_for(act_id, date_iso)
        try:
            await self._request("POST", f"/events/{event_id}/attendees",
                                json={"email": email, "name": name})
            logger.info("calendar_attendee_added", event_id=event_id, email=email)
            return True
        except Exception as e:
            logger.warning("calendar_attendee_failed", event_id=event_id, email=email, error=str(e))
            return False

    async def close(self):
        if self.client:
            await self.client.aclose()


def create_calendar_provider(config: CalendarConfig = None) -> CalendarProvider:
    """Factory function to create the configured calendar provider."""
    config = config or get_settings().calendar
    if config.provider == "http" and config.base_url:
        return HttpCalendarProvider(config)
    if config.provider not in ("none", ""):
        logger.warning("calendar_provider_unconfigured", provider=config.provider)
    return NullCalendarProvider()
