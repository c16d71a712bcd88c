"""Shared test fixtures for the allocation engine."""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
import pytest_asyncio

from backend.calendar import NullCalendarProvider
from channels.base import ChannelAdapter, ChannelRegistry
from channels.gateway import ChannelGateway
from channels.twilio_client import TwilioMessagingClient
from config.settings import Settings
from core.orchestrator import AllocationEngine
from database.store_memory import InMemoryAvailabilityStore
from models.schemas import (
    Act, ChannelType, DeliveryStatusUpdate, Deputy, InboundReply, Lineup, LineupMember,
)

LEAD_PHONE = "+447700900001"
DRUMS_PHONE = "+447700900002"
DEPUTY_A = "+447700900101"
DEPUTY_B = "+447700900102"
DEPUTY_C = "+447700900103"

GIG_DATE = "2026-06-06"
GIG_ADDRESS = "The Old Barn, Little Hadham, Hertfordshire, UK"


class FakeClock:
    """Settable clock; starts at midday UTC (13:00 in London, outside quiet hours)."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeAdapter(ChannelAdapter):
    """
    Records every send. Tracks how many sends per recipient are in flight at
    once, and can be told to fail or to pause inside the provider call.
    """

    def __init__(self, channel_type: ChannelType, fail: bool = False, delay: float = 0.0):
        self.channel_type = channel_type
        super().__init__()
        self.fail = fail
        self.delay = delay
        self.sent: list[dict[str, Any]] = []
        self.max_in_flight: dict[str, int] = {}
        self._in_flight: dict[str, int] = {}
        self._prefix = "WA" if channel_type == ChannelType.WHATSAPP else "SM"

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._initialized = True

    async def _do_send(self, recipient, content, metadata):
        return await self._record(recipient, content=content)

    async def _do_send_template(self, recipient, template_id, variables, metadata):
        return await self._record(recipient, template_id=template_id, variables=variables,
                                  content=metadata.get("fallback_text", ""))

    async def _record(self, recipient: str, **fields) -> dict[str, Any]:
        self._in_flight[recipient] = self._in_flight.get(recipient, 0) + 1
        self.max_in_flight[recipient] = max(self.max_in_flight.get(recipient, 0),
                                            self._in_flight[recipient])
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail:
                raise RuntimeError(f"{self.channel_type.value} provider unavailable")
            handle = f"{self._prefix}{len(self.sent) + 1}"
            self.sent.append({"recipient": recipient, "handle": handle, **fields})
            return {"status": "sent", "channel_message_id": handle}
        finally:
            self._in_flight[recipient] -= 1

    async def _parse_inbound(self, raw_payload):
        return InboundReply(
            sender=raw_payload.get("From", ""),
            body=raw_payload.get("Body", ""),
            button_payload=raw_payload.get("ButtonPayload", ""),
            provider_sid=raw_payload.get("MessageSid", ""),
            channel=self.channel_type,
        )

    def parse_status(self, raw_payload):
        parsed = TwilioMessagingClient.parse_status_webhook(raw_payload)
        if not parsed["message_sid"]:
            return None
        return DeliveryStatusUpdate(handle=parsed["message_sid"], status=parsed["status"],
                                    channel=self.channel_type)

    @property
    def recipients(self) -> list[str]:
        return [s["recipient"] for s in self.sent]


def inbound(sender: str, body: str = "", button: str = "", sid: str = "", channel: str = "whatsapp") -> dict:
    """A Twilio inbound webhook form."""
    prefix = "whatsapp:" if channel == "whatsapp" else ""
    return {
        "From": f"{prefix}{sender}",
        "To": f"{prefix}+441234567890",
        "Body": body,
        "ButtonPayload": button,
        "MessageSid": sid,
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryAvailabilityStore:
    return InMemoryAvailabilityStore()


@pytest.fixture
def whatsapp() -> FakeAdapter:
    return FakeAdapter(ChannelType.WHATSAPP)


@pytest.fixture
def sms() -> FakeAdapter:
    return FakeAdapter(ChannelType.SMS)


@pytest.fixture
def registry(whatsapp, sms) -> ChannelRegistry:
    reg = ChannelRegistry()
    reg.register(whatsapp)
    reg.register(sms)
    return reg


@pytest.fixture
def gateway(registry) -> ChannelGateway:
    return ChannelGateway(registry)


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def calendar() -> NullCalendarProvider:
    return NullCalendarProvider()


@pytest.fixture
def act() -> Act:
    return Act(
        id="act-1",
        name="The Velvet Tones",
        lineups=[
            Lineup(
                id="lineup-4",
                name="4-piece",
                members=[
                    LineupMember(
                        musician_id="m-lead", first_name="Sam", last_name="Rivers",
                        instrument="Vocals", duty_role="Lead Vocal",
                        phone="07700 900001", email="sam@example.com",
                        photo_url="https://cdn.example.com/sam.jpg", fee="350",
                        deputies=[
                            Deputy(musician_id="m-dep-a", first_name="Alex", last_name="Hart",
                                   phone="07700900101", email="alex@example.com",
                                   photo_url="https://cdn.example.com/alex.jpg"),
                            Deputy(musician_id="m-dep-b", first_name="Bea", last_name="Stone",
                                   phone="+447700900102", photo_url="https://cdn.example.com/bea.jpg"),
                            Deputy(musician_id="m-dep-c", first_name="Cal", last_name="Moore",
                                   phone="447700900103"),
                        ],
                    ),
                    LineupMember(
                        musician_id="m-drums", first_name="Dana", last_name="Kit",
                        instrument="Drums", duty_role="Drums", phone="07700900002", fee="250",
                    ),
                ],
            ),
        ],
    )


@pytest_asyncio.fixture
async def engine(store, registry, settings, calendar, clock, act) -> AllocationEngine:
    eng = AllocationEngine(store, registry, settings=settings, calendar=calendar, clock=clock)
    await eng.upsert_act(act)
    yield eng
    await eng.replies.wait_background()
