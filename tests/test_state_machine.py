"""
Tests for the delivery state machine and the reply rule.

Covers: forward-only delivery transitions, failure entry points, recovery
via the fallback channel only, Twilio status mapping, the reply guard.
"""
import pytest

from core.state_machine import (
    allowed_predecessors, can_transition, is_terminal_reply, map_provider_status, reply_guard,
)
from database.store_memory import guard_matches
from models.schemas import AvailabilityRequest, ChannelState, ReplyCode
from utils.formatting import format_date_with_ordinal


class TestDeliveryTransitions:

    @pytest.mark.parametrize("current,target", [
        (ChannelState.QUEUED, ChannelState.SENT),
        (ChannelState.QUEUED, ChannelState.DELIVERED),
        (ChannelState.SENT, ChannelState.DELIVERED),
        (ChannelState.DELIVERED, ChannelState.READ),
        (ChannelState.QUEUED, ChannelState.FAILED),
        (ChannelState.SENT, ChannelState.UNDELIVERED),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (ChannelState.SENT, ChannelState.QUEUED),
        (ChannelState.DELIVERED, ChannelState.SENT),
        (ChannelState.READ, ChannelState.DELIVERED),
        (ChannelState.READ, ChannelState.READ),
        (ChannelState.DELIVERED, ChannelState.FAILED),
        (ChannelState.READ, ChannelState.UNDELIVERED),
    ])
    def test_never_backwards(self, current, target):
        assert not can_transition(current, target)

    def test_failure_recovers_only_via_fallback(self):
        assert not can_transition(ChannelState.FAILED, ChannelState.SENT)
        assert can_transition(ChannelState.FAILED, ChannelState.SENT, via_fallback=True)
        assert can_transition(ChannelState.UNDELIVERED, ChannelState.DELIVERED, via_fallback=True)

    def test_predecessors_of_sent(self):
        assert allowed_predecessors(ChannelState.SENT) == [ChannelState.QUEUED]


class TestProviderStatus:

    @pytest.mark.parametrize("status,expected", [
        ("queued", ChannelState.QUEUED),
        ("accepted", ChannelState.QUEUED),
        ("sent", ChannelState.SENT),
        ("Delivered", ChannelState.DELIVERED),
        ("read", ChannelState.READ),
        ("undelivered", ChannelState.UNDELIVERED),
        ("failed", ChannelState.FAILED),
        ("canceled", ChannelState.FAILED),
    ])
    def test_mapping(self, status, expected):
        assert map_provider_status(status) == expected

    def test_unknown_status_ignored(self):
        assert map_provider_status("receiving") is None
        assert map_provider_status("") is None


class TestReplyRule:

    def _ask(self, **overrides) -> AvailabilityRequest:
        return AvailabilityRequest(act_id="act-1", lineup_id="l", recipient="+447700900001",
                                   date_iso="2026-06-06",
                                   formatted_date=format_date_with_ordinal("2026-06-06"),
                                   **overrides)

    def test_open_ask_accepts_reply(self):
        assert guard_matches(self._ask(), reply_guard())

    def test_replied_ask_rejects_second_reply(self):
        assert not guard_matches(self._ask(reply=ReplyCode.NO), reply_guard())

    def test_cancelled_ask_rejects_reply(self):
        from models.schemas import utcnow
        assert not guard_matches(self._ask(cancelled_at=utcnow()), reply_guard())

    def test_terminal(self):
        assert is_terminal_reply(ReplyCode.NO_RESPONSE)
        assert not is_terminal_reply(None)
