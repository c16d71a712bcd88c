"""
Availability State Machine — delivery states and the reply rule.

Delivery (channel_state):
    queued → sent → delivered → read            forward only
    queued | sent → undelivered | failed         provider reports a failure
    undelivered | failed → sent | delivered | read   only via the fallback channel

Reply:
    null → yes | no | unavailable | no_response  exactly once; the first reply wins

Every transition is expressed as the set of states it may start from, which
callers pass to the store as an update guard. The store, not the caller,
decides whether the transition happened.
"""
from __future__ import annotations

from typing import Optional

from models.schemas import ChannelState, ReplyCode

_FORWARD_RANK = {
    ChannelState.QUEUED: 0,
    ChannelState.SENT: 1,
    ChannelState.DELIVERED: 2,
    ChannelState.READ: 3,
}

FAILURE_STATES = (ChannelState.UNDELIVERED, ChannelState.FAILED)

# Twilio message statuses → channel state
PROVIDER_STATUS_MAP = {
    "accepted": ChannelState.QUEUED,
    "scheduled": ChannelState.QUEUED,
    "queued": ChannelState.QUEUED,
    "sending": ChannelState.QUEUED,
    "sent": ChannelState.SENT,
    "delivered": ChannelState.DELIVERED,
    "read": ChannelState.READ,
    "undelivered": ChannelState.UNDELIVERED,
    "failed": ChannelState.FAILED,
    "canceled": ChannelState.FAILED,
}

REPLY_CODES = (ReplyCode.YES, ReplyCode.NO, ReplyCode.UNAVAILABLE)


def map_provider_status(status: str) -> Optional[ChannelState]:
    return PROVIDER_STATUS_MAP.get((status or "").strip().lower())


def allowed_predecessors(target: ChannelState, via_fallback: bool = False) -> list[ChannelState]:
    """States from which `target` may be entered."""
    if target in FAILURE_STATES:
        return [ChannelState.QUEUED, ChannelState.SENT]
    rank = _FORWARD_RANK[target]
    states = [s for s, r in _FORWARD_RANK.items() if r < rank]
    if via_fallback:
        states.extend(FAILURE_STATES)
    return states


def can_transition(current: ChannelState, target: ChannelState, via_fallback: bool = False) -> bool:
    return current in allowed_predecessors(target, via_fallback)


def is_terminal_reply(reply: Optional[ReplyCode]) -> bool:
    return reply is not None


def reply_guard() -> dict:
    """Update guard for setting a reply: only an unreplied, uncancelled record accepts one."""
    return {"reply": None, "cancelled_at": None}
