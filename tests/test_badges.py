"""
Tests for the badge projection.

Covers: lead vs deputy featuring, deputy list ordering / cap / dedupe,
filtering by act, date, kind, reply and lead role, determinism, and the
versioned rebuild (no-op when unchanged, retry on a concurrent write).
"""
from datetime import datetime, timedelta, timezone

import pytest

from core.badges import BadgeAggregator, project
from core.errors import ConcurrencyError
from database.store_memory import InMemoryAvailabilityStore
from models.schemas import AskKind, AvailabilityRequest, Badge, ReplyCode

from conftest import DEPUTY_A, GIG_ADDRESS, GIG_DATE, LEAD_PHONE, inbound

T0 = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
LEADS = ["lead vocal"]


def _yes(recipient: str, musician_id: str, minutes: int, is_deputy: bool = True,
         name: str = "", **overrides) -> AvailabilityRequest:
    fields = dict(
        act_id="act-1", lineup_id="lineup-4", date_iso=GIG_DATE, recipient=recipient,
        musician_id=musician_id, musician_name=name or musician_id, is_deputy=is_deputy,
        duty_role="Lead Vocal", venue_address=GIG_ADDRESS,
        reply=ReplyCode.YES, replied_at=T0 + timedelta(minutes=minutes),
    )
    fields.update(overrides)
    return AvailabilityRequest(**fields)


# ──────────────────────────────────────────────────────────────
#  Pure projection
# ──────────────────────────────────────────────────────────────

class TestProject:

    def test_no_yes_replies_gives_empty_badge(self):
        badge = project("act-1", GIG_DATE, [])
        assert badge == Badge(act_id="act-1", date_iso=GIG_DATE)

    def test_lead_yes_activates_badge(self, act):
        badge = project("act-1", GIG_DATE, [_yes(LEAD_PHONE, "m-lead", 5, is_deputy=False)],
                        act=act, public_site_url="https://site.example/")
        assert badge.active
        assert not badge.is_deputy
        assert badge.vocalist_name == "Sam Rivers"
        assert badge.photo_url == "https://cdn.example.com/sam.jpg"
        assert badge.profile_url == "https://site.example/musician/m-lead"
        assert badge.address == GIG_ADDRESS
        assert badge.set_at == T0 + timedelta(minutes=5)
        assert badge.deputies == []

    def test_earliest_lead_is_featured(self):
        badge = project("act-1", GIG_DATE, [
            _yes("+447700900011", "m-late", 9, is_deputy=False, slot_index=1),
            _yes("+447700900010", "m-early", 2, is_deputy=False),
        ])
        assert badge.musician_id == "m-early"
        assert badge.set_at == T0 + timedelta(minutes=9)

    def test_only_deputies_features_newest(self):
        badge = project("act-1", GIG_DATE, [
            _yes("+447700900101", "m-dep-a", 1, name="Alex"),
            _yes("+447700900102", "m-dep-b", 2, name="Bea"),
        ])
        assert not badge.active
        assert badge.is_deputy
        assert badge.vocalist_name == "Bea"
        assert [d.musician_id for d in badge.deputies] == ["m-dep-b", "m-dep-a"]

    def test_deputies_capped_newest_first(self):
        asks = [_yes(f"+4477009002{i:02d}", f"m-{i}", i) for i in range(1, 6)]
        badge = project("act-1", GIG_DATE, asks, max_deputies=3)
        assert [d.musician_id for d in badge.deputies] == ["m-5", "m-4", "m-3"]

    def test_one_entry_per_musician(self):
        badge = project("act-1", GIG_DATE, [
            _yes("+447700900101", "m-dep-a", 1),
            _yes("+447700900102", "m-dep-b", 2),
            _yes("+447700900101", "m-dep-a", 3, slot_index=1),
        ])
        assert [d.musician_id for d in badge.deputies] == ["m-dep-a", "m-dep-b"]
        assert badge.deputies[0].set_at == T0 + timedelta(minutes=3)

    def test_deputy_without_musician_id_keyed_by_phone(self):
        badge = project("act-1", GIG_DATE, [
            _yes("+447700900101", None, 1),
            _yes("+447700900101", None, 2, slot_index=1),
        ])
        assert len(badge.deputies) == 1

    def test_lead_and_deputies_together(self):
        badge = project("act-1", GIG_DATE, [
            _yes("+447700900101", "m-dep-a", 1),
            _yes(LEAD_PHONE, "m-lead", 5, is_deputy=False),
        ])
        assert badge.active
        assert badge.musician_id == "m-lead"
        assert [d.musician_id for d in badge.deputies] == ["m-dep-a"]

    @pytest.mark.parametrize("overrides", [
        {"act_id": "act-2"},
        {"date_iso": "2026-06-07"},
        {"kind": AskKind.BOOKING},
        {"reply": ReplyCode.NO},
        {"reply": ReplyCode.NO_RESPONSE},
        {"reply": None, "replied_at": None},
    ])
    def test_irrelevant_asks_ignored(self, overrides):
        ask = _yes(LEAD_PHONE, "m-lead", 1, is_deputy=False, **overrides)
        assert not project("act-1", GIG_DATE, [ask]).active

    def test_lead_role_filter(self):
        drummer = _yes("+447700900002", "m-drums", 1, is_deputy=False, duty_role="Drums")
        assert not project("act-1", GIG_DATE, [drummer], lead_roles=LEADS).active
        assert project("act-1", GIG_DATE, [drummer]).active

    def test_without_directory_uses_ask_fields(self):
        badge = project("act-1", GIG_DATE, [_yes(LEAD_PHONE, "m-lead", 1, is_deputy=False, name="Sam R")])
        assert badge.vocalist_name == "Sam R"
        assert badge.photo_url == ""
        assert badge.profile_url == "/musician/m-lead"

    def test_projection_is_deterministic(self, act):
        asks = [
            _yes("+447700900101", "m-dep-a", 1),
            _yes("+447700900102", "m-dep-b", 1),
            _yes(LEAD_PHONE, "m-lead", 4, is_deputy=False),
        ]
        first = project("act-1", GIG_DATE, asks, act=act)
        second = project("act-1", GIG_DATE, list(reversed(asks)), act=act)
        assert first == second


# ──────────────────────────────────────────────────────────────
#  Aggregator
# ──────────────────────────────────────────────────────────────

class RacingStore(InMemoryAvailabilityStore):
    """Another writer saves a badge between our read and our write, once."""

    def __init__(self):
        super().__init__()
        self.raced = False

    async def save_badge(self, badge, expected_version):
        if not self.raced:
            self.raced = True
            intruder = Badge(act_id=badge.act_id, date_iso=badge.date_iso, vocalist_name="stale")
            await super().save_badge(intruder, expected_version)
        return await super().save_badge(badge, expected_version)


class TestBadgeAggregator:

    @pytest.mark.asyncio
    async def test_get_missing_badge(self, engine):
        badge = await engine.get_badge("act-1", "2030-01-01")
        assert badge.version == 0
        assert not badge.active

    @pytest.mark.asyncio
    async def test_rebuild_is_idempotent(self, engine, store):
        await engine.request_availability("act-1", "lineup-4", GIG_DATE, GIG_ADDRESS)
        await engine.ingest_inbound_reply(inbound(LEAD_PHONE, body="YES"))
        built = await engine.get_badge("act-1", GIG_DATE)

        rebuilt = await engine.force_rebuild_badge("act-1", GIG_DATE)

        assert built.version == 1
        assert rebuilt == built

    @pytest.mark.asyncio
    async def test_rebuild_follows_new_replies(self, engine, clock):
        await engine.request_availability("act-1", "lineup-4", GIG_DATE, GIG_ADDRESS)
        await engine.ingest_inbound_reply(inbound(LEAD_PHONE, body="NO"))
        clock.advance(minutes=3)
        await engine.ingest_inbound_reply(inbound(DEPUTY_A, body="YES"))

        badge = await engine.get_badge("act-1", GIG_DATE)

        assert badge.is_deputy
        assert badge.set_at == clock()
        assert badge.version == 1

    @pytest.mark.asyncio
    async def test_concurrent_write_retried(self, act):
        store = RacingStore()
        await store.upsert_act(act)
        await store.insert_ask(_yes(LEAD_PHONE, "m-lead", 1, is_deputy=False))
        aggregator = BadgeAggregator(store, public_site_url="https://example.com", lead_roles=LEADS)

        badge = await aggregator.rebuild("act-1", GIG_DATE)

        assert badge.vocalist_name == "Sam Rivers"
        assert badge.version == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_conflicts(self, act):
        class AlwaysConflicting(InMemoryAvailabilityStore):
            async def save_badge(self, badge, expected_version):
                raise ConcurrencyError("busy")

        store = AlwaysConflicting()
        await store.insert_ask(_yes(LEAD_PHONE, "m-lead", 1, is_deputy=False))
        with pytest.raises(ConcurrencyError):
            await BadgeAggregator(store).rebuild("act-1", GIG_DATE)
