"""
Tests for the escalation sweep.

Covers: reminder / chase / timeout stages, one action per ask per sweep,
quiet hours in Europe/London, overlapping sweeps, failed deliveries staying
eligible, follow-up payloads, the background loop lifecycle.
"""
import asyncio
from datetime import datetime, timezone

import pytest

from config.settings import EscalationConfig
from core.escalation import EscalationScheduler
from models.schemas import ChannelState, MessageKind, ReplyCode

from conftest import DEPUTY_A, GIG_ADDRESS, GIG_DATE, LEAD_PHONE, inbound


async def _ask_lead(engine, store):
    result = await engine.request_availability("act-1", "lineup-4", GIG_DATE, GIG_ADDRESS)
    return await store.get_ask(result.details["asks"][0]["ask_id"])


# ──────────────────────────────────────────────────────────────
#  Stages
# ──────────────────────────────────────────────────────────────

class TestStages:

    @pytest.mark.asyncio
    async def test_nothing_due_yet(self, engine, store, clock):
        await _ask_lead(engine, store)
        clock.advance(hours=2)
        report = await engine.run_escalation_sweep()
        assert report.scanned == 1
        assert (report.reminders, report.chases, report.escalations) == (0, 0, 0)
        assert report.badges_rebuilt == 0

    @pytest.mark.asyncio
    async def test_reminder_after_three_hours(self, engine, store, clock, whatsapp):
        ask = await _ask_lead(engine, store)
        clock.advance(hours=4)

        report = await engine.run_escalation_sweep()

        assert report.reminders == 1
        assert report.badges_rebuilt == 1
        assert whatsapp.recipients == [LEAD_PHONE, LEAD_PHONE]
        assert "quick reminder" in whatsapp.sent[-1]["content"]
        assert (await store.get_ask(ask.id)).reminder_sent_at == clock()

        again = await engine.run_escalation_sweep()
        assert again.reminders == 0
        assert len(whatsapp.sent) == 2

    @pytest.mark.asyncio
    async def test_unanswered_ask_chased_then_escalated(self, engine, store, clock, whatsapp):
        ask = await _ask_lead(engine, store)

        clock.advance(hours=25)
        report = await engine.run_escalation_sweep()
        assert (report.reminders, report.chases, report.escalations) == (0, 1, 0)
        assert "reply NOLOC" in whatsapp.sent[-1]["content"]

        clock.advance(hours=1)
        assert (await engine.run_escalation_sweep()).chases == 0

        clock.advance(hours=47)
        report = await engine.run_escalation_sweep()

        assert report.escalations == 1
        timed_out = await store.get_ask(ask.id)
        assert timed_out.reply == ReplyCode.NO_RESPONSE
        assert timed_out.auto_escalated_at is not None
        courtesy = [s for s in whatsapp.sent if s["recipient"] == LEAD_PHONE][-1]
        assert "passed the request" in courtesy["content"]
        assert whatsapp.recipients[-1] == DEPUTY_A
        deputy_ask = (await store.find_open_asks([DEPUTY_A]))[0]
        assert deputy_ask.asked_at == clock()

    @pytest.mark.asyncio
    async def test_only_most_advanced_stage_runs(self, engine, store, clock, whatsapp):
        await _ask_lead(engine, store)
        clock.advance(hours=73)

        report = await engine.run_escalation_sweep()

        assert (report.reminders, report.chases, report.escalations) == (0, 0, 1)
        lead_messages = [s for s in whatsapp.sent if s["recipient"] == LEAD_PHONE]
        assert len(lead_messages) == 2

    @pytest.mark.asyncio
    async def test_deputy_ask_gets_its_own_schedule(self, engine, store, clock, whatsapp):
        await _ask_lead(engine, store)
        clock.advance(hours=73)
        await engine.run_escalation_sweep()

        clock.advance(hours=4)
        report = await engine.run_escalation_sweep()

        assert report.scanned == 1
        assert report.reminders == 1
        assert whatsapp.recipients[-1] == DEPUTY_A

    @pytest.mark.asyncio
    async def test_replied_and_cancelled_asks_ignored(self, engine, store, clock):
        ask = await _ask_lead(engine, store)
        drums = await engine.request_availability("act-1", "lineup-4", GIG_DATE, GIG_ADDRESS,
                                                  role_filter="Drums")
        await engine.ingest_inbound_reply(inbound(LEAD_PHONE, body="YES"))
        await engine.cancel_ask(drums.details["asks"][0]["ask_id"])

        clock.advance(hours=100)
        report = await engine.run_escalation_sweep()

        assert report.scanned == 0
        assert (await store.get_ask(ask.id)).reply == ReplyCode.YES

    @pytest.mark.asyncio
    async def test_failed_delivery_stays_eligible(self, engine, store, clock, whatsapp, sms):
        whatsapp.fail = True
        sms.fail = True
        ask = await _ask_lead(engine, store)
        assert ask.channel_state == ChannelState.FAILED

        clock.advance(hours=4)
        report = await engine.run_escalation_sweep()

        assert report.scanned == 1
        assert report.reminders == 1

    @pytest.mark.asyncio
    async def test_backlog_beyond_one_page_still_reminded(self, engine, store, clock):
        engine.scheduler.config.batch_size = 1
        lead = await _ask_lead(engine, store)
        clock.advance(hours=20)
        drums = await engine.request_availability("act-1", "lineup-4", GIG_DATE, GIG_ADDRESS,
                                                  role_filter="Drums")
        drums_ask = await store.get_ask(drums.details["asks"][0]["ask_id"])
        clock.advance(hours=5)

        report = await engine.run_escalation_sweep()

        assert report.scanned == 2
        assert (report.reminders, report.chases) == (1, 1)
        assert (await store.get_ask(lead.id)).chase_sent_at == clock()
        assert (await store.get_ask(drums_ask.id)).reminder_sent_at == clock()

    @pytest.mark.asyncio
    async def test_overlapping_sweeps_send_once(self, engine, store, clock, whatsapp):
        await _ask_lead(engine, store)
        clock.advance(hours=4)

        reports = await asyncio.gather(*(engine.run_escalation_sweep() for _ in range(3)))

        assert sum(r.reminders for r in reports) == 1
        assert len(whatsapp.sent) == 2


# ──────────────────────────────────────────────────────────────
#  Quiet hours
# ──────────────────────────────────────────────────────────────

class TestQuietHours:

    @pytest.fixture
    def scheduler(self):
        return EscalationScheduler(None, None, None, None, None, config=EscalationConfig())

    @pytest.mark.parametrize("moment,quiet", [
        (datetime(2026, 6, 1, 19, 59, tzinfo=timezone.utc), False),   # 20:59 BST
        (datetime(2026, 6, 1, 20, 0, tzinfo=timezone.utc), True),     # 21:00 BST
        (datetime(2026, 6, 2, 7, 59, tzinfo=timezone.utc), True),     # 08:59 BST
        (datetime(2026, 6, 2, 8, 0, tzinfo=timezone.utc), False),     # 09:00 BST
        (datetime(2026, 1, 15, 20, 30, tzinfo=timezone.utc), False),  # 20:30 GMT
        (datetime(2026, 1, 15, 21, 0, tzinfo=timezone.utc), True),    # 21:00 GMT
    ])
    def test_window_wraps_midnight_in_london(self, scheduler, moment, quiet):
        assert scheduler.in_quiet_hours(moment) is quiet

    def test_daytime_window(self):
        config = EscalationConfig(quiet_hours_start=12, quiet_hours_end=14, timezone="UTC")
        scheduler = EscalationScheduler(None, None, None, None, None, config=config)
        assert scheduler.in_quiet_hours(datetime(2026, 6, 1, 13, 0, tzinfo=timezone.utc))
        assert not scheduler.in_quiet_hours(datetime(2026, 6, 1, 14, 0, tzinfo=timezone.utc))

    @pytest.mark.asyncio
    async def test_reminder_waits_for_morning(self, engine, store, clock, whatsapp):
        await _ask_lead(engine, store)

        clock.advance(hours=10)                     # 22:00 UTC, 23:00 London
        report = await engine.run_escalation_sweep()
        assert report.reminders == 0
        assert report.skipped_quiet_hours == 1

        clock.advance(hours=10, minutes=30)         # 08:30 UTC, 09:30 London
        report = await engine.run_escalation_sweep()
        assert report.reminders == 1
        assert len(whatsapp.sent) == 2


# ──────────────────────────────────────────────────────────────
#  Payloads and lifecycle
# ──────────────────────────────────────────────────────────────

class TestFollowups:

    @pytest.mark.asyncio
    async def test_chase_template(self, engine, store):
        ask = await _ask_lead(engine, store)
        engine.availability.content_sids = {"availability": "HXenquiry", "chase": "HXchase"}

        payload = engine.scheduler.followup_payload(ask, MessageKind.CHASE)

        assert payload.template_id == "HXchase"
        assert payload.variables == {
            "1": "Sam", "2": "Saturday, 6th Jun 2026", "3": GIG_ADDRESS, "4": "The Velvet Tones",
        }
        assert payload.ask_id == ask.id
        assert "reply YES" in payload.fallback_text

    @pytest.mark.asyncio
    async def test_reminder_reuses_ask_template_without_its_own(self, engine, store):
        ask = await _ask_lead(engine, store)
        engine.availability.content_sids = {"availability": "HXenquiry"}

        payload = engine.scheduler.followup_payload(ask, MessageKind.REMINDER)

        assert payload.template_id == "HXenquiry"
        assert payload.variables["1"] == "Sam"
        assert payload.fallback_text.startswith("Hi Sam, a quick reminder")

    @pytest.mark.asyncio
    async def test_courtesy_is_free_text(self, engine, store):
        ask = await _ask_lead(engine, store)
        payload = engine.scheduler.followup_payload(ask, MessageKind.COURTESY)
        assert payload.template_id == ""
        assert payload.body == payload.fallback_text
        assert "Saturday, 6th Jun 2026" in payload.body


class TestSchedulerLoop:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine, store, clock):
        await _ask_lead(engine, store)
        clock.advance(hours=4)

        await engine.scheduler.start()
        await asyncio.sleep(0.01)
        await engine.scheduler.stop()

        assert engine.scheduler._task.done()
        assert (await store.list_pending_asks())[0].reminder_sent_at is not None

    @pytest.mark.asyncio
    async def test_stop_without_start(self, engine):
        await engine.scheduler.stop()
