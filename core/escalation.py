"""
Escalation Scheduler — periodic sweep over unanswered asks.

Per ask, per sweep, at most one action: the most advanced stage that is due.

    age > escalate_after_hours, not auto-escalated  → courtesy message,
                                                      reply = no_response,
                                                      next deputy
    age > chase_after_hours, no chase yet           → chase message
    age > reminder_after_hours, no reminder/chase   → reminder (not in quiet
                                                      hours), then drain the
                                                      recipient's queue

The marker is claimed with a guarded update before anything is queued, so
overlapping sweeps (or a sweep re-run after a crash) send each message once.
Badges for every (act, date) touched are rebuilt at the end of the sweep.

Runs as a background task inside the FastAPI lifespan, or once via
scripts/run_sweep.py.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from config.settings import EscalationConfig
from core.availability import AvailabilityService
from core.badges import BadgeAggregator
from core.deputies import DeputyResolver
from database.store_base import BaseAvailabilityStore
from job_queue.recipient_queue import RecipientQueue
from models.schemas import AskKind, AvailabilityRequest, MessageKind, QueuePayload, SweepReport, utcnow
from utils import formatting

logger = structlog.get_logger()


class EscalationScheduler:

    def __init__(
        self,
        store: BaseAvailabilityStore,
        availability: AvailabilityService,
        queue: RecipientQueue,
        deputies: DeputyResolver,
        badges: BadgeAggregator,
        config: EscalationConfig = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.availability = availability
        self.queue = queue
        self.deputies = deputies
        self.badges = badges
        self.config = config or EscalationConfig()
        self.clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    # ── Background loop ───────────────────────────────────────

    async def start(self) -> None:
        """Start the sweep loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="escalation_sweep")
        logger.info("escalation_scheduler_started", interval_s=self.config.sweep_interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("escalation_scheduler_stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.run_sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("sweep_error", error=str(e))

            await asyncio.sleep(self.config.sweep_interval_seconds)

    # ── Sweep ─────────────────────────────────────────────────

    def in_quiet_hours(self, now: datetime) -> bool:
        hour = now.astimezone(ZoneInfo(self.config.timezone)).hour
        start, end = self.config.quiet_hours_start, self.config.quiet_hours_end
        if start > end:
            return hour >= start or hour < end
        return start <= hour < end

    async def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self.clock()
        report = SweepReport()
        touched: set[tuple[str, str]] = set()

        # Whole backlog, one page at a time.
        page_size = max(1, self.config.batch_size)
        cursor = None
        while True:
            asks = await self.store.list_pending_asks(limit=page_size, after=cursor)
            report.scanned += len(asks)
            for ask in asks:
                try:
                    if await self._process(ask, now, report):
                        touched.add((ask.act_id, ask.date_iso))
                except Exception as e:
                    logger.error("sweep_ask_failed", ask_id=ask.id, error=str(e))
            if len(asks) < page_size:
                break
            cursor = (asks[-1].asked_at, asks[-1].id)

        for act_id, date_iso in sorted(touched):
            try:
                await self.badges.rebuild(act_id, date_iso)
                report.badges_rebuilt += 1
            except Exception as e:
                logger.error("sweep_badge_rebuild_failed", act_id=act_id, date_iso=date_iso, error=str(e))

        if report.reminders or report.chases or report.escalations:
            logger.info("sweep_complete", **report.model_dump())
        return report

    async def _process(self, ask: AvailabilityRequest, now: datetime, report: SweepReport) -> bool:
        age = now - ask.asked_at
        cfg = self.config

        if age > timedelta(hours=cfg.escalate_after_hours) and ask.auto_escalated_at is None:
            claimed = await self.availability.claim_no_response(ask)
            if claimed is None:
                return False
            report.escalations += 1
            try:
                await self._send_followup(claimed, MessageKind.COURTESY)
            except Exception as e:
                logger.warning("courtesy_message_failed", ask_id=ask.id, error=str(e))
            try:
                outcome = await self.deputies.escalate(claimed)
                logger.info("ask_timed_out", ask_id=ask.id, escalation=outcome.status,
                            next_ask_id=outcome.ask_id)
            except Exception as e:
                logger.error("timeout_escalation_failed", ask_id=ask.id, error=str(e))
            return True

        if age > timedelta(hours=cfg.chase_after_hours) and ask.chase_sent_at is None:
            claimed = await self.availability.claim_chase(ask)
            if claimed is None:
                return False
            report.chases += 1
            await self._send_followup(claimed, MessageKind.CHASE)
            logger.info("ask_chased", ask_id=ask.id, recipient=ask.recipient)
            return True

        if (age > timedelta(hours=cfg.reminder_after_hours)
                and ask.reminder_sent_at is None and ask.chase_sent_at is None):
            if self.in_quiet_hours(now):
                report.skipped_quiet_hours += 1
                return False
            claimed = await self.availability.claim_reminder(ask)
            if claimed is None:
                return False
            report.reminders += 1
            await self._send_followup(claimed, MessageKind.REMINDER)
            logger.info("ask_reminded", ask_id=ask.id, recipient=ask.recipient)
            return True

        return False

    # ── Messages ──────────────────────────────────────────────

    def followup_payload(self, ask: AvailabilityRequest, kind: MessageKind) -> QueuePayload:
        sids = self.availability.content_sids
        area = ask.address_short or ask.venue_address
        payload = QueuePayload(ask_id=ask.id, act_id=ask.act_id, date_iso=ask.date_iso,
                               address_short=ask.address_short)

        if kind == MessageKind.REMINDER:
            payload.template_id = sids.get("reminder") or sids.get(ask.kind.value, "")
            payload.variables = self.availability.payload_for(ask).variables
            if ask.kind == AskKind.BOOKING:
                payload.fallback_text = ask.fallback_text or self.availability.render_text(ask)
            else:
                payload.fallback_text = formatting.reminder_text(
                    ask.musician_name, ask.formatted_date, area, ask.act_name)
        elif kind == MessageKind.CHASE:
            payload.template_id = sids.get("chase", "")
            payload.variables = {
                "1": formatting.first_name(ask.musician_name),
                "2": ask.formatted_date,
                "3": ask.venue_address or area,
                "4": ask.act_name,
            }
            payload.fallback_text = formatting.chase_text(
                ask.musician_name, ask.formatted_date, ask.venue_address or area, ask.act_name)
        else:
            payload.body = formatting.courtesy_text(ask.formatted_date)
            payload.fallback_text = payload.body
        return payload

    async def _send_followup(self, ask: AvailabilityRequest, kind: MessageKind) -> None:
        result = await self.queue.enqueue(ask.recipient, kind, self.followup_payload(ask, kind))
        if not result.enqueued:
            logger.info("followup_not_enqueued", ask_id=ask.id, kind=kind.value,
                        reason=result.skipped_reason)
        if kind == MessageKind.REMINDER:
            await self.queue.release_and_drain_next(ask.recipient)
        else:
            await self.queue.drain(ask.recipient)
