"""
FastAPI Application — REST API + Twilio webhooks.

Provides:
- Availability and booking requests for an act's lineup
- Badge read and forced rebuild per (act, date)
- Act directory upsert and ask cancellation
- On-demand escalation sweep (the periodic one runs in the lifespan)
- Twilio inbound-message and delivery-status webhooks
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, Optional, Union

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel

from config.settings import get_settings
from core.orchestrator import ALL_ROLES, AllocationEngine, build_engine
from models.schemas import Act, Lineup, utcnow

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

engine: AllocationEngine = build_engine(get_settings())

TWIML_EMPTY = '<?xml version="1.0" encoding="UTF-8"?><Response/>'


@asynccontextmanager
async def lifespan(app: FastAPI):
    await engine.start(run_scheduler=True)
    logger.info("allocation_api_started", app_name=engine.settings.app_name)
    yield
    await engine.shutdown()
    logger.info("allocation_api_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Allocation Engine API",
    description="Performer availability, escalation and badge service",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class AvailabilityRequestBody(BaseModel):
    act_id: str
    lineup_id: str
    date_iso: str
    address: str
    role_filter: Union[str, list[str], None] = None
    fee: Optional[str] = None


class BookingRequestBody(BaseModel):
    act_id: str
    lineup_id: str
    date_iso: str
    address: str
    fee: Optional[str] = None
    role_filter: Union[str, list[str], None] = ALL_ROLES


class ActUpsertBody(BaseModel):
    name: str
    lineups: list[Lineup] = []


def _status_for(reason: str) -> int:
    return {"invalid": 422, "not_found": 404}.get(reason, 409)


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "store": type(engine.store).__name__,
        "channels": [c.value for c in engine.registry.get_available()],
        "pending_queue_items": await engine.queue.pending(),
    }


# ══════════════════════════════════════════════════════════════
#  REQUESTS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/availability/request")
async def request_availability(req: AvailabilityRequestBody):
    result = await engine.request_availability(
        act_id=req.act_id,
        lineup_id=req.lineup_id,
        date_iso=req.date_iso,
        address=req.address,
        role_filter=req.role_filter,
        fee=req.fee,
    )
    if not result.success:
        raise HTTPException(_status_for(result.reason), detail=result.model_dump())
    return result.model_dump()


@app.post("/api/v1/bookings/request")
async def request_booking(req: BookingRequestBody):
    result = await engine.request_booking(
        act_id=req.act_id,
        lineup_id=req.lineup_id,
        date_iso=req.date_iso,
        address=req.address,
        fee=req.fee,
        role_filter=req.role_filter,
    )
    if not result.success:
        raise HTTPException(_status_for(result.reason), detail=result.model_dump())
    return result.model_dump()


@app.post("/api/v1/asks/{ask_id}/cancel")
async def cancel_ask(ask_id: str):
    result = await engine.cancel_ask(ask_id)
    if not result.success:
        raise HTTPException(_status_for(result.reason), detail=result.model_dump())
    return result.model_dump()


# ══════════════════════════════════════════════════════════════
#  ACTS & BADGES
# ══════════════════════════════════════════════════════════════

@app.put("/api/v1/acts/{act_id}")
async def upsert_act(act_id: str, req: ActUpsertBody):
    act = await engine.upsert_act(Act(id=act_id, name=req.name, lineups=req.lineups))
    return act.model_dump(mode="json")


@app.get("/api/v1/acts/{act_id}/badge/{date_iso}")
async def get_badge(act_id: str, date_iso: str):
    badge = await engine.get_badge(act_id, date_iso)
    return badge.model_dump(mode="json")


@app.post("/api/v1/acts/{act_id}/badge/{date_iso}/rebuild")
async def rebuild_badge(act_id: str, date_iso: str):
    badge = await engine.force_rebuild_badge(act_id, date_iso)
    return badge.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  ESCALATION
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/escalation/sweep")
async def run_sweep():
    report = await engine.run_escalation_sweep()
    return report.model_dump()


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS — Twilio (form-encoded, answered with empty TwiML)
# ══════════════════════════════════════════════════════════════

@app.post("/webhooks/twilio/inbound")
async def twilio_inbound_webhook(request: Request):
    """Inbound WhatsApp/SMS reply. Always acknowledged, whatever happened."""
    body: dict[str, Any] = dict(await request.form())
    try:
        result = await engine.ingest_inbound_reply(body)
        logger.info("twilio_inbound_handled", reason=result.reason,
                    ask_id=result.details.get("ask_id"))
    except Exception as e:
        logger.error("twilio_inbound_failed", error=str(e), sid=body.get("MessageSid"))
    return Response(content=TWIML_EMPTY, media_type="application/xml")


@app.post("/webhooks/twilio/status")
async def twilio_status_webhook(request: Request):
    """Twilio message status callback."""
    body: dict[str, Any] = dict(await request.form())
    try:
        result = await engine.apply_delivery_status(body)
        logger.debug("twilio_status_handled", reason=result.reason,
                     sid=body.get("MessageSid"), status=body.get("MessageStatus"))
    except Exception as e:
        logger.error("twilio_status_failed", error=str(e), sid=body.get("MessageSid"))
    return Response(content=TWIML_EMPTY, media_type="application/xml")
