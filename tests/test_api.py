"""
Tests for the FastAPI surface.

Covers:
  - Availability/booking requests and their HTTP status mapping
  - Act upsert, badge read and rebuild, ask cancellation, sweep trigger
  - Twilio inbound and status webhooks (always answered with empty TwiML)
"""
import httpx
import pytest
import pytest_asyncio

from conftest import DRUMS_PHONE, GIG_ADDRESS, GIG_DATE, LEAD_PHONE, inbound


@pytest_asyncio.fixture
async def client(engine, monkeypatch):
    import api.main
    monkeypatch.setattr(api.main, "engine", engine)
    transport = httpx.ASGITransport(app=api.main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _availability(**overrides) -> dict:
    body = {"act_id": "act-1", "lineup_id": "lineup-4", "date_iso": GIG_DATE, "address": GIG_ADDRESS}
    body.update(overrides)
    return body


# ── Health ────────────────────────────────────────────

class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        data = resp.json()
        assert resp.status_code == 200
        assert data["status"] == "healthy"
        assert data["store"] == "InMemoryAvailabilityStore"
        assert set(data["channels"]) == {"whatsapp", "sms"}
        assert data["pending_queue_items"] == 0


# ── Requests ──────────────────────────────────────────

class TestRequests:

    @pytest.mark.asyncio
    async def test_availability_request(self, client, whatsapp):
        resp = await client.post("/api/v1/availability/request", json=_availability())
        data = resp.json()
        assert resp.status_code == 200
        assert data["reason"] == "requested"
        assert data["details"]["created"] == 1
        assert whatsapp.recipients == [LEAD_PHONE]

    @pytest.mark.asyncio
    async def test_repeat_request_is_duplicate(self, client, whatsapp):
        await client.post("/api/v1/availability/request", json=_availability())
        resp = await client.post("/api/v1/availability/request", json=_availability())
        assert resp.status_code == 200
        assert resp.json()["reason"] == "duplicate"
        assert len(whatsapp.sent) == 1

    @pytest.mark.asyncio
    async def test_bad_date_is_422(self, client):
        resp = await client.post("/api/v1/availability/request", json=_availability(date_iso="06/06/2026"))
        assert resp.status_code == 422
        assert resp.json()["detail"]["reason"] == "invalid"

    @pytest.mark.asyncio
    async def test_unknown_act_is_404(self, client):
        resp = await client.post("/api/v1/availability/request", json=_availability(act_id="nope"))
        assert resp.status_code == 404
        assert resp.json()["detail"]["reason"] == "not_found"

    @pytest.mark.asyncio
    async def test_missing_field_rejected_by_schema(self, client):
        resp = await client.post("/api/v1/availability/request", json={"act_id": "act-1"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_booking_asks_every_member(self, client, whatsapp):
        resp = await client.post("/api/v1/bookings/request", json=_availability(fee="400"))
        assert resp.status_code == 200
        assert sorted(whatsapp.recipients) == [LEAD_PHONE, DRUMS_PHONE]


# ── Acts, badges, cancellation ────────────────────────

class TestActsAndBadges:

    @pytest.mark.asyncio
    async def test_upsert_act(self, client, engine):
        resp = await client.put("/api/v1/acts/act-2", json={
            "name": "Brass Attack",
            "lineups": [{"id": "l1", "members": [{"first_name": "Jo", "duty_role": "Lead Vocal",
                                                   "phone": "07700900201"}]}],
        })
        assert resp.status_code == 200
        assert resp.json()["id"] == "act-2"
        stored = await engine.store.get_act("act-2")
        assert stored.get_lineup("l1").members[0].first_name == "Jo"

    @pytest.mark.asyncio
    async def test_badge_empty_before_replies(self, client):
        resp = await client.get(f"/api/v1/acts/act-1/badge/{GIG_DATE}")
        assert resp.status_code == 200
        assert resp.json()["active"] is False
        assert resp.json()["version"] == 0

    @pytest.mark.asyncio
    async def test_yes_over_webhook_activates_badge(self, client):
        await client.post("/api/v1/availability/request", json=_availability())

        hook = await client.post("/webhooks/twilio/inbound",
                                 data=inbound(LEAD_PHONE, body="Yes", sid="SMin1"))
        badge = (await client.get(f"/api/v1/acts/act-1/badge/{GIG_DATE}")).json()

        assert hook.status_code == 200
        assert hook.headers["content-type"].startswith("application/xml")
        assert "<Response/>" in hook.text
        assert badge["active"] is True
        assert badge["vocalist_name"] == "Sam Rivers"
        assert badge["profile_url"] == "https://example.com/musician/m-lead"

    @pytest.mark.asyncio
    async def test_rebuild_endpoint(self, client):
        resp = await client.post(f"/api/v1/acts/act-1/badge/{GIG_DATE}/rebuild")
        assert resp.status_code == 200
        assert resp.json()["act_id"] == "act-1"

    @pytest.mark.asyncio
    async def test_cancel(self, client):
        created = (await client.post("/api/v1/availability/request", json=_availability())).json()
        ask_id = created["details"]["asks"][0]["ask_id"]

        first = await client.post(f"/api/v1/asks/{ask_id}/cancel")
        again = await client.post(f"/api/v1/asks/{ask_id}/cancel")
        missing = await client.post("/api/v1/asks/nope/cancel")

        assert first.status_code == 200
        assert first.json()["reason"] == "cancelled"
        assert again.status_code == 409
        assert again.json()["detail"]["reason"] == "already_settled"
        assert missing.status_code == 404


# ── Escalation ────────────────────────────────────────

class TestSweep:

    @pytest.mark.asyncio
    async def test_sweep_report(self, client, clock, whatsapp):
        await client.post("/api/v1/availability/request", json=_availability())
        clock.advance(hours=4)

        report = (await client.post("/api/v1/escalation/sweep")).json()

        assert report["scanned"] == 1
        assert report["reminders"] == 1
        assert len(whatsapp.sent) == 2


# ── Webhooks ──────────────────────────────────────────

class TestWebhooks:

    @pytest.mark.asyncio
    async def test_status_callback(self, client, engine):
        created = (await client.post("/api/v1/availability/request", json=_availability())).json()
        ask_id = created["details"]["asks"][0]["ask_id"]

        resp = await client.post("/webhooks/twilio/status", data={
            "MessageSid": "WA1", "MessageStatus": "delivered", "To": f"whatsapp:{LEAD_PHONE}",
        })

        assert resp.status_code == 200
        assert (await engine.store.get_ask(ask_id)).channel_state.value == "delivered"

    @pytest.mark.asyncio
    async def test_inbound_failure_still_acknowledged(self, client, engine, monkeypatch):
        async def boom(payload):
            raise RuntimeError("store down")

        monkeypatch.setattr(engine, "ingest_inbound_reply", boom)
        resp = await client.post("/webhooks/twilio/inbound", data=inbound(LEAD_PHONE, body="yes"))
        assert resp.status_code == 200
        assert "<Response/>" in resp.text

    @pytest.mark.asyncio
    async def test_unmatched_reply_acknowledged(self, client):
        resp = await client.post("/webhooks/twilio/inbound",
                                 data=inbound("+447700900999", body="yes", sid="SMx"))
        assert resp.status_code == 200
