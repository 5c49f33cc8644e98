"""
API endpoint tests.
Starlette is an ASGI app → must use ASGITransport with AsyncClient.
"""
from datetime import timedelta

import pytest
from httpx import AsyncClient, ASGITransport

from conftest import make_user
from db import utc_now

TOMORROW = (utc_now().date() + timedelta(days=1)).isoformat()


def _async_client(matcher):
    from main import create_app
    return AsyncClient(transport=ASGITransport(app=create_app(matcher)), base_url="http://testserver")


async def _formed_ride(client):
    resp = await client.post("/match/trigger", json={"date": "2025-06-18"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["created"] == 1
    return body["rides"][0]


# ────────────────────────── opt-ins ─────────────────────────────────────────

@pytest.mark.asyncio
async def test_api_create_opt_in_unknown_user(matcher):
    async with _async_client(matcher) as client:
        resp = await client.post("/opt-ins", json={
            "user_id": 9999, "commute_date": TOMORROW, "window_start": "08:00", "window_end": "09:00",
        })
    assert resp.status_code == 404
    assert resp.json()["error"] == "NotFoundError"


@pytest.mark.asyncio
async def test_api_create_opt_in_missing_field(matcher):
    async with _async_client(matcher) as client:
        resp = await client.post("/opt-ins", json={"user_id": 1})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_api_create_opt_in_bad_window(matcher):
    u = make_user("A")
    async with _async_client(matcher) as client:
        resp = await client.post("/opt-ins", json={
            "user_id": u.id, "commute_date": TOMORROW, "window_start": "09:00", "window_end": "08:00",
        })
    assert resp.status_code == 400
    assert resp.json()["error"] == "InvalidOptInError"


@pytest.mark.asyncio
async def test_api_opt_in_lifecycle(matcher):
    u = make_user("B")
    async with _async_client(matcher) as client:
        resp = await client.post("/opt-ins", json={
            "user_id": u.id, "commute_date": TOMORROW, "window_start": "08:00", "window_end": "09:00",
        })
        assert resp.status_code == 200
        opt_in_id = resp.json()["opt_in_id"]

        status = (await client.get(f"/opt-ins/{opt_in_id}")).json()
        assert status["status"] == "PENDING_MATCH"
        assert status["retries_exhausted"] is False

        pending = (await client.get("/opt-ins/pending", params={"date": TOMORROW})).json()
        assert [p["id"] for p in pending] == [opt_in_id]

        resp = await client.post(f"/opt-ins/{opt_in_id}/cancel")
        assert resp.status_code == 200
        assert resp.json()["status"] == "CANCELLED"
        pending = (await client.get("/opt-ins/pending", params={"date": TOMORROW})).json()
    assert pending == []


@pytest.mark.asyncio
async def test_api_cancel_unknown(matcher):
    async with _async_client(matcher) as client:
        resp = await client.post("/opt-ins/99999/cancel")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_api_add_location(matcher):
    u = make_user("C")
    async with _async_client(matcher) as client:
        resp = await client.post(f"/users/{u.id}/locations",
                                 json={"name": "Office", "lat": 12.93, "lng": 77.62, "is_default": True})
    assert resp.status_code == 200
    assert resp.json()["is_default"] is True


# ────────────────────────── triggers ────────────────────────────────────────

@pytest.mark.asyncio
async def test_api_match_trigger_requires_date(matcher):
    async with _async_client(matcher) as client:
        missing = await client.post("/match/trigger", json={})
        garbled = await client.post("/match/trigger", json={"date": "18/06/2025"})
    assert missing.status_code == 400
    assert garbled.status_code == 400


@pytest.mark.asyncio
async def test_api_dry_run_must_be_a_boolean(scenario, matcher):
    async with _async_client(matcher) as client:
        as_string = await client.post("/match/trigger", json={"date": "2025-06-18", "dry_run": "false"})
        cleanup = await client.post("/cleanup", json={"retention_days": 30, "dry_run": 1})
        pending = await client.get("/opt-ins/pending", params={"date": "2025-06-18"})
    assert as_string.status_code == 400
    assert as_string.json()["error"] == "BadRequestError"
    assert cleanup.status_code == 400
    assert len(pending.json()) == 3


@pytest.mark.asyncio
async def test_api_match_trigger_dry_run(scenario, matcher):
    async with _async_client(matcher) as client:
        resp = await client.post("/match/trigger", json={"date": "2025-06-18", "dry_run": True})
    body = resp.json()
    assert resp.status_code == 200
    assert body["dry_run"] is True
    assert body["created"] == 0
    assert len(body["proposals"]) == 1


@pytest.mark.asyncio
async def test_api_sweep_cleanup_and_reminders(matcher):
    async with _async_client(matcher) as client:
        sweep = await client.post("/sweep/deadlines")
        cleanup = await client.post("/cleanup", json={"retention_days": 30, "dry_run": True})
        negative = await client.post("/cleanup", json={"retention_days": -1})
        remind = await client.post("/reminders", json={})
        retry = await client.post("/match/retry", json={"date": "2025-06-18"})
    assert sweep.status_code == 200 and sweep.json()["processed"] == 0
    assert cleanup.status_code == 200 and cleanup.json()["dry_run"] is True
    assert negative.status_code == 400
    assert remind.status_code == 200
    assert retry.status_code == 200 and retry.json()["job"] == "retry"


# ────────────────────────── rides ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_api_get_ride_not_found(matcher):
    async with _async_client(matcher) as client:
        resp = await client.get("/rides/99999")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_api_accept_and_confirm(scenario, matcher):
    async with _async_client(matcher) as client:
        ride_id = await _formed_ride(client)
        ride = (await client.get(f"/rides/{ride_id}")).json()
        assert ride["status"] == "PENDING_CONFIRMATION"
        assert [p["is_driver"] for p in ride["participants"]] == [True, False, False]

        r1 = await client.post(f"/rides/{ride_id}/accept", json={"user_id": scenario["R1"].id})
        r2 = await client.post(f"/rides/{ride_id}/accept", json={"user_id": scenario["R2"].id})
        ride = (await client.get(f"/rides/{ride_id}")).json()
    assert r1.status_code == 200 and r1.json()["changed"] is True
    assert r2.json()["ride_status"] == "CONFIRMED"
    assert ride["status"] == "CONFIRMED"


@pytest.mark.asyncio
async def test_api_decline_after_accept_conflicts(scenario, matcher):
    async with _async_client(matcher) as client:
        ride_id = await _formed_ride(client)
        await client.post(f"/rides/{ride_id}/accept", json={"user_id": scenario["R1"].id})
        twice = await client.post(f"/rides/{ride_id}/accept", json={"user_id": scenario["R1"].id})
        flip = await client.post(f"/rides/{ride_id}/decline", json={"user_id": scenario["R1"].id})
    assert twice.status_code == 200 and twice.json()["changed"] is False
    assert flip.status_code == 409


@pytest.mark.asyncio
async def test_api_ride_status_transitions(scenario, matcher):
    async with _async_client(matcher) as client:
        ride_id = await _formed_ride(client)
        unknown = await client.post(f"/rides/{ride_id}/status", json={"status": "FLYING"})
        early = await client.post(f"/rides/{ride_id}/status", json={"status": "COMPLETED"})
    assert unknown.status_code == 400
    assert early.status_code == 409


# ────────────────────────── telegram webhook ────────────────────────────────

def _callback(chat_id, data):
    return {"update_id": 1, "callback_query": {
        "id": "cb1", "from": {"id": chat_id}, "message": {"chat": {"id": chat_id}}, "data": data,
    }}


@pytest.mark.asyncio
async def test_api_telegram_callback_accepts_ride(scenario, matcher):
    async with _async_client(matcher) as client:
        ride_id = await _formed_ride(client)
        resp = await client.post("/telegram/webhook",
                                 json=_callback(scenario["R1"].telegram_chat_id, f"accept_ride_{ride_id}"))
        ride = (await client.get(f"/rides/{ride_id}")).json()
    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    r1 = next(p for p in ride["participants"] if p["user_id"] == scenario["R1"].id)
    assert r1["status"] == "ACCEPTED"


@pytest.mark.asyncio
async def test_api_telegram_unknown_chat_and_other_updates(scenario, matcher):
    async with _async_client(matcher) as client:
        ride_id = await _formed_ride(client)
        stranger = await client.post("/telegram/webhook", json=_callback(424242, f"decline_ride_{ride_id}"))
        chatter = await client.post("/telegram/webhook", json={"update_id": 2, "message": {"text": "hi"}})
    assert stranger.status_code == 200 and stranger.json()["ok"] is False
    assert chatter.json() == {"ok": True, "ignored": True}
