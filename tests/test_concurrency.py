import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import httpx
import pytest

from conftest import COMMUTE_DATE, RUN_AT
from db import get_session
from exceptions import OptInConflictError
from formation import form_ride
from matching import build_candidate_groups, load_pool
from models import Participant, ParticipantStatus, Ride
from notifications import NotificationEvent
from scoring import ScoreResult


def active_holders():
    """opt_in_id -> number of live participant rows holding it."""
    with get_session() as session:
        rows = session.query(Participant).filter(
            Participant.status.in_([ParticipantStatus.PENDING, ParticipantStatus.ACCEPTED])
        ).all()
    held = {}
    for p in rows:
        held[p.opt_in_id] = held.get(p.opt_in_id, 0) + 1
    return held


def test_overlapping_runs_form_one_ride(scenario, matcher):
    with ThreadPoolExecutor(max_workers=5) as pool:
        results = list(pool.map(lambda _: matcher.run_matching(COMMUTE_DATE, now=RUN_AT), range(5)))

    assert sum(r.created for r in results) == 1
    with get_session() as session:
        assert session.query(Ride).count() == 1
    assert set(active_holders().values()) == {1}


def test_racing_formations_of_one_group(scenario, config):
    with get_session() as session:
        pool, _ = load_pool(session, COMMUTE_DATE)
    group = build_candidate_groups(pool)[0]
    score = ScoreResult(0.9, "ok", 10.0, 20, [r.user_id for r in group.riders])

    def attempt(_):
        try:
            return form_ride(group, score, config, now=RUN_AT)
        except OptInConflictError:
            return None

    with ThreadPoolExecutor(max_workers=4) as ex:
        outcomes = list(ex.map(attempt, range(4)))

    assert len([o for o in outcomes if o is not None]) == 1
    with get_session() as session:
        assert session.query(Ride).count() == 1
    assert set(active_holders().values()) == {1}


def test_concurrent_identical_responses_apply_once(scenario, matcher, sink):
    ride_id = matcher.run_matching(COMMUTE_DATE, now=RUN_AT).rides[0]
    at = RUN_AT + timedelta(minutes=5)
    matcher.respond(ride_id, scenario["R2"].id, True, now=at)

    with ThreadPoolExecutor(max_workers=5) as pool:
        results = list(pool.map(lambda _: matcher.respond(ride_id, scenario["R1"].id, True, now=at), range(5)))

    assert sum(1 for r in results if r.changed) == 1
    assert all(r.participant_status == "ACCEPTED" for r in results)
    confirmations = [m for m in sink.sent if m[1] == NotificationEvent.CONFIRMATION]
    assert len(confirmations) == 3


@pytest.mark.asyncio
async def test_concurrent_match_triggers(scenario, matcher):
    from main import create_app
    transport = httpx.ASGITransport(app=create_app(matcher))
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        pending = await client.get("/opt-ins/pending", params={"date": COMMUTE_DATE.isoformat()})
        assert pending.status_code == 200
        assert len(pending.json()) == 3
        # trigger multiple match calls concurrently
        tasks = [client.post("/match/trigger", json={"date": COMMUTE_DATE.isoformat()}) for _ in range(5)]
        res = await asyncio.gather(*tasks)

    assert all(r.status_code == 200 for r in res)
    assert sum(r.json()["created"] for r in res) == 1
    with get_session() as session:
        assert session.query(Ride).count() == 1
