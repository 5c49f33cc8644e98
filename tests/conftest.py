import json
import os
import sys
from datetime import date, datetime, time, timedelta

import httpx
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sqlmodel import SQLModel

from config import MatchingConfig
from db import get_session
from engine import MatchingEngine
from models import OptIn, OptInStatus, PickupLocation, User, UserRole
from notifications import NotificationDispatcher, NotificationSink, SendResult
from scoring import CompatibilityScorer

SCORER_URL = "http://scorer.test/score"
COMMUTE_DATE = date(2025, 6, 18)
# matching for COMMUTE_DATE runs the evening before
RUN_AT = datetime(2025, 6, 17, 20, 0)


# ────────────────────────── fixtures ────────────────────────────────────────

@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    """Each test runs against a fresh SQLite file database."""
    import db as db_mod
    test_db = f"sqlite:///{tmp_path}/test.db"
    new_engine = __import__("sqlmodel").create_engine(
        test_db, echo=False, connect_args={"check_same_thread": False}
    )
    monkeypatch.setattr(db_mod, "engine", new_engine)
    SQLModel.metadata.create_all(new_engine)
    yield
    SQLModel.metadata.drop_all(new_engine)
    new_engine.dispose()


class RecordingSink(NotificationSink):
    """Keeps every message in memory; chat ids in ``fail_for`` are refused."""

    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def send(self, recipient_channel_id, event_type, payload):
        if recipient_channel_id in self.fail_for:
            return SendResult(delivered=False, error="bot was blocked by the user")
        self.sent.append((recipient_channel_id, event_type, payload))
        return SendResult(delivered=True)

    def recipients(self, event):
        return sorted(chat for chat, ev, _ in self.sent if ev == event)


def scorer_reply(confidence=0.85):
    """MockTransport handler answering like the scoring service."""
    def handler(request: httpx.Request):
        body = json.loads(request.content)
        return httpx.Response(200, json={
            "confidence_score": confidence,
            "rationale": "Windows overlap and pickups are close together",
            "cost_per_person": 42.5,
            "total_time_minutes": 35,
            "pickup_order": [r["user_id"] for r in body["riders"]],
        })
    return handler


@pytest.fixture
def config():
    return MatchingConfig(_env_file=None, scorer_url=SCORER_URL, scorer_workers=2)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def make_engine(config, sink):
    built = []

    def _make(handler=None, **overrides):
        cfg = config.model_copy(update=overrides) if overrides else config
        client = httpx.Client(transport=httpx.MockTransport(handler or scorer_reply()))
        eng = MatchingEngine(cfg, scorer=CompatibilityScorer(cfg, client=client),
                             dispatcher=NotificationDispatcher(sink))
        built.append(eng)
        return eng

    yield _make
    for eng in built:
        eng.scorer.close()


@pytest.fixture
def matcher(make_engine):
    return make_engine()


# ────────────────────────── factories ───────────────────────────────────────

def make_user(name, role=UserRole.RIDER, capacity=None, lat=12.9716, lng=77.5946, chat=True):
    session = get_session()
    u = User(name=name, role=role, capacity=capacity)
    session.add(u)
    session.flush()
    if chat:
        u.telegram_chat_id = 1000 + u.id
    session.add(PickupLocation(user_id=u.id, name=f"{name} home", lat=lat, lng=lng, is_default=True))
    session.commit()
    session.refresh(u)
    session.close()
    return u


def make_driver(name="D", capacity=3, **kw):
    return make_user(name, role=UserRole.DRIVER, capacity=capacity, **kw)


def make_opt_in(user, start, end, commute_date=COMMUTE_DATE, created_at=None,
                status=OptInStatus.PENDING_MATCH, retry_count=0):
    session = get_session()
    loc = session.query(PickupLocation).filter(PickupLocation.user_id == user.id).first()
    o = OptIn(
        user_id=user.id,
        commute_date=commute_date,
        window_start=start,
        window_end=end,
        pickup_location_id=loc.id if loc else None,
        status=status,
        retry_count=retry_count,
        created_at=created_at or RUN_AT - timedelta(hours=4),
    )
    session.add(o)
    session.commit()
    session.refresh(o)
    session.close()
    return o


def T(h, m=0):
    return time(h, m)


def opt_in_status(opt_in_id):
    with get_session() as session:
        return session.get(OptIn, opt_in_id).status


@pytest.fixture
def scenario():
    """Driver D (08:30-09:30, capacity 3), R1 (08:30-09:30), R2 (09:00-10:00)."""
    base = RUN_AT - timedelta(hours=5)
    d = make_driver("D", capacity=3)
    r1 = make_user("R1", lat=12.9720, lng=77.5950)
    r2 = make_user("R2", lat=12.9800, lng=77.6000)
    return {
        "D": d, "R1": r1, "R2": r2,
        "d_opt": make_opt_in(d, T(8, 30), T(9, 30), created_at=base),
        "r1_opt": make_opt_in(r1, T(8, 30), T(9, 30), created_at=base + timedelta(minutes=1)),
        "r2_opt": make_opt_in(r2, T(9, 0), T(10, 0), created_at=base + timedelta(minutes=2)),
    }
