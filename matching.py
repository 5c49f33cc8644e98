"""Candidate grouping: turn one date's pending opt-ins into driver-led candidate groups.

Grouping is single-threaded and deterministic. Drivers are visited in opt-in
creation order; each takes the compatible riders with the largest time-window
overlap, then the closest pickup, then the earliest opt-in, until its seats
are full. A rider is never offered to two drivers in the same pass.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from math import radians, sin, cos, sqrt, atan2
from typing import Dict, List, Optional, Tuple
import logging

from sqlmodel import Session

from models import OptIn, PickupLocation, User, UserRole
import store

logger = logging.getLogger(__name__)


def haversine_km(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    lat1, lon1 = a
    lat2, lon2 = b
    R = 6371.0
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    rlat1 = radians(lat1)
    rlat2 = radians(lat2)
    a_ = sin(dlat / 2) ** 2 + cos(rlat1) * cos(rlat2) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a_), sqrt(1 - a_))
    return R * c


@dataclass(frozen=True)
class PoolEntry:
    """A pending opt-in enriched with its owner's role and pickup coordinates."""

    opt_in_id: int
    user_id: int
    role: UserRole
    commute_date: date
    window_start: datetime
    window_end: datetime
    pickup_location_id: int
    lat: float
    lng: float
    created_at: datetime
    capacity: Optional[int] = None
    chat_id: Optional[int] = None

    @property
    def point(self) -> Tuple[float, float]:
        return (self.lat, self.lng)


@dataclass
class CandidateGroup:
    driver: PoolEntry
    riders: List[PoolEntry]
    overlap_minutes: Dict[int, float] = field(default_factory=dict)  # rider user_id -> minutes

    @property
    def commute_date(self) -> date:
        return self.driver.commute_date

    @property
    def members(self) -> List[PoolEntry]:
        return [self.driver] + self.riders

    @property
    def opt_in_ids(self) -> List[int]:
        return [m.opt_in_id for m in self.members]

    def summary(self) -> dict:
        return {
            "driver_user_id": self.driver.user_id,
            "rider_user_ids": [r.user_id for r in self.riders],
            "opt_in_ids": self.opt_in_ids,
            "overlap_minutes": {str(k): v for k, v in self.overlap_minutes.items()},
        }


def overlap_minutes(a: PoolEntry, b: PoolEntry) -> float:
    latest_start = max(a.window_start, b.window_start)
    earliest_end = min(a.window_end, b.window_end)
    return max(0.0, (earliest_end - latest_start).total_seconds() / 60)


def load_pool(session: Session, commute_date: date, opt_ins: Optional[List[OptIn]] = None):
    """Enrich pending opt-ins for matching.

    Returns ``(entries, invalid)`` where ``invalid`` is a list of
    ``(opt_in_id, reason)`` for opt-ins that cannot take part in this run.
    """
    if opt_ins is None:
        opt_ins = store.pending_opt_ins(session, commute_date)
    entries: List[PoolEntry] = []
    invalid: List[Tuple[int, str]] = []
    for o in opt_ins:
        user = session.get(User, o.user_id)
        if user is None:
            invalid.append((o.id, f"user {o.user_id} not found"))
            continue
        loc = session.get(PickupLocation, o.pickup_location_id) if o.pickup_location_id else None
        if loc is None:
            invalid.append((o.id, "missing pickup location"))
            continue
        start = datetime.combine(o.commute_date, o.window_start)
        end = datetime.combine(o.commute_date, o.window_end)
        if end <= start:
            invalid.append((o.id, "time window ends before it starts"))
            continue
        entries.append(PoolEntry(
            opt_in_id=o.id,
            user_id=o.user_id,
            role=user.role,
            commute_date=o.commute_date,
            window_start=start,
            window_end=end,
            pickup_location_id=loc.id,
            lat=loc.lat,
            lng=loc.lng,
            created_at=o.created_at,
            capacity=user.capacity,
            chat_id=user.telegram_chat_id,
        ))
    for opt_in_id, reason in invalid:
        logger.warning("Skipping opt-in %s: %s", opt_in_id, reason)
    return entries, invalid


def _creation_key(e: PoolEntry):
    return (e.created_at, e.opt_in_id)


def build_candidate_groups(pool: List[PoolEntry], default_capacity: int = 4) -> List[CandidateGroup]:
    """Greedy driver-first grouping.

    A driver with capacity C takes up to C-1 riders. Riders must overlap the
    driver's window by a non-zero duration; a driver with no such rider forms
    no group and stays pending for a later run.
    """
    drivers = sorted((e for e in pool if e.role == UserRole.DRIVER), key=_creation_key)
    riders = sorted((e for e in pool if e.role == UserRole.RIDER), key=_creation_key)
    if not drivers or not riders:
        return []

    used = set()
    groups: List[CandidateGroup] = []
    for d in drivers:
        seats = (d.capacity or default_capacity) - 1
        if seats < 1:
            continue
        ranked = []
        for r in riders:
            if r.opt_in_id in used or r.user_id == d.user_id:
                continue
            ov = overlap_minutes(d, r)
            if ov <= 0:
                continue
            ranked.append((-ov, haversine_km(d.point, r.point), r.created_at, r.opt_in_id, r, ov))
        if not ranked:
            continue
        ranked.sort(key=lambda t: t[:4])
        chosen = ranked[:seats]
        group = CandidateGroup(
            driver=d,
            riders=[t[4] for t in chosen],
            overlap_minutes={t[4].user_id: t[5] for t in chosen},
        )
        for m in group.members:
            used.add(m.opt_in_id)
        groups.append(group)
    return groups
