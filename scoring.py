"""
Compatibility scorer adapter.

Wraps the external reasoning service that rates a candidate group. Each call
has a hard timeout and a small retry budget for transient failures; any
timeout, non-200 answer or malformed body degrades to a deterministic local
estimate whose confidence sits below the acceptance threshold.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, asdict
from typing import List, Optional, Tuple
import logging

import httpx

from config import MatchingConfig
from exceptions import ScorerError
from matching import CandidateGroup, PoolEntry, haversine_km
from pricing import split_cost, travel_minutes

logger = logging.getLogger(__name__)

SOURCE_SERVICE = "service"
SOURCE_FALLBACK = "fallback"


@dataclass
class ScoreResult:
    confidence_score: float
    rationale_text: str
    estimated_cost_per_person: float
    estimated_total_time: int
    pickup_order: List[int] = field(default_factory=list)
    source: str = SOURCE_SERVICE

    def to_dict(self) -> dict:
        return asdict(self)


def nearest_neighbor_order(start: Tuple[float, float], stops: List[PoolEntry]) -> Tuple[List[PoolEntry], float]:
    """Visit the closest remaining stop each time; returns (order, path length km)."""
    remaining = list(stops)
    order: List[PoolEntry] = []
    here = start
    total = 0.0
    while remaining:
        nxt = min(remaining, key=lambda s: (haversine_km(here, s.point), s.created_at, s.opt_in_id))
        total += haversine_km(here, nxt.point)
        order.append(nxt)
        remaining.remove(nxt)
        here = nxt.point
    return order, total


def fallback_score(group: CandidateGroup, config: MatchingConfig, reason: str = "") -> ScoreResult:
    order, distance = nearest_neighbor_order(group.driver.point, group.riders)
    last = order[-1].point if order else group.driver.point
    if config.destination is not None:
        distance += haversine_km(last, config.destination)
    min_overlap = min(group.overlap_minutes.values()) if group.overlap_minutes else 0
    rationale = (
        f"Local estimate: {len(group.riders)} rider(s), {distance:.1f} km pickup route, "
        f"at least {min_overlap:.0f} min shared time window"
    )
    if reason:
        rationale += f" (scorer unavailable: {reason})"
    return ScoreResult(
        confidence_score=config.fallback_confidence,
        rationale_text=rationale,
        estimated_cost_per_person=split_cost(distance, len(group.members), config.cost_per_km),
        estimated_total_time=travel_minutes(distance, config.average_speed_kmh),
        pickup_order=[r.user_id for r in order],
        source=SOURCE_FALLBACK,
    )


def _member_payload(e: PoolEntry) -> dict:
    return {
        "user_id": e.user_id,
        "opt_in_id": e.opt_in_id,
        "pickup": {"lat": e.lat, "lng": e.lng},
        "time_window": {
            "start": e.window_start.strftime("%H:%M"),
            "end": e.window_end.strftime("%H:%M"),
        },
    }


def build_request(group: CandidateGroup, config: MatchingConfig) -> dict:
    driver = _member_payload(group.driver)
    driver["capacity"] = group.driver.capacity or config.default_driver_capacity
    payload = {
        "commute_date": group.commute_date.isoformat(),
        "driver": driver,
        "riders": [_member_payload(r) for r in group.riders],
    }
    if config.destination is not None:
        payload["destination"] = {"lat": config.destination[0], "lng": config.destination[1]}
    return payload


def _is_number(v) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def parse_response(body, group: CandidateGroup) -> ScoreResult:
    """Validate the scorer's JSON body; raises ScorerError when it is unusable."""
    if not isinstance(body, dict):
        raise ScorerError("response is not a JSON object")
    confidence = body.get("confidence_score")
    if not _is_number(confidence) or not 0.0 <= confidence <= 1.0:
        raise ScorerError(f"invalid confidence_score: {confidence!r}")
    cost = body.get("cost_per_person")
    if not _is_number(cost) or cost < 0:
        raise ScorerError(f"invalid cost_per_person: {cost!r}")
    minutes = body.get("total_time_minutes")
    if not _is_number(minutes) or minutes < 0:
        raise ScorerError(f"invalid total_time_minutes: {minutes!r}")
    rationale = body.get("rationale", "")
    if not isinstance(rationale, str):
        raise ScorerError("rationale is not a string")

    order = body.get("pickup_order")
    if not isinstance(order, list):
        raise ScorerError("pickup_order is not a list")
    order = [u for u in order if u != group.driver.user_id]
    if sorted(order) != sorted(r.user_id for r in group.riders):
        raise ScorerError(f"pickup_order does not list each rider once: {order!r}")

    return ScoreResult(
        confidence_score=float(confidence),
        rationale_text=rationale,
        estimated_cost_per_person=round(float(cost), 2),
        estimated_total_time=int(round(minutes)),
        pickup_order=order,
        source=SOURCE_SERVICE,
    )


class CompatibilityScorer:
    """Scores candidate groups through the external service, falling back locally."""

    def __init__(self, config: MatchingConfig, client: Optional[httpx.Client] = None):
        self.config = config
        # one client shared by every scoring worker thread
        self.client = client or httpx.Client(timeout=config.scorer_timeout_seconds)

    def close(self):
        self.client.close()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.config.scorer_api_key:
            headers["Authorization"] = f"Bearer {self.config.scorer_api_key}"
        return headers

    def _call_service(self, group: CandidateGroup) -> ScoreResult:
        payload = build_request(group, self.config)
        attempts = 1 + self.config.scorer_max_retries
        last_error = "no attempt made"
        for attempt in range(1, attempts + 1):
            try:
                resp = self.client.post(
                    self.config.scorer_url,
                    json=payload,
                    headers=self._headers(),
                    timeout=self.config.scorer_timeout_seconds,
                )
            except httpx.TimeoutException:
                last_error = "timeout"
                logger.warning("Scorer timeout for driver %s (attempt %d/%d)",
                               group.driver.user_id, attempt, attempts)
                continue
            except httpx.TransportError as e:
                last_error = f"transport error: {e}"
                logger.warning("Scorer transport error for driver %s (attempt %d/%d): %s",
                               group.driver.user_id, attempt, attempts, e)
                continue
            if resp.status_code >= 500:
                last_error = f"HTTP {resp.status_code}"
                logger.warning("Scorer returned %s (attempt %d/%d)", resp.status_code, attempt, attempts)
                continue
            if resp.status_code != 200:
                raise ScorerError(f"HTTP {resp.status_code}")
            try:
                body = resp.json()
            except ValueError:
                raise ScorerError("malformed JSON")
            return parse_response(body, group)
        raise ScorerError(last_error)

    def score(self, group: CandidateGroup) -> ScoreResult:
        if not self.config.scorer_url:
            return fallback_score(group, self.config, "not configured")
        try:
            return self._call_service(group)
        except ScorerError as e:
            logger.warning("Falling back to local score for driver %s: %s", group.driver.user_id, e.message)
            return fallback_score(group, self.config, e.message)
        except Exception as e:
            logger.error("Unexpected scorer failure for driver %s", group.driver.user_id, exc_info=True)
            return fallback_score(group, self.config, str(e))

    def score_groups(self, groups: List[CandidateGroup]) -> List[ScoreResult]:
        """Score disjoint groups concurrently; results keep the input order."""
        if not groups:
            return []
        workers = min(self.config.scorer_workers, len(groups))
        if workers == 1:
            return [self.score(g) for g in groups]
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(self.score, groups))
