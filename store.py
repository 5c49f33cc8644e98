"""
Opt-in store accessor.

Thin read/write helpers over the SQLModel tables. Nothing here commits:
callers own the transaction so that several helpers can be combined into one
atomic unit (see formation.py). Status changes are conditional updates whose
row count tells the caller whether the expected state still held.
"""

from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Optional, Sequence

from sqlmodel import Session

from config import MatchingConfig
from db import utc_now
from exceptions import InvalidOptInError, NotFoundError
from models import (
    ACTIVE_RIDE_STATUSES,
    OptIn,
    OptInStatus,
    Participant,
    ParticipantStatus,
    PickupLocation,
    Ride,
    RideStatus,
    User,
)


# ────────────────────────── pickup locations ────────────────────────────────

def add_pickup_location(session: Session, user_id: int, name: str, lat: float, lng: float,
                        make_default: bool = False) -> PickupLocation:
    """Add a location; the user's first location always becomes the default."""
    if session.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")
    has_default = default_pickup_location(session, user_id) is not None
    if make_default and has_default:
        session.query(PickupLocation).filter(
            PickupLocation.user_id == user_id,
            PickupLocation.is_default == True,  # noqa: E712
        ).update({"is_default": False}, synchronize_session=False)
    loc = PickupLocation(user_id=user_id, name=name, lat=lat, lng=lng,
                         is_default=make_default or not has_default)
    session.add(loc)
    session.flush()
    return loc


def default_pickup_location(session: Session, user_id: int) -> Optional[PickupLocation]:
    return (
        session.query(PickupLocation)
        .filter(PickupLocation.user_id == user_id, PickupLocation.is_default == True)  # noqa: E712
        .first()
    )


# ────────────────────────── opt-ins ─────────────────────────────────────────

def validate_window(window_start: time, window_end: time, config: MatchingConfig) -> None:
    start = datetime.combine(date.min, window_start)
    end = datetime.combine(date.min, window_end)
    if start >= end:
        raise InvalidOptInError("Start time must be before end time")
    minutes = (end - start).total_seconds() / 60
    if minutes < config.min_window_minutes:
        raise InvalidOptInError(f"Time window must be at least {config.min_window_minutes} minutes")
    if minutes > config.max_window_minutes:
        raise InvalidOptInError(f"Time window cannot exceed {config.max_window_minutes} minutes")


def validate_commute_date(commute_date: date, config: MatchingConfig, today: Optional[date] = None) -> None:
    today = today or utc_now().date()
    if commute_date < today:
        raise InvalidOptInError("Cannot opt-in for past dates")
    if commute_date > today + timedelta(days=config.max_days_ahead):
        raise InvalidOptInError(f"Cannot opt-in more than {config.max_days_ahead} days in advance")


def create_opt_in(session: Session, config: MatchingConfig, user_id: int, commute_date: date,
                  window_start: time, window_end: time, pickup_location_id: Optional[int] = None,
                  is_automatic: bool = False, today: Optional[date] = None) -> OptIn:
    """Create the user's opt-in for a date, reviving a cancelled one if present."""
    if session.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")
    validate_window(window_start, window_end, config)
    validate_commute_date(commute_date, config, today)

    if pickup_location_id is None:
        loc = default_pickup_location(session, user_id)
        if loc is None:
            raise InvalidOptInError(f"User {user_id} has no default pickup location")
        pickup_location_id = loc.id
    else:
        loc = session.get(PickupLocation, pickup_location_id)
        if loc is None or loc.user_id != user_id:
            raise InvalidOptInError(f"Pickup location {pickup_location_id} does not belong to user {user_id}")

    existing = (
        session.query(OptIn)
        .filter(OptIn.user_id == user_id, OptIn.commute_date == commute_date)
        .first()
    )
    if existing is not None:
        if existing.status != OptInStatus.CANCELLED:
            raise InvalidOptInError(f"User {user_id} already opted in for {commute_date}")
        opt_in = existing
        opt_in.status = OptInStatus.PENDING_MATCH
        opt_in.retry_count = 0
        opt_in.last_retry_at = None
        opt_in.created_at = utc_now()
    else:
        opt_in = OptIn(user_id=user_id, commute_date=commute_date)
    opt_in.window_start = window_start
    opt_in.window_end = window_end
    opt_in.pickup_location_id = pickup_location_id
    opt_in.is_automatic = is_automatic
    session.add(opt_in)
    session.flush()
    return opt_in


def get_opt_in(session: Session, opt_in_id: int) -> OptIn:
    opt_in = session.get(OptIn, opt_in_id)
    if opt_in is None:
        raise NotFoundError(f"Opt-in {opt_in_id} not found")
    return opt_in


def cancel_opt_in(session: Session, opt_in_id: int) -> OptIn:
    """User cancellation, only allowed before the opt-in is matched."""
    opt_in = get_opt_in(session, opt_in_id)
    if opt_in.status == OptInStatus.CANCELLED:
        return opt_in
    changed = transition_opt_ins(session, [opt_in_id], OptInStatus.PENDING_MATCH, OptInStatus.CANCELLED)
    if not changed:
        raise InvalidOptInError(f"Opt-in {opt_in_id} is already matched and cannot be cancelled")
    session.refresh(opt_in)
    return opt_in


def pending_opt_ins(session: Session, commute_date: date, max_retries: Optional[int] = None) -> List[OptIn]:
    """PENDING_MATCH opt-ins for a date in creation order."""
    q = session.query(OptIn).filter(
        OptIn.commute_date == commute_date,
        OptIn.status == OptInStatus.PENDING_MATCH,
    )
    if max_retries is not None:
        q = q.filter(OptIn.retry_count < max_retries)
    return q.order_by(OptIn.created_at, OptIn.id).all()


def stale_pending_opt_ins(session: Session, commute_date: date, older_than: datetime,
                          max_retries: int) -> List[OptIn]:
    """Pending opt-ins untouched since ``older_than`` that still have retries left."""
    return (
        session.query(OptIn)
        .filter(
            OptIn.commute_date == commute_date,
            OptIn.status == OptInStatus.PENDING_MATCH,
            OptIn.retry_count < max_retries,
            OptIn.created_at <= older_than,
            (OptIn.last_retry_at == None) | (OptIn.last_retry_at <= older_than),  # noqa: E711
        )
        .order_by(OptIn.created_at, OptIn.id)
        .all()
    )


def exhausted_opt_ins(session: Session, commute_date: date, max_retries: int) -> List[OptIn]:
    return (
        session.query(OptIn)
        .filter(
            OptIn.commute_date == commute_date,
            OptIn.status == OptInStatus.PENDING_MATCH,
            OptIn.retry_count >= max_retries,
        )
        .order_by(OptIn.created_at, OptIn.id)
        .all()
    )


def mark_retried(session: Session, opt_in_ids: Sequence[int], now: datetime) -> int:
    if not opt_in_ids:
        return 0
    return (
        session.query(OptIn)
        .filter(OptIn.id.in_(opt_in_ids), OptIn.status == OptInStatus.PENDING_MATCH)
        .update(
            {"retry_count": OptIn.retry_count + 1, "last_retry_at": now},
            synchronize_session=False,
        )
    )


def transition_opt_ins(session: Session, opt_in_ids: Iterable[int], expected: OptInStatus,
                       new: OptInStatus) -> int:
    """Move opt-ins from ``expected`` to ``new``; returns how many rows moved."""
    ids = list(opt_in_ids)
    if not ids:
        return 0
    return (
        session.query(OptIn)
        .filter(OptIn.id.in_(ids), OptIn.status == expected)
        .update({"status": new}, synchronize_session=False)
    )


def active_ride_refs(session: Session, opt_in_ids: Sequence[int]) -> List[tuple]:
    """(opt_in_id, ride_id) pairs where a live participant of an active ride holds the opt-in."""
    if not opt_in_ids:
        return []
    rows = (
        session.query(Participant.opt_in_id, Participant.ride_id)
        .join(Ride, Ride.id == Participant.ride_id)
        .filter(
            Participant.opt_in_id.in_(opt_in_ids),
            Participant.status.in_([ParticipantStatus.PENDING, ParticipantStatus.ACCEPTED]),
            Ride.status.in_(ACTIVE_RIDE_STATUSES),
        )
        .all()
    )
    return [(r[0], r[1]) for r in rows]


# ────────────────────────── rides / participants ────────────────────────────

def get_ride(session: Session, ride_id: int) -> Ride:
    ride = session.get(Ride, ride_id)
    if ride is None:
        raise NotFoundError(f"Ride {ride_id} not found")
    return ride


def participants_for_ride(session: Session, ride_id: int) -> List[Participant]:
    return (
        session.query(Participant)
        .filter(Participant.ride_id == ride_id)
        .order_by(Participant.is_driver.desc(), Participant.id)
        .all()
    )


def get_participant(session: Session, ride_id: int, user_id: int) -> Participant:
    p = (
        session.query(Participant)
        .filter(Participant.ride_id == ride_id, Participant.user_id == user_id)
        .first()
    )
    if p is None:
        raise NotFoundError(f"User {user_id} is not a participant of ride {ride_id}")
    return p


def set_participant_status(session: Session, ride_id: int, user_id: int, expected: ParticipantStatus,
                           new: ParticipantStatus, now: datetime) -> bool:
    """Single-row conditional transition keyed by (ride, user); the deadline is cleared on exit from PENDING."""
    values = {"status": new, "responded_at": now}
    if new != ParticipantStatus.PENDING:
        values["confirmation_deadline"] = None
    changed = (
        session.query(Participant)
        .filter(
            Participant.ride_id == ride_id,
            Participant.user_id == user_id,
            Participant.status == expected,
        )
        .update(values, synchronize_session=False)
    )
    return changed == 1


def expire_overdue_participants(session: Session, ride_id: int, now: datetime) -> int:
    """PENDING -> NO_RESPONSE for every participant of the ride whose deadline has passed."""
    return (
        session.query(Participant)
        .filter(
            Participant.ride_id == ride_id,
            Participant.status == ParticipantStatus.PENDING,
            Participant.confirmation_deadline < now,
        )
        .update(
            {"status": ParticipantStatus.NO_RESPONSE, "confirmation_deadline": None},
            synchronize_session=False,
        )
    )


def overdue_ride_ids(session: Session, now: datetime) -> List[int]:
    rows = (
        session.query(Participant.ride_id)
        .join(Ride, Ride.id == Participant.ride_id)
        .filter(
            Participant.status == ParticipantStatus.PENDING,
            Participant.confirmation_deadline < now,
        )
        .distinct()
        .order_by(Participant.ride_id)
        .all()
    )
    return [r[0] for r in rows]


def transition_ride(session: Session, ride_id: int, expected: Sequence[RideStatus], new: RideStatus,
                    now: datetime, reason: Optional[str] = None) -> bool:
    values = {"status": new, "updated_at": now}
    if reason is not None:
        values["cancel_reason"] = reason
    changed = (
        session.query(Ride)
        .filter(Ride.id == ride_id, Ride.status.in_(list(expected)))
        .update(values, synchronize_session=False)
    )
    return changed == 1


def user_by_telegram_chat(session: Session, chat_id: int) -> Optional[User]:
    return session.query(User).filter(User.telegram_chat_id == chat_id).first()
