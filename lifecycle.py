"""
Confirmation lifecycle.

Owns a ride from formation until it is CONFIRMED or CANCELLED. Riders move
PENDING -> ACCEPTED/DECLINED by their own action before the deadline; the
sweep moves overdue riders to NO_RESPONSE. After every change the ride status
is recomputed from its participants, and notifications for a ride transition
go out only once that transition has committed.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import List, Optional, Sequence, Tuple
import logging

from config import MatchingConfig
from db import get_lock, get_session, utc_now
from exceptions import ResponseRejectedError
from models import (
    OPEN_RIDE_STATUSES,
    OptInStatus,
    Participant,
    ParticipantStatus,
    RideStatus,
)
from notifications import DispatchResult, NotificationDispatcher, NotificationEvent
import store

logger = logging.getLogger(__name__)

# externally triggered moves once a ride is confirmed
EXTERNAL_TRANSITIONS = {
    RideStatus.IN_PROGRESS: (RideStatus.CONFIRMED,),
    RideStatus.COMPLETED: (RideStatus.CONFIRMED, RideStatus.IN_PROGRESS),
}


def resolve_ride_status(participants: Sequence[Participant], min_riders: int = 1) -> Tuple[RideStatus, Optional[str]]:
    """Ride status as a function of participant statuses.

    PENDING riders are assumed to still be inside their deadline; overdue ones
    must be moved to NO_RESPONSE before calling this. Returns the status and,
    for CANCELLED, a human-readable reason.
    """
    riders = [p for p in participants if not p.is_driver]
    if not riders:
        return RideStatus.CANCELLED, "The ride has no riders"
    statuses = [p.status for p in riders]
    if all(s == ParticipantStatus.ACCEPTED for s in statuses):
        return RideStatus.CONFIRMED, None
    if any(s == ParticipantStatus.PENDING for s in statuses):
        return RideStatus.PENDING_CONFIRMATION, None
    accepted = statuses.count(ParticipantStatus.ACCEPTED)
    if accepted >= min_riders:
        return RideStatus.CONFIRMED, None
    if accepted:
        return RideStatus.CANCELLED, f"Only {accepted} rider(s) confirmed; at least {min_riders} needed"
    if all(s == ParticipantStatus.DECLINED for s in statuses):
        return RideStatus.CANCELLED, "All riders declined the ride"
    if all(s == ParticipantStatus.NO_RESPONSE for s in statuses):
        return RideStatus.CANCELLED, "No rider confirmed before the deadline"
    return RideStatus.CANCELLED, "No rider accepted the ride"


@dataclass
class EvaluationOutcome:
    ride_id: int
    previous_status: str
    status: str
    changed: bool = False
    expired: int = 0
    reason: Optional[str] = None
    released_opt_in_ids: Optional[List[int]] = None
    notification: Optional[DispatchResult] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["notification"] = self.notification.to_dict() if self.notification else None
        return d


@dataclass
class ResponseResult:
    ride_id: int
    user_id: int
    participant_status: str
    ride_status: str
    changed: bool

    def to_dict(self) -> dict:
        return asdict(self)


class ConfirmationManager:
    def __init__(self, config: MatchingConfig, dispatcher: Optional[NotificationDispatcher] = None):
        self.config = config
        self.dispatcher = dispatcher

    def respond(self, ride_id: int, user_id: int, accept: bool, now: Optional[datetime] = None) -> ResponseResult:
        """Apply a rider's accept/decline. Repeating the same answer is a no-op."""
        now = now or utc_now()
        target = ParticipantStatus.ACCEPTED if accept else ParticipantStatus.DECLINED
        with get_lock(f"ride:{ride_id}"):
            with get_session() as session:
                ride = store.get_ride(session, ride_id)
                p = store.get_participant(session, ride_id, user_id)
                if p.status == target:
                    return ResponseResult(ride_id, user_id, p.status.value, ride.status.value, changed=False)
                if p.is_driver:
                    raise ResponseRejectedError("The driver is confirmed when the ride is formed")
                if p.status != ParticipantStatus.PENDING:
                    raise ResponseRejectedError(f"Response already recorded as {p.status.value}")
                if ride.status not in OPEN_RIDE_STATUSES:
                    raise ResponseRejectedError(f"Ride {ride_id} is {ride.status.value}")
                if p.confirmation_deadline is not None and now > p.confirmation_deadline:
                    raise ResponseRejectedError("The confirmation deadline has passed")
                changed = store.set_participant_status(
                    session, ride_id, user_id, ParticipantStatus.PENDING, target, now
                )
                session.commit()
                if not changed:
                    session.expire_all()
                    current = store.get_participant(session, ride_id, user_id).status
                    if current != target:
                        raise ResponseRejectedError(f"Response already recorded as {current.value}")
                    ride = store.get_ride(session, ride_id)
                    return ResponseResult(ride_id, user_id, current.value, ride.status.value, changed=False)

        logger.info("User %s %s ride %s", user_id, "accepted" if accept else "declined", ride_id)
        outcome = self.evaluate(ride_id, now)
        return ResponseResult(ride_id, user_id, target.value, outcome.status, changed=True)

    def evaluate(self, ride_id: int, now: Optional[datetime] = None) -> EvaluationOutcome:
        """Expire overdue riders, then move the ride to the status its participants imply."""
        now = now or utc_now()
        with get_lock(f"ride:{ride_id}"):
            session = get_session()
            try:
                ride = store.get_ride(session, ride_id)
                previous = ride.status
                outcome = EvaluationOutcome(ride_id, previous.value, previous.value)
                if previous not in OPEN_RIDE_STATUSES:
                    return outcome

                outcome.expired = store.expire_overdue_participants(session, ride_id, now)
                session.expire_all()
                participants = store.participants_for_ride(session, ride_id)
                new_status, reason = resolve_ride_status(participants, self.config.min_confirmed_riders)
                if new_status != previous and store.transition_ride(
                    session, ride_id, OPEN_RIDE_STATUSES, new_status, now, reason
                ):
                    outcome.changed = True
                    outcome.status = new_status.value
                    outcome.reason = reason
                    outcome.released_opt_in_ids = self._release_opt_ins(session, participants, new_status)
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

        if outcome.changed:
            logger.info("Ride %s %s -> %s%s", ride_id, outcome.previous_status, outcome.status,
                        f" ({outcome.reason})" if outcome.reason else "")
            if self.dispatcher is not None:
                outcome.notification = self._notify(outcome)
        return outcome

    def _notify(self, outcome: EvaluationOutcome) -> Optional[DispatchResult]:
        if outcome.status == RideStatus.CONFIRMED.value:
            event, reason = NotificationEvent.CONFIRMATION, None
        elif outcome.status == RideStatus.CANCELLED.value:
            event, reason = NotificationEvent.CANCELLATION, outcome.reason
        else:
            return None
        # the transition has committed; a failed send must not undo or abort it
        try:
            return self.dispatcher.dispatch(event, outcome.ride_id, reason=reason)
        except Exception as e:
            logger.error("%s notification failed for ride %s", event.value, outcome.ride_id, exc_info=True)
            return DispatchResult(event=event.value, ride_id=outcome.ride_id, errors=[str(e)])

    def _release_opt_ins(self, session, participants: Sequence[Participant], new_status: RideStatus) -> List[int]:
        """Send opt-ins that will not ride back to PENDING_MATCH so they can be matched again."""
        if new_status == RideStatus.CANCELLED:
            released = [p.opt_in_id for p in participants]
        else:
            released = [
                p.opt_in_id for p in participants
                if p.status in (ParticipantStatus.DECLINED, ParticipantStatus.NO_RESPONSE)
            ]
        store.transition_opt_ins(session, released, OptInStatus.MATCHED, OptInStatus.PENDING_MATCH)
        return released

    def advance_ride(self, ride_id: int, new_status: RideStatus, now: Optional[datetime] = None) -> str:
        """Accept an external IN_PROGRESS / COMPLETED trigger for a confirmed ride."""
        now = now or utc_now()
        if new_status not in EXTERNAL_TRANSITIONS:
            raise ResponseRejectedError(f"{new_status.value} cannot be set externally")
        with get_session() as session:
            ride = store.get_ride(session, ride_id)
            if ride.status == new_status:
                return ride.status.value
            if not store.transition_ride(session, ride_id, EXTERNAL_TRANSITIONS[new_status], new_status, now):
                raise ResponseRejectedError(
                    f"Ride {ride_id} cannot move from {ride.status.value} to {new_status.value}"
                )
            session.commit()
        logger.info("Ride %s -> %s", ride_id, new_status.value)
        return new_status.value
