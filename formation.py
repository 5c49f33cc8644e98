"""
Ride formation transaction.

Turns one accepted candidate group into a ride, all or nothing. The opt-ins
are claimed first with a conditional ``PENDING_MATCH -> MATCHED`` update; if
any of them was taken by an overlapping run the whole transaction is rolled
back and the group is left for the next run.
"""

from datetime import datetime, timedelta
from typing import Optional
import logging

from config import MatchingConfig
from db import get_session, utc_now
from exceptions import InvariantViolationError, OptInConflictError
from matching import CandidateGroup
from models import OptIn, OptInStatus, Participant, ParticipantStatus, Ride, RideStatus
from scoring import ScoreResult
import store

logger = logging.getLogger(__name__)


def form_ride(group: CandidateGroup, score: ScoreResult, config: MatchingConfig,
              now: Optional[datetime] = None) -> int:
    """Create the ride and its participants; returns the new ride id.

    Raises OptInConflictError when an opt-in is no longer pending and
    InvariantViolationError when committing would break a data invariant.
    Nothing is written in either case.
    """
    now = now or utc_now()
    ids = group.opt_in_ids
    if not group.riders:
        raise InvariantViolationError("A ride needs at least one rider", details={"opt_in_ids": ids})
    if any(m.commute_date != group.commute_date for m in group.members):
        raise InvariantViolationError("Opt-ins in a group must share one commute date",
                                      details={"opt_in_ids": ids})

    deadline = now + timedelta(minutes=config.confirmation_window_minutes)
    session = get_session()
    try:
        claimed = store.transition_opt_ins(session, ids, OptInStatus.PENDING_MATCH, OptInStatus.MATCHED)
        if claimed != len(ids):
            session.rollback()
            taken = [
                o.id for o in session.query(OptIn).filter(OptIn.id.in_(ids)).all()
                if o.status != OptInStatus.PENDING_MATCH
            ]
            raise OptInConflictError(taken or ids)

        refs = store.active_ride_refs(session, ids)
        if refs:
            session.rollback()
            logger.error("INVARIANT VIOLATION: opt-ins already held by active rides %s; group not committed", refs)
            raise InvariantViolationError(
                "Opt-in already belongs to an active ride",
                details={"refs": [{"opt_in_id": o, "ride_id": r} for o, r in refs]},
            )

        ride = Ride(
            driver_user_id=group.driver.user_id,
            commute_date=group.commute_date,
            status=RideStatus.PENDING_CONFIRMATION,
            estimated_cost_per_person=score.estimated_cost_per_person,
            estimated_total_time=score.estimated_total_time,
            pickup_order=list(score.pickup_order),
            confidence_score=score.confidence_score,
            rationale_text=score.rationale_text,
            score_source=score.source,
            created_at=now,
            updated_at=now,
        )
        session.add(ride)
        session.flush()

        d = group.driver
        session.add(Participant(
            ride_id=ride.id,
            user_id=d.user_id,
            opt_in_id=d.opt_in_id,
            pickup_location_id=d.pickup_location_id,
            is_driver=True,
            status=ParticipantStatus.ACCEPTED,
            responded_at=now,
        ))
        for r in group.riders:
            session.add(Participant(
                ride_id=ride.id,
                user_id=r.user_id,
                opt_in_id=r.opt_in_id,
                pickup_location_id=r.pickup_location_id,
                status=ParticipantStatus.PENDING,
                confirmation_deadline=deadline,
            ))
        session.commit()
        ride_id = ride.id
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    logger.info("Formed ride %s for %s: driver %s, riders %s (confidence %.2f, %s)",
                ride_id, group.commute_date, group.driver.user_id,
                [r.user_id for r in group.riders], score.confidence_score, score.source)
    return ride_id
