"""
Periodic sweeps: confirmation deadlines, stale-data cleanup and pickup reminders.

Every sweep works entity by entity. A failure on one ride or opt-in is logged
and recorded in the result, and the sweep carries on with the rest of the
batch. Each deletion unit (a ride with its participants, or one opt-in) is its
own transaction, so an interrupted cleanup never leaves orphaned rows and a
rerun simply picks up what is left.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta
from typing import List, Optional
import logging

from sqlalchemy import select

from config import MatchingConfig
from db import get_session, utc_now
from lifecycle import ConfirmationManager
from models import MatchingJob, OptIn, OptInStatus, Participant, Ride, RideStatus
from notifications import NotificationDispatcher, NotificationEvent
import store

logger = logging.getLogger(__name__)

# rides older than the retention window that may be removed; opt-ins only once unreferenced
PURGEABLE_RIDE_STATUSES = (RideStatus.COMPLETED, RideStatus.CANCELLED)
PURGEABLE_OPT_IN_STATUSES = (OptInStatus.CANCELLED, OptInStatus.PENDING_MATCH, OptInStatus.MATCHED)


@dataclass
class SweepResult:
    processed: int = 0
    expired: int = 0
    confirmed: int = 0
    cancelled: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CleanupResult:
    cutoff_date: str
    dry_run: bool
    processed: int = 0
    rides_deleted: int = 0
    participants_deleted: int = 0
    opt_ins_deleted: int = 0
    jobs_deleted: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ReminderResult:
    commute_date: str
    processed: int = 0
    sent: int = 0
    failed: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class Sweeper:
    def __init__(self, config: MatchingConfig, manager: ConfirmationManager,
                 dispatcher: Optional[NotificationDispatcher] = None):
        self.config = config
        self.manager = manager
        self.dispatcher = dispatcher

    # ────────────────────────── deadlines ──────────────────────────────────

    def sweep_deadlines(self, now: Optional[datetime] = None) -> SweepResult:
        """Move overdue PENDING riders to NO_RESPONSE and re-evaluate their rides."""
        now = now or utc_now()
        result = SweepResult()
        with get_session() as session:
            ride_ids = store.overdue_ride_ids(session, now)
        for ride_id in ride_ids:
            result.processed += 1
            try:
                outcome = self.manager.evaluate(ride_id, now)
            except Exception as e:
                logger.error("Deadline sweep failed for ride %s", ride_id, exc_info=True)
                result.errors.append({"kind": "sweep", "ride_id": ride_id, "message": str(e)})
                continue
            result.expired += outcome.expired
            if outcome.changed and outcome.status == RideStatus.CONFIRMED.value:
                result.confirmed += 1
            elif outcome.changed and outcome.status == RideStatus.CANCELLED.value:
                result.cancelled += 1
        logger.info("Deadline sweep: %d ride(s), %d expired, %d confirmed, %d cancelled",
                    result.processed, result.expired, result.confirmed, result.cancelled)
        return result

    # ────────────────────────── cleanup ────────────────────────────────────

    def cleanup_expired_data(self, retention_days: Optional[int] = None, dry_run: bool = False,
                             now: Optional[datetime] = None) -> CleanupResult:
        """Purge finished rides and dead opt-ins whose commute date is past retention.

        Only COMPLETED and CANCELLED rides go; confirmed and in-progress rides are
        never touched, and an opt-in is removed only once no participant row holds it.
        """
        now = now or utc_now()
        days = self.config.retention_days if retention_days is None else retention_days
        cutoff = now.date() - timedelta(days=days)
        result = CleanupResult(cutoff_date=cutoff.isoformat(), dry_run=dry_run)

        with get_session() as session:
            ride_ids = [
                r[0] for r in session.query(Ride.id)
                .filter(Ride.commute_date < cutoff, Ride.status.in_(PURGEABLE_RIDE_STATUSES))
                .order_by(Ride.id)
                .all()
            ]
        for ride_id in ride_ids:
            result.processed += 1
            if dry_run:
                with get_session() as session:
                    result.rides_deleted += 1
                    result.participants_deleted += len(store.participants_for_ride(session, ride_id))
                continue
            try:
                result.participants_deleted += self._delete_ride(ride_id, cutoff)
                result.rides_deleted += 1
            except Exception as e:
                logger.error("Cleanup failed for ride %s", ride_id, exc_info=True)
                result.errors.append({"kind": "cleanup", "ride_id": ride_id, "message": str(e)})

        with get_session() as session:
            opt_in_ids = self._purgeable_opt_in_ids(session, cutoff, ignore_ride_ids=ride_ids if dry_run else ())
        for opt_in_id in opt_in_ids:
            result.processed += 1
            if dry_run:
                result.opt_ins_deleted += 1
                continue
            try:
                if self._delete_opt_in(opt_in_id, cutoff):
                    result.opt_ins_deleted += 1
            except Exception as e:
                logger.error("Cleanup failed for opt-in %s", opt_in_id, exc_info=True)
                result.errors.append({"kind": "cleanup", "opt_in_id": opt_in_id, "message": str(e)})

        job_cutoff = now - timedelta(days=days)
        with get_session() as session:
            q = session.query(MatchingJob).filter(MatchingJob.started_at < job_cutoff)
            if dry_run:
                result.jobs_deleted = q.count()
            else:
                result.jobs_deleted = q.delete(synchronize_session=False)
                session.commit()

        logger.info("Cleanup%s before %s: %d ride(s), %d participant(s), %d opt-in(s), %d job(s)",
                    " (dry run)" if dry_run else "", cutoff, result.rides_deleted,
                    result.participants_deleted, result.opt_ins_deleted, result.jobs_deleted)
        return result

    def _delete_ride(self, ride_id: int, cutoff: date) -> int:
        """Delete one ride and its participants in a single transaction."""
        session = get_session()
        try:
            # re-check inside the transaction; the ride may have changed since listing
            still_purgeable = (
                session.query(Ride)
                .filter(Ride.id == ride_id, Ride.commute_date < cutoff,
                        Ride.status.in_(PURGEABLE_RIDE_STATUSES))
                .count()
            )
            if not still_purgeable:
                session.rollback()
                return 0
            n = (
                session.query(Participant)
                .filter(Participant.ride_id == ride_id)
                .delete(synchronize_session=False)
            )
            session.query(Ride).filter(Ride.id == ride_id).delete(synchronize_session=False)
            session.commit()
            return n
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _purgeable_opt_in_ids(self, session, cutoff: date, ignore_ride_ids=()) -> List[int]:
        referenced = select(Participant.opt_in_id)
        if ignore_ride_ids:
            referenced = referenced.where(Participant.ride_id.notin_(list(ignore_ride_ids)))
        rows = (
            session.query(OptIn.id)
            .filter(
                OptIn.commute_date < cutoff,
                OptIn.status.in_(PURGEABLE_OPT_IN_STATUSES),
                OptIn.id.notin_(referenced),
            )
            .order_by(OptIn.id)
            .all()
        )
        return [r[0] for r in rows]

    def _delete_opt_in(self, opt_in_id: int, cutoff: date) -> bool:
        with get_session() as session:
            referenced = select(Participant.opt_in_id).where(Participant.opt_in_id == opt_in_id)
            n = (
                session.query(OptIn)
                .filter(
                    OptIn.id == opt_in_id,
                    OptIn.commute_date < cutoff,
                    OptIn.status.in_(PURGEABLE_OPT_IN_STATUSES),
                    OptIn.id.notin_(referenced),
                )
                .delete(synchronize_session=False)
            )
            session.commit()
            return n == 1

    # ────────────────────────── reminders ──────────────────────────────────

    def send_reminders(self, commute_date: Optional[date] = None, now: Optional[datetime] = None) -> ReminderResult:
        """REMINDER for every confirmed ride on the date (tomorrow by default)."""
        now = now or utc_now()
        commute_date = commute_date or (now.date() + timedelta(days=1))
        result = ReminderResult(commute_date=commute_date.isoformat())
        with get_session() as session:
            ride_ids = [
                r[0] for r in session.query(Ride.id)
                .filter(Ride.commute_date == commute_date, Ride.status == RideStatus.CONFIRMED)
                .order_by(Ride.id)
                .all()
            ]
        for ride_id in ride_ids:
            result.processed += 1
            if self.dispatcher is None:
                continue
            try:
                sent = self.dispatcher.dispatch(NotificationEvent.REMINDER, ride_id)
            except Exception as e:
                logger.error("Reminder failed for ride %s", ride_id, exc_info=True)
                result.errors.append({"kind": "notification", "ride_id": ride_id, "message": str(e)})
                continue
            result.sent += sent.sent
            result.failed += sent.failed
        return result
