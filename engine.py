"""
Matching engine entry points.

``MatchingEngine`` wires the components together and exposes the operations a
scheduler, the HTTP app or an operator calls: daily matching, retrying stale
opt-ins, the deadline sweep, cleanup, reminders and schedule expansion. Every
entry point reports partial success through a structured result instead of
raising on the first failed entity. Non-dry-run invocations are recorded in
the matching job history.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional
import logging

from config import MatchingConfig, get_settings
from db import get_lock, get_session, utc_now
from exceptions import InvariantViolationError, OptInConflictError
from formation import form_ride
from lifecycle import ConfirmationManager, ResponseResult
from matching import build_candidate_groups, load_pool
from models import JobStatus, MatchingJob, OptIn, OptInStatus, RideStatus
from notifications import NotificationDispatcher, NotificationEvent, build_sink
from schedules import ExpansionResult, expand_schedules
from scoring import CompatibilityScorer
from sweeper import CleanupResult, ReminderResult, Sweeper, SweepResult
import store

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    job: str
    commute_date: str
    dry_run: bool = False
    processed: int = 0
    created: int = 0
    skipped: int = 0
    errors: List[dict] = field(default_factory=list)
    rides: List[int] = field(default_factory=list)
    proposals: List[dict] = field(default_factory=list)
    notifications: List[dict] = field(default_factory=list)
    retried: List[int] = field(default_factory=list)
    retries_exhausted: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class MatchingEngine:
    def __init__(self, config: Optional[MatchingConfig] = None,
                 scorer: Optional[CompatibilityScorer] = None,
                 dispatcher: Optional[NotificationDispatcher] = None):
        self.config = config or get_settings()
        self.scorer = scorer or CompatibilityScorer(self.config)
        self.dispatcher = dispatcher or NotificationDispatcher(build_sink(self.config))
        self.lifecycle = ConfirmationManager(self.config, self.dispatcher)
        self.sweeper = Sweeper(self.config, self.lifecycle, self.dispatcher)

    def close(self):
        """Release the HTTP clients held by the scorer and the notification sink."""
        self.scorer.close()
        self.dispatcher.close()

    # ────────────────────────── job history ────────────────────────────────

    def _start_job(self, job_type: str, target_date: Optional[date]) -> int:
        with get_session() as session:
            job = MatchingJob(job_type=job_type, target_date=target_date)
            session.add(job)
            session.commit()
            session.refresh(job)
            return job.id

    def _finish_job(self, job_id: int, results: Optional[dict], error: Optional[str] = None):
        with get_session() as session:
            job = session.get(MatchingJob, job_id)
            job.status = JobStatus.FAILED if error else JobStatus.COMPLETED
            job.completed_at = utc_now()
            job.results = results
            job.error_message = error
            session.add(job)
            session.commit()

    def _as_job(self, job_type: str, target_date: Optional[date], dry_run: bool, work: Callable):
        job_id = None if dry_run else self._start_job(job_type, target_date)
        try:
            result = work()
        except Exception as e:
            logger.error("[%s] failed", job_type, exc_info=True)
            if job_id is not None:
                self._finish_job(job_id, None, str(e))
            raise
        if job_id is not None:
            self._finish_job(job_id, result.to_dict())
        return result

    # ────────────────────────── matching ───────────────────────────────────

    def run_matching(self, commute_date: date, dry_run: bool = False,
                     now: Optional[datetime] = None) -> RunResult:
        """Group, score and form rides from every pending opt-in for the date."""
        result = RunResult(job="matching", commute_date=commute_date.isoformat(), dry_run=dry_run)
        return self._as_job("matching", commute_date, dry_run,
                            lambda: self._match(result, commute_date, dry_run, now or utc_now()))

    def retry_failed_matches(self, commute_date: Optional[date] = None, dry_run: bool = False,
                             now: Optional[datetime] = None) -> RunResult:
        """Re-feed opt-ins left unmatched for ``retry_after_hours`` into grouping.

        Each retried opt-in has its retry count bumped. Opt-ins at the retry
        cap stay PENDING_MATCH but are left out and reported as exhausted.
        """
        now = now or utc_now()
        commute_date = commute_date or now.date()
        result = RunResult(job="retry", commute_date=commute_date.isoformat(), dry_run=dry_run)

        def work():
            cap = self.config.max_match_retries
            cutoff = now - timedelta(hours=self.config.retry_after_hours)
            with get_session() as session:
                stale = store.stale_pending_opt_ins(session, commute_date, cutoff, cap)
                result.retries_exhausted = [o.id for o in store.exhausted_opt_ins(session, commute_date, cap)]
                if not stale:
                    logger.info("No opt-ins due for retry on %s", commute_date)
                    return result
                pool_ids = [o.id for o in store.pending_opt_ins(session, commute_date, max_retries=cap)]
                result.retried = [o.id for o in stale]
                if not dry_run:
                    store.mark_retried(session, result.retried, now)
                    session.commit()
            for opt_in_id in result.retries_exhausted:
                logger.warning("Opt-in %s reached the retry cap and needs user attention", opt_in_id)
            return self._match(result, commute_date, dry_run, now, pool_ids)

        return self._as_job("retry", commute_date, dry_run, work)

    def _match(self, result: RunResult, commute_date: date, dry_run: bool, now: datetime,
               opt_in_ids: Optional[List[int]] = None) -> RunResult:
        lock = get_lock(f"matching:{commute_date.isoformat()}")
        if not lock.acquire(timeout=self.config.matching_lock_timeout_seconds):
            result.errors.append({"kind": "locked", "message": f"matching for {commute_date} is already running"})
            return result
        try:
            with get_session() as session:
                if opt_in_ids is None:
                    opt_ins = store.pending_opt_ins(session, commute_date)
                else:
                    opt_ins = (
                        session.query(OptIn)
                        .filter(OptIn.id.in_(opt_in_ids), OptIn.status == OptInStatus.PENDING_MATCH)
                        .order_by(OptIn.created_at, OptIn.id)
                        .all()
                    ) if opt_in_ids else []
                entries, invalid = load_pool(session, commute_date, opt_ins)
            result.processed = len(opt_ins)
            for opt_in_id, reason in invalid:
                result.skipped += 1
                result.errors.append({"kind": "validation", "opt_in_id": opt_in_id, "message": reason})

            groups = build_candidate_groups(entries, self.config.default_driver_capacity)
            scores = self.scorer.score_groups(groups)
            for group, score in zip(groups, scores):
                accepted = score.confidence_score >= self.config.acceptance_threshold
                proposal = group.summary()
                proposal.update(score=score.to_dict(), accepted=accepted)
                result.proposals.append(proposal)
                if not accepted:
                    result.skipped += 1
                    logger.info("Group of driver %s below threshold (%.2f < %.2f); left for a later run",
                                group.driver.user_id, score.confidence_score, self.config.acceptance_threshold)
                    continue
                if dry_run:
                    continue
                try:
                    ride_id = form_ride(group, score, self.config, now)
                except OptInConflictError as e:
                    result.skipped += 1
                    logger.warning("Group of driver %s dropped: %s", group.driver.user_id, e.message)
                    result.errors.append({"kind": "conflict", "message": e.message, **e.details})
                    continue
                except InvariantViolationError as e:
                    result.skipped += 1
                    result.errors.append({"kind": "invariant", "message": e.message, **e.details})
                    continue
                except Exception as e:
                    result.skipped += 1
                    logger.error("Ride formation failed for driver %s", group.driver.user_id, exc_info=True)
                    result.errors.append({"kind": "formation", "message": str(e), "opt_in_ids": group.opt_in_ids})
                    continue
                result.created += 1
                result.rides.append(ride_id)
                try:
                    sent = self.dispatcher.dispatch(NotificationEvent.MATCH, ride_id)
                except Exception as e:
                    logger.error("MATCH notification failed for ride %s", ride_id, exc_info=True)
                    result.errors.append({"kind": "notification", "ride_id": ride_id, "message": str(e)})
                    continue
                result.notifications.append(sent.to_dict())
        finally:
            lock.release()

        logger.info("[%s] %s%s: processed %d, created %d, skipped %d, errors %d",
                    result.job, commute_date, " (dry run)" if dry_run else "",
                    result.processed, result.created, result.skipped, len(result.errors))
        return result

    # ────────────────────────── sweeps ─────────────────────────────────────

    def sweep_deadlines(self, now: Optional[datetime] = None) -> SweepResult:
        return self._as_job("sweep", None, False, lambda: self.sweeper.sweep_deadlines(now))

    def cleanup_expired_data(self, retention_days: Optional[int] = None, dry_run: bool = False,
                             now: Optional[datetime] = None) -> CleanupResult:
        return self._as_job("cleanup", None, dry_run,
                            lambda: self.sweeper.cleanup_expired_data(retention_days, dry_run, now))

    def send_reminders(self, commute_date: Optional[date] = None,
                       now: Optional[datetime] = None) -> ReminderResult:
        return self._as_job("reminders", commute_date, False,
                            lambda: self.sweeper.send_reminders(commute_date, now))

    def expand_schedules(self, commute_date: date, dry_run: bool = False) -> ExpansionResult:
        return self._as_job("schedules", commute_date, dry_run,
                            lambda: expand_schedules(self.config, commute_date, dry_run))

    # ────────────────────────── participant actions ────────────────────────

    def respond(self, ride_id: int, user_id: int, accept: bool,
                now: Optional[datetime] = None) -> ResponseResult:
        return self.lifecycle.respond(ride_id, user_id, accept, now)

    def advance_ride(self, ride_id: int, status: RideStatus) -> str:
        return self.lifecycle.advance_ride(ride_id, status)

    # ────────────────────────── read models ────────────────────────────────

    def ride_details(self, ride_id: int) -> dict:
        with get_session() as session:
            ride = store.get_ride(session, ride_id)
            participants = store.participants_for_ride(session, ride_id)
            return {
                "id": ride.id,
                "driver_user_id": ride.driver_user_id,
                "commute_date": ride.commute_date.isoformat(),
                "status": ride.status.value,
                "estimated_cost_per_person": ride.estimated_cost_per_person,
                "estimated_total_time": ride.estimated_total_time,
                "pickup_order": ride.pickup_order,
                "confidence_score": ride.confidence_score,
                "rationale_text": ride.rationale_text,
                "cancel_reason": ride.cancel_reason,
                "participants": [
                    {
                        "user_id": p.user_id,
                        "opt_in_id": p.opt_in_id,
                        "is_driver": p.is_driver,
                        "status": p.status.value,
                        "confirmation_deadline": p.confirmation_deadline.isoformat()
                        if p.confirmation_deadline else None,
                    }
                    for p in participants
                ],
            }

    def opt_in_status(self, opt_in_id: int) -> dict:
        with get_session() as session:
            o = store.get_opt_in(session, opt_in_id)
            return {
                "id": o.id,
                "user_id": o.user_id,
                "commute_date": o.commute_date.isoformat(),
                "window": [o.window_start.strftime("%H:%M"), o.window_end.strftime("%H:%M")],
                "status": o.status.value,
                "is_automatic": o.is_automatic,
                "retry_count": o.retry_count,
                "retries_exhausted": o.status == OptInStatus.PENDING_MATCH
                and o.retry_count >= self.config.max_match_retries,
            }
