"""Expand recurring weekly schedules into daily opt-ins."""
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta
from typing import List
import logging

from config import MatchingConfig
from db import get_session
from exceptions import CommuteError
from models import OptIn, OptInStatus, ScheduledOptIn
import store

logger = logging.getLogger(__name__)


@dataclass
class ExpansionResult:
    commute_date: str
    dry_run: bool
    processed: int = 0
    created: int = 0
    skipped: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def expand_schedules(config: MatchingConfig, commute_date: date, dry_run: bool = False) -> ExpansionResult:
    """Create automatic opt-ins for every active schedule on the date's weekday.

    Users who already have an opt-in for the date are skipped. The window runs
    from the scheduled start for ``scheduled_window_minutes``.
    """
    result = ExpansionResult(commute_date=commute_date.isoformat(), dry_run=dry_run)
    with get_session() as session:
        schedules = (
            session.query(ScheduledOptIn)
            .filter(ScheduledOptIn.day_of_week == commute_date.weekday(),
                    ScheduledOptIn.is_active == True)  # noqa: E712
            .order_by(ScheduledOptIn.id)
            .all()
        )
        for s in schedules:
            result.processed += 1
            exists = (
                session.query(OptIn)
                .filter(OptIn.user_id == s.user_id, OptIn.commute_date == commute_date)
                .first()
            )
            if exists is not None and exists.status != OptInStatus.CANCELLED:
                result.skipped += 1
                continue
            end = (datetime.combine(commute_date, s.start_time)
                   + timedelta(minutes=config.scheduled_window_minutes)).time()
            if dry_run:
                result.created += 1
                continue
            try:
                store.create_opt_in(
                    session, config, s.user_id, commute_date, s.start_time, end,
                    pickup_location_id=s.pickup_location_id, is_automatic=True,
                )
                session.commit()
                result.created += 1
            except CommuteError as e:
                session.rollback()
                logger.warning("Schedule %s not expanded: %s", s.id, e.message)
                result.skipped += 1
                result.errors.append({"kind": "validation", "schedule_id": s.id, "message": e.message})
    logger.info("Expanded schedules for %s: %d created, %d skipped", commute_date, result.created, result.skipped)
    return result
