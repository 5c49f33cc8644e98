from typing import Optional, List
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON, UniqueConstraint
from datetime import date, datetime, time
from enum import Enum

from db import utc_now


class UserRole(str, Enum):
    DRIVER = "DRIVER"
    RIDER = "RIDER"


class OptInStatus(str, Enum):
    PENDING_MATCH = "PENDING_MATCH"
    MATCHED = "MATCHED"
    CANCELLED = "CANCELLED"


class RideStatus(str, Enum):
    PROPOSED = "PROPOSED"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ParticipantStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    NO_RESPONSE = "NO_RESPONSE"


class JobStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# rides still waiting on participant responses
OPEN_RIDE_STATUSES = (RideStatus.PROPOSED, RideStatus.PENDING_CONFIRMATION)
# rides that still hold their participants' opt-ins
ACTIVE_RIDE_STATUSES = OPEN_RIDE_STATUSES + (
    RideStatus.CONFIRMED,
    RideStatus.IN_PROGRESS,
    RideStatus.COMPLETED,
)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    role: UserRole = Field(default=UserRole.RIDER)
    capacity: Optional[int] = None  # seats including the driver, drivers only
    telegram_chat_id: Optional[int] = Field(default=None, index=True)


class PickupLocation(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    name: str
    lat: float
    lng: float
    is_default: bool = False


class OptIn(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("user_id", "commute_date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    commute_date: date = Field(index=True)
    window_start: time
    window_end: time
    pickup_location_id: Optional[int] = Field(default=None, foreign_key="pickuplocation.id")
    status: OptInStatus = Field(default=OptInStatus.PENDING_MATCH, index=True)
    is_automatic: bool = False
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now, index=True)


class ScheduledOptIn(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    day_of_week: int  # 0 = Monday, as date.weekday()
    start_time: time
    pickup_location_id: Optional[int] = Field(default=None, foreign_key="pickuplocation.id")
    is_active: bool = True


class Ride(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    driver_user_id: int = Field(foreign_key="user.id", index=True)
    commute_date: date = Field(index=True)
    status: RideStatus = Field(default=RideStatus.PENDING_CONFIRMATION, index=True)
    estimated_cost_per_person: float = 0.0
    estimated_total_time: int = 0  # minutes
    pickup_order: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    confidence_score: float = 0.0
    rationale_text: str = ""
    score_source: str = "service"  # service, fallback
    cancel_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Participant(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("ride_id", "user_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    ride_id: int = Field(foreign_key="ride.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    opt_in_id: int = Field(foreign_key="optin.id", index=True)
    pickup_location_id: Optional[int] = Field(default=None, foreign_key="pickuplocation.id")
    is_driver: bool = False
    status: ParticipantStatus = Field(default=ParticipantStatus.PENDING, index=True)
    confirmation_deadline: Optional[datetime] = None
    responded_at: Optional[datetime] = None


class MatchingJob(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    job_type: str  # matching, retry, sweep, cleanup, reminders, schedules
    target_date: Optional[date] = None
    status: JobStatus = Field(default=JobStatus.RUNNING)
    started_at: datetime = Field(default_factory=utc_now, index=True)
    completed_at: Optional[datetime] = None
    results: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error_message: Optional[str] = None
