"""commute_schema

Revision ID: 5c81e0d2a4f7
Revises: 
Create Date: 2026-10-19 15:10:12.408316

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5c81e0d2a4f7'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

user_role = sa.Enum("DRIVER", "RIDER", name="userrole")
opt_in_status = sa.Enum("PENDING_MATCH", "MATCHED", "CANCELLED", name="optinstatus")
ride_status = sa.Enum(
    "PROPOSED", "PENDING_CONFIRMATION", "CONFIRMED", "IN_PROGRESS", "COMPLETED", "CANCELLED",
    name="ridestatus",
)
participant_status = sa.Enum("PENDING", "ACCEPTED", "DECLINED", "NO_RESPONSE", name="participantstatus")
job_status = sa.Enum("RUNNING", "COMPLETED", "FAILED", name="jobstatus")


def upgrade() -> None:
    """Create tables: user, pickuplocation, optin, scheduledoptin, ride, participant, matchingjob."""
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("role", user_role, nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=True),
        sa.Column("telegram_chat_id", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_telegram_chat_id", "user", ["telegram_chat_id"])
    op.create_table(
        "pickuplocation",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lng", sa.Float(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pickuplocation_user_id", "pickuplocation", ["user_id"])
    op.create_table(
        "optin",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("commute_date", sa.Date(), nullable=False),
        sa.Column("window_start", sa.Time(), nullable=False),
        sa.Column("window_end", sa.Time(), nullable=False),
        sa.Column("pickup_location_id", sa.Integer(), nullable=True),
        sa.Column("status", opt_in_status, nullable=False, server_default="PENDING_MATCH"),
        sa.Column("is_automatic", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.ForeignKeyConstraint(["pickup_location_id"], ["pickuplocation.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "commute_date"),
    )
    op.create_index("ix_optin_user_id", "optin", ["user_id"])
    op.create_index("ix_optin_commute_date", "optin", ["commute_date"])
    op.create_index("ix_optin_status", "optin", ["status"])
    op.create_index("ix_optin_created_at", "optin", ["created_at"])
    op.create_table(
        "scheduledoptin",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("pickup_location_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.ForeignKeyConstraint(["pickup_location_id"], ["pickuplocation.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scheduledoptin_user_id", "scheduledoptin", ["user_id"])
    op.create_table(
        "ride",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("driver_user_id", sa.Integer(), nullable=False),
        sa.Column("commute_date", sa.Date(), nullable=False),
        sa.Column("status", ride_status, nullable=False, server_default="PENDING_CONFIRMATION"),
        sa.Column("estimated_cost_per_person", sa.Float(), nullable=False, server_default="0"),
        sa.Column("estimated_total_time", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pickup_order", sa.JSON(), nullable=True),
        sa.Column("confidence_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("rationale_text", sa.String(), nullable=False, server_default=""),
        sa.Column("score_source", sa.String(), nullable=False, server_default="service"),
        sa.Column("cancel_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["driver_user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ride_driver_user_id", "ride", ["driver_user_id"])
    op.create_index("ix_ride_commute_date", "ride", ["commute_date"])
    op.create_index("ix_ride_status", "ride", ["status"])
    op.create_table(
        "participant",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("ride_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("opt_in_id", sa.Integer(), nullable=False),
        sa.Column("pickup_location_id", sa.Integer(), nullable=True),
        sa.Column("is_driver", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", participant_status, nullable=False, server_default="PENDING"),
        sa.Column("confirmation_deadline", sa.DateTime(), nullable=True),
        sa.Column("responded_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["ride_id"], ["ride.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.ForeignKeyConstraint(["opt_in_id"], ["optin.id"]),
        sa.ForeignKeyConstraint(["pickup_location_id"], ["pickuplocation.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("ride_id", "user_id"),
    )
    op.create_index("ix_participant_ride_id", "participant", ["ride_id"])
    op.create_index("ix_participant_user_id", "participant", ["user_id"])
    op.create_index("ix_participant_opt_in_id", "participant", ["opt_in_id"])
    op.create_index("ix_participant_status", "participant", ["status"])
    op.create_table(
        "matchingjob",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("target_date", sa.Date(), nullable=True),
        sa.Column("status", job_status, nullable=False, server_default="RUNNING"),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("results", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_matchingjob_started_at", "matchingjob", ["started_at"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("ix_matchingjob_started_at", table_name="matchingjob")
    op.drop_table("matchingjob")
    for ix in ("status", "opt_in_id", "user_id", "ride_id"):
        op.drop_index(f"ix_participant_{ix}", table_name="participant")
    op.drop_table("participant")
    for ix in ("status", "commute_date", "driver_user_id"):
        op.drop_index(f"ix_ride_{ix}", table_name="ride")
    op.drop_table("ride")
    op.drop_index("ix_scheduledoptin_user_id", table_name="scheduledoptin")
    op.drop_table("scheduledoptin")
    for ix in ("created_at", "status", "commute_date", "user_id"):
        op.drop_index(f"ix_optin_{ix}", table_name="optin")
    op.drop_table("optin")
    op.drop_index("ix_pickuplocation_user_id", table_name="pickuplocation")
    op.drop_table("pickuplocation")
    op.drop_index("ix_user_telegram_chat_id", table_name="user")
    op.drop_table("user")
