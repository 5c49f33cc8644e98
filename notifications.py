"""
Notification dispatcher.

Formats participant-facing ride events and hands them to a messaging sink.
Each recipient is delivered independently: a missing channel identity or a
failed send is recorded in the batch result and never blocks the others.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from html import escape
from typing import Dict, List, Optional
import logging

import httpx

from config import MatchingConfig
from db import get_session
from exceptions import NotFoundError
from models import Participant, ParticipantStatus, PickupLocation, Ride, User
import store

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    MATCH = "MATCH"
    CONFIRMATION = "CONFIRMATION"
    REMINDER = "REMINDER"
    CANCELLATION = "CANCELLATION"


@dataclass
class SendResult:
    delivered: bool
    error: Optional[str] = None


class NotificationSink:
    """Outbound messaging channel."""

    def send(self, recipient_channel_id, event_type: NotificationEvent, payload: dict) -> SendResult:
        raise NotImplementedError

    def close(self):
        pass


class LogSink(NotificationSink):
    """Writes messages to the log; used when no messaging channel is configured."""

    def send(self, recipient_channel_id, event_type, payload):
        logger.info("[%s] -> %s: %s", event_type.value, recipient_channel_id, payload.get("text", ""))
        return SendResult(delivered=True)


class TelegramSink(NotificationSink):
    """Sends messages through the Telegram Bot API."""

    API_BASE = "https://api.telegram.org"

    def __init__(self, bot_token: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.bot_token = bot_token
        self.timeout = timeout
        self.client = client or httpx.Client(timeout=timeout)

    def send(self, recipient_channel_id, event_type, payload):
        body = {
            "chat_id": recipient_channel_id,
            "text": payload["text"],
            "parse_mode": "HTML",
            "disable_notification": False,
        }
        actions = payload.get("actions")
        if actions:
            body["reply_markup"] = {
                "inline_keyboard": [[{"text": a["label"], "callback_data": a["callback"]} for a in actions]]
            }
        try:
            resp = self.client.post(
                f"{self.API_BASE}/bot{self.bot_token}/sendMessage", json=body, timeout=self.timeout
            )
            data = resp.json()
        except httpx.HTTPError as e:
            return SendResult(delivered=False, error=f"Telegram request failed: {e}")
        except ValueError:
            return SendResult(delivered=False, error=f"Telegram returned non-JSON (HTTP {resp.status_code})")
        if resp.status_code != 200 or not data.get("ok"):
            return SendResult(delivered=False, error=f"Telegram API error: {data.get('description', resp.status_code)}")
        return SendResult(delivered=True)

    def close(self):
        self.client.close()


def build_sink(config: MatchingConfig) -> NotificationSink:
    if config.telegram_bot_token:
        return TelegramSink(config.telegram_bot_token, timeout=config.notification_timeout_seconds)
    return LogSink()


@dataclass
class DispatchResult:
    event: str
    ride_id: int
    sent: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0 and not self.errors

    def to_dict(self) -> dict:
        d = asdict(self)
        d["success"] = self.success
        return d


# which participants hear about each event
_RECIPIENT_STATUSES = {
    NotificationEvent.MATCH: (ParticipantStatus.PENDING,),
    NotificationEvent.CONFIRMATION: (ParticipantStatus.ACCEPTED,),
    NotificationEvent.REMINDER: (ParticipantStatus.ACCEPTED,),
    NotificationEvent.CANCELLATION: tuple(ParticipantStatus),
}


@dataclass
class _Recipient:
    participant: Participant
    user: User
    location: Optional[PickupLocation]


def _format(event: NotificationEvent, ride: Ride, me: _Recipient, everyone: List[_Recipient],
            driver: Optional[User], reason: Optional[str]) -> dict:
    driver_name = escape(driver.name) if driver else "your driver"
    where = escape(me.location.name) if me.location else "your pickup point"
    others = ", ".join(escape(r.user.name) for r in everyone
                       if r.user.id != me.user.id and not r.participant.is_driver) or "none"
    when = ride.commute_date.isoformat()

    if event == NotificationEvent.MATCH:
        deadline = me.participant.confirmation_deadline
        lines = [
            "<b>Ride Match Found!</b>",
            "",
            f"<b>Date:</b> {when}",
            f"<b>Driver:</b> {driver_name}",
            f"<b>Pickup Location:</b> {where}",
            f"<b>Cost per Person:</b> {ride.estimated_cost_per_person:.2f}",
            f"<b>Other Riders:</b> {others}",
            "",
            "Please confirm your participation"
            + (f" before {deadline.strftime('%H:%M')} UTC." if deadline else "."),
        ]
        actions = [
            {"label": "Accept Ride", "callback": f"accept_ride_{ride.id}"},
            {"label": "Decline Ride", "callback": f"decline_ride_{ride.id}"},
        ]
        return {"text": "\n".join(lines), "actions": actions, "ride_id": ride.id}

    if event == NotificationEvent.CONFIRMATION:
        lines = [
            "<b>Ride Confirmed!</b>",
            "",
            f"<b>Date:</b> {when}",
            f"<b>Driver:</b> {driver_name}",
            f"<b>Pickup Location:</b> {where}",
            f"<b>Riders:</b> {others}",
            f"<b>Estimated Time:</b> {ride.estimated_total_time} min",
        ]
    elif event == NotificationEvent.REMINDER:
        lines = [
            "<b>Pickup Reminder</b>",
            "",
            f"Your shared ride is on {when}.",
            f"<b>Driver:</b> {driver_name}",
            f"<b>Pickup Location:</b> {where}",
        ]
    else:
        lines = [
            "<b>Ride Cancelled</b>",
            "",
            f"Your ride on {when} was cancelled.",
            f"<b>Reason:</b> {escape(reason or 'Ride cancelled')}",
            "",
            "Your opt-in is back in the queue and will be matched again.",
        ]
    return {"text": "\n".join(lines), "ride_id": ride.id}


class NotificationDispatcher:
    def __init__(self, sink: NotificationSink):
        self.sink = sink

    def close(self):
        self.sink.close()

    def dispatch(self, event: NotificationEvent, ride_id: int, reason: Optional[str] = None) -> DispatchResult:
        result = DispatchResult(event=event.value, ride_id=ride_id)
        with get_session() as session:
            try:
                ride = store.get_ride(session, ride_id)
            except NotFoundError as e:
                result.errors.append(e.message)
                return result
            participants = store.participants_for_ride(session, ride_id)
            users: Dict[int, User] = {u.id: u for u in session.query(User).filter(
                User.id.in_([p.user_id for p in participants] + [ride.driver_user_id])).all()}
            everyone = [
                _Recipient(p, users[p.user_id],
                           session.get(PickupLocation, p.pickup_location_id) if p.pickup_location_id else None)
                for p in participants if p.user_id in users
            ]
            driver = users.get(ride.driver_user_id)
            wanted = _RECIPIENT_STATUSES[event]
            recipients = [r for r in everyone if r.participant.status in wanted]
            if event == NotificationEvent.MATCH:
                recipients = [r for r in recipients if not r.participant.is_driver]

            for r in recipients:
                if r.user.telegram_chat_id is None:
                    result.failed += 1
                    result.errors.append(f"No channel identity for user {r.user.id}")
                    continue
                payload = _format(event, ride, r, everyone, driver, reason)
                try:
                    sent = self.sink.send(r.user.telegram_chat_id, event, payload)
                except Exception as e:
                    sent = SendResult(delivered=False, error=str(e))
                if sent.delivered:
                    result.sent += 1
                else:
                    result.failed += 1
                    result.errors.append(f"Send failed for user {r.user.id}: {sent.error}")

        if result.failed:
            logger.warning("%s for ride %s: %d sent, %d failed", event.value, ride_id, result.sent, result.failed)
        else:
            logger.info("%s for ride %s: %d sent", event.value, ride_id, result.sent)
        return result
