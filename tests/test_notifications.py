import json

import httpx

from conftest import COMMUTE_DATE, RUN_AT, RecordingSink, T, make_driver, make_opt_in, make_user
from config import MatchingConfig
from notifications import (
    LogSink,
    NotificationDispatcher,
    NotificationEvent,
    NotificationSink,
    SendResult,
    TelegramSink,
    build_sink,
)


def four_seat_ride(matcher, chatless=()):
    d = make_driver("D", capacity=4)
    riders = [make_user(name, chat=name not in chatless) for name in ("R1", "R2", "R3")]
    make_opt_in(d, T(8), T(9))
    for r in riders:
        make_opt_in(r, T(8), T(9))
    res = matcher.run_matching(COMMUTE_DATE, now=RUN_AT)
    assert res.created == 1
    return res, d, riders


class ExplodingSink(NotificationSink):
    def __init__(self, bad_chat):
        self.bad_chat = bad_chat
        self.delivered = []

    def send(self, recipient_channel_id, event_type, payload):
        if recipient_channel_id == self.bad_chat:
            raise ConnectionError("socket closed")
        self.delivered.append(recipient_channel_id)
        return SendResult(delivered=True)


# ────────────────────────── dispatcher ──────────────────────────────────────

def test_match_goes_to_pending_riders_only(matcher, sink):
    res, d, riders = four_seat_ride(matcher)
    assert res.notifications[0]["sent"] == 3
    assert sink.recipients(NotificationEvent.MATCH) == sorted(r.telegram_chat_id for r in riders)
    assert d.telegram_chat_id not in sink.recipients(NotificationEvent.MATCH)


def test_match_message_offers_accept_and_decline(matcher, sink):
    res, _, _ = four_seat_ride(matcher)
    ride_id = res.rides[0]
    _, _, payload = sink.sent[0]
    assert [a["callback"] for a in payload["actions"]] == [f"accept_ride_{ride_id}", f"decline_ride_{ride_id}"]
    assert "Ride Match Found" in payload["text"]
    assert "42.50" in payload["text"]


def test_one_failed_recipient_does_not_block_others(make_engine, sink):
    matcher = make_engine()
    res, _, riders = four_seat_ride(matcher, chatless=("R2",))
    sink.fail_for.add(riders[2].telegram_chat_id)
    result = matcher.dispatcher.dispatch(NotificationEvent.MATCH, res.rides[0])

    assert result.sent == 1
    assert result.failed == 2
    assert result.success is False
    assert f"No channel identity for user {riders[1].id}" in result.errors
    assert any("bot was blocked" in e for e in result.errors)


def test_sink_exception_is_recorded_per_recipient(matcher, sink):
    res, _, riders = four_seat_ride(matcher)
    dispatcher = NotificationDispatcher(ExplodingSink(riders[0].telegram_chat_id))
    result = dispatcher.dispatch(NotificationEvent.MATCH, res.rides[0])
    assert result.sent == 2
    assert result.failed == 1
    assert "socket closed" in result.errors[0]


def test_unknown_ride_is_reported_not_raised():
    result = NotificationDispatcher(RecordingSink()).dispatch(NotificationEvent.CONFIRMATION, 4242)
    assert result.sent == 0
    assert result.errors == ["Ride 4242 not found"]


def test_cancellation_carries_reason(matcher, sink):
    res, _, _ = four_seat_ride(matcher)
    matcher.dispatcher.dispatch(NotificationEvent.CANCELLATION, res.rides[0], reason="Driver unavailable")
    texts = [p["text"] for _, ev, p in sink.sent if ev == NotificationEvent.CANCELLATION]
    assert len(texts) == 4
    assert all("Driver unavailable" in t for t in texts)


# ────────────────────────── telegram sink ───────────────────────────────────

def test_telegram_sink_posts_send_message():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})

    telegram = TelegramSink("123:abc", client=httpx.Client(transport=httpx.MockTransport(handler)))
    payload = {"text": "<b>Ride Match Found!</b>",
               "actions": [{"label": "Accept Ride", "callback": "accept_ride_7"},
                           {"label": "Decline Ride", "callback": "decline_ride_7"}]}
    result = telegram.send(555, NotificationEvent.MATCH, payload)

    assert result.delivered is True
    assert str(seen[0].url) == "https://api.telegram.org/bot123:abc/sendMessage"
    body = json.loads(seen[0].content)
    assert body["chat_id"] == 555
    assert body["parse_mode"] == "HTML"
    assert body["reply_markup"]["inline_keyboard"][0][0] == {"text": "Accept Ride", "callback_data": "accept_ride_7"}


def test_telegram_sink_reports_api_errors():
    def handler(request):
        return httpx.Response(403, json={"ok": False, "description": "Forbidden: bot was blocked by the user"})

    telegram = TelegramSink("123:abc", client=httpx.Client(transport=httpx.MockTransport(handler)))
    result = telegram.send(555, NotificationEvent.REMINDER, {"text": "hi"})
    assert result.delivered is False
    assert "bot was blocked" in result.error


def test_telegram_sink_reports_timeouts():
    def handler(request):
        raise httpx.ConnectTimeout("timed out")

    telegram = TelegramSink("123:abc", client=httpx.Client(transport=httpx.MockTransport(handler)))
    result = telegram.send(555, NotificationEvent.REMINDER, {"text": "hi"})
    assert result.delivered is False
    assert "timed out" in result.error


def test_build_sink_picks_channel_from_config():
    assert isinstance(build_sink(MatchingConfig(_env_file=None)), LogSink)
    assert isinstance(build_sink(MatchingConfig(_env_file=None, telegram_bot_token="123:abc")), TelegramSink)
