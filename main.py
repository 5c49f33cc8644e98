from contextlib import asynccontextmanager
from datetime import date, time
from typing import Optional

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.responses import JSONResponse
from starlette.requests import Request
from starlette.routing import Route
import logging

from db import init_db, get_session
from engine import MatchingEngine
from exceptions import (
    BadRequestError,
    CommuteError,
    InvalidOptInError,
    NotFoundError,
    OptInConflictError,
    ResponseRejectedError,
)
from models import RideStatus
import store

logger = logging.getLogger(__name__)

STATUS_CODES = {
    BadRequestError: 400,
    InvalidOptInError: 400,
    NotFoundError: 404,
    OptInConflictError: 409,
    ResponseRejectedError: 409,
}


def _engine(request: Request) -> MatchingEngine:
    return request.app.state.engine


async def _payload(request: Request) -> dict:
    body = await request.body()
    if not body:
        return {}
    try:
        payload = await request.json()
    except ValueError:
        raise BadRequestError("body is not valid JSON")
    if not isinstance(payload, dict):
        raise BadRequestError("body must be a JSON object")
    return payload


def _date(value, key: str) -> date:
    if value is None:
        raise BadRequestError(f"missing {key}")
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise BadRequestError(f"{key} must be an ISO date (YYYY-MM-DD)")


def _time(value, key: str) -> time:
    try:
        return time.fromisoformat(value)
    except (TypeError, ValueError):
        raise BadRequestError(f"{key} must be a time (HH:MM)")


def _int(value, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise BadRequestError(f"{key} must be an integer")
    return value


def _bool(payload: dict, key: str) -> bool:
    value = payload.get(key, False)
    if not isinstance(value, bool):
        raise BadRequestError(f"{key} must be true or false")
    return value


async def handle_commute_error(request: Request, exc: CommuteError):
    status = next((code for cls, code in STATUS_CODES.items() if isinstance(exc, cls)), 400)
    return JSONResponse(exc.to_dict(), status_code=status)


# ────────────────────────── opt-ins ─────────────────────────────────────────

async def create_opt_in(request: Request):
    payload = await _payload(request)
    for k in ("user_id", "commute_date", "window_start", "window_end"):
        if k not in payload:
            return JSONResponse({"error": f"missing {k}"}, status_code=400)
    user_id = _int(payload["user_id"], "user_id")
    commute_date = _date(payload["commute_date"], "commute_date")
    start = _time(payload["window_start"], "window_start")
    end = _time(payload["window_end"], "window_end")
    location_id = payload.get("pickup_location_id")
    config = _engine(request).config
    with get_session() as session:
        opt_in = store.create_opt_in(session, config, user_id, commute_date, start, end,
                                     pickup_location_id=location_id)
        session.commit()
        opt_in_id = opt_in.id
    return JSONResponse({"opt_in_id": opt_in_id, "status": "PENDING_MATCH"})


async def cancel_opt_in(request: Request):
    opt_in_id = int(request.path_params["opt_in_id"])
    with get_session() as session:
        opt_in = store.cancel_opt_in(session, opt_in_id)
        session.commit()
        status = opt_in.status.value
    return JSONResponse({"opt_in_id": opt_in_id, "status": status})


async def get_opt_in(request: Request):
    opt_in_id = int(request.path_params["opt_in_id"])
    return JSONResponse(_engine(request).opt_in_status(opt_in_id))


async def pending_opt_ins(request: Request):
    commute_date = _date(request.query_params.get("date"), "date")
    with get_session() as session:
        rows = store.pending_opt_ins(session, commute_date)
        out = []
        for o in rows:
            out.append({
                "id": o.id,
                "user_id": o.user_id,
                "window": [o.window_start.strftime("%H:%M"), o.window_end.strftime("%H:%M")],
                "retry_count": o.retry_count,
                "status": o.status.value,
            })
    return JSONResponse(out)


async def add_location(request: Request):
    user_id = int(request.path_params["user_id"])
    payload = await _payload(request)
    for k in ("name", "lat", "lng"):
        if k not in payload:
            return JSONResponse({"error": f"missing {k}"}, status_code=400)
    with get_session() as session:
        loc = store.add_pickup_location(session, user_id, payload["name"], payload["lat"], payload["lng"],
                                        make_default=_bool(payload, "is_default"))
        session.commit()
        out = {"location_id": loc.id, "is_default": loc.is_default}
    return JSONResponse(out)


# ────────────────────────── triggers ────────────────────────────────────────

async def trigger_match(request: Request):
    payload = await _payload(request)
    commute_date = _date(payload.get("date"), "date")
    res = await run_in_threadpool(_engine(request).run_matching, commute_date, _bool(payload, "dry_run"))
    return JSONResponse(res.to_dict())


async def retry_matches(request: Request):
    payload = await _payload(request)
    commute_date = _date(payload["date"], "date") if payload.get("date") else None
    res = await run_in_threadpool(_engine(request).retry_failed_matches, commute_date)
    return JSONResponse(res.to_dict())


async def sweep_deadlines(request: Request):
    res = await run_in_threadpool(_engine(request).sweep_deadlines)
    return JSONResponse(res.to_dict())


async def cleanup(request: Request):
    payload = await _payload(request)
    days = payload.get("retention_days")
    if days is not None:
        days = _int(days, "retention_days")
        if days < 0:
            return JSONResponse({"error": "retention_days must not be negative"}, status_code=400)
    res = await run_in_threadpool(_engine(request).cleanup_expired_data, days, _bool(payload, "dry_run"))
    return JSONResponse(res.to_dict())


async def reminders(request: Request):
    payload = await _payload(request)
    commute_date = _date(payload["date"], "date") if payload.get("date") else None
    res = await run_in_threadpool(_engine(request).send_reminders, commute_date)
    return JSONResponse(res.to_dict())


async def expand_schedules(request: Request):
    payload = await _payload(request)
    commute_date = _date(payload.get("date"), "date")
    res = await run_in_threadpool(_engine(request).expand_schedules, commute_date,
                                  _bool(payload, "dry_run"))
    return JSONResponse(res.to_dict())


# ────────────────────────── rides ───────────────────────────────────────────

async def get_ride(request: Request):
    ride_id = int(request.path_params["ride_id"])
    return JSONResponse(_engine(request).ride_details(ride_id))


async def _respond(request: Request, accept: bool):
    ride_id = int(request.path_params["ride_id"])
    payload = await _payload(request)
    if "user_id" not in payload:
        return JSONResponse({"error": "missing user_id"}, status_code=400)
    user_id = _int(payload["user_id"], "user_id")
    res = await run_in_threadpool(_engine(request).respond, ride_id, user_id, accept)
    return JSONResponse(res.to_dict())


async def accept_ride(request: Request):
    return await _respond(request, True)


async def decline_ride(request: Request):
    return await _respond(request, False)


async def ride_status(request: Request):
    ride_id = int(request.path_params["ride_id"])
    payload = await _payload(request)
    try:
        status = RideStatus(payload.get("status"))
    except ValueError:
        return JSONResponse({"error": f"unknown status {payload.get('status')!r}"}, status_code=400)
    new_status = _engine(request).advance_ride(ride_id, status)
    return JSONResponse({"ride_id": ride_id, "status": new_status})


# ────────────────────────── telegram ────────────────────────────────────────

CALLBACK_ACTIONS = {"accept_ride_": True, "decline_ride_": False}


async def telegram_webhook(request: Request):
    """Map inline-keyboard callbacks back to accept/decline for the chat's user.

    Always answers 200 so Telegram does not redeliver the update.
    """
    update = await _payload(request)
    callback = update.get("callback_query") or {}
    data = callback.get("data") or ""
    accept = None
    ride_id = None
    for prefix, flag in CALLBACK_ACTIONS.items():
        if data.startswith(prefix) and data[len(prefix):].isdigit():
            accept, ride_id = flag, int(data[len(prefix):])
    if ride_id is None:
        return JSONResponse({"ok": True, "ignored": True})

    chat_id = (callback.get("message") or {}).get("chat", {}).get("id") or (callback.get("from") or {}).get("id")
    with get_session() as session:
        user = store.user_by_telegram_chat(session, chat_id) if chat_id is not None else None
        user_id = user.id if user else None
    if user_id is None:
        logger.warning("Telegram callback %r from unknown chat %s", data, chat_id)
        return JSONResponse({"ok": False, "error": "unknown chat"})
    try:
        res = await run_in_threadpool(_engine(request).respond, ride_id, user_id, accept)
    except CommuteError as e:
        logger.info("Telegram callback %r rejected: %s", data, e.message)
        return JSONResponse({"ok": False, "error": e.message})
    return JSONResponse({"ok": True, **res.to_dict()})


routes = [
    Route("/opt-ins", create_opt_in, methods=["POST"]),
    Route("/opt-ins/pending", pending_opt_ins, methods=["GET"]),
    Route("/opt-ins/{opt_in_id:int}", get_opt_in, methods=["GET"]),
    Route("/opt-ins/{opt_in_id:int}/cancel", cancel_opt_in, methods=["POST"]),
    Route("/users/{user_id:int}/locations", add_location, methods=["POST"]),
    Route("/match/trigger", trigger_match, methods=["POST"]),
    Route("/match/retry", retry_matches, methods=["POST"]),
    Route("/sweep/deadlines", sweep_deadlines, methods=["POST"]),
    Route("/cleanup", cleanup, methods=["POST"]),
    Route("/reminders", reminders, methods=["POST"]),
    Route("/schedules/expand", expand_schedules, methods=["POST"]),
    Route("/rides/{ride_id:int}", get_ride, methods=["GET"]),
    Route("/rides/{ride_id:int}/accept", accept_ride, methods=["POST"]),
    Route("/rides/{ride_id:int}/decline", decline_ride, methods=["POST"]),
    Route("/rides/{ride_id:int}/status", ride_status, methods=["POST"]),
    Route("/telegram/webhook", telegram_webhook, methods=["POST"]),
]


def create_app(matching_engine: Optional[MatchingEngine] = None) -> Starlette:
    @asynccontextmanager
    async def lifespan(app):
        init_db()
        yield
        app.state.engine.close()

    app = Starlette(
        debug=False,
        routes=routes,
        lifespan=lifespan,
        exception_handlers={CommuteError: handle_commute_error},
    )
    app.state.engine = matching_engine or MatchingEngine()
    return app


app = create_app()
