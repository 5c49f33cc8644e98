"""Operational CLI for the matching engine.

Run one entry point and print its structured result as JSON, e.g.

    commute-match match --date 2026-06-18 --dry-run
    commute-match cleanup --retention-days 30
"""
from datetime import date
import argparse
import json
import logging
import sys

from db import init_db
from engine import MatchingEngine


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO date: {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="commute-match", description="Commute matching engine operations")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    p = sub.add_parser("match", help="Run matching for a commute date")
    p.add_argument("--date", type=_iso_date, required=True)
    p.add_argument("--dry-run", action="store_true", help="Report proposals without writing")

    p = sub.add_parser("retry", help="Retry opt-ins left unmatched")
    p.add_argument("--date", type=_iso_date, help="Commute date (default: today)")
    p.add_argument("--dry-run", action="store_true")

    sub.add_parser("sweep", help="Expire overdue confirmations and settle rides")

    p = sub.add_parser("cleanup", help="Purge finished rides and dead opt-ins")
    p.add_argument("--retention-days", type=int, default=None)
    p.add_argument("--dry-run", action="store_true")

    p = sub.add_parser("remind", help="Send pickup reminders for confirmed rides")
    p.add_argument("--date", type=_iso_date, help="Commute date (default: tomorrow)")

    p = sub.add_parser("expand-schedules", help="Create opt-ins from weekly schedules")
    p.add_argument("--date", type=_iso_date, required=True)
    p.add_argument("--dry-run", action="store_true")
    return parser


def run(args, engine: MatchingEngine) -> dict:
    if args.command == "match":
        return engine.run_matching(args.date, dry_run=args.dry_run).to_dict()
    if args.command == "retry":
        return engine.retry_failed_matches(args.date, dry_run=args.dry_run).to_dict()
    if args.command == "sweep":
        return engine.sweep_deadlines().to_dict()
    if args.command == "cleanup":
        if args.retention_days is not None and args.retention_days < 0:
            raise SystemExit("--retention-days must not be negative")
        return engine.cleanup_expired_data(args.retention_days, dry_run=args.dry_run).to_dict()
    if args.command == "remind":
        return engine.send_reminders(args.date).to_dict()
    if args.command == "expand-schedules":
        return engine.expand_schedules(args.date, dry_run=args.dry_run).to_dict()
    raise SystemExit(f"unknown command {args.command}")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    if args.command == "init-db":
        print(json.dumps({"status": "initialized"}))
        return 0
    engine = MatchingEngine()
    try:
        result = run(args, engine)
    finally:
        engine.close()
    print(json.dumps(result, indent=2, default=str))
    return 1 if result.get("errors") else 0


if __name__ == "__main__":
    sys.exit(main())
