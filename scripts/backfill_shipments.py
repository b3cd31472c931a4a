"""
Backfill ShipStation shipments into the export sheet for a date range.
Runs directly (not through the API or scheduler), chunk after chunk, until
the range is done. Interrupt it at any point and rerun with --resume.

Usage:
    python scripts/backfill_shipments.py --start 2026-01-01 --end 2026-01-31
    python scripts/backfill_shipments.py --days 14
    python scripts/backfill_shipments.py --resume
    python scripts/backfill_shipments.py --status
"""
import asyncio
import argparse
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timedelta
import pytz
from dateutil import parser as date_parser

from shipsync.config import get_settings
from shipsync.models.base import init_db
from shipsync.scheduler import run_backfill_foreground
from shipsync.services.export_sync_service import ExportSyncService

settings = get_settings()
SHIPSTATION_TZ = pytz.timezone(settings.shipstation_timezone)


def _print_result(result: dict):
    for key in ("state", "status", "rows_fetched", "rows_written", "rows_skipped", "pages_failed", "error"):
        if key in result:
            print(f"  {key:>13}: {result[key]}")
    checkpoint = result.get("checkpoint")
    if checkpoint:
        print(f"  {'checkpoint':>13}: {checkpoint['phase']} @ {checkpoint['cursor']} "
              f"({checkpoint['rows_written']} rows, {checkpoint['chunks']} chunks)")


def main():
    parser = argparse.ArgumentParser(description="Backfill ShipStation shipments into Google Sheets")
    parser.add_argument("--start", help="Range start (ShipStation time), e.g. 2026-01-01")
    parser.add_argument("--end", help="Range end (ShipStation time), defaults to now")
    parser.add_argument("--days", type=int, help="Backfill the last N days instead of --start/--end")
    parser.add_argument("--resume", action="store_true", help="Resume the active backfill")
    parser.add_argument("--status", action="store_true", help="Show the active backfill checkpoint")
    parser.add_argument("--cancel", action="store_true", help="Cancel the active backfill")
    args = parser.parse_args()

    init_db()
    service = ExportSyncService()

    if args.status:
        status = service.backfill_status()
        if not status["active"]:
            print("No backfill in progress")
        else:
            _print_result(status)
        return 0

    if args.cancel:
        result = service.cancel_backfill()
        print("Backfill cancelled" if result["cancelled"] else "No backfill in progress")
        return 0

    if args.resume:
        print("Resuming backfill...")
        result = asyncio.run(run_backfill_foreground())
    else:
        now = datetime.now(SHIPSTATION_TZ).replace(tzinfo=None)
        if args.days:
            start, end = now - timedelta(days=args.days), now
        elif args.start:
            start = date_parser.parse(args.start)
            end = date_parser.parse(args.end) if args.end else now
        else:
            parser.error("Give --start/--end, --days, --resume or --status")
        print(f"Backfilling {start} -> {end}")
        result = asyncio.run(run_backfill_foreground(start, end))

    _print_result(result)
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    sys.exit(main())
