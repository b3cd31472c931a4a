"""
Scheduler for the ShipStation export

Uses APScheduler to run the incremental export every sync_interval_minutes
and to chain backfill chunks through one-shot continuation jobs.
"""
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime, timedelta
import asyncio
from typing import Dict, Optional

import pytz
from dateutil import parser as date_parser

from shipsync.config import get_settings
from shipsync.models.base import init_db
from shipsync.services.export_sync_service import ExportSyncService
from shipsync.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler(timezone=pytz.timezone(settings.business_timezone))

EXPORT_JOB_ID = "shipstation_export"
BACKFILL_JOB_ID = "backfill_continuation"


def schedule_backfill_continuation(delay_seconds: float) -> None:
    """Queue the next backfill chunk as a one-shot job, replacing any pending one."""
    run_date = datetime.now(pytz.utc) + timedelta(seconds=max(delay_seconds, 0))
    scheduler.add_job(
        run_backfill_chunk,
        trigger=DateTrigger(run_date=run_date),
        id=BACKFILL_JOB_ID,
        name='Backfill Continuation',
        replace_existing=True,
        max_instances=1
    )


def cancel_backfill_continuation() -> None:
    try:
        scheduler.remove_job(BACKFILL_JOB_ID)
        log.info("Pending backfill continuation removed")
    except JobLookupError:
        pass


def build_service(**kwargs) -> ExportSyncService:
    """Service wired to this scheduler for backfill continuations."""
    kwargs.setdefault("schedule_continuation", schedule_backfill_continuation)
    kwargs.setdefault("cancel_continuation", cancel_backfill_continuation)
    return ExportSyncService(**kwargs)


# Jobs

async def sync_shipments():
    """Incremental export of the last lookback window"""
    try:
        log.info("Starting ShipStation export...")
        result = await build_service().run_incremental_sync()

        if result.get('success'):
            log.info(
                f"ShipStation export completed: {result.get('rows_written', 0)} written, "
                f"{result.get('rows_skipped', 0)} skipped"
            )
        elif result.get('status') == 'skipped':
            log.info("ShipStation export skipped: previous run still in progress")
        else:
            log.error(f"ShipStation export failed: {result.get('error')}")

    except Exception as e:
        log.error(f"ShipStation export error: {str(e)}")


async def run_backfill_chunk():
    """One chunk of the active backfill; reschedules itself while work remains"""
    try:
        result = await build_service().run_backfill_chunk()
        log.info(f"Backfill chunk finished: {result.get('state', result.get('status'))}")
    except Exception as e:
        log.error(f"Backfill chunk error: {str(e)}")


def setup_scheduler():
    """
    Configure the scheduler.

    - ShipStation export: every sync_interval_minutes (lookback window covers overlap)
    - Backfill continuation: one-shot jobs added while a backfill is active
    """
    scheduler.add_job(
        sync_shipments,
        trigger=IntervalTrigger(minutes=settings.sync_interval_minutes),
        id=EXPORT_JOB_ID,
        name='ShipStation Export',
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )

    # Pick up a backfill interrupted by a restart
    if build_service().backfill_status().get('active'):
        log.info("Active backfill found, scheduling continuation")
        schedule_backfill_continuation(0)

    log.info(f"Scheduler configured: export every {settings.sync_interval_minutes} minutes")


def start_scheduler():
    """Start the scheduler (needs a running event loop)"""
    setup_scheduler()
    scheduler.start()
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown()
    log.info("Scheduler stopped")


def get_scheduled_jobs() -> list:
    jobs = []
    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)  # unset until the scheduler starts
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })
    return jobs


# Foreground runs (CLI)

def _continue_in_foreground(delay_seconds: float) -> None:
    log.debug(f"Continuation requested (delay {delay_seconds:.0f}s), handled by the foreground loop")


async def run_backfill_foreground(start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict:
    """
    Run a backfill to completion in this process, chunk after chunk.

    With start/end a new backfill is created first; without them the
    existing checkpoint is resumed.
    """
    service = ExportSyncService(schedule_continuation=_continue_in_foreground)
    if start is not None and end is not None:
        created = await service.start_backfill(start, end)
        if not created['success']:
            return created

    result = await service.run_backfill_chunk()
    while result.get('state') == 'paused':
        result = await service.run_backfill_chunk()
    return result


async def _serve():
    start_scheduler()
    try:
        await asyncio.Event().wait()
    finally:
        stop_scheduler()


USAGE = """Usage: python -m shipsync.scheduler <command> [args]

Commands:
  start                 Start the scheduler
  sync                  Run one incremental export now
  backfill START END    Backfill a date range (ShipStation time) in the foreground
  resume                Resume the active backfill in the foreground
  cancel                Cancel the active backfill
  status                Show recent runs and backfill progress
  refresh               Add missing warehouses/stores to the reference tabs
  list                  List scheduled jobs
"""


def main(argv) -> int:
    if len(argv) < 2:
        print(USAGE)
        return 1

    command = argv[1]
    init_db()

    if command == "start":
        print("Starting scheduler...")
        try:
            asyncio.run(_serve())
        except (KeyboardInterrupt, SystemExit):
            print("\nShutting down scheduler...")
        return 0

    if command == "sync":
        result = asyncio.run(ExportSyncService().run_incremental_sync())
    elif command == "backfill":
        if len(argv) < 4:
            print("Usage: python -m shipsync.scheduler backfill START END")
            return 1
        start, end = date_parser.parse(argv[2]), date_parser.parse(argv[3])
        result = asyncio.run(run_backfill_foreground(start, end))
    elif command == "resume":
        result = asyncio.run(run_backfill_foreground())
    elif command == "cancel":
        result = ExportSyncService().cancel_backfill()
    elif command == "status":
        result = ExportSyncService().get_status()
        result['success'] = True
    elif command == "refresh":
        result = asyncio.run(ExportSyncService().refresh_reference_tables())
    elif command == "list":
        setup_scheduler()
        for job in get_scheduled_jobs():
            print(f"\nID:       {job['id']}")
            print(f"Name:     {job['name']}")
            print(f"Next Run: {job['next_run']}")
            print(f"Trigger:  {job['trigger']}")
        return 0
    else:
        print(f"Unknown command: {command}")
        return 1

    for key, value in result.items():
        print(f"{key:>18}: {value}")
    return 0 if result.get('success') else 1


if __name__ == "__main__":
    import sys

    sys.exit(main(sys.argv))
