"""
Export Sync Service
Runs the ShipStation -> Google Sheets export.

Every run follows the same path:
    lock -> start execution window -> fetch a page -> resolve + transform
    -> de-duplicate -> write batch -> check budget -> next page / stop

Normal runs cover a short lookback window ending now. Backfill runs walk a
fixed date range in chunks, persisting a checkpoint after every page and
rescheduling themselves when the time budget runs out.
"""
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple
import time

import pytz

from shipsync.config import get_settings
from shipsync.connectors.google_sheets import GoogleSheetsConnector
from shipsync.connectors.shipstation_connector import ShipStationConnector
from shipsync.models.base import SessionLocal
from shipsync.models.sync_state import SyncRunLog
from shipsync.services.alert_service import AlertService
from shipsync.services.batch_writer import BatchWriter, filter_new_rows
from shipsync.services.checkpoint import PHASES, BackfillCheckpoint, CheckpointStore
from shipsync.services.execution_window import Deadline, ExecutionWindow, RunMode, RunState
from shipsync.services.property_store import PropertyStore
from shipsync.services.reference_data import ReferenceMaps, load_reference_maps, refresh_reference_tables
from shipsync.services.run_config import RunConfig, load_run_config
from shipsync.services.shipment_transformer import (
    EXPORT_HEADERS,
    SOURCE_FULFILLMENT,
    SOURCE_SHIPMENT,
    ExportRow,
    transform_shipment,
)
from shipsync.utils.helpers import chunk_list, parse_timestamp, to_float
from shipsync.utils.logger import log
from shipsync.utils.run_lock import run_lock

settings = get_settings()

SHIPSTATION_TZ = pytz.timezone(settings.shipstation_timezone)
BUSINESS_TZ = pytz.timezone(settings.business_timezone)

SOURCE_TYPES = {
    "shipments": SOURCE_SHIPMENT,
    "fulfillments": SOURCE_FULFILLMENT,
}


@dataclass
class SyncRunResult:
    """Counters and outcome of one run, persisted to sync_run_logs."""
    mode: str
    status: str = "success"  # success, partial, paused, skipped, failed
    rows_fetched: int = 0
    rows_written: int = 0
    rows_skipped: int = 0
    records_failed: int = 0
    pages_failed: int = 0
    budget_exhausted: bool = False
    window_start: Optional[str] = None
    window_end: Optional[str] = None
    error_message: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "mode": self.mode,
            "status": self.status,
            "rows_fetched": self.rows_fetched,
            "rows_written": self.rows_written,
            "rows_skipped": self.rows_skipped,
            "records_failed": self.records_failed,
            "pages_failed": self.pages_failed,
            "budget_exhausted": self.budget_exhausted,
            "window_start": self.window_start,
            "window_end": self.window_end,
            "error": self.error_message,
            "warnings": self.warnings[:5],
            "duration_seconds": round(self.duration_seconds, 2),
        }


def _persist_run_log(result: SyncRunResult) -> Optional[int]:
    db = SessionLocal()
    try:
        entry = SyncRunLog(
            mode=result.mode,
            status=result.status,
            rows_fetched=result.rows_fetched,
            rows_written=result.rows_written,
            rows_skipped=result.rows_skipped,
            pages_failed=result.pages_failed,
            window_start=result.window_start,
            window_end=result.window_end,
            error_message=result.error_message,
            started_at=result.started_at,
            completed_at=result.completed_at,
            duration_seconds=result.duration_seconds,
        )
        db.add(entry)
        db.commit()
        log.info(
            f"Run logged: {result.mode} | {result.status} | fetched={result.rows_fetched} "
            f"written={result.rows_written} skipped={result.rows_skipped} "
            f"pages_failed={result.pages_failed} | {result.duration_seconds:.2f}s"
        )
        return entry.id
    except Exception as e:
        db.rollback()
        log.error(f"Failed to persist run log for {result.mode}: {e}")
        return None
    finally:
        db.close()


@contextmanager
def track_sync(mode: str):
    """
    Time a run and record it in sync_run_logs, whatever the outcome.

    Usage:
        with track_sync("normal") as result:
            result.rows_written = 50
    """
    result = SyncRunResult(mode=mode)
    result.started_at = datetime.utcnow()
    start_time = time.time()

    try:
        yield result
    except Exception as e:
        result.status = "failed"
        result.error_message = f"{type(e).__name__}: {e}"
        log.error(f"{mode} run failed: {result.error_message}")
        raise
    finally:
        result.completed_at = datetime.utcnow()
        result.duration_seconds = time.time() - start_time
        if result.status == "success" and (result.pages_failed or result.records_failed):
            result.status = "partial"
        _persist_run_log(result)


class PageOutcome(str, Enum):
    DONE = "done"
    YIELDED = "yielded"
    FETCH_FAILED = "fetch_failed"
    WRITE_FAILED = "write_failed"


@dataclass
class _RunContext:
    connector: ShipStationConnector
    writer: BatchWriter
    maps: ReferenceMaps
    config: RunConfig
    window: ExecutionWindow
    result: SyncRunResult
    known_keys: Set[Tuple[str, str]]


PageCallback = Callable[[List[ExportRow], int, int], None]


def to_shipstation_time(value: datetime) -> datetime:
    """Naive ShipStation local time. Aware values are converted; naive ones are taken as already local."""
    if value.tzinfo is not None:
        value = value.astimezone(SHIPSTATION_TZ).replace(tzinfo=None)
    return value


def _newest_create_date(rows: List[ExportRow]) -> Optional[datetime]:
    stamps = [parse_timestamp(row.sort_key) for row in rows]
    stamps = [s.replace(tzinfo=None) for s in stamps if s is not None]
    return max(stamps) if stamps else None


class ExportSyncService:
    """
    Orchestrates incremental and backfill export runs.

    schedule_continuation(delay_seconds) is called when a backfill pauses;
    the scheduler wires it to a one-shot job. Without it a paused backfill
    waits for an explicit resume.
    """

    def __init__(
        self,
        connector: Optional[ShipStationConnector] = None,
        sheets: Optional[GoogleSheetsConnector] = None,
        property_store: Optional[PropertyStore] = None,
        alerts: Optional[AlertService] = None,
        schedule_continuation: Optional[Callable[[float], None]] = None,
        cancel_continuation: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Optional[Callable[[], datetime]] = None,
        lock_timeout_seconds: Optional[float] = None,
    ):
        self.connector = connector
        self.sheets = sheets
        self.property_store = property_store or PropertyStore()
        self.checkpoints = CheckpointStore(self.property_store)
        self.alerts = alerts or AlertService()
        self.schedule_continuation = schedule_continuation
        self.cancel_continuation = cancel_continuation
        self._clock = clock
        self._now = now or (lambda: datetime.now(SHIPSTATION_TZ).replace(tzinfo=None))
        self.lock_timeout_seconds = (
            settings.lock_timeout_seconds if lock_timeout_seconds is None else lock_timeout_seconds
        )

    # Setup

    def _open_sheets(self) -> GoogleSheetsConnector:
        sheets = self.sheets or GoogleSheetsConnector()
        if sheets.service is None and not sheets.authenticate():
            raise RuntimeError("Google Sheets authentication failed")
        self.sheets = sheets
        return sheets

    def _export_writer(self, sheets: GoogleSheetsConnector) -> BatchWriter:
        tab = sheets.tab(settings.export_sheet_tab)
        if not tab.exists():
            tab = sheets.create_tab(settings.export_sheet_tab, EXPORT_HEADERS)
        writer = BatchWriter(tab)
        writer.ensure_header_row()
        return writer

    def _deadline(self, max_seconds: float) -> Deadline:
        return Deadline(
            max_seconds,
            warning_window=(settings.deadline_warning_window_start, settings.deadline_warning_window_end),
            clock=self._clock,
        )

    def _prepare(
        self,
        connector: ShipStationConnector,
        config: RunConfig,
        window: ExecutionWindow,
        result: SyncRunResult,
    ) -> _RunContext:
        sheets = self._open_sheets()
        writer = self._export_writer(sheets)
        maps = load_reference_maps(sheets, settings.warehouses_tab, settings.stores_tab)
        known_keys = writer.recent_shipment_keys(settings.dedupe_scan_rows)
        log.debug(f"Loaded {len(known_keys)} recent shipment keys for de-duplication")
        return _RunContext(connector, writer, maps, config, window, result, known_keys)

    def _kinds(self, config: RunConfig) -> List[str]:
        return list(PHASES) if config.include_fulfillments else [PHASES[0]]

    def _transform(self, records: List[Dict], kind: str, ctx: _RunContext) -> List[ExportRow]:
        source_type = SOURCE_TYPES[kind]
        rows = []
        for record in records:
            try:
                rows.append(transform_shipment(record, ctx.maps, ctx.config, source_type))
            except Exception as e:
                ctx.result.records_failed += 1
                log.bind(kind=kind).error(f"Failed to transform {source_type.lower()} record: {type(e).__name__}: {e}")
        return rows

    # Page loop

    async def _process_range(
        self,
        ctx: _RunContext,
        kind: str,
        start: datetime,
        end: datetime,
        stop_on_page_failure: bool,
        on_page: Optional[PageCallback] = None,
    ) -> PageOutcome:
        """
        Fetch, transform and write every page of one record kind in [start, end].

        The budget is checked before each page. A page that cannot be fetched
        either stops the range (backfill) or is skipped (normal runs, as long
        as the page count is known). A batch that does not fully land always
        stops the range.
        """
        result = ctx.result
        page = 1
        total_pages: Optional[int] = None

        while True:
            if ctx.window.should_yield():
                log.info(f"Execution budget reached before {kind} page {page}, yielding")
                return PageOutcome.YIELDED

            api_result = await ctx.connector.fetch_page(kind, start, end, page, ctx.config.page_size)
            if not api_result.success:
                result.pages_failed += 1
                result.error_message = str(api_result.error)
                log.bind(kind=kind, page=page).error(f"Failed to fetch {kind} page {page}: {api_result.error}")
                if stop_on_page_failure or total_pages is None:
                    return PageOutcome.FETCH_FAILED
                if page >= total_pages:
                    return PageOutcome.DONE
                page += 1
                continue

            records = api_result.data.get(kind) or []
            total_pages = int(to_float(api_result.data.get("pages"), 1))
            result.rows_fetched += len(records)
            log.info(f"Fetched {len(records)} {kind} (page {page}/{max(total_pages, 1)})")

            rows = self._transform(records, kind, ctx)
            fresh, skipped = filter_new_rows(rows, ctx.known_keys)
            result.rows_skipped += skipped
            if skipped:
                log.info(f"Skipped {skipped} {kind} already in the export sheet")

            written = 0
            for batch in chunk_list(fresh, ctx.config.batch_size):
                write = ctx.writer.write_batch(batch)
                written += write.rows_written
                result.rows_written += write.rows_written
                if write.warning:
                    result.warnings.append(write.warning)
                if not write.success or write.rows_written < len(batch):
                    result.records_failed += len(batch) - write.rows_written
                    result.error_message = write.error or "Batch write incomplete"
                    return PageOutcome.WRITE_FAILED
                ctx.known_keys.update(row.dedupe_key for row in batch)

            if on_page is not None:
                on_page(rows, written, skipped)

            if not records or page >= total_pages:
                return PageOutcome.DONE
            page += 1

    # Normal mode

    async def run_incremental_sync(self) -> Dict:
        """Export shipments created in the last lookback_minutes. Skips quietly if another run holds the lock."""
        async with run_lock(timeout_seconds=self.lock_timeout_seconds) as lock:
            if lock is None:
                return self._skipped(RunMode.NORMAL)
            return await self._run_incremental()

    async def _run_incremental(self) -> Dict:
        config = load_run_config(self.property_store)
        window = ExecutionWindow(RunMode.NORMAL, self._deadline(config.max_execution_seconds))
        connector = self.connector or ShipStationConnector()
        result = None

        try:
            with track_sync(RunMode.NORMAL.value) as result:
                window.start()
                end = self._now()
                start = end - timedelta(minutes=config.lookback_minutes)
                result.window_start, result.window_end = str(start), str(end)
                log.info(f"Incremental sync window: {start} -> {end}")

                ctx = self._prepare(connector, config, window, result)
                outcome = PageOutcome.DONE
                for kind in self._kinds(config):
                    outcome = await self._process_range(ctx, kind, start, end, stop_on_page_failure=False)
                    if outcome in (PageOutcome.YIELDED, PageOutcome.WRITE_FAILED):
                        break

                if outcome == PageOutcome.WRITE_FAILED:
                    result.status = "failed"
                    window.fail(result.error_message)
                else:
                    result.budget_exhausted = outcome == PageOutcome.YIELDED
                    if (result.rows_fetched == 0 and not result.pages_failed
                            and settings.write_placeholder_rows):
                        ctx.writer.append_placeholder_row(
                            datetime.now(BUSINESS_TZ).strftime("%Y-%m-%d %H:%M:%S")
                        )
                    window.complete()
        except Exception as e:
            if window.running:
                window.fail(str(e))
        finally:
            if self.connector is None:
                await connector.close()

        if window.state == RunState.FAILED:
            await self.alerts.notify_failure(
                "ShipStation export failed",
                f"Incremental sync failed: {window.reason}",
                data=result.to_dict() if result else None,
            )
        return self._response(window, result)

    # Backfill mode

    async def start_backfill(self, start: datetime, end: datetime, force: bool = False) -> Dict:
        """
        Create a backfill checkpoint for [start, end] and schedule its first
        chunk. Returns immediately; chunks run under the scheduler.
        """
        start, end = to_shipstation_time(start), to_shipstation_time(end)
        if start >= end:
            return {"success": False, "error": "Start date must be before end date"}

        existing = self.checkpoints.load()
        if existing is not None and not force:
            return {
                "success": False,
                "error": "A backfill is already in progress",
                "checkpoint": existing.to_dict(),
            }

        config = load_run_config(self.property_store)
        checkpoint = self.checkpoints.create(start, end, self._kinds(config))
        scheduled = self._schedule(0)
        return {
            "success": True,
            "status": "scheduled" if scheduled else "created",
            "checkpoint": checkpoint.to_dict(),
        }

    async def run_backfill_chunk(self) -> Dict:
        """Run one time-boxed chunk of the active backfill, resuming from its checkpoint."""
        async with run_lock(timeout_seconds=self.lock_timeout_seconds) as lock:
            if lock is None:
                if self.checkpoints.load() is not None:
                    self._schedule(settings.backfill_continuation_delay_seconds)
                return self._skipped(RunMode.BACKFILL)
            return await self._run_backfill_chunk()

    async def _run_backfill_chunk(self) -> Dict:
        checkpoint = self.checkpoints.load()
        if checkpoint is None:
            log.info("No backfill in progress")
            return {"success": True, "status": "idle", "message": "No backfill in progress"}

        config = load_run_config(self.property_store)
        window = ExecutionWindow(RunMode.BACKFILL, self._deadline(config.backfill_max_execution_seconds))
        connector = self.connector or ShipStationConnector()
        result = None
        outcome = PageOutcome.DONE

        def on_page(rows: List[ExportRow], written: int, skipped: int) -> None:
            self.checkpoints.advance(checkpoint, _newest_create_date(rows), written, skipped)

        try:
            with track_sync(RunMode.BACKFILL.value) as result:
                window.start()
                checkpoint.chunks += 1
                result.window_start, result.window_end = str(checkpoint.cursor), str(checkpoint.range_end)
                log.info(
                    f"Backfill chunk {checkpoint.chunks}: {checkpoint.phase} from {checkpoint.cursor} "
                    f"to {checkpoint.range_end}"
                )

                ctx = self._prepare(connector, config, window, result)
                while True:
                    outcome = await self._process_range(
                        ctx, checkpoint.phase, checkpoint.cursor, checkpoint.range_end,
                        stop_on_page_failure=True, on_page=on_page,
                    )
                    if outcome != PageOutcome.DONE:
                        break
                    next_phase = checkpoint.next_phase()
                    if next_phase is None:
                        break
                    self.checkpoints.start_phase(checkpoint, next_phase)

                if outcome == PageOutcome.DONE:
                    self.checkpoints.clear()
                    window.complete()
                    log.info(
                        f"Backfill complete: {checkpoint.rows_written} rows written, "
                        f"{checkpoint.rows_skipped} skipped over {checkpoint.chunks} chunks"
                    )
                elif outcome == PageOutcome.YIELDED:
                    result.status = "paused"
                    result.budget_exhausted = True
                    if self._save_progress(checkpoint):
                        self._schedule(settings.backfill_continuation_delay_seconds)
                    window.pause()
                else:
                    result.status = "failed"
                    window.fail(result.error_message)
        except Exception as e:
            if window.running:
                window.fail(str(e))
        finally:
            if self.connector is None:
                await connector.close()

        if window.state == RunState.FAILED:
            await self._backfill_failed(checkpoint, window.reason)
        return self._response(window, result, checkpoint)

    async def _backfill_failed(self, checkpoint: BackfillCheckpoint, reason: Optional[str]) -> None:
        """Keep the checkpoint where it is; retry later unless failures keep repeating."""
        checkpoint.consecutive_failures += 1
        if not self._save_progress(checkpoint):
            return
        retrying = checkpoint.consecutive_failures < settings.backfill_max_consecutive_failures
        if retrying:
            self._schedule(settings.backfill_continuation_delay_seconds)
        await self.alerts.notify_failure(
            "ShipStation backfill chunk failed",
            f"Backfill stopped at {checkpoint.phase} {checkpoint.cursor}: {reason}. "
            + ("A retry has been scheduled." if retrying else "Giving up; resume manually."),
            data={
                "consecutive_failures": checkpoint.consecutive_failures,
                "rows_written": checkpoint.rows_written,
            },
        )

    def _save_progress(self, checkpoint: BackfillCheckpoint) -> bool:
        """Save the checkpoint. False once the backfill has been cancelled under this chunk."""
        if self.checkpoints.save(checkpoint):
            return True
        if self.checkpoints.load() is None:
            log.info("Backfill was cancelled during this chunk, not continuing")
            return False
        return True

    def cancel_backfill(self) -> Dict:
        cleared = self.checkpoints.clear()
        if self.cancel_continuation is not None:
            self.cancel_continuation()
        return {"success": True, "cancelled": cleared}

    def resume_backfill(self) -> Dict:
        """Schedule the next chunk of the active backfill now."""
        status = self.backfill_status()
        if not status["active"]:
            return {"success": False, "error": "No backfill in progress"}
        return {"success": True, "scheduled": self._schedule(0), **status}

    def backfill_status(self) -> Dict:
        checkpoint = self.checkpoints.load()
        if checkpoint is None:
            return {"active": False}
        return {"active": True, "checkpoint": checkpoint.to_dict()}

    def _schedule(self, delay_seconds: float) -> bool:
        if self.schedule_continuation is None:
            log.warning("No scheduler attached; resume the backfill with `python -m shipsync.scheduler resume`")
            return False
        try:
            self.schedule_continuation(delay_seconds)
        except Exception as e:
            log.error(f"Could not schedule backfill continuation: {e}")
            return False
        log.info(f"Backfill continuation scheduled in {delay_seconds:.0f}s")
        return True

    # Reference data

    async def refresh_reference_tables(self) -> Dict:
        """Add warehouses and stores from ShipStation that are missing from the reference tabs."""
        connector = self.connector or ShipStationConnector()
        try:
            sheets = self._open_sheets()
            added = await refresh_reference_tables(connector, sheets, settings.warehouses_tab, settings.stores_tab)
            return {"success": True, "added": added}
        except Exception as e:
            log.error(f"Reference table refresh failed: {e}")
            return {"success": False, "error": str(e)}
        finally:
            if self.connector is None:
                await connector.close()

    # Status

    def _skipped(self, mode: RunMode) -> Dict:
        with track_sync(mode.value) as result:
            result.status = "skipped"
            result.error_message = "Another run is in progress"
        log.warning(f"Another export run holds the lock, skipping {mode.value} run")
        return {"success": False, "status": "skipped", "error": result.error_message}

    def _response(self, window: ExecutionWindow, result: Optional[SyncRunResult], checkpoint=None) -> Dict:
        response = result.to_dict() if result else {"mode": window.mode.value}
        response["state"] = window.state.value
        response["success"] = window.state in (RunState.COMPLETED, RunState.PAUSED)
        if window.reason and not response.get("error"):
            response["error"] = window.reason
        if checkpoint is not None and window.state != RunState.COMPLETED:
            response["checkpoint"] = checkpoint.to_dict()
        return response

    def get_status(self, limit: int = 10) -> Dict:
        db = SessionLocal()
        try:
            runs = db.query(SyncRunLog).order_by(SyncRunLog.started_at.desc()).limit(limit).all()
            recent = [
                {
                    "mode": r.mode,
                    "status": r.status,
                    "rows_written": r.rows_written,
                    "rows_skipped": r.rows_skipped,
                    "pages_failed": r.pages_failed,
                    "error": r.error_message,
                    "started_at": r.started_at.isoformat() if r.started_at else None,
                    "duration_seconds": r.duration_seconds,
                }
                for r in runs
            ]
        finally:
            db.close()

        config = load_run_config(self.property_store)
        return {
            "recent_runs": recent,
            "backfill": self.backfill_status(),
            "config": {
                "global_markup": config.global_markup,
                "carton_thresholds": config.carton_thresholds.to_dict(),
                "client_emails_enabled": config.client_emails_enabled,
                "lookback_minutes": config.lookback_minutes,
                "include_fulfillments": config.include_fulfillments,
            },
        }
