"""
End-to-end tests for the export pipeline: incremental runs and chunked
backfills against in-memory ShipStation and Sheets stand-ins.

The fake clock advances by seconds_per_page on every API page, so budget
exhaustion is deterministic.
"""
import asyncio
from datetime import datetime, timedelta

import pytest
import pytz

from shipsync.config import get_settings
from shipsync.models.base import SessionLocal
from shipsync.models.sync_state import SyncRunLog
from shipsync.services.checkpoint import CheckpointStore
from shipsync.services.export_sync_service import track_sync
from shipsync.utils import run_lock as locks

from fakes import FIXED_NOW as NOW, Harness, export_tab, make_shipment, make_shipments

settings = get_settings()

PLACEHOLDER = settings.placeholder_text

RANGE_START = datetime(2026, 1, 1)
RANGE_END = datetime(2026, 1, 2)


def _run(coro):
    return asyncio.run(coro)


def _recent(count):
    """Shipments created inside the incremental lookback window."""
    return make_shipments(count, NOW - timedelta(minutes=10))


def _run_logs():
    db = SessionLocal()
    try:
        return [(r.mode, r.status) for r in db.query(SyncRunLog).order_by(SyncRunLog.id).all()]
    finally:
        db.close()


# ────────────────────────────────────────────
# RUN LOG
# ────────────────────────────────────────────


class TestTrackSync:

    def test_partial_when_pages_failed(self):
        with track_sync("normal") as result:
            result.pages_failed = 1
        assert result.status == "partial"
        assert _run_logs() == [("normal", "partial")]

    def test_exception_recorded_and_reraised(self):
        with pytest.raises(ValueError):
            with track_sync("backfill") as result:
                raise ValueError("bad page")
        assert result.status == "failed"
        assert result.error_message == "ValueError: bad page"
        assert _run_logs() == [("backfill", "failed")]


# ────────────────────────────────────────────
# INCREMENTAL
# ────────────────────────────────────────────


class TestIncrementalSync:

    def test_writes_new_shipments(self):
        h = Harness(shipments=_recent(5))
        response = _run(h.service.run_incremental_sync())

        assert response["success"] is True
        assert response["state"] == "completed"
        assert response["status"] == "success"
        assert response["rows_written"] == 5
        assert len(h.tab.data_rows()) == 5
        assert h.alerts.sent == []
        kinds = {call[0] for call in h.api.calls}
        assert kinds == {"shipments", "fulfillments"}

    def test_only_lookback_window_is_requested(self):
        h = Harness(shipments=_recent(1))
        _run(h.service.run_incremental_sync())
        kind, start, end, page = h.api.calls[0]
        assert end == NOW
        assert start == NOW - timedelta(minutes=settings.lookback_minutes)

    def test_rerun_skips_duplicates(self):
        h = Harness(shipments=_recent(5))
        _run(h.service.run_incremental_sync())
        response = _run(h.service.run_incremental_sync())

        assert response["rows_written"] == 0
        assert response["rows_skipped"] == 5
        assert len(h.tab.data_rows()) == 5
        assert len(set(h.tab.shipment_ids())) == 5

    def test_fulfillments_written_with_source_type(self):
        fulfillment = {
            "fulfillmentId": 77,
            "orderNumber": "ORD-F",
            "createDate": (NOW - timedelta(minutes=2)).strftime("%Y-%m-%dT%H:%M:%S.0000000"),
            "carrierCode": "usps",
            "fulfillmentFee": 4.0,
        }
        h = Harness(fulfillments=[fulfillment])
        _run(h.service.run_incremental_sync())
        row = h.tab.data_rows()[0]
        assert row[16] == "77"
        assert row[20] == "Fulfillment"

    def test_placeholder_when_nothing_new(self):
        h = Harness()
        _run(h.service.run_incremental_sync())
        _run(h.service.run_incremental_sync())

        rows = h.tab.data_rows()
        assert len(rows) == 1
        assert rows[0][1] == PLACEHOLDER

    def test_placeholder_replaced_by_data(self):
        h = Harness()
        _run(h.service.run_incremental_sync())
        h.api.records["shipments"] = _recent(2)
        _run(h.service.run_incremental_sync())

        rows = h.tab.data_rows()
        assert len(rows) == 2
        assert PLACEHOLDER not in [r[1] for r in rows]

    def test_first_page_failure_is_partial(self):
        h = Harness(shipments=_recent(3))
        h.api.failures = {("shipments", 1)}
        response = _run(h.service.run_incremental_sync())

        assert response["success"] is True
        assert response["status"] == "partial"
        assert response["pages_failed"] == 1
        assert "503" in response["error"]
        # no placeholder over a failed fetch
        assert h.tab.data_rows() == []
        assert ("fulfillments", 1) in [(c[0], c[3]) for c in h.api.calls]

    def test_later_page_failure_skips_page(self):
        shipments = [make_shipment(i, NOW - timedelta(minutes=14) + timedelta(seconds=i * 0.5)) for i in range(1200)]
        h = Harness(shipments=shipments)
        h.api.failures = {("shipments", 2)}
        response = _run(h.service.run_incremental_sync())

        assert response["status"] == "partial"
        assert response["rows_written"] == 700
        pages = [c[3] for c in h.api.calls if c[0] == "shipments"]
        assert pages == [1, 2, 3]

    def test_write_failure_fails_run_and_alerts(self):
        h = Harness(shipments=_recent(5), tab=export_tab(max_rows=2))
        h.tab.fail_growth = True
        response = _run(h.service.run_incremental_sync())

        assert response["success"] is False
        assert response["state"] == "failed"
        assert response["status"] == "failed"
        assert response["error"].startswith("Capacity error")
        assert h.tab.data_rows() == []
        assert len(h.alerts.sent) == 1
        assert _run_logs()[-1] == ("normal", "failed")

    def test_budget_exhaustion_stops_between_pages(self):
        h = Harness(shipments=_recent(3), seconds_per_page=290)
        response = _run(h.service.run_incremental_sync())

        assert response["success"] is True
        assert response["budget_exhausted"] is True
        assert response["rows_written"] == 3
        assert [c[0] for c in h.api.calls] == ["shipments"]

    def test_lock_contention_skips_without_side_effects(self):
        h = Harness(shipments=_recent(5))
        held = locks.acquire(settings.lock_name, timeout_seconds=0)
        try:
            response = _run(h.service.run_incremental_sync())
        finally:
            locks.release(held)

        assert response["status"] == "skipped"
        assert response["success"] is False
        assert h.api.calls == []
        assert h.tab.data_rows() == []
        assert h.alerts.sent == []
        assert _run_logs() == [("normal", "skipped")]

    def test_header_restored_before_write(self):
        tab = export_tab()
        tab.rows[0] = ["wrong"]
        h = Harness(shipments=_recent(1), tab=tab)
        _run(h.service.run_incremental_sync())
        assert h.tab.rows[0][0] == "Create Date"


# ────────────────────────────────────────────
# BACKFILL
# ────────────────────────────────────────────


class TestStartBackfill:

    def test_rejects_inverted_range(self):
        h = Harness()
        response = _run(h.service.start_backfill(RANGE_END, RANGE_START))
        assert response["success"] is False
        assert CheckpointStore().load() is None

    def test_creates_checkpoint_and_schedules(self):
        h = Harness()
        response = _run(h.service.start_backfill(RANGE_START, RANGE_END))
        assert response["success"] is True
        assert response["status"] == "scheduled"
        assert h.scheduled == [0]
        checkpoint = CheckpointStore().load()
        assert checkpoint.cursor == RANGE_START
        assert checkpoint.phase == "shipments"

    def test_refuses_second_backfill_unless_forced(self):
        h = Harness()
        _run(h.service.start_backfill(RANGE_START, RANGE_END))
        response = _run(h.service.start_backfill(RANGE_START, RANGE_END + timedelta(days=1)))
        assert response["success"] is False
        assert "already in progress" in response["error"]

        forced = _run(h.service.start_backfill(RANGE_START, RANGE_END + timedelta(days=1), force=True))
        assert forced["success"] is True
        assert CheckpointStore().load().range_end == RANGE_END + timedelta(days=1)

    def test_aware_bounds_converted_to_shipstation_time(self):
        h = Harness(shipments=make_shipments(3, RANGE_START))
        # 08:00 UTC is midnight Pacific in January
        start = pytz.utc.localize(RANGE_START + timedelta(hours=8))
        end = pytz.utc.localize(RANGE_END + timedelta(hours=8))

        assert _run(h.service.start_backfill(start, end))["success"] is True
        checkpoint = CheckpointStore().load()
        assert checkpoint.range_start == RANGE_START
        assert checkpoint.range_end == RANGE_END

        response = _run(h.service.run_backfill_chunk())
        assert response["state"] == "completed"
        assert len(h.tab.shipment_ids()) == 3

    def test_aware_start_with_naive_end(self):
        h = Harness()
        start = pytz.utc.localize(RANGE_START + timedelta(hours=8))
        response = _run(h.service.start_backfill(start, RANGE_END))
        assert response["success"] is True
        assert CheckpointStore().load().range_start == RANGE_START


class TestBackfillChunks:

    def test_resumes_across_chunks_without_duplicates(self):
        h = Harness(shipments=make_shipments(1200, RANGE_START), seconds_per_page=200)
        _run(h.service.start_backfill(RANGE_START, RANGE_END))

        first = _run(h.service.run_backfill_chunk())
        assert first["state"] == "paused"
        assert first["success"] is True
        assert first["rows_written"] == 1000
        assert h.scheduled == [0, settings.backfill_continuation_delay_seconds]

        checkpoint = CheckpointStore().load()
        assert checkpoint.phase == "shipments"
        assert checkpoint.cursor == RANGE_START + timedelta(minutes=999)
        assert checkpoint.rows_written == 1000
        assert checkpoint.chunks == 1

        second = _run(h.service.run_backfill_chunk())
        assert second["state"] == "completed"
        assert second["rows_written"] == 200
        assert second["rows_skipped"] == 1

        ids = h.tab.shipment_ids()
        assert len(ids) == 1200
        assert len(set(ids)) == 1200
        assert CheckpointStore().load() is None
        assert "checkpoint" not in second
        assert _run_logs() == [("backfill", "paused"), ("backfill", "success")]

    def test_phases_run_in_order(self):
        fulfillment = {
            "fulfillmentId": 5,
            "createDate": (RANGE_START + timedelta(hours=1)).strftime("%Y-%m-%dT%H:%M:%S.0000000"),
        }
        h = Harness(shipments=make_shipments(3, RANGE_START), fulfillments=[fulfillment])
        _run(h.service.start_backfill(RANGE_START, RANGE_END))
        response = _run(h.service.run_backfill_chunk())

        assert response["state"] == "completed"
        assert [c[0] for c in h.api.calls] == ["shipments", "fulfillments"]
        assert [row[20] for row in h.tab.data_rows()] == ["Shipment"] * 3 + ["Fulfillment"]

    def test_page_failure_keeps_cursor_and_retries(self):
        h = Harness(shipments=make_shipments(600, RANGE_START))
        h.api.failures = {("shipments", 2)}
        _run(h.service.start_backfill(RANGE_START, RANGE_END))

        response = _run(h.service.run_backfill_chunk())

        assert response["success"] is False
        assert response["state"] == "failed"
        checkpoint = CheckpointStore().load()
        assert checkpoint.cursor == RANGE_START + timedelta(minutes=499)
        assert checkpoint.rows_written == 500
        assert checkpoint.consecutive_failures == 1
        assert h.scheduled == [0, settings.backfill_continuation_delay_seconds]
        assert len(h.alerts.sent) == 1

        # Next chunk starts at the cursor and finishes the range
        h.api.failures = set()
        response = _run(h.service.run_backfill_chunk())
        assert response["state"] == "completed"
        assert len(set(h.tab.shipment_ids())) == 600

    def test_cursor_advances_from_aware_bounds(self):
        h = Harness(shipments=make_shipments(600, RANGE_START))
        h.api.failures = {("shipments", 2)}
        start = pytz.utc.localize(RANGE_START + timedelta(hours=8))
        end = pytz.utc.localize(RANGE_END + timedelta(hours=8))
        _run(h.service.start_backfill(start, end))

        _run(h.service.run_backfill_chunk())

        checkpoint = CheckpointStore().load()
        assert checkpoint.cursor == RANGE_START + timedelta(minutes=499)
        assert checkpoint.rows_written == 500

    def test_repeated_failures_stop_rescheduling(self):
        h = Harness(shipments=make_shipments(10, RANGE_START))
        h.api.failures = {("shipments", 1)}
        _run(h.service.start_backfill(RANGE_START, RANGE_END))

        for _ in range(settings.backfill_max_consecutive_failures):
            _run(h.service.run_backfill_chunk())

        checkpoint = CheckpointStore().load()
        assert checkpoint.consecutive_failures == settings.backfill_max_consecutive_failures
        assert checkpoint.cursor == RANGE_START
        delay = settings.backfill_continuation_delay_seconds
        assert h.scheduled == [0] + [delay] * (settings.backfill_max_consecutive_failures - 1)
        assert "Giving up" in h.alerts.sent[-1][1]

    def test_no_checkpoint_is_idle(self):
        h = Harness()
        response = _run(h.service.run_backfill_chunk())
        assert response["status"] == "idle"
        assert h.api.calls == []

    def test_lock_contention_reschedules(self):
        h = Harness(shipments=make_shipments(3, RANGE_START))
        _run(h.service.start_backfill(RANGE_START, RANGE_END))
        held = locks.acquire(settings.lock_name, timeout_seconds=0)
        try:
            response = _run(h.service.run_backfill_chunk())
        finally:
            locks.release(held)

        assert response["status"] == "skipped"
        assert h.api.calls == []
        assert h.scheduled == [0, settings.backfill_continuation_delay_seconds]

    def test_cancel(self):
        h = Harness(shipments=make_shipments(3, RANGE_START))
        _run(h.service.start_backfill(RANGE_START, RANGE_END))

        assert h.service.cancel_backfill() == {"success": True, "cancelled": True}
        assert h.cancelled == [True]
        assert h.service.backfill_status() == {"active": False}
        assert _run(h.service.run_backfill_chunk())["status"] == "idle"

    @staticmethod
    def _cancel_after_page(h, cancel_page):
        fetch_page = h.api.fetch_page

        async def fetch_then_cancel(kind, start, end, page=1, page_size=500):
            result = await fetch_page(kind, start, end, page, page_size)
            if page == cancel_page:
                h.service.cancel_backfill()
            return result

        h.api.fetch_page = fetch_then_cancel

    def test_cancel_during_paused_chunk_is_not_rescheduled(self):
        h = Harness(shipments=make_shipments(1200, RANGE_START), seconds_per_page=200)
        _run(h.service.start_backfill(RANGE_START, RANGE_END))
        self._cancel_after_page(h, 1)

        response = _run(h.service.run_backfill_chunk())

        assert response["state"] == "paused"
        assert h.scheduled == [0]
        assert h.cancelled == [True]
        assert CheckpointStore().load() is None

    def test_cancel_during_failed_chunk_is_not_retried(self):
        h = Harness(shipments=make_shipments(600, RANGE_START))
        h.api.failures = {("shipments", 2)}
        _run(h.service.start_backfill(RANGE_START, RANGE_END))
        self._cancel_after_page(h, 1)

        response = _run(h.service.run_backfill_chunk())

        assert response["state"] == "failed"
        assert h.scheduled == [0]
        assert h.alerts.sent == []
        assert CheckpointStore().load() is None

    def test_resume(self):
        h = Harness()
        assert h.service.resume_backfill()["success"] is False

        _run(h.service.start_backfill(RANGE_START, RANGE_END))
        response = h.service.resume_backfill()
        assert response["success"] is True
        assert response["scheduled"] is True
        assert h.scheduled == [0, 0]


class TestServiceMisc:

    def test_refresh_reference_tables(self):
        h = Harness()
        h.api.warehouses = [{"warehouseId": 11, "warehouseName": "Dallas"}]
        response = _run(h.service.refresh_reference_tables())
        assert response == {"success": True, "added": {"warehouses": 1, "stores": 0}}
        assert h.sheets.tabs["Warehouses"].rows[1][:2] == ["11", "Dallas"]

    def test_status(self):
        h = Harness(shipments=_recent(2))
        _run(h.service.run_incremental_sync())
        status = h.service.get_status()

        assert status["recent_runs"][0]["mode"] == "normal"
        assert status["recent_runs"][0]["rows_written"] == 2
        assert status["backfill"] == {"active": False}
        assert status["config"]["lookback_minutes"] == settings.lookback_minutes
