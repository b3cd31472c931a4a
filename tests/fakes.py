"""
In-memory stand-ins for the Google Sheets tab, the ShipStation API and the
alert channel, shared by the pipeline tests.
"""
import math
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from shipsync.config import get_settings
from shipsync.connectors.shipstation_connector import ApiError, ApiResult
from shipsync.services.export_sync_service import ExportSyncService
from shipsync.services.shipment_transformer import EXPORT_HEADERS
from shipsync.utils.helpers import parse_timestamp


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTab:
    """A sheet tab backed by a list of rows (row 1 is rows[0])."""

    def __init__(self, title="ShipStation Export", rows=None, max_rows=1000, exists=True):
        self.title = title
        self.rows: List[List] = [list(r) for r in (rows or [])]
        self.max_rows = max_rows
        self._exists = exists
        self.growth_calls = []
        self.deleted_rows = []
        self.appended = 0
        self.bulk_writes = 0
        self.pending_colors = []
        self.colored_rows = []
        self.flushes = 0
        self.fail_bulk_write = False
        self.fail_growth = False
        self.fail_append_for = set()  # values in column Q (shipment id) that fail to append

    # Reads

    def exists(self) -> bool:
        return self._exists

    def get_last_row(self) -> int:
        return len(self.rows)

    def get_max_rows(self) -> int:
        return self.max_rows

    def get_values(self, start_row, end_row, start_col=1, end_col=1):
        out = []
        for row_number in range(start_row, end_row + 1):
            row = self.rows[row_number - 1] if row_number <= len(self.rows) else []
            cells = []
            for col in range(start_col, end_col + 1):
                value = row[col - 1] if col <= len(row) else ""
                cells.append("" if value is None else str(value))
            out.append(cells)
        return out

    def read_all(self):
        return [[str(v) for v in row] for row in self.rows]

    # Writes

    def insert_rows_after(self, row, count):
        if self.fail_growth:
            raise RuntimeError("Sheet is at the cell limit")
        self.growth_calls.append((row, count))
        self.max_rows += count

    def write_rows(self, start_row, rows):
        if self.fail_bulk_write:
            raise RuntimeError("Bulk write rejected")
        end_row = start_row + len(rows) - 1
        if end_row > self.max_rows:
            raise RuntimeError(f"Range exceeds grid limits: {end_row} > {self.max_rows}")
        while len(self.rows) < start_row - 1:
            self.rows.append([])
        for offset, values in enumerate(rows):
            index = start_row - 1 + offset
            if index < len(self.rows):
                self.rows[index] = list(values)
            else:
                self.rows.append(list(values))
        self.bulk_writes += 1
        return len(rows)

    def append_row(self, row):
        if len(row) > 16 and str(row[16]) in self.fail_append_for:
            raise RuntimeError(f"Append failed for {row[16]}")
        self.rows.append(list(row))
        self.max_rows = max(self.max_rows, len(self.rows))
        self.appended += 1

    def delete_row(self, row):
        del self.rows[row - 1]
        self.deleted_rows.append(row)
        self.max_rows -= 1

    def set_font_color(self, rows, num_cols, color):
        self.pending_colors.extend((r, color) for r in rows)

    def flush(self):
        self.colored_rows.extend(self.pending_colors)
        self.pending_colors = []
        self.flushes += 1

    # Helpers for assertions

    def data_rows(self):
        return self.rows[1:]

    def shipment_ids(self):
        return [str(r[16]) for r in self.data_rows() if len(r) > 16]


class FakeSheets:
    """GoogleSheetsConnector stand-in holding FakeTabs by title."""

    def __init__(self, tabs: Optional[Dict[str, FakeTab]] = None):
        self.service = object()
        self.tabs = dict(tabs or {})

    def authenticate(self):
        return True

    def tab(self, title):
        return self.tabs.get(title) or FakeTab(title=title, exists=False)

    def create_tab(self, title, header=None):
        tab = FakeTab(title=title, rows=[list(header)] if header else [])
        self.tabs[title] = tab
        return tab


def export_tab(rows=None, max_rows=1000) -> FakeTab:
    return FakeTab(rows=[list(EXPORT_HEADERS)] + [list(r) for r in (rows or [])], max_rows=max_rows)


def make_shipment(i: int, created: datetime, **overrides) -> dict:
    record = {
        "shipmentId": 100000 + i,
        "orderId": 500000 + i,
        "orderNumber": f"ORD-{i}",
        "createDate": created.strftime("%Y-%m-%dT%H:%M:%S.0000000"),
        "shipDate": created.strftime("%Y-%m-%dT00:00:00.0000000"),
        "shipTo": {"name": f"Customer {i}"},
        "trackingNumber": f"1Z{i:08d}",
        "carrierCode": "ups",
        "serviceCode": "ups_ground",
        "batchNumber": "",
        "shipmentCost": 10.0,
        "insuranceCost": 0,
        "warehouseId": 11,
        "advancedOptions": {"storeId": 21},
        "voided": False,
        "isReturnLabel": False,
        "shipmentItems": [{"quantity": 1}],
        "weight": {"value": 8, "units": "ounces"},
        "dimensions": {"length": 5, "width": 5, "height": 5, "units": "inches"},
        "packageCode": "package",
    }
    record.update(overrides)
    return record


def make_shipments(count: int, start: datetime, step_minutes: int = 1) -> List[dict]:
    return [make_shipment(i, start + timedelta(minutes=step_minutes * i)) for i in range(count)]


class FakeShipStation:
    """
    Serves shipments/fulfillments like the list endpoints: filtered by
    createDate (second precision), sorted ascending, paginated.
    """

    def __init__(self, shipments=None, fulfillments=None, clock: Optional[FakeClock] = None,
                 seconds_per_page: float = 0.0):
        self.records = {"shipments": list(shipments or []), "fulfillments": list(fulfillments or [])}
        self.clock = clock
        self.seconds_per_page = seconds_per_page
        self.failures = set()  # (kind, page) pairs that fail
        self.calls = []
        self.warehouses = []
        self.stores = []
        self.closed = False

    async def fetch_page(self, kind, start, end, page=1, page_size=500):
        self.calls.append((kind, start, end, page))
        if self.clock is not None:
            self.clock.advance(self.seconds_per_page)
        if (kind, page) in self.failures:
            return ApiResult(success=False, status_code=503,
                             error=ApiError("API returned status 503", 503, 4), attempts=4)

        lower = start.replace(microsecond=0)
        matching = [
            r for r in self.records[kind]
            if lower <= parse_timestamp(r["createDate"]) <= end
        ]
        matching.sort(key=lambda r: parse_timestamp(r["createDate"]))
        pages = math.ceil(len(matching) / page_size)
        chunk = matching[(page - 1) * page_size:page * page_size]
        return ApiResult(success=True, status_code=200, attempts=1,
                         data={kind: chunk, "total": len(matching), "page": page, "pages": pages})

    async def fetch_warehouses(self):
        return self.warehouses

    async def fetch_stores(self):
        return self.stores

    async def close(self):
        self.closed = True


class FakeAlerts:
    def __init__(self):
        self.sent = []

    async def notify_failure(self, title, message, data=None):
        self.sent.append((title, message, data))
        return True


FIXED_NOW = datetime(2026, 3, 2, 12, 0, 0)


class Harness:
    """An ExportSyncService wired to fakes, with the fakes kept for assertions."""

    def __init__(self, shipments=None, fulfillments=None, seconds_per_page=0.0, tab=None, now=FIXED_NOW):
        self.clock = FakeClock()
        self.api = FakeShipStation(shipments, fulfillments, clock=self.clock, seconds_per_page=seconds_per_page)
        self.tab = tab or export_tab()
        self.sheets = FakeSheets({get_settings().export_sheet_tab: self.tab})
        self.alerts = FakeAlerts()
        self.scheduled = []
        self.cancelled = []
        self.service = ExportSyncService(
            connector=self.api,
            sheets=self.sheets,
            alerts=self.alerts,
            schedule_continuation=self.scheduled.append,
            cancel_continuation=lambda: self.cancelled.append(True),
            clock=self.clock,
            now=lambda: now,
            lock_timeout_seconds=0,
        )
