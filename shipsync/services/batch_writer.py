"""
Idempotent Batch Writer

Appends ExportRows to the export tab:
  1. clear "No new shipments found" placeholder rows near the bottom
  2. make sure the tab has enough rows (grow by shortfall + headroom)
  3. one bulk write, then red font on voided rows
  4. per-row append fallback if the bulk write fails
  5. flush queued formatting before returning
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from shipsync.config import get_settings
from shipsync.services.shipment_transformer import (
    EXPORT_HEADERS,
    SHIPMENT_ID_COLUMN,
    SOURCE_TYPE_COLUMN,
    ExportRow,
)
from shipsync.utils.logger import log

settings = get_settings()

VOIDED_FONT_COLOR = "#CC0000"
PLACEHOLDER_COLUMN = 2  # Order Number column holds the placeholder text


@dataclass
class WriteResult:
    success: bool
    rows_written: int = 0
    rows_skipped: int = 0
    error: Optional[str] = None
    warning: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "rows_written": self.rows_written,
            "rows_skipped": self.rows_skipped,
            "error": self.error,
            "warning": self.warning,
        }


def find_placeholder_rows(cells: Sequence, first_row: int, placeholder_text: str) -> List[int]:
    """
    Row numbers (1-based) whose cell contains the placeholder text.

    cells is a single column slice starting at first_row, either plain
    values or one-element rows as the Sheets API returns them.
    """
    found = []
    for offset, cell in enumerate(cells):
        if isinstance(cell, (list, tuple)):
            cell = cell[0] if cell else ""
        if placeholder_text in str(cell):
            found.append(first_row + offset)
    return found


def filter_new_rows(rows: Iterable[ExportRow], known_keys: Set[Tuple[str, str]]) -> Tuple[List[ExportRow], int]:
    """Drop rows whose (source type, shipment id) is already known, including repeats within rows."""
    seen = set(known_keys)
    fresh = []
    skipped = 0
    for row in rows:
        key = row.dedupe_key
        if row.shipment_id and key in seen:
            skipped += 1
            continue
        seen.add(key)
        fresh.append(row)
    return fresh, skipped


class BatchWriter:
    """Writes batches of ExportRows to one SheetTab."""

    def __init__(
        self,
        tab,
        placeholder_text: Optional[str] = None,
        placeholder_scan_rows: Optional[int] = None,
        row_headroom: Optional[int] = None,
    ):
        self.tab = tab
        self.placeholder_text = placeholder_text or settings.placeholder_text
        self.placeholder_scan_rows = placeholder_scan_rows or settings.placeholder_scan_rows
        self.row_headroom = settings.row_headroom if row_headroom is None else row_headroom
        self.num_columns = len(EXPORT_HEADERS)

    # Housekeeping

    def ensure_header_row(self) -> bool:
        """Rewrite the header text if row 1 does not match. Returns True if it was rewritten."""
        current = self.tab.get_values(1, 1, 1, self.num_columns)
        current = [str(v) for v in current[0]] if current else []
        if current == EXPORT_HEADERS:
            return False
        self.tab.write_rows(1, [list(EXPORT_HEADERS)])
        log.warning(f"Restored header row on '{self.tab.title}'")
        return True

    def cleanup_placeholders(self) -> int:
        """Delete placeholder rows among the last few rows. Returns rows deleted."""
        last_row = self.tab.get_last_row()
        if last_row < 2:
            return 0
        first_row = max(2, last_row - self.placeholder_scan_rows + 1)
        cells = self.tab.get_values(first_row, last_row, PLACEHOLDER_COLUMN, PLACEHOLDER_COLUMN)
        placeholder_rows = find_placeholder_rows(cells, first_row, self.placeholder_text)

        # Bottom-up so earlier row numbers stay valid
        for row in sorted(placeholder_rows, reverse=True):
            self.tab.delete_row(row)
        if placeholder_rows:
            log.info(f"Removed {len(placeholder_rows)} placeholder rows")
        return len(placeholder_rows)

    def append_placeholder_row(self, timestamp: str) -> bool:
        """Append a placeholder marker unless the last row already is one."""
        last_row = self.tab.get_last_row()
        if last_row >= 2:
            cells = self.tab.get_values(last_row, last_row, PLACEHOLDER_COLUMN, PLACEHOLDER_COLUMN)
            if find_placeholder_rows(cells, last_row, self.placeholder_text):
                log.debug("Last row is already a placeholder, not adding another")
                return False
        self.tab.append_row([timestamp, self.placeholder_text])
        return True

    def recent_shipment_keys(self, scan_rows: Optional[int] = None) -> Set[Tuple[str, str]]:
        """(source type, shipment id) pairs of the most recent rows."""
        scan_rows = scan_rows or settings.dedupe_scan_rows
        last_row = self.tab.get_last_row()
        if last_row < 2:
            return set()
        first_row = max(2, last_row - scan_rows + 1)
        start_col = SHIPMENT_ID_COLUMN + 1
        end_col = SOURCE_TYPE_COLUMN + 1
        keys = set()
        for row in self.tab.get_values(first_row, last_row, start_col, end_col):
            shipment_id = str(row[0]).strip()
            source_type = str(row[end_col - start_col]).strip()
            if shipment_id:
                keys.add((source_type, shipment_id))
        return keys

    # Writing

    def _ensure_capacity(self, last_row: int, incoming: int) -> None:
        max_rows = self.tab.get_max_rows()
        needed = last_row + incoming
        if needed <= max_rows:
            return
        shortfall = needed - max_rows
        grow_by = shortfall + self.row_headroom
        log.info(f"Growing '{self.tab.title}' by {grow_by} rows (shortfall {shortfall})")
        self.tab.insert_rows_after(max_rows, grow_by)

    def _mark_voided(self, voided: List[int]) -> None:
        if not voided:
            return
        try:
            self.tab.set_font_color(voided, self.num_columns, VOIDED_FONT_COLOR)
        except Exception as e:
            log.warning(f"Could not mark {len(voided)} voided rows: {e}")

    def _append_one_by_one(self, rows: List[ExportRow], start_row: int) -> WriteResult:
        written = 0
        first_error = None
        voided = []
        for row in rows:
            try:
                self.tab.append_row(row.to_values())
            except Exception as e:
                if first_error is None:
                    first_error = f"{type(e).__name__}: {e}"
                log.bind(shipment_id=row.shipment_id).error(f"Row append failed: {e}")
                continue
            if row.is_voided:
                voided.append(start_row + written)
            written += 1

        self._mark_voided(voided)

        log.info(f"Fallback append wrote {written}/{len(rows)} rows")
        return WriteResult(success=written > 0, rows_written=written, error=first_error)

    def write_batch(self, rows: List[ExportRow]) -> WriteResult:
        """
        Append rows after the current last row.

        Capacity growth failure fails closed (nothing written). A failed bulk
        write falls back to appending rows one at a time; that result is a
        success if at least one row landed.
        """
        if not rows:
            return WriteResult(success=True)

        try:
            self.cleanup_placeholders()
        except Exception as e:
            log.warning(f"Placeholder cleanup failed: {e}")

        last_row = self.tab.get_last_row()
        start_row = last_row + 1

        try:
            self._ensure_capacity(last_row, len(rows))
        except Exception as e:
            log.error(f"Could not grow export sheet: {e}")
            return WriteResult(success=False, error=f"Capacity error: {e}")

        try:
            try:
                written = self.tab.write_rows(start_row, [row.to_values() for row in rows])
            except Exception as e:
                log.error(f"Bulk write failed, falling back to row appends: {e}")
                result = self._append_one_by_one(rows, start_row)
            else:
                result = WriteResult(success=True, rows_written=written)
                log.info(f"Wrote {written} rows to '{self.tab.title}' starting at row {start_row}")
                self._mark_voided([start_row + i for i, row in enumerate(rows) if row.is_voided])
        finally:
            try:
                self.tab.flush()
            except Exception as e:
                log.warning(f"Flush of formatting requests failed: {e}")

        result.warning = self.validate_write(last_row, result.rows_written)
        return result

    def validate_write(self, last_row_before: int, rows_written: int) -> Optional[str]:
        """Compare the tab's row count against what should have landed."""
        try:
            actual = self.tab.get_last_row()
        except Exception as e:
            return f"Could not validate write: {e}"
        expected = last_row_before + rows_written
        if actual != expected:
            warning = f"Row count mismatch after write: expected {expected}, found {actual}"
            log.warning(warning)
            return warning
        return None
