"""
Google Sheets Connector

The export tab is the pipeline's append-only tabular store and the
Warehouses / Stores tabs are its reference tables. Row and column numbers
in this module are 1-based, as they are in the Sheets UI.
"""
from typing import Any, Dict, List, Optional
import concurrent.futures
import os

from google.oauth2 import service_account
from googleapiclient.discovery import build
import google_auth_httplib2
import httplib2

from shipsync.config import get_settings
from shipsync.utils.logger import log

settings = get_settings()

# Timeout for individual Google Sheets API calls (seconds)
SHEETS_API_TIMEOUT = 30

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]


def column_letter(index: int) -> str:
    """1 -> A, 26 -> Z, 27 -> AA"""
    letters = ""
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        letters = chr(65 + remainder) + letters
    return letters


def _hex_to_rgb(color: str) -> Dict[str, float]:
    color = color.lstrip("#")
    return {
        "red": int(color[0:2], 16) / 255,
        "green": int(color[2:4], 16) / 255,
        "blue": int(color[4:6], 16) / 255,
    }


class GoogleSheetsConnector:
    """
    Connector for the Google Sheets API (one spreadsheet).

    Authenticates with a service account and hands out SheetTab objects.
    """

    def __init__(self, credentials_path: Optional[str] = None, spreadsheet_id: Optional[str] = None):
        credentials_path = credentials_path or settings.google_sheets_credentials_path
        spreadsheet_id = spreadsheet_id or settings.export_spreadsheet_id

        # Validate config upfront, fail fast instead of hanging
        if not credentials_path or not os.path.exists(credentials_path):
            raise FileNotFoundError(
                f"Google Sheets credentials file not found: {credentials_path!r}. "
                f"Set GOOGLE_SHEETS_CREDENTIALS_PATH in .env"
            )
        if not spreadsheet_id:
            raise ValueError(
                "EXPORT_SPREADSHEET_ID is not configured. Set it in .env to the Google Sheets spreadsheet ID."
            )

        self.credentials_path = credentials_path
        self.spreadsheet_id = spreadsheet_id
        self.service = None
        self._sheet_properties: Dict[str, Dict[str, Any]] = {}

    def execute(self, request, timeout: int = SHEETS_API_TIMEOUT):
        """
        Execute a Google API request with a timeout.

        google-api-python-client uses blocking httplib2 calls, so the call
        runs in a worker thread with a hard timeout.
        """
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(request.execute)
            try:
                return future.result(timeout=timeout)
            except concurrent.futures.TimeoutError:
                raise TimeoutError(
                    f"Google Sheets API call timed out after {timeout}s. "
                    "Check network connectivity and credentials."
                )

    def authenticate(self) -> bool:
        """Authenticate with the Sheets API using the service account."""
        try:
            credentials = service_account.Credentials.from_service_account_file(
                self.credentials_path,
                scopes=SCOPES,
            )
            http = httplib2.Http(timeout=SHEETS_API_TIMEOUT)
            authed_http = google_auth_httplib2.AuthorizedHttp(credentials, http=http)
            self.service = build("sheets", "v4", http=authed_http, cache_discovery=False)

            self.refresh_sheet_properties()
            log.info(f"Authenticated with Google Sheets ({len(self._sheet_properties)} tabs)")
            return True

        except TimeoutError as e:
            log.error(f"Google Sheets authentication timed out: {e}")
            return False
        except Exception as e:
            log.error(f"Google Sheets authentication failed: {str(e)}")
            return False

    def refresh_sheet_properties(self) -> None:
        result = self.execute(
            self.service.spreadsheets().get(
                spreadsheetId=self.spreadsheet_id,
                fields="sheets(properties(sheetId,title,gridProperties))",
            )
        )
        self._sheet_properties = {
            s["properties"]["title"]: s["properties"] for s in result.get("sheets", [])
        }

    def tab_titles(self) -> List[str]:
        return list(self._sheet_properties)

    def sheet_properties(self, title: str) -> Optional[Dict[str, Any]]:
        return self._sheet_properties.get(title)

    def tab(self, title: str) -> "SheetTab":
        return SheetTab(self, title)

    def create_tab(self, title: str, header: Optional[List[str]] = None) -> "SheetTab":
        """Add a tab (optionally with a header row) and return it."""
        self.batch_update([{"addSheet": {"properties": {"title": title}}}])
        self.refresh_sheet_properties()
        tab = self.tab(title)
        if header:
            tab.write_rows(1, [header])
        log.info(f"Created sheet tab: {title}")
        return tab

    def batch_update(self, requests: List[Dict[str, Any]]) -> Dict[str, Any]:
        return self.execute(
            self.service.spreadsheets().batchUpdate(
                spreadsheetId=self.spreadsheet_id,
                body={"requests": requests},
            )
        )


class SheetTab:
    """
    One tab of the spreadsheet, exposed as a row store.

    Values are written immediately; formatting requests are queued and sent
    by flush().
    """

    def __init__(self, connector: GoogleSheetsConnector, title: str):
        self.connector = connector
        self.title = title
        self._pending_requests: List[Dict[str, Any]] = []

    # Helpers

    def _range(self, a1: str) -> str:
        return f"'{self.title}'!{a1}"

    @property
    def _values(self):
        return self.connector.service.spreadsheets().values()

    def _sheet_id(self) -> int:
        props = self.connector.sheet_properties(self.title)
        if props is None:
            self.connector.refresh_sheet_properties()
            props = self.connector.sheet_properties(self.title)
        if props is None:
            raise ValueError(f"Sheet tab not found: {self.title}")
        return props["sheetId"]

    # Reads

    def exists(self) -> bool:
        return self.connector.sheet_properties(self.title) is not None

    def get_last_row(self) -> int:
        """Last row with content in column A or B (0 for an empty tab)."""
        result = self.connector.execute(
            self._values.get(
                spreadsheetId=self.connector.spreadsheet_id,
                range=self._range("A:B"),
                majorDimension="COLUMNS",
            )
        )
        columns = result.get("values", [])
        return max((len(col) for col in columns), default=0)

    def get_max_rows(self) -> int:
        """Current row capacity of the tab."""
        self.connector.refresh_sheet_properties()
        props = self.connector.sheet_properties(self.title)
        if props is None:
            raise ValueError(f"Sheet tab not found: {self.title}")
        return props.get("gridProperties", {}).get("rowCount", 0)

    def get_values(self, start_row: int, end_row: int, start_col: int = 1, end_col: int = 1) -> List[List[Any]]:
        """Rectangle of display values, padded so every row has the full width."""
        if end_row < start_row:
            return []
        a1 = f"{column_letter(start_col)}{start_row}:{column_letter(end_col)}{end_row}"
        result = self.connector.execute(
            self._values.get(spreadsheetId=self.connector.spreadsheet_id, range=self._range(a1))
        )
        rows = result.get("values", [])
        width = end_col - start_col + 1
        height = end_row - start_row + 1
        padded = [list(r) + [""] * (width - len(r)) for r in rows]
        padded.extend([[""] * width for _ in range(height - len(padded))])
        return padded

    def read_all(self) -> List[List[str]]:
        """Every populated row of the tab (header included) as display strings."""
        result = self.connector.execute(
            self._values.get(spreadsheetId=self.connector.spreadsheet_id, range=self._range("A:Z")),
            timeout=60,
        )
        return [[str(v) for v in row] for row in result.get("values", [])]

    # Writes

    def insert_rows_after(self, row: int, count: int) -> None:
        """Grow the tab by count empty rows after the given row."""
        if row >= self.get_max_rows():
            request = {"appendDimension": {"sheetId": self._sheet_id(), "dimension": "ROWS", "length": count}}
        else:
            request = {
                "insertDimension": {
                    "range": {
                        "sheetId": self._sheet_id(),
                        "dimension": "ROWS",
                        "startIndex": row,
                        "endIndex": row + count,
                    },
                    "inheritFromBefore": True,
                }
            }
        self.connector.batch_update([request])

    def write_rows(self, start_row: int, rows: List[List[Any]]) -> int:
        """Write a block of rows starting at start_row; returns rows written."""
        if not rows:
            return 0
        width = max(len(r) for r in rows)
        end_row = start_row + len(rows) - 1
        a1 = f"A{start_row}:{column_letter(width)}{end_row}"
        self.connector.execute(
            self._values.update(
                spreadsheetId=self.connector.spreadsheet_id,
                range=self._range(a1),
                valueInputOption="USER_ENTERED",
                body={"values": rows},
            ),
            timeout=120,
        )
        return len(rows)

    def append_row(self, row: List[Any]) -> None:
        self.connector.execute(
            self._values.append(
                spreadsheetId=self.connector.spreadsheet_id,
                range=self._range("A1"),
                valueInputOption="USER_ENTERED",
                insertDataOption="INSERT_ROWS",
                body={"values": [row]},
            )
        )

    def delete_row(self, row: int) -> None:
        self.connector.batch_update([{
            "deleteDimension": {
                "range": {
                    "sheetId": self._sheet_id(),
                    "dimension": "ROWS",
                    "startIndex": row - 1,
                    "endIndex": row,
                }
            }
        }])

    def set_font_color(self, rows: List[int], num_cols: int, color: str) -> None:
        """Queue a font colour change for whole rows; sent on flush()."""
        rgb = _hex_to_rgb(color)
        sheet_id = self._sheet_id()
        for row in rows:
            self._pending_requests.append({
                "repeatCell": {
                    "range": {
                        "sheetId": sheet_id,
                        "startRowIndex": row - 1,
                        "endRowIndex": row,
                        "startColumnIndex": 0,
                        "endColumnIndex": num_cols,
                    },
                    "cell": {"userEnteredFormat": {"textFormat": {"foregroundColor": rgb}}},
                    "fields": "userEnteredFormat.textFormat.foregroundColor",
                }
            })

    def flush(self) -> None:
        """Send any queued formatting requests."""
        if not self._pending_requests:
            return
        requests, self._pending_requests = self._pending_requests, []
        self.connector.batch_update(requests)
        log.debug(f"Flushed {len(requests)} formatting requests to '{self.title}'")
