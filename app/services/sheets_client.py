"""
Sheets service: Google Sheets REST (v4) access with the service-account token.

All calls go through SheetsClient._request, which applies timeouts and the
retry policy:
- 5xx/429 and connection errors: wait SHEETS_RETRY_DELAYS between attempts.
- 401: force one token refresh, retry once.
- 403: one access-repair attempt (re-share with the service account), retry once.
- anything else: SheetsApiError immediately.
"""
import logging
import re
import time
from typing import Any, Callable
from urllib.parse import quote

import requests

from config import SHEETS_REQUEST_TIMEOUT, SHEETS_RETRY_DELAYS
from errors import SheetsApiError, ServiceAccountError, mask_id

logger = logging.getLogger(__name__)

SHEETS_API = "https://sheets.googleapis.com/v4/spreadsheets"

TokenProvider = Callable[..., str | None]


def column_letter(index: int) -> str:
    """0-based column index to A1 letters (0 -> A, 26 -> AA)."""
    letters = ""
    n = index + 1
    while n:
        n, rem = divmod(n - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def quote_sheet_name(sheet_name: str) -> str:
    return "'" + sheet_name.replace("'", "''") + "'"


def a1_range(sheet_name: str, first_col: int, row: int, last_col: int | None = None, last_row: int | None = None) -> str:
    start = f"{column_letter(first_col)}{row}"
    end = f"{column_letter(last_col if last_col is not None else first_col)}{last_row or row}"
    return f"{quote_sheet_name(sheet_name)}!{start}:{end}"


def _error_message(resp: requests.Response) -> str:
    try:
        return resp.json().get("error", {}).get("message") or resp.reason
    except ValueError:
        return resp.text[:200] or resp.reason


class SheetsClient:
    def __init__(
        self,
        token_provider: TokenProvider,
        repair_access: Callable[[str], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout=SHEETS_REQUEST_TIMEOUT,
    ):
        self._token_provider = token_provider
        self._repair_access = repair_access
        self._sleep = sleep
        self._timeout = timeout

    def _token(self, force_refresh: bool = False) -> str:
        token = self._token_provider(force_refresh=force_refresh)
        if not token:
            raise ServiceAccountError("Service account token unavailable")
        return token

    def _request(
        self,
        method: str,
        url: str,
        spreadsheet_id: str | None = None,
        **kwargs: Any,
    ) -> dict | None:
        """Call the API with timeout and the retry policy; returns JSON or None."""
        kwargs.setdefault("timeout", self._timeout)
        token = self._token()
        delays = list(SHEETS_RETRY_DELAYS)
        refreshed = repaired = False
        while True:
            try:
                resp = requests.request(
                    method, url, headers={"Authorization": f"Bearer {token}"}, **kwargs
                )
            except requests.RequestException as e:
                if delays:
                    delay = delays.pop(0)
                    logger.warning("%s %s: %s; retrying in %ss", method, url, e, delay)
                    self._sleep(delay)
                    continue
                raise SheetsApiError(0, str(e)) from e

            status = resp.status_code
            if status < 400:
                return resp.json() if resp.content else None
            if status == 401 and not refreshed:
                refreshed = True
                logger.info("Sheets API 401; refreshing service account token")
                token = self._token(force_refresh=True)
                continue
            if status == 403 and not repaired and self._repair_access and spreadsheet_id:
                repaired = True
                logger.warning("Sheets API 403 on %s; attempting access repair", mask_id(spreadsheet_id))
                if self._repair_access(spreadsheet_id):
                    continue
            if (status >= 500 or status == 429) and delays:
                delay = delays.pop(0)
                logger.warning("Sheets API %s on %s %s; retrying in %ss", status, method, url, delay)
                self._sleep(delay)
                continue
            raise SheetsApiError(status, _error_message(resp))

    def get_spreadsheet(self, spreadsheet_id: str, fields: str | None = None) -> dict:
        params = {"fields": fields} if fields else None
        return self._request("GET", f"{SHEETS_API}/{spreadsheet_id}", spreadsheet_id, params=params) or {}

    def list_sheets(self, spreadsheet_id: str) -> list[dict]:
        """Sheet properties (title, sheetId, gridProperties) for every tab."""
        data = self.get_spreadsheet(spreadsheet_id, fields="sheets.properties")
        return [s.get("properties", {}) for s in data.get("sheets", [])]

    def get_values(self, spreadsheet_id: str, range_: str) -> list[list]:
        url = f"{SHEETS_API}/{spreadsheet_id}/values/{quote(range_, safe='')}"
        data = self._request("GET", url, spreadsheet_id) or {}
        return data.get("values", [])

    def batch_get_values(self, spreadsheet_id: str, ranges: list[str]) -> list[list[list]]:
        url = f"{SHEETS_API}/{spreadsheet_id}/values:batchGet"
        data = self._request("GET", url, spreadsheet_id, params={"ranges": ranges}) or {}
        return [vr.get("values", []) for vr in data.get("valueRanges", [])]

    def update_values(self, spreadsheet_id: str, range_: str, values: list[list]) -> dict | None:
        url = f"{SHEETS_API}/{spreadsheet_id}/values/{quote(range_, safe='')}"
        return self._request(
            "PUT",
            url,
            spreadsheet_id,
            params={"valueInputOption": "RAW"},
            json={"range": range_, "majorDimension": "ROWS", "values": values},
        )

    def append_values(self, spreadsheet_id: str, range_: str, values: list[list]) -> dict | None:
        url = f"{SHEETS_API}/{spreadsheet_id}/values/{quote(range_, safe='')}:append"
        return self._request(
            "POST",
            url,
            spreadsheet_id,
            params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
            json={"majorDimension": "ROWS", "values": values},
        )

    def batch_update(self, spreadsheet_id: str, requests_: list[dict]) -> dict | None:
        url = f"{SHEETS_API}/{spreadsheet_id}:batchUpdate"
        return self._request("POST", url, spreadsheet_id, json={"requests": requests_})

    def delete_rows(self, spreadsheet_id: str, sheet_id: int, start_index: int, end_index: int) -> dict | None:
        """Delete rows [start_index, end_index) (0-based) from the sheet with this numeric id."""
        return self.batch_update(spreadsheet_id, [{
            "deleteDimension": {
                "range": {
                    "sheetId": sheet_id,
                    "dimension": "ROWS",
                    "startIndex": start_index,
                    "endIndex": end_index,
                },
            },
        }])

    def append_columns(self, spreadsheet_id: str, sheet_id: int, count: int) -> dict | None:
        return self.batch_update(spreadsheet_id, [{
            "appendDimension": {"sheetId": sheet_id, "dimension": "COLUMNS", "length": count},
        }])


class SheetHandle:
    """One tab of one spreadsheet. Rows are 1-based sheet rows, columns 0-based."""

    def __init__(self, client: SheetsClient, spreadsheet_id: str, sheet_name: str):
        self.client = client
        self.spreadsheet_id = spreadsheet_id
        self.sheet_name = sheet_name

    def properties(self) -> dict | None:
        for props in self.client.list_sheets(self.spreadsheet_id):
            if props.get("title") == self.sheet_name:
                return props
        return None

    def header_row(self) -> list:
        rows = self.client.get_values(self.spreadsheet_id, f"{quote_sheet_name(self.sheet_name)}!1:1")
        return list(rows[0]) if rows else []

    def all_values(self) -> list[list]:
        return self.client.get_values(self.spreadsheet_id, quote_sheet_name(self.sheet_name))

    def sample_rows(self, count: int = 5) -> list[list]:
        """First `count` data rows below the header."""
        return self.client.get_values(self.spreadsheet_id, f"{quote_sheet_name(self.sheet_name)}!2:{count + 1}")

    def read_row_span(self, row: int, first_col: int, last_col: int) -> list:
        """Cells first_col..last_col of one row, padded with '' to the full width."""
        rows = self.client.get_values(self.spreadsheet_id, a1_range(self.sheet_name, first_col, row, last_col))
        values = list(rows[0]) if rows else []
        width = last_col - first_col + 1
        return values + [""] * (width - len(values))

    def write_row_span(self, row: int, first_col: int, values: list) -> None:
        last_col = first_col + len(values) - 1
        self.client.update_values(
            self.spreadsheet_id, a1_range(self.sheet_name, first_col, row, last_col), [values]
        )

    def append_rows(self, rows: list[list]) -> int | None:
        """Append rows after the data; returns the 1-based number of the first appended row when reported."""
        resp = self.client.append_values(self.spreadsheet_id, f"{quote_sheet_name(self.sheet_name)}!A1", rows)
        updated_range = ((resp or {}).get("updates") or {}).get("updatedRange") or ""
        match = re.search(r"![A-Z]+(\d+)", updated_range)
        return int(match.group(1)) if match else None

    def append_header_columns(self, names: list[str]) -> list:
        """Append names to the right of the header row, growing the grid if needed; returns the new header."""
        header = self.header_row()
        if not names:
            return header
        props = self.properties() or {}
        column_count = props.get("gridProperties", {}).get("columnCount")
        needed = len(header) + len(names)
        if column_count is not None and column_count < needed and "sheetId" in props:
            self.client.append_columns(self.spreadsheet_id, props["sheetId"], needed - column_count)
        self.write_row_span(1, len(header), list(names))
        return header + list(names)

    def delete_row(self, row: int) -> None:
        props = self.properties()
        if props is None or "sheetId" not in props:
            raise SheetsApiError(404, f"Sheet {self.sheet_name} not found")
        self.client.delete_rows(self.spreadsheet_id, props["sheetId"], row - 1, row)
