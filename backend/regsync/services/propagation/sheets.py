"""
Spreadsheet Mirror Sink

Downstream copy of registration data for staff who work in the sheet.
Two write strategies are used against it:

- full replace (due-payments tab): clear every data row under the header,
  then write the complete current set
- incremental upsert (record tabs): one row, located by its key in column A

The sheet is never read back as input to reconciliation.
"""
import asyncio
import functools
import string
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Set
import logging

import httplib2
from google.oauth2.service_account import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build


logger = logging.getLogger(__name__)

SHEETS_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]


def column_letter(index: int) -> str:
    """1-based column index to A1 letters (1 -> A, 27 -> AA)."""
    letters = ""
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        letters = string.ascii_uppercase[remainder] + letters
    return letters


def a1_range(sheet_name: str, cells: str) -> str:
    escaped = sheet_name.replace("'", "''")
    return f"'{escaped}'!{cells}"


def data_range(sheet_name: str, width: int) -> str:
    """Every row below the header, across `width` columns."""
    return a1_range(sheet_name, f"A2:{column_letter(width)}")


class SpreadsheetSink(Protocol):
    """Operations the propagation dispatcher needs from a spreadsheet."""

    async def ensure_sheet(self, name: str, header: Sequence[str]) -> bool:
        """Create the tab with its header row if missing. True if created."""

    async def clear_rows(self, name: str, cell_range: str) -> None:
        """Clear a range (callers pass one that excludes the header)."""

    async def write_rows(self, name: str, rows: Sequence[Sequence[Any]], start_cell: str = "A2") -> None:
        """Write rows starting at start_cell."""

    async def upsert_row(self, name: str, key: str, row: Sequence[Any]) -> None:
        """Replace the row whose column A equals key, or append it."""

    async def settle(self) -> None:
        """Wait until no call abandoned by a cancelled caller is still running."""


class GoogleSheetsSink:
    """
    SpreadsheetSink over the Google Sheets v4 API.

    The google client is synchronous; each call runs in a worker thread so
    the event loop is never blocked. A caller that times out stops waiting
    but cannot stop the thread, so every call stays tracked until it
    returns and settle() waits for the stragglers. The HTTP transport
    carries its own timeout so a stuck request always ends.
    """

    def __init__(
        self,
        spreadsheet_id: str,
        service_credential: Optional[Dict[str, Any]] = None,
        service: Any = None,
        timeout: float = 10.0,
    ):
        self.spreadsheet_id = spreadsheet_id
        self._credential = service_credential
        self._service = service
        self.timeout = timeout
        self._inflight: Set[asyncio.Future] = set()

    def _get_service(self) -> Any:
        if self._service is None:
            credentials = Credentials.from_service_account_info(
                self._credential,
                scopes=SHEETS_SCOPES,
            )
            http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=self.timeout))
            self._service = build("sheets", "v4", http=http, cache_discovery=False)
        return self._service

    # -------------------------------------------------------------------------
    # Blocking implementations
    # -------------------------------------------------------------------------

    def _sheet_titles(self) -> List[str]:
        metadata = self._get_service().spreadsheets().get(
            spreadsheetId=self.spreadsheet_id
        ).execute()
        return [
            sheet.get("properties", {}).get("title")
            for sheet in metadata.get("sheets", [])
        ]

    def _ensure_sheet(self, name: str, header: Sequence[str]) -> bool:
        if name in self._sheet_titles():
            return False

        service = self._get_service()
        service.spreadsheets().batchUpdate(
            spreadsheetId=self.spreadsheet_id,
            body={"requests": [{"addSheet": {"properties": {"title": name}}}]},
        ).execute()
        service.spreadsheets().values().update(
            spreadsheetId=self.spreadsheet_id,
            range=a1_range(name, f"A1:{column_letter(len(header))}1"),
            valueInputOption="RAW",
            body={"values": [list(header)]},
        ).execute()
        logger.info(f"Created sheet '{name}' with {len(header)} header columns")
        return True

    def _clear_rows(self, name: str, cell_range: str) -> None:
        self._get_service().spreadsheets().values().clear(
            spreadsheetId=self.spreadsheet_id,
            range=cell_range,
            body={},
        ).execute()

    def _write_rows(self, name: str, rows: Sequence[Sequence[Any]], start_cell: str) -> None:
        if not rows:
            return
        self._get_service().spreadsheets().values().update(
            spreadsheetId=self.spreadsheet_id,
            range=a1_range(name, start_cell),
            valueInputOption="RAW",
            body={"values": [list(r) for r in rows]},
        ).execute()

    def _upsert_row(self, name: str, key: str, row: Sequence[Any]) -> None:
        values = self._get_service().spreadsheets().values()
        keys = values.get(
            spreadsheetId=self.spreadsheet_id,
            range=a1_range(name, "A:A"),
        ).execute().get("values", [])

        # Row 1 is the header
        for index, cells in enumerate(keys[1:], start=2):
            if cells and str(cells[0]) == str(key):
                values.update(
                    spreadsheetId=self.spreadsheet_id,
                    range=a1_range(name, f"A{index}"),
                    valueInputOption="RAW",
                    body={"values": [list(row)]},
                ).execute()
                return

        values.append(
            spreadsheetId=self.spreadsheet_id,
            range=a1_range(name, "A1"),
            valueInputOption="RAW",
            insertDataOption="INSERT_ROWS",
            body={"values": [list(row)]},
        ).execute()

    # -------------------------------------------------------------------------
    # SpreadsheetSink
    # -------------------------------------------------------------------------

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, functools.partial(fn, *args))
        self._inflight.add(future)
        future.add_done_callback(self._forget)
        # Cancelling the caller leaves the future (and its thread) running
        return await asyncio.shield(future)

    def _forget(self, future: asyncio.Future) -> None:
        self._inflight.discard(future)
        # Retrieving the exception keeps an abandoned failure from going unreported
        if not future.cancelled() and future.exception() is not None:
            logger.warning(f"Sheet call failed: {future.exception()!r}")

    async def settle(self) -> None:
        pending = [f for f in self._inflight if not f.done()]
        if pending:
            logger.info(f"Waiting for {len(pending)} abandoned sheet call(s) to finish")
            # asyncio.wait never cancels what it waits on
            await asyncio.wait(pending)

    async def ensure_sheet(self, name: str, header: Sequence[str]) -> bool:
        return await self._call(self._ensure_sheet, name, header)

    async def clear_rows(self, name: str, cell_range: str) -> None:
        await self._call(self._clear_rows, name, cell_range)

    async def write_rows(self, name: str, rows: Sequence[Sequence[Any]], start_cell: str = "A2") -> None:
        await self._call(self._write_rows, name, rows, start_cell)

    async def upsert_row(self, name: str, key: str, row: Sequence[Any]) -> None:
        await self._call(self._upsert_row, name, key, row)
