"""Google Sheets client used by the session upsert protocol.

This module centralises every direct interaction with the Google Sheets API.
It exposes the four primitives the upsert protocol needs (read a range,
append a row, batch-update cells and delete a row span) plus a sheet listing
used when a user picks the target worksheet.

All public entry points raise subclasses of :class:`SheetsClientError`.
Transient HTTP statuses are retried with exponential backoff before the
failure surfaces as :class:`SheetsApiResponseError`, which carries the HTTP
status so callers can tell an expired token from a server outage.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from runsync.columns import a1_range
from runsync.credentials import (
    CredentialsFileInvalidError,
    credentials_for_connection,
    service_account_credentials,
)

logger = logging.getLogger(__name__)

RETRIABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
BACKOFF_SCHEDULE = (1, 2, 4, 8, 16)
MAX_RETRY_ATTEMPTS = 5

CellValue = Any


class SheetsClientError(RuntimeError):
    """Base error raised for Sheets API failures."""


class SheetsCredentialsError(SheetsClientError):
    """Raised when no usable credentials are available for a connection."""


class SheetsApiResponseError(SheetsClientError):
    """Raised when the Google API returns an error response."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


def _http_status(exc: HttpError) -> Optional[int]:
    status = getattr(exc, "status_code", None) or getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _error_message(exc: HttpError) -> str:
    content = getattr(exc, "content", b"") or b""
    try:
        payload = json.loads(content.decode("utf-8") if isinstance(content, bytes) else content)
    except (ValueError, UnicodeDecodeError):
        payload = None
    if isinstance(payload, Mapping):
        error = payload.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
    reason = getattr(exc, "reason", None)
    return str(reason or exc)


class GoogleSheetsClient:
    """Concrete helper that speaks to one spreadsheet through the REST API."""

    def __init__(
        self,
        spreadsheet_id: str,
        service,
        *,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
    ) -> None:
        self.spreadsheet_id = spreadsheet_id
        self._service = service
        self._sleep = sleep
        self._max_attempts = max(1, max_attempts)

    # ------------------------------------------------------------------
    # Retry handling
    # ------------------------------------------------------------------
    def _call_with_retry(self, request, description: str) -> Dict[str, Any]:
        """Execute ``request`` applying exponential backoff for retriable errors."""

        attempt = 0
        while True:
            try:
                result = request.execute()
            except HttpError as exc:
                status = _http_status(exc)
                if status not in RETRIABLE_STATUSES or attempt >= self._max_attempts - 1:
                    raise SheetsApiResponseError(_error_message(exc), status) from exc
                delay = BACKOFF_SCHEDULE[min(attempt, len(BACKOFF_SCHEDULE) - 1)]
                attempt += 1
                logger.warning(
                    "Sheets API %s error (%s). Retrying in %ss (%d/%d)",
                    description,
                    status,
                    delay,
                    attempt,
                    self._max_attempts,
                )
                self._sleep(delay)
                continue
            return result or {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get_range(self, range_spec: str) -> List[List[CellValue]]:
        request = (
            self._service.spreadsheets()
            .values()
            .get(spreadsheetId=self.spreadsheet_id, range=range_spec, majorDimension="ROWS")
        )
        result = self._call_with_retry(request, "values.get")
        return [list(row) for row in result.get("values", [])]

    def append_row(
        self,
        sheet_title: str,
        values: Sequence[CellValue],
        *,
        value_input_option: str = "USER_ENTERED",
        insert_data_option: str = "INSERT_ROWS",
    ) -> Dict[str, Any]:
        request = (
            self._service.spreadsheets()
            .values()
            .append(
                spreadsheetId=self.spreadsheet_id,
                range=a1_range(sheet_title, "A1"),
                valueInputOption=value_input_option,
                insertDataOption=insert_data_option,
                body={"values": [list(values)]},
            )
        )
        return self._call_with_retry(request, "values.append")

    def batch_update_values(
        self,
        data: Sequence[Mapping[str, Any]],
        *,
        value_input_option: str = "USER_ENTERED",
    ) -> Dict[str, Any]:
        if not data:
            return {}
        body = {"valueInputOption": value_input_option, "data": [dict(entry) for entry in data]}
        request = (
            self._service.spreadsheets()
            .values()
            .batchUpdate(spreadsheetId=self.spreadsheet_id, body=body)
        )
        return self._call_with_retry(request, "values.batchUpdate")

    def delete_rows(self, sheet_id: int, start_index: int, end_index: int) -> Dict[str, Any]:
        """Delete rows ``[start_index, end_index)`` (0-based) from ``sheet_id``."""

        if start_index < 0 or end_index <= start_index:
            raise ValueError("Row span must be non-empty and start at >= 0")
        body = {
            "requests": [
                {
                    "deleteDimension": {
                        "range": {
                            "sheetId": sheet_id,
                            "dimension": "ROWS",
                            "startIndex": start_index,
                            "endIndex": end_index,
                        }
                    }
                }
            ]
        }
        request = self._service.spreadsheets().batchUpdate(spreadsheetId=self.spreadsheet_id, body=body)
        return self._call_with_retry(request, "spreadsheets.batchUpdate")

    def list_sheets(self) -> List[Dict[str, Any]]:
        request = self._service.spreadsheets().get(
            spreadsheetId=self.spreadsheet_id,
            includeGridData=False,
            fields="sheets(properties(sheetId,title,index))",
        )
        result = self._call_with_retry(request, "spreadsheets.get")
        sheets: List[Dict[str, Any]] = []
        for entry in result.get("sheets", []):
            properties = entry.get("properties", {}) if isinstance(entry, Mapping) else {}
            if "sheetId" not in properties:
                continue
            sheets.append(
                {
                    "id": int(properties["sheetId"]),
                    "title": str(properties.get("title", "")),
                    "index": int(properties.get("index", 0)),
                }
            )
        return sorted(sheets, key=lambda sheet: sheet["index"])


def build_service(credentials):
    try:
        return build("sheets", "v4", credentials=credentials, cache_discovery=False)
    except Exception as exc:  # pragma: no cover - HTTP / auth error guard
        raise SheetsApiResponseError(str(exc)) from exc


def build_client(connection: Mapping[str, Any], settings=None) -> GoogleSheetsClient:
    """Factory used by the sync service to construct a client for ``connection``.

    The connection's OAuth tokens are preferred; without them the configured
    service account file is used.
    """

    client_id = getattr(settings, "google_client_id", None)
    client_secret = getattr(settings, "google_client_secret", None)
    credentials = credentials_for_connection(
        connection, client_id=client_id, client_secret=client_secret
    )
    if credentials is None:
        credential_path = getattr(settings, "credential_path", None)
        if not credential_path:
            raise SheetsCredentialsError("The Google connection has no usable credentials.")
        try:
            credentials = service_account_credentials(Path(credential_path))
        except CredentialsFileInvalidError as exc:
            raise SheetsCredentialsError(str(exc)) from exc
        except Exception as exc:  # pragma: no cover - google library guard
            raise SheetsCredentialsError(str(exc)) from exc

    spreadsheet_id = connection.get("spreadsheet_id")
    if not spreadsheet_id:
        raise SheetsClientError("No spreadsheet is selected for this connection.")
    return GoogleSheetsClient(str(spreadsheet_id), build_service(credentials))


__all__ = [
    "BACKOFF_SCHEDULE",
    "GoogleSheetsClient",
    "RETRIABLE_STATUSES",
    "SheetsApiResponseError",
    "SheetsClientError",
    "SheetsCredentialsError",
    "build_client",
    "build_service",
]
