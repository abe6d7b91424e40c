"""Keep at most one spreadsheet row per session id in step with its lifecycle.

A session row is written as ``Running`` when the timer starts, rewritten in
place while the draft changes, flipped to ``Completed`` when the timer stops
and blanked when the session is cancelled.  The row is found by scanning the
configured id column; the first trimmed match from the top wins.

The builders on :class:`SessionSheet` are pure.  Every network call goes
through :class:`runsync.sheets_client.GoogleSheetsClient`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from runsync.columns import (
    HeaderCell,
    a1_range,
    column_key_to_index,
    format_timestamp,
    requires_header_lookup,
    resolve_column_letter,
)
from runsync.running_session import SessionDraft, TimeTrackerSession
from runsync.sheets_client import SheetsClientError

logger = logging.getLogger(__name__)

STATUS_RUNNING = "Running"
STATUS_COMPLETED = "Completed"
TAG_SEPARATOR = ", "

# Column order used when a completed row is appended without any mapping.
DEFAULT_COLUMN_ORDER: Tuple[str, ...] = (
    "status",
    "title",
    "started_at",
    "ended_at",
    "duration_seconds",
    "project",
    "notes",
    "tags",
    "skill",
    "intensity",
)

RUNNING_UPDATE_FIELDS: Tuple[str, ...] = (
    "status",
    "title",
    "started_at",
    "project",
    "notes",
    "tags",
    "skill",
    "intensity",
    "duration_seconds",
)

HeaderRow = Optional[Sequence[HeaderCell]]
CellUpdate = Dict[str, Any]


class SyncConflictError(RuntimeError):
    """Configuration or divergence problem that retrying cannot fix."""

    default_code = "conflict"

    def __init__(self, code: Optional[str] = None, message: str = "") -> None:
        self.code = code or self.default_code
        self.message = message or self.code
        super().__init__(self.message)


class MappingIncompleteError(SyncConflictError):
    default_code = "mapping_incomplete"

    def __init__(self, message: str = "Column mapping is incomplete") -> None:
        super().__init__(self.default_code, message)


class RowNotFoundError(SyncConflictError):
    default_code = "row_not_found"

    def __init__(self, message: str = "Running session row not found") -> None:
        super().__init__(self.default_code, message)


@dataclass(frozen=True)
class UpsertResult:
    status: str
    response: Optional[Dict[str, Any]] = None
    action: Optional[str] = None
    row_number: Optional[int] = None


def _join_tags(tags: Optional[Sequence[str]]) -> str:
    return TAG_SEPARATOR.join(tags or ())


class SessionSheet:
    """One worksheet of one spreadsheet, addressed through a column mapping."""

    def __init__(
        self,
        client,
        sheet_title: str,
        mapping: Optional[Mapping[str, str]],
        sheet_id: Optional[int] = None,
        utc_offset_minutes: int = 9 * 60,
        value_input_option: str = "USER_ENTERED",
    ) -> None:
        self.client = client
        self.sheet_title = sheet_title
        self.mapping: Dict[str, str] = {
            key: value for key, value in (mapping or {}).items() if value and str(value).strip()
        }
        self.sheet_id = sheet_id
        self.utc_offset_minutes = utc_offset_minutes
        self.value_input_option = value_input_option

    # ------------------------------------------------------------------
    # Field values
    # ------------------------------------------------------------------
    def _timestamp(self, epoch_ms: Optional[int]) -> str:
        if epoch_ms is None:
            return ""
        return format_timestamp(epoch_ms, self.utc_offset_minutes)

    def _running_values(self, draft: SessionDraft, elapsed_seconds: int = 0) -> Dict[str, Any]:
        return {
            "id": draft.id,
            "status": STATUS_RUNNING,
            "title": draft.title or "",
            "started_at": self._timestamp(draft.started_at),
            "ended_at": "",
            "duration_seconds": int(elapsed_seconds),
            "project": draft.project or "",
            "notes": draft.notes or "",
            "tags": _join_tags(draft.tags),
            "skill": draft.skill or "",
            "intensity": draft.intensity or "",
        }

    def _completed_values(self, session: TimeTrackerSession) -> Dict[str, Any]:
        return {
            "id": session.id,
            "status": STATUS_COMPLETED,
            "title": session.title or "",
            "started_at": self._timestamp(session.started_at),
            "ended_at": self._timestamp(session.ended_at),
            "duration_seconds": session.duration_seconds or 0,
            "project": session.project or "",
            "notes": session.notes or "",
            "tags": _join_tags(session.tags),
            "skill": session.skill or "",
            "intensity": session.intensity or "",
        }

    def _column(self, field: str, header_row: HeaderRow) -> Optional[str]:
        return resolve_column_letter(self.mapping.get(field), header_row)

    def _place(self, values: Mapping[str, Any], header_row: HeaderRow) -> List[Any]:
        positions: Dict[int, Any] = {}
        for field, value in values.items():
            column = self._column(field, header_row)
            if column:
                positions[column_key_to_index(column)] = "" if value is None else value
        if not positions:
            return []
        row: List[Any] = [""] * (max(positions) + 1)
        for index, value in positions.items():
            row[index] = value
        return row

    def _updates(
        self,
        row_number: int,
        values: Mapping[str, Any],
        fields: Sequence[str],
        header_row: HeaderRow,
    ) -> List[CellUpdate]:
        updates: List[CellUpdate] = []
        for field in fields:
            column = self._column(field, header_row)
            if not column:
                continue
            value = values.get(field)
            updates.append(
                {
                    "range": a1_range(self.sheet_title, f"{column}{row_number}"),
                    "values": [["" if value is None else value]],
                }
            )
        return updates

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------
    def build_running_row(self, draft: SessionDraft, header_row: HeaderRow = None) -> List[Any]:
        return self._place(self._running_values(draft), header_row)

    def build_running_updates(
        self,
        row_number: int,
        draft: SessionDraft,
        elapsed_seconds: int,
        header_row: HeaderRow = None,
    ) -> List[CellUpdate]:
        values = self._running_values(draft, int(elapsed_seconds))
        return self._updates(row_number, values, RUNNING_UPDATE_FIELDS, header_row)

    def build_completed_row(self, session: TimeTrackerSession, header_row: HeaderRow = None) -> List[Any]:
        values = self._completed_values(session)
        row = self._place(values, header_row) if self.mapping else []
        if not row:
            return [values[field] for field in DEFAULT_COLUMN_ORDER]
        return row

    def build_completion_updates(
        self,
        row_number: int,
        session: TimeTrackerSession,
        header_row: HeaderRow = None,
    ) -> List[CellUpdate]:
        return self._updates(row_number, self._completed_values(session), DEFAULT_COLUMN_ORDER, header_row)

    def build_clear_updates(self, row_number: int, header_row: HeaderRow = None) -> List[CellUpdate]:
        blanks = {field: "" for field in self.mapping}
        return self._updates(row_number, blanks, list(self.mapping), header_row)

    # ------------------------------------------------------------------
    # Remote reads
    # ------------------------------------------------------------------
    def load_header_row(self) -> HeaderRow:
        """Return the header row when the mapping names headers, else ``None``."""

        if not requires_header_lookup(self.mapping):
            return None
        try:
            values = self.client.get_range(a1_range(self.sheet_title, "1:1"))
        except SheetsClientError as exc:
            logger.warning("Failed to read header row of %s: %s", self.sheet_title, exc)
            return None
        return values[0] if values else None

    def find_row_number(
        self,
        session_id: str,
        header_row: HeaderRow = None,
        column: Optional[str] = None,
    ) -> Optional[int]:
        column = column or self._column("id", header_row)
        if not column:
            return None
        values = self.client.get_range(a1_range(self.sheet_title, f"{column}:{column}"))
        target = str(session_id).strip()
        for position, row in enumerate(values):
            if row and str(row[0]).strip() == target:
                return position + 1
        return None

    def _require_id_column(self, header_row: HeaderRow, message: str) -> str:
        column = self._column("id", header_row)
        if not column:
            raise MappingIncompleteError(message)
        return column

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def start(self, draft: SessionDraft) -> UpsertResult:
        if not self.mapping.get("id") or not self.mapping.get("status"):
            raise MappingIncompleteError("ID and status columns must be configured for running sync")
        header_row = self.load_header_row()
        values = self.build_running_row(draft, header_row)
        if not values:
            raise MappingIncompleteError(
                "Column mapping must include at least one field for running sync"
            )
        response = self.client.append_row(
            self.sheet_title,
            values,
            value_input_option=self.value_input_option,
            insert_data_option="INSERT_ROWS",
        )
        logger.info("Appended running row for session %s", draft.id)
        return UpsertResult("ok", response, action="appended")

    def update(self, draft: SessionDraft, elapsed_seconds: float) -> UpsertResult:
        header_row = self.load_header_row()
        column = self._require_id_column(header_row, "ID column must be configured for running sync")
        row_number = self.find_row_number(draft.id, header_row, column)
        if row_number is None:
            raise RowNotFoundError()
        updates = self.build_running_updates(row_number, draft, int(max(0, elapsed_seconds)), header_row)
        if not updates:
            return UpsertResult("ok", row_number=row_number)
        response = self.client.batch_update_values(updates, value_input_option=self.value_input_option)
        return UpsertResult("ok", response, action="updated", row_number=row_number)

    def complete(self, session: TimeTrackerSession) -> UpsertResult:
        header_row = self.load_header_row()
        row_number: Optional[int] = None
        column = self._column("id", header_row)
        if column:
            try:
                row_number = self.find_row_number(session.id, header_row, column)
            except SheetsClientError as exc:
                logger.warning("Failed to locate existing row for session %s: %s", session.id, exc)

        if row_number is not None:
            updates = self.build_completion_updates(row_number, session, header_row)
            if updates:
                self.client.batch_update_values(updates, value_input_option=self.value_input_option)
            logger.info("Marked session %s completed in row %s", session.id, row_number)
            return UpsertResult("ok", None, action="updated", row_number=row_number)

        response = self.client.append_row(
            self.sheet_title,
            self.build_completed_row(session, header_row),
            value_input_option=self.value_input_option,
            insert_data_option="INSERT_ROWS",
        )
        logger.info("Appended completed row for session %s", session.id)
        return UpsertResult("ok", response, action="appended")

    def cancel(self, session_id: str) -> UpsertResult:
        header_row = self.load_header_row()
        column = self._require_id_column(header_row, "ID column must be configured for running sync")
        row_number = self.find_row_number(session_id, header_row, column)
        if row_number is None:
            return UpsertResult("skipped")
        updates = self.build_clear_updates(row_number, header_row)
        response = self.client.batch_update_values(updates, value_input_option=self.value_input_option)
        logger.info("Cleared row %s of cancelled session %s", row_number, session_id)
        return UpsertResult("ok", response, action="cleared", row_number=row_number)

    def delete(self, session_id: str) -> UpsertResult:
        if self.sheet_id is None:
            raise SyncConflictError("selection_missing", "Spreadsheet or sheet selection is not configured")
        header_row = self.load_header_row()
        column = self._require_id_column(header_row, "ID column mapping is invalid")
        row_number = self.find_row_number(session_id, header_row, column)
        if row_number is None:
            return UpsertResult("skipped")
        response = self.client.delete_rows(self.sheet_id, row_number - 1, row_number)
        logger.info("Deleted row %s of session %s", row_number, session_id)
        return UpsertResult("ok", response, action="deleted", row_number=row_number)


__all__ = [
    "DEFAULT_COLUMN_ORDER",
    "MappingIncompleteError",
    "RowNotFoundError",
    "STATUS_COMPLETED",
    "STATUS_RUNNING",
    "SessionSheet",
    "SyncConflictError",
    "UpsertResult",
]
