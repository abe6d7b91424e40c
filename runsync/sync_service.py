"""Operations that push running and completed sessions to the spreadsheet.

Every operation takes the caller's bearer token first and checks, in order:
the payload, the caller's identity, the connection context (connection,
selection and column mapping) and only then talks to Google.  Completion
attempts are recorded in the ``sync_logs`` table so failures can be retried.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import db
from runsync.identity import IdentityError, IdentityVerifier
from runsync.running_session import (
    INTENSITY_VALUES,
    SessionDraft,
    TimeTrackerSession,
)
from runsync.sheet_upsert import SessionSheet, SyncConflictError, UpsertResult
from runsync.sheets_client import GoogleSheetsClient, SheetsClientError, build_client
from settings import ColumnMappingConfig, SyncSettings, load_sync_settings

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Mapping[str, Any], Optional[SyncSettings]], GoogleSheetsClient]
DraftPayload = Union[SessionDraft, Mapping[str, Any]]
SessionPayload = Union[TimeTrackerSession, Mapping[str, Any]]


class InvalidPayloadError(ValueError):
    """Raised when a draft or session payload is malformed."""


@dataclass
class ConnectionContext:
    connection: Dict[str, Any]
    mapping: Optional[ColumnMappingConfig]

    @property
    def connection_id(self) -> str:
        return str(self.connection["id"])


# ---------------------------------------------------------------------------
# Payload validation
# ---------------------------------------------------------------------------
def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == value


def _require_text(payload: Mapping[str, Any], key: str, prefix: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidPayloadError(f"{prefix}.{key} is required")
    return value


def _require_epoch(payload: Mapping[str, Any], key: str, prefix: str) -> int:
    value = payload.get(key)
    if not _is_number(value):
        raise InvalidPayloadError(f"{prefix}.{key} is required")
    return int(value)


def _optional_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _tags(value: Any) -> tuple:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(dict.fromkeys(tag.strip() for tag in value if isinstance(tag, str) and tag.strip()))


def coerce_draft(payload: DraftPayload) -> SessionDraft:
    if isinstance(payload, SessionDraft):
        payload = {
            "id": payload.id,
            "title": payload.title,
            "started_at": payload.started_at,
            "project": payload.project,
            "tags": list(payload.tags),
            "skill": payload.skill,
            "intensity": payload.intensity,
            "notes": payload.notes,
        }
    if not isinstance(payload, Mapping):
        raise InvalidPayloadError("draft is required")
    intensity = payload.get("intensity")
    return SessionDraft(
        id=_require_text(payload, "id", "draft"),
        title=_require_text(payload, "title", "draft"),
        started_at=_require_epoch(payload, "started_at", "draft"),
        project=_optional_text(payload.get("project")),
        tags=_tags(payload.get("tags")),
        skill=_optional_text(payload.get("skill")),
        intensity=intensity if intensity in INTENSITY_VALUES else None,
        notes=_optional_text(payload.get("notes")),
    )


def coerce_session(payload: SessionPayload) -> TimeTrackerSession:
    if isinstance(payload, TimeTrackerSession):
        payload = {
            "id": payload.id,
            "title": payload.title,
            "started_at": payload.started_at,
            "ended_at": payload.ended_at,
            "duration_seconds": payload.duration_seconds,
            "project": payload.project,
            "tags": list(payload.tags or ()),
            "skill": payload.skill,
            "intensity": payload.intensity,
            "notes": payload.notes,
        }
    if not isinstance(payload, Mapping):
        raise InvalidPayloadError("session is required")
    duration = payload.get("duration_seconds")
    if not _is_number(duration):
        raise InvalidPayloadError("session.duration_seconds must be a number")
    tags = _tags(payload.get("tags"))
    intensity = payload.get("intensity")
    return TimeTrackerSession(
        id=_require_text(payload, "id", "session"),
        title=_require_text(payload, "title", "session"),
        started_at=_require_epoch(payload, "started_at", "session"),
        ended_at=_require_epoch(payload, "ended_at", "session"),
        duration_seconds=int(duration),
        project=_optional_text(payload.get("project")),
        tags=tags or None,
        skill=_optional_text(payload.get("skill")),
        intensity=intensity if intensity in INTENSITY_VALUES else None,
        notes=_optional_text(payload.get("notes")),
    )


def _require_session_id(session_id: Any) -> str:
    if not isinstance(session_id, str) or not session_id.strip():
        raise InvalidPayloadError("session_id is required")
    return session_id.strip()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------
class SessionSyncService:
    """Spreadsheet operations for a signed-in user."""

    def __init__(
        self,
        verifier: IdentityVerifier,
        client_factory: ClientFactory = build_client,
        records=db,
        settings: Optional[SyncSettings] = None,
    ) -> None:
        self._verifier = verifier
        self._client_factory = client_factory
        self._records = records
        self._settings = settings or load_sync_settings()

    # ------------------------------------------------------------------
    # Shared checks
    # ------------------------------------------------------------------
    def _authenticate(self, token: Optional[str]) -> str:
        if not token:
            raise IdentityError("Bearer token is required")
        return self._verifier.verify(token)

    def _active_connection(self, user_id: str) -> Dict[str, Any]:
        connection = self._records.get_connection_by_user(user_id)
        if not connection:
            raise SyncConflictError("connection_missing", "Google spreadsheet connection not found")
        if connection.get("status") != "active":
            raise SyncConflictError("connection_inactive", "Google spreadsheet connection is not active")
        return connection

    def _resolve_context(
        self,
        user_id: str,
        *,
        running: bool = False,
        needs_sheet_id: bool = False,
    ) -> ConnectionContext:
        connection = self._active_connection(user_id)
        if not connection.get("spreadsheet_id") or not connection.get("sheet_title"):
            raise SyncConflictError("selection_missing", "Spreadsheet or sheet selection is not configured")
        if needs_sheet_id and connection.get("sheet_id") is None:
            raise SyncConflictError("selection_missing", "Spreadsheet or sheet selection is not configured")

        mapping = self._records.get_column_mapping(connection["id"])
        if running:
            if mapping is None or not mapping.mappings:
                raise SyncConflictError("mapping_missing", "Column mapping is not configured")
            if not mapping.mappings.get("id") or not mapping.mappings.get("status"):
                raise SyncConflictError(
                    "mapping_incomplete", "ID and status columns must be configured for running sync"
                )
        # A saved mapping must cover its required columns; without one the
        # default column order is used.
        missing = mapping.missing_required() if mapping is not None else []
        if missing:
            raise SyncConflictError(
                "mapping_incomplete", f"Required columns are not mapped: {', '.join(missing)}"
            )
        return ConnectionContext(connection=connection, mapping=mapping)

    def _sheet(self, context: ConnectionContext) -> SessionSheet:
        client = self._client_factory(context.connection, self._settings)
        return SessionSheet(
            client,
            str(context.connection["sheet_title"]),
            context.mapping.mappings if context.mapping else None,
            sheet_id=context.connection.get("sheet_id"),
            utc_offset_minutes=self._settings.utc_offset_minutes,
            value_input_option=self._settings.value_input_option,
        )

    # ------------------------------------------------------------------
    # Running sessions
    # ------------------------------------------------------------------
    def start(self, token: Optional[str], draft: DraftPayload) -> UpsertResult:
        parsed = coerce_draft(draft)
        user_id = self._authenticate(token)
        context = self._resolve_context(user_id, running=True)
        return self._sheet(context).start(parsed)

    def update(self, token: Optional[str], draft: DraftPayload, elapsed_seconds: float) -> UpsertResult:
        parsed = coerce_draft(draft)
        if not _is_number(elapsed_seconds) or elapsed_seconds < 0:
            raise InvalidPayloadError("elapsed_seconds must be a non-negative number")
        user_id = self._authenticate(token)
        context = self._resolve_context(user_id, running=True)
        return self._sheet(context).update(parsed, elapsed_seconds)

    def cancel(self, token: Optional[str], session_id: str) -> UpsertResult:
        session_id = _require_session_id(session_id)
        user_id = self._authenticate(token)
        context = self._resolve_context(user_id, running=True)
        return self._sheet(context).cancel(session_id)

    # ------------------------------------------------------------------
    # Completed sessions
    # ------------------------------------------------------------------
    def complete(
        self,
        token: Optional[str],
        session: SessionPayload,
        source: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Write a completed session and return its sync log.

        Failures of the spreadsheet write are recorded on the log rather than
        raised; the log is reused when the same session is pushed again.
        """

        parsed = coerce_session(session)
        user_id = self._authenticate(token)
        context = self._resolve_context(user_id)

        existing = self._records.find_sync_log(context.connection_id, parsed.id)
        if existing:
            log = self._records.update_sync_log(
                existing["id"], "pending", retry_count=existing["retry_count"] + 1
            )
        else:
            log = self._records.create_sync_log(
                context.connection_id,
                parsed.id,
                {"session_id": parsed.id, "source": source},
            )

        try:
            result = self._sheet(context).complete(parsed)
        except (SheetsClientError, SyncConflictError) as exc:
            logger.warning("Failed to sync completed session %s: %s", parsed.id, exc)
            return self._records.update_sync_log(log["id"], "failed", failure_reason=str(exc))
        except Exception as exc:
            self._records.update_sync_log(log["id"], "failed", failure_reason=str(exc) or type(exc).__name__)
            raise

        logger.info("Synced completed session %s (%s)", parsed.id, result.action)
        return self._records.update_sync_log(
            log["id"],
            "success",
            response=result.response if result.action == "appended" else None,
        )

    def retry(self, token: Optional[str], session: SessionPayload) -> Dict[str, Any]:
        return self.complete(token, session, source="retry")

    def delete(self, token: Optional[str], session_id: str) -> UpsertResult:
        session_id = _require_session_id(session_id)
        user_id = self._authenticate(token)
        context = self._resolve_context(user_id, needs_sheet_id=True)
        if context.mapping is None or not context.mapping.mappings.get("id"):
            raise SyncConflictError("mapping_incomplete", "ID column must be configured to delete sessions")

        result = self._sheet(context).delete(session_id)
        if result.status == "ok":
            existing = self._records.find_sync_log(context.connection_id, session_id)
            if existing:
                self._records.update_sync_log(existing["id"], "success", response={"action": "deleted"})
        return result

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def get_settings(self, token: Optional[str]) -> Dict[str, Any]:
        user_id = self._authenticate(token)
        connection = self._records.get_connection_by_user(user_id)
        mapping = self._records.get_column_mapping(connection["id"]) if connection else None
        return _settings_payload(connection, mapping)

    def update_settings(
        self,
        token: Optional[str],
        spreadsheet_id: str,
        sheet_id: int,
        sheet_title: str,
        column_mapping: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not isinstance(spreadsheet_id, str) or not spreadsheet_id.strip():
            raise InvalidPayloadError("spreadsheet_id is required")
        if not _is_number(sheet_id):
            raise InvalidPayloadError("sheet_id must be a number")
        if not isinstance(sheet_title, str) or not sheet_title.strip():
            raise InvalidPayloadError("sheet_title is required")
        cleaned: Dict[str, str] = {}
        if isinstance(column_mapping, Mapping):
            cleaned = {
                str(key): value.strip()
                for key, value in column_mapping.items()
                if isinstance(value, str) and value.strip()
            }

        user_id = self._authenticate(token)
        connection = self._active_connection(user_id)
        updated = self._records.update_selection(
            user_id, spreadsheet_id.strip(), int(sheet_id), sheet_title.strip()
        ) or connection
        if cleaned:
            self._records.save_column_mapping(
                updated["id"],
                cleaned,
                required_columns=self._settings.default_required_columns,
                optional_columns=self._settings.default_optional_columns,
            )
        mapping = self._records.get_column_mapping(updated["id"])
        return _settings_payload(updated, mapping)

    def list_sheets(self, token: Optional[str], spreadsheet_id: str) -> List[Dict[str, Any]]:
        if not isinstance(spreadsheet_id, str) or not spreadsheet_id.strip():
            raise InvalidPayloadError("spreadsheet_id is required")
        user_id = self._authenticate(token)
        connection = dict(self._active_connection(user_id))
        connection["spreadsheet_id"] = spreadsheet_id.strip()
        return self._client_factory(connection, self._settings).list_sheets()


def _settings_payload(
    connection: Optional[Mapping[str, Any]],
    mapping: Optional[ColumnMappingConfig],
) -> Dict[str, Any]:
    if not connection:
        return {"connection_status": "revoked"}
    payload: Dict[str, Any] = {
        "connection_status": connection.get("status"),
        "updated_at": connection.get("updated_at"),
    }
    if connection.get("spreadsheet_id"):
        payload["spreadsheet"] = {
            "id": connection["spreadsheet_id"],
            "sheet_id": connection.get("sheet_id"),
            "sheet_title": connection.get("sheet_title"),
        }
    if mapping is not None:
        payload["column_mapping"] = mapping.to_json()
    return payload


__all__ = [
    "ConnectionContext",
    "InvalidPayloadError",
    "SessionSyncService",
    "coerce_draft",
    "coerce_session",
]
