"""SQLite-backed data access layer for runsync."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from runsync import app_paths
from settings import ColumnMappingConfig, DEFAULT_OPTIONAL_COLUMNS, DEFAULT_REQUIRED_COLUMNS

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Database path handling
# ---------------------------------------------------------------------------
_DEFAULT_DB_PATH = Path(
    os.environ.get("RUNSYNC_DB_PATH", str(app_paths.data_path("runsync.db")))
).resolve()
_DB_PATH = _DEFAULT_DB_PATH
DB_PATH = _DB_PATH

_SCHEMA_LOCK = threading.Lock()
_SCHEMA_READY = False

CONNECTION_STATUSES = ("active", "revoked", "error")
SYNC_LOG_STATUSES = ("pending", "success", "failed")
DEFAULT_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

CONNECTION_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "TEXT PRIMARY KEY",
    "user_id": "TEXT NOT NULL UNIQUE",
    "google_user_id": "TEXT",
    "spreadsheet_id": "TEXT",
    "sheet_id": "INTEGER",
    "sheet_title": "TEXT",
    "access_token": "TEXT",
    "refresh_token": "TEXT",
    "access_token_expires_at": "TEXT",
    "scopes": "TEXT",
    "status": "TEXT NOT NULL DEFAULT 'active'",
    "created_at": "TEXT NOT NULL",
    "updated_at": "TEXT NOT NULL",
}

COLUMN_MAPPING_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "TEXT PRIMARY KEY",
    "connection_id": "TEXT NOT NULL UNIQUE",
    "mappings": "TEXT NOT NULL",
    "required_columns": "TEXT",
    "optional_columns": "TEXT",
    "created_at": "TEXT NOT NULL",
    "updated_at": "TEXT NOT NULL",
}

SYNC_LOG_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "TEXT PRIMARY KEY",
    "connection_id": "TEXT NOT NULL",
    "session_id": "TEXT NOT NULL",
    "status": "TEXT NOT NULL DEFAULT 'pending'",
    "attempted_at": "TEXT NOT NULL",
    "failure_reason": "TEXT",
    "request": "TEXT",
    "response": "TEXT",
    "retry_count": "INTEGER NOT NULL DEFAULT 0",
    "created_at": "TEXT NOT NULL",
    "updated_at": "TEXT NOT NULL",
}

RUNNING_STATE_COLUMN_DEFINITIONS: Dict[str, str] = {
    "user_id": "TEXT PRIMARY KEY",
    "payload": "TEXT NOT NULL",
    "updated_at": "TEXT NOT NULL",
}

SESSION_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "TEXT PRIMARY KEY",
    "user_id": "TEXT",
    "title": "TEXT NOT NULL",
    "started_at": "INTEGER NOT NULL",
    "ended_at": "INTEGER NOT NULL",
    "duration_seconds": "INTEGER NOT NULL DEFAULT 0",
    "project": "TEXT",
    "tags": "TEXT",
    "skill": "TEXT",
    "intensity": "TEXT",
    "notes": "TEXT",
    "created_at": "TEXT NOT NULL",
    "updated_at": "TEXT NOT NULL",
}

_TABLES: Dict[str, Dict[str, str]] = {
    "google_connections": CONNECTION_COLUMN_DEFINITIONS,
    "column_mappings": COLUMN_MAPPING_COLUMN_DEFINITIONS,
    "sync_logs": SYNC_LOG_COLUMN_DEFINITIONS,
    "running_states": RUNNING_STATE_COLUMN_DEFINITIONS,
    "sessions": SESSION_COLUMN_DEFINITIONS,
}


# ---------------------------------------------------------------------------
# Database helpers
# ---------------------------------------------------------------------------

def set_database_path(path: Path) -> None:
    """Override the SQLite file used for storage."""

    global _DB_PATH, DB_PATH, _SCHEMA_READY
    _DB_PATH = Path(path).resolve()
    DB_PATH = _DB_PATH
    _SCHEMA_READY = False


def _added_column_definition(definition: str) -> str:
    # SQLite cannot add key columns, nor NOT NULL columns without a default.
    for constraint in ("PRIMARY KEY", "UNIQUE"):
        definition = definition.replace(constraint, "")
    if "DEFAULT" not in definition:
        definition = definition.replace("NOT NULL", "")
    return " ".join(definition.split())


def _ensure_schema(conn: sqlite3.Connection) -> None:
    for table, definitions in _TABLES.items():
        columns = ",\n        ".join(
            f"{column} {definition}" for column, definition in definitions.items()
        )
        conn.execute(f"CREATE TABLE IF NOT EXISTS {table} (\n        {columns}\n    )")

        existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
        for column, definition in definitions.items():
            if column not in existing:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {_added_column_definition(definition)}")

    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_sync_logs_session ON sync_logs(connection_id, session_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id, started_at)"
    )


def _ensure_database() -> None:
    global _SCHEMA_READY
    if _SCHEMA_READY:
        return
    with _SCHEMA_LOCK:
        if _SCHEMA_READY:
            return
        if _DB_PATH.parent:
            _DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(_DB_PATH)
        try:
            _ensure_schema(conn)
            conn.commit()
        finally:
            conn.close()
        _SCHEMA_READY = True


def get_connection() -> sqlite3.Connection:
    _ensure_database()
    conn = sqlite3.connect(_DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction() -> Iterable[sqlite3.Connection]:
    conn = get_connection()
    try:
        conn.execute("BEGIN")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def initialize_database() -> Path:
    _ensure_database()
    return _DB_PATH


# ---------------------------------------------------------------------------
# Time and JSON helpers
# ---------------------------------------------------------------------------

def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def _utc_now_iso() -> str:
    return _utc_now().isoformat()


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json(value: Optional[str]) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Discarding unreadable JSON column value")
        return None


def _row_to_connection(row: sqlite3.Row) -> Dict[str, Any]:
    record = dict(row)
    record["scopes"] = _load_json(record.get("scopes")) or []
    return record


def _row_to_sync_log(row: sqlite3.Row) -> Dict[str, Any]:
    record = dict(row)
    record["request"] = _load_json(record.get("request"))
    record["response"] = _load_json(record.get("response"))
    record["retry_count"] = int(record.get("retry_count") or 0)
    return record


# ---------------------------------------------------------------------------
# Google connections
# ---------------------------------------------------------------------------

def upsert_connection(
    user_id: str,
    *,
    google_user_id: Optional[str] = None,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    access_token_expires_at: Optional[str] = None,
    scopes: Optional[Sequence[str]] = None,
    status: str = "active",
) -> Dict[str, Any]:
    """Create or refresh the spreadsheet connection owned by ``user_id``."""

    if status not in CONNECTION_STATUSES:
        raise ValueError(f"Unknown connection status: {status}")
    now = _utc_now_iso()
    with transaction() as conn:
        existing = conn.execute(
            "SELECT id FROM google_connections WHERE user_id = ?", (user_id,)
        ).fetchone()
        if existing:
            connection_id = existing["id"]
            conn.execute(
                """
                UPDATE google_connections
                   SET google_user_id = ?, access_token = ?, refresh_token = ?,
                       access_token_expires_at = ?, scopes = ?, status = ?, updated_at = ?
                 WHERE id = ?
                """,
                (
                    google_user_id,
                    access_token,
                    refresh_token,
                    access_token_expires_at,
                    _dump_json(list(scopes or DEFAULT_SCOPES)),
                    status,
                    now,
                    connection_id,
                ),
            )
        else:
            connection_id = uuid.uuid4().hex
            conn.execute(
                """
                INSERT INTO google_connections (
                    id, user_id, google_user_id, access_token, refresh_token,
                    access_token_expires_at, scopes, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    connection_id,
                    user_id,
                    google_user_id,
                    access_token,
                    refresh_token,
                    access_token_expires_at,
                    _dump_json(list(scopes or DEFAULT_SCOPES)),
                    status,
                    now,
                    now,
                ),
            )
        row = conn.execute(
            "SELECT * FROM google_connections WHERE id = ?", (connection_id,)
        ).fetchone()
    return _row_to_connection(row)


def update_selection(
    user_id: str,
    spreadsheet_id: str,
    sheet_id: Optional[int],
    sheet_title: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    with transaction() as conn:
        cursor = conn.execute(
            """
            UPDATE google_connections
               SET spreadsheet_id = ?, sheet_id = ?, sheet_title = ?, updated_at = ?
             WHERE user_id = ?
            """,
            (spreadsheet_id, sheet_id, sheet_title, _utc_now_iso(), user_id),
        )
        if cursor.rowcount == 0:
            return None
        row = conn.execute(
            "SELECT * FROM google_connections WHERE user_id = ?", (user_id,)
        ).fetchone()
    return _row_to_connection(row)


def get_connection_by_user(user_id: str) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        row = conn.execute(
            "SELECT * FROM google_connections WHERE user_id = ?", (user_id,)
        ).fetchone()
    return _row_to_connection(row) if row else None


# ---------------------------------------------------------------------------
# Column mappings
# ---------------------------------------------------------------------------

def save_column_mapping(
    connection_id: str,
    mappings: Mapping[str, str],
    *,
    required_columns: Optional[Sequence[str]] = None,
    optional_columns: Optional[Sequence[str]] = None,
) -> ColumnMappingConfig:
    config = ColumnMappingConfig(
        mappings={str(key): str(value).strip() for key, value in mappings.items() if str(value).strip()},
        required_columns=list(required_columns if required_columns is not None else DEFAULT_REQUIRED_COLUMNS),
        optional_columns=list(optional_columns if optional_columns is not None else DEFAULT_OPTIONAL_COLUMNS),
    )
    now = _utc_now_iso()
    with transaction() as conn:
        conn.execute(
            """
            INSERT INTO column_mappings (
                id, connection_id, mappings, required_columns, optional_columns, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(connection_id) DO UPDATE SET
                mappings = excluded.mappings,
                required_columns = excluded.required_columns,
                optional_columns = excluded.optional_columns,
                updated_at = excluded.updated_at
            """,
            (
                uuid.uuid4().hex,
                connection_id,
                _dump_json(config.mappings),
                _dump_json(config.required_columns),
                _dump_json(config.optional_columns),
                now,
                now,
            ),
        )
    return config


def get_column_mapping(connection_id: str) -> Optional[ColumnMappingConfig]:
    with get_connection() as conn:
        row = conn.execute(
            "SELECT * FROM column_mappings WHERE connection_id = ?", (connection_id,)
        ).fetchone()
    if not row:
        return None
    return ColumnMappingConfig.from_dict(
        {
            "mappings": _load_json(row["mappings"]),
            "required_columns": _load_json(row["required_columns"]),
            "optional_columns": _load_json(row["optional_columns"]),
        }
    )


# ---------------------------------------------------------------------------
# Sync logs
# ---------------------------------------------------------------------------

def create_sync_log(
    connection_id: str,
    session_id: str,
    request: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    log_id = uuid.uuid4().hex
    now = _utc_now_iso()
    with transaction() as conn:
        conn.execute(
            """
            INSERT INTO sync_logs (
                id, connection_id, session_id, status, attempted_at, request,
                retry_count, created_at, updated_at
            ) VALUES (?, ?, ?, 'pending', ?, ?, 0, ?, ?)
            """,
            (log_id, connection_id, session_id, now, _dump_json(dict(request or {})), now, now),
        )
        row = conn.execute("SELECT * FROM sync_logs WHERE id = ?", (log_id,)).fetchone()
    return _row_to_sync_log(row)


def update_sync_log(
    log_id: str,
    status: str,
    *,
    failure_reason: Optional[str] = None,
    response: Optional[Mapping[str, Any]] = None,
    retry_count: Optional[int] = None,
) -> Optional[Dict[str, Any]]:
    """Move a sync log to ``status``; ``pending`` starts a new attempt."""

    if status not in SYNC_LOG_STATUSES:
        raise ValueError(f"Unknown sync log status: {status}")
    now = _utc_now_iso()
    assignments = ["status = ?", "failure_reason = ?", "response = ?", "updated_at = ?"]
    params: List[Any] = [
        status,
        failure_reason,
        _dump_json(dict(response)) if response is not None else None,
        now,
    ]
    if retry_count is not None:
        assignments.append("retry_count = ?")
        params.append(int(retry_count))
    if status == "pending":
        assignments.append("attempted_at = ?")
        params.append(now)
    params.append(log_id)
    with transaction() as conn:
        cursor = conn.execute(
            f"UPDATE sync_logs SET {', '.join(assignments)} WHERE id = ?",
            params,
        )
        if cursor.rowcount == 0:
            return None
        row = conn.execute("SELECT * FROM sync_logs WHERE id = ?", (log_id,)).fetchone()
    return _row_to_sync_log(row)


def find_sync_log(connection_id: str, session_id: str) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        row = conn.execute(
            """
            SELECT * FROM sync_logs
             WHERE connection_id = ? AND session_id = ?
             ORDER BY created_at DESC, rowid DESC
             LIMIT 1
            """,
            (connection_id, session_id),
        ).fetchone()
    return _row_to_sync_log(row) if row else None


def fetch_sync_logs(connection_id: str, *, status: Optional[str] = None) -> List[Dict[str, Any]]:
    with get_connection() as conn:
        sql = "SELECT * FROM sync_logs WHERE connection_id = ?"
        params: List[Any] = [connection_id]
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at, rowid"
        cursor = conn.execute(sql, params)
        return [_row_to_sync_log(row) for row in cursor.fetchall()]


# ---------------------------------------------------------------------------
# Running-state mirror
# ---------------------------------------------------------------------------

def fetch_running_state(user_id: str) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        row = conn.execute(
            "SELECT payload FROM running_states WHERE user_id = ?", (user_id,)
        ).fetchone()
    if not row:
        return None
    payload = _load_json(row["payload"])
    return payload if isinstance(payload, dict) else None


def save_running_state(user_id: str, payload: Mapping[str, Any]) -> None:
    with transaction() as conn:
        conn.execute(
            """
            INSERT INTO running_states (user_id, payload, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                payload = excluded.payload,
                updated_at = excluded.updated_at
            """,
            (user_id, _dump_json(dict(payload)), _utc_now_iso()),
        )


# ---------------------------------------------------------------------------
# Completed sessions
# ---------------------------------------------------------------------------

def _row_to_session(row: sqlite3.Row) -> Dict[str, Any]:
    record = dict(row)
    record["tags"] = _load_json(record.get("tags")) or []
    return record


def save_session(session: Mapping[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
    """Insert or overwrite a completed session keyed by its id."""

    now = _utc_now_iso()
    tags = list(session.get("tags") or [])
    with transaction() as conn:
        conn.execute(
            """
            INSERT INTO sessions (
                id, user_id, title, started_at, ended_at, duration_seconds,
                project, tags, skill, intensity, notes, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                user_id = excluded.user_id,
                title = excluded.title,
                started_at = excluded.started_at,
                ended_at = excluded.ended_at,
                duration_seconds = excluded.duration_seconds,
                project = excluded.project,
                tags = excluded.tags,
                skill = excluded.skill,
                intensity = excluded.intensity,
                notes = excluded.notes,
                updated_at = excluded.updated_at
            """,
            (
                session["id"],
                user_id,
                session["title"],
                int(session["started_at"]),
                int(session["ended_at"]),
                int(session.get("duration_seconds") or 0),
                session.get("project"),
                _dump_json(tags) if tags else None,
                session.get("skill"),
                session.get("intensity"),
                session.get("notes"),
                now,
                now,
            ),
        )
        row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session["id"],)).fetchone()
    return _row_to_session(row)


def fetch_sessions(user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Return the sessions owned by ``user_id`` (``None`` for signed-out use), newest first."""

    with get_connection() as conn:
        cursor = conn.execute(
            "SELECT * FROM sessions WHERE user_id IS ? ORDER BY started_at DESC, rowid DESC",
            (user_id,),
        )
        return [_row_to_session(row) for row in cursor.fetchall()]


def delete_session(session_id: str, user_id: Optional[str] = None) -> bool:
    with transaction() as conn:
        cursor = conn.execute(
            "DELETE FROM sessions WHERE id = ? AND user_id IS ?", (session_id, user_id)
        )
        deleted = cursor.rowcount > 0
    return deleted


__all__ = [
    "DB_PATH",
    "create_sync_log",
    "delete_session",
    "fetch_running_state",
    "fetch_sessions",
    "fetch_sync_logs",
    "find_sync_log",
    "get_column_mapping",
    "get_connection",
    "get_connection_by_user",
    "initialize_database",
    "save_column_mapping",
    "save_running_state",
    "save_session",
    "set_database_path",
    "transaction",
    "update_selection",
    "update_sync_log",
    "upsert_connection",
]
