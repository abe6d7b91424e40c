"""Application configuration helpers for runsync."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from runsync import app_paths


logger = logging.getLogger(__name__)


SYNC_SETTINGS_PATH = os.getenv(
    "RUNSYNC_SETTINGS_PATH",
    str(app_paths.data_path("runsync_settings.json")),
)
DEFAULT_CREDENTIALS_PATH = os.getenv(
    "RUNSYNC_CREDENTIALS_PATH",
    str(app_paths.credentials_path("service_account.json")),
)
GOOGLE_CLIENT_ID = os.getenv("RUNSYNC_GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("RUNSYNC_GOOGLE_CLIENT_SECRET")

MAPPING_FIELDS = (
    "id",
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
DEFAULT_REQUIRED_COLUMNS = ["title", "started_at", "ended_at", "duration_seconds"]
DEFAULT_OPTIONAL_COLUMNS = ["project", "notes", "tags", "skill", "intensity"]
VALUE_INPUT_OPTIONS = ("USER_ENTERED", "RAW")

DEFAULT_TICK_INTERVAL_MS = 1000
MIN_TICK_INTERVAL_MS = 100
DEFAULT_UPDATE_DEBOUNCE_SECONDS = 1.0
DEFAULT_UTC_OFFSET_MINUTES = 9 * 60


@dataclass
class ColumnMappingConfig:
    """Logical session field → spreadsheet column reference."""

    mappings: Dict[str, str] = field(default_factory=dict)
    required_columns: List[str] = field(default_factory=lambda: list(DEFAULT_REQUIRED_COLUMNS))
    optional_columns: List[str] = field(default_factory=lambda: list(DEFAULT_OPTIONAL_COLUMNS))

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, object]]) -> Optional["ColumnMappingConfig"]:
        if not isinstance(data, Mapping):
            return None
        raw_mappings = data.get("mappings")
        if not isinstance(raw_mappings, Mapping):
            return None
        mappings = {
            str(key): str(value).strip()
            for key, value in raw_mappings.items()
            if isinstance(value, (str, int)) and str(value).strip()
        }
        return cls(
            mappings=mappings,
            required_columns=_string_list(data.get("required_columns"), DEFAULT_REQUIRED_COLUMNS),
            optional_columns=_string_list(data.get("optional_columns"), DEFAULT_OPTIONAL_COLUMNS),
        )

    def missing_required(self) -> List[str]:
        return [name for name in self.required_columns if not self.mappings.get(name, "").strip()]

    def to_json(self) -> Dict[str, object]:
        return {
            "mappings": dict(self.mappings),
            "required_columns": list(self.required_columns),
            "optional_columns": list(self.optional_columns),
        }


@dataclass
class SyncSettings:
    credential_path: str = DEFAULT_CREDENTIALS_PATH
    tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS
    update_debounce_seconds: float = DEFAULT_UPDATE_DEBOUNCE_SECONDS
    utc_offset_minutes: int = DEFAULT_UTC_OFFSET_MINUTES
    value_input_option: str = "USER_ENTERED"
    default_required_columns: List[str] = field(default_factory=lambda: list(DEFAULT_REQUIRED_COLUMNS))
    default_optional_columns: List[str] = field(default_factory=lambda: list(DEFAULT_OPTIONAL_COLUMNS))
    # OAuth client pair used to refresh user tokens; environment only.
    google_client_id: Optional[str] = field(default=GOOGLE_CLIENT_ID, repr=False)
    google_client_secret: Optional[str] = field(default=GOOGLE_CLIENT_SECRET, repr=False)

    def to_json(self) -> Dict[str, object]:
        return {
            "credential_path": self.credential_path,
            "tick_interval_ms": self.tick_interval_ms,
            "update_debounce_seconds": self.update_debounce_seconds,
            "utc_offset_minutes": self.utc_offset_minutes,
            "value_input_option": self.value_input_option,
            "default_required_columns": list(self.default_required_columns),
            "default_optional_columns": list(self.default_optional_columns),
        }


def _string_list(value: object, default: List[str]) -> List[str]:
    if not isinstance(value, list):
        return list(default)
    return [str(entry) for entry in value if isinstance(entry, str) and entry.strip()]


def _clamp_int(value: object, default: int, minimum: int, maximum: int) -> int:
    try:
        return max(minimum, min(maximum, int(value)))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _clamp_float(value: object, default: float, minimum: float, maximum: float) -> float:
    try:
        return max(minimum, min(maximum, float(value)))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _ensure_sync_settings(path: str) -> Dict[str, object]:
    default_settings = SyncSettings().to_json()
    if not os.path.exists(path):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(default_settings, handle, indent=2)
        return json.loads(json.dumps(default_settings))

    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except json.JSONDecodeError:
        logger.warning("Settings file %s is not valid JSON; using defaults", path)
        return default_settings

    merged: Dict[str, object] = dict(default_settings)
    if isinstance(data, Mapping):
        merged.update(data)
    return merged


def load_sync_settings(path: Optional[str] = None) -> SyncSettings:
    data = _ensure_sync_settings(path or SYNC_SETTINGS_PATH)

    value_input_option = str(data.get("value_input_option", "USER_ENTERED")).upper()
    if value_input_option not in VALUE_INPUT_OPTIONS:
        value_input_option = "USER_ENTERED"

    return SyncSettings(
        credential_path=str(data.get("credential_path") or DEFAULT_CREDENTIALS_PATH),
        tick_interval_ms=_clamp_int(
            data.get("tick_interval_ms"), DEFAULT_TICK_INTERVAL_MS, MIN_TICK_INTERVAL_MS, 60_000
        ),
        update_debounce_seconds=_clamp_float(
            data.get("update_debounce_seconds"), DEFAULT_UPDATE_DEBOUNCE_SECONDS, 0.0, 30.0
        ),
        utc_offset_minutes=_clamp_int(
            data.get("utc_offset_minutes"), DEFAULT_UTC_OFFSET_MINUTES, -12 * 60, 14 * 60
        ),
        value_input_option=value_input_option,
        default_required_columns=_string_list(
            data.get("default_required_columns"), DEFAULT_REQUIRED_COLUMNS
        ),
        default_optional_columns=_string_list(
            data.get("default_optional_columns"), DEFAULT_OPTIONAL_COLUMNS
        ),
    )


def save_sync_settings(settings: SyncSettings, path: Optional[str] = None) -> None:
    target = path or SYNC_SETTINGS_PATH
    directory = os.path.dirname(target)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(target, "w", encoding="utf-8") as handle:
        json.dump(settings.to_json(), handle, indent=2)


__all__ = [
    "ColumnMappingConfig",
    "DEFAULT_CREDENTIALS_PATH",
    "DEFAULT_OPTIONAL_COLUMNS",
    "DEFAULT_REQUIRED_COLUMNS",
    "MAPPING_FIELDS",
    "SyncSettings",
    "load_sync_settings",
    "save_sync_settings",
]
