"""Google credentials for the spreadsheet connection.

A connection row normally carries the user's OAuth tokens; those become
:class:`google.oauth2.credentials.Credentials`.  Deployments without per-user
tokens fall back to a service account JSON file, which is validated and
normalised before google-auth sees it.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from google.oauth2 import credentials as oauth2_credentials
from google.oauth2 import service_account

__all__ = [
    "CredentialsFileInvalidError",
    "GOOGLE_TOKEN_URI",
    "REQUIRED_FIELDS",
    "SCOPES",
    "credentials_for_connection",
    "ensure_service_account_file",
    "load_service_account_data",
    "service_account_credentials",
]

SCOPES: Sequence[str] = ("https://www.googleapis.com/auth/spreadsheets",)
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"


class CredentialsFileInvalidError(Exception):
    """Raised when a service account JSON file is missing required data."""


REQUIRED_FIELDS: Iterable[str] = (
    "type",
    "project_id",
    "private_key_id",
    "private_key",
    "client_email",
    "client_id",
    "token_uri",
)


def _normalise_private_key(key: str) -> str:
    key = key.replace("\r\n", "\n").replace("\r", "\n")
    key = key.replace("\\n", "\n")
    if not key.endswith("\n"):
        key += "\n"
    return key


def _load_json(path: Path) -> Mapping[str, object]:
    try:
        with path.open("r", encoding="utf-8-sig") as handle:
            raw = handle.read()
    except OSError as exc:
        raise CredentialsFileInvalidError(f"Could not read credentials file: {exc}") from exc

    payload_text = raw.lstrip("\ufeff").strip()
    if not payload_text:
        raise CredentialsFileInvalidError("Service account JSON is empty.")

    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError as exc:
        raise CredentialsFileInvalidError(f"JSON parse error: {exc.msg}") from exc
    if not isinstance(payload, Mapping):
        raise CredentialsFileInvalidError("Service account JSON must be an object.")
    return payload


def _validate_payload(payload: Mapping[str, object]) -> Dict[str, object]:
    data: Dict[str, object] = dict(payload)
    missing: list[str] = []

    for field in REQUIRED_FIELDS:
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            missing.append(field)

    if data.get("type") != "service_account":
        missing.append("type")

    if missing:
        ordered = ", ".join(sorted(dict.fromkeys(missing)))
        raise CredentialsFileInvalidError(f"JSON missing fields: {ordered}")

    data["private_key"] = _normalise_private_key(str(data["private_key"]))
    return data


def load_service_account_data(path: Path) -> Dict[str, object]:
    """Return validated service account data without modifying ``path``."""

    return _validate_payload(_load_json(Path(path)))


def ensure_service_account_file(path: Path) -> Dict[str, object]:
    """Validate ``path`` and persist a normalised copy of the credentials."""

    path = Path(path)
    payload = load_service_account_data(path)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)
    return payload


def service_account_credentials(path: Path, scopes: Sequence[str] = SCOPES):
    payload = load_service_account_data(path)
    return service_account.Credentials.from_service_account_info(payload, scopes=list(scopes))


def credentials_for_connection(
    connection: Mapping[str, Any],
    *,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
) -> Optional[oauth2_credentials.Credentials]:
    """Return user credentials for ``connection`` or ``None`` without tokens.

    google-auth refreshes an expired access token on its own when the refresh
    token and the client pair are present.
    """

    access_token = connection.get("access_token")
    refresh_token = connection.get("refresh_token")
    if not access_token and not refresh_token:
        return None
    scopes = connection.get("scopes") or list(SCOPES)
    return oauth2_credentials.Credentials(
        token=access_token or None,
        refresh_token=refresh_token or None,
        token_uri=GOOGLE_TOKEN_URI,
        client_id=client_id,
        client_secret=client_secret,
        scopes=list(scopes),
    )
