"""Identity boundary: bearer tokens in, user ids out."""

from __future__ import annotations

from typing import Dict, Mapping, Optional, Protocol

BEARER_PREFIX = "bearer "


class IdentityError(Exception):
    """Raised when a bearer token is missing or cannot be verified."""

    def __init__(self, message: str, status: int = 401) -> None:
        super().__init__(message)
        self.status = status


class IdentityVerifier(Protocol):
    def verify(self, token: str) -> str:
        """Return the user id that owns ``token`` or raise :class:`IdentityError`."""


def extract_bearer_token(header_value: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer ...`` header value."""

    if not header_value:
        return None
    trimmed = header_value.strip()
    if trimmed.lower().startswith(BEARER_PREFIX):
        token = trimmed[len(BEARER_PREFIX):].strip()
        return token or None
    return None


class StaticTokenVerifier:
    """Verifier backed by a fixed token table, used for local setups and tests."""

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self._tokens: Dict[str, str] = dict(tokens)

    def verify(self, token: str) -> str:
        if not token:
            raise IdentityError("Missing bearer token")
        user_id = self._tokens.get(token)
        if not user_id:
            raise IdentityError("Invalid or expired token")
        return user_id


__all__ = ["IdentityError", "IdentityVerifier", "StaticTokenVerifier", "extract_bearer_token"]
