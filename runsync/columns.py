"""Column reference helpers shared by the spreadsheet upsert protocol.

A column mapping entry is either a literal column letter (``"C"``, ``"AB"``)
or free text that must match a cell in the sheet's header row.  The helpers in
this module translate between the two and build quoted A1 ranges.
"""
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional, Sequence, Union

HeaderCell = Union[str, int, float]

_COLUMN_KEY_RE = re.compile(r"[A-Z]+")


def normalize_column_key(value: Optional[str]) -> Optional[str]:
    """Return ``value`` as uppercase column letters, or ``None`` for header names."""

    if not value:
        return None
    candidate = str(value).strip().upper()
    if _COLUMN_KEY_RE.fullmatch(candidate):
        return candidate
    return None


def column_key_to_index(column_key: str) -> int:
    """Convert column letters to a 0-based index (``A`` → 0, ``AA`` → 26)."""

    index = 0
    for char in column_key:
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index - 1


def index_to_column_key(index: int) -> str:
    """Convert a 0-based index back to column letters.

    Bijective base-26 has no zero digit, so each step takes the remainder,
    subtracts it and only then divides.
    """

    if index < 0:
        raise ValueError("Column index must be >= 0")
    letters = []
    current = index + 1
    while current > 0:
        modulo = (current - 1) % 26
        letters.append(chr(ord("A") + modulo))
        current = (current - modulo) // 26
    return "".join(reversed(letters))


def resolve_column_letter(
    configured: Optional[str],
    header_row: Optional[Sequence[HeaderCell]],
) -> Optional[str]:
    """Resolve a mapping value to column letters.

    Literal letters are returned directly.  Anything else is looked up in
    ``header_row``; the first cell whose trimmed text equals the trimmed value
    wins.  ``None`` means the field cannot be placed for this operation.
    """

    direct = normalize_column_key(configured)
    if direct:
        return direct
    if not configured or not header_row:
        return None
    target = str(configured).strip()
    for position, cell in enumerate(header_row):
        if str(cell).strip() == target:
            return index_to_column_key(position)
    return None


def requires_header_lookup(mapping: Optional[Mapping[str, str]]) -> bool:
    """Return ``True`` when at least one mapping value names a header."""

    if not mapping:
        return False
    return any(value and not normalize_column_key(str(value)) for value in mapping.values())


def quote_sheet_title(title: str) -> str:
    """Return a worksheet title quoted according to A1 notation rules."""

    safe = (title or "").strip()
    if len(safe) >= 2 and safe[0] == safe[-1] == "'":
        safe = safe[1:-1].replace("''", "'")
    return "'" + safe.replace("'", "''") + "'"


def a1_range(sheet_title: str, range_spec: str) -> str:
    return f"{quote_sheet_title(sheet_title)}!{range_spec}"


def format_timestamp(epoch_ms: Union[int, float], utc_offset_minutes: int = 9 * 60) -> str:
    """Render an epoch-millisecond instant as ``YYYY/MM/DD HH:MM:SS``.

    The sheet stores wall-clock text in a fixed offset; JST is the default.
    """

    zone = timezone(timedelta(minutes=utc_offset_minutes))
    moment = datetime.fromtimestamp(int(epoch_ms) / 1000, tz=timezone.utc).astimezone(zone)
    return moment.strftime("%Y/%m/%d %H:%M:%S")


__all__ = [
    "a1_range",
    "column_key_to_index",
    "format_timestamp",
    "index_to_column_key",
    "normalize_column_key",
    "quote_sheet_title",
    "requires_header_lookup",
    "resolve_column_letter",
]
