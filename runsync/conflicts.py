"""Journal of sessions whose spreadsheet row diverged from local state."""
from __future__ import annotations

import json
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, List, Mapping, Optional

from runsync import app_paths

_LOGGER = logging.getLogger("runsync.sync.conflicts")
_HANDLER_CONFIGURED = False
_CONFLICTS: Deque[Dict[str, object]] = deque(maxlen=50)
_LOCK = threading.Lock()


def _ensure_logger() -> logging.Logger:
    global _HANDLER_CONFIGURED
    if not _HANDLER_CONFIGURED:
        try:
            handler = logging.FileHandler(app_paths.logs_path("conflicts.log"), encoding="utf-8")
        except OSError:  # pragma: no cover - depends on filesystem permissions
            _LOGGER.warning("Conflict log file is not writable")
        else:
            handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
            _LOGGER.addHandler(handler)
        _LOGGER.setLevel(logging.INFO)
        _HANDLER_CONFIGURED = True
    return _LOGGER


def record(
    session_id: str,
    code: str,
    message: str,
    context: Optional[Mapping[str, object]] = None,
) -> Dict[str, object]:
    """Log a divergence entry and append it to the in-memory cache."""

    timestamp = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
    payload: Dict[str, object] = {
        "session_id": session_id,
        "code": code,
        "message": message,
        "timestamp": timestamp,
    }
    if context:
        payload.update(dict(context))

    logger = _ensure_logger()
    try:
        logger.info("%s", json.dumps(payload, ensure_ascii=False, sort_keys=True))
    except TypeError:
        logger.info("session_id=%s code=%s message=%s", session_id, code, message)

    with _LOCK:
        _CONFLICTS.appendleft(payload)
    return payload


def recent(limit: int = 10) -> List[Dict[str, object]]:
    """Return the most recent divergence entries, newest first."""

    with _LOCK:
        return list(_CONFLICTS)[:limit]


def clear() -> None:
    with _LOCK:
        _CONFLICTS.clear()


__all__ = ["record", "recent", "clear"]
