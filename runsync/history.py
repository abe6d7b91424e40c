"""Local history of completed sessions, stored in the ``sessions`` table."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import db
from runsync.running_session import INTENSITY_VALUES, TimeTrackerSession

logger = logging.getLogger(__name__)


def session_to_record(session: TimeTrackerSession) -> Dict[str, Any]:
    return {
        "id": session.id,
        "title": session.title,
        "started_at": session.started_at,
        "ended_at": session.ended_at,
        "duration_seconds": session.duration_seconds,
        "project": session.project,
        "tags": list(session.tags or ()),
        "skill": session.skill,
        "intensity": session.intensity,
        "notes": session.notes,
    }


def session_from_record(record: Mapping[str, Any]) -> TimeTrackerSession:
    tags = tuple(tag for tag in record.get("tags") or () if isinstance(tag, str) and tag)
    intensity = record.get("intensity")
    return TimeTrackerSession(
        id=str(record["id"]),
        title=str(record["title"]),
        started_at=int(record["started_at"]),
        ended_at=int(record["ended_at"]),
        duration_seconds=int(record.get("duration_seconds") or 0),
        project=record.get("project") or None,
        tags=tags or None,
        skill=record.get("skill") or None,
        intensity=intensity if intensity in INTENSITY_VALUES else None,
        notes=record.get("notes") or None,
    )


class SessionHistory:
    """Completed sessions per user; ``None`` is the signed-out owner."""

    def __init__(self, records=db) -> None:
        self._records = records

    def record(self, session: TimeTrackerSession, user_id: Optional[str] = None) -> None:
        self._records.save_session(session_to_record(session), user_id)
        logger.info("Recorded completed session %s", session.id)

    def list(self, user_id: Optional[str] = None) -> List[TimeTrackerSession]:
        return [session_from_record(record) for record in self._records.fetch_sessions(user_id)]

    def remove(self, session_id: str, user_id: Optional[str] = None) -> bool:
        removed = self._records.delete_session(session_id, user_id)
        if not removed:
            logger.info("Session %s was not in the local history", session_id)
        return removed


__all__ = ["SessionHistory", "session_from_record", "session_to_record"]
