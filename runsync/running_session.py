"""Running-session state machine.

The state is a tagged union of :class:`Idle` and :class:`Running`.  ``Idle``
has no draft and no elapsed time at all, so an idle timer with a non-zero
elapsed value cannot be expressed.  :func:`reduce` is pure: it never mutates
its input and returns the very same object when an action changes nothing,
which lets listeners skip redundant work with an identity check.
"""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

INTENSITY_VALUES = ("low", "medium", "high")
OPTIONAL_TEXT_FIELDS = ("project", "skill", "notes")


@dataclass(frozen=True)
class SessionDraft:
    id: str
    title: str
    started_at: int
    project: Optional[str] = None
    tags: Tuple[str, ...] = ()
    skill: Optional[str] = None
    intensity: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class TimeTrackerSession:
    id: str
    title: str
    started_at: int
    ended_at: int
    duration_seconds: int
    project: Optional[str] = None
    tags: Optional[Tuple[str, ...]] = None
    skill: Optional[str] = None
    intensity: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class Idle:
    status: str = field(default="idle", init=False)

    @property
    def elapsed_seconds(self) -> int:
        return 0


@dataclass(frozen=True)
class Running:
    draft: SessionDraft
    elapsed_seconds: int = 0
    status: str = field(default="running", init=False)


RunningSessionState = Union[Idle, Running]

IDLE = Idle()


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Start:
    title: str
    started_at: int
    session_id: str = field(default_factory=lambda: new_session_id())
    project: Optional[str] = None
    tags: Tuple[str, ...] = ()
    skill: Optional[str] = None
    intensity: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class Tick:
    now_ms: int


@dataclass(frozen=True)
class UpdateDraft:
    changes: Mapping[str, Any]


@dataclass(frozen=True)
class AdjustDuration:
    delta_seconds: int
    now_ms: int


@dataclass(frozen=True)
class Reset:
    completed: Optional[TimeTrackerSession] = None


@dataclass(frozen=True)
class Restore:
    state: RunningSessionState


RunningSessionAction = Union[Start, Tick, UpdateDraft, AdjustDuration, Reset, Restore]


def new_session_id() -> str:
    return uuid.uuid4().hex


def _elapsed_between(started_at: int, now_ms: int) -> int:
    return max(0, (int(now_ms) - int(started_at)) // 1000)


def _clean_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    return text or None


def _clean_tags(values: Any) -> Tuple[str, ...]:
    if isinstance(values, str) or not isinstance(values, Iterable):
        return ()
    seen = []
    for value in values:
        if not isinstance(value, str):
            continue
        tag = value.strip()
        if tag and tag not in seen:
            seen.append(tag)
    return tuple(seen)


def _clean_intensity(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip() in INTENSITY_VALUES:
        return value.strip()
    return None


def _apply_changes(draft: SessionDraft, changes: Mapping[str, Any]) -> SessionDraft:
    updates: Dict[str, Any] = {}
    for key, value in changes.items():
        if key == "title":
            title = _clean_text(value)
            if title:
                updates["title"] = title
        elif key in OPTIONAL_TEXT_FIELDS:
            updates[key] = _clean_text(value)
        elif key == "tags":
            updates["tags"] = _clean_tags(value or ())
        elif key == "intensity":
            if value is None or (isinstance(value, str) and not value.strip()):
                updates["intensity"] = None
            else:
                intensity = _clean_intensity(value)
                if intensity:
                    updates["intensity"] = intensity
        # id and started_at are owned by the reducer; anything else is ignored.
    if not updates:
        return draft
    return replace(draft, **updates)


def reduce(state: RunningSessionState, action: RunningSessionAction) -> RunningSessionState:
    """Apply ``action`` to ``state`` and return the next state."""

    if isinstance(action, Start):
        if not isinstance(state, Idle):
            return state
        title = _clean_text(action.title)
        if not title:
            return state
        draft = SessionDraft(
            id=action.session_id,
            title=title,
            started_at=int(action.started_at),
            project=_clean_text(action.project),
            tags=_clean_tags(action.tags),
            skill=_clean_text(action.skill),
            intensity=_clean_intensity(action.intensity),
            notes=_clean_text(action.notes),
        )
        return Running(draft=draft, elapsed_seconds=0)

    if isinstance(action, Tick):
        if not isinstance(state, Running):
            return state
        elapsed = _elapsed_between(state.draft.started_at, action.now_ms)
        if elapsed == state.elapsed_seconds:
            return state
        return replace(state, elapsed_seconds=elapsed)

    if isinstance(action, UpdateDraft):
        if not isinstance(state, Running):
            return state
        draft = _apply_changes(state.draft, action.changes)
        if draft == state.draft:
            return state
        return replace(state, draft=draft)

    if isinstance(action, AdjustDuration):
        if not isinstance(state, Running) or action.delta_seconds == 0:
            return state
        base = _elapsed_between(state.draft.started_at, action.now_ms)
        adjusted = max(0, base + int(action.delta_seconds))
        if adjusted == base:
            return state
        started_at = int(action.now_ms) - adjusted * 1000
        return Running(draft=replace(state.draft, started_at=started_at), elapsed_seconds=adjusted)

    if isinstance(action, Reset):
        return IDLE

    if isinstance(action, Restore):
        return action.state

    return state


def create_session_from_draft(draft: SessionDraft, stopped_at: int) -> TimeTrackerSession:
    """Freeze ``draft`` into a completed session lasting at least one second."""

    duration = max(1, (int(stopped_at) - int(draft.started_at)) // 1000)
    return TimeTrackerSession(
        id=draft.id,
        title=draft.title,
        started_at=draft.started_at,
        ended_at=int(stopped_at),
        duration_seconds=duration,
        project=draft.project or None,
        tags=tuple(draft.tags) if draft.tags else None,
        skill=draft.skill or None,
        intensity=draft.intensity or None,
        notes=draft.notes or None,
    )


# ---------------------------------------------------------------------------
# Signature and mirror payloads
# ---------------------------------------------------------------------------
def state_signature(state: RunningSessionState) -> str:
    """Deterministic serialisation used to detect "nothing changed"."""

    if not isinstance(state, Running):
        return json.dumps({"status": "idle"}, sort_keys=True)
    draft = state.draft
    return json.dumps(
        {
            "status": "running",
            "draft": {
                "id": draft.id,
                "title": draft.title or "",
                "started_at": draft.started_at,
                "project": draft.project,
                "tags": sorted(draft.tags),
                "skill": draft.skill,
                "intensity": draft.intensity,
                "notes": draft.notes,
            },
        },
        sort_keys=True,
        ensure_ascii=False,
    )


def draft_to_payload(draft: SessionDraft) -> Dict[str, Any]:
    return {
        "id": draft.id,
        "title": draft.title,
        "started_at": draft.started_at,
        "project": draft.project,
        "tags": list(draft.tags),
        "skill": draft.skill,
        "intensity": draft.intensity,
        "notes": draft.notes,
    }


def state_to_payload(state: RunningSessionState) -> Dict[str, Any]:
    if not isinstance(state, Running):
        return {"status": "idle"}
    return {
        "status": "running",
        "elapsed_seconds": state.elapsed_seconds,
        "draft": draft_to_payload(state.draft),
    }


def parse_draft(value: Any) -> Optional[SessionDraft]:
    if not isinstance(value, Mapping):
        return None
    title = value.get("title")
    started_at = value.get("started_at")
    if not isinstance(title, str):
        return None
    if isinstance(started_at, bool) or not isinstance(started_at, (int, float)):
        return None
    session_id = value.get("id")
    if not isinstance(session_id, str) or not session_id.strip():
        session_id = new_session_id()
    return SessionDraft(
        id=session_id,
        title=title,
        started_at=int(started_at),
        project=_clean_text(value.get("project")),
        tags=_clean_tags(value.get("tags") or ()),
        skill=_clean_text(value.get("skill")),
        intensity=_clean_intensity(value.get("intensity")),
        notes=_clean_text(value.get("notes")),
    )


def state_from_payload(payload: Any) -> Optional[RunningSessionState]:
    """Parse a mirror payload; anything unusable yields ``None``."""

    if not isinstance(payload, Mapping) or payload.get("status") != "running":
        return None
    draft = parse_draft(payload.get("draft"))
    if draft is None:
        return None
    elapsed = payload.get("elapsed_seconds")
    if isinstance(elapsed, bool) or not isinstance(elapsed, (int, float)):
        elapsed = 0
    return Running(draft=draft, elapsed_seconds=max(0, int(elapsed)))


__all__ = [
    "AdjustDuration",
    "IDLE",
    "INTENSITY_VALUES",
    "Idle",
    "Reset",
    "Restore",
    "Running",
    "RunningSessionAction",
    "RunningSessionState",
    "SessionDraft",
    "Start",
    "Tick",
    "TimeTrackerSession",
    "UpdateDraft",
    "create_session_from_draft",
    "draft_to_payload",
    "new_session_id",
    "parse_draft",
    "reduce",
    "state_from_payload",
    "state_signature",
    "state_to_payload",
]
