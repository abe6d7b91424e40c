"""Turn running-session transitions into spreadsheet writes.

The mirror listens to :class:`runsync.session_store.RunningSessionStore` and
maps each transition onto a :class:`runsync.sync_service.SessionSyncService`
call.  Calls are fire-and-forget: they run through ``runner`` and only ever
update :attr:`SpreadsheetMirror.state`, so a slow or failing spreadsheet never
blocks the timer.  Draft edits are debounced; the last edit within the window
wins.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from runsync import conflicts
from runsync.running_session import (
    AdjustDuration,
    Reset,
    Running,
    RunningSessionAction,
    RunningSessionState,
    SessionDraft,
    Start,
    UpdateDraft,
)
from runsync.session_store import NowFn, epoch_ms, spawn_daemon
from runsync.sheet_upsert import RowNotFoundError

logger = logging.getLogger(__name__)

Runner = Callable[[Callable[[], Any]], None]
TokenProvider = Callable[[], Optional[str]]

SYNC_STATUSES = ("idle", "syncing", "success", "error", "disabled")


@dataclass(frozen=True)
class SyncState:
    status: str = "idle"
    last_session_id: Optional[str] = None
    last_synced_at: Optional[str] = None
    error: Optional[str] = None


class SpreadsheetMirror:
    def __init__(
        self,
        service,
        token_provider: Optional[TokenProvider] = None,
        runner: Optional[Runner] = None,
        debounce_seconds: float = 1.0,
        *,
        now: Optional[NowFn] = None,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ) -> None:
        self._service = service
        self._token: Optional[str] = None
        self._token_provider = token_provider or (lambda: self._token)
        self._runner = runner or spawn_daemon
        self._debounce = max(0.0, float(debounce_seconds))
        self._now = now or epoch_ms
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._state = SyncState()
        self._pending_timer: Optional[threading.Timer] = None
        self._pending_draft: Optional[SessionDraft] = None
        self._update_generation = 0

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------
    @property
    def state(self) -> SyncState:
        return self._state

    def set_token(self, token: Optional[str]) -> None:
        self._token = token or None
        if not self._token:
            self.cancel_pending()
            self._set_state(status="disabled", error=None)

    def attach(self, store) -> Callable[[], None]:
        return store.subscribe(self.on_transition)

    def on_transition(
        self,
        previous: RunningSessionState,
        current: RunningSessionState,
        action: RunningSessionAction,
    ) -> None:
        if isinstance(action, Start) and isinstance(current, Running) and not isinstance(previous, Running):
            draft = current.draft
            self._submit("start", draft.id, lambda token: self._service.start(token, draft))
            return

        if isinstance(action, (UpdateDraft, AdjustDuration)):
            if isinstance(previous, Running) and isinstance(current, Running):
                self._schedule_update(current.draft)
            return

        if isinstance(action, Reset) and isinstance(previous, Running) and not isinstance(current, Running):
            self.cancel_pending()
            completed = action.completed
            if completed is not None:
                self._submit(
                    "complete",
                    completed.id,
                    lambda token: self._service.complete(token, completed, source="timer"),
                )
            else:
                session_id = previous.draft.id
                self._submit("cancel", session_id, lambda token: self._service.cancel(token, session_id))

    def delete_session(self, session_id: str) -> None:
        self._submit("delete", session_id, lambda token: self._service.delete(token, session_id))

    # ------------------------------------------------------------------
    # Debounced updates
    # ------------------------------------------------------------------
    def _schedule_update(self, draft: SessionDraft) -> None:
        if self._debounce <= 0:
            self._submit_update(draft)
            return
        with self._lock:
            if self._pending_timer is not None:
                self._pending_timer.cancel()
            self._update_generation += 1
            generation = self._update_generation
            self._pending_draft = draft
            timer = self._timer_factory(self._debounce, self._flush_update, args=(generation,))
            timer.daemon = True
            self._pending_timer = timer
        timer.start()

    def _flush_update(self, generation: int) -> None:
        with self._lock:
            if generation != self._update_generation or self._pending_draft is None:
                return
            draft = self._pending_draft
            self._pending_draft = None
            self._pending_timer = None
        self._submit_update(draft)

    def _submit_update(self, draft: SessionDraft) -> None:
        elapsed = max(0, (int(self._now()) - int(draft.started_at)) // 1000)
        self._submit("update", draft.id, lambda token: self._service.update(token, draft, elapsed))

    def cancel_pending(self) -> None:
        with self._lock:
            self._update_generation += 1
            self._pending_draft = None
            timer = self._pending_timer
            self._pending_timer = None
        if timer is not None:
            timer.cancel()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def _set_state(self, **changes: Any) -> None:
        with self._lock:
            self._state = replace(self._state, **changes)

    def _submit(self, operation: str, session_id: str, call: Callable[[str], Any]) -> None:
        token = self._token_provider()
        if not token:
            self._set_state(status="disabled")
            return
        self._set_state(status="syncing", last_session_id=session_id, error=None)
        self._runner(lambda: self._execute(operation, session_id, token, call))

    def _execute(self, operation: str, session_id: str, token: str, call: Callable[[str], Any]) -> None:
        try:
            result = call(token)
        except RowNotFoundError as exc:
            conflicts.record(session_id, exc.code, exc.message, {"operation": operation})
            logger.warning("Spreadsheet row for session %s is missing during %s", session_id, operation)
            self._set_state(status="error", last_session_id=session_id, error=exc.message)
            return
        except Exception as exc:
            logger.warning("Spreadsheet %s failed for session %s: %s", operation, session_id, exc)
            self._set_state(status="error", last_session_id=session_id, error=str(exc))
            return

        if isinstance(result, dict) and result.get("status") == "failed":
            reason = result.get("failure_reason") or "Sync failed"
            self._set_state(status="error", last_session_id=session_id, error=reason)
            return
        self._set_state(
            status="success",
            last_session_id=session_id,
            last_synced_at=datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
            error=None,
        )


__all__ = ["SYNC_STATUSES", "SpreadsheetMirror", "SyncState"]
