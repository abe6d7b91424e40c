"""Composition root wiring the store, reconciliation and spreadsheet mirror."""
from __future__ import annotations

import logging
from typing import Any, List, Optional

import db
from runsync.history import SessionHistory
from runsync.identity import IdentityError, IdentityVerifier
from runsync.logging_config import configure_logging
from runsync.reconciliation import DatabaseRunningStateMirror, RunningSessionSync
from runsync.running_session import RunningSessionState, TimeTrackerSession
from runsync.session_store import RunningSessionStore
from runsync.sheet_mirror import SpreadsheetMirror, SyncState
from settings import SyncSettings, load_sync_settings

logger = logging.getLogger(__name__)


class TimeTracker:
    def __init__(
        self,
        store: RunningSessionStore,
        sync: RunningSessionSync,
        mirror: SpreadsheetMirror,
        verifier: IdentityVerifier,
        history: Optional[SessionHistory] = None,
    ) -> None:
        self.store = store
        self.sync = sync
        self.mirror = mirror
        self.history = history or SessionHistory()
        self._verifier = verifier
        self._user_id: Optional[str] = None
        self._detach_mirror = mirror.attach(store)

    @classmethod
    def build(
        cls,
        service,
        verifier: IdentityVerifier,
        settings: Optional[SyncSettings] = None,
        **overrides: Any,
    ) -> "TimeTracker":
        """Wire the default collaborators.

        ``overrides`` may carry ``runner``, ``now``, ``auto_tick``,
        ``running_state_mirror`` and ``history`` for callers that need
        synchronous execution, a fixed clock or other storage.
        """

        configure_logging()
        settings = settings or load_sync_settings()
        runner = overrides.get("runner")
        running_state_mirror = overrides.get("running_state_mirror")
        history = overrides.get("history")
        if running_state_mirror is None or history is None:
            db.initialize_database()
        if running_state_mirror is None:
            running_state_mirror = DatabaseRunningStateMirror()
        store = RunningSessionStore(
            now=overrides.get("now"),
            tick_interval_ms=settings.tick_interval_ms,
            auto_tick=overrides.get("auto_tick", True),
        )
        sync = RunningSessionSync(
            store,
            running_state_mirror,
            runner=runner,
        )
        mirror = SpreadsheetMirror(
            service,
            runner=runner,
            debounce_seconds=settings.update_debounce_seconds,
            now=overrides.get("now"),
        )
        return cls(store, sync, mirror, verifier, history)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------
    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def sign_in(self, token: str) -> str:
        user_id = self._verifier.verify(token)
        if not user_id:
            raise IdentityError("Identity verifier returned no user id")
        self._user_id = user_id
        self.mirror.set_token(token)
        self.sync.enable(user_id)
        logger.info("Signed in as %s", user_id)
        return user_id

    def sign_out(self) -> None:
        self.mirror.set_token(None)
        self.sync.enable(None)
        self._user_id = None

    # ------------------------------------------------------------------
    # Forwarded operations
    # ------------------------------------------------------------------
    @property
    def state(self) -> RunningSessionState:
        return self.store.state

    @property
    def sync_state(self) -> SyncState:
        return self.mirror.state

    def start(self, title: str, project: Optional[str] = None, **fields: Any) -> bool:
        return self.store.start(title, project, **fields)

    @property
    def sessions(self) -> List[TimeTrackerSession]:
        """Completed sessions of the current user, newest first."""

        return self.history.list(self._user_id)

    def stop(self) -> Optional[TimeTrackerSession]:
        session = self.store.stop()
        if session is not None:
            self.history.record(session, self._user_id)
        return session

    def cancel(self) -> Optional[str]:
        return self.store.cancel()

    def update_draft(self, **changes: Any) -> None:
        self.store.update_draft(**changes)

    def adjust_duration(self, delta_seconds: int) -> None:
        self.store.adjust_duration(delta_seconds)

    def delete_session(self, session_id: str) -> bool:
        removed = self.history.remove(session_id, self._user_id)
        self.mirror.delete_session(session_id)
        return removed

    def close(self) -> None:
        self.mirror.cancel_pending()
        self._detach_mirror()
        self.sync.close()
        self.store.close()

    def __enter__(self) -> "TimeTracker":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = ["TimeTracker"]
