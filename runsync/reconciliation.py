"""Reconcile the local running session with its durable mirror.

On sign-in the mirror is fetched in the background.  Whether the fetched
snapshot may replace local state is decided by comparing state signatures:
if the local signature is unchanged since the fetch started, the remote
snapshot wins; otherwise the user edited something meanwhile, the snapshot is
stale and the local state is pushed instead.  After that first fetch every
transition whose signature differs from the last persisted one is written
back.  Persist calls are not sequenced, so two rapid writes may land out of
order.  The fetched snapshot is applied under the store lock, so a local
edit either lands before the signature check (local wins) or after the
snapshot, where it is persisted like any other transition.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional, Protocol

import db
from runsync.running_session import (
    IDLE,
    RunningSessionAction,
    RunningSessionState,
    state_from_payload,
    state_signature,
    state_to_payload,
)
from runsync.session_store import RunningSessionStore, spawn_daemon

logger = logging.getLogger(__name__)

Runner = Callable[[Callable[[], Any]], None]

IDLE_SIGNATURE = state_signature(IDLE)


class RunningStateMirror(Protocol):
    def fetch(self, user_id: str) -> Optional[RunningSessionState]:
        ...

    def persist(self, user_id: str, state: RunningSessionState) -> None:
        ...


class DatabaseRunningStateMirror:
    """Durable mirror stored in the ``running_states`` table."""

    def __init__(self, records=db) -> None:
        self._records = records

    def fetch(self, user_id: str) -> Optional[RunningSessionState]:
        return state_from_payload(self._records.fetch_running_state(user_id))

    def persist(self, user_id: str, state: RunningSessionState) -> None:
        self._records.save_running_state(user_id, state_to_payload(state))


class RunningSessionSync:
    def __init__(
        self,
        store: RunningSessionStore,
        mirror: RunningStateMirror,
        runner: Optional[Runner] = None,
    ) -> None:
        self._store = store
        self._mirror = mirror
        self._runner = runner or spawn_daemon
        self._lock = threading.Lock()
        self._user_id: Optional[str] = None
        self._generation = 0
        self._ready = False
        self._persisted_signature = state_signature(store.state)
        self._unsubscribe = store.subscribe(self._on_transition)

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def persisted_signature(self) -> str:
        return self._persisted_signature

    def close(self) -> None:
        self._unsubscribe()

    # ------------------------------------------------------------------
    # Enable / disable
    # ------------------------------------------------------------------
    def enable(self, user_id: Optional[str]) -> None:
        # Generations only change under the store lock; see _complete_fetch.
        with self._store.lock, self._lock:
            self._generation += 1
            generation = self._generation
            self._user_id = user_id or None
            self._ready = False
            baseline = state_signature(self._store.state)

        if not user_id:
            self._store.reset()
            with self._lock:
                if generation == self._generation:
                    self._persisted_signature = IDLE_SIGNATURE
            logger.info("Running session sync disabled")
            return

        self._runner(lambda: self._complete_fetch(user_id, generation, baseline))

    def _complete_fetch(self, user_id: str, generation: int, baseline: str) -> None:
        try:
            remote = self._mirror.fetch(user_id)
        except Exception as exc:
            logger.warning("Failed to fetch running session for %s: %s", user_id, exc)
            with self._lock:
                if generation == self._generation:
                    self._ready = True
            return

        remote_signature = state_signature(remote) if remote is not None else IDLE_SIGNATURE
        # Holding the store lock keeps transitions and enable() out until the
        # decision and its bookkeeping are done.
        with self._store.lock:
            with self._lock:
                if generation != self._generation:
                    logger.debug("Discarding superseded running session fetch for %s", user_id)
                    return
            if self._store.restore_if_signature(baseline, remote):
                with self._lock:
                    self._persisted_signature = remote_signature
                    self._ready = True
                return
            with self._lock:
                self._ready = True
            logger.info("Local running session changed during fetch; keeping local state")
            self.persist_now(force=True)

    # ------------------------------------------------------------------
    # Persisting
    # ------------------------------------------------------------------
    def _on_transition(
        self,
        previous: RunningSessionState,
        current: RunningSessionState,
        action: RunningSessionAction,
    ) -> None:
        signature = state_signature(current)
        with self._lock:
            if not self._ready or not self._user_id:
                return
            if signature == self._persisted_signature:
                return
            self._persisted_signature = signature
            user_id = self._user_id
        self._runner(lambda: self._persist(user_id, current))

    def persist_now(self, force: bool = True) -> bool:
        state = self._store.state
        signature = state_signature(state)
        with self._lock:
            user_id = self._user_id
            if not user_id:
                return False
            if not force and signature == self._persisted_signature:
                return False
            self._persisted_signature = signature
        self._runner(lambda: self._persist(user_id, state))
        return True

    def _persist(self, user_id: str, state: RunningSessionState) -> None:
        try:
            self._mirror.persist(user_id, state)
        except Exception as exc:
            logger.warning("Failed to persist running session for %s: %s", user_id, exc)


__all__ = [
    "DatabaseRunningStateMirror",
    "IDLE_SIGNATURE",
    "RunningSessionSync",
    "RunningStateMirror",
]
