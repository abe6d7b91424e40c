"""Single dispatch point for the running session and the timer that ticks it."""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, List, Optional

from runsync.running_session import (
    IDLE,
    AdjustDuration,
    Reset,
    Restore,
    Running,
    RunningSessionAction,
    RunningSessionState,
    Start,
    Tick,
    TimeTrackerSession,
    UpdateDraft,
    create_session_from_draft,
    new_session_id,
    reduce,
    state_signature,
)

logger = logging.getLogger(__name__)

NowFn = Callable[[], int]
TransitionListener = Callable[[RunningSessionState, RunningSessionState, RunningSessionAction], None]

MIN_TICK_INTERVAL_MS = 100


def epoch_ms() -> int:
    return int(time.time() * 1000)


def spawn_daemon(task: Callable[[], Any], name: str = "runsync-worker") -> None:
    """Default runner for background sync work."""

    threading.Thread(target=task, name=name, daemon=True).start()


class SessionTimer:
    """Dispatch ``Tick`` on a daemon thread while the session is running."""

    def __init__(self, dispatch: Callable[[RunningSessionAction], Any], now: NowFn, interval_ms: int) -> None:
        self._dispatch = dispatch
        self._now = now
        self._interval = max(MIN_TICK_INTERVAL_MS, int(interval_ms)) / 1000.0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        self.stop()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop_event,), name="runsync-tick", daemon=True
        )
        self._thread.start()

    def stop(self, join: bool = False) -> None:
        # Never join while the store lock is held: the tick thread may be
        # waiting on that lock.  A late Tick is harmless, it is idempotent.
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if join and thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=2)

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self._dispatch(Tick(self._now()))
            except Exception:  # pragma: no cover - listener guard
                logger.exception("Tick dispatch failed")
            if stop_event.wait(self._interval):
                break


class RunningSessionStore:
    """Serialise every transition of the running session through one lock."""

    def __init__(
        self,
        *,
        now: Optional[NowFn] = None,
        tick_interval_ms: int = 1000,
        initial_state: RunningSessionState = IDLE,
        auto_tick: bool = True,
    ) -> None:
        self._now = now or epoch_ms
        self._state: RunningSessionState = initial_state
        self._lock = threading.RLock()
        self._listeners: List[TransitionListener] = []
        self._auto_tick = auto_tick
        self._timer = SessionTimer(self.dispatch, self._now, tick_interval_ms)
        self._closed = False
        if isinstance(initial_state, Running):
            self._sync_timer(IDLE, initial_state)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def __enter__(self) -> "RunningSessionStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self._timer.stop(join=True)

    @property
    def state(self) -> RunningSessionState:
        return self._state

    @property
    def lock(self) -> threading.RLock:
        """Re-entrant lock held by every dispatch."""

        return self._lock

    @property
    def timer_active(self) -> bool:
        return self._timer.running

    def subscribe(self, listener: TransitionListener) -> Callable[[], None]:
        if not callable(listener):
            raise TypeError("listener must be callable")
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def dispatch(self, action: RunningSessionAction) -> RunningSessionState:
        with self._lock:
            previous = self._state
            current = reduce(previous, action)
            if current is previous:
                return current
            self._state = current
            self._sync_timer(previous, current)
            listeners = list(self._listeners)
            for listener in listeners:
                try:
                    listener(previous, current, action)
                except Exception:
                    logger.exception("Running session listener raised an exception")
            return current

    def _sync_timer(self, previous: RunningSessionState, current: RunningSessionState) -> None:
        if not self._auto_tick or self._closed:
            return
        if not isinstance(current, Running):
            self._timer.stop()
            return
        started_changed = (
            not isinstance(previous, Running)
            or previous.draft.started_at != current.draft.started_at
        )
        if started_changed or not self._timer.running:
            self._timer.start()

    # ------------------------------------------------------------------
    # High level operations
    # ------------------------------------------------------------------
    def start(self, title: str, project: Optional[str] = None, **fields: Any) -> bool:
        with self._lock:
            if isinstance(self._state, Running):
                return False
            if not isinstance(title, str) or not title.strip():
                return False
            action = Start(
                title=title.strip(),
                started_at=self._now(),
                session_id=new_session_id(),
                project=project,
                tags=fields.get("tags") or (),
                skill=fields.get("skill"),
                intensity=fields.get("intensity"),
                notes=fields.get("notes"),
            )
            return isinstance(self.dispatch(action), Running)

    def stop(self) -> Optional[TimeTrackerSession]:
        with self._lock:
            state = self._state
            if not isinstance(state, Running):
                return None
            session = create_session_from_draft(state.draft, self._now())
            self.dispatch(Reset(completed=session))
            return session

    def cancel(self) -> Optional[str]:
        with self._lock:
            state = self._state
            if not isinstance(state, Running):
                return None
            self.dispatch(Reset())
            return state.draft.id

    def update_draft(self, **changes: Any) -> None:
        if not isinstance(self._state, Running):
            return
        self.dispatch(UpdateDraft(changes=dict(changes)))

    def adjust_duration(self, delta_seconds: int) -> None:
        if not isinstance(self._state, Running) or not delta_seconds:
            return
        self.dispatch(AdjustDuration(delta_seconds=int(delta_seconds), now_ms=self._now()))

    def reset(self) -> None:
        self.dispatch(Reset())

    def hydrate(self, state: Optional[RunningSessionState]) -> None:
        """Replace the state with a fetched snapshot; ``None`` means idle.

        Hydration goes through ``Restore`` so listeners can tell it apart from
        a user stop or cancel.
        """

        self.dispatch(Restore(IDLE if state is None else state))

    def restore_if_signature(
        self, baseline: str, state: Optional[RunningSessionState]
    ) -> bool:
        """Hydrate ``state`` only while the local signature still equals ``baseline``.

        The comparison and the dispatch happen under the store lock, so no
        transition can slip in between.  Returns ``False`` when the local
        state moved on.
        """

        target = IDLE if state is None else state
        with self._lock:
            if state_signature(self._state) != baseline:
                return False
            if state_signature(target) != baseline:
                self.dispatch(Restore(target))
            return True


__all__ = ["RunningSessionStore", "SessionTimer", "epoch_ms", "spawn_daemon"]
