import threading

from runsync.running_session import (
    IDLE,
    Reset,
    Restore,
    Running,
    SessionDraft,
    Start,
    Tick,
    state_signature,
)
from runsync.session_store import RunningSessionStore, SessionTimer


class _Clock:
    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


def _store(clock=None, **kwargs):
    return RunningSessionStore(now=clock or _Clock(), auto_tick=False, **kwargs)


def test_start_mints_id_and_rejects_blank_or_second_start():
    store = _store()

    assert store.start("  ") is False
    assert store.start("Deep work", project="Book") is True
    first_id = store.state.draft.id
    assert store.start("Other") is False
    assert store.state.draft.id == first_id
    assert store.state.draft.project == "Book"


def test_stop_returns_completed_session_and_notifies_listeners():
    clock = _Clock()
    store = _store(clock)
    seen = []
    store.subscribe(lambda previous, current, action: seen.append(action))

    store.start("Deep work")
    clock.advance(90.5)
    session = store.stop()

    assert session.duration_seconds == 90
    assert store.state is IDLE
    assert isinstance(seen[0], Start)
    assert isinstance(seen[-1], Reset)
    assert seen[-1].completed == session


def test_stop_and_cancel_when_idle_return_none():
    store = _store()

    assert store.stop() is None
    assert store.cancel() is None


def test_cancel_returns_discarded_id():
    store = _store()
    store.start("Deep work")
    session_id = store.state.draft.id

    assert store.cancel() == session_id
    assert store.state is IDLE


def test_listeners_only_fire_on_changed_state():
    clock = _Clock()
    store = _store(clock)
    store.start("Deep work")
    calls = []
    store.subscribe(lambda *args: calls.append(args))

    store.dispatch(Tick(clock.now + 500))
    store.dispatch(Tick(clock.now + 1500))

    assert len(calls) == 1


def test_listener_errors_are_logged_not_raised(caplog):
    store = _store()

    def broken(*_args):
        raise RuntimeError("listener failed")

    store.subscribe(broken)
    assert store.start("Deep work") is True
    assert "listener raised" in caplog.text


def test_unsubscribe_stops_notifications():
    store = _store()
    calls = []
    unsubscribe = store.subscribe(lambda *args: calls.append(args))
    unsubscribe()

    store.start("Deep work")

    assert calls == []


def test_adjust_duration_and_update_draft_forward_to_reducer():
    clock = _Clock()
    store = _store(clock)
    store.start("Deep work")
    clock.advance(60)

    store.adjust_duration(120)
    store.update_draft(tags=["b", "a", "b"])

    assert store.state.elapsed_seconds == 180
    assert store.state.draft.tags == ("b", "a")


def test_hydrate_restores_state_and_none_means_idle():
    store = _store()
    running = Running(draft=SessionDraft(id="x", title="Remote", started_at=1), elapsed_seconds=3)

    store.hydrate(running)
    assert store.state is running

    store.hydrate(None)
    assert store.state is IDLE


def test_hydrate_none_is_a_restore_not_a_reset():
    store = _store()
    store.start("Deep work")
    seen = []
    store.subscribe(lambda previous, current, action: seen.append(action))

    store.hydrate(None)

    assert store.state is IDLE
    assert isinstance(seen[-1], Restore)


def test_restore_if_signature_only_applies_to_unchanged_state():
    store = _store()
    remote = Running(draft=SessionDraft(id="x", title="Remote", started_at=1), elapsed_seconds=3)
    baseline = state_signature(store.state)
    store.start("Local")

    assert store.restore_if_signature(baseline, remote) is False
    assert store.state.draft.title == "Local"

    assert store.restore_if_signature(state_signature(store.state), remote) is True
    assert store.state is remote


def test_restore_if_signature_skips_identical_snapshot():
    store = _store()
    calls = []
    store.subscribe(lambda *args: calls.append(args))

    assert store.restore_if_signature(state_signature(IDLE), None) is True
    assert calls == []


def test_start_ignores_tags_given_as_a_string():
    store = _store()

    store.start("Deep work", tags="focus")
    assert store.state.draft.tags == ()

    store.cancel()
    store.start("Deep work", tags=["focus", " writing "])
    assert store.state.draft.tags == ("focus", "writing")


def test_timer_ticks_while_running_and_stops_on_close():
    ticked = threading.Event()
    clock = _Clock()
    store = RunningSessionStore(now=clock, tick_interval_ms=100)

    def on_tick(previous, current, action):
        if isinstance(action, Tick):
            ticked.set()

    store.subscribe(on_tick)
    with store:
        store.start("Deep work")
        clock.advance(2)
        assert store.timer_active
        assert ticked.wait(2)
        assert store.state.elapsed_seconds == 2

    assert not store.timer_active


def test_timer_stops_when_session_ends():
    store = RunningSessionStore(now=_Clock(), tick_interval_ms=100)
    try:
        store.start("Deep work")
        assert store.timer_active
        store.cancel()
        assert not store.timer_active
    finally:
        store.close()


def test_session_timer_dispatches_immediately():
    dispatched = threading.Event()
    timer = SessionTimer(lambda action: dispatched.set(), lambda: 0, interval_ms=10)

    timer.start()
    try:
        assert dispatched.wait(2)
    finally:
        timer.stop(join=True)

    assert not timer.running
