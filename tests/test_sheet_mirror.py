from fakes import CapturedRunner, sync_runner
from runsync import conflicts
from runsync.running_session import Tick
from runsync.session_store import RunningSessionStore
from runsync.sheet_mirror import SpreadsheetMirror
from runsync.sheet_upsert import RowNotFoundError, UpsertResult


class _Clock:
    def __init__(self) -> None:
        self.now = 1_700_000_000_000

    def __call__(self) -> int:
        return self.now


class _RecordingService:
    def __init__(self) -> None:
        self.calls = []
        self.fail_update = None

    def start(self, token, draft):
        self.calls.append(("start", token, draft.id))
        return UpsertResult("ok")

    def update(self, token, draft, elapsed):
        if self.fail_update:
            raise self.fail_update
        self.calls.append(("update", draft.title, elapsed))
        return UpsertResult("ok")

    def complete(self, token, session, source=None):
        self.calls.append(("complete", session.id, session.duration_seconds))
        return {"status": "success"}

    def cancel(self, token, session_id):
        self.calls.append(("cancel", session_id))
        return UpsertResult("ok")

    def delete(self, token, session_id):
        self.calls.append(("delete", session_id))
        return UpsertResult("ok")


class _ManualTimer:
    created = []

    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.cancelled = False
        self.daemon = False
        _ManualTimer.created.append(self)

    def start(self):
        pass

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args)


def _wire(debounce=0.0, runner=sync_runner, **kwargs):
    clock = _Clock()
    service = _RecordingService()
    store = RunningSessionStore(now=clock, auto_tick=False)
    mirror = SpreadsheetMirror(service, runner=runner, debounce_seconds=debounce, now=clock, **kwargs)
    mirror.set_token("token-1")
    mirror.attach(store)
    return clock, service, store, mirror


def test_start_stop_map_to_start_and_complete():
    clock, service, store, mirror = _wire()

    store.start("Deep work")
    session_id = store.state.draft.id
    clock.now += 42_000
    store.stop()

    assert service.calls == [("start", "token-1", session_id), ("complete", session_id, 42)]
    assert mirror.state.status == "success"
    assert mirror.state.last_session_id == session_id


def test_cancel_maps_to_cancel():
    _clock, service, store, _mirror = _wire()
    store.start("Deep work")
    session_id = store.state.draft.id

    store.cancel()

    assert service.calls[-1] == ("cancel", session_id)


def test_ticks_and_restores_make_no_calls():
    clock, service, store, _mirror = _wire()
    store.start("Deep work")
    running = store.state
    service.calls.clear()

    clock.now += 5_000
    store.dispatch(Tick(clock.now))
    store.hydrate(None)
    store.hydrate(running)
    store.hydrate(None)

    assert service.calls == []


def test_plain_reset_while_running_cancels_the_row():
    _clock, service, store, _mirror = _wire()
    store.start("Deep work")
    session_id = store.state.draft.id

    store.reset()

    assert service.calls[-1] == ("cancel", session_id)


def test_updates_are_debounced_and_last_edit_wins():
    _ManualTimer.created = []
    clock, service, store, _mirror = _wire(debounce=1.0, timer_factory=_ManualTimer)
    store.start("Deep work")
    service.calls.clear()

    store.update_draft(title="Draft one")
    clock.now += 3_000
    store.update_draft(title="Draft two")

    assert service.calls == []
    assert _ManualTimer.created[0].cancelled
    for timer in _ManualTimer.created:
        timer.fire()

    assert service.calls == [("update", "Draft two", 3)]


def test_pending_update_is_dropped_when_session_stops():
    _ManualTimer.created = []
    _clock, service, store, _mirror = _wire(debounce=1.0, timer_factory=_ManualTimer)
    store.start("Deep work")
    store.update_draft(title="Edited")

    store.stop()
    _ManualTimer.created[-1].fire()

    assert [call[0] for call in service.calls] == ["start", "complete"]


def test_without_token_mirror_is_disabled():
    _clock, service, store, mirror = _wire()
    mirror.set_token(None)

    store.start("Deep work")

    assert service.calls == []
    assert mirror.state.status == "disabled"


def test_calls_run_through_runner():
    runner = CapturedRunner()
    _clock, service, store, mirror = _wire(runner=runner)

    store.start("Deep work")

    assert service.calls == []
    assert mirror.state.status == "syncing"
    runner.run_all()
    assert mirror.state.status == "success"


def test_row_not_found_on_update_is_journaled():
    _clock, service, store, mirror = _wire()
    service.fail_update = RowNotFoundError()
    store.start("Deep work")
    session_id = store.state.draft.id

    store.update_draft(title="Edited")

    assert mirror.state.status == "error"
    entry = conflicts.recent(1)[0]
    assert entry["session_id"] == session_id
    assert entry["code"] == "row_not_found"
    assert entry["operation"] == "update"


def test_failures_are_reported_in_state():
    _clock, service, store, mirror = _wire()
    service.fail_update = RuntimeError("network down")
    store.start("Deep work")

    store.update_draft(title="Edited")

    assert mirror.state.status == "error"
    assert mirror.state.error == "network down"


def test_delete_session_calls_service():
    _clock, service, _store, mirror = _wire()

    mirror.delete_session("old-1")

    assert service.calls == [("delete", "old-1")]
