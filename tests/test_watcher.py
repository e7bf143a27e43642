import pytest

from semindex.errors import BusyError
from semindex.host import LibraryFS
from semindex.settings import normalize_config
from semindex.watcher import (
    BUSY_RETRY_SEC,
    DEBOUNCE_SEC,
    DELETE,
    UPSERT,
    Task,
    TaskQueue,
    TaskRunner,
    _LibraryEventHandler,
)

from conftest import write


class FakeTimer:
    created = []

    def __init__(self, delay, fn):
        self.delay = delay
        self.fn = fn
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fn()


class StubService:
    def __init__(self, root, enabled=True):
        self.fs = LibraryFS(root)
        self.library_key = "stub"
        self.cfg = normalize_config({"enabled": enabled})
        self.is_busy = False
        self.calls = []
        self.errors = {}

    def get_config(self):
        return self.cfg

    def _record(self, op, rel):
        self.calls.append((op, rel))
        err = self.errors.pop(rel, None)
        if err is not None:
            raise err
        return {"changed": True, "relative": rel}

    def upsert_file(self, rel):
        return self._record(UPSERT, rel)

    def delete_file(self, rel):
        return self._record(DELETE, rel)


@pytest.fixture(autouse=True)
def _reset_timers():
    FakeTimer.created.clear()


@pytest.fixture
def stub(library):
    return StubService(library)


@pytest.fixture
def runner(stub):
    return TaskRunner(stub, timer_factory=FakeTimer)


def test_queue_ignores_pending_duplicates():
    q = TaskQueue()
    assert q.push(Task(UPSERT, "a.md"))
    assert not q.push(Task(UPSERT, "a.md"))
    assert q.push(Task(DELETE, "a.md"))
    assert q.pop() == Task(UPSERT, "a.md")
    assert q.push(Task(UPSERT, "a.md"))
    assert q.snapshot() == [Task(DELETE, "a.md"), Task(UPSERT, "a.md")]


def test_event_queues_task_and_arms_debounce(runner, stub):
    assert runner.handle_event({"type": "modify", "paths": ["notes/a.md"]}) == 1
    assert runner.handle_event({"type": "modify", "paths": ["notes/a.md"]}) == 0
    assert [t.delay for t in FakeTimer.created] == [DEBOUNCE_SEC]
    assert FakeTimer.created[0].daemon and FakeTimer.created[0].started

    FakeTimer.created[0].fire()
    assert stub.calls == [(UPSERT, "notes/a.md")]
    assert runner.processed == 1 and len(runner.queue) == 0


def test_event_kinds_and_scope(runner, stub, library):
    runner.handle_event({"type": "delete", "paths": ["gone.md"]})
    runner.handle_event({"type": "create", "paths": [str(library.resolve() / "sub" / "new.txt")]})
    runner.handle_event({"type": "modify", "paths": ["code.py", str(library.resolve().parent / "outside.md")]})
    runner.handle_event({"type": "rename", "paths": ["x.md"]})
    assert runner.queue.snapshot() == [Task(DELETE, "gone.md"), Task(UPSERT, "sub/new.txt")]


def test_disabled_library_queues_nothing(library):
    runner = TaskRunner(StubService(library, enabled=False), timer_factory=FakeTimer)
    assert runner.handle_event({"type": "modify", "paths": ["a.md"]}) == 0
    assert FakeTimer.created == []


def test_busy_service_defers_the_queue(runner, stub):
    runner.handle_event({"type": "modify", "paths": ["a.md"]})
    stub.is_busy = True
    FakeTimer.created[0].fire()
    assert stub.calls == []
    assert FakeTimer.created[-1].delay == BUSY_RETRY_SEC

    stub.is_busy = False
    FakeTimer.created[-1].fire()
    assert stub.calls == [(UPSERT, "a.md")]


def test_busy_error_puts_task_back_in_front(runner, stub):
    runner.enqueue([Task(UPSERT, "a.md"), Task(UPSERT, "b.md")])
    stub.errors["a.md"] = BusyError("reindex")
    assert runner.drain() == 0
    assert runner.queue.snapshot() == [Task(UPSERT, "a.md"), Task(UPSERT, "b.md")]

    assert runner.drain() == 2
    assert stub.calls == [(UPSERT, "a.md"), (UPSERT, "a.md"), (UPSERT, "b.md")]


def test_one_failure_does_not_stop_the_queue(runner, stub):
    runner.enqueue([Task(UPSERT, "a.md"), Task(DELETE, "b.md"), Task(UPSERT, "c.md")])
    stub.errors["b.md"] = RuntimeError("disk on fire")
    assert runner.drain() == 2
    assert runner.failed == 1
    assert [rel for _, rel in stub.calls] == ["a.md", "b.md", "c.md"]


class _LateArrivalQueue(TaskQueue):
    """Delivers one more event (and fires the pending timer) the moment the queue looks empty."""

    def __init__(self, runner):
        super().__init__()
        self.runner = runner
        self.arrived = False

    def pop(self):
        task = super().pop()
        if task is None and not self.arrived:
            self.arrived = True
            self.runner.handle_event({"type": "modify", "paths": ["late.md"]})
            FakeTimer.created[-1].fire()
        return task


def test_event_arriving_as_drain_finishes_is_not_stranded(runner, stub):
    runner.queue = _LateArrivalQueue(runner)
    runner.enqueue([Task(UPSERT, "a.md")])
    assert runner.drain() == 1
    assert stub.calls == [(UPSERT, "a.md")]
    assert len(runner.queue) == 1
    assert len(FakeTimer.created) == 2

    assert FakeTimer.created[-1].delay == DEBOUNCE_SEC
    FakeTimer.created[-1].fire()
    assert stub.calls == [(UPSERT, "a.md"), (UPSERT, "late.md")]


def test_stop_cancels_pending_timer(runner):
    runner.handle_event({"type": "modify", "paths": ["a.md"]})
    runner.stop()
    assert FakeTimer.created[0].cancelled
    runner.handle_event({"type": "modify", "paths": ["b.md"]})
    assert len(FakeTimer.created) == 1


class _Moved:
    is_directory = False

    def __init__(self, src, dest):
        self.src_path = src
        self.dest_path = dest


def test_moves_become_delete_plus_create(runner, library):
    handler = _LibraryEventHandler(runner)
    root = library.resolve()
    handler.on_moved(_Moved(str(root / "old.md"), str(root / "new.md")))
    assert runner.queue.snapshot() == [Task(DELETE, "old.md"), Task(UPSERT, "new.md")]


def test_runner_drives_real_service(make_service, library):
    write(library, "a.md", "## A\n\nfirst version\n")
    svc = make_service(library)
    runner = TaskRunner(svc, timer_factory=FakeTimer)

    runner.handle_event({"type": "create", "paths": ["a.md"]})
    runner.drain()
    assert "a.md" in svc.ensure_loaded().meta.files

    (library / "a.md").unlink()
    runner.handle_event({"type": "delete", "paths": [str(library.resolve() / "a.md")]})
    runner.drain()
    assert svc.ensure_loaded().meta.files == {}
    assert runner.failed == 0


def test_delete_and_recreate_in_one_burst_keeps_the_file(make_service, library):
    write(library, "a.md", "## A\n\nfirst version\n")
    svc = make_service(library)
    runner = TaskRunner(svc, timer_factory=FakeTimer)
    runner.handle_event({"type": "create", "paths": ["a.md"]})
    runner.drain()

    runner.handle_event({"type": "modify", "paths": ["a.md"]})
    (library / "a.md").unlink()
    runner.handle_event({"type": "delete", "paths": ["a.md"]})
    write(library, "a.md", "## A\n\nsecond version\n")
    runner.handle_event({"type": "create", "paths": ["a.md"]})
    assert runner.queue.snapshot() == [Task(UPSERT, "a.md"), Task(DELETE, "a.md")]

    runner.drain()
    files = svc.ensure_loaded().meta.files
    assert "a.md" in files
    assert files["a.md"].chunk_ids
    assert runner.failed == 0
