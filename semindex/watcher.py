# semindex/watcher.py
"""
File-change events → deduplicated tasks → one-at-a-time incremental updates.

Arrival (handle_event, called from watchdog threads or tests) only enqueues and
arms a debounce timer. Processing (drain) runs the tasks strictly in order, and
backs off with a retry timer while another index operation holds the lock.
"""
from __future__ import annotations

import os
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import BusyError
from .filters import normalize_relative_path, should_index

UPSERT = "upsert"
DELETE = "delete"

DEBOUNCE_SEC = 0.42
BUSY_RETRY_SEC = 0.8

_EVENT_OPS = {"create": UPSERT, "modify": UPSERT, "any": UPSERT, "delete": DELETE}


@dataclass(frozen=True)
class Task:
    op: str
    relative_path: str


class TaskQueue:
    """FIFO of tasks; a task already pending is not queued twice."""

    def __init__(self):
        self._lock = threading.Lock()
        self._items: Deque[Task] = deque()
        self._pending: Set[Task] = set()

    def push(self, task: Task) -> bool:
        with self._lock:
            if task in self._pending:
                return False
            self._pending.add(task)
            self._items.append(task)
            return True

    def pop(self) -> Optional[Task]:
        with self._lock:
            if not self._items:
                return None
            task = self._items.popleft()
            self._pending.discard(task)
            return task

    def push_front(self, task: Task) -> None:
        with self._lock:
            if task in self._pending:
                return
            self._pending.add(task)
            self._items.appendleft(task)

    def snapshot(self) -> List[Task]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class TaskRunner:
    """
    Single consumer for a TaskQueue bound to an IndexService.

    `service` needs: fs, get_config(), is_busy, upsert_file(rel), delete_file(rel).
    """

    def __init__(
        self,
        service,
        debounce_sec: float = DEBOUNCE_SEC,
        retry_sec: float = BUSY_RETRY_SEC,
        timer_factory: Callable[[float, Callable[[], None]], threading.Timer] = threading.Timer,
    ):
        self.service = service
        self.queue = TaskQueue()
        self.debounce_sec = debounce_sec
        self.retry_sec = retry_sec
        self._timer_factory = timer_factory
        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()
        self._draining = threading.Lock()
        self._stopped = False
        self.processed = 0
        self.failed = 0
        self.log = logger.bind(component="watcher", library=getattr(service, "library_key", ""))

    # ---------- arrival ----------

    def _to_relative(self, path: str) -> str:
        p = str(path or "")
        if os.path.isabs(p):
            rel = self.service.fs.relpath(p)
            if rel == ".." or rel.startswith("../"):
                return ""
            return rel
        return normalize_relative_path(p)

    def tasks_for_event(self, event: Dict) -> List[Task]:
        """{type: create|modify|delete|any, paths: [...]} → in-scope tasks."""
        op = _EVENT_OPS.get(str((event or {}).get("type") or ""))
        if op is None:
            return []
        cfg = self.service.get_config()
        if not cfg.enabled:
            return []
        ci = getattr(self.service.fs, "case_insensitive", False)
        out: List[Task] = []
        for raw in (event or {}).get("paths") or []:
            rel = self._to_relative(raw)
            if rel and should_index(rel, cfg, ci):
                out.append(Task(op, rel))
        return out

    def handle_event(self, event: Dict) -> int:
        """Enqueue tasks for one event and arm the debounce timer. Returns how many were new."""
        added = 0
        for task in self.tasks_for_event(event):
            if self.queue.push(task):
                added += 1
                self.log.debug("queued {} '{}'", task.op, task.relative_path)
        if added:
            self._schedule(self.debounce_sec)
        return added

    def enqueue(self, tasks: Iterable[Task]) -> int:
        n = sum(1 for t in tasks if self.queue.push(t))
        if n:
            self._schedule(self.debounce_sec)
        return n

    # ---------- timers ----------

    def _schedule(self, delay: float) -> None:
        with self._timer_lock:
            if self._stopped or self._timer is not None:
                return
            t = self._timer_factory(delay, self._on_timer)
            t.daemon = True
            self._timer = t
            t.start()

    def _on_timer(self) -> None:
        with self._timer_lock:
            self._timer = None
        self.drain()

    # ---------- processing ----------

    def _run(self, task: Task) -> None:
        if task.op == DELETE:
            self.service.delete_file(task.relative_path)
        else:
            self.service.upsert_file(task.relative_path)

    def drain(self) -> int:
        """Process queued tasks one by one. Returns how many ran (0 when deferred)."""
        if not self._draining.acquire(blocking=False):
            return 0
        done = 0
        try:
            while True:
                if self.service.is_busy:
                    self.log.debug("index busy; retrying queue in {}s ({} pending)", self.retry_sec, len(self.queue))
                    self._schedule(self.retry_sec)
                    break
                task = self.queue.pop()
                if task is None:
                    break
                try:
                    self._run(task)
                    self.processed += 1
                    done += 1
                except BusyError:
                    self.queue.push_front(task)
                    self._schedule(self.retry_sec)
                    break
                except Exception as e:
                    self.failed += 1
                    self.log.error("incremental {} FAIL '{}': {}", task.op, task.relative_path, e)
        finally:
            self._draining.release()
        # a timer that fired while we held the drain lock gave up; pick its tasks up
        if len(self.queue):
            self._schedule(self.debounce_sec)
        return done

    def stop(self) -> None:
        with self._timer_lock:
            self._stopped = True
            t, self._timer = self._timer, None
        if t is not None:
            t.cancel()


# ------------------------------ watchdog bridge ------------------------------

class _LibraryEventHandler(FileSystemEventHandler):
    def __init__(self, runner: TaskRunner):
        super().__init__()
        self.runner = runner

    def _emit(self, kind: str, path) -> None:
        self.runner.handle_event({"type": kind, "paths": [os.fsdecode(path)]})

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit("create", event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit("modify", event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit("delete", event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._emit("delete", event.src_path)
        dest = getattr(event, "dest_path", None)
        if dest:
            self._emit("create", dest)


class LibraryWatcher:
    """Recursive watchdog observer on the library root feeding a TaskRunner."""

    def __init__(self, service, runner: Optional[TaskRunner] = None):
        self.service = service
        self.runner = runner or TaskRunner(service)
        self._observer = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> "LibraryWatcher":
        if self._observer is not None:
            return self
        root = self.service.fs.root
        observer = Observer()
        observer.schedule(_LibraryEventHandler(self.runner), root, recursive=True)
        observer.start()
        self._observer = observer
        logger.info("watcher: watching '{}'", root)
        return self

    def stop(self) -> None:
        self.runner.stop()
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        logger.info("watcher: stopped")

    def __enter__(self) -> "LibraryWatcher":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()
