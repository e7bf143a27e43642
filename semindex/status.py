# semindex/status.py
from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, asdict, replace
from pathlib import Path
from typing import Callable, Optional
from loguru import logger

STATUS_FILE = ".index_status.json"

IDLE = "idle"
INDEXING = "indexing"
ERROR = "error"


@dataclass(frozen=True)
class IndexStatus:
    state: str = IDLE            # idle | indexing | error
    phase: str = ""              # init | scan | chunk | embed | write | upsert | delete | clear
    total_files: int = 0
    total_chunks: int = 0
    processed_files: int = 0
    processed_chunks: int = 0
    batches_done: int = 0
    batches_total: int = 0
    current_file: str = ""
    last_progress_at: float = 0.0
    last_indexed_at: float = 0.0
    last_error: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class StatusTracker:
    """
    Process-wide progress for one library. Every update replaces the snapshot,
    notifies the optional hook, and writes .index_status.json when a data dir is set
    (status file failures are logged, never raised).
    """

    def __init__(self, data_dir: Optional[str] = None, hook: Optional[Callable[[IndexStatus], None]] = None):
        self._lock = threading.Lock()
        self._status = IndexStatus()
        self.path = Path(data_dir) / STATUS_FILE if data_dir else None
        self.hook = hook

    def snapshot(self) -> IndexStatus:
        with self._lock:
            return self._status

    def update(self, **patch) -> IndexStatus:
        unknown = set(patch) - set(IndexStatus.__dataclass_fields__)
        if unknown:
            raise TypeError(f"Unknown status field(s): {sorted(unknown)}")
        if any(k in patch for k in ("processed_files", "processed_chunks", "batches_done")):
            patch.setdefault("last_progress_at", time.time())
        with self._lock:
            self._status = replace(self._status, **patch)
            cur = self._status
        self._persist(cur)
        if self.hook is not None:
            try:
                self.hook(cur)
            except Exception as e:
                logger.debug("status hook failed: {}", e)
        return cur

    def start(self, phase: str, **extra) -> IndexStatus:
        base = dict(
            state=INDEXING, phase=phase, total_files=0, total_chunks=0, processed_files=0,
            processed_chunks=0, batches_done=0, batches_total=0, current_file="", last_error="",
        )
        base.update(extra)
        return self.update(**base)

    def finish(self, indexed: bool = True) -> IndexStatus:
        patch = dict(state=IDLE, phase="", current_file="")
        if indexed:
            patch["last_indexed_at"] = time.time()
        return self.update(**patch)

    def fail(self, err: BaseException) -> IndexStatus:
        return self.update(state=ERROR, current_file="", last_error=str(err) or type(err).__name__)

    def _persist(self, cur: IndexStatus) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(cur.to_dict()), encoding="utf-8")
        except OSError as e:
            logger.debug("status: cannot write '{}': {}", str(self.path), e)
