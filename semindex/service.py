# semindex/service.py
"""
IndexService: the one object callers talk to.

It owns the busy lock, the cached IndexState, the status tracker and the index
log. Writers (reindex / upsert / delete / clear) run under the lock and swap the
cache only after their write succeeded; readers (search / explain) never take the
lock because they only ever see a complete state.
"""
from __future__ import annotations

import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from loguru import logger

from logging_decorators import log_call
from logging_setup import INDEX_LOG_FILE, index_log_sink

from . import indexer, retriever
from .embedder import EmbeddingClient
from .errors import BusyError, CapabilityMissingError, IndexDisabledError
from .fingerprint import library_key_for
from .retriever import SearchHit
from .settings import IndexConfig, load_config, save_config
from .status import IDLE, IndexStatus, StatusTracker
from .store import IndexState, IndexStore, dead_ratio

# host primitives each operation needs, checked before anything is written
CAPABILITIES: Dict[str, tuple] = {
    "reindex": ("list_files", "read_text", "write_bytes", "write_text"),
    "upsert": ("abspath", "exists", "stat", "read_text", "read_bytes", "write_bytes", "write_text"),
    "delete": ("abspath", "exists", "stat", "read_text", "read_bytes", "write_bytes", "write_text"),
    "clear": ("write_bytes", "write_text"),
    "search": ("abspath", "exists", "read_text", "read_bytes"),
}


class BusyLock:
    """Non-reentrant, non-blocking: a second writer fails fast instead of waiting."""

    def __init__(self):
        self._lock = threading.Lock()
        self.holder = ""

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise BusyError(self.holder)
        self.holder = name
        try:
            yield
        finally:
            self.holder = ""
            self._lock.release()


def _summary(state: IndexState) -> Dict[str, Any]:
    return {"files": len(state.meta.files), "chunks": len(state.meta.chunks), "dims": state.meta.dims}


class IndexService:
    def __init__(
        self,
        fs,
        settings_store,
        data_dir: Optional[str] = None,
        embedder_factory: Optional[Callable[[Any], EmbeddingClient]] = None,
        yield_fn: Optional[Callable[[], None]] = None,
        status_hook: Optional[Callable[[IndexStatus], None]] = None,
    ):
        self.fs = fs
        self.settings_store = settings_store
        self.library_key = library_key_for(getattr(fs, "root", ""))
        if data_dir is None:
            from config_home import library_data_dir
            data_dir = str(library_data_dir(self.library_key))
        self.data_dir = str(data_dir)
        self.store = IndexStore(fs, self.data_dir)
        self.status = StatusTracker(self.data_dir, hook=status_hook)
        self.embedder_factory = embedder_factory or EmbeddingClient.from_settings
        self.yield_fn = yield_fn or (lambda: time.sleep(0))
        self._lock = BusyLock()
        self._state: Optional[IndexState] = None
        self._embedder: Optional[EmbeddingClient] = None
        self._cancel_requested = threading.Event()
        self.log = logger.bind(component="service", library=self.library_key)

    # ---------- config / status ----------

    @property
    def is_busy(self) -> bool:
        return self._lock.locked

    @property
    def index_log_path(self) -> str:
        return os.path.join(self.data_dir, INDEX_LOG_FILE)

    def get_config(self) -> IndexConfig:
        return load_config(self.settings_store, self.library_key)

    @log_call("semindex.set_config")
    def set_config(self, patch: Optional[Mapping[str, Any]] = None) -> IndexConfig:
        for cap in ("get", "set"):
            if not callable(getattr(self.settings_store, cap, None)):
                raise CapabilityMissingError(f"settings.{cap}")
        before = self.get_config()
        cfg = save_config(self.settings_store, self.library_key, patch)
        if cfg.embedding.model != before.embedding.model:
            self.log.info("embedding model changed '{}' → '{}'; cached index dropped",
                          before.embedding.model, cfg.embedding.model)
            self._state = None
        return cfg

    def get_status(self) -> IndexStatus:
        return self.status.snapshot()

    # ---------- cache ----------

    def _cached(self, cfg: IndexConfig) -> Optional[IndexState]:
        st = self._state
        if st is None or st.library_key != self.library_key:
            return None
        if st.meta.embedding_model != cfg.embedding.model:
            return None
        return st

    def ensure_loaded(self, cfg: Optional[IndexConfig] = None) -> Optional[IndexState]:
        """
        The only read path: cached state when it matches this library and model,
        else whatever validates on disk (None when missing or built for another
        schema/model; StorageCorruptionError when the files disagree).
        """
        cfg = cfg or self.get_config()
        st = self._cached(cfg)
        if st is not None:
            return st
        loaded = self.store.load(cfg)
        if loaded is None:
            return None
        st = IndexState(self.library_key, *loaded)
        self._state = st
        return st

    def dead_ratio(self) -> float:
        st = self.ensure_loaded()
        return dead_ratio(st.meta, st.vectors) if st else 0.0

    # ---------- internals ----------

    def _require(self, op: str) -> None:
        for cap in CAPABILITIES[op]:
            if not callable(getattr(self.fs, cap, None)):
                raise CapabilityMissingError(cap)

    def _context(self, cfg: IndexConfig) -> indexer.IndexContext:
        return indexer.IndexContext(
            fs=self.fs,
            cfg=cfg.replace_key(self.library_key),
            store=self.store,
            embedder_factory=lambda: self._open_embedder(cfg),
            status=self.status,
            yield_fn=self.yield_fn,
        )

    def _open_embedder(self, cfg: IndexConfig) -> EmbeddingClient:
        emb = self.embedder_factory(cfg.embedding)
        if self._cancel_requested.is_set():
            emb.cancel()
        else:
            emb.resume()
        self._embedder = emb
        return emb

    @contextmanager
    def _writing(self, op: str, log_mode: str) -> Iterator[None]:
        """Capability check, then lock + index log; any failure lands in status and is re-raised."""
        try:
            self._require(op)
        except CapabilityMissingError as e:
            self.status.fail(e)
            self.log.error("{}: {}", op, e)
            raise
        with self._lock.hold(op):
            self._cancel_requested.clear()
            with index_log_sink(self.index_log_path, self.library_key, mode=log_mode):
                try:
                    yield
                except Exception as e:
                    self.status.fail(e)
                    self.log.error("{} FAILED: {}", op, e)
                    raise
                finally:
                    self._embedder = None

    @contextmanager
    def _reading(self, op: str) -> Iterator[None]:
        """Failures are recorded in status (unless a writer owns it) and the index log, then re-raised."""
        try:
            yield
        except Exception as e:
            if not self.is_busy:
                self.status.fail(e)
            with index_log_sink(self.index_log_path, self.library_key, mode="a"):
                self.log.error("{} FAILED: {}", op, e)
            raise

    def cancel(self) -> bool:
        """
        Ask the running write to stop before its next embedding batch.
        Returns False when nothing is running.
        """
        if not self.is_busy:
            return False
        self._cancel_requested.set()
        emb = self._embedder
        if emb is not None:
            emb.cancel()
        self.log.warning("cancel requested for '{}'", self._lock.holder)
        return True

    # ---------- writers ----------

    @log_call("semindex.reindex")
    def reindex(self) -> Dict[str, Any]:
        """Full rebuild. Raises IndexDisabledError when indexing is off."""
        cfg = self.get_config()
        if not cfg.enabled:
            err = IndexDisabledError()
            self.status.fail(err)
            raise err
        with self._writing("reindex", "w"):
            state = indexer.full_reindex(self._context(cfg))
            self._state = state
            self.status.update(total_files=len(state.meta.files), total_chunks=len(state.meta.chunks))
            self.status.finish()
        return _summary(state)

    @log_call("semindex.upsert_file")
    def upsert_file(self, relative_path: str, force: bool = False) -> Dict[str, Any]:
        cfg = self.get_config()
        with self._writing("upsert", "a"):
            self.status.start("upsert", current_file=relative_path)
            state = indexer.index_file(self._context(cfg), relative_path, force=force, current=self._cached(cfg))
            if state is not None:
                self._state = state
            self.status.finish(indexed=state is not None)
        return {"changed": state is not None, "relative": relative_path}

    @log_call("semindex.delete_file")
    def delete_file(self, relative_path: str) -> Dict[str, Any]:
        cfg = self.get_config()
        with self._writing("delete", "a"):
            self.status.start("delete", current_file=relative_path)
            state = indexer.remove_file(self._context(cfg), relative_path, current=self._cached(cfg))
            if state is not None:
                self._state = state
            self.status.finish(indexed=state is not None)
        return {"changed": state is not None, "relative": relative_path}

    @log_call("semindex.clear")
    def clear(self) -> Dict[str, Any]:
        cfg = self.get_config()
        with self._writing("clear", "w"):
            state = indexer.clear(self._context(cfg))
            self._state = state
            self.status.update(
                state=IDLE, phase="", total_files=0, total_chunks=0, processed_files=0,
                processed_chunks=0, batches_done=0, batches_total=0, current_file="",
                last_indexed_at=0.0, last_error="",
            )
        return _summary(state)

    # ---------- readers ----------

    @log_call("semindex.search")
    def search(self, query: str, top_k=None, min_score=None, context_max_chars=None) -> List[SearchHit]:
        cfg = self.get_config()
        if not cfg.enabled or not (query or "").strip():
            return []
        with self._reading("search"):
            self._require("search")
            state = self.ensure_loaded(cfg)
            embedder = self.embedder_factory(cfg.embedding)
            return retriever.search(state, self.fs, embedder, cfg, query,
                                    top_k=top_k, min_score=min_score, context_max_chars=context_max_chars)

    @log_call("semindex.explain")
    def explain(self, hit_id: str) -> SearchHit:
        with self._reading("explain"):
            self._require("search")
            cfg = self.get_config()
            return retriever.explain(self.ensure_loaded(cfg), self.fs, cfg, hit_id)
