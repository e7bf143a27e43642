# semindex/indexer.py
"""
Writers of the index: full rebuild and single-file incremental update.

Both work on copies and hand back a new IndexState; the caller (IndexService)
holds the busy lock and swaps its cache only after the write succeeded. Nothing
here touches the lock or the cache.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from loguru import logger

from .chunkers.markdown import Chunk, chunk_ids_for, chunk_text
from .errors import ModelMismatchError, SchemaMismatchError
from .filters import normalize_relative_path, should_index
from .fingerprint import fingerprint, is_unchanged
from .settings import IndexConfig
from .status import StatusTracker
from .store import (
    SCHEMA_VERSION,
    ChunkRecord,
    FileRecord,
    IndexMeta,
    IndexState,
    IndexStore,
    VectorStore,
    now_ms,
)

# Files longer than this are recorded with zero chunks instead of being chunked.
MAX_FILE_CHARS = 5_000_000


def _default_yield() -> None:
    time.sleep(0)


@dataclass
class IndexContext:
    """Everything one write operation needs. Built by the service per call."""
    fs: object
    cfg: IndexConfig
    store: IndexStore
    embedder_factory: Callable[[], object]
    status: StatusTracker = field(default_factory=StatusTracker)
    yield_fn: Callable[[], None] = _default_yield
    log: object = None
    _embedder: object = field(default=None, init=False, repr=False)

    def __post_init__(self):
        if self.log is None:
            self.log = logger.bind(component="indexer", library=self.cfg.library_key)

    @property
    def embedder(self):
        """Created on first use: no-op updates never need an embedding connection."""
        if self._embedder is None:
            self._embedder = self.embedder_factory()
        return self._embedder

    def pause(self) -> None:
        # cooperative yield; never releases the busy lock
        self.yield_fn()


@dataclass
class _Pending:
    id: str
    relative_path: str
    chunk: Chunk


# ------------------------------ helpers ------------------------------

def _read_source(ctx: IndexContext, path: str, rel: str) -> Optional[str]:
    try:
        return ctx.fs.read_text(path)
    except OSError as e:
        ctx.log.warning("read FAIL '{}': {}", rel, e)
        return None


def _chunks_for(ctx: IndexContext, rel: str, text: str) -> List[Chunk]:
    if len(text) > MAX_FILE_CHARS:
        ctx.log.warning("skip oversized file '{}' chars={} (limit {})", rel, len(text), MAX_FILE_CHARS)
        return []
    return chunk_text(text, ctx.cfg.chunk, rel)


def _embed(ctx: IndexContext, texts: List[str], rel: str = "") -> List[List[float]]:
    bs = max(1, int(getattr(ctx.embedder, "batch_size", 16) or 16))
    total = (len(texts) + bs - 1) // bs
    ctx.status.update(phase="embed", batches_done=0, batches_total=total,
                      processed_chunks=0, total_chunks=len(texts), current_file=rel)

    def on_batch(done: int, of: int, items: int) -> None:
        ctx.log.debug("embed batch {}/{} ({} / {} chunks)", done, of, items, len(texts))
        ctx.status.update(batches_done=done, batches_total=of, processed_chunks=items)
        ctx.pause()

    t0 = time.perf_counter()
    vecs = ctx.embedder.embed(texts, input_type="document", on_batch=on_batch)
    ctx.log.info("embedded {} chunk(s) in {} batch(es) dims={} time={:.1f}s",
                 len(texts), total, ctx.embedder.dims, time.perf_counter() - t0)
    return vecs


def check_on_disk(ctx: IndexContext) -> None:
    """Incremental updates refuse an index built with another schema or model."""
    raw = ctx.store.read_raw_meta()
    if raw is None:
        return
    found = raw.get("schemaVersion")
    if found != SCHEMA_VERSION:
        raise SchemaMismatchError(found, SCHEMA_VERSION)
    model = raw.get("embeddingModel")
    if model and model != ctx.cfg.embedding.model:
        raise ModelMismatchError(model, ctx.cfg.embedding.model)


def load_state(ctx: IndexContext) -> IndexState:
    loaded = ctx.store.load(ctx.cfg)
    if loaded is None:
        return IndexState.empty(ctx.cfg.library_key, ctx.cfg.embedding.model)
    meta, vectors = loaded
    return IndexState(ctx.cfg.library_key, meta, vectors)


def _in_scope(ctx: IndexContext, rel: str) -> bool:
    if not ctx.cfg.enabled:
        ctx.log.debug("incremental: indexing disabled; ignoring '{}'", rel)
        return False
    if not should_index(rel, ctx.cfg, getattr(ctx.fs, "case_insensitive", False)):
        ctx.log.debug("incremental: '{}' is outside the configured scope", rel)
        return False
    return True


def _commit(ctx: IndexContext, meta: IndexMeta, vectors: VectorStore) -> IndexState:
    ctx.status.update(phase="write")
    ctx.store.write(meta, vectors)
    return IndexState(ctx.cfg.library_key, meta, vectors)


# ------------------------------ full rebuild ------------------------------

def full_reindex(ctx: IndexContext) -> IndexState:
    """
    Rebuild from scratch: scan → chunk → embed → write.
    Nothing reaches the disk unless every step succeeded. Returns the new state.
    """
    cfg = ctx.cfg
    log = ctx.log
    log.info("full_reindex: begin root='{}' model='{}' provider='{}' include_dirs={} exclude_dirs={}",
             getattr(ctx.fs, "root", ""), cfg.embedding.model, cfg.embedding.provider,
             cfg.include_dirs, cfg.exclude_dirs)
    ctx.status.start("init")
    ctx.pause()

    ctx.status.update(phase="scan")
    t0 = time.perf_counter()
    files = ctx.fs.list_files(cfg)
    log.info("scan done: files={} time={:.2f}s", len(files), time.perf_counter() - t0)
    ctx.status.update(phase="chunk", total_files=len(files), processed_files=0)
    ctx.pause()

    pending: List[_Pending] = []
    records: Dict[str, FileRecord] = {}
    taken: set = set()
    for n, f in enumerate(files, start=1):
        rel = f.relative
        ctx.status.update(current_file=rel)
        text = _read_source(ctx, f.path, rel)
        if text is not None:
            fp = fingerprint(text)
            chunks = _chunks_for(ctx, rel, text)
            ids = chunk_ids_for(rel, chunks, taken)
            pending.extend(_Pending(cid, rel, c) for cid, c in zip(ids, chunks))
            records[rel] = FileRecord(mtime_ms=f.mtime_ms, size=fp.size, hash=fp.hash, chunk_ids=ids)
            log.debug("chunk OK '{}' chunks={}", rel, len(chunks))
        ctx.status.update(processed_files=n, total_chunks=len(pending), processed_chunks=len(pending))
        ctx.pause()

    built_at = now_ms()
    meta = IndexMeta.empty(cfg.library_key, cfg.embedding.model, built_at)
    meta.files = records

    if not pending:
        log.info("no indexable content; writing an empty index")
        state = _commit(ctx, meta, VectorStore())
        log.info("full_reindex: done files={} chunks=0", len(records))
        return state

    vecs = _embed(ctx, [p.chunk.text for p in pending])
    dims = int(ctx.embedder.dims)
    vectors = VectorStore.from_rows(vecs, dims)
    meta.dims = dims
    for i, p in enumerate(pending):
        c = p.chunk
        meta.chunks[p.id] = ChunkRecord(
            relative_path=p.relative_path,
            heading=c.heading,
            start_line=c.start_line,
            end_line=c.end_line,
            vector_offset=i * dims,
        )

    state = _commit(ctx, meta, vectors)
    log.info("full_reindex: done files={} chunks={} dims={}", len(records), len(pending), dims)
    return state


# ------------------------------ incremental ------------------------------

def index_file(ctx: IndexContext, relative_path: str, force: bool = False,
               current: Optional[IndexState] = None) -> Optional[IndexState]:
    """
    Upsert one file. Returns the new state, or None when nothing changed
    (disabled, out of scope, unchanged fingerprint, missing file never indexed).
    """
    rel = normalize_relative_path(relative_path)
    if not _in_scope(ctx, rel):
        return None
    check_on_disk(ctx)
    state = current or load_state(ctx)
    log = ctx.log

    abs_path = ctx.fs.abspath(rel)
    if not ctx.fs.exists(abs_path):
        if rel not in state.meta.files:
            log.debug("incremental: '{}' is gone and was never indexed", rel)
            return None
        log.info("incremental: '{}' no longer exists; removing", rel)
        return _drop(ctx, state, rel)

    ctx.status.update(current_file=rel)
    text = ctx.fs.read_text(abs_path)
    fp = fingerprint(text)
    prev = state.meta.files.get(rel)
    if not force and is_unchanged(prev, fp):
        log.debug("incremental: '{}' unchanged (size={} hash={}); skip", rel, fp.size, fp.hash[:12])
        return None

    meta = state.meta.copy()
    dropped = meta.drop_file(rel)
    chunks = _chunks_for(ctx, rel, text)
    ids = chunk_ids_for(rel, chunks, set(meta.chunks))

    vectors = state.vectors
    if chunks:
        ctx.embedder.expect_dims(meta.dims)
        vecs = _embed(ctx, [c.text for c in chunks], rel)
        dims = int(ctx.embedder.dims)
        vectors, first = vectors.append(vecs, dims)
        meta.dims = dims
        for i, (cid, c) in enumerate(zip(ids, chunks)):
            meta.chunks[cid] = ChunkRecord(rel, c.heading, c.start_line, c.end_line, first + i * dims)

    st = ctx.fs.stat(abs_path)
    meta.files[rel] = FileRecord(mtime_ms=st.mtime_ms if st else 0, size=fp.size, hash=fp.hash, chunk_ids=ids)
    meta.updated_at = now_ms()
    new_state = _commit(ctx, meta, vectors)
    log.info("incremental: '{}' replaced={} added={} floats={}", rel, len(dropped), len(ids), len(vectors))
    return new_state


def remove_file(ctx: IndexContext, relative_path: str,
                current: Optional[IndexState] = None) -> Optional[IndexState]:
    """
    Drop a file's records (its vector rows stay as dead rows). None if it was not indexed.

    A file that is back on disk by the time the delete runs (editor save via
    delete + re-create) is upserted instead.
    """
    rel = normalize_relative_path(relative_path)
    if not _in_scope(ctx, rel):
        return None
    check_on_disk(ctx)
    state = current or load_state(ctx)
    if ctx.fs.exists(ctx.fs.abspath(rel)):
        ctx.log.info("incremental: '{}' still exists; upserting instead of removing", rel)
        return index_file(ctx, rel, current=state)
    if rel not in state.meta.files:
        ctx.log.debug("incremental: '{}' not in index; nothing to remove", rel)
        return None
    return _drop(ctx, state, rel)


def _drop(ctx: IndexContext, state: IndexState, rel: str) -> IndexState:
    meta = state.meta.copy()
    removed = meta.drop_file(rel)
    meta.updated_at = now_ms()
    new_state = _commit(ctx, meta, state.vectors)
    ctx.log.info("incremental: removed '{}' chunks={} (buffer kept at {} floats)", rel, len(removed), len(state.vectors))
    return new_state


def clear(ctx: IndexContext) -> IndexState:
    """Write an empty index (empty buffer, empty maps) for the configured model."""
    ctx.log.info("clear: writing empty index to '{}'", ctx.store.data_dir)
    state = IndexState.empty(ctx.cfg.library_key, ctx.cfg.embedding.model)
    ctx.store.write(state.meta, state.vectors)
    return state
