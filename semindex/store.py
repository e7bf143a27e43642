# semindex/store.py
"""
On-disk index: a headerless little-endian float32 vector file plus a JSON meta
sidecar that owns everything else (dims, chunk -> offset map, file records).

Vectors are append-only. Deleting a file only drops its meta entries; the rows it
used stay in the buffer as dead rows and offsets of live chunks never move.
"""
from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from .errors import StorageCorruptionError

SCHEMA_VERSION = 1
META_FILE = "meta.json"
VEC_FILE = "vectors.f32"
_LE_F32 = np.dtype("<f4")


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class FileRecord:
    mtime_ms: int = 0
    size: int = 0
    hash: str = ""
    chunk_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"mtimeMs": self.mtime_ms, "size": self.size, "hash": self.hash, "chunkIds": list(self.chunk_ids)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FileRecord":
        return cls(
            mtime_ms=int(d.get("mtimeMs") or 0),
            size=int(d.get("size") or 0),
            hash=str(d.get("hash") or ""),
            chunk_ids=[str(x) for x in (d.get("chunkIds") or [])],
        )


@dataclass
class ChunkRecord:
    relative_path: str
    heading: str
    start_line: int
    end_line: int
    vector_offset: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "relativePath": self.relative_path,
            "heading": self.heading,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "vectorOffset": self.vector_offset,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ChunkRecord":
        off = d.get("vectorOffset")
        return cls(
            relative_path=str(d.get("relativePath") or ""),
            heading=str(d.get("heading") or ""),
            start_line=int(d.get("startLine") or 0),
            end_line=int(d.get("endLine") or 0),
            vector_offset=int(off) if isinstance(off, (int, float)) and not isinstance(off, bool) else -1,
        )


@dataclass
class IndexMeta:
    library_key: str
    embedding_model: str
    dims: int = 0
    built_at: int = 0
    updated_at: Optional[int] = None
    files: Dict[str, FileRecord] = field(default_factory=dict)
    chunks: Dict[str, ChunkRecord] = field(default_factory=dict)
    schema_version: int = SCHEMA_VERSION

    @classmethod
    def empty(cls, library_key: str, embedding_model: str, built_at: int = 0) -> "IndexMeta":
        return cls(library_key=library_key, embedding_model=embedding_model, built_at=built_at)

    def copy(self) -> "IndexMeta":
        return IndexMeta(
            library_key=self.library_key,
            embedding_model=self.embedding_model,
            dims=self.dims,
            built_at=self.built_at,
            updated_at=self.updated_at,
            files={k: FileRecord(v.mtime_ms, v.size, v.hash, list(v.chunk_ids)) for k, v in self.files.items()},
            chunks={k: ChunkRecord(**vars(v)) for k, v in self.chunks.items()},
            schema_version=self.schema_version,
        )

    def drop_file(self, relative_path: str) -> List[str]:
        """Remove a file and the chunks it owns; returns the removed chunk ids."""
        rec = self.files.pop(relative_path, None)
        if rec is None:
            return []
        for cid in rec.chunk_ids:
            self.chunks.pop(cid, None)
        return list(rec.chunk_ids)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "schemaVersion": self.schema_version,
            "libraryKey": self.library_key,
            "embeddingModel": self.embedding_model,
            "dims": self.dims,
            "builtAt": self.built_at,
        }
        if self.updated_at is not None:
            d["updatedAt"] = self.updated_at
        d["files"] = {k: v.to_dict() for k, v in self.files.items()}
        d["chunks"] = {k: v.to_dict() for k, v in self.chunks.items()}
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "IndexMeta":
        files = d.get("files") if isinstance(d.get("files"), dict) else {}
        chunks = d.get("chunks") if isinstance(d.get("chunks"), dict) else {}
        updated = d.get("updatedAt")
        return cls(
            library_key=str(d.get("libraryKey") or ""),
            embedding_model=str(d.get("embeddingModel") or ""),
            dims=int(d.get("dims") or 0),
            built_at=int(d.get("builtAt") or 0),
            updated_at=int(updated) if isinstance(updated, (int, float)) else None,
            files={str(k): FileRecord.from_dict(v) for k, v in files.items() if isinstance(v, dict)},
            chunks={str(k): ChunkRecord.from_dict(v) for k, v in chunks.items() if isinstance(v, dict)},
            schema_version=d.get("schemaVersion"),
        )


# ------------------------------ vector buffer ------------------------------

class VectorStore:
    """Immutable flat float32 buffer; append() returns a new store."""

    __slots__ = ("data",)

    def __init__(self, data: Optional[np.ndarray] = None):
        arr = np.zeros(0, dtype=np.float32) if data is None else np.asarray(data, dtype=np.float32).reshape(-1)
        arr.setflags(write=False)
        self.data = arr

    def __len__(self) -> int:
        return int(self.data.shape[0])

    @classmethod
    def from_rows(cls, rows: Sequence[Sequence[float]], dims: int) -> "VectorStore":
        if not rows:
            return cls()
        mat = np.asarray(rows, dtype=np.float32)
        if mat.ndim != 2 or mat.shape[1] != dims:
            raise StorageCorruptionError(f"Vector rows do not have {dims} columns")
        return cls(mat.reshape(-1))

    def append(self, rows: Sequence[Sequence[float]], dims: int) -> Tuple["VectorStore", int]:
        """Old buffer copied verbatim, new rows after it. Returns (new_store, first_new_offset)."""
        old_len = len(self)
        if not rows:
            return self, old_len
        extra = VectorStore.from_rows(rows, dims).data
        return VectorStore(np.concatenate([self.data, extra])), old_len

    def row(self, offset: int, dims: int) -> np.ndarray:
        return self.data[offset:offset + dims]

    def rows_count(self, dims: int) -> int:
        return len(self) // dims if dims else 0

    def to_bytes(self) -> bytes:
        return self.data.astype(_LE_F32, copy=False).tobytes()

    @classmethod
    def from_bytes(cls, raw: bytes, dims: int) -> "VectorStore":
        if len(raw) % 4 != 0:
            raise StorageCorruptionError("Vector file is corrupt (length is not a multiple of 4 bytes)")
        arr = np.frombuffer(raw, dtype=_LE_F32).astype(np.float32)
        if dims and len(arr) % dims != 0:
            raise StorageCorruptionError(f"Vector file does not match meta (length {len(arr)} is not a multiple of dims {dims})")
        if not dims and len(arr):
            raise StorageCorruptionError("Vector file is not empty but meta has no dims")
        return cls(arr)


def validate(meta: IndexMeta, vectors: VectorStore) -> None:
    """Every live offset is row-aligned and inside the buffer; every owned chunk exists."""
    dims = meta.dims
    n = len(vectors)
    if dims and n % dims:
        raise StorageCorruptionError("Vector length is not a multiple of dims")
    for cid, c in meta.chunks.items():
        off = c.vector_offset
        if off < 0 or not dims or off % dims or off + dims > n:
            raise StorageCorruptionError(f"Chunk '{cid}' has an invalid vector offset {off}")
    for rel, f in meta.files.items():
        for cid in f.chunk_ids:
            if cid not in meta.chunks:
                raise StorageCorruptionError(f"File '{rel}' references missing chunk '{cid}'")


def dead_ratio(meta: IndexMeta, vectors: VectorStore) -> float:
    """Share of buffer rows no chunk points at any more (deletes are never compacted)."""
    total = vectors.rows_count(meta.dims)
    if not total:
        return 0.0
    live = len({c.vector_offset for c in meta.chunks.values()})
    return max(0.0, (total - live) / total)


# ------------------------------ persistence ------------------------------

class IndexStore:
    """Reads and writes meta.json + vectors.f32 in one data dir through a host fs."""

    def __init__(self, fs, data_dir: str | os.PathLike):
        self.fs = fs
        self.data_dir = str(data_dir)
        self.meta_path = os.path.join(self.data_dir, META_FILE)
        self.vec_path = os.path.join(self.data_dir, VEC_FILE)

    def read_raw_meta(self) -> Optional[Dict[str, Any]]:
        """Parsed meta.json, or None when absent or unreadable."""
        if not self.fs.exists(self.meta_path):
            return None
        try:
            data = json.loads(self.fs.read_text(self.meta_path) or "")
        except (OSError, ValueError) as e:
            logger.warning("store: cannot read meta '{}': {}", self.meta_path, e)
            return None
        return data if isinstance(data, dict) else None

    def load(self, cfg) -> Optional[Tuple[IndexMeta, VectorStore]]:
        """
        None when there is no usable index for `cfg` (missing, other schema, other model).
        Raises StorageCorruptionError when files exist but disagree with each other.
        """
        raw = self.read_raw_meta()
        if raw is None:
            return None
        if raw.get("schemaVersion") != SCHEMA_VERSION:
            logger.info("store: schema {} != {}; ignoring index", raw.get("schemaVersion"), SCHEMA_VERSION)
            return None
        if raw.get("embeddingModel") != cfg.embedding.model:
            logger.info("store: model '{}' != '{}'; ignoring index", raw.get("embeddingModel"), cfg.embedding.model)
            return None
        meta = IndexMeta.from_dict(raw)
        try:
            blob = self.fs.read_bytes(self.vec_path) if self.fs.exists(self.vec_path) else b""
        except OSError as e:
            raise StorageCorruptionError(f"Cannot read vector file: {e}") from e
        vectors = VectorStore.from_bytes(blob, meta.dims)
        validate(meta, vectors)
        logger.debug("store: loaded chunks={} dims={} floats={}", len(meta.chunks), meta.dims, len(vectors))
        return meta, vectors

    def write(self, meta: IndexMeta, vectors: VectorStore) -> None:
        """
        Vectors first, then meta, each written atomically.

        A crash in between leaves the old meta next to the new buffer. After an
        append that is harmless (old offsets stay in range). After a rebuild with
        a shorter buffer the old offsets point past the end, and the next load
        raises StorageCorruptionError until a full rebuild rewrites both files.
        """
        validate(meta, vectors)
        self.fs.write_bytes(self.vec_path, vectors.to_bytes())
        self.fs.write_text(self.meta_path, json.dumps(meta.to_dict(), indent=2, ensure_ascii=False))
        logger.debug("store: wrote chunks={} dims={} bytes={}", len(meta.chunks), meta.dims, len(vectors) * 4)


@dataclass(frozen=True)
class IndexState:
    """What the service caches: never mutated, only replaced by the lock holder."""
    library_key: str
    meta: IndexMeta
    vectors: VectorStore

    @classmethod
    def empty(cls, library_key: str, embedding_model: str, built_at: int = 0) -> "IndexState":
        return cls(library_key, IndexMeta.empty(library_key, embedding_model, built_at), VectorStore())
