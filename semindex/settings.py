# =========================
# semindex/settings.py
# =========================
from __future__ import annotations

import math
import copy
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping, Optional
from loguru import logger

CFG_KEY = "semindex.byLibrary"

PROVIDER_SHARED = "shared"    # connection comes from the environment / .env
PROVIDER_CUSTOM = "custom"    # connection comes from this config
PROVIDERS = (PROVIDER_SHARED, PROVIDER_CUSTOM)

DEFAULT: Dict[str, Any] = {
    # Off by default: nothing is indexed and no embedding request is sent until enabled.
    "enabled": False,

    # --- What files to index ---
    "include_extensions": ["md", "markdown", "txt"],
    "include_dirs": [],
    "exclude_dirs": [],
    "max_depth": 32,

    # --- Chunking controls ---
    "chunk": {"max_chars": 512, "overlap_chars": 0, "by_heading": True, "min_heading_level": 2},

    # --- Embedding provider ---
    "embedding": {
        "provider": PROVIDER_SHARED,
        "base_url": "",
        "api_key": "",
        "model": "text-embedding-3-small",
        "batch_size": 16,
        "timeout_sec": 60,
    },

    # --- Retrieval defaults ---
    "search": {"top_k": 8, "min_score": 0.0, "context_max_chars": 1024},

    # Retired: the old "cloud sync" toggle must never come back from persisted state.
    "cloud_sync": False,
}

# camelCase spellings written by older versions of the settings dialog
_ALIASES = {
    "includeExtensions": "include_extensions",
    "includeDirs": "include_dirs",
    "excludeDirs": "exclude_dirs",
    "maxDepth": "max_depth",
    "libraryKey": "library_key",
    "cloudSync": "cloud_sync",
    "maxChars": "max_chars",
    "overlapChars": "overlap_chars",
    "byHeading": "by_heading",
    "minHeadingLevel": "min_heading_level",
    "baseUrl": "base_url",
    "apiKey": "api_key",
    "batchSize": "batch_size",
    "timeoutSec": "timeout_sec",
    "topK": "top_k",
    "minScore": "min_score",
    "contextMaxChars": "context_max_chars",
}

_FALSY_STRINGS = {"", "0", "false", "no", "off", "none", "null"}


@dataclass(frozen=True)
class ChunkSettings:
    max_chars: int = 512
    overlap_chars: int = 0
    by_heading: bool = True
    min_heading_level: int = 2


@dataclass(frozen=True)
class EmbeddingSettings:
    provider: str = PROVIDER_SHARED
    base_url: str = ""
    api_key: str = ""
    model: str = "text-embedding-3-small"
    batch_size: int = 16
    timeout_sec: float = 60


@dataclass(frozen=True)
class SearchSettings:
    top_k: int = 8
    min_score: float = 0.0
    context_max_chars: int = 1024


@dataclass(frozen=True)
class IndexConfig:
    enabled: bool = False
    include_extensions: List[str] = field(default_factory=lambda: list(DEFAULT["include_extensions"]))
    include_dirs: List[str] = field(default_factory=list)
    exclude_dirs: List[str] = field(default_factory=list)
    max_depth: int = 32
    chunk: ChunkSettings = field(default_factory=ChunkSettings)
    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    search: SearchSettings = field(default_factory=SearchSettings)
    library_key: str = ""
    cloud_sync: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def replace_key(self, library_key: str) -> "IndexConfig":
        d = self.to_dict()
        d["library_key"] = library_key
        return normalize_config(d)


# ----------------------------- coercion helpers -----------------------------

def _dealias(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, Mapping):
        return {}
    out: Dict[str, Any] = {}
    for k, v in raw.items():
        key = _ALIASES.get(str(k), str(k))
        # snake_case wins when both spellings are present
        if key in out and key != k:
            continue
        out[key] = v
    return out


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, str):
        return v.strip().lower() not in _FALSY_STRINGS
    return bool(v)


def _as_number(v: Any) -> Optional[float]:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    f = float(v)
    return f if math.isfinite(f) else None


def _clamp_int(v: Any, default: int, lo: Optional[int] = None, hi: Optional[int] = None) -> int:
    f = _as_number(v)
    if f is None:
        return default
    n = int(math.floor(f))
    if lo is not None:
        n = max(lo, n)
    if hi is not None:
        n = min(hi, n)
    return n


def _clamp_float(v: Any, default: float, lo: float, hi: float) -> float:
    f = _as_number(v)
    if f is None:
        return default
    return max(lo, min(hi, f))


def _as_str(v: Any) -> str:
    if v is None:
        return ""
    return str(v).strip()


def normalize_extensions(items: Any) -> List[str]:
    out: List[str] = []
    seen = set()
    for it in items if isinstance(items, (list, tuple)) else []:
        ext = _as_str(it).lstrip(".").lower()
        if not ext or ext in seen:
            continue
        seen.add(ext)
        out.append(ext)
    return out or list(DEFAULT["include_extensions"])


def normalize_dir_prefixes(items: Any) -> List[str]:
    """'./Notes/', '\\notes\\' and 'notes' all collapse to 'Notes' (first spelling wins)."""
    out: List[str] = []
    seen = set()
    for it in items if isinstance(items, (list, tuple)) else []:
        d = _as_str(it).replace("\\", "/")
        while "//" in d:
            d = d.replace("//", "/")
        if d.startswith("./"):
            d = d[2:]
        d = d.strip("/").strip()
        if not d:
            continue
        key = d.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(d)
    return out


# ----------------------------- public API -----------------------------

def normalize_config(raw: Any) -> IndexConfig:
    """
    Turn anything (None, partial dict, legacy camelCase dict, IndexConfig) into a
    fully-populated, range-clamped IndexConfig. Never raises; normalizing an
    already-normalized config returns an equal config.
    """
    if isinstance(raw, IndexConfig):
        raw = raw.to_dict()
    src = _dealias(raw)
    chunk_src = _dealias(src.get("chunk"))
    emb_src = _dealias(src.get("embedding"))
    search_src = _dealias(src.get("search"))

    d_chunk = DEFAULT["chunk"]
    chunk = ChunkSettings(
        max_chars=_clamp_int(chunk_src.get("max_chars"), d_chunk["max_chars"], lo=200),
        overlap_chars=_clamp_int(chunk_src.get("overlap_chars"), d_chunk["overlap_chars"], lo=0),
        by_heading=_as_bool(chunk_src.get("by_heading"), d_chunk["by_heading"]),
        min_heading_level=_clamp_int(chunk_src.get("min_heading_level"), d_chunk["min_heading_level"], lo=1, hi=6),
    )

    d_emb = DEFAULT["embedding"]
    provider = _as_str(emb_src.get("provider")) or d_emb["provider"]
    if provider not in PROVIDERS:
        logger.debug("settings: unknown embedding provider '{}' → '{}'", provider, d_emb["provider"])
        provider = d_emb["provider"]
    embedding = EmbeddingSettings(
        provider=provider,
        base_url=_as_str(emb_src.get("base_url")),
        api_key=_as_str(emb_src.get("api_key")),
        model=_as_str(emb_src.get("model")) or d_emb["model"],
        batch_size=_clamp_int(emb_src.get("batch_size"), d_emb["batch_size"], lo=1, hi=256),
        timeout_sec=_clamp_float(emb_src.get("timeout_sec"), float(d_emb["timeout_sec"]), 1.0, 600.0),
    )

    d_search = DEFAULT["search"]
    search = SearchSettings(
        top_k=_clamp_int(search_src.get("top_k"), d_search["top_k"], lo=1, hi=50),
        min_score=_clamp_float(search_src.get("min_score"), d_search["min_score"], -1.0, 1.0),
        context_max_chars=_clamp_int(search_src.get("context_max_chars"), d_search["context_max_chars"], lo=200, hi=20000),
    )

    return IndexConfig(
        enabled=_as_bool(src.get("enabled"), DEFAULT["enabled"]),
        include_extensions=normalize_extensions(src.get("include_extensions")),
        include_dirs=normalize_dir_prefixes(src.get("include_dirs")),
        exclude_dirs=normalize_dir_prefixes(src.get("exclude_dirs")),
        max_depth=_clamp_int(src.get("max_depth"), DEFAULT["max_depth"], lo=0),
        chunk=chunk,
        embedding=embedding,
        search=search,
        library_key=_as_str(src.get("library_key")),
        cloud_sync=False,
    )


def _library_map(store) -> Dict[str, Any]:
    raw = store.get(CFG_KEY) if store is not None else None
    return dict(raw) if isinstance(raw, Mapping) else {}


def load_config(store, library_key: str) -> IndexConfig:
    """Read the per-library entry from the settings store and normalize it."""
    raw = _library_map(store).get(library_key)
    merged = copy.deepcopy(DEFAULT)
    if isinstance(raw, Mapping):
        merged.update(raw)
    merged["library_key"] = library_key
    cfg = normalize_config(merged)
    logger.debug(
        "settings.load: library='{}' enabled={} model='{}' exts={} top_k={}",
        library_key, cfg.enabled, cfg.embedding.model, cfg.include_extensions, cfg.search.top_k,
    )
    return cfg


def save_config(store, library_key: str, patch: Optional[Mapping[str, Any]] = None) -> IndexConfig:
    """Merge `patch` over the stored entry (nested sections merged one level deep) and persist."""
    if store is None:
        from .errors import CapabilityMissingError
        raise CapabilityMissingError("settings store")
    libs = _library_map(store)
    current = load_config(store, library_key).to_dict()
    for k, v in _dealias(patch or {}).items():
        if k in ("chunk", "embedding", "search") and isinstance(v, Mapping):
            current[k] = {**current.get(k, {}), **_dealias(v)}
        else:
            current[k] = v
    current["library_key"] = library_key
    nxt = normalize_config(current)
    libs[library_key] = nxt.to_dict()
    store.set(CFG_KEY, libs)
    logger.info("settings.save: library='{}' enabled={} model='{}'", library_key, nxt.enabled, nxt.embedding.model)
    return nxt
