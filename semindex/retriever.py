# =========================
# semindex/retriever.py
# =========================
from __future__ import annotations

import math
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

import numpy as np
from loguru import logger

from .errors import DimensionMismatchError, IndexNotFoundError
from .snippets import SourceLines, build_snippet
from .store import IndexState


@dataclass(frozen=True)
class SearchHit:
    id: str
    score: float
    file_path: str
    relative: str
    heading: str
    start_line: int
    end_line: int
    snippet: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _finite(v: Any) -> Optional[float]:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    f = float(v)
    return f if math.isfinite(f) else None


def resolve_overrides(search_cfg, top_k=None, min_score=None, context_max_chars=None):
    """Per-query knobs, clamped like the stored config; anything invalid falls back to it."""
    k = _finite(top_k)
    m = _finite(min_score)
    c = _finite(context_max_chars)
    return (
        max(1, min(50, int(math.floor(k)))) if k is not None else search_cfg.top_k,
        max(-1.0, min(1.0, m)) if m is not None else search_cfg.min_score,
        max(200, min(20000, int(math.floor(c)))) if c is not None else search_cfg.context_max_chars,
    )


def cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Row-wise cosine similarity; rows (or a query) with zero norm score 0."""
    q = np.asarray(query, dtype=np.float64)
    m = np.asarray(matrix, dtype=np.float64)
    q_norm = float(np.linalg.norm(q))
    if m.size == 0:
        return np.zeros(m.shape[0] if m.ndim == 2 else 0)
    denom = np.linalg.norm(m, axis=1) * q_norm
    dots = m @ q
    out = np.zeros_like(dots)
    np.divide(dots, denom, out=out, where=denom > 0)
    return out


def rank(state: IndexState, qvec, min_score: float) -> List[tuple]:
    """[(chunk_id, score)] with score >= min_score, best first; ties keep chunk-map order."""
    meta = state.meta
    dims = meta.dims
    if not dims or not meta.chunks:
        return []
    if len(qvec) != dims:
        raise DimensionMismatchError(len(qvec), dims, where="query")

    ids = [cid for cid, c in meta.chunks.items() if c.vector_offset >= 0]
    rows = np.fromiter((meta.chunks[cid].vector_offset // dims for cid in ids), dtype=np.int64, count=len(ids))
    matrix = state.vectors.data.reshape(-1, dims)[rows]
    scores = cosine_scores(matrix, qvec)

    keep = [(cid, float(s)) for cid, s in zip(ids, scores) if s >= min_score]
    keep.sort(key=lambda t: t[1], reverse=True)  # list.sort is stable
    return keep


def search(state: Optional[IndexState], fs, embedder, cfg, query: str,
           top_k=None, min_score=None, context_max_chars=None) -> List[SearchHit]:
    """
    Embed the query, rank every live chunk, and turn the best ones into snippets
    re-read from the current file contents. Hits whose expanded block coincides
    with one already returned are skipped, so fewer than top_k may come back.
    """
    q = (query or "").strip()
    if not cfg.enabled or not q:
        return []
    k, floor, budget = resolve_overrides(cfg.search, top_k, min_score, context_max_chars)
    logger.info("retriever.search: q='{}…' top_k={} min_score={} context={}",
                q.replace("\n", " ")[:160], k, floor, budget)

    if state is None or not state.meta.dims or not state.meta.chunks:
        logger.info("retriever: index is empty or missing; no results")
        return []

    embedder.expect_dims(state.meta.dims)
    qvec = embedder.embed_query(q)
    ranked = rank(state, qvec, floor)

    sources = SourceLines(fs, cfg.chunk.min_heading_level)
    seen = set()
    out: List[SearchHit] = []
    for cid, score in ranked:
        if len(out) >= k:
            break
        c = state.meta.chunks[cid]
        abs_path = fs.abspath(c.relative_path)
        lines, blocks = sources.get(abs_path)
        if not lines:
            continue
        snip = build_snippet(lines, blocks, c.start_line, c.end_line, budget)
        key = (c.relative_path, snip.block_key)
        if key in seen:
            continue
        seen.add(key)
        out.append(SearchHit(
            id=cid,
            score=score,
            file_path=abs_path,
            relative=c.relative_path,
            heading=snip.heading or c.heading,
            start_line=snip.start_line,
            end_line=snip.end_line,
            snippet=snip.snippet,
        ))

    logger.info("retriever: ranked={} results={} first_id='{}'",
                len(ranked), len(out), out[0].id if out else None)
    return out


def explain(state: Optional[IndexState], fs, cfg, hit_id: str) -> SearchHit:
    """Rebuild the snippet for one stored chunk (score is not recomputed and reported as 0)."""
    if state is None:
        raise IndexNotFoundError("No index found for this library; build it first")
    c = state.meta.chunks.get(hit_id)
    if c is None:
        raise IndexNotFoundError(f"Chunk '{hit_id}' is not in the index")
    abs_path = fs.abspath(c.relative_path)
    lines, blocks = SourceLines(fs, cfg.chunk.min_heading_level).get(abs_path)
    snip = build_snippet(lines, blocks, c.start_line, c.end_line, cfg.search.context_max_chars)
    return SearchHit(
        id=hit_id,
        score=0.0,
        file_path=abs_path,
        relative=c.relative_path,
        heading=snip.heading or c.heading,
        start_line=snip.start_line,
        end_line=snip.end_line,
        snippet=snip.snippet,
    )
