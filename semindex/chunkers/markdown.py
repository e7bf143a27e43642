# semindex/chunkers/markdown.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Tuple, Iterable
from loguru import logger

from ..errors import ChunkIdCollisionError
from ..fingerprint import fnv1a_hex

MIN_CHUNK_CHARS = 200
MAX_DUP_SUFFIX = 1000

_FENCE_RX = re.compile(r"^\s{0,3}(```|~~~)")
_ATX_RX = re.compile(r"^\s{0,3}(#{1,6})\s+(.+?)\s*$")
_CLOSING_HASHES_RX = re.compile(r"\s+#+\s*$")
_NEWLINE_RX = re.compile(r"\r?\n")


@dataclass(frozen=True)
class Block:
    """0-based inclusive line range under one heading ("" for the preamble)."""
    start: int
    end: int
    heading: str = ""
    level: int = 0


@dataclass(frozen=True)
class Chunk:
    start_line: int   # 1-based
    end_line: int     # 1-based, inclusive
    heading: str
    text: str


def split_lines(text: str) -> List[str]:
    return _NEWLINE_RX.split(text or "")


def is_fence_toggle(line: str) -> bool:
    return bool(_FENCE_RX.match(line or ""))


def parse_atx_heading(line: str) -> Tuple[int, str] | None:
    m = _ATX_RX.match(line or "")
    if not m:
        return None
    # "## Title ###" → "Title"
    title = _CLOSING_HASHES_RX.sub("", m.group(2).strip()).strip()
    if not title:
        return None
    return len(m.group(1)), title


def split_blocks(lines: List[str], min_level: int = 2) -> List[Block]:
    """
    Partition lines at ATX headings of level >= min_level, ignoring anything
    inside fenced code. No qualifying heading → the whole document is one block.
    """
    n = len(lines)
    if not n:
        return []

    heads: List[Tuple[int, int, str]] = []
    in_fence = False
    for i, ln in enumerate(lines):
        if is_fence_toggle(ln):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        h = parse_atx_heading(ln)
        if h and h[0] >= min_level:
            heads.append((i, h[0], h[1]))

    if not heads:
        return [Block(0, n - 1)]

    out: List[Block] = []
    start, heading, level = 0, "", 0
    for i, lvl, title in heads:
        if i > start:
            out.append(Block(start, i - 1, heading, level))
        start, heading, level = i, title, lvl
    out.append(Block(start, n - 1, heading, level))
    return out


def split_paragraphs(lines: List[str], start: int, end: int) -> List[Tuple[int, int]]:
    out: List[Tuple[int, int]] = []
    if not lines:
        return out
    a = max(0, start)
    b = min(len(lines) - 1, end)
    s = -1
    for i in range(a, b + 1):
        if not lines[i].strip():
            if s >= 0:
                out.append((s, i - 1))
            s = -1
            continue
        if s < 0:
            s = i
    if s >= 0:
        out.append((s, b))
    return out


def chunk_line_range(lines: List[str], start: int, end: int, max_chars: int, overlap: int) -> List[Tuple[int, int, str]]:
    """
    Line accumulation for a paragraph that is too long on its own.

    Each window takes lines until the budget is hit (at least one line), then the
    next window backs off over trailing lines worth up to `overlap` chars. The next
    start is always strictly greater than the previous one, so a single enormous
    line cannot stall the loop.
    """
    out: List[Tuple[int, int, str]] = []
    n = len(lines)
    if not n:
        return out
    budget = max(MIN_CHUNK_CHARS, int(max_chars))
    ov = max(0, int(overlap))
    first = max(0, start)
    limit = min(n - 1, end)

    cur_start = first
    while cur_start <= limit:
        stop = cur_start
        size = 0
        while stop <= limit:
            add = len(lines[stop]) + 1
            if size > 0 and size + add > budget:
                break
            size += add
            stop += 1
        if stop <= cur_start:
            stop = min(limit + 1, cur_start + 1)
        text = "\n".join(lines[cur_start:stop]).strip()
        if text:
            out.append((cur_start, stop - 1, text))
        if stop > limit:
            break
        if not ov:
            cur_start = stop
            continue
        back = stop
        back_len = 0
        while back > cur_start and back_len < ov:
            back -= 1
            back_len += len(lines[back]) + 1
        nxt = max(first, back)
        cur_start = nxt if nxt > cur_start else stop
    return out


def chunk_range(lines: List[str], start: int, end: int, max_chars: int, overlap: int) -> List[Tuple[int, int, str]]:
    """Greedy paragraph packing inside one block; oversized paragraphs go through chunk_line_range."""
    out: List[Tuple[int, int, str]] = []
    paras = split_paragraphs(lines, start, end)
    if not paras:
        return out
    budget = max(MIN_CHUNK_CHARS, int(max_chars))

    cur_start = cur_end = -1
    cur_len = 0

    def flush() -> None:
        nonlocal cur_start, cur_end, cur_len
        if cur_start >= 0 and cur_end >= cur_start:
            text = "\n".join(lines[cur_start:cur_end + 1]).strip()
            if text:
                out.append((cur_start, cur_end, text))
        cur_start = cur_end = -1
        cur_len = 0

    for ps, pe in paras:
        p_text = "\n".join(lines[ps:pe + 1]).strip()
        if not p_text:
            continue
        if len(p_text) > budget:
            flush()
            out.extend(chunk_line_range(lines, ps, pe, budget, overlap))
            continue
        add = len(p_text) + (2 if cur_len > 0 else 0)
        if cur_len > 0 and cur_len + add > budget:
            flush()
            add = len(p_text)
        if cur_len == 0:
            cur_start = ps
        cur_end = pe
        cur_len += add
    flush()
    return out


def chunk_lines(lines: List[str], settings) -> List[Chunk]:
    """`settings` is a ChunkSettings (max_chars, overlap_chars, by_heading, min_heading_level)."""
    if not lines:
        return []
    if settings.by_heading:
        blocks = split_blocks(lines, settings.min_heading_level)
    else:
        blocks = [Block(0, len(lines) - 1)]
    chunks: List[Chunk] = []
    for b in blocks:
        if b.end < b.start:
            continue
        for s, e, text in chunk_range(lines, b.start, b.end, settings.max_chars, settings.overlap_chars):
            chunks.append(Chunk(start_line=s + 1, end_line=e + 1, heading=b.heading, text=text))
    return chunks


def chunk_text(text: str, settings, rel: str = "") -> List[Chunk]:
    lines = split_lines(text)
    chunks = chunk_lines(lines, settings)
    logger.debug(
        "markdown.chunk: file='{}' lines={} chunks={} max_chars={} overlap={} by_heading={}",
        rel, len(lines), len(chunks), settings.max_chars, settings.overlap_chars, settings.by_heading,
    )
    return chunks


# ------------------------------ chunk ids ------------------------------

def build_chunk_id(relative_path: str, start_line: int, end_line: int, text: str) -> str:
    rel = str(relative_path or "").replace("\\", "/")
    a = max(1, int(start_line))
    b = max(a, int(end_line))
    return f"{rel}:{a}-{b}:{fnv1a_hex(text or '')}"


def assign_chunk_id(base: str, taken) -> str:
    """
    `taken` is any container supporting `in`. Duplicates get ':dup1', ':dup2', ...
    up to MAX_DUP_SUFFIX, after which the collision is reported instead of looping.
    """
    if base not in taken:
        return base
    for k in range(1, MAX_DUP_SUFFIX + 1):
        cand = f"{base}:dup{k}"
        if cand not in taken:
            return cand
    raise ChunkIdCollisionError(f"Too many colliding chunk ids for '{base}' (>{MAX_DUP_SUFFIX})")


def chunk_ids_for(relative_path: str, chunks: Iterable[Chunk], taken) -> List[str]:
    """Ids for one file's chunks; each assigned id is added to `taken` (a set)."""
    ids: List[str] = []
    for c in chunks:
        cid = assign_chunk_id(build_chunk_id(relative_path, c.start_line, c.end_line, c.text), taken)
        taken.add(cid)
        ids.append(cid)
    return ids
