# semindex/snippets.py
"""
Context windows for search hits.

A hit only knows its chunk's line range. The snippet is built from the file as it
is *now*: find the heading block around the first hit line, shrink the range if
it is already over budget, then grow it toward the block edges one line at a time,
taking the shorter neighbour first so more lines fit.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from .chunkers.markdown import Block, split_blocks, split_lines

ELLIPSIS_HEAD = "…\n"
ELLIPSIS_TAIL = "\n…"
MIN_CONTEXT_CHARS = 200
DEFAULT_CONTEXT_CHARS = 1024

_FAR = float("inf")


@dataclass(frozen=True)
class Snippet:
    snippet: str
    start_line: int         # 1-based, shown window
    end_line: int
    block_start_line: int   # 1-based, enclosing heading block
    block_end_line: int
    heading: str = ""

    @property
    def block_key(self) -> Tuple[int, int]:
        return self.block_start_line, self.block_end_line


def span_len(lines: Sequence[str], start: int, end: int) -> int:
    """Characters in lines[start..end] counting one newline per line."""
    return sum(len(lines[i]) + 1 for i in range(start, end + 1))


def find_block_by_line(blocks: Sequence[Block], line_idx: int) -> Block:
    for b in blocks:
        if b.start <= line_idx <= b.end:
            return b
    if blocks:
        return blocks[0]
    return Block(0, max(0, line_idx))


def fit_range_within_max_chars(
    lines: Sequence[str],
    block_start: int,
    block_end: int,
    start: int,
    end: int,
    max_chars: int,
) -> Tuple[int, int]:
    """0-based inclusive (start, end) inside [block_start, block_end] whose span fits max_chars when possible."""
    budget = max(MIN_CONTEXT_CHARS, int(max_chars))
    s = max(block_start, start)
    e = min(block_end, end)
    if e < s:
        e = s

    size = span_len(lines, s, e)
    # focus range alone is too long: drop the longer edge line first
    while size > budget and s < e:
        left = len(lines[s]) + 1
        right = len(lines[e]) + 1
        if right >= left:
            size -= right
            e -= 1
        else:
            size -= left
            s += 1

    while size < budget and (s > block_start or e < block_end):
        can_l = len(lines[s - 1]) + 1 if s > block_start else _FAR
        can_r = len(lines[e + 1]) + 1 if e < block_end else _FAR
        left_first = can_l <= can_r
        first, second = (can_l, can_r) if left_first else (can_r, can_l)
        if size + first <= budget:
            take_left = left_first
        elif second != _FAR and size + second <= budget:
            take_left = not left_first
        else:
            break
        if take_left:
            s -= 1
            size += can_l
        else:
            e += 1
            size += can_r
    return s, e


def build_snippet(
    lines: List[str],
    blocks: Sequence[Block],
    focus_start_line: int,
    focus_end_line: int,
    max_chars: int = DEFAULT_CONTEXT_CHARS,
) -> Snippet:
    """Focus lines are 1-based and clamped to the document."""
    if not lines:
        return Snippet("", 1, 1, 1, 1, "")
    a = max(1, int(focus_start_line or 1))
    b = max(a, int(focus_end_line or a))
    s0 = min(len(lines), a) - 1
    e0 = min(len(lines), b) - 1

    block = find_block_by_line(blocks, s0)
    bs = max(0, block.start)
    be = min(len(lines) - 1, block.end)

    s, e = fit_range_within_max_chars(lines, bs, be, s0, e0, max_chars)
    text = "\n".join(lines[s:e + 1]).strip()
    if text:
        if s > bs:
            text = ELLIPSIS_HEAD + text
        if e < be:
            text = text + ELLIPSIS_TAIL
    return Snippet(
        snippet=text,
        start_line=s + 1,
        end_line=e + 1,
        block_start_line=bs + 1,
        block_end_line=be + 1,
        heading=block.heading or "",
    )


class SourceLines:
    """Per-search cache of (lines, blocks) for files read fresh from the host."""

    def __init__(self, fs, min_heading_level: int = 2):
        self.fs = fs
        self.min_heading_level = min_heading_level
        self._cache: dict = {}

    def get(self, abs_path: str) -> Tuple[List[str], List[Block]]:
        hit = self._cache.get(abs_path)
        if hit is None:
            try:
                lines = split_lines(self.fs.read_text(abs_path))
            except OSError:
                lines = []
            if lines == [""]:
                lines = []
            hit = (lines, split_blocks(lines, self.min_heading_level))
            self._cache[abs_path] = hit
        return hit
