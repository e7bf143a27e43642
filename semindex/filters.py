# semindex/filters.py
from __future__ import annotations

import os
from typing import Iterable, Iterator, List, Tuple
from loguru import logger

__all__ = ["normalize_relative_path", "match_dir_prefix", "should_index", "iter_files"]


def normalize_relative_path(p: str) -> str:
    return str(p or "").replace("\\", "/").lstrip("/")


def match_dir_prefix(relative_path: str, prefixes: Iterable[str], case_insensitive: bool = False) -> bool:
    """True when `relative_path` is one of the prefixes or lies below one."""
    rel = normalize_relative_path(relative_path).rstrip("/")
    if case_insensitive:
        rel = rel.lower()
    for raw in prefixes or []:
        p = str(raw).lower() if case_insensitive else str(raw)
        if not p:
            continue
        if rel == p or rel.startswith(p + "/"):
            return True
    return False


def should_index(path: str, cfg, case_insensitive: bool = False) -> bool:
    """Scope check on a library-relative path: extension allow-list, exclude dirs, include dirs."""
    p = normalize_relative_path(path)
    if not p:
        return False

    name = p.rsplit("/", 1)[-1]
    ext = name.rsplit(".", 1)[-1].lower() if "." in name else ""
    allowed = {e.lower() for e in (cfg.include_extensions or [])}
    if allowed and ext not in allowed:
        logger.trace("filters: skip (unsupported ext='{}') '{}'", ext, p)
        return False

    if match_dir_prefix(p, cfg.exclude_dirs, case_insensitive):
        logger.trace("filters: skip (exclude_dirs) '{}'", p)
        return False

    if cfg.include_dirs and not match_dir_prefix(p, cfg.include_dirs, case_insensitive):
        logger.trace("filters: skip (outside include_dirs) '{}'", p)
        return False

    return True


def _could_contain_included(rel_dir: str, include_dirs: List[str], case_insensitive: bool) -> bool:
    """A directory is worth descending into if it is inside, or an ancestor of, an include prefix."""
    if not include_dirs:
        return True
    d = rel_dir.lower() if case_insensitive else rel_dir
    for raw in include_dirs:
        p = raw.lower() if case_insensitive else raw
        if d == p or d.startswith(p + "/") or p.startswith(d + "/"):
            return True
    return False


def iter_files(root: str, cfg, case_insensitive: bool = False) -> Iterator[Tuple[str, str]]:
    """
    Walk `root` and yield (absolute_path, relative_path) for files accepted by should_index().
    Files directly under root have depth 0; directories deeper than cfg.max_depth are pruned.
    """
    logger.info("filters.iter_files: walking root='{}'", root)
    count = 0
    root = os.path.abspath(root)
    for dirpath, dirs, files in os.walk(root):
        rel_dir = normalize_relative_path(os.path.relpath(dirpath, root))
        if rel_dir == ".":
            rel_dir = ""
        depth = rel_dir.count("/") + 1 if rel_dir else 0

        keep = []
        for d in sorted(dirs):
            child = f"{rel_dir}/{d}" if rel_dir else d
            if depth + 1 > cfg.max_depth:
                continue
            if match_dir_prefix(child, cfg.exclude_dirs, case_insensitive):
                continue
            if not _could_contain_included(child, cfg.include_dirs, case_insensitive):
                continue
            keep.append(d)
        # prune in-place so os.walk doesn't descend
        dirs[:] = keep

        for f in sorted(files):
            rel = f"{rel_dir}/{f}" if rel_dir else f
            if should_index(rel, cfg, case_insensitive):
                count += 1
                yield os.path.join(dirpath, f), rel
    logger.info("filters.iter_files: yielded {} file(s)", count)
