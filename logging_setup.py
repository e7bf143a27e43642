# logging_setup.py
from __future__ import annotations

import os
import sys
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union
from loguru import logger

# -----------------------------
# Globals
# -----------------------------
_SINK_IDS: list[int] = []
_LAST_CFG = {
    "console": True,
    "log_file": None,
    "rotation": "5 MB",
    "retention": 10,  # keep last 10 files by default
    "enqueue": True,
    "backtrace": False,
    "diagnose": False,
}
# file:line at each log site, compact timestamps
_DEFAULT_FMT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "{level:<7} | "
    "{name}:{line} | "
    "{message}"
)
# human-readable per-library index log (no source locations)
_INDEX_FMT = "[{time:HH:mm:ss}] {level:<7} {extra[component]}: {message}"

_VALID_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}

INDEX_LOG_FILE = "semindex-index.log"


# -----------------------------
# Helpers
# -----------------------------
def _resolve_level(level: Optional[str]) -> str:
    """Normalize level: prefer explicit arg, else env SEMINDEX_LOG_LEVEL, else INFO."""
    val = (level or os.getenv("SEMINDEX_LOG_LEVEL") or "INFO").strip().upper()
    if val not in _VALID_LEVELS:
        aliases = {"WARN": "WARNING"}
        val = aliases.get(val, val)
    return val if val in _VALID_LEVELS else "INFO"


def _normalize_retention(value: Union[int, str]) -> Union[int, str]:
    """
    Accept:
      - int  → number of files
      - "10 files" → coerced to 10
      - duration strings (e.g., "7 days") → passed through to Loguru
    """
    if isinstance(value, str):
        m = re.match(r"^(\d+)\s*files?$", value.strip().lower())
        if m:
            return int(m.group(1))
    return value


def _coerce_log_file(path_like: Optional[Union[str, Path]]) -> Optional[str]:
    """
    None → <semindex home>/logs/semindex.log. A directory gets 'semindex.log' inside.
    Ensures the parent directory exists.
    """
    if path_like is None:
        from config_home import app_dir
        log_path = app_dir() / "logs" / "semindex.log"
    else:
        log_path = Path(path_like)
        if log_path.suffix == "":
            log_path = log_path / "semindex.log"

    log_path.parent.mkdir(parents=True, exist_ok=True)
    return str(log_path)


def _remove_existing_sinks():
    global _SINK_IDS
    try:
        for sid in _SINK_IDS:
            logger.remove(sid)
    finally:
        _SINK_IDS = []


def _reconfigure(level: str):
    """(Re)create console & file sinks based on _LAST_CFG."""
    global _SINK_IDS
    _remove_existing_sinks()

    if _LAST_CFG.get("console", True):
        _SINK_IDS.append(
            logger.add(
                sys.stderr,
                level=level,
                format=_DEFAULT_FMT,
                enqueue=_LAST_CFG.get("enqueue", True),
                backtrace=_LAST_CFG.get("backtrace", False),
                diagnose=_LAST_CFG.get("diagnose", False),
            )
        )

    if _LAST_CFG.get("log_file") is False:
        return
    _SINK_IDS.append(
        logger.add(
            _coerce_log_file(_LAST_CFG.get("log_file")),
            level=level,
            format=_DEFAULT_FMT,
            rotation=_LAST_CFG.get("rotation", "5 MB"),
            retention=_normalize_retention(_LAST_CFG.get("retention", 10)),
            encoding="utf-8",
            enqueue=_LAST_CFG.get("enqueue", True),
            backtrace=_LAST_CFG.get("backtrace", False),
            diagnose=_LAST_CFG.get("diagnose", False),
        )
    )


# -----------------------------
# Public API
# -----------------------------
def configure_logging(
    level: Optional[str] = None,
    *,
    console: bool = True,
    log_file: Optional[Union[str, Path, bool]] = None,
    rotation: str = "5 MB",
    retention: Union[int, str] = 10,
    enqueue: bool = True,
    backtrace: bool = False,
    diagnose: bool = False,
) -> None:
    """
    Configure Loguru once at app start.

    Args:
        level: "DEBUG"/"INFO"/"WARNING"/... (env fallback: SEMINDEX_LOG_LEVEL)
        console: also log to stderr
        log_file: file path or directory (directory -> 'semindex.log' inside);
                  False disables the rotating file sink
        rotation: Loguru rotation policy (e.g., "5 MB", "1 day")
        retention: number of files (int) or duration string (e.g., "7 days")
        enqueue: use multiprocessing-safe queue
        backtrace/diagnose: enable Loguru's rich tracebacks (dev only)
    """
    logger.remove()  # drop Loguru's default stderr handler
    _LAST_CFG.update(
        dict(
            console=console,
            log_file=log_file,
            rotation=rotation,
            retention=retention,
            enqueue=enqueue,
            backtrace=backtrace,
            diagnose=diagnose,
        )
    )
    _reconfigure(_resolve_level(level))


@contextmanager
def index_log_sink(
    path: Union[str, Path],
    library: str,
    mode: str = "a",
    level: str = "DEBUG",
) -> Iterator[str]:
    """
    Mirror the log records bound to `library` (logger.bind(library=...)) into the
    library's own index log while the block runs.

    mode "w" starts the file over (full rebuild, clear); "a" appends (incremental).
    """
    if mode not in ("a", "w"):
        raise ValueError(f"index log mode must be 'a' or 'w', got {mode!r}")
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    def _only_library(record) -> bool:
        extra = record["extra"]
        return extra.get("library") == library and "component" in extra

    sid = logger.add(
        str(p),
        level=level,
        format=_INDEX_FMT,
        filter=_only_library,
        mode=mode,
        encoding="utf-8",
        enqueue=False,
        catch=True,
    )
    try:
        yield str(p)
    finally:
        logger.remove(sid)
