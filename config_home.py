# config_home.py: semindex home, per-library data dirs and the settings store
from __future__ import annotations

import os
import json
import threading
from pathlib import Path
from typing import Any, Optional
from loguru import logger

# ---------- App home ----------

def _resolve_home() -> Path:
    env = os.getenv("SEMINDEX_HOME", "").strip()
    base = Path(os.path.expanduser(env)) if env else (Path.home() / ".semindex")
    try:
        base.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("Failed to create semindex home at '{}': {}", str(base), e)
        base = Path.cwd() / ".semindex"
        base.mkdir(parents=True, exist_ok=True)
    return base


def app_dir() -> Path:
    """Resolved on every call so SEMINDEX_HOME can change between runs (and tests)."""
    return _resolve_home()


def settings_path() -> Path:
    return app_dir() / "settings.json"


def env_path() -> Path:
    return app_dir() / ".env"


def library_data_dir(library_key: str) -> Path:
    """
    Index files for one library live in <home>/plugin-data/<libraryKey>/.
    The key is a hash of the library root, so two libraries never share files.
    """
    p = app_dir() / "plugin-data" / (library_key or "default")
    p.mkdir(parents=True, exist_ok=True)
    return p

# ---------- helpers ----------

def _read_json(p: Path) -> dict:
    if not p.exists():
        return {}
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Failed to read json '{}': {}", str(p), e)
        return {}
    return data if isinstance(data, dict) else {}

def _write_json(p: Path, d: dict) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(p.name + ".tmp")
    tmp.write_text(json.dumps(d, indent=2, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp, p)


# ---------- Settings store ----------

class SettingsStore:
    """
    Tiny key-value store backed by one JSON file.

    Values must be JSON-serializable. The index engine keeps its per-library
    configuration under a single key (a map libraryKey -> config), so every
    library gets its own namespace inside the same file.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else settings_path()
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return _read_json(self.path).get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = _read_json(self.path)
            data[key] = value
            _write_json(self.path, data)
        logger.debug("SettingsStore.set: key='{}' path='{}'", key, str(self.path))


__all__ = [
    "app_dir",
    "settings_path",
    "env_path",
    "library_data_dir",
    "SettingsStore",
]
