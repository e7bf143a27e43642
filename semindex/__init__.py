# semindex/__init__.py

__version__ = "0.1.0"

from .errors import SemIndexError
from .host import LibraryFS
from .retriever import SearchHit
from .service import BusyLock, IndexService
from .settings import IndexConfig, normalize_config
from .watcher import LibraryWatcher, TaskRunner

__all__ = [
    "__version__",
    "BusyLock",
    "IndexConfig",
    "IndexService",
    "LibraryFS",
    "LibraryWatcher",
    "SearchHit",
    "SemIndexError",
    "TaskRunner",
    "normalize_config",
]
