# semindex/host.py
"""
Host file-system seam.

The engine never touches the disk directly: it asks a LibraryFS for listings,
reads and writes. LibraryFS is the local-disk implementation; anything exposing
the same method names can stand in for it (the service checks for each method
it needs before starting an operation).
"""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from loguru import logger

from .filters import iter_files, normalize_relative_path
from .fingerprint import is_windows_path


@dataclass(frozen=True)
class FileEntry:
    path: str        # absolute
    relative: str    # library-relative, forward slashes
    mtime_ms: int
    size: int


def decode_text_bytes(data: bytes) -> str:
    """
    BOM sniffing (UTF-8, UTF-16 LE/BE), else strict UTF-8, else Latin-1.
    Latin-1 maps every byte, so decoding never fails.
    """
    if not data:
        return ""
    if data.startswith(b"\xef\xbb\xbf"):
        return data[3:].decode("utf-8", errors="replace")
    if data.startswith(b"\xff\xfe"):
        return data[2:].decode("utf-16-le", errors="replace")
    if data.startswith(b"\xfe\xff"):
        return data[2:].decode("utf-16-be", errors="replace")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        logger.debug("decode_text_bytes: not valid UTF-8, falling back to latin-1 ({} bytes)", len(data))
        return data.decode("latin-1")


class LibraryFS:
    """Local-disk host for one library root."""

    def __init__(self, root: str | os.PathLike):
        self.root = str(Path(root).resolve())
        self.case_insensitive = is_windows_path(self.root) or os.name == "nt"

    # ---------- paths ----------

    def abspath(self, relative: str) -> str:
        rel = normalize_relative_path(relative)
        return os.path.join(self.root, *rel.split("/")) if rel else self.root

    def relpath(self, path: str) -> str:
        p = os.path.abspath(path)
        return normalize_relative_path(os.path.relpath(p, self.root))

    # ---------- listing ----------

    def list_files(self, cfg) -> List[FileEntry]:
        out: List[FileEntry] = []
        for abs_path, rel in iter_files(self.root, cfg, self.case_insensitive):
            try:
                st = os.stat(abs_path)
            except FileNotFoundError:
                continue
            out.append(FileEntry(path=abs_path, relative=rel, mtime_ms=int(st.st_mtime * 1000), size=int(st.st_size)))
        return out

    def stat(self, path: str) -> Optional[FileEntry]:
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return None
        return FileEntry(path=path, relative=self.relpath(path), mtime_ms=int(st.st_mtime * 1000), size=int(st.st_size))

    # ---------- reads ----------

    def exists(self, path: str) -> bool:
        return os.path.isfile(path)

    def read_bytes(self, path: str) -> bytes:
        with open(path, "rb") as f:
            return f.read()

    def read_text(self, path: str) -> str:
        return decode_text_bytes(self.read_bytes(path))

    # ---------- writes ----------

    def write_bytes(self, path: str, data: bytes) -> None:
        """Write to a temp file in the same directory, then rename over the target."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=target.name + ".", suffix=".tmp", dir=str(target.parent))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def write_text(self, path: str, text: str) -> None:
        self.write_bytes(path, text.encode("utf-8"))

    def append_text(self, path: str, text: str) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(text)
