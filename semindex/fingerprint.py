# semindex/fingerprint.py
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Fingerprint:
    size: int
    hash: str


def fnv1a_hex(s: str) -> str:
    """32-bit FNV-1a over the UTF-16 code units of `s`, as 8 hex chars."""
    h = 0x811C9DC5
    data = s.encode("utf-16-le", "surrogatepass")
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * 0x01000193) & 0xFFFFFFFF
    return f"{h:08x}"


def content_hash(s: str) -> str:
    """SHA-1 hex when the interpreter allows it (FIPS builds may not), else FNV-1a."""
    try:
        return hashlib.sha1(s.encode("utf-8", "surrogatepass"), usedforsecurity=False).hexdigest()
    except ValueError:
        return fnv1a_hex(s)


def fingerprint(text: str) -> Fingerprint:
    """Change-detection identity only: not a security or cross-file uniqueness guarantee."""
    text = text or ""
    return Fingerprint(size=len(text.encode("utf-8", "surrogatepass")), hash=content_hash(text))


def is_unchanged(record, fp: Fingerprint) -> bool:
    """`record` is a FileRecord (or None); unchanged iff both size and hash match."""
    if record is None:
        return False
    return record.size == fp.size and bool(record.hash) and record.hash == fp.hash


def normalize_path_for_key(root: str, windows: Optional[bool] = None) -> str:
    raw = str(root or "").strip()
    if windows is None:
        windows = is_windows_path(raw)
    out = raw.rstrip("/\\").replace("\\", "/")
    while "//" in out:
        out = out.replace("//", "/")
    return out.lower() if windows else out


def is_windows_path(p: str) -> bool:
    s = str(p or "")
    return "\\" in s or (len(s) >= 3 and s[0].isalpha() and s[1] == ":" and s[2] in "/\\")


def library_key_for(root: str) -> str:
    return content_hash(normalize_path_for_key(root))
