# semindex/errors.py
from __future__ import annotations


class SemIndexError(RuntimeError):
    """Base class for every failure raised by the index engine."""


class ConfigError(SemIndexError):
    pass


class CapabilityMissingError(SemIndexError):
    """The host file system lacks a primitive the operation needs."""

    def __init__(self, capability: str):
        self.capability = capability
        super().__init__(f"Host is too old: missing capability '{capability}'")


class BusyError(SemIndexError):
    def __init__(self, holder: str = ""):
        self.holder = holder
        msg = "Another index operation is running, try again later"
        if holder:
            msg += f" (running: {holder})"
        super().__init__(msg)


class IndexDisabledError(SemIndexError):
    def __init__(self):
        super().__init__("Indexing is disabled for this library; enable it in the settings first")


class SchemaMismatchError(SemIndexError):
    def __init__(self, found, expected: int):
        self.found = found
        self.expected = expected
        super().__init__(
            f"Index schema version {found!r} is not supported (expected {expected}); please rebuild the index"
        )


class ModelMismatchError(SemIndexError):
    def __init__(self, found: str, expected: str):
        self.found = found
        self.expected = expected
        super().__init__(
            f"Index was built with embedding model '{found}' but '{expected}' is configured; please rebuild the index"
        )


class DimensionMismatchError(SemIndexError):
    def __init__(self, found: int, expected: int, where: str = "embedding"):
        self.found = found
        self.expected = expected
        super().__init__(
            f"{where} dimension {found} does not match index dimension {expected}; please rebuild the index"
        )


class StorageCorruptionError(SemIndexError):
    """Vector file and meta disagree; the caller must fall back to a full rebuild."""


class ChunkIdCollisionError(SemIndexError):
    pass


class IndexNotFoundError(SemIndexError):
    pass


# ----------------------------- embedding errors -----------------------------

class EmbeddingError(SemIndexError):
    retryable = False


class EmbeddingTimeoutError(EmbeddingError):
    retryable = True


class EmbeddingCancelledError(EmbeddingError):
    retryable = True


class EmbeddingRequestError(EmbeddingError):
    retryable = True


class EmbeddingHTTPError(EmbeddingError):
    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        msg = f"Embedding call failed: HTTP {status}"
        if body:
            msg += f" {body}"
        super().__init__(msg)


class EmbeddingResponseError(EmbeddingError):
    pass


class EmbeddingCountMismatchError(EmbeddingError):
    def __init__(self, got: int, expected: int):
        self.got = got
        self.expected = expected
        super().__init__(f"Embedding count mismatch: got {got} vector(s) for {expected} input(s)")
