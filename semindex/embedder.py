# semindex/embedder.py
# OpenAI-compatible embedding client for semindex.
# Rules:
# - POST {base_url}/embeddings with {"model", "input": [...]} in fixed-size batches.
# - "input_type" (query|document) is only sent to providers known to accept it (Voyage).
# - One vector per input, in order; the first vector fixes the dimensionality and
#   every later vector (any batch, any session against the same store) must match.
# - Every request has a timeout; a timeout is its own, retryable error.

from __future__ import annotations

import os
import re
import threading
import requests
from dotenv import load_dotenv
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from loguru import logger

from .errors import (
    ConfigError,
    DimensionMismatchError,
    EmbeddingCancelledError,
    EmbeddingCountMismatchError,
    EmbeddingHTTPError,
    EmbeddingRequestError,
    EmbeddingResponseError,
    EmbeddingTimeoutError,
)
from .settings import PROVIDER_CUSTOM

DEFAULT_BATCH_SIZE = 16
DEFAULT_TIMEOUT_SEC = 60.0
INPUT_TYPES = ("query", "document")

_VOYAGE_RX = re.compile(r"voyageai\.com", re.I)


# --------------------------- small helpers ---------------------------

def _load_env() -> None:
    """Load .env from the app home and CWD without overriding existing env vars."""
    from config_home import env_path

    for p in (env_path(), Path.cwd() / ".env"):
        if p.exists():
            load_dotenv(p, override=False)
            logger.debug("embedder: loaded env from '{}'", str(p))


def is_voyage_base_url(base_url: str) -> bool:
    return bool(_VOYAGE_RX.search(base_url or ""))


def embeddings_url(base_url: str) -> str:
    base = (base_url or "").strip().rstrip("/")
    if not base:
        raise ConfigError("Embedding base URL is empty")
    if base.endswith("/embeddings"):
        return base
    if is_voyage_base_url(base) and not base.lower().endswith("/v1"):
        base += "/v1"
    return base + "/embeddings"


def resolve_connection(emb_cfg) -> Tuple[str, str]:
    """
    (base_url, api_key) for an EmbeddingSettings.
      - provider 'custom': taken from the config itself.
      - provider 'shared': taken from SEMINDEX_EMBED_BASE_URL / OPENAI_BASE_URL and
        SEMINDEX_EMBED_API_KEY / OPENAI_API_KEY (after loading .env files).
    """
    if emb_cfg.provider == PROVIDER_CUSTOM:
        if not emb_cfg.base_url:
            raise ConfigError("Embedding base URL is empty (custom provider)")
        return emb_cfg.base_url, emb_cfg.api_key

    _load_env()
    base_url = (os.getenv("SEMINDEX_EMBED_BASE_URL") or os.getenv("OPENAI_BASE_URL") or "").strip()
    api_key = (os.getenv("SEMINDEX_EMBED_API_KEY") or os.getenv("OPENAI_API_KEY") or "").strip()
    if not base_url:
        raise ConfigError(
            "Shared embedding connection is not configured: set SEMINDEX_EMBED_BASE_URL "
            "(or OPENAI_BASE_URL) in the environment or .env, or switch to the custom provider"
        )
    logger.debug("embedder: shared connection base_url='{}' key_set={}", base_url, bool(api_key))
    return base_url, api_key


# ----------------------------- client -----------------------------

class EmbeddingClient:
    """
    Batched embedding calls with count and dimensionality checks.

    `dims` starts at 0 and is fixed by the first vector received, or seeded from an
    existing store with expect_dims(). `calls` counts HTTP requests actually made.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str = "",
        batch_size: int = DEFAULT_BATCH_SIZE,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or "").strip()
        self.model = (model or "").strip()
        self.api_key = (api_key or "").strip()
        self.batch_size = max(1, int(batch_size))
        self.timeout_sec = max(1.0, float(timeout_sec))
        self.session = session or requests.Session()
        self.dims = 0
        self.calls = 0
        self._cancel = threading.Event()

    @classmethod
    def from_settings(cls, emb_cfg, session: Optional[requests.Session] = None) -> "EmbeddingClient":
        base_url, api_key = resolve_connection(emb_cfg)
        return cls(
            base_url=base_url,
            model=emb_cfg.model,
            api_key=api_key,
            batch_size=emb_cfg.batch_size,
            timeout_sec=emb_cfg.timeout_sec,
            session=session,
        )

    # ---------- knobs ----------

    @property
    def url(self) -> str:
        return embeddings_url(self.base_url)

    @property
    def supports_input_type(self) -> bool:
        return is_voyage_base_url(self.base_url)

    def expect_dims(self, dims: int) -> None:
        """Pin the dimensionality of an existing, non-empty store."""
        if dims:
            self.dims = int(dims)

    def cancel(self) -> None:
        """Abort before the next batch; the in-flight request is bounded by the timeout."""
        self._cancel.set()

    def resume(self) -> None:
        self._cancel.clear()

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept-Encoding": "identity",
            "User-Agent": "semindex-embedder/1.0",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    # ---------- HTTP ----------

    def request_batch(self, texts: Sequence[str], input_type: Optional[str] = None) -> List[List[float]]:
        """One POST; returns the raw vectors in response order (count/dims checked by embed())."""
        if not self.model:
            raise ConfigError("Embedding model is empty")
        body: Dict[str, object] = {"model": self.model, "input": list(texts)}
        if input_type in INPUT_TYPES and self.supports_input_type:
            body["input_type"] = input_type

        url = self.url
        logger.debug("embedder: POST '{}' size={} input_type={}", url, len(texts), body.get("input_type"))
        self.calls += 1
        try:
            resp = self.session.post(url, headers=self._headers(), json=body, timeout=self.timeout_sec)
        except requests.Timeout as e:
            logger.warning("embedder: request timed out after {}s", self.timeout_sec)
            raise EmbeddingTimeoutError(f"Embedding request timed out after {self.timeout_sec:g}s: {e}") from e
        except requests.RequestException as e:
            logger.warning("embedder: request failed: {}", e)
            raise EmbeddingRequestError(f"Embedding request failed: {e}") from e

        if not (200 <= resp.status_code < 300):
            text = ""
            try:
                text = (resp.text or "")[:300]
            except (UnicodeDecodeError, requests.RequestException):
                text = ""
            logger.error("embedder: HTTP {} {}", resp.status_code, text)
            raise EmbeddingHTTPError(resp.status_code, text)

        try:
            data = resp.json()
        except ValueError as e:
            raise EmbeddingResponseError("Embedding endpoint returned invalid JSON") from e
        rows = data.get("data") if isinstance(data, dict) else None
        if not isinstance(rows, list) or not rows:
            logger.error("embedder: unexpected response schema (keys={})",
                         list(data.keys()) if isinstance(data, dict) else type(data).__name__)
            raise EmbeddingResponseError("Embedding endpoint returned no data")

        out: List[List[float]] = []
        for row in rows:
            emb = row.get("embedding") if isinstance(row, dict) else None
            if not isinstance(emb, list) or not emb:
                raise EmbeddingResponseError("Embedding response row has no embedding")
            try:
                out.append([float(x) for x in emb])
            except (TypeError, ValueError) as e:
                raise EmbeddingResponseError("Embedding response contains non-numeric values") from e
        return out

    # ---------- public API ----------

    def embed(
        self,
        texts: Sequence[str],
        input_type: Optional[str] = "document",
        on_batch: Optional[Callable[[int, int, int], None]] = None,
    ) -> List[List[float]]:
        """
        Embed `texts` in batches of `batch_size`, preserving order.
        on_batch(batches_done, batches_total, items_done) runs after every batch.
        Any failure fails the whole call; nothing partial is returned.
        """
        items = list(texts)
        if not items:
            return []
        total = (len(items) + self.batch_size - 1) // self.batch_size
        out: List[List[float]] = []
        for n, i in enumerate(range(0, len(items), self.batch_size), start=1):
            if self._cancel.is_set():
                raise EmbeddingCancelledError("Embedding cancelled")
            batch = items[i:i + self.batch_size]
            vecs = self.request_batch(batch, input_type)
            if len(vecs) != len(batch):
                raise EmbeddingCountMismatchError(len(vecs), len(batch))
            for v in vecs:
                if not self.dims:
                    self.dims = len(v)
                    logger.debug("embedder: dims fixed at {}", self.dims)
                if len(v) != self.dims:
                    raise DimensionMismatchError(len(v), self.dims)
            out.extend(vecs)
            if on_batch is not None:
                on_batch(n, total, min(i + len(batch), len(items)))
        return out

    def embed_query(self, text: str) -> List[float]:
        vecs = self.embed([text], input_type="query")
        return vecs[0]
