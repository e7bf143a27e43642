# tests/conftest.py
from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from config_home import SettingsStore
from semindex.embedder import EmbeddingClient
from semindex.fingerprint import fnv1a_hex
from semindex.host import LibraryFS
from semindex.service import IndexService


class FakeEmbedder(EmbeddingClient):
    """
    Offline provider: deterministic vectors per text (seeded by the text hash),
    optional fixed vectors, and knobs to drop vectors or fail requests.
    """

    def __init__(self, dims: int = 8, fixed=None, short_by: int = 0, batch_size: int = 4):
        super().__init__(base_url="http://embed.test/v1", model="fake-embed", batch_size=batch_size)
        self.fake_dims = dims
        self.fixed = dict(fixed or {})
        self.short_by = short_by
        self.fail = None
        self.inputs = []

    def vector_for(self, text: str):
        if text in self.fixed:
            return [float(x) for x in self.fixed[text]]
        rng = np.random.default_rng(int(fnv1a_hex(text), 16))
        return rng.standard_normal(self.fake_dims).astype(np.float32).tolist()

    def request_batch(self, texts, input_type=None):
        self.calls += 1
        if self.fail is not None:
            raise self.fail
        self.inputs.append((input_type, list(texts)))
        out = [self.vector_for(t) for t in texts]
        return out[: len(out) - self.short_by] if self.short_by else out


def write(root: Path, rel: str, text: str) -> Path:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8")
    return p


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    monkeypatch.setenv("SEMINDEX_HOME", str(home))
    for var in ("SEMINDEX_EMBED_BASE_URL", "SEMINDEX_EMBED_API_KEY", "OPENAI_BASE_URL", "OPENAI_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return home


@pytest.fixture
def library(tmp_path) -> Path:
    root = tmp_path / "lib"
    root.mkdir()
    return root


@pytest.fixture
def make_service(tmp_path):
    def _make(root: Path = None, embedder: FakeEmbedder = None, enabled: bool = True, **extra):
        root = root or (tmp_path / "lib")
        root.mkdir(parents=True, exist_ok=True)
        emb = embedder or FakeEmbedder()
        svc = IndexService(
            LibraryFS(root),
            SettingsStore(tmp_path / "settings.json"),
            data_dir=str(tmp_path / "data" / root.name),
            embedder_factory=lambda _settings: emb,
        )
        patch = {
            "enabled": enabled,
            "embedding": {"provider": "custom", "base_url": "http://embed.test/v1", "model": "fake-embed"},
        }
        patch.update(extra)
        svc.set_config(patch)
        svc.fake = emb
        return svc

    return _make
