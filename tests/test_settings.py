import json

import pytest

from config_home import SettingsStore
from semindex.errors import CapabilityMissingError
from semindex.settings import (
    CFG_KEY,
    PROVIDER_CUSTOM,
    PROVIDER_SHARED,
    load_config,
    normalize_config,
    save_config,
)


def test_defaults_from_nothing():
    cfg = normalize_config(None)
    assert cfg.enabled is False
    assert cfg.include_extensions == ["md", "markdown", "txt"]
    assert cfg.max_depth == 32
    assert cfg.chunk.max_chars == 512
    assert cfg.chunk.min_heading_level == 2
    assert cfg.embedding.provider == PROVIDER_SHARED
    assert cfg.embedding.model == "text-embedding-3-small"
    assert cfg.embedding.batch_size == 16
    assert cfg.search.top_k == 8
    assert cfg.search.context_max_chars == 1024


def test_normalization_is_idempotent():
    raw = {
        "enabled": "yes",
        "includeExtensions": [".MD", " txt ", "md"],
        "excludeDirs": ["./Drafts/", "drafts"],
        "chunk": {"maxChars": 50, "overlapChars": -3},
        "search": {"topK": 99, "minScore": -7},
    }
    once = normalize_config(raw)
    assert normalize_config(once) == once
    assert normalize_config(once.to_dict()) == once


@pytest.mark.parametrize(
    "section,key,value,expected",
    [
        ("search", "top_k", 500, 50),
        ("search", "top_k", 0, 1),
        ("search", "min_score", 5, 1.0),
        ("search", "min_score", -5, -1.0),
        ("search", "context_max_chars", 10, 200),
        ("search", "context_max_chars", 10**6, 20000),
        ("chunk", "max_chars", 10, 200),
        ("chunk", "min_heading_level", 9, 6),
        ("embedding", "batch_size", 0, 1),
        ("embedding", "timeout_sec", 0, 1.0),
    ],
)
def test_numeric_fields_are_clamped(section, key, value, expected):
    cfg = normalize_config({section: {key: value}})
    assert getattr(getattr(cfg, section), key) == expected


def test_garbage_numbers_fall_back_to_defaults():
    cfg = normalize_config({"max_depth": "deep", "search": {"top_k": float("nan"), "min_score": True}})
    assert cfg.max_depth == 32
    assert cfg.search.top_k == 8
    assert cfg.search.min_score == 0.0


def test_lists_are_cleaned():
    cfg = normalize_config({
        "include_extensions": [".MD", " txt ", "md", ""],
        "include_dirs": ["./Notes/", "\\notes\\", "a//b/", "  "],
    })
    assert cfg.include_extensions == ["md", "txt"]
    assert cfg.include_dirs == ["Notes", "a/b"]


def test_empty_extension_list_means_default():
    assert normalize_config({"include_extensions": []}).include_extensions == ["md", "markdown", "txt"]


@pytest.mark.parametrize("raw,expected", [("false", False), ("0", False), ("off", False), ("", False), ("yes", True), (1, True)])
def test_booleans_are_coerced(raw, expected):
    assert normalize_config({"enabled": raw}).enabled is expected


def test_cloud_sync_is_always_forced_off():
    assert normalize_config({"cloudSync": True}).cloud_sync is False
    assert normalize_config({"cloud_sync": "true"}).cloud_sync is False


def test_unknown_provider_falls_back_to_shared():
    assert normalize_config({"embedding": {"provider": "magic"}}).embedding.provider == PROVIDER_SHARED
    assert normalize_config({"embedding": {"provider": "custom"}}).embedding.provider == PROVIDER_CUSTOM


def test_save_merges_nested_sections(tmp_path):
    store = SettingsStore(tmp_path / "settings.json")
    save_config(store, "lib1", {"search": {"top_k": 3}})
    cfg = save_config(store, "lib1", {"search": {"min_score": 0.5}, "enabled": True})
    assert cfg.search.top_k == 3
    assert cfg.search.min_score == 0.5
    assert cfg.enabled is True

    raw = json.loads((tmp_path / "settings.json").read_text(encoding="utf-8"))
    assert set(raw[CFG_KEY]) == {"lib1"}
    assert load_config(store, "lib1") == cfg
    assert load_config(store, "other").enabled is False


def test_save_without_store_is_a_capability_error():
    with pytest.raises(CapabilityMissingError):
        save_config(None, "lib", {"enabled": True})
