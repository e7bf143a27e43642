import pytest

from semindex.filters import iter_files, match_dir_prefix, should_index
from semindex.host import LibraryFS, decode_text_bytes
from semindex.settings import normalize_config

from conftest import write


def _cfg(**kw):
    return normalize_config({"enabled": True, **kw})


@pytest.mark.parametrize(
    "path,expected",
    [
        ("notes/a.md", True),
        ("notes/a.MD", True),
        ("a.txt", True),
        ("a.py", False),
        ("README", False),
        ("drafts/a.md", False),
        ("drafts2/a.md", True),
    ],
)
def test_should_index_scope(path, expected):
    assert should_index(path, _cfg(exclude_dirs=["drafts"])) is expected


def test_include_dirs_restrict_scope():
    cfg = _cfg(include_dirs=["docs"])
    assert should_index("docs/x/y.md", cfg)
    assert not should_index("other/y.md", cfg)
    assert not should_index("docs2/y.md", cfg)


def test_dir_prefix_case_folding():
    assert match_dir_prefix("Drafts/x.md", ["drafts"], case_insensitive=True)
    assert not match_dir_prefix("Drafts/x.md", ["drafts"], case_insensitive=False)


def test_walk_applies_depth_and_dir_rules(library):
    write(library, "top.md", "t")
    write(library, "a/one.md", "1")
    write(library, "a/b/two.md", "2")
    write(library, "skip/three.md", "3")
    write(library, "a/code.py", "x")

    rels = [rel for _, rel in iter_files(str(library), _cfg(max_depth=1, exclude_dirs=["skip"]))]
    assert rels == ["top.md", "a/one.md"]

    rels = [rel for _, rel in iter_files(str(library), _cfg())]
    assert set(rels) == {"top.md", "a/one.md", "a/b/two.md", "skip/three.md"}


def test_list_files_reports_stat_data(library):
    write(library, "n/x.md", "hello")
    entries = LibraryFS(library).list_files(_cfg())
    assert [(e.relative, e.size) for e in entries] == [("n/x.md", 5)]
    assert entries[0].mtime_ms > 0


def test_text_decoding_handles_boms_and_latin1():
    assert decode_text_bytes(b"\xef\xbb\xbfhi") == "hi"
    assert decode_text_bytes(b"\xff\xfe" + "hé".encode("utf-16-le")) == "hé"
    assert decode_text_bytes(b"caf\xe9") == "café"
    assert decode_text_bytes(b"") == ""


def test_atomic_write_replaces_file(tmp_path):
    fs = LibraryFS(tmp_path)
    target = tmp_path / "d" / "f.bin"
    fs.write_bytes(str(target), b"one")
    fs.write_bytes(str(target), b"two")
    assert target.read_bytes() == b"two"
    assert [p.name for p in target.parent.iterdir()] == ["f.bin"]
