import pytest

from semindex.chunkers.markdown import (
    MAX_DUP_SUFFIX,
    assign_chunk_id,
    build_chunk_id,
    chunk_ids_for,
    chunk_text,
    split_blocks,
    split_lines,
)
from semindex.errors import ChunkIdCollisionError
from semindex.settings import ChunkSettings


def _settings(**kw):
    base = dict(max_chars=512, overlap_chars=0, by_heading=True, min_heading_level=2)
    base.update(kw)
    return ChunkSettings(**base)


def test_level_one_heading_does_not_split_at_min_level_two():
    chunks = chunk_text("# A\n\npara1\n\n## B\n\npara2\n", _settings())
    assert [(c.start_line, c.end_line, c.heading) for c in chunks] == [(1, 3, ""), (5, 7, "B")]
    assert chunks[0].text == "# A\n\npara1"
    assert chunks[1].text == "## B\n\npara2"


def test_min_level_one_splits_on_h1():
    blocks = split_blocks(split_lines("# A\ntext\n# B\nmore"), min_level=1)
    assert [(b.start, b.end, b.heading) for b in blocks] == [(0, 1, "A"), (2, 3, "B")]


def test_headings_inside_fences_are_ignored():
    text = "## Real\n\n```\n## Not a heading\n```\n\ntext\n"
    chunks = chunk_text(text, _settings())
    assert {c.heading for c in chunks} == {"Real"}


def test_closing_hashes_are_stripped():
    chunks = chunk_text("## Title ##\n\nbody", _settings())
    assert chunks[0].heading == "Title"


@pytest.mark.parametrize("text", ["", "\n\n   \n", "\t\n"])
def test_blank_documents_have_no_chunks(text):
    assert chunk_text(text, _settings()) == []


def _doc():
    paras = []
    for i in range(30):
        paras.append(f"Paragraph {i}" + " word" * (i * 7 % 40))
    # one paragraph far over the budget, made of many lines
    paras.insert(10, "\n".join(f"long line {j} " + "x" * 90 for j in range(20)))
    return "\n\n".join(paras) + "\n"


def test_chunking_is_total_without_headings():
    text = _doc()
    lines = split_lines(text)
    chunks = chunk_text(text, _settings(by_heading=False))

    covered = {}
    for c in chunks:
        for ln in range(c.start_line, c.end_line + 1):
            covered[ln] = covered.get(ln, 0) + 1
    for i, line in enumerate(lines, start=1):
        if line.strip():
            assert covered.get(i) == 1, f"line {i} covered {covered.get(i, 0)} times"

    starts = [c.start_line for c in chunks]
    assert starts == sorted(set(starts))
    assert all(len(c.text) <= 512 for c in chunks)
    assert all(c.text == c.text.strip() and c.text for c in chunks)


def test_forward_progress_with_overlap_larger_than_lines():
    text = "\n".join("y" * 300 for _ in range(12))
    chunks = chunk_text(text, _settings(by_heading=False, overlap_chars=5000))
    starts = [c.start_line for c in chunks]
    assert all(b > a for a, b in zip(starts, starts[1:]))
    assert chunks[-1].end_line == 12


def test_single_enormous_line_terminates():
    chunks = chunk_text("z" * 20000, _settings(overlap_chars=1000))
    assert len(chunks) == 1
    assert (chunks[0].start_line, chunks[0].end_line) == (1, 1)


def test_overlap_repeats_trailing_lines():
    text = "\n".join(f"line {i:02d} " + "a" * 60 for i in range(20))
    chunks = chunk_text(text, _settings(by_heading=False, max_chars=200, overlap_chars=60))
    assert len(chunks) > 2
    for a, b in zip(chunks, chunks[1:]):
        assert b.start_line == a.end_line


def test_ids_are_deterministic_and_content_sensitive():
    text = "## S\n\nalpha beta\n\ngamma\n"
    a = chunk_text(text, _settings())
    b = chunk_text(text, _settings())
    ids_a = chunk_ids_for("notes/x.md", a, set())
    ids_b = chunk_ids_for("notes/x.md", b, set())
    assert ids_a == ids_b
    assert ids_a[0].startswith("notes/x.md:1-5:")

    changed = chunk_ids_for("notes/x.md", chunk_text(text.replace("beta", "bета"), _settings()), set())
    assert changed != ids_a


def test_build_chunk_id_shape():
    cid = build_chunk_id("a\\b.md", 3, 7, "hello")
    rel, span, digest = cid.split(":")
    assert (rel, span, len(digest)) == ("a/b.md", "3-7", 8)


def test_duplicate_ids_get_suffixes_up_to_a_cap():
    base = build_chunk_id("a.md", 1, 1, "same")
    assert assign_chunk_id(base, set()) == base
    assert assign_chunk_id(base, {base}) == base + ":dup1"
    assert assign_chunk_id(base, {base, base + ":dup1"}) == base + ":dup2"

    taken = {base} | {f"{base}:dup{k}" for k in range(1, MAX_DUP_SUFFIX + 1)}
    with pytest.raises(ChunkIdCollisionError):
        assign_chunk_id(base, taken)
