import hashlib

from semindex.fingerprint import (
    fingerprint,
    fnv1a_hex,
    is_unchanged,
    library_key_for,
    normalize_path_for_key,
)
from semindex.store import FileRecord


def test_fingerprint_is_utf8_size_plus_sha1():
    fp = fingerprint("héllo")
    assert fp.size == 6
    assert fp.hash == hashlib.sha1("héllo".encode("utf-8")).hexdigest()


def test_fnv1a_known_values():
    assert fnv1a_hex("") == "811c9dc5"
    assert fnv1a_hex("a") == "e40c292c"
    assert len(fnv1a_hex("some longer chunk of text")) == 8


def test_unchanged_needs_both_size_and_hash():
    fp = fingerprint("content")
    assert is_unchanged(FileRecord(size=fp.size, hash=fp.hash), fp)
    assert not is_unchanged(FileRecord(size=fp.size, hash="0" * 40), fp)
    assert not is_unchanged(FileRecord(size=fp.size + 1, hash=fp.hash), fp)
    assert not is_unchanged(None, fp)


def test_path_normalization_for_keys():
    assert normalize_path_for_key("C:\\Users\\Me\\Lib\\") == "c:/users/me/lib"
    assert normalize_path_for_key("/home/me//Lib/") == "/home/me/Lib"


def test_library_key_is_stable_across_spellings():
    assert library_key_for("/data/lib") == library_key_for("/data/lib/")
    assert library_key_for("D:\\Lib") == library_key_for("d:/lib")
    assert library_key_for("/data/lib") != library_key_for("/data/other")
