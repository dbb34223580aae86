"""
shipwright — unit tests for hashing utilities

File: tests/unit/utils/test_hashing.py

Purpose
- Lock down canonical JSON rendering and digest helpers used by trust bundles.
"""

from __future__ import annotations

import hashlib
import hmac
import os
from typing import TYPE_CHECKING

import pytest

from shipwright.utils.hashing import (
    canonical_json,
    constant_time_equals,
    hmac_sha256_hex,
    iter_regular_files,
    sha256_bytes,
    sha256_json,
    sha256_text,
)

if TYPE_CHECKING:
    from pathlib import Path


@pytest.mark.unit
def test_canonical_json_sorts_keys_and_keeps_unicode() -> None:
    rendered = canonical_json({"b": 1, "a": {"z": "é", "y": [1, 2]}})
    assert rendered == '{"a":{"y":[1,2],"z":"é"},"b":1}'


@pytest.mark.unit
def test_sha256_json_ignores_key_order() -> None:
    assert sha256_json({"x": 1, "y": 2}) == sha256_json({"y": 2, "x": 1})
    assert sha256_json({"x": 1}) != sha256_json({"x": 2})


@pytest.mark.unit
def test_sha256_text_matches_hashlib() -> None:
    assert sha256_text("hello") == hashlib.sha256(b"hello").hexdigest()
    assert sha256_bytes(b"") == hashlib.sha256(b"").hexdigest()


@pytest.mark.unit
def test_hmac_matches_stdlib_and_rejects_empty_key() -> None:
    expected = hmac.new(b"k", b"msg", hashlib.sha256).hexdigest()
    assert hmac_sha256_hex("k", "msg") == expected
    assert hmac_sha256_hex(b"k", b"msg") == expected
    with pytest.raises(ValueError, match="must not be empty"):
        hmac_sha256_hex("", "msg")


@pytest.mark.unit
def test_constant_time_equals() -> None:
    assert constant_time_equals("abc", "abc")
    assert not constant_time_equals("abc", "abd")
    assert not constant_time_equals("abc", "ab")


@pytest.mark.unit
def test_iter_regular_files_is_sorted_and_relative(tmp_path: Path) -> None:
    (tmp_path / "b").mkdir()
    (tmp_path / "b" / "z.txt").write_text("z", encoding="utf-8")
    (tmp_path / "b" / "a.txt").write_text("a", encoding="utf-8")
    (tmp_path / "a.txt").write_text("root", encoding="utf-8")

    paths = [rel for rel, _ in iter_regular_files(tmp_path)]
    assert paths == ["a.txt", "b/a.txt", "b/z.txt"]


@pytest.mark.unit
@pytest.mark.skipif(os.name == "nt", reason="symlink creation needs privileges on Windows")
def test_iter_regular_files_skips_symlinks(tmp_path: Path) -> None:
    (tmp_path / "real.txt").write_text("x", encoding="utf-8")
    (tmp_path / "link.txt").symlink_to(tmp_path / "real.txt")

    assert [rel for rel, _ in iter_regular_files(tmp_path)] == ["real.txt"]


@pytest.mark.unit
def test_iter_regular_files_requires_directory(tmp_path: Path) -> None:
    target = tmp_path / "file.txt"
    target.write_text("x", encoding="utf-8")
    with pytest.raises(NotADirectoryError):
        list(iter_regular_files(target))
