"""Tests for content hashing."""

import hashlib
import os

import pytest

from common import integrity


class TestNormalize:
    """Declared hashes in every accepted form normalize to SRI."""

    def test_hex_forms(self):
        hex_digest = hashlib.sha256(b"abc").hexdigest()
        sri = integrity.hash_bytes(b"abc")
        assert integrity.normalize(hex_digest) == sri
        assert integrity.normalize(f"sha256:{hex_digest}") == sri
        assert integrity.normalize(sri) == sri

    @pytest.mark.parametrize("value", ["md5-abc", "sha256-not*base64", "sha256-YWJj", "1234"])
    def test_rejects_malformed(self, value):
        with pytest.raises(ValueError):
            integrity.normalize(value)

    def test_matches_across_forms(self):
        hex_digest = hashlib.sha256(b"payload").hexdigest()
        assert integrity.matches(hex_digest, integrity.hash_bytes(b"payload"))
        assert not integrity.matches(hex_digest, integrity.hash_bytes(b"other"))


class TestHashTree:
    """Directory hashes are canonical."""

    def _tree(self, root, files):
        for rel, content in files.items():
            path = os.path.join(root, rel)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w") as fh:
                fh.write(content)

    def test_independent_of_creation_order(self, tmp_path):
        a, b = tmp_path / "a", tmp_path / "b"
        self._tree(str(a), {"x.lua": "1", "sub/y.lua": "2"})
        self._tree(str(b), {"sub/y.lua": "2", "x.lua": "1"})
        assert integrity.hash_tree(str(a)) == integrity.hash_tree(str(b))

    def test_content_and_names_matter(self, tmp_path):
        a, b, c = tmp_path / "a", tmp_path / "b", tmp_path / "c"
        self._tree(str(a), {"x.lua": "1"})
        self._tree(str(b), {"x.lua": "2"})
        self._tree(str(c), {"z.lua": "1"})
        assert len({integrity.hash_tree(str(p)) for p in (a, b, c)}) == 3

    def test_vcs_directories_are_ignored(self, tmp_path):
        a, b = tmp_path / "a", tmp_path / "b"
        self._tree(str(a), {"x.lua": "1"})
        self._tree(str(b), {"x.lua": "1", ".git/HEAD": "ref"})
        assert integrity.hash_tree(str(a)) == integrity.hash_tree(str(b))

    def test_executable_bit_matters(self, tmp_path):
        a, b = tmp_path / "a", tmp_path / "b"
        self._tree(str(a), {"run": "#!/bin/sh"})
        self._tree(str(b), {"run": "#!/bin/sh"})
        os.chmod(b / "run", 0o755)
        os.chmod(a / "run", 0o644)
        assert integrity.hash_tree(str(a)) != integrity.hash_tree(str(b))
