"""Tests for package index providers."""

import json
import os
from unittest.mock import patch

import pytest

from descriptor.models import LocalSource
from errors import SourceNotFound
from registry.index import HttpIndex, InMemoryIndex, LocalIndex
from versioning.parser import parse_version

from conftest import descriptor_text


def _write_index(root, packages, manifest=False):
    for name, versions in packages.items():
        os.makedirs(os.path.join(root, name), exist_ok=True)
        for version, text in versions.items():
            with open(os.path.join(root, name, f"{name}-{version}.toml"), "w") as fh:
                fh.write(text)
    if manifest:
        with open(os.path.join(root, "manifest.json"), "w") as fh:
            json.dump({"packages": {n: sorted(v) for n, v in packages.items()}}, fh)


class TestInMemoryIndex:
    """Dictionary-backed index."""

    def test_versions_sorted_highest_first(self):
        index = InMemoryIndex({"pkg": {v: descriptor_text("pkg", v) for v in ("1.0", "1.10", "1.2")}})
        assert [str(v) for v in index.available_versions("pkg")] == ["1.10.0", "1.2.0", "1.0.0"]

    def test_unknown_package_has_no_versions(self):
        assert InMemoryIndex({}).available_versions("ghost") == []

    def test_unparsable_versions_are_skipped(self):
        index = InMemoryIndex({"pkg": {"scm": "", "1.0": descriptor_text("pkg", "1.0")}})
        assert index.available_versions("pkg") == [parse_version("1.0")]

    def test_descriptor_by_parsed_version(self):
        index = InMemoryIndex({"Pkg": {"1.0-1": descriptor_text("pkg", "1.0-1")}})
        version = index.available_versions("PKG")[0]
        assert index.descriptor("pkg", version).version == parse_version("1.0.0-1")


class TestLocalIndex:
    """Directory-backed index."""

    def test_versions_from_file_names(self, tmp_path):
        _write_index(str(tmp_path), {"pkg": {"1.0": descriptor_text("pkg", "1.0"), "2.0": descriptor_text("pkg", "2.0")}})
        index = LocalIndex(str(tmp_path))
        assert [str(v) for v in index.available_versions("pkg")] == ["2.0.0", "1.0.0"]
        assert index.available_versions("other") == []

    def test_versions_from_manifest(self, tmp_path):
        _write_index(str(tmp_path), {"pkg": {"1.0": descriptor_text("pkg", "1.0")}}, manifest=True)
        index = LocalIndex(str(tmp_path))
        assert [str(v) for v in index.available_versions("pkg")] == ["1.0.0"]

    def test_relative_source_paths_resolve_against_package_dir(self, tmp_path):
        _write_index(str(tmp_path), {"pkg": {"1.0": descriptor_text("pkg", "1.0", source='[source]\npath = "src"')}})
        index = LocalIndex(str(tmp_path))
        descriptor = index.descriptor("pkg", parse_version("1.0"))
        assert descriptor.source == LocalSource(str(tmp_path / "pkg" / "src"))

    def test_missing_descriptor(self, tmp_path):
        _write_index(str(tmp_path), {"pkg": {"1.0": descriptor_text("pkg", "1.0")}}, manifest=True)
        with open(tmp_path / "manifest.json", "w") as fh:
            json.dump({"packages": {"pkg": ["1.0", "9.0"]}}, fh)
        index = LocalIndex(str(tmp_path))
        with pytest.raises(SourceNotFound):
            index.descriptor("pkg", parse_version("9.0"))


class TestHttpIndex:
    """HTTP-backed index with the transport patched out."""

    @patch('registry.index.get_text')
    def test_manifest_and_descriptor(self, mock_get_text):
        pages = {
            "https://index.invalid/manifest.json": json.dumps({"packages": {"pkg": ["1.0"]}}),
            "https://index.invalid/pkg/pkg-1.0.toml": descriptor_text("pkg", "1.0"),
        }
        mock_get_text.side_effect = lambda url: pages[url]
        index = HttpIndex("https://index.invalid")

        versions = index.available_versions("pkg")
        descriptor = index.descriptor("pkg", versions[0])
        index.available_versions("pkg")

        assert descriptor.name == "pkg"
        assert mock_get_text.call_count == 2

    @patch('registry.index.get_text')
    def test_manifest_must_be_json_object(self, mock_get_text):
        mock_get_text.return_value = "[1, 2]"
        with pytest.raises(SourceNotFound):
            HttpIndex("https://index.invalid/").available_versions("pkg")
