"""Tests for the descriptor parser."""

import os

import pytest

from descriptor import (
    ArchiveSource,
    BuildBackend,
    GitSource,
    LocalSource,
    parse,
    parse_file,
)
from errors import ParseError
from versioning.models import DependencyKind
from versioning.parser import parse_version

FULL = """\
name = "LuaSocket"
version = "3.1.0-1"
summary = "Network support"
license = "MIT"
supported_runtime_versions = ["5.1", "5.4"]
platforms = ["unix"]
dependencies = ["lua-compat ~> 0.10", { name = "winsock", platforms = ["win32"] }]
build_dependencies = ["luarocks-build-extra >= 1.0"]
test_dependencies = [{ name = "busted", constraint = ">= 2.0" }]

[source]
url = "https://example.org/luasocket-3.1.0.tar.gz"
hash = "sha256:9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08"

[build]
backend = "native"

[build.modules]
"socket.core" = ["src/luasocket.c", "src/tcp.c"]
"socket.http" = "src/http.lua"

[build.install.bin]
socket-tool = "bin/tool"
"""


class TestParseDescriptor:
    """Field extraction from well-formed descriptors."""

    def test_full_descriptor(self):
        d = parse(FULL)
        assert d.name == "luasocket"
        assert d.version == parse_version("3.1.0-1")
        assert d.summary == "Network support"
        assert d.license == "MIT"
        assert d.supported_runtime_versions == ("5.1", "5.4")
        assert d.platforms.allows("linux")
        assert not d.platforms.allows("win32")

    def test_dependency_kinds(self):
        d = parse(FULL)
        runtime = d.dependencies_of(DependencyKind.RUNTIME, "linux")
        assert [c.name for c in runtime] == ["lua-compat"]
        assert [c.name for c in d.dependencies_of(DependencyKind.RUNTIME, "win32")] == ["lua-compat", "winsock"]
        assert [c.name for c in d.dependencies_of(DependencyKind.BUILD)] == ["luarocks-build-extra"]
        test = d.dependencies_of(DependencyKind.TEST)
        assert test[0].name == "busted"
        assert parse_version("2.1.0") in test[0].range

    def test_archive_hash_is_normalized(self):
        d = parse(FULL)
        assert isinstance(d.source, ArchiveSource)
        assert d.source.hash.startswith("sha256-")

    def test_build_spec(self):
        d = parse(FULL)
        assert d.build.backend is BuildBackend.NATIVE
        assert d.build.modules["socket.core"] == ["src/luasocket.c", "src/tcp.c"]
        assert d.build.install["bin"] == {"socket-tool": "bin/tool"}

    def test_missing_build_table_means_no_build(self, descriptor):
        d = parse(descriptor("pkg", "1.0"))
        assert d.build.backend is BuildBackend.NONE

    def test_build_table_without_backend_is_builtin(self, descriptor):
        d = parse(descriptor("pkg", "1.0", build='[build]\nmodules = { pkg = "pkg.lua" }'))
        assert d.build.backend is BuildBackend.BUILTIN
        assert d.build.modules == {"pkg": "pkg.lua"}

    def test_module_list_form(self, descriptor):
        d = parse(descriptor("pkg", "1.0", build='[build]\nbackend = "make"\nmodules = ["pkg", "pkg.util"]'))
        assert d.build.modules == {"pkg": None, "pkg.util": None}

    def test_git_sources(self, descriptor):
        d = parse(descriptor("pkg", "1.0", source='[source]\nurl = "git+https://example.org/pkg"\nref = "v1.0"'))
        assert d.source == GitSource("https://example.org/pkg", "v1.0")
        d = parse(descriptor("pkg", "1.0", source='[source]\nurl = "https://example.org/pkg.git"'))
        assert isinstance(d.source, GitSource)

    def test_local_source_resolves_against_base_dir(self, descriptor, tmp_path):
        d = parse(descriptor("pkg", "1.0", source='[source]\npath = "../src"'), base_dir=str(tmp_path / "index"))
        assert d.source == LocalSource(os.path.normpath(str(tmp_path / "src")))

    def test_unknown_keys_are_ignored(self, descriptor):
        d = parse(descriptor("pkg", "1.0", extra='homepage = "https://example.org"'))
        assert d.name == "pkg"

    def test_parse_file(self, tmp_path, descriptor):
        path = tmp_path / "pkg-1.0.toml"
        path.write_text(descriptor("pkg", "1.0", source='[source]\npath = "src"'))
        d = parse_file(str(path))
        assert d.source == LocalSource(str(tmp_path / "src"))


class TestParseErrors:
    """Malformed descriptors raise ParseError with a line number."""

    def test_missing_name(self):
        with pytest.raises(ParseError) as exc_info:
            parse('version = "1.0"\n[source]\nurl = "https://x.invalid/a.tgz"\n')
        assert "name" in exc_info.value.reason

    def test_missing_source(self):
        with pytest.raises(ParseError) as exc_info:
            parse('name = "a"\nversion = "1.0"\n')
        assert "source" in exc_info.value.reason

    def test_invalid_version_reports_its_line(self):
        with pytest.raises(ParseError) as exc_info:
            parse('name = "a"\n\nversion = "banana"\n[source]\nurl = "https://x.invalid/a.tgz"\n')
        assert exc_info.value.line == 3

    def test_invalid_toml_reports_line(self):
        with pytest.raises(ParseError) as exc_info:
            parse('name = "a"\nversion = \n')
        assert exc_info.value.line == 2

    def test_invalid_constraint(self, descriptor):
        text = descriptor("a", "1.0", deps=["b >>= 1"])
        with pytest.raises(ParseError) as exc_info:
            parse(text)
        assert exc_info.value.line == 3

    def test_unknown_backend(self, descriptor):
        with pytest.raises(ParseError) as exc_info:
            parse(descriptor("a", "1.0", build='[build]\nbackend = "scons"'))
        assert "scons" in exc_info.value.reason

    def test_bad_hash(self, descriptor):
        with pytest.raises(ParseError):
            parse(descriptor("a", "1.0", source='[source]\nurl = "https://x.invalid/a.tgz"\nhash = "md5-abc"'))

    def test_dependency_table_without_name(self, descriptor):
        with pytest.raises(ParseError):
            parse('name = "a"\nversion = "1.0"\ndependencies = [{ constraint = ">= 1" }]\n'
                  '[source]\nurl = "https://x.invalid/a.tgz"\n')
