"""Tests for the build orchestrator and its backends."""

import json
import os
import shutil
import stat
import sys
import threading
from unittest.mock import patch

import pytest

from builder import BuildConfig, CancelToken, build
from builder.backends import BuildContext, build_make
from descriptor import LocalSource, parse
from descriptor.models import BuildBackend
from errors import ArtifactMissing, BuildCancelled, BuildError, ProcessFailed, ToolMissing
from fetch import FetchedSource

from conftest import descriptor_text


def _tree(root, files):
    for rel, content in files.items():
        path = os.path.join(root, rel)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as fh:
            fh.write(content)
    return str(root)


def _fetched(path):
    return FetchedSource(str(path), "sha256-unused", LocalSource(str(path)))


def _python_step(code):
    """A ``build_command`` array running ``code`` with the current interpreter."""
    return json.dumps([sys.executable, "-c", code])


def _write_module(module="pkg", body="return {}"):
    return (
        "import os; p = os.path.join(os.environ['PREFIX'], 'lua'); os.makedirs(p, exist_ok=True); "
        f"open(os.path.join(p, '{module}.lua'), 'w').write('{body}')"
    )


class TestBuiltinBackend:
    """Pure script packages."""

    def test_copies_modules_by_name(self, tmp_path):
        src = _tree(tmp_path / "src", {"src/pkg.lua": "return {}", "src/util.lua": "return 1"})
        d = parse(descriptor_text("pkg", "1.0", build=(
            '[build]\nbackend = "builtin"\n'
            '[build.modules]\npkg = "src/pkg.lua"\n"pkg.util" = "src/util.lua"'
        )))

        artifact = build(d, _fetched(src), BuildConfig(), str(tmp_path / "out"))

        assert artifact.modules == {"pkg": "lua/pkg.lua", "pkg.util": "lua/pkg/util.lua"}
        assert artifact.files == ["lua/pkg.lua", "lua/pkg/util.lua"]
        assert (tmp_path / "out" / "lua" / "pkg" / "util.lua").read_text() == "return 1"
        assert artifact.backend is BuildBackend.BUILTIN

    def test_default_module_location(self, tmp_path):
        src = _tree(tmp_path / "src", {"pkg/core.lua": "return {}"})
        d = parse(descriptor_text("pkg", "1.0", build='[build]\nmodules = ["pkg.core"]'))

        artifact = build(d, _fetched(src), BuildConfig(), str(tmp_path / "out"))

        assert artifact.modules == {"pkg.core": "lua/pkg/core.lua"}

    def test_source_tree_is_not_modified(self, tmp_path):
        src = _tree(tmp_path / "src", {"pkg.lua": "return {}"})
        d = parse(descriptor_text("pkg", "1.0", build='[build]\nmodules = { pkg = "pkg.lua" }'))

        build(d, _fetched(src), BuildConfig(), str(tmp_path / "out"))

        assert os.listdir(src) == ["pkg.lua"]

    def test_missing_module_source(self, tmp_path):
        src = _tree(tmp_path / "src", {"other.lua": ""})
        d = parse(descriptor_text("pkg", "1.0", build='[build]\nmodules = { pkg = "pkg.lua" }'))

        with pytest.raises(ArtifactMissing) as exc_info:
            build(d, _fetched(src), BuildConfig(), str(tmp_path / "out"))

        assert exc_info.value.expected_path == "pkg.lua"

    def test_native_sources_are_rejected(self, tmp_path):
        src = _tree(tmp_path / "src", {"pkg.c": ""})
        d = parse(descriptor_text("pkg", "1.0", build='[build]\nmodules = { pkg = ["pkg.c"] }'))

        with pytest.raises(BuildError) as exc_info:
            build(d, _fetched(src), BuildConfig(), str(tmp_path / "out"))

        assert exc_info.value.backend == "builtin"

    def test_install_table_and_bin_scripts(self, tmp_path):
        src = _tree(tmp_path / "src", {"pkg.lua": "", "tool.lua": "#!/usr/bin/env lua", "pkg.conf": "x=1"})
        d = parse(descriptor_text("pkg", "1.0", build=(
            '[build]\nmodules = { pkg = "pkg.lua" }\n'
            '[build.install.bin]\npkg-tool = "tool.lua"\n'
            '[build.install.conf]\n"pkg.conf" = "pkg.conf"'
        )))

        artifact = build(d, _fetched(src), BuildConfig(), str(tmp_path / "out"))

        assert artifact.files == ["bin/pkg-tool", "etc/pkg.conf", "lua/pkg.lua"]
        assert os.stat(tmp_path / "out" / "bin" / "pkg-tool").st_mode & stat.S_IXUSR

    def test_unknown_install_section(self, tmp_path):
        src = _tree(tmp_path / "src", {"pkg.lua": ""})
        d = parse(descriptor_text("pkg", "1.0", build=(
            '[build]\nmodules = { pkg = "pkg.lua" }\n[build.install.share]\nx = "pkg.lua"'
        )))

        with pytest.raises(BuildError):
            build(d, _fetched(src), BuildConfig(), str(tmp_path / "out"))


class TestCommandBackend:
    """Arbitrary commands and failure classification."""

    def _descriptor(self, command, modules='["pkg"]'):
        return parse(descriptor_text("pkg", "1.0", build=(
            f'[build]\nbackend = "command"\nmodules = {modules}\nbuild_command = {command}'
        )))

    def test_successful_command(self, tmp_path):
        src = _tree(tmp_path / "src", {"README": ""})

        artifact = build(self._descriptor(_python_step(_write_module())), _fetched(src), BuildConfig(),
                         str(tmp_path / "out"))

        assert artifact.modules == {"pkg": "lua/pkg.lua"}
        assert "$ " in artifact.log_excerpt

    def test_success_without_entrypoint_is_artifact_missing(self, tmp_path):
        src = _tree(tmp_path / "src", {"README": ""})

        with pytest.raises(ArtifactMissing) as exc_info:
            build(self._descriptor(_python_step("print('built nothing')")), _fetched(src), BuildConfig(),
                  str(tmp_path / "out"))

        assert exc_info.value.expected_path == "lua/pkg.lua"
        assert not isinstance(exc_info.value, ProcessFailed)

    def test_non_zero_exit_is_process_failed(self, tmp_path):
        src = _tree(tmp_path / "src", {"README": ""})
        step = _python_step("import sys; print('compiler exploded'); sys.exit(3)")

        with pytest.raises(ProcessFailed) as exc_info:
            build(self._descriptor(step), _fetched(src), BuildConfig(), str(tmp_path / "out"))

        assert exc_info.value.exit_code == 3
        assert "compiler exploded" in exc_info.value.log_excerpt

    def test_missing_executable_is_tool_missing(self, tmp_path):
        src = _tree(tmp_path / "src", {"README": ""})
        step = json.dumps([str(tmp_path / "no-such-tool")])

        with pytest.raises(ToolMissing):
            build(self._descriptor(step), _fetched(src), BuildConfig(), str(tmp_path / "out"))

    def test_variables_reach_the_environment(self, tmp_path):
        src = _tree(tmp_path / "src", {"README": ""})
        step = _python_step(
            "import os; p = os.path.join(os.environ['PREFIX'], 'lua'); os.makedirs(p); "
            "open(os.path.join(p, 'pkg.lua'), 'w').write(os.environ['GREETING'])"
        )
        config = BuildConfig(variables={"GREETING": "hello"})

        build(self._descriptor(step), _fetched(src), config, str(tmp_path / "out"))

        assert (tmp_path / "out" / "lua" / "pkg.lua").read_text() == "hello"

    def test_timeout_is_process_failed(self, tmp_path):
        src = _tree(tmp_path / "src", {"README": ""})
        step = _python_step("import time; time.sleep(30)")

        with pytest.raises(ProcessFailed) as exc_info:
            build(self._descriptor(step), _fetched(src), BuildConfig(), str(tmp_path / "out"), timeout=0.5)

        assert exc_info.value.exit_code == -1

    def test_cancellation_terminates_running_step(self, tmp_path):
        src = _tree(tmp_path / "src", {"README": ""})
        step = _python_step("import time; time.sleep(30)")
        token = CancelToken()
        timer = threading.Timer(0.3, token.cancel)
        timer.start()
        try:
            with pytest.raises(BuildCancelled):
                build(self._descriptor(step), _fetched(src), BuildConfig(), str(tmp_path / "out"), cancel=token)
        finally:
            timer.cancel()

    def test_cancelled_token_prevents_start(self, tmp_path):
        src = _tree(tmp_path / "src", {"README": ""})
        token = CancelToken()
        token.cancel()

        with pytest.raises(BuildCancelled):
            build(self._descriptor(_python_step(_write_module())), _fetched(src), BuildConfig(),
                  str(tmp_path / "out"), cancel=token)

        assert not (tmp_path / "out" / "lua").exists()


class TestOtherBackends:
    """none, make and tool probing."""

    def test_none_backend(self, tmp_path):
        src = _tree(tmp_path / "src", {"README": ""})
        d = parse(descriptor_text("pkg", "1.0"))

        artifact = build(d, _fetched(src), BuildConfig(), str(tmp_path / "out"))

        assert artifact.files == []
        assert artifact.modules == {}

    def test_make_tool_override_missing(self, tmp_path):
        src = _tree(tmp_path / "src", {"Makefile": ""})
        d = parse(descriptor_text("pkg", "1.0", build='[build]\nbackend = "make"'))

        with pytest.raises(ToolMissing) as exc_info:
            build(d, _fetched(src), BuildConfig(variables={"MAKE": "no-such-make-tool"}), str(tmp_path / "out"))

        assert exc_info.value.tool == "no-such-make-tool"

    @pytest.mark.skipif(shutil.which("make") is None, reason="make not installed")
    def test_make_install_into_prefix(self, tmp_path):
        src = _tree(tmp_path / "src", {
            "pkg.lua": "return {}",
            "Makefile": "all:\n\t@echo building\n\ninstall:\n\tmkdir -p $(LUA_DIR)\n\tcp pkg.lua $(LUA_DIR)/pkg.lua\n",
        })
        d = parse(descriptor_text("pkg", "1.0", build='[build]\nbackend = "make"\nmodules = ["pkg"]'))

        artifact = build(d, _fetched(src), BuildConfig(), str(tmp_path / "out"))

        assert artifact.modules == {"pkg": "lua/pkg.lua"}
        assert "building" in artifact.log_excerpt


class TestRuntimeHeaders:
    """Build systems are told where the runtime headers live."""

    def _context(self, tmp_path, backend, **config):
        d = parse(descriptor_text("pkg", "1.0", build=f'[build]\nbackend = "{backend}"'))
        src = _tree(tmp_path / "src", {"Makefile": ""})
        return BuildContext(d, src, str(tmp_path / "out"), BuildConfig(**config))

    def test_discovered_include_dir_is_exported(self, tmp_path):
        with patch('builder.native.pkg_config', return_value=["-I/opt/lua/include"]):
            ctx = self._context(tmp_path, "command")
            env = ctx.env()

        assert ctx.install_variables()["LUA_INCDIR"] == "/opt/lua/include"
        assert env["LUA_INCDIR"] == "/opt/lua/include"

    def test_make_receives_lua_incdir(self, tmp_path):
        ctx = self._context(tmp_path, "make", variables={"MAKE": sys.executable, "LUA_INCDIR": "/opt/lua54"})

        with patch('builder.backends.run_step') as mock_run:
            build_make(ctx)

        commands = [c.args[0] for c in mock_run.call_args_list]
        assert len(commands) == 2
        assert all("LUA_INCDIR=/opt/lua54" in cmd for cmd in commands)
        assert commands[1][1] == "install"

    def test_missing_headers_are_left_out(self, tmp_path):
        with patch('builder.native.pkg_config', return_value=None), \
                patch('builder.native._header_dir', return_value=None):
            ctx = self._context(tmp_path, "make")
            assert "LUA_INCDIR" not in ctx.install_variables()


class TestBuildConfig:
    """Configuration identity."""

    def test_equal_configs_hash_equal(self):
        a = BuildConfig(platform="linux", target_triple="x86_64-unknown-linux-gnu", variables={"A": "1", "B": "2"})
        b = BuildConfig(platform="linux", target_triple="x86_64-unknown-linux-gnu", variables={"B": "2", "A": "1"})
        assert a == b
        assert hash(a) == hash(b)
        assert a.canonical() == b.canonical()

    def test_shared_library_suffix(self):
        assert BuildConfig(platform="linux").shared_library_suffix == ".so"
        assert BuildConfig(platform="win32").shared_library_suffix == ".dll"
