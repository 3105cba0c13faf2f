"""Build backend handlers.

Each handler takes a :class:`BuildContext` and turns the working copy of the
source into installed files under ``ctx.output_dir``:

- ``lua/``  script modules, laid out by module path (``a.b`` -> ``lua/a/b.lua``)
- ``lib/``  native modules (``a.b`` -> ``lib/a/b.so``)
- ``bin/``  executables
- ``etc/``  directories listed in ``copy_directories``

The dispatch table is keyed by :class:`BuildBackend`, so the set of backends
is closed.
"""
from __future__ import annotations

import logging
import os
import shlex
import shutil
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Callable, Dict, List, Optional

from constants import Constants
from common.fs_utils import copy_file, copy_tree
from descriptor.models import BuildBackend, Descriptor
from errors import ArtifactMissing, BuildError, ToolMissing

from . import native
from .models import BuildConfig
from .process import CancelToken, run_step

logger = logging.getLogger(__name__)


@dataclass
class BuildContext:
    """Everything a backend handler needs for one build."""
    descriptor: Descriptor
    source_dir: str
    output_dir: str
    config: BuildConfig
    cancel: Optional[CancelToken] = None
    log: List[str] = field(default_factory=list)
    timeout: Optional[float] = None

    @property
    def backend(self) -> BuildBackend:
        return self.descriptor.build.backend

    @property
    def parameters(self) -> Dict[str, Any]:
        return self.descriptor.build.parameters

    def out(self, *parts: str) -> str:
        return os.path.join(self.output_dir, *parts)

    @cached_property
    def lua_incdir(self) -> Optional[str]:
        return native.runtime_include_dir(self.config, self.backend.value)

    def install_variables(self) -> Dict[str, str]:
        """Install locations and runtime headers handed to build systems."""
        variables = {
            "PREFIX": self.output_dir,
            "LUA_DIR": self.out(Constants.LUA_DIR),
            "LUA_LIBDIR": self.out(Constants.LIB_DIR),
            "LUA_BINDIR": self.out(Constants.BIN_DIR),
        }
        if self.lua_incdir:
            variables["LUA_INCDIR"] = self.lua_incdir
        return variables

    def env(self) -> Dict[str, str]:
        """Process environment for build steps: install prefix, runtime and overrides."""
        env = dict(os.environ)
        env.update(self.install_variables())
        env.update(
            LUA_VERSION=self.config.runtime_version,
            CFLAGS=" ".join(self.config.cflags),
            LIBFLAG=" ".join(native.link_flags(self.config)),
        )
        env.update({k: str(v) for k, v in self.config.variables.items()})
        return env

    def run(self, cmd: List[str], cwd: Optional[str] = None) -> None:
        run_step(
            cmd,
            cwd=cwd or self.source_dir,
            env=self.env(),
            backend=self.backend.value,
            log=self.log,
            cancel=self.cancel,
            timeout=self.timeout,
        )


def module_path(module: str, extension: str) -> str:
    """Relative install path of a module name (``a.b`` -> ``a/b<ext>``)."""
    return module.replace(".", "/") + extension


def _source_file(ctx: BuildContext, relative: str) -> str:
    path = os.path.normpath(os.path.join(ctx.source_dir, relative))
    if not path.startswith(os.path.normpath(ctx.source_dir) + os.sep) or not os.path.isfile(path):
        raise ArtifactMissing(ctx.backend.value, relative)
    return path


def _is_script(spec: Any) -> bool:
    return isinstance(spec, str) and any(spec.endswith(ext) for ext in Constants.SCRIPT_EXTENSIONS)


def _copy_script(ctx: BuildContext, module: str, relative: str) -> None:
    target = ctx.out(Constants.LUA_DIR, module_path(module, ".lua"))
    copy_file(_source_file(ctx, relative), target)


def _copy_extras(ctx: BuildContext) -> None:
    scripts = ctx.parameters.get("bin") or {}
    if isinstance(scripts, list):
        scripts = {os.path.basename(str(s)): s for s in scripts}
    for name, relative in scripts.items():
        target = ctx.out(Constants.BIN_DIR, name)
        copy_file(_source_file(ctx, str(relative)), target)
        os.chmod(target, os.stat(target).st_mode | 0o111)
    for directory in ctx.parameters.get("copy_directories") or []:
        src = os.path.join(ctx.source_dir, str(directory))
        if not os.path.isdir(src):
            raise ArtifactMissing(ctx.backend.value, str(directory))
        copy_tree(src, ctx.out("etc", str(directory)))


def build_builtin(ctx: BuildContext) -> None:
    for module, spec in ctx.descriptor.build.modules.items():
        if spec is None:
            spec = module_path(module, ".lua")
        if not _is_script(spec):
            raise BuildError(ctx.backend.value, f"module '{module}' is not a script file; use the native backend")
        _copy_script(ctx, module, spec)
    _copy_extras(ctx)


def build_native(ctx: BuildContext) -> None:
    backend = ctx.backend.value
    modules = ctx.descriptor.build.modules
    native_modules = {m: s for m, s in modules.items() if not _is_script(s)}
    for module, spec in modules.items():
        if _is_script(spec):
            _copy_script(ctx, module, spec)
    if native_modules:
        compiler = native.find_compiler(ctx.config, backend)
        base_cflags = list(ctx.config.cflags) + native.runtime_include_flags(ctx.config, backend)
        ext_cflags: List[str] = []
        ext_ldflags: List[str] = []
        for name, spec in (ctx.parameters.get("external_dependencies") or {}).items():
            flags = native.external_dependency_flags(name, spec or {}, ctx.config, backend)
            ext_cflags += flags["cflags"]
            ext_ldflags += flags["ldflags"]
        for module, spec in native_modules.items():
            if spec is None:
                raise BuildError(backend, f"module '{module}' declares no sources")
            _compile_module(ctx, compiler, module, native.module_sources(module, spec, backend),
                            base_cflags + ext_cflags, ext_ldflags)
    _copy_extras(ctx)


def _compile_module(ctx: BuildContext, compiler: List[str], module: str, spec: Dict[str, List[str]],
                    cflags: List[str], ldflags: List[str]) -> None:
    objects = []
    extra = [f"-D{d}" for d in spec["defines"]] + [f"-I{d}" for d in spec["incdirs"]]
    for source in spec["sources"]:
        _source_file(ctx, source)
        obj = os.path.splitext(source)[0] + ".o"
        ctx.run(compiler + cflags + extra + ["-c", source, "-o", obj])
        objects.append(obj)
    target = ctx.out(Constants.LIB_DIR, module_path(module, ctx.config.shared_library_suffix))
    os.makedirs(os.path.dirname(target), exist_ok=True)
    libs = [f"-L{d}" for d in spec["libdirs"]] + [f"-l{lib}" for lib in spec["libraries"]]
    ctx.run(compiler + native.link_flags(ctx.config) + list(ctx.config.ldflags)
            + ["-o", target] + objects + ldflags + libs)


def _tool(ctx: BuildContext, variable: str, default: str) -> str:
    name = ctx.config.variables.get(variable) or default
    if shutil.which(name) is None:
        raise ToolMissing(ctx.backend.value, name)
    return name


def _assignments(values: Any) -> List[str]:
    return [f"{k}={v}" for k, v in (values or {}).items()]


def build_make(ctx: BuildContext) -> None:
    make = _tool(ctx, "MAKE", "make")
    base = [make]
    makefile = ctx.parameters.get("makefile")
    if makefile:
        base += ["-f", str(makefile)]
    standard = _assignments(ctx.install_variables())
    if ctx.parameters.get("build_pass", True):
        target = ctx.parameters.get("build_target")
        ctx.run(base + ([str(target)] if target else []) + standard + _assignments(ctx.parameters.get("build_variables")))
    if ctx.parameters.get("install_pass", True):
        target = ctx.parameters.get("install_target", "install")
        ctx.run(base + [str(target)] + standard + _assignments(ctx.parameters.get("install_variables")))
    _copy_extras(ctx)


def build_cmake(ctx: BuildContext) -> None:
    cmake = _tool(ctx, "CMAKE", "cmake")
    build_dir = os.path.join(ctx.source_dir, "build.rockyard")
    definitions = [f"-D{k}={v}" for k, v in (ctx.parameters.get("variables") or {}).items()]
    ctx.run([cmake, "-S", ".", "-B", build_dir,
             f"-DCMAKE_INSTALL_PREFIX={ctx.output_dir}",
             "-DCMAKE_BUILD_TYPE=Release",
             f"-DLUA_VERSION={ctx.config.runtime_version}"]
            + ([f"-DLUA_INCLUDE_DIR={ctx.lua_incdir}"] if ctx.lua_incdir else [])
            + definitions)
    if ctx.parameters.get("build_pass", True):
        ctx.run([cmake, "--build", build_dir, "--config", "Release"])
    if ctx.parameters.get("install_pass", True):
        ctx.run([cmake, "--install", build_dir, "--config", "Release"])
    _copy_extras(ctx)


def build_command(ctx: BuildContext) -> None:
    for key in ("build_command", "install_command"):
        command = ctx.parameters.get(key)
        if not command:
            continue
        cmd = shlex.split(command) if isinstance(command, str) else [str(c) for c in command]
        ctx.run(cmd)
    _copy_extras(ctx)


def build_none(ctx: BuildContext) -> None:  # pylint: disable=unused-argument
    return None


HANDLERS: Dict[BuildBackend, Callable[[BuildContext], None]] = {
    BuildBackend.BUILTIN: build_builtin,
    BuildBackend.NATIVE: build_native,
    BuildBackend.MAKE: build_make,
    BuildBackend.CMAKE: build_cmake,
    BuildBackend.COMMAND: build_command,
    BuildBackend.NONE: build_none,
}


_INSTALL_DIRS = {
    "lua": (Constants.LUA_DIR, True),
    "lib": (Constants.LIB_DIR, True),
    "bin": (Constants.BIN_DIR, False),
    "conf": ("etc", False),
}


def apply_install_table(ctx: BuildContext) -> None:
    """Copy entries of the descriptor's ``install`` table into the output.

    ``lua`` and ``lib`` keys are module names; ``bin`` and ``conf`` keys are
    file names.
    """
    for section, entries in ctx.descriptor.build.install.items():
        if section not in _INSTALL_DIRS:
            raise BuildError(ctx.backend.value, f"unknown install section '{section}'")
        directory, by_module = _INSTALL_DIRS[section]
        for name, relative in entries.items():
            src = _source_file(ctx, str(relative))
            if by_module:
                target = ctx.out(directory, module_path(name, os.path.splitext(src)[1]))
            else:
                target = ctx.out(directory, name)
            copy_file(src, target)
            if section == "bin":
                os.chmod(target, os.stat(target).st_mode | 0o111)
