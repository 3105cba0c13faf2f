"""Native toolchain discovery and compilation of C modules."""
from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from typing import Any, Dict, List, Optional

from errors import BuildError, ToolMissing

from .models import BuildConfig

logger = logging.getLogger(__name__)

DEFAULT_INCLUDE_DIRS = ["/usr/local/include", "/usr/include"]
DEFAULT_LIB_DIRS = ["/usr/local/lib", "/usr/lib", "/usr/lib64", "/usr/lib/x86_64-linux-gnu", "/usr/lib/aarch64-linux-gnu"]

# pkg-config names tried per runtime version
_RUNTIME_PKG_NAMES = {
    "5.1": ["lua5.1", "lua-5.1", "lua51"],
    "5.2": ["lua5.2", "lua-5.2", "lua52"],
    "5.3": ["lua5.3", "lua-5.3", "lua53"],
    "5.4": ["lua5.4", "lua-5.4", "lua54"],
    "jit": ["luajit"],
}


def find_compiler(config: BuildConfig, backend: str) -> List[str]:
    """Compiler command from ``CC`` (config, then environment) or ``cc``."""
    raw = config.variables.get("CC") or os.environ.get("CC") or "cc"
    cmd = shlex.split(raw)
    if not cmd or shutil.which(cmd[0]) is None:
        raise ToolMissing(backend, cmd[0] if cmd else "CC")
    return cmd


def pkg_config(package: str, *flags: str) -> Optional[List[str]]:
    """Flags from ``pkg-config``, or None when it or the package is unavailable."""
    tool = shutil.which("pkg-config")
    if tool is None:
        return None
    result = subprocess.run([tool, *flags, package], capture_output=True, text=True, check=False)
    if result.returncode != 0:
        return None
    return shlex.split(result.stdout.strip())


def _header_dir(header: str, candidates: List[str]) -> Optional[str]:
    for directory in candidates:
        if os.path.isfile(os.path.join(directory, header)):
            return directory
    return None


def runtime_include_flags(config: BuildConfig, backend: str) -> List[str]:
    """``-I`` flags for the runtime headers (``lua.h``)."""
    override = config.variables.get("LUA_INCDIR")
    if override:
        return [f"-I{override}"]
    version = config.runtime_version
    names = _RUNTIME_PKG_NAMES.get(version, []) + ["lua"]
    for name in names:
        flags = pkg_config(name, "--cflags-only-I")
        if flags is not None:
            return flags
    suffixes = [f"lua{version}", f"lua-{version}", "luajit-2.1" if version == "jit" else f"lua{version.replace('.', '')}", ""]
    candidates = [os.path.join(base, s) if s else base for base in DEFAULT_INCLUDE_DIRS for s in suffixes]
    directory = _header_dir("lua.h", candidates)
    if directory is None:
        raise ToolMissing(backend, f"lua.h for runtime {version} (set LUA_INCDIR)")
    return [f"-I{directory}"]


def runtime_include_dir(config: BuildConfig, backend: str) -> Optional[str]:
    """Directory holding the runtime headers, or None when none is found.

    Unlike :func:`runtime_include_flags` this never raises: build systems
    driven by ``make`` or commands may not compile C at all.
    """
    try:
        flags = runtime_include_flags(config, backend)
    except ToolMissing:
        logger.debug("Runtime headers for %s not found", config.runtime_version)
        return None
    for flag in flags:
        if flag.startswith("-I") and len(flag) > 2:
            return flag[2:]
    return _header_dir("lua.h", DEFAULT_INCLUDE_DIRS)


def external_dependency_flags(name: str, spec: Dict[str, Any], config: BuildConfig, backend: str) -> Dict[str, List[str]]:
    """Compile and link flags for one declared external dependency.

    ``<NAME>_DIR``, ``<NAME>_INCDIR`` and ``<NAME>_LIBDIR`` in the build
    variables take precedence over pkg-config and the default search paths.
    """
    key = name.upper().replace("-", "_")
    prefix = config.variables.get(f"{key}_DIR")
    incdir = config.variables.get(f"{key}_INCDIR") or (os.path.join(prefix, "include") if prefix else None)
    libdir = config.variables.get(f"{key}_LIBDIR") or (os.path.join(prefix, "lib") if prefix else None)
    header = spec.get("header")
    library = spec.get("library")

    if incdir is None and libdir is None:
        cflags = pkg_config(name.lower(), "--cflags")
        libs = pkg_config(name.lower(), "--libs")
        if cflags is not None and libs is not None:
            return {"cflags": cflags, "ldflags": libs}
        if header:
            incdir = _header_dir(header, DEFAULT_INCLUDE_DIRS)
            if incdir is None:
                raise ToolMissing(backend, f"header {header} for external dependency {name} (set {key}_DIR)")

    if header and incdir and not os.path.isfile(os.path.join(incdir, header)):
        raise ToolMissing(backend, f"header {header} for external dependency {name} in {incdir}")
    cflags = [f"-I{incdir}"] if incdir else []
    ldflags = [f"-L{libdir}"] if libdir else []
    if library:
        ldflags.append(f"-l{library}")
    return {"cflags": cflags, "ldflags": ldflags}


def link_flags(config: BuildConfig) -> List[str]:
    if config.platform == "macosx":
        return ["-bundle", "-undefined", "dynamic_lookup"]
    return ["-shared"]


def module_sources(module: str, spec: Any, backend: str) -> Dict[str, List[str]]:
    """Normalize a native module declaration into sources and extra flags."""
    if isinstance(spec, str):
        return {"sources": [spec], "defines": [], "incdirs": [], "libdirs": [], "libraries": []}
    if isinstance(spec, list):
        return {"sources": [str(s) for s in spec], "defines": [], "incdirs": [], "libdirs": [], "libraries": []}
    if isinstance(spec, dict):
        sources = spec.get("sources")
        if isinstance(sources, str):
            sources = [sources]
        if not sources:
            raise BuildError(backend, f"module '{module}' declares no sources")
        return {
            "sources": [str(s) for s in sources],
            "defines": [str(d) for d in spec.get("defines", [])],
            "incdirs": [str(d) for d in spec.get("incdirs", [])],
            "libdirs": [str(d) for d in spec.get("libdirs", [])],
            "libraries": [str(lib) for lib in spec.get("libraries", [])],
        }
    raise BuildError(backend, f"module '{module}' has an unsupported declaration")
